# hc_core/bundles/matcher.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from hc_core.clinical.attributes import AttributeBag, to_number
from hc_core.common.errors import ConfigurationError, EvaluationFault
from hc_core.common.outcomes import RankingOutcome, resolve_outcome
from hc_core.rules.conditions import ConditionNode
from hc_core.rules.engine import LeafResult, RuleEvaluator

logger = logging.getLogger(__name__)

DEFAULT_COST_PER_VISIT_CENTS = 10000


# -----------------------
# Inputs
# -----------------------
@dataclass(frozen=True)
class EligibilityRuleSpec:
    id: str
    name: str
    condition: ConditionNode
    priority: int = 0
    is_required: bool = False
    is_active: bool = True

    @property
    def weight(self) -> int:
        # priority 0 counts as weight 1
        return max(int(self.priority), 1)


@dataclass(frozen=True)
class ServiceLineSpec:
    """
    Template service line. cost_per_visit_cents is already resolved against
    the service type default; None means neither was set.
    """
    service_type_code: str
    frequency_per_week: float
    duration_minutes: int = 60
    is_required: bool = True
    is_conditional: bool = False
    condition_flags: frozenset[str] = frozenset()
    cost_per_visit_cents: Optional[int] = None

    def applies_to(self, flags: frozenset[str]) -> bool:
        if self.is_required:
            return True
        if self.is_conditional:
            return bool(self.condition_flags & flags)
        return True

    @property
    def weekly_cost_cents(self) -> int:
        per_visit = self.cost_per_visit_cents
        if per_visit is None:
            per_visit = DEFAULT_COST_PER_VISIT_CENTS
        return int(round(self.frequency_per_week * per_visit))


def services_for_flags(services: Iterable[ServiceLineSpec], flags: frozenset[str]) -> tuple[ServiceLineSpec, ...]:
    """Required lines, plain optional lines, and conditional lines whose flags fire."""
    return tuple(s for s in services if s.applies_to(flags))


def estimated_weekly_cost_cents(services: Iterable[ServiceLineSpec]) -> int:
    return sum(s.weekly_cost_cents for s in services)


@dataclass(frozen=True)
class BundleTemplateSpec:
    """
    Read-only snapshot of a template version and its rules.
    `fault` is set by the loader when stored configuration could not be
    parsed; such a template is reported, never ranked.
    """
    id: str
    code: str
    name: str = ""
    version: int = 1
    is_active: bool = True
    is_current_version: bool = True
    auto_recommend: bool = True
    priority_weight: int = 100
    rug_group: str = ""
    rug_category: str = ""
    required_flags: frozenset[str] = frozenset()
    excluded_flags: frozenset[str] = frozenset()
    min_adl_sum: Optional[int] = None
    max_adl_sum: Optional[int] = None
    min_iadl_sum: Optional[int] = None
    max_iadl_sum: Optional[int] = None
    weekly_cap_cents: int = 0
    rules: tuple[EligibilityRuleSpec, ...] = ()
    services: tuple[ServiceLineSpec, ...] = ()
    fault: Optional[str] = None


# -----------------------
# Outputs
# -----------------------
@dataclass(frozen=True)
class RuleOutcome:
    rule_id: str
    name: str
    passed: bool
    weight: int
    is_required: bool
    leaves: tuple[LeafResult, ...] = ()

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "name": self.name,
            "passed": self.passed,
            "weight": self.weight,
            "is_required": self.is_required,
            "leaves": [leaf.to_dict() for leaf in self.leaves],
        }


@dataclass(frozen=True)
class MatchResult:
    template_id: str
    code: str
    version: int
    name: str = ""
    score: float = 0.0
    eligible: bool = False
    required_satisfied: bool = False
    excluded_triggered: bool = False
    priority_weight: int = 100
    exclusion_reasons: tuple[str, ...] = ()
    rule_trace: tuple[RuleOutcome, ...] = ()
    applicable_services: tuple[str, ...] = ()
    estimated_weekly_cost_cents: Optional[int] = None
    exceeds_weekly_cap: bool = False
    fault: Optional[str] = None

    @property
    def candidate_id(self) -> str:
        return self.template_id

    def to_dict(self) -> dict:
        return {
            "template_id": self.template_id,
            "code": self.code,
            "version": self.version,
            "name": self.name,
            "score": self.score,
            "eligible": self.eligible,
            "required_satisfied": self.required_satisfied,
            "excluded_triggered": self.excluded_triggered,
            "priority_weight": self.priority_weight,
            "exclusion_reasons": list(self.exclusion_reasons),
            "rule_trace": [r.to_dict() for r in self.rule_trace],
            "applicable_services": list(self.applicable_services),
            "estimated_weekly_cost_cents": self.estimated_weekly_cost_cents,
            "exceeds_weekly_cap": self.exceeds_weekly_cap,
            "fault": self.fault,
        }


@dataclass(frozen=True)
class TemplateRanking:
    ranked: tuple[MatchResult, ...]
    results: tuple[MatchResult, ...]  # ranked first, then gated/faulted

    @property
    def outcome(self) -> RankingOutcome:
        return resolve_outcome(self.ranked, self.results)

    @property
    def best(self) -> Optional[MatchResult]:
        return self.ranked[0] if self.ranked else None


# -----------------------
# Matcher
# -----------------------
class TemplateMatcher:
    """
    Rank current bundle template versions for one AttributeBag.

    Per template:
      1. flag gates (excluded_flags veto, required_flags), RUG group or
         category, and ADL/IADL bounds
      2. every active rule evaluated, required ones gate
      3. score = 100 * passed optional weight / total optional weight
         (100 when there are no optional rules), scaled by priority_weight/100
         and clamped to [0, 100]
      4. service lines that apply to the bag's flags and their weekly cost

    Gated and faulted templates stay in `results` with their reasons and full
    rule trace; only eligible ones are in `ranked`.
    """

    def __init__(self, evaluator: Optional[RuleEvaluator] = None):
        self.evaluator = evaluator or RuleEvaluator()

    def rank(self, bag: AttributeBag, templates: Iterable[BundleTemplateSpec]) -> TemplateRanking:
        ranked: list[MatchResult] = []
        gated: list[MatchResult] = []

        for template in templates:
            if not (template.is_active and template.is_current_version):
                continue
            if template.fault:
                gated.append(self._faulted(template, template.fault))
                continue
            try:
                result = self._match(bag, template)
            except (EvaluationFault, ConfigurationError, TypeError, ValueError, ArithmeticError) as exc:
                logger.warning("Template %s v%s faulted during evaluation: %s", template.code, template.version, exc)
                gated.append(self._faulted(template, f"{type(exc).__name__}: {exc}"))
                continue
            (ranked if result.eligible else gated).append(result)

        ranked.sort(key=lambda r: (-r.score, -r.priority_weight, r.template_id))
        gated.sort(key=lambda r: (r.code, r.version, r.template_id))
        return TemplateRanking(ranked=tuple(ranked), results=tuple(ranked) + tuple(gated))

    def _match(self, bag: AttributeBag, template: BundleTemplateSpec) -> MatchResult:
        reasons: list[str] = []
        flags = bag.all_flags

        vetoed = sorted(template.excluded_flags & flags)
        reasons.extend(f"excluded_flag:{f}" for f in vetoed)

        missing_flags = sorted(template.required_flags - flags)
        reasons.extend(f"missing_required_flag:{f}" for f in missing_flags)

        reasons.extend(_classification_reasons(bag, template))

        reasons.extend(_bounds_reasons(bag, "adl_sum", template.min_adl_sum, template.max_adl_sum))
        reasons.extend(_bounds_reasons(bag, "iadl_sum", template.min_iadl_sum, template.max_iadl_sum))

        rules = sorted(
            (r for r in template.rules if r.is_active),
            key=lambda r: (-r.priority, r.id),
        )

        trace: list[RuleOutcome] = []
        for rule in rules:
            evaluation = self.evaluator.evaluate(rule.condition, bag)
            trace.append(
                RuleOutcome(
                    rule_id=rule.id,
                    name=rule.name,
                    passed=evaluation.passed,
                    weight=rule.weight,
                    is_required=rule.is_required,
                    leaves=evaluation.trace,
                )
            )

        failed_required = [o for o in trace if o.is_required and not o.passed]
        reasons.extend(f"required_rule_failed:{o.name}" for o in failed_required)

        optional = [o for o in trace if not o.is_required]
        total = sum(o.weight for o in optional)
        passed = sum(o.weight for o in optional if o.passed)
        base = 100.0 * passed / total if total else 100.0

        excluded_triggered = bool(vetoed)
        if excluded_triggered:
            score = 0.0
        else:
            score = round(max(0.0, min(100.0, base * template.priority_weight / 100.0)), 2)

        applicable = services_for_flags(template.services, flags)
        weekly_cost = estimated_weekly_cost_cents(applicable)

        return MatchResult(
            template_id=template.id,
            code=template.code,
            version=template.version,
            name=template.name,
            score=score,
            eligible=not reasons,
            required_satisfied=not failed_required,
            excluded_triggered=excluded_triggered,
            priority_weight=template.priority_weight,
            exclusion_reasons=tuple(reasons),
            rule_trace=tuple(trace),
            applicable_services=tuple(s.service_type_code for s in applicable),
            estimated_weekly_cost_cents=weekly_cost,
            exceeds_weekly_cap=bool(template.weekly_cap_cents) and weekly_cost > template.weekly_cap_cents,
        )

    @staticmethod
    def _faulted(template: BundleTemplateSpec, fault: str) -> MatchResult:
        return MatchResult(
            template_id=template.id,
            code=template.code,
            version=template.version,
            name=template.name,
            priority_weight=template.priority_weight,
            exclusion_reasons=("fault",),
            fault=fault,
        )


def _bounds_reasons(bag: AttributeBag, field: str, low: Optional[int], high: Optional[int]) -> list[str]:
    if low is None and high is None:
        return []
    value = to_number(bag.get(field))
    if value is None:
        return [f"{field}_missing"]
    if (low is not None and value < low) or (high is not None and value > high):
        return [f"{field}_out_of_range"]
    return []


def _classification_reasons(bag: AttributeBag, template: BundleTemplateSpec) -> list[str]:
    """rug_group wins when set; rug_category is only checked for group-less templates."""
    if template.rug_group:
        return [] if bag.get("rug_group") == template.rug_group else ["rug_group_mismatch"]
    if template.rug_category:
        return [] if bag.get("rug_category") == template.rug_category else ["rug_category_mismatch"]
    return []
