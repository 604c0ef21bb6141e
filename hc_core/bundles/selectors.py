# hc_core/bundles/selectors.py
from __future__ import annotations

import logging
from typing import Optional

from django.db.models import Prefetch, QuerySet

from hc_core.bundles.matcher import BundleTemplateSpec, EligibilityRuleSpec, ServiceLineSpec, TemplateMatcher
from hc_core.bundles.models import BundleTemplate, BundleTemplateService, EligibilityRule
from hc_core.common.errors import ConfigurationError
from hc_core.rules.conditions import parse_condition
from hc_core.rules.engine import RuleEvaluator
from hc_core.rules.serializers import rule_max_depth

logger = logging.getLogger(__name__)


def current_templates_qs(*, auto_recommend_only: bool = False) -> QuerySet[BundleTemplate]:
    qs = BundleTemplate.objects.filter(is_active=True, is_current_version=True)
    if auto_recommend_only:
        qs = qs.filter(auto_recommend=True)
    return qs.prefetch_related(
        Prefetch("rules", queryset=EligibilityRule.objects.order_by("-priority", "id")),
        Prefetch("services", queryset=BundleTemplateService.objects.select_related("service_type")),
    ).order_by("code")


def get_current_template(*, code: str) -> BundleTemplate:
    return BundleTemplate.objects.get(code=code, is_current_version=True)


def list_template_versions(*, code: str) -> QuerySet[BundleTemplate]:
    return BundleTemplate.objects.filter(code=code).order_by("version")


def service_line_to_spec(line: BundleTemplateService) -> ServiceLineSpec:
    cost = line.cost_per_visit_cents
    if cost is None:
        cost = line.service_type.default_cost_per_visit_cents
    return ServiceLineSpec(
        service_type_code=line.service_type.code,
        frequency_per_week=float(line.default_frequency_per_week),
        duration_minutes=line.default_duration_minutes,
        is_required=line.is_required,
        is_conditional=line.is_conditional,
        condition_flags=frozenset(str(f) for f in (line.condition_flags or [])),
        cost_per_visit_cents=cost,
    )


def template_to_spec(template: BundleTemplate, *, max_depth: Optional[int] = None) -> BundleTemplateSpec:
    """
    Parse stored rule conditions. A template whose stored configuration no
    longer parses is returned with `fault` set so the matcher can report it
    without aborting the batch.
    """
    depth = max_depth or rule_max_depth()
    rules: list[EligibilityRuleSpec] = []
    fault = None

    for rule in template.rules.all():
        try:
            condition = parse_condition(rule.condition, max_depth=depth)
        except ConfigurationError as exc:
            logger.warning(
                "Stored rule %s on template %s v%s is invalid: %s",
                rule.id,
                template.code,
                template.version,
                exc,
            )
            fault = f"rule {rule.id}: {exc.message}"
            break
        rules.append(
            EligibilityRuleSpec(
                id=str(rule.id),
                name=rule.name,
                condition=condition,
                priority=rule.priority,
                is_required=rule.is_required,
                is_active=rule.is_active,
            )
        )

    return BundleTemplateSpec(
        id=str(template.id),
        code=template.code,
        name=template.name,
        version=template.version,
        is_active=template.is_active,
        is_current_version=template.is_current_version,
        auto_recommend=template.auto_recommend,
        priority_weight=template.priority_weight,
        rug_group=template.rug_group,
        rug_category=template.rug_category,
        required_flags=frozenset(str(f) for f in (template.required_flags or [])),
        excluded_flags=frozenset(str(f) for f in (template.excluded_flags or [])),
        min_adl_sum=template.min_adl_sum,
        max_adl_sum=template.max_adl_sum,
        min_iadl_sum=template.min_iadl_sum,
        max_iadl_sum=template.max_iadl_sum,
        weekly_cap_cents=template.weekly_cap_cents,
        rules=tuple(rules) if fault is None else (),
        services=tuple(
            sorted(
                (service_line_to_spec(s) for s in template.services.all()),
                key=lambda s: s.service_type_code,
            )
        ),
        fault=fault,
    )


def load_current_template_specs(*, auto_recommend_only: bool = True) -> list[BundleTemplateSpec]:
    depth = rule_max_depth()
    return [
        template_to_spec(t, max_depth=depth)
        for t in current_templates_qs(auto_recommend_only=auto_recommend_only)
    ]


def configured_template_matcher() -> TemplateMatcher:
    return TemplateMatcher(RuleEvaluator(max_depth=rule_max_depth()))
