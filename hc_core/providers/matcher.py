# hc_core/providers/matcher.py
from __future__ import annotations

import logging
import statistics
from dataclasses import dataclass, field, fields, replace
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Mapping, Optional, Sequence

from hc_core.common.errors import EvaluationFault
from hc_core.common.outcomes import RankingOutcome, resolve_outcome

logger = logging.getLogger(__name__)

SPECIAL_CAPABILITIES = ("dementia", "palliative", "complex_care")


# -----------------------
# Inputs
# -----------------------
@dataclass(frozen=True)
class ServiceRequest:
    """
    One requested visit. requested_start must be timezone-aware and expressed
    in the local time the provider availability windows refer to.

    required_capabilities: subset of SPECIAL_CAPABILITIES plus
    "language:<code>" entries; each one the candidate has earns a bonus.
    required_skills: qualification codes the service type demands; a
    candidate whose staff_qualifications miss any of them is excluded.
    """
    service_type_id: str
    requested_start: datetime
    estimated_hours: float
    postal_code: Optional[str] = None
    region_code: Optional[str] = None
    required_capabilities: frozenset[str] = frozenset()
    language: Optional[str] = None
    is_holiday: bool = False
    required_skills: frozenset[str] = frozenset()
    preferred_provider_id: Optional[str] = None

    @property
    def requirements(self) -> frozenset[str]:
        reqs = set(self.required_capabilities)
        if self.language:
            reqs.add(f"language:{self.language.lower()}")
        return frozenset(reqs)


@dataclass(frozen=True)
class CapabilitySpec:
    """Read-only snapshot of a ProviderCapability row used for matching."""
    id: str
    provider_id: str
    service_type_id: str
    max_weekly_hours: float
    current_utilization_hours: float = 0.0
    provider_name: str = ""
    provider_kind: str = "SSPO"
    is_active: bool = True
    provider_is_active: bool = True
    min_notice_hours: int = 0
    hourly_rate: Optional[float] = None
    visit_rate: Optional[float] = None
    rate_modifiers: Mapping[str, float] = field(default_factory=dict)
    service_areas: frozenset[str] = frozenset()
    regions: frozenset[str] = frozenset()
    available_days: frozenset[int] = frozenset()  # 0=Sun .. 6=Sat
    earliest_start_time: Optional[time] = None
    latest_end_time: Optional[time] = None
    quality_score: Optional[float] = None
    acceptance_rate: Optional[float] = None
    completion_rate: Optional[float] = None
    special_capabilities: frozenset[str] = frozenset()
    staff_qualifications: frozenset[str] = frozenset()
    capability_effective_date: Optional[date] = None
    capability_expiry_date: Optional[date] = None
    insurance_verified: bool = True
    insurance_expiry_date: Optional[date] = None

    @property
    def available_hours(self) -> float:
        return max(0.0, float(self.max_weekly_hours) - float(self.current_utilization_hours))

    @property
    def utilization_pct(self) -> float:
        if not self.max_weekly_hours or self.max_weekly_hours <= 0:
            return 0.0
        return round(float(self.current_utilization_hours) / float(self.max_weekly_hours) * 100, 1)


@dataclass(frozen=True)
class ScoringWeights:
    quality: float = 0.30
    acceptance: float = 0.20
    completion: float = 0.20
    capacity: float = 0.15
    rate: float = 0.10
    special_bonus_per_flag: float = 5.0
    special_bonus_cap: float = 10.0
    preferred_provider_boost: float = 100.0

    @classmethod
    def from_mapping(cls, overrides: Optional[Mapping[str, Any]] = None) -> "ScoringWeights":
        base = cls()
        if not overrides:
            return base
        known = {f.name for f in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown scoring weight(s): {sorted(unknown)}")
        values = {k: float(v) for k, v in overrides.items()}
        if any(v < 0 for v in values.values()):
            raise ValueError("Scoring weights must be >= 0.")
        return replace(base, **values)

    @property
    def factor_weights(self) -> dict[str, float]:
        return {
            "quality": self.quality,
            "acceptance": self.acceptance,
            "completion": self.completion,
            "capacity": self.capacity,
            "rate": self.rate,
        }


# -----------------------
# Outputs
# -----------------------
@dataclass(frozen=True)
class MatchWarning:
    code: str
    message: str

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class ProviderMatchResult:
    capability_id: str
    provider_id: str
    provider_name: str = ""
    provider_kind: str = ""
    score: float = 0.0
    eligible: bool = False
    factor_scores: tuple[tuple[str, float], ...] = ()
    special_bonus: float = 0.0
    is_preferred: bool = False
    rank_score: float = 0.0
    matched_capabilities: tuple[str, ...] = ()
    warnings: tuple[MatchWarning, ...] = ()
    exclusion_reasons: tuple[str, ...] = ()
    available_hours: float = 0.0
    utilization_pct: float = 0.0
    estimated_cost: Optional[float] = None
    fault: Optional[str] = None

    @property
    def candidate_id(self) -> str:
        return self.capability_id

    def to_dict(self) -> dict:
        return {
            "capability_id": self.capability_id,
            "provider_id": self.provider_id,
            "provider_name": self.provider_name,
            "provider_kind": self.provider_kind,
            "score": self.score,
            "eligible": self.eligible,
            "factor_scores": dict(self.factor_scores),
            "special_bonus": self.special_bonus,
            "is_preferred": self.is_preferred,
            "rank_score": self.rank_score,
            "matched_capabilities": list(self.matched_capabilities),
            "warnings": [w.to_dict() for w in self.warnings],
            "exclusion_reasons": list(self.exclusion_reasons),
            "available_hours": self.available_hours,
            "utilization_pct": self.utilization_pct,
            "estimated_cost": self.estimated_cost,
            "fault": self.fault,
        }


@dataclass(frozen=True)
class ProviderRanking:
    ranked: tuple[ProviderMatchResult, ...]
    results: tuple[ProviderMatchResult, ...]  # ranked first, then excluded/faulted

    @property
    def outcome(self) -> RankingOutcome:
        return resolve_outcome(self.ranked, self.results)

    @property
    def best(self) -> Optional[ProviderMatchResult]:
        return self.ranked[0] if self.ranked else None


# -----------------------
# Helpers
# -----------------------
def weekday_index(dt: datetime) -> int:
    """0=Sunday .. 6=Saturday (the convention stored in available_days)."""
    return dt.isoweekday() % 7


def normalize_postal(code: Optional[str]) -> str:
    return "".join((code or "").split()).upper()


def effective_rate(spec: CapabilitySpec, *, is_weekend: bool = False, is_holiday: bool = False) -> Optional[float]:
    base = spec.visit_rate if spec.visit_rate is not None else spec.hourly_rate
    if base is None:
        return None
    modifier = 1.0
    mods = spec.rate_modifiers or {}
    if is_weekend and "weekend" in mods:
        modifier = float(mods["weekend"])
    if is_holiday and "holiday" in mods:
        modifier = max(modifier, float(mods["holiday"]))
    return float(base) * modifier


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _pct(value: Optional[float]) -> float:
    return _clamp(float(value)) if value is not None else 0.0


# -----------------------
# Matcher
# -----------------------
class ProviderMatcher:
    """
    Rank provider capabilities for a single service request.

    Hard filters exclude a candidate outright (kept in `results` with
    exclusion_reasons). Survivors are scored on quality, acceptance,
    completion, capacity headroom and rate competitiveness (each 0-100,
    weighted average), plus a capped bonus for requested special
    capabilities, so scores run 0-100 plus at most special_bonus_cap.
    Rate median and percentile come from every candidate of the requested
    service type, including the filtered ones. The patient's preferred
    provider is ordered by score + preferred_provider_boost (rank_score).
    Soft problems become warnings, never exclusions.

    Pure: inputs are immutable snapshots and nothing is written.
    """

    def __init__(
        self,
        weights: Optional[ScoringWeights] = None,
        *,
        high_utilization_pct: float = 80.0,
        rate_warning_percentile: int = 90,
        insurance_warning_days: int = 30,
        low_metric_threshold: float = 70.0,
    ):
        if not 1 <= rate_warning_percentile <= 99:
            raise ValueError("rate_warning_percentile must be between 1 and 99.")
        self.weights = weights or ScoringWeights()
        self.high_utilization_pct = high_utilization_pct
        self.rate_warning_percentile = rate_warning_percentile
        self.insurance_warning_days = insurance_warning_days
        self.low_metric_threshold = low_metric_threshold

    def find_matches(
        self,
        request: ServiceRequest,
        capabilities: Iterable[CapabilitySpec],
        *,
        now: Optional[datetime] = None,
    ) -> ProviderRanking:
        now = now or datetime.now(tz=request.requested_start.tzinfo)
        is_weekend = weekday_index(request.requested_start) in (0, 6)

        survivors: list[CapabilitySpec] = []
        excluded: list[ProviderMatchResult] = []
        hourly: dict[str, Optional[float]] = {}
        # category rates: every candidate of the requested service type, filtered or not
        pool_rates: list[float] = []

        for spec in capabilities:
            try:
                reasons = self._hard_filter(spec, request, now)
            except (EvaluationFault, TypeError, ValueError, ArithmeticError) as exc:
                logger.warning("Capability %s faulted during filtering: %s", spec.id, exc)
                excluded.append(self._faulted(spec, exc))
                continue

            try:
                rate = self._hourly_equivalent(spec, request, is_weekend=is_weekend)
            except (TypeError, ValueError, ArithmeticError) as exc:
                logger.warning("Capability %s faulted during pricing: %s", spec.id, exc)
                if not reasons:
                    excluded.append(self._faulted(spec, exc))
                    continue
                rate = None

            if rate is not None and str(spec.service_type_id) == str(request.service_type_id):
                pool_rates.append(rate)

            if reasons:
                excluded.append(
                    ProviderMatchResult(
                        capability_id=str(spec.id),
                        provider_id=str(spec.provider_id),
                        provider_name=spec.provider_name,
                        provider_kind=spec.provider_kind,
                        exclusion_reasons=tuple(reasons),
                        available_hours=spec.available_hours,
                        utilization_pct=spec.utilization_pct,
                    )
                )
            else:
                hourly[spec.id] = rate
                survivors.append(spec)

        rates = sorted(pool_rates)
        median_rate = statistics.median(rates) if rates else None
        rate_ceiling = None
        if len(rates) >= 2:
            rate_ceiling = statistics.quantiles(rates, n=100, method="inclusive")[self.rate_warning_percentile - 1]

        ranked: list[ProviderMatchResult] = []
        for spec in survivors:
            try:
                ranked.append(
                    self._score(
                        spec,
                        request,
                        now=now,
                        hourly_rate=hourly[spec.id],
                        median_rate=median_rate,
                        rate_ceiling=rate_ceiling,
                        is_weekend=is_weekend,
                    )
                )
            except (EvaluationFault, TypeError, ValueError, ArithmeticError) as exc:
                logger.warning("Capability %s faulted during scoring: %s", spec.id, exc)
                excluded.append(self._faulted(spec, exc))

        ranked.sort(key=lambda r: (-r.rank_score, -r.score, r.provider_id, r.capability_id))
        excluded.sort(key=lambda r: (r.provider_id, r.capability_id))
        return ProviderRanking(ranked=tuple(ranked), results=tuple(ranked) + tuple(excluded))

    # -----------------------
    # Hard filters
    # -----------------------
    def _hard_filter(self, spec: CapabilitySpec, request: ServiceRequest, now: datetime) -> list[str]:
        reasons: list[str] = []
        start = request.requested_start
        day = start.date()

        if not spec.is_active or not spec.provider_is_active:
            reasons.append("inactive")

        if str(spec.service_type_id) != str(request.service_type_id):
            reasons.append("service_type_mismatch")

        if spec.capability_effective_date and day < spec.capability_effective_date:
            reasons.append("not_yet_effective")
        if spec.capability_expiry_date and day > spec.capability_expiry_date:
            reasons.append("expired")

        if spec.available_days and weekday_index(start) not in spec.available_days:
            reasons.append("unavailable_day")

        end = start + timedelta(hours=float(request.estimated_hours))
        if spec.earliest_start_time and start.time() < spec.earliest_start_time:
            reasons.append("outside_time_window")
        elif spec.latest_end_time and (end.date() != day or end.time() > spec.latest_end_time):
            reasons.append("outside_time_window")

        if not self._covers_location(spec, request):
            reasons.append("outside_service_area")

        if spec.available_hours < float(request.estimated_hours):
            reasons.append("insufficient_capacity")

        notice_hours = (start - now).total_seconds() / 3600.0
        if notice_hours < (spec.min_notice_hours or 0):
            reasons.append("insufficient_notice")

        if request.required_skills - spec.staff_qualifications:
            reasons.append("missing_qualifications")

        if spec.provider_kind == "SSPO":
            if not spec.insurance_verified:
                reasons.append("insurance_unverified")
            elif spec.insurance_expiry_date and spec.insurance_expiry_date < day:
                reasons.append("insurance_expired")

        return reasons

    @staticmethod
    def _covers_location(spec: CapabilitySpec, request: ServiceRequest) -> bool:
        if not spec.service_areas and not spec.regions:
            return True
        postal = normalize_postal(request.postal_code)
        if postal and any(postal.startswith(normalize_postal(p)) for p in spec.service_areas if p):
            return True
        if request.region_code and request.region_code in spec.regions:
            return True
        return False

    # -----------------------
    # Scoring
    # -----------------------
    @staticmethod
    def _hourly_equivalent(spec: CapabilitySpec, request: ServiceRequest, *, is_weekend: bool) -> Optional[float]:
        rate = effective_rate(spec, is_weekend=is_weekend, is_holiday=request.is_holiday)
        if rate is None:
            return None
        if spec.visit_rate is not None:
            hours = float(request.estimated_hours) or 1.0
            return rate / hours
        return rate

    def _score(
        self,
        spec: CapabilitySpec,
        request: ServiceRequest,
        *,
        now: datetime,
        hourly_rate: Optional[float],
        median_rate: Optional[float],
        rate_ceiling: Optional[float],
        is_weekend: bool,
    ) -> ProviderMatchResult:
        w = self.weights
        max_hours = float(spec.max_weekly_hours)
        if max_hours <= 0:
            raise EvaluationFault("max_weekly_hours must be positive.", details={"capability_id": str(spec.id)})

        if hourly_rate is None or not median_rate:
            rate_score = 50.0
        else:
            rate_score = _clamp(50.0 + 50.0 * (median_rate - hourly_rate) / median_rate)

        factors = {
            "quality": _pct(spec.quality_score),
            "acceptance": _pct(spec.acceptance_rate),
            "completion": _pct(spec.completion_rate),
            "capacity": _clamp(spec.available_hours / max_hours * 100.0),
            "rate": rate_score,
        }

        total_weight = sum(w.factor_weights.values())
        base = (
            sum(factors[name] * weight for name, weight in w.factor_weights.items()) / total_weight
            if total_weight > 0
            else 0.0
        )

        requirements = request.requirements
        matched = tuple(sorted(requirements & spec.special_capabilities))
        bonus = min(w.special_bonus_cap, w.special_bonus_per_flag * len(matched))
        # base is 0-100; the bonus sits on top of it
        score = round(_clamp(base) + bonus, 2)

        is_preferred = bool(request.preferred_provider_id) and str(spec.provider_id) == str(
            request.preferred_provider_id
        )
        rank_score = round(score + (w.preferred_provider_boost if is_preferred else 0.0), 2)

        warnings = self._warnings(
            spec,
            request,
            now=now,
            hourly_rate=hourly_rate,
            rate_ceiling=rate_ceiling,
            missing=sorted(requirements - spec.special_capabilities),
        )

        return ProviderMatchResult(
            capability_id=str(spec.id),
            provider_id=str(spec.provider_id),
            provider_name=spec.provider_name,
            provider_kind=spec.provider_kind,
            score=score,
            eligible=True,
            factor_scores=tuple((k, round(v, 2)) for k, v in factors.items()),
            special_bonus=round(bonus, 2),
            is_preferred=is_preferred,
            rank_score=rank_score,
            matched_capabilities=matched,
            warnings=tuple(warnings),
            available_hours=spec.available_hours,
            utilization_pct=spec.utilization_pct,
            estimated_cost=self._estimated_cost(spec, request, is_weekend=is_weekend),
        )

    @staticmethod
    def _estimated_cost(spec: CapabilitySpec, request: ServiceRequest, *, is_weekend: bool) -> Optional[float]:
        rate = effective_rate(spec, is_weekend=is_weekend, is_holiday=request.is_holiday)
        if rate is None:
            return None
        if spec.visit_rate is not None:
            return round(rate, 2)
        return round(rate * float(request.estimated_hours), 2)

    def _warnings(
        self,
        spec: CapabilitySpec,
        request: ServiceRequest,
        *,
        now: datetime,
        hourly_rate: Optional[float],
        rate_ceiling: Optional[float],
        missing: Sequence[str],
    ) -> list[MatchWarning]:
        out: list[MatchWarning] = []

        if spec.utilization_pct > self.high_utilization_pct:
            out.append(MatchWarning("HIGH_UTILIZATION", f"Provider is at {spec.utilization_pct}% capacity this week"))

        if rate_ceiling is not None and hourly_rate is not None and hourly_rate > rate_ceiling:
            out.append(
                MatchWarning(
                    "RATE_ABOVE_PERCENTILE",
                    f"Rate {hourly_rate:.2f}/h is above the {self.rate_warning_percentile}th percentile "
                    f"({rate_ceiling:.2f}/h) for this service",
                )
            )

        if spec.quality_score is not None and spec.quality_score < self.low_metric_threshold:
            out.append(MatchWarning("LOW_QUALITY_SCORE", f"Quality score ({spec.quality_score}) is below recommended threshold"))

        if spec.acceptance_rate is not None and spec.acceptance_rate < self.low_metric_threshold:
            out.append(
                MatchWarning(
                    "LOW_ACCEPTANCE_RATE",
                    f"Acceptance rate ({spec.acceptance_rate}%) may result in declined requests",
                )
            )

        if spec.insurance_expiry_date:
            days_left = (spec.insurance_expiry_date - now.date()).days
            if 0 < days_left <= self.insurance_warning_days:
                out.append(MatchWarning("INSURANCE_EXPIRING", f"Insurance expires in {days_left} days"))

        for req in missing:
            out.append(MatchWarning("MISSING_SPECIAL_CAPABILITY", f"Provider does not list '{req}'"))

        return out

    @staticmethod
    def _faulted(spec: CapabilitySpec, exc: Exception) -> ProviderMatchResult:
        return ProviderMatchResult(
            capability_id=str(spec.id),
            provider_id=str(spec.provider_id),
            provider_name=spec.provider_name,
            provider_kind=spec.provider_kind,
            exclusion_reasons=("fault",),
            fault=f"{type(exc).__name__}: {exc}",
        )
