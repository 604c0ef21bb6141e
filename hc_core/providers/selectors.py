# hc_core/providers/selectors.py
from __future__ import annotations

from dataclasses import replace
from typing import Optional
from uuid import UUID

from django.conf import settings
from django.db.models import QuerySet

from hc_core.providers.matcher import CapabilitySpec, ProviderMatcher, ScoringWeights, ServiceRequest
from hc_core.providers.models import ProviderCapability, ServiceType


def get_service_type_by_code(*, code: str) -> ServiceType:
    return ServiceType.objects.get(code=code)


def with_service_type_skills(request: ServiceRequest) -> ServiceRequest:
    """Fill required_skills from the service type unless the caller set them."""
    if request.required_skills:
        return request
    skills = ServiceType.objects.filter(id=request.service_type_id).values_list("required_skills", flat=True).first()
    return replace(request, required_skills=frozenset(str(s) for s in (skills or [])))


def candidate_capabilities_qs(*, service_type_id: UUID) -> QuerySet[ProviderCapability]:
    """
    Candidate pool for a service type. Only the cheap, index-backed filters
    are applied in SQL; the matcher owns every other hard filter so its
    exclusion reasons stay visible in the trace.
    """
    return (
        ProviderCapability.objects.filter(service_type_id=service_type_id)
        .select_related("provider")
        .order_by("provider_id", "id")
    )


def get_capability(*, capability_id: UUID) -> ProviderCapability:
    return ProviderCapability.objects.select_related("provider").get(id=capability_id)


def _opt_float(value) -> Optional[float]:
    return None if value is None else float(value)


def capability_to_spec(cap: ProviderCapability) -> CapabilitySpec:
    special: set[str] = set()
    if cap.can_handle_dementia:
        special.add("dementia")
    if cap.can_handle_palliative:
        special.add("palliative")
    if cap.can_handle_complex_care:
        special.add("complex_care")
    if cap.bilingual_french:
        special.add("language:fr")
    for lang in cap.languages_available or []:
        special.add(f"language:{str(lang).lower()}")

    provider = cap.provider
    return CapabilitySpec(
        id=str(cap.id),
        provider_id=str(cap.provider_id),
        provider_name=provider.name,
        provider_kind=provider.kind,
        provider_is_active=provider.is_active,
        service_type_id=str(cap.service_type_id),
        is_active=cap.is_active,
        max_weekly_hours=float(cap.max_weekly_hours),
        current_utilization_hours=float(cap.current_utilization_hours),
        min_notice_hours=cap.min_notice_hours,
        hourly_rate=_opt_float(cap.hourly_rate),
        visit_rate=_opt_float(cap.visit_rate),
        rate_modifiers=dict(cap.rate_modifiers or {}),
        service_areas=frozenset(str(a) for a in (cap.service_areas or [])),
        regions=frozenset(str(r) for r in (cap.regions or [])),
        available_days=frozenset(int(d) for d in (cap.available_days or [])),
        earliest_start_time=cap.earliest_start_time,
        latest_end_time=cap.latest_end_time,
        quality_score=_opt_float(cap.quality_score),
        acceptance_rate=_opt_float(cap.acceptance_rate),
        completion_rate=_opt_float(cap.completion_rate),
        special_capabilities=frozenset(special),
        staff_qualifications=frozenset(str(q) for q in (cap.staff_qualifications or [])),
        capability_effective_date=cap.capability_effective_date,
        capability_expiry_date=cap.capability_expiry_date,
        insurance_verified=cap.insurance_verified,
        insurance_expiry_date=cap.insurance_expiry_date,
    )


def load_capability_specs(*, service_type_id: UUID) -> list[CapabilitySpec]:
    return [capability_to_spec(c) for c in candidate_capabilities_qs(service_type_id=service_type_id)]


def configured_scoring_weights() -> ScoringWeights:
    return ScoringWeights.from_mapping(getattr(settings, "HC_PROVIDER_SCORING_WEIGHTS", None))


def configured_provider_matcher(weights: Optional[ScoringWeights] = None) -> ProviderMatcher:
    return ProviderMatcher(
        weights or configured_scoring_weights(),
        high_utilization_pct=float(getattr(settings, "HC_HIGH_UTILIZATION_PCT", 80)),
        rate_warning_percentile=int(getattr(settings, "HC_RATE_WARNING_PERCENTILE", 90)),
        insurance_warning_days=int(getattr(settings, "HC_INSURANCE_EXPIRY_WARNING_DAYS", 30)),
    )
