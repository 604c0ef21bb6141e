# hc_core/recommendations/services.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, Sequence, Union
from uuid import UUID

from django.db import transaction
from django.utils import timezone

from hc_core.bundles.matcher import BundleTemplateSpec, MatchResult, TemplateMatcher, TemplateRanking
from hc_core.bundles.selectors import configured_template_matcher, load_current_template_specs
from hc_core.clinical.attributes import AttributeBag
from hc_core.common.errors import OutcomeAlreadyRecorded
from hc_core.common.outcomes import RankingOutcome, resolve_outcome
from hc_core.providers.matcher import (
    CapabilitySpec,
    ProviderMatcher,
    ProviderMatchResult,
    ProviderRanking,
    ServiceRequest,
)
from hc_core.providers.selectors import (
    configured_provider_matcher,
    load_capability_specs,
    with_service_type_skills,
)
from hc_core.recommendations.models import (
    RecommendationKind,
    RecommendationLog,
    RecommendationLogEntry,
    RecommendationOutcome,
)

logger = logging.getLogger(__name__)

Candidate = Union[MatchResult, ProviderMatchResult]

_SCORE = Decimal("0.01")


class RecommendationLogger:
    """
    Append-only audit of recommendations.
    - log: header + one entry per candidate, written in a single transaction
      (if it fails the recommendation counts as not issued)
    - record_outcome: closes the loop exactly once per log
    Identical inputs logged twice produce two logs; nothing is deduplicated.
    """

    @staticmethod
    @transaction.atomic
    def log(
        *,
        kind: str,
        subject_id: UUID,
        candidates: Sequence[Candidate],
        selected_candidate_id: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
        ranking_outcome: Optional[RankingOutcome] = None,
    ) -> RecommendationLog:
        if kind not in RecommendationKind.values:
            raise ValueError(f"Unknown recommendation kind: {kind!r}")

        ids = [str(c.candidate_id) for c in candidates]
        if selected_candidate_id is not None and str(selected_candidate_id) not in ids:
            raise ValueError("selected_candidate_id is not among the logged candidates")

        if ranking_outcome is None:
            ranking_outcome = resolve_outcome([c for c in candidates if c.eligible], candidates)

        log = RecommendationLog.objects.create(
            kind=kind,
            subject_id=subject_id,
            ranking_outcome=RankingOutcome(ranking_outcome).value,
            context=context or {},
            candidate_count=len(candidates),
            selected_candidate_id=str(selected_candidate_id or ""),
        )

        entries = []
        rank = 0
        for position, candidate in enumerate(candidates):
            if candidate.eligible:
                rank += 1
            entries.append(
                RecommendationLogEntry(
                    log=log,
                    position=position,
                    rank=rank if candidate.eligible else None,
                    candidate_id=str(candidate.candidate_id),
                    score=Decimal(str(candidate.score)).quantize(_SCORE),
                    eligible=candidate.eligible,
                    was_selected=str(candidate.candidate_id) == str(selected_candidate_id),
                    evaluation_results=candidate.to_dict(),
                )
            )
        RecommendationLogEntry.objects.bulk_create(entries)

        logger.info(
            "Recommendation logged: log=%s kind=%s subject=%s candidates=%s outcome=%s",
            log.id,
            kind,
            subject_id,
            len(candidates),
            log.ranking_outcome,
        )
        return log

    @staticmethod
    @transaction.atomic
    def record_outcome(
        *,
        log_id: UUID,
        outcome: str,
        final_candidate_id: Optional[str] = None,
        modifications: Optional[dict] = None,
        override_reason: str = "",
        decided_by_user_id: Optional[int] = None,
    ) -> RecommendationLog:
        if outcome not in RecommendationOutcome.values or outcome == RecommendationOutcome.PENDING:
            raise ValueError(f"Invalid outcome: {outcome!r}")
        if outcome == RecommendationOutcome.MODIFIED and not modifications:
            raise ValueError("A modified outcome must describe its modifications")

        log = RecommendationLog.objects.select_for_update().get(id=log_id)
        if log.outcome != RecommendationOutcome.PENDING:
            raise OutcomeAlreadyRecorded(
                "Outcome already recorded for this recommendation.",
                details={"log_id": str(log_id), "outcome": log.outcome},
            )

        if final_candidate_id is None and outcome == RecommendationOutcome.ACCEPTED:
            final_candidate_id = log.selected_candidate_id or None

        decided_at = timezone.now()
        log.outcome = outcome
        log.final_candidate_id = str(final_candidate_id or "")
        log.modifications = modifications
        log.override_reason = override_reason or ""
        log.decided_by_user_id = decided_by_user_id
        log.decided_at = decided_at
        log.time_to_decision_seconds = max(0, int((decided_at - log.created_at).total_seconds()))
        log.save(update_fields=list(RecommendationLog.OUTCOME_FIELDS))

        logger.info("Recommendation outcome recorded: log=%s outcome=%s", log.id, outcome)
        return log

    @staticmethod
    @transaction.atomic
    def expire_pending(*, older_than: timedelta, now: Optional[datetime] = None) -> int:
        now = now or timezone.now()
        count = RecommendationLog.objects.filter(
            outcome=RecommendationOutcome.PENDING,
            created_at__lt=now - older_than,
        ).update(outcome=RecommendationOutcome.EXPIRED, decided_at=now, updated_at=now)
        if count:
            logger.info("Expired %s pending recommendations", count)
        return count


@dataclass(frozen=True)
class TemplateRecommendation:
    ranking: TemplateRanking
    log: RecommendationLog


@dataclass(frozen=True)
class ProviderRecommendation:
    ranking: ProviderRanking
    log: RecommendationLog


def _request_context(request: ServiceRequest) -> dict:
    return {
        "service_type_id": str(request.service_type_id),
        "requested_start": request.requested_start.isoformat(),
        "estimated_hours": float(request.estimated_hours),
        "postal_code": request.postal_code,
        "region_code": request.region_code,
        "required_capabilities": sorted(request.requirements),
        "is_holiday": request.is_holiday,
        "required_skills": sorted(request.required_skills),
        "preferred_provider_id": request.preferred_provider_id,
    }


class RecommendationService:
    """
    Rank + log in one call. The log write is synchronous with the ranking;
    a ranking that could not be logged is not returned.
    """

    @staticmethod
    @transaction.atomic
    def recommend_templates(
        *,
        subject_id: UUID,
        bag: AttributeBag,
        templates: Optional[Sequence[BundleTemplateSpec]] = None,
        matcher: Optional[TemplateMatcher] = None,
    ) -> TemplateRecommendation:
        if templates is None:
            templates = load_current_template_specs(auto_recommend_only=True)
        matcher = matcher or configured_template_matcher()

        ranking = matcher.rank(bag, templates)
        log = RecommendationLogger.log(
            kind=RecommendationKind.BUNDLE_TEMPLATE,
            subject_id=subject_id,
            candidates=ranking.results,
            selected_candidate_id=ranking.best.candidate_id if ranking.best else None,
            context={"attributes": bag.to_dict()},
            ranking_outcome=ranking.outcome,
        )
        return TemplateRecommendation(ranking=ranking, log=log)

    @staticmethod
    @transaction.atomic
    def recommend_providers(
        *,
        subject_id: UUID,
        request: ServiceRequest,
        capabilities: Optional[Sequence[CapabilitySpec]] = None,
        matcher: Optional[ProviderMatcher] = None,
        now: Optional[datetime] = None,
    ) -> ProviderRecommendation:
        request = with_service_type_skills(request)
        if capabilities is None:
            capabilities = load_capability_specs(service_type_id=request.service_type_id)
        matcher = matcher or configured_provider_matcher()

        ranking = matcher.find_matches(request, capabilities, now=now)
        log = RecommendationLogger.log(
            kind=RecommendationKind.PROVIDER,
            subject_id=subject_id,
            candidates=ranking.results,
            selected_candidate_id=ranking.best.candidate_id if ranking.best else None,
            context={"request": _request_context(request)},
            ranking_outcome=ranking.outcome,
        )
        return ProviderRecommendation(ranking=ranking, log=log)
