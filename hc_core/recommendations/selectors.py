# hc_core/recommendations/selectors.py
from __future__ import annotations

from datetime import datetime
from typing import Iterator, Optional
from uuid import UUID

from django.db.models import Count, QuerySet

from hc_core.recommendations.models import RecommendationLog, RecommendationLogEntry, RecommendationOutcome


def logs_for_subject(*, subject_id: UUID, kind: Optional[str] = None) -> QuerySet[RecommendationLog]:
    qs = RecommendationLog.objects.filter(subject_id=subject_id)
    if kind:
        qs = qs.filter(kind=kind)
    return qs.order_by("-created_at", "-id")


def get_log(*, log_id: UUID) -> RecommendationLog:
    return RecommendationLog.objects.prefetch_related("entries").get(id=log_id)


def _filtered_logs(*, kind: Optional[str], since: Optional[datetime]) -> QuerySet[RecommendationLog]:
    qs = RecommendationLog.objects.all()
    if kind:
        qs = qs.filter(kind=kind)
    if since:
        qs = qs.filter(created_at__gte=since)
    return qs


def acceptance_summary(*, kind: Optional[str] = None, since: Optional[datetime] = None) -> dict:
    """
    Outcome counts plus:
      acceptance_rate   = (accepted + modified) / (accepted + modified + rejected)
      modification_rate = modified / (accepted + modified)
    Both are percentages rounded to one decimal; 0 when the denominator is 0.
    """
    rows = (
        _filtered_logs(kind=kind, since=since)
        .values("outcome")
        .annotate(n=Count("id"))
        .order_by()
    )
    by_outcome = {r["outcome"]: r["n"] for r in rows}

    accepted = by_outcome.get(RecommendationOutcome.ACCEPTED, 0)
    modified = by_outcome.get(RecommendationOutcome.MODIFIED, 0)
    rejected = by_outcome.get(RecommendationOutcome.REJECTED, 0)
    expired = by_outcome.get(RecommendationOutcome.EXPIRED, 0)
    pending = by_outcome.get(RecommendationOutcome.PENDING, 0)

    actioned = accepted + modified
    decided = actioned + rejected

    return {
        "total": sum(by_outcome.values()),
        "accepted": accepted,
        "modified": modified,
        "rejected": rejected,
        "expired": expired,
        "pending": pending,
        "acceptance_rate": round(actioned / decided * 100, 1) if decided else 0,
        "modification_rate": round(modified / actioned * 100, 1) if actioned else 0,
    }


def export_entries(*, kind: Optional[str] = None, since: Optional[datetime] = None) -> Iterator[dict]:
    """
    Flat rows (one per evaluated candidate) for the learning-loop export,
    ordered by log creation then position.
    """
    qs = (
        RecommendationLogEntry.objects.filter(log__in=_filtered_logs(kind=kind, since=since))
        .select_related("log")
        .order_by("log__created_at", "log_id", "position")
    )
    for entry in qs.iterator():
        log = entry.log
        yield {
            "log_id": str(log.id),
            "kind": log.kind,
            "subject_id": str(log.subject_id),
            "logged_at": log.created_at.isoformat(),
            "ranking_outcome": log.ranking_outcome,
            "candidate_id": entry.candidate_id,
            "position": entry.position,
            "rank": entry.rank,
            "score": float(entry.score),
            "eligible": entry.eligible,
            "was_selected": entry.was_selected,
            "outcome": log.outcome,
            "final_candidate_id": log.final_candidate_id or None,
            "was_final": bool(log.final_candidate_id) and log.final_candidate_id == entry.candidate_id,
            "time_to_decision_seconds": log.time_to_decision_seconds,
            "evaluation_results": entry.evaluation_results,
        }
