# hc_core/recommendations/tests/test_logger.py
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from django.core.management import call_command
from django.utils import timezone

from hc_core.bundles.matcher import BundleTemplateSpec, TemplateMatcher
from hc_core.clinical.attributes import AttributeBag
from hc_core.common.errors import ImmutableRecordError, OutcomeAlreadyRecorded
from hc_core.common.outcomes import RankingOutcome
from hc_core.providers.matcher import ServiceRequest
from hc_core.providers.services import AssignmentService
from hc_core.recommendations.models import (
    RecommendationKind,
    RecommendationLog,
    RecommendationLogEntry,
    RecommendationOutcome,
)
from hc_core.recommendations.selectors import acceptance_summary, export_entries, get_log, logs_for_subject
from hc_core.recommendations.services import RecommendationLogger, RecommendationService

pytestmark = pytest.mark.django_db

HIGH_NEEDS = AttributeBag({"maple_score": 4, "adl_hierarchy": 3})


@pytest.fixture
def seeded():
    call_command("seed_bundle_templates")


def log_once(subject_id):
    ranking = TemplateMatcher().rank(HIGH_NEEDS, [BundleTemplateSpec(id="t-1", code="empty")])
    return RecommendationLogger.log(
        kind=RecommendationKind.BUNDLE_TEMPLATE,
        subject_id=subject_id,
        candidates=ranking.results,
        selected_candidate_id="t-1",
        context={"attributes": HIGH_NEEDS.to_dict()},
    )


def test_identical_inputs_produce_distinct_rows(patient_id):
    first = log_once(patient_id)
    second = log_once(patient_id)

    assert first.id != second.id
    assert RecommendationLog.objects.filter(subject_id=patient_id).count() == 2
    assert RecommendationLogEntry.objects.count() == 2
    assert set(logs_for_subject(subject_id=patient_id)) == {first, second}


def test_selected_candidate_must_be_logged(patient_id):
    with pytest.raises(ValueError):
        RecommendationLogger.log(
            kind=RecommendationKind.PROVIDER,
            subject_id=patient_id,
            candidates=[],
            selected_candidate_id="nope",
        )


def test_outcome_is_recorded_once(patient_id):
    log = log_once(patient_id)

    decided = RecommendationLogger.record_outcome(
        log_id=log.id, outcome=RecommendationOutcome.ACCEPTED, decided_by_user_id=3
    )
    assert decided.outcome == RecommendationOutcome.ACCEPTED
    assert decided.final_candidate_id == "t-1"
    assert decided.time_to_decision_seconds is not None

    with pytest.raises(OutcomeAlreadyRecorded):
        RecommendationLogger.record_outcome(log_id=log.id, outcome=RecommendationOutcome.REJECTED)


def test_invalid_outcomes_rejected(patient_id):
    log = log_once(patient_id)
    with pytest.raises(ValueError):
        RecommendationLogger.record_outcome(log_id=log.id, outcome=RecommendationOutcome.PENDING)
    with pytest.raises(ValueError):
        RecommendationLogger.record_outcome(log_id=log.id, outcome=RecommendationOutcome.MODIFIED)


def test_logs_are_append_only(patient_id):
    log = log_once(patient_id)

    log.context = {"rewritten": True}
    with pytest.raises(ImmutableRecordError):
        log.save()
    with pytest.raises(ImmutableRecordError):
        log.delete()

    entry = log.entries.get()
    entry.score = Decimal("1.00")
    with pytest.raises(ImmutableRecordError):
        entry.save()


def test_recommend_templates_ranks_and_logs(seeded, patient_id):
    result = RecommendationService.recommend_templates(subject_id=patient_id, bag=HIGH_NEEDS)

    log = get_log(log_id=result.log.id)
    best = result.ranking.best
    assert log.ranking_outcome == RankingOutcome.MATCHED
    assert log.selected_candidate_id == best.template_id
    assert log.context["attributes"] == {"adl_hierarchy": 3, "maple_score": 4}

    entries = list(log.entries.all())
    assert [e.rank for e in entries] == [1, None, None]
    assert entries[0].was_selected is True
    assert entries[0].score == Decimal("100.00")
    assert entries[0].evaluation_results["code"] == "high-intensity"
    assert entries[1].evaluation_results["rule_trace"][0]["passed"] is False


def test_no_match_is_logged_as_terminal_outcome(seeded, patient_id):
    result = RecommendationService.recommend_templates(subject_id=patient_id, bag=AttributeBag({}))

    assert result.ranking.outcome is RankingOutcome.NO_MATCH
    assert result.log.ranking_outcome == "NO_MATCH"
    assert result.log.selected_candidate_id == ""
    assert result.log.candidate_count == 3


def test_recommend_providers_then_assign(make_capability, make_provider, service_type, patient_id, visit_start, now):
    strong = make_capability(provider=make_provider(name="Strong"), quality_score=Decimal("98.00"))
    make_capability(provider=make_provider(name="Full"), current_utilization_hours=Decimal("39.00"))

    request = ServiceRequest(service_type_id=str(service_type.id), requested_start=visit_start, estimated_hours=2)
    result = RecommendationService.recommend_providers(subject_id=patient_id, request=request, now=now)

    assert [r.capability_id for r in result.ranking.ranked] == [str(strong.id)]
    assert result.log.kind == RecommendationKind.PROVIDER
    assert result.log.context["request"]["estimated_hours"] == 2.0
    assert result.log.entries.count() == 2

    AssignmentService.create_assignment(
        capability_id=strong.id,
        patient_id=patient_id,
        scheduled_start=visit_start,
        estimated_hours=2,
        recommendation_log_id=result.log.id,
    )
    decided = RecommendationLogger.record_outcome(log_id=result.log.id, outcome=RecommendationOutcome.ACCEPTED)
    assert decided.final_candidate_id == str(strong.id)


def test_acceptance_summary_and_export(patient_id):
    outcomes = [
        (RecommendationOutcome.ACCEPTED, None),
        (RecommendationOutcome.MODIFIED, {"frequency_per_week": 3}),
        (RecommendationOutcome.REJECTED, None),
    ]
    for outcome, modifications in outcomes:
        log = log_once(patient_id)
        RecommendationLogger.record_outcome(log_id=log.id, outcome=outcome, modifications=modifications)
    log_once(patient_id)

    summary = acceptance_summary(kind=RecommendationKind.BUNDLE_TEMPLATE)
    assert summary == {
        "total": 4,
        "accepted": 1,
        "modified": 1,
        "rejected": 1,
        "expired": 0,
        "pending": 1,
        "acceptance_rate": 66.7,
        "modification_rate": 50.0,
    }

    rows = list(export_entries())
    assert len(rows) == 4
    assert {r["outcome"] for r in rows} == {"ACCEPTED", "MODIFIED", "REJECTED", "PENDING"}
    assert all(r["candidate_id"] == "t-1" for r in rows)


def test_empty_summary():
    assert acceptance_summary()["acceptance_rate"] == 0


def test_expire_pending(patient_id):
    stale = log_once(patient_id)
    count = RecommendationLogger.expire_pending(older_than=timedelta(days=1), now=timezone.now() + timedelta(days=2))

    assert count == 1
    stale.refresh_from_db()
    assert stale.outcome == RecommendationOutcome.EXPIRED
    with pytest.raises(OutcomeAlreadyRecorded):
        RecommendationLogger.record_outcome(log_id=stale.id, outcome=RecommendationOutcome.ACCEPTED)


def test_unknown_subject_has_no_logs():
    assert not logs_for_subject(subject_id=uuid.uuid4()).exists()


def test_recommend_providers_applies_service_type_qualifications(
    make_capability, make_provider, service_type, patient_id, visit_start, now
):
    service_type.required_skills = ["psw_certificate"]
    service_type.save(update_fields=["required_skills"])
    qualified = make_capability(provider=make_provider(name="Certified"), staff_qualifications=["psw_certificate"])
    make_capability(provider=make_provider(name="Uncertified"), quality_score=Decimal("99.00"))

    request = ServiceRequest(
        service_type_id=str(service_type.id),
        requested_start=visit_start,
        estimated_hours=2,
        preferred_provider_id=str(qualified.provider_id),
    )
    result = RecommendationService.recommend_providers(subject_id=patient_id, request=request, now=now)

    assert [r.capability_id for r in result.ranking.ranked] == [str(qualified.id)]
    assert result.ranking.best.is_preferred is True
    assert result.ranking.results[-1].exclusion_reasons == ("missing_qualifications",)
    assert result.log.context["request"]["required_skills"] == ["psw_certificate"]
