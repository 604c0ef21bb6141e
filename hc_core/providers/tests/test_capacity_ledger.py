# hc_core/providers/tests/test_capacity_ledger.py
import threading
from decimal import Decimal

import pytest
from django.core.management import call_command
from django.db import IntegrityError, connection, transaction

from hc_core.common.errors import CapacityExhausted
from hc_core.providers.models import AssignmentStatus, ProviderCapability, ServiceAssignment
from hc_core.providers.selectors import capability_to_spec, get_capability, load_capability_specs
from hc_core.providers.services import AssignmentService, CapacityLedger

pytestmark = pytest.mark.django_db

requires_postgres = pytest.mark.skipif(
    connection.vendor != "postgresql", reason="row-level locking needs PostgreSQL"
)


def test_reserve_within_headroom(make_capability):
    cap = make_capability(current_utilization_hours=Decimal("10.00"))
    updated = CapacityLedger.reserve_hours(capability_id=cap.id, hours="2.5")
    assert updated.current_utilization_hours == Decimal("12.50")


def test_reserve_beyond_headroom_is_retryable_and_writes_nothing(make_capability):
    cap = make_capability(current_utilization_hours=Decimal("38.00"), max_weekly_hours=Decimal("40.00"))

    with pytest.raises(CapacityExhausted) as exc:
        CapacityLedger.reserve_hours(capability_id=cap.id, hours=5)

    assert exc.value.retryable is True
    assert exc.value.as_dict()["code"] == "capacity_exhausted"
    assert exc.value.details["available_hours"] == "2.00"
    cap.refresh_from_db()
    assert cap.current_utilization_hours == Decimal("38.00")


def test_sequential_commits_stop_at_max(make_capability):
    cap = make_capability(max_weekly_hours=Decimal("40.00"))

    committed, rejected = [], []
    for hours in [12, 12, 12, 12, 4, 1]:
        try:
            CapacityLedger.reserve_hours(capability_id=cap.id, hours=hours)
            committed.append(hours)
        except CapacityExhausted:
            rejected.append(hours)

    cap.refresh_from_db()
    assert committed == [12, 12, 12, 4]
    assert rejected == [12, 1]
    assert cap.current_utilization_hours == Decimal("40.00")


def test_exact_fit_is_allowed(make_capability):
    cap = make_capability(current_utilization_hours=Decimal("35.00"))
    assert CapacityLedger.reserve_hours(capability_id=cap.id, hours=5).current_utilization_hours == Decimal("40.00")


@pytest.mark.parametrize("hours", [0, -1, "abc", None, "0.001", Decimal("0.004")])
def test_reserve_rejects_invalid_hours(make_capability, hours):
    cap = make_capability()
    with pytest.raises(ValueError):
        CapacityLedger.reserve_hours(capability_id=cap.id, hours=hours)


def test_sub_hundredth_hours_reserve_nothing(make_capability):
    cap = make_capability(current_utilization_hours=Decimal("5.00"))
    with pytest.raises(ValueError):
        CapacityLedger.reserve_hours(capability_id=cap.id, hours=0.001)
    cap.refresh_from_db()
    assert cap.current_utilization_hours == Decimal("5.00")


def test_release_never_goes_negative(make_capability):
    cap = make_capability(current_utilization_hours=Decimal("3.00"))
    assert CapacityLedger.release_hours(capability_id=cap.id, hours=5).current_utilization_hours == Decimal("0.00")


def test_database_rejects_utilization_above_max(make_capability):
    cap = make_capability()
    with pytest.raises(IntegrityError):
        with transaction.atomic():
            ProviderCapability.objects.filter(id=cap.id).update(current_utilization_hours=Decimal("41.00"))


def test_assignment_reserves_and_cancel_releases(make_capability, patient_id, visit_start):
    cap = make_capability(current_utilization_hours=Decimal("30.00"))

    assignment = AssignmentService.create_assignment(
        capability_id=cap.id,
        patient_id=patient_id,
        scheduled_start=visit_start,
        estimated_hours=Decimal("4"),
    )
    cap.refresh_from_db()
    assert assignment.status == AssignmentStatus.SCHEDULED
    assert cap.current_utilization_hours == Decimal("34.00")

    AssignmentService.cancel_assignment(assignment_id=assignment.id)
    AssignmentService.cancel_assignment(assignment_id=assignment.id)  # second cancel is a no-op
    cap.refresh_from_db()
    assert cap.current_utilization_hours == Decimal("30.00")


def test_failed_reservation_creates_no_assignment(make_capability, patient_id, visit_start):
    cap = make_capability(current_utilization_hours=Decimal("38.00"))

    with pytest.raises(CapacityExhausted):
        AssignmentService.create_assignment(
            capability_id=cap.id,
            patient_id=patient_id,
            scheduled_start=visit_start,
            estimated_hours=5,
        )
    assert ServiceAssignment.objects.count() == 0


def test_inactive_capability_cannot_be_assigned(make_capability, patient_id, visit_start):
    cap = make_capability(is_active=False)
    with pytest.raises(ValueError):
        AssignmentService.create_assignment(
            capability_id=cap.id, patient_id=patient_id, scheduled_start=visit_start, estimated_hours=1
        )


def test_reset_weekly_utilization_command(make_capability, make_provider):
    a = make_capability(current_utilization_hours=Decimal("20.00"))
    b = make_capability(provider=make_provider(name="Other"), current_utilization_hours=Decimal("7.50"))

    call_command("reset_weekly_utilization")

    a.refresh_from_db()
    b.refresh_from_db()
    assert a.current_utilization_hours == Decimal("0.00")
    assert b.current_utilization_hours == Decimal("0.00")


def test_capability_maps_to_matcher_snapshot(make_capability, service_type):
    cap = make_capability(
        can_handle_dementia=True,
        bilingual_french=True,
        languages_available=["PA"],
        available_days=[1, 2, 3],
        service_areas=["M5V"],
    )
    spec = capability_to_spec(get_capability(capability_id=cap.id))

    assert spec.special_capabilities == frozenset({"dementia", "language:fr", "language:pa"})
    assert spec.available_days == frozenset({1, 2, 3})
    assert spec.max_weekly_hours == 40.0
    assert spec.provider_kind == "SPO"
    assert [s.id for s in load_capability_specs(service_type_id=service_type.id)] == [str(cap.id)]


def test_reset_can_target_one_service_type(make_capability, nursing_service_type):
    psw = make_capability(current_utilization_hours=Decimal("20.00"))
    nursing = make_capability(service_type=nursing_service_type, current_utilization_hours=Decimal("8.00"))

    call_command("reset_weekly_utilization", "--service-type", "nursing")

    psw.refresh_from_db()
    nursing.refresh_from_db()
    assert psw.current_utilization_hours == Decimal("20.00")
    assert nursing.current_utilization_hours == Decimal("0.00")


@requires_postgres
@pytest.mark.django_db(transaction=True)
def test_parallel_writers_never_overbook(make_capability):
    cap = make_capability(max_weekly_hours=Decimal("40.00"))
    writers = 8
    barrier = threading.Barrier(writers)
    lock = threading.Lock()
    outcomes = []

    def reserve():
        outcome = "error"
        try:
            barrier.wait()
            CapacityLedger.reserve_hours(capability_id=cap.id, hours=6)
            outcome = "committed"
        except CapacityExhausted:
            outcome = "rejected"
        finally:
            connection.close()
            with lock:
                outcomes.append(outcome)

    threads = [threading.Thread(target=reserve) for _ in range(writers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    cap.refresh_from_db()
    assert outcomes.count("committed") == 6
    assert outcomes.count("rejected") == 2
    assert cap.current_utilization_hours == Decimal("36.00")
