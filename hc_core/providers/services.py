# hc_core/providers/services.py
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
from uuid import UUID

from django.db import transaction
from django.db.models import DecimalField, F, Value
from django.db.models.functions import Greatest
from django.utils.timezone import now

from hc_core.common.errors import CapacityExhausted
from hc_core.providers.models import (
    AssignmentStatus,
    ProviderCapability,
    ServiceAssignment,
)

logger = logging.getLogger(__name__)

_HOURS = Decimal("0.01")


def _to_hours(value) -> Decimal:
    """
    Accepts Decimal / str / int / float; quantizes to hundredths.
    """
    try:
        hours = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise ValueError(f"Invalid hours value: {value!r}")
    if not hours.is_finite():
        raise ValueError("Hours must be a positive number.")
    hours = hours.quantize(_HOURS)
    if hours <= 0:
        raise ValueError("Hours must be a positive number.")
    return hours


class CapacityLedger:
    """
    The only writer of ProviderCapability.current_utilization_hours.

    reserve_hours is a compare-and-update: the row is locked (select_for_update
    where the backend supports it) and the UPDATE itself carries the headroom
    predicate, so two writers racing on the same row can never push the total
    past max_weekly_hours. The loser gets CapacityExhausted (retryable).
    """

    @staticmethod
    @transaction.atomic
    def reserve_hours(*, capability_id: UUID, hours) -> ProviderCapability:
        hours = _to_hours(hours)

        cap = ProviderCapability.objects.select_for_update().get(id=capability_id)

        updated = ProviderCapability.objects.filter(
            id=capability_id,
            current_utilization_hours__lte=F("max_weekly_hours") - hours,
        ).update(
            current_utilization_hours=F("current_utilization_hours") + hours,
            updated_at=now(),
        )

        if updated == 0:
            cap.refresh_from_db(fields=["current_utilization_hours", "max_weekly_hours"])
            logger.info(
                "Capacity exhausted for capability %s: requested=%s available=%s",
                capability_id,
                hours,
                cap.available_hours,
            )
            raise CapacityExhausted(
                "Provider capacity exhausted for this service type.",
                details={
                    "capability_id": str(capability_id),
                    "requested_hours": str(hours),
                    "available_hours": str(cap.available_hours),
                    "max_weekly_hours": str(cap.max_weekly_hours),
                },
            )

        cap.refresh_from_db(fields=["current_utilization_hours", "updated_at"])
        return cap

    @staticmethod
    @transaction.atomic
    def release_hours(*, capability_id: UUID, hours) -> ProviderCapability:
        """
        Give hours back (assignment cancelled). Never drops below zero.
        """
        hours = _to_hours(hours)

        cap = ProviderCapability.objects.select_for_update().get(id=capability_id)
        ProviderCapability.objects.filter(id=capability_id).update(
            current_utilization_hours=Greatest(
                F("current_utilization_hours") - hours,
                Value(Decimal("0.00")),
                output_field=DecimalField(max_digits=7, decimal_places=2),
            ),
            updated_at=now(),
        )
        cap.refresh_from_db(fields=["current_utilization_hours", "updated_at"])
        return cap

    @staticmethod
    @transaction.atomic
    def reset_weekly_utilization(*, service_type_id: Optional[UUID] = None) -> int:
        """
        Start-of-week rollover. Returns number of capability rows reset.
        """
        qs = ProviderCapability.objects.all()
        if service_type_id:
            qs = qs.filter(service_type_id=service_type_id)
        count = qs.update(current_utilization_hours=Decimal("0.00"), updated_at=now())
        logger.info("Weekly utilization reset for %s capabilities", count)
        return count


class AssignmentService:
    """
    Assignment write-model. Capacity is reserved in the same transaction as
    the assignment row, so either both land or neither does.
    """

    @staticmethod
    @transaction.atomic
    def create_assignment(
        *,
        capability_id: UUID,
        patient_id: UUID,
        scheduled_start: datetime,
        estimated_hours,
        recommendation_log_id: Optional[UUID] = None,
        created_by_user_id: Optional[int] = None,
    ) -> ServiceAssignment:
        hours = _to_hours(estimated_hours)

        cap = ProviderCapability.objects.select_related("provider").get(id=capability_id)
        if not cap.is_active or not cap.provider.is_active:
            raise ValueError("Capability is inactive.")

        CapacityLedger.reserve_hours(capability_id=capability_id, hours=hours)

        return ServiceAssignment.objects.create(
            capability_id=capability_id,
            patient_id=patient_id,
            scheduled_start=scheduled_start,
            estimated_hours=hours,
            recommendation_log_id=recommendation_log_id,
            created_by_user_id=created_by_user_id,
        )

    @staticmethod
    @transaction.atomic
    def cancel_assignment(*, assignment_id: UUID) -> ServiceAssignment:
        assignment = ServiceAssignment.objects.select_for_update().get(id=assignment_id)

        if assignment.status != AssignmentStatus.SCHEDULED:
            return assignment

        assignment.status = AssignmentStatus.CANCELLED
        assignment.cancelled_at = now()
        assignment.save(update_fields=["status", "cancelled_at", "updated_at"])

        CapacityLedger.release_hours(capability_id=assignment.capability_id, hours=assignment.estimated_hours)
        return assignment
