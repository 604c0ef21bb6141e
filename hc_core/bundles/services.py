# hc_core/bundles/services.py
from __future__ import annotations

import logging
from typing import Any, Optional
from uuid import UUID

from django.db import transaction
from django.db.models import Max
from django.utils import timezone

from hc_core.bundles.matcher import estimated_weekly_cost_cents
from hc_core.bundles.models import (
    BundleTemplate,
    BundleTemplateService,
    CarePlan,
    CarePlanStatus,
    EligibilityRule,
)
from hc_core.bundles.selectors import service_line_to_spec
from hc_core.common.errors import ConfigurationError, ImmutableRecordError
from hc_core.providers.models import ServiceType
from hc_core.rules.conditions import dump_condition
from hc_core.rules.serializers import BundleTemplatePayloadSerializer

logger = logging.getLogger(__name__)

TEMPLATE_FIELDS = (
    "code",
    "name",
    "description",
    "rug_group",
    "rug_category",
    "funding_stream",
    "priority_weight",
    "auto_recommend",
    "is_active",
    "min_adl_sum",
    "max_adl_sum",
    "min_iadl_sum",
    "max_iadl_sum",
    "required_flags",
    "excluded_flags",
    "weekly_cap_cents",
    "metadata",
)


# ----------------------------
# Payload / snapshot helpers
# ----------------------------
def template_payload(template: BundleTemplate) -> dict[str, Any]:
    """
    Template version -> write payload (same shape BundleTemplatePayloadSerializer
    accepts). Used to carry rules and service lines into the next version and
    as the body of a plan snapshot.
    """
    data: dict[str, Any] = {}
    for name in TEMPLATE_FIELDS:
        value = getattr(template, name)
        data[name] = list(value) if isinstance(value, list) else (dict(value) if isinstance(value, dict) else value)

    data["rules"] = [
        {
            "name": r.name,
            "description": r.description,
            "condition": r.condition,
            "priority": r.priority,
            "is_required": r.is_required,
            "is_active": r.is_active,
        }
        for r in template.rules.order_by("-priority", "name", "id")
    ]
    data["services"] = [
        {
            "service_type_code": s.service_type.code,
            "default_frequency_per_week": str(s.default_frequency_per_week),
            "default_duration_minutes": s.default_duration_minutes,
            "is_required": s.is_required,
            "is_conditional": s.is_conditional,
            "condition_flags": list(s.condition_flags or []),
            "cost_per_visit_cents": s.cost_per_visit_cents,
        }
        for s in template.services.select_related("service_type").order_by("service_type__code")
    ]
    return data


def build_template_snapshot(template: BundleTemplate) -> dict[str, Any]:
    snapshot = template_payload(template)
    snapshot.update(
        {
            "template_id": str(template.id),
            "version": template.version,
            "published_at": template.published_at.isoformat() if template.published_at else None,
            "estimated_weekly_cost_cents": estimated_weekly_cost_cents(
                service_line_to_spec(s) for s in template.services.select_related("service_type")
            ),
            "snapshot_at": timezone.now().isoformat(),
        }
    )
    return snapshot


def _validate_payload(payload: dict) -> dict:
    serializer = BundleTemplatePayloadSerializer(data=payload)
    if not serializer.is_valid():
        logger.warning("Rejected bundle template payload for %r: %s", payload.get("code"), serializer.errors)
        raise ConfigurationError(
            "Invalid bundle template payload.",
            details={"code": payload.get("code"), "errors": serializer.errors},
        )
    return serializer.validated_data


def _assert_single_current(code: str) -> None:
    count = BundleTemplate.objects.filter(code=code, is_current_version=True).count()
    if count != 1:
        raise ConfigurationError(
            "Template version invariant violated: expected exactly one current version.",
            details={"code": code, "current_versions": count},
        )


class BundleTemplateWriteService:
    """
    Write-model operations for bundle templates.
    - Create first version
    - Publish a new version (append-only; previous version deprecated)
    - Switch the current version (rollback)
    Every write re-checks "exactly one current version per code" before commit.
    """

    @staticmethod
    def _create_row(
        data: dict,
        *,
        version: int,
        parent: Optional[BundleTemplate],
        version_notes: str,
        created_by_user_id: Optional[int],
        published_at,
    ) -> BundleTemplate:
        template = BundleTemplate.objects.create(
            **{name: data[name] for name in TEMPLATE_FIELDS},
            version=version,
            parent=parent,
            is_current_version=True,
            published_at=published_at,
            version_notes=version_notes,
            created_by_user_id=created_by_user_id,
        )

        for rule in data["rules"]:
            EligibilityRule.objects.create(
                template=template,
                name=rule["name"],
                description=rule["description"],
                condition=dump_condition(rule["condition"]),
                priority=rule["priority"],
                is_required=rule["is_required"],
                is_active=rule["is_active"],
            )

        codes = {line["service_type_code"] for line in data["services"]}
        service_types = {st.code: st for st in ServiceType.objects.filter(code__in=codes)}
        missing = sorted(codes - set(service_types))
        if missing:
            raise ConfigurationError(
                "Unknown service type code(s) on template.",
                details={"code": template.code, "service_type_codes": missing},
            )

        for line in data["services"]:
            BundleTemplateService.objects.create(
                template=template,
                service_type=service_types[line["service_type_code"]],
                default_frequency_per_week=line["default_frequency_per_week"],
                default_duration_minutes=line["default_duration_minutes"],
                is_required=line["is_required"],
                is_conditional=line["is_conditional"],
                condition_flags=list(line["condition_flags"]),
                cost_per_visit_cents=line["cost_per_visit_cents"],
            )

        return template

    @staticmethod
    @transaction.atomic
    def create_template(
        *,
        payload: dict,
        version_notes: str = "",
        created_by_user_id: Optional[int] = None,
    ) -> BundleTemplate:
        data = _validate_payload(payload)
        code = data["code"]

        if BundleTemplate.objects.filter(code=code).exists():
            raise ConfigurationError(
                "Template code already exists; publish a new version instead.",
                details={"code": code},
            )

        template = BundleTemplateWriteService._create_row(
            data,
            version=1,
            parent=None,
            version_notes=version_notes,
            created_by_user_id=created_by_user_id,
            published_at=timezone.now(),
        )
        _assert_single_current(code)

        logger.info("Bundle template %s v1 created", code)
        return template

    @staticmethod
    @transaction.atomic
    def create_version(
        *,
        code: str,
        changes: dict,
        version_notes: str = "",
        created_by_user_id: Optional[int] = None,
    ) -> BundleTemplate:
        """
        Publish the next version of `code`. Fields missing from `changes` are
        carried over from the current version, including rules and service
        lines (pass "rules"/"services" to replace them wholesale).
        """
        current_rows = list(BundleTemplate.objects.select_for_update().filter(code=code, is_current_version=True))
        if len(current_rows) != 1:
            raise ConfigurationError(
                "Cannot version template without exactly one current version.",
                details={"code": code, "current_versions": len(current_rows)},
            )
        current = current_rows[0]

        if "code" in changes and changes["code"] != code:
            raise ConfigurationError("Template code cannot change between versions.", details={"code": code})

        payload = template_payload(current)
        payload.update(changes)
        data = _validate_payload(payload)

        latest = BundleTemplate.objects.filter(code=code).aggregate(v=Max("version"))["v"] or 0
        next_version = int(latest) + 1
        ts = timezone.now()

        current.is_current_version = False
        current.deprecated_at = ts
        current.deprecation_reason = f"Superseded by version {next_version}"
        current.save(update_fields=["is_current_version", "deprecated_at", "deprecation_reason", "updated_at"])

        template = BundleTemplateWriteService._create_row(
            data,
            version=next_version,
            parent=current,
            version_notes=version_notes,
            created_by_user_id=created_by_user_id,
            published_at=ts,
        )
        _assert_single_current(code)

        logger.info("Bundle template %s v%s published (previous v%s)", code, next_version, current.version)
        return template

    @staticmethod
    @transaction.atomic
    def set_current_version(*, code: str, version: int, reason: str = "") -> BundleTemplate:
        rows = list(BundleTemplate.objects.select_for_update().filter(code=code).order_by("version"))
        target = next((t for t in rows if t.version == version), None)
        if target is None:
            raise ConfigurationError("Template version not found.", details={"code": code, "version": version})

        if target.is_current_version:
            return target

        ts = timezone.now()
        for row in rows:
            if row.is_current_version:
                row.is_current_version = False
                row.deprecated_at = ts
                row.deprecation_reason = reason or f"Rolled back to version {version}"
                row.save(update_fields=["is_current_version", "deprecated_at", "deprecation_reason", "updated_at"])

        target.is_current_version = True
        target.deprecated_at = None
        target.deprecation_reason = ""
        target.save(update_fields=["is_current_version", "deprecated_at", "deprecation_reason", "updated_at"])
        _assert_single_current(code)

        logger.info("Bundle template %s current version set to v%s", code, version)
        return target


class PlanSnapshotService:
    """
    Care plan side of template selection. The chosen template version is
    copied into the plan, never referenced live.
    """

    @staticmethod
    def create_plan(*, patient_id: UUID, created_by_user_id: Optional[int] = None) -> CarePlan:
        return CarePlan.objects.create(patient_id=patient_id, created_by_user_id=created_by_user_id)

    @staticmethod
    @transaction.atomic
    def select_template(
        *,
        plan_id: UUID,
        template_id: UUID,
        recommendation_log_id: Optional[UUID] = None,
    ) -> CarePlan:
        plan = CarePlan.objects.select_for_update().get(id=plan_id)
        if plan.status != CarePlanStatus.DRAFT:
            raise ImmutableRecordError(
                "Only draft plans can change bundle selection.",
                details={"plan_id": str(plan_id), "status": plan.status},
            )

        template = BundleTemplate.objects.get(id=template_id)

        plan.bundle_template = template
        plan.bundle_version = template.version
        plan.bundle_snapshot = build_template_snapshot(template)
        plan.recommendation_log_id = recommendation_log_id
        plan.save(
            update_fields=[
                "bundle_template",
                "bundle_version",
                "bundle_snapshot",
                "recommendation_log_id",
                "updated_at",
            ]
        )
        return plan

    @staticmethod
    @transaction.atomic
    def approve_plan(*, plan_id: UUID, approved_by_user_id: Optional[int] = None) -> CarePlan:
        plan = CarePlan.objects.select_for_update().get(id=plan_id)
        if plan.status == CarePlanStatus.APPROVED:
            return plan
        if plan.status != CarePlanStatus.DRAFT:
            raise ValueError("Only draft plans can be approved")
        if not plan.bundle_snapshot:
            raise ValueError("Plan has no bundle selected")

        plan.status = CarePlanStatus.APPROVED
        plan.approved_at = timezone.now()
        plan.approved_by_user_id = approved_by_user_id
        plan.save(update_fields=["status", "approved_at", "approved_by_user_id", "updated_at"])
        return plan
