# hc_core/bundles/models.py
from django.db import models
from django.db.models import Q

from hc_core.common.errors import ImmutableRecordError
from hc_core.common.models import UUIDModel


class BundleTemplate(UUIDModel):
    """
    One version of a care bundle template.

    (code, version) is unique and at most one row per code is current.
    Edits never mutate a published row: BundleTemplateWriteService creates
    the next version and flips is_current_version in one transaction.
    """
    code = models.SlugField(max_length=64, db_index=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)

    # versioning
    version = models.PositiveIntegerField(default=1)
    parent = models.ForeignKey(
        "self", null=True, blank=True, on_delete=models.PROTECT, related_name="child_versions"
    )
    is_current_version = models.BooleanField(default=True, db_index=True)
    published_at = models.DateTimeField(null=True, blank=True)
    deprecated_at = models.DateTimeField(null=True, blank=True)
    deprecation_reason = models.TextField(blank=True)
    version_notes = models.TextField(blank=True)

    # classification
    rug_group = models.CharField(max_length=16, blank=True)
    rug_category = models.CharField(max_length=64, blank=True)
    funding_stream = models.CharField(max_length=64, blank=True)

    # ranking
    is_active = models.BooleanField(default=True)
    priority_weight = models.PositiveIntegerField(default=100)
    auto_recommend = models.BooleanField(default=True)

    # hard gates
    min_adl_sum = models.IntegerField(null=True, blank=True)
    max_adl_sum = models.IntegerField(null=True, blank=True)
    min_iadl_sum = models.IntegerField(null=True, blank=True)
    max_iadl_sum = models.IntegerField(null=True, blank=True)
    required_flags = models.JSONField(default=list, blank=True)
    excluded_flags = models.JSONField(default=list, blank=True)

    weekly_cap_cents = models.PositiveIntegerField(default=0)
    metadata = models.JSONField(default=dict, blank=True)
    created_by_user_id = models.BigIntegerField(null=True, blank=True)

    class Meta:
        db_table = "bundles_template"
        constraints = [
            models.UniqueConstraint(fields=["code", "version"], name="uq_bundle_template_code_version"),
            models.UniqueConstraint(
                fields=["code"],
                condition=Q(is_current_version=True),
                name="uq_bundle_template_one_current_per_code",
            ),
        ]
        indexes = [
            models.Index(fields=["is_active", "is_current_version"]),
        ]

    def __str__(self) -> str:
        return f"{self.code} v{self.version}"


class EligibilityRule(UUIDModel):
    template = models.ForeignKey(BundleTemplate, on_delete=models.CASCADE, related_name="rules")
    name = models.CharField(max_length=100)
    description = models.TextField(blank=True)

    # wire form of a ConditionNode; validated before it is written
    condition = models.JSONField()

    priority = models.PositiveIntegerField(default=0)  # higher = evaluated/weighted first
    is_required = models.BooleanField(default=False)
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "bundles_eligibility_rule"
        indexes = [
            models.Index(fields=["template", "is_active"]),
            models.Index(fields=["priority"]),
        ]

    def __str__(self) -> str:
        return self.name


class BundleTemplateService(UUIDModel):
    """Service line item of a template (what the bundle actually delivers)."""
    template = models.ForeignKey(BundleTemplate, on_delete=models.CASCADE, related_name="services")
    service_type = models.ForeignKey("providers.ServiceType", on_delete=models.PROTECT, related_name="+")

    default_frequency_per_week = models.DecimalField(max_digits=6, decimal_places=2)
    default_duration_minutes = models.PositiveIntegerField(default=60)
    is_required = models.BooleanField(default=True)
    is_conditional = models.BooleanField(default=False)
    condition_flags = models.JSONField(default=list, blank=True)
    cost_per_visit_cents = models.PositiveIntegerField(null=True, blank=True)

    class Meta:
        db_table = "bundles_template_service"
        constraints = [
            models.UniqueConstraint(fields=["template", "service_type"], name="uq_template_service_type"),
        ]


class CarePlanStatus(models.TextChoices):
    DRAFT = "DRAFT", "Draft"
    APPROVED = "APPROVED", "Approved"
    CANCELLED = "CANCELLED", "Cancelled"


class CarePlan(UUIDModel):
    """
    Consumer of a template selection. bundle_snapshot is a verbatim copy of
    the template version taken at selection time; once the plan is approved
    the snapshot (and the template reference) can no longer change.
    """
    patient_id = models.UUIDField(db_index=True)
    status = models.CharField(
        max_length=16, choices=CarePlanStatus.choices, default=CarePlanStatus.DRAFT, db_index=True
    )

    bundle_template = models.ForeignKey(
        BundleTemplate, null=True, blank=True, on_delete=models.PROTECT, related_name="care_plans"
    )
    bundle_version = models.PositiveIntegerField(null=True, blank=True)
    bundle_snapshot = models.JSONField(null=True, blank=True)

    recommendation_log_id = models.UUIDField(null=True, blank=True, db_index=True)
    created_by_user_id = models.BigIntegerField(null=True, blank=True)
    approved_by_user_id = models.BigIntegerField(null=True, blank=True)
    approved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "bundles_care_plan"

    _FROZEN_WHEN_APPROVED = ("bundle_template_id", "bundle_version", "bundle_snapshot")

    def save(self, *args, **kwargs):
        if not self._state.adding:
            stored = (
                CarePlan.objects.filter(pk=self.pk)
                .values("status", *self._FROZEN_WHEN_APPROVED)
                .first()
            )
            if stored and stored["status"] == CarePlanStatus.APPROVED:
                changed = [f for f in self._FROZEN_WHEN_APPROVED if stored[f] != getattr(self, f)]
                if changed:
                    raise ImmutableRecordError(
                        "Approved care plans keep their bundle snapshot.",
                        details={"plan_id": str(self.pk), "fields": changed},
                    )
        return super().save(*args, **kwargs)
