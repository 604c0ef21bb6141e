# hc_core/providers/models.py
from decimal import Decimal

from django.db import models
from django.db.models import F, Q

from hc_core.common.models import UUIDModel


class ProviderKind(models.TextChoices):
    SPO = "SPO", "Service Provider Organization"
    SSPO = "SSPO", "Sub-contracted Service Provider Organization"
    STAFF = "STAFF", "Internal Staff"


class ServiceType(UUIDModel):
    code = models.SlugField(max_length=64, unique=True)  # e.g. "psw", "nursing"
    name = models.CharField(max_length=255)
    category = models.CharField(max_length=64, blank=True, db_index=True)
    default_duration_minutes = models.PositiveIntegerField(default=60)
    default_cost_per_visit_cents = models.PositiveIntegerField(null=True, blank=True)
    required_skills = models.JSONField(default=list, blank=True)  # qualification codes, e.g. ["psw_certificate"]
    is_active = models.BooleanField(default=True)

    class Meta:
        db_table = "providers_service_type"

    def __str__(self) -> str:
        return self.code


class ServiceProvider(UUIDModel):
    name = models.CharField(max_length=255)
    kind = models.CharField(max_length=16, choices=ProviderKind.choices, db_index=True)
    is_active = models.BooleanField(default=True)
    region_code = models.CharField(max_length=32, blank=True)

    class Meta:
        db_table = "providers_service_provider"

    def __str__(self) -> str:
        return self.name


class ProviderCapability(UUIDModel):
    """
    What a provider can deliver for one service type, with capacity, pricing,
    coverage and quality metrics used by provider matching.

    current_utilization_hours is the only field mutated on the hot path;
    it is written exclusively through CapacityLedger.
    """
    provider = models.ForeignKey(ServiceProvider, on_delete=models.CASCADE, related_name="capabilities")
    service_type = models.ForeignKey(ServiceType, on_delete=models.CASCADE, related_name="capabilities")
    is_active = models.BooleanField(default=True)

    # capacity
    max_weekly_hours = models.DecimalField(max_digits=7, decimal_places=2)
    current_utilization_hours = models.DecimalField(max_digits=7, decimal_places=2, default=Decimal("0.00"))
    min_notice_hours = models.PositiveIntegerField(default=24)

    # pricing
    hourly_rate = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    visit_rate = models.DecimalField(max_digits=10, decimal_places=2, null=True, blank=True)
    rate_modifiers = models.JSONField(default=dict, blank=True)  # {"weekend": 1.25, "holiday": 1.5}

    # coverage
    service_areas = models.JSONField(default=list, blank=True)  # postal/FSA prefixes, e.g. ["M5V", "M4"]
    regions = models.JSONField(default=list, blank=True)
    available_days = models.JSONField(default=list, blank=True)  # 0=Sun .. 6=Sat
    earliest_start_time = models.TimeField(null=True, blank=True)
    latest_end_time = models.TimeField(null=True, blank=True)

    # quality (0-100)
    quality_score = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    acceptance_rate = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)
    completion_rate = models.DecimalField(max_digits=5, decimal_places=2, null=True, blank=True)

    # special capabilities
    can_handle_complex_care = models.BooleanField(default=False)
    can_handle_dementia = models.BooleanField(default=False)
    can_handle_palliative = models.BooleanField(default=False)
    bilingual_french = models.BooleanField(default=False)
    languages_available = models.JSONField(default=list, blank=True)
    staff_qualifications = models.JSONField(default=list, blank=True)

    # validity + compliance
    capability_effective_date = models.DateField(null=True, blank=True)
    capability_expiry_date = models.DateField(null=True, blank=True)
    insurance_verified = models.BooleanField(default=False)
    insurance_expiry_date = models.DateField(null=True, blank=True)

    class Meta:
        db_table = "providers_capability"
        constraints = [
            models.UniqueConstraint(fields=["provider", "service_type"], name="uq_capability_provider_service_type"),
            models.CheckConstraint(
                condition=Q(current_utilization_hours__gte=0)
                & Q(current_utilization_hours__lte=F("max_weekly_hours")),
                name="ck_capability_utilization_within_max",
            ),
        ]
        indexes = [
            models.Index(fields=["service_type", "is_active"]),
            models.Index(fields=["is_active", "quality_score"]),
        ]

    def __str__(self) -> str:
        return f"{self.provider_id}:{self.service_type_id}"

    @property
    def available_hours(self) -> Decimal:
        return max(Decimal("0"), self.max_weekly_hours - self.current_utilization_hours)


class AssignmentStatus(models.TextChoices):
    SCHEDULED = "SCHEDULED", "Scheduled"
    CANCELLED = "CANCELLED", "Cancelled"
    COMPLETED = "COMPLETED", "Completed"


class ServiceAssignment(UUIDModel):
    """
    A committed assignment of a provider capability to a patient visit.
    Creating one reserves capacity; cancelling releases it.
    """
    capability = models.ForeignKey(ProviderCapability, on_delete=models.PROTECT, related_name="assignments")
    patient_id = models.UUIDField(db_index=True)
    scheduled_start = models.DateTimeField(db_index=True)
    estimated_hours = models.DecimalField(max_digits=6, decimal_places=2)
    status = models.CharField(
        max_length=16,
        choices=AssignmentStatus.choices,
        default=AssignmentStatus.SCHEDULED,
        db_index=True,
    )
    recommendation_log_id = models.UUIDField(null=True, blank=True, db_index=True)
    created_by_user_id = models.BigIntegerField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "providers_service_assignment"
        indexes = [
            models.Index(fields=["capability", "status"]),
        ]
