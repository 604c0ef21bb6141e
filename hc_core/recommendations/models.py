# hc_core/recommendations/models.py
from django.db import models

from hc_core.common.errors import ImmutableRecordError
from hc_core.common.models import UUIDModel


class RecommendationKind(models.TextChoices):
    BUNDLE_TEMPLATE = "BUNDLE_TEMPLATE", "Bundle template"
    PROVIDER = "PROVIDER", "Provider"


class RecommendationOutcome(models.TextChoices):
    PENDING = "PENDING", "Pending"
    ACCEPTED = "ACCEPTED", "Accepted"
    MODIFIED = "MODIFIED", "Modified"
    REJECTED = "REJECTED", "Rejected"
    EXPIRED = "EXPIRED", "Expired"


class RecommendationLog(UUIDModel):
    """
    Immutable audit fact: one evaluation of one subject.

    Everything except the outcome block is fixed at creation. The outcome
    block is written exactly once, by RecommendationLogger.record_outcome.
    """
    kind = models.CharField(max_length=32, choices=RecommendationKind.choices, db_index=True)
    subject_id = models.UUIDField(db_index=True)  # patient / care plan the ranking was for

    ranking_outcome = models.CharField(max_length=16)  # MATCHED | NO_MATCH | FAULT
    context = models.JSONField(default=dict, blank=True)  # attribute bag / service request
    candidate_count = models.PositiveIntegerField(default=0)
    selected_candidate_id = models.CharField(max_length=64, blank=True)

    # outcome block
    outcome = models.CharField(
        max_length=16,
        choices=RecommendationOutcome.choices,
        default=RecommendationOutcome.PENDING,
        db_index=True,
    )
    final_candidate_id = models.CharField(max_length=64, blank=True)
    modifications = models.JSONField(null=True, blank=True)
    override_reason = models.TextField(blank=True)
    decided_by_user_id = models.BigIntegerField(null=True, blank=True)
    decided_at = models.DateTimeField(null=True, blank=True)
    time_to_decision_seconds = models.PositiveIntegerField(null=True, blank=True)

    OUTCOME_FIELDS = (
        "outcome",
        "final_candidate_id",
        "modifications",
        "override_reason",
        "decided_by_user_id",
        "decided_at",
        "time_to_decision_seconds",
        "updated_at",
    )

    class Meta:
        db_table = "recommendations_log"
        indexes = [
            models.Index(fields=["subject_id", "created_at"]),
            models.Index(fields=["kind", "outcome"]),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            update_fields = kwargs.get("update_fields")
            if update_fields is None or not set(update_fields) <= set(self.OUTCOME_FIELDS):
                raise ImmutableRecordError(
                    "Recommendation logs are append-only; only the outcome can be recorded.",
                    details={"log_id": str(self.pk)},
                )
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Recommendation logs cannot be deleted.", details={"log_id": str(self.pk)})


class RecommendationLogEntry(UUIDModel):
    """One evaluated candidate within a log: score, rank and full evaluation trace."""
    log = models.ForeignKey(RecommendationLog, on_delete=models.PROTECT, related_name="entries")
    position = models.PositiveIntegerField()  # order within results (ranked first)
    rank = models.PositiveIntegerField(null=True, blank=True)  # 1-based; null when gated/faulted
    candidate_id = models.CharField(max_length=64, db_index=True)
    score = models.DecimalField(max_digits=5, decimal_places=2)
    eligible = models.BooleanField(default=False)
    was_selected = models.BooleanField(default=False)
    evaluation_results = models.JSONField(default=dict)

    class Meta:
        db_table = "recommendations_log_entry"
        constraints = [
            models.UniqueConstraint(fields=["log", "position"], name="uq_recommendation_entry_position"),
        ]
        ordering = ["position"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Recommendation log entries are immutable.", details={"entry_id": str(self.pk)})
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableRecordError("Recommendation log entries cannot be deleted.", details={"entry_id": str(self.pk)})
