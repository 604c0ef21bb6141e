# hc_core/rules/serializers.py
from __future__ import annotations

from django.conf import settings
from rest_framework import serializers

from hc_core.common.errors import ConfigurationError
from hc_core.rules.conditions import DEFAULT_MAX_DEPTH, dump_condition, parse_condition


def rule_max_depth() -> int:
    return int(getattr(settings, "HC_RULE_MAX_DEPTH", DEFAULT_MAX_DEPTH))


class ConditionField(serializers.Field):
    """
    JSON condition tree <-> parsed ConditionNode.
    Validation errors keep the ConfigurationError code + details.
    """
    default_error_messages = {
        "invalid": "Invalid condition tree.",
    }

    def to_internal_value(self, data):
        try:
            return parse_condition(data, max_depth=rule_max_depth())
        except ConfigurationError as exc:
            raise serializers.ValidationError(
                {"code": exc.code, "message": exc.message, "details": exc.details}
            )

    def to_representation(self, value):
        if isinstance(value, dict):
            return value
        return dump_condition(value)


class EligibilityRulePayloadSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    condition = ConditionField()
    priority = serializers.IntegerField(min_value=0, default=0)
    is_required = serializers.BooleanField(default=False)
    is_active = serializers.BooleanField(default=True)


class TemplateServiceLinePayloadSerializer(serializers.Serializer):
    service_type_code = serializers.CharField(max_length=64)
    default_frequency_per_week = serializers.DecimalField(max_digits=6, decimal_places=2, min_value=0)
    default_duration_minutes = serializers.IntegerField(min_value=0, default=60)
    is_required = serializers.BooleanField(default=True)
    is_conditional = serializers.BooleanField(default=False)
    condition_flags = serializers.ListField(child=serializers.CharField(), default=list)
    cost_per_visit_cents = serializers.IntegerField(min_value=0, required=False, allow_null=True, default=None)


class BundleTemplatePayloadSerializer(serializers.Serializer):
    """
    Admin/seed payload for a bundle template version.
    Cross-field bounds are checked here so nothing malformed reaches the DB.
    """
    code = serializers.CharField(max_length=64)
    name = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    rug_group = serializers.CharField(required=False, allow_blank=True, default="")
    rug_category = serializers.CharField(required=False, allow_blank=True, default="")
    funding_stream = serializers.CharField(required=False, allow_blank=True, default="")

    priority_weight = serializers.IntegerField(min_value=0, default=100)
    auto_recommend = serializers.BooleanField(default=True)
    is_active = serializers.BooleanField(default=True)

    min_adl_sum = serializers.IntegerField(required=False, allow_null=True, default=None)
    max_adl_sum = serializers.IntegerField(required=False, allow_null=True, default=None)
    min_iadl_sum = serializers.IntegerField(required=False, allow_null=True, default=None)
    max_iadl_sum = serializers.IntegerField(required=False, allow_null=True, default=None)

    required_flags = serializers.ListField(child=serializers.CharField(), default=list)
    excluded_flags = serializers.ListField(child=serializers.CharField(), default=list)

    weekly_cap_cents = serializers.IntegerField(min_value=0, default=0)
    metadata = serializers.DictField(required=False, default=dict)

    rules = EligibilityRulePayloadSerializer(many=True, required=False, default=list)
    services = TemplateServiceLinePayloadSerializer(many=True, required=False, default=list)

    def validate(self, attrs):
        for low, high in (("min_adl_sum", "max_adl_sum"), ("min_iadl_sum", "max_iadl_sum")):
            lo, hi = attrs.get(low), attrs.get(high)
            if lo is not None and hi is not None and lo > hi:
                raise serializers.ValidationError({low: f"Must be <= {high}."})

        overlap = set(attrs.get("required_flags") or []) & set(attrs.get("excluded_flags") or [])
        if overlap:
            raise serializers.ValidationError(
                {"excluded_flags": f"Flags cannot be both required and excluded: {sorted(overlap)}"}
            )

        codes = [line["service_type_code"] for line in attrs.get("services") or []]
        duplicates = sorted({c for c in codes if codes.count(c) > 1})
        if duplicates:
            raise serializers.ValidationError({"services": f"Duplicate service type code(s): {duplicates}"})
        return attrs
