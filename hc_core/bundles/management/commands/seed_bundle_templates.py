# hc_core/bundles/management/commands/seed_bundle_templates.py
from __future__ import annotations

from django.core.management.base import BaseCommand
from django.db import transaction

from hc_core.bundles.models import BundleTemplate
from hc_core.bundles.services import BundleTemplateWriteService
from hc_core.providers.models import ServiceType

SERVICE_TYPES = [
    {"code": "psw", "name": "Personal Support", "category": "personal_care", "default_duration_minutes": 60},
    {"code": "nursing", "name": "Nursing Visit", "category": "nursing", "default_duration_minutes": 45},
    {"code": "homemaking", "name": "Homemaking", "category": "personal_care", "default_duration_minutes": 60},
    {"code": "behavioural_support", "name": "Behavioural Support", "category": "specialized", "default_duration_minutes": 60},
]

DEFAULT_TEMPLATES = [
    {
        "code": "high-intensity",
        "name": "High Intensity Home Care",
        "description": "High MAPLe priority with significant ADL support needs.",
        "priority_weight": 150,
        "auto_recommend": True,
        "rules": [
            {
                "name": "High MAPLe Score",
                "description": "Patient has MAPLe score of 4 or 5",
                "condition": {"field": "maple_score", "operator": ">=", "value": 4},
                "priority": 100,
                "is_required": True,
            },
            {
                "name": "Significant ADL Needs",
                "description": "ADL Hierarchy score indicates significant support needs",
                "condition": {"field": "adl_hierarchy", "operator": ">=", "value": 3},
                "priority": 90,
                "is_required": True,
            },
        ],
        "services": [
            {"service_type_code": "psw", "default_frequency_per_week": "14", "default_duration_minutes": 60},
            {"service_type_code": "nursing", "default_frequency_per_week": "3", "default_duration_minutes": 45},
        ],
    },
    {
        "code": "dementia-care",
        "name": "Dementia Care Bundle",
        "description": "Moderate to severe cognitive impairment with a dementia diagnosis.",
        "priority_weight": 140,
        "auto_recommend": True,
        "rules": [
            {
                "name": "Cognitive Impairment",
                "description": "CPS score indicates moderate to severe cognitive impairment",
                "condition": {"field": "cps", "operator": ">=", "value": 3},
                "priority": 100,
                "is_required": True,
            },
            {
                "name": "Dementia Diagnosis",
                "description": "Patient has documented dementia or Alzheimer's diagnosis",
                "condition": {
                    "operator": "OR",
                    "conditions": [
                        {"field": "diagnosis_flags", "operator": "contains", "value": "dementia"},
                        {"field": "diagnosis_flags", "operator": "contains", "value": "alzheimers"},
                    ],
                },
                "priority": 95,
                "is_required": False,
            },
        ],
        "services": [
            {"service_type_code": "psw", "default_frequency_per_week": "10", "default_duration_minutes": 60},
            {
                "service_type_code": "behavioural_support",
                "default_frequency_per_week": "2",
                "default_duration_minutes": 60,
                "is_required": False,
                "is_conditional": True,
                "condition_flags": ["responsive_behaviours"],
            },
        ],
    },
    {
        "code": "standard",
        "name": "Standard Home Care",
        "description": "Moderate care needs.",
        "priority_weight": 100,
        "auto_recommend": True,
        "rules": [
            {
                "name": "Moderate Care Needs",
                "description": "MAPLe score indicates moderate care needs",
                "condition": {"field": "maple_score", "operator": "between", "value": [2, 3]},
                "priority": 100,
                "is_required": True,
            },
        ],
        "services": [
            {"service_type_code": "psw", "default_frequency_per_week": "5", "default_duration_minutes": 60},
            {"service_type_code": "homemaking", "default_frequency_per_week": "1", "default_duration_minutes": 90},
        ],
    },
]


class Command(BaseCommand):
    help = "Seed default service types and bundle templates (idempotent; existing codes are skipped)."

    def add_arguments(self, parser):
        parser.add_argument("--dry-run", action="store_true", help="Print what would be created; do not write.")

    @transaction.atomic
    def handle(self, *args, **opts):
        dry = opts["dry_run"]

        created_types = 0
        for st in SERVICE_TYPES:
            if dry:
                created_types += 0 if ServiceType.objects.filter(code=st["code"]).exists() else 1
                continue
            _, created = ServiceType.objects.get_or_create(code=st["code"], defaults=st)
            created_types += 1 if created else 0

        created_templates = 0
        for payload in DEFAULT_TEMPLATES:
            if BundleTemplate.objects.filter(code=payload["code"]).exists():
                continue
            created_templates += 1
            if not dry:
                BundleTemplateWriteService.create_template(payload=payload, version_notes="Seeded default")

        prefix = "[dry-run] " if dry else ""
        self.stdout.write(
            self.style.SUCCESS(
                f"{prefix}Service types created: {created_types}. Bundle templates created: {created_templates}"
            )
        )
