# hc_core/bundles/tests/test_versioning.py
import copy
import uuid

import pytest
from django.core.management import call_command
from django.db import IntegrityError, transaction

from hc_core.bundles.models import BundleTemplate, CarePlanStatus
from hc_core.bundles.selectors import (
    configured_template_matcher,
    get_current_template,
    list_template_versions,
    load_current_template_specs,
    template_to_spec,
)
from hc_core.bundles.services import BundleTemplateWriteService, PlanSnapshotService
from hc_core.clinical.attributes import AttributeBag
from hc_core.common.errors import ConfigurationError, ImmutableRecordError

pytestmark = pytest.mark.django_db

PAYLOAD = {
    "code": "high-intensity",
    "name": "High Intensity Home Care",
    "priority_weight": 150,
    "excluded_flags": ["palliative"],
    "rules": [
        {
            "name": "High MAPLe Score",
            "condition": {"field": "maple_score", "operator": ">=", "value": 4},
            "priority": 100,
            "is_required": True,
        },
        {
            "name": "Significant ADL Needs",
            "condition": {
                "operator": "AND",
                "conditions": [{"field": "adl_hierarchy", "operator": "between", "value": [3, 6]}],
            },
            "priority": 90,
        },
    ],
    "services": [
        {"service_type_code": "psw", "default_frequency_per_week": "14", "default_duration_minutes": 60},
    ],
}


@pytest.fixture
def high_intensity(service_type):
    return BundleTemplateWriteService.create_template(payload=copy.deepcopy(PAYLOAD))


def test_create_template_persists_rules_and_services(high_intensity):
    t = high_intensity
    assert t.version == 1
    assert t.is_current_version is True
    assert t.published_at is not None
    assert t.rules.count() == 2
    assert t.services.get().service_type.code == "psw"

    stored = t.rules.get(name="Significant ADL Needs").condition
    assert stored == PAYLOAD["rules"][1]["condition"]


def test_invalid_rule_tree_is_never_persisted(service_type):
    payload = copy.deepcopy(PAYLOAD)
    payload["rules"][0]["condition"] = {"field": "maple_score", "operator": "<", "value": 4}

    with pytest.raises(ConfigurationError) as exc:
        BundleTemplateWriteService.create_template(payload=payload)

    assert "rules" in exc.value.details["errors"]
    assert not BundleTemplate.objects.filter(code="high-intensity").exists()


def test_unknown_service_type_rolls_back(db):
    with pytest.raises(ConfigurationError) as exc:
        BundleTemplateWriteService.create_template(payload=copy.deepcopy(PAYLOAD))
    assert exc.value.details["service_type_codes"] == ["psw"]
    assert not BundleTemplate.objects.exists()


def test_conflicting_flags_rejected(service_type):
    payload = copy.deepcopy(PAYLOAD)
    payload["required_flags"] = ["palliative"]
    with pytest.raises(ConfigurationError):
        BundleTemplateWriteService.create_template(payload=payload)


def test_duplicate_code_must_use_versioning(high_intensity):
    with pytest.raises(ConfigurationError):
        BundleTemplateWriteService.create_template(payload=copy.deepcopy(PAYLOAD))


def test_new_version_supersedes_and_copies_configuration(high_intensity):
    v2 = BundleTemplateWriteService.create_version(
        code="high-intensity",
        changes={"priority_weight": 120},
        version_notes="Lower weight",
    )
    v1 = BundleTemplate.objects.get(id=high_intensity.id)

    assert (v2.version, v2.parent_id, v2.priority_weight) == (2, v1.id, 120)
    assert v2.is_current_version is True
    assert v1.is_current_version is False
    assert v1.deprecated_at is not None
    assert v1.deprecation_reason == "Superseded by version 2"
    assert v1.priority_weight == 150

    assert sorted(r.name for r in v2.rules.all()) == sorted(r.name for r in v1.rules.all())
    assert v2.services.count() == 1
    assert get_current_template(code="high-intensity").id == v2.id


def test_version_can_replace_rules(high_intensity):
    v2 = BundleTemplateWriteService.create_version(
        code="high-intensity",
        changes={"rules": [{"name": "Any MAPLe", "condition": {"field": "maple_score", "operator": ">=", "value": 1}}]},
    )
    assert list(v2.rules.values_list("name", flat=True)) == ["Any MAPLe"]
    assert high_intensity.rules.count() == 2


def test_exactly_one_current_version_per_code(high_intensity):
    for weight in (110, 120, 130):
        BundleTemplateWriteService.create_version(code="high-intensity", changes={"priority_weight": weight})

    versions = list(list_template_versions(code="high-intensity"))
    assert [v.version for v in versions] == [1, 2, 3, 4]
    assert [v.is_current_version for v in versions] == [False, False, False, True]


def test_database_refuses_second_current_version(high_intensity):
    with pytest.raises(IntegrityError):
        with transaction.atomic():
            BundleTemplate.objects.create(code="high-intensity", name="Dup", version=2, is_current_version=True)


def test_code_cannot_change_between_versions(high_intensity):
    with pytest.raises(ConfigurationError):
        BundleTemplateWriteService.create_version(code="high-intensity", changes={"code": "other"})


def test_rollback_to_previous_version(high_intensity):
    BundleTemplateWriteService.create_version(code="high-intensity", changes={"priority_weight": 120})

    restored = BundleTemplateWriteService.set_current_version(code="high-intensity", version=1, reason="bad weights")

    assert restored.id == high_intensity.id
    assert restored.is_current_version is True
    assert restored.deprecated_at is None
    v2 = BundleTemplate.objects.get(code="high-intensity", version=2)
    assert v2.is_current_version is False
    assert v2.deprecation_reason == "bad weights"

    with pytest.raises(ConfigurationError):
        BundleTemplateWriteService.set_current_version(code="high-intensity", version=9)


def test_snapshot_is_not_affected_by_later_edits(high_intensity, patient_id):
    plan = PlanSnapshotService.create_plan(patient_id=patient_id)
    plan = PlanSnapshotService.select_template(plan_id=plan.id, template_id=high_intensity.id)

    assert plan.bundle_version == 1
    snapshot = plan.bundle_snapshot
    assert snapshot["template_id"] == str(high_intensity.id)
    assert snapshot["priority_weight"] == 150
    assert [r["name"] for r in snapshot["rules"]] == ["High MAPLe Score", "Significant ADL Needs"]
    assert snapshot["services"][0]["service_type_code"] == "psw"

    BundleTemplateWriteService.create_version(
        code="high-intensity",
        changes={"priority_weight": 90, "rules": []},
    )

    plan.refresh_from_db()
    assert plan.bundle_snapshot == snapshot
    assert plan.bundle_version == 1


def test_approved_plan_keeps_its_snapshot(high_intensity, patient_id):
    plan = PlanSnapshotService.create_plan(patient_id=patient_id)
    PlanSnapshotService.select_template(plan_id=plan.id, template_id=high_intensity.id)
    plan = PlanSnapshotService.approve_plan(plan_id=plan.id, approved_by_user_id=7)
    assert plan.status == CarePlanStatus.APPROVED

    with pytest.raises(ImmutableRecordError):
        PlanSnapshotService.select_template(plan_id=plan.id, template_id=high_intensity.id)

    plan.bundle_snapshot = {"tampered": True}
    with pytest.raises(ImmutableRecordError):
        plan.save()


def test_plan_without_selection_cannot_be_approved(patient_id):
    plan = PlanSnapshotService.create_plan(patient_id=patient_id)
    with pytest.raises(ValueError):
        PlanSnapshotService.approve_plan(plan_id=plan.id)


def test_corrupted_stored_rule_is_reported_as_fault(high_intensity):
    rule = high_intensity.rules.get(name="High MAPLe Score")
    type(rule).objects.filter(id=rule.id).update(condition={"field": "maple_score", "operator": "<", "value": 4})

    spec = template_to_spec(BundleTemplate.objects.get(id=high_intensity.id))
    assert spec.fault is not None
    assert spec.rules == ()


def test_seeded_templates_rank_for_high_needs_patient():
    call_command("seed_bundle_templates")
    call_command("seed_bundle_templates")  # idempotent

    assert BundleTemplate.objects.count() == 3

    specs = load_current_template_specs()
    bag = AttributeBag({"maple_score": 4, "adl_hierarchy": 3})
    ranking = configured_template_matcher().rank(bag, specs)

    assert [r.code for r in ranking.ranked] == ["high-intensity"]
    assert ranking.best.score == 100.0
    gated = {r.code: r.exclusion_reasons for r in ranking.results[1:]}
    assert gated == {
        "dementia-care": ("required_rule_failed:Cognitive Impairment",),
        "standard": ("required_rule_failed:Moderate Care Needs",),
    }


def test_duplicate_service_codes_are_a_configuration_error(service_type):
    payload = copy.deepcopy(PAYLOAD)
    payload["services"].append({"service_type_code": "psw", "default_frequency_per_week": "2"})

    with pytest.raises(ConfigurationError) as exc:
        BundleTemplateWriteService.create_template(payload=payload)

    assert "services" in exc.value.details["errors"]
    assert not BundleTemplate.objects.filter(code="high-intensity").exists()


def test_spec_carries_classification_and_costed_service_lines(service_type, nursing_service_type):
    nursing_service_type.default_cost_per_visit_cents = 12000
    nursing_service_type.save(update_fields=["default_cost_per_visit_cents"])

    payload = copy.deepcopy(PAYLOAD)
    payload.update({"rug_group": "CA1", "rug_category": "Clinically Complex", "weekly_cap_cents": 150000})
    payload["services"] = [
        {"service_type_code": "psw", "default_frequency_per_week": "14", "cost_per_visit_cents": 4500},
        {"service_type_code": "nursing", "default_frequency_per_week": "3"},
    ]
    template = BundleTemplateWriteService.create_template(payload=payload)

    spec = template_to_spec(BundleTemplate.objects.get(id=template.id))
    assert (spec.rug_group, spec.rug_category, spec.weekly_cap_cents) == ("CA1", "Clinically Complex", 150000)
    assert [(s.service_type_code, s.cost_per_visit_cents) for s in spec.services] == [("nursing", 12000), ("psw", 4500)]

    plan = PlanSnapshotService.create_plan(patient_id=uuid.uuid4())
    plan = PlanSnapshotService.select_template(plan_id=plan.id, template_id=template.id)
    assert plan.bundle_snapshot["estimated_weekly_cost_cents"] == 14 * 4500 + 3 * 12000


def test_seeded_templates_price_services_for_the_patient():
    call_command("seed_bundle_templates")

    bag = AttributeBag({"maple_score": 4, "adl_hierarchy": 3})
    best = configured_template_matcher().rank(bag, load_current_template_specs()).best

    assert best.applicable_services == ("nursing", "psw")
    assert best.estimated_weekly_cost_cents == (14 + 3) * 10000
