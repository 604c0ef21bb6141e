# hc_core/conftest.py
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from hc_core.providers.models import ProviderCapability, ProviderKind, ServiceProvider, ServiceType

TORONTO = ZoneInfo("America/Toronto")


@pytest.fixture
def visit_start():
    """Wednesday 2026-03-04 10:00 local."""
    return datetime(2026, 3, 4, 10, 0, tzinfo=TORONTO)


@pytest.fixture
def now(visit_start):
    return visit_start - timedelta(hours=72)


@pytest.fixture
def patient_id():
    return uuid.uuid4()


@pytest.fixture
def service_type(db):
    return ServiceType.objects.create(code="psw", name="Personal Support", category="personal_care")


@pytest.fixture
def nursing_service_type(db):
    return ServiceType.objects.create(code="nursing", name="Nursing Visit", category="nursing")


@pytest.fixture
def make_provider(db):
    def _make(name="Acme Care", kind=ProviderKind.SPO, **extra):
        return ServiceProvider.objects.create(name=name, kind=kind, **extra)

    return _make


@pytest.fixture
def make_capability(db, service_type, make_provider):
    def _make(provider=None, **overrides):
        fields = {
            "provider": provider or make_provider(),
            "service_type": service_type,
            "max_weekly_hours": Decimal("40.00"),
            "current_utilization_hours": Decimal("0.00"),
            "min_notice_hours": 24,
            "hourly_rate": Decimal("35.00"),
            "quality_score": Decimal("90.00"),
            "acceptance_rate": Decimal("85.00"),
            "completion_rate": Decimal("95.00"),
        }
        fields.update(overrides)
        return ProviderCapability.objects.create(**fields)

    return _make
