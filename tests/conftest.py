from datetime import datetime, timedelta, timezone

import pytest

from offer_lifecycle.service import LifecycleManager
from offer_lifecycle.store import MemoryStore

T0 = datetime(2025, 8, 15, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Manually advanced clock so SLA arithmetic is deterministic."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def manager(store, clock):
    return LifecycleManager(store, clock=clock)


@pytest.fixture
def manual_offer():
    return {
        "min_price": 3000,
        "max_price": 3150,
        "doctor_name": "Op. Dr. Ayse Demir",
        "procedure_address": "Nisantasi, Istanbul",
        "duration_label": "2-3 hours",
        "hospitalization_label": "1 night",
        "included_services": ["accommodation", "transport"],
    }
