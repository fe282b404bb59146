import pytest
from unittest.mock import AsyncMock, MagicMock

from callleads.background import BackgroundTasks
from callleads.config import EngineConfig
from callleads.engine import ReconciliationEngine
from callleads.models import Lead
from callleads.scheduler import ManualScheduler
from callleads.ui_gate import UIOpenGate

T0 = 1_700_000_000_000
PHONE = "+15125551234"


@pytest.fixture
def scheduler():
    return ManualScheduler(start_ms=T0)


@pytest.fixture
def tasks():
    return BackgroundTasks()


@pytest.fixture
def lead():
    return Lead(id="phone_abc123def456", phone_number="15125551234")


@pytest.fixture
def store(lead):
    store = AsyncMock()
    store.find_or_create_lead.return_value = lead
    store.add_call_event.return_value = lead
    store.add_final_call_event.return_value = lead
    store.update_call_from_call_log.return_value = True
    return store


@pytest.fixture
def surface():
    surface = MagicMock()
    surface.is_ready.return_value = True
    surface.open_lead = AsyncMock(return_value=None)
    return surface


@pytest.fixture
def gate(surface, scheduler, tasks):
    return UIOpenGate(surface, scheduler, tasks)


@pytest.fixture
def engine(store, gate, scheduler, tasks):
    return ReconciliationEngine(
        store,
        gate=gate,
        scheduler=scheduler,
        tasks=tasks,
        config=EngineConfig(),
    )


@pytest.fixture
def call_event():
    """Build a native event map."""

    def make(outcome, timestamp, phone=PHONE, direction="inbound", duration=None):
        event = {"outcome": outcome, "direction": direction, "timestamp": timestamp}
        if phone is not None:
            event["phoneNumber"] = phone
        if duration is not None:
            event["durationInSeconds"] = duration
        return event

    return make
