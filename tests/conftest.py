"""Shared test fixtures and helpers."""

from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

import pytest

from evbooking.config import AppConfig, CatalogConfig, ServerConfig, WaitlistConfig
from evbooking.engine import AllocationEngine
from evbooking.schemas.booking_schema import ChargeRequest, TimeWindow
from evbooking.schemas.station_schema import ChargingLevel, SlotDefinition, Station
from evbooking.store import EngineStore

DAY = date(2025, 3, 4)
START = datetime(2025, 3, 4, 8, 0, tzinfo=timezone.utc)

TEST_CONFIG = AppConfig(
    catalog=CatalogConfig(
        open_time=time(6, 0),
        close_time=time(22, 0),
        granularity_minutes=30,
        default_window_minutes=60,
        horizon_days=14,
    ),
    waitlist=WaitlistConfig(offer_hold_minutes=15, commit_retries=1),
    server=ServerConfig(host="127.0.0.1", port=8000, cors_origins="*"),
    log_level="INFO",
    app_name="test-engine",
)

SINGLE_SLOT_STATION = Station(
    station_id="S1",
    name="Single Slot Test Station",
    slots=(SlotDefinition(slot_id="S1-1", level=ChargingLevel.L3, power_kw=150.0),),
)

MIXED_STATION = Station(
    station_id="S2",
    name="Mixed Level Test Station",
    slots=(
        SlotDefinition(slot_id="S2-1", level=ChargingLevel.L2, power_kw=7.2),
        SlotDefinition(slot_id="S2-2", level=ChargingLevel.L2, power_kw=7.2),
        SlotDefinition(slot_id="S2-3", level=ChargingLevel.L3, power_kw=50.0),
    ),
    open_time="08:00",
    close_time="12:00",
)

DEFAULT_WINDOW = ("14:00", "15:00")


class FakeClock:
    """Controllable clock injected into the engine."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now += timedelta(minutes=minutes, seconds=seconds)
        return self.now


class EventRecorder:
    """Collects every event published on a bus."""

    def __init__(self) -> None:
        self.events: list = []

    def __call__(self, event) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]

    def clear(self) -> None:
        self.events.clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return EngineStore()


@pytest.fixture
def engine(store, clock):
    return AllocationEngine(
        store=store,
        config=TEST_CONFIG,
        clock=clock,
        stations=[SINGLE_SLOT_STATION, MIXED_STATION],
    )


@pytest.fixture
def recorder(engine):
    rec = EventRecorder()
    engine.bus.subscribe_all(rec)
    return rec


def make_request(
    requester_id: str = "driver-1",
    soc: int = 50,
    station_id: str = "S1",
    day: date = DAY,
    window: Optional[tuple[str, str]] = DEFAULT_WINDOW,
    level: ChargingLevel = ChargingLevel.L3,
    estimated_range: float = 120.0,
    created_at: datetime = START,
) -> ChargeRequest:
    """Helper to create a ChargeRequest with sensible defaults. ``window=None`` means any."""
    return ChargeRequest(
        requester_id=requester_id,
        station_id=station_id,
        date=day,
        window=TimeWindow(start=window[0], end=window[1]) if window else None,
        soc=soc,
        estimated_range=estimated_range,
        level=level,
        created_at=created_at,
    )
