from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.data.models import Leg, LegKind, ServiceKind, Trip
from src.data.state_store import InMemoryKeyValueStore, TrackingStateStore
from src.errors import TrackingSurfaceDenied
from src.logic.time_math import format_timestamp
from src.tracking.loop import TrackingLoop

T0 = datetime(2026, 1, 15, 8, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = T0) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> datetime:
        self.current = self.current + timedelta(seconds=seconds)
        return self.current


class RecordingSurface:
    def __init__(self, enabled: bool = True) -> None:
        self.enabled = enabled
        self.requests: list = []
        self.updates: list = []
        self.ended: list[str] = []

    def ensure_permitted(self) -> None:
        if not self.enabled:
            raise TrackingSurfaceDenied("disabled")

    def request(self, summary, snapshot) -> None:
        self.ensure_permitted()
        self.requests.append((summary, snapshot))

    def update(self, summary, snapshot) -> None:
        self.updates.append((summary, snapshot))

    def end(self, trip_id: str) -> None:
        self.ended.append(trip_id)


def iso(instant: datetime) -> str:
    return format_timestamp(instant)


def ride(
    departure: datetime,
    arrival: datetime,
    *,
    board: str | None = "Hauptbahnhof",
    alight: str = "Bismarckplatz",
    line: str | None = "5",
    destination: str | None = "Weinheim",
    service_kind: ServiceKind | None = ServiceKind.TRAM,
    estimated_departure: str | None = None,
    scheduled_departure: str | None = None,
) -> Leg:
    return Leg(
        kind=LegKind.TIMED_RIDE,
        board_stop_name=board,
        alight_stop_name=alight,
        scheduled_departure=scheduled_departure if scheduled_departure is not None else iso(departure),
        scheduled_arrival=iso(arrival),
        estimated_departure=estimated_departure,
        service_kind=service_kind,
        line_label=line,
        destination_label=destination,
    )


def make_trip(*legs: Leg, trip_id: str = "trip-a", start: datetime | None = None, end: datetime | None = None) -> Trip:
    start = start or T0
    end = end or T0 + timedelta(hours=1)
    return Trip(id=trip_id, start_time=iso(start), end_time=iso(end), interchange_count=max(len(legs) - 1, 0), legs=legs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def loop(clock: FakeClock) -> TrackingLoop:
    return TrackingLoop(clock=clock)


@pytest.fixture()
def store() -> TrackingStateStore:
    return TrackingStateStore(InMemoryKeyValueStore())


@pytest.fixture()
def surface() -> RecordingSurface:
    return RecordingSurface()
