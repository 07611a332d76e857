"""Live tracking state for a single trip.

A session derives the snapshot that should be visible at a given instant from
the trip's raw timetable data. Building a snapshot is a pure function of
``(trip, now, phase)``; the session itself only remembers the current phase
and the last snapshot that built successfully.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, tzinfo
from enum import Enum
import logging
from typing import Any

from src.data.models import Leg, ServiceKind, Trip
from src.errors import IncompleteLegData, MalformedTimestamp, NoTrackableLeg, TrackingError
from src.logic.time_math import delay_minutes, format_clock, parse_timestamp, progress_fraction

logger = logging.getLogger("rnvtrack.session")

REQUIRED_LEG_FIELDS = (
    "board_stop_name",
    "scheduled_departure",
    "line_label",
    "service_kind",
    "destination_label",
)


class Phase(str, Enum):
    BEFORE_DEPARTURE = "beforeDeparture"
    DURING_JOURNEY = "duringJourney"
    ARRIVED = "arrived"

    @property
    def rank(self) -> int:
        return _PHASE_ORDER.index(self)


_PHASE_ORDER = [Phase.BEFORE_DEPARTURE, Phase.DURING_JOURNEY, Phase.ARRIVED]


@dataclass(frozen=True)
class TrackingSnapshot:
    """Display-relevant tracking status at one instant."""

    phase: Phase
    current_leg_index: int
    next_stop_name: str
    next_stop_time_formatted: str
    estimated_time_formatted: str | None
    delay_minutes: int | None
    destination_label: str
    line_label: str
    service_kind: ServiceKind

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["phase"] = self.phase.value
        data["service_kind"] = self.service_kind.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TrackingSnapshot:
        return cls(
            phase=Phase(data["phase"]),
            current_leg_index=int(data["current_leg_index"]),
            next_stop_name=data["next_stop_name"],
            next_stop_time_formatted=data["next_stop_time_formatted"],
            estimated_time_formatted=data.get("estimated_time_formatted"),
            delay_minutes=data.get("delay_minutes"),
            destination_label=data["destination_label"],
            line_label=data["line_label"],
            service_kind=ServiceKind(data["service_kind"]),
        )


@dataclass(frozen=True)
class TripSummary:
    """Static trip fields shown next to the snapshot on the tracking surface."""

    trip_id: str
    start_station: str
    end_station: str
    total_timed_legs: int
    departure_time_iso: str
    arrival_time_iso: str

    def progress(self, now: datetime) -> float | None:
        """Journey progress in [0, 1], or None when a bound cannot be parsed."""
        try:
            start = parse_timestamp(self.departure_time_iso)
            end = parse_timestamp(self.arrival_time_iso)
        except MalformedTimestamp:
            return None
        return progress_fraction(start, end, now)


def missing_fields(leg: Leg) -> list[str]:
    return [name for name in REQUIRED_LEG_FIELDS if not getattr(leg, name)]


def require_trackable(trip: Trip) -> int:
    """Return the index of the first timed leg, validating its display fields."""
    index = trip.first_timed_leg_index()
    if index is None:
        raise NoTrackableLeg(f"Trip {trip.id} has no timed ride leg")
    missing = missing_fields(trip.legs[index])
    if missing:
        raise IncompleteLegData(missing)
    return index


def current_leg_index(trip: Trip, now: datetime) -> int | None:
    """Index of the first timed leg departing after ``now``, else the last timed leg.

    Legs whose scheduled departure cannot be parsed are skipped.
    """
    for index in trip.timed_leg_indices():
        try:
            departure = parse_timestamp(trip.legs[index].scheduled_departure)
        except MalformedTimestamp:
            continue
        if departure > now:
            return index
    return trip.last_timed_leg_index()


def build_snapshot_for_leg(
    trip: Trip, index: int, phase: Phase, tz: tzinfo | None = None
) -> TrackingSnapshot:
    leg = trip.legs[index]
    missing = missing_fields(leg)
    if missing:
        raise IncompleteLegData(missing)

    scheduled = parse_timestamp(leg.scheduled_departure)
    estimated: datetime | None = None
    if leg.estimated_departure is not None:
        try:
            estimated = parse_timestamp(leg.estimated_departure)
        except MalformedTimestamp:
            logger.warning("Ignoring unparsable estimate on leg %d of trip %s", index, trip.id)

    return TrackingSnapshot(
        phase=phase,
        current_leg_index=index,
        next_stop_name=leg.board_stop_name,
        next_stop_time_formatted=format_clock(scheduled, tz),
        estimated_time_formatted=format_clock(estimated, tz) if estimated else None,
        delay_minutes=delay_minutes(scheduled, estimated),
        destination_label=leg.destination_label,
        line_label=leg.line_label,
        service_kind=leg.service_kind,
    )


def build_snapshot(
    trip: Trip, now: datetime, phase: Phase, tz: tzinfo | None = None
) -> TrackingSnapshot:
    """Build the snapshot visible at ``now``; raises instead of showing partial data."""
    index = current_leg_index(trip, now)
    if index is None:
        raise NoTrackableLeg(f"Trip {trip.id} has no timed ride leg")
    return build_snapshot_for_leg(trip, index, phase, tz)


def summarize(trip: Trip) -> TripSummary:
    first = trip.first_timed_leg_index()
    last = trip.last_timed_leg_index()
    departure = trip.legs[first].scheduled_departure if first is not None else None
    arrival = trip.legs[last].scheduled_arrival if last is not None else None
    return TripSummary(
        trip_id=trip.id,
        start_station=trip.start_station,
        end_station=trip.end_station,
        total_timed_legs=len(trip.timed_leg_indices()),
        departure_time_iso=departure or trip.start_time,
        arrival_time_iso=arrival or trip.end_time,
    )


class TrackingSession:
    """Phase and last good snapshot for one tracked trip.

    Not thread-safe; the scheduler's loop is the only writer.
    """

    def __init__(self, trip: Trip, tz: tzinfo | None = None) -> None:
        self.trip = trip
        self.summary = summarize(trip)
        self._tz = tz
        self._phase = Phase.BEFORE_DEPARTURE
        self._snapshot: TrackingSnapshot | None = None

    @property
    def phase(self) -> Phase:
        return self._phase

    @property
    def snapshot(self) -> TrackingSnapshot | None:
        return self._snapshot

    @property
    def is_arrived(self) -> bool:
        return self._phase is Phase.ARRIVED

    def initialize(self, now: datetime) -> TrackingSnapshot:
        """Build the first snapshot, falling back to the first timed leg.

        Raises NoTrackableLeg or IncompleteLegData when the trip cannot be shown.
        """
        first = require_trackable(self.trip)
        try:
            snapshot = build_snapshot(self.trip, now, self._phase, self._tz)
        except TrackingError as exc:
            logger.warning("Current leg of trip %s unusable (%s); using first leg", self.trip.id, exc)
            try:
                snapshot = build_snapshot_for_leg(self.trip, first, self._phase, self._tz)
            except MalformedTimestamp as malformed:
                raise IncompleteLegData(["scheduled_departure"]) from malformed
        self._snapshot = snapshot
        return snapshot

    def advance_to(self, phase: Phase) -> bool:
        """Move forward to ``phase``; returns False if it is not later than the current one."""
        if phase.rank <= self._phase.rank:
            return False
        logger.info("Trip %s: %s -> %s", self.trip.id, self._phase.value, phase.value)
        self._phase = phase
        if self._snapshot is not None:
            self._snapshot = replace(self._snapshot, phase=phase)
        return True

    def compute(self, now: datetime) -> TrackingSnapshot | None:
        """Build a candidate snapshot for the current phase; None if the build failed."""
        try:
            return build_snapshot(self.trip, now, self._phase, self._tz)
        except TrackingError as exc:
            logger.warning("Keeping previous snapshot for trip %s: %s", self.trip.id, exc)
            return None

    def apply(self, snapshot: TrackingSnapshot) -> bool:
        """Install ``snapshot`` unless it was computed against a superseded phase.

        Returns True when the visible snapshot changed.
        """
        if snapshot.phase is not self._phase:
            logger.debug("Discarding snapshot computed for phase %s", snapshot.phase.value)
            return False
        if snapshot == self._snapshot:
            return False
        self._snapshot = snapshot
        return True

    def recompute(self, now: datetime) -> bool:
        """Recompute and install the snapshot; a no-op once arrived."""
        if self.is_arrived:
            return False
        candidate = self.compute(now)
        if candidate is None:
            return False
        return self.apply(candidate)


__all__ = [
    "Phase",
    "TrackingSnapshot",
    "TripSummary",
    "TrackingSession",
    "REQUIRED_LEG_FIELDS",
    "missing_fields",
    "require_trackable",
    "current_leg_index",
    "build_snapshot",
    "build_snapshot_for_leg",
    "summarize",
]
