"""Drives a tracking session forward in real time."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from typing import Callable

from src.data.models import Trip
from src.errors import MalformedTimestamp
from src.logic.session import Phase, TrackingSession, TrackingSnapshot
from src.logic.time_math import parse_timestamp
from src.tracking.loop import TimerHandle, TrackingLoop

logger = logging.getLogger("rnvtrack.scheduler")

DEFAULT_TICK_INTERVAL_SECONDS = 1.0


@dataclass(frozen=True)
class Deadlines:
    """Resolved phase-transition instants; None when the source time was unusable."""

    departure: datetime | None
    arrival: datetime | None


def resolve_deadlines(trip: Trip) -> Deadlines:
    """Departure keys off the first timed leg; arrival off the last, else the trip end."""
    departure = None
    first = trip.first_timed_leg_index()
    if first is not None:
        try:
            departure = parse_timestamp(trip.legs[first].scheduled_departure)
        except MalformedTimestamp:
            logger.warning("Trip %s: departure deadline unparsable; no departure timer", trip.id)

    arrival = None
    last = trip.last_timed_leg_index()
    candidates = []
    if last is not None and trip.legs[last].scheduled_arrival:
        candidates.append(trip.legs[last].scheduled_arrival)
    candidates.append(trip.end_time)
    for candidate in candidates:
        try:
            arrival = parse_timestamp(candidate)
            break
        except MalformedTimestamp:
            logger.warning("Trip %s: arrival time %r unparsable", trip.id, candidate)
    return Deadlines(departure=departure, arrival=arrival)


class TrackingScheduler:
    """Periodic tick plus one-shot departure and arrival timers for one session.

    All callbacks run on ``loop``. ``publish`` receives each snapshot that
    differs from the one previously visible.
    """

    def __init__(
        self,
        session: TrackingSession,
        loop: TrackingLoop,
        publish: Callable[[TrackingSnapshot], None],
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
    ) -> None:
        self._session = session
        self._loop = loop
        self._publish = publish
        self._tick_interval_seconds = tick_interval_seconds
        self.deadlines = resolve_deadlines(session.trip)
        self._tick_handle: TimerHandle | None = None
        self._departure_handle: TimerHandle | None = None
        self._arrival_handle: TimerHandle | None = None
        self._cancelled = False

    @property
    def tick_handle(self) -> TimerHandle | None:
        return self._tick_handle

    @property
    def departure_handle(self) -> TimerHandle | None:
        return self._departure_handle

    @property
    def arrival_handle(self) -> TimerHandle | None:
        return self._arrival_handle

    def handles(self) -> list[TimerHandle]:
        return [
            handle
            for handle in (self._tick_handle, self._departure_handle, self._arrival_handle)
            if handle is not None
        ]

    def apply_overdue(self, now: datetime) -> Phase:
        """Advance the session past every deadline already reached at ``now``.

        Called before the first snapshot is built so a trip started en route
        begins in the correct phase.
        """
        if self.deadlines.departure is not None and now >= self.deadlines.departure:
            self._session.advance_to(Phase.DURING_JOURNEY)
        if self.deadlines.arrival is not None and now >= self.deadlines.arrival:
            self._session.advance_to(Phase.ARRIVED)
        return self._session.phase

    def start(self) -> None:
        """Schedule the deadline timers that are still ahead and the periodic tick."""
        trip_id = self._session.trip.id
        phase = self._session.phase
        if phase is Phase.BEFORE_DEPARTURE and self.deadlines.departure is not None:
            self._departure_handle = self._loop.call_at(
                self.deadlines.departure, self._on_departure, name=f"departure:{trip_id}"
            )
            logger.info("Trip %s: departure transition at %s", trip_id, self.deadlines.departure.isoformat())
        if phase is not Phase.ARRIVED and self.deadlines.arrival is not None:
            self._arrival_handle = self._loop.call_at(
                self.deadlines.arrival, self._on_arrival, name=f"arrival:{trip_id}"
            )
            logger.info("Trip %s: arrival transition at %s", trip_id, self.deadlines.arrival.isoformat())
        if phase is not Phase.ARRIVED:
            self._tick_handle = self._loop.call_every(
                self._tick_interval_seconds, self._on_tick, name=f"tick:{trip_id}"
            )

    def cancel(self) -> None:
        """Cancel every timer; no callback for this session runs afterwards."""
        self._cancelled = True
        for handle in self.handles():
            handle.cancel()

    def _on_tick(self) -> None:
        if self._cancelled:
            return
        if self._session.is_arrived:
            self._stop_ticking()
            return
        now = self._loop.now()
        if self._catch_up(now):
            return
        if self._session.recompute(now):
            logger.debug("Trip %s: snapshot updated", self._session.trip.id)
            self._emit()

    def _catch_up(self, now: datetime) -> bool:
        """Apply deadlines whose timers have not fired although their instant passed."""
        handled = False
        if (
            self.deadlines.arrival is not None
            and now >= self.deadlines.arrival
            and not self._session.is_arrived
        ):
            logger.info("Trip %s: arrival detected by tick", self._session.trip.id)
            self._on_arrival()
            handled = True
        elif (
            self.deadlines.departure is not None
            and now >= self.deadlines.departure
            and self._session.phase is Phase.BEFORE_DEPARTURE
        ):
            logger.info("Trip %s: departure detected by tick", self._session.trip.id)
            self._on_departure()
            handled = True
        return handled

    def _on_departure(self) -> None:
        if self._cancelled:
            return
        if self._departure_handle is not None:
            self._departure_handle.cancel()
        if not self._session.advance_to(Phase.DURING_JOURNEY):
            return
        self._session.recompute(self._loop.now())
        self._emit()

    def _on_arrival(self) -> None:
        if self._cancelled:
            return
        if self._arrival_handle is not None:
            self._arrival_handle.cancel()
        if self._departure_handle is not None:
            self._departure_handle.cancel()
        if not self._session.advance_to(Phase.ARRIVED):
            return
        self._stop_ticking()
        self._emit()

    def _stop_ticking(self) -> None:
        if self._tick_handle is not None and not self._tick_handle.cancelled:
            self._tick_handle.cancel()
            logger.info("Trip %s: periodic updates stopped", self._session.trip.id)

    def _emit(self) -> None:
        snapshot = self._session.snapshot
        if snapshot is not None:
            self._publish(snapshot)


__all__ = ["Deadlines", "TrackingScheduler", "resolve_deadlines", "DEFAULT_TICK_INTERVAL_SECONDS"]
