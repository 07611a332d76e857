"""Public entry point for starting and stopping live trip tracking."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import tzinfo
from functools import partial
import logging

from src.data.models import Trip
from src.data.state_store import TrackingStateStore
from src.errors import StoreUnavailable
from src.logic.session import TrackingSession, TrackingSnapshot, require_trackable
from src.tracking.loop import TrackingLoop
from src.tracking.scheduler import DEFAULT_TICK_INTERVAL_SECONDS, TrackingScheduler
from src.tracking.surface import LiveSurface

logger = logging.getLogger("rnvtrack.coordinator")


@dataclass
class ActiveTrip:
    session: TrackingSession
    scheduler: TrackingScheduler
    access_token: str


@dataclass
class StopAllReport:
    """Outcome of stopping every tracked trip; failures do not abort the others."""

    stopped: list[str] = field(default_factory=list)
    failures: dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures


class TrackingCoordinator:
    """Enforces at most one actively tracked trip and owns its scheduler.

    Public methods are marshalled onto ``loop``; when they return, every timer
    of a stopped or superseded trip is already cancelled.
    """

    def __init__(
        self,
        store: TrackingStateStore,
        surface: LiveSurface,
        loop: TrackingLoop,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        tz: tzinfo | None = None,
    ) -> None:
        self._store = store
        self._surface = surface
        self._loop = loop
        self._tick_interval_seconds = tick_interval_seconds
        self._tz = tz
        self._active: dict[str, ActiveTrip] = {}

    def start_tracking(self, trip: Trip, access_token: str) -> TrackingSnapshot:
        """Start tracking ``trip``, superseding any other tracked trip.

        Raises NoTrackableLeg, IncompleteLegData or TrackingSurfaceDenied; in
        each case the call has no effect and the current trip keeps running.
        """
        return self._loop.run_sync(self._start, trip, access_token)

    def stop_tracking(self, trip_id: str) -> None:
        """Stop tracking ``trip_id``; unknown or already stopped ids are a no-op."""
        self._loop.run_sync(self._stop_best_effort, trip_id)

    def stop_all_tracking(self) -> StopAllReport:
        return self._loop.run_sync(self._stop_all)

    def is_tracking(self, trip_id: str) -> bool:
        """Read the shared store; falls back to in-memory state while it is unreachable."""
        try:
            return self._store.is_active(trip_id)
        except StoreUnavailable as exc:
            logger.warning("State store unavailable, answering from memory: %s", exc)
            return trip_id in self._active

    def snapshot(self, trip_id: str) -> TrackingSnapshot | None:
        """Latest snapshot for ``trip_id``, from memory or the shared store."""
        return self._loop.run_sync(self._snapshot, trip_id)

    def active_trip_ids(self) -> list[str]:
        return self._loop.run_sync(lambda: list(self._active))

    def _start(self, trip: Trip, access_token: str) -> TrackingSnapshot:
        require_trackable(trip)
        self._surface.ensure_permitted()
        now = self._loop.now()
        session = TrackingSession(trip, tz=self._tz)
        scheduler = TrackingScheduler(
            session,
            self._loop,
            publish=partial(self._publish, trip.id),
            tick_interval_seconds=self._tick_interval_seconds,
        )
        phase = scheduler.apply_overdue(now)
        snapshot = session.initialize(now)

        for other_id in self._tracked_ids():
            logger.info("Trip %s superseded by %s", other_id, trip.id)
            self._stop_best_effort(other_id)

        self._surface.request(session.summary, snapshot)
        self._active[trip.id] = ActiveTrip(session, scheduler, access_token)
        self._persist_start(trip, snapshot)
        scheduler.start()
        logger.info("Tracking trip %s in phase %s", trip.id, phase.value)
        return snapshot

    def _tracked_ids(self) -> list[str]:
        ids = list(self._active)
        try:
            stored = self._store.active_trip_ids()
        except StoreUnavailable as exc:
            logger.warning("Cannot list stored active trips: %s", exc)
            stored = []
        ids.extend(trip_id for trip_id in stored if trip_id not in ids)
        return ids

    def _persist_start(self, trip: Trip, snapshot: TrackingSnapshot) -> None:
        try:
            self._store.set_active(trip.id, True)
            self._store.save_trip(trip)
            self._store.save_snapshot(trip.id, snapshot)
        except StoreUnavailable as exc:
            logger.warning("Trip %s tracked without persistence: %s", trip.id, exc)

    def _stop(self, trip_id: str) -> None:
        active = self._active.pop(trip_id, None)
        if active is not None:
            active.scheduler.cancel()
            self._surface.end(trip_id)
        self._store.set_active(trip_id, False)

    def _stop_best_effort(self, trip_id: str) -> None:
        try:
            self._stop(trip_id)
        except StoreUnavailable as exc:
            logger.warning("Trip %s stopped but not persisted as inactive: %s", trip_id, exc)

    def _stop_all(self) -> StopAllReport:
        report = StopAllReport()
        for trip_id in self._tracked_ids():
            try:
                self._stop(trip_id)
            except Exception as exc:
                logger.exception("Failed to stop trip %s", trip_id)
                report.failures[trip_id] = exc
            else:
                report.stopped.append(trip_id)
        return report

    def _publish(self, trip_id: str, snapshot: TrackingSnapshot) -> None:
        active = self._active.get(trip_id)
        if active is None:
            return
        self._surface.update(active.session.summary, snapshot)
        try:
            self._store.save_snapshot(trip_id, snapshot)
        except StoreUnavailable as exc:
            logger.warning("Snapshot for trip %s not persisted: %s", trip_id, exc)

    def _snapshot(self, trip_id: str) -> TrackingSnapshot | None:
        active = self._active.get(trip_id)
        if active is not None:
            return active.session.snapshot
        try:
            return self._store.load_snapshot(trip_id)
        except StoreUnavailable as exc:
            logger.warning("Cannot load snapshot for trip %s: %s", trip_id, exc)
            return None


__all__ = ["ActiveTrip", "StopAllReport", "TrackingCoordinator"]
