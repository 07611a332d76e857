"""Live tracking surface adapters."""

from __future__ import annotations

from datetime import datetime
import logging
import sys
from typing import Callable, Protocol, TextIO

from src.errors import TrackingSurfaceDenied
from src.logic.session import Phase, TrackingSnapshot, TripSummary
from src.logic.time_math import utc_now

logger = logging.getLogger("rnvtrack.surface")


class LiveSurface(Protocol):
    """Renders tracking snapshots; must tolerate duplicate updates."""

    def ensure_permitted(self) -> None:
        """Raise TrackingSurfaceDenied if a new surface would be refused."""

    def request(self, summary: TripSummary, snapshot: TrackingSnapshot) -> None:
        """Show a new surface; raises TrackingSurfaceDenied when not permitted."""

    def update(self, summary: TripSummary, snapshot: TrackingSnapshot) -> None: ...

    def end(self, trip_id: str) -> None: ...


_PHASE_LABELS = {
    Phase.BEFORE_DEPARTURE: "Departs",
    Phase.DURING_JOURNEY: "En route",
    Phase.ARRIVED: "Arrived",
}


def describe(summary: TripSummary, snapshot: TrackingSnapshot, now: datetime) -> str:
    """One-line text rendering of a snapshot."""
    delay = ""
    if snapshot.delay_minutes:
        delay = f" +{snapshot.delay_minutes} min"
    elif snapshot.delay_minutes == 0:
        delay = " on time"
    progress = summary.progress(now)
    progress_text = f" [{int(progress * 100):3d}%]" if progress is not None else ""
    return (
        f"{_PHASE_LABELS[snapshot.phase]}{progress_text} "
        f"{snapshot.line_label} -> {snapshot.destination_label} "
        f"from {snapshot.next_stop_name} at {snapshot.next_stop_time_formatted}{delay} "
        f"({summary.start_station} -> {summary.end_station})"
    )


class ConsoleSurface:
    """Writes each snapshot as a line of text; used by the command-line scripts."""

    def __init__(
        self,
        enabled: bool = True,
        stream: TextIO | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._enabled = enabled
        self._stream = stream or sys.stdout
        self._clock = clock
        self._shown: set[str] = set()

    def ensure_permitted(self) -> None:
        if not self._enabled:
            raise TrackingSurfaceDenied("Live tracking is disabled in the settings")

    def request(self, summary: TripSummary, snapshot: TrackingSnapshot) -> None:
        try:
            self.ensure_permitted()
        except TrackingSurfaceDenied:
            logger.warning("Surface request for %s denied", summary.trip_id)
            raise
        self._shown.add(summary.trip_id)
        self._write(summary, snapshot)

    def update(self, summary: TripSummary, snapshot: TrackingSnapshot) -> None:
        if summary.trip_id not in self._shown:
            return
        self._write(summary, snapshot)

    def end(self, trip_id: str) -> None:
        if trip_id in self._shown:
            self._shown.discard(trip_id)
            logger.info("Surface closed for %s", trip_id)
            self._stream.write(f"Tracking ended for {trip_id}\n")
            self._stream.flush()

    def _write(self, summary: TripSummary, snapshot: TrackingSnapshot) -> None:
        self._stream.write(describe(summary, snapshot, self._clock()) + "\n")
        self._stream.flush()


__all__ = ["LiveSurface", "ConsoleSurface", "describe"]
