"""Live trip tracking: loop, scheduler, coordinator and surfaces."""

from src.tracking.coordinator import StopAllReport, TrackingCoordinator
from src.tracking.loop import TimerHandle, TrackingLoop
from src.tracking.scheduler import TrackingScheduler, resolve_deadlines
from src.tracking.surface import ConsoleSurface, LiveSurface

__all__ = [
    "ConsoleSurface",
    "LiveSurface",
    "StopAllReport",
    "TimerHandle",
    "TrackingCoordinator",
    "TrackingLoop",
    "TrackingScheduler",
    "resolve_deadlines",
]
