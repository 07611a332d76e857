"""Error taxonomy for trip live-tracking."""

from __future__ import annotations


class TrackingError(Exception):
    """Base class for every live-tracking failure."""


class MalformedTimestamp(TrackingError):
    """Raised when a timestamp string cannot be parsed."""

    def __init__(self, value: object) -> None:
        super().__init__(f"Malformed timestamp: {value!r}")
        self.value = value


class IncompleteLegData(TrackingError):
    """Raised when a leg lacks a field required to build a snapshot."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Leg is missing required fields: {', '.join(missing)}")
        self.missing = missing


class NoTrackableLeg(TrackingError):
    """Raised when a trip contains no timed ride leg."""


class TrackingSurfaceDenied(TrackingError):
    """Raised when the platform refuses to show a live tracking surface."""


class StoreUnavailable(TrackingError):
    """Raised when the persisted tracking state store cannot be reached."""


__all__ = [
    "TrackingError",
    "MalformedTimestamp",
    "IncompleteLegData",
    "NoTrackableLeg",
    "TrackingSurfaceDenied",
    "StoreUnavailable",
]
