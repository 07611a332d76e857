"""Durable record of which trips are tracked, shared across processes."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field
import fcntl
import json
import logging
import os
from pathlib import Path
import tempfile
import threading
from typing import Any, Callable, Iterator, Protocol

from src.data.models import Trip
from src.errors import StoreUnavailable
from src.logic.session import TrackingSnapshot

logger = logging.getLogger("rnvtrack.store")

ACTIVE_TRIPS_KEY = "activeTrips"
TRIP_KEY_PREFIX = "trip:"
SNAPSHOT_KEY_PREFIX = "snapshot:"


class KeyValueStore(Protocol):
    """Blob store with an atomic read-modify-write primitive."""

    def get(self, key: str) -> Any | None: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...

    def update(self, key: str, func: Callable[[Any | None], Any | None]) -> Any | None: ...


class InMemoryKeyValueStore:
    """Process-local store, used for tests and when no state directory is configured."""

    def __init__(self) -> None:
        self._data: dict[str, Any] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Any | None:
        with self._lock:
            return json.loads(json.dumps(self._data.get(key)))

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = json.loads(json.dumps(value))

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def update(self, key: str, func: Callable[[Any | None], Any | None]) -> Any | None:
        with self._lock:
            value = func(json.loads(json.dumps(self._data.get(key))))
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = json.loads(json.dumps(value))
            return value


class FileKeyValueStore:
    """JSON document on disk guarded by an advisory lock file.

    Every operation takes the lock for its own duration only. Writes go to a
    temporary file that replaces the document atomically, so readers in other
    processes never see a half-written file.
    """

    def __init__(self, directory: str | Path, namespace: str) -> None:
        self._directory = Path(directory)
        self._path = self._directory / f"{namespace}.json"
        self._lock_path = self._directory / f"{namespace}.lock"
        self._thread_lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def get(self, key: str) -> Any | None:
        with self._locked(exclusive=False):
            return self._read().get(key)

    def set(self, key: str, value: Any) -> None:
        with self._locked(exclusive=True):
            data = self._read()
            data[key] = value
            self._write(data)

    def delete(self, key: str) -> None:
        with self._locked(exclusive=True):
            data = self._read()
            if data.pop(key, None) is not None:
                self._write(data)

    def update(self, key: str, func: Callable[[Any | None], Any | None]) -> Any | None:
        with self._locked(exclusive=True):
            data = self._read()
            value = func(data.get(key))
            if value is None:
                data.pop(key, None)
            else:
                data[key] = value
            self._write(data)
            return value

    @contextmanager
    def _locked(self, exclusive: bool) -> Iterator[None]:
        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            handle = open(self._lock_path, "a+", encoding="utf-8")
        except OSError as exc:
            raise StoreUnavailable(f"Cannot open state store lock {self._lock_path}: {exc}") from exc
        with self._thread_lock, handle:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX if exclusive else fcntl.LOCK_SH)
            except OSError as exc:
                raise StoreUnavailable(f"Cannot lock state store {self._lock_path}: {exc}") from exc
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)

    def _read(self) -> dict[str, Any]:
        try:
            with open(self._path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(f"Cannot read state store {self._path}: {exc}") from exc
        if not isinstance(data, dict):
            raise StoreUnavailable(f"State store {self._path} does not contain a mapping")
        return data

    def _write(self, data: dict[str, Any]) -> None:
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self._directory, prefix=".store-", suffix=".json")
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(data, handle, ensure_ascii=False)
            os.replace(tmp_path, self._path)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot write state store {self._path}: {exc}") from exc


@dataclass(frozen=True)
class LegRecord:
    service_kind: str | None
    line_label: str | None
    destination_label: str | None


@dataclass(frozen=True)
class TrackedTripRecord:
    """Denormalized trip copy persisted for the tracking surface."""

    trip_id: str
    is_active: bool
    start_time: str
    end_time: str
    interchange_count: int
    start_station: str
    end_station: str
    legs: tuple[LegRecord, ...] = field(default_factory=tuple)

    @classmethod
    def from_trip(cls, trip: Trip, is_active: bool) -> TrackedTripRecord:
        return cls(
            trip_id=trip.id,
            is_active=is_active,
            start_time=trip.start_time,
            end_time=trip.end_time,
            interchange_count=trip.interchange_count,
            start_station=trip.start_station,
            end_station=trip.end_station,
            legs=tuple(
                LegRecord(
                    service_kind=leg.service_kind.value if leg.service_kind else None,
                    line_label=leg.line_label,
                    destination_label=leg.destination_label,
                )
                for leg in trip.legs
            ),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.trip_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "interchanges": self.interchange_count,
            "startStation": self.start_station,
            "endStation": self.end_station,
            "legs": [
                {
                    "serviceType": leg.service_kind,
                    "serviceName": leg.line_label,
                    "destinationLabel": leg.destination_label,
                }
                for leg in self.legs
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], is_active: bool) -> TrackedTripRecord:
        return cls(
            trip_id=data["id"],
            is_active=is_active,
            start_time=data["startTime"],
            end_time=data["endTime"],
            interchange_count=int(data["interchanges"]),
            start_station=data.get("startStation", ""),
            end_station=data.get("endStation", ""),
            legs=tuple(
                LegRecord(
                    service_kind=leg.get("serviceType"),
                    line_label=leg.get("serviceName"),
                    destination_label=leg.get("destinationLabel"),
                )
                for leg in data.get("legs", [])
            ),
        )


class TrackingStateStore:
    """Active-trip flags, trip records and last snapshots on top of a KeyValueStore."""

    def __init__(self, backend: KeyValueStore) -> None:
        self._backend = backend

    def set_active(self, trip_id: str, is_active: bool) -> None:
        def _apply(current: Any | None) -> list[str]:
            active = [value for value in (current or []) if value != trip_id]
            if is_active:
                active.append(trip_id)
            return active

        self._backend.update(ACTIVE_TRIPS_KEY, _apply)
        logger.info("Trip %s is now %s", trip_id, "active" if is_active else "inactive")

    def is_active(self, trip_id: str) -> bool:
        return trip_id in self.active_trip_ids()

    def active_trip_ids(self) -> list[str]:
        value = self._backend.get(ACTIVE_TRIPS_KEY)
        return [str(item) for item in value] if isinstance(value, list) else []

    def deactivate_all(self) -> list[str]:
        """Clear every active flag; returns the ids that were active."""
        previous: list[str] = []

        def _apply(current: Any | None) -> None:
            previous.extend(current or [])
            return None

        self._backend.update(ACTIVE_TRIPS_KEY, _apply)
        logger.info("All trips deactivated")
        return previous

    def save_trip(self, trip: Trip) -> TrackedTripRecord:
        record = TrackedTripRecord.from_trip(trip, is_active=self.is_active(trip.id))
        self._backend.set(TRIP_KEY_PREFIX + trip.id, record.to_dict())
        return record

    def get_trip(self, trip_id: str) -> TrackedTripRecord | None:
        data = self._backend.get(TRIP_KEY_PREFIX + trip_id)
        if not isinstance(data, dict):
            return None
        try:
            return TrackedTripRecord.from_dict(data, is_active=self.is_active(trip_id))
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable trip record for %s", trip_id)
            return None

    def remove_trip(self, trip_id: str) -> None:
        self._backend.delete(TRIP_KEY_PREFIX + trip_id)
        self._backend.delete(SNAPSHOT_KEY_PREFIX + trip_id)

    def save_snapshot(self, trip_id: str, snapshot: TrackingSnapshot) -> None:
        self._backend.set(SNAPSHOT_KEY_PREFIX + trip_id, snapshot.to_dict())

    def load_snapshot(self, trip_id: str) -> TrackingSnapshot | None:
        data = self._backend.get(SNAPSHOT_KEY_PREFIX + trip_id)
        if not isinstance(data, dict):
            return None
        try:
            return TrackingSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable snapshot for %s", trip_id)
            return None


__all__ = [
    "ACTIVE_TRIPS_KEY",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "FileKeyValueStore",
    "LegRecord",
    "TrackedTripRecord",
    "TrackingStateStore",
]
