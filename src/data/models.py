"""Itinerary data shapes returned by the connections API."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class LegKind(str, Enum):
    TIMED_RIDE = "TimedLeg"
    TRANSFER = "InterchangeLeg"


class ServiceKind(str, Enum):
    """Vehicle category of a timed ride, keyed by the API's service type."""

    TRAM = "STRASSENBAHN"
    BUS = "BUS"
    SUBURBAN_RAIL = "S_BAHN"
    OTHER = "OTHER"

    @classmethod
    def from_wire(cls, value: str | None) -> ServiceKind | None:
        if value is None:
            return None
        try:
            return cls(value.upper())
        except ValueError:
            return cls.OTHER


@dataclass(frozen=True)
class Leg:
    """One itinerary segment; times are raw ISO-8601 strings from the API."""

    kind: LegKind
    mode: str | None = None
    board_stop_name: str | None = None
    alight_stop_name: str | None = None
    scheduled_departure: str | None = None
    scheduled_arrival: str | None = None
    estimated_departure: str | None = None
    estimated_arrival: str | None = None
    service_kind: ServiceKind | None = None
    line_label: str | None = None
    service_description: str | None = None
    destination_label: str | None = None

    @property
    def is_timed(self) -> bool:
        return self.kind is LegKind.TIMED_RIDE

    @classmethod
    def transfer(cls, mode: str) -> Leg:
        return cls(kind=LegKind.TRANSFER, mode=mode)


@dataclass(frozen=True)
class Trip:
    """An ordered itinerary; ``legs`` keeps travel order."""

    id: str
    start_time: str
    end_time: str
    interchange_count: int
    legs: tuple[Leg, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Trip id must not be empty")
        if self.interchange_count < 0:
            raise ValueError("Trip interchange_count must be non-negative")
        if not isinstance(self.legs, tuple):
            object.__setattr__(self, "legs", tuple(self.legs))

    def timed_leg_indices(self) -> list[int]:
        return [index for index, leg in enumerate(self.legs) if leg.is_timed]

    def first_timed_leg_index(self) -> int | None:
        indices = self.timed_leg_indices()
        return indices[0] if indices else None

    def last_timed_leg_index(self) -> int | None:
        indices = self.timed_leg_indices()
        return indices[-1] if indices else None

    @property
    def start_station(self) -> str:
        index = self.first_timed_leg_index()
        return (self.legs[index].board_stop_name or "") if index is not None else ""

    @property
    def end_station(self) -> str:
        index = self.last_timed_leg_index()
        return (self.legs[index].alight_stop_name or "") if index is not None else ""


@dataclass(frozen=True)
class Station:
    """A stop returned by the station search."""

    hafas_id: str
    global_id: str
    long_name: str


__all__ = ["LegKind", "ServiceKind", "Leg", "Trip", "Station"]
