"""RNV GraphQL client for stations and trip connections."""

from __future__ import annotations

from datetime import datetime
import json
import logging
from typing import Any
import uuid

import requests

from src.data.middleware import (
    Middleware,
    PreparedRequest,
    RequestRejected,
    Send,
    build_pipeline,
    requests_sender,
)
from src.data.models import Leg, LegKind, ServiceKind, Station, Trip
from src.logic.time_math import format_timestamp, utc_now

logger = logging.getLogger("rnvtrack.connections")

DEFAULT_GRAPHQL_URL = "https://graphql-sandbox-dds.rnv-online.de/"
TRIP_ID_NAMESPACE = uuid.UUID("6f1f9c3e-2b0a-4a8e-9a43-3d4a2f6b9e10")

STATION_FIELDS = """
    elements {
      ... on Station {
        hafasID
        globalID
        longName
      }
    }
"""

STOP_FIELDS = """
        point {
          ... on StopPoint {
            ref
            stopPointName
          }
        }
        estimatedTime {
          isoString
        }
        timetabledTime {
          isoString
        }
"""

TRIPS_QUERY = """
{
  trips(
    originGlobalID: %(origin)s
    destinationGlobalID: %(destination)s
    departureTime: %(departure)s
  ) {
    startTime {
      isoString
    }
    endTime {
      isoString
    }
    interchanges
    legs {
      ... on InterchangeLeg {
        mode
      }
      ... on ContinuousLeg {
        mode
      }
      ... on TimedLeg {
        board {%(stop_fields)s}
        alight {%(stop_fields)s}
        service {
          type
          name
          description
          destinationLabel
        }
      }
    }
  }
}
"""


class FetchFailed(Exception):
    """Raised when a connections request fails or its response is malformed."""


def _literal(value: str) -> str:
    # GraphQL string literals share JSON's escaping rules.
    return json.dumps(value)


def _iso(container: dict[str, Any] | None, key: str) -> str | None:
    if not isinstance(container, dict):
        return None
    value = container.get(key)
    if isinstance(value, dict):
        iso = value.get("isoString")
        return iso if isinstance(iso, str) else None
    return None


def _stop_name(container: dict[str, Any] | None) -> str | None:
    if not isinstance(container, dict):
        return None
    point = container.get("point")
    if isinstance(point, dict):
        name = point.get("stopPointName")
        return name if isinstance(name, str) else None
    return None


def parse_leg(raw: dict[str, Any]) -> Leg | None:
    """Parse one leg; returns None for leg shapes the tracker does not know."""
    board = raw.get("board")
    alight = raw.get("alight")
    service = raw.get("service")
    if isinstance(board, dict) and isinstance(alight, dict) and isinstance(service, dict):
        return Leg(
            kind=LegKind.TIMED_RIDE,
            board_stop_name=_stop_name(board),
            alight_stop_name=_stop_name(alight),
            scheduled_departure=_iso(board, "timetabledTime"),
            scheduled_arrival=_iso(alight, "timetabledTime"),
            estimated_departure=_iso(board, "estimatedTime"),
            estimated_arrival=_iso(alight, "estimatedTime"),
            service_kind=ServiceKind.from_wire(service.get("type")),
            line_label=service.get("name"),
            service_description=service.get("description"),
            destination_label=service.get("destinationLabel"),
        )
    mode = raw.get("mode")
    if isinstance(mode, str):
        return Leg.transfer(mode)
    return None


def trip_id_for(start_time: str, end_time: str, legs: tuple[Leg, ...]) -> str:
    """Stable id derived from the itinerary, so refetching yields the same id."""
    parts = [start_time, end_time]
    for leg in legs:
        parts.append(f"{leg.kind.value}:{leg.line_label}:{leg.scheduled_departure}:{leg.mode}")
    return str(uuid.uuid5(TRIP_ID_NAMESPACE, "|".join(parts)))


def parse_trip(raw: dict[str, Any]) -> Trip:
    start_time = _iso(raw, "startTime")
    end_time = _iso(raw, "endTime")
    interchanges = raw.get("interchanges")
    raw_legs = raw.get("legs")
    if start_time is None or end_time is None:
        raise FetchFailed("Trip is missing startTime or endTime")
    if not isinstance(interchanges, int) or interchanges < 0:
        raise FetchFailed("Trip is missing a valid interchanges count")
    if not isinstance(raw_legs, list):
        raise FetchFailed("Trip is missing legs")

    legs = []
    for raw_leg in raw_legs:
        leg = parse_leg(raw_leg) if isinstance(raw_leg, dict) else None
        if leg is None:
            logger.debug("Skipping unrecognised leg %r", raw_leg)
            continue
        legs.append(leg)
    legs_tuple = tuple(legs)
    return Trip(
        id=trip_id_for(start_time, end_time, legs_tuple),
        start_time=start_time,
        end_time=end_time,
        interchange_count=interchanges,
        legs=legs_tuple,
    )


def parse_trips(payload: dict[str, Any]) -> list[Trip]:
    data = payload.get("data") if isinstance(payload, dict) else None
    trips = data.get("trips") if isinstance(data, dict) else None
    if not isinstance(trips, list):
        raise FetchFailed(f"Response has no trips: {_errors(payload)}")
    return [parse_trip(raw) for raw in trips if isinstance(raw, dict)]


def parse_stations(payload: dict[str, Any]) -> list[Station]:
    data = payload.get("data") if isinstance(payload, dict) else None
    stations = data.get("stations") if isinstance(data, dict) else None
    elements = stations.get("elements") if isinstance(stations, dict) else None
    if not isinstance(elements, list):
        raise FetchFailed(f"Response has no stations: {_errors(payload)}")
    parsed = []
    for element in elements:
        if not isinstance(element, dict):
            continue
        hafas_id = element.get("hafasID")
        global_id = element.get("globalID")
        long_name = element.get("longName")
        if isinstance(hafas_id, str) and isinstance(global_id, str) and isinstance(long_name, str):
            parsed.append(Station(hafas_id=hafas_id, global_id=global_id, long_name=long_name))
    return parsed


def _errors(payload: Any) -> str:
    if isinstance(payload, dict) and payload.get("errors"):
        return json.dumps(payload["errors"])[:200]
    return "no data"


class ConnectionsClient:
    """Posts GraphQL queries through a middleware pipeline."""

    def __init__(
        self,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        middlewares: list[Middleware] | None = None,
        send: Send | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._graphql_url = graphql_url
        self._send = build_pipeline(middlewares or [], send or requests_sender(timeout_seconds=timeout_seconds))

    def search_stations(self, lat: float, lon: float, access_token: str) -> list[Station]:
        """Stations within two kilometres of a coordinate."""
        query = "{\n  stations(first: 10, lat: %s, long: %s, distance: 2.0) {%s  }\n}" % (
            float(lat),
            float(lon),
            STATION_FIELDS,
        )
        return parse_stations(self._execute(query, access_token))

    def search_stations_by_name(self, name: str, access_token: str) -> list[Station]:
        query = "{\n  stations(first: 20, name: %s) {%s  }\n}" % (_literal(name), STATION_FIELDS)
        return parse_stations(self._execute(query, access_token))

    def fetch_trips(
        self,
        origin_id: str,
        destination_id: str,
        access_token: str,
        departure_time: datetime | None = None,
    ) -> list[Trip]:
        """Connections between two stations departing at or after ``departure_time``."""
        departure = format_timestamp(departure_time or utc_now())
        query = TRIPS_QUERY % {
            "origin": _literal(origin_id),
            "destination": _literal(destination_id),
            "departure": _literal(departure),
            "stop_fields": STOP_FIELDS,
        }
        trips = parse_trips(self._execute(query, access_token))
        logger.info("Fetched %d trips from %s to %s", len(trips), origin_id, destination_id)
        return trips

    def fetch_live_trip_updates(self, trip_id: str, access_token: str) -> Trip | None:
        """Live estimate refresh; the API offers no endpoint for it, so this returns None."""
        logger.info("Live updates for trip %s are not available", trip_id)
        return None

    def _execute(self, query: str, access_token: str) -> dict[str, Any]:
        request = PreparedRequest(
            method="POST",
            url=self._graphql_url,
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {access_token}",
            },
            body=json.dumps({"query": query}).encode("utf-8"),
        )
        try:
            response = self._send(request)
        except requests.RequestException as exc:
            raise FetchFailed(f"Connections request failed: {exc}") from exc
        except RequestRejected as exc:
            raise FetchFailed(f"Connections request rejected: {exc}") from exc

        logger.debug("Connections response status %s", response.status_code)
        if response.status_code != 200:
            body_text = response.text.strip()
            detail = f"Status {response.status_code}"
            if body_text:
                detail = f"{detail}, Body: {body_text[:200]}"
            raise FetchFailed(f"Connections request failed: {detail}")

        try:
            return response.json()
        except ValueError as exc:
            raise FetchFailed("Connections response was not valid JSON") from exc


__all__ = [
    "ConnectionsClient",
    "FetchFailed",
    "parse_leg",
    "parse_trip",
    "parse_trips",
    "parse_stations",
    "trip_id_for",
]
