"""Search connections and live-track one of them in the terminal."""

from __future__ import annotations

import argparse
import logging
import sys
import time
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from src.config import load_config
from src.data.auth import TokenProvider
from src.data.connections_client import ConnectionsClient, FetchFailed
from src.data.middleware import middlewares_from_config
from src.data.state_store import FileKeyValueStore, TrackingStateStore
from src.errors import TrackingError
from src.logging_setup import configure_logging
from src.logic.session import Phase
from src.logic.time_math import parse_timestamp
from src.tracking import ConsoleSurface, TrackingCoordinator, TrackingLoop

logger = logging.getLogger("rnvtrack.scripts.track_trip")


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("origin", help="Origin station global id")
    parser.add_argument("destination", help="Destination station global id")
    parser.add_argument("--config", default="config/config.yaml")
    parser.add_argument("--departure", help="ISO-8601 departure time (default: now)")
    parser.add_argument("--index", type=int, default=0, help="Which of the fetched trips to track")
    return parser.parse_args()


def main() -> int:
    args = _parse_args()
    config = load_config(args.config)
    configure_logging(config.log)

    token = TokenProvider.from_config(config.rnv).current_access_token() or ""
    client = ConnectionsClient(
        config.rnv.graphql_url,
        middlewares=middlewares_from_config(config.network),
        timeout_seconds=config.network.timeout_seconds,
    )
    departure = parse_timestamp(args.departure) if args.departure else None
    try:
        trips = client.fetch_trips(args.origin, args.destination, token, departure)
    except FetchFailed as exc:
        logger.error("Could not fetch connections: %s", exc)
        return 1
    if not 0 <= args.index < len(trips):
        logger.error("Trip index %d out of range (%d trips found)", args.index, len(trips))
        return 1
    trip = trips[args.index]

    store = TrackingStateStore(FileKeyValueStore(Path(config.tracking.state_dir), config.tracking.namespace))
    loop = TrackingLoop()
    coordinator = TrackingCoordinator(
        store,
        ConsoleSurface(enabled=config.tracking.surface_enabled),
        loop,
        tick_interval_seconds=config.tracking.tick_interval_seconds,
    )
    loop.start()
    try:
        try:
            coordinator.start_tracking(trip, token)
        except TrackingError as exc:
            logger.error("Could not start tracking: %s", exc)
            return 1
        while coordinator.is_tracking(trip.id):
            snapshot = coordinator.snapshot(trip.id)
            if snapshot is not None and snapshot.phase is Phase.ARRIVED:
                break
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        coordinator.stop_tracking(trip.id)
        loop.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
