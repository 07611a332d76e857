"""End live tracking for every trip recorded as active in the shared store."""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from src.config import load_config
from src.data.state_store import FileKeyValueStore, TrackingStateStore
from src.errors import StoreUnavailable
from src.logging_setup import configure_logging

logger = logging.getLogger("rnvtrack.scripts.stop_all")


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--config", default="config/config.yaml")
    args = parser.parse_args()

    config = load_config(args.config)
    configure_logging(config.log)
    store = TrackingStateStore(FileKeyValueStore(Path(config.tracking.state_dir), config.tracking.namespace))
    try:
        stopped = store.deactivate_all()
    except StoreUnavailable as exc:
        logger.error("Could not reach the tracking state store: %s", exc)
        return 1
    logger.info("Ended tracking for %d trip(s)", len(stopped))
    return 0


if __name__ == "__main__":
    sys.exit(main())
