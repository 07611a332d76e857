from __future__ import annotations

import logging

import pytest

from src.config import LoggingConfig
from src.logging_setup import configure_logging


def test_configure_logging_writes_to_file(tmp_path) -> None:
    logger = configure_logging(LoggingConfig(level="debug", log_dir=str(tmp_path / "logs")))
    try:
        logging.getLogger("rnvtrack.session").info("tracking started")
        for handler in logger.handlers:
            handler.flush()

        contents = (tmp_path / "logs" / "rnvtrack.log").read_text(encoding="utf-8")
        assert "INFO rnvtrack.session: tracking started" in contents
        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 2
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True


def test_configure_logging_is_repeatable(tmp_path) -> None:
    config = LoggingConfig(level="INFO", log_dir=str(tmp_path))
    configure_logging(config)
    logger = configure_logging(config)
    try:
        assert len(logger.handlers) == 2
    finally:
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True


def test_configure_logging_rejects_unknown_level(tmp_path) -> None:
    with pytest.raises(ValueError):
        configure_logging(LoggingConfig(level="chatty", log_dir=str(tmp_path)))
