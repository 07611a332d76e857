"""Configuration loader for the RNV trip tracker."""

from __future__ import annotations

from dataclasses import dataclass
import os
from typing import Any

from dotenv import load_dotenv
import yaml


@dataclass(frozen=True)
class RNVConfig:
    """RNV GraphQL and OAuth configuration."""

    graphql_url: str
    tenant_id: str
    resource: str
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class NetworkConfig:
    """Request pipeline configuration."""

    timeout_seconds: float
    sign_requests: bool
    validate_responses: bool
    min_request_interval_seconds: float
    max_response_bytes: int
    signing_key: str


@dataclass(frozen=True)
class TrackingConfig:
    """Live tracking configuration."""

    tick_interval_seconds: float
    state_dir: str
    namespace: str
    surface_enabled: bool


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration."""

    level: str
    log_dir: str


@dataclass(frozen=True)
class AppConfig:
    """Top-level application configuration."""

    rnv: RNVConfig
    network: NetworkConfig
    tracking: TrackingConfig
    log: LoggingConfig


def _require_key(mapping: dict[str, Any], key: str, context: str) -> Any:
    if key not in mapping:
        raise ValueError(f"Missing required key '{key}' in {context} config")
    return mapping[key]


def _require_section(data: dict[str, Any], key: str) -> dict[str, Any]:
    section = _require_key(data, key, key)
    if not isinstance(section, dict):
        raise ValueError(f"'{key}' config must be a mapping")
    return section


def load_config(path: str = "config/config.yaml") -> AppConfig:
    """Load application configuration from a YAML file."""
    load_dotenv()
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle)
    except FileNotFoundError as exc:
        raise ValueError(f"Config file not found: {path}") from exc

    if not isinstance(data, dict):
        raise ValueError("Config file must contain a mapping at the top level")

    rnv_section = _require_section(data, "rnv")
    network_section = _require_section(data, "network")
    tracking_section = _require_section(data, "tracking")
    logging_section = _require_section(data, "logging")

    rnv = RNVConfig(
        graphql_url=_require_key(rnv_section, "graphql_url", "rnv"),
        tenant_id=_require_key(rnv_section, "tenant_id", "rnv"),
        resource=_require_key(rnv_section, "resource", "rnv"),
        client_id=os.environ.get("RNV_CLIENT_ID", ""),
        client_secret=os.environ.get("RNV_CLIENT_SECRET", ""),
    )

    network = NetworkConfig(
        timeout_seconds=float(_require_key(network_section, "timeout_seconds", "network")),
        sign_requests=bool(_require_key(network_section, "sign_requests", "network")),
        validate_responses=bool(_require_key(network_section, "validate_responses", "network")),
        min_request_interval_seconds=float(
            _require_key(network_section, "min_request_interval_seconds", "network")
        ),
        max_response_bytes=int(_require_key(network_section, "max_response_bytes", "network")),
        signing_key=os.environ.get("RNV_SIGNING_KEY", ""),
    )
    if network.sign_requests and not network.signing_key:
        raise ValueError("RNV_SIGNING_KEY must be set when network.sign_requests is enabled")

    tracking = TrackingConfig(
        tick_interval_seconds=float(_require_key(tracking_section, "tick_interval_seconds", "tracking")),
        state_dir=_require_key(tracking_section, "state_dir", "tracking"),
        namespace=_require_key(tracking_section, "namespace", "tracking"),
        surface_enabled=bool(tracking_section.get("surface_enabled", True)),
    )
    if tracking.tick_interval_seconds <= 0:
        raise ValueError("tracking.tick_interval_seconds must be positive")

    logging = LoggingConfig(
        level=_require_key(logging_section, "level", "logging"),
        log_dir=_require_key(logging_section, "log_dir", "logging"),
    )

    return AppConfig(rnv=rnv, network=network, tracking=tracking, log=logging)
