"""Composable request middleware for the connections API.

A middleware is a callable ``(request, call_next) -> response``. Signing,
rate limiting and response validation wrap a plain send function instead of
living in a client subclass, and the chain is chosen from configuration.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
import hashlib
import hmac
import logging
import time
from typing import Callable, Iterable
from urllib.parse import urlsplit
import uuid

import requests

from src.config import NetworkConfig

logger = logging.getLogger("rnvtrack.middleware")

API_VERSION = "1.0"
USER_AGENT = "RNVTripTracker/1.0"


class RequestRejected(Exception):
    """Raised when a middleware refuses a request or its response."""


@dataclass
class PreparedRequest:
    method: str
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes = b""

    @property
    def host(self) -> str:
        return urlsplit(self.url).hostname or ""


Send = Callable[[PreparedRequest], requests.Response]
Middleware = Callable[[PreparedRequest, Send], requests.Response]


def build_pipeline(middlewares: Iterable[Middleware], send: Send) -> Send:
    """Wrap ``send`` so the first middleware runs outermost."""
    pipeline = send
    for middleware in reversed(list(middlewares)):
        pipeline = _bind(middleware, pipeline)
    return pipeline


def _bind(middleware: Middleware, call_next: Send) -> Send:
    def _call(request: PreparedRequest) -> requests.Response:
        return middleware(request, call_next)

    return _call


def requests_sender(session: requests.Session | None = None, timeout_seconds: float = 30.0) -> Send:
    """Terminal send function backed by requests."""
    http = session or requests.Session()

    def _send(request: PreparedRequest) -> requests.Response:
        return http.request(
            request.method,
            request.url,
            headers=request.headers,
            data=request.body,
            timeout=timeout_seconds,
        )

    return _send


class RateLimiter:
    """Rejects requests to a host sent sooner than ``min_interval_seconds`` apart."""

    def __init__(self, min_interval_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._min_interval_seconds = min_interval_seconds
        self._clock = clock
        self._last_request: dict[str, float] = {}

    def __call__(self, request: PreparedRequest, call_next: Send) -> requests.Response:
        now = self._clock()
        last = self._last_request.get(request.host)
        if last is not None and now - last < self._min_interval_seconds:
            logger.warning("Rate limit reached for %s", request.host)
            raise RequestRejected(f"Rate limit reached for {request.host}")
        self._last_request[request.host] = now
        return call_next(request)


class RequestSigner:
    """Adds timestamp, nonce and HMAC-SHA256 signature headers."""

    def __init__(
        self,
        key: str,
        clock: Callable[[], float] = time.time,
        nonce_factory: Callable[[], str] = lambda: str(uuid.uuid4()).upper(),
    ) -> None:
        self._key = key.encode("utf-8")
        self._clock = clock
        self._nonce_factory = nonce_factory

    def signature(self, request: PreparedRequest, timestamp: str, nonce: str) -> str:
        components = [request.method.upper(), request.url, timestamp, nonce]
        if request.body:
            components.append(hashlib.sha256(request.body).hexdigest())
        payload = "|".join(components).encode("utf-8")
        digest = hmac.new(self._key, payload, hashlib.sha256).digest()
        return base64.b64encode(digest).decode("ascii")

    def __call__(self, request: PreparedRequest, call_next: Send) -> requests.Response:
        timestamp = str(int(self._clock()))
        nonce = self._nonce_factory()
        request.headers["X-Timestamp"] = timestamp
        request.headers["X-Nonce"] = nonce
        request.headers["X-Signature"] = self.signature(request, timestamp, nonce)
        request.headers["X-API-Version"] = API_VERSION
        logger.debug("Signed request to %s", request.host)
        return call_next(request)


class ResponseValidator:
    """Accepts only 2xx JSON responses shaped like a GraphQL result."""

    def __init__(self, max_bytes: int = 10_000_000) -> None:
        self._max_bytes = max_bytes

    def __call__(self, request: PreparedRequest, call_next: Send) -> requests.Response:
        response = call_next(request)
        if not 200 <= response.status_code < 300:
            raise RequestRejected(f"Unexpected status code {response.status_code}")
        content_type = response.headers.get("Content-Type", "")
        if "application/json" not in content_type.lower():
            raise RequestRejected(f"Unexpected content type {content_type!r}")
        if len(response.content) >= self._max_bytes:
            raise RequestRejected(f"Response too large: {len(response.content)} bytes")
        try:
            body = response.json()
        except ValueError as exc:
            raise RequestRejected("Response was not valid JSON") from exc
        if not isinstance(body, dict) or not ({"data", "errors"} & body.keys()):
            raise RequestRejected("Response is not a GraphQL result")
        return response


def default_headers(request: PreparedRequest, call_next: Send) -> requests.Response:
    request.headers.setdefault("User-Agent", USER_AGENT)
    request.headers.setdefault("Accept", "application/json")
    request.headers.setdefault("Cache-Control", "no-cache")
    return call_next(request)


def middlewares_from_config(config: NetworkConfig) -> list[Middleware]:
    """Select the middleware chain described by the network config."""
    chain: list[Middleware] = [default_headers]
    if config.min_request_interval_seconds > 0:
        chain.append(RateLimiter(config.min_request_interval_seconds))
    if config.sign_requests:
        chain.append(RequestSigner(config.signing_key))
    if config.validate_responses:
        chain.append(ResponseValidator(config.max_response_bytes))
    return chain


__all__ = [
    "PreparedRequest",
    "RequestRejected",
    "RateLimiter",
    "RequestSigner",
    "ResponseValidator",
    "Send",
    "Middleware",
    "build_pipeline",
    "default_headers",
    "middlewares_from_config",
    "requests_sender",
]
