"""OAuth client-credentials token provider."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable

import requests

from src.config import RNVConfig

logger = logging.getLogger("rnvtrack.auth")

TOKEN_URL_TEMPLATE = "https://login.microsoftonline.com/{tenant_id}/oauth2/token"
EXPIRY_MARGIN_SECONDS = 60
DEFAULT_EXPIRES_IN_SECONDS = 3600


class AuthError(Exception):
    """Raised when an access token cannot be obtained."""


class TokenProvider:
    """Fetches and caches a bearer token for the RNV API."""

    def __init__(
        self,
        tenant_id: str,
        client_id: str,
        client_secret: str,
        resource: str,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._token_url = TOKEN_URL_TEMPLATE.format(tenant_id=tenant_id)
        self._client_id = client_id
        self._client_secret = client_secret
        self._resource = resource
        self._timeout_seconds = timeout_seconds
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: RNVConfig, timeout_seconds: float = 10.0) -> TokenProvider:
        return cls(
            tenant_id=config.tenant_id,
            client_id=config.client_id,
            client_secret=config.client_secret,
            resource=config.resource,
            timeout_seconds=timeout_seconds,
        )

    @property
    def is_authenticated(self) -> bool:
        with self._lock:
            return self._token is not None and self._clock() < self._expires_at

    def current_access_token(self) -> str | None:
        """Cached token, refreshed when close to expiry; None if that fails."""
        try:
            return self.authenticate()
        except AuthError as exc:
            logger.error("Authentication failed: %s", exc)
            return None

    def authenticate(self) -> str:
        """Return a valid token, requesting a new one if needed."""
        with self._lock:
            if self._token is not None and self._clock() < self._expires_at:
                return self._token
            token, expires_in = self._request_token()
            self._token = token
            self._expires_at = self._clock() + max(expires_in - EXPIRY_MARGIN_SECONDS, 0)
            logger.info("Authenticated; token valid for %ds", expires_in)
            return token

    def _request_token(self) -> tuple[str, int]:
        if not self._client_id or not self._client_secret:
            raise AuthError("RNV_CLIENT_ID and RNV_CLIENT_SECRET must be set")
        data = {
            "grant_type": "client_credentials",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "resource": self._resource,
        }
        try:
            response = requests.post(self._token_url, data=data, timeout=self._timeout_seconds)
        except requests.RequestException as exc:
            raise AuthError(f"Token request failed: {exc}") from exc

        if response.status_code != 200:
            raise AuthError(f"Token request failed: Status {response.status_code}")

        try:
            body = response.json()
        except ValueError as exc:
            raise AuthError("Token response was not valid JSON") from exc

        token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthError("Token response has no access_token")
        try:
            expires_in = int(body.get("expires_in", DEFAULT_EXPIRES_IN_SECONDS))
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN_SECONDS
        return token, expires_in


__all__ = ["AuthError", "TokenProvider", "TOKEN_URL_TEMPLATE"]
