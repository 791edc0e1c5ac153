"""
Credential providers for the upstream Cube chat call.

The pipeline only needs one credential string per call. ``StaticTokenProvider``
hands out the configured API key; ``SessionTokenProvider`` exchanges it for a
per-user embed session token and caches the result in process.
"""

from __future__ import annotations

import logging
from threading import RLock
from typing import Protocol

from ._exceptions import ConfigurationError, UpstreamHttpError
from ._http import HTTPClient
from .config import CubeConfig

logger = logging.getLogger(__name__)

SESSION_PATH = "/api/v1/embed/generate-session"
TOKEN_PATH = "/api/v1/embed/session/token"


class TokenProvider(Protocol):
    refreshable: bool

    def get_token(self, external_id: str, force_refresh: bool = False) -> str: ...

    def invalidate(self, external_id: str) -> None: ...


class StaticTokenProvider:
    """Always returns the configured API key."""

    refreshable = False

    def __init__(self, api_key: str | None):
        if not api_key:
            raise ConfigurationError("Cube API not configured: set CUBE_API_KEY", ["CUBE_API_KEY"])
        self._api_key = api_key

    def get_token(self, external_id: str, force_refresh: bool = False) -> str:
        return self._api_key

    def invalidate(self, external_id: str) -> None:
        pass


class SessionTokenProvider:
    """Two-step embed session exchange with a per-user in-process cache.

    Usage:
        provider = SessionTokenProvider.from_config(CubeConfig.from_env())
        token = provider.get_token("user-42")
    """

    refreshable = True

    def __init__(self, http: HTTPClient):
        self._http = http
        self._cache: dict[str, str] = {}
        self._lock = RLock()

    @classmethod
    def from_config(cls, config: CubeConfig) -> SessionTokenProvider:
        missing = [name for name in config.missing() if name != "CUBE_CHAT_PATH"]
        if missing:
            raise ConfigurationError(
                f"Cube API not configured: set {', '.join(missing)}", missing=missing
            )
        http = HTTPClient(
            base_url=config.api_base or "", api_key=config.api_key, timeout=config.timeout
        )
        return cls(http)

    def exchange(self, external_id: str) -> str:
        """Generate a session for the user and trade it for a token."""
        session_resp = self._http.request(
            "POST", SESSION_PATH, json={"externalId": external_id, "email": external_id}
        )
        session_id = _json_field(session_resp, "sessionId")

        token_resp = self._http.request("POST", TOKEN_PATH, json={"sessionId": session_id})
        return _json_field(token_resp, "token")

    def get_token(self, external_id: str, force_refresh: bool = False) -> str:
        with self._lock:
            if not force_refresh and external_id in self._cache:
                return self._cache[external_id]

        token = self.exchange(external_id)
        with self._lock:
            self._cache[external_id] = token
        logger.debug("Issued session token for %s", external_id)
        return token

    def invalidate(self, external_id: str) -> None:
        with self._lock:
            self._cache.pop(external_id, None)


def _json_field(resp: object, name: str) -> str:
    try:
        value = resp.json().get(name)  # type: ignore[attr-defined]
    except (ValueError, AttributeError):
        value = None
    if not isinstance(value, str) or not value:
        raise UpstreamHttpError(f"Session exchange response missing {name!r}")
    return value
