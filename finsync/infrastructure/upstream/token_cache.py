"""
TokenCache - the single bearer credential for the aggregator API

Process-wide shared state: populated on first need, refreshed when stale, never torn down.
Refresh is serialized so that at most one login call is in flight; callers that see a
stale token while a refresh is running wait for it and reuse its result.
"""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

import requests

from finsync.infrastructure.upstream.errors import AuthError, TransportError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: float  # epoch seconds


def _extract_token(data) -> str | None:
    """Token location differs between upstream versions"""
    if isinstance(data, str):
        return data or None
    if not isinstance(data, dict):
        return None
    nested = data.get("data") if isinstance(data.get("data"), dict) else {}
    deeper = nested.get("data") if isinstance(nested.get("data"), dict) else {}
    for candidate in (
        data.get("token"),
        nested.get("token"),
        deeper.get("token"),
        data.get("accessToken"),
        nested.get("accessToken"),
    ):
        if candidate:
            return str(candidate)
    return None


class TokenCache:
    """
    Cached upstream credential with mutex-guarded refresh

    Args:
        login_url: Full URL of the identity endpoint
        user_id: Configured upstream user id
        password: Configured upstream password
        ttl_seconds: Stated TTL assigned to a fresh token (shorter than the real validity)
        safety_margin_seconds: Token is considered stale this long before expires_at
        timeout: Login request timeout (seconds)
        http: requests.Session-like object (injected in tests)
        clock: Returns current time in epoch seconds (injected in tests)

    Example:
        >>> cache = TokenCache(login_url="https://host/pfm/api/v2/user-login", user_id="u", password="p")
        >>> token = cache.get_token()
    """

    def __init__(
        self,
        login_url: str,
        user_id: str,
        password: str,
        ttl_seconds: int = 23 * 60 * 60,
        safety_margin_seconds: int = 5 * 60,
        timeout: float = 30.0,
        http=None,
        clock: Callable[[], float] = time.time,
    ):
        self.login_url = login_url
        self.user_id = user_id
        self.password = password
        self.ttl_seconds = ttl_seconds
        self.safety_margin_seconds = safety_margin_seconds
        self.timeout = timeout
        self.http = http or requests.Session()
        self.clock = clock
        self._credential: Credential | None = None
        self._lock = threading.Lock()
        self.login_count = 0

    @property
    def has_token(self) -> bool:
        return self._credential is not None

    @property
    def expires_at(self) -> float | None:
        credential = self._credential
        return credential.expires_at if credential else None

    def _is_fresh(self, credential: Credential | None) -> bool:
        if credential is None:
            return False
        return self.clock() < credential.expires_at - self.safety_margin_seconds

    def get_token(self) -> str:
        """
        Return a usable token, logging in if the cached one is missing or stale

        Raises:
            AuthError: login rejected or no token in the response
            TransportError: login request did not get a response
        """
        credential = self._credential
        if self._is_fresh(credential):
            return credential.token

        with self._lock:
            # Другой поток мог обновить токен, пока мы ждали lock
            credential = self._credential
            if self._is_fresh(credential):
                return credential.token

            token = self._login()
            self._credential = Credential(token=token, expires_at=self.clock() + self.ttl_seconds)
            return token

    def invalidate(self, token: str | None = None) -> None:
        """
        Drop the cached credential; the next get_token() logs in again

        Args:
            token: The token the upstream rejected. When given, the credential is
                dropped only if it still holds that token, so a credential another
                thread has just refreshed survives.
        """
        with self._lock:
            credential = self._credential
            if credential is None:
                return
            if token is not None and credential.token != token:
                logger.debug("Rejected token already replaced, keeping the cached one")
                return
            self._credential = None

    def _login(self) -> str:
        self.login_count += 1
        try:
            response = self.http.post(
                self.login_url,
                json={"userId": self.user_id, "password": self.password},
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise TransportError(f"Login timed out after {self.timeout}s") from exc
        except requests.RequestException as exc:
            raise TransportError(f"Login request failed: {exc}") from exc

        if not 200 <= response.status_code < 300:
            logger.warning("Upstream login rejected: HTTP %d", response.status_code)
            raise AuthError(
                f"Authentication failed: {response.status_code}",
                status=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text

        token = _extract_token(data)
        if not token:
            raise AuthError("Authentication failed: no token in response", status=response.status_code)

        logger.info("Upstream login succeeded, token cached for %ds", self.ttl_seconds)
        return token
