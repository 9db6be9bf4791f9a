"""
AuthenticatedProxy - forwards calls to the aggregator API with the cached bearer token
"""
import logging
import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import requests
from pydantic import ValidationError

from finsync.config import Settings, get_settings
from finsync.domain.payloads import parse_payload
from finsync.infrastructure.upstream.errors import (
    PayloadShapeError,
    TransportError,
    UpstreamClientError,
    UpstreamError,
)
from finsync.infrastructure.upstream.token_cache import TokenCache

logger = logging.getLogger(__name__)


@dataclass
class UpstreamResponse:
    """One completed upstream call (2xx)"""
    endpoint: str
    method: str
    request_payload: dict
    status: int
    data: Any
    latency_ms: int
    payload: Any = None  # parsed schema model, set by fetch()


def _decode_body(response) -> Any:
    text = response.text
    if not text:
        return None
    try:
        return response.json()
    except ValueError:
        return text


class AuthenticatedProxy:
    """
    Thin authenticated client over the upstream API

    No retries: a failed call raises and the caller decides what to do.
    """

    def __init__(self, base_url: str, token_cache: TokenCache, timeout: float = 30.0, http=None):
        self.base_url = base_url.rstrip("/")
        self.token_cache = token_cache
        self.timeout = timeout
        self.http = http or requests.Session()

    def forward(self, endpoint: str, body: dict | None = None) -> UpstreamResponse:
        """
        POST body to base_url + endpoint with the bearer token attached

        Args:
            endpoint: Path under base_url, e.g. "/pfm/api/v2/deposit/user-linked-accounts"
            body: JSON payload (usually {"uniqueIdentifier": ...})

        Returns:
            UpstreamResponse with the decoded body

        Raises:
            AuthError: token could not be obtained
            UpstreamError: non-2xx response (status and body preserved)
            TransportError: no response (connection error, timeout)
        """
        body = body or {}
        token = self.token_cache.get_token()
        url = f"{self.base_url}{endpoint}"

        started = time.monotonic()
        try:
            response = self.http.post(
                url,
                json=body,
                headers={
                    "Content-Type": "application/json",
                    "Authorization": f"Bearer {token}",
                },
                timeout=self.timeout,
            )
        except requests.Timeout as exc:
            raise TransportError(f"Upstream call timed out after {self.timeout}s", endpoint=endpoint) from exc
        except requests.RequestException as exc:
            raise TransportError(f"Upstream call failed: {exc}", endpoint=endpoint) from exc
        latency_ms = int((time.monotonic() - started) * 1000)

        data = _decode_body(response)

        if not 200 <= response.status_code < 300:
            if response.status_code in (401, 403):
                # Токен отозван или истёк раньше срока - следующий вызов залогинится заново
                self.token_cache.invalidate(token)
            logger.warning("Upstream %s returned HTTP %d", endpoint, response.status_code)
            raise UpstreamError(status=response.status_code, body=data, endpoint=endpoint)

        if data is None:
            raise UpstreamError(status=response.status_code, body="API returned empty response", endpoint=endpoint)
        if isinstance(data, str):
            # Some endpoints answer with a bare "SUCCESS"
            data = {"success": True, "message": data, "data": data}

        return UpstreamResponse(
            endpoint=endpoint,
            method="POST",
            request_payload=body,
            status=response.status_code,
            data=data,
            latency_ms=latency_ms,
        )

    def fetch(self, endpoint: str, body: dict | None, kind: str) -> UpstreamResponse:
        """
        forward() + validate the body against the payload schema of its endpoint family

        Raises:
            PayloadShapeError: body does not match (response is attached for inspection)
        """
        result = self.forward(endpoint, body)
        try:
            result.payload = parse_payload(kind, result.data)
        except ValidationError as exc:
            logger.warning("Quarantined %s payload from %s: %d error(s)", kind, endpoint, exc.error_count())
            raise PayloadShapeError(kind, result, str(exc)) from exc
        return result

    def health_check(self) -> dict:
        """
        Can a token be obtained right now? (for external monitoring)

        Returns:
            {"status": "OK"|"ERROR", "hasToken": bool, "baseUrl": str[, "error": str]}
        """
        try:
            token = self.token_cache.get_token()
        except UpstreamClientError as exc:
            return {
                "status": "ERROR",
                "hasToken": False,
                "baseUrl": self.base_url,
                "error": str(exc),
            }
        return {"status": "OK", "hasToken": bool(token), "baseUrl": self.base_url}


def build_proxy(settings: Settings, http=None, clock=None) -> AuthenticatedProxy:
    """Wire a TokenCache and an AuthenticatedProxy from settings"""
    base_url = settings.UPSTREAM_BASE_URL.rstrip("/")
    cache_kwargs = {"clock": clock} if clock is not None else {}
    token_cache = TokenCache(
        login_url=f"{base_url}{settings.UPSTREAM_LOGIN_PATH}",
        user_id=settings.UPSTREAM_USER_ID,
        password=settings.UPSTREAM_PASSWORD,
        ttl_seconds=settings.TOKEN_TTL_SECONDS,
        safety_margin_seconds=settings.TOKEN_SAFETY_MARGIN_SECONDS,
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        http=http,
        **cache_kwargs,
    )
    return AuthenticatedProxy(
        base_url=base_url,
        token_cache=token_cache,
        timeout=settings.UPSTREAM_TIMEOUT_SECONDS,
        http=http,
    )


@lru_cache
def get_upstream_proxy() -> AuthenticatedProxy:
    """
    Process-wide proxy (singleton) - shares one TokenCache between all sync runs
    """
    return build_proxy(get_settings())
