"""
Upstream error taxonomy

    UpstreamClientError
    ├── AuthError          login rejected (fatal for the run)
    ├── UpstreamError      non-2xx domain response, carries status + body
    ├── TransportError     network failure / timeout, no response
    └── PayloadShapeError  2xx body that does not match its endpoint family
"""
from typing import Any


class UpstreamClientError(Exception):
    """Base class for everything the aggregator client raises"""
    pass


class AuthError(UpstreamClientError):
    """Login call failed or returned no token"""

    def __init__(self, message: str, status: int | None = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class UpstreamError(UpstreamClientError):
    """Non-2xx response from a domain endpoint, surfaced verbatim"""

    def __init__(self, status: int, body: Any, endpoint: str | None = None):
        self.status = status
        self.body = body
        self.endpoint = endpoint
        super().__init__(f"Upstream request failed: {status} on {endpoint or '?'}")


class TransportError(UpstreamClientError):
    """No response: connection error or timeout"""

    def __init__(self, message: str, endpoint: str | None = None):
        super().__init__(message)
        self.endpoint = endpoint


class PayloadShapeError(UpstreamClientError):
    """Response body does not validate against the expected payload schema"""

    def __init__(self, kind: str, response, details: str):
        self.kind = kind
        self.response = response
        self.details = details
        super().__init__(f"Unexpected {kind} payload from {response.endpoint}: {details}")
