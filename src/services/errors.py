from __future__ import annotations

from typing import Any


class RateFetchError(Exception):
    def __init__(self, message: str, *, status_code: int | None = None, payload: Any | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class FetchTimeoutError(RateFetchError, TimeoutError):
    """Upstream did not answer within the allotted window."""


class NetworkError(RateFetchError):
    """Transport-level failure: connection, HTTP status, unreadable body."""


class InvalidResponseError(RateFetchError):
    """Payload parsed but carries no usable rate values."""


__all__ = ["FetchTimeoutError", "InvalidResponseError", "NetworkError", "RateFetchError"]
