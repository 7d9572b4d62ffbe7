"""
Error kinds raised or delivered by request units.

Construction-time problems (InvalidArgument, InvalidState) are raised to the
caller. Execution-time problems (TransportError, StreamWriteFailed) are only
ever delivered through the failure path of a unit's notifications.
"""

from typing import Optional

import httpx


class WebServiceError(Exception):
    """Base class for everything this package raises or reports."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidArgument(WebServiceError):
    """A descriptor or listener was malformed at construction time."""


class InvalidState(WebServiceError):
    """An operation is not legal in the unit's current state."""


class ExchangeError(WebServiceError):
    """Terminal failure of an exchange, surfaced through the Failed state."""

    def __init__(self, message: str, response_headers: Optional[httpx.Headers] = None):
        super().__init__(message)
        self.response_headers = httpx.Headers(response_headers or {})


class TransportError(ExchangeError):
    """DNS, connect, TLS, timeout or protocol failure.

    ``reason`` is one of ``timeout``, ``connect``, ``protocol``, ``transport``
    or ``unexpected``.
    """

    def __init__(
        self,
        message: str,
        url: str = None,
        reason: str = "transport",
        response_headers: Optional[httpx.Headers] = None,
    ):
        super().__init__(message, response_headers)
        self.url = url
        self.reason = reason

    def __repr__(self):
        return f"TransportError(reason={self.reason!r}, url={self.url!r}, message={self.message!r})"


class StreamWriteFailed(ExchangeError):
    """Appending to the streaming destination failed (disk full, permissions...)."""

    def __init__(self, message: str, destination=None, response_headers: Optional[httpx.Headers] = None):
        super().__init__(message, response_headers)
        self.destination = destination

    def __repr__(self):
        return f"StreamWriteFailed(destination={self.destination!r}, message={self.message!r})"
