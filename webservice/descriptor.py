"""
Description of what a request unit sends: url, method, headers, parameters.

The descriptor stays mutable until the owning unit leaves the Created state,
after which it is frozen and header changes raise InvalidState.
"""

import os
from collections.abc import Iterable, Mapping
from typing import Any, List, Optional, Tuple
from urllib.parse import urlencode, urlparse

import httpx

from .errors import InvalidArgument, InvalidState

# Methods whose parameters travel in the query string instead of the body.
QUERY_METHODS = ('GET', 'HEAD', 'DELETE', 'OPTIONS')

FORM_CONTENT_TYPE = 'application/x-www-form-urlencoded'

# Keys understood in an API info table.
URL_KEY = 'url'
HTTP_METHOD_KEY = 'method'
EXPECTED_RESULT_TYPE_KEY = 'expected_result_type'
PARAMETERS_KEY = 'parameters'
HEADERS_KEY = 'headers'
SUCCESS_HANDLER_KEY = 'success_handler'
FAILURE_HANDLER_KEY = 'failure_handler'


def normalize_parameters(parameters) -> Tuple[Tuple[str, str], ...]:
    """Turn a mapping or an iterable of pairs into an ordered tuple of pairs."""
    if parameters is None:
        return ()

    pairs: List[Tuple[str, str]] = []
    if isinstance(parameters, Mapping):
        for name, value in parameters.items():
            if isinstance(value, (list, tuple)):
                pairs.extend((name, item) for item in value)
            else:
                pairs.append((name, value))
    elif isinstance(parameters, Iterable) and not isinstance(parameters, (str, bytes, bytearray)):
        for pair in parameters:
            if isinstance(pair, (str, bytes)) or not isinstance(pair, Iterable):
                raise InvalidArgument(f"Parameter entries must be name/value pairs, got {pair!r}")
            pair = tuple(pair)
            if len(pair) != 2:
                raise InvalidArgument(f"Parameter entries must be name/value pairs, got {pair!r}")
            pairs.append(pair)
    else:
        raise InvalidArgument(
            f"Parameters must be a mapping or a sequence of name/value pairs, got {type(parameters).__name__}"
        )

    normalized = []
    for name, value in pairs:
        if not isinstance(name, str) or not name:
            raise InvalidArgument(f"Parameter names must be non-empty strings, got {name!r}")
        normalized.append((name, '' if value is None else str(value)))
    return tuple(normalized)


class RequestDescriptor:
    """What to send: url, method, headers, parameters and caller context."""

    def __init__(
        self,
        url: str,
        method: str = 'GET',
        headers: Optional[Mapping[str, str]] = None,
        parameters=None,
        expected_result_type: Optional[str] = None,
        user_info: Any = None,
        destination=None,
    ):
        self._url = self._validate_url(url)
        self._method = self._validate_method(method)
        self._headers = httpx.Headers()
        self._parameters = normalize_parameters(parameters)
        self._frozen = False
        self._user_info = user_info

        self.expected_result_type = expected_result_type
        self.destination = self._validate_destination(destination)

        if headers is not None:
            self.update_headers(headers)

    @classmethod
    def from_api_info(cls, api_info: Mapping[str, Any], parameters=None, destination=None) -> 'RequestDescriptor':
        """Build a descriptor from an API info table.

        An explicit ``parameters`` argument takes precedence over the table's
        ``parameters`` entry.
        """
        if not isinstance(api_info, Mapping):
            raise InvalidArgument(f"API info must be a mapping, got {type(api_info).__name__}")

        if parameters is None:
            parameters = api_info.get(PARAMETERS_KEY)

        return cls(
            url=api_info.get(URL_KEY),
            method=api_info.get(HTTP_METHOD_KEY),
            headers=api_info.get(HEADERS_KEY),
            parameters=parameters,
            expected_result_type=api_info.get(EXPECTED_RESULT_TYPE_KEY),
            destination=destination,
        )

    @staticmethod
    def _validate_url(url) -> str:
        if url is None:
            raise InvalidArgument("URL is required")
        url = str(url).strip()
        if not url:
            raise InvalidArgument("URL must not be empty")
        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise InvalidArgument(f"URL must be an absolute http(s) URL, got {url!r}")
        return url

    @staticmethod
    def _validate_method(method) -> str:
        if not isinstance(method, str) or not method.strip():
            raise InvalidArgument(f"HTTP method must be a non-empty string, got {method!r}")
        method = method.strip().upper()
        if not method.isalpha():
            raise InvalidArgument(f"Invalid HTTP method token: {method!r}")
        return method

    @staticmethod
    def _validate_destination(destination):
        if destination is None or hasattr(destination, 'write'):
            return destination
        if isinstance(destination, (str, os.PathLike)) and str(destination):
            return destination
        raise InvalidArgument(
            f"Destination must be a path or a writable file object, got {type(destination).__name__}"
        )

    @property
    def url(self) -> str:
        return self._url

    @property
    def method(self) -> str:
        return self._method

    @property
    def parameters(self) -> Tuple[Tuple[str, str], ...]:
        return self._parameters

    @property
    def headers(self) -> httpx.Headers:
        """A copy of the request headers."""
        return httpx.Headers(self._headers)

    @property
    def user_info(self) -> Any:
        return self._user_info

    @user_info.setter
    def user_info(self, value: Any):
        if self._frozen:
            raise InvalidState("Cannot set user_info: request has already been submitted")
        self._user_info = value

    @property
    def frozen(self) -> bool:
        return self._frozen

    def set_header(self, name: str, value: str):
        """Set one request header; the last write for a name wins."""
        if self._frozen:
            raise InvalidState(f"Cannot set header {name!r}: request has already been submitted")
        if not isinstance(name, str) or not name:
            raise InvalidArgument(f"Header names must be non-empty strings, got {name!r}")
        if not isinstance(value, str):
            raise InvalidArgument(f"Header {name!r} value must be a string, got {type(value).__name__}")
        self._headers[name] = value

    def update_headers(self, headers: Mapping[str, str]):
        if not isinstance(headers, Mapping):
            raise InvalidArgument(f"Headers must be a mapping, got {type(headers).__name__}")
        for name, value in headers.items():
            self.set_header(name, value)

    def freeze(self):
        self._frozen = True

    @property
    def sends_query(self) -> bool:
        return self._method in QUERY_METHODS

    @property
    def query_params(self) -> List[Tuple[str, str]]:
        """Parameters carried in the query string for this method."""
        return list(self._parameters) if self.sends_query else []

    @property
    def body(self) -> Optional[bytes]:
        """Form-encoded body for methods that carry parameters in the body."""
        if self.sends_query or not self._parameters:
            return None
        return urlencode(self._parameters).encode('ascii')

    def request_headers(self) -> httpx.Headers:
        """Headers as they go on the wire, including the implied Content-Type."""
        headers = self.headers
        if self.body is not None and 'content-type' not in headers:
            headers['Content-Type'] = FORM_CONTENT_TYPE
        return headers

    def __repr__(self):
        return f"RequestDescriptor(method={self._method!r}, url={self._url!r})"
