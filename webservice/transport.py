"""
Network side of a request unit.

A Transport opens one Exchange per request: connect, send headers and body,
await the response head. The Exchange then yields body chunks in network
order. The unit never touches httpx directly, so tests can drive it with an
in-memory transport.
"""

import abc
from collections.abc import AsyncIterator, Mapping

import httpx
import structlog

from .errors import TransportError

logger = structlog.get_logger(__name__)

DEFAULT_USER_AGENT = 'webservice/1.0'
DEFAULT_TIMEOUT = 30.0
DEFAULT_CHUNK_SIZE = 8192
DEFAULT_MAX_REDIRECTS = 5


class Exchange(abc.ABC):
    """One in-flight response: status, headers and a body still to be read."""

    status_code: int
    headers: Mapping[str, str]

    @abc.abstractmethod
    def iter_chunks(self) -> AsyncIterator[bytes]:
        """Yield body chunks in the order they arrive."""

    @abc.abstractmethod
    async def aclose(self):
        """Release the connection. Safe to call more than once."""


class Transport(abc.ABC):

    @abc.abstractmethod
    async def open(self, descriptor) -> Exchange:
        """Send the request described by ``descriptor`` and await the response head."""

    async def aclose(self):
        pass


def _translate(error: httpx.HTTPError, url: str) -> TransportError:
    if isinstance(error, httpx.TimeoutException):
        reason = 'timeout'
    elif isinstance(error, httpx.ConnectError):
        reason = 'connect'
    elif isinstance(error, (httpx.ProtocolError, httpx.DecodingError, httpx.TooManyRedirects)):
        reason = 'protocol'
    else:
        reason = 'transport'
    return TransportError(f"{type(error).__name__}: {error}", url=url, reason=reason)


class HTTPXExchange(Exchange):

    def __init__(self, response: httpx.Response, url: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self._response = response
        self._url = url
        self._chunk_size = chunk_size
        self.status_code = response.status_code
        self.headers = response.headers

    @property
    def final_url(self) -> str:
        return str(self._response.url)

    async def iter_chunks(self):
        try:
            async for chunk in self._response.aiter_bytes(chunk_size=self._chunk_size):
                yield chunk
        except httpx.HTTPError as e:
            error = _translate(e, self._url)
            logger.warning("transport_error", url=self._url, reason=error.reason, error=str(e))
            raise error from e

    async def aclose(self):
        try:
            await self._response.aclose()
        except httpx.HTTPError as e:
            logger.warning("response_close_failed", url=self._url, error=str(e))


class HTTPXTransport(Transport):
    """Transport backed by a shared ``httpx.AsyncClient``.

    A client passed in by the caller is left open by ``aclose()``.
    """

    def __init__(
        self,
        client: httpx.AsyncClient = None,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        follow_redirects: bool = True,
    ):
        self.timeout = timeout
        self.user_agent = user_agent
        self.chunk_size = chunk_size
        self._owns_client = client is None

        if client is None:
            client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout),
                follow_redirects=follow_redirects,
                max_redirects=max_redirects,
                headers={'User-Agent': user_agent},
            )
        self._client = client

    @classmethod
    def from_config(cls, settings) -> 'HTTPXTransport':
        """Build a transport from the ``transport`` section of a Config."""
        section = settings.transport
        return cls(
            timeout=float(section.get('timeout', DEFAULT_TIMEOUT)),
            user_agent=section.get('user_agent', DEFAULT_USER_AGENT),
            chunk_size=int(section.get('chunk_size', DEFAULT_CHUNK_SIZE)),
            max_redirects=int(section.get('max_redirects', DEFAULT_MAX_REDIRECTS)),
            follow_redirects=bool(section.get('follow_redirects', True)),
        )

    async def open(self, descriptor) -> HTTPXExchange:
        request = self._client.build_request(
            descriptor.method,
            descriptor.url,
            headers=descriptor.request_headers(),
            params=descriptor.query_params or None,
            content=descriptor.body,
        )
        logger.debug("transport_sending", method=descriptor.method, url=descriptor.url)

        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as e:
            error = _translate(e, descriptor.url)
            logger.warning("transport_error", url=descriptor.url, reason=error.reason, error=str(e))
            raise error from e

        return HTTPXExchange(response, descriptor.url, self.chunk_size)

    async def aclose(self):
        if self._owns_client:
            await self._client.aclose()
