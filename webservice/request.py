"""
The schedulable unit of HTTP work.

A RequestUnit owns a descriptor and a response sink, drives one exchange
through an injected Transport, and notifies its listeners once it reaches a
terminal state:

    CREATED -> READY -> EXECUTING -> COMPLETED | FAILED
    CREATED | READY | EXECUTING -> CANCELLED

Non-2xx responses are COMPLETED; only transport and sink failures are FAILED.
Cancellation is silent.
"""

import asyncio
import time
from contextlib import aclosing
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

import httpx
import structlog

from .descriptor import FAILURE_HANDLER_KEY, SUCCESS_HANDLER_KEY, RequestDescriptor
from .errors import ExchangeError, InvalidState, TransportError
from .notification import NotificationChannel
from .sink import ResponseSink
from .transport import Transport

logger = structlog.get_logger(__name__)


class RequestState(Enum):
    CREATED = 'created'
    READY = 'ready'
    EXECUTING = 'executing'
    COMPLETED = 'completed'
    FAILED = 'failed'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self in (RequestState.COMPLETED, RequestState.FAILED, RequestState.CANCELLED)


def _current_task():
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class RequestUnit:
    """One HTTP exchange, from construction to a single terminal notification."""

    def __init__(
        self,
        descriptor: RequestDescriptor,
        target=None,
        success_handler: Optional[str] = None,
        failure_handler: Optional[str] = None,
        observer=None,
    ):
        self._descriptor = descriptor
        self._sink = ResponseSink(descriptor.destination)
        self._channel = NotificationChannel(target, success_handler, failure_handler, observer)

        self._state = RequestState.CREATED
        self._status_code: Optional[int] = None
        self._response_headers = httpx.Headers()
        self._error: Optional[ExchangeError] = None

        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False
        self._task_cancelled = False

        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self.elapsed: Optional[float] = None

    @classmethod
    def from_api_info(cls, api_info, target=None, parameters=None, destination=None, observer=None) -> 'RequestUnit':
        """Build a unit from an API info table (url, method, expected result
        type, parameters, success and failure handler names)."""
        descriptor = RequestDescriptor.from_api_info(api_info, parameters=parameters, destination=destination)
        return cls(
            descriptor,
            target=target,
            success_handler=api_info.get(SUCCESS_HANDLER_KEY),
            failure_handler=api_info.get(FAILURE_HANDLER_KEY),
            observer=observer,
        )

    @classmethod
    def for_url(
        cls,
        url: str,
        method: str,
        target,
        success_handler: Optional[str],
        failure_handler: Optional[str],
        expected_result_type: Optional[str] = None,
        parameters=None,
        destination=None,
    ) -> 'RequestUnit':
        descriptor = RequestDescriptor(
            url,
            method,
            parameters=parameters,
            expected_result_type=expected_result_type,
            destination=destination,
        )
        return cls(descriptor, target, success_handler, failure_handler)

    # descriptor pass-throughs ---------------------------------------------

    @property
    def descriptor(self) -> RequestDescriptor:
        return self._descriptor

    @property
    def url(self) -> str:
        return self._descriptor.url

    @property
    def method(self) -> str:
        return self._descriptor.method

    @property
    def headers(self) -> httpx.Headers:
        return self._descriptor.headers

    @property
    def parameters(self):
        return self._descriptor.parameters

    @property
    def expected_result_type(self):
        return self._descriptor.expected_result_type

    @property
    def user_info(self):
        return self._descriptor.user_info

    @user_info.setter
    def user_info(self, value):
        self._descriptor.user_info = value

    def set_header(self, name: str, value: str):
        self._descriptor.set_header(name, value)

    def update_headers(self, headers):
        self._descriptor.update_headers(headers)

    # listeners ------------------------------------------------------------

    def set_target(self, target, success_handler: Optional[str] = None, failure_handler: Optional[str] = None):
        self._channel.set_target(target, success_handler, failure_handler)

    @property
    def target(self):
        return self._channel.target

    @property
    def success_handler(self) -> Optional[str]:
        return self._channel.success_handler

    @property
    def failure_handler(self) -> Optional[str]:
        return self._channel.failure_handler

    @property
    def observer(self):
        return self._channel.observer

    @observer.setter
    def observer(self, observer):
        self._channel.observer = observer

    # results --------------------------------------------------------------

    @property
    def state(self) -> RequestState:
        return self._state

    @property
    def status_code(self) -> Optional[int]:
        return self._status_code

    @property
    def response_headers(self) -> httpx.Headers:
        return self._response_headers

    @property
    def sink(self) -> ResponseSink:
        return self._sink

    @property
    def data(self):
        """Buffered payload, ``None`` until completed, ``UNAVAILABLE`` when streamed."""
        return self._sink.data

    @property
    def destination(self):
        return self._sink.destination

    @property
    def streamed(self) -> bool:
        return self._sink.streamed

    @property
    def bytes_received(self) -> int:
        return self._sink.bytes_received

    @property
    def error(self) -> Optional[ExchangeError]:
        return self._error

    # lifecycle ------------------------------------------------------------

    def _set_state(self, state: RequestState):
        logger.debug("request_state_changed", url=self.url, old=self._state.value, new=state.value)
        self._state = state

    def prepare(self):
        """Mark the unit ready to run and freeze its descriptor."""
        if self._state is RequestState.READY:
            return
        if self._state is not RequestState.CREATED:
            raise InvalidState(f"Cannot prepare a request in state {self._state.value}")
        self._descriptor.freeze()
        self._set_state(RequestState.READY)

    def cancel(self) -> bool:
        """Request cancellation. Returns False when the unit was already terminal.

        Must be called from the event loop thread running the unit.
        """
        if self._state.is_terminal:
            return False

        self._cancel_requested = True
        if self._state in (RequestState.CREATED, RequestState.READY):
            self._descriptor.freeze()
            self._set_state(RequestState.CANCELLED)
            logger.info("request_cancelled", url=self.url, executing=False)
            return True

        task = self._task
        # run() uncancels once, so the task is cancelled at most once
        if (task is not None and not task.done() and task is not _current_task()
                and not self._task_cancelled):
            self._task_cancelled = True
            task.cancel()
        return True

    def _check_cancelled(self):
        if self._cancel_requested:
            raise asyncio.CancelledError()

    async def run(self, transport: Transport):
        """Perform the exchange and deliver the outcome.

        Failures during the exchange are never raised from here; they move
        the unit to FAILED and go through the failure notifications.
        """
        if self._state is RequestState.CREATED:
            self.prepare()
        if self._state is RequestState.CANCELLED:
            logger.debug("request_skipped", url=self.url, reason="cancelled_before_start")
            return
        if self._state is not RequestState.READY:
            raise InvalidState(f"Cannot run a request in state {self._state.value}")

        self._task = _current_task()
        self._set_state(RequestState.EXECUTING)
        self.started_at = datetime.now(timezone.utc)
        start_time = time.monotonic()
        logger.info("request_started", method=self.method, url=self.url, streamed=self.streamed)

        try:
            payload = await self._perform(transport)
        except asyncio.CancelledError:
            self._finish(RequestState.CANCELLED, start_time)
            logger.info("request_cancelled",
                        url=self.url,
                        executing=True,
                        bytes_received=self.bytes_received)
            if not self._cancel_requested:
                raise
            if self._task_cancelled and self._task is not None:
                self._task.uncancel()
        except ExchangeError as error:
            self._fail(error, start_time)
        except Exception as e:
            error = TransportError(f"Unexpected error: {e}", url=self.url, reason='unexpected')
            error.__cause__ = e
            self._fail(error, start_time)
        else:
            self._finish(RequestState.COMPLETED, start_time)
            logger.info("request_completed",
                        url=self.url,
                        status_code=self._status_code,
                        bytes_received=self.bytes_received,
                        elapsed=self.elapsed)
            self._channel.dispatch_completed(self, payload)
        finally:
            self._task = None

    async def _perform(self, transport: Transport):
        self._check_cancelled()
        exchange = await transport.open(self._descriptor)
        try:
            self._check_cancelled()
            self._status_code = exchange.status_code
            self._response_headers = httpx.Headers(exchange.headers)
            self._sink.open()

            async with aclosing(exchange.iter_chunks()) as chunks:
                async for chunk in chunks:
                    self._check_cancelled()
                    self._sink.append(chunk)

            self._check_cancelled()
            return self._sink.finish()
        finally:
            self._sink.release()
            await exchange.aclose()

    def _finish(self, state: RequestState, start_time: float):
        self.finished_at = datetime.now(timezone.utc)
        self.elapsed = time.monotonic() - start_time
        self._set_state(state)

    def _fail(self, error: ExchangeError, start_time: float):
        error.response_headers = httpx.Headers(self._response_headers)
        self._error = error
        self._finish(RequestState.FAILED, start_time)
        logger.warning("request_failed",
                       url=self.url,
                       error_type=type(error).__name__,
                       error=error.message,
                       status_code=self._status_code)
        self._channel.dispatch_failed(self, error)

    def __repr__(self):
        return f"RequestUnit(method={self.method!r}, url={self.url!r}, state={self._state.value!r})"
