"""
Owner that runs many request units concurrently.

Units are submitted, run as asyncio tasks with bounded concurrency, and can be
cancelled individually or all at once. There is no retry and no caching here:
a failed unit is terminal, callers build and submit a fresh one.
"""

import asyncio
from typing import Dict, List

import structlog

from .errors import InvalidState
from .request import RequestState, RequestUnit
from .transport import HTTPXTransport, Transport

logger = structlog.get_logger(__name__)

DEFAULT_MAX_CONCURRENT = 4


class RequestQueue:
    """Runs submitted units through one shared transport."""

    def __init__(self, transport: Transport = None, max_concurrent: int = DEFAULT_MAX_CONCURRENT,
                 owns_transport: bool = None):
        if max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self._owns_transport = transport is None if owns_transport is None else owns_transport
        self.transport = transport or HTTPXTransport()
        self.max_concurrent = max_concurrent
        self._slots = None
        self._tasks: Dict[RequestUnit, asyncio.Task] = {}

    @classmethod
    def from_config(cls, settings) -> 'RequestQueue':
        """Build a queue and its HTTPX transport from a Config."""
        return cls(
            transport=HTTPXTransport.from_config(settings),
            max_concurrent=int(settings.queue.get('max_concurrent', DEFAULT_MAX_CONCURRENT)),
            owns_transport=True,
        )

    @property
    def pending(self) -> List[RequestUnit]:
        """Submitted units that have not reached a terminal state."""
        return [unit for unit in self._tasks if not unit.state.is_terminal]

    def submit(self, unit: RequestUnit) -> asyncio.Task:
        """Schedule a unit; must be called with a running event loop."""
        if unit in self._tasks:
            raise InvalidState(f"Request already submitted: {unit.url}")
        if unit.state not in (RequestState.CREATED, RequestState.READY):
            raise InvalidState(f"Cannot submit a request in state {unit.state.value}; build a new one")

        unit.prepare()
        if self._slots is None:
            self._slots = asyncio.Semaphore(self.max_concurrent)

        task = asyncio.create_task(self._run(unit))
        self._tasks[unit] = task
        task.add_done_callback(lambda _: self._tasks.pop(unit, None))
        logger.debug("queue_submitted", url=unit.url, pending=len(self._tasks))
        return task

    async def _run(self, unit: RequestUnit):
        async with self._slots:
            await unit.run(self.transport)

    def cancel(self, unit: RequestUnit) -> bool:
        return unit.cancel()

    def cancel_all(self):
        for unit in list(self._tasks):
            unit.cancel()

    async def drain(self):
        """Wait until every submitted unit has reached a terminal state."""
        while self._tasks:
            results = await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error("queue_task_error", error=str(result), exc_info=result)

    async def aclose(self):
        await self.drain()
        if self._owns_transport:
            await self.transport.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self.cancel_all()
        await self.aclose()
