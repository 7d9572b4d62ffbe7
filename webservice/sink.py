"""
Receives response bytes, either buffering them in memory or streaming them
straight to a destination file.
"""

import os
from pathlib import Path
from typing import Optional

import structlog

from .errors import InvalidState, StreamWriteFailed

logger = structlog.get_logger(__name__)

BUFFERED = 'buffered'
STREAMED = 'streamed'


class _Unavailable:
    """Marker for data that never resided in memory."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self):
        return False

    def __repr__(self):
        return 'UNAVAILABLE'


UNAVAILABLE = _Unavailable()


class ResponseSink:
    """Accumulates the response body of one request.

    With no destination the body is collected into a buffer and exposed as
    ``data`` once finished. With a destination (a path or a writable binary
    file object) each chunk is written as it arrives and dropped, so at most
    one chunk is held in memory; ``data`` then reports ``UNAVAILABLE``.

    A file object passed in by the caller is written to but never closed.
    """

    def __init__(self, destination=None):
        self._destination = destination
        self._mode = BUFFERED if destination is None else STREAMED
        self._buffer = bytearray()
        self._data: Optional[bytes] = None
        self._file_handle = None
        self._finished = False
        self.bytes_received = 0

    @property
    def mode(self) -> str:
        return self._mode

    @property
    def streamed(self) -> bool:
        return self._mode == STREAMED

    @property
    def destination(self):
        """The destination handle (a Path or the caller's file object)."""
        if not self.streamed:
            return None
        if hasattr(self._destination, 'write'):
            return self._destination
        return Path(self._destination)

    @property
    def is_open(self) -> bool:
        """Whether the sink holds a file handle it opened itself."""
        return self._file_handle is not None

    @property
    def data(self):
        if self.streamed:
            return UNAVAILABLE
        return self._data

    def open(self):
        """Open the destination for writing; no-op in buffered mode."""
        if not self.streamed or hasattr(self._destination, 'write') or self._file_handle is not None:
            return
        try:
            self._file_handle = open(self._destination, 'wb')
        except OSError as e:
            raise StreamWriteFailed(
                f"Cannot open {os.fspath(self._destination)} for writing: {e}",
                destination=self.destination,
            ) from e

    def _writer(self):
        if hasattr(self._destination, 'write'):
            return self._destination
        if self._file_handle is None:
            self.open()
        return self._file_handle

    def append(self, chunk: bytes):
        if self._finished:
            raise InvalidState("Cannot append to a finished response sink")
        if not chunk:
            return

        if self.streamed:
            try:
                self._writer().write(chunk)
            except (OSError, ValueError) as e:
                raise StreamWriteFailed(
                    f"Failed writing {len(chunk)} bytes to destination: {e}",
                    destination=self.destination,
                ) from e
        else:
            self._buffer.extend(chunk)
        self.bytes_received += len(chunk)

    def finish(self):
        """Finalize the body and return the payload handle.

        Buffered mode returns the immutable bytes, streamed mode the
        destination handle.
        """
        if self._finished:
            raise InvalidState("Response sink already finished")

        if self.streamed:
            try:
                self._writer().flush()
            except (OSError, ValueError) as e:
                raise StreamWriteFailed(
                    f"Failed flushing destination: {e}",
                    destination=self.destination,
                ) from e
            self.release()
            self._finished = True
            return self.destination

        self._data = bytes(self._buffer)
        self._buffer = bytearray()
        self._finished = True
        return self._data

    def release(self):
        """Close the handle this sink opened. Partial writes are kept."""
        if self._file_handle is None:
            return
        handle, self._file_handle = self._file_handle, None
        try:
            handle.close()
        except OSError as e:
            logger.warning("destination_close_failed",
                           destination=str(self._destination),
                           error=str(e))

    def __repr__(self):
        return f"ResponseSink(mode={self._mode!r}, bytes_received={self.bytes_received})"
