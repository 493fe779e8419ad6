"""
Bounded byte-stream conduits connecting pipeline stages.

A conduit is a single-producer/single-consumer pipe backed by a fixed-size
buffer. Writers block while the buffer is full, readers block until data
arrives. Closing a conduit with an error makes the next read raise
immediately, and a shared Cancellation aborts every conduit registered with
it so no stage is left waiting.
"""

import threading
from typing import List, Optional

from securebackup.config import Config
from securebackup.errors import PipelineCancelled, SecureBackupError, ErrorKind


# Upper bound on a single blocking wait, so cancellation is always observed
POLL_INTERVAL = 0.1


class ConduitError(SecureBackupError):
    """Raised by a conduit whose other end failed or was cancelled."""

    kind = ErrorKind.PIPELINE

    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"{name} conduit aborted: {cause}", context={'conduit': name})
        self.cause = cause


class Cancellation:
    """
    Single cancellation signal shared by every stage of one pipeline run.

    Cancelling aborts all registered conduits, waking every blocked reader
    and writer. The first reason given wins.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.RLock()
        self._conduits: List['Conduit'] = []
        self.reason: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[BaseException] = None):
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason or PipelineCancelled("Pipeline cancelled")
            self._event.set()
            conduits = list(self._conduits)

        for conduit in conduits:
            conduit.abort(self.reason)

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise PipelineCancelled(f"Pipeline cancelled: {self.reason}")

    def register(self, conduit: 'Conduit'):
        with self._lock:
            self._conduits.append(conduit)
            already_cancelled = self._event.is_set()

        if already_cancelled:
            conduit.abort(self.reason)


class Conduit:
    """
    Bounded in-memory pipe with file-like read() and write().

    Args:
        name: Stage name used in error messages
        capacity: Buffer size in bytes
        cancellation: Optional Cancellation that can abort this conduit
    """

    def __init__(
        self,
        name: str,
        capacity: int = Config.IO_BUFFER_SIZE,
        cancellation: Optional[Cancellation] = None
    ):
        if capacity <= 0:
            raise ValueError(f"Conduit capacity must be positive: {capacity}")

        self.name = name
        self.capacity = capacity
        self._buffer = bytearray()
        self._cond = threading.Condition(threading.RLock())
        self._closed = False
        self._reader_closed = False
        self._error: Optional[BaseException] = None

        if cancellation is not None:
            cancellation.register(self)

    def readable(self) -> bool:
        return True

    def writable(self) -> bool:
        return True

    @property
    def closed(self) -> bool:
        return self._closed or self._error is not None

    def write(self, data) -> int:
        """
        Append data, blocking while the buffer is full.

        Returns:
            Number of bytes written (always len(data))

        Raises:
            ConduitError: If the conduit was aborted or the reader went away
            ValueError: If the writer already closed the conduit
        """
        view = memoryview(data).cast('B')
        total = len(view)
        offset = 0

        with self._cond:
            while offset < total:
                if self._error is not None:
                    raise ConduitError(self.name, self._error)
                if self._closed:
                    raise ValueError(f"write to closed conduit: {self.name}")
                if self._reader_closed:
                    raise ConduitError(self.name, BrokenPipeError("reader closed"))

                space = self.capacity - len(self._buffer)
                if space <= 0:
                    self._cond.wait(POLL_INTERVAL)
                    continue

                chunk = view[offset:offset + space]
                self._buffer += chunk
                offset += len(chunk)
                self._cond.notify_all()

        return total

    def read(self, size: int = -1) -> bytes:
        """
        Read up to size bytes, blocking until data or end of stream.

        A negative size reads until the writer closes. Returns b'' at end
        of stream. Buffered data is discarded once the conduit is aborted.
        """
        if size is None or size < 0:
            return self._read_all()

        if size == 0:
            return b''

        with self._cond:
            while True:
                if self._error is not None:
                    raise ConduitError(self.name, self._error)
                if self._buffer:
                    data = bytes(self._buffer[:size])
                    del self._buffer[:size]
                    self._cond.notify_all()
                    return data
                if self._closed:
                    return b''
                self._cond.wait(POLL_INTERVAL)

    def _read_all(self) -> bytes:
        parts = []
        while True:
            chunk = self.read(self.capacity)
            if not chunk:
                return b''.join(parts)
            parts.append(chunk)

    def close(self):
        """Mark end of stream (writer side)."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def close_with_error(self, error: BaseException):
        """Close the conduit so the reader's next call raises error."""
        with self._cond:
            if self._error is None:
                self._error = error
            self._buffer.clear()
            self._cond.notify_all()

    def abort(self, reason: BaseException):
        """Cancellation hook: wake both ends and fail their next call."""
        self.close_with_error(reason)

    def close_reader(self):
        """Reader side is done; further writes fail instead of blocking."""
        with self._cond:
            self._reader_closed = True
            self._buffer.clear()
            self._cond.notify_all()


def iter_chunks(reader, chunk_size: int, cancellation: Optional[Cancellation] = None):
    """Yield chunks from reader until end of stream, checking cancellation."""
    while True:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        chunk = reader.read(chunk_size)
        if not chunk:
            return
        yield chunk


def copy_stream(
    reader,
    writer,
    chunk_size: int = Config.IO_BUFFER_SIZE,
    cancellation: Optional[Cancellation] = None
) -> int:
    """
    Copy reader to writer in chunk_size pieces.

    Returns:
        Number of bytes copied
    """
    copied = 0
    for chunk in iter_chunks(reader, chunk_size, cancellation):
        writer.write(chunk)
        copied += len(chunk)
    return copied


def read_exact(reader, size: int) -> bytes:
    """
    Read exactly size bytes, or fewer only at end of stream.

    Handles short reads from conduits and files alike.
    """
    parts = []
    remaining = size
    while remaining > 0:
        chunk = reader.read(remaining)
        if not chunk:
            break
        parts.append(chunk)
        remaining -= len(chunk)
    return b''.join(parts)
