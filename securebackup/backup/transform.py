"""
Stream transform contract shared by compressors and encryptors.

A transform exposes a forward and an inverse stream operation, a stable
method identifier and a filename suffix. It also declares whether it owns
its own producer:

- owns_producer = False: forward()/inverse() copy reader to writer and
  return when done. The pipeline runs the call in its own worker task.
- owns_producer = True: forward()/inverse() start an internal producer
  thread and return a Future immediately. The producer closes the writer
  when it finishes. The pipeline calls these synchronously and never wraps
  them in another task: two blocking producers chained over bounded
  conduits deadlock.
"""

import threading
from concurrent.futures import Future
from typing import Callable

from securebackup.config import Config


class StreamTransform:
    """Base class for pipeline transforms."""

    method = ''
    suffix = ''
    owns_producer = False

    def __init__(self, chunk_size: int = Config.IO_BUFFER_SIZE):
        if chunk_size <= 0:
            raise ValueError(f"Chunk size must be positive: {chunk_size}")
        self.chunk_size = chunk_size

    def forward(self, reader, writer, cancellation=None):
        raise NotImplementedError

    def inverse(self, reader, writer, cancellation=None):
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(method={self.method!r})"


def start_producer(name: str, work: Callable[[], None], writer) -> Future:
    """
    Run work on a dedicated thread that owns writer.

    The writer is closed when work returns, or closed with the error when it
    raises. The returned Future completes afterwards.

    Args:
        name: Thread name
        work: Callable doing the actual copy into writer
        writer: Conduit receiving the output

    Returns:
        Future resolved with None or the producer's exception
    """
    future = Future()
    future.set_running_or_notify_cancel()

    def run():
        try:
            work()
        except BaseException as e:
            writer.close_with_error(e)
            future.set_exception(e)
        else:
            writer.close()
            future.set_result(None)

    thread = threading.Thread(target=run, name=name, daemon=True)
    thread.start()
    return future
