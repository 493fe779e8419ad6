"""
Streaming pipeline engine.

Backup:  source dir -> archive -> compress -> encrypt -> write (temp file)
Restore: artifact   -> read -> decrypt -> decompress -> extract (dest dir)

Stages are connected by bounded conduits. Every stage that doesn't own a
producer runs as its own task on a small thread pool; a stage that owns its
producer (StreamTransform.owns_producer) is called directly and returns a
Future. The final stage runs on the calling thread.

The first stage to fail cancels the run: every conduit is aborted, so all
other stages stop at their next read or write. The caller gets a
PipelineError naming the stage that failed first.

Backup order is fixed: compression always runs before encryption, since
ciphertext doesn't compress.
"""

import os
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, List, Optional, Tuple

from securebackup.config import Config
from securebackup.errors import PipelineCancelled, PipelineError, StorageError
from .archive import create_tar, extract_tar, walk_tar
from .compression import Compressor
from .conduit import Cancellation, Conduit, ConduitError, copy_stream
from .encryption import Encryptor
from .storage import open_for_write
from .transform import StreamTransform


logger = logging.getLogger(__name__)

BACKUP_STAGES = ('archive', 'compress', 'encrypt', 'write')
RESTORE_STAGES = ('read', 'decrypt', 'decompress', 'extract')


class _Pipeline:
    """
    One pipeline run: its conduits, worker tasks and failure record.

    Args:
        name: Run name used for thread names and logs
        cancellation: Shared cancellation (a new one if None)
        buffer_size: Capacity of each conduit
    """

    def __init__(self, name: str, cancellation: Optional[Cancellation] = None, buffer_size: Optional[int] = None):
        self.name = name
        self.cancellation = cancellation or Cancellation()
        self.buffer_size = buffer_size or Config.IO_BUFFER_SIZE
        self._executor = ThreadPoolExecutor(max_workers=len(BACKUP_STAGES), thread_name_prefix=f'{name}-stage')
        self._tasks: List[Tuple[str, Future]] = []
        self._failures: List[Tuple[str, BaseException]] = []
        self._lock = threading.Lock()

    def conduit(self, stage: str) -> Conduit:
        """Conduit carrying the output of stage."""
        return Conduit(stage, self.buffer_size, self.cancellation)

    def fail(self, stage: str, error: BaseException, writer: Optional[Conduit] = None):
        """Record a stage failure and cancel every other stage."""
        with self._lock:
            self._failures.append((stage, error))

        if isinstance(error, (ConduitError, PipelineCancelled)):
            logger.debug(f"{self.name}: {stage} stage stopped: {error}")
        else:
            logger.debug(f"{self.name}: {stage} stage failed: {error!r}")

        if writer is not None:
            writer.close_with_error(error)
        self.cancellation.cancel(error)

    def spawn(self, stage: str, work: Callable, writer: Optional[Conduit] = None) -> Future:
        """Run work as an independent task; writer is closed when it returns."""

        def run():
            try:
                result = work()
            except BaseException as e:
                self.fail(stage, e, writer)
                raise
            if writer is not None:
                writer.close()
            logger.debug(f"{self.name}: {stage} stage finished")
            return result

        future = self._executor.submit(run)
        self._tasks.append((stage, future))
        return future

    def transform(self, stage: str, strategy: StreamTransform, direction: str, reader: Conduit, writer: Conduit):
        """
        Connect a strategy between two conduits.

        A strategy that owns its producer is called synchronously; wrapping
        it in another task would chain two blocking producers over bounded
        conduits and deadlock.
        """
        operation = getattr(strategy, direction)

        if not strategy.owns_producer:
            self.spawn(stage, lambda: operation(reader, writer, self.cancellation), writer)
            return

        try:
            future = operation(reader, writer, self.cancellation)
        except Exception as e:
            self.fail(stage, e, writer)
            return

        future.add_done_callback(lambda f: self._producer_done(stage, f))
        self._tasks.append((stage, future))

    def _producer_done(self, stage: str, future: Future):
        error = future.exception()
        if error is not None:
            self.fail(stage, error)

    def sink(self, stage: str, work: Callable):
        """Run the final stage on the calling thread."""
        try:
            return work()
        except KeyboardInterrupt:
            self.cancellation.cancel(PipelineCancelled("Interrupted"))
            self._wait()
            raise
        except Exception as e:
            self.fail(stage, e)
            return None

    def _wait(self):
        wait([future for _, future in self._tasks])
        self._executor.shutdown(wait=True)

    def finish(self):
        """
        Wait for every stage, then raise the first failure if there was one.

        Raises:
            PipelineError: Naming the stage that failed first
            PipelineCancelled: If the run was cancelled from outside
        """
        self._wait()

        with self._lock:
            failures = list(self._failures)

        if not failures:
            return

        # Downstream stages only report that upstream went away
        for stage, error in failures:
            if not isinstance(error, (ConduitError, PipelineCancelled)):
                raise PipelineError(stage, error) from error

        reason = self.cancellation.reason
        if isinstance(reason, PipelineCancelled):
            raise reason
        stage, error = failures[0]
        raise PipelineCancelled(f"Pipeline cancelled during {stage} stage: {error}") from error


def _write_file(reader, path: str, file_mode: Optional[int], cancellation: Cancellation) -> int:
    with open_for_write(path, file_mode) as out:
        written = copy_stream(reader, out, Config.IO_BUFFER_SIZE, cancellation)
        out.flush()
        os.fsync(out.fileno())
    return written


def _read_file(path: str, writer, cancellation: Cancellation) -> int:
    with open(path, 'rb') as f:
        return copy_stream(f, writer, Config.IO_BUFFER_SIZE, cancellation)


def run_backup(
    source_dir: str,
    output_path: str,
    compressor: Compressor,
    encryptor: Encryptor,
    cancellation: Optional[Cancellation] = None,
    buffer_size: Optional[int] = None,
    file_mode: Optional[int] = Config.DEFAULT_FILE_MODE
) -> int:
    """
    Archive, compress and encrypt source_dir into output_path.

    output_path should be a temporary path; the caller promotes it and
    removes it on failure.

    Args:
        source_dir: Directory to back up
        output_path: File to write the encrypted stream to
        compressor: Compression strategy
        encryptor: Encryption strategy
        cancellation: Optional external cancellation (signal handlers)
        buffer_size: Conduit capacity (default 1 MiB)
        file_mode: Permissions for output_path (None = umask)

    Returns:
        Uncompressed byte count of the archived file contents

    Raises:
        PipelineError: If any stage fails
        PipelineCancelled: If cancelled from outside
    """
    pipeline = _Pipeline('backup', cancellation, buffer_size)
    logger.debug(f"Backup pipeline: {compressor.method} compression, {encryptor.method} encryption")

    archived = pipeline.conduit('archive')
    compressed = pipeline.conduit('compress')
    encrypted = pipeline.conduit('encrypt')

    archive_task = pipeline.spawn(
        'archive',
        lambda: create_tar(source_dir, archived, pipeline.cancellation),
        archived
    )
    pipeline.transform('compress', compressor, 'forward', archived, compressed)
    pipeline.transform('encrypt', encryptor, 'forward', compressed, encrypted)
    pipeline.sink('write', lambda: _write_file(encrypted, output_path, file_mode, pipeline.cancellation))

    pipeline.finish()
    return archive_task.result()


def _run_reverse(
    name: str,
    input_path: str,
    compressor: Compressor,
    encryptor: Encryptor,
    final_stage: str,
    consume: Callable,
    cancellation: Optional[Cancellation],
    buffer_size: Optional[int]
):
    if not os.path.isfile(input_path):
        raise StorageError(f"Backup file not found: {input_path}", context={'path': input_path})

    pipeline = _Pipeline(name, cancellation, buffer_size)

    raw = pipeline.conduit('read')
    decrypted = pipeline.conduit('decrypt')
    decompressed = pipeline.conduit('decompress')

    pipeline.spawn('read', lambda: _read_file(input_path, raw, pipeline.cancellation), raw)
    pipeline.transform('decrypt', encryptor, 'inverse', raw, decrypted)
    pipeline.transform('decompress', compressor, 'inverse', decrypted, decompressed)
    result = pipeline.sink(final_stage, lambda: consume(decompressed, pipeline.cancellation))

    pipeline.finish()
    return result


def run_restore(
    input_path: str,
    dest_dir: str,
    compressor: Compressor,
    encryptor: Encryptor,
    cancellation: Optional[Cancellation] = None,
    buffer_size: Optional[int] = None
) -> int:
    """
    Decrypt, decompress and extract an artifact into dest_dir.

    Returns:
        Number of regular file bytes restored

    Raises:
        PipelineError: If any stage fails (read, decrypt, decompress, extract)
        PipelineCancelled: If cancelled from outside
    """
    return _run_reverse(
        'restore', input_path, compressor, encryptor, 'extract',
        lambda reader, cancel: extract_tar(reader, dest_dir, cancel),
        cancellation, buffer_size
    )


def run_verify(
    input_path: str,
    compressor: Compressor,
    encryptor: Encryptor,
    cancellation: Optional[Cancellation] = None,
    buffer_size: Optional[int] = None
) -> Tuple[int, int]:
    """
    Decrypt and decompress an artifact and read the archive to its end,
    discarding the contents.

    Returns:
        Tuple of (archive member count, regular file bytes)
    """
    return _run_reverse(
        'verify', input_path, compressor, encryptor, 'extract',
        walk_tar,
        cancellation, buffer_size
    )
