"""
Shared pytest fixtures for secure-backup tests.

This module provides fixtures for:
- Testing configuration (cheap key derivation, no log files)
- Source directory trees to back up
- Compression and encryption strategies
- Destination directories with managed and orphan artifacts
- A stalled pipeline sink for cancelling runs in progress
"""

import os
import json
import time
import logging
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from unittest.mock import patch

import pytest

from securebackup import TOOL_NAME, __version__
from securebackup.backup.compression import create_compressor
from securebackup.backup.encryption import create_encryptor
from securebackup.backup.manifest import CreatedBy, Manifest, compute_checksum, persist
from securebackup.backup.naming import manifest_path_for
from securebackup.errors import PipelineCancelled


PASSPHRASE = 'correct horse battery staple'

# Cheap key derivation keeps the suite fast
TEST_KDF_ITERATIONS = 1000


@pytest.fixture(autouse=True)
def testing_env(monkeypatch):
    """
    Select the testing configuration and clear any ambient passphrase.

    Handlers installed by configure_logging() are removed afterwards, since
    CLI invocations reconfigure logging.
    """
    monkeypatch.setenv('SECURE_BACKUP_ENV', 'testing')
    monkeypatch.delenv('SECURE_BACKUP_PASSPHRASE', raising=False)

    root = logging.getLogger()
    level = root.level

    yield

    for handler in list(root.handlers):
        if type(handler) in (logging.StreamHandler, RotatingFileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(level)


@pytest.fixture
def passphrase():
    return PASSPHRASE


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a source directory to back up.

    Creates:
    - data/file1.txt
    - data/nested/file2.bin (64 KiB of pseudo-random bytes)
    - data/nested/deeper/file3.txt
    - data/empty_dir/
    - data/link_to_file1 -> file1.txt (symlink)
    """
    source = tmp_path / 'data'
    source.mkdir()

    (source / 'file1.txt').write_text('Test content 1')

    nested = source / 'nested'
    nested.mkdir()
    (nested / 'file2.bin').write_bytes(os.urandom(64 * 1024))

    deeper = nested / 'deeper'
    deeper.mkdir()
    (deeper / 'file3.txt').write_text('Nested test content\n' * 100)

    (source / 'empty_dir').mkdir()
    os.symlink('file1.txt', source / 'link_to_file1')

    return source


@pytest.fixture
def large_source(tmp_path):
    """A source directory holding 4 MiB of incompressible data."""
    source = tmp_path / 'large'
    source.mkdir()
    (source / 'random.bin').write_bytes(os.urandom(4 * 1024 * 1024))
    return source


@pytest.fixture
def empty_source(tmp_path):
    """An empty source directory."""
    source = tmp_path / 'empty'
    source.mkdir()
    return source


@pytest.fixture
def dest_dir(tmp_path):
    """An existing, empty destination directory."""
    dest = tmp_path / 'backups'
    dest.mkdir()
    return dest


@pytest.fixture
def gzip_compressor():
    return create_compressor('gzip')


@pytest.fixture
def fernet_encryptor():
    """Fernet encryptor with the test passphrase."""
    return create_encryptor('fernet', PASSPHRASE, iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def aesgcm_encryptor():
    """AES-GCM encryptor with the test passphrase."""
    return create_encryptor('aesgcm', PASSPHRASE, iterations=TEST_KDF_ITERATIONS)


@pytest.fixture
def passphrase_file(tmp_path):
    """Passphrase file with owner-only permissions."""
    path = tmp_path / 'passphrase.txt'
    path.write_text(PASSPHRASE + '\n')
    os.chmod(path, 0o600)
    return path


def write_artifact(dest, name, content=b'encrypted-bytes'):
    """Write a fake artifact file directly into dest."""
    path = dest / name
    path.write_bytes(content)
    return path


def write_manifest(artifact_path, created_at, hostname='host-a', source_path='/data/app',
                   compression='gzip', encryption='fernet', **overrides):
    """Write a valid manifest for artifact_path and return it."""
    manifest = Manifest(
        created_at=created_at,
        created_by=CreatedBy(tool=TOOL_NAME, version=__version__, hostname=hostname),
        source_path=source_path,
        backup_file=os.path.basename(str(artifact_path)),
        compression=compression,
        encryption=encryption,
        checksum_value=compute_checksum(str(artifact_path)),
    )
    for key, value in overrides.items():
        setattr(manifest, key, value)

    persist(manifest, manifest_path_for(str(artifact_path)))
    return manifest


@pytest.fixture
def managed_backup():
    """
    Factory creating an artifact with a valid manifest.

    Usage: managed_backup(dest, 'backup_app_20240101_000000.tar.gz.fernet', created_at)
    """

    def factory(dest, name, created_at, content=b'encrypted-bytes', **manifest_fields):
        path = write_artifact(dest, name, content)
        write_manifest(path, created_at, **manifest_fields)
        return path

    return factory


@pytest.fixture
def orphan_backup():
    """
    Factory creating an artifact without a usable manifest.

    reason: 'missing' (no manifest), 'corrupt' (unparsable JSON),
    'undecodable' (bytes that aren't UTF-8) or 'incomplete' (valid JSON
    with an empty checksum)
    """

    def factory(dest, name, reason='missing'):
        path = write_artifact(dest, name)
        manifest_path = manifest_path_for(str(path))

        if reason == 'corrupt':
            with open(manifest_path, 'w') as f:
                f.write('{not json')
        elif reason == 'undecodable':
            with open(manifest_path, 'wb') as f:
                f.write(b'{"source_path": "\xff\xfe"}')
        elif reason == 'incomplete':
            with open(manifest_path, 'w') as f:
                json.dump({'backup_file': name, 'source_path': '/data/app'}, f)

        return path

    return factory


@pytest.fixture
def base_time():
    """Fixed reference time for manifests."""
    return datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)

@pytest.fixture
def stalled_write():
    """
    Replace the pipeline's file sink with one that stops reading after its
    first chunk, so every upstream stage ends up blocked on a full conduit.

    Yields an Event that is set once the sink has stalled. The sink resumes
    only when the run is cancelled.
    """
    stalled = threading.Event()

    def write(reader, path, file_mode, cancellation):
        reader.read(1024)
        stalled.set()

        deadline = time.monotonic() + 10
        while not cancellation.cancelled and time.monotonic() < deadline:
            time.sleep(0.01)
        cancellation.raise_if_cancelled()
        return 0

    with patch('securebackup.backup.pipeline._write_file', write):
        yield stalled


@pytest.fixture
def cancel_when_stalled():
    """
    Factory starting a thread that cancels a run once its sink has stalled.

    Usage: thread = cancel_when_stalled(stalled, cancellation)
    """
    threads = []

    def factory(stalled, cancellation):
        def run():
            if stalled.wait(10):
                # Give upstream stages time to fill their conduits
                time.sleep(0.2)
                cancellation.cancel(PipelineCancelled('Interrupted by SIGTERM'))

        thread = threading.Thread(target=run, name='test-canceller')
        thread.start()
        threads.append(thread)
        return thread

    yield factory

    for thread in threads:
        thread.join(10)
