"""
Unit tests for the streaming pipeline (securebackup/backup/pipeline.py).

Tests backup/restore round trips, stage failure reporting and cancellation.
"""

import os
import time
import filecmp
import threading
from unittest.mock import patch

import pytest

from securebackup.backup.compression import create_compressor
from securebackup.backup.conduit import Cancellation
from securebackup.backup.encryption import create_encryptor
from securebackup.backup.pipeline import run_backup, run_restore, run_verify
from securebackup.errors import PipelineCancelled, PipelineError, StorageError


PASSPHRASE = 'pipeline-passphrase'


def encryptor(method='fernet', passphrase=PASSPHRASE):
    return create_encryptor(method, passphrase, iterations=1000)


def assert_same_tree(left, right):
    comparison = filecmp.dircmp(left, right)
    assert comparison.left_only == []
    assert comparison.right_only == []

    # dircmp only compares (type, size, mtime), and restore keeps mtimes
    _, mismatch, errors = filecmp.cmpfiles(left, right, comparison.common_files, shallow=False)
    assert mismatch == []
    assert errors == []
    for sub in comparison.common_dirs:
        assert_same_tree(os.path.join(left, sub), os.path.join(right, sub))


class TestRoundTrip:
    """Test that restore(backup(S)) reproduces S."""

    @pytest.mark.parametrize("compression", ['gzip', 'bzip2', 'xz', 'none'])
    @pytest.mark.parametrize("encryption", ['fernet', 'aesgcm'])
    def test_backup_then_restore(self, source_tree, tmp_path, compression, encryption):
        """Test every method pair restores the source byte for byte."""
        artifact = tmp_path / 'out.bin'
        dest = tmp_path / 'restore'

        uncompressed = run_backup(
            str(source_tree), str(artifact), create_compressor(compression), encryptor(encryption)
        )
        restored = run_restore(
            str(artifact), str(dest), create_compressor(compression), encryptor(encryption)
        )

        assert uncompressed == restored
        assert_same_tree(str(source_tree), str(dest / 'data'))
        assert os.readlink(dest / 'data' / 'link_to_file1') == 'file1.txt'

    def test_small_buffers(self, source_tree, tmp_path):
        """Test tiny conduits still move the whole stream."""
        artifact = tmp_path / 'out.bin'
        dest = tmp_path / 'restore'

        run_backup(str(source_tree), str(artifact), create_compressor('gzip'), encryptor('aesgcm'), buffer_size=512)
        run_restore(str(artifact), str(dest), create_compressor('gzip'), encryptor('aesgcm'), buffer_size=512)

        assert_same_tree(str(source_tree), str(dest / 'data'))

    def test_empty_source(self, empty_source, tmp_path):
        """Test an empty directory backs up with zero uncompressed bytes."""
        artifact = tmp_path / 'out.bin'

        uncompressed = run_backup(str(empty_source), str(artifact), create_compressor('gzip'), encryptor())

        assert uncompressed == 0
        assert artifact.stat().st_size > 0

    def test_output_mode(self, source_tree, tmp_path):
        """Test the artifact gets the requested permissions."""
        artifact = tmp_path / 'out.bin'

        run_backup(str(source_tree), str(artifact), create_compressor('none'), encryptor(), file_mode=0o640)

        assert artifact.stat().st_mode & 0o777 == 0o640

    def test_verify_counts(self, source_tree, tmp_path):
        """Test verify walks the whole archive."""
        artifact = tmp_path / 'out.bin'
        uncompressed = run_backup(str(source_tree), str(artifact), create_compressor('xz'), encryptor())

        members, total = run_verify(str(artifact), create_compressor('xz'), encryptor())

        assert members == 8
        assert total == uncompressed


class TestStageFailures:
    """Test that the first failing stage is reported and everything stops."""

    @pytest.mark.parametrize("encryption", ['fernet', 'aesgcm'])
    def test_encrypt_failure(self, source_tree, tmp_path, encryption):
        """Test an encrypt-stage failure aborts promptly and names the stage."""
        artifact = tmp_path / 'out.bin'
        strategy = encryptor(encryption)

        with patch.object(type(strategy), '_write_header', side_effect=RuntimeError('key derivation exploded')):
            started = time.monotonic()
            with pytest.raises(PipelineError) as exc_info:
                run_backup(str(source_tree), str(artifact), create_compressor('gzip'), strategy)
            elapsed = time.monotonic() - started

        assert exc_info.value.stage == 'encrypt'
        assert 'key derivation exploded' in exc_info.value.message
        assert elapsed < 10

    def test_archive_failure(self, tmp_path):
        """Test a missing source fails in the archive stage."""
        with pytest.raises(PipelineError) as exc_info:
            run_backup(str(tmp_path / 'missing'), str(tmp_path / 'out.bin'), create_compressor('gzip'), encryptor())

        assert exc_info.value.stage == 'archive'

    def test_write_failure(self, source_tree, tmp_path):
        """Test an unwritable output fails in the write stage."""
        output = tmp_path / 'no-such-dir' / 'out.bin'

        with pytest.raises(PipelineError) as exc_info:
            run_backup(str(source_tree), str(output), create_compressor('gzip'), encryptor())

        assert exc_info.value.stage == 'write'

    def test_wrong_passphrase_fails_decrypt(self, source_tree, tmp_path):
        """Test a wrong passphrase fails in the decrypt stage."""
        artifact = tmp_path / 'out.bin'
        run_backup(str(source_tree), str(artifact), create_compressor('gzip'), encryptor())

        with pytest.raises(PipelineError) as exc_info:
            run_restore(str(artifact), str(tmp_path / 'restore'), create_compressor('gzip'), encryptor(passphrase='wrong'))

        assert exc_info.value.stage == 'decrypt'

    def test_wrong_compression_fails_decompress(self, source_tree, tmp_path):
        """Test restoring with the wrong compressor fails in the decompress stage."""
        artifact = tmp_path / 'out.bin'
        run_backup(str(source_tree), str(artifact), create_compressor('gzip'), encryptor())

        with pytest.raises(PipelineError) as exc_info:
            run_verify(str(artifact), create_compressor('xz'), encryptor())

        assert exc_info.value.stage == 'decompress'

    def test_missing_input(self, tmp_path):
        with pytest.raises(StorageError, match='Backup file not found'):
            run_restore(str(tmp_path / 'missing'), str(tmp_path / 'r'), create_compressor('gzip'), encryptor())


class TestCancellation:
    """Test external cancellation."""

    def test_cancelled_before_start(self, source_tree, tmp_path):
        """Test a cancelled run raises PipelineCancelled and stops."""
        cancellation = Cancellation()
        cancellation.cancel(PipelineCancelled('Interrupted by SIGINT'))

        with pytest.raises(PipelineCancelled, match='SIGINT'):
            run_backup(
                str(source_tree), str(tmp_path / 'out.bin'), create_compressor('gzip'), encryptor(),
                cancellation=cancellation
            )

    @pytest.mark.parametrize("encryption", ['fernet', 'aesgcm'])
    def test_cancel_while_stages_blocked(self, large_source, tmp_path, stalled_write, cancel_when_stalled,
                                         encryption):
        """Test cancelling mid-run unblocks every stage waiting on a full conduit."""
        cancellation = Cancellation()
        threads_before = set(threading.enumerate())
        canceller = cancel_when_stalled(stalled_write, cancellation)

        started = time.monotonic()
        with pytest.raises(PipelineCancelled, match='SIGTERM'):
            run_backup(
                str(large_source), str(tmp_path / 'out.bin'), create_compressor('none'), encryptor(encryption),
                cancellation=cancellation, buffer_size=4096
            )

        assert time.monotonic() - started < 10
        assert stalled_write.is_set()

        canceller.join(10)
        leftover = [t for t in threading.enumerate() if t not in threads_before]
        for thread in leftover:
            thread.join(1)
        assert not [t for t in leftover if t.is_alive()]
