"""
Unit tests for retention policy management (securebackup/backup/retention.py).

Tests grouping by (hostname, source_path), keep-last-N selection by manifest
time, orphan immunity, dry runs and partial failures.
"""

import os
from datetime import timedelta
from unittest.mock import patch

import pytest

from securebackup.backup.retention import (
    RetentionManager,
    apply_policy,
    discover,
    group_backups,
    list_backups,
    validate_keep_last,
)
from securebackup.backup.storage import LocalStorage
from securebackup.errors import ConfigurationError, ErrorKind, StorageError


def name_for(index, series='app'):
    return f'backup_{series}_202401{10 + index:02d}_120000.tar.gz.fernet'


def manifest_name_for(index, series='app'):
    return f'backup_{series}_202401{10 + index:02d}_120000_manifest.json'


@pytest.fixture
def five_managed_three_orphans(dest_dir, managed_backup, orphan_backup, base_time):
    """Five backups of one series (oldest first) plus three orphans."""
    managed = [
        managed_backup(dest_dir, name_for(i), base_time + timedelta(hours=i))
        for i in range(5)
    ]
    orphans = [
        orphan_backup(dest_dir, name_for(0, 'lost'), 'missing'),
        orphan_backup(dest_dir, name_for(1, 'lost'), 'corrupt'),
        orphan_backup(dest_dir, name_for(2, 'lost'), 'incomplete'),
    ]
    return managed, orphans


class TestValidateKeepLast:
    """Test keep count validation."""

    @pytest.mark.parametrize("value", [0, -1, -100, True, 2.5, '3', None])
    def test_rejects_invalid(self, value):
        with pytest.raises(ConfigurationError) as exc_info:
            validate_keep_last(value)

        assert exc_info.value.kind == ErrorKind.CONFIGURATION

    def test_accepts_positive(self):
        validate_keep_last(1)
        validate_keep_last(30)

    def test_manager_rejects_zero_before_io(self, tmp_path):
        """Test keep_last <= 0 fails without touching the destination."""
        with pytest.raises(ConfigurationError):
            RetentionManager(str(tmp_path / 'missing'), 0)

        assert not (tmp_path / 'missing').exists()


class TestDiscover:
    """Test artifact classification."""

    def test_classifies_managed_and_orphans(self, dest_dir, five_managed_three_orphans):
        managed, orphans = discover(str(dest_dir))

        assert len(managed) == 5
        assert len(orphans) == 3
        assert all(info.manifest is not None for info in managed)
        assert all(info.orphan_reason for info in orphans)

    def test_ignores_non_artifacts(self, dest_dir, managed_backup, base_time):
        """Test manifests, temp files, the lock and foreign files are ignored."""
        managed_backup(dest_dir, name_for(0), base_time)
        (dest_dir / '.backup.lock').write_text('{}')
        (dest_dir / (name_for(1) + '.tmp')).write_bytes(b'partial')
        (dest_dir / 'notes.txt').write_text('hello')

        managed, orphans = discover(str(dest_dir))

        assert [info.name for info in managed] == [name_for(0)]
        assert orphans == []

    def test_manifest_for_other_file_is_orphan(self, dest_dir, managed_backup, base_time):
        """Test a manifest naming a different artifact doesn't manage this one."""
        managed_backup(dest_dir, name_for(0), base_time, backup_file=name_for(3))

        managed, orphans = discover(str(dest_dir))

        assert managed == []
        assert 'does not match' in orphans[0].orphan_reason


class TestGrouping:
    """Test grouping by (hostname, source_path)."""

    def test_groups_by_host_and_path(self, dest_dir, managed_backup, base_time):
        managed_backup(dest_dir, name_for(0), base_time, hostname='host-a', source_path='/data/app')
        managed_backup(dest_dir, name_for(1), base_time, hostname='host-b', source_path='/data/app')
        managed_backup(dest_dir, name_for(2), base_time, hostname='host-a', source_path='/data/db')
        managed_backup(dest_dir, name_for(3), base_time + timedelta(hours=1), hostname='host-a',
                       source_path='/data/app')

        managed, _ = discover(str(dest_dir))
        groups = group_backups(managed)

        assert [g.key for g in groups] == [
            ('host-a', '/data/app'),
            ('host-a', '/data/db'),
            ('host-b', '/data/app'),
        ]
        assert [b.name for b in groups[0].backups] == [name_for(3), name_for(0)]

    def test_orders_by_manifest_time_not_mtime(self, dest_dir, managed_backup, base_time):
        """Test file modification times never influence ordering."""
        newest = managed_backup(dest_dir, name_for(0), base_time + timedelta(days=2))
        oldest = managed_backup(dest_dir, name_for(1), base_time)

        # Give the oldest backup the newest mtime
        os.utime(newest, (1000000000, 1000000000))
        os.utime(oldest, (2000000000, 2000000000))

        result = apply_policy(str(dest_dir), 1)

        assert result.deleted == [str(oldest)]
        assert newest.exists()


class TestRetentionManager:
    """Test applying the keep-last-N policy."""

    def test_five_managed_three_orphans_keep_two(self, dest_dir, five_managed_three_orphans):
        """Test exactly the three oldest managed backups are removed."""
        managed, orphans = five_managed_three_orphans

        result = RetentionManager(str(dest_dir), 2).apply()

        assert result.deleted_count == 3
        assert result.failures == []
        assert result.kind is None
        assert sorted(result.deleted) == sorted(str(p) for p in managed[:3])

        for path in managed[:3]:
            assert not path.exists()
        for i in range(3):
            assert not (dest_dir / manifest_name_for(i)).exists()

        for path in managed[3:]:
            assert path.exists()
        for i in (3, 4):
            assert (dest_dir / manifest_name_for(i)).exists()

        for path in orphans:
            assert path.exists()
        assert sorted(result.orphans) == sorted(str(p) for p in orphans)

    def test_orphan_manifests_untouched(self, dest_dir, five_managed_three_orphans):
        """Test corrupt and incomplete orphan manifests stay in place."""
        RetentionManager(str(dest_dir), 1).apply()

        assert (dest_dir / manifest_name_for(1, 'lost')).exists()
        assert (dest_dir / manifest_name_for(2, 'lost')).exists()

    def test_nothing_to_delete(self, dest_dir, five_managed_three_orphans):
        result = RetentionManager(str(dest_dir), 10).apply()

        assert result.deleted_count == 0
        assert len(result.kept) == 5

    def test_undecodable_manifest_is_orphan(self, dest_dir, managed_backup, orphan_backup, base_time):
        """Test a manifest with invalid UTF-8 leaves its artifact as an untouched orphan."""
        for i in range(3):
            managed_backup(dest_dir, name_for(i), base_time + timedelta(hours=i))
        orphan = orphan_backup(dest_dir, name_for(0, 'lost'), 'undecodable')

        result = apply_policy(str(dest_dir), 1)

        assert result.deleted_count == 2
        assert result.orphans == [str(orphan)]
        assert orphan.exists()
        assert (dest_dir / manifest_name_for(0, 'lost')).exists()

    def test_empty_destination(self, dest_dir):
        result = apply_policy(str(dest_dir), 3)

        assert result.deleted_count == 0
        assert result.groups == []

    def test_dry_run_changes_nothing(self, dest_dir, five_managed_three_orphans):
        """Test a dry run reports the same count and leaves every file."""
        before = sorted(os.listdir(dest_dir))

        dry = RetentionManager(str(dest_dir), 2, dry_run=True).apply()

        assert sorted(os.listdir(dest_dir)) == before
        assert dry.deleted_count == 3
        assert dry.deleted == []
        assert len(dry.planned) == 3
        assert all(manifest is not None for _, manifest in dry.planned)
        assert any('Would delete' in line for line in dry.logs)

        real = RetentionManager(str(dest_dir), 2).apply()

        assert real.deleted_count == dry.deleted_count
        assert sorted(real.deleted) == sorted(artifact for artifact, _ in dry.planned)

    def test_partial_failure(self, dest_dir, five_managed_three_orphans):
        """Test one failed deletion is recorded and the others proceed."""
        managed, _ = five_managed_three_orphans
        stuck = str(managed[1])
        real_delete = LocalStorage.delete

        def flaky_delete(self, path):
            if path == stuck:
                raise StorageError(f"Permission denied deleting {path}")
            return real_delete(self, path)

        with patch.object(LocalStorage, 'delete', autospec=True, side_effect=flaky_delete):
            result = RetentionManager(str(dest_dir), 2).apply()

        assert result.deleted_count == 2
        assert result.failed_count == 1
        assert result.failures[0].path == stuck
        assert result.kind == ErrorKind.PARTIAL_FAILURE

        # Manifest of the undeletable artifact stays with it
        assert managed[1].exists()
        assert (dest_dir / manifest_name_for(1)).exists()
        assert not managed[0].exists()
        assert not managed[2].exists()

    def test_logs_are_timestamped(self, dest_dir, five_managed_three_orphans):
        result = RetentionManager(str(dest_dir), 2).apply()

        assert result.logs
        assert all(line.startswith('[') and ' UTC] ' in line for line in result.logs)

    def test_missing_destination(self, tmp_path):
        """Test a missing destination has nothing to delete."""
        result = apply_policy(str(tmp_path / 'missing'), 2)

        assert result.deleted_count == 0


class TestListBackups:
    """Test list_backups."""

    def test_newest_first_with_orphans(self, dest_dir, managed_backup, orphan_backup, base_time):
        managed_backup(dest_dir, name_for(0), base_time)
        managed_backup(dest_dir, name_for(1), base_time + timedelta(hours=1))
        orphan = orphan_backup(dest_dir, name_for(2, 'lost'))

        backups = list_backups(str(dest_dir))

        assert len(backups) == 3
        managed = [b.name for b in backups if b.managed]
        assert managed == [name_for(1), name_for(0)]
        assert [b.path for b in backups if not b.managed] == [str(orphan)]
