"""
Unit tests for storage roots (hostvault/backup/storage.py).

Tests artifact naming and enumeration, free space preflight, deletion and the run-lock.
"""

import os
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest

from hostvault.backup.storage import (
    Artifact,
    LocalStorage,
    RunLock,
    RunLockError,
    StorageError,
    StoragePreflightError,
)


@pytest.fixture
def storage(tmp_path):
    root = tmp_path / 'backups'
    root.mkdir()
    return LocalStorage(root, 'universal', 'system')


def _touch(storage, name, content=b'data'):
    path = storage.base_path / name
    path.write_bytes(content)
    return path


class TestNaming:
    """Test artifact and staging names."""

    def test_artifact_name(self, storage):
        ts = datetime(2024, 1, 15, 2, 30, 5)

        assert storage.artifact_name(ts) == 'universal_backup_20240115_023005.tar.gz'
        assert storage.artifact_path(ts).parent == storage.base_path

    def test_staging_path(self, storage):
        ts = datetime(2024, 1, 15, 2, 30, 5)

        assert storage.staging_path(ts).name == 'universal_20240115_023005'

    def test_parse_artifact(self, storage):
        artifact = storage.parse_artifact(storage.base_path / 'universal_backup_20240115_023005.tar.gz')

        assert artifact.domain == 'system'
        assert artifact.timestamp == datetime(2024, 1, 15, 2, 30, 5)
        assert artifact.checksum_path.name == 'universal_backup_20240115_023005.tar.gz.sha256'

    @pytest.mark.parametrize('name', [
        'mailcow_backup_20240115_023005.tar.gz',
        'universal_backup_20240115_023005.tar.gz.sha256',
        'universal_backup_20241315_023005.tar.gz',
        'universal_backup_latest.tar.gz',
        'universal_20240115_023005',
    ])
    def test_parse_artifact_rejects_other_names(self, storage, name):
        assert storage.parse_artifact(storage.base_path / name) is None


class TestEnumeration:
    """Test listing artifacts."""

    def test_list_artifacts_sorted_by_name_timestamp(self, storage):
        """Order comes from the embedded timestamp, never from mtime."""
        newer = _touch(storage, 'universal_backup_20240110_040000.tar.gz')
        older = _touch(storage, 'universal_backup_20240103_040000.tar.gz')
        # Give the older artifact the newer mtime
        os.utime(older, (2_000_000_000, 2_000_000_000))
        os.utime(newer, (1_000_000_000, 1_000_000_000))

        names = [a.name for a in storage.list_artifacts()]

        assert names == [
            'universal_backup_20240103_040000.tar.gz',
            'universal_backup_20240110_040000.tar.gz',
        ]
        assert storage.latest_artifact().name == 'universal_backup_20240110_040000.tar.gz'

    def test_list_ignores_sidecars_staging_and_other_domains(self, storage):
        _touch(storage, 'universal_backup_20240103_040000.tar.gz')
        _touch(storage, 'universal_backup_20240103_040000.tar.gz.sha256')
        _touch(storage, 'mailcow_backup_20240103_040000.tar.gz')
        (storage.base_path / 'universal_20240104_040000').mkdir()

        assert len(storage.list_artifacts()) == 1

    def test_list_missing_root(self, tmp_path):
        storage = LocalStorage(tmp_path / 'missing', 'universal')

        assert storage.list_artifacts() == []
        assert storage.latest_artifact() is None

    def test_recent_artifacts_newest_first(self, storage):
        for day in (1, 2, 3, 4):
            _touch(storage, f'universal_backup_2024010{day}_040000.tar.gz')

        recent = storage.recent_artifacts(2)

        assert [a.timestamp.day for a in recent] == [4, 3]

    def test_total_size_includes_sidecars(self, storage):
        _touch(storage, 'universal_backup_20240103_040000.tar.gz', b'x' * 100)
        _touch(storage, 'universal_backup_20240103_040000.tar.gz.sha256', b'y' * 10)

        assert storage.total_size() == 110


class TestArtifactAge:
    """Test age calculations."""

    def test_age_days_is_floor(self, tmp_path):
        artifact = Artifact('system', tmp_path / 'a.tar.gz', datetime(2024, 1, 10, 12, 0, 0))

        assert artifact.age_days(datetime(2024, 1, 13, 11, 59, 59)) == 2
        assert artifact.age_days(datetime(2024, 1, 13, 12, 0, 0)) == 3

    def test_size_of_missing_artifact(self, tmp_path):
        artifact = Artifact('system', tmp_path / 'gone.tar.gz', datetime(2024, 1, 10))

        assert artifact.size_bytes == 0


class TestFreeSpace:
    """Test the storage preflight check."""

    @patch('hostvault.backup.storage.shutil.disk_usage')
    def test_check_free_space_passes(self, mock_usage, storage):
        mock_usage.return_value = MagicMock(free=10 * 1024 ** 3)

        assert storage.check_free_space(5 * 1024 ** 3) == 10 * 1024 ** 3

    @patch('hostvault.backup.storage.shutil.disk_usage')
    def test_check_free_space_insufficient(self, mock_usage, storage):
        mock_usage.return_value = MagicMock(free=1 * 1024 ** 3)

        with pytest.raises(StoragePreflightError, match='Insufficient space'):
            storage.check_free_space(5 * 1024 ** 3)

    def test_check_free_space_missing_root(self, tmp_path):
        storage = LocalStorage(tmp_path / 'missing', 'universal')

        with pytest.raises(StoragePreflightError):
            storage.check_free_space(0)

    def test_ensure_root_creates_directory(self, tmp_path):
        storage = LocalStorage(tmp_path / 'a' / 'b', 'universal')

        storage.ensure_root()

        assert storage.exists


class TestDeletion:
    """Test deleting an artifact together with its sidecar."""

    def test_delete_artifact_and_sidecar(self, storage):
        path = _touch(storage, 'universal_backup_20240103_040000.tar.gz', b'x' * 100)
        _touch(storage, 'universal_backup_20240103_040000.tar.gz.sha256', b'y' * 10)
        artifact = storage.parse_artifact(path)

        freed, sidecar_removed = storage.delete_artifact(artifact)

        assert freed == 110
        assert sidecar_removed is True
        assert list(storage.base_path.iterdir()) == []

    def test_delete_without_sidecar(self, storage):
        path = _touch(storage, 'universal_backup_20240103_040000.tar.gz', b'x' * 100)

        freed, sidecar_removed = storage.delete_artifact(storage.parse_artifact(path))

        assert freed == 100
        assert sidecar_removed is False
        assert not path.exists()

    def test_delete_failure_raises(self, storage):
        path = _touch(storage, 'universal_backup_20240103_040000.tar.gz')
        artifact = storage.parse_artifact(path)

        with patch('pathlib.Path.unlink', side_effect=PermissionError('denied')):
            with pytest.raises(StorageError, match='Failed to delete'):
                storage.delete_artifact(artifact)


class TestRunLock:
    """Test the per-domain advisory lock."""

    def test_second_holder_is_rejected(self, storage):
        with storage.lock() as lock:
            assert lock.held

            with pytest.raises(RunLockError, match=str(os.getpid())):
                storage.lock().acquire()

    def test_lock_released_on_exit(self, storage):
        with storage.lock():
            pass

        with storage.lock() as lock:
            assert lock.held

    def test_lock_released_on_exception(self, storage):
        with pytest.raises(RuntimeError):
            with storage.lock():
                raise RuntimeError('boom')

        lock = RunLock(storage.base_path / '.universal.lock').acquire()
        lock.release()
        assert not lock.held
