"""
Unit tests for sealing staging workspaces (hostvault/backup/compression.py).

Tests:
- Archive layout and atomic publication
- Checksum sidecar creation
- Workspace preservation on failure
"""

import tarfile
from datetime import datetime
from unittest.mock import patch

import pytest

from hostvault.backup.compression import Archiver, CompressionError
from hostvault.backup.integrity import VerificationStatus, verify_artifact
from hostvault.backup.storage import LocalStorage
from hostvault.backup.workspace import StagingWorkspace

TS = datetime(2024, 1, 15, 4, 0, 0)


@pytest.fixture
def storage(tmp_path):
    storage = LocalStorage(tmp_path / 'backups', 'universal', 'system')
    storage.ensure_root()
    return storage


@pytest.fixture
def workspace(storage):
    workspace = StagingWorkspace.create(storage, TS, ['configs', 'logs'])
    (workspace.category_dir('configs') / 'hosts').write_text('127.0.0.1 localhost\n')
    (workspace.category_dir('configs') / 'scratch.tmp').write_text('ignore me')
    (workspace.category_dir('logs') / 'syslog').write_text('log line\n')
    return workspace


class TestArchiver:

    def test_invalid_compression_level(self, storage):
        with pytest.raises(ValueError, match='Invalid compression level'):
            Archiver(storage, compression_level=11)

    def test_seal_publishes_artifact(self, storage, workspace):
        sealed = Archiver(storage).seal(workspace)

        assert sealed.artifact.name == 'universal_backup_20240115_040000.tar.gz'
        assert sealed.artifact.timestamp == TS
        assert sealed.size_bytes == sealed.artifact.path.stat().st_size
        assert sealed.workspace_removed
        assert not workspace.exists

        with tarfile.open(sealed.artifact.path, 'r:gz') as tar:
            names = tar.getnames()
        assert 'configs/hosts' in names
        assert 'logs/syslog' in names
        assert 'configs/scratch.tmp' not in names

    def test_seal_writes_matching_sidecar(self, storage, workspace):
        sealed = Archiver(storage).seal(workspace)

        sidecar = sealed.artifact.checksum_path
        assert sidecar.read_text() == f"{sealed.checksum}  {sealed.artifact.name}\n"
        assert verify_artifact(sealed.artifact.path).status == VerificationStatus.VERIFIED

    def test_no_partial_files_left(self, storage, workspace):
        Archiver(storage).seal(workspace)

        names = sorted(p.name for p in storage.base_path.iterdir())
        assert names == [
            'universal_backup_20240115_040000.tar.gz',
            'universal_backup_20240115_040000.tar.gz.sha256',
        ]

    def test_empty_workspace_is_rejected(self, storage):
        workspace = StagingWorkspace.create(storage, TS, ['configs'])

        with pytest.raises(CompressionError, match='empty'):
            Archiver(storage).seal(workspace)

        assert workspace.exists
        assert storage.list_artifacts() == []

    def test_failure_preserves_workspace(self, storage, workspace):
        archiver = Archiver(storage)

        with patch.object(archiver, '_write_archive', side_effect=OSError('disk full')):
            with pytest.raises(CompressionError, match='disk full'):
                archiver.seal(workspace)

        assert workspace.exists
        assert (workspace.category_dir('configs') / 'hosts').exists()
        assert list(storage.base_path.glob('*.tar.gz')) == []
        assert list(storage.base_path.glob('.*.partial')) == []

    def test_existing_artifact_is_never_overwritten(self, storage, workspace):
        storage.artifact_path(TS).write_bytes(b'earlier run')

        with pytest.raises(CompressionError, match='already exists'):
            Archiver(storage).seal(workspace)

        assert storage.artifact_path(TS).read_bytes() == b'earlier run'
        assert workspace.exists

    def test_checksum_failure_still_publishes(self, storage, workspace):
        with patch('hostvault.backup.compression.write_checksum_file', side_effect=OSError('read-only')):
            sealed = Archiver(storage).seal(workspace)

        assert sealed.artifact.path.exists()
        assert not sealed.artifact.checksum_path.exists()
