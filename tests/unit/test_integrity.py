"""
Unit tests for checksum sealing and verification (hostvault/backup/integrity.py).
"""

import hashlib
from datetime import datetime

import pytest

from hostvault.backup.integrity import (
    IntegrityError,
    VerificationStatus,
    compute_checksum,
    read_checksum_file,
    verify_artifact,
    verify_recent,
    write_checksum_file,
)
from hostvault.backup.storage import LocalStorage


class TestChecksums:

    def test_compute_checksum(self, tmp_path):
        path = tmp_path / 'file.bin'
        path.write_bytes(b'hello world')

        assert compute_checksum(path) == hashlib.sha256(b'hello world').hexdigest()

    def test_compute_checksum_missing_file(self, tmp_path):
        with pytest.raises(IntegrityError):
            compute_checksum(tmp_path / 'missing')

    def test_sidecar_format(self, tmp_path):
        archive = tmp_path / 'universal_backup_20240115_040000.tar.gz'
        archive.write_bytes(b'data')
        digest = compute_checksum(archive)

        sidecar = write_checksum_file(archive, digest)

        assert sidecar.name == 'universal_backup_20240115_040000.tar.gz.sha256'
        assert sidecar.read_text() == f"{digest}  universal_backup_20240115_040000.tar.gz\n"
        assert read_checksum_file(sidecar) == digest

    def test_malformed_sidecar(self, tmp_path):
        sidecar = tmp_path / 'a.tar.gz.sha256'
        sidecar.write_text('not-a-digest  a.tar.gz\n')

        assert read_checksum_file(sidecar) is None


class TestVerifyArtifact:

    @pytest.fixture
    def sealed(self, tmp_path):
        archive = tmp_path / 'universal_backup_20240115_040000.tar.gz'
        archive.write_bytes(b'archive contents ' * 100)
        write_checksum_file(archive, compute_checksum(archive))
        return archive

    def test_verified(self, sealed):
        result = verify_artifact(sealed)

        assert result.status == VerificationStatus.VERIFIED
        assert not result.failed
        assert result.expected == result.actual

    def test_single_byte_change_is_mismatch(self, sealed):
        content = bytearray(sealed.read_bytes())
        content[len(content) // 2] ^= 0x01
        sealed.write_bytes(bytes(content))

        result = verify_artifact(sealed)

        assert result.status == VerificationStatus.CHECKSUM_MISMATCH
        assert result.failed
        assert result.expected != result.actual
        assert 'checksum mismatch' in result.message

    def test_missing_sidecar_is_not_a_failure(self, sealed):
        sealed.with_name(sealed.name + '.sha256').unlink()

        result = verify_artifact(sealed)

        assert result.status == VerificationStatus.SIDECAR_MISSING
        assert not result.failed

    def test_malformed_sidecar_is_mismatch_and_left_alone(self, sealed):
        sidecar = sealed.with_name(sealed.name + '.sha256')
        sidecar.write_text('garbage\n')

        result = verify_artifact(sealed)

        assert result.status == VerificationStatus.CHECKSUM_MISMATCH
        assert sidecar.read_text() == 'garbage\n'

    def test_missing_archive_raises(self, tmp_path):
        with pytest.raises(IntegrityError, match='not found'):
            verify_artifact(tmp_path / 'gone.tar.gz')


class TestVerifyRecent:

    def test_newest_first_within_sample(self, tmp_path):
        storage = LocalStorage(tmp_path, 'universal')
        for day in range(1, 5):
            archive = storage.artifact_path(datetime(2024, 1, day, 4, 0))
            archive.write_bytes(f'day {day}'.encode())
            write_checksum_file(archive, compute_checksum(archive))

        results = verify_recent(storage, 2)

        assert [r.path.name for r in results] == [
            'universal_backup_20240104_040000.tar.gz',
            'universal_backup_20240103_040000.tar.gz',
        ]
        assert all(r.status == VerificationStatus.VERIFIED for r in results)
