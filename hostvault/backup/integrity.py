"""
Checksum sealing and verification for backup artifacts.

Sidecars use the ``sha256sum`` format (``<hex>  <archive name>``) so they can
also be checked with ``sha256sum -c`` from inside the storage root.
"""

import hashlib
import logging
import os
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

from .storage import CHECKSUM_EXTENSION

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024
_SHA256_RE = re.compile(r'^[0-9a-f]{64}$')


class IntegrityError(Exception):
    """Raised when an artifact cannot be read for verification."""
    pass


class VerificationStatus(str, Enum):
    VERIFIED = 'verified'
    CHECKSUM_MISMATCH = 'checksum_mismatch'
    SIDECAR_MISSING = 'sidecar_missing'


@dataclass(frozen=True)
class VerificationResult:
    path: Path
    status: VerificationStatus
    expected: Optional[str] = None
    actual: Optional[str] = None

    @property
    def failed(self) -> bool:
        """Only a mismatch is a failure; a missing sidecar is a warning."""
        return self.status == VerificationStatus.CHECKSUM_MISMATCH

    @property
    def message(self) -> str:
        if self.status == VerificationStatus.VERIFIED:
            return f"{self.path.name}: verified"
        if self.status == VerificationStatus.SIDECAR_MISSING:
            return f"{self.path.name}: no checksum file"
        return f"{self.path.name}: checksum mismatch"

    def to_dict(self) -> dict:
        return {
            'artifact': self.path.name,
            'status': self.status.value,
            'expected': self.expected,
            'actual': self.actual,
        }


def checksum_path(archive_path) -> Path:
    archive_path = Path(archive_path)
    return archive_path.with_name(archive_path.name + CHECKSUM_EXTENSION)


def compute_checksum(path) -> str:
    """
    Compute the SHA-256 of a file.

    Raises:
        IntegrityError: If the file cannot be read
    """
    digest = hashlib.sha256()
    try:
        with open(path, 'rb') as f:
            for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
                digest.update(chunk)
    except OSError as e:
        raise IntegrityError(f"Failed to read {path}: {e}")
    return digest.hexdigest()


def write_checksum_file(archive_path, checksum: str) -> Path:
    """
    Write the sidecar next to the archive (temp name, then rename).

    Returns:
        Path of the sidecar
    """
    archive_path = Path(archive_path)
    sidecar = checksum_path(archive_path)
    temp = sidecar.with_name('.' + sidecar.name + '.partial')

    with open(temp, 'w') as f:
        f.write(f"{checksum}  {archive_path.name}\n")
        f.flush()
        os.fsync(f.fileno())
    os.replace(temp, sidecar)
    return sidecar


def read_checksum_file(sidecar) -> Optional[str]:
    """
    Read the recorded checksum from a sidecar.

    Returns:
        Lower-case hex digest, or None if the sidecar content is malformed
    """
    content = Path(sidecar).read_text().strip()
    if not content:
        return None
    recorded = content.split()[0].lower()
    return recorded if _SHA256_RE.match(recorded) else None


def verify_artifact(archive_path) -> VerificationResult:
    """
    Recompute an archive's checksum and compare it with its sidecar.

    A malformed sidecar is treated as a mismatch; it is never rewritten.

    Raises:
        IntegrityError: If the archive itself doesn't exist or can't be read
    """
    archive_path = Path(archive_path)
    if not archive_path.is_file():
        raise IntegrityError(f"Archive not found: {archive_path}")

    sidecar = checksum_path(archive_path)
    if not sidecar.is_file():
        logger.warning(f"No checksum file found for {archive_path.name}")
        return VerificationResult(archive_path, VerificationStatus.SIDECAR_MISSING)

    try:
        expected = read_checksum_file(sidecar)
    except OSError as e:
        raise IntegrityError(f"Failed to read {sidecar}: {e}")

    actual = compute_checksum(archive_path)

    if expected != actual:
        logger.error(f"Backup integrity check failed: {archive_path.name}")
        return VerificationResult(archive_path, VerificationStatus.CHECKSUM_MISMATCH, expected, actual)

    logger.info(f"Backup integrity verified: {archive_path.name}")
    return VerificationResult(archive_path, VerificationStatus.VERIFIED, expected, actual)


def verify_recent(storage, sample_size: int) -> List[VerificationResult]:
    """
    Verify the most recent artifacts of a domain, newest first.

    Artifacts that disappear mid-sweep (pruned concurrently) are skipped.

    Raises:
        IntegrityError: If an existing artifact cannot be read
    """
    results = []
    for artifact in storage.recent_artifacts(sample_size):
        if not artifact.path.exists():
            logger.warning(f"Skipping verification of {artifact.name}: removed during sweep")
            continue
        results.append(verify_artifact(artifact.path))
    return results
