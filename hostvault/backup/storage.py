"""
Local storage root handling for backup artifacts.

Each domain owns a storage root holding:
- sealed artifacts:   {prefix}_backup_{YYYYMMDD_HHMMSS}.tar.gz
- checksum sidecars:  {prefix}_backup_{YYYYMMDD_HHMMSS}.tar.gz.sha256
- staging workspaces: {prefix}_{YYYYMMDD_HHMMSS}/
- the run-lock file:  .{prefix}.lock
"""

import fcntl
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'
ARCHIVE_EXTENSION = '.tar.gz'
CHECKSUM_EXTENSION = '.sha256'


class StorageError(Exception):
    """Raised when a storage operation fails."""
    pass


class StoragePreflightError(StorageError):
    """Raised when the storage root cannot take another backup run."""
    pass


class RunLockError(StorageError):
    """Raised when another process holds the domain's run-lock."""
    pass


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class Artifact:
    """An immutable, timestamped archive of one domain. Identity is (domain, timestamp)."""

    domain: str
    path: Path
    timestamp: datetime

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def checksum_path(self) -> Path:
        return self.path.with_name(self.path.name + CHECKSUM_EXTENSION)

    @property
    def size_bytes(self) -> int:
        try:
            return self.path.stat().st_size
        except FileNotFoundError:
            return 0

    def age(self, now: datetime) -> timedelta:
        return now - self.timestamp

    def age_days(self, now: datetime) -> int:
        """Whole days since the artifact's logical timestamp."""
        return int(self.age(now).total_seconds() // 86400)


class RunLock:
    """
    Advisory per-domain lock held for the duration of collection and sealing.

    Uses flock so the lock disappears with the process if a run is killed.
    """

    def __init__(self, lock_path: Path):
        self.lock_path = Path(lock_path)
        self._fd = None

    def acquire(self):
        """
        Take the lock without blocking.

        Raises:
            RunLockError: If another process holds the lock
        """
        fd = os.open(self.lock_path, os.O_CREAT | os.O_RDWR, 0o640)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            os.close(fd)
            holder = self._read_holder()
            raise RunLockError(
                f"Lock {self.lock_path} is held by another run"
                + (f" (pid {holder})" if holder else "")
            )

        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode())
        self._fd = fd
        return self

    def release(self):
        if self._fd is None:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def _read_holder(self) -> Optional[str]:
        try:
            return self.lock_path.read_text().strip() or None
        except OSError:
            return None

    def __enter__(self):
        return self.acquire()

    def __exit__(self, exc_type, exc, tb):
        self.release()


class LocalStorage:
    """
    Handler for one domain's storage root.

    Artifacts are identified by the timestamp embedded in their name; file
    modification times are never used for age calculations.
    """

    def __init__(self, base_path, prefix: str, domain: Optional[str] = None):
        """
        Initialize local storage handler.

        Args:
            base_path: Storage root directory of the domain
            prefix: Artifact naming prefix of the domain
            domain: Domain name recorded on enumerated artifacts (defaults to prefix)
        """
        self.base_path = Path(base_path)
        self.prefix = prefix
        self.domain = domain or prefix
        self._artifact_re = re.compile(
            r'^' + re.escape(prefix) + r'_backup_(\d{8}_\d{6})' + re.escape(ARCHIVE_EXTENSION) + r'$'
        )

    @classmethod
    def for_domain(cls, domain) -> 'LocalStorage':
        return cls(domain.storage_root, domain.prefix, domain.name)

    @property
    def exists(self) -> bool:
        return self.base_path.is_dir()

    def ensure_root(self):
        """
        Create the storage root if it doesn't exist.

        Raises:
            StorageError: If the directory cannot be created
        """
        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create storage root {self.base_path}: {e}")

    def artifact_name(self, timestamp: datetime) -> str:
        return f"{self.prefix}_backup_{format_timestamp(timestamp)}{ARCHIVE_EXTENSION}"

    def artifact_path(self, timestamp: datetime) -> Path:
        return self.base_path / self.artifact_name(timestamp)

    def staging_path(self, timestamp: datetime) -> Path:
        return self.base_path / f"{self.prefix}_{format_timestamp(timestamp)}"

    def lock(self) -> RunLock:
        return RunLock(self.base_path / f".{self.prefix}.lock")

    def parse_artifact(self, path: Path) -> Optional[Artifact]:
        """Return an Artifact if the path is named like one of this domain's artifacts."""
        match = self._artifact_re.match(Path(path).name)
        if not match:
            return None
        try:
            timestamp = parse_timestamp(match.group(1))
        except ValueError:
            return None
        return Artifact(domain=self.domain, path=Path(path), timestamp=timestamp)

    def list_artifacts(self) -> List[Artifact]:
        """
        List this domain's artifacts, oldest first.

        Returns:
            List of Artifact instances (empty if the storage root doesn't exist)

        Raises:
            StorageError: If the storage root cannot be read
        """
        if not self.exists:
            return []

        try:
            artifacts = []
            for entry in self.base_path.iterdir():
                if not entry.is_file():
                    continue
                artifact = self.parse_artifact(entry)
                if artifact:
                    artifacts.append(artifact)
        except OSError as e:
            raise StorageError(f"Failed to list artifacts in {self.base_path}: {e}")

        artifacts.sort(key=lambda a: a.timestamp)
        return artifacts

    def latest_artifact(self) -> Optional[Artifact]:
        artifacts = self.list_artifacts()
        return artifacts[-1] if artifacts else None

    def recent_artifacts(self, limit: int) -> List[Artifact]:
        """Most recent artifacts first."""
        return list(reversed(self.list_artifacts()))[:max(limit, 0)]

    def total_size(self) -> int:
        total = 0
        for artifact in self.list_artifacts():
            total += artifact.size_bytes
            if artifact.checksum_path.exists():
                total += artifact.checksum_path.stat().st_size
        return total

    def free_bytes(self) -> int:
        """
        Free space available on the filesystem holding the storage root.

        Raises:
            StorageError: If the storage root doesn't exist
        """
        try:
            return shutil.disk_usage(self.base_path).free
        except OSError as e:
            raise StorageError(f"Failed to read free space of {self.base_path}: {e}")

    def check_free_space(self, min_free_bytes: int) -> int:
        """
        Preflight check run before any collection starts.

        Returns:
            Free bytes available

        Raises:
            StoragePreflightError: If the root is unusable or below the minimum
        """
        try:
            free = self.free_bytes()
        except StorageError as e:
            raise StoragePreflightError(str(e))

        logger.info(f"Available space in {self.base_path}: {free / 1024 ** 3:.1f}GB")

        if free < min_free_bytes:
            raise StoragePreflightError(
                f"Insufficient space in {self.base_path}: {free / 1024 ** 3:.1f}GB available, "
                f"{min_free_bytes / 1024 ** 3:.1f}GB required"
            )
        return free

    def delete_artifact(self, artifact: Artifact) -> Tuple[int, bool]:
        """
        Delete an artifact together with its checksum sidecar.

        A missing sidecar is not an error.

        Returns:
            Tuple of (freed bytes, whether a sidecar was removed)

        Raises:
            StorageError: If the archive itself cannot be deleted
        """
        size = artifact.size_bytes
        try:
            artifact.path.unlink()
        except FileNotFoundError:
            size = 0
        except OSError as e:
            raise StorageError(f"Failed to delete {artifact.path}: {e}")

        sidecar_removed = False
        sidecar = artifact.checksum_path
        try:
            sidecar_size = sidecar.stat().st_size
            sidecar.unlink()
            size += sidecar_size
            sidecar_removed = True
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Deleted {artifact.name} but failed to delete its sidecar: {e}")

        return size, sidecar_removed
