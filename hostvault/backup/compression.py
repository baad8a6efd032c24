"""
Archiver: seals a staging workspace into one compressed artifact.

The archive is written under a hidden temporary name in the storage root and
renamed to its final name only once complete, so a reader never sees a
partially written artifact. A SHA-256 sidecar is written next to it.
"""

import logging
import os
import tarfile
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import Optional, Sequence

from .integrity import IntegrityError, compute_checksum, write_checksum_file
from .storage import Artifact
from .workspace import WorkspaceError

logger = logging.getLogger(__name__)


class CompressionError(Exception):
    """Raised when archive creation fails."""
    pass


@dataclass(frozen=True)
class SealedArchive:
    artifact: Artifact
    checksum: Optional[str]
    size_bytes: int
    workspace_removed: bool = True


class Archiver:
    """
    Turns a completed staging workspace into an artifact plus checksum sidecar.
    """

    def __init__(self, storage, compression_level: int = 6,
                 exclude_patterns: Sequence[str] = ('*.tmp', '*.cache'),
                 max_size_bytes: Optional[int] = None):
        """
        Initialize archiver.

        Args:
            storage: LocalStorage of the domain (artifacts are written to its root)
            compression_level: gzip level 0-9
            exclude_patterns: File name patterns left out of the archive
            max_size_bytes: Advisory ceiling; exceeding it is logged, never enforced
        """
        if not 0 <= compression_level <= 9:
            raise ValueError(f"Invalid compression level: {compression_level}. Valid range: 0-9")

        self.storage = storage
        self.compression_level = compression_level
        self.exclude_patterns = tuple(exclude_patterns)
        self.max_size_bytes = max_size_bytes

    def seal(self, workspace) -> SealedArchive:
        """
        Compress the workspace, publish it atomically and write its checksum.

        The workspace is removed only after the archive is published. On any
        compression failure the workspace is preserved and no file is left
        under the final artifact name.

        Args:
            workspace: StagingWorkspace whose collectors have all returned

        Returns:
            SealedArchive describing the published artifact

        Raises:
            CompressionError: If the workspace is missing/empty or archiving fails
        """
        if not workspace.exists:
            raise CompressionError(f"Staging workspace does not exist: {workspace.path}")
        if workspace.is_empty():
            raise CompressionError(f"Staging workspace is empty: {workspace.path}")

        final_path = self.storage.artifact_path(workspace.timestamp)
        if final_path.exists():
            raise CompressionError(f"Artifact already exists: {final_path.name}")

        temp_path = final_path.with_name('.' + final_path.name + '.partial')
        logger.info(f"Creating compressed archive: {final_path.name}")

        try:
            self._write_archive(workspace.path, temp_path)
            os.replace(temp_path, final_path)
        except Exception as e:
            # Clean up partial archive on failure
            if temp_path.exists():
                try:
                    temp_path.unlink()
                except OSError as cleanup_error:
                    logger.error(f"Failed to remove partial archive {temp_path}: {cleanup_error}")
            raise CompressionError(f"Failed to create archive: {e}")

        size = final_path.stat().st_size
        logger.info(f"Archive created successfully: {final_path.name} ({size / 1024 / 1024:.2f} MB)")

        if self.max_size_bytes and size > self.max_size_bytes:
            logger.warning(
                f"Archive {final_path.name} is {size / 1024 ** 3:.2f}GB, above the advisory "
                f"maximum of {self.max_size_bytes / 1024 ** 3:.2f}GB"
            )

        checksum = None
        try:
            checksum = compute_checksum(final_path)
            write_checksum_file(final_path, checksum)
            logger.info(f"Checksum created: {final_path.name}.sha256")
        except (IntegrityError, OSError) as e:
            logger.warning(f"Failed to create checksum for {final_path.name}: {e}")

        workspace_removed = True
        try:
            workspace.discard()
            logger.info("Cleaned up staging workspace")
        except WorkspaceError as e:
            workspace_removed = False
            logger.warning(str(e))

        artifact = self.storage.parse_artifact(final_path)
        return SealedArchive(
            artifact=artifact,
            checksum=checksum,
            size_bytes=size,
            workspace_removed=workspace_removed,
        )

    def _is_excluded(self, name: str) -> bool:
        return any(fnmatch(name, pattern) for pattern in self.exclude_patterns)

    def _write_archive(self, source_dir: Path, archive_path: Path):
        """Write a gzip tar of every category directory in source_dir."""

        def exclude_filter(tarinfo):
            if self._is_excluded(os.path.basename(tarinfo.name)):
                return None
            return tarinfo

        with open(archive_path, 'wb') as raw:
            with tarfile.open(fileobj=raw, mode='w:gz', compresslevel=self.compression_level) as tar:
                for entry in sorted(source_dir.iterdir()):
                    tar.add(entry, arcname=entry.name, recursive=True, filter=exclude_filter)
            raw.flush()
            os.fsync(raw.fileno())
