"""
Staging workspace for one backup run.

The workspace is a uniquely timestamped directory in the domain's storage root
with one subdirectory per collection category. It is destroyed after the
archive is sealed, and left in place for inspection on any fatal failure.
"""

import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Iterable, List

logger = logging.getLogger(__name__)


class WorkspaceError(Exception):
    """Raised when the staging workspace cannot be created or used."""
    pass


class StagingWorkspace:

    def __init__(self, path, timestamp: datetime, categories: Iterable[str]):
        self.path = Path(path)
        self.timestamp = timestamp
        self.categories = tuple(categories)

    @classmethod
    def create(cls, storage, timestamp: datetime, categories: Iterable[str]) -> 'StagingWorkspace':
        """
        Create a fresh workspace with one subdirectory per category.

        Args:
            storage: LocalStorage of the domain
            timestamp: Run timestamp (second resolution)
            categories: Categories that will be collected

        Raises:
            WorkspaceError: If the workspace already exists or cannot be created
        """
        workspace = cls(storage.staging_path(timestamp), timestamp, categories)
        try:
            workspace.path.mkdir(mode=0o750)
            for category in workspace.categories:
                workspace.category_dir(category).mkdir()
        except FileExistsError:
            raise WorkspaceError(f"Staging workspace already exists: {workspace.path}")
        except OSError as e:
            raise WorkspaceError(f"Failed to create staging workspace {workspace.path}: {e}")

        logger.info(f"Created staging workspace: {workspace.path}")
        return workspace

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def exists(self) -> bool:
        return self.path.is_dir()

    def category_dir(self, category: str) -> Path:
        return self.path / category

    def _files(self, root: Path):
        for dirpath, _dirnames, filenames in os.walk(root):
            for filename in filenames:
                yield Path(dirpath) / filename

    def is_empty(self) -> bool:
        """True when no category holds a single file."""
        for _ in self._files(self.path):
            return False
        return True

    def populated_categories(self) -> List[str]:
        populated = []
        for category in self.categories:
            if any(True for _ in self._files(self.category_dir(category))):
                populated.append(category)
        return populated

    def file_count(self) -> int:
        return sum(1 for _ in self._files(self.path))

    def size_bytes(self) -> int:
        total = 0
        for path in self._files(self.path):
            try:
                total += path.lstat().st_size
            except OSError:
                pass
        return total

    def discard(self):
        """
        Remove the workspace tree.

        Raises:
            WorkspaceError: If removal fails
        """
        try:
            shutil.rmtree(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise WorkspaceError(f"Failed to remove staging workspace {self.path}: {e}")
