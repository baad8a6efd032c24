"""
Retention policy enforcement for backups.

Removes artifacts older than a domain's retention window from its storage
root. The most recent artifact of a domain is always kept, however old it is.
Ages are taken from the timestamp embedded in the artifact name.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .storage import LocalStorage, StorageError

logger = logging.getLogger(__name__)


@dataclass
class PruneResult:
    domain: str
    retention_days: int
    deleted_count: int = 0
    freed_bytes: int = 0
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    kept_latest: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'retention_days': self.retention_days,
            'deleted_count': self.deleted_count,
            'freed_bytes': self.freed_bytes,
            'deleted': list(self.deleted),
            'errors': list(self.errors),
            'kept_latest': self.kept_latest,
        }


class RetentionManager:
    """
    Manages retention policy enforcement for backup domains.

    Pruning takes the domain's run-lock, so it never deletes an artifact while
    a backup run of the same domain is collecting or sealing.
    """

    def __init__(self, settings, clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize retention manager.

        Args:
            settings: BackupSettings
            clock: Source of "now" for age calculations
        """
        self.settings = settings
        self._clock = clock or datetime.now
        self.logs = []

    def enforce_all_policies(self) -> Dict[str, Any]:
        """
        Enforce retention policies for all configured domains.

        Returns:
            Dict with summary of cleanup operations:
            {
                'domains_processed': int,
                'deleted': int,
                'freed_bytes': int,
                'errors': List[str],
                'logs': List[str]
            }
        """
        self._log("Starting retention policy enforcement for all domains")

        summary = {
            'domains_processed': 0,
            'deleted': 0,
            'freed_bytes': 0,
            'errors': []
        }

        for domain in self.settings.domains:
            try:
                result = self.prune(domain)
                summary['domains_processed'] += 1
                summary['deleted'] += result.deleted_count
                summary['freed_bytes'] += result.freed_bytes
                summary['errors'].extend(result.errors)
            except StorageError as e:
                error_msg = f"Failed to enforce policy for domain {domain.name}: {e}"
                self._log(error_msg)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Domains: {summary['domains_processed']}, "
            f"Deleted: {summary['deleted']}, "
            f"Freed: {summary['freed_bytes'] / 1024 / 1024:.2f} MB, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def prune(self, domain, retention_days: Optional[int] = None) -> PruneResult:
        """
        Delete a domain's artifacts strictly older than the retention window.

        Args:
            domain: DomainSettings
            retention_days: Window in days (defaults to the domain's setting)

        Returns:
            PruneResult with the deleted count and freed bytes

        Raises:
            ValueError: If retention_days is negative
            RunLockError: If a backup run of the domain holds the lock
            StorageError: If the storage root cannot be listed
        """
        days = domain.retention_days if retention_days is None else retention_days
        if days < 0:
            raise ValueError(f"Retention days must be >= 0, got {days}")

        result = PruneResult(domain=domain.name, retention_days=days)
        storage = LocalStorage.for_domain(domain)

        if not storage.exists:
            self._log(f"Storage root {storage.base_path} does not exist, nothing to prune")
            return result

        self._log(f"Enforcing {days} day retention for {domain.name} in {storage.base_path}")

        with storage.lock():
            artifacts = storage.list_artifacts()
            if not artifacts:
                self._log("No artifacts found")
                return result

            # The newest artifact is the last known good one and always survives
            latest = artifacts[-1]
            result.kept_latest = latest.name
            cutoff = self._clock() - timedelta(days=days)

            for artifact in artifacts[:-1]:
                if artifact.timestamp >= cutoff:
                    continue
                try:
                    freed, sidecar_removed = storage.delete_artifact(artifact)
                except StorageError as e:
                    self._log(f"Failed to delete {artifact.name}: {e}")
                    result.errors.append(str(e))
                    continue

                result.deleted_count += 1
                result.freed_bytes += freed
                result.deleted.append(artifact.name)
                self._log(
                    f"Deleted {artifact.name}"
                    + ("" if sidecar_removed else " (no checksum file)")
                )

        self._log(
            f"Pruned {result.deleted_count} artifact(s) from {domain.name}, "
            f"freed {result.freed_bytes / 1024 / 1024:.2f} MB"
        )
        return result

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def enforce_retention_policies(settings) -> Dict[str, Any]:
    """
    Enforce retention policies for all domains.

    This function should be called by the scheduler on a daily basis.

    Returns:
        Summary dict from RetentionManager.enforce_all_policies()
    """
    manager = RetentionManager(settings)
    return manager.enforce_all_policies()
