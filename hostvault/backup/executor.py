"""
Backup executor - coordinates one backup run of a domain.

Workflow:
1. Preflight: storage root exists and has enough free space
2. Take the domain's run-lock
3. Create the staging workspace (one subdirectory per category)
4. Run every collector with its own timeout; failures become warnings
5. Refuse to publish an empty workspace
6. Seal the workspace into an artifact + checksum (staging removed)
7. Optionally verify the fresh artifact
8. Release the lock and return the RunReport
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

from .collectors import CollectorOutcome, OutcomeStatus, build_collectors
from .compression import Archiver, CompressionError
from .integrity import IntegrityError, VerificationResult, verify_artifact
from .storage import Artifact, LocalStorage, StorageError, StoragePreflightError
from .workspace import StagingWorkspace, WorkspaceError

logger = logging.getLogger(__name__)


class RunStatus(str, Enum):
    SUCCESS = 'success'
    WARNINGS = 'success_with_warnings'
    FAILED = 'failed'


@dataclass
class RunReport:
    """Structured outcome of one backup run."""

    domain: str
    timestamp: datetime
    outcomes: List[CollectorOutcome] = field(default_factory=list)
    status: RunStatus = RunStatus.FAILED
    artifact: Optional[Artifact] = None
    checksum: Optional[str] = None
    size_bytes: Optional[int] = None
    failure_reason: Optional[str] = None
    verification: Optional[VerificationResult] = None
    staging_path: Optional[Path] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status != RunStatus.FAILED

    @property
    def warnings(self) -> List[CollectorOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.WARNING]

    def to_dict(self) -> dict:
        return {
            'domain': self.domain,
            'timestamp': self.timestamp.isoformat(),
            'status': self.status.value,
            'artifact': str(self.artifact.path) if self.artifact else None,
            'checksum': self.checksum,
            'size_bytes': self.size_bytes,
            'failure_reason': self.failure_reason,
            'verification': self.verification.status.value if self.verification else None,
            'outcomes': [
                {'category': o.category, 'status': o.status.value, 'detail': o.detail,
                 'skipped_items': o.skipped_items}
                for o in self.outcomes
            ],
        }


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a domain.
    """

    def __init__(self, settings, domain, collectors=None, archiver=None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize backup executor.

        Args:
            settings: BackupSettings of this invocation
            domain: DomainSettings to back up
            collectors: Collectors to run (defaults to the domain's configured categories)
            archiver: Archiver to seal with (defaults to one built from settings)
            clock: Source of the run timestamp
        """
        self.settings = settings
        self.domain = domain
        self.storage = LocalStorage.for_domain(domain)
        self.collectors = collectors if collectors is not None else build_collectors(domain)
        self.archiver = archiver or Archiver(
            self.storage,
            compression_level=settings.compression_level,
            exclude_patterns=settings.archive_exclude_patterns,
            max_size_bytes=settings.max_archive_bytes,
        )
        self._clock = clock or datetime.now
        self.workspace = None
        self.logs = []

    @property
    def categories(self) -> List[str]:
        return [collector.category for collector in self.collectors]

    def preflight(self):
        """
        Fatal checks made before anything is collected.

        Raises:
            StoragePreflightError: If the storage root is unusable or too full
        """
        self._log(f"Checking available storage space in {self.storage.base_path}")
        try:
            self.storage.ensure_root()
        except StorageError as e:
            raise StoragePreflightError(str(e))
        self.storage.check_free_space(self.settings.min_free_bytes_backup)

    def execute(self) -> RunReport:
        """
        Run the backup.

        Returns:
            RunReport; status FAILED only when the workspace could not be
            created, ended up empty, or could not be sealed

        Raises:
            StoragePreflightError: If the preflight check fails
            RunLockError: If another run of this domain holds the lock
        """
        self.preflight()

        with self.storage.lock():
            timestamp = self._clock().replace(microsecond=0)
            report = RunReport(domain=self.domain.name, timestamp=timestamp, started_at=timestamp)
            self._log(f"Starting {self.domain.name} backup")

            try:
                self._execute_workflow(report)
            finally:
                report.completed_at = self._clock()
                report.logs = list(self.logs)

        return report

    def _execute_workflow(self, report: RunReport):
        # Step 1: Create staging workspace
        try:
            self.workspace = StagingWorkspace.create(self.storage, report.timestamp, self.categories)
        except WorkspaceError as e:
            self._fail(report, str(e))
            return
        report.staging_path = self.workspace.path
        self._log(f"Staging workspace: {self.workspace.path}")

        # Step 2: Collect every category; collectors never abort the run
        report.outcomes = self._run_collectors()

        # Step 3: Never publish an empty artifact
        if self.workspace.is_empty():
            self._fail(report, "Staging workspace is empty; every category was skipped or failed")
            return

        # Step 4: Seal
        try:
            sealed = self.archiver.seal(self.workspace)
        except CompressionError as e:
            self._fail(report, str(e))
            return

        report.artifact = sealed.artifact
        report.checksum = sealed.checksum
        report.size_bytes = sealed.size_bytes
        self._log(f"Archive created: {sealed.artifact.name} ({sealed.size_bytes / 1024 / 1024:.2f} MB)")
        if sealed.checksum:
            self._log(f"SHA-256: {sealed.checksum}")
        else:
            self._log("Warning: checksum file could not be written")

        # Step 5: Verify the fresh artifact (reported, never fatal)
        if self.settings.verify_after_seal and sealed.checksum:
            try:
                report.verification = verify_artifact(sealed.artifact.path)
                self._log(f"Verification: {report.verification.message}")
            except IntegrityError as e:
                self._log(f"Warning: verification failed to run: {e}")

        report.status = RunStatus.WARNINGS if report.warnings else RunStatus.SUCCESS
        self._log(
            f"Backup completed ({report.status.value}): "
            f"{len(report.warnings)} warning(s) across {len(report.outcomes)} categories"
        )

    def _run_collectors(self) -> List[CollectorOutcome]:
        """
        Run collectors sequentially or with bounded parallelism.

        Outcomes are always returned in collector (category) order, and this
        method returns only after every collector has returned.
        """
        timeout = self.settings.collector_timeout
        workers = max(1, min(self.settings.collector_max_workers, len(self.collectors) or 1))

        if workers == 1:
            return [self._invoke(collector, timeout) for collector in self.collectors]

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix='collector') as pool:
            futures = [pool.submit(self._invoke, collector, timeout) for collector in self.collectors]
            return [future.result() for future in futures]

    def _invoke(self, collector, timeout) -> CollectorOutcome:
        self._log(f"Collecting {collector.category}...")
        try:
            outcome = collector.collect(self.workspace.category_dir(collector.category), timeout)
        except Exception as e:
            # Collectors must not raise; keep the run going if one does anyway
            logger.exception(f"Collector {collector.category} raised")
            outcome = CollectorOutcome(collector.category, OutcomeStatus.WARNING, f"{type(e).__name__}: {e}")

        self._log(f"  {outcome.category}: {outcome.status.value} - {outcome.detail}")
        return outcome

    def _fail(self, report: RunReport, reason: str):
        report.status = RunStatus.FAILED
        report.failure_reason = reason
        self._log(f"Backup failed: {reason}")
        if self.workspace is not None and self.workspace.exists:
            self._log(f"Staging workspace left for inspection: {self.workspace.path}")

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.info(message)


def execute_domain_backup(settings, domain_name: str, prune: Optional[bool] = None) -> RunReport:
    """
    Run a backup of a domain, record it in the run history and optionally prune.

    Args:
        settings: BackupSettings
        domain_name: Domain name or prefix
        prune: Prune old artifacts after a successful run (defaults to settings)

    Returns:
        RunReport of the run

    Raises:
        ConfigError: If the domain is unknown
        StoragePreflightError, RunLockError: If the run could not start
    """
    from hostvault.models import BackupRun
    from .retention import RetentionManager

    domain = settings.domain(domain_name)
    report = BackupExecutor(settings, domain).execute()
    BackupRun.record(report)

    should_prune = settings.prune_after_backup if prune is None else prune
    if should_prune and report.succeeded:
        # The run already succeeded and is recorded; a prune problem must not change that
        try:
            RetentionManager(settings).prune(domain)
        except StorageError as e:
            logger.warning(f"Retention after {domain.name} backup skipped: {e}")

    return report
