"""
Health aggregation across backup domains.

For each domain the aggregator combines:
- freshness of the most recent artifact against the domain's thresholds
- checksum verification of a sample of recent artifacts
- free space on the storage root
- presence of the domain's recurring backup schedule

into one of healthy / degraded / critical, with every contributing reason
recorded. The overall status is the worst domain status, and an unhealthy
check delivers exactly one alert.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional

from .integrity import IntegrityError, VerificationResult, VerificationStatus, verify_recent
from .storage import LocalStorage, StorageError

logger = logging.getLogger(__name__)


class HealthStatus(str, Enum):
    """Health status levels, from best to worst."""

    HEALTHY = 'healthy'
    DEGRADED = 'degraded'
    CRITICAL = 'critical'

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @classmethod
    def worst(cls, statuses: Iterable['HealthStatus']) -> 'HealthStatus':
        return max(statuses, key=lambda s: s.rank, default=cls.HEALTHY)


_RANKS = {
    HealthStatus.HEALTHY: 0,
    HealthStatus.DEGRADED: 1,
    HealthStatus.CRITICAL: 2,
}


def classify_freshness(age_days: int, warn_days: int, critical_days: int) -> HealthStatus:
    """
    Classify an artifact age against a domain's thresholds.

    age <= warn is healthy, warn < age <= critical is degraded, anything
    older is critical.
    """
    if age_days <= warn_days:
        return HealthStatus.HEALTHY
    if age_days <= critical_days:
        return HealthStatus.DEGRADED
    return HealthStatus.CRITICAL


@dataclass
class DomainHealth:
    domain: str
    status: HealthStatus = HealthStatus.HEALTHY
    latest_artifact: Optional[str] = None
    age_days: Optional[int] = None
    free_bytes: Optional[int] = None
    scheduled: Optional[bool] = None
    verification: List[VerificationResult] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def escalate(self, status: HealthStatus, reason: str):
        """Raise the status to at least `status` and record why."""
        self.status = HealthStatus.worst([self.status, status])
        self.reasons.append(reason)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'domain': self.domain,
            'status': self.status.value,
            'latest_artifact': self.latest_artifact,
            'age_days': self.age_days,
            'free_bytes': self.free_bytes,
            'scheduled': self.scheduled,
            'verification': [result.to_dict() for result in self.verification],
            'reasons': list(self.reasons),
            'warnings': list(self.warnings),
        }


@dataclass
class HealthReport:
    checked_at: datetime
    domains: List[DomainHealth] = field(default_factory=list)
    alert_delivered: bool = False
    alert_error: Optional[str] = None

    @property
    def overall(self) -> HealthStatus:
        return HealthStatus.worst(d.status for d in self.domains)

    @property
    def healthy(self) -> bool:
        return self.overall == HealthStatus.HEALTHY

    @property
    def reasons(self) -> List[str]:
        """Every reason from every domain, prefixed with the domain name."""
        return [f"{d.domain}: {reason}" for d in self.domains for reason in d.reasons]

    def domain(self, name: str) -> Optional[DomainHealth]:
        for domain_health in self.domains:
            if domain_health.domain == name:
                return domain_health
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'checked_at': self.checked_at.isoformat(),
            'overall': self.overall.value,
            'domains': [d.to_dict() for d in self.domains],
            'reasons': self.reasons,
            'alert_delivered': self.alert_delivered,
            'alert_error': self.alert_error,
        }


class HealthAggregator:
    """
    Assesses the health of every configured domain.
    """

    def __init__(self, settings, schedule_probe=None, alert_transport=None,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize health aggregator.

        Args:
            settings: BackupSettings
            schedule_probe: Object with is_scheduled(domain) -> Optional[bool];
                None disables the schedule check
            alert_transport: Object with send(subject, body); None disables alerting
            clock: Source of "now" for age calculations
        """
        self.settings = settings
        self.schedule_probe = schedule_probe
        self.alert_transport = alert_transport
        self._clock = clock or datetime.now

    def assess(self, domains=None) -> HealthReport:
        """
        Assess the given domains (all configured domains by default).

        Never raises for domain-level problems; they become reasons.
        """
        now = self._clock()
        report = HealthReport(checked_at=now)
        for domain in (domains if domains is not None else self.settings.domains):
            report.domains.append(self._assess_domain(domain, now))
        return report

    def _assess_domain(self, domain, now: datetime) -> DomainHealth:
        health = DomainHealth(domain=domain.name)
        storage = LocalStorage.for_domain(domain)

        if not storage.exists:
            health.escalate(HealthStatus.CRITICAL, f"Storage root {storage.base_path} does not exist")
        else:
            self._check_freshness(domain, storage, health, now)
            self._check_free_space(storage, health)

        self._check_schedule(domain, health)
        return health

    def _check_freshness(self, domain, storage, health: DomainHealth, now: datetime):
        try:
            latest = storage.latest_artifact()
        except StorageError as e:
            health.escalate(HealthStatus.CRITICAL, f"Cannot list backups: {e}")
            return

        if latest is None:
            health.escalate(HealthStatus.CRITICAL, "No backup found")
            return

        health.latest_artifact = latest.name
        health.age_days = latest.age_days(now)

        freshness = classify_freshness(health.age_days, domain.warn_days, domain.critical_days)
        if freshness != HealthStatus.HEALTHY:
            health.escalate(
                freshness,
                f"Latest backup {latest.name} is {health.age_days} days old "
                f"(warn after {domain.warn_days}, critical after {domain.critical_days})"
            )

        self._check_integrity(storage, latest, health)

    def _check_integrity(self, storage, latest, health: DomainHealth):
        if self.settings.verify_sample_size <= 0:
            return

        try:
            health.verification = verify_recent(storage, self.settings.verify_sample_size)
        except IntegrityError as e:
            health.escalate(HealthStatus.DEGRADED, f"Verification could not complete: {e}")
            return

        for result in health.verification:
            if result.status == VerificationStatus.SIDECAR_MISSING:
                health.warnings.append(f"{result.path.name}: no checksum file")
            elif result.failed:
                if result.path == latest.path:
                    health.escalate(HealthStatus.CRITICAL, f"Checksum mismatch on latest backup {result.path.name}")
                else:
                    health.escalate(HealthStatus.DEGRADED, f"Checksum mismatch on {result.path.name}")

    def _check_free_space(self, storage, health: DomainHealth):
        try:
            health.free_bytes = storage.free_bytes()
        except StorageError as e:
            health.escalate(HealthStatus.DEGRADED, str(e))
            return

        minimum = self.settings.min_free_bytes_health
        if health.free_bytes < minimum:
            health.escalate(
                HealthStatus.DEGRADED,
                f"Low disk space: {health.free_bytes / 1024 ** 3:.1f}GB free, "
                f"{minimum / 1024 ** 3:.1f}GB required"
            )

    def _check_schedule(self, domain, health: DomainHealth):
        if self.schedule_probe is None:
            return

        health.scheduled = self.schedule_probe.is_scheduled(domain)
        if health.scheduled is None:
            health.warnings.append("Schedule presence could not be determined")
        elif not health.scheduled:
            health.escalate(HealthStatus.DEGRADED, f"No recurring backup schedule found ({domain.schedule_job_id})")

    def run_health_check(self, domains=None) -> HealthReport:
        """
        Assess all domains and deliver one alert if any is not healthy.

        Returns:
            HealthReport with alert delivery recorded
        """
        from hostvault.alerts import AlertError, format_health_alert

        report = self.assess(domains)

        for domain_health in report.domains:
            logger.info(f"{domain_health.domain}: {domain_health.status.value}")
            for reason in domain_health.reasons:
                logger.warning(f"{domain_health.domain}: {reason}")

        if report.healthy or self.alert_transport is None:
            return report

        subject, body = format_health_alert(report)
        try:
            self.alert_transport.send(subject, body)
            report.alert_delivered = True
        except AlertError as e:
            report.alert_error = str(e)
            logger.error(f"Failed to deliver health alert: {e}")

        return report


def execute_health_check(settings, domain_name: Optional[str] = None) -> HealthReport:
    """
    Run a health check with the configured probe and alert transport, and
    record it in the health check history.
    """
    from hostvault.alerts import create_alert_transport
    from hostvault.models import HealthCheckRecord
    from hostvault.scheduler import get_schedule_probe

    aggregator = HealthAggregator(
        settings,
        schedule_probe=get_schedule_probe(settings),
        alert_transport=create_alert_transport(settings.alert),
    )
    report = aggregator.run_health_check(settings.select(domain_name))
    HealthCheckRecord.record(report)
    return report
