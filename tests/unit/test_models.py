"""
Unit tests for run and health check history models (hostvault/models.py).
"""

from datetime import datetime
from pathlib import Path

from hostvault.backup.collectors import CollectorOutcome, OutcomeStatus
from hostvault.backup.executor import RunReport, RunStatus
from hostvault.backup.health import DomainHealth, HealthReport, HealthStatus
from hostvault.backup.storage import Artifact
from hostvault.models import BackupRun, CollectorRecord, HealthCheckRecord


def _report(**kwargs):
    ts = datetime(2024, 1, 15, 4, 0, 0)
    defaults = dict(
        domain='system',
        timestamp=ts,
        started_at=ts,
        completed_at=datetime(2024, 1, 15, 4, 3, 0),
        outcomes=[
            CollectorOutcome('configs', OutcomeStatus.OK, 'collected 3 item(s)', duration_seconds=1.5),
            CollectorOutcome('databases', OutcomeStatus.WARNING, 'mysql unreachable'),
            CollectorOutcome('logs', OutcomeStatus.SKIPPED, 'nothing to collect', skipped_items=2),
        ],
        status=RunStatus.WARNINGS,
        artifact=Artifact('system', Path('/opt/backups/universal_backup_20240115_040000.tar.gz'), ts),
        checksum='a' * 64,
        size_bytes=2048,
        logs=['[2024-01-15 04:00:00 UTC] Starting system backup'],
    )
    defaults.update(kwargs)
    return RunReport(**defaults)


class TestBackupRun:

    def test_record_report(self, db):
        run = BackupRun.record(_report())

        stored = db.session.get(BackupRun, run.id)
        assert stored.status == 'success_with_warnings'
        assert stored.artifact_path == '/opt/backups/universal_backup_20240115_040000.tar.gz'
        assert stored.file_size_bytes == 2048
        assert [c.category for c in stored.collectors] == ['configs', 'databases', 'logs']
        assert stored.collectors[2].skipped_items == 2

    def test_failed_report(self, db):
        run = BackupRun.record(_report(
            status=RunStatus.FAILED, artifact=None, checksum=None, size_bytes=None,
            failure_reason='Staging workspace is empty',
        ))

        assert run.artifact_path is None
        assert run.error_message == 'Staging workspace is empty'

    def test_to_dict(self, db):
        run = BackupRun.record(_report())

        data = run.to_dict()
        assert data['domain'] == 'system'
        assert data['run_timestamp'] == '2024-01-15T04:00:00'
        assert data['collectors'][1]['status'] == 'warning'
        assert 'logs' not in data
        assert 'Starting system backup' in run.to_dict(include_logs=True)['logs']

    def test_collectors_deleted_with_run(self, db):
        run = BackupRun.record(_report())

        db.session.delete(run)
        db.session.commit()

        assert CollectorRecord.query.count() == 0


class TestHealthCheckRecord:

    def test_record_report(self, db):
        health = DomainHealth(domain='system')
        health.escalate(HealthStatus.DEGRADED, 'Low disk space')
        report = HealthReport(checked_at=datetime(2024, 2, 1, 6, 0), domains=[health],
                              alert_delivered=True)

        record = HealthCheckRecord.record(report)

        data = record.to_dict()
        assert data['overall_status'] == 'degraded'
        assert data['reasons'] == ['system: Low disk space']
        assert data['alert_delivered'] is True
