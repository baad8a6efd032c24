import json
from datetime import datetime
from hostvault import db


class BackupRun(db.Model):
    """One backup run of a domain (its RunReport)"""
    __tablename__ = 'backup_runs'

    id = db.Column(db.Integer, primary_key=True)
    domain = db.Column(db.String(100), nullable=False, index=True)
    status = db.Column(db.String(30), nullable=False)  # success, success_with_warnings, failed
    run_timestamp = db.Column(db.DateTime, nullable=False)  # Timestamp embedded in the artifact name
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    artifact_path = db.Column(db.String(500))
    checksum = db.Column(db.String(64))
    file_size_bytes = db.Column(db.BigInteger)
    verification = db.Column(db.String(30))  # verified, checksum_mismatch, sidecar_missing
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    collectors = db.relationship(
        'CollectorRecord', back_populates='run', cascade='all, delete-orphan',
        order_by='CollectorRecord.position'
    )

    @classmethod
    def from_report(cls, report) -> 'BackupRun':
        run = cls(
            domain=report.domain,
            status=report.status.value,
            run_timestamp=report.timestamp,
            started_at=report.started_at or report.timestamp,
            completed_at=report.completed_at,
            artifact_path=str(report.artifact.path) if report.artifact else None,
            checksum=report.checksum,
            file_size_bytes=report.size_bytes,
            verification=report.verification.status.value if report.verification else None,
            error_message=report.failure_reason,
            logs='\n'.join(report.logs),
        )
        for position, outcome in enumerate(report.outcomes):
            run.collectors.append(CollectorRecord(
                position=position,
                category=outcome.category,
                status=outcome.status.value,
                detail=outcome.detail,
                skipped_items=outcome.skipped_items,
                duration_seconds=outcome.duration_seconds,
            ))
        return run

    @classmethod
    def record(cls, report) -> 'BackupRun':
        run = cls.from_report(report)
        db.session.add(run)
        db.session.commit()
        return run

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'domain': self.domain,
            'status': self.status,
            'run_timestamp': self.run_timestamp.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'artifact_path': self.artifact_path,
            'checksum': self.checksum,
            'file_size_bytes': self.file_size_bytes,
            'verification': self.verification,
            'error_message': self.error_message,
            'collectors': [record.to_dict() for record in self.collectors],
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<BackupRun domain={self.domain} status={self.status}>'


class CollectorRecord(db.Model):
    """Outcome of one collector within a backup run"""
    __tablename__ = 'collector_records'

    id = db.Column(db.Integer, primary_key=True)
    run_id = db.Column(db.Integer, db.ForeignKey('backup_runs.id'), nullable=False)
    position = db.Column(db.Integer, nullable=False)  # Order within the run
    category = db.Column(db.String(30), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # ok, warning, skipped
    detail = db.Column(db.Text)
    skipped_items = db.Column(db.Integer, default=0, nullable=False)
    duration_seconds = db.Column(db.Float)

    # Relationship
    run = db.relationship('BackupRun', back_populates='collectors')

    def to_dict(self):
        return {
            'category': self.category,
            'status': self.status,
            'detail': self.detail,
            'skipped_items': self.skipped_items,
            'duration_seconds': self.duration_seconds,
        }

    def __repr__(self):
        return f'<CollectorRecord run_id={self.run_id} category={self.category} status={self.status}>'


class HealthCheckRecord(db.Model):
    """Result of one health check invocation"""
    __tablename__ = 'health_checks'

    id = db.Column(db.Integer, primary_key=True)
    checked_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    overall_status = db.Column(db.String(20), nullable=False)  # healthy, degraded, critical
    reasons = db.Column(db.Text)  # JSON list
    details = db.Column(db.Text)  # JSON report
    alert_delivered = db.Column(db.Boolean, default=False, nullable=False)
    alert_error = db.Column(db.Text)

    @classmethod
    def record(cls, report) -> 'HealthCheckRecord':
        record = cls(
            checked_at=report.checked_at,
            overall_status=report.overall.value,
            reasons=json.dumps(report.reasons),
            details=json.dumps(report.to_dict()),
            alert_delivered=report.alert_delivered,
            alert_error=report.alert_error,
        )
        db.session.add(record)
        db.session.commit()
        return record

    def to_dict(self):
        return {
            'id': self.id,
            'checked_at': self.checked_at.isoformat(),
            'overall_status': self.overall_status,
            'reasons': json.loads(self.reasons) if self.reasons else [],
            'alert_delivered': self.alert_delivered,
            'alert_error': self.alert_error,
        }

    def __repr__(self):
        return f'<HealthCheckRecord status={self.overall_status} alert={self.alert_delivered}>'
