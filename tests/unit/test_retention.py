"""
Unit tests for retention enforcement (hostvault/backup/retention.py).

Tests:
- Artifacts older than the window are deleted with their sidecars
- The most recent artifact always survives
- Pruning is idempotent and honors the run-lock
"""

from datetime import datetime

import pytest
from freezegun import freeze_time

from hostvault.backup.retention import RetentionManager, enforce_retention_policies
from hostvault.backup.storage import LocalStorage, RunLockError

NOW = '2024-02-01 03:00:00'


def _names(domain):
    return [a.name for a in LocalStorage.for_domain(domain).list_artifacts()]


class TestPrune:

    @freeze_time(NOW)
    def test_deletes_artifacts_older_than_window(self, backup_settings, system_domain, make_artifact):
        too_old = make_artifact(system_domain, datetime(2023, 12, 1, 4, 0))
        just_old = make_artifact(system_domain, datetime(2024, 1, 2, 2, 59, 59))
        boundary = make_artifact(system_domain, datetime(2024, 1, 2, 3, 0, 0))
        recent = make_artifact(system_domain, datetime(2024, 1, 31, 4, 0))

        result = RetentionManager(backup_settings).prune(system_domain)

        assert result.deleted_count == 2
        assert result.deleted == [too_old.name, just_old.name]
        assert not too_old.checksum_path.exists()
        assert _names(system_domain) == [boundary.name, recent.name]
        assert result.kept_latest == recent.name
        assert result.freed_bytes > 0

    @freeze_time(NOW)
    def test_latest_artifact_survives_any_age(self, backup_settings, system_domain, make_artifact):
        make_artifact(system_domain, datetime(2022, 6, 1, 4, 0))
        latest = make_artifact(system_domain, datetime(2023, 1, 1, 4, 0))

        result = RetentionManager(backup_settings).prune(system_domain)

        assert result.deleted_count == 1
        assert _names(system_domain) == [latest.name]

    @freeze_time(NOW)
    def test_zero_day_window_keeps_only_latest(self, backup_settings, system_domain, make_artifact):
        for day in (29, 30, 31):
            make_artifact(system_domain, datetime(2024, 1, day, 4, 0))

        result = RetentionManager(backup_settings).prune(system_domain, retention_days=0)

        assert result.deleted_count == 2
        assert _names(system_domain) == ['universal_backup_20240131_040000.tar.gz']

    @freeze_time(NOW)
    def test_prune_is_idempotent(self, backup_settings, system_domain, make_artifact):
        make_artifact(system_domain, datetime(2023, 11, 1, 4, 0))
        make_artifact(system_domain, datetime(2024, 1, 30, 4, 0))
        manager = RetentionManager(backup_settings)

        first = manager.prune(system_domain)
        second = manager.prune(system_domain)

        assert first.deleted_count == 1
        assert second.deleted_count == 0
        assert second.freed_bytes == 0

    @freeze_time(NOW)
    def test_missing_sidecar_is_not_an_error(self, backup_settings, system_domain, make_artifact):
        old = make_artifact(system_domain, datetime(2023, 11, 1, 4, 0), sidecar=False)
        make_artifact(system_domain, datetime(2024, 1, 30, 4, 0))

        result = RetentionManager(backup_settings).prune(system_domain)

        assert result.deleted == [old.name]
        assert result.errors == []

    def test_negative_window_rejected(self, backup_settings, system_domain):
        with pytest.raises(ValueError, match='>= 0'):
            RetentionManager(backup_settings).prune(system_domain, retention_days=-1)

    def test_missing_storage_root(self, backup_settings, system_domain):
        result = RetentionManager(backup_settings).prune(system_domain)

        assert result.deleted_count == 0
        assert result.kept_latest is None

    def test_refuses_while_backup_holds_lock(self, backup_settings, system_domain, make_artifact):
        old = make_artifact(system_domain, datetime(2020, 1, 1, 4, 0))
        make_artifact(system_domain, datetime(2020, 1, 2, 4, 0))

        with LocalStorage.for_domain(system_domain).lock():
            with pytest.raises(RunLockError):
                RetentionManager(backup_settings).prune(system_domain)

        assert old.path.exists()

    def test_clock_injection(self, backup_settings, system_domain, make_artifact):
        make_artifact(system_domain, datetime(2024, 1, 1, 4, 0))
        make_artifact(system_domain, datetime(2024, 1, 10, 4, 0))
        make_artifact(system_domain, datetime(2024, 1, 20, 4, 0))

        manager = RetentionManager(backup_settings, clock=lambda: datetime(2024, 1, 15, 4, 0))
        result = manager.prune(system_domain, retention_days=7)

        assert result.deleted == ['universal_backup_20240101_040000.tar.gz']


class TestEnforceAllPolicies:

    @freeze_time(NOW)
    def test_summary_across_domains(self, backup_settings, system_domain, mail_domain, make_artifact):
        make_artifact(system_domain, datetime(2023, 11, 1, 4, 0))
        make_artifact(system_domain, datetime(2024, 1, 30, 4, 0))
        make_artifact(mail_domain, datetime(2023, 10, 1, 2, 0))
        make_artifact(mail_domain, datetime(2023, 10, 2, 2, 0))
        make_artifact(mail_domain, datetime(2024, 1, 31, 2, 0))

        summary = enforce_retention_policies(backup_settings)

        assert summary['domains_processed'] == 2
        assert summary['deleted'] == 3
        assert summary['errors'] == []
        assert any('Retention enforcement complete' in line for line in summary['logs'])

    def test_locked_domain_is_reported_and_others_continue(self, backup_settings, system_domain,
                                                          mail_domain, make_artifact):
        make_artifact(system_domain, datetime(2020, 1, 1, 4, 0))
        make_artifact(system_domain, datetime(2020, 1, 2, 4, 0))
        make_artifact(mail_domain, datetime(2020, 1, 1, 2, 0))
        make_artifact(mail_domain, datetime(2020, 1, 2, 2, 0))

        with LocalStorage.for_domain(system_domain).lock():
            summary = RetentionManager(backup_settings).enforce_all_policies()

        assert summary['domains_processed'] == 1
        assert summary['deleted'] == 1
        assert len(summary['errors']) == 1
        assert 'system' in summary['errors'][0]
