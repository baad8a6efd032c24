"""
Shared pytest fixtures for Hostvault tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Backup settings with temporary storage roots and collector sources
- Artifact factory for populating storage roots
- Fake command runner for collectors that call external tools
"""

from datetime import datetime
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from hostvault import create_app, db as _db
from hostvault.settings import BackupSettings, get_settings
from hostvault.backup.integrity import compute_checksum, write_checksum_file
from hostvault.backup.collectors import CollectorTimeout, CommandError, CommandRunner
from hostvault.backup.storage import LocalStorage


def build_test_config(storage_dir: Path, source_dir: Path) -> dict:
    """Configuration values pointing every domain at temporary directories."""
    return {
        'DOMAINS': {
            'mail-platform': {
                'prefix': 'mailcow',
                'storage_root': str(storage_dir / 'mailcow-backups'),
                'warn_days': 2,
                'critical_days': 5,
                'retention_days': 30,
                'schedule_cron': '0 2 * * *',
                'categories': ['configs'],
                'collectors': {
                    'configs': {
                        'files': [str(source_dir / 'mailcow' / 'mailcow.conf')],
                        'trees': [
                            {'source': str(source_dir / 'mailcow' / 'conf'), 'dest': 'mailcow_conf',
                             'exclude': ['*.log']},
                        ],
                    },
                },
            },
            'system': {
                'prefix': 'universal',
                'storage_root': str(storage_dir / 'backups'),
                'warn_days': 7,
                'critical_days': 14,
                'retention_days': 30,
                'schedule_cron': '0 4 * * 0',
                'categories': ['configs', 'logs'],
                'collectors': {
                    'configs': {
                        'files': [str(source_dir / 'etc' / 'hosts')],
                        'trees': [],
                    },
                    'logs': {
                        'trees': [
                            {'source': str(source_dir / 'log'), 'dest': 'var_log', 'exclude': ['*.gz']},
                        ],
                        'journal_since': None,
                    },
                },
            },
        },
        'COLLECTOR_TIMEOUT_SECONDS': 30,
        'COLLECTOR_MAX_WORKERS': 1,
        'COMPRESSION_LEVEL': 6,
        'ARCHIVE_EXCLUDE_PATTERNS': ['*.tmp', '*.cache'],
        'MIN_FREE_BYTES_BACKUP': 0,
        'MIN_FREE_BYTES_HEALTH': 0,
        'VERIFY_AFTER_SEAL': True,
        'VERIFY_SAMPLE_SIZE': 5,
        'PRUNE_AFTER_BACKUP': False,
        'SCHEDULE_SOURCE': 'none',
        'REQUIRE_ROOT': False,
        'ALERT_TRANSPORT': 'log',
        'ALERT_EMAIL': 'admin@example.com',
    }


@pytest.fixture
def source_tree(tmp_path):
    """
    Create source data for the test domains' collectors.

    Creates:
    - mailcow/mailcow.conf and mailcow/conf/{nginx.conf, debug.log}
    - etc/hosts
    - log/{syslog, syslog.2.gz}
    """
    root = tmp_path / 'source'

    mailcow = root / 'mailcow'
    (mailcow / 'conf').mkdir(parents=True)
    (mailcow / 'mailcow.conf').write_text('MAILCOW_HOSTNAME=mail.example.com\n')
    (mailcow / 'conf' / 'nginx.conf').write_text('server {}\n')
    (mailcow / 'conf' / 'debug.log').write_text('noise\n')

    (root / 'etc').mkdir()
    (root / 'etc' / 'hosts').write_text('127.0.0.1 localhost\n')

    (root / 'log').mkdir()
    (root / 'log' / 'syslog').write_text('Jan 15 02:00:00 host cron[1]: ok\n')
    (root / 'log' / 'syslog.2.gz').write_bytes(b'\x1f\x8b old')

    return root


@pytest.fixture
def test_config(tmp_path, source_tree):
    return build_test_config(tmp_path / 'storage', source_tree)


@pytest.fixture
def backup_settings(test_config):
    """BackupSettings built without a Flask app."""
    return BackupSettings.from_mapping(test_config)


@pytest.fixture
def system_domain(backup_settings):
    return backup_settings.domain('system')


@pytest.fixture
def mail_domain(backup_settings):
    return backup_settings.domain('mail-platform')


@pytest.fixture(scope='function')
def app(test_config):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and temporary storage roots.
    """
    app = create_app('testing', with_scheduler=False)
    app.config.update(test_config)
    app.extensions.pop('hostvault_settings', None)

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def app_settings(app):
    return get_settings(app)


@pytest.fixture
def make_artifact():
    """
    Factory creating a sealed-looking artifact in a domain's storage root.

    Usage: make_artifact(domain, datetime(2024, 1, 15, 2, 0), content=b'...', sidecar=True)
    """
    def _make(domain, timestamp: datetime, content: bytes = b'archive bytes', sidecar: bool = True):
        storage = LocalStorage.for_domain(domain)
        storage.ensure_root()
        path = storage.artifact_path(timestamp)
        path.write_bytes(content)
        if sidecar:
            write_checksum_file(path, compute_checksum(path))
        return storage.parse_artifact(path)

    return _make


class FakeRunner(CommandRunner):
    """
    CommandRunner that never starts processes.

    Args:
        tools: Names reported as installed
        outputs: Map of command prefix tuple -> stdout text, or an exception to raise
    """

    def __init__(self, tools=(), outputs=None):
        self.tools = set(tools)
        self.outputs = dict(outputs or {})
        self.calls = []

    def which(self, tool):
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def run(self, argv, deadline, stdout_path=None):
        argv = [str(arg) for arg in argv]
        self.calls.append(argv)
        deadline.check()

        result = ''
        for prefix, value in self.outputs.items():
            if tuple(argv[:len(prefix)]) == tuple(prefix):
                result = value
                break

        if isinstance(result, (CommandError, CollectorTimeout)):
            raise result

        if stdout_path is not None:
            Path(stdout_path).write_text(result or f"output of {' '.join(argv)}\n")
            return ''
        return result


@pytest.fixture
def fake_runner():
    return FakeRunner


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import hostvault.scheduler as scheduler_module

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None

    with patch('hostvault.scheduler.BackgroundScheduler') as mock_sched, \
            patch('hostvault.scheduler.SQLAlchemyJobStore'):
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        # Mock scheduler methods
        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []
        scheduler_instance.get_job.return_value = None

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None
