import os
import tempfile


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_bool(name, default):
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return value.lower() in ('1', 'true', 'yes', 'on')


def _mysql_client_args(user_var, password_var):
    """Client credentials for mysql/mysqldump, taken from the environment."""
    args = [f"-u{os.environ.get(user_var) or 'root'}"]
    password = os.environ.get(password_var)
    if password:
        args.append(f'-p{password}')
    return args


GB = 1024 * 1024 * 1024

# Local data directory used by development and testing
BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
DEV_DATA_DIR = os.path.join(BASE_DIR, 'data')


class Config:
    """Base configuration"""

    # Database (run history, health check history, APScheduler job store)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////var/lib/hostvault/hostvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/var/log/hostvault'

    # Backup runs must be started by root unless explicitly disabled
    REQUIRE_ROOT = _env_bool('REQUIRE_ROOT', True)

    # Storage thresholds
    MIN_FREE_BYTES_BACKUP = _env_int('MIN_FREE_GB_BACKUP', 5) * GB
    MIN_FREE_BYTES_HEALTH = _env_int('MIN_FREE_GB_HEALTH', 10) * GB
    MAX_ARCHIVE_BYTES = _env_int('MAX_ARCHIVE_GB', 2) * GB  # advisory only

    # Collection
    COLLECTOR_TIMEOUT_SECONDS = _env_int('COLLECTOR_TIMEOUT_SECONDS', 300)
    COLLECTOR_MAX_WORKERS = _env_int('COLLECTOR_MAX_WORKERS', 1)

    # Archiving
    COMPRESSION_LEVEL = _env_int('COMPRESSION_LEVEL', 6)
    ARCHIVE_EXCLUDE_PATTERNS = ['*.tmp', '*.cache']
    VERIFY_AFTER_SEAL = _env_bool('VERIFY_AFTER_SEAL', True)

    # Retention
    RETENTION_DAYS = _env_int('RETENTION_DAYS', 30)
    PRUNE_AFTER_BACKUP = _env_bool('PRUNE_AFTER_BACKUP', True)

    # Health
    VERIFY_SAMPLE_SIZE = _env_int('VERIFY_SAMPLE_SIZE', 5)
    SCHEDULE_SOURCE = os.environ.get('SCHEDULE_SOURCE') or 'apscheduler'  # 'apscheduler', 'crontab' or 'none'

    # Alerts
    ALERT_TRANSPORT = os.environ.get('ALERT_TRANSPORT') or 'smtp'  # 'smtp', 'mail' or 'log'
    ALERT_EMAIL = os.environ.get('ALERT_EMAIL') or 'admin@localhost'
    ALERT_FROM = os.environ.get('ALERT_FROM') or 'hostvault@localhost'
    SMTP_HOST = os.environ.get('SMTP_HOST') or 'localhost'
    SMTP_PORT = _env_int('SMTP_PORT', 25)
    SMTP_USE_TLS = _env_bool('SMTP_USE_TLS', False)
    SMTP_USERNAME = os.environ.get('SMTP_USERNAME')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD')

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '0 5 * * *'
    HEALTH_CHECK_CRON = os.environ.get('HEALTH_CHECK_CRON') or '0 6 * * *'

    # Backup domains
    DOMAINS = {
        'mail-platform': {
            'prefix': 'mailcow',
            'storage_root': os.environ.get('MAIL_BACKUP_DIR') or '/opt/mailcow-backups',
            'warn_days': 2,
            'critical_days': 5,
            'retention_days': _env_int('MAIL_RETENTION_DAYS', RETENTION_DAYS),
            'schedule_cron': '0 2 * * *',
            'categories': ['configs', 'databases', 'applications'],
            'collectors': {
                'configs': {
                    'files': [
                        '/opt/mailcow-dockerized/mailcow.conf',
                        '/opt/mailcow-dockerized/docker-compose.yml',
                        '/opt/mailcow-dockerized/docker-compose.override.yml',
                    ],
                    'trees': [
                        {'source': '/opt/mailcow-dockerized/data/conf', 'dest': 'mailcow_conf',
                         'exclude': ['*.log', '*.tmp']},
                    ],
                },
                'databases': {
                    'mysql': {
                        'exec_prefix': ['docker', 'exec', 'mailcowdockerized-mysql-mailcow-1'],
                        # DBROOT from mailcow.conf; mysql refuses anonymous access
                        'client_args': _mysql_client_args('MAILCOW_DB_USER', 'MAILCOW_DBROOT'),
                    },
                    'postgres': False,
                    'sqlite_roots': [],
                },
                'applications': {
                    'docker': {
                        'volume_include': ['mailcow'],
                        'volume_exclude': [],
                        'max_volumes': 15,
                    },
                    'trees': [],
                },
            },
        },
        'system': {
            'prefix': 'universal',
            'storage_root': os.environ.get('SYSTEM_BACKUP_DIR') or '/opt/backups',
            'warn_days': 7,
            'critical_days': 14,
            'retention_days': _env_int('SYSTEM_RETENTION_DAYS', RETENTION_DAYS),
            'schedule_cron': '0 4 * * 0',
            'categories': ['system', 'configs', 'databases', 'applications', 'logs'],
            'collectors': {},
        },
    }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False
    REQUIRE_ROOT = False

    DATA_DIR = DEV_DATA_DIR
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "hostvault.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    MIN_FREE_BYTES_BACKUP = 0
    MIN_FREE_BYTES_HEALTH = 0
    ALERT_TRANSPORT = 'log'
    SCHEDULE_SOURCE = 'none'

    DOMAINS = {
        name: dict(domain, storage_root=os.path.join(DEV_DATA_DIR, 'backups', domain['prefix']))
        for name, domain in Config.DOMAINS.items()
    }


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = os.path.join(tempfile.gettempdir(), 'hostvault-test-logs')
    PRUNE_AFTER_BACKUP = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
