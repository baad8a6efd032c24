"""
Immutable runtime settings for backup components.

The Flask configuration is read exactly once per invocation and turned into
a ``BackupSettings`` instance. Components receive the settings explicitly and
never consult ``os.environ`` or ``current_app`` themselves.
"""

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

CATEGORY_ORDER = ('system', 'configs', 'databases', 'applications', 'logs')


class ConfigError(ValueError):
    """Raised when the configuration is invalid."""
    pass


@dataclass(frozen=True)
class DomainSettings:
    """One independently backed-up subject (mail platform, general system)."""

    name: str
    prefix: str
    storage_root: Path
    warn_days: int
    critical_days: int
    retention_days: int
    categories: Tuple[str, ...]
    schedule_cron: Optional[str] = None
    collectors: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)

    @property
    def schedule_job_id(self) -> str:
        return f"backup_{self.name}"

    def collector_options(self, category: str) -> Dict[str, Any]:
        return dict(self.collectors.get(category) or {})


@dataclass(frozen=True)
class AlertSettings:
    transport: str = 'log'
    destination: Optional[str] = None
    sender: str = 'hostvault@localhost'
    smtp_host: str = 'localhost'
    smtp_port: int = 25
    smtp_use_tls: bool = False
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None


@dataclass(frozen=True)
class BackupSettings:
    """Settings shared by every component of one invocation."""

    domains: Tuple[DomainSettings, ...]
    collector_timeout: int = 300
    collector_max_workers: int = 1
    compression_level: int = 6
    archive_exclude_patterns: Tuple[str, ...] = ('*.tmp', '*.cache')
    max_archive_bytes: Optional[int] = None
    min_free_bytes_backup: int = 0
    min_free_bytes_health: int = 0
    verify_after_seal: bool = True
    verify_sample_size: int = 5
    prune_after_backup: bool = True
    schedule_source: str = 'none'
    require_root: bool = False
    alert: AlertSettings = field(default_factory=AlertSettings)

    def domain(self, name: str) -> DomainSettings:
        """
        Look up a domain by name or artifact prefix.

        Raises:
            ConfigError: If the domain is not configured
        """
        for domain in self.domains:
            if name in (domain.name, domain.prefix):
                return domain
        raise ConfigError(
            f"Unknown domain: {name}. Configured domains: {[d.name for d in self.domains]}"
        )

    def select(self, name: Optional[str] = None) -> Tuple[DomainSettings, ...]:
        """Return all domains when name is None or 'all', otherwise just the named one."""
        if name is None or name == 'all':
            return self.domains
        return (self.domain(name),)

    @property
    def domain_names(self) -> Tuple[str, ...]:
        return tuple(domain.name for domain in self.domains)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build validated settings from a Flask config (or any mapping).

        Raises:
            ConfigError: If any option is out of range
        """
        domains = tuple(
            _build_domain(name, options)
            for name, options in (config.get('DOMAINS') or {}).items()
        )
        if not domains:
            raise ConfigError("No backup domains configured")

        prefixes = [domain.prefix for domain in domains]
        if len(set(prefixes)) != len(prefixes):
            raise ConfigError(f"Domain prefixes must be unique: {prefixes}")

        timeout = int(config.get('COLLECTOR_TIMEOUT_SECONDS', 300))
        if timeout <= 0:
            raise ConfigError(f"Collector timeout must be positive: {timeout}")

        level = int(config.get('COMPRESSION_LEVEL', 6))
        if not 0 <= level <= 9:
            raise ConfigError(f"Compression level must be between 0 and 9: {level}")

        workers = int(config.get('COLLECTOR_MAX_WORKERS', 1))
        if workers < 1:
            raise ConfigError(f"Collector worker count must be at least 1: {workers}")

        schedule_source = config.get('SCHEDULE_SOURCE', 'none')
        if schedule_source not in ('apscheduler', 'crontab', 'none'):
            raise ConfigError(f"Invalid schedule source: {schedule_source}")

        transport = config.get('ALERT_TRANSPORT', 'log')
        if transport not in ('smtp', 'mail', 'log'):
            raise ConfigError(f"Invalid alert transport: {transport}")

        alert = AlertSettings(
            transport=transport,
            destination=config.get('ALERT_EMAIL'),
            sender=config.get('ALERT_FROM') or 'hostvault@localhost',
            smtp_host=config.get('SMTP_HOST') or 'localhost',
            smtp_port=int(config.get('SMTP_PORT', 25)),
            smtp_use_tls=bool(config.get('SMTP_USE_TLS', False)),
            smtp_username=config.get('SMTP_USERNAME'),
            smtp_password=config.get('SMTP_PASSWORD'),
        )

        max_archive = config.get('MAX_ARCHIVE_BYTES')

        return cls(
            domains=domains,
            collector_timeout=timeout,
            collector_max_workers=workers,
            compression_level=level,
            archive_exclude_patterns=tuple(config.get('ARCHIVE_EXCLUDE_PATTERNS') or ()),
            max_archive_bytes=int(max_archive) if max_archive else None,
            min_free_bytes_backup=int(config.get('MIN_FREE_BYTES_BACKUP', 0)),
            min_free_bytes_health=int(config.get('MIN_FREE_BYTES_HEALTH', 0)),
            verify_after_seal=bool(config.get('VERIFY_AFTER_SEAL', True)),
            verify_sample_size=int(config.get('VERIFY_SAMPLE_SIZE', 5)),
            prune_after_backup=bool(config.get('PRUNE_AFTER_BACKUP', True)),
            schedule_source=schedule_source,
            require_root=bool(config.get('REQUIRE_ROOT', False)),
            alert=alert,
        )


def _build_domain(name: str, options: Mapping[str, Any]) -> DomainSettings:
    try:
        prefix = options['prefix']
        storage_root = options['storage_root']
    except KeyError as e:
        raise ConfigError(f"Domain {name} is missing required option {e}")

    warn_days = int(options.get('warn_days', 2))
    critical_days = int(options.get('critical_days', warn_days))
    if warn_days < 0 or critical_days < warn_days:
        raise ConfigError(
            f"Domain {name}: thresholds must satisfy 0 <= warn ({warn_days}) <= critical ({critical_days})"
        )

    retention_days = int(options.get('retention_days', 30))
    if retention_days < 0:
        raise ConfigError(f"Domain {name}: retention days must be >= 0, got {retention_days}")

    categories = tuple(options.get('categories') or CATEGORY_ORDER)
    unknown = [c for c in categories if c not in CATEGORY_ORDER]
    if unknown:
        raise ConfigError(f"Domain {name}: unknown categories {unknown}. Valid: {list(CATEGORY_ORDER)}")

    collectors = MappingProxyType({
        category: MappingProxyType(dict(opts or {}))
        for category, opts in (options.get('collectors') or {}).items()
    })

    return DomainSettings(
        name=name,
        prefix=prefix,
        storage_root=Path(storage_root),
        warn_days=warn_days,
        critical_days=critical_days,
        retention_days=retention_days,
        categories=categories,
        schedule_cron=options.get('schedule_cron'),
        collectors=collectors,
    )


def get_settings(app=None) -> BackupSettings:
    """
    Return the settings for the given (or current) Flask app, built once per app.
    """
    if app is None:
        from flask import current_app
        app = current_app._get_current_object()

    settings = app.extensions.get('hostvault_settings')
    if settings is None:
        settings = BackupSettings.from_mapping(app.config)
        app.extensions['hostvault_settings'] = settings
    return settings
