"""
Operator commands.

Registered on the Flask app (``flask --app hostvault <command>``) and exposed
as the ``hostvault`` console script, which never starts the scheduler.

Exit codes:
    0  success (including success with collector warnings)
    1  could not back up (preflight, workspace or archive failure)
    2  usage error
    3  integrity failure (checksum mismatch)
    4  unhealthy / stale backups
    5  prune skipped because a backup run holds the domain lock
"""

import json
import os
import shutil
from pathlib import Path

import click
from flask.cli import FlaskGroup, with_appcontext

from hostvault.settings import ConfigError, get_settings
from hostvault.backup.executor import RunStatus, execute_domain_backup
from hostvault.backup.health import HealthStatus, execute_health_check
from hostvault.backup.integrity import IntegrityError, verify_artifact, verify_recent
from hostvault.backup.reporting import domain_statistics, domain_status, format_size, list_recent
from hostvault.backup.retention import RetentionManager
from hostvault.backup.storage import LocalStorage, RunLockError, StorageError, StoragePreflightError

EXIT_OK = 0
EXIT_BACKUP_FAILED = 1
EXIT_INTEGRITY_FAILED = 3
EXIT_UNHEALTHY = 4
EXIT_LOCKED = 5

OPTIONAL_TOOLS = ('mysql', 'mysqldump', 'psql', 'pg_dump', 'docker', 'journalctl', 'mail')

domain_option = click.option(
    '--domain', '-d', default='all', show_default=True,
    help='Domain name or artifact prefix, or "all".'
)
json_option = click.option('--json', 'as_json', is_flag=True, help='Print JSON instead of text.')


def _settings():
    try:
        return get_settings()
    except ConfigError as e:
        raise click.UsageError(f"Invalid configuration: {e}")


def _domains(settings, name):
    try:
        return settings.select(name)
    except ConfigError as e:
        raise click.BadParameter(str(e), param_hint='--domain')


def _require_root(settings):
    if settings.require_root and os.geteuid() != 0:
        click.echo("Error: this command must be run as root", err=True)
        raise click.exceptions.Exit(EXIT_BACKUP_FAILED)


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.command('backup')
@domain_option
@click.option('--prune/--no-prune', default=None,
              help='Prune old artifacts after a successful run (default from configuration).')
@with_appcontext
def backup_command(domain, prune):
    """Run a full backup of one or all domains."""
    settings = _settings()
    _require_root(settings)
    exit_code = EXIT_OK

    for domain_settings in _domains(settings, domain):
        click.echo(f"=== {domain_settings.name} backup ===")
        try:
            report = execute_domain_backup(settings, domain_settings.name, prune=prune)
        except (StoragePreflightError, RunLockError) as e:
            click.echo(f"FAILED: {e}", err=True)
            exit_code = EXIT_BACKUP_FAILED
            continue

        for outcome in report.outcomes:
            click.echo(f"  [{outcome.status.value:>7}] {outcome.category}: {outcome.detail}")

        if report.status == RunStatus.FAILED:
            click.echo(f"FAILED: {report.failure_reason}", err=True)
            if report.staging_path and report.staging_path.exists():
                click.echo(f"Staging workspace kept at {report.staging_path}", err=True)
            exit_code = EXIT_BACKUP_FAILED
            continue

        click.echo(f"Artifact: {report.artifact.path} ({format_size(report.size_bytes)})")
        click.echo(f"SHA-256: {report.checksum or 'not written'}")
        if report.verification is not None:
            click.echo(f"Verification: {report.verification.status.value}")
            if report.verification.failed and exit_code == EXIT_OK:
                exit_code = EXIT_INTEGRITY_FAILED

        if report.status == RunStatus.WARNINGS:
            click.echo(f"Completed with {len(report.warnings)} warning(s)")
        else:
            click.echo("Completed successfully")

        recent = list_recent(domain_settings, 7)
        if recent:
            click.echo("Recent backups:")
            for entry in recent[-5:]:
                click.echo(f"  {entry['name']} ({format_size(entry['size_bytes'])})")

    raise click.exceptions.Exit(exit_code)


@click.command('verify')
@click.argument('artifact', required=False, type=click.Path(exists=True, dir_okay=False, path_type=Path))
@domain_option
@click.option('--all', 'verify_all', is_flag=True, help='Verify every artifact instead of the most recent ones.')
@click.option('--limit', type=click.IntRange(min=1), default=None,
              help='Number of recent artifacts per domain (default from configuration).')
@json_option
@with_appcontext
def verify_command(artifact, domain, verify_all, limit, as_json):
    """Verify an artifact, or the recent artifacts of one or all domains."""
    settings = _settings()
    results = []
    errors = []

    if artifact is not None:
        try:
            results.append(verify_artifact(artifact))
        except IntegrityError as e:
            errors.append(str(e))
    else:
        sample = limit or settings.verify_sample_size
        for domain_settings in _domains(settings, domain):
            storage = LocalStorage.for_domain(domain_settings)
            try:
                if verify_all:
                    artifacts = storage.list_artifacts()
                    results.extend(verify_artifact(a.path) for a in reversed(artifacts))
                else:
                    results.extend(verify_recent(storage, sample))
            except (IntegrityError, StorageError) as e:
                errors.append(f"{domain_settings.name}: {e}")

    failed = [r for r in results if r.failed]

    if as_json:
        _echo_json({'results': [r.to_dict() for r in results], 'errors': errors})
    else:
        for result in results:
            marker = {'verified': 'OK', 'checksum_mismatch': 'FAIL', 'sidecar_missing': 'WARN'}[result.status.value]
            click.echo(f"  [{marker:>4}] {result.message}")
        for error in errors:
            click.echo(f"  [ERR] {error}", err=True)
        click.echo(f"Verified: {len(results) - len(failed)}, Failed: {len(failed)}")

    if failed or errors:
        raise click.exceptions.Exit(EXIT_INTEGRITY_FAILED)


@click.command('prune')
@domain_option
@click.option('--days', type=click.IntRange(min=0), default=None,
              help="Retention window in days (default: each domain's setting).")
@with_appcontext
def prune_command(domain, days):
    """Delete artifacts older than the retention window (the newest one is always kept)."""
    settings = _settings()
    _require_root(settings)
    manager = RetentionManager(settings)
    exit_code = EXIT_OK

    for domain_settings in _domains(settings, domain):
        try:
            result = manager.prune(domain_settings, days)
        except RunLockError as e:
            click.echo(f"{domain_settings.name}: skipped, {e}", err=True)
            exit_code = max(exit_code, EXIT_LOCKED)
            continue
        except StorageError as e:
            click.echo(f"{domain_settings.name}: {e}", err=True)
            exit_code = exit_code or EXIT_BACKUP_FAILED
            continue

        click.echo(
            f"{domain_settings.name}: deleted {result.deleted_count} artifact(s), "
            f"freed {format_size(result.freed_bytes)} (retention {result.retention_days} days)"
        )
        for name in result.deleted:
            click.echo(f"  - {name}")
        for error in result.errors:
            click.echo(f"  ! {error}", err=True)

    raise click.exceptions.Exit(exit_code)


@click.command('status')
@domain_option
@json_option
@with_appcontext
def status_command(domain, as_json):
    """Show the freshness of the latest backup of each domain."""
    settings = _settings()
    statuses = [domain_status(d) for d in _domains(settings, domain)]

    if as_json:
        _echo_json({'domains': statuses})
    else:
        for status in statuses:
            click.echo(f"{status['domain']}: {status['freshness']} - {status['message']}")
            if status['free_bytes'] is not None:
                click.echo(f"  Free space: {format_size(status['free_bytes'])}")

    if any(status['freshness'] != HealthStatus.HEALTHY.value for status in statuses):
        raise click.exceptions.Exit(EXIT_UNHEALTHY)


@click.command('stats')
@domain_option
@json_option
@with_appcontext
def stats_command(domain, as_json):
    """Show artifact statistics per domain."""
    settings = _settings()
    stats = [domain_statistics(d) for d in _domains(settings, domain)]

    if as_json:
        _echo_json({'domains': stats})
        return

    for entry in stats:
        click.echo(f"{entry['domain']} ({entry['storage_root']}):")
        click.echo(f"  Count: {entry['count']}")
        click.echo(f"  Total Size: {format_size(entry['total_size_bytes'])}")
        if entry['latest']:
            latest = entry['latest']
            click.echo(
                f"  Latest: {latest['name']} ({latest['age_days']} days old, "
                f"{format_size(latest['size_bytes'])})"
            )
        if entry['oldest']:
            click.echo(f"  Oldest: {entry['oldest']['name']}")


@click.command('list')
@domain_option
@click.option('--days', type=click.IntRange(min=0), default=7, show_default=True)
@json_option
@with_appcontext
def list_command(domain, days, as_json):
    """List backups created in the last N days."""
    settings = _settings()
    listing = {d.name: list_recent(d, days) for d in _domains(settings, domain)}

    if as_json:
        _echo_json({'days': days, 'domains': listing})
        return

    click.echo(f"Backups from the last {days} days:")
    for name, entries in listing.items():
        click.echo(f"{name}:")
        for entry in entries:
            click.echo(f"  {entry['timestamp'].replace('T', ' ')} - {entry['name']} ({format_size(entry['size_bytes'])})")
        if not entries:
            click.echo("  (none)")


@click.command('health-check')
@domain_option
@json_option
@with_appcontext
def health_check_command(domain, as_json):
    """Assess every domain and send one alert if any is not healthy."""
    settings = _settings()
    _domains(settings, domain)
    report = execute_health_check(settings, domain)

    if as_json:
        _echo_json(report.to_dict())
    else:
        for domain_health in report.domains:
            click.echo(f"{domain_health.domain}: {domain_health.status.value}")
            for reason in domain_health.reasons:
                click.echo(f"  - {reason}")
            for warning in domain_health.warnings:
                click.echo(f"  (warning) {warning}")
        click.echo(f"Overall: {report.overall.value}")
        if report.alert_delivered:
            click.echo("Alert sent")
        elif report.alert_error:
            click.echo(f"Alert delivery failed: {report.alert_error}", err=True)

    if not report.healthy:
        raise click.exceptions.Exit(EXIT_UNHEALTHY)


@click.command('setup')
@with_appcontext
def setup_command():
    """Create storage roots and the history database, and report missing tools."""
    from hostvault.migrations import init_database_schema, missing_tables
    from flask import current_app

    settings = _settings()
    _require_root(settings)
    exit_code = EXIT_OK

    for domain_settings in settings.domains:
        root = domain_settings.storage_root
        try:
            root.mkdir(mode=0o750, parents=True, exist_ok=True)
            root.chmod(0o750)
            click.echo(f"Storage root ready: {root}")
        except OSError as e:
            click.echo(f"Failed to create {root}: {e}", err=True)
            exit_code = EXIT_BACKUP_FAILED

    init_database_schema(current_app)
    missing = missing_tables()
    if missing:
        click.echo(f"History database is missing tables: {', '.join(missing)}", err=True)
        exit_code = EXIT_BACKUP_FAILED
    else:
        click.echo("History database ready")

    if settings.schedule_source == 'crontab' and shutil.which('crontab') is None:
        click.echo("Required tool missing: crontab", err=True)
        exit_code = EXIT_BACKUP_FAILED

    absent = [tool for tool in OPTIONAL_TOOLS if shutil.which(tool) is None]
    if absent:
        click.echo(f"Optional tools not found (their categories will be skipped): {', '.join(absent)}")
    else:
        click.echo("All optional tools available")

    raise click.exceptions.Exit(exit_code)


@click.command('jobs')
@with_appcontext
def jobs_command():
    """List scheduled jobs."""
    from hostvault.scheduler import get_scheduled_jobs

    jobs = get_scheduled_jobs()
    if not jobs:
        click.echo("No scheduled jobs")
        return
    for job in jobs:
        click.echo(f"{job['id']}: next run {job['next_run'] or 'N/A'}")


COMMANDS = (
    backup_command,
    verify_command,
    prune_command,
    status_command,
    stats_command,
    list_command,
    health_check_command,
    setup_command,
    jobs_command,
)


def register_commands(app):
    for command in COMMANDS:
        app.cli.add_command(command)


def _create_cli_app():
    from hostvault import create_app
    return create_app(with_scheduler=False)


main = FlaskGroup(
    name='hostvault',
    help='Server backup lifecycle management.',
    create_app=_create_cli_app,
    add_default_commands=False,
    add_version_option=False,
    load_dotenv=False,
    set_debug_flag=False,
)
