"""
Collectors for backup categories.

Each collector captures one category of data into its subdirectory of the
staging workspace:
- SystemInfoCollector: host, hardware, network and package information
- ConfigCollector: configuration files and directory mirrors
- DatabaseCollector: MySQL/MariaDB and PostgreSQL dumps, SQLite copies
- ApplicationCollector: Docker metadata and volumes, application directories
- LogCollector: log directories and the systemd journal

Collectors never raise. Every failure, including running past the timeout,
is reported as a ``warning`` outcome; unavailable tools yield ``skipped``.
"""

import logging
import os
import shutil
import stat
import subprocess
import time
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from hostvault.settings import CATEGORY_ORDER

logger = logging.getLogger(__name__)

COPY_CHUNK_SIZE = 1024 * 1024
DOCKER_CLEANUP_TIMEOUT = 30


class OutcomeStatus(str, Enum):
    OK = 'ok'
    WARNING = 'warning'
    SKIPPED = 'skipped'


@dataclass(frozen=True)
class CollectorOutcome:
    category: str
    status: OutcomeStatus
    detail: str
    skipped_items: int = 0
    duration_seconds: float = 0.0


class CollectorTimeout(Exception):
    """Raised inside a collector when its deadline has passed."""
    pass


class CommandError(Exception):
    """Raised when an external tool fails."""
    pass


class Deadline:
    """Absolute deadline shared by every step of one collector call."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic):
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def check(self):
        if self.expired:
            raise CollectorTimeout(f"timed out after {self.seconds}s")


class CommandRunner:
    """Runs external tools bounded by a collector's deadline."""

    def which(self, tool: str) -> Optional[str]:
        return shutil.which(tool)

    def run(self, argv: Sequence[str], deadline: Deadline, stdout_path: Optional[Path] = None) -> str:
        """
        Run a command to completion or until the deadline.

        Args:
            argv: Command and arguments
            deadline: Deadline of the calling collector
            stdout_path: If given, stdout is streamed into this file (partial
                output stays in place on failure or timeout)

        Returns:
            Captured stdout as text, or '' when written to stdout_path

        Raises:
            CollectorTimeout: If the deadline passes first
            CommandError: If the command cannot be started or exits non-zero
        """
        deadline.check()
        argv = [str(arg) for arg in argv]

        try:
            if stdout_path is not None:
                with open(stdout_path, 'wb') as out:
                    proc = subprocess.run(
                        argv, stdout=out, stderr=subprocess.PIPE, timeout=deadline.remaining()
                    )
                stdout = b''
            else:
                proc = subprocess.run(argv, capture_output=True, timeout=deadline.remaining())
                stdout = proc.stdout
        except subprocess.TimeoutExpired:
            raise CollectorTimeout(f"{argv[0]} timed out")
        except OSError as e:
            raise CommandError(f"Failed to run {argv[0]}: {e}")

        if proc.returncode != 0:
            stderr = (proc.stderr or b'').decode(errors='replace').strip()
            raise CommandError(
                f"{' '.join(argv[:2])} exited with status {proc.returncode}"
                + (f": {stderr[-300:]}" if stderr else "")
            )

        return stdout.decode(errors='replace')


class CollectionNotes:
    """Accumulates what a collector did, failed to do, and skipped."""

    def __init__(self):
        self.collected: List[str] = []
        self.problems: List[str] = []
        self.skipped: List[str] = []
        self.skipped_items = 0

    def done(self, item: str):
        self.collected.append(item)

    def problem(self, message: str):
        logger.warning(message)
        self.problems.append(message)

    def skip(self, reason: str, count: int = 0):
        self.skipped.append(reason)
        self.skipped_items += count

    def outcome(self, category: str, duration: float) -> CollectorOutcome:
        skip_note = f"; skipped: {'; '.join(self.skipped)}" if self.skipped else ""

        if self.problems:
            status = OutcomeStatus.WARNING
            detail = '; '.join(self.problems)
            if self.collected:
                detail += f" ({len(self.collected)} item(s) collected)"
            detail += skip_note
        elif self.collected:
            status = OutcomeStatus.OK
            detail = f"collected {len(self.collected)} item(s){skip_note}"
        else:
            status = OutcomeStatus.SKIPPED
            detail = '; '.join(self.skipped) if self.skipped else "nothing to collect"

        return CollectorOutcome(
            category=category,
            status=status,
            detail=detail,
            skipped_items=self.skipped_items,
            duration_seconds=round(duration, 3),
        )


@dataclass
class CollectionContext:
    staging_dir: Path
    deadline: Deadline
    notes: CollectionNotes
    protected: Tuple[Path, ...] = field(default_factory=tuple)

    def is_protected(self, path: Path) -> bool:
        """Paths inside the storage root are never collected."""
        try:
            resolved = Path(path).resolve()
        except OSError:
            return False
        return any(resolved == p or p in resolved.parents for p in self.protected)


def _should_exclude(path: Path, exclude_patterns: Sequence[str]) -> bool:
    """
    Check if a path should be excluded based on exclude patterns.

    Patterns match the full path, the file name, or (for patterns containing
    a slash) a trailing path segment such as ``systemd/system``.
    """
    if not exclude_patterns:
        return False

    path_str = str(path)
    path_name = path.name

    for pattern in exclude_patterns:
        if fnmatch(path_str, pattern) or fnmatch(path_name, pattern):
            return True
        if '/' in pattern and path_str.endswith('/' + pattern.strip('/')):
            return True
        if pattern.startswith('**/') and fnmatch(path_name, pattern[3:]):
            return True

    return False


def copy_with_deadline(src, dst, deadline: Deadline):
    """
    Copy a file and its metadata, checking the deadline between chunks.

    A copy cut short by the deadline is removed so no truncated file is archived.

    Raises:
        CollectorTimeout: If the deadline passes before the copy completes
    """
    deadline.check()
    if stat.S_ISFIFO(os.stat(src).st_mode):
        raise shutil.SpecialFileError(f"{src} is a named pipe")
    try:
        with open(src, 'rb') as fsrc, open(dst, 'wb') as fdst:
            while True:
                chunk = fsrc.read(COPY_CHUNK_SIZE)
                if not chunk:
                    break
                fdst.write(chunk)
                deadline.check()
    except CollectorTimeout:
        Path(dst).unlink(missing_ok=True)
        raise
    shutil.copystat(src, dst)
    return dst


def mirror_tree(source: Path, dest: Path, exclude_patterns: Sequence[str], ctx: CollectionContext) -> int:
    """
    Mirror a directory tree into the staging area, honoring excludes and the deadline.

    Returns:
        Number of entries that could not be copied

    Raises:
        CollectorTimeout: If the deadline passes mid-copy (copied files stay in place)
    """
    def ignore_patterns(directory, names):
        ctx.deadline.check()
        ignored = []
        for name in names:
            file_path = Path(directory) / name
            if _should_exclude(file_path, exclude_patterns):
                ignored.append(name)
            elif os.path.isdir(file_path) and ctx.is_protected(file_path):
                ignored.append(name)
        return ignored

    def copy_function(src, dst):
        return copy_with_deadline(src, dst, ctx.deadline)

    try:
        shutil.copytree(
            source, dest,
            symlinks=True,
            ignore=ignore_patterns,
            copy_function=copy_function,
            ignore_dangling_symlinks=True,
            dirs_exist_ok=True,
        )
    except shutil.Error as e:
        return len(e.args[0])
    return 0


class Collector:
    """
    Base class for category collectors.

    Subclasses implement ``_collect(ctx)`` and record their progress on
    ``ctx.notes``; ``collect()`` turns that into a CollectorOutcome.
    """

    category: str = None

    def __init__(self, options: Optional[Dict[str, Any]] = None, runner: Optional[CommandRunner] = None,
                 protected_paths: Sequence = (), clock: Callable[[], float] = time.monotonic):
        self.options = dict(options or {})
        self.runner = runner or CommandRunner()
        self.protected_paths = tuple(Path(p).resolve() for p in protected_paths)
        self._clock = clock

    def collect(self, staging_dir, timeout: float) -> CollectorOutcome:
        """
        Capture this category into staging_dir within timeout seconds.

        Never raises; failures and timeouts become ``warning`` outcomes.
        """
        started = self._clock()
        staging_dir = Path(staging_dir)
        ctx = CollectionContext(
            staging_dir=staging_dir,
            deadline=Deadline(timeout, clock=self._clock),
            notes=CollectionNotes(),
            protected=(staging_dir.resolve().parent,) + self.protected_paths,
        )

        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
            self._collect(ctx)
        except CollectorTimeout:
            ctx.notes.problem(f"timed out after {timeout}s")
        except Exception as e:
            logger.exception(f"Collector {self.category} failed")
            ctx.notes.problem(f"{type(e).__name__}: {e}")

        return ctx.notes.outcome(self.category, self._clock() - started)

    def _collect(self, ctx: CollectionContext):
        raise NotImplementedError

    # Shared steps

    def _run_to_file(self, argv: Sequence[str], dest: Path, ctx: CollectionContext, label: str = None):
        label = label or dest.name
        tool = argv[0]
        if not self.runner.which(tool):
            ctx.notes.skip(f"{tool} not installed")
            return
        try:
            self.runner.run(argv, ctx.deadline, stdout_path=dest)
            ctx.notes.done(label)
        except CommandError as e:
            ctx.notes.problem(f"Failed to capture {label}: {e}")

    def _copy_file(self, source: Path, dest_dir: Path, ctx: CollectionContext):
        ctx.deadline.check()
        try:
            dest_dir.mkdir(parents=True, exist_ok=True)
            copy_with_deadline(source, dest_dir / source.name, ctx.deadline)
            ctx.notes.done(str(source))
        except OSError as e:
            ctx.notes.problem(f"Failed to copy {source}: {e}")

    def _mirror_trees(self, trees: Sequence[Dict[str, Any]], ctx: CollectionContext):
        for tree in trees:
            source = Path(tree['source'])
            dest = ctx.staging_dir / tree.get('dest', source.name)

            if not source.is_dir():
                ctx.notes.skip(f"{source} not present")
                continue

            logger.info(f"Mirroring {source} (this may take a while)...")
            failed = mirror_tree(source, dest, tree.get('exclude', []), ctx)
            if failed:
                ctx.notes.problem(f"{failed} entries under {source} could not be copied")
            else:
                ctx.notes.done(str(source))


class SystemInfoCollector(Collector):

    category = 'system'

    DEFAULT_COMMANDS = (
        ('system_info.txt', ['uname', '-a']),
        ('os_release.txt', ['cat', '/etc/os-release']),
        ('cpu_info.txt', ['lscpu']),
        ('memory_info.txt', ['free', '-h']),
        ('disk_usage.txt', ['df', '-h']),
        ('mount_points.txt', ['mount']),
        ('network_config.txt', ['ip', 'addr', 'show']),
        ('routing_table.txt', ['ip', 'route', 'show']),
        ('hosts.txt', ['cat', '/etc/hosts']),
    )

    PACKAGE_MANAGERS = (
        ['dpkg', '-l'],
        ['rpm', '-qa'],
    )

    def _collect(self, ctx):
        commands = self.options.get('commands') or self.DEFAULT_COMMANDS
        for filename, argv in commands:
            self._run_to_file(argv, ctx.staging_dir / filename, ctx)

        for argv in self.PACKAGE_MANAGERS:
            if self.runner.which(argv[0]):
                self._run_to_file(argv, ctx.staging_dir / 'installed_packages.txt', ctx)
                break
        else:
            ctx.notes.skip("no supported package manager")


class ConfigCollector(Collector):

    category = 'configs'

    DEFAULT_FILES = (
        '/etc/fstab', '/etc/hostname', '/etc/resolv.conf',
        '/etc/ssh/sshd_config', '/etc/ssh/ssh_config', '/etc/crontab',
        '/etc/passwd', '/etc/group', '/etc/shadow', '/etc/gshadow', '/etc/sudoers',
        '/etc/environment', '/etc/profile', '/etc/bash.bashrc',
        '/etc/hosts.allow', '/etc/hosts.deny',
        '/etc/iptables/rules.v4', '/etc/iptables/rules.v6',
        '/etc/ufw/user.rules', '/etc/ufw/user6.rules',
    )

    DEFAULT_TREES = (
        {'source': '/etc', 'dest': 'etc',
         'exclude': ['*.log', '*.tmp', 'cache', '.cache', 'tmp', 'systemd/system']},
    )

    def _collect(self, ctx):
        for name in self.options.get('files', self.DEFAULT_FILES):
            source = Path(name)
            if not source.is_file():
                continue
            # Keep the original location: /etc/ssh/sshd_config -> configs/etc/ssh/
            dest_dir = ctx.staging_dir / str(source.parent).lstrip('/')
            self._copy_file(source, dest_dir, ctx)

        self._mirror_trees(self.options.get('trees', self.DEFAULT_TREES), ctx)


class DatabaseCollector(Collector):

    category = 'databases'

    MYSQL_SYSTEM_SCHEMAS = ('information_schema', 'performance_schema', 'mysql', 'sys')
    DEFAULT_SQLITE_ROOTS = ('/var/lib', '/opt', '/home')
    DEFAULT_SQLITE_PATTERNS = ('*.db', '*.sqlite', '*.sqlite3')
    DEFAULT_MAX_SQLITE = 50

    def _collect(self, ctx):
        mysql = self._engine_options('mysql')
        if mysql is not None:
            self._dump_mysql(mysql, ctx)

        postgres = self._engine_options('postgres')
        if postgres is not None:
            self._dump_postgres(postgres, ctx)

        roots = self.options.get('sqlite_roots', self.DEFAULT_SQLITE_ROOTS)
        if roots:
            self._copy_sqlite(roots, ctx)

    def _engine_options(self, engine: str) -> Optional[Dict[str, Any]]:
        value = self.options.get(engine, True)
        if value is False or value is None:
            return None
        return dict(value) if isinstance(value, dict) else {}

    def _list(self, argv, ctx) -> List[str]:
        output = self.runner.run(argv, ctx.deadline)
        return [line.strip() for line in output.splitlines() if line.strip()]

    def _dump_mysql(self, opts, ctx):
        prefix = list(opts.get('exec_prefix', []))
        client_args = list(opts.get('client_args', []))
        tool = prefix[0] if prefix else 'mysql'
        if not self.runner.which(tool):
            ctx.notes.skip(f"{tool} not installed (MySQL/MariaDB)")
            return

        logger.info("Backing up MySQL/MariaDB databases...")
        try:
            names = self._list(prefix + ['mysql', *client_args, '-N', '-e', 'SHOW DATABASES;'], ctx)
        except CommandError as e:
            ctx.notes.problem(f"Failed to list MySQL databases: {e}")
            return

        excluded = set(self.MYSQL_SYSTEM_SCHEMAS) | set(opts.get('exclude', []))
        dump_dir = ctx.staging_dir / 'mysql'
        dump_dir.mkdir(exist_ok=True)

        for name in names:
            if name in excluded:
                continue
            logger.info(f"Backing up database: {name}")
            self._run_to_file(
                prefix + ['mysqldump', *client_args, '--single-transaction', '--routines', '--triggers', name],
                dump_dir / f"{name}.sql", ctx, label=f"mysql:{name}",
            )

    def _dump_postgres(self, opts, ctx):
        prefix = list(opts.get('exec_prefix', []))
        client_args = list(opts.get('client_args', []))
        tool = prefix[0] if prefix else 'psql'
        if not self.runner.which(tool):
            ctx.notes.skip(f"{tool} not installed (PostgreSQL)")
            return

        logger.info("Backing up PostgreSQL databases...")
        try:
            names = self._list(
                prefix + ['psql', *client_args, '-At', '-c',
                          'SELECT datname FROM pg_database WHERE datistemplate = false;'],
                ctx,
            )
        except CommandError as e:
            ctx.notes.problem(f"Failed to list PostgreSQL databases: {e}")
            return

        dump_dir = ctx.staging_dir / 'postgresql'
        dump_dir.mkdir(exist_ok=True)

        for name in names:
            if name in opts.get('exclude', []):
                continue
            logger.info(f"Backing up PostgreSQL database: {name}")
            self._run_to_file(
                prefix + ['pg_dump', *client_args, name],
                dump_dir / f"{name}.sql", ctx, label=f"postgresql:{name}",
            )

    def discover_sqlite(self, roots, ctx) -> Tuple[List[Path], int]:
        """
        Walk roots for SQLite files, stopping copies at the configured cap.

        Returns:
            Tuple of (files within the cap, number of further matches skipped)
        """
        patterns = self.options.get('sqlite_patterns', self.DEFAULT_SQLITE_PATTERNS)
        exclude_dirs = self.options.get('sqlite_exclude_dirs', [])
        limit = int(self.options.get('max_sqlite', self.DEFAULT_MAX_SQLITE))

        found: List[Path] = []
        overflow = 0

        for root in roots:
            if not os.path.isdir(root):
                continue
            for dirpath, dirnames, filenames in os.walk(root):
                ctx.deadline.check()
                dirnames[:] = sorted(
                    d for d in dirnames
                    if not _should_exclude(Path(dirpath) / d, exclude_dirs)
                    and not ctx.is_protected(Path(dirpath) / d)
                )
                for filename in sorted(filenames):
                    if not any(fnmatch(filename, p) for p in patterns):
                        continue
                    path = Path(dirpath) / filename
                    if not path.is_file():
                        continue
                    if len(found) < limit:
                        found.append(path)
                    else:
                        overflow += 1

        return found, overflow

    def _copy_sqlite(self, roots, ctx):
        logger.info("Searching for SQLite databases...")
        found, overflow = self.discover_sqlite(roots, ctx)
        if not found:
            ctx.notes.skip("no SQLite databases found")
            return

        dest_dir = ctx.staging_dir / 'sqlite'
        dest_dir.mkdir(exist_ok=True)

        for path in found:
            # Flatten the source path so equal file names don't collide
            dest = dest_dir / str(path).lstrip('/').replace('/', '__')
            try:
                copy_with_deadline(path, dest, ctx.deadline)
                ctx.notes.done(str(path))
            except OSError as e:
                ctx.notes.problem(f"Failed to backup SQLite database {path}: {e}")

        if overflow:
            ctx.notes.skip(f"{overflow} more SQLite databases beyond cap", overflow)


class ApplicationCollector(Collector):

    category = 'applications'

    DEFAULT_MAX_VOLUMES = 10

    DEFAULT_TREES = (
        {'source': '/etc/apache2', 'dest': 'apache2'},
        {'source': '/etc/nginx', 'dest': 'nginx'},
        {'source': '/etc/ssl', 'dest': 'ssl'},
        {'source': '/etc/letsencrypt', 'dest': 'letsencrypt'},
        {'source': '/opt', 'dest': 'opt',
         'exclude': ['mailcow-dockerized', 'backups', 'mailcow-backups', '*.log', '*.tmp']},
    )

    def _collect(self, ctx):
        docker = self.options.get('docker', True)
        if docker is not False and docker is not None:
            self._backup_docker(dict(docker) if isinstance(docker, dict) else {}, ctx)

        self._mirror_trees(self.options.get('trees', self.DEFAULT_TREES), ctx)

    def select_volumes(self, names: Sequence[str], opts: Dict[str, Any]) -> Tuple[List[str], int]:
        """
        Filter volume names and apply the cap.

        Returns:
            Tuple of (volumes to save, number skipped beyond the cap)
        """
        include = opts.get('volume_include', [])
        exclude = opts.get('volume_exclude', ['mailcow'])
        limit = int(opts.get('max_volumes', self.DEFAULT_MAX_VOLUMES))

        eligible = [
            name for name in names
            if (not include or any(token in name for token in include))
            and not any(token in name for token in exclude)
        ]
        return eligible[:limit], max(0, len(eligible) - limit)

    def _backup_docker(self, opts, ctx):
        if not self.runner.which('docker'):
            ctx.notes.skip("docker not installed")
            return

        logger.info("Backing up Docker information...")
        docker_dir = ctx.staging_dir / 'docker'
        docker_dir.mkdir(exist_ok=True)

        self._run_to_file(
            ['docker', 'ps', '-a', '--format', 'table {{.Names}}\t{{.Image}}\t{{.Status}}'],
            docker_dir / 'containers.txt', ctx,
        )
        self._run_to_file(['docker', 'images'], docker_dir / 'images.txt', ctx)

        try:
            output = self.runner.run(['docker', 'volume', 'ls', '--format', '{{.Name}}'], ctx.deadline)
        except CommandError as e:
            ctx.notes.problem(f"Failed to list Docker volumes: {e}")
            return

        names = [line.strip() for line in output.splitlines() if line.strip()]
        volumes, overflow = self.select_volumes(names, opts)

        volumes_dir = (docker_dir / 'volumes').resolve()
        volumes_dir.mkdir(exist_ok=True)
        image = opts.get('image', 'alpine')
        # Unique per run: the staging workspace name carries prefix and timestamp
        run_name = ctx.staging_dir.parent.name

        for volume in volumes:
            logger.info(f"Backing up Docker volume: {volume}")
            container = f"hostvault-{run_name}-{volume}"
            try:
                self.runner.run(
                    ['docker', 'run', '--rm', '--name', container,
                     '-v', f"{volume}:/data:ro",
                     '-v', f"{volumes_dir}:/backup",
                     image, 'tar', 'czf', f"/backup/{volume}.tar.gz", '-C', '/data', '.'],
                    ctx.deadline,
                )
                ctx.notes.done(f"volume:{volume}")
            except CommandError as e:
                ctx.notes.problem(f"Failed to backup Docker volume {volume}: {e}")
            except CollectorTimeout:
                self._stop_volume_export(container, volumes_dir / f"{volume}.tar.gz")
                raise

        if overflow:
            ctx.notes.skip(f"{overflow} more Docker volumes beyond cap", overflow)

    def _stop_volume_export(self, container: str, partial: Path):
        """
        Kill an export container whose docker client was stopped by the deadline.

        The container keeps writing into the staging workspace otherwise; its
        half-written tarball is removed afterwards.
        """
        logger.warning(f"Removing timed out volume export container {container}")
        try:
            self.runner.run(['docker', 'rm', '-f', container],
                            Deadline(DOCKER_CLEANUP_TIMEOUT, clock=self._clock))
        except (CommandError, CollectorTimeout) as e:
            logger.error(f"Failed to remove container {container}: {e}")
        partial.unlink(missing_ok=True)


class LogCollector(Collector):

    category = 'logs'

    DEFAULT_TREES = (
        {'source': '/var/log', 'dest': 'var_log',
         'exclude': ['*.gz', '*.old', '*.1', '*.log.*']},
    )

    def _collect(self, ctx):
        self._mirror_trees(self.options.get('trees', self.DEFAULT_TREES), ctx)

        since = self.options.get('journal_since', '7 days ago')
        if since:
            if not self.runner.which('journalctl'):
                ctx.notes.skip("journalctl not installed")
                return
            logger.info("Backing up journal logs...")
            self._run_to_file(['journalctl', f'--since={since}'], ctx.staging_dir / 'journal_recent.log', ctx)
            self._run_to_file(['journalctl', '--list-boots'], ctx.staging_dir / 'journal_boots.txt', ctx)


COLLECTOR_TYPES = {
    'system': SystemInfoCollector,
    'configs': ConfigCollector,
    'databases': DatabaseCollector,
    'applications': ApplicationCollector,
    'logs': LogCollector,
}


def build_collectors(domain, runner: Optional[CommandRunner] = None) -> List[Collector]:
    """
    Create the collectors of a domain in the fixed category order.

    Args:
        domain: DomainSettings
        runner: CommandRunner shared by all collectors (defaults to a new one)

    Returns:
        Collectors ordered system, configs, databases, applications, logs
    """
    runner = runner or CommandRunner()
    return [
        COLLECTOR_TYPES[category](
            domain.collector_options(category),
            runner=runner,
            protected_paths=(domain.storage_root,),
        )
        for category in CATEGORY_ORDER
        if category in domain.categories
    ]
