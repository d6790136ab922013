"""
Database dumps, command snapshots and system source collection.

Supports:
- DatabaseDumper: postgres, mariadb/mysql, mongodb, cassandra/scylla, redis, sqlite
- CommandSnapshotter: captures stdout of configured commands (crontab, docker ps, ...)
- collect_sources: expands project, additional paths, systemd units and presets
  into scanner roots and command snapshots

A failed database dump aborts the backup. A failed command snapshot is
recorded and the backup continues.
"""

import getpass
import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from zesty_backup.errors import CycleTimeout, DumpError
from zesty_backup.settings import DatabaseSettings, Settings
from zesty_backup.utils.cancellation import command_timeout
from zesty_backup.utils.commands import CommandResult, CommandRunner, run_command
from .compression import ExtraEntry
from .scanner import SourceRoot


logger = logging.getLogger(__name__)

DUMP_EXTENSIONS = {
    'postgres': 'sql',
    'postgresql': 'sql',
    'mariadb': 'sql',
    'mysql': 'sql',
    'mongodb': 'archive',
    'cassandra': 'cql',
    'scylla': 'cql',
    'redis': 'rdb',
    'sqlite': 'sqlite',
}

DUMP_TIMEOUT = 6 * 3600
SNAPSHOT_TIMEOUT = 300


@dataclass(frozen=True)
class CommandSnapshot:
    argv: Tuple[str, ...]
    arcname: str

    @property
    def label(self) -> str:
        return ' '.join(self.argv)


@dataclass
class SnapshotReport:
    entries: List[ExtraEntry] = field(default_factory=list)
    failures: Dict[str, str] = field(default_factory=dict)


class DatabaseDumper:
    """Runs the native dump tool for a configured database."""

    def __init__(self, runner: CommandRunner = run_command,
                 cancellation_check: Optional[Callable[[], None]] = None):
        self.runner = runner
        self.cancellation_check = cancellation_check

    def dump_arcname(self, db: DatabaseSettings) -> str:
        name = os.path.basename(db.database) if db.type == 'sqlite' else db.database
        return f"database/{name}.{DUMP_EXTENSIONS[db.type]}"

    def build_command(self, db: DatabaseSettings, dest_path: str) -> Tuple[List[str], Dict[str, str], bool]:
        """
        Build the dump command.

        Returns:
            Tuple of (argv, extra environment, whether stdout is the dump)
        """
        host, port, user, password = db.host, str(db.port), db.username, db.password or ''

        if db.type in ('postgres', 'postgresql'):
            argv = ['pg_dump', '-h', host, '-p', port, '-U', user, '-d', db.database, '-F', 'plain']
            return argv, {'PGPASSWORD': password}, True

        if db.type in ('mariadb', 'mysql'):
            argv = ['mysqldump', f'-h{host}', f'-P{port}', f'-u{user}', db.database]
            return argv, {'MYSQL_PWD': password}, True

        if db.type == 'mongodb':
            argv = [
                'mongodump', f'--host={host}:{port}', f'--username={user}',
                f'--password={password}', f'--db={db.database}', '--archive',
            ]
            return argv, {}, True

        if db.type in ('cassandra', 'scylla'):
            argv = ['cqlsh', host, port, '-u', user, '-p', password, '-e', f'DESCRIBE KEYSPACE {db.database};']
            return argv, {}, True

        if db.type == 'redis':
            argv = ['redis-cli', '-h', host, '-p', port, '--rdb', dest_path]
            return argv, {'REDISCLI_AUTH': password}, False

        raise DumpError(f"Unsupported database type: {db.type}")

    def dump(self, db: DatabaseSettings, dest_dir: str) -> ExtraEntry:
        """
        Dump a database into dest_dir.

        Returns:
            ExtraEntry pointing at the dump file

        Raises:
            DumpError: If the dump tool fails or the database file is missing
            CycleTimeout: If the cycle deadline runs out during the dump
        """
        arcname = self.dump_arcname(db)
        dest_path = os.path.join(dest_dir, os.path.basename(arcname))
        logger.info(f"Dumping {db.type} database {db.database}")

        if db.type == 'sqlite':
            if not os.path.isfile(db.database):
                raise DumpError(f"SQLite database file not found: {db.database}")
            try:
                shutil.copy2(db.database, dest_path)
            except OSError as e:
                raise DumpError(f"Failed to copy SQLite database: {e}") from e
            return ExtraEntry(arcname=arcname, path=dest_path)

        argv, env, stdout_is_dump = self.build_command(db, dest_path)
        timeout = command_timeout(DUMP_TIMEOUT, self.cancellation_check)
        try:
            result = self.runner(argv, env=env, timeout=timeout,
                                 stdout_path=dest_path if stdout_is_dump else None)
        except OSError as e:
            raise DumpError(f"Failed to write database dump: {e}") from e

        _raise_for_deadline(result, timeout, DUMP_TIMEOUT, f"Database dump ({argv[0]})")
        if not result.ok:
            raise DumpError(f"Database dump failed ({argv[0]} exit {result.returncode}): {result.error_text()}")
        if not os.path.exists(dest_path):
            raise DumpError(f"{argv[0]} reported success but wrote no dump file")

        return ExtraEntry(arcname=arcname, path=dest_path)


class CommandSnapshotter:
    """Captures command output into archive entries."""

    def __init__(self, runner: CommandRunner = run_command,
                 cancellation_check: Optional[Callable[[], None]] = None):
        self.runner = runner
        self.cancellation_check = cancellation_check

    def capture(self, snapshot: CommandSnapshot) -> bytes:
        """
        Run a snapshot command.

        Raises:
            DumpError: If the command fails
            CycleTimeout: If the cycle deadline runs out first
        """
        timeout = command_timeout(SNAPSHOT_TIMEOUT, self.cancellation_check)
        result = self.runner(list(snapshot.argv), timeout=timeout)
        _raise_for_deadline(result, timeout, SNAPSHOT_TIMEOUT, snapshot.label)
        if not result.ok:
            raise DumpError(f"Command failed: {snapshot.label} - {result.error_text()}")
        return result.stdout

    def capture_all(self, snapshots: Sequence[CommandSnapshot]) -> SnapshotReport:
        report = SnapshotReport()
        for snapshot in snapshots:
            try:
                data = self.capture(snapshot)
            except DumpError as e:
                logger.warning(str(e))
                report.failures[snapshot.label] = str(e)
                continue
            report.entries.append(ExtraEntry(arcname=snapshot.arcname, data=data))
            logger.info(f"Captured command output: {snapshot.arcname}")
        return report


def collect_sources(settings: Settings, etc_root: str = '/etc', home: Optional[str] = None,
                    current_user: Optional[str] = None) -> Tuple[List[SourceRoot], List[CommandSnapshot]]:
    """
    Expand backup and system settings into scanner roots and command snapshots.

    Layout inside the archive:
        project/<name>/...           the project tree (required)
        system/<name>                additional paths
        systemd/services/<unit>      systemd services
        systemd/timers/<unit>        systemd timers
        system/nginx/...             nginx preset
        system/crontab-<user>.txt    crontab preset
        user-configs/<name>          user config preset
        etc/<name>                   /etc files and directories
        commands/<output_file>       command outputs
    """
    backup = settings.backup
    system = settings.system
    presets = system.presets
    etc = Path(etc_root)

    project = backup.project_path
    roots = [SourceRoot(project, f"project/{project.resolve().name or 'root'}", required=True)]
    for path in backup.additional_paths:
        roots.append(SourceRoot(path, f"system/{path.name or 'root'}"))

    units = etc / 'systemd' / 'system'
    for service in system.systemd_services:
        roots.append(SourceRoot(units / service, f"systemd/services/{service}"))
    for timer in system.systemd_timers:
        roots.append(SourceRoot(units / timer, f"systemd/timers/{timer}"))

    nginx = etc / 'nginx'
    if presets.nginx_enabled:
        roots.append(SourceRoot(nginx / 'nginx.conf', 'system/nginx/nginx.conf'))
        roots.append(SourceRoot(nginx / 'sites-available', 'system/nginx/sites-available'))
        roots.append(SourceRoot(nginx / 'sites-enabled', 'system/nginx/sites-enabled'))
    for site in presets.nginx_sites:
        roots.append(SourceRoot(nginx / 'sites-available' / site, f"system/nginx/sites-available/{site}"))
        roots.append(SourceRoot(nginx / 'sites-enabled' / site, f"system/nginx/sites-enabled/{site}"))

    if presets.user_configs:
        home_dir = Path(presets.user_configs_home or home or os.path.expanduser('~'))
        for name in presets.user_configs:
            roots.append(SourceRoot(home_dir / name, f"user-configs/{name}"))

    for name in presets.etc_files + presets.etc_dirs:
        roots.append(SourceRoot(etc / name, f"etc/{name}"))

    snapshots = []
    if presets.crontab_enabled:
        current = current_user or _current_user()
        user = presets.crontab_user or current
        argv = ('crontab', '-l') if user == current else ('crontab', '-u', user, '-l')
        snapshots.append(CommandSnapshot(argv, f"system/crontab-{user}.txt"))

    for output in system.command_outputs:
        if output.enabled:
            snapshots.append(CommandSnapshot((output.command, *output.args), f"commands/{output.output_file}"))

    return _dedupe(roots), snapshots


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return 'root'


def _dedupe(roots: List[SourceRoot]) -> List[SourceRoot]:
    seen = set()
    unique = []
    for root in roots:
        if root.arcname in seen:
            continue
        seen.add(root.arcname)
        unique.append(root)
    return unique


def _raise_for_deadline(result: CommandResult, timeout: float, limit: float, label: str):
    # A timeout shorter than the command's own limit came from the cycle deadline
    if result.timed_out and timeout < limit:
        raise CycleTimeout(f"{label} killed when the cycle ran out of time")
