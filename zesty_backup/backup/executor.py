"""
Backup executors - orchestrate the backup, upload and clean workflows.

Backup workflow:
1. Create CycleRun record (status: running)
2. Pick the base archive (latest local entry) or promote to full
3. Collect sources, dump the database, capture command snapshots
4. Scan and stream changed files into a new archive
5. Write the manifest sidecar
6. Apply local retention
7. Update CycleRun (status: success/failed)

Upload workflow:
1. Find local archives without upload confirmation
2. Upload each through the gateway with a bounded worker pool
3. Upload its manifest sidecar, then record the confirmation locally
4. Optionally apply retention to the remote listing
"""

import io
import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from zesty_backup import db
from zesty_backup.errors import (
    ArchiveBuildError,
    BackupError,
    ConfigError,
    CycleTimeout,
    ProviderError,
    RestoreError,
)
from zesty_backup.models import CycleRun
from zesty_backup.settings import Settings
from zesty_backup.utils.commands import CommandRunner, run_command
from .compression import ArchiveBuilder, BuildResult
from .extras import CommandSnapshotter, DatabaseDumper, collect_sources
from .manifest import BackupKind, ManifestEntry, ManifestStore, in_flight, is_archive_name, manifest_name
from .retention import LocalRetentionManager, RemoteRetentionManager, RetentionPolicy, RetentionReport
from .restore import RestoreEngine, RestoreReport
from .scanner import ChangeScanner, IncrementalMarker


logger = logging.getLogger(__name__)


def needs_full_backup(store: ManifestStore, full_interval_days: int, now: datetime) -> bool:
    """
    Whether the next scheduled backup should be a full one.

    True when there is no full backup yet, or the newest one is older than
    full_interval_days. An interval of 0 disables periodic fulls.
    """
    latest_full = store.latest_full()
    if latest_full is None:
        return True
    if full_interval_days <= 0:
        return False
    return latest_full.created_at < now - timedelta(days=full_interval_days)


class RunRecorder:
    """
    Keeps a per-run log and the CycleRun history record.

    Requires an active Flask application context.
    """

    operation = 'run'

    def __init__(self):
        self.run_record: Optional[CycleRun] = None
        self.logs: List[str] = []
        self._log_flush_counter = 0

    def _start_record(self):
        self.run_record = CycleRun(
            operation=self.operation,
            status='running',
            started_at=datetime.utcnow(),
        )
        db.session.add(self.run_record)
        db.session.commit()

    def _finish_record(self, status: str, error: Optional[BaseException] = None):
        if self.run_record is None:
            return
        self.run_record.status = status
        self.run_record.completed_at = datetime.utcnow()
        if error is not None:
            self.run_record.error_kind = type(error).__name__
            self.run_record.error_message = str(error)
        self.run_record.logs = '\n'.join(self.logs)
        db.session.commit()

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)

        # Flush logs every 5 entries
        self._log_flush_counter += 1
        if self._log_flush_counter >= 5:
            self._flush_logs_to_db()

    def _flush_logs_to_db(self):
        """Flush accumulated logs to database for real-time visibility."""
        if self.run_record is not None:
            self.run_record.logs = '\n'.join(self.logs)
            db.session.commit()
        self._log_flush_counter = 0


@dataclass
class BackupOutcome:
    entry: ManifestEntry
    path: Path
    build: BuildResult
    scan_warnings: List[str] = field(default_factory=list)
    snapshot_failures: Dict[str, str] = field(default_factory=dict)
    retention: Optional[RetentionReport] = None


class BackupExecutor(RunRecorder):
    """
    Creates one archive (full or incremental) and applies local retention.
    """

    operation = 'backup'

    def __init__(self, settings: Settings, full: bool = False,
                 cancellation_check: Optional[Callable[[], None]] = None,
                 runner: CommandRunner = run_command, etc_root: str = '/etc', home: Optional[str] = None,
                 temp_root: Optional[str] = None, now: Callable[[], datetime] = datetime.now,
                 apply_retention: bool = True):
        """
        Initialize backup executor.

        Args:
            settings: Loaded settings
            full: Force a full backup
            cancellation_check: Deadline or shutdown check passed to dumps, snapshots and the builder
            runner: Command runner for dumps and snapshots
            etc_root: Root for systemd units and /etc presets
            home: Home directory for user config presets
            temp_root: Parent directory for the temporary work directory
            now: Clock, for tests
            apply_retention: Run local retention after a successful build
        """
        super().__init__()
        self.settings = settings
        self.full = full
        self.cancellation_check = cancellation_check
        self.runner = runner
        self.etc_root = etc_root
        self.home = home
        self.temp_root = temp_root
        self.now = now
        self.apply_retention = apply_retention
        self.store = ManifestStore(settings.backup.local_backup_dir)
        self.temp_dir = None

    def execute(self) -> BackupOutcome:
        """
        Run the backup.

        Returns:
            BackupOutcome describing the new archive

        Raises:
            BackupError: Recorded in the run history, then re-raised
        """
        self._start_record()
        self._log(f"Starting {'full' if self.full else 'incremental'} backup")

        try:
            outcome = self._execute_workflow()
            self.run_record.archive_name = outcome.entry.name
            self.run_record.file_size_bytes = outcome.entry.size
            self._log("Backup completed successfully")
            self._finish_record('success')
            return outcome

        except Exception as e:
            self._log(f"Backup failed: {e}", logging.ERROR)
            self._finish_record('failed', e)
            raise

        finally:
            self._cleanup()

    def _execute_workflow(self) -> BackupOutcome:
        backup = self.settings.backup

        # Validates the compression level before anything is written
        builder = ArchiveBuilder(backup.compression_level, self.cancellation_check)

        try:
            backup.local_backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create backup directory {backup.local_backup_dir}: {e}")

        started = self.now()

        base = None if self.full else self.store.latest()
        if not self.full and base is None:
            self._log("No previous backup found, promoting to full backup")
        kind = BackupKind.INCREMENTAL if base is not None else BackupKind.FULL
        marker = None
        if base is not None:
            marker = IncrementalMarker(base.created_at.timestamp(), frozenset(base.index))
            self._log(f"Incremental backup based on {base.name}")

        roots, snapshots = collect_sources(self.settings, etc_root=self.etc_root, home=self.home)
        self._log(f"Collected {len(roots)} source roots and {len(snapshots)} command snapshots")

        self.temp_dir = tempfile.mkdtemp(prefix='zesty_backup_', dir=self.temp_root)
        extras = []

        database = self.settings.database
        if database.enabled:
            self._log(f"Dumping {database.type} database {database.database}")
            extras.append(DatabaseDumper(self.runner, self.cancellation_check).dump(database, self.temp_dir))

        snapshot_report = CommandSnapshotter(self.runner, self.cancellation_check).capture_all(snapshots)
        extras.extend(snapshot_report.entries)
        for label, error in snapshot_report.failures.items():
            self._log(f"Snapshot failed: {label}: {error}", logging.WARNING)
        self._flush_logs_to_db()

        scanner = ChangeScanner(roots, backup.exclude, since=marker)
        name = self.store.next_free_name(started, backup.compression_level)
        archive_path = self.store.archive_path(name)

        self._log(f"Creating archive {name}")
        build = builder.build(scanner, archive_path, extras)
        for warning in scanner.warnings:
            self._log(f"Scan warning: {warning}", logging.WARNING)
        for skipped in build.skipped:
            self._log(f"Skipped (changed during backup): {skipped}", logging.WARNING)

        entry = ManifestEntry(
            name=name,
            kind=kind,
            created_at=started,
            size=build.size,
            sources=[str(root.path) for root in roots],
            base=base.name if base is not None else None,
            index=sorted(scanner.seen),
        )
        try:
            self.store.save(entry)
        except OSError as e:
            self.store.delete(name)
            raise ArchiveBuildError(f"Failed to write manifest for {name}: {e}") from e

        self._log(
            f"Archive created: {name} ({kind.value}, {build.files_added} files, "
            f"{build.size / 1024 / 1024:.2f} MB)"
        )
        self._flush_logs_to_db()

        outcome = BackupOutcome(
            entry=entry,
            path=archive_path,
            build=build,
            scan_warnings=list(scanner.warnings),
            snapshot_failures=dict(snapshot_report.failures),
        )

        if self.apply_retention:
            policy = RetentionPolicy(backup.retention_days)
            outcome.retention = LocalRetentionManager(backup.local_backup_dir, policy).apply(now=self.now())
            for failed, error in outcome.retention.errors.items():
                self._log(f"Retention could not delete {failed}: {error}", logging.WARNING)

        return outcome

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)


@dataclass
class UploadReport:
    uploaded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    bytes_uploaded: int = 0
    retention: Optional[RetentionReport] = None
    retention_error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.failed and self.retention_error is None

    @property
    def status(self) -> str:
        if not self.failed:
            return 'success'
        return 'partial' if self.uploaded else 'failed'

    def raise_for_errors(self):
        if self.failed:
            details = '; '.join(f"{name}: {error}" for name, error in sorted(self.failed.items()))
            raise ProviderError(f"Failed to upload {len(self.failed)} archive(s): {details}")
        if self.retention_error:
            raise ProviderError(f"Remote retention failed: {self.retention_error}")


class UploadExecutor(RunRecorder):
    """
    Uploads pending local archives and their manifests.

    Each archive succeeds or fails on its own; failures are collected in the
    report and the archive stays pending for the next upload cycle.
    """

    operation = 'upload'

    def __init__(self, settings: Settings, gateway, files: Optional[Sequence[str]] = None,
                 workers: Optional[int] = None, cancellation_check: Optional[Callable[[], None]] = None,
                 should_stop: Optional[Callable[[], bool]] = None, apply_remote_retention: bool = False,
                 now: Callable[[], datetime] = datetime.now):
        """
        Initialize upload executor.

        Args:
            settings: Loaded settings
            gateway: Remote storage gateway
            files: Explicit archive paths; default is every pending local archive
            workers: Concurrent uploads (default: daemon.upload_workers)
            cancellation_check: Deadline check passed to the gateway
            should_stop: Returns True once shutdown was requested; queued uploads are skipped
            apply_remote_retention: Apply the retention policy remotely afterwards
            now: Clock, for tests
        """
        super().__init__()
        self.settings = settings
        self.gateway = gateway
        self.files = list(files) if files else None
        self.workers = max(1, workers or settings.daemon.upload_workers)
        self.cancellation_check = cancellation_check
        self.should_stop = should_stop
        self.apply_remote_retention = apply_remote_retention
        self.now = now
        self.store = ManifestStore(settings.backup.local_backup_dir)

    def pending(self) -> List[str]:
        """Local archive names without upload confirmation, oldest first."""
        return [entry.name for entry in self.store.entries() if not entry.is_uploaded]

    def execute(self) -> UploadReport:
        """
        Run the upload.

        Returns:
            UploadReport; per-archive failures are in ``failed``

        Raises:
            CycleTimeout: If the deadline fires
            BackupError: If the upload could not start (e.g. missing file)
        """
        self._start_record()
        report = UploadReport()

        try:
            targets = self._targets()
            self._log(f"Uploading {len(targets)} archive(s) to {self.gateway.provider}")
            self._upload_all(targets, report)

            if self.apply_remote_retention and not report.failed and not report.skipped:
                self._apply_remote_retention(report)

            self._log(
                f"Upload finished. Uploaded: {len(report.uploaded)}, "
                f"Failed: {len(report.failed)}, Skipped: {len(report.skipped)}"
            )
            self.run_record.file_size_bytes = report.bytes_uploaded
            if report.uploaded:
                self.run_record.archive_name = report.uploaded[-1]
            status = report.status
            error = ProviderError('; '.join(sorted(report.failed.values()))) if report.failed else None
            self._finish_record(status, error)
            return report

        except Exception as e:
            self._log(f"Upload failed: {e}", logging.ERROR)
            self._finish_record('failed', e)
            raise

    def _targets(self) -> List[tuple]:
        if self.files is None:
            return [(name, self.store.archive_path(name), True) for name in self.pending()]

        targets = []
        for file in self.files:
            path = Path(file)
            if not path.is_file():
                raise ConfigError(f"Backup file not found: {file}")
            in_store = (
                is_archive_name(path.name)
                and self.store.archive_path(path.name).resolve() == path.resolve()
            )
            targets.append((path.name, path, in_store))
        return targets

    def _upload_all(self, targets: List[tuple], report: UploadReport):
        timeout = None
        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='zesty-upload') as pool:
            futures = [(name, pool.submit(self._upload_one, name, path, in_store))
                       for name, path, in_store in targets]
            for name, future in futures:
                try:
                    uploaded = future.result()
                except CycleTimeout as e:
                    timeout = e
                    report.failed[name] = str(e)
                    continue
                except (BackupError, OSError) as e:
                    self._log(f"Failed to upload {name}: {e}", logging.ERROR)
                    report.failed[name] = str(e)
                    continue
                if uploaded is not None:
                    report.uploaded.append(name)
                    report.bytes_uploaded += uploaded
                else:
                    report.skipped.append(name)

        if timeout is not None:
            raise timeout

    def _upload_one(self, name: str, path: Path, in_store: bool) -> Optional[int]:
        """
        Upload one archive and, for local store archives, its manifest.

        Returns:
            Archive size in bytes, or None if skipped because shutdown was requested
        """
        if self.should_stop and self.should_stop():
            logger.info(f"Shutdown requested, skipping upload of {name}")
            return None

        with in_flight.hold(name):
            if self.cancellation_check:
                self.cancellation_check()

            logger.info(f"Uploading {name}")
            with open(path, 'rb') as f:
                remote_id = self.gateway.put(name, f, cancellation_check=self.cancellation_check)

            if in_store:
                when = self.now()
                entry = replace(self.store.load(name), uploaded_at=when, remote_id=remote_id)
                self.gateway.put(manifest_name(name), io.BytesIO(entry.to_json()))
                self.store.mark_uploaded(name, remote_id, when)

            logger.info(f"Uploaded {name} ({remote_id})")
            return path.stat().st_size

    def _apply_remote_retention(self, report: UploadReport):
        policy = RetentionPolicy(self.settings.backup.retention_days)
        try:
            report.retention = RemoteRetentionManager(self.gateway, policy).apply(now=self.now())
        except ProviderError as e:
            self._log(f"Remote retention failed: {e}", logging.ERROR)
            report.retention_error = str(e)
            return
        for failed, error in report.retention.errors.items():
            self._log(f"Remote retention could not delete {failed}: {error}", logging.WARNING)


@dataclass
class CleanOutcome:
    local: RetentionReport
    remote: Optional[RetentionReport] = None

    def raise_for_errors(self):
        self.local.raise_for_errors()
        if self.remote is not None:
            self.remote.raise_for_errors()


class CleanExecutor(RunRecorder):
    """Applies the retention policy locally and, outside dry runs, remotely."""

    operation = 'clean'

    def __init__(self, settings: Settings, gateway=None, dry_run: bool = False,
                 now: Callable[[], datetime] = datetime.now):
        super().__init__()
        self.settings = settings
        self.gateway = gateway
        self.dry_run = dry_run
        self.now = now

    def execute(self) -> CleanOutcome:
        self._start_record()
        policy = RetentionPolicy(self.settings.backup.retention_days)
        self._log(f"Cleaning backups older than {policy.max_age_days} days{' (dry run)' if self.dry_run else ''}")

        try:
            local = LocalRetentionManager(self.settings.backup.local_backup_dir, policy)
            outcome = CleanOutcome(local=local.apply(dry_run=self.dry_run, now=self.now()))
            self._log(f"Local: deleted {len(outcome.local.deleted)}, would delete {len(outcome.local.would_delete)}")

            if self.gateway is not None and not self.dry_run:
                outcome.remote = RemoteRetentionManager(self.gateway, policy).apply(now=self.now())
                self._log(f"Remote: deleted {len(outcome.remote.deleted)}")

            errors = dict(outcome.local.errors)
            if outcome.remote is not None:
                errors.update(outcome.remote.errors)
            if errors:
                self._finish_record('partial', BackupError('; '.join(f"{k}: {v}" for k, v in sorted(errors.items()))))
            else:
                self._finish_record('success')
            return outcome

        except Exception as e:
            self._log(f"Clean failed: {e}", logging.ERROR)
            self._finish_record('failed', e)
            raise


class RestoreExecutor(RunRecorder):
    """Runs RestoreEngine and records the outcome in the run history."""

    operation = 'restore'

    def __init__(self, archive: str, target: str, gateway=None, work_dir: Optional[str] = None):
        super().__init__()
        self.archive = archive
        self.target = target
        self.engine = RestoreEngine(gateway=gateway, work_dir=work_dir)

    def execute(self) -> RestoreReport:
        """
        Restore the archive.

        Returns:
            RestoreReport; status is ``partial`` when some entries failed

        Raises:
            RestoreError: If the archive is corrupt, unsafe or unavailable
        """
        self._start_record()
        self.run_record.archive_name = os.path.basename(self.archive)
        self._log(f"Restoring {self.archive} to {self.target}")

        try:
            report = self.engine.restore(self.archive, self.target)
        except Exception as e:
            self._log(f"Restore failed: {e}", logging.ERROR)
            self._finish_record('failed', e)
            raise

        for name, error in report.failed.items():
            self._log(f"Failed to restore {name}: {error}", logging.WARNING)
        self._log(f"Restored {len(report.extracted)} entries, {len(report.failed)} failed")
        if report.ok:
            self._finish_record('success')
        else:
            self._finish_record('partial', RestoreError(f"{len(report.failed)} entries could not be restored"))
        return report
