"""
APScheduler configuration and the backup daemon.

Manages:
- The backup cycle (incremental backup + local retention) on one interval
- The upload cycle (pending archives + remote retention) on another
- Serialization of the two cycles through CycleGate
- PID file, signal handling and graceful shutdown
"""

import logging
import os
import signal
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Set

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.interval import IntervalTrigger

from zesty_backup.backup.executor import BackupExecutor, UploadExecutor, needs_full_backup
from zesty_backup.backup.manifest import ManifestStore
from zesty_backup.backup.storage import create_gateway
from zesty_backup.errors import BackupError, ConfigError
from zesty_backup.settings import Settings
from zesty_backup.utils.cancellation import Deadline
from zesty_backup.utils.commands import CommandRunner, run_command


logger = logging.getLogger(__name__)

EPOCH = datetime(1970, 1, 1)

BACKUP = 'backup'
UPLOAD = 'upload'

# Global scheduler instance and Flask app reference
scheduler = None
flask_app = None


class CycleGate:
    """
    Serializes backup and upload cycles.

    - One lock covers the critical section, so the two cycles never overlap;
      a tick for the other cycle type waits and runs right after.
    - A tick for a cycle type that is already running or waiting is folded
      into a single pending rerun.
    - Once stopping is set, new ticks and pending reruns are dropped.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._idle = threading.Condition(self._state_lock)
        self._active: Set[str] = set()
        self._pending: Set[str] = set()
        self.current: Optional[str] = None
        self.stopping = False

    def run(self, kind: str, fn: Callable[[], None]) -> bool:
        """
        Run fn for a cycle of the given kind.

        Returns:
            False if the tick was coalesced into an active run or dropped at shutdown
        """
        with self._state_lock:
            if self.stopping:
                return False
            if kind in self._active:
                self._pending.add(kind)
                logger.info(f"{kind} cycle already running or queued, coalescing tick")
                return False
            self._active.add(kind)

        ran = False
        try:
            while True:
                with self._lock:
                    # Shutdown may have started while this tick waited on the other cycle
                    with self._state_lock:
                        if self.stopping:
                            logger.info(f"Shutting down, dropping queued {kind} cycle")
                            break
                    self.current = kind
                    try:
                        fn()
                    finally:
                        self.current = None
                    ran = True

                with self._state_lock:
                    if kind in self._pending and not self.stopping:
                        self._pending.discard(kind)
                        logger.info(f"Running coalesced {kind} cycle")
                        continue
                    break
        finally:
            with self._state_lock:
                self._active.discard(kind)
                self._pending.discard(kind)
                self._idle.notify_all()
        return ran

    def pending(self, kind: str) -> bool:
        with self._state_lock:
            return kind in self._pending

    def drain(self, timeout: Optional[float] = None) -> bool:
        """
        Stop accepting ticks and wait for active cycles to finish.

        Returns:
            True if every cycle finished within the timeout
        """
        with self._state_lock:
            self.stopping = True
            return self._idle.wait_for(lambda: not self._active, timeout=timeout)


@dataclass
class ScheduleState:
    """Process-local schedule bookkeeping, rebuilt from the archive directory at start."""
    last_backup: datetime = EPOCH
    last_upload: datetime = EPOCH
    next_backup: Optional[datetime] = None
    next_upload: Optional[datetime] = None
    state: str = 'idle'

    @classmethod
    def from_store(cls, store: ManifestStore, backup_interval: timedelta, upload_interval: timedelta,
                   now: datetime) -> 'ScheduleState':
        """
        Derive last and next fire times.

        last_backup is the newest manifest's creation time, last_upload the
        newest upload confirmation; both default to the epoch, so overdue
        cycles fire immediately.
        """
        entries = store.entries()
        last_backup = max((e.created_at for e in entries), default=EPOCH)
        last_upload = max((e.uploaded_at for e in entries if e.uploaded_at), default=EPOCH)
        return cls(
            last_backup=last_backup,
            last_upload=last_upload,
            next_backup=max(now, last_backup + backup_interval),
            next_upload=max(now, last_upload + upload_interval),
        )

    def to_dict(self) -> dict:
        return {
            'state': self.state,
            'last_backup': _iso_or_none(self.last_backup),
            'last_upload': _iso_or_none(self.last_upload),
            'next_backup': _iso_or_none(self.next_backup),
            'next_upload': _iso_or_none(self.next_upload),
        }


class BackupScheduler:
    """
    Daemon running the backup and upload cycles on independent timers.
    """

    def __init__(self, app, settings: Settings, backup_interval_hours: Optional[float] = None,
                 upload_interval_hours: Optional[float] = None, pid_file: Optional[str] = None,
                 gateway=None, runner: CommandRunner = run_command, now: Callable[[], datetime] = datetime.now):
        """
        Initialize the daemon.

        Args:
            app: Flask app, for database access from scheduler threads
            settings: Loaded settings
            backup_interval_hours: Override for daemon.backup_interval_hours
            upload_interval_hours: Override for daemon.upload_interval_hours
            pid_file: Override for daemon.pid_file
            gateway: Prebuilt gateway (default: built from settings at setup)
            runner: Command runner for dumps and snapshots
            now: Clock, for tests
        """
        daemon = settings.daemon
        self.app = app
        self.settings = settings
        self.backup_interval = timedelta(hours=backup_interval_hours or daemon.backup_interval_hours)
        self.upload_interval = timedelta(hours=upload_interval_hours or daemon.upload_interval_hours)
        self.pid_file = pid_file or daemon.pid_file
        self.gateway = gateway
        self.runner = runner
        self.now = now
        self.gate = CycleGate()
        self.store = ManifestStore(settings.backup.local_backup_dir)
        self.state: Optional[ScheduleState] = None
        self.scheduler: Optional[BlockingScheduler] = None

    def setup(self) -> BlockingScheduler:
        """
        Prepare the scheduler and its two jobs.

        Raises:
            ConfigError: If the backup directory or the gateway cannot be set up
        """
        if self.backup_interval <= timedelta(0) or self.upload_interval <= timedelta(0):
            raise ConfigError("Backup and upload intervals must be positive")

        try:
            self.settings.backup.local_backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigError(f"Cannot create backup directory {self.settings.backup.local_backup_dir}: {e}")

        if self.gateway is None:
            self.gateway = create_gateway(self.settings.storage, self.settings.retry)

        self.state = ScheduleState.from_store(self.store, self.backup_interval, self.upload_interval, self.now())

        executors = {
            # Both cycles plus a coalescing tick for each
            'default': ThreadPoolExecutor(max_workers=4)
        }

        job_defaults = {
            'coalesce': True,  # Combine multiple pending instances into one
            'max_instances': 2,  # Second instance reaches the gate and is folded into a rerun
            'misfire_grace_time': None  # Late ticks always run
        }

        options = {}
        timezone = self.app.config.get('SCHEDULER_TIMEZONE') if self.app else None
        if timezone:
            options['timezone'] = timezone

        self.scheduler = BlockingScheduler(
            jobstores={'default': MemoryJobStore()},
            executors=executors,
            job_defaults=job_defaults,
            **options
        )

        self.scheduler.add_job(
            func=self.run_backup_cycle,
            trigger=IntervalTrigger(seconds=self.backup_interval.total_seconds()),
            next_run_time=self.state.next_backup.astimezone(),
            id='backup_cycle',
            name='Backup cycle',
            replace_existing=True
        )
        self.scheduler.add_job(
            func=self.run_upload_cycle,
            trigger=IntervalTrigger(seconds=self.upload_interval.total_seconds()),
            next_run_time=self.state.next_upload.astimezone(),
            id='upload_cycle',
            name='Upload cycle',
            replace_existing=True
        )
        return self.scheduler

    def run_backup_cycle(self) -> bool:
        return self.gate.run(BACKUP, self._backup_cycle)

    def run_upload_cycle(self) -> bool:
        return self.gate.run(UPLOAD, self._upload_cycle)

    def _deadline(self, label: str) -> Deadline:
        minutes = self.settings.daemon.max_cycle_minutes
        return Deadline(minutes * 60 if minutes else None, label=label)

    def _backup_cycle(self):
        """Incremental (or periodic full) backup followed by local retention."""
        started = self.now()
        self.state.state = 'backup_in_progress'
        logger.info("Scheduled backup triggered")
        try:
            with self.app.app_context():
                full = needs_full_backup(self.store, self.settings.daemon.full_interval_days, started)
                executor = BackupExecutor(
                    self.settings,
                    full=full,
                    cancellation_check=self._deadline('backup cycle'),
                    runner=self.runner,
                    temp_root=self.app.config.get('TEMP_DIR'),
                    now=self.now,
                )
                executor.execute()
            self.state.last_backup = started
        except BackupError as e:
            logger.error(f"Backup cycle failed ({type(e).__name__}): {e}")
        except Exception:
            logger.exception("Backup cycle failed with an unexpected error")
        finally:
            self.state.state = 'idle'
            self.state.next_backup = self._next_run('backup_cycle')

    def _upload_cycle(self):
        """Upload pending archives, then apply remote retention."""
        started = self.now()
        self.state.state = 'upload_in_progress'
        logger.info("Scheduled upload triggered")
        try:
            with self.app.app_context():
                executor = UploadExecutor(
                    self.settings,
                    self.gateway,
                    cancellation_check=self._deadline('upload cycle'),
                    should_stop=lambda: self.gate.stopping,
                    apply_remote_retention=self.settings.daemon.remote_retention,
                    now=self.now,
                )
                report = executor.execute()
            if report.failed:
                logger.warning(f"Upload cycle finished with {len(report.failed)} failed archive(s)")
            else:
                self.state.last_upload = started
        except BackupError as e:
            logger.error(f"Upload cycle failed ({type(e).__name__}): {e}")
        except Exception:
            logger.exception("Upload cycle failed with an unexpected error")
        finally:
            self.state.state = 'idle'
            self.state.next_upload = self._next_run('upload_cycle')

    def _next_run(self, job_id: str) -> Optional[datetime]:
        if self.scheduler is None:
            return None
        job = self.scheduler.get_job(job_id)
        if job is None or job.next_run_time is None:
            return None
        return job.next_run_time.astimezone().replace(tzinfo=None)

    def write_pid_file(self):
        try:
            pid_dir = os.path.dirname(self.pid_file)
            if pid_dir:
                os.makedirs(pid_dir, exist_ok=True)
            with open(self.pid_file, 'w') as f:
                f.write(f"{os.getpid()}\n")
        except OSError as e:
            raise ConfigError(f"Failed to create PID file {self.pid_file}: {e}")

    def remove_pid_file(self):
        try:
            os.remove(self.pid_file)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove PID file {self.pid_file}: {e}")

    def shutdown(self, signum=None, frame=None):
        """Stop accepting ticks; the running cycle finishes its current archive."""
        if signum is not None:
            logger.info(f"Received {signal.Signals(signum).name}, shutting down")
        self.gate.stopping = True
        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def run(self):
        """
        Run the daemon until SIGTERM/SIGINT.

        Raises:
            ConfigError: On startup failures
        """
        if self.scheduler is None:
            self.setup()

        self.write_pid_file()
        previous = {sig: signal.signal(sig, self.shutdown) for sig in (signal.SIGTERM, signal.SIGINT)}

        logger.info(f"Daemon started with PID: {os.getpid()}")
        logger.info(f"Backup interval: {self.backup_interval}, next run {self.state.next_backup}")
        logger.info(f"Upload interval: {self.upload_interval}, next run {self.state.next_upload}")

        try:
            self.scheduler.start()
        finally:
            logger.info("Waiting for the running cycle to finish")
            self.gate.drain()
            for sig, handler in previous.items():
                signal.signal(sig, handler)
            self.remove_pid_file()
            logger.info("Daemon stopped")

    def status(self) -> dict:
        data = self.state.to_dict() if self.state else {'state': 'not_started'}
        data['running'] = bool(self.scheduler and self.scheduler.running)
        data['current_cycle'] = self.gate.current
        data['backup_interval_hours'] = self.backup_interval.total_seconds() / 3600
        data['upload_interval_hours'] = self.upload_interval.total_seconds() / 3600
        return data


def init_scheduler(app, settings: Settings, **kwargs) -> BackupScheduler:
    """
    Initialize the daemon scheduler.

    Args:
        app: Flask app instance
        settings: Loaded settings
        **kwargs: Passed to BackupScheduler
    """
    global scheduler, flask_app

    if scheduler is not None:
        return scheduler

    # Store Flask app reference for use in background threads
    flask_app = app
    scheduler = BackupScheduler(app, settings, **kwargs)
    scheduler.setup()
    return scheduler


def start_scheduler():
    """Run the daemon in the foreground until it is stopped."""
    global scheduler

    if scheduler is None:
        raise RuntimeError("Scheduler not initialized. Call init_scheduler() first.")

    try:
        scheduler.run()
    finally:
        reset_scheduler()


def stop_scheduler():
    """Stop the daemon."""
    global scheduler

    if scheduler is not None:
        scheduler.shutdown()


def reset_scheduler():
    global scheduler, flask_app
    scheduler = None
    flask_app = None


def get_scheduler_status() -> Optional[dict]:
    """Daemon status when the scheduler runs in this process, else None."""
    if scheduler is None:
        return None
    return scheduler.status()


def _iso_or_none(value: Optional[datetime]) -> Optional[str]:
    if value is None or value == EPOCH:
        return None
    return value.isoformat()
