"""
Unit tests for the daemon scheduler (zesty_backup/scheduler.py).
"""

import os
import threading
from datetime import datetime, timedelta

import pytest

from zesty_backup import scheduler as scheduler_module
from zesty_backup.backup.manifest import BackupKind, ManifestEntry, ManifestStore
from zesty_backup.errors import ConfigError
from zesty_backup.models import CycleRun
from zesty_backup.scheduler import (
    BACKUP,
    EPOCH,
    UPLOAD,
    BackupScheduler,
    CycleGate,
    ScheduleState,
    get_scheduler_status,
    init_scheduler,
    reset_scheduler,
)
from zesty_backup.utils.commands import CommandResult


NOW = datetime(2024, 1, 16, 12, 0, 0)
WAIT = 5


@pytest.fixture(autouse=True)
def clean_scheduler_globals():
    yield
    reset_scheduler()


def _seed(store, created_at, uploaded_at=None):
    name = f"backup-{created_at.strftime('%Y%m%d-%H%M%S')}.tar.zst"
    store.archive_path(name).write_bytes(b'archive')
    store.save(ManifestEntry(name=name, kind=BackupKind.FULL, created_at=created_at, uploaded_at=uploaded_at))
    return name


class TestCycleGate:
    """Test serialization and coalescing of cycle ticks."""

    def test_runs_function(self):
        calls = []

        assert CycleGate().run(BACKUP, lambda: calls.append(1))
        assert calls == [1]

    def test_tick_during_run_is_coalesced_into_one_rerun(self):
        gate = CycleGate()
        started = threading.Event()
        release = threading.Event()
        runs = []

        def cycle():
            runs.append(1)
            started.set()
            release.wait(WAIT)

        worker = threading.Thread(target=gate.run, args=(BACKUP, cycle))
        worker.start()
        assert started.wait(WAIT)

        assert not gate.run(BACKUP, cycle)
        assert not gate.run(BACKUP, cycle)
        assert gate.pending(BACKUP)

        release.set()
        worker.join(WAIT)

        assert len(runs) == 2
        assert not gate.pending(BACKUP)

    def test_cycles_never_overlap(self):
        """Test an upload tick waits for the running backup."""
        gate = CycleGate()
        backup_started = threading.Event()
        release = threading.Event()
        order = []

        def backup():
            order.append('backup-start')
            backup_started.set()
            release.wait(WAIT)
            order.append('backup-end')

        def upload():
            order.append('upload')

        backup_thread = threading.Thread(target=gate.run, args=(BACKUP, backup))
        backup_thread.start()
        assert backup_started.wait(WAIT)

        upload_thread = threading.Thread(target=gate.run, args=(UPLOAD, upload))
        upload_thread.start()
        upload_thread.join(0.2)
        assert order == ['backup-start']
        assert gate.current == BACKUP

        release.set()
        backup_thread.join(WAIT)
        upload_thread.join(WAIT)

        assert order == ['backup-start', 'backup-end', 'upload']

    def test_waiting_cycle_is_dropped_at_shutdown(self):
        """Test an upload tick queued behind a backup never starts once shutdown begins."""
        gate = CycleGate()
        backup_started = threading.Event()
        release = threading.Event()
        order = []
        results = {}

        def backup():
            order.append('backup')
            backup_started.set()
            release.wait(WAIT)

        def upload():
            results['upload'] = gate.run(UPLOAD, lambda: order.append('upload'))

        backup_thread = threading.Thread(target=gate.run, args=(BACKUP, backup))
        backup_thread.start()
        assert backup_started.wait(WAIT)

        upload_thread = threading.Thread(target=upload)
        upload_thread.start()
        upload_thread.join(0.2)

        gate.stopping = True
        release.set()
        backup_thread.join(WAIT)
        upload_thread.join(WAIT)

        assert order == ['backup']
        assert results['upload'] is False
        assert gate.drain(timeout=WAIT)

    def test_error_releases_gate(self):
        gate = CycleGate()

        def failing():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            gate.run(BACKUP, failing)

        assert gate.run(BACKUP, lambda: None)

    def test_drain_stops_new_ticks(self):
        gate = CycleGate()

        assert gate.drain(timeout=1)
        assert not gate.run(BACKUP, lambda: pytest.fail("tick ran after drain"))

    def test_drain_waits_for_active_cycle(self):
        gate = CycleGate()
        started = threading.Event()
        release = threading.Event()
        worker = threading.Thread(target=gate.run, args=(UPLOAD, lambda: (started.set(), release.wait(WAIT))))
        worker.start()
        assert started.wait(WAIT)

        assert not gate.drain(timeout=0.1)

        release.set()
        assert gate.drain(timeout=WAIT)
        worker.join(WAIT)


class TestScheduleState:
    """Test last/next derivation from the archive directory."""

    def test_empty_directory_fires_immediately(self, backup_dir):
        state = ScheduleState.from_store(ManifestStore(backup_dir), timedelta(hours=6), timedelta(hours=24), NOW)

        assert state.last_backup == EPOCH
        assert state.last_upload == EPOCH
        assert state.next_backup == NOW
        assert state.next_upload == NOW
        assert state.to_dict()['last_backup'] is None

    def test_resumes_from_manifests(self, backup_dir):
        store = ManifestStore(backup_dir)
        _seed(store, datetime(2024, 1, 15, 0, 0, 0), uploaded_at=datetime(2024, 1, 15, 1, 0, 0))
        _seed(store, datetime(2024, 1, 16, 10, 0, 0))

        state = ScheduleState.from_store(store, timedelta(hours=6), timedelta(hours=24), NOW)

        assert state.last_backup == datetime(2024, 1, 16, 10, 0, 0)
        assert state.next_backup == datetime(2024, 1, 16, 16, 0, 0)
        assert state.last_upload == datetime(2024, 1, 15, 1, 0, 0)
        assert state.next_upload == NOW


class TestBackupScheduler:
    """Test BackupScheduler setup, cycles and lifecycle."""

    def test_setup_adds_two_jobs(self, app, settings, memory_gateway):
        daemon = BackupScheduler(app, settings, backup_interval_hours=2, gateway=memory_gateway, now=lambda: NOW)

        sched = daemon.setup()

        jobs = {job.id: job for job in sched.get_jobs()}
        assert set(jobs) == {'backup_cycle', 'upload_cycle'}
        assert jobs['backup_cycle'].trigger.interval == timedelta(hours=2)
        assert jobs['upload_cycle'].trigger.interval == timedelta(hours=24)
        assert not sched.running

    def test_non_positive_interval(self, app, settings, memory_gateway):
        daemon = BackupScheduler(app, settings, gateway=memory_gateway)
        daemon.backup_interval = timedelta(0)

        with pytest.raises(ConfigError):
            daemon.setup()

    def test_backup_cycle(self, db, app, settings, memory_gateway):
        daemon = BackupScheduler(app, settings, gateway=memory_gateway, now=lambda: NOW)
        daemon.setup()

        assert daemon.run_backup_cycle()

        assert ManifestStore(settings.backup.local_backup_dir).names() == ['backup-20240116-120000.tar.zst']
        assert daemon.state.last_backup == NOW
        assert daemon.state.state == 'idle'
        assert CycleRun.latest('backup').status == 'success'

    def test_failed_backup_cycle_does_not_raise(self, db, app, make_settings, memory_gateway, tmp_path):
        settings = make_settings(backup={'project_path': str(tmp_path / 'missing')})
        daemon = BackupScheduler(app, settings, gateway=memory_gateway, now=lambda: NOW)
        daemon.setup()

        assert daemon.run_backup_cycle()

        assert daemon.state.last_backup == EPOCH
        assert CycleRun.latest('backup').status == 'failed'

    def test_cycle_over_time_budget_fails_and_daemon_continues(self, db, app, make_settings, make_runner,
                                                               memory_gateway):
        settings = make_settings(
            daemon={'max_cycle_minutes': 1},
            database={'enabled': True, 'type': 'postgres', 'host': 'localhost', 'port': 5432,
                      'database': 'app', 'username': 'app', 'password': 's3cret'},
        )
        runner = make_runner({'pg_dump': CommandResult(-1, b'', b'pg_dump: timed out after 60s', timed_out=True)})
        daemon = BackupScheduler(app, settings, gateway=memory_gateway, runner=runner, now=lambda: NOW)
        daemon.setup()

        assert daemon.run_backup_cycle()

        assert 0 < runner.calls[0]['timeout'] <= 60
        run = CycleRun.latest('backup')
        assert run.status == 'failed'
        assert run.error_kind == 'CycleTimeout'
        assert daemon.state.last_backup == EPOCH
        assert ManifestStore(settings.backup.local_backup_dir).names() == []

        assert daemon.run_upload_cycle()
        assert daemon.state.state == 'idle'

    def test_upload_cycle(self, db, app, settings, backup_dir, memory_gateway):
        name = _seed(ManifestStore(backup_dir), datetime(2024, 1, 16, 10, 0, 0))
        daemon = BackupScheduler(app, settings, gateway=memory_gateway, now=lambda: NOW)
        daemon.setup()

        daemon.run_upload_cycle()

        assert name in memory_gateway.objects
        assert daemon.state.last_upload == NOW

    def test_failed_upload_keeps_last_upload(self, db, app, settings, backup_dir, memory_gateway):
        name = _seed(ManifestStore(backup_dir), datetime(2024, 1, 16, 10, 0, 0))
        memory_gateway.fail[name] = ConnectionResetError("connection reset")
        daemon = BackupScheduler(app, settings, gateway=memory_gateway, now=lambda: NOW)
        daemon.setup()

        daemon.run_upload_cycle()

        assert daemon.state.last_upload == EPOCH
        assert not ManifestStore(backup_dir).load(name).is_uploaded

    def test_pid_file(self, app, settings, memory_gateway):
        daemon = BackupScheduler(app, settings, gateway=memory_gateway)

        daemon.write_pid_file()
        with open(daemon.pid_file) as f:
            assert f.read().strip() == str(os.getpid())

        daemon.remove_pid_file()
        assert not os.path.exists(daemon.pid_file)
        daemon.remove_pid_file()

    def test_shutdown_stops_new_ticks(self, app, settings, memory_gateway):
        daemon = BackupScheduler(app, settings, gateway=memory_gateway)
        daemon.setup()

        daemon.shutdown()

        assert daemon.gate.stopping
        assert not daemon.run_backup_cycle()

    def test_status(self, app, settings, memory_gateway):
        daemon = BackupScheduler(app, settings, gateway=memory_gateway, now=lambda: NOW)
        assert daemon.status()['state'] == 'not_started'

        daemon.setup()
        status = daemon.status()

        assert status['state'] == 'idle'
        assert status['running'] is False
        assert status['current_cycle'] is None
        assert status['backup_interval_hours'] == 6
        assert status['next_backup'] == NOW.isoformat()


class TestSchedulerGlobals:
    def test_init_scheduler_is_idempotent(self, app, settings, memory_gateway):
        first = init_scheduler(app, settings, gateway=memory_gateway)
        second = init_scheduler(app, settings, gateway=memory_gateway)

        assert first is second
        assert scheduler_module.flask_app is app
        assert get_scheduler_status()['running'] is False

    def test_reset(self, app, settings, memory_gateway):
        init_scheduler(app, settings, gateway=memory_gateway)

        reset_scheduler()

        assert scheduler_module.scheduler is None
        assert get_scheduler_status() is None
