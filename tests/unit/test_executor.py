"""
Unit tests for the backup, upload, clean and restore executors
(zesty_backup/backup/executor.py).
"""

import json
import os
from datetime import datetime

import pytest

from zesty_backup.backup.executor import (
    BackupExecutor,
    CleanExecutor,
    RestoreExecutor,
    UploadExecutor,
    needs_full_backup,
)
from zesty_backup.backup.manifest import BackupKind, ManifestEntry, ManifestStore, manifest_name
from zesty_backup.backup.restore import open_tar_stream
from zesty_backup.errors import (
    ConfigError,
    CycleTimeout,
    DumpError,
    PermanentProviderError,
    ProviderError,
    RestoreError,
    ScanError,
    TransientProviderError,
)
from zesty_backup.models import CycleRun
from zesty_backup.utils.commands import CommandResult


OLD_MTIME = datetime(2024, 1, 10).timestamp()
FIRST = datetime(2024, 1, 15, 12, 0, 0)
SECOND = datetime(2024, 1, 16, 12, 0, 0)


def _age_tree(root):
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            os.utime(os.path.join(dirpath, name), (OLD_MTIME, OLD_MTIME))


def _members(path):
    with open_tar_stream(path) as tar:
        return sorted(member.name for member in tar)


def _clock(value):
    return lambda: value


def _seed_archive(store, created_at, kind=BackupKind.FULL, base=None, data=b'archive', uploaded=False):
    name = f"backup-{created_at.strftime('%Y%m%d-%H%M%S')}.tar.zst"
    store.archive_path(name).write_bytes(data)
    store.save(ManifestEntry(
        name=name,
        kind=kind,
        created_at=created_at,
        base=base,
        uploaded_at=created_at if uploaded else None,
    ))
    return name


class TestBackupExecutor:
    """Test BackupExecutor workflows."""

    def test_first_backup_is_promoted_to_full(self, db, settings, source_tree):
        _age_tree(source_tree)

        outcome = BackupExecutor(settings, now=_clock(FIRST)).execute()

        assert outcome.entry.name == 'backup-20240115-120000.tar.zst'
        assert outcome.entry.kind == BackupKind.FULL
        assert outcome.entry.base is None
        assert _members(outcome.path) == [
            'project/project/README.md',
            'project/project/app.py',
            'project/project/src/module.py',
        ]

        store = ManifestStore(settings.backup.local_backup_dir)
        sidecar = json.loads(store.manifest_path(outcome.entry.name).read_bytes())
        assert sidecar['kind'] == 'full'
        assert sidecar['index'] == outcome.entry.index

    def test_incremental_contains_only_changes(self, db, settings, source_tree):
        """Test the second backup links to the first and holds changed and new files only."""
        _age_tree(source_tree)
        first = BackupExecutor(settings, now=_clock(FIRST)).execute()

        changed = datetime(2024, 1, 16).timestamp()
        (source_tree / 'app.py').write_text('print("changed")\n')
        os.utime(source_tree / 'app.py', (changed, changed))
        (source_tree / 'src' / 'new.py').write_text('NEW = True\n')
        os.utime(source_tree / 'src' / 'new.py', (OLD_MTIME, OLD_MTIME))

        second = BackupExecutor(settings, now=_clock(SECOND)).execute()

        assert second.entry.kind == BackupKind.INCREMENTAL
        assert second.entry.base == first.entry.name
        assert _members(second.path) == ['project/project/app.py', 'project/project/src/new.py']
        assert 'project/project/README.md' in second.entry.index

    def test_forced_full(self, db, settings, source_tree):
        BackupExecutor(settings, now=_clock(FIRST)).execute()

        outcome = BackupExecutor(settings, full=True, now=_clock(SECOND)).execute()

        assert outcome.entry.kind == BackupKind.FULL
        assert outcome.entry.base is None
        assert len(_members(outcome.path)) == 3

    def test_run_is_recorded(self, db, settings):
        BackupExecutor(settings, now=_clock(FIRST)).execute()

        run = CycleRun.latest('backup')
        assert run.status == 'success'
        assert run.archive_name == 'backup-20240115-120000.tar.zst'
        assert run.file_size_bytes > 0
        assert 'Backup completed successfully' in run.logs

    def test_missing_project_fails_and_is_recorded(self, db, make_settings, tmp_path):
        settings = make_settings(backup={'project_path': str(tmp_path / 'missing')})

        with pytest.raises(ScanError):
            BackupExecutor(settings, now=_clock(FIRST)).execute()

        run = CycleRun.latest('backup')
        assert run.status == 'failed'
        assert run.error_kind == 'ScanError'
        assert os.listdir(settings.backup.local_backup_dir) == []

    def test_database_dump_is_archived(self, db, make_settings, make_runner):
        settings = make_settings(database={
            'enabled': True, 'type': 'postgres', 'host': 'localhost', 'port': 5432,
            'database': 'app', 'username': 'app', 'password': 'secret',
        })
        runner = make_runner({'pg_dump': CommandResult(0, b'CREATE TABLE t;')})

        outcome = BackupExecutor(settings, runner=runner, now=_clock(FIRST)).execute()

        assert 'database/app.sql' in _members(outcome.path)

    def test_failed_dump_aborts(self, db, make_settings, make_runner):
        settings = make_settings(database={
            'enabled': True, 'type': 'postgres', 'host': 'localhost', 'port': 5432,
            'database': 'app', 'username': 'app', 'password': 'secret',
        })
        runner = make_runner({'pg_dump': CommandResult(1, b'', b'authentication failed')})

        with pytest.raises(DumpError):
            BackupExecutor(settings, runner=runner, now=_clock(FIRST)).execute()

        assert ManifestStore(settings.backup.local_backup_dir).names() == []

    def test_failed_snapshot_is_a_warning(self, db, make_settings, make_runner):
        settings = make_settings(system={'command_outputs': [
            {'command': 'docker', 'args': ['ps'], 'output_file': 'docker.txt'},
        ]})
        runner = make_runner({'docker': CommandResult(127, b'', b'docker: command not found')})

        outcome = BackupExecutor(settings, runner=runner, now=_clock(FIRST)).execute()

        assert list(outcome.snapshot_failures) == ['docker ps']
        assert CycleRun.latest('backup').status == 'success'

    def test_cancellation_leaves_no_partial_archive(self, db, settings):
        def expired():
            raise CycleTimeout("Cycle exceeded 180 minutes")

        with pytest.raises(CycleTimeout):
            BackupExecutor(settings, cancellation_check=expired, now=_clock(FIRST)).execute()

        assert os.listdir(settings.backup.local_backup_dir) == []

    def test_retention_runs_after_backup(self, db, settings, backup_dir):
        store = ManifestStore(backup_dir)
        old = _seed_archive(store, datetime(2024, 1, 1, 12, 0, 0))

        BackupExecutor(settings, full=True, now=_clock(FIRST)).execute()

        assert old not in store.names()

    def test_invalid_compression_level(self, db, make_settings):
        settings = make_settings(backup={'compression_level': 30})

        with pytest.raises(ConfigError):
            BackupExecutor(settings, now=_clock(FIRST)).execute()


class TestNeedsFullBackup:
    def test_without_full(self, backup_dir):
        assert needs_full_backup(ManifestStore(backup_dir), 7, SECOND)

    def test_interval(self, backup_dir):
        store = ManifestStore(backup_dir)
        _seed_archive(store, datetime(2024, 1, 1, 12, 0, 0))

        assert needs_full_backup(store, 7, SECOND)
        assert not needs_full_backup(store, 30, SECOND)
        assert not needs_full_backup(store, 0, SECOND)


class TestUploadExecutor:
    """Test UploadExecutor against an in-memory gateway."""

    def test_uploads_pending_archives_with_manifests(self, db, settings, backup_dir, memory_gateway):
        store = ManifestStore(backup_dir)
        done = _seed_archive(store, datetime(2024, 1, 14, 12, 0, 0), uploaded=True)
        pending = _seed_archive(store, FIRST, data=b'new archive')

        report = UploadExecutor(settings, memory_gateway, now=_clock(SECOND)).execute()

        assert report.uploaded == [pending]
        assert report.status == 'success'
        assert report.bytes_uploaded == len(b'new archive')
        assert done not in memory_gateway.objects
        assert memory_gateway.objects[pending] == b'new archive'

        remote_manifest = json.loads(memory_gateway.objects[manifest_name(pending)])
        assert remote_manifest['uploaded_at'] == SECOND.isoformat()
        assert store.load(pending).uploaded_at == SECOND
        assert [call for call in memory_gateway.calls if call[0] == 'put'] == [
            ('put', pending), ('put', manifest_name(pending)),
        ]

    def test_failed_archive_stays_pending(self, db, settings, backup_dir, memory_gateway):
        store = ManifestStore(backup_dir)
        bad = _seed_archive(store, datetime(2024, 1, 14, 12, 0, 0))
        good = _seed_archive(store, FIRST)
        memory_gateway.fail[bad] = TransientProviderError('503 Service Unavailable', 'memory', 'put')

        report = UploadExecutor(settings, memory_gateway, workers=2).execute()

        assert report.uploaded == [good]
        assert list(report.failed) == [bad]
        assert report.status == 'partial'
        assert not store.load(bad).is_uploaded
        assert manifest_name(bad) not in memory_gateway.objects

        run = CycleRun.latest('upload')
        assert run.status == 'partial'
        assert '503' in run.error_message

        with pytest.raises(ProviderError):
            report.raise_for_errors()

    def test_all_failed(self, db, settings, backup_dir, memory_gateway):
        name = _seed_archive(ManifestStore(backup_dir), FIRST)
        memory_gateway.fail[name] = PermanentProviderError('403 Forbidden', 'memory', 'put')

        report = UploadExecutor(settings, memory_gateway).execute()

        assert report.status == 'failed'
        assert CycleRun.latest('upload').status == 'failed'

    def test_shutdown_skips_queued_uploads(self, db, settings, backup_dir, memory_gateway):
        name = _seed_archive(ManifestStore(backup_dir), FIRST)

        report = UploadExecutor(settings, memory_gateway, should_stop=lambda: True).execute()

        assert report.skipped == [name]
        assert memory_gateway.objects == {}

    def test_explicit_file_outside_store(self, db, settings, tmp_path, memory_gateway):
        extra = tmp_path / 'export.tar'
        extra.write_bytes(b'exported')

        report = UploadExecutor(settings, memory_gateway, files=[str(extra)]).execute()

        assert report.uploaded == ['export.tar']
        assert list(memory_gateway.objects) == ['export.tar']

    def test_explicit_missing_file(self, db, settings, tmp_path, memory_gateway):
        with pytest.raises(ConfigError):
            UploadExecutor(settings, memory_gateway, files=[str(tmp_path / 'missing.tar')]).execute()

        assert CycleRun.latest('upload').status == 'failed'

    def test_remote_retention_after_upload(self, db, settings, backup_dir, memory_gateway):
        old = 'backup-20240101-120000.tar.zst'
        memory_gateway.objects[old] = b'old'
        memory_gateway.objects[manifest_name(old)] = b'{}'
        _seed_archive(ManifestStore(backup_dir), SECOND)

        report = UploadExecutor(settings, memory_gateway, apply_remote_retention=True,
                                now=_clock(SECOND)).execute()

        assert report.ok
        assert old not in memory_gateway.objects
        assert manifest_name(old) not in memory_gateway.objects

    def test_shutdown_skips_remote_retention(self, db, settings, backup_dir, memory_gateway):
        old = 'backup-20240101-120000.tar.zst'
        memory_gateway.objects[old] = b'old'
        _seed_archive(ManifestStore(backup_dir), SECOND)

        report = UploadExecutor(settings, memory_gateway, should_stop=lambda: True, apply_remote_retention=True,
                                now=_clock(SECOND)).execute()

        assert report.retention is None
        assert old in memory_gateway.objects


class TestCleanExecutor:
    """Test CleanExecutor local and remote retention."""

    def test_dry_run_deletes_nothing(self, db, settings, backup_dir, memory_gateway):
        store = ManifestStore(backup_dir)
        old = _seed_archive(store, datetime(2024, 1, 1, 12, 0, 0))
        memory_gateway.objects[old] = b'old'

        outcome = CleanExecutor(settings, memory_gateway, dry_run=True, now=_clock(SECOND)).execute()

        assert outcome.local.would_delete == [old]
        assert outcome.remote is None
        assert store.names() == [old]
        assert old in memory_gateway.objects

    def test_clean_local_and_remote(self, db, settings, backup_dir, memory_gateway):
        store = ManifestStore(backup_dir)
        old = _seed_archive(store, datetime(2024, 1, 1, 12, 0, 0))
        recent = _seed_archive(store, FIRST)
        memory_gateway.objects[old] = b'old'
        memory_gateway.objects[recent] = b'recent'

        outcome = CleanExecutor(settings, memory_gateway, now=_clock(SECOND)).execute()

        assert outcome.local.deleted == [old]
        assert outcome.remote.deleted == [old]
        assert store.names() == [recent]
        assert CycleRun.latest('clean').status == 'success'


class TestRestoreExecutor:
    def test_restore_is_recorded(self, db, settings, source_tree, tmp_path):
        outcome = BackupExecutor(settings, now=_clock(FIRST)).execute()
        target = tmp_path / 'restored'

        report = RestoreExecutor(str(outcome.path), str(target)).execute()

        assert report.ok
        assert (target / 'project' / 'project' / 'app.py').read_text() == 'print("hello")\n'
        run = CycleRun.latest('restore')
        assert run.status == 'success'
        assert run.archive_name == outcome.entry.name

    def test_missing_archive_is_recorded(self, db, tmp_path):
        with pytest.raises(RestoreError):
            RestoreExecutor(str(tmp_path / 'missing.tar.zst'), str(tmp_path / 'out')).execute()

        assert CycleRun.latest('restore').status == 'failed'
