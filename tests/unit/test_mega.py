"""
Unit tests for the MEGA adapter (zesty_backup/backup/storage/mega.py).
"""

import io
import os
from datetime import datetime

import pytest

from zesty_backup.backup.storage.mega import MegaStorage, parse_ls_output
from zesty_backup.errors import ConfigError, PermanentProviderError, TransientProviderError
from zesty_backup.utils.commands import CommandResult


LS_OUTPUT = """\
FLAGS VERS    SIZE      DATE       NAME
d---    -        -  10Jan2024 09:00:00 old
----    1    10485  15Jan2024 10:30:00 backup-20240115-103000.tar.zst
----    1      512  15Jan2024 10:30:01 backup-20240115-103000.tar.zst.manifest.json
"""


def _logged_in_runner(make_runner, **results):
    results.setdefault('mega-whoami', CommandResult(0, b'Account e-mail: me@example.com\n'))
    return make_runner(results)


class TestParseLsOutput:
    """Test mega-ls -l parsing."""

    def test_parses_files_and_skips_folders(self):
        objects = parse_ls_output(LS_OUTPUT)

        assert [o.name for o in objects] == [
            'backup-20240115-103000.tar.zst',
            'backup-20240115-103000.tar.zst.manifest.json',
        ]
        assert objects[0].size == 10485
        assert objects[0].modified == datetime(2024, 1, 15, 10, 30, 0)

    def test_empty_output(self):
        assert parse_ls_output('') == []

    def test_unparsable_line(self):
        with pytest.raises(PermanentProviderError):
            parse_ls_output('garbage that is not a listing')


class TestMegaStorage:
    """Test MegaStorage command orchestration."""

    def test_credentials_required(self):
        with pytest.raises(ConfigError):
            MegaStorage('', 'password')

    def test_login_when_session_missing(self, make_runner):
        runner = make_runner({
            'mega-whoami': CommandResult(57, b'', b'Not logged in'),
            'mega-ls': CommandResult(0, b''),
        })
        storage = MegaStorage('me@example.com', 'secret', runner=runner)

        storage.list()
        storage.list()

        assert runner.programs() == ['mega-whoami', 'mega-login', 'mega-ls', 'mega-ls']

    def test_put_replaces_remote_file(self, make_runner):
        uploaded = {}

        def put(argv):
            with open(argv[2], 'rb') as f:
                uploaded['data'] = f.read()
            return CommandResult(0)

        runner = _logged_in_runner(make_runner, **{'mega-put': put})
        storage = MegaStorage('me@example.com', 'secret', folder='/Backups', runner=runner)

        remote = storage.put('a.tar', io.BytesIO(b'payload'))

        assert remote == '/Backups/a.tar'
        assert uploaded['data'] == b'payload'
        assert [call['argv'] for call in runner.calls[1:]] == [
            ['mega-rm', '-f', '/Backups/a.tar.uploading'],
            ['mega-put', '-c', runner.calls[2]['argv'][2], '/Backups/a.tar.uploading'],
            ['mega-rm', '-f', '/Backups/a.tar'],
            ['mega-mv', '/Backups/a.tar.uploading', '/Backups/a.tar'],
        ]

    def test_failed_put_keeps_previous_copy(self, make_runner):
        runner = _logged_in_runner(make_runner, **{'mega-put': CommandResult(1, b'', b'Upload failed: over quota')})
        storage = MegaStorage('me@example.com', 'secret', folder='/Backups', runner=runner)

        with pytest.raises(PermanentProviderError):
            storage.put('a.tar', io.BytesIO(b'payload'))

        removed = [call['argv'][-1] for call in runner.calls if call['argv'][0] == 'mega-rm']
        assert removed == ['/Backups/a.tar.uploading']
        assert 'mega-mv' not in runner.programs()

    def test_list_hides_unfinished_uploads(self, make_runner):
        listing = (
            b'FLAGS VERS SIZE DATE NAME\n'
            b'----    1     10485 15Jan2024 10:30:00 a.tar\n'
            b'----    1       512 15Jan2024 10:31:00 b.tar.uploading\n'
        )
        runner = _logged_in_runner(make_runner, **{'mega-ls': CommandResult(0, listing)})

        names = [obj.name for obj in MegaStorage('me@example.com', 'secret', runner=runner).list()]

        assert names == ['a.tar']

    def test_get_copies_into_sink(self, make_runner):
        def get(argv):
            with open(argv[2], 'wb') as f:
                f.write(b'remote bytes')
            return CommandResult(0)

        runner = _logged_in_runner(make_runner, **{'mega-get': get})
        sink = io.BytesIO()

        written = MegaStorage('me@example.com', 'secret', runner=runner).get('a.tar', sink)

        assert written == len(b'remote bytes')
        assert sink.getvalue() == b'remote bytes'

    def test_delete_missing_is_noop(self, make_runner):
        runner = _logged_in_runner(make_runner, **{'mega-rm': CommandResult(2, b'', b"Couldn't find /Backups/a.tar")})

        MegaStorage('me@example.com', 'secret', runner=runner).delete('a.tar')

    def test_missing_megacmd_is_permanent(self, make_runner):
        runner = make_runner({'mega-whoami': CommandResult(127, b'', b'mega-whoami: command not found')})

        with pytest.raises(PermanentProviderError) as exc_info:
            MegaStorage('me@example.com', 'secret', runner=runner).list()
        assert 'MEGAcmd' in str(exc_info.value)

    def test_network_failure_is_transient(self, make_runner):
        runner = _logged_in_runner(make_runner, **{'mega-ls': CommandResult(1, b'', b'Connection reset by peer')})

        with pytest.raises(TransientProviderError):
            MegaStorage('me@example.com', 'secret', runner=runner).list()

    def test_staging_directory_is_removed(self, make_runner, tmp_path, monkeypatch):
        monkeypatch.setattr('tempfile.tempdir', str(tmp_path))
        runner = _logged_in_runner(make_runner, **{'mega-put': CommandResult(1, b'', b'Access denied')})

        with pytest.raises(PermanentProviderError):
            MegaStorage('me@example.com', 'secret', runner=runner).put('a.tar', io.BytesIO(b'x'))

        assert os.listdir(tmp_path) == []
