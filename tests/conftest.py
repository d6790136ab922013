"""
Shared pytest fixtures for zesty-backup tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Settings built from TOML-shaped dicts
- Source trees and backup directories
- Fakes for external services (command runner, remote storage)
"""

from datetime import datetime

import pytest
import boto3
from moto import mock_aws

from zesty_backup import create_app, db as _db
from zesty_backup.backup.storage.base import RemoteObject
from zesty_backup.errors import PermanentProviderError
from zesty_backup.settings import parse_settings
from zesty_backup.utils.commands import CommandResult


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing', {
        'LOG_DIR': str(tmp_path / 'logs'),
        'TEMP_DIR': str(tmp_path / 'temp'),
        'SETTINGS_FILE': str(tmp_path / 'config.toml'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables inside an app context.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a project tree to back up.

    Creates:
    - app.py
    - README.md
    - src/module.py
    - node_modules/dep.js (excluded by default settings)
    - debug.log (excluded by default settings)
    """
    project = tmp_path / 'project'
    (project / 'src').mkdir(parents=True)
    (project / 'node_modules').mkdir()

    (project / 'app.py').write_text('print("hello")\n')
    (project / 'README.md').write_text('# Project\n')
    (project / 'src' / 'module.py').write_text('VALUE = 1\n')
    (project / 'node_modules' / 'dep.js').write_text('module.exports = {}\n')
    (project / 'debug.log').write_text('noise\n')

    return project


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def make_settings(tmp_path, source_tree, backup_dir):
    """
    Factory building Settings from TOML-shaped sections.

    Sections passed as keyword arguments are merged over a minimal
    config pointing at source_tree and backup_dir.
    """
    def _make(environ=None, **sections):
        data = {
            'storage': {'provider': 's3', 'bucket': 'test-bucket', 'region': 'us-east-1',
                        'access_key': 'test-access', 'secret_key': 'test-secret'},
            'backup': {
                'local_backup_dir': str(backup_dir),
                'project_path': str(source_tree),
                'retention_days': 7,
                'compression_level': 3,
                'exclude': ['node_modules', '*.log'],
            },
            'daemon': {'pid_file': str(tmp_path / 'zesty.pid')},
            'retry': {'max_attempts': 3, 'base_delay': 0.0, 'max_delay': 0.0},
            'logging': {'level': 'debug', 'log_dir': str(tmp_path / 'logs')},
        }
        for name, section in sections.items():
            data.setdefault(name, {}).update(section)
        return parse_settings(data, environ=environ or {})

    return _make


@pytest.fixture
def settings(make_settings):
    return make_settings()


class FakeRunner:
    """
    Stand-in for run_command.

    Results are keyed by program name; unknown programs succeed with
    empty output. Every call is recorded. When stdout_path is given the
    result's stdout is written there, as run_command does.
    """

    def __init__(self, results=None):
        self.results = dict(results or {})
        self.calls = []

    def __call__(self, argv, env=None, timeout=None, stdout_path=None):
        self.calls.append({'argv': list(argv), 'env': env, 'timeout': timeout, 'stdout_path': stdout_path})
        result = self.results.get(argv[0], CommandResult(0, b'', b''))
        if callable(result):
            result = result(list(argv))
        if stdout_path is not None:
            with open(stdout_path, 'wb') as f:
                f.write(result.stdout)
            result = CommandResult(result.returncode, b'', result.stderr, result.timed_out)
        return result

    def programs(self):
        return [call['argv'][0] for call in self.calls]


@pytest.fixture
def fake_runner():
    return FakeRunner()


@pytest.fixture
def make_runner():
    """Factory for FakeRunner with per-program results."""
    return FakeRunner


class MemoryGateway:
    """
    In-memory remote storage implementing the gateway operations.

    Set ``fail`` to a {name: exception} mapping to make put/get of a name raise.
    """

    provider = 'memory'

    def __init__(self):
        self.objects = {}
        self.modified = {}
        self.fail = {}
        self.calls = []

    def put(self, name, stream, cancellation_check=None):
        self.calls.append(('put', name))
        if name in self.fail:
            raise self.fail[name]
        if cancellation_check:
            cancellation_check()
        self.objects[name] = stream.read()
        self.modified[name] = datetime.now()
        return f"memory/{name}"

    def get(self, name, sink):
        self.calls.append(('get', name))
        if name in self.fail:
            raise self.fail[name]
        if name not in self.objects:
            raise PermanentProviderError(f"{name} not found", self.provider, 'get')
        sink.write(self.objects[name])
        return len(self.objects[name])

    def list(self, prefix=''):
        self.calls.append(('list', prefix))
        return [
            RemoteObject(name=name, size=len(data), modified=self.modified.get(name))
            for name, data in sorted(self.objects.items())
            if name.startswith(prefix)
        ]

    def delete(self, name):
        self.calls.append(('delete', name))
        self.objects.pop(name, None)
        self.modified.pop(name, None)


@pytest.fixture
def memory_gateway():
    return MemoryGateway()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        client = boto3.client('s3', region_name='us-east-1')
        client.create_bucket(Bucket='test-bucket')
        yield client
