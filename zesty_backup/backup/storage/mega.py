"""
MEGA adapter driving the MEGAcmd command-line tools.

MEGA encrypts client-side, so there is no usable REST API; MEGAcmd
(mega-login, mega-put, mega-mv, mega-get, mega-ls, mega-rm) does the
work. Streams are staged through a temporary file because MEGAcmd only
handles paths.
"""

import logging
import os
import re
import shutil
import tempfile
from datetime import datetime
from typing import BinaryIO, Callable, List, Optional

from zesty_backup.errors import ConfigError, PermanentProviderError, ProviderError, TransientProviderError
from zesty_backup.utils.commands import COMMAND_NOT_FOUND, CommandResult, CommandRunner, run_command
from .base import RemoteObject, copy_stream


logger = logging.getLogger(__name__)

# FLAGS VERS SIZE DATE TIME NAME, e.g. "----    1     10485 15Jan2024 10:30:00 backup.tar.zst"
LS_LINE_RE = re.compile(
    r'^(?P<flags>[-a-zA-Z]{4})\s+(?P<vers>\d+|-)\s+(?P<size>\d+|-)\s+'
    r'(?P<date>\d{2}[A-Za-z]{3}\d{4} \d{2}:\d{2}:\d{2})\s+(?P<name>.+)$'
)
LS_DATE_FORMAT = '%d%b%Y %H:%M:%S'

TRANSIENT_MARKERS = ('timeout', 'timed out', 'connection', 'network', 'try again', 'temporarily')
NOT_FOUND_MARKERS = ("couldn't find", 'not found', 'no such file')
UPLOADING_SUFFIX = '.uploading'


class MegaStorage:
    provider = 'mega'

    def __init__(self, email: str, password: str, folder: str = '/Backups',
                 runner: CommandRunner = run_command, timeout: Optional[float] = 3600):
        if not email or not password:
            raise ConfigError("mega requires storage.account_name (email) and storage.account_key (password)")
        self.email = email
        self.password = password
        self.folder = '/' + (folder or '/Backups').strip('/')
        self.runner = runner
        self.timeout = timeout
        self._logged_in = False

    def _run(self, operation: str, argv: List[str]) -> CommandResult:
        result = self.runner(argv, timeout=self.timeout)
        if result.returncode == COMMAND_NOT_FOUND:
            raise PermanentProviderError(
                f"{argv[0]} not found; install MEGAcmd from https://mega.nz/cmd", self.provider, operation
            )
        return result

    def _fail(self, operation: str, result: CommandResult) -> ProviderError:
        text = result.error_text() or result.stdout.decode('utf-8', errors='replace').strip()
        message = f"mega {operation} failed (exit {result.returncode}): {text}"
        lowered = text.lower()
        if result.returncode == -1 or any(marker in lowered for marker in TRANSIENT_MARKERS):
            return TransientProviderError(message, self.provider, operation)
        return PermanentProviderError(message, self.provider, operation)

    def _login(self, operation: str):
        if self._logged_in:
            return
        whoami = self._run(operation, ['mega-whoami'])
        if whoami.ok and self.email.lower() in whoami.stdout.decode('utf-8', errors='replace').lower():
            self._logged_in = True
            return

        logger.info("Logging into MEGA...")
        result = self._run(operation, ['mega-login', self.email, self.password])
        if not result.ok:
            raise self._fail(operation, result)
        self._logged_in = True

    def _path(self, name: str) -> str:
        return f"{self.folder}/{name}"

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        self._login('put')
        staging = tempfile.mkdtemp(prefix='zesty-mega-')
        try:
            local_path = os.path.join(staging, name)
            with open(local_path, 'wb') as f:
                copy_stream(stream, f, cancellation_check=cancellation_check)

            # mega-put refuses to overwrite; upload beside the target and swap it in
            # so a failed upload leaves the previous copy in place
            target = self._path(name)
            uploading = target + UPLOADING_SUFFIX
            self._run('put', ['mega-rm', '-f', uploading])
            result = self._run('put', ['mega-put', '-c', local_path, uploading])
            if not result.ok:
                raise self._fail('put', result)

            self._run('put', ['mega-rm', '-f', target])
            result = self._run('put', ['mega-mv', uploading, target])
            if not result.ok:
                raise self._fail('put', result)
            return target
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def get(self, name: str, sink: BinaryIO) -> int:
        self._login('get')
        staging = tempfile.mkdtemp(prefix='zesty-mega-')
        try:
            local_path = os.path.join(staging, name)
            result = self._run('get', ['mega-get', self._path(name), local_path])
            if not result.ok:
                raise self._fail('get', result)
            with open(local_path, 'rb') as f:
                return copy_stream(f, sink)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    def list(self, prefix: str = '') -> List[RemoteObject]:
        self._login('list')
        result = self._run('list', ['mega-ls', '-l', self.folder])
        if not result.ok:
            if _is_not_found(result):
                return []
            raise self._fail('list', result)
        return [obj for obj in parse_ls_output(result.stdout.decode('utf-8', errors='replace'))
                if obj.name.startswith(prefix) and not obj.name.endswith(UPLOADING_SUFFIX)]

    def delete(self, name: str) -> None:
        self._login('delete')
        result = self._run('delete', ['mega-rm', '-f', self._path(name)])
        if not result.ok and not _is_not_found(result):
            raise self._fail('delete', result)


def parse_ls_output(output: str) -> List[RemoteObject]:
    """
    Parse ``mega-ls -l`` output into files.

    Folder entries (flags starting with ``d``) are skipped.

    Raises:
        ProviderError: If a non-header line does not match the expected layout
    """
    objects = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith('FLAGS') or line.endswith(':'):
            continue
        match = LS_LINE_RE.match(line)
        if match is None:
            raise PermanentProviderError(f"Unparsable mega-ls output: {line!r}", 'mega', 'list')
        if match.group('flags').startswith('d'):
            continue
        size = match.group('size')
        objects.append(RemoteObject(
            name=match.group('name'),
            size=int(size) if size != '-' else 0,
            modified=datetime.strptime(match.group('date'), LS_DATE_FORMAT),
        ))
    return objects


def _is_not_found(result: CommandResult) -> bool:
    text = (result.error_text() + result.stdout.decode('utf-8', errors='replace')).lower()
    return any(marker in text for marker in NOT_FOUND_MARKERS)
