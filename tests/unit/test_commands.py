"""
Unit tests for external command execution (zesty_backup/utils/commands.py).
"""

import sys

from zesty_backup.utils.commands import COMMAND_NOT_FOUND, run_command


class TestRunCommand:
    """Test run_command against real subprocesses."""

    def test_captures_output(self):
        result = run_command([sys.executable, '-c', 'import sys; sys.stdout.write("out"); sys.stderr.write("err")'])

        assert result.ok
        assert result.stdout == b'out'
        assert result.stderr == b'err'

    def test_extra_environment(self):
        result = run_command([sys.executable, '-c', 'import os; print(os.environ["ZESTY_TEST"])'],
                             env={'ZESTY_TEST': 'value'})

        assert result.stdout.strip() == b'value'

    def test_stdout_path_streams_to_file(self, tmp_path):
        dest = tmp_path / 'dump.sql'
        script = 'import sys\nfor i in range(1000):\n    sys.stdout.write("INSERT INTO t VALUES (%d);\\n" % i)'

        result = run_command([sys.executable, '-c', script], stdout_path=str(dest))

        assert result.ok
        assert result.stdout == b''
        lines = dest.read_text().splitlines()
        assert len(lines) == 1000
        assert lines[-1] == 'INSERT INTO t VALUES (999);'

    def test_stderr_still_captured_with_stdout_path(self, tmp_path):
        result = run_command([sys.executable, '-c', 'import sys; sys.stderr.write("denied"); sys.exit(2)'],
                             stdout_path=str(tmp_path / 'dump.sql'))

        assert result.returncode == 2
        assert result.error_text() == 'denied'

    def test_missing_executable(self):
        result = run_command(['zesty-no-such-program'])

        assert result.returncode == COMMAND_NOT_FOUND
        assert not result.timed_out
        assert 'command not found' in result.error_text()

    def test_timeout(self):
        result = run_command([sys.executable, '-c', 'import time; time.sleep(30)'], timeout=0.5)

        assert not result.ok
        assert result.timed_out
        assert 'timed out' in result.error_text()
