"""
External command execution.

Database dumps, system snapshots and the MEGA provider all shell out.
They take a runner with the signature of run_command so tests can
substitute a fake.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Sequence


logger = logging.getLogger(__name__)

COMMAND_NOT_FOUND = 127


@dataclass
class CommandResult:
    returncode: int
    stdout: bytes = b''
    stderr: bytes = b''
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def error_text(self) -> str:
        return self.stderr.decode('utf-8', errors='replace').strip()


CommandRunner = Callable[..., CommandResult]


def run_command(argv: Sequence[str], env: Optional[Mapping[str, str]] = None,
                timeout: Optional[float] = None, stdout_path: Optional[str] = None) -> CommandResult:
    """
    Run a command and capture its output.

    Args:
        argv: Program and arguments
        env: Extra environment variables merged over os.environ
        timeout: Seconds before the command is killed
        stdout_path: Stream stdout into this file instead of capturing it

    Returns:
        CommandResult; a missing executable is reported as exit code 127
    """
    full_env = None
    if env:
        full_env = dict(os.environ)
        full_env.update(env)

    logger.debug(f"Running command: {argv[0]}")
    out = open(stdout_path, 'wb') if stdout_path is not None else None
    try:
        completed = subprocess.run(
            list(argv),
            env=full_env,
            stdout=out if out is not None else subprocess.PIPE,
            stderr=subprocess.PIPE,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError:
        return CommandResult(COMMAND_NOT_FOUND, b'', f"{argv[0]}: command not found".encode())
    except subprocess.TimeoutExpired:
        return CommandResult(-1, b'', f"{argv[0]}: timed out after {timeout:.0f}s".encode(), timed_out=True)
    finally:
        if out is not None:
            out.close()

    return CommandResult(completed.returncode, completed.stdout or b'', completed.stderr or b'')
