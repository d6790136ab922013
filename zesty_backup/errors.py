"""
Error types for zesty-backup.

Every error carries the process exit code the CLI reports for it, so a
failed scheduled run can be told apart from a misconfiguration by the
caller without parsing log output.
"""

from enum import IntEnum
from typing import List, Optional


class ExitCode(IntEnum):
    SUCCESS = 0
    FAILURE = 1
    CONFIG = 2
    SCAN = 3
    ARCHIVE = 4
    PROVIDER = 5
    RETENTION = 6
    RESTORE = 7
    TIMEOUT = 8


class BackupError(Exception):
    """Base class for all zesty-backup errors."""
    exit_code = ExitCode.FAILURE


class ConfigError(BackupError):
    """Raised when configuration is missing or invalid."""
    exit_code = ExitCode.CONFIG


class ScanError(BackupError):
    """Raised when a source root cannot be scanned."""
    exit_code = ExitCode.SCAN


class ArchiveBuildError(BackupError):
    """Raised when archive creation fails."""
    exit_code = ExitCode.ARCHIVE


class DumpError(ArchiveBuildError):
    """Raised when a database dump command fails."""
    pass


class ProviderError(BackupError):
    """Raised when a remote storage operation fails."""
    exit_code = ExitCode.PROVIDER

    def __init__(self, message: str, provider: Optional[str] = None, operation: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.operation = operation


class TransientProviderError(ProviderError):
    """Provider failure that may succeed on retry (timeouts, 5xx, throttling)."""
    pass


class PermanentProviderError(ProviderError):
    """Provider failure that will not succeed on retry (auth, not found, bad request)."""
    pass


class RetentionError(BackupError):
    """Raised when one or more archives could not be removed."""
    exit_code = ExitCode.RETENTION

    def __init__(self, message: str, failures: Optional[List[str]] = None):
        super().__init__(message)
        self.failures = failures or []


class RestoreError(BackupError):
    """Raised when a restore cannot proceed."""
    exit_code = ExitCode.RESTORE


class CorruptArchiveError(RestoreError):
    """Raised when an archive fails decompression or tar verification."""
    pass


class PathTraversalError(RestoreError):
    """Raised when an archive member would be written outside the target."""

    def __init__(self, message: str, member: str):
        super().__init__(message)
        self.member = member


class CycleTimeout(BackupError):
    """Raised by a deadline check when a cycle exceeds its time budget."""
    exit_code = ExitCode.TIMEOUT
