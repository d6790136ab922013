"""
Remote storage gateway interface.

Every provider adapter exposes the same four operations on flat archive
names:
- put(name, stream): upload or overwrite, returns the remote identifier
- get(name, sink): download into a binary sink, returns bytes written
- list(prefix): complete listing, pagination handled by the adapter
- delete(name): remove; deleting a missing object is a no-op

Adapters classify failures as TransientProviderError (worth retrying) or
PermanentProviderError. Retry policy lives in RetryingGateway, not here.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import BinaryIO, Callable, List, Optional, Protocol, runtime_checkable

from zesty_backup.errors import PermanentProviderError, TransientProviderError


CHUNK_SIZE = 8 * 1024 * 1024


@dataclass(frozen=True)
class RemoteObject:
    name: str
    size: int = 0
    modified: Optional[datetime] = None


@runtime_checkable
class RemoteStorageGateway(Protocol):
    provider: str

    def put(self, name: str, stream: BinaryIO, cancellation_check: Optional[Callable[[], None]] = None) -> str:
        ...

    def get(self, name: str, sink: BinaryIO) -> int:
        ...

    def list(self, prefix: str = '') -> List[RemoteObject]:
        ...

    def delete(self, name: str) -> None:
        ...


class KeyPrefixMixin:
    """Maps flat archive names to keys under a prefix, e.g. ``backups/``."""

    key_prefix = 'backups/'

    def _key(self, name: str) -> str:
        return f"{self.key_prefix}{name}"

    def _name(self, key: str) -> Optional[str]:
        if not key.startswith(self.key_prefix):
            return None
        name = key[len(self.key_prefix):]
        # Skip anything nested deeper than the prefix
        if not name or '/' in name:
            return None
        return name


def stream_size(stream: BinaryIO) -> int:
    """Bytes remaining from the current position of a seekable stream."""
    start = stream.tell()
    stream.seek(0, 2)
    end = stream.tell()
    stream.seek(start)
    return end - start


def copy_stream(source, sink: BinaryIO, chunk_size: int = CHUNK_SIZE,
                cancellation_check: Optional[Callable[[], None]] = None) -> int:
    """Copy a readable into a sink in chunks, returning bytes written."""
    written = 0
    while True:
        if cancellation_check:
            cancellation_check()
        chunk = source.read(chunk_size)
        if not chunk:
            break
        sink.write(chunk)
        written += len(chunk)
    return written


def write_chunks(chunks, sink: BinaryIO) -> int:
    written = 0
    for chunk in chunks:
        if chunk:
            sink.write(chunk)
            written += len(chunk)
    return written


def error_for_status(status: int, message: str, provider: str, operation: str):
    """
    Build the provider error for an HTTP status.

    429 and 5xx are transient; everything else is permanent.
    """
    if status == 429 or status >= 500 or status == 408:
        return TransientProviderError(message, provider=provider, operation=operation)
    return PermanentProviderError(message, provider=provider, operation=operation)
