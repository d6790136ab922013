"""
Backup manifests, archive naming and the in-flight registry.

Every archive ``backup-YYYYMMDD-HHMMSS.tar[.zst]`` has a JSON sidecar
``<archive>.manifest.json`` describing it: kind (full or incremental),
scan start time, base archive and the index of paths seen. An archive
without a sidecar is read as a standalone full backup.
"""

import json
import logging
import os
import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Set

from .compression import archive_extension, PART_SUFFIX


logger = logging.getLogger(__name__)

ARCHIVE_NAME_RE = re.compile(r'^backup-(\d{8})-(\d{6})\.(tar|tar\.zst)$')
NAME_TIME_FORMAT = '%Y%m%d-%H%M%S'
MANIFEST_SUFFIX = '.manifest.json'


class BackupKind(str, Enum):
    FULL = 'full'
    INCREMENTAL = 'incremental'


@dataclass
class ManifestEntry:
    name: str
    kind: BackupKind
    created_at: datetime
    size: int = 0
    sources: List[str] = field(default_factory=list)
    base: Optional[str] = None
    index: List[str] = field(default_factory=list)
    uploaded_at: Optional[datetime] = None
    remote_id: Optional[str] = None

    @property
    def is_full(self) -> bool:
        return self.kind == BackupKind.FULL

    @property
    def is_uploaded(self) -> bool:
        return self.uploaded_at is not None

    def to_dict(self) -> dict:
        return {
            'name': self.name,
            'kind': self.kind.value,
            'created_at': self.created_at.isoformat(),
            'size': self.size,
            'sources': list(self.sources),
            'base': self.base,
            'index': list(self.index),
            'uploaded_at': self.uploaded_at.isoformat() if self.uploaded_at else None,
            'remote_id': self.remote_id,
        }

    def summary(self) -> dict:
        """Dict without the file index, for listings and the HTTP API."""
        data = self.to_dict()
        data['files'] = len(data.pop('index'))
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'ManifestEntry':
        uploaded_at = data.get('uploaded_at')
        return cls(
            name=data['name'],
            kind=BackupKind(data['kind']),
            created_at=datetime.fromisoformat(data['created_at']),
            size=int(data.get('size', 0)),
            sources=list(data.get('sources', [])),
            base=data.get('base'),
            index=list(data.get('index', [])),
            uploaded_at=datetime.fromisoformat(uploaded_at) if uploaded_at else None,
            remote_id=data.get('remote_id'),
        )

    @classmethod
    def from_json(cls, raw: bytes) -> 'ManifestEntry':
        return cls.from_dict(json.loads(raw))

    def to_json(self) -> bytes:
        return json.dumps(self.to_dict(), indent=2).encode('utf-8')

    @classmethod
    def standalone(cls, name: str, size: int = 0) -> 'ManifestEntry':
        """Entry for an archive with no sidecar: treated as a full backup."""
        return cls(
            name=name,
            kind=BackupKind.FULL,
            created_at=parse_archive_name(name) or datetime.fromtimestamp(0),
            size=size,
        )


def generate_archive_name(created_at: datetime, compression_level: int) -> str:
    """
    Generate archive name from its creation time.

    Example: backup-20240115-120000.tar.zst
    """
    return f"backup-{created_at.strftime(NAME_TIME_FORMAT)}.{archive_extension(compression_level)}"


def parse_archive_name(name: str) -> Optional[datetime]:
    """Return the timestamp encoded in an archive name, or None if it is not one."""
    match = ARCHIVE_NAME_RE.match(name)
    if not match:
        return None
    try:
        return datetime.strptime(f"{match.group(1)}-{match.group(2)}", NAME_TIME_FORMAT)
    except ValueError:
        return None


def is_archive_name(name: str) -> bool:
    return parse_archive_name(name) is not None


def manifest_name(archive_name: str) -> str:
    return archive_name + MANIFEST_SUFFIX


class ManifestStore:
    """
    Archives and sidecars in the local backup directory.

    Entries are always returned oldest first; names sort chronologically.
    """

    def __init__(self, backup_dir):
        self.backup_dir = Path(backup_dir)

    def archive_path(self, name: str) -> Path:
        return self.backup_dir / name

    def manifest_path(self, name: str) -> Path:
        return self.backup_dir / manifest_name(name)

    def names(self) -> List[str]:
        if not self.backup_dir.exists():
            return []
        return sorted(
            entry.name for entry in os.scandir(self.backup_dir)
            if entry.is_file() and is_archive_name(entry.name)
        )

    def load(self, name: str) -> ManifestEntry:
        """
        Load the manifest for an archive.

        Falls back to a standalone full entry when the sidecar is missing
        or unreadable.
        """
        sidecar = self.manifest_path(name)
        try:
            entry = ManifestEntry.from_json(sidecar.read_bytes())
        except FileNotFoundError:
            entry = ManifestEntry.standalone(name)
        except (ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable manifest {sidecar.name}: {e}")
            entry = ManifestEntry.standalone(name)

        try:
            entry.size = self.archive_path(name).stat().st_size
        except FileNotFoundError:
            pass
        return entry

    def entries(self) -> List[ManifestEntry]:
        return [self.load(name) for name in self.names()]

    def latest(self) -> Optional[ManifestEntry]:
        names = self.names()
        return self.load(names[-1]) if names else None

    def latest_full(self) -> Optional[ManifestEntry]:
        for name in reversed(self.names()):
            entry = self.load(name)
            if entry.is_full:
                return entry
        return None

    def save(self, entry: ManifestEntry):
        """Write a sidecar atomically."""
        target = self.manifest_path(entry.name)
        tmp = target.with_name(target.name + PART_SUFFIX)
        with open(tmp, 'wb') as f:
            f.write(entry.to_json())
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, target)

    def mark_uploaded(self, name: str, remote_id: Optional[str], when: datetime) -> ManifestEntry:
        entry = self.load(name)
        entry.uploaded_at = when
        entry.remote_id = remote_id
        self.save(entry)
        return entry

    def delete(self, name: str):
        """
        Delete an archive and its sidecar.

        Raises:
            OSError: If the archive cannot be removed
        """
        archive = self.archive_path(name)
        if archive.exists():
            archive.unlink()
        sidecar = self.manifest_path(name)
        if sidecar.exists():
            sidecar.unlink()

    def next_free_name(self, created_at: datetime, compression_level: int) -> str:
        """Archive name for created_at, moved forward a second at a time if taken."""
        stamp = created_at
        name = generate_archive_name(stamp, compression_level)
        while self.archive_path(name).exists() or self.archive_path(name + PART_SUFFIX).exists():
            stamp += timedelta(seconds=1)
            name = generate_archive_name(stamp, compression_level)
        return name


class InFlightRegistry:
    """
    Thread-safe set of archive names currently being uploaded or restored.

    Retention never deletes a name held here.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._holders: Dict[str, int] = {}

    def add(self, name: str):
        with self._lock:
            self._holders[name] = self._holders.get(name, 0) + 1

    def discard(self, name: str):
        with self._lock:
            count = self._holders.get(name, 0) - 1
            if count > 0:
                self._holders[name] = count
            else:
                self._holders.pop(name, None)

    def snapshot(self) -> Set[str]:
        with self._lock:
            return set(self._holders)

    def __contains__(self, name: str) -> bool:
        with self._lock:
            return name in self._holders

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        self.add(name)
        try:
            yield
        finally:
            self.discard(name)


in_flight = InFlightRegistry()
