"""
Restore archives into a target directory.

Restore runs in two passes over the archive:
1. verification - decompress and walk every member, rejecting the whole
   archive if any member is unsafe (absolute path, ``..`` segment, link or
   device); nothing is written in this pass
2. extraction - write directories and regular files under the target,
   preserving mode bits and mtimes; a failing entry is recorded and the
   rest continue
"""

import logging
import os
import shutil
import tarfile
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import BinaryIO, Callable, Dict, Iterator, List, Optional

import zstandard as zstd

from zesty_backup.errors import CorruptArchiveError, PathTraversalError, RestoreError
from .compression import PART_SUFFIX
from .manifest import in_flight


logger = logging.getLogger(__name__)

ZSTD_MAGIC = b'\x28\xb5\x2f\xfd'
READ_CHUNK_SIZE = 1024 * 1024


@dataclass
class RestoreReport:
    archive: str
    target: str
    extracted: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> dict:
        return {
            'archive': self.archive,
            'target': self.target,
            'extracted': len(self.extracted),
            'failed': self.failed,
            'ok': self.ok,
        }


def is_zstd(path) -> bool:
    with open(path, 'rb') as f:
        return f.read(4) == ZSTD_MAGIC


@contextmanager
def open_tar_stream(path) -> Iterator[tarfile.TarFile]:
    """Open an archive as a forward-only tar stream, decompressing zstd if needed."""
    with open(path, 'rb') as raw:
        if raw.read(4) == ZSTD_MAGIC:
            raw.seek(0)
            reader = zstd.ZstdDecompressor().stream_reader(raw, closefd=False)
            with reader, tarfile.open(fileobj=reader, mode='r|') as tar:
                yield tar
        else:
            raw.seek(0)
            with tarfile.open(fileobj=raw, mode='r|') as tar:
                yield tar


def unsafe_reason(member: tarfile.TarInfo) -> Optional[str]:
    """Why a member may not be extracted, or None if it is safe."""
    name = member.name
    if name.startswith('/') or name.startswith('\\') or (len(name) > 1 and name[1] == ':'):
        return 'absolute path'
    if '..' in PurePosixPath(name.replace('\\', '/')).parts:
        return 'parent directory reference'
    if member.issym() or member.islnk():
        return 'link member'
    if not (member.isfile() or member.isdir()):
        return 'special file'
    return None


class RestoreEngine:
    """
    Verifies and extracts archives, fetching remote ones through the gateway.
    """

    def __init__(self, gateway=None, work_dir: Optional[str] = None):
        """
        Args:
            gateway: Remote storage gateway for restoring by remote name
            work_dir: Directory for downloaded archives (default: system temp)
        """
        self.gateway = gateway
        self.work_dir = work_dir

    def fetch(self, name: str, output_dir) -> Path:
        """
        Download a remote archive.

        The file is written as ``<name>.part`` and renamed once complete.

        Raises:
            RestoreError: If no gateway is configured or the output is not writable
            ProviderError: If the download fails
        """
        if self.gateway is None:
            raise RestoreError("Remote storage is not configured")

        name = PurePosixPath(name).name
        output = Path(output_dir)
        try:
            output.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise RestoreError(f"Cannot create output directory {output}: {e}")

        final_path = output / name
        part_path = output / (name + PART_SUFFIX)
        with in_flight.hold(name):
            try:
                with open(part_path, 'wb') as sink:
                    written = self.gateway.get(name, sink)
                os.replace(part_path, final_path)
            except BaseException:
                if part_path.exists():
                    part_path.unlink()
                raise

        logger.info(f"Downloaded {name} ({written / 1024 / 1024:.2f} MB) to {final_path}")
        return final_path

    def verify(self, path) -> int:
        """
        Read the whole archive and check every member.

        Returns:
            Number of members

        Raises:
            CorruptArchiveError: If decompression or the tar structure fails
            PathTraversalError: If a member would escape the target
        """
        count = 0
        try:
            with open_tar_stream(path) as tar:
                for member in tar:
                    reason = unsafe_reason(member)
                    if reason:
                        raise PathTraversalError(
                            f"Refusing to restore {os.path.basename(str(path))}: "
                            f"unsafe member {member.name!r} ({reason})",
                            member.name,
                        )
                    if member.isfile():
                        _drain(tar.extractfile(member))
                    count += 1
        except (tarfile.TarError, zstd.ZstdError, EOFError) as e:
            raise CorruptArchiveError(f"Archive {os.path.basename(str(path))} is corrupt: {e}") from e
        except OSError as e:
            if isinstance(e, FileNotFoundError):
                raise RestoreError(f"Archive not found: {path}") from e
            raise CorruptArchiveError(f"Archive {os.path.basename(str(path))} could not be read: {e}") from e
        return count

    def restore(self, archive: str, target: str,
                cancellation_check: Optional[Callable[[], None]] = None) -> RestoreReport:
        """
        Restore a local archive path or a remote archive name into target.

        Args:
            archive: Local path, or a remote name when it does not exist locally
            target: Target directory, created if missing
            cancellation_check: Optional check called between entries

        Returns:
            RestoreReport; ``ok`` is False when any entry failed

        Raises:
            RestoreError: If the archive is corrupt, unsafe or unavailable
        """
        download_dir = None
        path = Path(archive)
        try:
            if not path.exists():
                if self.gateway is None:
                    raise RestoreError(f"Archive not found: {archive}")
                download_dir = tempfile.mkdtemp(prefix='zesty_restore_', dir=self.work_dir)
                path = self.fetch(archive, download_dir)

            members = self.verify(path)
            logger.info(f"Verified {path.name}: {members} members")

            target_dir = Path(target)
            try:
                target_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise RestoreError(f"Cannot create target directory {target_dir}: {e}")

            report = RestoreReport(archive=str(archive), target=str(target_dir))
            self._extract(path, target_dir, report, cancellation_check)

        finally:
            if download_dir:
                shutil.rmtree(download_dir, ignore_errors=True)

        logger.info(
            f"Restore of {report.archive} finished: {len(report.extracted)} extracted, "
            f"{len(report.failed)} failed"
        )
        return report

    def _extract(self, path: Path, target: Path, report: RestoreReport,
                 cancellation_check: Optional[Callable[[], None]]):
        directories = []
        try:
            with open_tar_stream(path) as tar:
                for member in tar:
                    if cancellation_check:
                        cancellation_check()
                    dest = target.joinpath(*PurePosixPath(member.name).parts)
                    try:
                        if member.isdir():
                            dest.mkdir(parents=True, exist_ok=True)
                            directories.append((dest, member))
                        else:
                            self._write_file(tar, member, dest)
                    except OSError as e:
                        logger.warning(f"Failed to restore {member.name}: {e}")
                        report.failed[member.name] = str(e)
                        continue
                    report.extracted.append(member.name)
        except (tarfile.TarError, zstd.ZstdError, EOFError) as e:
            raise CorruptArchiveError(f"Archive {path.name} became unreadable during extraction: {e}") from e

        # Directory metadata last, so writing files does not bump their mtimes
        for dest, member in reversed(directories):
            try:
                os.chmod(dest, member.mode & 0o7777)
                os.utime(dest, (member.mtime, member.mtime))
            except OSError as e:
                logger.warning(f"Could not set metadata on {dest}: {e}")

    @staticmethod
    def _write_file(tar: tarfile.TarFile, member: tarfile.TarInfo, dest: Path):
        dest.parent.mkdir(parents=True, exist_ok=True)
        source = tar.extractfile(member)
        with open(dest, 'wb') as f:
            if source is not None:
                shutil.copyfileobj(source, f, READ_CHUNK_SIZE)
        os.chmod(dest, member.mode & 0o7777)
        os.utime(dest, (member.mtime, member.mtime))


def _drain(fileobj: Optional[BinaryIO]):
    if fileobj is None:
        return
    while fileobj.read(READ_CHUNK_SIZE):
        pass
