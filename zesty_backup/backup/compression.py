"""
Archive builder for backup archives.

Archives are POSIX tar streams:
- level 0: stored as plain ``.tar``
- levels 1-22: zstandard-compressed ``.tar.zst``

Output is written to ``<name>.part`` and renamed on success, so a partial
archive is never visible under its final name.
"""

import io
import logging
import os
import tarfile
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterable, List, Optional

import zstandard as zstd

from zesty_backup.errors import ArchiveBuildError, BackupError, ConfigError


logger = logging.getLogger(__name__)

MAX_COMPRESSION_LEVEL = 22
DEFAULT_COMPRESSION_LEVEL = 3
PART_SUFFIX = '.part'


@dataclass(frozen=True)
class ExtraEntry:
    """Archive member that does not come from the scanner (dumps, command output)."""
    arcname: str
    path: Optional[str] = None
    data: Optional[bytes] = None
    mtime: Optional[float] = None


@dataclass
class BuildResult:
    path: str
    size: int = 0
    files_added: int = 0
    skipped: List[str] = field(default_factory=list)


def validate_compression_level(level) -> int:
    """
    Check a compression level.

    Raises:
        ConfigError: If level is not an integer in [0, MAX_COMPRESSION_LEVEL]
    """
    if isinstance(level, bool) or not isinstance(level, int):
        raise ConfigError(f"Compression level must be an integer, got {level!r}")
    if not 0 <= level <= MAX_COMPRESSION_LEVEL:
        raise ConfigError(
            f"Invalid compression level: {level}. "
            f"Valid range: 0-{MAX_COMPRESSION_LEVEL}"
        )
    return level


def archive_extension(level: int) -> str:
    return 'tar' if level == 0 else 'tar.zst'


class CheckedReader:
    """
    File wrapper that calls a cancellation check before every read.

    tarfile copies members in fixed-size chunks, so this gives a check
    between chunks without changing how members are written.
    """

    def __init__(self, fileobj: BinaryIO, cancellation_check: Optional[Callable[[], None]]):
        self._fileobj = fileobj
        self._check = cancellation_check

    def read(self, size: int = -1) -> bytes:
        if self._check:
            self._check()
        return self._fileobj.read(size)


class ArchiveBuilder:
    """
    Streams scanned files and extra entries into a single archive.

    Files are copied in chunks, never loaded whole into memory.
    """

    def __init__(self, compression_level: int = DEFAULT_COMPRESSION_LEVEL,
                 cancellation_check: Optional[Callable[[], None]] = None):
        """
        Initialize archive builder.

        Args:
            compression_level: 0 for plain tar, 1-22 for zstd
            cancellation_check: Optional function called between entries and chunks

        Raises:
            ConfigError: If compression_level is out of range
        """
        self.compression_level = validate_compression_level(compression_level)
        self.cancellation_check = cancellation_check

    @property
    def extension(self) -> str:
        return archive_extension(self.compression_level)

    def build(self, files: Iterable, output_path: str, extra_entries: Iterable[ExtraEntry] = ()) -> BuildResult:
        """
        Create an archive.

        Args:
            files: Iterable of scanned files (objects with ``path`` and ``arcname``)
            output_path: Final archive path
            extra_entries: Additional members written after the scanned files

        Returns:
            BuildResult for the finalized archive

        Raises:
            ArchiveBuildError: If the archive cannot be written
            CycleTimeout: If the cancellation check fires
        """
        output_path = str(output_path)
        part_path = output_path + PART_SUFFIX
        result = BuildResult(path=output_path)

        try:
            with open(part_path, 'wb') as raw:
                if self.compression_level == 0:
                    self._write_tar(raw, files, extra_entries, result)
                else:
                    cctx = zstd.ZstdCompressor(level=self.compression_level)
                    with cctx.stream_writer(raw, closefd=False) as compressor:
                        self._write_tar(compressor, files, extra_entries, result)
                raw.flush()
                os.fsync(raw.fileno())

            os.replace(part_path, output_path)
            result.size = os.path.getsize(output_path)

        except Exception as e:
            # Never leave a partial archive behind
            self._remove_partial(part_path)
            if isinstance(e, BackupError):
                raise
            raise ArchiveBuildError(f"Failed to create archive {os.path.basename(output_path)}: {e}") from e

        logger.info(
            f"Archive created: {os.path.basename(output_path)} "
            f"({result.files_added} files, {result.size / 1024 / 1024:.2f} MB)"
        )
        return result

    def _write_tar(self, stream, files: Iterable, extra_entries: Iterable[ExtraEntry], result: BuildResult):
        with tarfile.open(fileobj=stream, mode='w|', format=tarfile.PAX_FORMAT) as tar:
            for scanned in files:
                self._check()
                if self._add_file(tar, scanned.path, scanned.arcname):
                    result.files_added += 1
                else:
                    result.skipped.append(scanned.arcname)

            for extra in extra_entries:
                self._check()
                if extra.data is not None:
                    self._add_bytes(tar, extra.arcname, extra.data, extra.mtime)
                    result.files_added += 1
                elif self._add_file(tar, extra.path, extra.arcname):
                    result.files_added += 1
                else:
                    result.skipped.append(extra.arcname)

    def _add_file(self, tar: tarfile.TarFile, path: str, arcname: str) -> bool:
        """
        Add a file by streaming its contents.

        Returns:
            False if the file vanished or became unreadable since the scan
        """
        try:
            f = open(path, 'rb')
        except (FileNotFoundError, PermissionError) as e:
            logger.warning(f"Skipping {arcname}: {e}")
            return False

        with f:
            tarinfo = tar.gettarinfo(arcname=arcname, fileobj=f)
            if not tarinfo.isfile():
                logger.warning(f"Skipping {arcname}: not a regular file")
                return False
            tar.addfile(tarinfo, CheckedReader(f, self.cancellation_check))
        return True

    def _add_bytes(self, tar: tarfile.TarFile, arcname: str, data: bytes, mtime: Optional[float]):
        tarinfo = tarfile.TarInfo(name=arcname)
        tarinfo.size = len(data)
        tarinfo.mode = 0o644
        tarinfo.mtime = int(mtime if mtime is not None else time.time())
        tar.addfile(tarinfo, io.BytesIO(data))

    def _check(self):
        if self.cancellation_check:
            self.cancellation_check()

    @staticmethod
    def _remove_partial(part_path: str):
        try:
            os.remove(part_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove partial archive {part_path}: {e}")
