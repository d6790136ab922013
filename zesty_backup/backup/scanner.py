"""
Change scanner for backup sources.

Walks one or more source roots and yields the files that belong in the
next archive:
- full mode: every file not excluded
- incremental mode: files modified after the base archive's scan started,
  plus files whose path was not in the base archive's index

The walk is lazy and restartable: iterating the scanner again starts a
fresh walk.
"""

import logging
import os
import stat
from dataclasses import dataclass
from fnmatch import fnmatch
from pathlib import Path
from typing import FrozenSet, Iterable, Iterator, List, Optional, Set

from zesty_backup.errors import ScanError


logger = logging.getLogger(__name__)

GLOB_CHARS = '*?['


@dataclass(frozen=True)
class SourceRoot:
    """
    A path to back up and the archive prefix it is stored under.

    Missing optional roots are reported as warnings; a missing required
    root fails the scan.
    """
    path: Path
    arcname: str
    required: bool = False


@dataclass(frozen=True)
class ScannedFile:
    path: str
    arcname: str
    size: int
    mtime: float


@dataclass(frozen=True)
class IncrementalMarker:
    """Change boundary taken from the base archive's manifest."""
    timestamp: float
    known: FrozenSet[str] = frozenset()


def is_excluded(rel_path: str, name: str, patterns: Iterable[str]) -> bool:
    """
    Check a path against exclude patterns.

    Patterns with glob characters are matched against the entry name and
    the relative path; plain patterns match as substrings of the relative
    path, so ``node_modules`` excludes that directory at any depth.
    """
    for pattern in patterns:
        if any(c in pattern for c in GLOB_CHARS):
            if fnmatch(name, pattern) or fnmatch(rel_path, pattern):
                return True
        elif pattern in rel_path:
            return True
    return False


class ChangeScanner:
    """Lazy, restartable walk over source roots."""

    def __init__(self, roots: Iterable[SourceRoot], exclude: Iterable[str] = (),
                 since: Optional[IncrementalMarker] = None):
        """
        Initialize change scanner.

        Args:
            roots: Source roots to walk, in archive order
            exclude: Exclude patterns (see is_excluded)
            since: Marker for incremental mode; None scans everything
        """
        self.roots = list(roots)
        self.exclude = tuple(exclude)
        self.since = since
        self.warnings: List[str] = []
        self.seen: Set[str] = set()

    @property
    def incremental(self) -> bool:
        return self.since is not None

    def __iter__(self) -> Iterator[ScannedFile]:
        self.warnings = []
        self.seen = set()
        for root in self.roots:
            yield from self._walk_root(root)

    def _walk_root(self, root: SourceRoot) -> Iterator[ScannedFile]:
        path = str(root.path)
        try:
            st = os.stat(path)
        except OSError as e:
            if root.required:
                raise ScanError(f"Cannot access source {path}: {e}") from e
            self._warn(f"Path does not exist or is unreadable: {path} ({e})")
            return

        if stat.S_ISDIR(st.st_mode):
            yield from self._walk_dir(root)
        elif stat.S_ISREG(st.st_mode):
            if is_excluded(os.path.basename(path), os.path.basename(path), self.exclude):
                return
            scanned = self._consider(path, root.arcname, st)
            if scanned:
                yield scanned
        else:
            self._warn(f"Skipping {path}: not a regular file or directory")

    def _walk_dir(self, root: SourceRoot) -> Iterator[ScannedFile]:
        visited = {os.path.realpath(root.path)}
        stack = [(str(root.path), '')]

        while stack:
            current, rel = stack.pop()
            try:
                with os.scandir(current) as it:
                    entries = sorted(it, key=lambda e: e.name)
            except OSError as e:
                if rel == '' and root.required:
                    raise ScanError(f"Cannot read source directory {current}: {e}") from e
                self._warn(f"Cannot read directory {current}: {e}")
                continue

            subdirs = []
            for entry in entries:
                child_rel = f"{rel}/{entry.name}" if rel else entry.name
                if is_excluded(child_rel, entry.name, self.exclude):
                    continue

                try:
                    is_dir = entry.is_dir(follow_symlinks=True)
                except OSError as e:
                    self._warn(f"Cannot stat {entry.path}: {e}")
                    continue

                if is_dir:
                    real = os.path.realpath(entry.path)
                    if real in visited:
                        self._warn(f"Skipping {entry.path}: directory already visited (symlink loop)")
                        continue
                    visited.add(real)
                    subdirs.append((entry.path, child_rel))
                    continue

                try:
                    st = entry.stat(follow_symlinks=True)
                except OSError as e:
                    # Broken symlink or file removed mid-scan
                    self._warn(f"Skipping {entry.path}: {e}")
                    continue

                if not stat.S_ISREG(st.st_mode):
                    continue

                scanned = self._consider(entry.path, f"{root.arcname}/{child_rel}", st)
                if scanned:
                    yield scanned

            stack.extend(reversed(subdirs))

    def _consider(self, path: str, arcname: str, st: os.stat_result) -> Optional[ScannedFile]:
        self.seen.add(arcname)
        if self.since is not None:
            if st.st_mtime <= self.since.timestamp and arcname in self.since.known:
                return None
        return ScannedFile(path=path, arcname=arcname, size=st.st_size, mtime=st.st_mtime)

    def _warn(self, message: str):
        logger.warning(message)
        self.warnings.append(message)
