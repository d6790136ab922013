"""
Unit tests for archive creation (zesty_backup/backup/compression.py).

Tests ArchiveBuilder for plain tar and zstd archives.
"""

import io
import tarfile

import pytest
import zstandard as zstd

from zesty_backup.backup.compression import (
    ArchiveBuilder,
    ExtraEntry,
    archive_extension,
    validate_compression_level,
)
from zesty_backup.backup.scanner import ChangeScanner, ScannedFile, SourceRoot
from zesty_backup.errors import ArchiveBuildError, ConfigError, CycleTimeout


def _members(path):
    """Read member names and contents from a .tar or .tar.zst archive."""
    with open(path, 'rb') as raw:
        data = raw.read()
    if data[:4] == b'\x28\xb5\x2f\xfd':
        data = zstd.ZstdDecompressor().decompressobj().decompress(data)
    with tarfile.open(fileobj=io.BytesIO(data), mode='r:') as tar:
        return {m.name: tar.extractfile(m).read() for m in tar.getmembers() if m.isfile()}


class TestCompressionLevel:
    """Test compression level validation."""

    @pytest.mark.parametrize('level', [0, 1, 3, 22])
    def test_valid_levels(self, level):
        assert validate_compression_level(level) == level

    @pytest.mark.parametrize('level', [-1, 23, 100, '3', True, 2.5])
    def test_invalid_levels(self, level):
        """Test out-of-range and non-integer levels are rejected."""
        with pytest.raises(ConfigError):
            validate_compression_level(level)

    def test_extension(self):
        assert archive_extension(0) == 'tar'
        assert archive_extension(1) == 'tar.zst'
        assert archive_extension(22) == 'tar.zst'


class TestArchiveBuilder:
    """Test ArchiveBuilder."""

    def test_zstd_archive(self, source_tree, tmp_path):
        """Test a level 3 archive is zstd-compressed and holds every file."""
        scanner = ChangeScanner([SourceRoot(source_tree, 'project/app')], exclude=['node_modules', '*.log'])
        output = tmp_path / 'backup-20240115-120000.tar.zst'

        result = ArchiveBuilder(3).build(scanner, output)

        assert output.exists()
        assert not (tmp_path / 'backup-20240115-120000.tar.zst.part').exists()
        assert result.files_added == 3
        assert result.size == output.stat().st_size
        with open(output, 'rb') as f:
            assert f.read(4) == b'\x28\xb5\x2f\xfd'

        members = _members(output)
        assert members['project/app/app.py'] == b'print("hello")\n'
        assert set(members) == {'project/app/app.py', 'project/app/README.md', 'project/app/src/module.py'}

    def test_plain_tar_archive(self, source_tree, tmp_path):
        """Test level 0 writes an uncompressed tar."""
        scanner = ChangeScanner([SourceRoot(source_tree, 'p')], exclude=['node_modules', '*.log'])
        output = tmp_path / 'backup-20240115-120000.tar'

        ArchiveBuilder(0).build(scanner, output)

        assert tarfile.is_tarfile(output)
        assert 'p/src/module.py' in _members(output)

    def test_extra_entries(self, tmp_path):
        """Test in-memory data and file-backed extras are added after scanned files."""
        dump = tmp_path / 'db.sql'
        dump.write_bytes(b'CREATE TABLE t;')
        output = tmp_path / 'out.tar.zst'

        result = ArchiveBuilder(1).build([], output, [
            ExtraEntry(arcname='commands/docker_ps.txt', data=b'CONTAINER ID\n'),
            ExtraEntry(arcname='database/app.sql', path=str(dump)),
        ])

        members = _members(output)
        assert result.files_added == 2
        assert members['commands/docker_ps.txt'] == b'CONTAINER ID\n'
        assert members['database/app.sql'] == b'CREATE TABLE t;'

    def test_vanished_file_is_skipped(self, tmp_path):
        """Test a file removed between scan and build is skipped, not fatal."""
        present = tmp_path / 'present.txt'
        present.write_text('here')
        files = [
            ScannedFile(path=str(present), arcname='p/present.txt', size=4, mtime=0),
            ScannedFile(path=str(tmp_path / 'gone.txt'), arcname='p/gone.txt', size=4, mtime=0),
        ]
        output = tmp_path / 'out.tar'

        result = ArchiveBuilder(0).build(files, output)

        assert result.files_added == 1
        assert result.skipped == ['p/gone.txt']
        assert list(_members(output)) == ['p/present.txt']

    def test_invalid_level_writes_nothing(self, source_tree, tmp_path):
        """Test level 23 is rejected before any output exists."""
        output = tmp_path / 'out.tar.zst'

        with pytest.raises(ConfigError):
            ArchiveBuilder(23).build([], output)

        assert list(tmp_path.glob('out.tar.zst*')) == []

    def test_cancellation_removes_partial(self, source_tree, tmp_path):
        """Test a cancellation mid-build leaves no partial or final archive."""
        calls = {'n': 0}

        def check():
            calls['n'] += 1
            if calls['n'] > 2:
                raise CycleTimeout('backup cycle exceeded its time budget')

        scanner = ChangeScanner([SourceRoot(source_tree, 'p')])
        output = tmp_path / 'out.tar.zst'

        with pytest.raises(CycleTimeout):
            ArchiveBuilder(3, cancellation_check=check).build(scanner, output)

        assert list(tmp_path.glob('out.tar.zst*')) == []

    def test_unwritable_output(self, tmp_path):
        """Test a missing output directory raises ArchiveBuildError."""
        with pytest.raises(ArchiveBuildError):
            ArchiveBuilder(0).build([], tmp_path / 'missing' / 'out.tar')
