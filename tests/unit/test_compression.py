"""
Unit tests for compression module (backupdb/backup/compression.py).

Tests tar.gz archive creation with ignore rules and the archive naming convention.
"""

import os
import socket
import tarfile
from datetime import datetime
from unittest.mock import patch

import pytest
from freezegun import freeze_time

from backupdb.backup.compression import (
    create_archive,
    generate_archive_filename,
    archive_name_pattern,
    get_archive_size,
    CompressionError
)
from backupdb.backup.errors import CaptureError


def _members(archive_path):
    with tarfile.open(archive_path, 'r:gz') as tar:
        return {m.name: m for m in tar.getmembers()}


class TestCreateArchive:
    """Test create_archive with ignore rules."""

    def test_ignore_rules_scenario(self, source_tree, tmp_path):
        """Only a.txt survives *.tmp and the temp folder rule."""
        archive_path = str(tmp_path / "out.tar.gz")

        result = create_archive(str(source_tree), archive_path, ["*.tmp"], ["temp"])

        assert result == archive_path
        assert set(_members(archive_path)) == {"a.txt"}

    def test_archive_contents_match_source(self, source_tree, tmp_path):
        """Extracted content equals the source minus ignored entries."""
        (source_tree / "docs").mkdir()
        (source_tree / "docs" / "readme.md").write_text("read me")
        archive_path = str(tmp_path / "out.tar.gz")

        create_archive(str(source_tree), archive_path, ["*.tmp"], ["temp"])

        extract_dir = tmp_path / "extract"
        with tarfile.open(archive_path, 'r:gz') as tar:
            assert set(tar.getnames()) == {"a.txt", "docs", "docs/readme.md"}
            tar.extractall(extract_dir)

        assert (extract_dir / "a.txt").read_text() == "alpha"
        assert (extract_dir / "docs" / "readme.md").read_text() == "read me"
        assert not (extract_dir / "temp").exists()

    def test_no_rules_archives_everything(self, source_tree, tmp_path):
        archive_path = str(tmp_path / "out.tar.gz")

        create_archive(str(source_tree), archive_path)

        assert set(_members(archive_path)) == {"a.txt", "b.tmp", "temp", "temp/c.txt"}

    def test_entries_are_relative_to_root(self, source_tree, tmp_path):
        archive_path = str(tmp_path / "out.tar.gz")

        create_archive(str(source_tree), archive_path)

        for name in _members(archive_path):
            assert not name.startswith("/")
            assert "source" not in name.split("/")

    def test_empty_directory_produces_empty_archive(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        archive_path = str(tmp_path / "out.tar.gz")

        create_archive(str(empty), archive_path)

        assert _members(archive_path) == {}

    def test_archive_inside_source_is_not_included(self, source_tree):
        archive_path = str(source_tree / "self.tar.gz")

        create_archive(str(source_tree), archive_path)

        assert "self.tar.gz" not in _members(archive_path)

    def test_symlink_is_stored_as_link(self, source_tree, tmp_path):
        os.symlink("a.txt", source_tree / "link.txt")
        archive_path = str(tmp_path / "out.tar.gz")

        create_archive(str(source_tree), archive_path)

        link = _members(archive_path)["link.txt"]
        assert link.issym()
        assert link.linkname == "a.txt"

    def test_socket_is_skipped(self, tmp_path):
        root = tmp_path / "sock_root"
        root.mkdir()
        (root / "data.txt").write_text("data")
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.bind(str(root / "s.sock"))
        except OSError:
            pytest.skip("Unix sockets not available")
        archive_path = str(tmp_path / "out.tar.gz")

        try:
            create_archive(str(root), archive_path)
        finally:
            sock.close()

        assert set(_members(archive_path)) == {"data.txt"}

    def test_missing_source_raises(self, tmp_path):
        archive_path = str(tmp_path / "out.tar.gz")

        with pytest.raises(CompressionError) as exc_info:
            create_archive(str(tmp_path / "missing"), archive_path)

        assert isinstance(exc_info.value, CaptureError)
        assert not os.path.exists(archive_path)

    def test_unwritable_destination_raises(self, source_tree, tmp_path):
        archive_path = str(tmp_path / "no_such_dir" / "out.tar.gz")

        with pytest.raises(CompressionError) as exc_info:
            create_archive(str(source_tree), archive_path)

        assert exc_info.value.path == archive_path

    def test_read_failure_removes_partial_archive(self, source_tree, tmp_path):
        archive_path = str(tmp_path / "out.tar.gz")

        with patch('backupdb.backup.compression.open', side_effect=PermissionError("denied"), create=True):
            with pytest.raises(CompressionError) as exc_info:
                create_archive(str(source_tree), archive_path)

        assert "a.txt" in exc_info.value.path
        assert not os.path.exists(archive_path)


class TestArchiveNaming:
    """Test archive filename generation and matching."""

    @freeze_time("2024-01-15 12:30:45.123456")
    def test_generate_archive_filename(self):
        assert generate_archive_filename("docs") == "docs_20240115123045_123456.tar.gz"

    def test_generate_archive_filename_explicit_time(self):
        now = datetime(2023, 12, 31, 23, 59, 59, 7)

        assert generate_archive_filename("db", now) == "db_20231231235959_000007.tar.gz"

    def test_filenames_sort_chronologically(self):
        earlier = generate_archive_filename("job", datetime(2024, 1, 1, 0, 0, 0, 999999))
        later = generate_archive_filename("job", datetime(2024, 1, 1, 0, 0, 1, 0))

        assert earlier < later

    def test_pattern_matches_generated_names(self):
        pattern = archive_name_pattern("docs")

        match = pattern.match("docs_20240115123045_123456.tar.gz")

        assert match.group('timestamp') == "20240115123045"
        assert match.group('suffix') == "123456"

    def test_pattern_accepts_names_without_suffix(self):
        match = archive_name_pattern("docs").match("docs_20240115123045.tar.gz")

        assert match.group('suffix') is None

    @pytest.mark.parametrize("filename", [
        "docs_2024011512.tar.gz",
        "docs_20240115123045.tar.gz.partial",
        "other_20240115123045.tar.gz",
        "docs_extra_20240115123045.tar.gz",
        "docs_20240115123045.zip",
    ])
    def test_pattern_rejects_other_files(self, filename):
        assert archive_name_pattern("docs").match(filename) is None

    def test_pattern_escapes_job_name(self):
        pattern = archive_name_pattern("a.b")

        assert pattern.match("a.b_20240115123045.tar.gz")
        assert pattern.match("axb_20240115123045.tar.gz") is None


class TestGetArchiveSize:

    def test_get_archive_size(self, tmp_path):
        path = tmp_path / "file.tar.gz"
        path.write_bytes(b"x" * 1234)

        assert get_archive_size(str(path)) == 1234

    def test_get_archive_size_missing(self, tmp_path):
        with pytest.raises(CompressionError):
            get_archive_size(str(tmp_path / "missing.tar.gz"))
