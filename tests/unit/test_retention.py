"""
Unit tests for retention policy management (backupdb/backup/retention.py).

Tests RetentionManager pruning and archive discovery.
"""

import os
from datetime import datetime
from unittest.mock import patch

import pytest

from backupdb.backup.errors import RetentionError
from backupdb.backup.retention import RetentionManager, list_archives, find_latest_archive
from backupdb.jobs import JobSpec


def make_archives(job_dir, job_name, timestamps):
    job_dir.mkdir(parents=True, exist_ok=True)
    paths = []
    for ts in timestamps:
        path = job_dir / f"{job_name}_{ts}.tar.gz"
        path.write_bytes(b"data")
        paths.append(path)
    return paths


class TestRetentionManager:
    """Test RetentionManager.enforce."""

    def test_keeps_newest_two(self, tmp_path):
        """maxBackups=2 over ...01, ...02, ...03 leaves ...02 and ...03."""
        job_dir = tmp_path / "docs"
        make_archives(job_dir, "docs", ["20240101000001", "20240101000002", "20240101000003"])

        report = RetentionManager().enforce(str(job_dir), "docs", 2)

        assert sorted(os.listdir(job_dir)) == [
            "docs_20240101000002.tar.gz",
            "docs_20240101000003.tar.gz",
        ]
        assert [os.path.basename(p) for p in report.deleted] == ["docs_20240101000001.tar.gz"]
        assert len(report.kept) == 2

    @pytest.mark.parametrize("max_backups", [0, -1])
    def test_non_positive_limit_keeps_everything(self, tmp_path, max_backups):
        job_dir = tmp_path / "docs"
        make_archives(job_dir, "docs", ["20240101000001", "20240101000002", "20240101000003"])

        report = RetentionManager().enforce(str(job_dir), "docs", max_backups)

        assert len(os.listdir(job_dir)) == 3
        assert report.deleted == []

    def test_orders_by_filename_timestamp_not_mtime(self, tmp_path):
        job_dir = tmp_path / "docs"
        old, new = make_archives(job_dir, "docs", ["20230101000000", "20240101000000"])
        # Make the older archive look recently modified
        os.utime(old, (2_000_000_000, 2_000_000_000))
        os.utime(new, (1_000_000_000, 1_000_000_000))

        RetentionManager().enforce(str(job_dir), "docs", 1)

        assert os.listdir(job_dir) == [new.name]

    def test_suffix_breaks_ties_within_a_second(self, tmp_path):
        job_dir = tmp_path / "docs"
        make_archives(job_dir, "docs", [
            "20240101000000_000001",
            "20240101000000_500000",
            "20240101000000_999999",
        ])

        RetentionManager().enforce(str(job_dir), "docs", 1)

        assert os.listdir(job_dir) == ["docs_20240101000000_999999.tar.gz"]

    def test_other_files_are_ignored(self, tmp_path):
        job_dir = tmp_path / "docs"
        make_archives(job_dir, "docs", ["20240101000001", "20240101000002"])
        (job_dir / "notes.txt").write_text("keep me")
        (job_dir / "docs_20240101000000.tar.gz.partial").write_bytes(b"")
        (job_dir / "docsextra_20230101000000.tar.gz").write_bytes(b"")
        (job_dir / "docs_20220101000000.tar.gz").mkdir()

        RetentionManager().enforce(str(job_dir), "docs", 1)

        assert sorted(os.listdir(job_dir)) == [
            "docs_20220101000000.tar.gz",
            "docs_20240101000000.tar.gz.partial",
            "docs_20240101000002.tar.gz",
            "docsextra_20230101000000.tar.gz",
            "notes.txt",
        ]

    def test_deletion_failure_is_reported_not_raised(self, tmp_path):
        job_dir = tmp_path / "docs"
        make_archives(job_dir, "docs", ["20240101000001", "20240101000002", "20240101000003"])

        with patch('backupdb.backup.retention.os.remove', side_effect=PermissionError("read-only")):
            report = RetentionManager().enforce(str(job_dir), "docs", 1)

        assert report.deleted == []
        assert len(report.errors) == 2
        assert all("read-only" in error for error in report.errors.values())

    def test_missing_directory_raises(self, tmp_path):
        with pytest.raises(RetentionError):
            RetentionManager().enforce(str(tmp_path / "missing"), "docs", 2)


class TestEnforceAll:
    """Test the retention sweep across jobs."""

    def test_sweep(self, tmp_path):
        make_archives(tmp_path / "docs", "docs", ["20240101000001", "20240101000002", "20240101000003"])
        make_archives(tmp_path / "db", "db", ["20240101000001", "20240101000002"])
        jobs = [
            JobSpec(name="docs", source_path="/x", max_backups=1),
            JobSpec(name="db", source_path="/x", max_backups=0),
            JobSpec(name="never_ran", source_path="/x", max_backups=3),
        ]

        reports = RetentionManager().enforce_all(jobs, str(tmp_path))

        assert set(reports) == {"docs", "db"}
        assert len(reports["docs"].deleted) == 2
        assert len(os.listdir(tmp_path / "db")) == 2


class TestArchiveDiscovery:
    """Test list_archives and find_latest_archive."""

    def test_list_archives_newest_first(self, tmp_path):
        make_archives(tmp_path, "docs", ["20240102000000", "20240103000000", "20240101000000"])

        archives = list_archives(str(tmp_path), "docs")

        assert [a.timestamp for a in archives] == ["20240103000000", "20240102000000", "20240101000000"]
        assert archives[0].created_at == datetime(2024, 1, 3)

    def test_find_latest_archive(self, tmp_path):
        make_archives(tmp_path, "docs", ["20240101000000_000001", "20240101000000_000002"])

        latest = find_latest_archive(str(tmp_path), "docs")

        assert latest.filename == "docs_20240101000000_000002.tar.gz"
        assert latest.suffix == "000002"

    def test_find_latest_archive_none(self, tmp_path):
        assert find_latest_archive(str(tmp_path), "docs") is None
        assert find_latest_archive(str(tmp_path / "missing"), "docs") is None
