"""
Retention policy enforcement for backups.

Keeps the newest ``max_backups`` archives in a job's archive directory and
deletes the rest. Archives are ordered by the timestamp embedded in their
filename, never by filesystem mtime. Only files following the archive naming
convention are counted or touched.
"""

import os
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .compression import archive_name_pattern
from .errors import RetentionError


@dataclass
class ArchiveInfo:
    """A completed archive found in a job directory."""
    path: str
    filename: str
    timestamp: str
    suffix: str = ''

    @property
    def sort_key(self) -> str:
        return f"{self.timestamp}_{self.suffix.zfill(9)}"

    @property
    def created_at(self) -> datetime:
        return datetime.strptime(self.timestamp, '%Y%m%d%H%M%S')


@dataclass
class RetentionReport:
    kept: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    errors: Dict[str, str] = field(default_factory=dict)


def list_archives(job_dir: str, job_name: str) -> List[ArchiveInfo]:
    """
    List a job's completed archives, newest first.

    Raises:
        RetentionError: If the directory cannot be read
    """
    pattern = archive_name_pattern(job_name)

    try:
        entries = list(os.scandir(job_dir))
    except OSError as e:
        raise RetentionError(f"Failed to read backup directory {job_dir}: {e}")

    archives = []
    for entry in entries:
        if not entry.is_file(follow_symlinks=False):
            continue
        match = pattern.match(entry.name)
        if not match:
            continue
        archives.append(ArchiveInfo(
            path=entry.path,
            filename=entry.name,
            timestamp=match.group('timestamp'),
            suffix=match.group('suffix') or ''
        ))

    archives.sort(key=lambda a: a.sort_key, reverse=True)
    return archives


def find_latest_archive(job_dir: str, job_name: str) -> Optional[ArchiveInfo]:
    """Return the newest completed archive of a job, or None."""
    try:
        archives = list_archives(job_dir, job_name)
    except RetentionError:
        return None
    return archives[0] if archives else None


class RetentionManager:
    """
    Prunes old archives for a job.

    Deletion failures are logged and reported, never raised: retention is
    best-effort cleanup and must not fail the run that triggered it.
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    def enforce(self, job_dir: str, job_name: str, max_backups: int) -> RetentionReport:
        """
        Keep the newest max_backups archives and delete the rest.

        Args:
            job_dir: Directory holding the job's archives
            job_name: Job name (archive filename prefix)
            max_backups: Number of archives to keep; zero or negative keeps everything

        Returns:
            RetentionReport listing kept and deleted paths and per-file errors

        Raises:
            RetentionError: If the directory cannot be listed
        """
        report = RetentionReport()

        if max_backups is None or max_backups <= 0:
            return report

        archives = list_archives(job_dir, job_name)
        report.kept = [a.path for a in archives[:max_backups]]

        for archive in archives[max_backups:]:
            self.logger.info(f"[{job_name}] Removing old backup: {archive.path}")
            try:
                os.remove(archive.path)
            except OSError as e:
                self.logger.error(f"[{job_name}] Failed to remove old backup {archive.path}: {e}")
                report.errors[archive.path] = str(e)
                continue
            report.deleted.append(archive.path)

        return report

    def enforce_all(self, jobs, backup_root: str) -> Dict[str, RetentionReport]:
        """
        Enforce retention for every job under backup_root.

        Errors for one job are logged and do not stop the others.

        Returns:
            Mapping of job name -> RetentionReport for the jobs that were processed
        """
        reports = {}

        for job in jobs:
            job_dir = os.path.join(backup_root, job.name)
            if not os.path.isdir(job_dir):
                continue
            try:
                reports[job.name] = self.enforce(job_dir, job.name, job.max_backups)
            except RetentionError as e:
                self.logger.error(f"Failed to enforce retention for job {job.name}: {e}")

        deleted = sum(len(r.deleted) for r in reports.values())
        self.logger.info(f"Retention enforcement complete. Jobs: {len(reports)}, deleted: {deleted}")
        return reports
