"""
Backup executor - orchestrates the complete backup workflow.

Workflow:
1. Validate the job source (and the capture kind)
2. Create the job's archive directory and pick a unique archive filename
3. Capture the source into the archive (folder copy or database dumps)
4. Send the archive to the configured storage targets
5. Enforce the retention policy on the job's archive directory

Steps 1-4 are fail-fast: the first fatal error ends the run, and the archive
produced by that run is removed. Step 5 only logs its failures.
"""

import os
import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .compression import generate_archive_filename, get_archive_size
from .errors import DumpError, ReplicationError, RetentionError, SourceAccessError
from .retention import RetentionManager, RetentionReport, list_archives, find_latest_archive
from .sources import CaptureReport, create_capture_strategy
from .storage import StorageDispatcher, TargetOutcome


@dataclass
class JobResult:
    """Outcome of one job run."""
    job_name: str
    status: str = 'running'
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    archive_path: Optional[str] = None
    file_size_bytes: Optional[int] = None
    capture: Optional[CaptureReport] = None
    storage_outcomes: List[TargetOutcome] = field(default_factory=list)
    retention: Optional[RetentionReport] = None
    error_message: Optional[str] = None
    error: Optional[BaseException] = None
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status == 'success'

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class BackupExecutor:
    """
    Orchestrates the complete backup workflow for a job.
    """

    def __init__(
        self,
        job,
        dispatcher: StorageDispatcher,
        backup_root: str,
        staging_root: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
        lock: Optional[threading.Lock] = None
    ):
        """
        Initialize backup executor.

        Args:
            job: JobSpec to execute
            dispatcher: StorageDispatcher resolving the job's storage targets
            backup_root: Directory holding one archive directory per job
            staging_root: Parent directory for database dump staging directories
            logger: Logger for run progress
            lock: Held for the destination, capture, replicate and retain steps
        """
        self.job = job
        self.dispatcher = dispatcher
        self.backup_root = backup_root
        self.staging_root = staging_root
        self.logger = logger or logging.getLogger(__name__)
        self.lock = lock
        self.result = None
        self.archive_path = None

    def execute(self) -> JobResult:
        """
        Execute the backup job.

        Returns:
            JobResult with execution results. Fatal errors are reported on the
            result (status 'failed', error and error_message), not raised.
        """
        self.result = JobResult(job_name=self.job.name, started_at=datetime.utcnow())
        self._log(f"Starting backup job: {self.job.name} (type: {self.job.type})")

        try:
            self._execute_workflow()

            self.result.status = 'success'
            self._log("Backup completed successfully")

        except Exception as e:
            self.result.status = 'failed'
            self.result.error = e
            self.result.error_message = str(e)
            if isinstance(e, ReplicationError):
                self.result.storage_outcomes = list(e.outcomes)
            self._log(f"Backup failed: {e}", level=logging.ERROR)
            self._remove_archive()

        finally:
            self.result.completed_at = datetime.utcnow()

        return self.result

    def _execute_workflow(self):
        """Execute the main backup workflow steps."""
        # Step 1: Validate before touching the filesystem
        strategy = self._validate()

        with self.lock or nullcontext():
            # Step 2: Prepare destination
            job_dir = self._prepare_destination()

            # Step 3: Capture
            self._log(f"Capturing source (type: {self.job.type})")
            self.result.capture = strategy.capture(self.job, self.archive_path)
            self._check_capture(self.result.capture)

            file_size = get_archive_size(self.archive_path)
            self.result.file_size_bytes = file_size
            self._log(f"Archive created: {os.path.basename(self.archive_path)} ({file_size / 1024 / 1024:.2f} MB)")

            # Step 4: Replicate
            if self.job.storage:
                self._log(f"Sending archive to storage: {', '.join(self.job.storage)}")
                dispatch = self.dispatcher.dispatch(self.archive_path, self.job.storage, self.job.name)
                self.result.storage_outcomes = dispatch.outcomes
                if dispatch.failed:
                    self._log(
                        f"Archive sent to {len(dispatch.succeeded)} of {len(dispatch.outcomes)} storage targets",
                        level=logging.WARNING
                    )
                else:
                    self._log(f"Archive sent to {len(dispatch.succeeded)} storage targets")
            else:
                self._log("No storage targets configured, keeping archive locally only")

            self.result.archive_path = self.archive_path

            # Step 5: Retain
            self._enforce_retention(job_dir)

    def _validate(self):
        """
        Select the capture strategy and check the job source.

        Raises:
            UnsupportedJobTypeError: If the job's capture kind is unknown
            SourceAccessError: If the folder source is missing or the database spec is absent
        """
        strategy = create_capture_strategy(self.job.type, staging_root=self.staging_root, logger=self.logger)

        if self.job.type == 'folder':
            source_path = os.path.expanduser(self.job.source_path)
            if not os.path.isdir(source_path):
                raise SourceAccessError(f"Source directory does not exist: {self.job.source_path}")
        elif self.job.database is None:
            raise SourceAccessError(f"Missing DB config for {self.job.type} backup")

        return strategy

    def _prepare_destination(self) -> str:
        job_dir = os.path.join(self.backup_root, self.job.name)
        os.makedirs(job_dir, exist_ok=True)

        self.archive_path = os.path.join(job_dir, generate_archive_filename(self.job.name))
        self._log(f"Archive path: {self.archive_path}")
        return job_dir

    def _check_capture(self, report: CaptureReport):
        if report.failed:
            self._log(
                f"Failed to dump {len(report.failed)} databases: {', '.join(sorted(report.failed))}",
                level=logging.WARNING
            )

        if report.databases and not report.dumped and not self.job.database.allow_empty:
            raise DumpError(f"All {len(report.databases)} database dumps failed")

    def _enforce_retention(self, job_dir: str):
        if self.job.max_backups <= 0:
            return

        manager = RetentionManager(logger=self.logger)
        try:
            report = manager.enforce(job_dir, self.job.name, self.job.max_backups)
        except RetentionError as e:
            self._log(f"Retention failed: {e}", level=logging.WARNING)
            return

        self.result.retention = report
        if report.deleted:
            self._log(f"Retention removed {len(report.deleted)} old backups")
        for path, error in report.errors.items():
            self._log(f"Retention could not remove {path}: {error}", level=logging.WARNING)

    def _remove_archive(self):
        """Remove the archive produced by this run after a fatal error."""
        if not self.archive_path or not os.path.exists(self.archive_path):
            return
        try:
            os.remove(self.archive_path)
            self._log(f"Removed archive after failure: {self.archive_path}")
        except OSError as e:
            self._log(f"Warning: Failed to remove archive {self.archive_path}: {e}", level=logging.WARNING)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp to the run log.

        Args:
            message: Log message
            level: Level used for the process logger
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.result.logs.append(f"[{timestamp}] {message}")
        self.logger.log(level, f"[{self.job.name}] {message}")


class BackupRunner:
    """
    Runs configured jobs by name.

    Holds one lock per job name so two runs of the same job never overlap;
    runs of different jobs proceed independently.
    """

    def __init__(
        self,
        config,
        dispatcher: StorageDispatcher,
        backup_root: str,
        staging_root: Optional[str] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.config = config
        self.dispatcher = dispatcher
        self.backup_root = backup_root
        self.staging_root = staging_root
        self.logger = logger or logging.getLogger(__name__)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def jobs(self):
        return self.config.jobs

    def get_job(self, job_name: str):
        """
        Raises:
            ValueError: If no job has this name
        """
        job = self.config.get_job(job_name)
        if job is None:
            raise ValueError(f"Backup job not found: {job_name}")
        return job

    def job_lock(self, job_name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(job_name)
            if lock is None:
                lock = self._locks[job_name] = threading.Lock()
            return lock

    def job_dir(self, job_name: str) -> str:
        return os.path.join(self.backup_root, job_name)

    def run(self, job_name: str) -> JobResult:
        """
        Execute a backup job by name.

        Args:
            job_name: Name of the job to execute

        Returns:
            JobResult with execution results

        Raises:
            ValueError: If job not found
        """
        job = self.get_job(job_name)
        executor = BackupExecutor(
            job,
            self.dispatcher,
            self.backup_root,
            staging_root=self.staging_root,
            logger=self.logger,
            lock=self.job_lock(job_name)
        )
        return executor.execute()

    def prune(self, job_name: str) -> RetentionReport:
        """
        Enforce retention for one job outside a run.

        Raises:
            ValueError: If job not found
            RetentionError: If the job's archive directory cannot be listed
        """
        job = self.get_job(job_name)
        manager = RetentionManager(logger=self.logger)
        with self.job_lock(job_name):
            return manager.enforce(self.job_dir(job_name), job_name, job.max_backups)

    def prune_all(self) -> Dict[str, RetentionReport]:
        """Enforce retention for every configured job."""
        manager = RetentionManager(logger=self.logger)
        return manager.enforce_all(self.jobs, self.backup_root)

    def list_archives(self, job_name: str):
        """
        List a job's archives, newest first (empty if none were produced yet).

        Raises:
            ValueError: If job not found
        """
        self.get_job(job_name)
        job_dir = self.job_dir(job_name)
        if not os.path.isdir(job_dir):
            return []
        return list_archives(job_dir, job_name)

    def latest_archive(self, job_name: str):
        self.get_job(job_name)
        return find_latest_archive(self.job_dir(job_name), job_name)
