"""
Archive writer for backup captures.

Streams a directory tree into a gzip compressed tar archive:
- entry names are relative to the source root (the root itself is not stored)
- directories, regular files and symlinks keep their mode and mtime
- ignored folders are pruned during the walk, their children are never read
- file contents are copied through a fixed-size buffer
"""

import os
import re
import tarfile
import logging
from datetime import datetime
from typing import Optional, Iterable

from .errors import CaptureError
from .ignore import IgnoreMatcher


ARCHIVE_EXTENSION = '.tar.gz'

# 32KB copy buffer
COPY_BUFFER_SIZE = 32 * 1024

TIMESTAMP_FORMAT = '%Y%m%d%H%M%S'


class CompressionError(CaptureError):
    """Raised when archive creation fails."""

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path


def create_archive(
    source_root: str,
    archive_path: str,
    ignore_files: Optional[Iterable[str]] = None,
    ignore_folders: Optional[Iterable[str]] = None,
    logger: Optional[logging.Logger] = None
) -> str:
    """
    Create a tar.gz archive from every non-ignored entry under source_root.

    Args:
        source_root: Directory to archive
        archive_path: Full path of the archive to create
        ignore_files: Glob patterns for files to skip
        ignore_folders: Glob patterns for folders to skip
        logger: Logger to report progress to

    Returns:
        Path to the created archive file

    Raises:
        CompressionError: If the source cannot be read or the archive cannot be written.
            A partially written archive is removed before raising.
    """
    log = logger or logging.getLogger(__name__)

    if not os.path.isdir(source_root):
        raise CompressionError(f"Source directory not accessible: {source_root}", path=source_root)

    matcher = IgnoreMatcher(source_root, ignore_files, ignore_folders, logger=log)

    try:
        tar = tarfile.open(archive_path, 'w:gz', copybufsize=COPY_BUFFER_SIZE)
    except OSError as e:
        raise CompressionError(f"Failed to create archive file {archive_path}: {e}", path=archive_path)

    try:
        with tar:
            entry_count = _write_tree(tar, source_root, matcher, log, exclude=archive_path)
    except Exception as e:
        _remove_partial(archive_path, log)
        if isinstance(e, CompressionError):
            raise
        raise CompressionError(f"Failed to create archive: {e}", path=archive_path)

    log.info(f"Archive created: {archive_path} ({entry_count} entries)")
    return archive_path


def _write_tree(
    tar: tarfile.TarFile,
    source_root: str,
    matcher: IgnoreMatcher,
    log: logging.Logger,
    exclude: Optional[str] = None
) -> int:
    """Walk source_root top-down and add every entry that is not ignored."""
    exclude = os.path.abspath(exclude) if exclude else None

    def on_error(error: OSError):
        raise CompressionError(
            f"Failed to access path {error.filename}: {error.strerror or error}",
            path=error.filename
        )

    entry_count = 0

    for directory, dirnames, filenames in os.walk(source_root, onerror=on_error):
        dirnames.sort()
        filenames.sort()

        # Prune ignored folders in place so the walk never descends into them
        kept_dirs = []
        for name in dirnames:
            path = os.path.join(directory, name)
            if matcher.should_skip(path):
                log.debug(f"Skipping ignored folder: {path}")
                continue
            kept_dirs.append(name)
        dirnames[:] = kept_dirs

        for name in dirnames:
            path = os.path.join(directory, name)
            if _add_entry(tar, path, matcher.relative_path(path)):
                entry_count += 1

        for name in filenames:
            path = os.path.join(directory, name)
            if exclude and os.path.abspath(path) == exclude:
                continue
            if matcher.should_skip(path):
                log.debug(f"Skipping ignored file: {path}")
                continue
            if _add_entry(tar, path, matcher.relative_path(path)):
                entry_count += 1

    return entry_count


def _add_entry(tar: tarfile.TarFile, path: str, arcname: str) -> bool:
    """
    Add a single entry to the archive.

    Returns:
        False when the entry type cannot be archived (sockets, devices)
    """
    try:
        info = tar.gettarinfo(path, arcname=arcname)
    except OSError as e:
        raise CompressionError(f"Failed to read metadata for {path}: {e}", path=path)

    if info is None:
        return False

    if info.isreg():
        try:
            with open(path, 'rb') as f:
                tar.addfile(info, f)
        except OSError as e:
            raise CompressionError(f"Failed to write file {path} to archive: {e}", path=path)
    elif info.isdir() or info.issym() or info.islnk():
        tar.addfile(info)
    else:
        return False

    return True


def _remove_partial(archive_path: str, log: logging.Logger):
    if os.path.exists(archive_path):
        try:
            os.remove(archive_path)
        except OSError as e:
            log.error(f"Failed to remove partial archive {archive_path}: {e}")


def generate_archive_filename(job_name: str, now: Optional[datetime] = None) -> str:
    """
    Generate a standardized archive filename.

    Format: {job_name}_{YYYYMMDDHHMMSS}_{microseconds}.tar.gz

    Both timestamp parts are fixed width so names sort chronologically.

    Args:
        job_name: Name of the backup job
        now: Timestamp to embed (defaults to current local time)

    Returns:
        Filename (without path)
    """
    now = now or datetime.now()
    return f"{job_name}_{now.strftime(TIMESTAMP_FORMAT)}_{now.microsecond:06d}{ARCHIVE_EXTENSION}"


def archive_name_pattern(job_name: str) -> re.Pattern:
    """
    Compile the pattern matching completed archives of a job.

    Group ``timestamp`` holds the 14-digit timestamp, group ``suffix`` the
    optional uniqueness suffix.
    """
    return re.compile(
        rf'^{re.escape(job_name)}_(?P<timestamp>\d{{14}})(?:_(?P<suffix>\d+))?{re.escape(ARCHIVE_EXTENSION)}$'
    )


def get_archive_size(archive_path: str) -> int:
    """
    Get the size of an archive file in bytes.

    Raises:
        CompressionError: If file doesn't exist or cannot be accessed
    """
    try:
        return os.path.getsize(archive_path)
    except FileNotFoundError:
        raise CompressionError(f"Archive not found: {archive_path}", path=archive_path)
    except OSError as e:
        raise CompressionError(f"Failed to get archive size: {e}", path=archive_path)
