"""
Error taxonomy for backup runs.

Fatal to a run:
- SourceAccessError: source path or database server unreachable
- CaptureError: archive construction failed
- ReplicationError: no storage target accepted the archive

Logged only:
- DumpError: a single database dump failed (the run continues)
- RetentionError: pruning old archives failed
"""


class BackupError(Exception):
    """Base class for all backup engine errors."""
    pass


class SourceAccessError(BackupError):
    """Raised when the job source cannot be reached."""
    pass


class UnsupportedJobTypeError(SourceAccessError):
    """Raised when a job declares a capture kind the engine does not know."""

    def __init__(self, kind):
        super().__init__(f"Unsupported backup type: {kind}")
        self.kind = kind


class TunnelError(SourceAccessError):
    """Raised when the SSH tunnel cannot be established."""
    pass


class CaptureError(BackupError):
    """Raised when the archive cannot be produced."""
    pass


class DumpError(BackupError):
    """Raised when dumping one database fails."""

    def __init__(self, message, database=None):
        super().__init__(message)
        self.database = database


class ReplicationError(BackupError):
    """Raised when no storage target accepted the archive."""

    def __init__(self, message, outcomes=None):
        super().__init__(message)
        self.outcomes = outcomes or []


class RetentionError(BackupError):
    """Raised when old archives cannot be listed for pruning."""
    pass
