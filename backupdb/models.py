import json
from datetime import datetime

from backupdb import db


class RunHistory(db.Model):
    """Backup run history and logs"""
    __tablename__ = 'run_history'

    id = db.Column(db.Integer, primary_key=True)
    job_name = db.Column(db.String(255), nullable=False, index=True)
    job_type = db.Column(db.String(20))
    trigger = db.Column(db.String(20), default='scheduled', nullable=False)  # scheduled, manual, cli
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    archive_path = db.Column(db.String(1024))
    file_size_bytes = db.Column(db.BigInteger)
    storage_results = db.Column(db.Text)  # JSON list of per-target outcomes
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    def apply_result(self, result):
        """Copy the outcome of a finished JobResult onto this row."""
        outcomes = [
            {
                'target': o.target,
                'success': o.success,
                'location': o.location,
                'error': o.error
            }
            for o in result.storage_outcomes
        ]
        self.status = result.status
        self.started_at = result.started_at or self.started_at
        self.completed_at = result.completed_at
        self.archive_path = result.archive_path
        self.file_size_bytes = result.file_size_bytes
        self.storage_results = json.dumps(outcomes)
        self.error_message = result.error_message
        self.logs = '\n'.join(result.logs)

    def to_dict(self, include_logs=False):
        data = {
            'id': self.id,
            'job_name': self.job_name,
            'job_type': self.job_type,
            'trigger': self.trigger,
            'status': self.status,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
            'duration_seconds': (
                (self.completed_at - self.started_at).total_seconds()
                if self.started_at and self.completed_at else None
            ),
            'archive_path': self.archive_path,
            'file_size_bytes': self.file_size_bytes,
            'storage_results': json.loads(self.storage_results) if self.storage_results else [],
            'error_message': self.error_message
        }
        if include_logs:
            data['logs'] = self.logs
        return data

    def __repr__(self):
        return f'<RunHistory job={self.job_name} status={self.status}>'
