"""
Backup job definitions loaded from the YAML job file.

Example::

    backups:
      - name: app_db
        type: mysql
        storage: [s3_main, offsite]
        scheduler:
          enabled: true
          cron_expr: "0 2 * * *"
          max_backups: 7
        ssh:
          host: db.example.com
          user: backup
          key_file: ~/.ssh/id_ed25519
          mode: tunnel
        db:
          name: __ALL__
          exclude_databases: [information_schema, performance_schema]
          user: dump
          password: secret

    storage:
      s3_main:
        enabled: true
        kind: s3
        bucket: my-backups
        region: eu-west-1
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml


ALL_DATABASES = '__ALL__'

JOB_TYPES = ('folder', 'mysql', 'postgres')
DATABASE_JOB_TYPES = ('mysql', 'postgres')
SSH_MODES = ('tunnel', 'exec')
STORAGE_KINDS = ('s3', 'rsync', 'google_drive')


class ConfigError(Exception):
    """Raised when the job file cannot be loaded or is invalid."""
    pass


def _as_int(value: Any, field_name: str, default: Optional[int] = None) -> Optional[int]:
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        raise ConfigError(f"{field_name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{field_name} must be an integer, got {value!r}")


def _as_list(value: Any, field_name: str) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ConfigError(f"{field_name} must be a list, got {type(value).__name__}")
    return [str(item) for item in value]


def _as_mapping(value: Any, field_name: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"{field_name} must be a mapping, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class SSHEndpoint:
    host: str
    user: str
    port: int = 22
    key_file: Optional[str] = None
    password: Optional[str] = None
    mode: str = 'tunnel'
    strict_host_key_checking: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], job_name: str) -> 'SSHEndpoint':
        prefix = f"backups[{job_name}].ssh"
        host = data.get('host')
        user = data.get('user') or data.get('username')
        if not host or not user:
            raise ConfigError(f"{prefix} requires host and user")

        mode = data.get('mode', 'tunnel')
        if mode not in SSH_MODES:
            raise ConfigError(f"{prefix}.mode must be one of {list(SSH_MODES)}, got {mode!r}")

        return cls(
            host=str(host),
            user=str(user),
            port=_as_int(data.get('port'), f"{prefix}.port", 22),
            key_file=data.get('key_file') or data.get('private_key'),
            password=data.get('password'),
            mode=mode,
            strict_host_key_checking=bool(data.get('strict_host_key_checking', False))
        )

    @property
    def destination(self) -> str:
        return f"{self.user}@{self.host}"


@dataclass(frozen=True)
class DatabaseSpec:
    """
    Database parameters for mysql/postgres jobs.

    ``names`` holds explicit database names; ``[ALL_DATABASES]`` means every
    database on the server, resolved at run time.
    """
    names: List[str]
    user: str = ''
    password: Optional[str] = None
    host: str = '127.0.0.1'
    port: Optional[int] = None
    exclude: List[str] = field(default_factory=list)
    dump_path: Optional[str] = None
    client_path: Optional[str] = None
    dump_options: List[str] = field(default_factory=list)
    allow_empty: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any], job_name: str) -> 'DatabaseSpec':
        prefix = f"backups[{job_name}].db"

        names = _as_list(data.get('databases'), f"{prefix}.databases")
        if not names and data.get('name'):
            names = [str(data['name'])]
        if not names:
            raise ConfigError(f"{prefix} requires name or databases")

        return cls(
            names=names,
            user=str(data.get('user') or ''),
            password=data.get('password'),
            host=str(data.get('host') or '127.0.0.1'),
            port=_as_int(data.get('port'), f"{prefix}.port"),
            exclude=_as_list(data.get('exclude_databases'), f"{prefix}.exclude_databases"),
            dump_path=data.get('dump_path') or data.get('mysqldump_path'),
            client_path=data.get('client_path') or data.get('mysql_path'),
            dump_options=_as_list(data.get('dump_options'), f"{prefix}.dump_options"),
            allow_empty=bool(data.get('allow_empty', False))
        )

    @property
    def all_databases(self) -> bool:
        return ALL_DATABASES in self.names


@dataclass(frozen=True)
class JobSpec:
    """One backup job. Immutable for the duration of a run."""
    name: str
    type: str = 'folder'
    source_path: str = ''
    storage: List[str] = field(default_factory=list)
    ignore_files: List[str] = field(default_factory=list)
    ignore_folders: List[str] = field(default_factory=list)
    ssh: Optional[SSHEndpoint] = None
    database: Optional[DatabaseSpec] = None
    schedule_enabled: bool = False
    cron_expr: Optional[str] = None
    max_backups: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int) -> 'JobSpec':
        data = _as_mapping(data, f"backups[{index}]")
        name = data.get('name')
        if not name:
            raise ConfigError(f"backups[{index}] is missing a name")
        name = str(name)
        if '/' in name or '\\' in name or name in ('.', '..'):
            raise ConfigError(f"backups[{name}] name must not contain path separators")

        job_type = data.get('type') or 'folder'
        if job_type not in JOB_TYPES:
            raise ConfigError(f"backups[{name}].type must be one of {list(JOB_TYPES)}, got {job_type!r}")

        scheduler = _as_mapping(data.get('scheduler'), f"backups[{name}].scheduler")
        ignore = _as_mapping(data.get('ignore'), f"backups[{name}].ignore")
        ssh_data = _as_mapping(data.get('ssh'), f"backups[{name}].ssh")
        db_data = _as_mapping(data.get('db'), f"backups[{name}].db")

        if job_type == 'folder' and not data.get('source_path'):
            raise ConfigError(f"backups[{name}] folder job requires source_path")
        if job_type in DATABASE_JOB_TYPES and not db_data:
            raise ConfigError(f"backups[{name}] {job_type} job requires a db section")

        return cls(
            name=name,
            type=job_type,
            source_path=str(data.get('source_path') or ''),
            storage=_as_list(data.get('storage'), f"backups[{name}].storage"),
            ignore_files=_as_list(ignore.get('files'), f"backups[{name}].ignore.files"),
            ignore_folders=_as_list(ignore.get('folders'), f"backups[{name}].ignore.folders"),
            ssh=SSHEndpoint.from_dict(ssh_data, name) if ssh_data else None,
            database=DatabaseSpec.from_dict(db_data, name) if db_data else None,
            schedule_enabled=bool(scheduler.get('enabled', False)),
            cron_expr=scheduler.get('cron_expr') or None,
            max_backups=_as_int(scheduler.get('max_backups'), f"backups[{name}].scheduler.max_backups", 0)
        )


@dataclass(frozen=True)
class StorageSettings:
    """Settings for one named storage backend."""
    name: str
    kind: str
    enabled: bool = False
    options: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, name: str, data: Dict[str, Any]) -> 'StorageSettings':
        data = _as_mapping(data, f"storage[{name}]")
        options = {k: v for k, v in data.items() if k not in ('enabled', 'kind')}
        return cls(
            name=str(name),
            kind=str(data.get('kind') or ''),
            enabled=bool(data.get('enabled', False)),
            options=options
        )


@dataclass(frozen=True)
class BackupConfig:
    jobs: List[JobSpec] = field(default_factory=list)
    storage: Dict[str, StorageSettings] = field(default_factory=dict)

    def get_job(self, name: str) -> Optional[JobSpec]:
        for job in self.jobs:
            if job.name == name:
                return job
        return None


def parse_config(data: Any) -> BackupConfig:
    """
    Build a BackupConfig from an already parsed YAML document.

    Raises:
        ConfigError: If the document is invalid
    """
    data = _as_mapping(data, 'config')

    raw_jobs = data.get('backups') or []
    if not isinstance(raw_jobs, list):
        raise ConfigError("backups must be a list")

    jobs = []
    seen = set()
    for index, raw_job in enumerate(raw_jobs):
        job = JobSpec.from_dict(raw_job, index)
        if job.name in seen:
            raise ConfigError(f"Duplicate backup name: {job.name}")
        seen.add(job.name)
        jobs.append(job)

    raw_storage = _as_mapping(data.get('storage'), 'storage')
    storage = {
        str(name): StorageSettings.from_dict(name, settings)
        for name, settings in raw_storage.items()
    }

    return BackupConfig(jobs=jobs, storage=storage)


def load_config(path: str) -> BackupConfig:
    """
    Load and validate the job file.

    Args:
        path: Path to the YAML job file

    Returns:
        BackupConfig with all jobs and storage settings

    Raises:
        ConfigError: If the file cannot be read or parsed, or is invalid
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}")
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}")

    return parse_config(data or {})
