"""
Capture strategies for backup jobs.

Supports:
- FolderCapture: archive a local directory tree
- MySQLCapture: dump MySQL databases with mysqldump, then archive the dumps
- PostgresCapture: dump PostgreSQL databases with pg_dump, then archive the dumps

Database jobs may reach a remote server over SSH in one of two modes,
chosen per job with ``ssh.mode``:
- tunnel: forward a local port with an ssh subprocess and run the client tools locally
- exec: run the client tools on the SSH host through paramiko
"""

import os
import shlex
import shutil
import tempfile
import subprocess
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

import paramiko
from paramiko import SSHClient, AutoAddPolicy, RejectPolicy

from .compression import create_archive, CompressionError
from .errors import SourceAccessError, DumpError, UnsupportedJobTypeError
from .tunnel import SSHTunnel


# Streaming chunk size for remote dump output
CHUNK_SIZE = 32 * 1024


class CommandError(Exception):
    """Raised when an external command cannot be run or exits non-zero."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.output = output


@dataclass
class CaptureReport:
    """Outcome of one capture."""
    kind: str
    archive_path: str
    databases: List[str] = field(default_factory=list)
    dumped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)


class LocalCommandRunner:
    """Runs client tools as local subprocesses."""

    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    @staticmethod
    def _env(extra: Optional[Dict[str, str]]) -> Optional[Dict[str, str]]:
        if not extra:
            return None
        env = dict(os.environ)
        env.update(extra)
        return env

    def run(self, args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        """
        Run a command and return its standard output.

        Raises:
            CommandError: If the command cannot be started or exits non-zero
        """
        try:
            result = subprocess.run(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self._env(env)
            )
        except OSError as e:
            raise CommandError(f"Failed to execute {args[0]}: {e}")

        if result.returncode != 0:
            output = result.stderr.decode('utf-8', errors='replace').strip()
            raise CommandError(
                f"{args[0]} exited with code {result.returncode}: {output}",
                returncode=result.returncode,
                output=output
            )

        return result.stdout.decode('utf-8', errors='replace')

    def dump(self, args: List[str], dest_path: str, env: Optional[Dict[str, str]] = None):
        """
        Run a command with its standard output written straight to dest_path.

        Raises:
            CommandError: If the command cannot be started or exits non-zero
        """
        with open(dest_path, 'wb') as out:
            try:
                result = subprocess.run(
                    args,
                    stdin=subprocess.DEVNULL,
                    stdout=out,
                    stderr=subprocess.PIPE,
                    env=self._env(env)
                )
            except OSError as e:
                raise CommandError(f"Failed to execute {args[0]}: {e}")

        if result.returncode != 0:
            output = result.stderr.decode('utf-8', errors='replace').strip()
            raise CommandError(
                f"{args[0]} exited with code {result.returncode}: {output}",
                returncode=result.returncode,
                output=output
            )

    def close(self):
        """Local runner holds no connections."""
        pass


class SSHCommandRunner:
    """
    Runs client tools on a remote host over an SSH session.

    Environment variables are passed as assignments prefixed to the remote
    command line, since most servers refuse ``AcceptEnv`` for arbitrary names.
    """

    def __init__(self, endpoint, logger: Optional[logging.Logger] = None):
        self.endpoint = endpoint
        self.logger = logger or logging.getLogger(__name__)
        self.ssh_client = None

    def connect(self):
        """
        Establish SSH connection.

        Raises:
            SourceAccessError: If connection fails
        """
        try:
            self.ssh_client = SSHClient()
            if self.endpoint.strict_host_key_checking:
                self.ssh_client.load_system_host_keys()
                self.ssh_client.set_missing_host_key_policy(RejectPolicy())
            else:
                self.ssh_client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.endpoint.host,
                'port': self.endpoint.port,
                'username': self.endpoint.user,
                'timeout': 30
            }

            if self.endpoint.password:
                connect_kwargs['password'] = self.endpoint.password
            if self.endpoint.key_file:
                key_path = Path(self.endpoint.key_file).expanduser()
                if not key_path.exists():
                    raise SourceAccessError(f"Private key not found: {self.endpoint.key_file}")
                connect_kwargs['key_filename'] = str(key_path)

            self.ssh_client.connect(**connect_kwargs)

        except SourceAccessError:
            self.close()
            raise
        except paramiko.AuthenticationException as e:
            self.close()
            raise SourceAccessError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            self.close()
            raise SourceAccessError(f"SSH connection failed: {e}")
        except OSError as e:
            self.close()
            raise SourceAccessError(f"Failed to connect to {self.endpoint.host}: {e}")

    @staticmethod
    def command_line(args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        assignments = [f"{key}={shlex.quote(value)}" for key, value in (env or {}).items()]
        return ' '.join(assignments + [shlex.quote(arg) for arg in args])

    def _exec(self, args: List[str], env: Optional[Dict[str, str]]):
        if self.ssh_client is None:
            raise CommandError("SSH session is not connected")
        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(self.command_line(args, env))
        except paramiko.SSHException as e:
            raise CommandError(f"Failed to execute {args[0]} on {self.endpoint.host}: {e}")
        stdin.close()
        return stdout, stderr

    @staticmethod
    def _check_status(args: List[str], stdout, stderr):
        status = stdout.channel.recv_exit_status()
        if status != 0:
            output = stderr.read().decode('utf-8', errors='replace').strip()
            raise CommandError(
                f"{args[0]} exited with code {status}: {output}",
                returncode=status,
                output=output
            )

    def run(self, args: List[str], env: Optional[Dict[str, str]] = None) -> str:
        stdout, stderr = self._exec(args, env)
        output = stdout.read().decode('utf-8', errors='replace')
        self._check_status(args, stdout, stderr)
        return output

    def dump(self, args: List[str], dest_path: str, env: Optional[Dict[str, str]] = None):
        stdout, stderr = self._exec(args, env)
        with open(dest_path, 'wb') as out:
            while True:
                chunk = stdout.read(CHUNK_SIZE)
                if not chunk:
                    break
                out.write(chunk)
        self._check_status(args, stdout, stderr)

    def close(self):
        """Close the SSH session."""
        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                self.logger.warning(f"Failed to close SSH session to {self.endpoint.host}: {e}")
            self.ssh_client = None


class CaptureStrategy:
    """Produces an archive for one job. Subclasses set ``kind`` and implement ``capture``."""

    kind = None

    def __init__(self, staging_root: Optional[str] = None, logger: Optional[logging.Logger] = None):
        """
        Args:
            staging_root: Parent directory for per-run staging directories
                (defaults to the system temp directory)
            logger: Logger for capture progress
        """
        self.staging_root = staging_root
        self.logger = logger or logging.getLogger(__name__)

    def capture(self, job, archive_path: str) -> CaptureReport:
        raise NotImplementedError


class FolderCapture(CaptureStrategy):
    """Archives a local directory tree directly."""

    kind = 'folder'

    def capture(self, job, archive_path: str) -> CaptureReport:
        source_path = os.path.expanduser(job.source_path)
        try:
            os.stat(source_path)
        except OSError as e:
            raise SourceAccessError(f"Failed to access source directory {job.source_path}: {e}")

        if not os.path.isdir(source_path):
            raise SourceAccessError(f"Source path is not a directory: {job.source_path}")

        try:
            create_archive(
                source_path,
                archive_path,
                ignore_files=job.ignore_files,
                ignore_folders=job.ignore_folders,
                logger=self.logger
            )
        except CompressionError:
            _remove_file(archive_path)
            raise

        return CaptureReport(kind=self.kind, archive_path=archive_path)


class DatabaseCapture(CaptureStrategy):
    """
    Dumps every target database into a staging directory and archives it.

    A failed dump is logged and that database is skipped; the remaining
    databases are still dumped and archived.
    """

    default_port = None
    client_binary = None
    dump_binary = None
    password_env = None
    dump_extension = '.sql'

    def list_command(self, database, host: str, port: int) -> List[str]:
        raise NotImplementedError

    def dump_command(self, database, name: str, host: str, port: int) -> List[str]:
        raise NotImplementedError

    def parse_database_list(self, output: str) -> List[str]:
        raise NotImplementedError

    def command_env(self, database) -> Dict[str, str]:
        if database.password:
            return {self.password_env: str(database.password)}
        return {}

    @contextmanager
    def open_runner(self, job) -> Iterator[Tuple[object, str, int]]:
        """
        Yield (runner, host, port) for reaching the job's database server.

        The tunnel or SSH session is released when the block exits.
        """
        database = job.database
        port = database.port or self.default_port

        if job.ssh is None:
            runner = LocalCommandRunner(logger=self.logger)
            yield runner, database.host, port

        elif job.ssh.mode == 'exec':
            runner = SSHCommandRunner(job.ssh, logger=self.logger)
            runner.connect()
            try:
                yield runner, database.host, port
            finally:
                runner.close()

        else:
            with SSHTunnel(job.ssh, database.host, port, logger=self.logger) as tunnel:
                yield LocalCommandRunner(logger=self.logger), '127.0.0.1', tunnel.local_port

    def resolve_databases(self, job, runner, host: str, port: int) -> List[str]:
        """
        Resolve the effective database list.

        Raises:
            SourceAccessError: If the server cannot be queried or nothing is left after exclusion
        """
        database = job.database

        if database.all_databases:
            try:
                output = runner.run(self.list_command(database, host, port), env=self.command_env(database))
            except CommandError as e:
                raise SourceAccessError(f"Failed to get databases list: {e}")
            names = self.parse_database_list(output)
        else:
            names = list(database.names)

        excluded = set(database.exclude)
        names = [name for name in names if name not in excluded]

        if not names:
            raise SourceAccessError("No databases to backup after filtering")

        return names

    def dump_database(self, job, runner, name: str, host: str, port: int, staging_dir: str) -> str:
        """
        Dump one database into the staging directory.

        Raises:
            DumpError: If the dump command fails
        """
        dump_path = _unique_path(staging_dir, _safe_filename(name), self.dump_extension)
        try:
            runner.dump(
                self.dump_command(job.database, name, host, port),
                dump_path,
                env=self.command_env(job.database)
            )
        except (CommandError, OSError) as e:
            _remove_file(dump_path)
            raise DumpError(f"Failed to dump database {name}: {e}", database=name)
        return dump_path

    def capture(self, job, archive_path: str) -> CaptureReport:
        if job.database is None:
            raise SourceAccessError(f"Missing DB config for {self.kind} backup")

        report = CaptureReport(kind=self.kind, archive_path=archive_path)
        staging_dir = None

        try:
            with self.open_runner(job) as (runner, host, port):
                report.databases = self.resolve_databases(job, runner, host, port)
                self.logger.info(
                    f"[{job.name}] Backing up {len(report.databases)} databases: {', '.join(report.databases)}"
                )

                staging_dir = tempfile.mkdtemp(prefix=f"{job.name}_dumps_", dir=self.staging_root)

                for name in report.databases:
                    try:
                        self.dump_database(job, runner, name, host, port, staging_dir)
                    except DumpError as e:
                        self.logger.error(f"[{job.name}] {e}")
                        report.failed[name] = str(e)
                        continue
                    self.logger.info(f"[{job.name}] Successfully dumped database: {name}")
                    report.dumped.append(name)

            try:
                create_archive(
                    staging_dir,
                    archive_path,
                    ignore_files=job.ignore_files,
                    ignore_folders=job.ignore_folders,
                    logger=self.logger
                )
            except CompressionError:
                _remove_file(archive_path)
                raise

        finally:
            if staging_dir:
                shutil.rmtree(staging_dir, ignore_errors=True)

        self.logger.info(
            f"[{job.name}] Archived {len(report.dumped)} of {len(report.databases)} databases"
        )
        return report


class MySQLCapture(DatabaseCapture):
    kind = 'mysql'
    default_port = 3306
    client_binary = 'mysql'
    dump_binary = 'mysqldump'
    password_env = 'MYSQL_PWD'

    def _connection_args(self, database, host: str, port: int) -> List[str]:
        args = ['-h', host, '-P', str(port)]
        if database.user:
            args.extend(['-u', database.user])
        return args

    def list_command(self, database, host: str, port: int) -> List[str]:
        return [database.client_path or self.client_binary] + self._connection_args(database, host, port) + [
            '-N', '-e', 'SHOW DATABASES;'
        ]

    def dump_command(self, database, name: str, host: str, port: int) -> List[str]:
        return [database.dump_path or self.dump_binary] + self._connection_args(database, host, port) + list(
            database.dump_options
        ) + [name]

    def parse_database_list(self, output: str) -> List[str]:
        names = []
        for line in output.splitlines():
            line = line.strip()
            if line and line != 'Database':
                names.append(line)
        return names


class PostgresCapture(DatabaseCapture):
    kind = 'postgres'
    default_port = 5432
    client_binary = 'psql'
    dump_binary = 'pg_dump'
    password_env = 'PGPASSWORD'

    LIST_QUERY = 'SELECT datname FROM pg_database WHERE NOT datistemplate AND datallowconn ORDER BY datname;'

    def _connection_args(self, database, host: str, port: int) -> List[str]:
        args = ['-h', host, '-p', str(port), '-w']
        if database.user:
            args.extend(['-U', database.user])
        return args

    def list_command(self, database, host: str, port: int) -> List[str]:
        return [database.client_path or self.client_binary] + self._connection_args(database, host, port) + [
            '-d', 'postgres', '-At', '-c', self.LIST_QUERY
        ]

    def dump_command(self, database, name: str, host: str, port: int) -> List[str]:
        return [database.dump_path or self.dump_binary] + self._connection_args(database, host, port) + list(
            database.dump_options
        ) + [name]

    def parse_database_list(self, output: str) -> List[str]:
        names = []
        for line in output.splitlines():
            line = line.strip()
            if line and line != 'datname':
                names.append(line)
        return names


CAPTURE_STRATEGIES = {
    FolderCapture.kind: FolderCapture,
    MySQLCapture.kind: MySQLCapture,
    PostgresCapture.kind: PostgresCapture,
}


def create_capture_strategy(
    kind: str,
    staging_root: Optional[str] = None,
    logger: Optional[logging.Logger] = None
) -> CaptureStrategy:
    """
    Factory function to create the capture strategy for a job type.

    Raises:
        UnsupportedJobTypeError: If kind is not a known capture type
    """
    strategy_class = CAPTURE_STRATEGIES.get(kind)
    if strategy_class is None:
        raise UnsupportedJobTypeError(kind)
    return strategy_class(staging_root=staging_root, logger=logger)


def _safe_filename(name: str) -> str:
    return "".join(c if c.isalnum() or c in ('-', '_', '.') else '_' for c in name)


def _unique_path(directory: str, stem: str, extension: str) -> str:
    """Path for stem+extension in directory, suffixed with -1, -2, ... when taken."""
    path = os.path.join(directory, f"{stem}{extension}")
    counter = 0
    while os.path.exists(path):
        counter += 1
        path = os.path.join(directory, f"{stem}-{counter}{extension}")
    return path


def _remove_file(path: str):
    try:
        if os.path.exists(path):
            os.remove(path)
    except OSError as e:
        logging.getLogger(__name__).error(f"Failed to remove {path}: {e}")
