"""
Storage backends for backup archives.

Supports:
- S3Storage: Upload to AWS S3 (or any S3 compatible endpoint)
- RsyncStorage: Copy to a remote host with rsync over SSH
- GoogleDriveStorage: Upload to Google Drive through an rclone remote

StorageDispatcher fans one archive out to several named backends and
succeeds when at least one of them accepted it.
"""

import os
import subprocess
import threading
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import boto3
from botocore.exceptions import ClientError, BotoCoreError

from .errors import ReplicationError
from .tunnel import host_key_options


# Use multipart upload for files larger than 100MB, in 10MB parts
MULTIPART_THRESHOLD = 100 * 1024 * 1024
MULTIPART_CHUNK_SIZE = 10 * 1024 * 1024

# rsync/rclone transfers are given at most 6 hours
TRANSFER_TIMEOUT = 6 * 60 * 60


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


class StorageBackend:
    """
    Base class for storage backends.

    ``send`` is serialized per instance, so one backend can be shared by
    concurrently running jobs.
    """

    kind = None

    def __init__(self, name: str, logger: Optional[logging.Logger] = None):
        self.name = name
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.Lock()

    def identifier(self) -> str:
        return self.name

    def send(self, local_path: str) -> str:
        """
        Send a local archive to this backend.

        Returns:
            Backend specific location of the stored file

        Raises:
            StorageError: If the transfer fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        with self._lock:
            return self._send(local_path)

    def _send(self, local_path: str) -> str:
        raise NotImplementedError


class S3Storage(StorageBackend):
    """
    Handler for uploading backups to AWS S3.

    Objects are stored under ``{path}/{filename}``.
    """

    kind = 's3'

    def __init__(
        self,
        name: str,
        bucket_name: str,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: str = 'us-east-1',
        path: str = '',
        endpoint_url: Optional[str] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize S3 storage handler.

        Args:
            name: Configured storage name
            bucket_name: S3 bucket name
            access_key: AWS access key ID (falls back to the default credential chain)
            secret_key: AWS secret access key
            region: AWS region (default: us-east-1)
            path: Key prefix inside the bucket
            endpoint_url: Custom endpoint for S3 compatible services
        """
        super().__init__(name, logger)
        if not bucket_name:
            raise StorageError("S3 bucket name is required")

        self.bucket_name = bucket_name
        self.region = region
        self.path = (path or '').strip('/')

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                endpoint_url=endpoint_url
            )
        except (BotoCoreError, ValueError) as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    def object_key(self, local_path: str) -> str:
        filename = os.path.basename(local_path)
        return f"{self.path}/{filename}" if self.path else filename

    def _send(self, local_path: str) -> str:
        s3_key = self.object_key(local_path)
        self.logger.info(f"Uploading {local_path} to s3://{self.bucket_name}/{s3_key}")

        try:
            file_size = os.path.getsize(local_path)

            if file_size > MULTIPART_THRESHOLD:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

            return s3_key

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except OSError as e:
            raise StorageError(f"Failed to read {local_path}: {e}")

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file using multipart upload.

        The upload is aborted if any part fails so no orphaned parts are billed.
        """
        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(MULTIPART_CHUNK_SIZE)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                self.logger.error(f"Failed to abort multipart upload {upload_id}: {abort_error}")
            raise


class RsyncStorage(StorageBackend):
    """Copies archives to ``{username}@{server}:{path}`` with rsync over SSH."""

    kind = 'rsync'

    def __init__(
        self,
        name: str,
        server: str,
        username: str,
        path: str,
        port: int = 22,
        key_file: Optional[str] = None,
        strict_host_key_checking: bool = False,
        rsync_binary: str = 'rsync',
        logger: Optional[logging.Logger] = None
    ):
        super().__init__(name, logger)
        if not server or not username or not path:
            raise StorageError("rsync storage requires server, username and path")

        self.server = server
        self.username = username
        self.path = path
        self.port = port
        self.key_file = key_file
        self.strict_host_key_checking = strict_host_key_checking
        self.rsync_binary = rsync_binary

    @property
    def destination(self) -> str:
        path = self.path if self.path.endswith('/') else f"{self.path}/"
        return f"{self.username}@{self.server}:{path}"

    def build_command(self, local_path: str) -> List[str]:
        ssh_args = ['ssh', *host_key_options(self.strict_host_key_checking), '-p', str(self.port)]
        if self.key_file:
            ssh_args.extend(['-i', os.path.expanduser(self.key_file)])
        ssh_command = ' '.join(ssh_args)
        return [
            self.rsync_binary,
            '-avz',
            '-e', ssh_command,
            local_path,
            self.destination,
        ]

    def _send(self, local_path: str) -> str:
        command = self.build_command(local_path)
        self.logger.info(f"Running: {' '.join(command)}")

        try:
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=TRANSFER_TIMEOUT
            )
        except subprocess.TimeoutExpired:
            raise StorageError(f"rsync to {self.server} timed out")
        except OSError as e:
            raise StorageError(f"Failed to execute rsync: {e}")

        output = result.stdout.decode('utf-8', errors='replace').strip()
        if result.returncode != 0:
            raise StorageError(f"rsync to {self.server} failed with code {result.returncode}: {output}")

        self.logger.debug(output)
        return f"{self.destination}{os.path.basename(local_path)}"


class GoogleDriveStorage(StorageBackend):
    """
    Uploads archives to Google Drive with rclone.

    Two ways to reach Drive:

    - ``remote``: a Google Drive remote already set up in rclone.conf;
      files land in ``{remote}:{folder}/{filename}``.
    - ``credentials_file`` (service-account JSON) and optional ``folder_id``:
      no rclone.conf needed, the on-the-fly ``:drive:`` backend is rooted at
      the Drive folder with that ID.
    """

    kind = 'google_drive'

    def __init__(
        self,
        name: str,
        remote: Optional[str] = None,
        folder: str = '',
        config_file: Optional[str] = None,
        credentials_file: Optional[str] = None,
        folder_id: Optional[str] = None,
        rclone_binary: str = 'rclone',
        logger: Optional[logging.Logger] = None
    ):
        super().__init__(name, logger)
        if not remote and not credentials_file:
            raise StorageError("Google Drive storage requires an rclone remote or a credentials_file")

        self.remote = remote.rstrip(':') if remote else ''
        self.folder = (folder or '').strip('/')
        self.config_file = config_file
        self.credentials_file = credentials_file
        self.folder_id = folder_id
        self.rclone_binary = rclone_binary

    @property
    def uses_service_account(self) -> bool:
        return not self.remote

    def remote_path(self, local_path: str) -> str:
        filename = os.path.basename(local_path)
        prefix = ':drive:' if self.uses_service_account else f"{self.remote}:"
        if self.folder:
            return f"{prefix}{self.folder}/{filename}"
        return f"{prefix}{filename}"

    def build_command(self, local_path: str) -> List[str]:
        command = [self.rclone_binary, 'copyto', local_path, self.remote_path(local_path)]
        if self.uses_service_account:
            command.extend(['--drive-service-account-file', os.path.expanduser(self.credentials_file)])
            if self.folder_id:
                command.extend(['--drive-root-folder-id', self.folder_id])
        if self.config_file:
            command.extend(['--config', os.path.expanduser(self.config_file)])
        return command

    def _send(self, local_path: str) -> str:
        command = self.build_command(local_path)
        target = self.remote or 'drive'
        self.logger.info(f"Uploading {local_path} to {self.remote_path(local_path)}")

        try:
            result = subprocess.run(
                command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                timeout=TRANSFER_TIMEOUT
            )
        except subprocess.TimeoutExpired:
            raise StorageError(f"rclone upload to {target} timed out")
        except OSError as e:
            raise StorageError(f"Failed to execute rclone: {e}")

        if result.returncode != 0:
            output = result.stdout.decode('utf-8', errors='replace').strip()
            raise StorageError(f"rclone upload to {target} failed with code {result.returncode}: {output}")

        return self.remote_path(local_path)


def create_storage_backend(settings, logger: Optional[logging.Logger] = None) -> StorageBackend:
    """
    Factory function to build a backend from its StorageSettings.

    Raises:
        StorageError: If the kind is unknown or required settings are missing
        ValueError: If a numeric setting is not a number
    """
    options = settings.options

    if settings.kind == 's3':
        return S3Storage(
            name=settings.name,
            bucket_name=options.get('bucket'),
            access_key=options.get('access_key_id'),
            secret_key=options.get('secret_access_key'),
            region=options.get('region') or 'us-east-1',
            path=options.get('path', ''),
            endpoint_url=options.get('endpoint_url'),
            logger=logger
        )
    elif settings.kind == 'rsync':
        return RsyncStorage(
            name=settings.name,
            server=options.get('server'),
            username=options.get('username'),
            path=options.get('path'),
            port=int(options.get('port') or 22),
            key_file=options.get('key_file'),
            strict_host_key_checking=bool(options.get('strict_host_key_checking', False)),
            logger=logger
        )
    elif settings.kind == 'google_drive':
        return GoogleDriveStorage(
            name=settings.name,
            remote=options.get('remote'),
            folder=options.get('folder', ''),
            config_file=options.get('config_file'),
            credentials_file=options.get('credentials_file'),
            folder_id=options.get('folder_id'),
            logger=logger
        )
    else:
        raise StorageError(f"Unknown storage provider kind: {settings.kind}")


def build_storage_backends(storage_settings, logger: Optional[logging.Logger] = None) -> Dict[str, StorageBackend]:
    """
    Build every enabled backend once, at startup.

    Disabled, unknown or misconfigured entries are logged and left out, so
    jobs naming them fail at dispatch time for that target only.

    Args:
        storage_settings: Mapping of storage name -> StorageSettings

    Returns:
        Mapping of storage name -> constructed backend
    """
    log = logger or logging.getLogger(__name__)
    backends = {}

    for name, settings in storage_settings.items():
        if not settings.enabled:
            log.info(f"Storage {name} ({settings.kind}) is disabled")
            continue

        try:
            backends[name] = create_storage_backend(settings, logger=log)
        except (StorageError, ValueError, TypeError) as e:
            log.error(f"Failed to initialize storage provider {name}: {e}")
            continue

        log.info(f"Storage provider initialized: {name} ({settings.kind})")

    return backends


@dataclass
class TargetOutcome:
    """Result of sending one archive to one named target."""
    target: str
    success: bool
    location: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DispatchResult:
    outcomes: List[TargetOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[str]:
        return [o.target for o in self.outcomes if o.success]

    @property
    def failed(self) -> List[str]:
        return [o.target for o in self.outcomes if not o.success]


class StorageDispatcher:
    """
    Sends a completed archive to each named storage target.

    Every target is attempted regardless of earlier outcomes; the dispatch
    succeeds when at least one target accepted the file.
    """

    def __init__(self, backends: Dict[str, StorageBackend], logger: Optional[logging.Logger] = None):
        self.backends = dict(backends)
        self.logger = logger or logging.getLogger(__name__)

    def get_backend(self, name: str) -> StorageBackend:
        backend = self.backends.get(name)
        if backend is None:
            raise StorageError(f"Storage provider {name} not found")
        return backend

    def dispatch(self, archive_path: str, target_names: List[str], job_name: str) -> DispatchResult:
        """
        Fan an archive out to the named targets.

        Args:
            archive_path: Path to the completed archive
            target_names: Storage names in dispatch order
            job_name: Job name for diagnostics

        Returns:
            DispatchResult with one outcome per target

        Raises:
            ReplicationError: If the archive is missing or no target accepted it
        """
        self.logger.info(f"[{job_name}] Sending file to storage: {archive_path}")

        if not os.path.isfile(archive_path):
            raise ReplicationError(f"Backup file does not exist: {archive_path}")

        result = DispatchResult()
        last_error = None

        for name in target_names:
            try:
                backend = self.get_backend(name)
                self.logger.info(f"[{job_name}] -> Sending file to provider: {name}")
                location = backend.send(archive_path)
            except Exception as e:
                self.logger.error(f"[{job_name}] Failed to send file to provider {name}: {e}")
                last_error = e
                result.outcomes.append(TargetOutcome(target=name, success=False, error=str(e)))
                continue

            self.logger.info(f"[{job_name}] File sent successfully to provider: {name}")
            result.outcomes.append(TargetOutcome(target=name, success=True, location=location))

        if not result.succeeded:
            raise ReplicationError(
                f"Failed to send file to any storage provider: {last_error}",
                outcomes=result.outcomes
            )

        self.logger.info(
            f"[{job_name}] File sent to {len(result.succeeded)} of {len(target_names)} providers"
        )
        return result
