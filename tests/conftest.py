"""
Shared pytest fixtures for backupdb tests.

This module provides fixtures for:
- Flask app, database, test client and CLI runner
- A job file with folder and database jobs
- JobSpec fixtures for engine tests
- Mock fixtures for external services (S3, SSH, scheduler)
- Temporary file fixtures
"""

import logging
from unittest.mock import MagicMock, patch

import pytest
import boto3
import yaml
from moto import mock_aws

from backupdb import create_app, db as _db
from backupdb.jobs import DatabaseSpec, JobSpec, SSHEndpoint


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a small source directory.

    Creates:
    - a.txt
    - b.tmp (ignored by ``*.tmp``)
    - temp/c.txt (ignored by the ``temp`` folder rule)
    """
    root = tmp_path / 'source'
    root.mkdir()
    (root / 'a.txt').write_text('alpha')
    (root / 'b.tmp').write_text('scratch')
    (root / 'temp').mkdir()
    (root / 'temp' / 'c.txt').write_text('cached')
    return root


@pytest.fixture
def config_data(source_tree):
    """Parsed form of the job file used by the app fixture."""
    return {
        'backups': [
            {
                'name': 'docs',
                'type': 'folder',
                'source_path': str(source_tree),
                'ignore': {'files': ['*.tmp'], 'folders': ['temp']},
                'scheduler': {'enabled': True, 'cron_expr': '0 3 * * *', 'max_backups': 2},
            },
            {
                'name': 'app_db',
                'type': 'mysql',
                'storage': ['offsite'],
                'scheduler': {'enabled': False},
                'ssh': {'host': 'db.example.com', 'user': 'backup', 'mode': 'tunnel'},
                'db': {'name': '__ALL__', 'user': 'dump', 'password': 'secret',
                       'exclude_databases': ['information_schema']},
            },
        ],
        'storage': {
            'offsite': {
                'enabled': True,
                'kind': 'rsync',
                'server': 'backup.example.com',
                'username': 'archiver',
                'path': '/srv/backups',
            },
            'cloud': {
                'enabled': False,
                'kind': 's3',
                'bucket': 'test-bucket',
            },
        },
    }


@pytest.fixture
def config_file(tmp_path, config_data):
    path = tmp_path / 'config.yaml'
    path.write_text(yaml.safe_dump(config_data))
    return path


@pytest.fixture(scope='function')
def app(tmp_path, config_file):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and a scheduler that is never started.
    """
    app = create_app('testing', overrides={
        'SECRET_KEY': 'test-secret-key',
        'BACKUP_CONFIG_PATH': str(config_file),
        'BACKUP_ROOT': str(tmp_path / 'backups'),
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def logger():
    return logging.getLogger('backupdb.tests')


@pytest.fixture
def folder_job(source_tree):
    """Folder job over source_tree with the ignore rules of the example scenario."""
    return JobSpec(
        name='docs',
        type='folder',
        source_path=str(source_tree),
        ignore_files=['*.tmp'],
        ignore_folders=['temp'],
        max_backups=2
    )


@pytest.fixture
def mysql_job():
    """MySQL job with three explicit databases and no SSH hop."""
    return JobSpec(
        name='shop',
        type='mysql',
        database=DatabaseSpec(
            names=['orders', 'users', 'audit'],
            user='dump',
            password='secret',
            host='db.internal',
            port=3307
        )
    )


@pytest.fixture
def ssh_endpoint():
    return SSHEndpoint(host='db.example.com', user='backup', port=2222, key_file='/keys/id_ed25519')


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient used by the SSH command runner.

    Returns the mocked SSHClient class.
    """
    with patch('backupdb.backup.sources.SSHClient') as mock_ssh:
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def sample_archive(tmp_path):
    """Create an empty file that follows the archive naming convention."""
    job_dir = tmp_path / 'backups' / 'docs'
    job_dir.mkdir(parents=True)
    archive = job_dir / 'docs_20240115120000_000001.tar.gz'
    archive.write_bytes(b'archive data')
    return archive


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('backupdb.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.timezone = 'UTC'
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
