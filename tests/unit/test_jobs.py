"""
Unit tests for the YAML job file loader (backupdb/jobs.py).
"""

import pytest
import yaml

from backupdb.jobs import (
    ALL_DATABASES,
    ConfigError,
    JobSpec,
    load_config,
    parse_config
)


class TestLoadConfig:
    """Test loading the job file from disk."""

    def test_load_config(self, config_file, source_tree):
        config = load_config(str(config_file))

        assert [job.name for job in config.jobs] == ['docs', 'app_db']
        assert set(config.storage) == {'offsite', 'cloud'}

        docs = config.get_job('docs')
        assert docs.type == 'folder'
        assert docs.source_path == str(source_tree)
        assert docs.ignore_files == ['*.tmp']
        assert docs.ignore_folders == ['temp']
        assert docs.schedule_enabled is True
        assert docs.cron_expr == '0 3 * * *'
        assert docs.max_backups == 2
        assert docs.storage == []

    def test_database_job(self, config_file):
        job = load_config(str(config_file)).get_job('app_db')

        assert job.type == 'mysql'
        assert job.storage == ['offsite']
        assert job.ssh.host == 'db.example.com'
        assert job.ssh.port == 22
        assert job.ssh.mode == 'tunnel'
        assert job.ssh.destination == 'backup@db.example.com'
        assert job.ssh.strict_host_key_checking is False
        assert job.database.names == [ALL_DATABASES]
        assert job.database.all_databases
        assert job.database.exclude == ['information_schema']
        assert job.database.password == 'secret'

    def test_storage_settings(self, config_file):
        storage = load_config(str(config_file)).storage

        assert storage['offsite'].kind == 'rsync'
        assert storage['offsite'].enabled is True
        assert storage['offsite'].options == {
            'server': 'backup.example.com',
            'username': 'archiver',
            'path': '/srv/backups',
        }
        assert storage['cloud'].enabled is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="Failed to read config file"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("backups: [unclosed")

        with pytest.raises(ConfigError, match="Failed to parse config file"):
            load_config(str(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = load_config(str(path))

        assert config.jobs == []
        assert config.storage == {}

    def test_get_job_unknown(self, config_file):
        assert load_config(str(config_file)).get_job('nope') is None


class TestParseConfig:
    """Test validation of job definitions."""

    def test_defaults(self):
        config = parse_config({'backups': [{'name': 'docs', 'source_path': '/srv/docs'}]})
        job = config.jobs[0]

        assert job.type == 'folder'
        assert job.max_backups == 0
        assert job.schedule_enabled is False
        assert job.cron_expr is None
        assert job.ssh is None
        assert job.database is None

    def test_database_names_list(self):
        config = parse_config({'backups': [{
            'name': 'pg',
            'type': 'postgres',
            'db': {'databases': ['app', 'reporting'], 'port': '5433', 'dump_options': '--no-owner'},
        }]})
        database = config.jobs[0].database

        assert database.names == ['app', 'reporting']
        assert database.port == 5433
        assert database.dump_options == ['--no-owner']
        assert not database.all_databases

    def test_exec_mode(self):
        config = parse_config({'backups': [{
            'name': 'db',
            'type': 'mysql',
            'ssh': {'host': 'h', 'username': 'u', 'port': 2222, 'mode': 'exec', 'private_key': '~/.ssh/id',
                    'strict_host_key_checking': True},
            'db': {'name': 'shop'},
        }]})
        ssh = config.jobs[0].ssh

        assert ssh.mode == 'exec'
        assert ssh.user == 'u'
        assert ssh.port == 2222
        assert ssh.key_file == '~/.ssh/id'
        assert ssh.strict_host_key_checking is True

    @pytest.mark.parametrize("job,message", [
        ({'source_path': '/x'}, "missing a name"),
        ({'name': 'a/b', 'source_path': '/x'}, "path separators"),
        ({'name': 'x', 'type': 'mongodb'}, "type must be one of"),
        ({'name': 'x', 'type': 'folder'}, "requires source_path"),
        ({'name': 'x', 'type': 'mysql'}, "requires a db section"),
        ({'name': 'x', 'type': 'mysql', 'db': {'user': 'u'}}, "requires name or databases"),
        ({'name': 'x', 'source_path': '/x', 'scheduler': {'max_backups': 'many'}}, "must be an integer"),
        ({'name': 'x', 'source_path': '/x', 'scheduler': {'max_backups': True}}, "must be an integer"),
        ({'name': 'x', 'type': 'mysql', 'db': {'name': 'd'}, 'ssh': {'host': 'h'}}, "requires host and user"),
        ({'name': 'x', 'type': 'mysql', 'db': {'name': 'd'},
          'ssh': {'host': 'h', 'user': 'u', 'mode': 'both'}}, "mode must be one of"),
        ({'name': 'x', 'source_path': '/x', 'storage': {'a': 1}}, "must be a list"),
    ])
    def test_invalid_jobs(self, job, message):
        with pytest.raises(ConfigError, match=message):
            parse_config({'backups': [job]})

    def test_duplicate_names(self):
        with pytest.raises(ConfigError, match="Duplicate backup name: docs"):
            parse_config({'backups': [
                {'name': 'docs', 'source_path': '/a'},
                {'name': 'docs', 'source_path': '/b'},
            ]})

    def test_backups_must_be_a_list(self):
        with pytest.raises(ConfigError, match="backups must be a list"):
            parse_config({'backups': {'name': 'docs'}})

    def test_document_must_be_a_mapping(self):
        with pytest.raises(ConfigError):
            parse_config(['not', 'a', 'mapping'])

    def test_job_spec_is_immutable(self):
        job = JobSpec(name='docs', source_path='/x')

        with pytest.raises(Exception):
            job.name = 'other'

    def test_round_trip_through_yaml(self, config_data):
        config = parse_config(yaml.safe_load(yaml.safe_dump(config_data)))

        assert len(config.jobs) == 2
