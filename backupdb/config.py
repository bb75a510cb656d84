import os


def _env_flag(name, default):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.environ.get('DATA_DIR') or os.path.join(BASE_DIR, 'data')

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'backupdb-dev-secret'

    # Database (run history)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "backupdb.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Job file and archive locations
    BACKUP_CONFIG_PATH = os.environ.get('BACKUP_CONFIG_PATH') or 'config.yaml'
    BACKUP_ROOT = os.environ.get('BACKUP_ROOT') or 'backups'
    TEMP_DIR = os.environ.get('TEMP_DIR') or os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Scheduler
    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', 'true')
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS') or 3)
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '0 2 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
