import os
import json


def _load_steps():
    """
    Load the ordered step configuration.

    BACKUP_STEPS holds a JSON object (step identifier -> step config);
    BACKUP_STEPS_FILE points to a file with the same content. Key order in
    the JSON document is the order steps run in.
    """
    raw = os.environ.get('BACKUP_STEPS')
    steps_file = os.environ.get('BACKUP_STEPS_FILE')

    if not raw and steps_file and os.path.exists(steps_file):
        with open(steps_file, 'r') as f:
            raw = f.read()

    if not raw:
        return {}

    steps = json.loads(raw)
    if not isinstance(steps, dict):
        raise ValueError("BACKUP_STEPS must be a JSON object mapping step identifiers to configs")
    return steps


def _int_or_none(name):
    value = os.environ.get(name)
    return int(value) if value else None


class Config:
    """Base configuration"""

    # Database (the backup index lives here)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/stowage.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scratch space for working directories and archives
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # Per-backup lock files shared by every process using this data directory
    LOCK_DIR = os.environ.get('LOCK_DIR') or '/data/locks'

    # Backup pipeline
    BACKUP_COMPRESSOR = os.environ.get('BACKUP_COMPRESSOR') or 'tar.gz'
    BACKUP_STEPS = _load_steps()
    BACKUP_NAME_GENERATOR = os.environ.get('BACKUP_NAME_GENERATOR') or 'timestamp'
    BACKUP_NAME_PREFIX = os.environ.get('BACKUP_NAME_PREFIX') or 'backup'

    # Remote storage: 's3' or 'local'
    FILESYSTEM_TYPE = os.environ.get('FILESYSTEM_TYPE') or 's3'
    LOCAL_BACKUP_DIR = os.environ.get('LOCAL_BACKUP_DIR') or '/data/local_backups'
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_PREFIX = os.environ.get('S3_PREFIX') or ''
    S3_ENDPOINT_URL = os.environ.get('S3_ENDPOINT_URL')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON')

    # Retention (None = not enforced)
    RETENTION_MAX_COUNT = _int_or_none('RETENTION_MAX_COUNT')
    RETENTION_MAX_AGE_DAYS = _int_or_none('RETENTION_MAX_AGE_DAYS')

    # API authentication (bearer token); API is closed when unset
    API_TOKEN = os.environ.get('API_TOKEN')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "stowage.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    LOCAL_BACKUP_DIR = os.path.join(DATA_DIR, 'local_backups')
    FILESYSTEM_TYPE = os.environ.get('FILESYSTEM_TYPE') or 'local'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory index, local storage, no scheduler"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    FILESYSTEM_TYPE = 'local'
    BACKUP_STEPS = {}
    SCHEDULER_ENABLED = False
    API_TOKEN = 'test-api-token'


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
