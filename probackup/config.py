import os
import json


def _env_json(name, default):
    """Read a JSON value from the environment, falling back to default."""
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return json.loads(value)
    except ValueError:
        print(f"WARNING: Ignoring invalid JSON in {name}")
        return default


def _env_list(name):
    value = os.environ.get(name, '')
    return [item.strip() for item in value.split(os.pathsep) if item.strip()]


class Config:
    """Base configuration"""

    # Storage locations
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/data/backups'
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'
    LOG_LEVEL = os.environ.get('LOG_LEVEL')
    DEFAULT_STORAGE = os.environ.get('DEFAULT_STORAGE') or 'local'

    # Database connections: name -> SQLAlchemy URL
    DATABASES = _env_json('DATABASES', {})
    if os.environ.get('DATABASE_URL'):
        DATABASES = dict(DATABASES, default=os.environ['DATABASE_URL'])
    DEFAULT_CONNECTION = os.environ.get('DEFAULT_CONNECTION') or 'default'

    # Filesystem backups (os.pathsep separated)
    FILESYSTEM_PATHS = _env_list('FILESYSTEM_PATHS')

    # Retention in days per backup type (0 disables)
    RETENTION_DAYS = {
        'database': int(os.environ.get('RETENTION_DAYS_DATABASE', 30)),
        'filesystem': int(os.environ.get('RETENTION_DAYS_FILESYSTEM', 30)),
    }

    COMPRESSION_LEVEL = int(os.environ.get('COMPRESSION_LEVEL', 6))
    COMMAND_TIMEOUT = int(os.environ.get('COMMAND_TIMEOUT', 3600))

    # Remote storage
    S3 = {
        'bucket': os.environ.get('S3_BUCKET'),
        'region': os.environ.get('S3_REGION', 'us-east-1'),
        'access_key': os.environ.get('AWS_ACCESS_KEY_ID'),
        'secret_key': os.environ.get('AWS_SECRET_ACCESS_KEY'),
        'prefix': os.environ.get('S3_PREFIX', ''),
        'endpoint_url': os.environ.get('S3_ENDPOINT_URL'),
    }
    GCS = {
        'bucket': os.environ.get('GCS_BUCKET'),
        'project_id': os.environ.get('GCS_PROJECT_ID'),
        'credentials_file': os.environ.get('GOOGLE_APPLICATION_CREDENTIALS'),
        'prefix': os.environ.get('GCS_PREFIX', ''),
    }
    SFTP = {
        'host': os.environ.get('SFTP_HOST'),
        'port': int(os.environ.get('SFTP_PORT', 22)),
        'username': os.environ.get('SFTP_USERNAME'),
        'password': os.environ.get('SFTP_PASSWORD'),
        'private_key': os.environ.get('SFTP_PRIVATE_KEY'),
        'base_path': os.environ.get('SFTP_BASE_PATH', '/backups'),
    }

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'false').lower() == 'true'
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULE = {
        'database': {'enabled': True, 'frequency': 'daily', 'time': '02:00', 'cron_expression': None},
        'filesystem': {'enabled': True, 'frequency': 'weekly', 'time': '03:00', 'cron_expression': None},
    }
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '30 4 * * *'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class TestingConfig(DevelopmentConfig):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SCHEDULER_ENABLED = False
    DATABASES = {}
    FILESYSTEM_PATHS = []
    S3 = {}
    GCS = {}
    SFTP = {}


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
