import os
import secrets


def _env_list(name, default=()):
    value = os.environ.get(name)
    if value is None:
        return list(default)
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_bool(name, default=False):
    return os.environ.get(name, str(default)).lower() in ('1', 'true', 'yes')


def _destination_from_env(prefix, required=False):
    """
    Read one storage destination from {prefix}_* variables.

    Returns None when the destination is optional and not configured.
    """
    dest_type = os.environ.get(f'{prefix}_TYPE')
    bucket = os.environ.get(f'{prefix}_BUCKET')
    path = os.environ.get(f'{prefix}_PATH')
    if not required and not (dest_type or bucket or path):
        return None

    name = prefix.lower()
    return {
        'type': dest_type or ('local' if path and not bucket else 's3'),
        'bucket': bucket,
        'endpoint_url': os.environ.get(f'{prefix}_ENDPOINT_URL'),
        'region': os.environ.get(f'{prefix}_REGION', 'us-east-1'),
        'access_key_secret': os.environ.get(f'{prefix}_ACCESS_KEY_SECRET', f'{name}_access_key_id'),
        'secret_key_secret': os.environ.get(f'{prefix}_SECRET_KEY_SECRET', f'{name}_secret_access_key'),
        'path': path
    }


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        secret_file = os.environ.get('SECRET_KEY_FILE', '/data/.secret_key')
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            # Non-persistent: the encrypted secrets backend cannot be reopened after a restart
            SECRET_KEY = secrets.token_hex(32)

    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Database (run history and APScheduler job store)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{os.path.join(DATA_DIR, "vwbackup.db")}'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_DIR = os.environ.get('LOG_DIR') or os.path.join(DATA_DIR, 'logs')

    # Source (Vaultwarden data directory, mounted read-only)
    SOURCE_DIR = os.environ.get('SOURCE_DIR') or '/source'
    SOURCE_DB_NAME = os.environ.get('SOURCE_DB_NAME') or 'db.sqlite3'
    FULL_BACKUP_INCLUDE = _env_list(
        'FULL_BACKUP_INCLUDE',
        ['attachments', 'sends', 'config.json', 'rsa_key*', 'icon_cache']
    )
    FULL_BACKUP_TIERS = _env_list('FULL_BACKUP_TIERS', ['daily', 'monthly', 'yearly'])

    # Working directories
    SCRATCH_DIR = os.environ.get('SCRATCH_DIR') or os.path.join(DATA_DIR, 'scratch')
    LOCK_DIR = os.environ.get('LOCK_DIR') or os.path.join(DATA_DIR, 'locks')

    # Destinations
    PRIMARY_DESTINATION = _destination_from_env('PRIMARY', required=True)
    SECONDARY_DESTINATION = _destination_from_env('SECONDARY')

    # Retention: count:N, age:DAYS or unlimited
    RETENTION_POLICIES = {
        'hourly': os.environ.get('RETENTION_HOURLY', 'count:48'),
        'daily': os.environ.get('RETENTION_DAILY', 'age:30'),
        'monthly': os.environ.get('RETENTION_MONTHLY', 'age:365'),
        'yearly': os.environ.get('RETENTION_YEARLY', 'age:2555')
    }

    # Schedules (crontab, UTC)
    TIER_SCHEDULES = {
        'hourly': os.environ.get('SCHEDULE_HOURLY', '0 * * * *'),
        'daily': os.environ.get('SCHEDULE_DAILY', '30 2 * * *'),
        'monthly': os.environ.get('SCHEDULE_MONTHLY', '0 4 1 * *'),
        'yearly': os.environ.get('SCHEDULE_YEARLY', '0 5 1 1 *')
    }
    VERIFY_SCHEDULE = os.environ.get('VERIFY_SCHEDULE', '0 6 * * *')
    STALE_FACTOR = float(os.environ.get('STALE_FACTOR', 2.0))

    # Encryption
    PASSPHRASE_SECRET = os.environ.get('PASSPHRASE_SECRET', 'backup_passphrase')
    MIN_PASSPHRASE_LENGTH = int(os.environ.get('MIN_PASSPHRASE_LENGTH', 32))
    SCRYPT_N = int(os.environ.get('SCRYPT_N', 2 ** 15))
    SCRYPT_R = int(os.environ.get('SCRYPT_R', 8))
    SCRYPT_P = int(os.environ.get('SCRYPT_P', 1))

    # Timeouts and retries (seconds)
    SNAPSHOT_TIMEOUT = float(os.environ.get('SNAPSHOT_TIMEOUT', 600))
    CONNECT_TIMEOUT = float(os.environ.get('CONNECT_TIMEOUT', 10))
    NETWORK_TIMEOUT = float(os.environ.get('NETWORK_TIMEOUT', 60))
    UPLOAD_MAX_ATTEMPTS = int(os.environ.get('UPLOAD_MAX_ATTEMPTS', 5))
    BACKOFF_MULTIPLIER = float(os.environ.get('BACKOFF_MULTIPLIER', 1))
    BACKOFF_MAX = float(os.environ.get('BACKOFF_MAX', 30))

    # Secrets: env, file (Docker secrets) or encrypted
    SECRETS_BACKEND = os.environ.get('SECRETS_BACKEND', 'env')
    SECRETS_DIR = os.environ.get('SECRETS_DIR', '/run/secrets')
    SECRETS_FILE = os.environ.get('SECRETS_FILE') or os.path.join(DATA_DIR, 'secrets.json')

    # Status API
    STATUS_API_TOKEN = os.environ.get('STATUS_API_TOKEN')

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', True)
    SCHEDULER_TIMEZONE = 'UTC'
    SCHEDULER_MISFIRE_GRACE_TIME = int(os.environ.get('SCHEDULER_MISFIRE_GRACE_TIME', 300))


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "vwbackup.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    SCRATCH_DIR = os.path.join(DATA_DIR, 'scratch')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    SECRETS_FILE = os.path.join(DATA_DIR, 'secrets.json')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Configuration for the test suite; fixtures override paths per test."""
    TESTING = True
    DEBUG = False
    SECRET_KEY = 'test-secret-key'
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    SCHEDULER_ENABLED = False
    SECRETS_BACKEND = 'env'
    SCRYPT_N = 2 ** 10
    MIN_PASSPHRASE_LENGTH = 32
    UPLOAD_MAX_ATTEMPTS = 2
    BACKOFF_MULTIPLIER = 0
    BACKOFF_MAX = 0
    PRIMARY_DESTINATION = {'type': 'local', 'path': '/tmp/vwbackup-test-primary'}
    SECONDARY_DESTINATION = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
