# config.py
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _int_env(name, default=None):
    value = os.environ.get(name)
    return int(value) if value and value.strip().lstrip('-').isdigit() else default


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY', 'a_very_secret_key')

    # --- DATABASE CONFIG ---
    # Catalog, mapping registry and sync bookkeeping all live in one database.
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URI', 'sqlite:///tour_sync.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Scheduler config
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', '1') not in ('0', 'false', 'False')
    SCHEDULER_API_ENABLED = True

    APP_TIMEZONE = os.environ.get('APP_TIMEZONE', 'Asia/Bangkok')

    # Sync orchestration
    SYNC_DEFAULT_CHUNK_SIZE = _int_env('SYNC_DEFAULT_CHUNK_SIZE', 50)
    SYNC_HEARTBEAT_TIMEOUT_MINUTES = _int_env('SYNC_HEARTBEAT_TIMEOUT_MINUTES', 30)
    # Hard cap on pages fetched in a single run, protects against a cursor that never ends.
    SYNC_MAX_PAGES = _int_env('SYNC_MAX_PAGES', 500)

    # Outbound HTTP to wholesaler APIs
    HTTP_TIMEOUT_SECONDS = _int_env('HTTP_TIMEOUT_SECONDS', 30)
    HTTP_MAX_RETRIES = _int_env('HTTP_MAX_RETRIES', 3)

    # Federated search fan-out
    SEARCH_MAX_WORKERS = _int_env('SEARCH_MAX_WORKERS', 4)

    # Limit the number of tours processed per sync run for testing against a live API.
    # Set to a number (e.g., 3) in .env for testing, or leave it unset for production.
    JOB_RECORD_LIMIT = _int_env('JOB_RECORD_LIMIT')


class DevelopmentConfig(Config):
    """Development configuration."""
    DEBUG = True


class ProductionConfig(Config):
    """Production configuration."""
    DEBUG = False


class TestingConfig(Config):
    """Test configuration: in-memory database, no background scheduler."""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SCHEDULER_ENABLED = False
    APP_TIMEZONE = 'UTC'
    HTTP_MAX_RETRIES = 1
    SEARCH_MAX_WORKERS = 1
    JOB_RECORD_LIMIT = None


# Dictionary to access config classes by name
config_by_name = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
}
