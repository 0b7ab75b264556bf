# Library Access Control Configuration

import json
import os
import tempfile
from datetime import timedelta
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value else default


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value else default


def _env_json(name, default):
    value = os.environ.get(name)
    return json.loads(value) if value else default


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'library-access-secret-key-2024'
    JSON_SORT_KEYS = False

    # Database Configuration
    DATABASE_PATH = BASE_DIR / 'database' / 'access.db'
    DATABASE_TIMEOUT = 30.0

    # Encryption key configuration
    # The static key is the fallback shared by every deployed component.
    # Rotating it is a config change: bump the version and move the old
    # secret into QR_RETIRED_KEYS for the grace period.
    QR_KEY_VERSION = os.environ.get('QR_KEY_VERSION') or 'v1'
    QR_STATIC_KEY = os.environ.get('QR_STATIC_KEY') or 'LibraryQRSecureKey2024!@#$%^&*'
    QR_RETIRED_KEYS = _env_json('QR_RETIRED_KEYS', {})
    QR_KEY_SERVICE_URL = os.environ.get('QR_KEY_SERVICE_URL')
    QR_KEY_SERVICE_TOKEN = os.environ.get('QR_KEY_SERVICE_TOKEN')
    QR_KEY_FETCH_TIMEOUT = _env_float('QR_KEY_FETCH_TIMEOUT', 1.5)  # seconds
    QR_KEY_REFRESH_SECONDS = _env_int('QR_KEY_REFRESH_SECONDS', 60 * 60)
    QR_KEY_GRACE_HOURS = _env_int('QR_KEY_GRACE_HOURS', 24)

    # Token Configuration
    QR_TOKEN_VALIDITY_MINUTES = _env_int('QR_TOKEN_VALIDITY_MINUTES', 20)
    QR_TOKEN_NONCE_BYTES = 16

    # QR Code image Configuration
    QR_CODE_SIZE = 10
    QR_CODE_BORDER = 2
    QR_CODE_ERROR_CORRECT = 'M'  # Medium error correction
    QR_CODE_FILL_COLOR = '#000000'
    QR_CODE_BACK_COLOR = '#FFFFFF'

    # Scan Configuration
    SCAN_TIMEOUT_SECONDS = _env_float('SCAN_TIMEOUT_SECONDS', 3.0)
    SCAN_MAX_WRITE_ATTEMPTS = 3
    SCAN_DEFAULT_LOCATION = 'main_entrance'
    SCAN_HISTORY_LIMIT = 100

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'access.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = os.environ.get('DEBUG', 'False').lower() in ['true', 'on', '1']
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        # Create necessary directories
        directories = [cls.LOG_FILE.parent]
        if cls.DATABASE_PATH and str(cls.DATABASE_PATH) != ':memory:':
            directories.append(Path(cls.DATABASE_PATH).parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)

        # Copy every upper-case setting onto the Flask config
        app.config.update({
            key: getattr(cls, key) for key in dir(cls) if key.isupper()
        })


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = BASE_DIR / 'database' / 'access_dev.db'

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Each application gets a fresh database file in init_app; an in-memory
    # database would be private to the thread that opened it
    DATABASE_PATH = None

    # Never reach out for a remote key during tests
    QR_KEY_SERVICE_URL = None
    QR_STATIC_KEY = 'test-static-key'
    QR_RETIRED_KEYS = {}

    @classmethod
    def init_app(cls, app):
        super().init_app(app)
        app.config['DATABASE_PATH'] = Path(tempfile.mkdtemp(prefix='access-test-')) / 'access.db'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    # Production database path
    DATABASE_PATH = BASE_DIR / 'database' / 'access_prod.db'

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        super().init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
        if not app.debug:
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('Library access control startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


class DatabaseConfig:
    """Database specific configuration"""

    # Connection settings
    CHECK_SAME_THREAD = False

    # WAL mode settings for better concurrency
    JOURNAL_MODE = 'WAL'
    SYNCHRONOUS = 'NORMAL'


# Validation functions
def validate_config(config_class=Config):
    """Validate configuration settings"""
    errors = []

    if not config_class.QR_KEY_VERSION or '.' in config_class.QR_KEY_VERSION:
        errors.append("QR_KEY_VERSION must be a non-empty tag without '.'")

    if not config_class.QR_STATIC_KEY:
        errors.append("QR_STATIC_KEY is required")

    if config_class.QR_KEY_VERSION in config_class.QR_RETIRED_KEYS:
        errors.append(f"Active key version {config_class.QR_KEY_VERSION} is also listed as retired")

    if config_class.QR_TOKEN_VALIDITY_MINUTES <= 0:
        errors.append("QR_TOKEN_VALIDITY_MINUTES must be positive")

    if config_class.SCAN_TIMEOUT_SECONDS <= 0:
        errors.append("SCAN_TIMEOUT_SECONDS must be positive")

    if config_class.SCAN_MAX_WRITE_ATTEMPTS < 1:
        errors.append("SCAN_MAX_WRITE_ATTEMPTS must be at least 1")

    return errors


# Initialize configuration
def init_config(app, config_name=None):
    """Initialize application with configuration"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')

    config_class = config.get(config_name, DevelopmentConfig)

    # Validate configuration
    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    config_class.init_app(app)
    return config_class


def token_validity(config_class=Config):
    """Validity window of issued access tokens."""
    return timedelta(minutes=config_class.QR_TOKEN_VALIDITY_MINUTES)
