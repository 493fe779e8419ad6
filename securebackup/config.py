import os


class Config:
    """Base configuration"""

    DEBUG = False

    # Artifact naming
    BACKUP_PREFIX = 'backup'
    ARCHIVE_EXTENSION = '.tar'
    MANIFEST_SUFFIX = '_manifest.json'
    TEMP_SUFFIX = '.tmp'
    TIMESTAMP_FORMAT = '%Y%m%d_%H%M%S'

    # Destination lock (lives at the destination root)
    LOCK_FILENAME = '.backup.lock'

    # Pipeline conduits and checksum reads share one buffer size.
    # 1 MiB, the compressor block size.
    IO_BUFFER_SIZE = 1024 * 1024

    # Strategies
    DEFAULT_COMPRESSION = 'gzip'
    DEFAULT_ENCRYPTION = 'fernet'

    # Secrets
    PASSPHRASE_ENV = 'SECURE_BACKUP_PASSPHRASE'
    KDF_ITERATIONS = int(os.environ.get('SECURE_BACKUP_KDF_ITERATIONS', 480000))

    # Backup and manifest file permissions (None = process umask)
    DEFAULT_FILE_MODE = 0o600

    # Logging
    LOG_DIR = os.environ.get('SECURE_BACKUP_LOG_DIR') or os.path.join(
        os.path.expanduser('~'), '.secure-backup', 'logs'
    )
    LOG_TO_FILE = True


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    LOG_DIR = os.path.join(BASE_DIR, 'data', 'logs')


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    LOG_TO_FILE = False

    # Cheap key derivation for the test suite
    KDF_ITERATIONS = 1000


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


def get_config(config_name=None):
    """Return the configuration class selected by name or SECURE_BACKUP_ENV."""
    if config_name is None:
        config_name = os.environ.get('SECURE_BACKUP_ENV', 'default')

    if config_name not in config:
        raise ValueError(
            f"Invalid configuration name: {config_name}. "
            f"Valid options: {list(config.keys())}"
        )

    return config[config_name]
