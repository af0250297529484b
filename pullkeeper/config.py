import os


def _env_flag(name, default):
    return os.environ.get(name, str(default)).lower() in ('1', 'true', 'yes')


class Config:
    """Base configuration"""

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/pullkeeper.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Logging (None disables the rotating file handler)
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Scheduler
    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', True)
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_MAX_WORKERS = int(os.environ.get('SCHEDULER_MAX_WORKERS', 10))
    SCHEDULER_MAX_INSTANCES = int(os.environ.get('SCHEDULER_MAX_INSTANCES', 1))
    SCHEDULER_MISFIRE_GRACE_TIME = 300
    RECONCILE_STALE_RUNS = _env_flag('RECONCILE_STALE_RUNS', False)

    # Remote transport
    SSH_CONNECT_TIMEOUT = int(os.environ.get('SSH_CONNECT_TIMEOUT', 30))

    # Transfer
    TRANSFER_MAX_WORKERS = int(os.environ.get('TRANSFER_MAX_WORKERS', 4))
    RSYNC_BINARY = os.environ.get('RSYNC_BINARY') or 'rsync'
    SSHPASS_BINARY = os.environ.get('SSHPASS_BINARY') or 'sshpass'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "pullkeeper.db")}'
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Test configuration: in-memory database, no background scheduler"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_DIR = None
    SCHEDULER_ENABLED = False
    TRANSFER_MAX_WORKERS = 2


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
