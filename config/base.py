# config/base.py
import os

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _coerce_bool(value, default=False):
    """Read an environment-style flag; unknown spellings fall back to ``default``."""
    if isinstance(value, bool):
        return value
    text = "" if value is None else str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    try:
        number = int(str(value).strip())
    except (TypeError, ValueError):
        return default
    return number if minimum is None else max(number, minimum)


def _env_flag(name, default=False):
    return _coerce_bool(os.environ.get(name), default=default)


def _env_int(name, default, *, minimum=None):
    return _coerce_int(os.environ.get(name), default, minimum=minimum)


def _parse_adapter_list(value):
    """Comma-separated adapter names, lower-cased, first occurrence wins."""
    names = (item.strip().lower() for item in (value or "").split(","))
    return tuple(dict.fromkeys(name for name in names if name))


def _sqlite_uri(path):
    # SQLAlchemy wants forward slashes, including on Windows
    return "sqlite:///" + path.replace("\\", "/")


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")

    SECRET_KEY = os.environ.get("SECRET_KEY")
    if not SECRET_KEY:
        if _flask_env == "production":
            raise ValueError(
                "SECRET_KEY environment variable is required in production. "
                'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
            )
        if _flask_env == "testing":
            SECRET_KEY = "test-secret-key-placeholder"
        else:
            import warnings

            warnings.warn("SECRET_KEY not set; using an insecure development key.", UserWarning)
            SECRET_KEY = "dev-secret-key-change-in-production"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
    LOG_DIR = os.environ.get("LOG_DIR", "logs")
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING")
    ENABLE_CONSOLE_LOGGING = _env_flag("ENABLE_CONSOLE_LOGGING", default=True)
    LOG_MAX_BYTES = _env_int("LOG_MAX_BYTES", 10 * 1024 * 1024, minimum=1024)
    LOG_BACKUP_COUNT = _env_int("LOG_BACKUP_COUNT", 5, minimum=0)

    # Importer
    IMPORTER_ENABLED = _env_flag("IMPORTER_ENABLED")
    IMPORTER_ADAPTERS = _parse_adapter_list(os.environ.get("IMPORTER_ADAPTERS"))
    if IMPORTER_ENABLED and not IMPORTER_ADAPTERS:
        raise ValueError("IMPORTER_ENABLED is true but IMPORTER_ADAPTERS is empty. Provide at least one adapter name.")

    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = _env_int("IMPORTER_MAX_UPLOAD_MB", 25, minimum=1)
    IMPORTER_STAGING_BATCH_SIZE = _env_int("IMPORTER_STAGING_BATCH_SIZE", 500, minimum=1)
    IMPORTER_PROCESSING_BATCH_SIZE = _env_int("IMPORTER_PROCESSING_BATCH_SIZE", 100, minimum=1)
    IMPORTER_CACHE_TTL_SECONDS = _env_int("IMPORTER_CACHE_TTL_SECONDS", 300, minimum=0)
    IMPORTER_HTTP_DEFAULT_TIMEOUT_MS = _env_int("IMPORTER_HTTP_DEFAULT_TIMEOUT_MS", 15000, minimum=1)
    # "hour", "day", "week" or "month"; buckets date primary timestamps
    IMPORTER_TIMESERIES_DEFAULT_CHUNK = os.environ.get("IMPORTER_TIMESERIES_DEFAULT_CHUNK", "day").strip().lower()

    # Scheduling
    IMPORTER_POLL_SCHEDULER_SECONDS = _env_int("IMPORTER_POLL_SCHEDULER_SECONDS", 60, minimum=1)
    IMPORTER_POLL_CLAIM_TIMEOUT_SECONDS = _env_int("IMPORTER_POLL_CLAIM_TIMEOUT_SECONDS", 3600, minimum=60)
    IMPORTER_PROCESSING_CLAIM_TIMEOUT_SECONDS = _env_int("IMPORTER_PROCESSING_CLAIM_TIMEOUT_SECONDS", 3600, minimum=60)
    IMPORTER_PROCESSING_RETRY_SECONDS = _env_int("IMPORTER_PROCESSING_RETRY_SECONDS", 30, minimum=1)
    IMPORTER_RETENTION_SCHEDULER_SECONDS = _env_int("IMPORTER_RETENTION_SCHEDULER_SECONDS", 3600, minimum=60)

    # Worker
    IMPORTER_WORKER_ENABLED = _env_flag("IMPORTER_WORKER_ENABLED")
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Salesforce
    SALESFORCE_API_VERSION = os.environ.get("SALESFORCE_API_VERSION", "60.0")
    IMPORTER_SALESFORCE_BATCH_SIZE = _env_int("IMPORTER_SALESFORCE_BATCH_SIZE", 5000, minimum=1000)


_SQLITE_CONNECT_ARGS = {"connect_args": {"check_same_thread": False, "timeout": 5}}


class DevelopmentConfig(Config):
    DEBUG = True
    instance_path = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "instance")
    os.makedirs(instance_path, exist_ok=True)

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", _sqlite_uri(os.path.join(instance_path, "graph_ingest_dev.db"))
    )
    SQLALCHEMY_ECHO = _env_flag("SQLALCHEMY_ECHO")
    SQLALCHEMY_ENGINE_OPTIONS = _SQLITE_CONNECT_ARGS if SQLALCHEMY_DATABASE_URI.startswith("sqlite") else {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = _SQLITE_CONNECT_ARGS
    IMPORTER_CACHE_TTL_SECONDS = 60


class ProductionConfig(Config):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL")
    # Heroku-style URLs use the scheme SQLAlchemy dropped
    if SQLALCHEMY_DATABASE_URI and SQLALCHEMY_DATABASE_URI.startswith("postgres://"):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_ECHO = False
    ENABLE_FILE_LOGGING = _env_flag("ENABLE_FILE_LOGGING", default=True)
