# config.py
import os
from datetime import timedelta


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=None):
    """Parse an integer environment value, falling back on bad input."""
    if value in (None, ""):
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        return minimum
    return number


def _parse_source_list(value):
    """
    Parse a comma-separated source list while keeping order and removing duplicates.

    Returns:
        tuple[str, ...]: Normalized source identifiers.
    """
    if not value:
        return ()

    seen = set()
    sources = []
    for raw_item in value.split(","):
        item = raw_item.strip().lower()
        if not item or item in seen:
            continue
        seen.add(item)
        sources.append(item)
    return tuple(sources)


class Config:
    # SECRET_KEY must be set via environment variable for production
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "Set SECRET_KEY before deploying.",
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Sources exposed through POST /sync/<source>
    INGEST_SOURCES = _parse_source_list(os.environ.get("INGEST_SOURCES", "paypal"))

    # Operator authentication for the sync/import endpoints
    SYNC_ADMIN_TOKEN = os.environ.get("SYNC_ADMIN_TOKEN")

    # Payment API credentials
    PAYPAL_CLIENT_ID = os.environ.get("PAYPAL_CLIENT_ID")
    PAYPAL_CLIENT_SECRET = os.environ.get("PAYPAL_CLIENT_SECRET")
    PAYPAL_API_BASE = os.environ.get("PAYPAL_API_BASE", "https://api-m.paypal.com")

    # Window and pagination limits of the transaction report API
    SYNC_MAX_WINDOW_DAYS = _coerce_int(os.environ.get("SYNC_MAX_WINDOW_DAYS"), 31, minimum=1)
    SYNC_DEFAULT_RANGE_DAYS = _coerce_int(os.environ.get("SYNC_DEFAULT_RANGE_DAYS"), 31, minimum=1)
    SYNC_MAX_LOOKBACK_DAYS = _coerce_int(os.environ.get("SYNC_MAX_LOOKBACK_DAYS"), 3 * 365 - 7, minimum=1)
    SYNC_END_DATE_SAFETY_MINUTES = _coerce_int(os.environ.get("SYNC_END_DATE_SAFETY_MINUTES"), 10, minimum=0)
    SYNC_PAGE_SIZE = _coerce_int(os.environ.get("SYNC_PAGE_SIZE"), 100, minimum=1)

    # Run coordination
    SYNC_STALE_MINUTES = _coerce_int(os.environ.get("SYNC_STALE_MINUTES"), 30, minimum=1)
    IMPORT_STALE_MINUTES = _coerce_int(os.environ.get("IMPORT_STALE_MINUTES"), 30, minimum=1)
    SYNC_STEP_BUDGET_SECONDS = _coerce_int(os.environ.get("SYNC_STEP_BUDGET_SECONDS"), 50, minimum=1)
    SYNC_MAX_PAGES_PER_STEP = _coerce_int(os.environ.get("SYNC_MAX_PAGES_PER_STEP"), 0, minimum=0)

    # Retry policy for transient API failures
    SYNC_RETRY_MAX_ATTEMPTS = _coerce_int(os.environ.get("SYNC_RETRY_MAX_ATTEMPTS"), 4, minimum=1)
    SYNC_RETRY_BACKOFF_SECONDS = _coerce_int(os.environ.get("SYNC_RETRY_BACKOFF_SECONDS"), 1, minimum=0)
    SYNC_RETRY_MAX_BACKOFF_SECONDS = _coerce_int(os.environ.get("SYNC_RETRY_MAX_BACKOFF_SECONDS"), 30, minimum=0)
    SYNC_HTTP_TIMEOUT_SECONDS = _coerce_int(os.environ.get("SYNC_HTTP_TIMEOUT_SECONDS"), 30, minimum=1)

    # Persistence batch sizes
    UPSERT_BATCH_SIZE = _coerce_int(os.environ.get("UPSERT_BATCH_SIZE"), 500, minimum=1)
    STAGING_BATCH_SIZE = _coerce_int(os.environ.get("STAGING_BATCH_SIZE"), 500, minimum=1)

    # Background worker
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")
    INGEST_TASK_TIME_LIMIT = _coerce_int(os.environ.get("INGEST_TASK_TIME_LIMIT"), 15 * 60, minimum=1)
    INGEST_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("INGEST_TASK_SOFT_TIME_LIMIT"), 12 * 60, minimum=1)

    # Raw CSV bodies are posted as JSON text; cap request size
    MAX_CONTENT_LENGTH = _coerce_int(os.environ.get("INGEST_MAX_UPLOAD_MB"), 25, minimum=1) * 1024 * 1024

    PERMANENT_SESSION_LIFETIME = timedelta(days=7)


class DevelopmentConfig(Config):
    DEBUG = True
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)
    instance_path = os.path.join(_project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI needs forward slashes, even on Windows
    db_path = os.path.join(instance_path, "paysync_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = _coerce_bool(os.environ.get("SQLALCHEMY_ECHO"), default=False)
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    SYNC_ADMIN_TOKEN = "test-admin-token"
    PAYPAL_CLIENT_ID = "test-client-id"
    PAYPAL_CLIENT_SECRET = "test-client-secret"
    SYNC_RETRY_BACKOFF_SECONDS = 0
    SYNC_RETRY_MAX_BACKOFF_SECONDS = 0
    CELERY_CONFIG = {"task_always_eager": True, "task_eager_propagates": True}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
