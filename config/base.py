# config.py
import os


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


def _coerce_int(value, default, *, minimum=None, maximum=None):
    """
    Parse an integer environment value, falling back to ``default`` and
    clamping to the optional bounds.
    """
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    if minimum is not None and number < minimum:
        number = minimum
    if maximum is not None and number > maximum:
        number = maximum
    return number


class Config:
    # SECRET_KEY must be set via environment variable for security
    # Generate with: python -c "import secrets; print(secrets.token_hex(32))"
    # For production, it must be set via environment variable
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _is_testing = _flask_env == "testing"
    _is_production = _flask_env == "production"

    SECRET_KEY = os.environ.get("SECRET_KEY")

    # Only require SECRET_KEY in production mode
    if not SECRET_KEY and _is_production:
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )

    # For development, use a default but it's not secure
    if not SECRET_KEY and not _is_testing:
        import warnings

        warnings.warn(
            "SECRET_KEY not set. Using default for development only. "
            "This is insecure and should not be used in production. "
            "Set SECRET_KEY environment variable or generate with: "
            'python -c "import secrets; print(secrets.token_hex(32))"',
            UserWarning,
        )
        SECRET_KEY = "dev-secret-key-change-in-production"

    # Set a default for testing (will be overridden by TestingConfig)
    if not SECRET_KEY:
        SECRET_KEY = "test-secret-key-placeholder"

    # Importer configuration
    IMPORTER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_ENABLED"), default=True)
    IMPORTER_WORKER_ENABLED = _coerce_bool(os.environ.get("IMPORTER_WORKER_ENABLED"), default=False)
    IMPORTER_CONCURRENCY = _coerce_int(os.environ.get("IMPORTER_CONCURRENCY"), 8, minimum=1, maximum=32)
    IMPORTER_LEVEL_STRICT = _coerce_bool(os.environ.get("IMPORTER_LEVEL_STRICT"), default=False)
    IMPORTER_ALLOW_ORG_CREATE = _coerce_bool(os.environ.get("IMPORTER_ALLOW_ORG_CREATE"), default=True)
    IMPORTER_ALIAS_MAPPING_PATH = os.environ.get("IMPORTER_ALIAS_MAPPING_PATH")
    IMPORTER_UPLOAD_DIR = os.environ.get("IMPORTER_UPLOAD_DIR")
    IMPORTER_MAX_UPLOAD_MB = _coerce_int(os.environ.get("IMPORTER_MAX_UPLOAD_MB"), 25, minimum=1)
    IMPORTER_TASK_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_TIME_LIMIT"), 30 * 60, minimum=60)
    # Unset: derived from the time limit minus the drain time of in-flight rows
    IMPORTER_TASK_SOFT_TIME_LIMIT = _coerce_int(os.environ.get("IMPORTER_TASK_SOFT_TIME_LIMIT"), None, minimum=30)

    # Celery defaults to the SQLite transport inside the instance folder
    CELERY_BROKER_URL = os.environ.get("CELERY_BROKER_URL")
    CELERY_RESULT_BACKEND = os.environ.get("CELERY_RESULT_BACKEND")
    CELERY_SQLITE_PATH = os.environ.get("CELERY_SQLITE_PATH")
    CELERY_CONFIG = os.environ.get("CELERY_CONFIG")

    # Remote entity store (organizations and courses)
    REMOTE_STORE_URL = os.environ.get("REMOTE_STORE_URL")
    REMOTE_STORE_TOKEN = os.environ.get("REMOTE_STORE_TOKEN")
    REMOTE_STORE_TIMEOUT = _coerce_int(os.environ.get("REMOTE_STORE_TIMEOUT"), 30, minimum=1)
    REMOTE_STORE_PAGE_SIZE = _coerce_int(os.environ.get("REMOTE_STORE_PAGE_SIZE"), 100, minimum=1, maximum=1000)
    REMOTE_STORE_COURSE_YEAR_FIELD = os.environ.get("REMOTE_STORE_COURSE_YEAR_FIELD", "anio")

    # Uploads are rejected by Flask above this size
    MAX_CONTENT_LENGTH = IMPORTER_MAX_UPLOAD_MB * 1024 * 1024


class DevelopmentConfig(Config):
    DEBUG = True


class TestingConfig(Config):
    TESTING = True
    # Override SECRET_KEY for testing - tests will set their own
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    IMPORTER_ENABLED = True
    IMPORTER_WORKER_ENABLED = False
    IMPORTER_CONCURRENCY = 4
    REMOTE_STORE_URL = "http://remote-store.test"
    REMOTE_STORE_TOKEN = "test-token"


class ProductionConfig(Config):
    DEBUG = False
    SESSION_COOKIE_SECURE = True  # Secure cookies in production
