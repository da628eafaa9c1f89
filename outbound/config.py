import os
from dotenv import load_dotenv

load_dotenv()


def _int_env(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _delays_env(name, default):
    """Parse a comma-separated list of seconds, e.g. "300,900,1800"."""
    value = os.environ.get(name)
    if value is None:
        return default
    return tuple(int(part) for part in value.split(",") if part.strip())


class Config:
    """Base configuration class with common settings."""
    SECRET_KEY = os.environ.get("SECRET_KEY", "change-me")

    # Shared secret for the automatic (cron) trigger endpoints
    CRON_SECRET = os.environ.get("CRON_SECRET") or os.environ.get("EMAIL_CRON_SECRET")

    # Dispatcher
    DISPATCH_BATCH_LIMIT = _int_env("DISPATCH_BATCH_LIMIT", 10)
    DISPATCH_MAX_BATCH_LIMIT = _int_env("DISPATCH_MAX_BATCH_LIMIT", 50)
    DISPATCH_MAX_WORKERS = _int_env("DISPATCH_MAX_WORKERS", 1)
    DISPATCH_DRAIN_ROUNDS = _int_env("DISPATCH_DRAIN_ROUNDS", 5)
    STALE_SENDING_SECONDS = _int_env("STALE_SENDING_SECONDS", 900)

    # Retry policy
    TASK_MAX_ATTEMPTS = _int_env("TASK_MAX_ATTEMPTS", 5)
    TASK_MAX_ATTEMPTS_NOTIFICATION_EMAIL = _int_env("TASK_MAX_ATTEMPTS_NOTIFICATION_EMAIL", None)
    TASK_MAX_ATTEMPTS_INVOICE_REMINDER = _int_env("TASK_MAX_ATTEMPTS_INVOICE_REMINDER", None)
    TASK_MAX_ATTEMPTS_CONTROL_PANEL_SYNC = _int_env("TASK_MAX_ATTEMPTS_CONTROL_PANEL_SYNC", None)
    # 5 min, 15 min, 30 min, 1 hour, 2 hours
    RETRY_DELAYS_SECONDS = _delays_env("RETRY_DELAYS_SECONDS", (300, 900, 1800, 3600, 7200))

    # Business rules
    BUSINESS_TIMEZONE = os.environ.get("BUSINESS_TIMEZONE", "Asia/Ho_Chi_Minh")
    BRAND_NAME = os.environ.get("BRAND_NAME", "HostDesk")
    SITE_URL = os.environ.get("SITE_URL", "http://localhost:3000")

    # SMTP transport
    SMTP_HOST = os.environ.get("SMTP_HOST", "localhost")
    SMTP_PORT = _int_env("SMTP_PORT", 587)
    SMTP_USERNAME = os.environ.get("SMTP_USERNAME")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD")
    SMTP_USE_SSL = os.environ.get("SMTP_USE_SSL", "false").lower() in {"1", "true", "yes"}
    SMTP_TIMEOUT = _int_env("SMTP_TIMEOUT", 30)
    MAIL_FROM = os.environ.get("MAIL_FROM") or os.environ.get("SMTP_USERNAME") or "no-reply@localhost"

    # Enhance control panel
    ENHANCE_BASE_URL = os.environ.get("ENHANCE_BASE_URL")
    ENHANCE_API_KEY = os.environ.get("ENHANCE_API_KEY")
    ENHANCE_ORG_ID = os.environ.get("ENHANCE_ORG_ID")
    ENHANCE_TIMEOUT = _int_env("ENHANCE_TIMEOUT", 30)
    DEFAULT_CONTROL_PANEL = os.environ.get("DEFAULT_CONTROL_PANEL", "enhance")

    # Background scheduler
    SCHEDULER_ENABLED = os.environ.get("SCHEDULER_ENABLED", "false").lower() in {"1", "true", "yes"}
    SCHEDULE_INTERVAL_MINUTES = _int_env("SCHEDULE_INTERVAL_MINUTES", 60)
    DISPATCH_INTERVAL_MINUTES = _int_env("DISPATCH_INTERVAL_MINUTES", 1)
    SWEEP_INTERVAL_MINUTES = _int_env("SWEEP_INTERVAL_MINUTES", 5)

    # Logging
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")


class LocalConfig(Config):
    """Configuration for local development."""
    ENV = "local"
    DEBUG = True


class SandboxConfig(Config):
    """Configuration for sandbox/staging environment."""
    ENV = "sandbox"
    DEBUG = False


class ProductionConfig(Config):
    """Configuration for production environment."""
    ENV = "production"
    DEBUG = False


class TestingConfig(Config):
    """Configuration for the test suite."""
    ENV = "test"
    DEBUG = False
    TESTING = True
    SECRET_KEY = "test-secret-key"
    CRON_SECRET = "test-cron-secret"
    SCHEDULER_ENABLED = False
    RETRY_DELAYS_SECONDS = ()
    TASK_MAX_ATTEMPTS = 3
    DISPATCH_MAX_WORKERS = 1


def get_config():
    """Get the appropriate configuration class based on environment variable.

    Environment is determined by FLASK_ENV or ENVIRONMENT variable:
    - 'local' or 'development' -> LocalConfig
    - 'sandbox' or 'staging' -> SandboxConfig
    - 'production' or 'prod' -> ProductionConfig
    - 'test' or 'testing' -> TestingConfig

    Defaults to LocalConfig if not set.
    """
    env = (os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")).lower()

    if env in ["local", "development", "dev"]:
        return LocalConfig
    elif env in ["sandbox", "staging", "stage"]:
        return SandboxConfig
    elif env in ["production", "prod"]:
        return ProductionConfig
    elif env in ["test", "testing"]:
        return TestingConfig
    else:
        # Default to local for safety
        return LocalConfig
