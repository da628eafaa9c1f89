"""
Database URI and engine options.

One `DATABASE_URL` serves every deployed environment. Local runs fall back to
a SQLite file and the test suite to in-memory SQLite. Values already on the
app config (test overrides) always win.
"""
import os

LOCAL_SQLITE_URL = "sqlite:///outbound.sqlite"
TEST_SQLITE_URL = "sqlite:///:memory:"

DEPLOYED_ENVIRONMENTS = ("sandbox", "staging", "stage", "production", "prod")


def normalize_database_url(url: str) -> str:
    """SQLAlchemy expects postgresql://, hosting providers often hand out postgres://."""
    url = url.strip()
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_uri(environment: str) -> str:
    """
    Raises:
        ValueError: a deployed environment has no DATABASE_URL
    """
    if environment in ("test", "testing"):
        return os.environ.get("TEST_DATABASE_URL") or TEST_SQLITE_URL

    url = os.environ.get("DATABASE_URL")
    if url:
        return normalize_database_url(url)
    if environment in DEPLOYED_ENVIRONMENTS:
        raise ValueError(f"DATABASE_URL must be set for the {environment} environment")
    return LOCAL_SQLITE_URL


def get_engine_options(database_uri: str, dispatch_workers: int = 1):
    """Pool options for server databases; None for SQLite."""
    if database_uri.startswith("sqlite"):
        return None

    options = {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 5,
        # each dispatcher worker holds a connection while its sender runs
        "max_overflow": max(dispatch_workers, 1) + 5,
        "pool_timeout": 30,
    }
    if database_uri.startswith("postgresql"):
        options["connect_args"] = {
            "connect_timeout": 10,
            "application_name": "hostdesk_outbound",
        }
    return options


def configure_database(app, environment=None):
    """Set SQLALCHEMY_* keys on the app config unless already present."""
    environment = (environment or app.config.get("ENV") or "local").lower()

    app.config.setdefault("SQLALCHEMY_DATABASE_URI", get_database_uri(environment))
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config.setdefault("SQLALCHEMY_ECHO", False)

    engine_options = get_engine_options(
        app.config["SQLALCHEMY_DATABASE_URI"],
        app.config.get("DISPATCH_MAX_WORKERS", 1),
    )
    if engine_options:
        app.config.setdefault("SQLALCHEMY_ENGINE_OPTIONS", engine_options)
