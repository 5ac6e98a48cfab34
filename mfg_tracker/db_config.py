"""
SQLAlchemy settings per deployment environment.

Local development falls back to a SQLite file. Sandbox and production must
name their database explicitly and get pooled, SSL-only PostgreSQL
connections.
"""
import os

from mfg_tracker.config import current_environment

# Variables consulted, in order, for each environment's database URL
DATABASE_URL_VARS = {
    "local": ("LOCAL_DATABASE_URL",),
    "sandbox": ("SANDBOX_DATABASE_URL",),
    "production": ("PRODUCTION_DATABASE_URL", "DATABASE_URL"),
}
LOCAL_DEFAULT_URL = "sqlite:///mfg.sqlite"

# Covers time spent waiting on work order and dispatch row locks
STATEMENT_TIMEOUT_MS = 30000


def postgres_engine_options():
    return {
        "pool_pre_ping": True,
        "pool_recycle": 280,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 30,
        "connect_args": {
            "sslmode": "require",
            "connect_timeout": 10,
            "application_name": "mfg_tracker",
            "options": f"-c statement_timeout={STATEMENT_TIMEOUT_MS}",
        },
    }


def get_database_config(environment=None):
    """
    Resolve (database_uri, engine_options) for an environment.

    Hosted providers still hand out "postgres://" URLs, which SQLAlchemy
    no longer accepts; those are rewritten to "postgresql://". Engine
    options are only returned for PostgreSQL.

    Raises:
        ValueError: sandbox or production without a configured URL
    """
    environment = current_environment(environment)
    names = DATABASE_URL_VARS[environment]
    database_uri = next((os.environ[name] for name in names if os.environ.get(name)), None)

    if database_uri is None:
        if environment != "local":
            raise ValueError(f"{' or '.join(names)} must be set for the {environment} environment")
        return LOCAL_DEFAULT_URL, None

    if database_uri.startswith("postgres://"):
        database_uri = "postgresql://" + database_uri[len("postgres://"):]
    if database_uri.startswith("postgresql"):
        return database_uri, postgres_engine_options()
    return database_uri, None


def configure_database(app, overrides=None):
    """Set the SQLALCHEMY_* keys; must run before db.init_app(app)."""
    overrides = overrides or {}
    if "SQLALCHEMY_DATABASE_URI" in overrides:
        database_uri = overrides["SQLALCHEMY_DATABASE_URI"]
        engine_options = overrides.get("SQLALCHEMY_ENGINE_OPTIONS")
    else:
        database_uri, engine_options = get_database_config()

    app.config["SQLALCHEMY_DATABASE_URI"] = database_uri
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["SQLALCHEMY_ECHO"] = False
    if engine_options:
        app.config["SQLALCHEMY_ENGINE_OPTIONS"] = engine_options
