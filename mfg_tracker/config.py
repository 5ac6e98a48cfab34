import os
from dotenv import load_dotenv

load_dotenv()


class Config:
    """Base configuration class with common settings."""
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev_secret")
    # Bearer tokens older than this are rejected (seconds)
    AUTH_TOKEN_MAX_AGE = int(os.environ.get("AUTH_TOKEN_MAX_AGE", 12 * 60 * 60))

    # Blob storage for work order attachments and dispatch documents
    UPLOAD_DIR = os.environ.get("UPLOAD_DIR", os.path.join(os.getcwd(), "uploads"))
    API_BASE_URL = os.environ.get("API_BASE_URL", "http://localhost:4000")
    MAX_UPLOAD_BYTES = 50 * 1024 * 1024
    # Werkzeug request cap; kept above MAX_UPLOAD_BYTES so oversize files reach validation
    MAX_CONTENT_LENGTH = 100 * 1024 * 1024

    # Attempts at issuing a dispatch number before surfacing the conflict
    DISPATCH_NUMBER_RETRIES = int(os.environ.get("DISPATCH_NUMBER_RETRIES", 3))

    # CORS configuration
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*")

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    LOG_FILE = os.environ.get("LOG_FILE")


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


ENVIRONMENT_ALIASES = {
    "local": "local",
    "development": "local",
    "dev": "local",
    "sandbox": "sandbox",
    "staging": "sandbox",
    "stage": "sandbox",
    "production": "production",
    "prod": "production",
}


def current_environment(name=None):
    """
    Canonical environment name ("local", "sandbox" or "production").

    Reads FLASK_ENV, then ENVIRONMENT, when no name is given. Unknown names
    fall back to local.
    """
    if name is None:
        name = os.environ.get("FLASK_ENV") or os.environ.get("ENVIRONMENT", "local")
    return ENVIRONMENT_ALIASES.get(name.strip().lower(), "local")


def get_config():
    return {
        "local": LocalConfig,
        "sandbox": SandboxConfig,
        "production": ProductionConfig,
    }[current_environment()]
