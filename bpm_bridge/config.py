"""
BPM Form Bridge
Configuration classes for the Flask app factory.

Usage:
    config_name = os.getenv("APP_ENV", "development")
    app.config.from_object(config[config_name])

BPM middleware settings are read once here and frozen into a
``BpmSettings`` object when the app is created; nothing rewrites the
endpoint at runtime.
"""

import os
import secrets

basedir = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))

# Default SQLite path for local dev when no DATABASE_URL is given
_SQLITE_DEV = f"sqlite:///{os.path.join(basedir, 'instance', 'bpm_bridge_dev.db')}"
_SQLITE_TEST = "sqlite:///:memory:"

# Generate a random key for development; production MUST use a stable env var
_DEV_SECRET = secrets.token_hex(32)


def _db_url(raw: str) -> str:
    # Heroku-style postgres:// URLs are rejected by SQLAlchemy 2.0
    return raw.replace("postgres://", "postgresql://", 1)


class Config:
    """Base configuration shared across all environments."""

    SECRET_KEY = os.getenv("SECRET_KEY", _DEV_SECRET)
    DEBUG = False
    TESTING = False

    # SQLAlchemy
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_recycle": 300,
    }

    # BPM middleware
    BPM_API_BASE_URL = os.getenv("BPM_API_BASE_URL", "http://localhost:8081/bpm-middleware")
    BPM_API_KEY = os.getenv("BPM_API_KEY", "")
    BPM_API_SECRET = os.getenv("BPM_API_SECRET", "")
    BPM_ENVIRONMENT = os.getenv("BPM_ENVIRONMENT", "TEST")
    BPM_TIMEOUT = int(os.getenv("BPM_TIMEOUT", "30"))
    BPM_SOURCE_SYSTEM = os.getenv("BPM_SOURCE_SYSTEM", "APP")

    # Form code (process template) → local form type
    BPM_FORM_CODES = {
        "PI_LEAVE_001": "LEAVE",
        "PI_OVERTIME_001": "OVERTIME",
        "PI_BUSINESS_TRIP_001": "BUSINESS_TRIP",
        "PI_CANCEL_LEAVE_001": "CANCEL_LEAVE",
    }

    # Rate limiter storage
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    RATELIMIT_ENABLED = True

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Request timing: unset means half of BPM_TIMEOUT
    SLOW_REQUEST_MS = os.getenv("SLOW_REQUEST_MS")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _db_url(_raw_db_url) if _raw_db_url else _SQLITE_DEV


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", _SQLITE_TEST)
    SQLALCHEMY_ENGINE_OPTIONS = {}
    BPM_API_BASE_URL = "http://bpm.test/bpm-middleware"
    BPM_API_KEY = "test-key"
    BPM_API_SECRET = "test-secret"
    BPM_TIMEOUT = 5
    RATELIMIT_ENABLED = False


class ProductionConfig(Config):
    """Production environment configuration."""

    DEBUG = False
    _raw_db_url = os.getenv("DATABASE_URL", "")
    SQLALCHEMY_DATABASE_URI = _db_url(_raw_db_url) if _raw_db_url else None
    BPM_API_BASE_URL = os.getenv("BPM_API_BASE_URL", "")
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")  # Must be set explicitly in production

    SQLALCHEMY_ENGINE_OPTIONS = {
        "pool_pre_ping": True,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 300,
        "pool_timeout": 20,
    }

    def __init__(self):
        if not self.SQLALCHEMY_DATABASE_URI:
            raise RuntimeError("DATABASE_URL environment variable is required in production")
        if not self.BPM_API_BASE_URL:
            raise RuntimeError("BPM_API_BASE_URL environment variable is required in production")
        if not os.getenv("SECRET_KEY"):
            raise RuntimeError("SECRET_KEY environment variable must be set in production")


# Configuration mapping: environment name -> config class
config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
