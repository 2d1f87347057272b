"""
Per-environment settings for the projection engine.

``create_app`` picks one of the classes in ``config`` by name (``APP_ENV``,
falling back to development). Everything the engine tunes at runtime is read
from the environment once, at import.
"""

import os
import secrets

_PROJECT_ROOT = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
_LOCAL_SQLITE = "sqlite:///" + os.path.join(_PROJECT_ROOT, "instance", "merchops_dev.db")

_POOLED_ENGINE = {"pool_pre_ping": True, "pool_recycle": 300}


def _database_url() -> str:
    """``DATABASE_URL`` with the legacy ``postgres://`` scheme upgraded."""
    url = os.getenv("DATABASE_URL", "")
    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://"):]
    return url


class Config:
    """Defaults; each environment overrides what differs."""

    DEBUG = False
    TESTING = False
    SECRET_KEY = os.getenv("SECRET_KEY") or secrets.token_hex(32)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = dict(_POOLED_ENGINE)

    # Limiter storage; redis:// in deployed environments.
    REDIS_URL = os.getenv("REDIS_URL", "memory://")
    RATELIMIT_ENABLED = True

    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Rows loaded and committed per expiration scan chunk.
    PROJECTION_SCAN_CHUNK_SIZE = int(os.getenv("PROJECTION_SCAN_CHUNK_SIZE", "500"))
    # Nightly PO batches arrive as one JSON body.
    MAX_CONTENT_LENGTH = 8 * 1024 * 1024


class DevelopmentConfig(Config):
    DEBUG = True
    SQLALCHEMY_DATABASE_URI = _database_url() or _LOCAL_SQLITE


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = os.getenv("TEST_DATABASE_URL", "sqlite:///:memory:")
    SQLALCHEMY_ENGINE_OPTIONS = {}
    RATELIMIT_ENABLED = False
    PROJECTION_SCAN_CHUNK_SIZE = 2


class ProductionConfig(Config):
    """Postgres only; refuses to start without a database URL and a secret."""

    SQLALCHEMY_DATABASE_URI = _database_url() or None
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "")
    SQLALCHEMY_ENGINE_OPTIONS = {
        **_POOLED_ENGINE,
        "pool_size": 5,
        "max_overflow": 10,
        "pool_timeout": 20,
        # a stuck report query must not hold a pooled connection forever
        "connect_args": {"options": "-c statement_timeout=30000"},
    }

    def __init__(self):
        missing = [
            name for name, present in (
                ("DATABASE_URL", bool(self.SQLALCHEMY_DATABASE_URI)),
                ("SECRET_KEY", bool(os.getenv("SECRET_KEY"))),
            ) if not present
        ]
        if missing:
            raise RuntimeError(f"production settings missing: {', '.join(missing)}")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
    "default": DevelopmentConfig,
}
