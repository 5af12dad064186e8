"""
Contract Delivery Tracker
Configuration classes, selected by APP_ENV.

Usage:
    settings = get_config()            # honours APP_ENV
    settings = get_config("testing")
"""

import os


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    """Base configuration shared across all environments."""

    APP_ENV = os.getenv("APP_ENV", "development")
    DEBUG = False
    TESTING = False

    # uvicorn
    HOST = os.getenv("HOST", "127.0.0.1")
    PORT = int(os.getenv("PORT", "8000"))
    RELOAD = False
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    # CORS
    CORS_ORIGINS = os.getenv("CORS_ORIGINS", "*")

    # Baseline governance
    # true: a milestone lookup that fails inside the interceptor allows the edit
    GOVERNANCE_FAIL_OPEN = _flag("GOVERNANCE_FAIL_OPEN", True)

    # Variation drafting
    VARIATION_ROLLBACK_ON_IMPACT_FAILURE = _flag("VARIATION_ROLLBACK_ON_IMPACT_FAILURE", True)
    VARIATION_REF_FALLBACK_PREFIX = os.getenv("VARIATION_REF_FALLBACK_PREFIX", "VAR-")


class DevelopmentConfig(Config):
    """Development environment configuration."""

    DEBUG = True
    RELOAD = True


class TestingConfig(Config):
    """Testing environment configuration."""

    TESTING = True
    LOG_LEVEL = "DEBUG"


class ProductionConfig(Config):
    """Production environment configuration."""

    HOST = os.getenv("HOST", "0.0.0.0")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "WARNING")


config = {
    "development": DevelopmentConfig,
    "testing": TestingConfig,
    "production": ProductionConfig,
}


def get_config(name: str = None) -> type:
    return config.get(name or os.getenv("APP_ENV", "development"), DevelopmentConfig)
