"""
Configuration package for the transitcast broker.

This package provides configuration management with pydantic-based
validation and environment-specific settings.

Usage:
    from transitcast.config import get_settings

    settings = get_settings()
    print(f"Running in {settings.environment} mode")

    # Health check
    is_valid, health = validate_config()

    # Force reload configuration
    settings = get_settings(force_reload=True)
"""

from .settings import (
    BaseConfig,
    DevelopmentConfig,
    TestingConfig,
    ProductionConfig,
    Environment,
    LogLevel,
    StoreBackend,
    ConfigurationError,
    get_settings,
    update_config_cache,
    clear_config_cache,
    validate_config
)

__all__ = [
    "BaseConfig",
    "DevelopmentConfig",
    "TestingConfig",
    "ProductionConfig",
    "Environment",
    "LogLevel",
    "StoreBackend",
    "ConfigurationError",
    "get_settings",
    "update_config_cache",
    "clear_config_cache",
    "validate_config"
]
