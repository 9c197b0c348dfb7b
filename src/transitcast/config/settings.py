"""
Configuration module for the transitcast broker.

This module provides configuration management with:
- Pydantic-based validation and type checking
- Environment-specific configurations
- Settings caching and health checks
- Tunables for delivery retry, ETA heuristics and the state synthesizer
"""

import os
import logging
from typing import Optional, Dict, Any, Tuple
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from dotenv import load_dotenv


class Environment(str, Enum):
    """Application environment types."""
    DEVELOPMENT = "development"
    TESTING = "testing"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Logging level options."""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class StoreBackend(str, Enum):
    """Durable store implementations."""
    MEMORY = "memory"
    REDIS = "redis"


class ConfigurationError(Exception):
    """Raised when configuration validation fails."""
    pass


class BaseConfig(BaseSettings):
    """Base configuration with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="TRANSITCAST_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        validate_assignment=True,
        extra="ignore",
    )

    # Environment
    environment: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment"
    )

    app_name: str = Field(
        default="transitcast",
        description="Application name"
    )

    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )

    debug: bool = Field(
        default=False,
        description="Enable debug mode"
    )

    # Logging
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level"
    )

    log_format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log message format"
    )

    json_logs: bool = Field(
        default=False,
        description="Render structured log events as JSON"
    )

    # Durable store
    store_backend: StoreBackend = Field(
        default=StoreBackend.MEMORY,
        description="Durable store implementation"
    )

    redis_url: Optional[str] = Field(
        default=None,
        description="Redis connection URL for the redis store backend"
    )

    redis_key_prefix: str = Field(
        default="transitcast",
        min_length=1,
        description="Key namespace used by the redis store"
    )

    store_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts per durable store call before surfacing the failure"
    )

    store_retry_wait_seconds: float = Field(
        default=0.5,
        ge=0.0,
        description="Exponential wait multiplier between store attempts"
    )

    # API Configuration
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )

    api_port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="API server port"
    )

    # Periodic schedules
    synthesizer_interval_seconds: float = Field(
        default=3.0,
        gt=0.0,
        description="Tick interval of the state synthesizer"
    )

    retry_tick_interval_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="Tick interval of the delivery retry loop"
    )

    # Delivery
    max_retries: int = Field(
        default=5,
        ge=0,
        le=20,
        description="Retry ceiling before a queued envelope is dropped"
    )

    backoff_base_seconds: float = Field(
        default=1.0,
        gt=0.0,
        description="First retry delay; doubles per attempt"
    )

    backoff_cap_seconds: float = Field(
        default=300.0,
        gt=0.0,
        description="Upper bound of the retry delay"
    )

    backoff_jitter: float = Field(
        default=0.2,
        ge=0.0,
        lt=1.0,
        description="Relative jitter applied to retry delays"
    )

    max_queue_size: int = Field(
        default=100,
        ge=1,
        description="Pending envelopes kept per client"
    )

    delivery_timeout_seconds: float = Field(
        default=2.0,
        gt=0.0,
        description="Upper bound on a single transport send"
    )

    latency_smoothing: float = Field(
        default=0.2,
        gt=0.0,
        le=1.0,
        description="Smoothing factor of the per-client latency moving average"
    )

    feedback_topic_enabled: bool = Field(
        default=True,
        description="Fan client reports out to the feedback topic"
    )

    # Derivation heuristics
    default_speed_kmh: float = Field(
        default=25.0,
        gt=0.0,
        description="Cruise speed used when a vehicle reports none"
    )

    dwell_minutes_per_stop: float = Field(
        default=2.0,
        ge=0.0,
        description="Boarding allowance per intervening stop"
    )

    crowd_low_max: int = Field(
        default=15,
        ge=0,
        description="Highest occupancy still classified as low"
    )

    crowd_medium_max: int = Field(
        default=30,
        ge=0,
        description="Highest occupancy still classified as medium"
    )

    vehicle_capacity: int = Field(
        default=50,
        ge=1,
        description="Default passenger capacity of a vehicle"
    )

    traffic_rush_factor: float = Field(default=0.5, gt=0.0, le=1.0)
    traffic_midday_factor: float = Field(default=0.7, gt=0.0, le=1.0)
    traffic_weekend_factor: float = Field(default=0.8, gt=0.0, le=1.0)

    traffic_utc_offset_hours: float = Field(
        default=0.0,
        ge=-12.0,
        le=14.0,
        description="Offset applied to the clock before reading rush-hour bands"
    )

    # Synthesizer perturbation bounds
    synth_position_jitter_degrees: float = Field(
        default=0.001,
        gt=0.0,
        le=0.0018,
        description="Full width of the per-axis position delta (about 100m at most)"
    )

    synth_speed_min_kmh: float = Field(default=20.0, ge=0.0)
    synth_speed_max_kmh: float = Field(default=35.0, gt=0.0)
    synth_heading_jitter_degrees: float = Field(default=10.0, ge=0.0, le=90.0)
    synth_occupancy_jitter: int = Field(default=2, ge=0, le=10)

    @field_validator("redis_url", mode="before")
    @classmethod
    def validate_redis_url(cls, v):
        """Validate redis URL scheme."""
        if v is None or v == "":
            return None

        if not str(v).startswith(("redis://", "rediss://", "unix://")):
            raise ValueError("redis_url must use the redis://, rediss:// or unix:// scheme")

        return v

    @model_validator(mode="after")
    def validate_thresholds(self):
        """Validate threshold and band consistency."""
        if self.crowd_low_max >= self.crowd_medium_max:
            raise ValueError("crowd_low_max must be less than crowd_medium_max")

        if self.backoff_base_seconds > self.backoff_cap_seconds:
            raise ValueError("backoff_base_seconds must not exceed backoff_cap_seconds")

        if self.synth_speed_min_kmh >= self.synth_speed_max_kmh:
            raise ValueError("synth_speed_min_kmh must be less than synth_speed_max_kmh")

        return self

    @model_validator(mode="after")
    def validate_store_backend(self):
        """Validate the store backend has what it needs."""
        if self.store_backend == StoreBackend.REDIS and not self.redis_url:
            raise ValueError("redis_url is required when store_backend is redis")

        return self

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration dictionary."""
        return {
            "level": self.log_level.value,
            "format": self.log_format,
            "json": self.json_logs,
        }

    def health_check(self) -> Dict[str, Any]:
        """Perform configuration health check."""
        health = {
            "status": "healthy",
            "environment": self.environment.value,
            "version": self.app_version,
            "checks": {}
        }

        health["checks"]["store"] = {
            "status": "configured",
            "backend": self.store_backend.value,
        }
        if self.store_backend == StoreBackend.MEMORY and self.environment == Environment.PRODUCTION:
            health["checks"]["store"]["status"] = "volatile"
            health["status"] = "degraded"

        health["checks"]["delivery"] = {
            "status": "configured",
            "max_retries": self.max_retries,
            "backoff": [self.backoff_base_seconds, self.backoff_cap_seconds],
            "timeout_seconds": self.delivery_timeout_seconds,
        }

        if self.max_retries == 0:
            health["checks"]["delivery"]["status"] = "no_retry"
            health["status"] = "degraded"

        return health


class DevelopmentConfig(BaseConfig):
    """Development environment configuration."""

    environment: Environment = Environment.DEVELOPMENT
    debug: bool = True
    log_level: LogLevel = LogLevel.DEBUG


class TestingConfig(BaseConfig):
    """Testing environment configuration."""

    environment: Environment = Environment.TESTING
    debug: bool = True
    log_level: LogLevel = LogLevel.WARNING

    # Deterministic retries and no store waits
    backoff_jitter: float = 0.0
    store_retry_wait_seconds: float = 0.0
    delivery_timeout_seconds: float = 0.2
    synthesizer_interval_seconds: float = 0.05
    retry_tick_interval_seconds: float = 0.05


class ProductionConfig(BaseConfig):
    """Production environment configuration."""

    environment: Environment = Environment.PRODUCTION
    debug: bool = False
    log_level: LogLevel = LogLevel.INFO
    json_logs: bool = True


# Configuration mapping
CONFIG_MAPPING = {
    Environment.DEVELOPMENT: DevelopmentConfig,
    Environment.TESTING: TestingConfig,
    Environment.PRODUCTION: ProductionConfig,
}


# Configuration cache
_config_cache: Optional[BaseConfig] = None


def _load_environment_file() -> None:
    """Load environment variables from .env file."""
    env_file = os.path.join(os.getcwd(), ".env")
    if os.path.exists(env_file):
        load_dotenv(env_file)


def _get_environment() -> Environment:
    """Get current environment from environment variable."""
    env_str = os.getenv("TRANSITCAST_ENVIRONMENT", "development").lower()

    try:
        return Environment(env_str)
    except ValueError:
        logging.warning(f"Invalid environment '{env_str}', defaulting to development")
        return Environment.DEVELOPMENT


def _create_config(environment: Optional[Environment] = None) -> BaseConfig:
    """Create configuration instance for specified environment."""
    if environment is None:
        environment = _get_environment()

    config_class = CONFIG_MAPPING.get(environment, DevelopmentConfig)

    try:
        return config_class(environment=environment)
    except Exception as e:
        raise ConfigurationError(f"Failed to create configuration: {e}") from e


def get_settings(environment: Optional[Environment] = None, force_reload: bool = False) -> BaseConfig:
    """
    Get application settings with caching.

    Args:
        environment: Specific environment to load (optional)
        force_reload: Force reload configuration ignoring cache

    Returns:
        BaseConfig: Configuration instance

    Raises:
        ConfigurationError: If configuration validation fails
    """
    global _config_cache

    if (
        not force_reload and
        _config_cache is not None and
        (environment is None or _config_cache.environment == environment)
    ):
        return _config_cache

    _load_environment_file()

    config = _create_config(environment)
    _config_cache = config

    logging.getLogger(__name__).info(
        f"Configuration loaded for {config.environment.value} environment"
    )
    return config


def update_config_cache(new_config: BaseConfig) -> None:
    """Update configuration cache with new instance."""
    global _config_cache

    _config_cache = new_config
    logging.getLogger(__name__).info("Configuration cache updated")


def clear_config_cache() -> None:
    """Clear configuration cache."""
    global _config_cache

    _config_cache = None
    logging.getLogger(__name__).info("Configuration cache cleared")


def validate_config(config: Optional[BaseConfig] = None) -> Tuple[bool, Dict[str, Any]]:
    """
    Validate configuration and return health status.

    Args:
        config: Configuration to validate (uses current if None)

    Returns:
        Tuple[bool, Dict]: (is_valid, health_report)
    """
    if config is None:
        try:
            config = get_settings()
        except ConfigurationError as e:
            return False, {"error": str(e), "status": "invalid"}

    health_report = config.health_check()
    is_healthy = health_report["status"] in ["healthy", "degraded"]
    return is_healthy, health_report


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
