import pytest
from pydantic import ValidationError

from transitcast.config import settings as config_module
from transitcast.config import (
    Environment,
    StoreBackend,
    clear_config_cache,
    get_settings,
    update_config_cache,
    validate_config,
)


@pytest.fixture(autouse=True)
def fresh_cache(monkeypatch):
    for name in ("TRANSITCAST_ENVIRONMENT", "TRANSITCAST_STORE_BACKEND", "TRANSITCAST_REDIS_URL"):
        monkeypatch.delenv(name, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


def test_defaults():
    config = config_module.BaseConfig()
    assert config.max_retries == 5
    assert config.backoff_base_seconds == 1.0
    assert config.backoff_cap_seconds == 300.0
    assert config.max_queue_size == 100
    assert config.default_speed_kmh == 25.0
    assert config.dwell_minutes_per_stop == 2.0
    assert (config.crowd_low_max, config.crowd_medium_max) == (15, 30)
    assert config.store_backend == StoreBackend.MEMORY


def test_testing_config_is_deterministic():
    config = config_module.TestingConfig()
    assert config.environment == Environment.TESTING
    assert config.backoff_jitter == 0.0
    assert config.store_retry_wait_seconds == 0.0


def test_environment_variables_override(monkeypatch):
    monkeypatch.setenv("TRANSITCAST_MAX_RETRIES", "3")
    monkeypatch.setenv("TRANSITCAST_DEFAULT_SPEED_KMH", "30")
    config = config_module.BaseConfig()
    assert config.max_retries == 3
    assert config.default_speed_kmh == 30.0


@pytest.mark.parametrize("overrides", [
    {"crowd_low_max": 30, "crowd_medium_max": 30},
    {"backoff_base_seconds": 10.0, "backoff_cap_seconds": 5.0},
    {"synth_speed_min_kmh": 40.0, "synth_speed_max_kmh": 35.0},
    {"store_backend": "redis"},
    {"redis_url": "http://localhost:6379"},
    {"latency_smoothing": 0.0},
])
def test_invalid_settings_are_rejected(overrides):
    with pytest.raises(ValidationError):
        config_module.BaseConfig(**overrides)


def test_redis_backend_with_url():
    config = config_module.BaseConfig(store_backend="redis", redis_url="redis://localhost:6379/0")
    assert config.store_backend == StoreBackend.REDIS


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("TRANSITCAST_ENVIRONMENT", "testing")
    first = get_settings()
    assert first.environment == Environment.TESTING
    assert get_settings() is first
    assert get_settings(force_reload=True) is not first


def test_unknown_environment_falls_back_to_development(monkeypatch):
    monkeypatch.setenv("TRANSITCAST_ENVIRONMENT", "staging")
    assert get_settings().environment == Environment.DEVELOPMENT


def test_update_config_cache():
    custom = config_module.TestingConfig(max_retries=2)
    update_config_cache(custom)
    assert get_settings() is custom


def test_validate_config_reports_degraded_states():
    ok, report = validate_config(config_module.TestingConfig())
    assert ok
    assert report["status"] == "healthy"

    ok, report = validate_config(config_module.ProductionConfig())
    assert ok
    assert report["status"] == "degraded"
    assert report["checks"]["store"]["status"] == "volatile"

    ok, report = validate_config(config_module.TestingConfig(max_retries=0))
    assert report["checks"]["delivery"]["status"] == "no_retry"
