from click.testing import CliRunner

from transitcast.cli import cli
from transitcast.config import clear_config_cache


def _invoke(*args):
    clear_config_cache()
    try:
        return CliRunner().invoke(cli, ["--env", "testing", *args], obj={})
    finally:
        clear_config_cache()


def test_config_command():
    result = _invoke("config")
    assert result.exit_code == 0, result.output
    assert "healthy" in result.output


def test_routes_command():
    result = _invoke("routes")
    assert result.exit_code == 0, result.output
    assert "stop_1" in result.output
    assert "stop_8" in result.output


def test_seed_requires_redis_backend():
    result = _invoke("seed")
    assert result.exit_code == 1
