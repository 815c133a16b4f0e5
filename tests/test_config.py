"""Tests for configuration."""

import pytest

from evotrader.config import WIN_PROBABILITY_CEILING, EvoSettings, parse_list_env


def test_default_settings() -> None:
    """Test default settings."""
    settings = EvoSettings(_env_file=None)
    assert settings.max_drawdown_limit == 0.10
    assert settings.win_probability_cap == WIN_PROBABILITY_CEILING
    assert settings.execution_max_attempts == 10
    assert settings.dry_run is True
    assert not settings.has_exchange_credentials


def test_env_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MAX_DRAWDOWN_LIMIT", "0.15")
    monkeypatch.setenv("SYMBOLS", "BTC-USDT-SWAP, SOL-USDT-SWAP")
    monkeypatch.setenv("OKX_API_KEY", "k")
    monkeypatch.setenv("OKX_SECRET_KEY", "s")
    monkeypatch.setenv("OKX_PASSPHRASE", "p")

    settings = EvoSettings(_env_file=None)

    assert settings.max_drawdown_limit == 0.15
    assert settings.symbols == ["BTC-USDT-SWAP", "SOL-USDT-SWAP"]
    assert settings.has_exchange_credentials


def test_config_validation() -> None:
    """Test configuration validation."""
    with pytest.raises(ValueError):
        EvoSettings(_env_file=None, win_probability_cap=0.8)

    with pytest.raises(ValueError):
        EvoSettings(_env_file=None, max_drawdown_limit=1.5)

    with pytest.raises(ValueError):
        EvoSettings(_env_file=None, heartbeat_min_interval_sec=600, heartbeat_max_interval_sec=300)

    with pytest.raises(ValueError):
        EvoSettings(_env_file=None, log_format="xml")


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('["BTC-USDT-SWAP"]', ["BTC-USDT-SWAP"]),
        ("BTC-USDT-SWAP,ETH-USDT-SWAP", ["BTC-USDT-SWAP", "ETH-USDT-SWAP"]),
        ("ETH-USDT-SWAP", ["ETH-USDT-SWAP"]),
        ("", ""),
    ],
)
def test_parse_list_env(raw: str, expected) -> None:
    assert parse_list_env(raw) == expected
