"""
Tests for env-driven configuration.
"""

import pytest

from config import load_config

ENV_VARS = [
    "MODE",
    "TELEGRAM_CHAT_ID",
    "SIMULATE_PRICES",
    "POSITION_CHECK_INTERVAL_SEC",
    "SELL_SLIPPAGE_PERCENT",
    "HEALTH_PORT",
    "DATABASE_URL",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_defaults(self):
        config = load_config()

        assert config.mode == "simulation"
        assert config.is_simulation
        assert config.simulate_prices is True
        assert config.position_check_interval_sec == 10.0
        assert config.scan_interval_sec == 60.0
        assert config.trade_interval_sec == 30.0
        assert config.sell_slippage_percent == 2.0
        assert config.stop_loss_slippage_percent == 5.0
        assert config.telegram_chat_id is None
        assert config.database_url is None

    def test_real_mode_disables_synthetic_prices(self, monkeypatch):
        monkeypatch.setenv("MODE", "REAL")

        config = load_config()

        assert config.mode == "real"
        assert config.simulate_prices is False

    def test_unknown_mode_falls_back_to_simulation(self, monkeypatch):
        monkeypatch.setenv("MODE", "yolo")
        assert load_config().mode == "simulation"

    def test_parses_numbers_and_ignores_garbage(self, monkeypatch):
        monkeypatch.setenv("POSITION_CHECK_INTERVAL_SEC", "2.5")
        monkeypatch.setenv("HEALTH_PORT", "not-a-port")
        monkeypatch.setenv("TELEGRAM_CHAT_ID", "-100123")

        config = load_config()

        assert config.position_check_interval_sec == 2.5
        assert config.health_port == 8080
        assert config.telegram_chat_id == -100123

    def test_explicit_simulate_prices(self, monkeypatch):
        monkeypatch.setenv("MODE", "real")
        monkeypatch.setenv("SIMULATE_PRICES", "yes")

        assert load_config().simulate_prices is True
