from __future__ import annotations

import pytest
from pydantic import ValidationError

from stratlab import settings as settings_module
from stratlab.backtest.model import Costs


@pytest.fixture(autouse=True)
def _fresh_settings():
    settings_module.reload_settings()
    yield
    settings_module.reload_settings()


def test_defaults(monkeypatch):
    for key in ("STRATLAB_INITIAL_CAPITAL", "STRATLAB_MAX_WORKERS", "STRATLAB_COMMISSION_BPS"):
        monkeypatch.delenv(key, raising=False)

    s = settings_module.get_settings()

    assert s.initial_capital == 10_000.0
    assert s.max_workers == 4
    assert s.commission_bps == 1.0
    assert "commission=1.0bps" in s.costs_summary


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("STRATLAB_INITIAL_CAPITAL", "25000")
    monkeypatch.setenv("STRATLAB_SPREAD_BPS", "0.4")
    monkeypatch.setenv("STRATLAB_MAX_WORKERS", "0")

    settings_module.reload_settings()
    s = settings_module.get_settings()

    assert s.initial_capital == 25_000.0
    assert s.max_workers == 1
    assert Costs.from_settings(s).spread_bps == 0.4


def test_settings_are_cached_until_reload(monkeypatch):
    first = settings_module.get_settings()
    monkeypatch.setenv("STRATLAB_RISK_FREE_RATE", "0.03")

    assert settings_module.get_settings() is first
    settings_module.reload_settings()
    assert settings_module.get_settings().risk_free_rate == 0.03


def test_invalid_values_are_rejected():
    with pytest.raises(ValidationError):
        settings_module.EngineSettings(STRATLAB_INITIAL_CAPITAL=0)
    with pytest.raises(ValidationError):
        settings_module.EngineSettings(STRATLAB_SLIPPAGE_BPS=-1)


def test_logging_settings(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    monkeypatch.setenv("ENV", "ci")

    settings_module.reload_settings()
    log_cfg = settings_module.get_logging_settings()

    assert log_cfg.level == "DEBUG"
    assert log_cfg.environment == "ci"
