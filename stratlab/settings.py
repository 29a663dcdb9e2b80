"""Centralized engine settings powered by Pydantic.

Environment matrix:

| Section      | Environment Variable              | Default   | Purpose                                       |
|--------------|-----------------------------------|-----------|-----------------------------------------------|
| Simulation   | `STRATLAB_INITIAL_CAPITAL`        | `10000`   | Capital used when a request does not set one  |
| Simulation   | `STRATLAB_COMMISSION_BPS`         | `1.0`     | Commission per side, bps of notional          |
| Simulation   | `STRATLAB_SPREAD_BPS`             | `1.0`     | Full bid/ask spread, bps of price             |
| Simulation   | `STRATLAB_SLIPPAGE_BPS`           | `0.5`     | Per-fill slippage, bps of price               |
| Simulation   | `STRATLAB_LOT_SIZE`               | `100000`  | Units per lot for volume reporting            |
| Metrics      | `STRATLAB_RISK_FREE_RATE`         | `0.0`     | Annual risk-free rate used in Sharpe          |
| Optimization | `STRATLAB_MAX_WORKERS`            | `4`       | Thread pool size for candidate evaluation     |
| Optimization | `STRATLAB_OPTIMIZATION_ROUNDS`    | `2`       | Coordinate-search passes over the parameters  |
| A/B          | `STRATLAB_AB_CONFIDENCE_LEVEL`    | `0.95`    | Default A/B confidence level                  |
| Logging      | `LOG_LEVEL`                       | `INFO`    | Loguru sink level                             |
| Logging      | `ENV`                             | `local`   | Environment label attached to log records     |

Settings are sourced from the environment once and treated as read-only.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, computed_field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class _SettingsBase(BaseSettings):
    """Common configuration for BaseSettings subclasses."""

    model_config = SettingsConfigDict(
        env_prefix="",
        populate_by_name=True,
        extra="ignore",
        case_sensitive=True,
        frozen=True,
    )


class EngineSettings(_SettingsBase):
    """Simulation, metrics and search defaults."""

    initial_capital: float = Field(default=10_000.0, alias="STRATLAB_INITIAL_CAPITAL")
    commission_bps: float = Field(default=1.0, alias="STRATLAB_COMMISSION_BPS")
    spread_bps: float = Field(default=1.0, alias="STRATLAB_SPREAD_BPS")
    slippage_bps: float = Field(default=0.5, alias="STRATLAB_SLIPPAGE_BPS")
    lot_size: float = Field(default=100_000.0, alias="STRATLAB_LOT_SIZE")
    risk_free_rate: float = Field(default=0.0, alias="STRATLAB_RISK_FREE_RATE")
    max_workers: int = Field(default=4, alias="STRATLAB_MAX_WORKERS")
    optimization_rounds: int = Field(default=2, alias="STRATLAB_OPTIMIZATION_ROUNDS")
    ab_confidence_level: float = Field(
        default=0.95, alias="STRATLAB_AB_CONFIDENCE_LEVEL"
    )

    @field_validator("initial_capital", "lot_size")
    @classmethod
    def _positive(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("must be > 0")
        return value

    @field_validator("commission_bps", "spread_bps", "slippage_bps")
    @classmethod
    def _non_negative(cls, value: float) -> float:
        if value < 0:
            raise ValueError("must be >= 0")
        return value

    @field_validator("max_workers", "optimization_rounds")
    @classmethod
    def _at_least_one(cls, value: int) -> int:
        return max(1, int(value))

    @computed_field
    @property
    def costs_summary(self) -> str:
        return (
            f"commission={self.commission_bps}bps spread={self.spread_bps}bps "
            f"slippage={self.slippage_bps}bps"
        )


class LoggingSettings(_SettingsBase):
    """Loguru sink configuration."""

    level: str = Field(default="INFO", alias="LOG_LEVEL")
    environment: str = Field(default="local", alias="ENV")


@lru_cache(maxsize=1)
def get_settings() -> EngineSettings:
    return EngineSettings()


@lru_cache(maxsize=1)
def get_logging_settings() -> LoggingSettings:
    return LoggingSettings()


def reload_settings() -> None:
    """Drop cached settings so the next call re-reads the environment."""
    get_settings.cache_clear()
    get_logging_settings.cache_clear()


__all__ = [
    "EngineSettings",
    "LoggingSettings",
    "get_settings",
    "get_logging_settings",
    "reload_settings",
]
