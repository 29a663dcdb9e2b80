from __future__ import annotations

from datetime import timedelta
from enum import Enum

TRADING_DAYS = 252


class Timeframe(str, Enum):
    """Bar interval for a strategy and its data."""

    M1 = "M1"
    M5 = "M5"
    M15 = "M15"
    M30 = "M30"
    H1 = "H1"
    H4 = "H4"
    D1 = "D1"
    W1 = "W1"
    MN1 = "MN1"

    @property
    def minutes(self) -> int:
        return _MINUTES[self]

    @property
    def delta(self) -> timedelta:
        return timedelta(minutes=self.minutes)

    @property
    def periods_per_year(self) -> int:
        if self is Timeframe.W1:
            return 52
        if self is Timeframe.MN1:
            return 12
        return TRADING_DAYS * max(1, 1440 // self.minutes)

    @property
    def display_name(self) -> str:
        return _DISPLAY[self]


_MINUTES = {
    Timeframe.M1: 1,
    Timeframe.M5: 5,
    Timeframe.M15: 15,
    Timeframe.M30: 30,
    Timeframe.H1: 60,
    Timeframe.H4: 240,
    Timeframe.D1: 1440,
    Timeframe.W1: 10080,
    Timeframe.MN1: 43200,
}

_DISPLAY = {
    Timeframe.M1: "1 Minute",
    Timeframe.M5: "5 Minutes",
    Timeframe.M15: "15 Minutes",
    Timeframe.M30: "30 Minutes",
    Timeframe.H1: "1 Hour",
    Timeframe.H4: "4 Hours",
    Timeframe.D1: "Daily",
    Timeframe.W1: "Weekly",
    Timeframe.MN1: "Monthly",
}

__all__ = ["Timeframe", "TRADING_DAYS"]
