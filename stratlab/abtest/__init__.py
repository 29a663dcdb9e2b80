"""Controlled A/B comparisons between two strategy variants."""

from .allocator import SplitAllocator, signal_key
from .engine import ABTest, ABTestingEngine, welch_significance
from .models import (
    ABArm,
    ABTestConfiguration,
    ABTestPerformance,
    ABTestResult,
    ABTestStatus,
    ABTestWinner,
)

__all__ = [
    "SplitAllocator",
    "signal_key",
    "ABTest",
    "ABTestingEngine",
    "welch_significance",
    "ABArm",
    "ABTestConfiguration",
    "ABTestPerformance",
    "ABTestResult",
    "ABTestStatus",
    "ABTestWinner",
]
