"""Parameter search over strategies, driven by repeated backtests."""

from .engine import OptimizationEngine, goal_score, needs_reoptimization
from .models import (
    OptimizationConstraints,
    OptimizationGoal,
    OptimizationRecommendation,
    OptimizationRequest,
    OptimizationResult,
    StrategyImprovements,
)

__all__ = [
    "OptimizationEngine",
    "goal_score",
    "needs_reoptimization",
    "OptimizationConstraints",
    "OptimizationGoal",
    "OptimizationRecommendation",
    "OptimizationRequest",
    "OptimizationResult",
    "StrategyImprovements",
]
