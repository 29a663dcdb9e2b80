"""Versioned history of strategy parameter changes."""

from .tracker import (
    EvolutionTracker,
    EvolutionTrigger,
    ParameterChange,
    StrategyEvolution,
    diff_parameters,
    load_manifest,
)

__all__ = [
    "EvolutionTracker",
    "EvolutionTrigger",
    "ParameterChange",
    "StrategyEvolution",
    "diff_parameters",
    "load_manifest",
]
