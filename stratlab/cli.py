"""
Command line entry point.

    stratlab backtest --config run.yaml
    stratlab optimize --config run.yaml --output result.json

The YAML config names a strategy (either `template:` plus overrides, or a
full `strategy:` mapping), the market data (`data_dir:` with
`<SYMBOL>_<TF>.csv` files, or `synthetic:` for generated bars) and the run
window.
"""

from __future__ import annotations

import argparse
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

import yaml
from loguru import logger
from pydantic import ValidationError

from stratlab.backtest.engine import BacktestEngine
from stratlab.backtest.model import BacktestRequest, Costs
from stratlab.core.exceptions import ConfigError, StratLabError, describe_error
from stratlab.core.timeframe import Timeframe
from stratlab.data.bars import synthetic_bars
from stratlab.data.source import CsvDataSource, InMemoryDataSource, MarketDataSource
from stratlab.evolution.tracker import EvolutionTracker
from stratlab.logging_utils import setup_logging
from stratlab.optimize.engine import OptimizationEngine
from stratlab.optimize.models import OptimizationConstraints, OptimizationGoal, OptimizationRequest
from stratlab.settings import EngineSettings, get_settings
from stratlab.strats.strategy import RiskRules, TradingStrategy, validate_strategy
from stratlab.strats.templates import TEMPLATES, MeanReversionParams, MomentumParams


def load_config(path: Path) -> Dict[str, Any]:
    try:
        data = yaml.safe_load(path.read_text())
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("run config must be a mapping")
    return data


def build_strategy(cfg: Dict[str, Any]) -> TradingStrategy:
    if "strategy" in cfg:
        return TradingStrategy.parse(cfg["strategy"])
    name = cfg.get("template", "rsi_mean_reversion")
    factory = TEMPLATES.get(name)
    if factory is None:
        raise ConfigError(f"unknown template '{name}' (known: {sorted(TEMPLATES)})")
    kwargs: Dict[str, Any] = {}
    if "timeframe" in cfg:
        try:
            kwargs["timeframe"] = Timeframe(cfg["timeframe"])
        except ValueError as exc:
            raise ConfigError(f"unknown timeframe {cfg['timeframe']!r}") from exc
    if "symbol" in cfg:
        kwargs["symbols"] = (str(cfg["symbol"]).upper(),)
    if "risk" in cfg:
        try:
            kwargs["risk"] = RiskRules(**cfg["risk"])
        except ValidationError as exc:
            raise ConfigError(f"bad risk rules: {exc}") from exc
    params_cls = MeanReversionParams if name == "rsi_mean_reversion" else MomentumParams
    try:
        strategy = factory(params_cls(**(cfg.get("params") or {})), **kwargs)
    except TypeError as exc:
        raise ConfigError(f"bad template params: {exc}") from exc
    validate_strategy(strategy)
    return strategy


def build_source(cfg: Dict[str, Any], strategy: TradingStrategy) -> MarketDataSource:
    if "data_dir" in cfg:
        return CsvDataSource(cfg["data_dir"])
    synth = cfg.get("synthetic")
    if synth is None:
        raise ConfigError("config needs either 'data_dir' or 'synthetic'")
    synth = dict(synth) if isinstance(synth, dict) else {}
    n = int(synth.pop("bars", 2_000))
    source = InMemoryDataSource()
    for symbol in strategy.symbols:
        source.add(symbol, strategy.timeframe, synthetic_bars(n, **synth))
    return source


def _costs(cfg: Dict[str, Any], settings: EngineSettings) -> Costs:
    try:
        return replace(Costs.from_settings(settings), **(cfg.get("costs") or {}))
    except TypeError as exc:
        raise ConfigError(f"bad costs: {exc}") from exc


def _write(payload: Dict[str, Any], output: Optional[str]) -> None:
    text = json.dumps(payload, default=str, indent=2)
    if output:
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(text)
        logger.info("[cli] wrote {}", output)
    else:
        print(text)


def cmd_backtest(args: argparse.Namespace, settings: EngineSettings) -> int:
    cfg = load_config(Path(args.config))
    strategy = build_strategy(cfg)
    source = build_source(cfg, strategy)
    request = BacktestRequest(
        strategy=strategy,
        symbol=cfg.get("symbol"),
        start=cfg.get("start"),
        end=cfg.get("end"),
        initial_capital=float(cfg.get("initial_capital", settings.initial_capital)),
        costs=_costs(cfg, settings),
    )
    with BacktestEngine(source, settings) as engine:
        result = engine.run(request)
    payload = result.to_dict()
    if not args.full:
        for key in ("equity_curve", "drawdown_curve"):
            payload.pop(key)
    _write(payload, args.output or cfg.get("output"))
    return 0


def cmd_optimize(args: argparse.Namespace, settings: EngineSettings) -> int:
    cfg = load_config(Path(args.config))
    strategy = build_strategy(cfg)
    source = build_source(cfg, strategy)
    try:
        goal = OptimizationGoal(cfg.get("goal", OptimizationGoal.BALANCED_RISK_REWARD.value))
        constraints = OptimizationConstraints(**(cfg.get("constraints") or {}))
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"bad optimization settings: {exc}") from exc
    request = OptimizationRequest(
        strategy=strategy,
        goal=goal,
        constraints=constraints,
        symbol=cfg.get("symbol"),
        start=cfg.get("start"),
        end=cfg.get("end"),
        initial_capital=cfg.get("initial_capital"),
        costs=_costs(cfg, settings),
        rounds=cfg.get("rounds"),
    )
    result = OptimizationEngine(source, settings).optimize(request)
    payload = result.to_dict()
    manifest = args.manifest or cfg.get("evolution_manifest")
    if manifest and result.improved:
        entry = EvolutionTracker(manifest).record_optimization(result)
        payload["evolution"] = entry.to_record() if entry else None
    _write(payload, args.output or cfg.get("output"))
    return 0


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="stratlab", description="Backtest and optimize trading strategies")
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    sub = parser.add_subparsers(dest="command", required=True)

    bt = sub.add_parser("backtest", help="Run one backtest")
    bt.add_argument("--config", required=True, help="Path to YAML run definition")
    bt.add_argument("--output", help="Write JSON result here instead of stdout")
    bt.add_argument("--full", action="store_true", help="Include equity and drawdown curves")
    bt.set_defaults(func=cmd_backtest)

    opt = sub.add_parser("optimize", help="Search for better parameters")
    opt.add_argument("--config", required=True, help="Path to YAML run definition")
    opt.add_argument("--output", help="Write JSON result here instead of stdout")
    opt.add_argument("--manifest", help="Append accepted changes to this JSONL evolution manifest")
    opt.set_defaults(func=cmd_optimize)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parser().parse_args(argv)
    setup_logging(force=True, level=args.log_level)
    try:
        return args.func(args, get_settings())
    except StratLabError as exc:
        logger.error("[cli] {}", describe_error(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
