"""Hybrid technical-signal / predictor portfolio engine.

The package turns a matrix of per-asset returns into trading signals,
classifies the market regime, computes risk-adjusted weights with a particle
swarm optimizer and blends the sleeves into one capped allocation, then
replays allocations step by step against history.

Modules
=======

signals
    ``indicators`` holds EMA, MACD, enhanced MACD and RSI as pure
    functions; ``sources`` wraps them in the :class:`SignalSource`
    interface used by the backtest.

engine
    ``regime`` (four-state market regime classifier), ``optimizer`` (the
    SPO particle swarm), ``predictor`` (interface to an external weight
    model plus reference implementations), ``combiner`` (sleeve blending
    with agreement, conflict and performance rules), ``backtest`` (the
    walk-forward loop) and ``sweep`` (indicator parameter grid search).

analytics
    Summary statistics of return series and comparison tables.

config
    Dataclass settings and JSON/TOML/YAML loading.

dataio, reports, utils
    CSV loading, synthetic data, report writers, logging and process-pool
    helpers.

cli
    Command-line interface: ``python -m spo_hybrid.cli``.
"""

__version__ = "0.1.0"

__all__ = [
    "signals",
    "engine",
    "analytics",
    "config",
    "dataio",
    "reports",
    "utils",
    "cli",
]
