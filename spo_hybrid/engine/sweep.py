"""Grid search over indicator parameters.

Each grid point runs a MACD-sleeve-only (or RSI-sleeve-only) backtest and
the points are ranked by annualised Sharpe ratio.  Grid points are
independent, so they fan out over :func:`~spo_hybrid.utils.parallel.parallel_map`.
"""

from __future__ import annotations

from itertools import product
import logging
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import numpy as np
import pandas as pd

from ..config.settings import Settings, replace_section
from ..errors import InputError
from ..utils.parallel import parallel_map
from .backtest import run_backtest

logger = logging.getLogger(__name__)

MACD_GRID = {
    "fast_period": (5, 8, 12, 15, 20),
    "slow_period": (15, 20, 26, 30, 40),
    "signal_period": (5, 7, 9, 12),
}

RSI_GRID = {
    "rsi_window": (7, 10, 14, 21),
    "oversold": (20.0, 25.0, 30.0),
    "overbought": (70.0, 75.0, 80.0),
}


def grid_points(grid: Dict[str, Sequence[Any]]) -> List[Dict[str, Any]]:
    keys = list(grid)
    points = []
    for combo in product(*(grid[k] for k in keys)):
        point = dict(zip(keys, combo))
        if point.get("fast_period", 0) >= point.get("slow_period", np.inf):
            continue
        points.append(point)
    return points


def _evaluate(item: Tuple[np.ndarray, Dict[str, Any], Dict[str, Any]]) -> Dict[str, Any]:
    returns, settings_dict, point = item
    settings = Settings.from_dict(settings_dict)
    settings = replace_section(settings, "indicator", **point)
    result = run_backtest(returns, settings, variants=("macd",))
    rep = result.summary()["macd"]
    row = dict(point)
    row.update({
        "sharpe_ann": rep["sharpe_ann"],
        "total_return": rep["total_return"],
        "max_drawdown": rep["max_drawdown"],
    })
    return row


def sweep_parameters(returns, kind: str = "macd", grid: Dict[str, Iterable[Any]] | None = None,
                     settings: Settings | None = None, n_jobs: int | None = 1) -> pd.DataFrame:
    """Evaluate every grid point and return them sorted by Sharpe (best first)."""
    if kind not in ("macd", "enhanced_macd", "rsi"):
        raise InputError(f"cannot sweep indicator kind {kind!r}")
    settings = settings or Settings()
    if grid is None:
        grid = RSI_GRID if kind == "rsi" else MACD_GRID
    points = grid_points({k: tuple(v) for k, v in grid.items()})
    if not points:
        raise InputError("parameter grid is empty")
    base = settings.to_dict()
    base["indicator"]["kind"] = kind
    r = np.asarray(returns, dtype=float)
    logger.info("sweeping %d %s parameter sets", len(points), kind)
    rows = parallel_map([(r, base, p) for p in points], _evaluate, n_jobs)
    df = pd.DataFrame(rows)
    return df.sort_values("sharpe_ann", ascending=False, na_position="last").reset_index(drop=True)
