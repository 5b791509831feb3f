from __future__ import annotations
import numpy as np
import pandas as pd
from typing import Optional, Dict, Any, Union

__all__ = ["summarize", "equity_curve", "max_drawdown", "sharpe_ratio", "sortino_ratio", "metrics_by_regime"]

EPS = 1e-12

def _safe_div(a: float, b: float, default: float = np.nan) -> float:
    try:
        return float(a / b) if (b is not None and abs(float(b)) > EPS) else float(default)
    except (TypeError, ValueError, ZeroDivisionError):
        return float(default)

def _finite_or_none(x: Union[float, int, np.number, None]) -> Optional[float]:
    """Return float(x) if finite; None for None/NaN/inf or non-castable types."""
    if x is None:
        return None
    try:
        xf = float(x)
    except (TypeError, ValueError):
        return None
    if np.isfinite(xf):
        return xf
    return None

def _as_returns(returns) -> pd.Series:
    if not isinstance(returns, pd.Series):
        returns = pd.Series(returns, dtype=float)
    return returns.astype(float).replace([np.inf, -np.inf], np.nan).dropna()

def equity_curve(returns, initial_value: float = 1.0) -> pd.Series:
    """Compounded value path, starting with ``initial_value`` before the first return."""
    r = _as_returns(returns)
    values = initial_value * np.cumprod(np.concatenate(([1.0], 1.0 + r.to_numpy())))
    return pd.Series(values, dtype=float)

def max_drawdown(values) -> float:
    """Largest fractional fall from a running peak, ``max((peak - v) / peak)``."""
    v = pd.Series(values, dtype=float).dropna()
    if len(v) < 2:
        return 0.0
    peak = v.cummax()
    dd = (peak - v) / peak.where(peak.abs() > EPS)
    return float(dd.max()) if dd.notna().any() else 0.0

def sharpe_ratio(returns, periods_per_year: float = 252.0, risk_free: float = 0.0) -> float:
    r = _as_returns(returns) - risk_free / periods_per_year
    if len(r) < 2:
        return 0.0
    stdev = float(r.std(ddof=1))
    return _safe_div(float(r.mean()), stdev, default=0.0) * np.sqrt(periods_per_year) if stdev > 0 else 0.0

def sortino_ratio(returns, periods_per_year: float = 252.0, risk_free: float = 0.0) -> Optional[float]:
    r = _as_returns(returns) - risk_free / periods_per_year
    downside = r[r < 0]
    if len(r) < 2 or len(downside) < 2:
        return None
    dd = float(downside.std(ddof=1))
    return _finite_or_none(_safe_div(float(r.mean()), dd) * np.sqrt(periods_per_year))

def summarize(returns,
              periods_per_year: float = 252.0,
              benchmark=None,
              initial_value: float = 1.0,
              risk_free: float = 0.0) -> Dict[str, Any]:
    r = _as_returns(returns)
    eq = equity_curve(r, initial_value)
    steps = int(len(r))
    if steps == 0:
        return {
            "total_return": 0.0,
            "max_drawdown": 0.0,
            "volatility_ann": None,
            "sharpe_ann": None,
            "sortino_ann": None,
            "win_rate": None,
            "information_ratio": None,
            "steps": 0,
            "final_value": float(initial_value),
        }

    total_return = float(eq.iloc[-1] / eq.iloc[0] - 1.0) if abs(eq.iloc[0]) > EPS else 0.0
    stdev = float(r.std(ddof=1)) if steps > 1 else 0.0

    info_ratio = None
    if benchmark is not None:
        b = _as_returns(benchmark)
        active = (r - b.reindex(r.index)).dropna()
        if len(active) > 1 and float(active.std(ddof=1)) > 0:
            info_ratio = _finite_or_none(float(active.mean()) / float(active.std(ddof=1)) * np.sqrt(periods_per_year))

    return {
        "total_return": total_return,
        "max_drawdown": max_drawdown(eq),
        "volatility_ann": _finite_or_none(stdev * np.sqrt(periods_per_year)),
        "sharpe_ann": _finite_or_none(sharpe_ratio(r, periods_per_year, risk_free)),
        "sortino_ann": sortino_ratio(r, periods_per_year, risk_free),
        "win_rate": _finite_or_none(float((r > 0).sum()) / steps),
        "information_ratio": info_ratio,
        "steps": steps,
        "final_value": float(eq.iloc[-1]),
    }

def metrics_by_regime(returns, labels, periods_per_year: float = 252.0) -> Dict[str, Dict[str, Any]]:
    """Return statistics of the steps spent in each regime label (0 = no regime computed)."""
    r = _as_returns(returns)
    lab = pd.Series(labels).reindex(r.index)
    out: Dict[str, Dict[str, Any]] = {}
    for label, grp in r.groupby(lab):
        out[str(int(label))] = {
            "steps": int(len(grp)),
            "mean_return": float(grp.mean()),
            "sharpe_ann": _finite_or_none(sharpe_ratio(grp, periods_per_year)),
            "win_rate": float((grp > 0).mean()),
        }
    return out
