from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import List, Sequence
import logging

import numpy as np
import pandas as pd

from ..errors import InputError
from ..utils.io import read_csv_flexible

logger = logging.getLogger(__name__)

DATE_COLUMNS = ("dt", "date", "datetime", "timestamp", "time", "tradedate")
STEP_COLUMNS = ("step", "unnamed: 0")


@dataclass
class ReturnData:
    assets: List[str]
    returns: np.ndarray          # (n_assets, n_steps)
    index: pd.Index

    @property
    def n_assets(self) -> int:
        return self.returns.shape[0]

    @property
    def n_steps(self) -> int:
        return self.returns.shape[1]


def load_returns(path: str | Path, kind: str = "returns", assets: Sequence[str] | None = None) -> ReturnData:
    """Read a wide CSV (one row per step, one column per asset).

    ``kind="prices"`` converts prices to simple returns; the first step gets a
    zero return.  NaN/Inf cells are replaced with zero and reported.
    """
    p = Path(path)
    if not p.exists():
        raise InputError(f"file not found: {p}")
    df = read_csv_flexible(p)
    if df is None or df.empty:
        raise InputError(f"{p}: no data")

    step_col = next((c for c in df.columns if str(c).lower() in STEP_COLUMNS), None)
    if step_col is not None:
        df = df.set_index(step_col)
    date_col = next((c for c in df.columns if str(c).lower() in DATE_COLUMNS), None)
    if date_col is not None:
        idx = pd.to_datetime(df[date_col], errors="coerce")
        df = df.drop(columns=[date_col])
        df.index = idx if idx.notna().all() else pd.RangeIndex(len(df))
    if assets:
        missing = [a for a in assets if a not in df.columns]
        if missing:
            raise InputError(f"{p}: missing asset columns {missing}")
        df = df[list(assets)]
    df = df.apply(pd.to_numeric, errors="coerce")
    if df.shape[1] == 0:
        raise InputError(f"{p}: no numeric asset columns")

    if kind == "prices":
        df = df / df.shift(1) - 1.0
        df.iloc[0] = 0.0
    elif kind != "returns":
        raise InputError(f"kind must be 'returns' or 'prices', got {kind!r}")

    values = df.to_numpy(dtype=float)
    bad = ~np.isfinite(values)
    if bad.any():
        logger.warning("%s: %d non-finite cells replaced with zero", p, int(bad.sum()))
        values[bad] = 0.0
    return ReturnData([str(c) for c in df.columns], values.T.copy(), df.index)


def synthetic_returns(n_assets: int = 5, n_steps: int = 250, drift=0.0, volatility=0.01,
                      seed: int | None = None) -> np.ndarray:
    """Gaussian return matrix ``(n_assets, n_steps)``; drift/volatility may be per asset."""
    if n_assets < 1 or n_steps < 1:
        raise InputError("n_assets and n_steps must be positive")
    rng = np.random.default_rng(seed)
    mu = np.broadcast_to(np.asarray(drift, dtype=float), (n_assets,))
    sd = np.broadcast_to(np.asarray(volatility, dtype=float), (n_assets,))
    return mu[:, None] + sd[:, None] * rng.standard_normal((n_assets, n_steps))


def write_returns(returns, path: str | Path, assets: Sequence[str] | None = None) -> None:
    r = np.asarray(returns, dtype=float)
    names = list(assets) if assets else [f"asset_{i + 1}" for i in range(r.shape[0])]
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(r.T, columns=names).to_csv(p, index_label="step")
