from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, runtime_checkable
import logging

import joblib
import numpy as np

from ..errors import InputError
from .allocation import cap_and_scale, equal_weights

logger = logging.getLogger(__name__)

ZSCORE_EPS = 1e-10


@runtime_checkable
class WeightPredictor(Protocol):
    """External model mapping a normalised feature window to per-asset scores."""

    def predict(self, feature_window: np.ndarray) -> Any:
        ...


def feature_window(returns, step: int, window_size: int) -> np.ndarray:
    """Z-scored, time-major flattening of ``returns[:, step - window_size:step]``.

    All assets of one step sit next to each other.  Missing history at the
    start of the matrix is zero-padded on the left.
    """
    r = np.asarray(returns, dtype=float)
    if r.ndim != 2:
        raise InputError("returns must be 2-D (assets x steps)")
    n_assets = r.shape[0]
    lo = max(0, step - window_size)
    block = r[:, lo:step]
    if block.shape[1] < window_size:
        pad = np.zeros((n_assets, window_size - block.shape[1]))
        block = np.hstack([pad, block])
    flat = block.flatten(order="F")
    return (flat - flat.mean()) / (flat.std() + ZSCORE_EPS)


@dataclass(frozen=True)
class PredictedAllocation:
    weights: np.ndarray
    fallback: bool
    reason: str = ""


def predict_allocation(predictor: WeightPredictor, window: np.ndarray, n_assets: int,
                       max_position: float) -> PredictedAllocation:
    """Turn raw predictor output into a capped allocation; equal weights on any failure."""
    def fallback(reason: str) -> PredictedAllocation:
        logger.warning("predictor fallback to equal weights: %s", reason)
        return PredictedAllocation(equal_weights(n_assets, max_position=max_position), True, reason)

    try:
        raw = np.asarray(predictor.predict(window), dtype=float).ravel()
    except Exception as exc:
        return fallback(f"{type(exc).__name__}: {exc}")
    if raw.size != n_assets:
        return fallback(f"expected {n_assets} weights, got {raw.size}")
    if not np.all(np.isfinite(raw)):
        return fallback("non-finite output")
    raw = np.clip(raw, 0.0, None)
    total = raw.sum()
    if total <= 0:
        return fallback("non-positive output sum")
    return PredictedAllocation(cap_and_scale(raw / total, max_position, total=1.0), False)


class EqualWeightPredictor:
    def __init__(self, n_assets: int):
        self.n_assets = int(n_assets)

    def predict(self, feature_window: np.ndarray) -> np.ndarray:
        return np.full(self.n_assets, 1.0 / self.n_assets)


class InverseVolatilityPredictor:
    """Reference predictor: weights proportional to inverse volatility in the window."""

    def __init__(self, n_assets: int):
        self.n_assets = int(n_assets)

    def predict(self, feature_window: np.ndarray) -> np.ndarray:
        x = np.asarray(feature_window, dtype=float)
        block = x.reshape((self.n_assets, -1), order="F")
        vol = block.std(axis=1)
        inv = 1.0 / (vol + 1e-8)
        return inv / inv.sum()


class JoblibPredictor:
    """Adapter for an estimator persisted with ``joblib.dump``.

    The estimator must expose ``predict`` on a ``(1, n_features)`` array and
    return one row of per-asset scores.  A bundle dict with a ``"model"`` key
    is accepted too.
    """

    def __init__(self, model: Any):
        if isinstance(model, dict):
            model = model.get("model")
        if model is None or not hasattr(model, "predict"):
            raise InputError("persisted object has no predict() method")
        self.model = model

    @classmethod
    def load(cls, path: str | Path) -> "JoblibPredictor":
        p = Path(path)
        if not p.exists():
            raise InputError(f"predictor model not found: {p}")
        return cls(joblib.load(p))

    def save(self, path: str | Path) -> None:
        p = Path(path)
        p.parent.mkdir(parents=True, exist_ok=True)
        joblib.dump({"model": self.model}, p)

    def predict(self, feature_window: np.ndarray) -> np.ndarray:
        x = np.asarray(feature_window, dtype=float).reshape(1, -1)
        return np.asarray(self.model.predict(x), dtype=float).ravel()


def load_predictor(path: str | Path) -> JoblibPredictor:
    return JoblibPredictor.load(path)
