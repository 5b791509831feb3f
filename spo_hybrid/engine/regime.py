"""Market regime classification for a multi-asset return history.

The classifier looks at two statistics averaged across assets over a
trailing window:

* **volatility** of returns (``std``), of the price range (``range``) or of
  absolute price moves (``atr``);
* **trend strength** of the cumulative price path, either the absolute
  correlation of price with time (``corr``), a normalised regression slope
  (``slope``) or the gap between a short and a long moving average (``ma``).

Each statistic is compared against a threshold, either fixed or, with
``adaptive`` on and enough history, a quantile of the same statistic's
rolling history pooled over all assets.  The two booleans give one of four
regimes, and every regime maps to a (MACD, predictor, cash) weight triple
that the strategy combiner uses.

Users can adjust windows, methods and thresholds via
:class:`~spo_hybrid.config.settings.RegimeSettings`.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
import logging

import numpy as np
import pandas as pd

from ..config.settings import RegimeSettings
from ..errors import InputError
from ..signals.indicators import price_index

logger = logging.getLogger(__name__)

# MACD weight that strong-trend regimes drift toward as the trend fades
NEUTRAL_MACD_WEIGHT = 0.6
SHORT_MA_POINTS = 6
MIN_MA_POINTS = 10


class RegimeLabel(IntEnum):
    HIGH_VOL_STRONG_TREND = 1
    HIGH_VOL_WEAK_TREND = 2
    LOW_VOL_STRONG_TREND = 3
    LOW_VOL_WEAK_TREND = 4


@dataclass(frozen=True)
class RegimeWeights:
    macd: float
    predictor: float
    cash: float

    def as_tuple(self) -> tuple[float, float, float]:
        return (self.macd, self.predictor, self.cash)


@dataclass(frozen=True)
class RegimeState:
    label: RegimeLabel
    weights: RegimeWeights
    volatility: float
    trend: float
    volatility_threshold: float
    trend_threshold: float
    # False when there was too little history and the default profile was used
    computed: bool = True


BASE_WEIGHTS = {
    RegimeLabel.HIGH_VOL_STRONG_TREND: RegimeWeights(0.9, 0.1, 0.0),
    RegimeLabel.HIGH_VOL_WEAK_TREND: RegimeWeights(0.6, 0.2, 0.2),
    RegimeLabel.LOW_VOL_STRONG_TREND: RegimeWeights(0.7, 0.3, 0.0),
    RegimeLabel.LOW_VOL_WEAK_TREND: RegimeWeights(0.4, 0.6, 0.0),
}


def _as_matrix(returns) -> np.ndarray:
    r = np.asarray(returns, dtype=float)
    if r.ndim == 1:
        r = r[None, :]
    if r.ndim != 2:
        raise InputError(f"returns must be 1-D or 2-D (assets x steps), got shape {r.shape}")
    if not np.all(np.isfinite(r)):
        raise InputError("returns contain NaN or Inf")
    return r


def _with_base(prices: np.ndarray) -> np.ndarray:
    """Prepend the starting price of 1.0 to each price path."""
    return np.hstack([np.ones((prices.shape[0], 1)), prices])


def window_volatility(returns: np.ndarray, prices: np.ndarray, method: str) -> np.ndarray:
    """Per-asset volatility of one window; ``prices`` holds one more point than ``returns``."""
    if method == "std":
        return np.std(returns, axis=1, ddof=1)
    mean_px = prices.mean(axis=1)
    if method == "range":
        return (prices.max(axis=1) - prices.min(axis=1)) / mean_px
    if method == "atr":
        return np.abs(np.diff(prices, axis=1)).mean(axis=1) / mean_px
    raise InputError(f"unknown volatility method: {method!r}")


def window_trend(prices: np.ndarray, method: str) -> np.ndarray:
    """Per-asset trend strength in ``[0, 1]`` of one price window."""
    n = prices.shape[1]
    t = np.arange(n, dtype=float)
    out = np.zeros(prices.shape[0])
    for i, p in enumerate(prices):
        if method == "corr":
            if np.std(p) > 0:
                out[i] = abs(np.corrcoef(t, p)[0, 1])
        elif method == "slope":
            slope = np.polyfit(t, p, 1)[0]
            out[i] = min(1.0, abs(slope * n / p.mean()))
        elif method == "ma":
            if n >= MIN_MA_POINTS:
                short = p[-SHORT_MA_POINTS:].mean()
                long_ = p.mean()
                out[i] = min(1.0, abs(short - long_) / long_ * 10.0)
        else:
            raise InputError(f"unknown trend method: {method!r}")
    return out


def rolling_volatility(returns: np.ndarray, prices: np.ndarray, window: int, method: str) -> np.ndarray:
    """Pooled per-asset rolling volatility values (finite only)."""
    if method == "std":
        vals = pd.DataFrame(returns.T).rolling(window).std().to_numpy()
    else:
        px = pd.DataFrame(prices.T)
        mean_px = px.rolling(window + 1).mean()
        if method == "range":
            vals = ((px.rolling(window + 1).max() - px.rolling(window + 1).min()) / mean_px).to_numpy()
        elif method == "atr":
            vals = (px.diff().abs().rolling(window).mean() / mean_px).to_numpy()
        else:
            raise InputError(f"unknown volatility method: {method!r}")
    vals = vals.ravel()
    return vals[np.isfinite(vals)]


def rolling_trend(prices: np.ndarray, window: int, method: str) -> np.ndarray:
    """Pooled per-asset rolling trend-strength values (finite only)."""
    px = pd.DataFrame(prices.T)
    if method == "corr":
        t = pd.Series(np.arange(px.shape[0], dtype=float))
        vals = np.column_stack([px[c].rolling(window).corr(t).abs().to_numpy() for c in px.columns])
    elif method == "slope":
        t = pd.Series(np.arange(px.shape[0], dtype=float))
        var_t = np.var(np.arange(window, dtype=float), ddof=1)
        slopes = np.column_stack([px[c].rolling(window).cov(t).to_numpy() for c in px.columns]) / var_t
        vals = np.minimum(1.0, np.abs(slopes * window / px.rolling(window).mean().to_numpy()))
    elif method == "ma":
        if window < MIN_MA_POINTS:
            return np.zeros(0)
        short = px.rolling(SHORT_MA_POINTS).mean()
        long_ = px.rolling(window).mean()
        vals = np.minimum(1.0, ((short - long_).abs() / long_ * 10.0).to_numpy())
    else:
        raise InputError(f"unknown trend method: {method!r}")
    vals = vals.ravel()
    return vals[np.isfinite(vals)]


class RegimeClassifier:
    """Deterministic four-state regime classifier.

    Parameters
    ----------
    settings : RegimeSettings, optional
        Windows, methods, fixed thresholds and adaptive-quantile options.
    """

    def __init__(self, settings: RegimeSettings | None = None):
        self.settings = settings or RegimeSettings()

    @property
    def min_observations(self) -> int:
        s = self.settings
        return max(s.volatility_window, s.trend_window) + 1

    def default_state(self) -> RegimeState:
        s = self.settings
        label = RegimeLabel.HIGH_VOL_STRONG_TREND
        return RegimeState(label, BASE_WEIGHTS[label], 0.0, 0.0,
                           s.volatility_threshold, s.trend_threshold, computed=False)

    def thresholds(self, returns: np.ndarray, prices: np.ndarray) -> tuple[float, float]:
        s = self.settings
        vol_thr, trend_thr = s.volatility_threshold, s.trend_threshold
        if not s.adaptive or returns.shape[1] < 2 * max(s.volatility_window, s.trend_window):
            return vol_thr, trend_thr
        vol_hist = rolling_volatility(returns, _with_base(prices), s.volatility_window, s.volatility_method)
        if vol_hist.size:
            vol_thr = float(np.quantile(vol_hist, s.volatility_quantile))
        trend_hist = rolling_trend(prices, s.trend_window, s.trend_method)
        if trend_hist.size:
            trend_thr = float(np.quantile(trend_hist, s.trend_quantile))
        return vol_thr, trend_thr

    def classify(self, returns) -> RegimeState:
        """Classify the regime at the end of ``returns`` (assets x steps)."""
        s = self.settings
        r = _as_matrix(returns)
        if r.shape[1] < self.min_observations:
            return self.default_state()
        if s.history_length and r.shape[1] > s.history_length:
            r = r[:, -max(s.history_length, self.min_observations):]

        prices = price_index(r)
        vw, tw = s.volatility_window, s.trend_window
        vol = float(np.mean(window_volatility(r[:, -vw:], prices[:, -(vw + 1):], s.volatility_method)))
        trend = float(np.mean(window_trend(prices[:, -tw:], s.trend_method)))
        vol_thr, trend_thr = self.thresholds(r, prices)

        high_vol = vol >= vol_thr
        strong_trend = trend >= trend_thr
        if high_vol and strong_trend:
            label = RegimeLabel.HIGH_VOL_STRONG_TREND
        elif high_vol:
            label = RegimeLabel.HIGH_VOL_WEAK_TREND
        elif strong_trend:
            label = RegimeLabel.LOW_VOL_STRONG_TREND
        else:
            label = RegimeLabel.LOW_VOL_WEAK_TREND

        weights = regime_weights(label, vol, trend, vol_thr, trend_thr)
        logger.debug("regime %s vol=%.5f (thr %.5f) trend=%.3f (thr %.3f)",
                     label.name, vol, vol_thr, trend, trend_thr)
        return RegimeState(label, weights, vol, trend, vol_thr, trend_thr)

    def label_series(self, returns) -> np.ndarray:
        """Regime label for every step of a full return matrix.

        Step ``t`` is classified from ``returns[:, :t + 1]``.  Steps before the
        first computable label reuse that label.
        """
        r = _as_matrix(returns)
        n = r.shape[1]
        labels = np.zeros(n, dtype=int)
        first = self.min_observations - 1
        if n <= first:
            labels[:] = int(RegimeLabel.HIGH_VOL_STRONG_TREND)
            return labels
        for t in range(first, n):
            labels[t] = int(self.classify(r[:, :t + 1]).label)
        labels[:first] = labels[first]
        return labels


def regime_weights(label: RegimeLabel, volatility: float, trend: float,
                   volatility_threshold: float, trend_threshold: float) -> RegimeWeights:
    """Base weights of a regime, shifted continuously by how far the statistics sit past their thresholds."""
    base = BASE_WEIGHTS[label]
    macd, cash = base.macd, base.cash

    if label in (RegimeLabel.HIGH_VOL_STRONG_TREND, RegimeLabel.LOW_VOL_STRONG_TREND):
        f = min(1.0, trend / trend_threshold) if trend_threshold > 0 else 1.0
        macd = macd * f + (1.0 - f) * NEUTRAL_MACD_WEIGHT
    elif label == RegimeLabel.HIGH_VOL_WEAK_TREND:
        vf = min(1.0, volatility / (volatility_threshold * 1.5)) if volatility_threshold > 0 else 1.0
        cash = 0.2 + vf * 0.3
        macd = (1.0 - cash) * NEUTRAL_MACD_WEIGHT
    else:
        weakness = max(0.0, 1.0 - trend / trend_threshold) if trend_threshold > 0 else 1.0
        predictor = 0.4 + weakness * 0.2
        macd = 1.0 - predictor

    predictor = max(0.0, 1.0 - macd - cash)
    return RegimeWeights(float(macd), float(predictor), float(cash))
