"""Technical indicators and the trading signals derived from them.

All functions are pure: they take a one-dimensional price history, never
mutate it, and return fresh arrays.  Every value at index ``t`` depends only
on inputs up to ``t``, so computing a whole series once and reading it step
by step does not look ahead.

Signals are ``int8`` arrays with ``+1`` for buy, ``-1`` for sell and ``0``
for hold.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ..errors import InputError

ADAPTIVE_MIN_POINTS = 30
HIGH_VOLATILITY = 0.02
LOW_VOLATILITY = 0.008


@dataclass(frozen=True)
class MacdResult:
    signals: np.ndarray
    macd_line: np.ndarray
    signal_line: np.ndarray
    histogram: np.ndarray
    strength: np.ndarray


@dataclass(frozen=True)
class RsiResult:
    signals: np.ndarray
    rsi: np.ndarray


def _as_series(values, name: str = "prices") -> np.ndarray:
    arr = np.asarray(values, dtype=float)
    if arr.ndim != 1:
        raise InputError(f"{name} must be one-dimensional, got shape {arr.shape}")
    if not np.all(np.isfinite(arr)):
        raise InputError(f"{name} contains NaN or Inf")
    return arr


def price_index(returns) -> np.ndarray:
    """Cumulative price path ``cumprod(1 + r)`` for a return series or matrix.

    Works along the last axis, so an ``(n_assets, n_steps)`` matrix yields one
    path per asset.
    """
    r = np.asarray(returns, dtype=float)
    return np.cumprod(1.0 + r, axis=-1)


def ema(values, period: int) -> np.ndarray:
    """Exponential moving average seeded with the first observation."""
    if period < 1:
        raise InputError("EMA period must be positive")
    x = _as_series(values, "values")
    out = np.empty_like(x)
    if x.size == 0:
        return out
    alpha = 2.0 / (period + 1.0)
    out[0] = x[0]
    for t in range(1, x.size):
        out[t] = alpha * x[t] + (1.0 - alpha) * out[t - 1]
    return out


def _check_periods(fast: int, slow: int, signal: int) -> None:
    if min(fast, slow, signal) < 1:
        raise InputError("MACD periods must be positive")
    if fast >= slow:
        raise InputError(f"fast period ({fast}) must be below slow period ({slow})")


def _crossovers(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """+1 where ``a`` crosses above ``b``, -1 where it crosses below."""
    out = np.zeros(a.size, dtype=np.int8)
    if a.size < 2:
        return out
    prev_le = a[:-1] <= b[:-1]
    prev_ge = a[:-1] >= b[:-1]
    out[1:][prev_le & (a[1:] > b[1:])] = 1
    out[1:][prev_ge & (a[1:] < b[1:])] = -1
    return out


def compute_macd(prices, fast: int = 12, slow: int = 26, signal: int = 9) -> MacdResult:
    """Classic MACD crossover signals.

    Buy when the MACD line moves from at-or-below the signal line to above
    it, sell on the reverse move.
    """
    _check_periods(fast, slow, signal)
    p = _as_series(prices)
    if p.size == 0:
        empty = np.zeros(0)
        return MacdResult(np.zeros(0, dtype=np.int8), empty, empty, empty, empty)
    macd_line = ema(p, fast) - ema(p, slow)
    signal_line = ema(macd_line, signal)
    histogram = macd_line - signal_line
    signals = _crossovers(macd_line, signal_line)
    return MacdResult(signals, macd_line, signal_line, histogram, np.zeros(p.size))


def _trailing_mean(x: np.ndarray, period: int) -> np.ndarray:
    """Mean of ``x[t-period:t]`` (excluding ``t``); NaN until enough history."""
    out = np.full(x.size, np.nan)
    if period < 1 or x.size <= period:
        return out
    csum = np.concatenate(([0.0], np.cumsum(x)))
    t = np.arange(period, x.size)
    out[period:] = (csum[t] - csum[t - period]) / period
    return out


def compute_enhanced_macd(
    prices,
    volumes=None,
    fast: int = 12,
    slow: int = 26,
    signal: int = 9,
    histogram_threshold: float = 0.001,
    signal_threshold: float = 0.3,
    volume_threshold: float = 1.5,
    trend_confirmation: bool = True,
) -> MacdResult:
    """MACD with zero-line crossovers, strength scoring and confirmation filters.

    Steps, in order:

    * primary signal-line crossovers as in :func:`compute_macd`;
    * zero-line crossovers of the MACD line, which never overwrite an
      opposite primary signal;
    * strength ``min(1, |histogram| / histogram_threshold)``; signals weaker
      than ``signal_threshold`` are dropped;
    * volume confirmation when ``volumes`` has the same length as ``prices``:
      a signal survives only if volume exceeds its trailing mean times
      ``volume_threshold``;
    * trend confirmation: buys need price above its trailing mean, sells
      need price below it.
    """
    base = compute_macd(prices, fast, slow, signal)
    n = base.signals.size
    signals = base.signals.copy()
    if n < 2:
        return base

    zero = _crossovers(base.macd_line, np.zeros(n))
    signals[(zero == 1) & (signals != -1)] = 1
    signals[(zero == -1) & (signals != 1)] = -1

    if histogram_threshold <= 0:
        raise InputError("histogram_threshold must be positive")
    strength = np.minimum(1.0, np.abs(base.histogram) / histogram_threshold)
    strength[0] = 0.0
    signals[strength < signal_threshold] = 0

    p = np.asarray(prices, dtype=float)
    if volumes is not None:
        vol = _as_series(volumes, "volumes")
        if vol.size == n:
            vol_ma = _trailing_mean(vol, min(10, n // 5))
            with np.errstate(invalid="ignore"):
                spike = vol > vol_ma * volume_threshold
            signals[~spike] = 0

    if trend_confirmation:
        ma = _trailing_mean(p, min(20, n // 4))
        direction = np.zeros(n)
        ok = np.isfinite(ma)
        direction[ok] = np.sign(p[ok] - ma[ok])
        signals[(signals == 1) & (direction < 0)] = 0
        signals[(signals == -1) & (direction > 0)] = 0

    strength = np.where(signals != 0, strength, 0.0)
    return MacdResult(signals, base.macd_line, base.signal_line, base.histogram, strength)


def compute_rsi(prices, window: int = 14, overbought: float = 70.0, oversold: float = 30.0) -> RsiResult:
    """Wilder RSI with level-crossing signals.

    Buy when the RSI crosses below ``oversold``, sell when it crosses above
    ``overbought``.  With fewer than ``window + 1`` prices the RSI is all NaN
    and every signal is hold.
    """
    if window < 1:
        raise InputError("RSI window must be positive")
    p = _as_series(prices)
    n = p.size
    rsi = np.full(n, np.nan)
    signals = np.zeros(n, dtype=np.int8)
    if n < window + 1:
        return RsiResult(signals, rsi)

    delta = np.diff(p)
    gains = np.where(delta > 0, delta, 0.0)
    losses = np.where(delta < 0, -delta, 0.0)
    avg_gain = gains[:window].mean()
    avg_loss = losses[:window].mean()
    for t in range(window, n):
        if t > window:
            avg_gain = (avg_gain * (window - 1) + gains[t - 1]) / window
            avg_loss = (avg_loss * (window - 1) + losses[t - 1]) / window
        if avg_loss == 0:
            rsi[t] = 100.0
        else:
            rsi[t] = 100.0 - 100.0 / (1.0 + avg_gain / avg_loss)

    prev, cur = rsi[:-1], rsi[1:]
    valid = np.isfinite(prev)
    signals[1:][valid & (prev >= oversold) & (cur < oversold)] = 1
    signals[1:][valid & (prev <= overbought) & (cur > overbought)] = -1
    return RsiResult(signals, rsi)


def adaptive_periods(prices, fast: int = 12, slow: int = 26, signal: int = 9) -> Tuple[int, int, int]:
    """Shorten MACD periods in volatile markets and lengthen them in calm ones."""
    p = _as_series(prices)
    if p.size <= ADAPTIVE_MIN_POINTS:
        return fast, slow, signal
    with np.errstate(divide="ignore", invalid="ignore"):
        rets = np.diff(p) / p[:-1]
    rets = rets[np.isfinite(rets)]
    if rets.size < 2:
        return fast, slow, signal
    vol = float(np.std(rets, ddof=1))
    if vol > HIGH_VOLATILITY:
        fast, slow, signal = max(5, round(fast * 0.8)), max(15, round(slow * 0.8)), max(5, round(signal * 0.8))
    elif vol < LOW_VOLATILITY:
        fast, slow, signal = min(20, round(fast * 1.2)), min(40, round(slow * 1.2)), min(15, round(signal * 1.2))
    if fast >= slow:
        slow = fast + 1
    return int(fast), int(slow), int(signal)


def strength_weights(signals: np.ndarray, strength: Optional[np.ndarray] = None) -> np.ndarray:
    """Relative buy strength per asset, zero for non-buys."""
    sig = np.asarray(signals)
    w = (sig == 1).astype(float)
    if strength is not None:
        w = w * np.asarray(strength, dtype=float)
    return w
