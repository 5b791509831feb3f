"""Signal sources: per-asset signals for a whole return matrix.

A :class:`SignalSource` answers two questions for a step ``t``: which assets
carry a buy, hold or sell signal, and what allocation those signals imply
under a per-asset cap.  Concrete sources compute every asset's signals once
at construction; per-asset work can be fanned out over a process pool via
``n_jobs`` and is always collected in asset order.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from functools import partial
import logging

import numpy as np

from ..config.settings import IndicatorSettings
from ..engine.allocation import cap_and_scale, signals_to_weights
from ..errors import InputError
from ..utils.parallel import parallel_map
from .indicators import (
    adaptive_periods,
    compute_enhanced_macd,
    compute_macd,
    compute_rsi,
    price_index,
    strength_weights,
)

logger = logging.getLogger(__name__)


def _validate_matrix(returns) -> np.ndarray:
    r = np.asarray(returns, dtype=float)
    if r.ndim != 2:
        raise InputError(f"return matrix must be 2-D (assets x steps), got shape {r.shape}")
    if r.shape[0] < 1:
        raise InputError("return matrix has no assets")
    if not np.all(np.isfinite(r)):
        raise InputError("return matrix contains NaN or Inf")
    return r


class SignalSource(ABC):
    """Common interface for anything that emits per-asset trading signals."""

    n_assets: int
    n_steps: int

    @abstractmethod
    def signal_matrix(self) -> np.ndarray:
        """Signals of shape ``(n_assets, n_steps)``."""

    def _in_range(self, step: int) -> bool:
        if 0 <= step < self.n_steps:
            return True
        logger.debug("step %s outside [0, %s); returning holds", step, self.n_steps)
        return False

    def signals_at(self, step: int) -> np.ndarray:
        if not self._in_range(step):
            return np.zeros(self.n_assets, dtype=np.int8)
        return self.signal_matrix()[:, step].copy()

    def weights_at(self, step: int, max_position: float) -> np.ndarray:
        if not self._in_range(step):
            return np.zeros(self.n_assets)
        return signals_to_weights(self.signals_at(step), max_position)


class StaticSignalSource(SignalSource):
    """Wraps a precomputed signal matrix."""

    def __init__(self, signals):
        sig = np.asarray(signals)
        if sig.ndim != 2:
            raise InputError("signal matrix must be 2-D (assets x steps)")
        if not np.isin(sig, (-1, 0, 1)).all():
            raise InputError("signals must be -1, 0 or 1")
        self._signals = sig.astype(np.int8)
        self.n_assets, self.n_steps = self._signals.shape

    def signal_matrix(self) -> np.ndarray:
        return self._signals


def _macd_row(prices: np.ndarray, fast: int, slow: int, signal: int):
    res = compute_macd(prices, fast, slow, signal)
    return res.signals, res.strength


def _enhanced_row(item, fast: int, slow: int, signal: int, settings: IndicatorSettings):
    prices, volumes = item
    res = compute_enhanced_macd(
        prices,
        volumes,
        fast=fast,
        slow=slow,
        signal=signal,
        histogram_threshold=settings.histogram_threshold,
        signal_threshold=settings.signal_threshold,
        volume_threshold=settings.volume_threshold,
        trend_confirmation=settings.trend_confirmation,
    )
    return res.signals, res.strength


def _rsi_row(prices: np.ndarray, window: int, overbought: float, oversold: float):
    res = compute_rsi(prices, window, overbought, oversold)
    return res.signals, np.zeros(prices.size)


class _ComputedSource(SignalSource):
    def __init__(self, returns, settings: IndicatorSettings | None = None, n_jobs: int | None = 1):
        self.settings = settings or IndicatorSettings()
        r = _validate_matrix(returns)
        self.n_assets, self.n_steps = r.shape
        self.prices = price_index(r)
        rows = self._compute(n_jobs)
        self._signals = np.vstack([s for s, _ in rows]).astype(np.int8)
        self._strength = np.vstack([st for _, st in rows])

    def _compute(self, n_jobs):
        raise NotImplementedError

    def _periods(self, prices: np.ndarray, calibration_end: int | None):
        s = self.settings
        if not s.adaptive_periods:
            return s.fast_period, s.slow_period, s.signal_period
        sample = prices if calibration_end is None else prices[:calibration_end]
        return adaptive_periods(sample, s.fast_period, s.slow_period, s.signal_period)

    def signal_matrix(self) -> np.ndarray:
        return self._signals


class MacdSignalSource(_ComputedSource):
    """Classic MACD crossovers on each asset's cumulative price path.

    With ``adaptive_periods`` on, periods are calibrated per asset on the
    first ``calibration_end`` prices only.
    """

    def __init__(self, returns, settings=None, n_jobs=1, calibration_end: int | None = None):
        self.calibration_end = calibration_end
        super().__init__(returns, settings, n_jobs)

    def _compute(self, n_jobs):
        out = []
        if self.settings.adaptive_periods:
            for row in self.prices:
                out.append(_macd_row(row, *self._periods(row, self.calibration_end)))
            return out
        s = self.settings
        fn = partial(_macd_row, fast=s.fast_period, slow=s.slow_period, signal=s.signal_period)
        return parallel_map(list(self.prices), fn, n_jobs)


class EnhancedMacdSignalSource(MacdSignalSource):
    """MACD with zero-line, strength, volume and trend filters.

    Buys are weighted by relative signal strength inside the
    ``diversification`` budget before the cap is applied.
    """

    def __init__(self, returns, settings=None, n_jobs=1, calibration_end=None, volumes=None):
        if volumes is not None:
            volumes = np.asarray(volumes, dtype=float)
            r = np.asarray(returns)
            if volumes.shape != r.shape:
                raise InputError(f"volumes shape {volumes.shape} does not match returns {r.shape}")
        self.volumes = volumes
        super().__init__(returns, settings, n_jobs, calibration_end)

    def _compute(self, n_jobs):
        vols = [None] * self.n_assets if self.volumes is None else list(self.volumes)
        items = list(zip(self.prices, vols))
        s = self.settings
        if s.adaptive_periods:
            return [_enhanced_row(item, *self._periods(item[0], self.calibration_end), settings=s)
                    for item in items]
        fn = partial(_enhanced_row, fast=s.fast_period, slow=s.slow_period,
                     signal=s.signal_period, settings=s)
        return parallel_map(items, fn, n_jobs)

    def weights_at(self, step: int, max_position: float) -> np.ndarray:
        if not self._in_range(step):
            return np.zeros(self.n_assets)
        raw = strength_weights(self._signals[:, step], self._strength[:, step])
        if raw.sum() <= 0:
            return np.zeros(self.n_assets)
        return cap_and_scale(raw, max_position, total=self.settings.diversification)


class RsiSignalSource(_ComputedSource):
    """RSI level-crossing signals on each asset's cumulative price path."""

    def _compute(self, n_jobs):
        s = self.settings
        fn = partial(_rsi_row, window=s.rsi_window, overbought=s.overbought, oversold=s.oversold)
        return parallel_map(list(self.prices), fn, n_jobs)


def build_signal_source(returns, settings: IndicatorSettings | None = None, volumes=None,
                        n_jobs: int | None = 1, calibration_end: int | None = None) -> SignalSource:
    settings = settings or IndicatorSettings()
    if settings.kind == "macd":
        return MacdSignalSource(returns, settings, n_jobs, calibration_end)
    if settings.kind == "enhanced_macd":
        return EnhancedMacdSignalSource(returns, settings, n_jobs, calibration_end, volumes=volumes)
    if settings.kind == "rsi":
        return RsiSignalSource(returns, settings, n_jobs)
    raise InputError(f"unknown indicator kind: {settings.kind!r}")
