from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Optional, Tuple
import logging

import numpy as np

from ..config.settings import CombinerSettings
from ..errors import InputError
from .allocation import cap_and_scale, equal_weights
from .regime import RegimeWeights

logger = logging.getLogger(__name__)


@dataclass
class PerformanceHistory:
    """Ring buffer of recent per-step returns of the MACD and predictor sleeves."""

    lookback: int = 10
    macd: Deque[float] = field(init=False)
    predictor: Deque[float] = field(init=False)

    def __post_init__(self):
        self.macd = deque(maxlen=self.lookback)
        self.predictor = deque(maxlen=self.lookback)

    def push(self, macd_return: float, predictor_return: float) -> None:
        self.macd.append(float(macd_return))
        self.predictor.append(float(predictor_return))

    def __len__(self) -> int:
        return min(len(self.macd), len(self.predictor))

    def means(self) -> Optional[Tuple[float, float]]:
        if len(self) == 0:
            return None
        return float(np.mean(self.macd)), float(np.mean(self.predictor))


@dataclass(frozen=True)
class CombinedAllocation:
    weights: np.ndarray
    sleeve_weights: RegimeWeights


def performance_factor(macd_perf: float, predictor_perf: float, settings: CombinerSettings) -> float:
    """MACD share implied by recent sleeve performance."""
    if macd_perf > 0 and predictor_perf > 0:
        return macd_perf / (macd_perf + predictor_perf)
    if macd_perf > 0:
        return settings.only_macd_positive
    if predictor_perf > 0:
        return settings.only_predictor_positive
    return settings.both_negative


class StrategyCombiner:
    """Blends the MACD and predictor sleeves into one capped allocation.

    Order of operations: cash floor, performance adaptation of the sleeve
    weights, linear blend, agreement boost, conflict dampening, cap and final
    renormalisation to ``1 - cash``.
    """

    def __init__(self, settings: CombinerSettings | None = None):
        self.settings = settings or CombinerSettings()

    def default_weights(self) -> RegimeWeights:
        s = self.settings
        cash = s.cash_allocation
        macd = s.default_macd_weight * (1.0 - cash)
        return RegimeWeights(macd, max(0.0, 1.0 - cash - macd), cash)

    def sleeve_weights(self, regime_weights: RegimeWeights,
                       history: Optional[PerformanceHistory] = None) -> RegimeWeights:
        s = self.settings
        cash = max(regime_weights.cash, s.cash_allocation)
        invested = regime_weights.macd + regime_weights.predictor
        budget = 1.0 - cash
        if invested > 0:
            macd = regime_weights.macd * budget / invested
        else:
            macd = 0.0

        means = history.means() if history is not None else None
        if means is not None:
            factor = performance_factor(means[0], means[1], s)
            macd = (1.0 - s.performance_blend) * macd + s.performance_blend * factor
            macd = min(max(macd, 0.0), budget)
        predictor = max(0.0, budget - macd)
        return RegimeWeights(float(macd), float(predictor), float(cash))

    def combine(self, macd_allocation, predictor_allocation, regime_weights: RegimeWeights | None = None,
                history: Optional[PerformanceHistory] = None,
                max_position: float | None = None) -> CombinedAllocation:
        s = self.settings
        cap = s.max_position if max_position is None else float(max_position)
        m = np.asarray(macd_allocation, dtype=float)
        p = np.asarray(predictor_allocation, dtype=float)
        if m.shape != p.shape or m.ndim != 1:
            raise InputError(f"sleeve allocations must be 1-D of equal length, got {m.shape} and {p.shape}")
        if not (np.all(np.isfinite(m)) and np.all(np.isfinite(p))):
            raise InputError("sleeve allocations contain NaN or Inf")

        weights = self.sleeve_weights(regime_weights or self.default_weights(), history)
        combined = weights.macd * m + weights.predictor * p

        if weights.macd > 0 and weights.predictor > 0:
            agree = (((m > s.agreement_high) & (p > s.agreement_high))
                     | ((m < s.agreement_low) & (p < s.agreement_low))) & (combined > s.agreement_low)
            combined[agree] *= s.agreement_factor
            conflict = (((m > s.conflict_high) & (p < s.conflict_low))
                        | ((p > s.conflict_high) & (m < s.conflict_low)))
            combined[conflict] *= s.conflict_factor

        target = 1.0 - weights.cash
        if combined.sum() <= 0:
            logger.warning("combined allocation is empty; using equal weights")
            out = equal_weights(m.size, total=target, max_position=cap)
        else:
            out = cap_and_scale(combined, cap, total=target)
        return CombinedAllocation(out, weights)
