"""Particle swarm portfolio optimizer (SPO).

Minimises ``sum(w**2 * var) - alpha * w @ r`` over long-only weight vectors
that sum to one.  Small universes are solved directly; larger ones use a
synchronous particle swarm whose only source of randomness is the injected
``numpy.random.Generator``.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

import numpy as np

from ..config.settings import OptimizerSettings
from ..errors import DegenerateResult, InputError, NumericalInstability

logger = logging.getLogger(__name__)

VARIANCE_FLOOR = 1e-6
SUM_TOLERANCE = 1.01
VELOCITY_SCALE = 0.1


def estimate_moments(window) -> Tuple[np.ndarray, np.ndarray]:
    """Per-asset mean and sample variance of an ``(assets, steps)`` return window."""
    w = np.asarray(window, dtype=float)
    if w.ndim != 2 or w.shape[1] < 1:
        raise InputError(f"return window must be 2-D with at least one step, got shape {w.shape}")
    mean = w.mean(axis=1)
    var = w.var(axis=1, ddof=1) if w.shape[1] > 1 else np.zeros(w.shape[0])
    return mean, var


def portfolio_cost(weights: np.ndarray, expected_return: np.ndarray, variance: np.ndarray,
                   risk_aversion: float) -> np.ndarray:
    """Penalised cost for one weight vector or a stack of them (one per row)."""
    w = np.atleast_2d(np.asarray(weights, dtype=float))
    cost = (w * w) @ variance - risk_aversion * (w @ expected_return)
    bad = (w < 0).any(axis=1) | (w > 1).any(axis=1) | (w.sum(axis=1) > SUM_TOLERANCE)
    cost = np.where(bad, np.inf, cost)
    return cost if np.ndim(weights) > 1 else cost[0]


def inverse_variance_weights(variance: np.ndarray) -> np.ndarray:
    inv = 1.0 / np.maximum(np.asarray(variance, dtype=float), VARIANCE_FLOOR)
    return inv / inv.sum()


class SwarmOptimizer:
    """Long-only mean-variance weights via a particle swarm.

    Parameters
    ----------
    settings : OptimizerSettings, optional
        Swarm size, iteration count, inertia, acceleration bounds and the
        post-processing threshold.
    rng : numpy.random.Generator, optional
        Source of all randomness.  Two optimizers built with generators of
        the same seed return bit-identical weights for the same inputs.
    """

    def __init__(self, settings: OptimizerSettings | None = None,
                 rng: Optional[np.random.Generator] = None):
        self.settings = settings or OptimizerSettings()
        self.rng = rng if rng is not None else np.random.default_rng()

    def _validate(self, expected_return, variance) -> Tuple[np.ndarray, np.ndarray]:
        r = np.asarray(expected_return, dtype=float).ravel()
        v = np.asarray(variance, dtype=float).ravel()
        if r.size == 0:
            raise InputError("optimizer needs at least one asset")
        if r.size != v.size:
            raise InputError(f"expected_return has {r.size} entries but variance has {v.size}")
        if not (np.all(np.isfinite(r)) and np.all(np.isfinite(v))):
            raise InputError("optimizer inputs contain NaN or Inf")
        if np.any(v < 0):
            raise InputError("variance must be non-negative")
        return r, np.maximum(v, VARIANCE_FLOOR)

    def optimize(self, expected_return, variance, risk_aversion: float | None = None) -> np.ndarray:
        r, v = self._validate(expected_return, variance)
        alpha = self.settings.risk_aversion if risk_aversion is None else float(risk_aversion)
        n = r.size
        if n == 1:
            return np.ones(1)
        if n == 2:
            return self._two_asset_grid(r, v, alpha)
        if n <= self.settings.small_universe:
            return self._tilted_inverse_variance(r, v, alpha)
        try:
            best = self._search(r, v, alpha)
        except (NumericalInstability, ArithmeticError, ValueError) as exc:
            logger.warning("swarm search unstable (%s); falling back to inverse-variance weights", exc)
            return inverse_variance_weights(v)
        try:
            return self._postprocess(best)
        except DegenerateResult as exc:
            logger.warning("%s; using equal weights", exc)
            return np.full(n, 1.0 / n)

    def _two_asset_grid(self, r: np.ndarray, v: np.ndarray, alpha: float) -> np.ndarray:
        steps = self.settings.grid_steps
        w1 = np.arange(steps + 1) / steps
        grid = np.column_stack([w1, 1.0 - w1])
        costs = portfolio_cost(grid, r, v, alpha)
        return grid[int(np.argmin(costs))].copy()

    def _tilted_inverse_variance(self, r: np.ndarray, v: np.ndarray, alpha: float) -> np.ndarray:
        w = (1.0 / v) * (1.0 + alpha * np.maximum(0.0, r))
        return w / w.sum()

    def _project(self, x: np.ndarray) -> np.ndarray:
        x = np.maximum(x, 0.0)
        sums = x.sum(axis=1, keepdims=True)
        dead = sums[:, 0] <= 0
        if dead.any():
            x[dead] = 1.0
            sums[dead] = x.shape[1]
        return x / sums

    def _search(self, r: np.ndarray, v: np.ndarray, alpha: float) -> np.ndarray:
        s = self.settings
        n = r.size
        rng = self.rng

        pos = rng.random((s.particle_count, n))
        pos = self._project(pos)
        vel = rng.standard_normal((s.particle_count, n)) * VELOCITY_SCALE

        pbest = pos.copy()
        pbest_cost = portfolio_cost(pbest, r, v, alpha)
        g = int(np.argmin(pbest_cost))
        gbest, gbest_cost = pbest[g].copy(), pbest_cost[g]

        for _ in range(s.iteration_count):
            phi1 = rng.uniform(0.0, s.phi1_max, size=(s.particle_count, 1))
            phi2 = rng.uniform(0.0, s.phi2_max, size=(s.particle_count, 1))
            vel = s.inertia * vel + phi1 * (pbest - pos) + phi2 * (gbest - pos)
            pos = self._project(pos + vel)
            if not (np.all(np.isfinite(pos)) and np.all(np.isfinite(vel))):
                raise NumericalInstability("non-finite particle state")

            cost = portfolio_cost(pos, r, v, alpha)
            improved = cost < pbest_cost
            pbest[improved] = pos[improved]
            pbest_cost[improved] = cost[improved]

            g = int(np.argmin(pbest_cost))
            if pbest_cost[g] < gbest_cost:
                gbest, gbest_cost = pbest[g].copy(), pbest_cost[g]

        if not np.isfinite(gbest_cost):
            raise NumericalInstability("no feasible particle found")
        return gbest

    def _postprocess(self, weights: np.ndarray) -> np.ndarray:
        w = weights.copy()
        w[w < self.settings.min_weight] = 0.0
        total = w.sum()
        if total <= 0:
            raise DegenerateResult("all optimizer weights fell below the minimum weight")
        return w / total
