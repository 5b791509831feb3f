from __future__ import annotations
import logging
import numpy as np

from ..errors import ConstraintViolation, InputError

logger = logging.getLogger(__name__)

TOL = 1e-9


def equal_weights(n_assets: int, total: float = 1.0, max_position: float | None = None) -> np.ndarray:
    if n_assets < 1:
        raise InputError("need at least one asset")
    w = np.full(n_assets, float(total) / n_assets)
    if max_position is not None:
        w = np.minimum(w, max_position)
    return w


def cap_and_scale(weights, max_position: float, total: float | None = None) -> np.ndarray:
    """Clip to ``[0, max_position]`` and, if ``total`` is given, scale to it.

    Scaling redistributes the excess of capped names over the uncapped ones
    (water-filling).  When every name with positive weight is capped the sum
    stays below ``total`` and the remainder is cash.
    """
    w = np.asarray(weights, dtype=float).copy()
    w[~np.isfinite(w)] = 0.0
    w = np.clip(w, 0.0, None)
    if total is None:
        return np.minimum(w, max_position)
    if w.sum() <= 0:
        return np.zeros_like(w)

    capped = np.zeros(w.size, dtype=bool)
    out = np.zeros_like(w)
    for _ in range(w.size + 1):
        free = (~capped) & (w > 0)
        room = total - max_position * capped.sum()
        if not free.any() or room <= TOL:
            break
        scaled = w[free] * room / w[free].sum()
        over = scaled > max_position + TOL
        if not over.any():
            out[free] = scaled
            break
        idx = np.flatnonzero(free)[over]
        capped[idx] = True
    out[capped] = max_position
    return np.minimum(out, max_position)


def signals_to_weights(signals, max_position: float) -> np.ndarray:
    """Equal weight across buy signals, capped; remainder is cash."""
    sig = np.asarray(signals)
    buys = sig == 1
    w = np.zeros(sig.size)
    if buys.any():
        w[buys] = 1.0 / buys.sum()
    return np.minimum(w, max_position)


def turnover(current, previous) -> float:
    """Half the L1 distance between two allocations."""
    a = np.asarray(current, dtype=float)
    b = np.zeros_like(a) if previous is None else np.asarray(previous, dtype=float)
    return 0.5 * float(np.abs(a - b).sum())


def concentration(weights) -> float:
    """Herfindahl-style concentration ``sum(w**2)``."""
    w = np.asarray(weights, dtype=float)
    return float(np.sum(w * w))


def violations(weights, max_position: float) -> list[str]:
    w = np.asarray(weights, dtype=float)
    out = []
    if not np.all(np.isfinite(w)):
        out.append("non-finite weight")
        return out
    if np.any(w < -TOL):
        out.append(f"negative weight {w.min():.6g}")
    if np.any(w > max_position + 1e-7):
        out.append(f"weight {w.max():.6g} above cap {max_position}")
    if w.sum() > 1.0 + 1e-7:
        out.append(f"sum {w.sum():.6g} above 1")
    return out


def check_allocation(weights, max_position: float, strict: bool = False, stage: str = "") -> np.ndarray:
    """Validate an allocation; raise in strict mode, otherwise re-project."""
    problems = violations(weights, max_position)
    if not problems:
        return np.asarray(weights, dtype=float)
    msg = f"{stage or 'allocation'}: " + "; ".join(problems)
    if strict:
        raise ConstraintViolation(msg)
    logger.warning("%s (re-projecting)", msg)
    w = cap_and_scale(weights, max_position)
    if w.sum() > 1.0:
        w = w / w.sum()
    return w
