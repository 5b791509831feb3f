from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence
import logging

import numpy as np
import pandas as pd

from ..analytics.metrics import summarize, metrics_by_regime
from ..config.settings import Settings, VARIANTS
from ..errors import InputError
from ..signals.sources import SignalSource, build_signal_source
from .allocation import cap_and_scale, check_allocation, concentration, equal_weights, turnover
from .combiner import PerformanceHistory, StrategyCombiner
from .optimizer import SwarmOptimizer, estimate_moments
from .predictor import InverseVolatilityPredictor, WeightPredictor, feature_window, predict_allocation
from .regime import RegimeClassifier, RegimeState, RegimeWeights

logger = logging.getLogger(__name__)

SLEEVE_VARIANTS = ("macd", "predictor", "hybrid")


@dataclass
class VariantState:
    value: float
    prev_alloc: Optional[np.ndarray] = None
    values: List[float] = field(default_factory=list)
    returns: List[float] = field(default_factory=list)
    allocations: List[np.ndarray] = field(default_factory=list)
    turnover: List[float] = field(default_factory=list)
    concentration: List[float] = field(default_factory=list)
    degraded: List[bool] = field(default_factory=list)


@dataclass
class BacktestResult:
    steps: np.ndarray
    values: pd.DataFrame
    returns: pd.DataFrame
    turnover: pd.DataFrame
    concentration: pd.DataFrame
    degraded: pd.DataFrame
    regimes: pd.DataFrame
    allocations: Dict[str, np.ndarray]
    predictor_fallbacks: int = 0
    periods_per_year: float = 252.0
    initial_value: float = 1.0

    def summary(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        bench = self.returns["equal"] if "equal" in self.returns else None
        for name in self.returns.columns:
            rep = summarize(self.returns[name], periods_per_year=self.periods_per_year,
                            benchmark=bench if name != "equal" else None,
                            initial_value=self.initial_value)
            rep["avg_turnover"] = float(self.turnover[name].mean()) if len(self.turnover) else 0.0
            rep["avg_concentration"] = float(self.concentration[name].mean()) if len(self.concentration) else 0.0
            rep["degraded_steps"] = int(self.degraded[name].sum())
            if name == "hybrid" and "label" in self.regimes:
                rep["by_regime"] = metrics_by_regime(self.returns[name], self.regimes["label"],
                                                     periods_per_year=self.periods_per_year)
            out[name] = rep
        return out


def _validate_returns(returns) -> np.ndarray:
    r = np.asarray(returns, dtype=float)
    if r.ndim != 2:
        raise InputError(f"return matrix must be 2-D (assets x steps), got shape {r.shape}")
    if r.shape[0] < 1:
        raise InputError("return matrix has no assets")
    if not np.all(np.isfinite(r)):
        raise InputError("return matrix contains NaN or Inf")
    return r


def run_backtest(
    returns,
    settings: Settings | None = None,
    predictor: WeightPredictor | None = None,
    signal_source: SignalSource | None = None,
    volumes=None,
    variants: Sequence[str] | None = None,
    rng: np.random.Generator | None = None,
) -> BacktestResult:
    """
    Walk-forward replay of the hybrid strategy and its component variants.
    - Decision at step t sees returns[:, :t] only and is realized on returns[:, t]
    - Cost = half-L1 turnover * cost rate, previous allocation starts as all cash
    - Every step's return is clamped to [min_step_return, max_step_return]
    - A failing variant step falls back to capped equal weights with zero cost
    - A failing sleeve or regime computation degrades macd, predictor and hybrid
      for that step; spo and equal still run
    - Steps without a computed regime carry label 0 in the regime timeline
    """
    settings = (settings or Settings()).validate()
    bt, comb = settings.backtest, settings.combiner
    r = _validate_returns(returns)
    n_assets, n_steps = r.shape
    if n_steps <= bt.window_size:
        raise InputError(f"need more than window_size={bt.window_size} steps, got {n_steps}")
    variants = tuple(variants or bt.variants)
    unknown = set(variants) - set(VARIANTS)
    if unknown:
        raise InputError(f"unknown variants: {sorted(unknown)}")

    cap = comb.max_position
    strict = bt.strict_allocations
    if rng is None:
        rng = np.random.default_rng(bt.seed)

    if signal_source is None:
        signal_source = build_signal_source(r, settings.indicator, volumes=volumes,
                                            calibration_end=bt.window_size)
    elif (signal_source.n_assets, signal_source.n_steps) != (n_assets, n_steps):
        raise InputError("signal source shape does not match the return matrix")
    if predictor is None:
        predictor = InverseVolatilityPredictor(n_assets)
    classifier = RegimeClassifier(settings.regime)
    combiner = StrategyCombiner(comb)
    optimizer = SwarmOptimizer(settings.optimizer, rng)
    history = PerformanceHistory(comb.performance_lookback)

    states = {name: VariantState(value=bt.initial_value) for name in variants}
    regime_rows: List[Dict[str, Any]] = []
    predictor_fallbacks = 0
    need_sleeves = bool(set(SLEEVE_VARIANTS) & set(variants))

    def macd_sleeve(t: int) -> np.ndarray:
        w = signal_source.weights_at(t - 1, cap)
        total = w.sum()
        if total < bt.macd_min_total:
            w = equal_weights(n_assets, total=bt.macd_fallback_scale)
        elif total > bt.macd_max_total:
            w = w * bt.macd_max_total / total
        return cap_and_scale(w, cap)

    def spo_alloc(t: int) -> np.ndarray:
        lo = max(0, t - settings.optimizer.estimation_window)
        mean, var = estimate_moments(r[:, lo:t])
        return cap_and_scale(optimizer.optimize(mean, var), cap)

    def regime_at(t: int) -> RegimeState | None:
        if not bt.use_regime_detection:
            return None
        lo = max(0, t - max(settings.regime.history_length, classifier.min_observations))
        return classifier.classify(r[:, lo:t])

    log_every = max(1, (n_steps - bt.window_size) // 10)
    for t in range(bt.window_size, n_steps):
        realized = r[:, t]
        sleeves: Dict[str, np.ndarray] = {}
        state: RegimeState | None = None
        regime_weights: RegimeWeights | None = None
        step_failed = False

        try:
            if need_sleeves:
                sleeves["macd"] = macd_sleeve(t)
                pred = predict_allocation(predictor, feature_window(r, t, bt.window_size), n_assets, cap)
                predictor_fallbacks += int(pred.fallback)
                sleeves["predictor"] = pred.weights
            state = regime_at(t)
            regime_weights = state.weights if state is not None else None
            blend = combiner.sleeve_weights(regime_weights or combiner.default_weights(), history)
        except InputError:
            raise
        except Exception as exc:
            if strict and isinstance(exc, AssertionError):
                raise
            logger.warning("step %s: sleeve or regime computation failed (%s: %s); "
                           "degrading %s", t, type(exc).__name__, exc,
                           ", ".join(v for v in variants if v in SLEEVE_VARIANTS) or "nothing")
            step_failed = True
            state, regime_weights = None, None
            blend = combiner.default_weights()

        builders: Dict[str, Callable[[], np.ndarray]] = {
            "macd": lambda: sleeves["macd"],
            "predictor": lambda: sleeves["predictor"],
            "hybrid": lambda: combiner.combine(sleeves["macd"], sleeves["predictor"],
                                               regime_weights, history, cap).weights,
            "spo": lambda: spo_alloc(t),
            "equal": lambda: equal_weights(n_assets, max_position=cap),
        }

        computed = state is not None and state.computed
        regime_rows.append({
            "step": t,
            "label": int(state.label) if computed else 0,
            "computed": computed,
            "volatility": state.volatility if computed else np.nan,
            "trend": state.trend if computed else np.nan,
            "macd_weight": blend.macd,
            "predictor_weight": blend.predictor,
            "cash_weight": blend.cash,
        })

        for name in variants:
            st = states[name]
            degraded = step_failed and name in SLEEVE_VARIANTS
            if not degraded:
                try:
                    alloc = check_allocation(builders[name](), cap, strict=strict, stage=name)
                except InputError:
                    raise
                except Exception as exc:
                    if strict and isinstance(exc, AssertionError):
                        raise
                    logger.warning("step %s variant %s failed (%s: %s); using equal weights",
                                   t, name, type(exc).__name__, exc)
                    degraded = True
            if degraded:
                alloc = equal_weights(n_assets, max_position=cap)
                tv = turnover(alloc, st.prev_alloc)
                cost = 0.0
            else:
                tv = turnover(alloc, st.prev_alloc)
                cost = tv * bt.transaction_cost_rate

            gross = float(alloc @ realized)
            step_ret = float(np.clip(gross - cost, bt.min_step_return, bt.max_step_return))
            st.value *= 1.0 + step_ret
            st.prev_alloc = alloc
            st.values.append(st.value)
            st.returns.append(step_ret)
            st.allocations.append(alloc)
            st.turnover.append(tv)
            st.concentration.append(concentration(alloc))
            st.degraded.append(degraded)

        if need_sleeves and not step_failed:
            macd_ret = np.clip(float(sleeves["macd"] @ realized), bt.min_step_return, bt.max_step_return)
            pred_ret = np.clip(float(sleeves["predictor"] @ realized), bt.min_step_return, bt.max_step_return)
            history.push(macd_ret, pred_ret)

        if (t - bt.window_size) % log_every == 0:
            logger.debug("step %s/%s %s", t, n_steps - 1,
                         ", ".join(f"{k}={v.value:.4f}" for k, v in states.items()))

    steps = np.arange(bt.window_size, n_steps)

    def frame(attr: str) -> pd.DataFrame:
        return pd.DataFrame({k: getattr(v, attr) for k, v in states.items()}, index=steps)

    return BacktestResult(
        steps=steps,
        values=frame("values"),
        returns=frame("returns"),
        turnover=frame("turnover"),
        concentration=frame("concentration"),
        degraded=frame("degraded"),
        regimes=pd.DataFrame(regime_rows).set_index("step"),
        allocations={k: np.vstack(v.allocations) for k, v in states.items()},
        predictor_fallbacks=predictor_fallbacks,
        periods_per_year=bt.periods_per_year,
        initial_value=bt.initial_value,
    )
