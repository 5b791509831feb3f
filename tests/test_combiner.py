import numpy as np
import pytest

from spo_hybrid.config.settings import CombinerSettings
from spo_hybrid.engine.allocation import check_allocation, violations
from spo_hybrid.engine.combiner import PerformanceHistory, StrategyCombiner, performance_factor
from spo_hybrid.engine.regime import RegimeWeights
from spo_hybrid.errors import ConstraintViolation, InputError


def _random_alloc(rng, n, cap):
    w = rng.uniform(0, 1, n) * (rng.uniform(size=n) > 0.3)
    if w.sum() > 0:
        w = np.minimum(w / w.sum(), cap)
    return w


def test_output_respects_invariants():
    rng = np.random.default_rng(0)
    comb = StrategyCombiner()
    for _ in range(200):
        n = int(rng.integers(1, 12))
        m = _random_alloc(rng, n, 0.2)
        p = _random_alloc(rng, n, 0.2)
        cash = float(rng.uniform(0, 0.5))
        macd = float(rng.uniform(0, 1 - cash))
        regime = RegimeWeights(macd, 1 - cash - macd, cash)
        hist = PerformanceHistory(10)
        for _ in range(int(rng.integers(0, 15))):
            hist.push(rng.normal(0, 0.01), rng.normal(0, 0.01))
        out = comb.combine(m, p, regime, hist)
        assert violations(out.weights, 0.2) == []
        assert out.weights.sum() <= 1 - out.sleeve_weights.cash + 1e-9


def test_disabled_macd_sleeve_passes_predictor_through():
    comb = StrategyCombiner()
    pred = np.full(5, 0.2)
    macd = np.array([0.2, 0.0, 0.15, 0.0, 0.01])
    out = comb.combine(macd, pred, RegimeWeights(0.0, 1.0, 0.0))
    assert out.weights == pytest.approx(pred)


def test_agreement_boost_scales_agreeing_assets():
    m = np.array([0.5, 0.03])
    boosted = StrategyCombiner(CombinerSettings(max_position=1.0)).combine(
        m, m.copy(), RegimeWeights(0.5, 0.5, 0.0)).weights
    plain = StrategyCombiner(CombinerSettings(max_position=1.0, agreement_factor=1.0)).combine(
        m, m.copy(), RegimeWeights(0.5, 0.5, 0.0)).weights
    assert (boosted[0] / boosted[1]) / (plain[0] / plain[1]) == pytest.approx(1.2)
    assert boosted.sum() == pytest.approx(1.0)


def test_conflict_dampens_disagreeing_assets():
    m = np.array([0.5, 0.03])
    p = np.array([0.01, 0.03])
    damped = StrategyCombiner(CombinerSettings(max_position=1.0)).combine(
        m, p, RegimeWeights(0.5, 0.5, 0.0)).weights
    plain = StrategyCombiner(CombinerSettings(max_position=1.0, conflict_factor=1.0)).combine(
        m, p, RegimeWeights(0.5, 0.5, 0.0)).weights
    assert (damped[0] / damped[1]) / (plain[0] / plain[1]) == pytest.approx(0.7)


def test_cap_wins_and_shortfall_stays_in_cash():
    out = StrategyCombiner().combine(np.array([0.2, 0.2]), np.array([0.2, 0.2]), RegimeWeights(0.5, 0.5, 0.0))
    assert out.weights == pytest.approx([0.2, 0.2])


def test_empty_sleeves_fall_back_to_equal_weights():
    out = StrategyCombiner().combine(np.zeros(10), np.zeros(10), RegimeWeights(0.6, 0.2, 0.2))
    assert out.weights == pytest.approx(np.full(10, 0.08))


@pytest.mark.parametrize("macd_perf,pred_perf,expected", [
    (0.02, 0.01, 2 / 3),
    (0.01, -0.01, 0.8),
    (-0.01, 0.01, 0.2),
    (-0.01, -0.02, 0.5),
])
def test_performance_factor(macd_perf, pred_perf, expected):
    assert performance_factor(macd_perf, pred_perf, CombinerSettings()) == pytest.approx(expected)


def test_performance_history_shifts_sleeve_weights():
    hist = PerformanceHistory(lookback=3)
    for _ in range(5):
        hist.push(0.01, -0.01)
    assert len(hist) == 3
    w = StrategyCombiner().sleeve_weights(RegimeWeights(0.4, 0.6, 0.0), hist)
    assert w.macd == pytest.approx(0.5 * 0.4 + 0.5 * 0.8)
    assert w.predictor == pytest.approx(1 - w.macd)


def test_cash_floor_rescales_sleeves():
    comb = StrategyCombiner(CombinerSettings(cash_allocation=0.2))
    w = comb.sleeve_weights(RegimeWeights(0.9, 0.1, 0.0))
    assert w.cash == pytest.approx(0.2)
    assert w.macd == pytest.approx(0.72)
    assert w.predictor == pytest.approx(0.08)


def test_mismatched_sleeves_raise():
    with pytest.raises(InputError):
        StrategyCombiner().combine(np.zeros(3), np.zeros(4), RegimeWeights(0.5, 0.5, 0.0))


def test_strict_check_raises_on_cap_breach():
    with pytest.raises(ConstraintViolation):
        check_allocation(np.array([0.5, 0.1]), 0.2, strict=True)
    fixed = check_allocation(np.array([0.5, 0.1]), 0.2)
    assert violations(fixed, 0.2) == []
