import numpy as np
import pytest

from spo_hybrid.config.settings import BacktestSettings, Settings, replace_section
from spo_hybrid.dataio.loader import synthetic_returns
from spo_hybrid.engine.allocation import violations
from spo_hybrid.engine.backtest import run_backtest
from spo_hybrid.engine.optimizer import SwarmOptimizer
from spo_hybrid.engine.predictor import EqualWeightPredictor
from spo_hybrid.engine.regime import RegimeClassifier
from spo_hybrid.errors import InputError
from spo_hybrid.signals.sources import StaticSignalSource


def _settings(**bt):
    return Settings(backtest=BacktestSettings(strict_allocations=True, seed=7, **bt))


def _returns(n_assets=5, n_steps=80, seed=0):
    return synthetic_returns(n_assets, n_steps, drift=0.0005, volatility=0.01, seed=seed)


def test_backtest_shapes_and_invariants():
    r = _returns()
    res = run_backtest(r, _settings())
    assert list(res.returns.columns) == ["macd", "predictor", "hybrid", "spo", "equal"]
    assert len(res.returns) == 80 - 5
    assert res.steps[0] == 5 and res.steps[-1] == 79
    for name, alloc in res.allocations.items():
        assert alloc.shape == (75, 5)
        for row in alloc:
            assert violations(row, 0.2) == []
    assert np.all((res.turnover.to_numpy() >= 0) & (res.turnover.to_numpy() <= 1))
    assert np.all((res.concentration.to_numpy() >= 0) & (res.concentration.to_numpy() <= 1))
    assert not res.degraded.any().any()


def test_circuit_breaker_clamps_crash_step():
    r = _returns()
    r[:, 40] = -0.5
    res = run_backtest(r, _settings())
    assert res.returns.loc[40, "equal"] == -0.10
    assert res.returns.loc[40, "hybrid"] == -0.10
    assert res.returns.max().max() <= 0.10


def test_equal_weight_values_compound_from_returns():
    r = _returns()
    res = run_backtest(r, _settings(transaction_cost_rate=0.0), variants=("equal",))
    expected = np.cumprod(1 + np.clip(r[:, 5:].mean(axis=0), -0.1, 0.1))
    assert res.values["equal"].to_numpy() == pytest.approx(expected)
    assert res.turnover["equal"].iloc[0] == pytest.approx(0.5)
    assert res.turnover["equal"].iloc[1:].abs().max() == pytest.approx(0.0)


def test_same_seed_same_curves():
    r = _returns(n_assets=8, n_steps=60)
    a = run_backtest(r, _settings())
    b = run_backtest(r, _settings())
    assert a.values.equals(b.values)


def test_failing_predictor_degrades_to_equal_weights():
    class Broken:
        def predict(self, x):
            raise RuntimeError("down")

    r = _returns()
    res = run_backtest(r, _settings(), predictor=Broken(), variants=("predictor", "hybrid"))
    assert res.predictor_fallbacks == 75
    assert res.allocations["predictor"] == pytest.approx(np.full((75, 5), 0.2))


def test_macd_off_and_equal_predictor_matches_predictor_sleeve():
    r = _returns()
    settings = replace_section(_settings(use_regime_detection=False), "combiner",
                               default_macd_weight=0.0, default_predictor_weight=1.0,
                               performance_blend=0.0)
    res = run_backtest(r, settings, predictor=EqualWeightPredictor(5), variants=("predictor", "hybrid"))
    assert res.allocations["hybrid"] == pytest.approx(res.allocations["predictor"])
    assert res.returns["hybrid"].to_numpy() == pytest.approx(res.returns["predictor"].to_numpy())


def test_macd_sleeve_uses_signals_from_previous_step():
    r = _returns(n_assets=4, n_steps=20)
    sig = np.zeros((4, 20), dtype=int)
    sig[0, 9] = 1
    sig[1, 9] = 1
    res = run_backtest(r, _settings(), signal_source=StaticSignalSource(sig), variants=("macd",))
    alloc = res.allocations["macd"]
    assert alloc[10 - 5] == pytest.approx([0.2, 0.2, 0.0, 0.0])
    # no buys anywhere else: 90% equal weight, capped
    assert alloc[0] == pytest.approx(np.full(4, 0.2))


def test_invalid_inputs_raise():
    with pytest.raises(InputError):
        run_backtest(np.full((3, 20), np.nan), _settings())
    with pytest.raises(InputError):
        run_backtest(np.zeros((3, 4)), _settings())
    with pytest.raises(InputError):
        run_backtest(_returns(), _settings(), variants=("bogus",))


def test_summary_reports_every_variant():
    res = run_backtest(_returns(n_steps=120, seed=3), _settings())
    summary = res.summary()
    assert set(summary) == {"macd", "predictor", "hybrid", "spo", "equal"}
    for rep in summary.values():
        assert rep["steps"] == 115
        assert rep["max_drawdown"] >= 0
    assert "by_regime" in summary["hybrid"]
    assert summary["equal"]["information_ratio"] is None


class _FlakySignals(StaticSignalSource):
    def __init__(self, signals, bad_step):
        super().__init__(signals)
        self.bad_step = bad_step

    def weights_at(self, step, max_position):
        if step == self.bad_step:
            raise RuntimeError("feed dropped")
        return super().weights_at(step, max_position)


def test_failing_signal_step_degrades_sleeves_and_run_completes():
    r = _returns()
    sig = np.zeros((5, 80), dtype=int)
    sig[:2, :] = 1
    # the allocation for step 20 reads the signal at step 19
    source = _FlakySignals(sig, bad_step=19)
    res = run_backtest(r, _settings(), signal_source=source, variants=("macd", "hybrid", "equal"))

    assert len(res.returns) == 75
    assert res.degraded.loc[20, "macd"] and res.degraded.loc[20, "hybrid"]
    assert not res.degraded.loc[20, "equal"]
    assert res.degraded["macd"].sum() == 1
    assert res.allocations["macd"][20 - 5] == pytest.approx(np.full(5, 0.2))
    assert res.allocations["hybrid"][20 - 5] == pytest.approx(np.full(5, 0.2))
    # zero cost on the degraded step even though the macd sleeve traded into it
    assert res.turnover.loc[20, "macd"] > 0
    assert res.returns.loc[20, "macd"] == pytest.approx(float(np.full(5, 0.2) @ r[:, 20]))
    assert res.regimes.loc[20, "label"] == 0


def test_failing_variant_degrades_only_that_variant(monkeypatch):
    def boom(self, expected_return, variance, risk_aversion=None):
        raise RuntimeError("solver down")

    monkeypatch.setattr(SwarmOptimizer, "optimize", boom)
    r = _returns(n_assets=6)
    res = run_backtest(r, _settings(transaction_cost_rate=0.0), variants=("spo", "equal"))
    assert res.degraded["spo"].all()
    assert not res.degraded["equal"].any()
    cap = np.full(6, 0.2)
    for row in res.allocations["spo"]:
        assert row == pytest.approx(np.minimum(cap, 1 / 6))
    assert res.returns["spo"].to_numpy() == pytest.approx(res.returns["equal"].to_numpy())


def test_regime_failure_degrades_sleeve_variants(monkeypatch):
    original = RegimeClassifier.classify
    calls = {"n": 0}

    def flaky(self, returns):
        calls["n"] += 1
        if calls["n"] == 3:
            raise FloatingPointError("overflow")
        return original(self, returns)

    monkeypatch.setattr(RegimeClassifier, "classify", flaky)
    res = run_backtest(_returns(), _settings(), variants=("hybrid", "equal"))
    assert res.degraded["hybrid"].sum() == 1
    assert res.degraded.loc[7, "hybrid"]
    assert not res.degraded["equal"].any()


def test_warm_up_steps_are_not_labelled_as_a_regime():
    r = synthetic_returns(4, 60, volatility=0.001, seed=0)
    res = run_backtest(r, _settings(), variants=("hybrid", "equal"))
    warm = ~res.regimes["computed"]
    assert warm.iloc[0] and not warm.iloc[-1]
    assert (res.regimes.loc[warm, "label"] == 0).all()
    assert res.regimes.loc[warm, "volatility"].isna().all()
    assert res.regimes.loc[~warm, "label"].between(1, 4).all()

    by_regime = res.summary()["hybrid"]["by_regime"]
    assert by_regime["0"]["steps"] == int(warm.sum())
    assert sum(v["steps"] for k, v in by_regime.items() if k != "0") == int((~warm).sum())
