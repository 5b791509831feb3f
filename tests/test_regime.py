import numpy as np
import pytest

from spo_hybrid.config.settings import RegimeSettings
from spo_hybrid.engine.regime import RegimeClassifier, RegimeLabel, regime_weights


def _alternating(n, level, swing, assets=3):
    sign = np.where(np.arange(n) % 2 == 0, 1.0, -1.0)
    return np.tile(level + swing * sign, (assets, 1))


def _fixed():
    return RegimeClassifier(RegimeSettings(adaptive=False))


def test_insufficient_history_returns_default_profile():
    state = RegimeClassifier().classify(np.zeros((3, 10)))
    assert state.label == RegimeLabel.HIGH_VOL_STRONG_TREND
    assert state.weights.as_tuple() == (0.9, 0.1, 0.0)
    assert state.volatility == 0.0 and state.trend == 0.0
    assert not state.computed


def test_high_vol_strong_trend():
    state = _fixed().classify(_alternating(30, 0.02, 0.03))
    assert state.label == RegimeLabel.HIGH_VOL_STRONG_TREND
    assert state.weights.macd == pytest.approx(0.9)
    assert state.weights.predictor == pytest.approx(0.1)


def test_high_vol_weak_trend_holds_cash():
    state = _fixed().classify(_alternating(30, 0.0, 0.03))
    assert state.label == RegimeLabel.HIGH_VOL_WEAK_TREND
    assert state.weights.cash == pytest.approx(0.5)
    assert state.weights.macd == pytest.approx(0.3)


def test_low_vol_strong_trend():
    state = _fixed().classify(np.full((2, 30), 0.001))
    assert state.label == RegimeLabel.LOW_VOL_STRONG_TREND
    assert state.trend == pytest.approx(1.0, abs=1e-3)


def test_low_vol_weak_trend():
    state = _fixed().classify(_alternating(30, 0.0, 0.001))
    assert state.label == RegimeLabel.LOW_VOL_WEAK_TREND
    assert state.weights.predictor > state.weights.macd


def test_classification_is_deterministic():
    rng = np.random.default_rng(7)
    r = rng.normal(0, 0.01, (4, 120))
    clf = RegimeClassifier()
    a, b = clf.classify(r), clf.classify(r)
    assert a == b


@pytest.mark.parametrize("vol_method", ["std", "range", "atr"])
@pytest.mark.parametrize("trend_method", ["corr", "slope", "ma"])
def test_weights_form_a_simplex(vol_method, trend_method):
    rng = np.random.default_rng(13)
    clf = RegimeClassifier(RegimeSettings(volatility_method=vol_method, trend_method=trend_method))
    for _ in range(5):
        r = rng.normal(rng.uniform(-0.002, 0.002), rng.uniform(0.001, 0.03), (3, 80))
        w = clf.classify(r).weights
        assert min(w.as_tuple()) >= 0
        assert sum(w.as_tuple()) == pytest.approx(1.0)


def test_adaptive_thresholds_scale_with_volatility():
    rng = np.random.default_rng(2)
    r = rng.normal(0, 0.001, (3, 100))
    clf = RegimeClassifier(RegimeSettings(adaptive=True))
    low = clf.classify(r)
    high = clf.classify(r * 10)
    assert high.volatility_threshold == pytest.approx(10 * low.volatility_threshold, rel=1e-9)


def test_adaptive_needs_twice_the_window():
    r = np.random.default_rng(4).normal(0, 0.01, (2, 30))
    state = RegimeClassifier(RegimeSettings(adaptive=True)).classify(r)
    assert state.volatility_threshold == 0.015
    assert state.trend_threshold == 0.6


def test_label_series_backfills_first_label():
    r = np.random.default_rng(9).normal(0, 0.01, (2, 40))
    clf = RegimeClassifier()
    labels = clf.label_series(r)
    assert labels.shape == (40,)
    assert np.all(labels[:20] == labels[20])
    assert labels[-1] == int(clf.classify(r).label)


def test_regime_weights_strong_trend_fades_toward_neutral():
    w = regime_weights(RegimeLabel.HIGH_VOL_STRONG_TREND, 0.03, 0.3, 0.015, 0.6)
    assert w.macd == pytest.approx(0.9 * 0.5 + 0.5 * 0.6)
    assert w.predictor == pytest.approx(1 - w.macd)
