import numpy as np
import pytest

from spo_hybrid.config.settings import IndicatorSettings
from spo_hybrid.errors import InputError
from spo_hybrid.signals.indicators import compute_macd, price_index
from spo_hybrid.signals.sources import (
    EnhancedMacdSignalSource,
    MacdSignalSource,
    RsiSignalSource,
    StaticSignalSource,
    build_signal_source,
)


def _returns(seed=0, shape=(4, 150)):
    return np.random.default_rng(seed).normal(0.0005, 0.015, shape)


def test_macd_source_matches_per_asset_indicator():
    r = _returns()
    src = MacdSignalSource(r)
    for i in range(r.shape[0]):
        assert np.array_equal(src.signal_matrix()[i], compute_macd(price_index(r[i])).signals)
    assert src.signals_at(10).shape == (4,)


def test_out_of_range_steps_hold():
    src = MacdSignalSource(_returns())
    assert not src.signals_at(-1).any()
    assert not src.weights_at(10_000, 0.2).any()


def test_weights_respect_cap():
    src = StaticSignalSource(np.array([[1], [1], [0], [-1]]))
    assert src.weights_at(0, 0.2).tolist() == [0.2, 0.2, 0.0, 0.0]
    assert src.weights_at(0, 1.0).tolist() == [0.5, 0.5, 0.0, 0.0]


def test_enhanced_weights_stay_inside_diversification_budget():
    r = _returns(seed=2, shape=(6, 200))
    src = EnhancedMacdSignalSource(r, IndicatorSettings(kind="enhanced_macd", signal_threshold=0.0,
                                                        trend_confirmation=False))
    for t in range(200):
        w = src.weights_at(t, 0.2)
        assert np.all(w >= 0) and np.all(w <= 0.2 + 1e-12)
        assert w.sum() <= 0.7 + 1e-9


def test_enhanced_rejects_mismatched_volumes():
    with pytest.raises(InputError):
        EnhancedMacdSignalSource(_returns(), volumes=np.ones((2, 5)))


def test_rsi_source_and_factory():
    r = _returns()
    assert isinstance(build_signal_source(r, IndicatorSettings(kind="rsi")), RsiSignalSource)
    assert isinstance(build_signal_source(r, IndicatorSettings(kind="enhanced_macd")), EnhancedMacdSignalSource)
    src = build_signal_source(r, IndicatorSettings(kind="rsi", rsi_window=500))
    assert not src.signal_matrix().any()


def test_adaptive_periods_calibrate_on_early_data_only():
    r = _returns(seed=4, shape=(2, 200))
    settings = IndicatorSettings(adaptive_periods=True)
    a = MacdSignalSource(r, settings, calibration_end=40)
    r2 = r.copy()
    r2[:, 100:] *= 5
    b = MacdSignalSource(r2, settings, calibration_end=40)
    assert np.array_equal(a.signal_matrix()[:, :100], b.signal_matrix()[:, :100])


def test_static_source_rejects_bad_values():
    with pytest.raises(InputError):
        StaticSignalSource(np.array([[2, 0]]))
