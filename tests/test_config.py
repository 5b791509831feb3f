import json

import pytest

from spo_hybrid.config.settings import Settings, load_settings, replace_section
from spo_hybrid.errors import InputError


def test_defaults_validate():
    s = Settings().validate()
    assert s.indicator.fast_period == 12
    assert s.combiner.max_position == 0.20
    assert s.backtest.transaction_cost_rate == 0.0005


def test_from_dict_overrides_and_rejects_unknown():
    s = Settings.from_dict({"indicator": {"kind": "rsi", "rsi_window": 10},
                            "backtest": {"variants": ["hybrid", "equal"]}})
    assert s.indicator.kind == "rsi"
    assert s.backtest.variants == ("hybrid", "equal")
    with pytest.raises(InputError):
        Settings.from_dict({"indicator": {"speed": 3}})
    with pytest.raises(InputError):
        Settings.from_dict({"bogus": {}})


def test_fast_must_be_below_slow():
    with pytest.raises(InputError):
        Settings.from_dict({"indicator": {"fast_period": 30, "slow_period": 26}})


def test_load_json_toml_yaml(tmp_path):
    (tmp_path / "c.json").write_text(json.dumps({"combiner": {"max_position": 0.25}}), encoding="utf-8")
    (tmp_path / "c.toml").write_text("[optimizer]\nparticle_count = 200\n", encoding="utf-8")
    (tmp_path / "c.yaml").write_text("regime:\n  trend_method: slope\n", encoding="utf-8")
    assert load_settings(tmp_path / "c.json").combiner.max_position == 0.25
    assert load_settings(tmp_path / "c.toml").optimizer.particle_count == 200
    assert load_settings(tmp_path / "c.yaml").regime.trend_method == "slope"


def test_load_settings_missing_file_and_bad_suffix(tmp_path):
    with pytest.raises(InputError):
        load_settings(tmp_path / "missing.json")
    (tmp_path / "c.ini").write_text("x", encoding="utf-8")
    with pytest.raises(InputError):
        load_settings(tmp_path / "c.ini")


def test_auto_discovery(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert load_settings() == Settings()
    (tmp_path / "spo_hybrid.config.json").write_text(json.dumps({"backtest": {"window_size": 9}}),
                                                     encoding="utf-8")
    assert load_settings().backtest.window_size == 9


def test_replace_section_returns_copy():
    base = Settings()
    changed = replace_section(base, "backtest", window_size=10)
    assert changed.backtest.window_size == 10
    assert base.backtest.window_size == 5
    with pytest.raises(InputError):
        replace_section(base, "combiner", max_position=0.0)
