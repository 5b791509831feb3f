from __future__ import annotations
from dataclasses import dataclass, field, fields, asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple
import json
import logging

from ..errors import InputError

logger = logging.getLogger(__name__)

INDICATOR_KINDS = ("macd", "enhanced_macd", "rsi")
VOLATILITY_METHODS = ("std", "range", "atr")
TREND_METHODS = ("corr", "slope", "ma")
VARIANTS = ("macd", "predictor", "hybrid", "spo", "equal")


@dataclass
class IndicatorSettings:
    kind: str = "macd"
    fast_period: int = 12
    slow_period: int = 26
    signal_period: int = 9
    rsi_window: int = 14
    overbought: float = 70.0
    oversold: float = 30.0
    # enhanced MACD filters
    volume_threshold: float = 1.5
    histogram_threshold: float = 0.001
    signal_threshold: float = 0.3
    trend_confirmation: bool = True
    # share of capital the strength-weighted buys may take
    diversification: float = 0.7
    adaptive_periods: bool = False


@dataclass
class RegimeSettings:
    volatility_window: int = 20
    trend_window: int = 20
    volatility_method: str = "std"
    trend_method: str = "corr"
    volatility_threshold: float = 0.015
    trend_threshold: float = 0.6
    adaptive: bool = True
    volatility_quantile: float = 0.75
    trend_quantile: float = 0.65
    # trailing observations used for the adaptive thresholds
    history_length: int = 252


@dataclass
class OptimizerSettings:
    particle_count: int = 100
    iteration_count: int = 50
    risk_aversion: float = 0.1
    inertia: float = 0.1
    phi1_max: float = 0.2
    phi2_max: float = 0.2
    min_weight: float = 0.01
    grid_steps: int = 100
    small_universe: int = 5
    estimation_window: int = 20


@dataclass
class CombinerSettings:
    max_position: float = 0.20
    cash_allocation: float = 0.0
    default_macd_weight: float = 0.7
    default_predictor_weight: float = 0.3
    # agreement / conflict rules
    agreement_factor: float = 1.2
    agreement_high: float = 0.05
    agreement_low: float = 0.01
    conflict_factor: float = 0.7
    conflict_high: float = 0.10
    conflict_low: float = 0.02
    # performance adaptation
    performance_lookback: int = 10
    performance_blend: float = 0.5
    only_macd_positive: float = 0.8
    only_predictor_positive: float = 0.2
    both_negative: float = 0.5


@dataclass
class BacktestSettings:
    window_size: int = 5
    transaction_cost_rate: float = 0.0005
    use_regime_detection: bool = True
    min_step_return: float = -0.10
    max_step_return: float = 0.10
    macd_min_total: float = 0.1
    macd_fallback_scale: float = 0.9
    macd_max_total: float = 0.95
    variants: Tuple[str, ...] = VARIANTS
    periods_per_year: float = 252.0
    initial_value: float = 1.0
    strict_allocations: bool = False
    seed: int | None = None


@dataclass
class Settings:
    indicator: IndicatorSettings = field(default_factory=IndicatorSettings)
    regime: RegimeSettings = field(default_factory=RegimeSettings)
    optimizer: OptimizerSettings = field(default_factory=OptimizerSettings)
    combiner: CombinerSettings = field(default_factory=CombinerSettings)
    backtest: BacktestSettings = field(default_factory=BacktestSettings)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> "Settings":
        """Build settings from a nested mapping such as a parsed config file.

        Missing sections and keys fall back to the dataclass defaults; unknown
        sections or keys raise :class:`InputError`.
        """
        data = dict(data or {})
        sections: Dict[str, Any] = {}
        for f in fields(cls):
            raw = data.pop(f.name, None)
            section_cls = f.default_factory  # type: ignore[misc]
            if raw is None:
                sections[f.name] = section_cls()
                continue
            if not isinstance(raw, Mapping):
                raise InputError(f"config section '{f.name}' must be a mapping")
            known = {sf.name for sf in fields(section_cls)}
            unknown = set(raw) - known
            if unknown:
                raise InputError(f"unknown keys in '{f.name}': {sorted(unknown)}")
            values = dict(raw)
            if "variants" in values:
                values["variants"] = tuple(values["variants"])
            sections[f.name] = section_cls(**values)
        if data:
            raise InputError(f"unknown config sections: {sorted(data)}")
        out = cls(**sections)
        out.validate()
        return out

    def to_dict(self) -> Dict[str, Any]:
        out = asdict(self)
        out["backtest"]["variants"] = list(self.backtest.variants)
        return out

    def validate(self) -> "Settings":
        ind = self.indicator
        if ind.kind not in INDICATOR_KINDS:
            raise InputError(f"indicator.kind must be one of {INDICATOR_KINDS}, got {ind.kind!r}")
        if min(ind.fast_period, ind.slow_period, ind.signal_period) < 1:
            raise InputError("MACD periods must be positive")
        if ind.fast_period >= ind.slow_period:
            raise InputError(f"fast_period ({ind.fast_period}) must be below slow_period ({ind.slow_period})")
        if ind.rsi_window < 1:
            raise InputError("rsi_window must be positive")
        if not (0.0 <= ind.oversold < ind.overbought <= 100.0):
            raise InputError("RSI levels must satisfy 0 <= oversold < overbought <= 100")

        reg = self.regime
        if reg.volatility_method not in VOLATILITY_METHODS:
            raise InputError(f"regime.volatility_method must be one of {VOLATILITY_METHODS}")
        if reg.trend_method not in TREND_METHODS:
            raise InputError(f"regime.trend_method must be one of {TREND_METHODS}")
        if reg.volatility_window < 2 or reg.trend_window < 2:
            raise InputError("regime windows must be at least 2")

        opt = self.optimizer
        if opt.particle_count < 1 or opt.iteration_count < 0:
            raise InputError("optimizer needs at least one particle and a non-negative iteration count")
        if opt.grid_steps < 1:
            raise InputError("optimizer.grid_steps must be positive")

        comb = self.combiner
        if not (0.0 < comb.max_position <= 1.0):
            raise InputError("combiner.max_position must be in (0, 1]")
        if not (0.0 <= comb.cash_allocation < 1.0):
            raise InputError("combiner.cash_allocation must be in [0, 1)")
        if comb.performance_lookback < 1:
            raise InputError("combiner.performance_lookback must be positive")

        bt = self.backtest
        if bt.window_size < 1:
            raise InputError("backtest.window_size must be positive")
        if bt.min_step_return > bt.max_step_return:
            raise InputError("backtest.min_step_return must not exceed max_step_return")
        unknown = set(bt.variants) - set(VARIANTS)
        if unknown or not bt.variants:
            raise InputError(f"backtest.variants must be a non-empty subset of {VARIANTS}")
        return self


def _read_config_text(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    text = path.read_text(encoding="utf-8")
    if suffix == ".json":
        return json.loads(text)
    if suffix == ".toml":
        try:
            import tomllib  # py3.11+
        except ImportError:
            import tomli as tomllib  # type: ignore
        return tomllib.loads(text)
    if suffix in (".yaml", ".yml"):
        import yaml  # requires PyYAML
        return yaml.safe_load(text) or {}
    raise InputError(f"unsupported config file type: {path.suffix}")


def discover_config(names: Tuple[str, ...] = ("spo_hybrid.config.json", "spo_hybrid.config.toml",
                                              "spo_hybrid.config.yaml", "spo_hybrid.config.yml")) -> Path | None:
    for name in names:
        p = Path(name)
        if p.exists():
            return p
    return None


def load_settings(path: str | Path | None = None) -> Settings:
    """Read settings from JSON/TOML/YAML; defaults when no file is given or found."""
    if path is None:
        found = discover_config()
        if found is None:
            return Settings()
        logger.info("auto-discovered config %s", found)
        path = found
    p = Path(path)
    if not p.exists():
        raise InputError(f"config file not found: {p}")
    data = _read_config_text(p)
    if not isinstance(data, Mapping):
        raise InputError(f"config root must be a mapping: {p}")
    return Settings.from_dict(data)


def replace_section(settings: Settings, section: str, **changes: Any) -> Settings:
    """Return a copy of ``settings`` with fields of one section overridden."""
    current = getattr(settings, section)
    if not is_dataclass(current):
        raise InputError(f"unknown settings section: {section}")
    values = asdict(current)
    values.update(changes)
    if "variants" in values:
        values["variants"] = tuple(values["variants"])
    parts = {f.name: getattr(settings, f.name) for f in fields(settings)}
    parts[section] = type(current)(**values)
    return Settings(**parts).validate()
