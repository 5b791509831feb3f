from __future__ import annotations
import argparse
import sys

import numpy as np

from spo_hybrid.config.settings import Settings, load_settings, replace_section
from spo_hybrid.dataio.loader import load_returns, synthetic_returns, write_returns
from spo_hybrid.engine.backtest import run_backtest
from spo_hybrid.engine.optimizer import SwarmOptimizer, estimate_moments
from spo_hybrid.engine.predictor import load_predictor
from spo_hybrid.engine.sweep import sweep_parameters
from spo_hybrid.analytics.eval import compare_reports
from spo_hybrid.errors import InputError
from spo_hybrid.reports.writer import write_backtest_outputs, write_dataframe_csv, write_json_report
from spo_hybrid.utils.logging_utils import setup_logging


def _load_settings(path: str | None) -> Settings:
    settings = load_settings(path)
    if path:
        print(f"[config] loaded {path}", flush=True)
    return settings


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """CLI flags that were given win over the config file."""
    mapping = {
        "indicator": ("indicator", "kind"),
        "window_size": ("backtest", "window_size"),
        "cost_rate": ("backtest", "transaction_cost_rate"),
        "seed": ("backtest", "seed"),
        "max_position": ("combiner", "max_position"),
        "cash": ("combiner", "cash_allocation"),
        "alpha": ("optimizer", "risk_aversion"),
    }
    for dest, (section, key) in mapping.items():
        val = getattr(args, dest, None)
        if val is None:
            continue
        settings = replace_section(settings, section, **{key: val})
    if getattr(args, "variants", None):
        settings = replace_section(settings, "backtest", variants=tuple(args.variants))
    if getattr(args, "no_regime", False):
        settings = replace_section(settings, "backtest", use_regime_detection=False)
    return settings


def _load_data(args):
    data = load_returns(args.returns, kind="prices" if args.prices else "returns")
    print(f"[data] {args.returns}: assets={data.n_assets} steps={data.n_steps}", flush=True)
    return data


def cmd_data_synth(args):
    drift = [float(x) for x in args.drift.split(",")] if "," in args.drift else float(args.drift)
    r = synthetic_returns(args.assets, args.steps, drift=drift, volatility=args.vol, seed=args.seed)
    write_returns(r, args.out)
    print(f"[data] wrote {args.assets}x{args.steps} returns → {args.out}", flush=True)


def cmd_backtest_run(args):
    settings = _apply_overrides(_load_settings(args.config), args)
    data = _load_data(args)
    predictor = load_predictor(args.predictor_model) if args.predictor_model else None

    print(f"[bt] variants: {', '.join(settings.backtest.variants)} "
          f"(indicator={settings.indicator.kind}, window={settings.backtest.window_size}, "
          f"cost={settings.backtest.transaction_cost_rate}, cap={settings.combiner.max_position}) ...", flush=True)
    result = run_backtest(data.returns, settings, predictor=predictor)

    print("[bt] computing metrics ...", flush=True)
    summary = result.summary()
    report = {
        "assets": data.assets,
        "settings": settings.to_dict(),
        "predictor_fallbacks": result.predictor_fallbacks,
        "variants": summary,
    }
    table = compare_reports(summary)
    print(table[["variant", "total_return", "sharpe_ann", "max_drawdown"]].to_string(index=False), flush=True)

    if args.out_dir:
        report["files"] = write_backtest_outputs(result, args.out_dir)
        print(f"[bt] wrote series → {args.out_dir}", flush=True)
    print(f"[bt] writing report → {args.out}", flush=True)
    write_json_report(report, args.out)
    print("[bt] done.", flush=True)


def cmd_optimize(args):
    settings = _apply_overrides(_load_settings(args.config), args)
    data = _load_data(args)
    window = data.returns[:, -args.window:] if args.window else data.returns
    mean, var = estimate_moments(window)
    opt = SwarmOptimizer(settings.optimizer, np.random.default_rng(settings.backtest.seed))
    weights = opt.optimize(mean, var)
    result = {name: float(w) for name, w in zip(data.assets, weights)}
    for name, w in result.items():
        print(f"[spo] {name}: {w:.4f}", flush=True)
    if args.out:
        write_json_report({"weights": result, "window": int(window.shape[1])}, args.out)
        print(f"[spo] wrote {args.out}", flush=True)


def cmd_sweep(args):
    settings = _apply_overrides(_load_settings(args.config), args)
    data = _load_data(args)
    print(f"[sweep] {args.kind}: n_jobs={args.n_jobs} ...", flush=True)
    table = sweep_parameters(data.returns, kind=args.kind, settings=settings, n_jobs=args.n_jobs)
    print(table.head(args.top).to_string(index=False), flush=True)
    write_dataframe_csv(table, args.out)
    print(f"[sweep] wrote {len(table)} rows → {args.out}", flush=True)


def _add_common(p: argparse.ArgumentParser) -> None:
    p.add_argument("--returns", required=True, help="wide CSV: one row per step, one column per asset")
    p.add_argument("--prices", action="store_true", help="CSV holds prices; convert to returns")
    p.add_argument("--config", type=str, default=None,
                   help="path to JSON/TOML/YAML config; auto-discover spo_hybrid.config.* if omitted")
    p.add_argument("--seed", type=int, default=None)


def build_parser():
    p = argparse.ArgumentParser(prog="spo-hybrid", description="Hybrid MACD / predictor / SPO portfolio backtester")
    p.add_argument("--log-level", default="INFO")
    p.add_argument("--log-file", default=None)
    sub = p.add_subparsers(dest="cmd")

    # data
    p_data = sub.add_parser("data", help="data utilities")
    p_data_sub = p_data.add_subparsers(dest="subcmd")

    p_syn = p_data_sub.add_parser("synth", help="write a synthetic return matrix")
    p_syn.add_argument("--assets", type=int, default=5)
    p_syn.add_argument("--steps", type=int, default=250)
    p_syn.add_argument("--drift", type=str, default="0.0", help="single value or comma list per asset")
    p_syn.add_argument("--vol", type=float, default=0.01)
    p_syn.add_argument("--seed", type=int, default=None)
    p_syn.add_argument("--out", default="data/synthetic_returns.csv")
    p_syn.set_defaults(func=cmd_data_synth)

    # backtest
    p_bt = sub.add_parser("backtest", help="backtest utilities")
    p_bt_sub = p_bt.add_subparsers(dest="subcmd")

    p_run = p_bt_sub.add_parser("run", help="run the walk-forward backtest and save a JSON report")
    _add_common(p_run)
    p_run.add_argument("--out", default="out/reports/spo_hybrid_summary.json")
    p_run.add_argument("--out-dir", default=None, help="also write value/return/allocation CSVs here")
    p_run.add_argument("--variants", nargs="*", default=None)
    p_run.add_argument("--indicator", choices=("macd", "enhanced_macd", "rsi"), default=None)
    p_run.add_argument("--window-size", type=int, default=None)
    p_run.add_argument("--cost-rate", type=float, default=None)
    p_run.add_argument("--max-position", type=float, default=None)
    p_run.add_argument("--cash", type=float, default=None)
    p_run.add_argument("--no-regime", action="store_true")
    p_run.add_argument("--predictor-model", default=None, help="joblib file with a fitted estimator")
    p_run.set_defaults(func=cmd_backtest_run)

    # optimizer
    p_opt = sub.add_parser("optimize", help="SPO weights from the trailing window of a return matrix")
    _add_common(p_opt)
    p_opt.add_argument("--window", type=int, default=20)
    p_opt.add_argument("--alpha", type=float, default=None, help="risk aversion")
    p_opt.add_argument("--out", default=None)
    p_opt.set_defaults(func=cmd_optimize)

    # sweep
    p_sw = sub.add_parser("sweep", help="grid search over indicator parameters")
    _add_common(p_sw)
    p_sw.add_argument("--kind", choices=("macd", "enhanced_macd", "rsi"), default="macd")
    p_sw.add_argument("--n-jobs", type=int, default=1)
    p_sw.add_argument("--top", type=int, default=10)
    p_sw.add_argument("--out", default="out/reports/sweep.csv")
    p_sw.set_defaults(func=cmd_sweep)

    return p


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 0
    setup_logging(args.log_level, args.log_file)
    try:
        args.func(args)
    except InputError as e:
        print(f"ERROR: {e}", file=sys.stderr, flush=True)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
