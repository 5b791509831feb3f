from __future__ import annotations
from pathlib import Path
import pandas as pd
from ..utils.io import ensure_dir, write_json

def write_json_report(report: dict, path: str | Path) -> None:
    write_json(report, path)

def write_dataframe_csv(df: pd.DataFrame, path: str | Path, index: bool = False) -> None:
    ensure_dir(path)
    df.to_csv(path, index=index)

def write_backtest_outputs(result, out_dir: str | Path) -> dict:
    """Dump curves, returns, regimes and per-variant allocations next to each other."""
    out = Path(out_dir)
    paths = {
        "values": out / "values.csv",
        "returns": out / "returns.csv",
        "turnover": out / "turnover.csv",
        "regimes": out / "regimes.csv",
    }
    write_dataframe_csv(result.values, paths["values"], index=True)
    write_dataframe_csv(result.returns, paths["returns"], index=True)
    write_dataframe_csv(result.turnover, paths["turnover"], index=True)
    write_dataframe_csv(result.regimes, paths["regimes"], index=True)
    for name, alloc in result.allocations.items():
        p = out / f"allocations_{name}.csv"
        write_dataframe_csv(pd.DataFrame(alloc, index=result.steps), p, index=True)
        paths[f"allocations_{name}"] = p
    return {k: str(v) for k, v in paths.items()}
