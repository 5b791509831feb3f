from __future__ import annotations
import pandas as pd

def compare_reports(reports: dict, sort_by: str = "sharpe_ann") -> pd.DataFrame:
    rows = []
    for name, m in reports.items():
        row = {"variant": name}
        row.update({k: v for k, v in m.items() if not isinstance(v, dict)})
        rows.append(row)
    df = pd.DataFrame(rows)
    if sort_by in df.columns:
        df = df.sort_values(sort_by, ascending=False, na_position="last")
    return df.reset_index(drop=True)
