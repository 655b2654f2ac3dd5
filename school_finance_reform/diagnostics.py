"""Per-state attrition across pipeline stages. Read-only: nothing here changes a panel."""

from __future__ import annotations

from typing import Sequence

import pandas as pd

from school_finance_reform.helpers import require_columns


def stage_counts(
    frame: pd.DataFrame,
    stage: str,
    state_col: str = "state_fips",
    unit_col: str | None = None,
) -> pd.DataFrame:
    """Rows (and distinct units, if `unit_col` is given) per state at one stage."""
    cols = [state_col] + ([unit_col] if unit_col else [])
    require_columns(frame, cols, f"stage '{stage}'")
    grouped = frame.groupby(state_col, dropna=False)
    out = grouped.size().rename("n_rows").reset_index()
    if unit_col:
        out = out.merge(grouped[unit_col].nunique().rename("n_units").reset_index(), on=state_col, how="left")
    out.insert(0, "stage", stage)
    return out.rename(columns={state_col: "state_fips"})


def attrition_report(stages: Sequence[pd.DataFrame], count_col: str = "n_units") -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Wide per-state table of `count_col` across stages (in the order given), and
    the list of states that fall to zero between consecutive stages.
    """
    if not stages:
        return pd.DataFrame(), pd.DataFrame(columns=["state_fips", "from_stage", "to_stage", "count_before"])
    long = pd.concat(stages, ignore_index=True)
    if count_col not in long.columns:
        count_col = "n_rows"
    order = list(dict.fromkeys(long["stage"]))
    wide = (
        long.pivot_table(index="state_fips", columns="stage", values=count_col, aggfunc="sum", fill_value=0)
        .reindex(columns=order, fill_value=0)
        .sort_index()
    )
    wide.columns.name = None

    dropped = []
    for before, after in zip(order, order[1:]):
        lost = wide[(wide[before] > 0) & (wide[after] == 0)]
        for state, row in lost.iterrows():
            dropped.append(
                {"state_fips": state, "from_stage": before, "to_stage": after, "count_before": int(row[before])}
            )
    dropped_df = pd.DataFrame(dropped, columns=["state_fips", "from_stage", "to_stage", "count_before"])
    return wide.reset_index(), dropped_df


def print_attrition(wide: pd.DataFrame, dropped: pd.DataFrame) -> None:
    print("Attrition by state:")
    print(wide.to_string(index=False))
    if dropped.empty:
        print("No state drops to zero between stages.")
        return
    for row in dropped.itertuples(index=False):
        print(f"  state {row.state_fips}: {row.count_before:,} at {row.from_stage} -> 0 at {row.to_stage}")
