"""
Baseline-year completeness flags.

A unit is "good" for a baseline-year set iff it has a present, non-null
spending value in every year of the set. Flags are computed once at the
district level from raw spending and rolled up to tracts and counties with a
logical AND: one incomplete constituent disqualifies the aggregate.
"""

from __future__ import annotations

from typing import Mapping, Sequence

import pandas as pd

from school_finance_reform.helpers import require_columns

DEFAULT_BASELINE_SETS: dict[str, tuple[int, ...]] = {
    "good_67_70_71_72": (1967, 1970, 1971, 1972),
    "good_67_70_71": (1967, 1970, 1971),
    "good_70_71_72": (1970, 1971, 1972),
}


def baseline_flag_name(years: Sequence[int]) -> str:
    return "good_" + "_".join(f"{y % 100:02d}" for y in sorted({int(y) for y in years}))


def normalize_baseline_sets(baseline_sets: Mapping[str, Sequence[int]] | Sequence[Sequence[int]]) -> dict[str, tuple[int, ...]]:
    if isinstance(baseline_sets, Mapping):
        items = baseline_sets.items()
    else:
        items = ((baseline_flag_name(years), years) for years in baseline_sets)
    out = {}
    for name, years in items:
        years = tuple(sorted({int(y) for y in years}))
        if not years:
            raise ValueError(f"Baseline set '{name}' is empty.")
        out[str(name)] = years
    return out


def tag_baseline_flags(
    panel: pd.DataFrame,
    unit_cols: str | Sequence[str],
    baseline_sets: Mapping[str, Sequence[int]] | Sequence[Sequence[int]] = DEFAULT_BASELINE_SETS,
    value_col: str = "ppe",
    year_col: str = "year",
) -> pd.DataFrame:
    """
    One row per unit with a boolean column per baseline set.
    Units with no observation in any baseline year get False, not null.
    """
    unit_cols = [unit_cols] if isinstance(unit_cols, str) else list(unit_cols)
    require_columns(panel, unit_cols + [year_col, value_col], "flag input")
    sets = normalize_baseline_sets(baseline_sets)

    units = panel[unit_cols].dropna().drop_duplicates().reset_index(drop=True)
    present = panel.loc[panel[value_col].notna(), unit_cols + [year_col]].drop_duplicates()

    out = units.copy()
    for name, years in sets.items():
        n_present = (
            present[present[year_col].isin(years)]
            .groupby(unit_cols, as_index=False)[year_col]
            .nunique()
            .rename(columns={year_col: "_n_present"})
        )
        out = out.merge(n_present, on=unit_cols, how="left")
        out[name] = out["_n_present"].fillna(0).astype(int).eq(len(years))
        out = out.drop(columns="_n_present")
    return out


def attach_flags(
    master: pd.DataFrame,
    flags: pd.DataFrame,
    unit_cols: str | Sequence[str],
    flag_cols: Sequence[str] | None = None,
) -> pd.DataFrame:
    """Left-merge flags onto the master unit list; absent flags default to False."""
    unit_cols = [unit_cols] if isinstance(unit_cols, str) else list(unit_cols)
    flag_cols = list(flag_cols) if flag_cols is not None else [c for c in flags.columns if c not in unit_cols]
    work = master.drop(columns=[c for c in flag_cols if c in master.columns])
    merged = work.merge(flags[unit_cols + flag_cols], on=unit_cols, how="left")
    for col in flag_cols:
        merged[col] = merged[col].fillna(False).astype(bool)
    return merged


def propagate_flags(
    frame: pd.DataFrame,
    group_cols: str | Sequence[str],
    flag_cols: Sequence[str],
) -> pd.DataFrame:
    """Aggregate flag = min (logical AND) of constituent flags; absent constituents count as False."""
    group_cols = [group_cols] if isinstance(group_cols, str) else list(group_cols)
    require_columns(frame, group_cols + list(flag_cols), "flag propagation input")
    work = frame[group_cols + list(flag_cols)].copy()
    for col in flag_cols:
        work[col] = work[col].fillna(False).astype(bool)
    out = work.groupby(group_cols, as_index=False)[list(flag_cols)].min()
    for col in flag_cols:
        out[col] = out[col].astype(bool)
    return out
