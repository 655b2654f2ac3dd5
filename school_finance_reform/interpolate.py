"""Dense year grids and gap-limited linear interpolation of unit-year series."""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from school_finance_reform.helpers import assert_unique, mode_by_group, require_columns

DEFAULT_MAX_GAP = 3


def expand_year_grid(
    panel: pd.DataFrame,
    unit_col: str,
    year_col: str = "year",
    start: int | None = None,
    end: int | None = None,
    carry_cols: Sequence[str] = (),
) -> pd.DataFrame:
    """
    One row per unit and year in [start, end], even where every value is missing.
    Identifying attributes in `carry_cols` are filled from the unit's modal
    non-missing value (ties -> smallest value).
    """
    require_columns(panel, [unit_col, year_col] + list(carry_cols), "year grid input")
    assert_unique(panel, [unit_col, year_col], "year grid input")
    work = panel.copy()
    work[year_col] = work[year_col].astype(int)
    start = int(work[year_col].min()) if start is None else int(start)
    end = int(work[year_col].max()) if end is None else int(end)
    if end < start:
        raise ValueError(f"Year range is empty: {start}-{end}")

    units = work[unit_col].dropna().unique()
    grid = pd.MultiIndex.from_product(
        [sorted(units), range(start, end + 1)], names=[unit_col, year_col]
    ).to_frame(index=False)
    out = grid.merge(work[work[year_col].between(start, end)], on=[unit_col, year_col], how="left")

    for col in carry_cols:
        mode = mode_by_group(work, unit_col, col).rename(columns={col: "_mode"})
        out = out.merge(mode, on=unit_col, how="left")
        out[col] = out[col].where(out[col].notna(), out["_mode"])
        out = out.drop(columns="_mode")
    return out.sort_values([unit_col, year_col], kind="mergesort").reset_index(drop=True)


def interpolate_with_gap_limit(
    panel: pd.DataFrame,
    unit_col: str,
    value_cols: str | Sequence[str],
    year_col: str = "year",
    max_gap: int = DEFAULT_MAX_GAP,
) -> pd.DataFrame:
    """
    Fill a missing year y linearly between the surrounding observations p < y < n
    only when n - p <= max_gap. Longer gaps are marked `<col>_too_far` for every
    missing year in the run and left null; leading and trailing gaps are never
    extrapolated. Observed values are kept verbatim.
    """
    value_cols = [value_cols] if isinstance(value_cols, str) else list(value_cols)
    require_columns(panel, [unit_col, year_col] + value_cols, "interpolation input")
    work = panel.sort_values([unit_col, year_col], kind="mergesort").reset_index(drop=True)
    year = work[year_col].astype(float)
    groups = work[unit_col]

    for col in value_cols:
        values = pd.to_numeric(work[col], errors="coerce")
        observed = values.notna()
        obs_year = year.where(observed)
        prev_year = obs_year.groupby(groups).ffill()
        next_year = obs_year.groupby(groups).bfill()
        prev_val = values.groupby(groups).ffill()
        next_val = values.groupby(groups).bfill()

        bracketed = ~observed & prev_year.notna() & next_year.notna()
        span = next_year - prev_year
        fillable = bracketed & (span <= max_gap)
        too_far = bracketed & (span > max_gap)

        with np.errstate(invalid="ignore", divide="ignore"):
            filled = prev_val + (next_val - prev_val) * (year - prev_year) / span
        work[col] = values.where(observed, filled.where(fillable))
        work[f"{col}_interpolated"] = fillable.astype(bool)
        work[f"{col}_too_far"] = too_far.astype(bool)
    return work


def smooth(
    panel: pd.DataFrame,
    unit_col: str,
    value_col: str,
    year_col: str = "year",
    window: int = 1,
) -> pd.DataFrame:
    """
    Centered rolling mean within unit; the unsmoothed series is kept as
    `<col>_unsmoothed`. Years that were null before smoothing stay null, so
    too-far gaps and unbracketed ends are not filled by the window.
    """
    if window is None or int(window) <= 1:
        return panel.copy()
    work = panel.sort_values([unit_col, year_col], kind="mergesort").reset_index(drop=True)
    work[f"{value_col}_unsmoothed"] = work[value_col]
    smoothed = work.groupby(unit_col)[value_col].transform(
        lambda s: s.rolling(int(window), center=True, min_periods=1).mean()
    )
    work[value_col] = smoothed.where(work[f"{value_col}_unsmoothed"].notna())
    return work
