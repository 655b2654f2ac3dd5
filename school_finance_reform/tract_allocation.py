"""
Tract -> district population allocation.

Each geographic-reference record gives a tract's total population and the
percentage of it served by one district. Allocated population splits the
tract proportionally; the dominant district is the one with the largest
allocation per (tract, district level).
"""

from __future__ import annotations

from typing import Mapping

import numpy as np
import pandas as pd

from school_finance_reform.helpers import assert_unique, require_columns, zero_fill

# Inclusive ranges on the 4-digit tract base code. Rows in these ranges are dropped.
DEFAULT_SPECIAL_TRACT_RANGES: dict[str, tuple[int, int]] = {
    "tribal_land": (9400, 9499),
    "revision_sliver": (9500, 9599),
    "nonresidential": (9800, 9899),
    "water": (9900, 9999),
}


def drop_special_tracts(
    geo: pd.DataFrame,
    ranges: Mapping[str, tuple[int, int]] | None = None,
    tract_code_col: str = "tract_base_num",
    verbose: bool = True,
) -> pd.DataFrame:
    ranges = DEFAULT_SPECIAL_TRACT_RANGES if ranges is None else ranges
    require_columns(geo, [tract_code_col], "geographic reference")
    code = pd.to_numeric(geo[tract_code_col], errors="coerce")
    drop = pd.Series(False, index=geo.index)
    dropped_by: dict[str, int] = {}
    for label, (lo, hi) in ranges.items():
        in_range = code.between(int(lo), int(hi)).fillna(False).astype(bool)
        dropped_by[label] = int((in_range & ~drop).sum())
        drop |= in_range
    out = geo[~drop].copy()
    if verbose:
        detail = ", ".join(f"{k}={v:,}" for k, v in dropped_by.items())
        print(f"Special tract codes: rows {len(geo):,} -> {len(out):,} ({detail})")
    return out


def allocate_tract_population(
    geo: pd.DataFrame,
    pop_col: str = "population",
    pct_col: str = "pct_of_tract",
) -> pd.DataFrame:
    """
    alloc_pop = tract population x (district percentage / 100).

    Missing population or percentage counts as zero so the row stays in every
    downstream sum rather than silently dropping out of it.
    """
    require_columns(geo, [pop_col, pct_col], "geographic reference")
    work = geo.copy()
    work["tract_pop"] = zero_fill(work[pop_col])
    work["alloc_pop"] = work["tract_pop"] * zero_fill(work[pct_col]) / 100.0
    return work


def check_allocation_totals(
    alloc: pd.DataFrame,
    tract_col: str = "tract_id",
    level_col: str = "level",
    pct_col: str = "pct_of_tract",
    rtol: float = 1e-6,
) -> pd.DataFrame:
    """
    (tract, level) groups with complete percentages whose allocated population
    does not add back to the tract population. Diagnostic only.
    """
    require_columns(alloc, [tract_col, level_col, "tract_pop", "alloc_pop", pct_col], "allocation")
    grouped = alloc.groupby([tract_col, level_col], dropna=False).agg(
        tract_pop=("tract_pop", "max"),
        alloc_sum=("alloc_pop", "sum"),
        pct_sum=(pct_col, lambda s: s.sum(min_count=1)),
        pct_complete=(pct_col, lambda s: bool(s.notna().all())),
    ).reset_index()
    full_share = np.isclose(grouped["pct_sum"], 100.0, rtol=0, atol=1e-6)
    mismatch = ~np.isclose(grouped["alloc_sum"], grouped["tract_pop"], rtol=rtol, atol=1e-6)
    return grouped[grouped["pct_complete"].astype(bool) & full_share & mismatch].reset_index(drop=True)


def select_dominant_district(
    alloc: pd.DataFrame,
    tract_col: str = "tract_id",
    level_col: str = "level",
    key_col: str = "leaid",
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Keep one district per (tract, level): largest alloc_pop, ties broken by
    the lexicographically smallest leaid.
    """
    require_columns(alloc, [tract_col, level_col, key_col, "alloc_pop"], "allocation")
    ordered = alloc.sort_values(
        [tract_col, level_col, "alloc_pop", key_col],
        ascending=[True, True, False, True],
        kind="mergesort",
        na_position="last",
    )
    dominant = ordered.drop_duplicates(subset=[tract_col, level_col], keep="first").reset_index(drop=True)
    assert_unique(dominant, [tract_col, level_col], "dominant district selection")
    if verbose:
        print(f"Dominant district: rows {len(alloc):,} -> {len(dominant):,} (tract x level)")
    return dominant
