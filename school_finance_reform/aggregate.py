"""
District -> tract -> county aggregation of per-pupil spending.

Tract spending is the allocation-weighted mean over serving districts. County
spending is the population-weighted mean over the county's areas, where a
county can be fully tracted, fully untracted (one undivided area), mixed
(tracts plus one untracted remainder) or multiply untracted (several untracted
remainders reported, collapsed to one). Anything else is invalid and excluded.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np
import pandas as pd

from school_finance_reform.helpers import assert_unique, require_columns, zero_fill
from school_finance_reform.quality_flags import attach_flags, propagate_flags

COUNTY_STATUSES = ("fully_tracted", "fully_untracted", "mixed", "multiply_untracted", "invalid")


def _weighted_group_mean(
    frame: pd.DataFrame,
    group_cols: Sequence[str],
    value_col: str,
    weight_col: str,
) -> pd.DataFrame:
    has_value = frame[value_col].notna()
    w = frame[weight_col].where(has_value)
    work = frame[list(group_cols)].copy()
    work["_wv"] = (frame[value_col] * w).where(has_value)
    work["_w"] = w
    sums = work.groupby(list(group_cols), as_index=False, dropna=False)[["_wv", "_w"]].sum(min_count=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        sums[value_col] = np.where(sums["_w"].fillna(0) != 0, sums["_wv"] / sums["_w"], np.nan)
    return sums.drop(columns=["_wv", "_w"])


def district_to_tract(
    alloc: pd.DataFrame,
    district_panel: pd.DataFrame,
    flag_cols: Sequence[str] = (),
    weight_col: str = "alloc_pop",
    value_col: str = "ppe",
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Tract-year spending as the `weight_col`-weighted mean over serving districts
    with non-null spending. Tract flags are the AND over every serving district;
    a district with no finance record counts as not good.
    """
    require_columns(
        alloc,
        ["tract_id", "county_id", "state_fips", "leaid", "untracted", "tract_pop", weight_col],
        "allocation",
    )
    require_columns(district_panel, ["leaid", "year", value_col] + list(flag_cols), "district panel")
    assert_unique(district_panel, ["leaid", "year"], "district panel")

    pieces = alloc.copy()
    pieces["_weight"] = zero_fill(pieces[weight_col])

    tract_attrs = (
        pieces.groupby("tract_id", as_index=False)
        .agg(
            county_id=("county_id", "first"),
            state_fips=("state_fips", "first"),
            untracted=("untracted", "first"),
            tract_pop=("tract_pop", "max"),
            tract_weight=("_weight", "sum"),
            n_districts=("leaid", "nunique"),
        )
    )

    merged = pieces[["tract_id", "leaid", "_weight"]].merge(
        district_panel[["leaid", "year", value_col]], on="leaid", how="left", indicator=True
    )
    n_unmatched = int(merged.loc[merged["_merge"] == "left_only", "leaid"].nunique())
    merged = merged[merged["_merge"] == "both"].drop(columns="_merge")
    tract_year = _weighted_group_mean(merged, ["tract_id", "year"], value_col, "_weight")

    out = tract_year.merge(tract_attrs, on="tract_id", how="left")
    if flag_cols:
        district_flags = district_panel[["leaid"] + list(flag_cols)].drop_duplicates("leaid")
        piece_flags = attach_flags(pieces[["tract_id", "leaid"]], district_flags, "leaid", flag_cols)
        tract_flags = propagate_flags(piece_flags, "tract_id", flag_cols)
        out = attach_flags(out, tract_flags, "tract_id", flag_cols)
    out["year"] = out["year"].astype(int)
    out = out.sort_values(["tract_id", "year"], kind="mergesort").reset_index(drop=True)
    assert_unique(out, ["tract_id", "year"], "tract panel")
    if verbose:
        print(
            f"District -> tract: {pieces['tract_id'].nunique():,} tracts, {len(out):,} tract-years; "
            f"districts without finance data={n_unmatched:,}"
        )
    return out


def classify_county_years(
    tract_panel: pd.DataFrame,
    county_col: str = "county_id",
    year_col: str = "year",
) -> pd.DataFrame:
    """Tracted/untracted area counts and coverage status per county-year."""
    require_columns(tract_panel, [county_col, year_col, "untracted"], "tract panel")
    flag = tract_panel["untracted"]
    work = tract_panel[[county_col, year_col]].copy()
    work["_tracted"] = (flag == False).fillna(False).astype(int)  # noqa: E712
    work["_untracted"] = (flag == True).fillna(False).astype(int)  # noqa: E712
    counts = (
        work.groupby([county_col, year_col], as_index=False)
        .agg(n_tracted=("_tracted", "sum"), n_untracted=("_untracted", "sum"))
    )
    conditions = [
        (counts["n_untracted"] == 0) & (counts["n_tracted"] > 0),
        (counts["n_untracted"] == 1) & (counts["n_tracted"] == 0),
        (counts["n_untracted"] == 1) & (counts["n_tracted"] > 0),
        counts["n_untracted"] >= 2,
    ]
    counts["county_status"] = np.select(conditions, COUNTY_STATUSES[:4], default="invalid")
    return counts


def collapse_untracted(
    tract_panel: pd.DataFrame,
    flag_cols: Sequence[str] = (),
    value_col: str = "ppe",
    county_col: str = "county_id",
    year_col: str = "year",
) -> pd.DataFrame:
    """
    Collapse untracted rows to one row per county-year: simple mean of spending,
    summed population, AND of flags. Tracted rows pass through unchanged.
    """
    is_untracted = tract_panel["untracted"].fillna(False).astype(bool)
    tracted = tract_panel[~is_untracted]
    untracted = tract_panel[is_untracted]
    if untracted.empty:
        return tract_panel.copy()

    keys = [county_col, year_col]
    agg = {
        "tract_id": ("tract_id", "min"),
        value_col: (value_col, "mean"),
        "tract_pop": ("tract_pop", "sum"),
        "n_untracted_collapsed": ("tract_id", "size"),
    }
    if "state_fips" in untracted.columns:
        agg["state_fips"] = ("state_fips", "first")
    if "tract_weight" in untracted.columns:
        agg["tract_weight"] = ("tract_weight", "sum")
    collapsed = untracted.sort_values(keys + ["tract_id"], kind="mergesort").groupby(keys, as_index=False).agg(**agg)
    if flag_cols:
        collapsed = collapsed.merge(propagate_flags(untracted, keys, flag_cols), on=keys, how="left")
    collapsed["untracted"] = True
    return pd.concat([tracted, collapsed], ignore_index=True, sort=False)


def tract_to_county(
    tract_panel: pd.DataFrame,
    county_pop: pd.DataFrame | None = None,
    flag_cols: Sequence[str] = (),
    weight_col: str = "tract_pop",
    value_col: str = "ppe",
    verbose: bool = True,
) -> pd.DataFrame:
    """
    County-year spending.

    fully_tracted: tract-population-weighted mean.
    fully_untracted: the single area's spending passes through.
    mixed / multiply_untracted: untracted rows are collapsed to one, weighted by
    the residual county_pop - sum(tracted population). The residual is not
    floored at zero; a negative residual is kept and flagged `negative_residual`.
    A missing residual (no county population) counts as zero weight.
    invalid: excluded.
    """
    require_columns(
        tract_panel,
        ["tract_id", "county_id", "state_fips", "year", "untracted", value_col, weight_col] + list(flag_cols),
        "tract panel",
    )
    keys = ["county_id", "year"]
    status = classify_county_years(tract_panel)
    valid_keys = status[status["county_status"] != "invalid"][keys]
    n_invalid = int((status["county_status"] == "invalid").sum())
    work = tract_panel.merge(valid_keys, on=keys, how="inner")
    work = collapse_untracted(work, flag_cols=flag_cols, value_col=value_col)
    work = work.merge(status, on=keys, how="left")

    if county_pop is not None:
        require_columns(county_pop, ["county_id", "county_pop"], "county population")
        work = work.merge(county_pop[["county_id", "county_pop"]], on="county_id", how="left")
    else:
        work["county_pop"] = np.nan

    is_untracted = work["untracted"].fillna(False).astype(bool)
    work["_w"] = zero_fill(work[weight_col]).where(~is_untracted, 0.0)
    tracted_pop = work.groupby(keys)["_w"].transform("sum")
    residual = pd.to_numeric(work["county_pop"], errors="coerce") - tracted_pop
    uses_residual = is_untracted & work["county_status"].isin(["mixed", "multiply_untracted"])
    work.loc[uses_residual, "_w"] = zero_fill(residual[uses_residual])
    passthrough = is_untracted & (work["county_status"] == "fully_untracted")
    work.loc[passthrough, "_w"] = 1.0
    work["_tracted_pop"] = tracted_pop
    work["_residual_pop"] = residual.where(uses_residual)

    county = _weighted_group_mean(work, keys, value_col, "_w")
    attrs = (
        work.groupby(keys, as_index=False)
        .agg(
            state_fips=("state_fips", "first"),
            county_status=("county_status", "first"),
            n_tracted=("n_tracted", "first"),
            n_untracted=("n_untracted", "first"),
            county_pop=("county_pop", "first"),
            tracted_pop=("_tracted_pop", "first"),
            residual_pop=("_residual_pop", "max"),
        )
    )
    county = county.merge(attrs, on=keys, how="left")
    county["negative_residual"] = (county["residual_pop"] < 0).fillna(False).astype(bool)
    if flag_cols:
        county = county.merge(propagate_flags(work, keys, flag_cols), on=keys, how="left")
        for col in flag_cols:
            county[col] = county[col].fillna(False).astype(bool)
    county = county.sort_values(keys, kind="mergesort").reset_index(drop=True)
    assert_unique(county, keys, "county panel")

    if verbose:
        counts = status["county_status"].value_counts().reindex(COUNTY_STATUSES, fill_value=0)
        detail = ", ".join(f"{k}={int(v):,}" for k, v in counts.items())
        print(
            f"Tract -> county: {len(status):,} county-years -> {len(county):,} ({detail}); "
            f"invalid dropped={n_invalid:,}, negative residuals={int(county['negative_residual'].sum()):,}"
        )
    return county
