"""Event-study regressions of spending on court-ordered finance reforms, with state jackknife."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Iterable, Sequence

import numpy as np
import pandas as pd
import statsmodels.api as sm
from matplotlib import pyplot as plt

from linearmodels.panel import PanelOLS

from school_finance_reform.build_panels import resolve_variant, variant_output
from school_finance_reform.config_loader import (
    DEFAULT_CONFIG_PATH,
    get_cfg_section,
    load_config,
    resolve_path,
)
from school_finance_reform.helpers import read_table, require_columns, write_table
from school_finance_reform.import_finance import read_reform_years, read_state_fips

EVENT_PREFIX = "ev_"


def _lag_suffix(k: int) -> str:
    return f"m{abs(k)}" if k < 0 else str(k)


def event_col_name(k: int) -> str:
    return f"{EVENT_PREFIX}{_lag_suffix(int(k))}"


def event_time_from_col(col: str) -> int | None:
    if not col.startswith(EVENT_PREFIX):
        return None
    suffix = col[len(EVENT_PREFIX):].split("_")[0]
    if suffix.isdigit():
        return int(suffix)
    if suffix.startswith("m") and suffix[1:].isdigit():
        return -int(suffix[1:])
    return None


def baseline_quartiles(
    panel: pd.DataFrame,
    unit_col: str,
    value_col: str,
    years: Sequence[int],
    by: str | None = "state_fips",
    out_col: str = "baseline_quartile",
) -> pd.DataFrame:
    """
    Quartile (1-4) of each unit's mean baseline-year spending, within `by` groups.
    Ranks break ties by unit id so the assignment is deterministic.
    """
    cols = [unit_col, "year", value_col] + ([by] if by else [])
    require_columns(panel, cols, "quartile input")
    base = panel[panel["year"].isin(list(years))]
    group_cols = [by, unit_col] if by else [unit_col]
    means = (
        base.groupby(group_cols, as_index=False)[value_col]
        .mean()
        .dropna(subset=[value_col])
        .sort_values(group_cols, kind="mergesort")
    )
    if by:
        rank = means.groupby(by)[value_col].rank(method="first")
        size = means.groupby(by)[value_col].transform("size")
    else:
        rank = means[value_col].rank(method="first")
        size = pd.Series(len(means), index=means.index)
    means[out_col] = np.ceil(rank / size * 4).clip(1, 4).astype(int)
    out = panel.drop(columns=[out_col], errors="ignore").merge(means[[unit_col, out_col]], on=unit_col, how="left")
    out[out_col] = out[out_col].astype("Int64")
    return out


def add_event_time(
    panel: pd.DataFrame,
    reforms: pd.DataFrame,
    window: tuple[int, int] = (-5, 17),
    reference: int = -1,
    state_col: str = "state_fips",
    year_col: str = "year",
) -> tuple[pd.DataFrame, list[str]]:
    """
    event_time = year - first reform year of the unit's state. Event times
    outside the window are binned into the endpoints; the reference period is
    omitted. Never-treated units get zeros in every indicator.
    """
    lo, hi = int(window[0]), int(window[1])
    if not lo <= reference <= hi:
        raise ValueError(f"Reference period {reference} must lie inside window {window}.")
    require_columns(reforms, [state_col, "reform_year"], "reform table")
    work = panel.drop(columns=["reform_year"], errors="ignore").merge(
        reforms[[state_col, "reform_year"]].drop_duplicates(state_col), on=state_col, how="left"
    )
    work["event_time"] = work[year_col] - work["reform_year"]
    binned = work["event_time"].clip(lower=lo, upper=hi)
    work["treated"] = work["reform_year"].notna()

    event_cols = []
    for k in range(lo, hi + 1):
        if k == reference:
            continue
        col = event_col_name(k)
        work[col] = (binned == k).fillna(False).astype(int)
        event_cols.append(col)
    return work, event_cols


def interact_event_time(
    panel: pd.DataFrame,
    event_cols: Sequence[str],
    group_col: str = "baseline_quartile",
) -> tuple[pd.DataFrame, list[str]]:
    """Split each event indicator by group (e.g. ev_3 -> ev_3_q1 ... ev_3_q4)."""
    require_columns(panel, list(event_cols) + [group_col], "interaction input")
    work = panel.copy()
    groups = sorted(int(g) for g in work[group_col].dropna().unique())
    out_cols = []
    for col in event_cols:
        for g in groups:
            name = f"{col}_q{g}"
            work[name] = work[col] * (work[group_col] == g).fillna(False).astype(int)
            out_cols.append(name)
    return work, out_cols


def estimate_event_study(
    panel: pd.DataFrame,
    outcome: str,
    event_cols: Sequence[str],
    entity: str = "county_id",
    time: str = "year",
    weights: str | None = None,
    cluster: str | None = "state_fips",
    controls: Sequence[str] = (),
) -> pd.DataFrame:
    """
    PanelOLS with entity and time effects, standard errors clustered by `cluster`.
    Returns one row per event indicator.
    """
    controls = list(controls)
    needed = [entity, time, outcome] + list(event_cols) + controls
    if weights:
        needed.append(weights)
    if cluster and cluster not in needed:
        needed.append(cluster)
    require_columns(panel, needed, "event-study panel")
    work = panel[needed].replace([np.inf, -np.inf], np.nan).dropna().copy()
    if weights:
        work = work[work[weights] > 0]
    if work.empty:
        raise ValueError("Event-study sample is empty after dropping missing values.")
    work[time] = work[time].astype(int)
    work = work.set_index([entity, time])

    exog_cols = [c for c in list(event_cols) + controls if work[c].abs().sum() > 0]
    mod = PanelOLS(
        dependent=work[outcome],
        exog=work[exog_cols],
        entity_effects=True,
        time_effects=True,
        weights=work[weights] if weights else None,
        drop_absorbed=True,
    )
    if cluster == entity:
        res = mod.fit(cov_type="clustered", cluster_entity=True)
    elif cluster:
        clusters = pd.DataFrame({cluster: pd.factorize(work[cluster])[0]}, index=work.index)
        res = mod.fit(cov_type="clustered", clusters=clusters)
    else:
        res = mod.fit(cov_type="robust")

    rows = []
    for col in event_cols:
        if col not in res.params.index:
            continue
        rows.append(
            {
                "term": col,
                "event_time": event_time_from_col(col),
                "coef": float(res.params[col]),
                "se": float(res.std_errors[col]),
                "t_stat": float(res.tstats[col]),
                "p_value": float(res.pvalues[col]),
                "n_obs": int(res.nobs),
                "n_entities": int(res.entity_info["total"]),
            }
        )
    return pd.DataFrame(rows)


def baseline_balance(
    panel: pd.DataFrame,
    value_col: str,
    years: Sequence[int],
    entity: str = "county_id",
    state_col: str = "state_fips",
    controls: Sequence[str] = (),
) -> pd.DataFrame:
    """
    Cross-sectional check that baseline spending does not predict reform
    status: OLS of the mean baseline-year value on a treated indicator,
    standard errors clustered by state.
    """
    controls = list(controls)
    require_columns(panel, [entity, state_col, "year", "treated", value_col] + controls, "balance input")
    base = panel[panel["year"].isin(list(years))]
    work = (
        base.groupby([entity, state_col], as_index=False)
        .agg(baseline=(value_col, "mean"), treated=("treated", "max"), **{c: (c, "first") for c in controls})
        .replace([np.inf, -np.inf], np.nan)
        .dropna()
    )
    if work.empty:
        return pd.DataFrame()
    work["treated"] = work["treated"].astype(int)
    exog = sm.add_constant(work[["treated"] + controls], has_constant="add")
    groups = pd.factorize(work[state_col])[0]
    res = sm.OLS(work["baseline"], exog).fit(cov_type="cluster", cov_kwds={"groups": groups})
    return pd.DataFrame(
        [
            {
                "value_col": value_col,
                "coef": float(res.params["treated"]),
                "se": float(res.bse["treated"]),
                "p_value": float(res.pvalues["treated"]),
                "n_obs": int(res.nobs),
            }
        ]
    )


def jackknife_by_state(
    panel: pd.DataFrame,
    outcome: str,
    event_cols: Sequence[str],
    state_col: str = "state_fips",
    verbose: bool = True,
    **estimate_kwargs,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """
    Re-estimate dropping one state at a time. Returns the stacked coefficients
    and a per-term summary (mean, min, max, sd across replications).
    """
    require_columns(panel, [state_col], "event-study panel")
    states = sorted(panel[state_col].dropna().unique())
    reps = []
    for state in states:
        sub = panel[panel[state_col] != state]
        est = estimate_event_study(sub, outcome, event_cols, **estimate_kwargs)
        est["dropped_state"] = state
        reps.append(est)
        if verbose:
            print(f"Jackknife: dropped {state}, n_obs={int(est['n_obs'].iloc[0]) if not est.empty else 0:,}")
    stacked = pd.concat(reps, ignore_index=True) if reps else pd.DataFrame()
    if stacked.empty:
        return stacked, pd.DataFrame()
    summary = (
        stacked.groupby(["term", "event_time"], as_index=False)["coef"]
        .agg(coef_mean="mean", coef_min="min", coef_max="max", coef_sd="std", n_reps="size")
        .sort_values("event_time", kind="mergesort")
        .reset_index(drop=True)
    )
    return stacked, summary


def plot_event_study(
    results: pd.DataFrame,
    out_path: Path | None = None,
    jackknife: pd.DataFrame | None = None,
    reference: int = -1,
    title: str | None = None,
    ylabel: str = "Coefficient",
    show: bool = False,
) -> None:
    work = results.dropna(subset=["event_time"]).sort_values("event_time")
    ref_row = pd.DataFrame([{"event_time": reference, "coef": 0.0, "se": 0.0}])
    work = pd.concat([work[["event_time", "coef", "se"]], ref_row], ignore_index=True).sort_values("event_time")
    ci = 1.96 * work["se"].astype(float)

    fig, ax = plt.subplots(figsize=(6.5, 3.6))
    if jackknife is not None and not jackknife.empty:
        jk = jackknife.sort_values("event_time")
        ax.fill_between(jk["event_time"], jk["coef_min"], jk["coef_max"], color="#D9D9D9", alpha=0.7, label="Jackknife range")
    ax.errorbar(work["event_time"], work["coef"], yerr=ci, fmt="o", color="#2F5597", ecolor="#B7C4E0", capsize=3, label="Estimate")
    ax.axhline(0, color="#666666", linewidth=1, linestyle="--")
    ax.axvline(reference + 0.5, color="#999999", linewidth=0.8, linestyle=":")
    ax.set_xlabel("Years since reform")
    ax.set_ylabel(ylabel)
    if title:
        ax.set_title(title)
    ax.spines["top"].set_visible(False)
    ax.spines["right"].set_visible(False)
    if jackknife is not None and not jackknife.empty:
        ax.legend(frameon=False, fontsize=8)
    fig.tight_layout()

    if out_path is not None:
        out_path = Path(out_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(out_path, dpi=160, bbox_inches="tight")
    if show:
        plt.show()
    plt.close(fig)


def prepare_event_panel(
    county_panel: pd.DataFrame,
    reforms: pd.DataFrame,
    window: tuple[int, int],
    reference: int,
    sample_flag: str | None = None,
    quartile_years: Sequence[int] | None = None,
    quartile_interactions: bool = False,
    value_col: str = "ppe_real",
    entity: str = "county_id",
    verbose: bool = True,
) -> tuple[pd.DataFrame, list[str]]:
    work = county_panel.copy()
    rows_before = len(work)
    if sample_flag:
        require_columns(work, [sample_flag], "county panel")
        work = work[work[sample_flag].astype(bool)].copy()
    if verbose:
        print(f"Event-study sample: rows {rows_before:,} -> {len(work):,} (flag={sample_flag})")
    if quartile_years:
        work = baseline_quartiles(work, entity, value_col, quartile_years)
    work, event_cols = add_event_time(work, reforms, window=window, reference=reference)
    if quartile_interactions:
        work, event_cols = interact_event_time(work, event_cols)
    return work, event_cols


def _parse_args(args: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run event-study regressions on the county-year panel.")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to config YAML (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--variant",
        default=None,
        help="Variant whose panel and sample flag to use (default: pipeline.default_variant).",
    )
    parser.add_argument("--county-panel", type=Path, default=None, help="County-year panel (default: paths.county_panel_out).")
    parser.add_argument("--outcome", default=None, help="Outcome column (default: event_study.outcome).")
    parser.add_argument("--window-start", type=int, default=None, help="First event time; earlier years are binned.")
    parser.add_argument("--window-end", type=int, default=None, help="Last event time; later years are binned.")
    parser.add_argument("--reference", type=int, default=None, help="Omitted event time (default: -1).")
    parser.add_argument("--sample-flag", default=None, help="Quality flag restricting the sample.")
    parser.add_argument(
        "--weights",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Weight by county population (event_study.weight).",
    )
    parser.add_argument(
        "--quartile-interactions",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Interact event indicators with within-state baseline spending quartiles.",
    )
    parser.add_argument(
        "--jackknife",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Re-estimate leaving out one state at a time.",
    )
    parser.add_argument("--output-dir", type=Path, default=None, help="Directory for tables and plots.")
    parser.add_argument("--show", action="store_true", help="Show the plot interactively.")
    return parser.parse_args(args)


def main(args: Iterable[str] | None = None) -> None:
    opts = _parse_args(args)
    cfg = load_config(opts.config)
    paths_cfg = get_cfg_section(cfg, "paths")
    es_cfg = get_cfg_section(cfg, "event_study")
    default_name = get_cfg_section(cfg, "pipeline").get("default_variant", "baseline")
    variant = resolve_variant(cfg, opts.variant)

    panel_path = opts.county_panel or variant_output(resolve_path(paths_cfg, "county_panel_out"), variant, default_name)
    out_dir = Path(opts.output_dir or resolve_path(paths_cfg, "event_study_dir"))
    outcome = opts.outcome or es_cfg.get("outcome", "log_ppe_real")
    window_cfg = es_cfg.get("window", [-5, 17])
    window = (
        opts.window_start if opts.window_start is not None else int(window_cfg[0]),
        opts.window_end if opts.window_end is not None else int(window_cfg[1]),
    )
    reference = opts.reference if opts.reference is not None else int(es_cfg.get("reference", -1))
    sample_flag = opts.sample_flag or variant.sample_flag
    use_weights = opts.weights if opts.weights is not None else bool(es_cfg.get("weight"))
    interactions = (
        opts.quartile_interactions
        if opts.quartile_interactions is not None
        else bool(es_cfg.get("quartile_interactions", False))
    )
    entity = es_cfg.get("entity", "county_id")
    cluster = es_cfg.get("cluster", "state_fips")
    weight_col = es_cfg.get("weight", "county_pop") if use_weights else None

    state_lookup = read_state_fips(resolve_path(paths_cfg, "state_fips"))
    reforms = read_reform_years(resolve_path(paths_cfg, "reform_years"), state_lookup)
    county_panel = read_table(panel_path)

    baseline_years = variant.baseline_sets.get(sample_flag)
    quartile_years = None
    if interactions:
        if not baseline_years:
            raise ValueError("Quartile interactions need a baseline-year set named by the sample flag.")
        quartile_years = baseline_years

    panel, event_cols = prepare_event_panel(
        county_panel,
        reforms,
        window=window,
        reference=reference,
        sample_flag=sample_flag,
        quartile_years=quartile_years,
        quartile_interactions=interactions,
        entity=entity,
    )

    def _out(name: str) -> Path:
        return variant_output(out_dir / name, variant, default_name)

    est_kwargs = dict(entity=entity, time="year", weights=weight_col, cluster=cluster)
    results = estimate_event_study(panel, outcome, event_cols, **est_kwargs)
    write_table(results, _out(f"event_study_{outcome}.csv"))
    print(results.to_string(index=False))

    if baseline_years:
        balance = baseline_balance(panel, outcome, baseline_years, entity=entity, state_col=cluster)
        if not balance.empty:
            write_table(balance, _out(f"baseline_balance_{outcome}.csv"))

    summary = None
    if opts.jackknife:
        stacked, summary = jackknife_by_state(panel, outcome, event_cols, state_col=cluster, **est_kwargs)
        write_table(stacked, _out(f"event_study_{outcome}_jackknife.csv"))
        write_table(summary, _out(f"event_study_{outcome}_jackknife_summary.csv"))

    if not interactions:
        plot_event_study(
            results,
            out_path=_out(f"event_study_{outcome}.png"),
            jackknife=summary,
            reference=reference,
            title=f"Event study: {outcome} ({variant.name})",
            show=opts.show,
        )


if __name__ == "__main__":
    main()
