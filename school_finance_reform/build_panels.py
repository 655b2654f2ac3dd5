"""
Build the district-year, tract-year and county-year spending panels.

One parameterized run covers every analysis variant: the variant block in the
config only changes baseline-year sets, weighting, smoothing and the
interpolation threshold.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Mapping, Optional

import numpy as np
import pandas as pd

from school_finance_reform.aggregate import district_to_tract, tract_to_county
from school_finance_reform.config_loader import (
    DEFAULT_CONFIG_PATH,
    get_cfg_section,
    load_config,
    optional_path,
    resolve_path,
)
from school_finance_reform.crosswalk import apply_crosswalk, build_crosswalk
from school_finance_reform.deflate import deflate, fetch_cpi, load_api_key, load_cpi
from school_finance_reform.diagnostics import attrition_report, print_attrition, stage_counts
from school_finance_reform.helpers import assert_unique, check_paths, write_table, zero_fill
from school_finance_reform.import_finance import (
    compute_per_pupil,
    read_county_income,
    read_county_population,
    read_geo_reference,
    read_historical_finance,
    read_modern_finance,
    read_school_age_population,
    read_state_fips,
)
from school_finance_reform.interpolate import expand_year_grid, interpolate_with_gap_limit, smooth
from school_finance_reform.quality_flags import (
    DEFAULT_BASELINE_SETS,
    attach_flags,
    normalize_baseline_sets,
    tag_baseline_flags,
)
from school_finance_reform.tract_allocation import (
    allocate_tract_population,
    check_allocation_totals,
    drop_special_tracts,
    select_dominant_district,
)

# weight_col -> (district->tract weight, tract->county weight, county population input)
WEIGHT_SCHEMES = {
    "alloc_pop": ("alloc_pop", "tract_pop", "county_population"),
    "school_age_pop": ("alloc_school_age_pop", "school_age_pop", "county_school_age_pop"),
}

SOURCE_PRIORITY = {"modern": 0, "historical": 1}


@dataclass(frozen=True)
class PipelinePaths:
    modern_finance_glob: Path
    historical_finance_glob: Path
    geo_reference: Path
    state_fips: Path
    county_population: Path
    crosswalk_out: Path
    district_panel_out: Path
    tract_assignment_out: Path
    tract_panel_out: Path
    county_panel_out: Path
    attrition_out: Path
    county_income: Optional[Path] = None
    tract_school_age_pop: Optional[Path] = None
    county_school_age_pop: Optional[Path] = None
    cpi_csv: Optional[Path] = None


def resolve_pipeline_paths(cfg: dict) -> PipelinePaths:
    paths_cfg = get_cfg_section(cfg, "paths")
    return PipelinePaths(
        modern_finance_glob=resolve_path(paths_cfg, "modern_finance_glob"),
        historical_finance_glob=resolve_path(paths_cfg, "historical_finance_glob"),
        geo_reference=resolve_path(paths_cfg, "geo_reference"),
        state_fips=resolve_path(paths_cfg, "state_fips"),
        county_population=resolve_path(paths_cfg, "county_population"),
        crosswalk_out=resolve_path(paths_cfg, "crosswalk_out"),
        district_panel_out=resolve_path(paths_cfg, "district_panel_out"),
        tract_assignment_out=resolve_path(paths_cfg, "tract_assignment_out"),
        tract_panel_out=resolve_path(paths_cfg, "tract_panel_out"),
        county_panel_out=resolve_path(paths_cfg, "county_panel_out"),
        attrition_out=resolve_path(paths_cfg, "attrition_out"),
        county_income=optional_path(paths_cfg, "county_income"),
        tract_school_age_pop=optional_path(paths_cfg, "tract_school_age_pop"),
        county_school_age_pop=optional_path(paths_cfg, "county_school_age_pop"),
        cpi_csv=optional_path(paths_cfg, "cpi_csv"),
    )


@dataclass(frozen=True)
class VariantConfig:
    name: str
    baseline_sets: dict = field(default_factory=lambda: dict(DEFAULT_BASELINE_SETS))
    sample_flag: str = "good_67_70_71_72"
    weight_col: str = "alloc_pop"
    smoothing_window: int = 1
    max_interp_gap: int = 3
    start_year: int = 1967
    end_year: int = 2010

    @property
    def flag_cols(self) -> list[str]:
        return list(self.baseline_sets)

    @property
    def district_weight_col(self) -> str:
        return WEIGHT_SCHEMES[self.weight_col][0]

    @property
    def tract_weight_col(self) -> str:
        return WEIGHT_SCHEMES[self.weight_col][1]

    @property
    def county_pop_input(self) -> str:
        return WEIGHT_SCHEMES[self.weight_col][2]


def resolve_variant(cfg: dict, name: str | None = None) -> VariantConfig:
    """Named variant block layered over the baseline block."""
    pipe_cfg = get_cfg_section(cfg, "pipeline")
    variants_cfg = get_cfg_section(cfg, "variants")
    default_name = pipe_cfg.get("default_variant", "baseline")
    name = name or default_name
    if name not in variants_cfg:
        raise ValueError(f"Unknown variant '{name}'; available: {sorted(variants_cfg)}")
    merged = {**(variants_cfg.get(default_name) or {}), **(variants_cfg.get(name) or {})}

    baseline_sets = normalize_baseline_sets(merged.get("baseline_sets") or DEFAULT_BASELINE_SETS)
    sample_flag = merged.get("sample_flag") or next(iter(baseline_sets))
    if sample_flag not in baseline_sets:
        raise ValueError(f"Variant '{name}': sample_flag '{sample_flag}' is not one of {sorted(baseline_sets)}")
    weight_col = merged.get("weight_col", "alloc_pop")
    if weight_col not in WEIGHT_SCHEMES:
        raise ValueError(f"Variant '{name}': weight_col must be one of {sorted(WEIGHT_SCHEMES)}, got {weight_col!r}")
    start_year = int(pipe_cfg.get("start_year", 1967))
    end_year = int(pipe_cfg.get("end_year", 2010))
    if end_year < start_year:
        raise ValueError(f"pipeline.end_year ({end_year}) is before pipeline.start_year ({start_year}).")
    return VariantConfig(
        name=name,
        baseline_sets=baseline_sets,
        sample_flag=sample_flag,
        weight_col=weight_col,
        smoothing_window=int(merged.get("smoothing_window", 1) or 1),
        max_interp_gap=int(merged.get("max_interp_gap", pipe_cfg.get("max_interp_gap", 3))),
        start_year=start_year,
        end_year=end_year,
    )


def variant_output(path: Path, variant: VariantConfig, default_name: str = "baseline") -> Path:
    """Stage outputs of non-default variants get a `_<variant>` suffix."""
    path = Path(path)
    if variant.name == default_name:
        return path
    return path.with_name(f"{path.stem}_{variant.name}{path.suffix}")


def stack_district_records(
    modern: pd.DataFrame,
    historical_linked: pd.DataFrame,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Modern and crosswalked historical records on one (leaid, year) key. Where
    both eras report the same district-year, the modern record wins.
    """
    cols = ["leaid", "govid", "year", "state_fips", "level", "totalexp", "enrollment", "source"]
    stacked = pd.concat([modern[cols], historical_linked[cols]], ignore_index=True)
    rows_before = len(stacked)
    stacked = stacked.dropna(subset=["leaid", "year"]).copy()
    stacked["year"] = stacked["year"].astype(int)
    stacked["state_fips"] = stacked["state_fips"].where(stacked["state_fips"].notna(), stacked["leaid"].str[:2])
    stacked["_priority"] = stacked["source"].map(SOURCE_PRIORITY)
    stacked = (
        stacked.sort_values(["leaid", "year", "_priority", "govid"], kind="mergesort")
        .drop_duplicates(subset=["leaid", "year"], keep="first")
        .drop(columns="_priority")
        .reset_index(drop=True)
    )
    assert_unique(stacked, ["leaid", "year"], "district records")
    if verbose:
        print(f"District records: rows {rows_before:,} -> {len(stacked):,} (one per leaid-year)")
    return stacked


def build_district_panel(
    modern: pd.DataFrame,
    historical: pd.DataFrame,
    crosswalk: pd.DataFrame,
    variant: VariantConfig,
    verbose: bool = True,
) -> pd.DataFrame:
    linked = apply_crosswalk(historical, crosswalk, verbose=verbose)
    records = stack_district_records(modern, linked, verbose=verbose)
    records = records[records["year"].between(variant.start_year, variant.end_year)]
    records = compute_per_pupil(records)

    # Flags come from raw spending, before any fill.
    flags = tag_baseline_flags(records, "leaid", variant.baseline_sets, value_col="ppe")

    panel = expand_year_grid(
        records,
        "leaid",
        start=variant.start_year,
        end=variant.end_year,
        carry_cols=["govid", "state_fips", "level"],
    )
    panel["ppe_invalid"] = panel["ppe_invalid"].fillna(False).astype(bool)
    panel = interpolate_with_gap_limit(panel, "leaid", "ppe", max_gap=variant.max_interp_gap)
    panel = smooth(panel, "leaid", "ppe", window=variant.smoothing_window)
    panel = attach_flags(panel, flags, "leaid", variant.flag_cols)
    assert_unique(panel, ["leaid", "year"], "district panel")

    if verbose:
        n_units = panel["leaid"].nunique()
        shares = ", ".join(f"{c}={int(flags[c].sum()):,}" for c in variant.flag_cols)
        print(
            f"District panel: {n_units:,} districts x {variant.end_year - variant.start_year + 1} years; "
            f"interpolated={int(panel['ppe_interpolated'].sum()):,}, too_far={int(panel['ppe_too_far'].sum()):,}; "
            f"good districts: {shares}"
        )
    return panel


def build_tract_panel(
    geo: pd.DataFrame,
    district_panel: pd.DataFrame,
    variant: VariantConfig,
    special_tract_ranges: Mapping | None = None,
    tract_school_age: pd.DataFrame | None = None,
    verbose: bool = True,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Returns (tract-year panel, dominant district per tract and level)."""
    geo = drop_special_tracts(geo, special_tract_ranges, verbose=verbose)
    alloc = allocate_tract_population(geo)

    mismatches = check_allocation_totals(alloc)
    if verbose:
        print(f"Allocation check: {len(mismatches):,} (tract, level) groups do not add back to tract population")

    dominant = select_dominant_district(alloc, verbose=verbose)
    assignment = dominant[["tract_id", "level", "leaid", "county_id", "state_fips", "untracted", "alloc_pop", "tract_pop"]]

    if variant.weight_col == "school_age_pop":
        if tract_school_age is None:
            raise ValueError(f"Variant '{variant.name}' needs paths.tract_school_age_pop.")
        alloc = alloc.merge(tract_school_age[["tract_id", "school_age_pop"]], on="tract_id", how="left")
        alloc["alloc_school_age_pop"] = zero_fill(alloc["school_age_pop"]) * zero_fill(alloc["pct_of_tract"]) / 100.0

    tract = district_to_tract(
        alloc,
        district_panel,
        flag_cols=variant.flag_cols,
        weight_col=variant.district_weight_col,
        verbose=verbose,
    )
    if variant.weight_col == "school_age_pop":
        tract = tract.merge(tract_school_age[["tract_id", "school_age_pop"]], on="tract_id", how="left")
    return tract, assignment.reset_index(drop=True)


def build_county_panel(
    tract_panel: pd.DataFrame,
    variant: VariantConfig,
    county_pop: pd.DataFrame,
    cpi: pd.DataFrame,
    base_year: int,
    county_income: pd.DataFrame | None = None,
    verbose: bool = True,
) -> pd.DataFrame:
    county = tract_to_county(
        tract_panel,
        county_pop=county_pop,
        flag_cols=variant.flag_cols,
        weight_col=variant.tract_weight_col,
        verbose=verbose,
    )
    if county_income is not None:
        county = county.merge(county_income[["county_id", "median_income"]], on="county_id", how="left")
    county = deflate(county, cpi, "ppe", base_year=base_year)
    county["log_ppe_real"] = np.log(county["ppe_real"].where(county["ppe_real"] > 0))
    county["in_sample"] = county[variant.sample_flag].astype(bool)
    return county


def resolve_cpi(paths: PipelinePaths, cfg: dict, variant: VariantConfig, verbose: bool = True) -> pd.DataFrame:
    """Offline CPI file when paths.cpi_csv is set, otherwise one API call."""
    if paths.cpi_csv is not None:
        return load_cpi(paths.cpi_csv)
    cpi_cfg = get_cfg_section(cfg, "cpi")
    for key in ("url", "series_id", "api_key_file"):
        if not cpi_cfg.get(key):
            raise ValueError(f"Config cpi.{key} must be set when paths.cpi_csv is empty.")
    base_year = int(cpi_cfg.get("base_year", variant.end_year))
    return fetch_cpi(
        cpi_cfg["url"],
        cpi_cfg["series_id"],
        load_api_key(cpi_cfg["api_key_file"]),
        start_year=min(variant.start_year, base_year),
        end_year=max(variant.end_year, base_year),
        verbose=verbose,
    )


def _required_inputs(paths: PipelinePaths, variant: VariantConfig) -> dict[str, Path]:
    required = {
        "geo_reference": paths.geo_reference,
        "state_fips": paths.state_fips,
    }
    county_pop_path = getattr(paths, variant.county_pop_input)
    if county_pop_path is None:
        raise ValueError(f"Config paths.{variant.county_pop_input} must be set.")
    required[variant.county_pop_input] = county_pop_path
    if variant.weight_col == "school_age_pop":
        if paths.tract_school_age_pop is None:
            raise ValueError("Config paths.tract_school_age_pop must be set.")
        required["tract_school_age_pop"] = paths.tract_school_age_pop
    if paths.county_income is not None:
        required["county_income"] = paths.county_income
    if paths.cpi_csv is not None:
        required["cpi_csv"] = paths.cpi_csv
    return required


def run_pipeline(
    paths: PipelinePaths,
    variant: VariantConfig,
    cfg: dict,
    *,
    cpi: pd.DataFrame | None = None,
    save_outputs: bool = True,
    verbose: bool = True,
) -> dict[str, pd.DataFrame]:
    check_paths(_required_inputs(paths, variant))
    import_cfg = get_cfg_section(cfg, "import")
    geo_cfg = get_cfg_section(cfg, "geography")
    cpi_cfg = get_cfg_section(cfg, "cpi")
    missing_codes = import_cfg.get("missing_codes") or ("-1", "-2", "-3", "-9", "M", "N", "R")
    sentinels = import_cfg.get("sentinels") or {}
    default_name = get_cfg_section(cfg, "pipeline").get("default_variant", "baseline")

    if verbose:
        print(f"Variant '{variant.name}': {variant}")

    state_lookup = read_state_fips(paths.state_fips)
    modern = read_modern_finance(
        str(paths.modern_finance_glob), columns=import_cfg.get("modern"), missing_codes=missing_codes, verbose=verbose
    )
    historical = read_historical_finance(
        str(paths.historical_finance_glob),
        state_lookup,
        columns=import_cfg.get("historical"),
        missing_codes=missing_codes,
        verbose=verbose,
    )
    crosswalk = build_crosswalk(
        modern[["leaid", "govid"]],
        leaid_sentinels=sentinels.get("leaid", ()),
        govid_sentinels=sentinels.get("govid", ()),
        verbose=verbose,
    )
    district = build_district_panel(modern, historical, crosswalk, variant, verbose=verbose)

    geo = read_geo_reference(paths.geo_reference, layout=geo_cfg.get("layout") or None, verbose=verbose)
    tract_school_age = (
        read_school_age_population(paths.tract_school_age_pop, level="tract")
        if variant.weight_col == "school_age_pop"
        else None
    )
    tract, assignment = build_tract_panel(
        geo,
        district,
        variant,
        special_tract_ranges=geo_cfg.get("special_tract_ranges") or None,
        tract_school_age=tract_school_age,
        verbose=verbose,
    )

    county_pop = read_county_population(getattr(paths, variant.county_pop_input))
    county_income = read_county_income(paths.county_income) if paths.county_income is not None else None
    if cpi is None:
        cpi = resolve_cpi(paths, cfg, variant, verbose=verbose)
    county = build_county_panel(
        tract,
        variant,
        county_pop,
        cpi,
        base_year=int(cpi_cfg.get("base_year", variant.end_year)),
        county_income=county_income,
        verbose=verbose,
    )

    stages = [
        stage_counts(modern, "modern_finance", unit_col="leaid"),
        stage_counts(historical, "historical_finance", unit_col="govid"),
        stage_counts(district, "district_panel", unit_col="leaid"),
        stage_counts(district[district[variant.sample_flag]], "district_good", unit_col="leaid"),
        stage_counts(tract, "tract_panel", unit_col="tract_id"),
        stage_counts(county, "county_panel", unit_col="county_id"),
        stage_counts(county[county["in_sample"]], "county_sample", unit_col="county_id"),
    ]
    attrition, dropped = attrition_report(stages)
    if verbose:
        print_attrition(attrition, dropped)

    outputs = {
        "crosswalk": crosswalk,
        "district_panel": district,
        "tract_assignment": assignment,
        "tract_panel": tract,
        "county_panel": county,
        "attrition": attrition,
    }
    if not save_outputs:
        print("Skipping writes (save_outputs=False).")
        return outputs

    write_table(crosswalk, paths.crosswalk_out, verbose=verbose)
    write_table(district, variant_output(paths.district_panel_out, variant, default_name), verbose=verbose)
    write_table(assignment, paths.tract_assignment_out, verbose=verbose)
    write_table(tract, variant_output(paths.tract_panel_out, variant, default_name), verbose=verbose)
    write_table(county, variant_output(paths.county_panel_out, variant, default_name), verbose=verbose)
    write_table(attrition, variant_output(paths.attrition_out, variant, default_name), verbose=verbose)
    return outputs


def _parse_args(args: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Build district, tract and county spending panels.")
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help=f"Path to config YAML (default: {DEFAULT_CONFIG_PATH}).",
    )
    parser.add_argument(
        "--variant",
        default=None,
        help="Variant block under `variants` (default: pipeline.default_variant).",
    )
    parser.add_argument(
        "--cpi-csv",
        type=Path,
        default=None,
        help="Offline CPI file with year,cpi columns (skips the API call).",
    )
    parser.add_argument(
        "--start-year",
        type=int,
        default=None,
        help="First panel year (default: pipeline.start_year).",
    )
    parser.add_argument(
        "--end-year",
        type=int,
        default=None,
        help="Last panel year (default: pipeline.end_year).",
    )
    parser.add_argument(
        "--write",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Write stage outputs (use --no-write for quick checks).",
    )
    return parser.parse_args(args)


def main(cli_args: Optional[Iterable[str]] = None) -> None:
    args = _parse_args(cli_args)
    cfg = load_config(args.config)
    pipe_cfg = get_cfg_section(cfg, "pipeline")
    if args.start_year is not None:
        pipe_cfg["start_year"] = args.start_year
    if args.end_year is not None:
        pipe_cfg["end_year"] = args.end_year
    cfg["pipeline"] = pipe_cfg
    if args.cpi_csv is not None:
        cfg.setdefault("paths", {})["cpi_csv"] = str(args.cpi_csv)

    paths = resolve_pipeline_paths(cfg)
    variant = resolve_variant(cfg, args.variant)
    save_outputs = args.write if args.write is not None else pipe_cfg.get("save_outputs", True)
    run_pipeline(
        paths,
        variant,
        cfg,
        save_outputs=save_outputs,
        verbose=pipe_cfg.get("verbose", True),
    )


if __name__ == "__main__":
    main()
