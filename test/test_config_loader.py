"""
Unit tests for config loading, path resolution and variant resolution.
"""

from __future__ import annotations

from pathlib import Path
import sys

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from school_finance_reform.build_panels import (  # type: ignore
    resolve_pipeline_paths,
    resolve_variant,
    variant_output,
)
from school_finance_reform.config_loader import (  # type: ignore
    ROOT_ENV_VAR,
    get_cfg_section,
    load_config,
    optional_path,
    resolve_path,
)

SAMPLE_YAML = """
root: "/data/from_yaml"
paths:
  raw_dir: "{root}/raw"
  int_dir: "{root}/int"
  geo_reference: "${paths.raw_dir}/geo.txt"
  crosswalk_out: "${paths.int_dir}/crosswalk.parquet"
  cpi_csv: null
pipeline:
  start_year: 1967
  end_year: 1990
"""


def test_root_from_yaml_and_interpolation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ROOT_ENV_VAR, raising=False)
    cfg_path = tmp_path / "cfg.yaml"
    cfg_path.write_text(SAMPLE_YAML)

    cfg = load_config(cfg_path)
    paths = get_cfg_section(cfg, "paths")

    assert paths["geo_reference"] == "/data/from_yaml/raw/geo.txt"
    assert paths["crosswalk_out"] == "/data/from_yaml/int/crosswalk.parquet"
    assert optional_path(paths, "cpi_csv") is None


def test_env_var_overrides_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ROOT_ENV_VAR, str(tmp_path))
    cfg_path = tmp_path / "cfg.yaml"
    cfg_path.write_text(SAMPLE_YAML)

    cfg = load_config(cfg_path)

    assert cfg["paths"]["geo_reference"] == f"{tmp_path}/raw/geo.txt"


def test_unset_paths_and_bad_sections_raise() -> None:
    with pytest.raises(ValueError, match="paths.cpi_csv"):
        resolve_path({"cpi_csv": "null"}, "cpi_csv")
    with pytest.raises(ValueError):
        get_cfg_section({"paths": ["not", "a", "mapping"]}, "paths")
    assert get_cfg_section({"paths": None}, "paths") == {}


def test_missing_config_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "missing.yaml")


def test_repo_config_resolves_paths_and_variants(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ROOT_ENV_VAR, str(tmp_path))
    cfg = load_config()

    paths = resolve_pipeline_paths(cfg)
    assert str(paths.geo_reference).startswith(str(tmp_path))
    assert paths.cpi_csv is None

    baseline = resolve_variant(cfg)
    assert baseline.name == "baseline"
    assert baseline.flag_cols == ["good_67_70_71_72", "good_67_70_71", "good_70_71_72"]
    assert baseline.district_weight_col == "alloc_pop"
    assert baseline.max_interp_gap == 3

    school_age = resolve_variant(cfg, "school_age_weights")
    assert school_age.district_weight_col == "alloc_school_age_pop"
    assert school_age.tract_weight_col == "school_age_pop"
    assert school_age.baseline_sets == baseline.baseline_sets

    assert resolve_variant(cfg, "smoothed_3yr").smoothing_window == 3
    assert resolve_variant(cfg, "baseline_3yr").sample_flag == "good_70_71_72"
    with pytest.raises(ValueError):
        resolve_variant(cfg, "no_such_variant")


def test_non_default_variants_write_suffixed_outputs(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ROOT_ENV_VAR, str(tmp_path))
    cfg = load_config()
    out = Path("/x/county_year_panel.parquet")

    assert variant_output(out, resolve_variant(cfg, "baseline")) == out
    assert variant_output(out, resolve_variant(cfg, "smoothed_3yr")).name == "county_year_panel_smoothed_3yr.parquet"


def test_reference_chains_resolve_and_unknown_references_stay(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ROOT_ENV_VAR, "/data")
    cfg_path = tmp_path / "cfg.yaml"
    cfg_path.write_text(
        """
paths:
  d: "${paths.c}/d"
  c: "${paths.b}/c"
  b: "${paths.a}/b"
  a: "{root}/a"
  other: "${paths.missing}/x"
"""
    )

    paths = get_cfg_section(load_config(cfg_path), "paths")

    assert paths["d"] == "/data/a/b/c/d"
    assert paths["other"] == "${paths.missing}/x"
