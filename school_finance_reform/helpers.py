"""Shared helpers: invariant checks, explicit missing-value rules, stage IO."""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Sequence

import pandas as pd


def assert_unique(df: pd.DataFrame, cols: str | Sequence[str], label: str) -> None:
    """Abort the run if `cols` does not uniquely identify rows of `df`."""
    cols = [cols] if isinstance(cols, str) else list(cols)
    dup = df.duplicated(subset=cols, keep=False)
    if dup.any():
        sample = df.loc[dup, cols].drop_duplicates().head(5).to_dict("records")
        raise AssertionError(
            f"{label}: {list(cols)} must be unique; {int(dup.sum()):,} duplicated rows, e.g. {sample}"
        )


def require_columns(df: pd.DataFrame, cols: Iterable[str], label: str) -> None:
    missing = sorted(set(cols).difference(df.columns))
    if missing:
        raise ValueError(f"Missing required columns in {label}: {missing}")


def zero_fill(values: pd.Series) -> pd.Series:
    """Treat absent population/percentage figures as zero before they enter a sum."""
    return pd.to_numeric(values, errors="coerce").fillna(0.0)


def mode_by_group(
    df: pd.DataFrame,
    group_col: str | Sequence[str],
    value_col: str,
) -> pd.DataFrame:
    """
    Most common non-missing value of `value_col` per group.
    Ties go to the smallest value so the fill is deterministic.
    """
    group_cols = [group_col] if isinstance(group_col, str) else list(group_col)
    work = df[group_cols + [value_col]].dropna()
    if work.empty:
        return pd.DataFrame(columns=group_cols + [value_col])
    counts = (
        work.groupby(group_cols + [value_col], as_index=False)
        .size()
        .rename(columns={"size": "_obs"})
        .sort_values(group_cols + ["_obs", value_col], ascending=[True] * len(group_cols) + [False, True], kind="mergesort")
    )
    mode = counts.groupby(group_cols, as_index=False).first()
    return mode[group_cols + [value_col]]


_STATE_NAME_TO_ABBR = {
    "alabama": "AL",
    "alaska": "AK",
    "arizona": "AZ",
    "arkansas": "AR",
    "california": "CA",
    "colorado": "CO",
    "connecticut": "CT",
    "delaware": "DE",
    "district of columbia": "DC",
    "florida": "FL",
    "georgia": "GA",
    "hawaii": "HI",
    "idaho": "ID",
    "illinois": "IL",
    "indiana": "IN",
    "iowa": "IA",
    "kansas": "KS",
    "kentucky": "KY",
    "louisiana": "LA",
    "maine": "ME",
    "maryland": "MD",
    "massachusetts": "MA",
    "michigan": "MI",
    "minnesota": "MN",
    "mississippi": "MS",
    "missouri": "MO",
    "montana": "MT",
    "nebraska": "NE",
    "nevada": "NV",
    "new hampshire": "NH",
    "new jersey": "NJ",
    "new mexico": "NM",
    "new york": "NY",
    "north carolina": "NC",
    "north dakota": "ND",
    "ohio": "OH",
    "oklahoma": "OK",
    "oregon": "OR",
    "pennsylvania": "PA",
    "rhode island": "RI",
    "south carolina": "SC",
    "south dakota": "SD",
    "tennessee": "TN",
    "texas": "TX",
    "utah": "UT",
    "vermont": "VT",
    "virginia": "VA",
    "washington": "WA",
    "west virginia": "WV",
    "wisconsin": "WI",
    "wyoming": "WY",
    "dc": "DC",
}

STATE_ABBR_ORDER = [
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "DC", "FL", "GA",
    "HI", "ID", "IL", "IN", "IA", "KS", "KY", "LA", "ME", "MD", "MA",
    "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ", "NM", "NY",
    "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX",
    "UT", "VT", "VA", "WA", "WV", "WI", "WY",
]


def normalize_state_code(value: object) -> str | None:
    if pd.isna(value):
        return None
    raw = str(value).strip()
    if not raw:
        return None
    if len(raw) == 2:
        code = raw.upper()
        return code if code in STATE_ABBR_ORDER else None
    return _STATE_NAME_TO_ABBR.get(raw.lower())


def pad_code(values: pd.Series, width: int) -> pd.Series:
    """Zero-pad numeric-looking identifiers read as numbers or strings; blanks become null."""
    out = values.astype("string").str.strip()
    out = out.str.replace(r"\.0$", "", regex=True)
    out = out.replace("", pd.NA)
    return out.str.zfill(width)


def check_paths(paths: dict[str, Path]) -> None:
    missing = [f"{label}: {p}" for label, p in paths.items() if not Path(p).exists()]
    if missing:
        raise FileNotFoundError("Missing required inputs:\n" + "\n".join(missing))


def ensure_out_dir(path: Path) -> None:
    Path(path).parent.mkdir(parents=True, exist_ok=True)


def write_table(df: pd.DataFrame, path: Path, verbose: bool = True) -> Path:
    path = Path(path)
    ensure_out_dir(path)
    if path.suffix.lower() == ".csv":
        df.to_csv(path, index=False)
    else:
        df.to_parquet(path, index=False)
    if verbose:
        print(f"Wrote {path} ({len(df):,} rows)")
    return path


def read_table(path: Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Stage table not found: {path}")
    if path.suffix.lower() == ".csv":
        return pd.read_csv(path, dtype={"leaid": str, "govid": str, "tract_id": str, "county_id": str, "state_fips": str})
    return pd.read_parquet(path)
