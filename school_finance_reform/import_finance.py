"""
Source importers.

Reads the two district-finance eras, the 1969 fixed-width geographic reference
file and the auxiliary lookups into common tabular frames:

- modern finance: one file per year, keyed by a 7-char LEAID plus a 14-char
  Census ID whose first 9 characters are the historical GOVID;
- historical finance: one file per year, keyed by the 9-char GOVID
  (state code, type code, county, unit);
- geographic reference: fixed-width records of (district, tract) pieces with the
  tract's population and the share of it served by the district.
"""

from __future__ import annotations

import glob
from pathlib import Path
from typing import Iterable, Sequence

import duckdb as ddb
import numpy as np
import pandas as pd

from school_finance_reform.helpers import normalize_state_code, pad_code, require_columns

DEFAULT_MISSING_CODES = ("-1", "-2", "-3", "-9", "M", "N", "R")

DEFAULT_MODERN_COLUMNS = {
    "leaid_col": "LEAID",
    "censusid_col": "CENSUSID",
    "exp_col": "TOTALEXP",
    "enroll_col": "V33",
    "level_col": "SCHLEV",
    "year_col": "YEAR",
}

DEFAULT_HISTORICAL_COLUMNS = {
    "govid_col": "ID",
    "exp_col": "TOTALEXP",
    "enroll_col": "ENROLL",
    "level_col": "SCHLEV",
    "year_col": "YEAR",
}

# Census government ID: state(2) type(1) county(3) unit(3); type 5 = independent school district.
SCHOOL_DISTRICT_TYPE_CODE = "5"

# 1969 school district geographic reference file.
# Inclusive, 1-based byte positions as documented for the original tape layout.
DEFAULT_GEO_LAYOUT: dict[str, tuple[int, int]] = {
    "state_fips": (1, 2),
    "county_fips": (5, 7),
    "district_code": (8, 12),
    "level": (13, 13),
    "district_name": (14, 73),
    "tract_base": (77, 80),
    "tract_suffix": (81, 82),
    "pct_of_tract": (83, 88),
    "population": (101, 108),
}


def _escape(path: Path | str) -> str:
    return str(path).replace("'", "''")


def _expand_files(files: str | Path | Sequence[str | Path]) -> list[Path]:
    if isinstance(files, (str, Path)):
        matches = sorted(glob.glob(str(files)))
        if not matches and Path(files).exists():
            matches = [str(files)]
    else:
        matches = [str(f) for f in files]
    if not matches:
        raise FileNotFoundError(f"No input files matched: {files}")
    missing = [m for m in matches if not Path(m).exists()]
    if missing:
        raise FileNotFoundError("Missing required inputs:\n" + "\n".join(missing))
    return [Path(m) for m in matches]


def _table_columns(con: ddb.DuckDBPyConnection, view: str) -> set[str]:
    rows = con.execute(f"PRAGMA table_info('{view}')").fetchall()
    return {r[1].lower() for r in rows}


def _numeric_sql(col: str, missing_codes: Iterable[str]) -> str:
    codes = ",".join("'" + str(c).replace("'", "''") + "'" for c in missing_codes)
    return (
        f"CASE WHEN TRIM(CAST({col} AS VARCHAR)) IN ({codes}) "
        f"OR TRIM(CAST({col} AS VARCHAR)) = '' THEN NULL "
        f"ELSE TRY_CAST(TRIM(CAST({col} AS VARCHAR)) AS DOUBLE) END"
    )


def _year_sql(year_col: str, columns: set[str]) -> str:
    # First 4-digit run in the file's basename.
    from_name = r"TRY_CAST(regexp_extract(filename, '(\d{4})[^/\\]*$', 1) AS INTEGER)"
    if year_col.lower() in columns:
        return f"COALESCE(TRY_CAST({year_col} AS INTEGER), {from_name})"
    return from_name


def _register_yearly_files(con: ddb.DuckDBPyConnection, view: str, files: list[Path]) -> set[str]:
    file_list = ", ".join(f"'{_escape(f)}'" for f in files)
    con.sql(
        f"""
        CREATE OR REPLACE TEMP VIEW {view} AS
        SELECT * FROM read_csv([{file_list}], union_by_name = true, filename = true, all_varchar = true, header = true)
        """
    )
    return _table_columns(con, view)


def read_modern_finance(
    files: str | Path | Sequence[str | Path],
    columns: dict | None = None,
    missing_codes: Iterable[str] = DEFAULT_MISSING_CODES,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Stack the per-year modern finance extracts.

    Returns one row per (leaid, year) record with leaid (7 chars), govid
    (first 9 chars of the Census ID), state_fips, level, totalexp, enrollment.
    """
    cols = {**DEFAULT_MODERN_COLUMNS, **(columns or {})}
    paths = _expand_files(files)
    con = ddb.connect()
    available = _register_yearly_files(con, "modern_raw", paths)
    needed = [cols["leaid_col"], cols["censusid_col"], cols["exp_col"], cols["enroll_col"]]
    missing = [c for c in needed if c.lower() not in available]
    if missing:
        raise ValueError(f"Missing required columns in modern finance files: {missing}")
    level_sql = (
        f"TRY_CAST(TRIM({cols['level_col']}) AS INTEGER)" if cols["level_col"].lower() in available else "NULL"
    )
    raw = con.sql(
        f"""
        SELECT
            TRIM({cols['leaid_col']}) AS leaid,
            TRIM({cols['censusid_col']}) AS censusid,
            {level_sql} AS level,
            {_numeric_sql(cols['exp_col'], missing_codes)} AS totalexp,
            {_numeric_sql(cols['enroll_col'], missing_codes)} AS enrollment,
            {_year_sql(cols['year_col'], available)} AS year
        FROM modern_raw
        """
    ).df()
    con.close()

    # placeholder LEAIDs ("N", "M") are non-numeric; null them before padding
    leaid = raw["leaid"].astype("string").str.strip()
    numeric_leaid = leaid.str.fullmatch(r"\d+(\.0)?").fillna(False).astype(bool)
    raw["leaid"] = pad_code(leaid.where(numeric_leaid), 7)
    raw["censusid"] = pad_code(raw["censusid"], 14)
    raw["govid"] = raw["censusid"].str[:9]
    raw["state_fips"] = raw["leaid"].str[:2]
    raw["source"] = "modern"
    out = raw[["leaid", "govid", "year", "state_fips", "level", "totalexp", "enrollment", "source"]]
    if verbose:
        print(
            f"Modern finance: {len(out):,} rows from {len(paths)} files, years {out['year'].min()}-{out['year'].max()}; "
            f"non-numeric leaid set to null={int((leaid.notna() & ~numeric_leaid).sum()):,}"
        )
    return out


def read_historical_finance(
    files: str | Path | Sequence[str | Path],
    state_lookup: pd.DataFrame,
    columns: dict | None = None,
    missing_codes: Iterable[str] = DEFAULT_MISSING_CODES,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Stack the per-year historical finance extracts, keeping school-district governments.

    The govid state prefix is a Census state code, not FIPS; `state_lookup`
    (from `read_state_fips`) maps it to state_fips.
    """
    cols = {**DEFAULT_HISTORICAL_COLUMNS, **(columns or {})}
    require_columns(state_lookup, ["state_fips", "census_state_code"], "state lookup")
    paths = _expand_files(files)
    con = ddb.connect()
    available = _register_yearly_files(con, "historical_raw", paths)
    needed = [cols["govid_col"], cols["exp_col"], cols["enroll_col"]]
    missing = [c for c in needed if c.lower() not in available]
    if missing:
        raise ValueError(f"Missing required columns in historical finance files: {missing}")
    level_sql = (
        f"TRY_CAST(TRIM({cols['level_col']}) AS INTEGER)" if cols["level_col"].lower() in available else "NULL"
    )
    raw = con.sql(
        f"""
        SELECT
            TRIM({cols['govid_col']}) AS govid,
            {level_sql} AS level,
            {_numeric_sql(cols['exp_col'], missing_codes)} AS totalexp,
            {_numeric_sql(cols['enroll_col'], missing_codes)} AS enrollment,
            {_year_sql(cols['year_col'], available)} AS year
        FROM historical_raw
        """
    ).df()
    con.close()

    rows_before = len(raw)
    raw["govid"] = pad_code(raw["govid"], 9)
    is_district = (raw["govid"].str[2:3] == SCHOOL_DISTRICT_TYPE_CODE).fillna(False).astype(bool)
    raw = raw[is_district].copy()
    raw["census_state_code"] = raw["govid"].str[:2]
    lookup = state_lookup[["census_state_code", "state_fips"]].dropna().drop_duplicates("census_state_code")
    raw = raw.merge(lookup, on="census_state_code", how="left")
    raw["leaid"] = pd.Series(pd.NA, index=raw.index, dtype="string")
    raw["source"] = "historical"
    out = raw[["leaid", "govid", "year", "state_fips", "level", "totalexp", "enrollment", "source"]]
    if verbose:
        print(
            f"Historical finance: {rows_before:,} rows -> {len(out):,} school-district rows "
            f"from {len(paths)} files; unmapped state codes={int(out['state_fips'].isna().sum()):,}"
        )
    return out


def compute_per_pupil(
    df: pd.DataFrame,
    exp_col: str = "totalexp",
    enroll_col: str = "enrollment",
    out_col: str = "ppe",
) -> pd.DataFrame:
    """
    Per-pupil expenditure. Null when enrollment is missing/non-positive or
    expenditure is missing/negative; such rows are flagged `ppe_invalid`, not dropped.
    """
    work = df.copy()
    exp = pd.to_numeric(work[exp_col], errors="coerce")
    enroll = pd.to_numeric(work[enroll_col], errors="coerce")
    valid = exp.notna() & enroll.notna() & (enroll > 0) & (exp >= 0)
    work[out_col] = np.where(valid, exp / enroll.where(enroll > 0), np.nan)
    work[f"{out_col}_invalid"] = ~valid
    return work


def geo_colspecs(layout: dict[str, tuple[int, int]]) -> list[tuple[int, int]]:
    """Convert inclusive 1-based byte ranges into half-open 0-based colspecs."""
    specs = []
    for field, (start, end) in layout.items():
        if start < 1 or end < start:
            raise ValueError(f"Invalid byte range for {field}: {start}-{end}")
        specs.append((start - 1, end))
    return specs


def read_geo_reference(
    path: str | Path,
    layout: dict[str, tuple[int, int]] | None = None,
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Read the fixed-width 1969 geographic reference file.

    Each record is one (district, tract) piece. Builds leaid (state + district),
    county_id, the 11-digit tract_id and an `untracted` flag for county
    remainders with no tract code.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Geographic reference file not found: {path}")
    layout = {**DEFAULT_GEO_LAYOUT, **{k: tuple(v) for k, v in (layout or {}).items()}}
    geo = pd.read_fwf(
        path,
        colspecs=geo_colspecs(layout),
        names=list(layout.keys()),
        dtype=str,
        header=None,
    )

    geo["state_fips"] = pad_code(geo["state_fips"], 2)
    geo["county_fips"] = pad_code(geo["county_fips"], 3)
    geo["district_code"] = pad_code(geo["district_code"], 5)
    geo["leaid"] = geo["state_fips"] + geo["district_code"]
    geo["county_id"] = geo["state_fips"] + geo["county_fips"]
    geo["level"] = pd.to_numeric(geo["level"], errors="coerce").astype("Int64")

    tract_base = pad_code(geo["tract_base"], 4).fillna("0000")
    geo["untracted"] = (tract_base == "0000").astype(bool)
    geo["tract_base"] = tract_base
    geo["tract_suffix"] = pad_code(geo["tract_suffix"], 2).fillna("00")
    geo["tract_base_num"] = pd.to_numeric(geo["tract_base"], errors="coerce").astype("Int64")
    geo["tract_id"] = geo["county_id"] + geo["tract_base"] + geo["tract_suffix"]

    geo["pct_of_tract"] = pd.to_numeric(geo["pct_of_tract"], errors="coerce")
    geo["population"] = pd.to_numeric(geo["population"], errors="coerce")
    if "district_name" in geo.columns:
        geo["district_name"] = geo["district_name"].astype("string").str.strip()

    if verbose:
        print(
            f"Geographic reference: {len(geo):,} records, {geo['tract_id'].nunique():,} tract ids, "
            f"{int(geo['untracted'].sum()):,} untracted pieces"
        )
    return geo


def _read_lookup(path: str | Path, dtype: dict | None = None) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Lookup file not found: {path}")
    if path.suffix.lower() in {".xls", ".xlsx"}:
        df = pd.read_excel(path, dtype=dtype)
    else:
        df = pd.read_csv(path, dtype=dtype)
    df.columns = [str(c).strip().lower() for c in df.columns]
    return df


def read_state_fips(path: str | Path) -> pd.DataFrame:
    """State names, postal codes, FIPS codes and Census government-ID state codes."""
    df = _read_lookup(path, dtype=str)
    require_columns(df, ["state_fips", "state_abbr"], str(path))
    df["state_fips"] = pad_code(df["state_fips"], 2)
    df["state_abbr"] = df["state_abbr"].map(normalize_state_code)
    if "census_state_code" in df.columns:
        df["census_state_code"] = pad_code(df["census_state_code"], 2)
    return df.dropna(subset=["state_fips", "state_abbr"]).drop_duplicates("state_fips")


def read_reform_years(path: str | Path, state_lookup: pd.DataFrame | None = None) -> pd.DataFrame:
    """
    Hand-digitized court-ordered reform dates. States may appear more than once;
    the first reform year is kept. States with no reform keep a null reform_year.
    """
    df = _read_lookup(path)
    require_columns(df, ["state", "reform_year"], str(path))
    df["state_abbr"] = df["state"].map(normalize_state_code)
    unknown = df.loc[df["state_abbr"].isna(), "state"].dropna().unique().tolist()
    if unknown:
        raise ValueError(f"Unrecognized states in reform table: {unknown}")
    df["reform_year"] = pd.to_numeric(df["reform_year"], errors="coerce")
    out = df.groupby("state_abbr", as_index=False)["reform_year"].min()
    if state_lookup is not None:
        out = out.merge(state_lookup[["state_abbr", "state_fips"]], on="state_abbr", how="left")
    return out


def read_county_income(path: str | Path) -> pd.DataFrame:
    df = _read_lookup(path, dtype={"county_id": str, "state_fips": str, "county_fips": str})
    if "county_id" not in df.columns:
        require_columns(df, ["state_fips", "county_fips"], str(path))
        df["county_id"] = pad_code(df["state_fips"], 2) + pad_code(df["county_fips"], 3)
    df["county_id"] = pad_code(df["county_id"], 5)
    require_columns(df, ["median_income"], str(path))
    df["median_income"] = pd.to_numeric(df["median_income"], errors="coerce")
    return df[["county_id", "median_income"]].drop_duplicates("county_id")


def read_county_population(path: str | Path) -> pd.DataFrame:
    """(county_id, county_pop); the population concept is whatever the file holds."""
    df = _read_lookup(path, dtype={"county_id": str})
    require_columns(df, ["county_id", "county_pop"], str(path))
    df["county_id"] = pad_code(df["county_id"], 5)
    df["county_pop"] = pd.to_numeric(df["county_pop"], errors="coerce")
    return df[["county_id", "county_pop"]].drop_duplicates("county_id")


def read_school_age_population(path: str | Path, level: str = "tract") -> pd.DataFrame:
    """School-age population by tract (tract_id, school_age_pop) or county (county_id, county_pop)."""
    if level == "tract":
        df = _read_lookup(path, dtype={"tract_id": str})
        require_columns(df, ["tract_id", "school_age_pop"], str(path))
        df["tract_id"] = pad_code(df["tract_id"], 11)
        df["school_age_pop"] = pd.to_numeric(df["school_age_pop"], errors="coerce")
        return df[["tract_id", "school_age_pop"]].drop_duplicates("tract_id")
    if level == "county":
        return read_county_population(path)
    raise ValueError(f"level must be 'tract' or 'county', got {level!r}")
