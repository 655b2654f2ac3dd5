"""CPI inflation adjustment. One API call per run, no retry; failures abort the run."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import requests

from school_finance_reform.helpers import require_columns


def load_api_key(path: str | Path) -> str:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"API key file not found: {path}")
    with open(path) as f:
        cfg = json.load(f)
    if "api_key" not in cfg:
        raise ValueError(f"{path} must contain an 'api_key' entry.")
    return cfg["api_key"]


def fetch_cpi(
    url: str,
    series_id: str,
    api_key: str,
    start_year: int | None = None,
    end_year: int | None = None,
    timeout: float = 60,
    verbose: bool = True,
) -> pd.DataFrame:
    """Annual-average CPI (year, cpi) from a FRED-style observations endpoint."""
    params = {"series_id": series_id, "api_key": api_key, "file_type": "json"}
    if start_year is not None:
        params["observation_start"] = f"{int(start_year)}-01-01"
    if end_year is not None:
        params["observation_end"] = f"{int(end_year)}-12-31"
    response = requests.get(url, params=params, timeout=timeout)
    response.raise_for_status()
    payload = response.json()
    if "observations" not in payload:
        raise ValueError(f"Unexpected CPI response; keys={sorted(payload)}")
    obs = pd.DataFrame(payload["observations"])
    if obs.empty:
        raise ValueError(f"CPI series {series_id} returned no observations.")
    require_columns(obs, ["date", "value"], "CPI observations")
    obs["year"] = obs["date"].astype(str).str[:4].astype(int)
    obs["cpi"] = pd.to_numeric(obs["value"].replace(".", np.nan), errors="coerce")
    annual = obs.groupby("year", as_index=False)["cpi"].mean().dropna()
    if verbose:
        print(f"CPI {series_id}: {len(annual):,} annual values, {annual['year'].min()}-{annual['year'].max()}")
    return annual


def load_cpi(path: str | Path) -> pd.DataFrame:
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"CPI file not found: {path}")
    cpi = pd.read_csv(path)
    cpi.columns = [str(c).strip().lower() for c in cpi.columns]
    require_columns(cpi, ["year", "cpi"], str(path))
    cpi["year"] = cpi["year"].astype(int)
    cpi["cpi"] = pd.to_numeric(cpi["cpi"], errors="coerce")
    return cpi[["year", "cpi"]].dropna()


def deflate(
    panel: pd.DataFrame,
    cpi: pd.DataFrame,
    value_cols: str | Sequence[str],
    base_year: int,
    year_col: str = "year",
    suffix: str = "_real",
) -> pd.DataFrame:
    """real = nominal * cpi[base_year] / cpi[year], written to `<col><suffix>`."""
    value_cols = [value_cols] if isinstance(value_cols, str) else list(value_cols)
    require_columns(panel, [year_col] + value_cols, "deflation input")
    series = cpi.set_index("year")["cpi"]
    if int(base_year) not in series.index:
        raise ValueError(f"CPI base year {base_year} not in CPI series ({series.index.min()}-{series.index.max()}).")
    years = panel[year_col].dropna().astype(int).unique()
    missing = sorted(set(years).difference(series.index))
    if missing:
        raise ValueError(f"CPI missing for panel years: {missing}")
    work = panel.copy()
    factor = float(series.loc[int(base_year)]) / work[year_col].astype(int).map(series)
    for col in value_cols:
        work[f"{col}{suffix}"] = pd.to_numeric(work[col], errors="coerce") * factor
    return work
