"""
Unit tests for tract population allocation and dominant-district selection.
"""

from __future__ import annotations

from pathlib import Path
import sys

import numpy as np
import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from school_finance_reform.tract_allocation import (  # type: ignore
    allocate_tract_population,
    check_allocation_totals,
    drop_special_tracts,
    select_dominant_district,
)


def build_sample_geo() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "tract_id": ["01001010100", "01001010100", "01001010200", "01001010200", "01001010300", "01001010300"],
            "level": [3, 3, 3, 3, 1, 1],
            "leaid": ["0100002", "0100001", "0100003", "0100001", "0100002", "0100001"],
            "population": [1000.0, 1000.0, 2000.0, 2000.0, 800.0, np.nan],
            "pct_of_tract": [60.0, 40.0, 50.0, 50.0, 75.0, np.nan],
        }
    )


def test_allocated_population_adds_back_to_tract() -> None:
    alloc = allocate_tract_population(build_sample_geo())
    sums = alloc.groupby(["tract_id", "level"])["alloc_pop"].sum()

    assert sums[("01001010100", 3)] == pytest.approx(1000.0)
    assert sums[("01001010200", 3)] == pytest.approx(2000.0)
    assert check_allocation_totals(alloc).empty


def test_missing_population_or_share_counts_as_zero() -> None:
    alloc = allocate_tract_population(build_sample_geo())
    incomplete = alloc[alloc["tract_id"] == "01001010300"].set_index("leaid")

    assert incomplete.loc["0100002", "alloc_pop"] == pytest.approx(600.0)
    assert incomplete.loc["0100001", "alloc_pop"] == pytest.approx(0.0)
    assert alloc["alloc_pop"].notna().all()


def test_allocation_check_reports_inconsistent_tracts() -> None:
    geo = pd.DataFrame(
        {
            "tract_id": ["01001010400", "01001010400"],
            "level": [3, 3],
            "leaid": ["0100001", "0100002"],
            "population": [1000.0, 900.0],
            "pct_of_tract": [70.0, 30.0],
        }
    )
    bad = check_allocation_totals(allocate_tract_population(geo))

    assert bad["tract_id"].tolist() == ["01001010400"]
    assert bad.loc[0, "alloc_sum"] == pytest.approx(970.0)


def test_dominant_district_largest_share_then_smallest_leaid() -> None:
    dominant = select_dominant_district(allocate_tract_population(build_sample_geo()), verbose=False)
    picked = dominant.set_index(["tract_id", "level"])["leaid"]

    assert picked[("01001010100", 3)] == "0100002"
    # 50/50 split -> lexicographically smallest leaid
    assert picked[("01001010200", 3)] == "0100001"
    assert not dominant.duplicated(["tract_id", "level"]).any()


def test_special_tract_ranges_are_dropped() -> None:
    geo = pd.DataFrame({"tract_base_num": [100, 9300, 9400, 9499, 9550, 9600, 9850, 9999, 9700]})
    kept = drop_special_tracts(geo, verbose=False)

    assert kept["tract_base_num"].tolist() == [100, 9300, 9600, 9700]


def test_special_tract_ranges_are_configurable() -> None:
    geo = pd.DataFrame({"tract_base_num": [100, 9450, 9950]})
    kept = drop_special_tracts(geo, ranges={"water": [9900, 9999]}, verbose=False)

    assert kept["tract_base_num"].tolist() == [100, 9450]
