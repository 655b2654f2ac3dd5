"""
Unit tests for district -> tract -> county aggregation.
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

from school_finance_reform.aggregate import (  # type: ignore
    classify_county_years,
    collapse_untracted,
    district_to_tract,
    tract_to_county,
)


def build_sample_alloc() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "tract_id": ["01001010100", "01001010100", "01001010200", "01001010300"],
            "county_id": ["01001"] * 4,
            "state_fips": ["01"] * 4,
            "leaid": ["0100001", "0100002", "0100001", "0100003"],
            "untracted": [False] * 4,
            "tract_pop": [1000.0, 1000.0, 500.0, 700.0],
            "alloc_pop": [600.0, 400.0, 500.0, 700.0],
        }
    )


def build_sample_district_panel() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "leaid": ["0100001", "0100001", "0100002", "0100002"],
            "year": [1970, 1971, 1970, 1971],
            "ppe": [100.0, 110.0, 200.0, np.nan],
            "good": [True, True, False, False],
        }
    )


def build_sample_tract_panel() -> pd.DataFrame:
    rows = [
        # county, tract, untracted, ppe, tract_pop, good
        ("01001", "01001010100", False, 100.0, 300.0, True),
        ("01001", "01001010200", False, 200.0, 100.0, True),
        ("01003", "01003000000", True, 80.0, 50.0, True),
        ("01005", "01005010100", False, 100.0, 600.0, True),
        ("01005", "01005000000", True, 200.0, 50.0, True),
        ("01007", "01007010100", False, 100.0, 500.0, True),
        ("01007", "01007000001", True, 200.0, 40.0, True),
        ("01007", "01007000002", True, 400.0, 60.0, False),
        ("01009", "01009010100", False, 100.0, 1200.0, True),
        ("01009", "01009000000", True, 500.0, 10.0, True),
        ("01011", "01011010100", None, 100.0, 10.0, True),
    ]
    panel = pd.DataFrame(rows, columns=["county_id", "tract_id", "untracted", "ppe", "tract_pop", "good"])
    panel["state_fips"] = "01"
    panel["year"] = 1970
    return panel


def build_sample_county_pop() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "county_id": ["01001", "01003", "01005", "01007", "01009"],
            "county_pop": [400.0, 50.0, 1000.0, 1000.0, 1000.0],
        }
    )


def test_tract_spending_is_allocation_weighted() -> None:
    tract = district_to_tract(
        build_sample_alloc(), build_sample_district_panel(), flag_cols=["good"], verbose=False
    ).set_index(["tract_id", "year"])

    assert tract.loc[("01001010100", 1970), "ppe"] == pytest.approx((600 * 100 + 400 * 200) / 1000)
    # district with null spending drops out of the mean for that year
    assert tract.loc[("01001010100", 1971), "ppe"] == pytest.approx(110.0)
    assert tract.loc[("01001010200", 1970), "ppe"] == pytest.approx(100.0)
    assert tract.loc[("01001010100", 1970), "tract_pop"] == pytest.approx(1000.0)


def test_tract_flags_are_and_over_serving_districts() -> None:
    tract = district_to_tract(
        build_sample_alloc(), build_sample_district_panel(), flag_cols=["good"], verbose=False
    )
    flags = tract.drop_duplicates("tract_id").set_index("tract_id")["good"]

    assert not flags["01001010100"]
    assert flags["01001010200"]
    # tract served only by a district with no finance record has no tract-years
    assert "01001010300" not in flags.index


def test_county_status_classification() -> None:
    status = classify_county_years(build_sample_tract_panel()).set_index("county_id")["county_status"]

    assert status.to_dict() == {
        "01001": "fully_tracted",
        "01003": "fully_untracted",
        "01005": "mixed",
        "01007": "multiply_untracted",
        "01009": "mixed",
        "01011": "invalid",
    }


def test_untracted_rows_collapse_to_one_per_county_year() -> None:
    panel = build_sample_tract_panel()
    collapsed = collapse_untracted(panel[panel["county_id"] == "01007"], flag_cols=["good"])
    untracted = collapsed[collapsed["untracted"].astype(bool)]

    assert len(untracted) == 1
    assert untracted["ppe"].iloc[0] == pytest.approx(300.0)
    assert untracted["tract_pop"].iloc[0] == pytest.approx(100.0)
    assert not untracted["good"].iloc[0]


def test_county_spending_by_status() -> None:
    county = tract_to_county(
        build_sample_tract_panel(), build_sample_county_pop(), flag_cols=["good"], verbose=False
    ).set_index("county_id")

    assert county.loc["01001", "ppe"] == pytest.approx((300 * 100 + 100 * 200) / 400)
    assert county.loc["01003", "ppe"] == pytest.approx(80.0)
    # residual 1000 - 600 = 400 on the untracted remainder
    assert county.loc["01005", "ppe"] == pytest.approx((600 * 100 + 400 * 200) / 1000)
    assert county.loc["01005", "residual_pop"] == pytest.approx(400.0)
    # two remainders collapse to mean 300 with residual 500
    assert county.loc["01007", "ppe"] == pytest.approx((500 * 100 + 500 * 300) / 1000)


def test_invalid_county_years_are_excluded() -> None:
    county = tract_to_county(build_sample_tract_panel(), build_sample_county_pop(), flag_cols=["good"], verbose=False)

    assert "01011" not in set(county["county_id"])
    assert not county.duplicated(["county_id", "year"]).any()


def test_negative_residual_is_kept_and_flagged() -> None:
    county = tract_to_county(
        build_sample_tract_panel(), build_sample_county_pop(), flag_cols=["good"], verbose=False
    ).set_index("county_id")

    assert county.loc["01009", "residual_pop"] == pytest.approx(-200.0)
    assert county.loc["01009", "negative_residual"]
    assert not county.loc["01005", "negative_residual"]


def test_county_flag_is_and_of_constituents() -> None:
    county = tract_to_county(
        build_sample_tract_panel(), build_sample_county_pop(), flag_cols=["good"], verbose=False
    ).set_index("county_id")

    assert county.loc["01001", "good"]
    # constituents [T, T, F] -> F
    assert not county.loc["01007", "good"]
    assert county["good"].dtype == bool


def test_missing_county_population_gives_untracted_zero_weight() -> None:
    county = tract_to_county(build_sample_tract_panel(), None, flag_cols=["good"], verbose=False).set_index("county_id")

    assert county.loc["01005", "ppe"] == pytest.approx(100.0)
    assert county.loc["01003", "ppe"] == pytest.approx(80.0)
