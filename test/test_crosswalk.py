"""
Unit tests for the LEAID <-> GOVID crosswalk.
"""

from __future__ import annotations

from pathlib import Path
import sys

import pandas as pd
import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from school_finance_reform.crosswalk import (  # type: ignore
    apply_crosswalk,
    build_crosswalk,
    classify_pairs,
    clean_key_pairs,
)

LEA_A, LEA_B, LEA_C, LEA_D = "0100001", "0100002", "0100003", "0100004"
GOV_1, GOV_2, GOV_3, GOV_4 = "015001001", "015001002", "015001003", "015001004"


def build_sample_pairs() -> pd.DataFrame:
    return pd.DataFrame(
        {
            "leaid": [LEA_A, LEA_A, LEA_B, LEA_D, LEA_C, LEA_C],
            "govid": [GOV_1, GOV_2, GOV_3, GOV_3, GOV_4, GOV_4],
            "year": [1990, 1990, 1990, 1991, 1990, 1991],
        }
    )


def test_only_one_to_one_pairs_survive() -> None:
    crosswalk = build_crosswalk(build_sample_pairs(), verbose=False)

    assert crosswalk.to_dict("records") == [{"leaid": LEA_C, "govid": GOV_4}]


def test_relationship_classes() -> None:
    classified = classify_pairs(build_sample_pairs()).set_index(["leaid", "govid"])["relationship"]

    assert classified[(LEA_A, GOV_1)] == "1:M"
    assert classified[(LEA_A, GOV_2)] == "1:M"
    assert classified[(LEA_B, GOV_3)] == "M:1"
    assert classified[(LEA_D, GOV_3)] == "M:1"
    assert classified[(LEA_C, GOV_4)] == "1:1"
    # repeated years collapse to one distinct pair
    assert len(classified) == 5


def test_crosswalk_is_injective_both_ways() -> None:
    pairs = pd.DataFrame(
        {
            "leaid": [f"01{i:05d}" for i in range(1, 9)] + ["0100009", "0100009"],
            "govid": [f"0150{i:05d}" for i in range(1, 9)] + ["015000100", "015000101"],
        }
    )
    crosswalk = build_crosswalk(pairs, verbose=False)

    assert crosswalk["leaid"].is_unique
    assert crosswalk["govid"].is_unique
    assert len(crosswalk) == 8
    assert "0100009" not in set(crosswalk["leaid"])


def test_placeholder_keys_are_dropped_before_classification() -> None:
    pairs = pd.DataFrame(
        {
            "leaid": ["0000000", "0100005", "12345", None, LEA_C, "N", "000000N"],
            "govid": ["015001005", "999999999", GOV_1, GOV_2, GOV_4, GOV_3, "015001006"],
        }
    )
    cleaned = clean_key_pairs(pairs, leaid_sentinels=["N"], govid_sentinels=["999999999"], verbose=False)

    assert cleaned.to_dict("records") == [{"leaid": LEA_C, "govid": GOV_4}]


def test_placeholder_sharing_does_not_spoil_real_pairs() -> None:
    # Without cleaning, the all-zero leaid would make GOV_4 look many-to-one.
    pairs = pd.DataFrame({"leaid": [LEA_C, "0000000"], "govid": [GOV_4, GOV_4]})
    crosswalk = build_crosswalk(pairs, verbose=False)

    assert crosswalk.to_dict("records") == [{"leaid": LEA_C, "govid": GOV_4}]


def test_apply_crosswalk_keeps_only_matched_historical_rows() -> None:
    crosswalk = pd.DataFrame({"leaid": [LEA_C], "govid": [GOV_4]})
    historical = pd.DataFrame(
        {
            "govid": [GOV_4, GOV_1],
            "year": [1967, 1967],
            "leaid": [pd.NA, pd.NA],
            "totalexp": [1000.0, 2000.0],
        }
    )
    linked = apply_crosswalk(historical, crosswalk, verbose=False)

    assert len(linked) == 1
    assert linked.loc[0, "leaid"] == LEA_C
    assert linked.loc[0, "totalexp"] == pytest.approx(1000.0)
