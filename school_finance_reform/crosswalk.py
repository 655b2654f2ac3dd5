"""
LEAID <-> GOVID crosswalk.

The raw (leaid, govid) pairs observed in the modern finance files are
many-to-many. Only pairs where each side maps to exactly one key on the other
side are kept; ambiguous pairs are dropped outright, with no tie-breaking.
"""

from __future__ import annotations

from typing import Iterable

import duckdb as ddb
import pandas as pd

from school_finance_reform.helpers import assert_unique, require_columns

RELATIONSHIPS = ("1:1", "1:M", "M:1", "M:M")


def _is_placeholder(key: pd.Series, width: int, sentinels: Iterable[str]) -> pd.Series:
    key = key.astype("string").str.strip()
    bad = key.isna() | (key == "")
    bad |= key.str.len() != width
    bad |= ~key.str.fullmatch(r"\d+").fillna(False).astype(bool)
    bad |= key.str.fullmatch("0+").fillna(False)
    bad |= key.isin(list(sentinels)).fillna(False)
    return bad.fillna(True).astype(bool)


def clean_key_pairs(
    pairs: pd.DataFrame,
    leaid_sentinels: Iterable[str] = (),
    govid_sentinels: Iterable[str] = (),
    verbose: bool = True,
) -> pd.DataFrame:
    """Drop pairs with a missing, malformed or placeholder key on either side."""
    require_columns(pairs, ["leaid", "govid"], "crosswalk pairs")
    work = pairs.copy()
    bad_leaid = _is_placeholder(work["leaid"], 7, leaid_sentinels)
    bad_govid = _is_placeholder(work["govid"], 9, govid_sentinels)
    out = work[~(bad_leaid | bad_govid)].copy()
    if verbose:
        print(
            f"Crosswalk key cleaning: rows {len(work):,} -> {len(out):,}; "
            f"bad leaid={int(bad_leaid.sum()):,}, bad govid={int(bad_govid.sum()):,}"
        )
    return out


def classify_pairs_sql(view: str) -> str:
    """SQL classifying each distinct (leaid, govid) pair of `view` by cardinality."""
    return f"""
    WITH pairs AS (
        SELECT DISTINCT CAST(leaid AS VARCHAR) AS leaid, CAST(govid AS VARCHAR) AS govid
        FROM {view}
    ),
    per_leaid AS (
        SELECT leaid, COUNT(DISTINCT govid) AS n_govid_per_leaid
        FROM pairs
        GROUP BY leaid
    ),
    per_govid AS (
        SELECT govid, COUNT(DISTINCT leaid) AS n_leaid_per_govid
        FROM pairs
        GROUP BY govid
    )
    SELECT
        p.leaid,
        p.govid,
        l.n_govid_per_leaid,
        g.n_leaid_per_govid,
        CASE
            WHEN l.n_govid_per_leaid = 1 AND g.n_leaid_per_govid = 1 THEN '1:1'
            WHEN l.n_govid_per_leaid > 1 AND g.n_leaid_per_govid = 1 THEN '1:M'
            WHEN l.n_govid_per_leaid = 1 AND g.n_leaid_per_govid > 1 THEN 'M:1'
            ELSE 'M:M'
        END AS relationship
    FROM pairs p
    JOIN per_leaid l ON p.leaid = l.leaid
    JOIN per_govid g ON p.govid = g.govid
    ORDER BY p.leaid, p.govid
    """


def classify_pairs(pairs: pd.DataFrame) -> pd.DataFrame:
    """
    Distinct (leaid, govid) pairs across all years with their cardinality class.
    '1:M' = one leaid linked to several govids; 'M:1' = one govid linked to several leaids.
    """
    require_columns(pairs, ["leaid", "govid"], "crosswalk pairs")
    con = ddb.connect()
    con.register("pairs_raw", pairs[["leaid", "govid"]].astype(str))
    classified = con.sql(classify_pairs_sql("pairs_raw")).df()
    con.close()
    return classified


def build_crosswalk(
    pairs: pd.DataFrame,
    leaid_sentinels: Iterable[str] = (),
    govid_sentinels: Iterable[str] = (),
    verbose: bool = True,
) -> pd.DataFrame:
    """
    Canonical 1:1 crosswalk. Roughly half of the raw pairs are expected to be
    discarded; the result is injective in both directions.
    """
    cleaned = clean_key_pairs(pairs, leaid_sentinels, govid_sentinels, verbose=verbose)
    classified = classify_pairs(cleaned)
    crosswalk = classified[classified["relationship"] == "1:1"][["leaid", "govid"]].reset_index(drop=True)

    assert_unique(crosswalk, "leaid", "crosswalk")
    assert_unique(crosswalk, "govid", "crosswalk")

    if verbose:
        counts = classified["relationship"].value_counts().reindex(RELATIONSHIPS, fill_value=0)
        detail = ", ".join(f"{rel}={int(n):,}" for rel, n in counts.items())
        print(f"Crosswalk: distinct pairs {len(classified):,} -> {len(crosswalk):,} kept ({detail})")
    return crosswalk


def apply_crosswalk(historical: pd.DataFrame, crosswalk: pd.DataFrame, verbose: bool = True) -> pd.DataFrame:
    """Attach leaid to historical records by govid, keeping only full matches."""
    require_columns(historical, ["govid"], "historical finance")
    work = historical.drop(columns=["leaid"], errors="ignore")
    merged = work.merge(crosswalk[["leaid", "govid"]], on="govid", how="left", indicator=True)
    matched = merged[merged["_merge"] == "both"].drop(columns="_merge")
    if verbose:
        n_unmatched = int((merged["_merge"] == "left_only").sum())
        print(
            f"Historical -> crosswalk: rows {len(historical):,} -> {len(matched):,}; "
            f"unmatched govid rows dropped={n_unmatched:,}"
        )
    return matched.reset_index(drop=True)
