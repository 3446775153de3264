"""Overall-survival endpoint derivation.

Turns heterogeneous raw clinical rows into canonical survival records:

- duration: days to death when recorded, otherwise days to last follow-up
- event: 1 for "dead", 0 for "alive", missing for anything else
- stage_group: I/II/III/IV parsed from free-text stage
- age_years: age at diagnosis, converted from days when the value is day-scale

Records whose duration is missing or non-positive, or whose event status is
unknown, are excluded and counted in an exclusion ledger. A missingness report
is computed over the retained records.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Iterable
import logging
import re

import numpy as np
import pandas as pd

from clinical_survival.config import SchemaMapping, DerivationConfig
from clinical_survival.data import (
    ID_COL,
    TIME_COL,
    EVENT_COL,
    STAGE_COL,
    AGE_COL,
    STAGE_LEVELS,
)
from clinical_survival.errors import SchemaError

logger = logging.getLogger("clinical_survival.endpoint")

EVENT_CODES = {"dead": 1.0, "alive": 0.0}

# Longest numeral first so "stage iii" is never read as "stage i"; an optional
# sub-stage letter (IIIA, IB1) is allowed before the token boundary.
STAGE_PATTERN = re.compile(r"\bstage\s+(iv|iii|ii|i)(?:[a-c][0-9]?)?\b")

EXCLUSION_RULES = (
    "Missing/invalid OS time (<=0 or NA)",
    "Missing event status (vital_status unknown)",
)

MISSINGNESS_FIELDS = (TIME_COL, EVENT_COL, STAGE_COL, AGE_COL)


@dataclass
class EndpointResult:
    """Artifacts produced by endpoint derivation.

    Attributes:
        canonical: Retained canonical survival records, positional index
        exclusions: Exclusion ledger (rule, n_excluded, n_excluded_sequential)
        missingness: Missingness report over the canonical records
        resolved: Semantic field -> source column used (None if unresolved)
        n_raw: Number of raw records received
    """
    canonical: pd.DataFrame
    exclusions: pd.DataFrame
    missingness: pd.DataFrame
    resolved: Dict[str, Optional[str]]
    n_raw: int

    @property
    def n_retained(self) -> int:
        return len(self.canonical)


def resolve_schema(schema: SchemaMapping, columns: Iterable[str]) -> Dict[str, Optional[str]]:
    """Resolve each semantic field to the first candidate column present.

    Args:
        schema: Candidate column names per semantic field
        columns: Columns available in the raw records

    Returns:
        Mapping semantic field -> column name, or None when no candidate exists

    Raises:
        SchemaError: If a required field (death time, follow-up time) has no
            matching column
    """
    available = set(columns)
    resolved = {}
    for semantic_field in schema.semantic_fields():
        candidates = schema.candidates(semantic_field)
        resolved[semantic_field] = next((c for c in candidates if c in available), None)
        if resolved[semantic_field] is None and semantic_field in SchemaMapping.REQUIRED_FIELDS:
            raise SchemaError(semantic_field, candidates)
    return resolved


def derive_event(vital_status: pd.Series) -> pd.Series:
    """Map vital status text to an event indicator (1 dead, 0 alive, NaN otherwise)."""
    def _code(value):
        if pd.isna(value):
            return np.nan
        return EVENT_CODES.get(str(value).strip().casefold(), np.nan)

    return vital_status.map(_code).astype(float).rename(EVENT_COL)


def derive_duration(days_to_death: pd.Series, days_to_last_follow_up: pd.Series) -> pd.Series:
    """Use days to death when numeric, otherwise days to last follow-up."""
    death = pd.to_numeric(days_to_death, errors="coerce")
    follow_up = pd.to_numeric(days_to_last_follow_up, errors="coerce")
    return death.where(death.notna(), follow_up).astype(float).rename(TIME_COL)


def normalize_stage(text) -> Optional[str]:
    """Parse free-text stage into I, II, III or IV.

    Example:
        >>> normalize_stage("Stage IIIA")
        'III'
        >>> normalize_stage("  stage   ii ")
        'II'
        >>> normalize_stage("Stage X") is None
        True
    """
    if text is None or (not isinstance(text, str) and pd.isna(text)):
        return None
    cleaned = " ".join(str(text).casefold().split())
    match = STAGE_PATTERN.search(cleaned)
    if match is None:
        return None
    return match.group(1).upper()


def normalize_stage_series(stage: pd.Series) -> pd.Series:
    """Vectorised normalize_stage returning an ordered categorical."""
    values = stage.map(normalize_stage)
    return pd.Series(
        pd.Categorical(values, categories=list(STAGE_LEVELS), ordered=True),
        index=stage.index,
        name=STAGE_COL,
    )


def normalize_age(
    age,
    threshold: float = 200.0,
    days_per_year: float = 365.25,
):
    """Convert age at diagnosis to years.

    Values above ``threshold`` are assumed to be in days and divided by
    ``days_per_year``; everything else is assumed to already be in years.

    Args:
        age: Scalar or Series of raw ages (non-numeric values become missing)
        threshold: Day-scale threshold
        days_per_year: Days per year for the conversion

    Returns:
        Age in years, same shape as the input

    Example:
        >>> normalize_age(150)
        150.0
        >>> round(normalize_age(25000), 1)
        68.4
    """
    if isinstance(age, pd.Series):
        raw = pd.to_numeric(age, errors="coerce").astype(float)
        return raw.where(~(raw > threshold), raw / days_per_year).rename(AGE_COL)

    value = pd.to_numeric(pd.Series([age]), errors="coerce").astype(float).iloc[0]
    if pd.notna(value) and value > threshold:
        return float(value / days_per_year)
    return float(value)


def missingness_report(canonical: pd.DataFrame, fields=MISSINGNESS_FIELDS) -> pd.DataFrame:
    """Count and percentage of missing values per field.

    Args:
        canonical: Canonical records
        fields: Fields to report on

    Returns:
        DataFrame with columns field, n_missing, pct_missing. pct_missing is
        NaN when there are no records.
    """
    n = len(canonical)
    rows = []
    for name in fields:
        n_missing = int(canonical[name].isna().sum())
        pct = round(100 * n_missing / n, 2) if n else np.nan
        rows.append({"field": name, "n_missing": n_missing, "pct_missing": pct})
    return pd.DataFrame(rows, columns=["field", "n_missing", "pct_missing"])


def derive_endpoint(
    raw: pd.DataFrame,
    schema: Optional[SchemaMapping] = None,
    config: Optional[DerivationConfig] = None,
) -> EndpointResult:
    """Derive canonical survival records from raw clinical rows.

    Exclusion rules are evaluated in a fixed order against the pre-exclusion
    set: (a) duration missing or non-positive, (b) event missing. Each rule's
    ``n_excluded`` is counted independently, so rules may overlap; the
    ``n_excluded_sequential`` column attributes every dropped record to the
    first rule that removes it, so it sums with the retained count to the raw
    count.

    Args:
        raw: Raw clinical records (not modified)
        schema: Candidate column names; defaults to SchemaMapping()
        config: Derivation rules; defaults to DerivationConfig()

    Returns:
        EndpointResult with canonical records, exclusion ledger, missingness
        report and the resolved source columns

    Raises:
        SchemaError: If a required source field or a configured pass-through
            column is missing

    Example:
        >>> result = derive_endpoint(raw)
        >>> result.exclusions
                                                  rule  n_excluded  n_excluded_sequential
        0          Missing/invalid OS time (<=0 or NA)          12                     12
        1  Missing event status (vital_status unknown)           1                      0
    """
    schema = schema or SchemaMapping()
    config = config or DerivationConfig()

    resolved = resolve_schema(schema, raw.columns)
    n_raw = len(raw)
    logger.info(f"Raw clinical rows: {n_raw:,}, columns: {len(raw.columns)}")
    for semantic_field, column in resolved.items():
        logger.info(f"Using column for {semantic_field}: {column}")

    missing_passthrough = [c for c in config.passthrough_columns if c not in raw.columns]
    if missing_passthrough:
        raise SchemaError(missing_passthrough[0], missing_passthrough[:1])

    def _column(semantic_field: str) -> pd.Series:
        name = resolved[semantic_field]
        if name is None:
            return pd.Series(np.nan, index=raw.index, dtype=object)
        return raw[name]

    derived = pd.DataFrame(index=raw.index)
    if resolved["patient_id"] is not None:
        derived[ID_COL] = raw[resolved["patient_id"]].astype(str)
    derived[TIME_COL] = derive_duration(_column("days_to_death"), _column("days_to_last_follow_up"))
    derived[EVENT_COL] = derive_event(_column("vital_status"))
    derived[STAGE_COL] = normalize_stage_series(_column("stage"))
    derived[AGE_COL] = normalize_age(
        _column("age"),
        threshold=config.age_days_threshold,
        days_per_year=config.days_per_year,
    )
    for col in config.passthrough_columns:
        derived[col] = raw[col].copy()

    invalid_duration = derived[TIME_COL].isna() | (derived[TIME_COL] <= 0)
    missing_event = derived[EVENT_COL].isna()

    exclusions = pd.DataFrame({
        "rule": list(EXCLUSION_RULES),
        "n_excluded": [int(invalid_duration.sum()), int(missing_event.sum())],
        "n_excluded_sequential": [
            int(invalid_duration.sum()),
            int((missing_event & ~invalid_duration).sum()),
        ],
    })

    keep = ~invalid_duration & ~missing_event
    canonical = derived.loc[keep].reset_index(drop=True)
    canonical[EVENT_COL] = canonical[EVENT_COL].astype(int)

    for rule, n in zip(exclusions["rule"], exclusions["n_excluded"]):
        logger.info(f"Exclusion rule '{rule}': {n:,} records")
    logger.info(f"Final analysis dataset rows: {len(canonical):,} (from {n_raw:,})")

    return EndpointResult(
        canonical=canonical,
        exclusions=exclusions,
        missingness=missingness_report(canonical),
        resolved=resolved,
        n_raw=n_raw,
    )
