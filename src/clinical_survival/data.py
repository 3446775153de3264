from __future__ import annotations
from typing import Dict, List, Optional, Sequence
import json
import logging
from pathlib import Path

import numpy as np
import pandas as pd
import requests

logger = logging.getLogger("clinical_survival.data")

# Canonical record columns
ID_COL = "patient_id"
TIME_COL = "duration"
EVENT_COL = "event"
STAGE_COL = "stage_group"
AGE_COL = "age_years"
STAGE_LEVELS = ("I", "II", "III", "IV")

GDC_CASES_ENDPOINT = "https://api.gdc.cancer.gov/cases"
GDC_CLINICAL_FIELDS = (
    "submitter_id",
    "demographic.vital_status",
    "demographic.days_to_death",
    "demographic.gender",
    "diagnoses.days_to_last_follow_up",
    "diagnoses.ajcc_pathologic_stage",
    "diagnoses.age_at_diagnosis",
    "diagnoses.diagnosis_is_primary_disease",
)

_ROMAN = {1: "I", 2: "II", 3: "III", 4: "IV"}


def load_data(file_path: str) -> pd.DataFrame:
    """Load raw clinical records from CSV or pickle file.

    Args:
        file_path: Path to input file (CSV or pickle)

    Returns:
        DataFrame with one row per patient, columns as delivered by the source

    Raises:
        FileNotFoundError: If file_path does not exist
        ValueError: If file format is not supported

    Example:
        >>> df = load_data("data/clinical_raw.csv")
        >>> print(df.shape)
        (1098, 7)
    """
    file_path = Path(file_path)

    if not file_path.exists():
        raise FileNotFoundError(f"Data file not found: {file_path}")

    suffix = file_path.suffix.lower()

    if suffix == '.csv':
        logger.info(f"Loading CSV data from {file_path}")
        df = pd.read_csv(file_path)
    elif suffix in ['.pkl', '.pickle']:
        logger.info(f"Loading pickle data from {file_path}")
        df = pd.read_pickle(file_path)
    else:
        raise ValueError(
            f"Unsupported file format: {suffix}. "
            f"Supported formats: .csv, .pkl, .pickle"
        )

    logger.info(f"Loaded {len(df):,} records with {len(df.columns)} columns")
    return df


def simulate_cohort(
    n: int = 500,
    seed: int = 123,
    time_unit_days: float = 30.4375,
) -> pd.DataFrame:
    """Simulate a clinical cohort from a Cox-style exponential model.

    Event times follow an exponential distribution whose hazard is
    ``0.05 * exp(lp)`` with linear predictor::

        lp = 0.04 * (age - 60) + 0.5 * sex - 0.7 * treatment
             + 0.6 * biomarker1 + 0.3 * (stage - 2)

    biomarker2 is pure noise. Censoring is independent and exponential with
    rate 0.03. Simulated times are in months and are emitted in days so the
    records look like raw GDC clinical rows and go through the same endpoint
    derivation as real data.

    Args:
        n: Number of patients
        seed: Random seed
        time_unit_days: Days per simulated time unit

    Returns:
        Raw-style DataFrame with submitter_id, vital_status, days_to_death,
        days_to_last_follow_up, ajcc_pathologic_stage, age_at_diagnosis,
        sex, treatment, biomarker1, biomarker2

    Example:
        >>> raw = simulate_cohort(n=500, seed=123)
        >>> raw["vital_status"].value_counts().index.tolist()
        ['Dead', 'Alive']
    """
    rng = np.random.default_rng(seed)

    age = np.round(rng.normal(60, 10, n))
    sex = rng.binomial(1, 0.45, n)
    treatment = rng.binomial(1, 0.5, n)
    biomarker1 = rng.normal(size=n)
    biomarker2 = rng.normal(size=n)
    stage = rng.integers(1, 5, n)

    lp = (
        0.04 * (age - 60)
        + 0.5 * sex
        - 0.7 * treatment
        + 0.6 * biomarker1
        + 0.3 * (stage - 2)
    )

    baseline_hazard = 0.05
    u = rng.uniform(size=n)
    true_time = -np.log(u) / (baseline_hazard * np.exp(lp))
    censor_time = rng.exponential(scale=1 / 0.03, size=n)

    time = np.minimum(true_time, censor_time) * time_unit_days
    event = true_time <= censor_time

    raw = pd.DataFrame({
        "submitter_id": [f"SIM-{i:04d}" for i in range(1, n + 1)],
        "vital_status": np.where(event, "Dead", "Alive"),
        "days_to_death": np.where(event, time, np.nan),
        "days_to_last_follow_up": np.where(event, np.nan, time),
        "ajcc_pathologic_stage": [f"Stage {_ROMAN[s]}" for s in stage],
        "age_at_diagnosis": age,
        "sex": sex,
        "treatment": treatment,
        "biomarker1": biomarker1,
        "biomarker2": biomarker2,
    })

    logger.info(
        f"Simulated cohort created (n={n}, seed={seed}). "
        f"Event rate = {event.mean():.3f}"
    )
    return raw


def _flatten_case(hit: dict) -> dict:
    """Flatten one GDC case hit into a single clinical row.

    Demographic fields are copied as-is. Diagnosis fields come from the
    diagnosis flagged ``diagnosis_is_primary_disease``; GDC does not order a
    case's diagnoses, so the first one listed is only a fallback when none is
    flagged.
    """
    row = {"submitter_id": hit.get("submitter_id"), "case_id": hit.get("id")}
    row.update(hit.get("demographic") or {})
    diagnoses = hit.get("diagnoses") or []
    if diagnoses:
        primary = [d for d in diagnoses if str(d.get("diagnosis_is_primary_disease")).lower() == "true"]
        diagnosis = dict((primary or diagnoses)[0])
        diagnosis.pop("diagnosis_is_primary_disease", None)
        row.update(diagnosis)
    return row


def fetch_gdc_clinical(
    project: str = "TCGA-BRCA",
    fields: Sequence[str] = GDC_CLINICAL_FIELDS,
    page_size: int = 1000,
    timeout: int = 60,
    session: Optional[requests.Session] = None,
) -> pd.DataFrame:
    """Download open-access clinical records for a GDC project.

    Queries the GDC ``cases`` endpoint page by page and flattens the nested
    demographic/diagnosis documents into one row per case, using the same
    column names as TCGAbiolinks' ``GDCquery_clinic``.

    Args:
        project: GDC project identifier
        fields: GDC field paths to request
        page_size: Number of cases per request
        timeout: Request timeout in seconds
        session: Optional requests session (for connection reuse)

    Returns:
        Raw clinical DataFrame, one row per case

    Raises:
        requests.HTTPError: If the GDC API returns an error status
    """
    http = session or requests.Session()
    filters = {
        "op": "=",
        "content": {"field": "project.project_id", "value": project},
    }

    rows: List[Dict] = []
    offset = 0
    total = None
    logger.info(f"Querying GDC clinical data for {project}")
    while total is None or offset < total:
        params = {
            "filters": json.dumps(filters),
            "fields": ",".join(fields),
            "format": "JSON",
            "size": page_size,
            "from": offset,
        }
        response = http.get(GDC_CASES_ENDPOINT, params=params, timeout=timeout)
        response.raise_for_status()

        data = response.json()["data"]
        hits = data["hits"]
        total = data["pagination"]["total"]
        rows.extend(_flatten_case(h) for h in hits)
        if not hits:
            break
        offset += len(hits)

    if total is not None and len(rows) < total:
        logger.warning(f"Retrieved {len(rows)} of {total} cases for {project}")

    df = pd.DataFrame(rows)
    logger.info(f"Downloaded {len(df):,} clinical records with {len(df.columns)} columns")
    return df


def to_structured_y(df: pd.DataFrame) -> np.ndarray:
    """Create scikit-survival structured array from canonical records.

    Args:
        df: DataFrame containing EVENT_COL and TIME_COL columns

    Returns:
        Structured numpy array with dtype=[('event', bool), ('time', float)]

    Example:
        >>> df = pd.DataFrame({'event': [1, 0], 'duration': [120.0, 800.0]})
        >>> y = to_structured_y(df)
        >>> y.dtype.names
        ('event', 'time')
    """
    y = np.array(
        list(zip(df[EVENT_COL].astype(bool).values, df[TIME_COL].astype(float).values)),
        dtype=[("event", bool), ("time", float)],
    )
    return y


def complete_cases(df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Keep rows with no missing value in the given columns.

    Models are fit on complete cases only; missing covariates are never imputed.
    """
    return df.dropna(subset=list(columns))


def split_X_y(df: pd.DataFrame, covariates: Sequence[str]):
    """Extract the covariate frame and structured survival array.

    Args:
        df: Canonical records (already filtered to complete cases)
        covariates: Covariate column names

    Returns:
        Tuple of (X, y) with X a DataFrame of covariates and y a structured array
    """
    X = df[list(covariates)]
    y = to_structured_y(df)
    return X, y


def categorical_levels(X: pd.DataFrame, categorical: Sequence[str]) -> Dict[str, list]:
    """Determine the level set of each categorical covariate.

    Ordered categoricals (such as stage_group) keep their declared levels;
    other columns use their sorted observed values.

    Args:
        X: Covariate frame
        categorical: Categorical column names

    Returns:
        Mapping column -> ordered list of levels, first level is the reference
    """
    levels = {}
    for col in categorical:
        values = X[col]
        if col == STAGE_COL:
            levels[col] = list(STAGE_LEVELS)
        elif isinstance(values.dtype, pd.CategoricalDtype):
            levels[col] = list(values.cat.categories)
        else:
            levels[col] = sorted(values.dropna().unique().tolist())
    return levels


def make_design_matrix(
    X: pd.DataFrame,
    covariates: Sequence[str],
    levels: Dict[str, list],
) -> pd.DataFrame:
    """Expand covariates into a numeric design matrix.

    Numeric covariates are used as-is. Each categorical covariate becomes one
    indicator column per non-reference level, named ``<column>_<level>``. The
    level sets are fixed by ``levels`` so a training fit and a later
    prediction always see the same columns, even when a level is absent from
    one of the subsets.

    Args:
        X: Covariate frame
        covariates: Covariates in model order
        levels: Level sets from categorical_levels (reference level first)

    Returns:
        Float DataFrame aligned with X.index

    Example:
        >>> X = pd.DataFrame({'age_years': [50.0, 61.0], 'stage_group': ['I', 'III']})
        >>> make_design_matrix(X, ['age_years', 'stage_group'], {'stage_group': ['I', 'II', 'III', 'IV']}).columns.tolist()
        ['age_years', 'stage_group_II', 'stage_group_III', 'stage_group_IV']
    """
    parts = []
    for col in covariates:
        if col in levels:
            cat = pd.Categorical(X[col].astype(object), categories=levels[col])
            for level in levels[col][1:]:
                parts.append(pd.Series(
                    (cat == level).astype(float), index=X.index, name=f"{col}_{level}"
                ))
        else:
            parts.append(pd.to_numeric(X[col]).astype(float).rename(col))
    return pd.concat(parts, axis=1)


def design_columns_for(covariate: str, design_columns: Sequence[str], levels: Dict[str, list]) -> List[str]:
    """Return the design matrix columns generated by one covariate."""
    if covariate in levels:
        return [f"{covariate}_{level}" for level in levels[covariate][1:]
                if f"{covariate}_{level}" in design_columns]
    return [covariate] if covariate in design_columns else []
