"""Pytest configuration and shared fixtures for clinical survival tests.

This module provides small hand-built raw clinical records, a simulated
cohort, fast pipeline configurations and run contexts writing to temporary
directories.
"""
import logging
import pytest
import pandas as pd
import numpy as np

from clinical_survival.config import (
    AnalysisConfig,
    ModelHyperparameters,
    PipelineConfig,
    RunContext,
)
from clinical_survival.data import simulate_cohort
from clinical_survival.endpoint import derive_endpoint


@pytest.fixture
def raw_records():
    """Raw GDC-style clinical rows exercising every derivation rule.

    Returns:
        pd.DataFrame: Eight rows; two are excluded (invalid time, unknown status)
    """
    return pd.DataFrame({
        "submitter_id": [f"TCGA-{i:02d}" for i in range(1, 9)],
        "vital_status": ["Dead", "Alive", " dead ", "ALIVE", "Not Reported", "Alive", "Dead", "Alive"],
        "days_to_death": [400, np.nan, "250", np.nan, np.nan, np.nan, 0, np.nan],
        "days_to_last_follow_up": [np.nan, 1200, np.nan, 800, 500, np.nan, np.nan, 365],
        "ajcc_pathologic_stage": [
            "Stage IIIA", "Stage II", "stage  iv", "Stage X",
            "Stage I", "Stage IIB", "Stage IA", None,
        ],
        "age_at_diagnosis": [25000, 55, 150, 20089, "unknown", 40, 18000, 61],
    })


@pytest.fixture(scope="session")
def simulated_raw():
    """Simulated raw cohort (n=500, seed=123)."""
    return simulate_cohort(n=500, seed=123)


@pytest.fixture
def simulated_config():
    """Fast configuration for the simulated cohort.

    Small bootstrap count and forest so model and pipeline tests stay quick.
    """
    config = PipelineConfig.for_source("simulate")
    config.analysis.n_bootstrap = 20
    config.hyperparameters = ModelHyperparameters(
        lasso_n_alphas=20, lasso_cv_folds=3, rsf_n_estimators=30, importance_n_repeats=2
    )
    return config


@pytest.fixture(scope="session")
def simulated_canonical(simulated_raw):
    """Canonical records derived from the simulated cohort."""
    config = PipelineConfig.for_source("simulate")
    return derive_endpoint(simulated_raw, config.schema, config.derivation).canonical


@pytest.fixture
def clinical_canonical():
    """Canonical age + stage records with a stage-driven hazard.

    Returns:
        pd.DataFrame: 200 records, no missing values
    """
    rng = np.random.default_rng(7)
    n = 200
    stage = rng.choice(["I", "II", "III", "IV"], size=n)
    age = rng.normal(60, 10, n)
    step = pd.Series(stage).map({"I": 0, "II": 1, "III": 2, "IV": 3}).to_numpy()
    true_time = rng.exponential(scale=1000 / np.exp(0.6 * step + 0.03 * (age - 60)))
    censor = rng.exponential(scale=2000, size=n)
    return pd.DataFrame({
        "patient_id": [f"P{i:03d}" for i in range(n)],
        "duration": np.minimum(true_time, censor) + 1.0,
        "event": (true_time <= censor).astype(int),
        "stage_group": pd.Categorical(stage, categories=["I", "II", "III", "IV"], ordered=True),
        "age_years": age,
    })


@pytest.fixture
def run_context(tmp_path):
    """Run context with default clinical configuration and a small bootstrap."""
    config = PipelineConfig(analysis=AnalysisConfig(n_bootstrap=20))
    return RunContext(config=config, output_dir=tmp_path / "run", logger=logging.getLogger("clinical_survival.test"))


@pytest.fixture
def sample_structured_y():
    """Create small structured survival array for testing.

    Returns:
        np.ndarray: Structured array with dtype=[('event', bool), ('time', float)]
    """
    return np.array(
        [(True, 12.5), (False, 24.0), (True, 6.0), (False, 18.0), (True, 30.0)],
        dtype=[("event", bool), ("time", float)]
    )


@pytest.fixture(autouse=True)
def cleanup_mlflow_runs():
    """Clean up MLflow tracking state after each test.

    Ensures tests don't interfere with each other's MLflow tracking.
    """
    import mlflow
    yield
    while mlflow.active_run() is not None:
        mlflow.end_run()
    mlflow.set_tracking_uri(None)
