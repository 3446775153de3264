"""Configuration for the clinical survival pipeline.

Every tunable used by the pipeline lives here as an explicit, overridable
dataclass field:

- SchemaMapping: candidate source column names per semantic field
- DerivationConfig: endpoint derivation rules (age unit threshold, etc.)
- ModelHyperparameters: Cox, lasso-Cox and random survival forest settings
- AnalysisConfig: covariates, seed, train fraction, bootstrap settings
- ExecutionConfig: sequential or joblib-parallel bootstrap execution
- PipelineConfig: master configuration, serialisable to/from JSON
- RunContext: per-run bundle of configuration, seed, output paths and logger
"""
from __future__ import annotations
from enum import Enum
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional
import os
import json
import logging
import multiprocessing

import numpy as np


class ExecutionMode(str, Enum):
    """Execution mode for the bootstrap validation loop.

    Attributes:
        PANDAS: Single-process, sequential iterations (default)
        MULTIPROCESSING: Parallel iterations using joblib workers
    """
    PANDAS = "pandas"
    MULTIPROCESSING = "mp"


@dataclass
class ExecutionConfig:
    """Configuration for execution mode and parallelization.

    Attributes:
        mode: Execution mode (pandas, mp)
        n_jobs: Number of parallel jobs. -1 means use all cores, 1 means sequential
        verbose: Verbosity level for joblib (0=silent, 10=progress bar, 50=detailed)
        backend: Joblib backend ('loky', 'threading', 'multiprocessing')

    Example:
        >>> config = ExecutionConfig()
        >>> config = ExecutionConfig(mode=ExecutionMode.MULTIPROCESSING, n_jobs=-1)
    """
    mode: ExecutionMode = ExecutionMode.PANDAS
    n_jobs: int = 1
    verbose: int = 0
    backend: str = "loky"

    def __post_init__(self):
        """Validate and normalize configuration."""
        if isinstance(self.mode, str):
            self.mode = ExecutionMode(self.mode)

        if self.n_jobs == -1:
            self.n_jobs = multiprocessing.cpu_count()
        elif self.n_jobs < 1:
            raise ValueError(f"n_jobs must be -1 or positive, got {self.n_jobs}")

        if self.mode == ExecutionMode.PANDAS:
            self.n_jobs = 1

    def is_parallel(self) -> bool:
        """Check if parallel execution is enabled.

        Returns:
            True if execution mode supports parallelism and n_jobs > 1
        """
        return self.mode != ExecutionMode.PANDAS and self.n_jobs > 1

    def __str__(self) -> str:
        return (
            f"ExecutionConfig(mode={self.mode.value}, "
            f"n_jobs={self.n_jobs}, "
            f"parallel={self.is_parallel()})"
        )


def create_execution_config(
    mode: Optional[str] = None,
    n_jobs: int = -1,
    verbose: int = 0
) -> ExecutionConfig:
    """Factory function to create ExecutionConfig from CLI-style arguments.

    Args:
        mode: Execution mode string ('pandas', 'mp'). None means pandas
        n_jobs: Number of parallel jobs (-1 = all cores)
        verbose: Verbosity level passed to joblib

    Returns:
        ExecutionConfig instance

    Example:
        >>> config = create_execution_config(mode='mp', n_jobs=4)
        >>> config.is_parallel()
        True
    """
    execution_mode = ExecutionMode(mode) if mode is not None else ExecutionMode.PANDAS
    return ExecutionConfig(mode=execution_mode, n_jobs=n_jobs, verbose=verbose)


# ============================================================================
# Source Schema
# ============================================================================

@dataclass
class SchemaMapping:
    """Ordered candidate column names for each semantic field.

    Source field names drift across data releases (e.g. the GDC renamed
    ``days_to_last_followup`` to ``days_to_last_follow_up``). Each semantic
    field resolves to the first candidate present in the raw records.

    Attributes:
        patient_id: Candidates for the patient identifier
        vital_status: Candidates for the vital status text ("Alive"/"Dead")
        days_to_death: Candidates for days from diagnosis to death (required)
        days_to_last_follow_up: Candidates for days to last contact (required)
        stage: Candidates for free-text disease stage
        age: Candidates for age at diagnosis (years or days)
    """
    patient_id: tuple[str, ...] = (
        "bcr_patient_barcode", "submitter_id", "case_id", "patient_id"
    )
    vital_status: tuple[str, ...] = ("vital_status",)
    days_to_death: tuple[str, ...] = ("days_to_death",)
    days_to_last_follow_up: tuple[str, ...] = (
        "days_to_last_follow_up", "days_to_last_followup"
    )
    stage: tuple[str, ...] = ("ajcc_pathologic_stage", "tumor_stage")
    age: tuple[str, ...] = ("age_at_diagnosis", "age")

    REQUIRED_FIELDS = ("days_to_death", "days_to_last_follow_up")

    def semantic_fields(self) -> list[str]:
        """Return semantic field names in declaration order."""
        return [f.name for f in fields(self)]

    def candidates(self, semantic_field: str) -> tuple[str, ...]:
        """Return the ordered candidate column names for a semantic field."""
        return tuple(getattr(self, semantic_field))


# ============================================================================
# Endpoint Derivation
# ============================================================================

@dataclass
class DerivationConfig:
    """Rules used to turn raw fields into the survival endpoint.

    Attributes:
        age_days_threshold: Raw ages above this value are read as days
        days_per_year: Divisor used to convert day-scale ages into years
        passthrough_columns: Extra raw columns copied unchanged into the
            canonical records (e.g. treatment arm, biomarkers)
    """
    age_days_threshold: float = 200.0
    """Age unit heuristic.

    Clinical exports store age at diagnosis either in years or in days. No
    human is older than 200 years and no adult is younger than 200 days, so
    values above the threshold are converted from days. This is an
    assumption about the source, not a guarantee.
    """

    days_per_year: float = 365.25
    """Days per year used for the age conversion."""

    passthrough_columns: tuple[str, ...] = ()
    """Raw columns carried into the canonical record set unchanged."""


# ============================================================================
# Model Hyperparameters
# ============================================================================

@dataclass
class ModelHyperparameters:
    """Hyperparameters for the survival models.

    Attributes:
        cox_penalizer: Ridge penalty for the lifelines Cox fit (0 = unpenalised)
        lasso_n_alphas: Number of penalty strengths on the lasso path
        lasso_alpha_min_ratio: Ratio of smallest to largest alpha on the path
        lasso_cv_folds: Folds used to select the lasso penalty strength
        rsf_n_estimators: Number of trees in the random survival forest
        rsf_min_samples_split: Minimum samples to split an RSF node
        rsf_min_samples_leaf: Minimum samples in an RSF leaf
        rsf_max_features: Features considered per split (None = all)
        importance_n_repeats: Permutation repeats for RSF importance
    """
    cox_penalizer: float = 0.0

    lasso_n_alphas: int = 100
    lasso_alpha_min_ratio: float = 0.01
    lasso_cv_folds: int = 5
    """Number of cross-validation folds for penalty selection.

    Valid range: [2, 10]
    """

    rsf_n_estimators: int = 300
    """Number of trees in the random survival forest.

    Valid range: [50, 2000]
    Larger forests give more stable importance rankings but fit slower.
    """

    rsf_min_samples_split: int = 10
    rsf_min_samples_leaf: int = 15
    rsf_max_features: Optional[str] = "sqrt"
    importance_n_repeats: int = 5


# ============================================================================
# Analysis Configuration
# ============================================================================

@dataclass
class AnalysisConfig:
    """Configuration for the analysis workflow.

    Attributes:
        seed: Single seed from which every random draw is derived
        covariates: Covariates entering the Cox, lasso and RSF models
        categorical: Subset of covariates treated as categorical
        group_column: Grouping covariate for Kaplan-Meier curves
        train_fraction: Fraction of records in the training split
        n_bootstrap: Number of bootstrap iterations
        min_oob_size: Smallest out-of-bag set that is evaluated
        ph_alpha: Significance level used to flag PH violations
        run_lasso: Whether to fit the lasso-penalised Cox model
        run_ensemble: Whether to fit the random survival forest
    """
    seed: int = 2026
    """Random seed for reproducible splits, resamples and simulation."""

    covariates: tuple[str, ...] = ("age_years", "stage_group")
    categorical: tuple[str, ...] = ("stage_group",)
    group_column: str = "stage_group"

    train_fraction: float = 0.7
    """Fraction of records used for training in train/test validation.

    Valid range: (0.0, 1.0)
    """

    n_bootstrap: int = 200
    """Number of bootstrap iterations for out-of-bag validation."""

    min_oob_size: int = 5
    """Iterations whose out-of-bag set is smaller than this are recorded as missing."""

    ph_alpha: float = 0.05
    run_lasso: bool = True
    run_ensemble: bool = True

    def __post_init__(self):
        if not 0.0 < self.train_fraction < 1.0:
            raise ValueError(f"train_fraction must be in (0, 1), got {self.train_fraction}")
        if self.n_bootstrap < 1:
            raise ValueError(f"n_bootstrap must be positive, got {self.n_bootstrap}")
        unknown = set(self.categorical) - set(self.covariates)
        if unknown:
            raise ValueError(f"categorical columns {sorted(unknown)} are not covariates")


# ============================================================================
# Master Configuration
# ============================================================================

SIMULATED_COVARIATES = ("treatment", "age_years", "sex", "stage_group", "biomarker1", "biomarker2")


@dataclass
class PipelineConfig:
    """Master configuration for the clinical survival pipeline.

    Attributes:
        schema: Candidate column names per semantic field
        derivation: Endpoint derivation rules
        hyperparameters: Model hyperparameters
        analysis: Covariates, seed and validation settings
        execution: Sequential or parallel bootstrap execution
        source: Where raw records come from ("simulate", "gdc", "file")
        project: GDC project identifier used when source="gdc"
        n_simulated: Cohort size used when source="simulate"
        tracking_enabled: Whether to log the run to MLflow
        description: Optional description of this configuration

    Example:
        >>> config = PipelineConfig.for_source("simulate")
        >>> config.analysis.group_column
        'treatment'
        >>> config.save("outputs/config.json")
        >>> loaded = PipelineConfig.load("outputs/config.json")
    """
    schema: SchemaMapping = field(default_factory=SchemaMapping)
    derivation: DerivationConfig = field(default_factory=DerivationConfig)
    hyperparameters: ModelHyperparameters = field(default_factory=ModelHyperparameters)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)

    source: str = "gdc"
    project: str = "TCGA-BRCA"
    n_simulated: int = 500
    tracking_enabled: bool = False
    description: str = ""

    @classmethod
    def for_source(cls, source: str) -> "PipelineConfig":
        """Create a configuration with defaults suited to a data source.

        The simulated cohort carries treatment, sex and biomarker columns in
        addition to stage and age, and its Kaplan-Meier comparison is by
        treatment arm. GDC and file sources use the clinical age + stage model.

        Args:
            source: One of "simulate", "gdc", "file"

        Returns:
            Configured instance
        """
        if source not in ("simulate", "gdc", "file"):
            raise ValueError(f"Unknown source: {source}")

        if source == "simulate":
            return cls(
                derivation=DerivationConfig(
                    passthrough_columns=("treatment", "sex", "biomarker1", "biomarker2")
                ),
                analysis=AnalysisConfig(
                    seed=123,
                    covariates=SIMULATED_COVARIATES,
                    categorical=("stage_group",),
                    group_column="treatment",
                ),
                source=source,
            )
        return cls(source=source)

    def to_dict(self) -> dict:
        """Convert configuration to a JSON-serialisable dictionary."""
        def _dataclass_to_dict(obj):
            """Recursively convert dataclass to dict."""
            if hasattr(obj, '__dataclass_fields__'):
                return {
                    k: _dataclass_to_dict(v)
                    for k, v in obj.__dict__.items()
                }
            elif isinstance(obj, Enum):
                return obj.value
            elif isinstance(obj, tuple):
                return list(obj)
            else:
                return obj

        return _dataclass_to_dict(self)

    def save(self, path: str) -> None:
        """Save configuration to JSON file.

        Args:
            path: Path to output JSON file
        """
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "PipelineConfig":
        """Load configuration from JSON file.

        Args:
            path: Path to input JSON file

        Returns:
            PipelineConfig instance
        """
        with open(path) as f:
            data = json.load(f)

        def _tuples(d: dict) -> dict:
            return {k: tuple(v) if isinstance(v, list) else v for k, v in d.items()}

        return cls(
            schema=SchemaMapping(**_tuples(data['schema'])),
            derivation=DerivationConfig(**_tuples(data['derivation'])),
            hyperparameters=ModelHyperparameters(**data['hyperparameters']),
            analysis=AnalysisConfig(**_tuples(data['analysis'])),
            execution=ExecutionConfig(**data['execution']),
            source=data['source'],
            project=data.get('project', "TCGA-BRCA"),
            n_simulated=data.get('n_simulated', 500),
            tracking_enabled=data.get('tracking_enabled', False),
            description=data.get('description', '')
        )


# ============================================================================
# Run Context
# ============================================================================

@dataclass
class RunContext:
    """Explicit per-run state handed to every pipeline stage.

    Replaces ambient global state: the seed, the output sink and the logger
    travel with the context instead of being set process-wide.

    Attributes:
        config: Pipeline configuration for this run
        output_dir: Root directory for every artifact of this run
        logger: Logger used by all stages
    """
    config: PipelineConfig
    output_dir: Path
    logger: logging.Logger = field(
        default_factory=lambda: logging.getLogger("clinical_survival")
    )

    def __post_init__(self):
        self.output_dir = Path(self.output_dir)

    @property
    def seed(self) -> int:
        return self.config.analysis.seed

    def seed_sequence(self) -> np.random.SeedSequence:
        """Root seed sequence from which every random stream is spawned."""
        return np.random.SeedSequence(self.seed)

    def paths(self) -> dict:
        """Output directories for this run, created on first access."""
        from clinical_survival.utils import get_output_paths
        return get_output_paths(self.output_dir)
