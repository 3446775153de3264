"""Unit tests for clinical_survival.config module.

Tests configuration defaults, validation, JSON persistence and the run context.
"""
import json
import multiprocessing
import pytest
import numpy as np

from clinical_survival.config import (
    AnalysisConfig,
    ExecutionConfig,
    ExecutionMode,
    PipelineConfig,
    RunContext,
    SchemaMapping,
    SIMULATED_COVARIATES,
    create_execution_config,
)


class TestExecutionConfig:
    """Tests for ExecutionConfig and create_execution_config."""

    def test_defaults_sequential(self):
        """Test the default configuration runs sequentially."""
        config = ExecutionConfig()

        assert config.mode == ExecutionMode.PANDAS
        assert config.n_jobs == 1
        assert not config.is_parallel()

    def test_mode_from_string(self):
        """Test a mode string is converted to the enum."""
        config = ExecutionConfig(mode="mp", n_jobs=4)

        assert config.mode == ExecutionMode.MULTIPROCESSING
        assert config.is_parallel()

    def test_all_cores(self):
        """Test n_jobs=-1 resolves to the CPU count."""
        config = ExecutionConfig(mode="mp", n_jobs=-1)

        assert config.n_jobs == multiprocessing.cpu_count()

    def test_pandas_forces_single_job(self):
        """Test pandas mode ignores the requested job count."""
        assert ExecutionConfig(mode="pandas", n_jobs=8).n_jobs == 1

    @pytest.mark.parametrize("n_jobs", [0, -2])
    def test_invalid_n_jobs(self, n_jobs):
        with pytest.raises(ValueError, match="n_jobs"):
            ExecutionConfig(mode="mp", n_jobs=n_jobs)

    def test_factory(self):
        """Test CLI-style construction."""
        config = create_execution_config(mode="mp", n_jobs=2, verbose=10)

        assert config.is_parallel()
        assert config.verbose == 10
        assert create_execution_config().mode == ExecutionMode.PANDAS


class TestAnalysisConfig:
    """Tests for AnalysisConfig validation."""

    def test_defaults(self):
        """Test clinical defaults: age and stage, 70/30 split, 200 iterations."""
        config = AnalysisConfig()

        assert config.covariates == ("age_years", "stage_group")
        assert config.train_fraction == 0.7
        assert config.n_bootstrap == 200
        assert config.seed == 2026

    @pytest.mark.parametrize("fraction", [0.0, 1.0, -0.1, 1.2])
    def test_invalid_train_fraction(self, fraction):
        with pytest.raises(ValueError, match="train_fraction"):
            AnalysisConfig(train_fraction=fraction)

    def test_invalid_bootstrap(self):
        with pytest.raises(ValueError, match="n_bootstrap"):
            AnalysisConfig(n_bootstrap=0)

    def test_categorical_must_be_covariate(self):
        """Test categorical columns outside the covariate list are rejected."""
        with pytest.raises(ValueError, match="not covariates"):
            AnalysisConfig(covariates=("age_years",), categorical=("stage_group",))


class TestSchemaMapping:
    """Tests for SchemaMapping."""

    def test_semantic_fields(self):
        """Test fields are listed in declaration order."""
        assert SchemaMapping().semantic_fields() == [
            "patient_id", "vital_status", "days_to_death",
            "days_to_last_follow_up", "stage", "age",
        ]

    def test_follow_up_candidates(self):
        """Test both GDC spellings of the follow-up field are tried."""
        assert SchemaMapping().candidates("days_to_last_follow_up") == (
            "days_to_last_follow_up", "days_to_last_followup"
        )


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_for_simulate(self):
        """Test simulated-data defaults carry the simulated covariates."""
        config = PipelineConfig.for_source("simulate")

        assert config.source == "simulate"
        assert config.analysis.covariates == SIMULATED_COVARIATES
        assert config.analysis.group_column == "treatment"
        assert "treatment" in config.derivation.passthrough_columns

    def test_for_gdc(self):
        """Test GDC defaults keep the clinical covariates."""
        config = PipelineConfig.for_source("gdc")

        assert config.source == "gdc"
        assert config.analysis.covariates == ("age_years", "stage_group")

    def test_save_load_round_trip(self, tmp_path):
        """Test JSON persistence restores tuples and enums."""
        config = PipelineConfig.for_source("simulate")
        config.execution = ExecutionConfig(mode="mp", n_jobs=2)
        config.analysis.n_bootstrap = 50
        path = tmp_path / "nested" / "config.json"

        config.save(str(path))
        loaded = PipelineConfig.load(str(path))

        assert loaded.to_dict() == config.to_dict()
        assert loaded.analysis.covariates == SIMULATED_COVARIATES
        assert loaded.execution.mode == ExecutionMode.MULTIPROCESSING

    def test_to_dict_is_json(self):
        """Test the dictionary form serialises without custom encoders."""
        data = json.loads(json.dumps(PipelineConfig().to_dict()))

        assert data["execution"]["mode"] == "pandas"
        assert data["analysis"]["covariates"] == ["age_years", "stage_group"]


class TestRunContext:
    """Tests for RunContext."""

    def test_seed_from_config(self, tmp_path):
        context = RunContext(config=PipelineConfig(analysis=AnalysisConfig(seed=11)), output_dir=tmp_path)

        assert context.seed == 11

    def test_seed_sequence_reproducible(self, tmp_path):
        """Test spawned streams are identical for the same seed."""
        context = RunContext(config=PipelineConfig(), output_dir=tmp_path)

        a = np.random.default_rng(context.seed_sequence().spawn(3)[2]).integers(0, 1000, 5)
        b = np.random.default_rng(context.seed_sequence().spawn(3)[2]).integers(0, 1000, 5)

        assert np.array_equal(a, b)

    def test_paths_created(self, tmp_path):
        """Test output paths are rooted at the run directory."""
        context = RunContext(config=PipelineConfig(), output_dir=str(tmp_path / "run"))

        paths = context.paths()

        assert (tmp_path / "run" / "tables").is_dir()
        assert paths["base_dir"] == str(tmp_path / "run")
