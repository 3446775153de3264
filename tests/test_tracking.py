"""Unit tests for clinical_survival.tracking module."""
import logging
import pytest
import mlflow

from clinical_survival.tracking import (
    EXPERIMENT_NAME,
    flatten_params,
    safe_log_artifact,
    safe_log_metrics,
    safe_log_params,
    start_run,
)


def test_flatten_params():
    """Test nested sections become dotted names."""
    flat = flatten_params({"analysis": {"seed": 2026, "covariates": ["age_years"]}, "source": "gdc"})

    assert flat == {"analysis.seed": 2026, "analysis.covariates": ["age_years"], "source": "gdc"}


class TestTrackedRun:
    """Logging into a local file store under tmp_path."""

    def test_metrics_params_artifacts(self, tmp_path):
        table = tmp_path / "cox_summary.csv"
        table.write_text("term,estimate\nage_years,0.03\n")

        with start_run("simulate", tmp_path / "mlruns", tags={"source": "simulate"}) as run:
            assert safe_log_metrics({"test_cindex": 0.71, "oob_mean_cindex": float("nan")})
            assert safe_log_params({"analysis": {"seed": 2026, "covariates": ("age_years",)}})
            assert safe_log_artifact(str(table))
            run_id = run.info.run_id

        logged = mlflow.get_run(run_id)
        assert logged.data.metrics == {"test_cindex": 0.71}
        assert logged.data.params["analysis.seed"] == "2026"
        assert logged.data.tags["source"] == "simulate"
        assert mlflow.get_experiment(logged.info.experiment_id).name == EXPERIMENT_NAME

    def test_missing_artifact_skipped(self, tmp_path, caplog):
        logger = logging.getLogger("tracking_test")

        with start_run("simulate", tmp_path / "mlruns"):
            with caplog.at_level(logging.WARNING, logger="tracking_test"):
                assert not safe_log_artifact(str(tmp_path / "absent.csv"), logger=logger)

        assert "Artifact not found" in caplog.text

    def test_failure_reported_not_raised(self, tmp_path, monkeypatch, caplog):
        """Test an MLflow error becomes a logged warning and a False result."""
        def broken(*args, **kwargs):
            raise mlflow.exceptions.MlflowException("store unavailable")

        monkeypatch.setattr(mlflow, "log_metrics", broken)
        logger = logging.getLogger("tracking_test")

        with caplog.at_level(logging.WARNING, logger="tracking_test"):
            assert safe_log_metrics({"test_cindex": 0.7}, logger=logger) is False

        assert "store unavailable" in caplog.text
