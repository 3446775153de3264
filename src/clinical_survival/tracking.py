"""Optional MLflow tracking of pipeline runs.

Tracking never decides the outcome of a run: every table is already on disk
before anything is logged, so a failing MLflow call is reported as a warning
and the pipeline carries on.
"""
from __future__ import annotations
import os
import logging
from pathlib import Path
from typing import Any, Callable, Dict, Optional
import mlflow
import mlflow.exceptions

EXPERIMENT_NAME = "clinical_survival"


def start_run(run_name: str, tracking_dir, tags: Dict[str, str] | None = None):
    """Start an MLflow run under the clinical_survival experiment.

    The tracking store is a local file store inside the run's output
    directory, so a run never writes outside the directory it was given.

    Args:
        run_name: Run name shown in the MLflow UI
        tracking_dir: Directory of the local MLflow file store
        tags: Optional run tags

    Returns:
        Active MLflow run, usable as a context manager

    Example:
        >>> with start_run("gdc_TCGA-BRCA", "outputs/run1/mlruns", tags={"source": "gdc"}):
        ...     safe_log_metrics({"test_cindex": 0.71})
    """
    mlflow.set_tracking_uri(Path(tracking_dir).absolute().as_uri())
    mlflow.set_experiment(EXPERIMENT_NAME)
    return mlflow.start_run(run_name=run_name, tags=tags)


def flatten_params(params: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
    """Flatten a nested configuration dictionary into dotted parameter names.

    Example:
        >>> flatten_params({"analysis": {"seed": 2026}})
        {'analysis.seed': 2026}
    """
    flat = {}
    for k, v in params.items():
        key = f"{prefix}{k}"
        if isinstance(v, dict):
            flat.update(flatten_params(v, prefix=f"{key}."))
        else:
            flat[key] = v
    return flat


def _guarded(action: Callable[[], None], what: str, logger: Optional[logging.Logger]) -> bool:
    """Run one MLflow call; report failure instead of raising."""
    try:
        action()
        return True
    except mlflow.exceptions.MlflowException as e:
        if logger:
            logger.warning(f"MLflow {what} failed: {e}", extra={"category": "mlflow_error"})
    except Exception as e:
        if logger:
            logger.error(f"Unexpected error in MLflow {what}: {e}", extra={"category": "mlflow_error"})
    return False


def safe_log_metrics(
    metrics: Dict[str, float],
    step: Optional[int] = None,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log metrics, skipping undefined (None or NaN) values.

    An undefined statistic such as the OOB C-index of a run whose every
    iteration was degenerate is left out rather than coerced to a number.

    Returns:
        True if logging succeeded, False if it failed
    """
    finite = {k: float(v) for k, v in metrics.items() if v is not None and v == v}
    return _guarded(lambda: mlflow.log_metrics(finite, step=step), "metrics logging", logger)


def safe_log_params(
    params: Dict[str, Any],
    logger: Optional[logging.Logger] = None
) -> bool:
    """Log a (possibly nested) configuration dictionary as run parameters."""
    flat = {
        k: str(v) if isinstance(v, (list, tuple)) else v
        for k, v in flatten_params(params).items()
    }
    return _guarded(lambda: mlflow.log_params(flat), "params logging", logger)


def safe_log_artifact(
    path: str,
    logger: Optional[logging.Logger] = None
) -> bool:
    """Attach a written table to the active run.

    Example:
        >>> safe_log_artifact("outputs/run1/tables/cox_summary.csv", logger=logger)
        True
    """
    if not os.path.exists(path):
        if logger:
            logger.warning(f"Artifact not found, skipping: {path}")
        return False
    return _guarded(lambda: mlflow.log_artifact(path), f"artifact logging for {path}", logger)
