"""End-to-end clinical survival pipeline.

Each component runs as a PipelineStage over the same canonical record set:

    raw records -> EndpointStage -> canonical records
        canonical -> DescriptiveStage   (Kaplan-Meier + log-rank)
        canonical -> CoxStage           (Cox PH coefficient table)
        canonical -> LassoStage         (lasso Cox, optional)
        canonical -> DiagnosticsStage   (Schoenfeld PH tests)
        canonical -> ValidationStage    (train/test + out-of-bag bootstrap)
        canonical -> EnsembleStage      (random survival forest, optional)

Stages write their tables under ``<output_dir>/tables`` and return a
StageResult; run_pipeline sequences them, times each one and optionally logs
the run to MLflow.
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import os
import logging

import pandas as pd

from clinical_survival.config import PipelineConfig, RunContext
from clinical_survival.data import EVENT_COL, load_data, simulate_cohort, fetch_gdc_clinical
from clinical_survival.descriptive import kaplan_meier_by_group
from clinical_survival.diagnostics import check_proportional_hazards
from clinical_survival.endpoint import derive_endpoint
from clinical_survival.logging_config import capture_warnings, log_performance
from clinical_survival.models import (
    BaseSurvivalModel,
    build_models,
    fit_model,
    model_frame,
)
from clinical_survival.timing import Timer, log_execution_time
from clinical_survival.tracking import (
    start_run,
    safe_log_artifact,
    safe_log_metrics,
    safe_log_params,
)
from clinical_survival.utils import save_table, save_text
from clinical_survival.validation import (
    BootstrapResult,
    TrainTestResult,
    bootstrap_validate,
    train_test_validate,
)


@dataclass
class StageResult:
    """Output of one pipeline stage.

    Attributes:
        result: The stage's primary product (records, fitted model, result object)
        diagnostics: Row counts, summary statistics and written artifact paths
    """
    result: Any
    diagnostics: Dict[str, Any] = field(default_factory=dict)


class PipelineStage:
    """A single component run against the canonical record set."""

    name: str = "stage"

    def run(self, records: pd.DataFrame, context: RunContext) -> StageResult:
        raise NotImplementedError

    def _save(self, df: pd.DataFrame, context: RunContext, filename: str) -> str:
        path = save_table(df, context.paths()["tables"], filename)
        context.logger.info(f"{self.name}: saved {path}")
        return path


class EndpointStage(PipelineStage):
    """Raw clinical rows -> canonical survival records, ledger and missingness."""

    name = "endpoint"

    def run(self, records, context):
        config = context.config
        result = derive_endpoint(records, schema=config.schema, config=config.derivation)
        paths = context.paths()
        artifacts = {
            "canonical": save_table(result.canonical, paths["data"], "canonical_records.csv"),
            "exclusions": self._save(result.exclusions, context, "exclusions.csv"),
            "missingness": self._save(result.missingness, context, "missingness.csv"),
        }
        return StageResult(result, {
            "n_raw": result.n_raw,
            "n_retained": result.n_retained,
            "n_events": int(result.canonical[EVENT_COL].sum()),
            "artifacts": artifacts,
        })


class DescriptiveStage(PipelineStage):
    name = "descriptive"

    def run(self, records, context):
        group_column = context.config.analysis.group_column
        km = kaplan_meier_by_group(records, group_column)
        artifacts = {
            "km_summary": self._save(km.summary, context, "km_summary.csv"),
            "km_curves": self._save(km.curves, context, "km_curves.csv"),
            "logrank": self._save(km.logrank, context, "logrank.csv"),
        }
        context.logger.info(f"Log-rank test by {group_column}: p={km.p_value:.4g}")
        return StageResult(km, {"n_used": km.n_used, "logrank_p": km.p_value, "artifacts": artifacts})


class ModelStage(PipelineStage):
    """Fits a model wrapper on the complete cases of the canonical records."""

    def __init__(self, model: BaseSurvivalModel):
        self.model = model
        self.name = model.name

    def _fit(self, records, context):
        fitted, X, y = fit_model(records, self.model)
        diagnostics = {"n_used": len(X), "n_events": int(y["event"].sum())}
        return fitted, X, y, diagnostics


class CoxStage(ModelStage):
    def run(self, records, context):
        fitted, _, _, diagnostics = self._fit(records, context)
        table = fitted.coefficient_table()
        diagnostics["artifacts"] = {"cox_summary": self._save(table, context, "cox_summary.csv")}
        for row in table.itertuples():
            context.logger.info(
                f"Cox {row.term}: HR={row.hazard_ratio:.3f} "
                f"({row.hr_lower_95:.3f}-{row.hr_upper_95:.3f}), p={row.p_value:.4g}"
            )
        return StageResult(fitted, diagnostics)


class LassoStage(ModelStage):
    def run(self, records, context):
        fitted, _, _, diagnostics = self._fit(records, context)
        diagnostics.update({
            "best_alpha": fitted.best_alpha_,
            "n_nonzero": fitted.n_nonzero_,
            "artifacts": {
                "lasso_summary": self._save(fitted.coefficient_table(), context, "lasso_summary.csv"),
                "lasso_cv": self._save(fitted.cv_results(), context, "lasso_cv.csv"),
            },
        })
        return StageResult(fitted, diagnostics)


class DiagnosticsStage(PipelineStage):
    """Proportional hazards tests for an already fitted Cox model."""

    name = "diagnostics"

    def __init__(self, fitted_model):
        self.fitted_model = fitted_model

    def run(self, records, context):
        # Same complete-case filter as the fit, so X and y match the model's data
        X, y = model_frame(records, self.fitted_model.covariates, self.name)
        ph = check_proportional_hazards(
            self.fitted_model, X, y, time_transform="rank", alpha=context.config.analysis.ph_alpha
        )
        return StageResult(ph, {
            "global_p": ph.global_p_value,
            "violations": ph.violations,
            "artifacts": {"ph_test": self._save(ph.table, context, "ph_test.csv")},
        })


@dataclass
class ValidationResult:
    train_test: TrainTestResult
    bootstrap: BootstrapResult

    def summary_lines(self):
        """Plain-text validation summary written to c_index.txt."""
        boot = self.bootstrap
        return [
            f"Train N: {self.train_test.n_train}",
            f"Test N: {self.train_test.n_test}",
            f"Test-set Harrell's C-index: {self.train_test.cindex:.4f}",
            f"Bootstrap iterations: {boot.n_iterations}",
            f"OOB C-index N: {boot.n_defined}",
            f"OOB C-index degenerate iterations: {boot.n_degenerate}",
            f"OOB too small iterations: {boot.n_oob_too_small}",
            f"OOB other undefined iterations: {boot.n_other_missing}",
            f"OOB C-index mean: {boot.mean_cindex:.4f}",
            f"OOB C-index SD: {boot.sd_cindex:.4f}",
        ]


class ValidationStage(PipelineStage):
    name = "validation"

    def __init__(self, model: BaseSurvivalModel):
        self.model = model

    def run(self, records, context):
        with capture_warnings(context.logger) as warning_logger:
            train_test = train_test_validate(records, self.model, context)
            boot = bootstrap_validate(records, self.model, context)
        result = ValidationResult(train_test=train_test, bootstrap=boot)

        tables = context.paths()["tables"]
        artifacts = {
            "iterations": self._save(boot.iterations, context, "validation_bootstrap_iterations.csv"),
            "c_index": save_text(result.summary_lines(), tables, "c_index.txt"),
        }
        return StageResult(result, {
            "test_cindex": train_test.cindex,
            **{f"oob_{k}": v for k, v in boot.summary().items()},
            "warnings": warning_logger.summary(),
            "artifacts": artifacts,
        })


class EnsembleStage(ModelStage):
    def run(self, records, context):
        fitted, X, y, diagnostics = self._fit(records, context)
        n_repeats = context.config.hyperparameters.importance_n_repeats
        importance = fitted.feature_importance(X, y, n_repeats=n_repeats)
        table = pd.DataFrame({"covariate": list(importance), "importance": list(importance.values())})
        diagnostics["artifacts"] = {"rsf_importance": self._save(table, context, "rsf_importance.csv")}
        context.logger.info(f"RSF importance ranking: {list(importance)}")
        return StageResult(importance, diagnostics)


@log_execution_time()
def load_raw_records(config: PipelineConfig, input_path: Optional[str] = None) -> pd.DataFrame:
    """Obtain raw clinical records for the configured source.

    Args:
        config: Pipeline configuration (source, project, n_simulated, seed)
        input_path: CSV or pickle file, required when source="file"

    Returns:
        Raw clinical records
    """
    if config.source == "simulate":
        return simulate_cohort(n=config.n_simulated, seed=config.analysis.seed)
    if config.source == "gdc":
        return fetch_gdc_clinical(config.project)
    if input_path is None:
        raise ValueError("input_path is required when source='file'")
    return load_data(input_path)


@dataclass
class PipelineResult:
    """Results of every stage of one pipeline run, keyed by stage name."""
    stages: Dict[str, StageResult]
    output_dir: str

    def __getitem__(self, name: str) -> StageResult:
        return self.stages[name]


def _run_stages(raw: pd.DataFrame, context: RunContext) -> Dict[str, StageResult]:
    config = context.config
    analysis = config.analysis
    logger = context.logger
    models = build_models(
        config.hyperparameters, analysis.covariates, analysis.categorical, analysis.seed
    )
    models["rsf"].n_jobs = config.execution.n_jobs
    stages: Dict[str, StageResult] = {}

    def _run(stage: PipelineStage, records: pd.DataFrame) -> StageResult:
        with Timer(logger, f"Stage: {stage.name}"):
            result = stage.run(records, context)
        stages[stage.name] = result
        return result

    canonical = _run(EndpointStage(), raw).result.canonical
    _run(DescriptiveStage(), canonical)
    cox = _run(CoxStage(models["cox_ph"]), canonical).result
    if analysis.run_lasso:
        _run(LassoStage(models["lasso_cox"]), canonical)
    _run(DiagnosticsStage(cox), canonical)
    _run(ValidationStage(models["cox_ph"]), canonical)
    if analysis.run_ensemble:
        _run(EnsembleStage(models["rsf"]), canonical)
    return stages


def _track(stages: Dict[str, StageResult], context: RunContext):
    """Log configuration, headline metrics and every written table to MLflow."""
    config = context.config
    logger = context.logger
    run_name = f"{config.source}_{config.project}" if config.source == "gdc" else config.source
    with start_run(run_name, context.paths()["mlruns"], tags={"source": config.source}):
        safe_log_params(config.to_dict(), logger=logger)
        validation = stages["validation"].diagnostics
        safe_log_metrics({
            "n_canonical": stages["endpoint"].diagnostics["n_retained"],
            "test_cindex": validation["test_cindex"],
            "oob_mean_cindex": validation["oob_mean_cindex"],
            "oob_sd_cindex": validation["oob_sd_cindex"],
            "oob_n_defined": validation["oob_n_defined"],
        }, logger=logger)
        for result in stages.values():
            for path in result.diagnostics.get("artifacts", {}).values():
                safe_log_artifact(path, logger=logger)


def run_pipeline(
    raw: pd.DataFrame,
    config: PipelineConfig,
    output_dir: str,
    logger: Optional[logging.Logger] = None,
) -> PipelineResult:
    """Run every stage on one raw record set and write all artifacts.

    Args:
        raw: Raw clinical records (not modified)
        config: Pipeline configuration
        output_dir: Root directory for tables, canonical records, logs and
            the MLflow store
        logger: Logger for the run; defaults to the clinical_survival logger

    Returns:
        PipelineResult with one StageResult per stage

    Raises:
        SchemaError: If a required source field cannot be resolved
        InsufficientDataError: If a stage has no usable records

    Example:
        >>> config = PipelineConfig.for_source("simulate")
        >>> result = run_pipeline(simulate_cohort(500, seed=123), config, "outputs/sim")
        >>> result["validation"].diagnostics["test_cindex"]
        0.69...
    """
    context = RunContext(
        config=config,
        output_dir=output_dir,
        logger=logger or logging.getLogger("clinical_survival"),
    )
    paths = context.paths()
    config.save(os.path.join(paths["base_dir"], "config.json"))
    context.logger.info(f"Output directory: {paths['base_dir']}")
    context.logger.info(f"Execution: {config.execution}")

    with Timer(context.logger, "Clinical survival pipeline"):
        stages = _run_stages(raw, context)

    if config.tracking_enabled:
        _track(stages, context)

    validation = stages["validation"].diagnostics
    log_performance(
        context.logger, "Pipeline complete",
        n_raw=stages["endpoint"].diagnostics["n_raw"],
        n_canonical=stages["endpoint"].diagnostics["n_retained"],
        test_cindex=round(validation["test_cindex"], 4),
        oob_mean_cindex=round(validation["oob_mean_cindex"], 4),
        oob_n=validation["oob_n_defined"],
    )
    return PipelineResult(stages=stages, output_dir=paths["base_dir"])
