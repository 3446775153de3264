from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional, Dict, Sequence, Tuple
import logging
import numpy as np
import pandas as pd

from lifelines import CoxPHFitter
from sklearn.inspection import permutation_importance
from sklearn.model_selection import GridSearchCV, StratifiedKFold
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler
from sksurv.ensemble import RandomSurvivalForest
from sksurv.linear_model import CoxnetSurvivalAnalysis

from clinical_survival.data import (
    TIME_COL,
    EVENT_COL,
    categorical_levels,
    complete_cases,
    design_columns_for,
    make_design_matrix,
    split_X_y,
)
from clinical_survival.errors import InsufficientDataError
from clinical_survival.metrics import compute_cindex

logger = logging.getLogger("clinical_survival.models")

# Design columns with variance at or below this are dropped before fitting
VARIANCE_THRESHOLD = 1e-12


class BaseSurvivalModel:
    """Base class for survival model wrappers with unified interface.

    Wrappers take the canonical covariate frame (categorical covariates as
    labels) and expand it into a design matrix themselves, so the same level
    set and column order are used for fitting and for every later prediction.
    Fitted state is stored in attributes ending in an underscore and is only
    written by ``fit``.

    Attributes:
        name: String identifier for the model type
    """

    name: str = "base"
    covariates: Tuple[str, ...] = ()
    categorical: Tuple[str, ...] = ()

    def fit(self, X: pd.DataFrame, y):
        """Fit the survival model to training data.

        Args:
            X: Canonical covariate frame
            y: Structured array with dtype=[('event', bool), ('time', float)]

        Returns:
            self: Fitted model instance

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError

    def predict_risk(self, X: pd.DataFrame) -> np.ndarray:
        """Predict a risk score per record (higher = shorter expected survival).

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError

    def score(self, X: pd.DataFrame, y) -> float:
        """Harrell's concordance index of the predicted risk on (X, y)."""
        return compute_cindex(y, self.predict_risk(X))

    def unfitted(self) -> "BaseSurvivalModel":
        """Return a fresh, unfitted model with the same configuration."""
        return replace(self)

    def design(self, X: pd.DataFrame) -> pd.DataFrame:
        """Design matrix for X using the levels and terms fixed at fit time."""
        return make_design_matrix(X, self.covariates, self.levels_)[self.terms_]

    def _build_design(self, X: pd.DataFrame) -> pd.DataFrame:
        """Fix categorical levels and drop constant design columns (training only)."""
        self.levels_ = categorical_levels(X, self.categorical)
        design = make_design_matrix(X, self.covariates, self.levels_)

        variances = design.var(axis=0)
        self.dropped_terms_ = [c for c in design.columns if not variances[c] > VARIANCE_THRESHOLD]
        if self.dropped_terms_:
            logger.warning(f"{self.name}: dropping constant design columns {self.dropped_terms_}")
        self.terms_ = [c for c in design.columns if c not in self.dropped_terms_]
        if not self.terms_:
            raise InsufficientDataError(
                self.name, "no covariate varies in the training data",
                n_records=len(X),
            )
        return design[self.terms_]


@dataclass
class CoxPHWrapper(BaseSurvivalModel):
    """Wrapper for the lifelines Cox proportional hazards model.

    Fits an (optionally ridge-penalised) Cox model with lifelines'
    CoxPHFitter and reports the standard coefficient table.

    Attributes:
        covariates: Covariates in model order
        categorical: Covariates expanded into indicator columns
        penalizer: lifelines penalizer (0.0 = ordinary partial likelihood)
        name: Model identifier, defaults to "cox_ph"

    Example:
        >>> cox = CoxPHWrapper(covariates=("age_years", "stage_group"), categorical=("stage_group",))
        >>> cox.fit(X_train, y_train)
        >>> risk_scores = cox.predict_risk(X_test)
        >>> cox.coefficient_table()
    """
    covariates: Tuple[str, ...] = ("age_years", "stage_group")
    categorical: Tuple[str, ...] = ("stage_group",)
    penalizer: float = 0.0
    name: str = "cox_ph"

    def fit(self, X, y):
        """Fit the Cox model on the expanded design matrix.

        Args:
            X: Canonical covariate frame
            y: Structured array with dtype=[('event', bool), ('time', float)]

        Returns:
            self: Fitted model instance
        """
        df = self._build_design(X).copy()
        df["time"] = y["time"]
        df["event"] = y["event"].astype(int)
        self.cph_ = CoxPHFitter(penalizer=self.penalizer)
        self.cph_.fit(df, duration_col="time", event_col="event")
        return self

    def predict_risk(self, X):
        """Linear predictor (log partial hazard) for each record."""
        return np.asarray(self.cph_.predict_log_partial_hazard(self.design(X)), dtype=float).ravel()

    def coefficient_table(self) -> pd.DataFrame:
        """One row per term: estimate, standard error, hazard ratio, z, p-value."""
        s = self.cph_.summary
        return pd.DataFrame({
            "term": s.index.astype(str),
            "estimate": s["coef"].to_numpy(),
            "std_error": s["se(coef)"].to_numpy(),
            "hazard_ratio": s["exp(coef)"].to_numpy(),
            "hr_lower_95": s["exp(coef) lower 95%"].to_numpy(),
            "hr_upper_95": s["exp(coef) upper 95%"].to_numpy(),
            "z": s["z"].to_numpy(),
            "p_value": s["p"].to_numpy(),
        })


@dataclass
class LassoCoxWrapper(BaseSurvivalModel):
    """Wrapper for the L1-penalised (lasso) Cox model.

    Fits scikit-survival's CoxnetSurvivalAnalysis with ``l1_ratio=1.0`` on
    standardised design columns. The penalty strength is chosen by grid
    search over the model's own regularisation path using seeded K-fold
    cross-validation stratified on the event indicator and scored by
    Harrell's C. Test folds without a comparable pair stay unscored and are
    left out of the mean.

    Attributes:
        covariates: Covariates in model order
        categorical: Covariates expanded into indicator columns
        n_alphas: Number of penalty strengths on the path
        alpha_min_ratio: Ratio of smallest to largest alpha on the path
        cv_folds: Number of cross-validation folds
        random_state: Seed for the fold assignment
        name: Model identifier, defaults to "lasso_cox"

    Note:
        Coefficients are reported on the original covariate scale (the
        standardised coefficients divided by each column's standard deviation).
    """
    covariates: Tuple[str, ...] = ("age_years", "stage_group")
    categorical: Tuple[str, ...] = ("stage_group",)
    n_alphas: int = 100
    alpha_min_ratio: float = 0.01
    cv_folds: int = 5
    random_state: int = 2026
    name: str = "lasso_cox"

    def _estimator(self, **kwargs):
        return make_pipeline(
            StandardScaler(),
            CoxnetSurvivalAnalysis(l1_ratio=1.0, max_iter=100_000, **kwargs),
        )

    def fit(self, X, y):
        """Fit the regularisation path, select alpha by CV, refit at that alpha.

        Args:
            X: Canonical covariate frame
            y: Structured array with dtype=[('event', bool), ('time', float)]

        Returns:
            self: Fitted model instance
        """
        design = self._build_design(X)

        self.path_ = self._estimator(
            n_alphas=self.n_alphas, alpha_min_ratio=self.alpha_min_ratio
        ).fit(design, y)
        alphas = self.path_.named_steps["coxnetsurvivalanalysis"].alphas_

        # Folds stratified on the event indicator; a fold that cannot be
        # scored (no comparable pair) stays NaN and is left out of the mean
        folds = list(StratifiedKFold(
            n_splits=self.cv_folds, shuffle=True, random_state=self.random_state
        ).split(design, y["event"]))
        self.search_ = GridSearchCV(
            self._estimator(),
            param_grid={"coxnetsurvivalanalysis__alphas": [[a] for a in alphas]},
            cv=folds,
            error_score=np.nan,
            refit=False,
            n_jobs=1,
        ).fit(design, y)

        scores = self.fold_scores()
        mean = scores.mean(axis=1, skipna=True)
        if mean.isna().all():
            raise InsufficientDataError(
                self.name, "no cross-validation fold could be scored",
                n_records=len(design), n_events=int(y["event"].sum()),
            )
        self.best_alpha_ = float(mean.idxmax())
        self.model_ = self._estimator(alphas=[self.best_alpha_]).fit(design, y)

        coxnet = self.model_.named_steps["coxnetsurvivalanalysis"]
        scaler = self.model_.named_steps["standardscaler"]
        coef_std = coxnet.coef_[:, 0]
        self.coef_ = pd.Series(coef_std / scaler.scale_, index=self.terms_)
        self.n_nonzero_ = int(np.count_nonzero(coef_std))
        logger.info(
            f"{self.name}: selected alpha={self.best_alpha_:.5f} "
            f"with {self.n_nonzero_} non-zero coefficients"
        )
        return self

    def predict_risk(self, X):
        """Linear predictor at the selected penalty strength."""
        return np.asarray(self.model_.predict(self.design(X)), dtype=float)

    def coefficient_table(self) -> pd.DataFrame:
        """One row per term: estimate and hazard ratio at the selected alpha."""
        return pd.DataFrame({
            "term": self.coef_.index.astype(str),
            "estimate": self.coef_.to_numpy(),
            "hazard_ratio": np.exp(self.coef_.to_numpy()),
        })

    def fold_scores(self) -> pd.DataFrame:
        """Test-fold C-index per alpha (rows) and fold (columns); NaN where unscored."""
        results = self.search_.cv_results_
        n_folds = sum(1 for key in results if key.startswith("split") and key.endswith("_test_score"))
        return pd.DataFrame(
            {k: results[f"split{k}_test_score"] for k in range(n_folds)},
            index=pd.Index(
                [p["coxnetsurvivalanalysis__alphas"][0] for p in results["params"]], name="alpha"
            ),
        )

    def cv_results(self) -> pd.DataFrame:
        """Cross-validated C-index along the regularisation path.

        Means and standard deviations use the scored folds only;
        ``n_failed_folds`` counts folds left unscored for each alpha.
        """
        path_coef = self.path_.named_steps["coxnetsurvivalanalysis"].coef_
        scores = self.fold_scores()
        return pd.DataFrame({
            "alpha": scores.index.to_numpy(),
            "mean_cindex": scores.mean(axis=1, skipna=True).to_numpy(),
            "std_cindex": scores.std(axis=1, ddof=0, skipna=True).to_numpy(),
            "n_failed_folds": scores.isna().sum(axis=1).to_numpy(),
            "n_nonzero": np.count_nonzero(path_coef, axis=0),
        })


@dataclass
class RSFWrapper(BaseSurvivalModel):
    """Wrapper for Random Survival Forest.

    Implements the ensemble risk model with scikit-survival's
    RandomSurvivalForest and ranks covariates by permutation importance.

    Attributes:
        covariates: Covariates in model order
        categorical: Covariates expanded into indicator columns
        n_estimators: Number of trees in the forest
        min_samples_split: Minimum samples required to split a node
        min_samples_leaf: Minimum samples required in leaf node
        max_features: Number of features to consider per split
        random_state: Seed for tree construction and permutations
        n_jobs: Parallel jobs used by the forest
        name: Model identifier, defaults to "rsf"
    """
    covariates: Tuple[str, ...] = ("age_years", "stage_group")
    categorical: Tuple[str, ...] = ("stage_group",)
    n_estimators: int = 300
    min_samples_split: int = 10
    min_samples_leaf: int = 15
    max_features: Optional[str] = "sqrt"
    random_state: int = 2026
    n_jobs: int = 1
    name: str = "rsf"

    def fit(self, X, y):
        """Fit random survival forest.

        Args:
            X: Canonical covariate frame
            y: Structured array with dtype=[('event', bool), ('time', float)]

        Returns:
            self: Fitted model instance
        """
        design = self._build_design(X)
        self.model_ = RandomSurvivalForest(
            n_estimators=self.n_estimators,
            min_samples_split=self.min_samples_split,
            min_samples_leaf=self.min_samples_leaf,
            max_features=self.max_features,
            random_state=self.random_state,
            n_jobs=self.n_jobs,
        ).fit(design, y)
        return self

    def predict_risk(self, X):
        """Ensemble risk score (sum of cumulative hazard over event times)."""
        return np.asarray(self.model_.predict(self.design(X)), dtype=float)

    def feature_importance(self, X, y, n_repeats: int = 5) -> Dict[str, float]:
        """Permutation importance per covariate.

        Each design column is permuted ``n_repeats`` times and the mean drop in
        Harrell's C is recorded; a categorical covariate's importance is the sum
        over its indicator columns.

        Args:
            X: Canonical covariate frame
            y: Structured array with dtype=[('event', bool), ('time', float)]
            n_repeats: Number of permutations per column

        Returns:
            Mapping covariate -> importance, sorted from most to least important
        """
        design = self.design(X)
        result = permutation_importance(
            self.model_, design, y, n_repeats=n_repeats, random_state=self.random_state
        )
        per_column = pd.Series(result.importances_mean, index=design.columns)
        importance = {
            cov: float(per_column[design_columns_for(cov, design.columns, self.levels_)].sum())
            for cov in self.covariates
        }
        return dict(sorted(importance.items(), key=lambda kv: kv[1], reverse=True))


def build_models(hyperparameters, covariates: Sequence[str], categorical: Sequence[str], seed: int):
    """Construct the unfitted model wrappers used by the pipeline.

    Args:
        hyperparameters: ModelHyperparameters instance
        covariates: Covariates shared by every model
        categorical: Categorical subset of covariates
        seed: Seed for the lasso folds and the forest

    Returns:
        Dictionary mapping model names to unfitted wrappers

    Example:
        >>> models = build_models(ModelHyperparameters(), ("age_years", "stage_group"), ("stage_group",), 2026)
        >>> list(models)
        ['cox_ph', 'lasso_cox', 'rsf']
    """
    covariates = tuple(covariates)
    categorical = tuple(categorical)
    return {
        "cox_ph": CoxPHWrapper(
            covariates=covariates,
            categorical=categorical,
            penalizer=hyperparameters.cox_penalizer,
        ),
        "lasso_cox": LassoCoxWrapper(
            covariates=covariates,
            categorical=categorical,
            n_alphas=hyperparameters.lasso_n_alphas,
            alpha_min_ratio=hyperparameters.lasso_alpha_min_ratio,
            cv_folds=hyperparameters.lasso_cv_folds,
            random_state=seed,
        ),
        "rsf": RSFWrapper(
            covariates=covariates,
            categorical=categorical,
            n_estimators=hyperparameters.rsf_n_estimators,
            min_samples_split=hyperparameters.rsf_min_samples_split,
            min_samples_leaf=hyperparameters.rsf_min_samples_leaf,
            max_features=hyperparameters.rsf_max_features,
            random_state=seed,
        ),
    }


def model_frame(canonical: pd.DataFrame, covariates: Sequence[str], stage: str):
    """Filter canonical records to complete cases for a model.

    Args:
        canonical: Canonical survival records
        covariates: Covariates the model uses
        stage: Stage name used in log messages and errors

    Returns:
        Tuple of (X, y) for the retained rows

    Raises:
        InsufficientDataError: If no rows remain or none has an observed event
    """
    data = complete_cases(canonical, [TIME_COL, EVENT_COL, *covariates])
    n_events = int(data[EVENT_COL].sum()) if len(data) else 0
    logger.info(f"{stage}: rows available {len(data):,} of {len(canonical):,} ({n_events:,} events)")
    if len(data) == 0:
        raise InsufficientDataError(stage, "no complete records", n_records=0)
    if n_events == 0:
        raise InsufficientDataError(
            stage, "no observed events", n_records=len(data), n_events=0
        )
    return split_X_y(data, covariates)


def fit_model(canonical: pd.DataFrame, model: BaseSurvivalModel) -> Tuple[BaseSurvivalModel, pd.DataFrame, np.ndarray]:
    """Fit an unfitted copy of ``model`` on the complete cases of ``canonical``.

    Returns:
        Tuple of (fitted model, X, y) so callers can reuse the model frame
    """
    X, y = model_frame(canonical, model.covariates, model.name)
    fitted = model.unfitted().fit(X, y)
    return fitted, X, y


def fit_cox_model(
    canonical: pd.DataFrame,
    covariates: Sequence[str],
    categorical: Sequence[str] = (),
    penalizer: float = 0.0,
) -> Tuple[CoxPHWrapper, pd.DataFrame]:
    """Fit a Cox proportional hazards model on the complete cases.

    Args:
        canonical: Canonical survival records
        covariates: Covariates in model order
        categorical: Covariates expanded into indicator columns
        penalizer: lifelines penalizer

    Returns:
        Tuple of (fitted CoxPHWrapper, coefficient table)

    Raises:
        InsufficientDataError: If no complete rows remain or none has an event

    Example:
        >>> cox, table = fit_cox_model(canonical, ("age_years", "stage_group"), ("stage_group",))
        >>> table[["term", "hazard_ratio", "p_value"]]
    """
    model = CoxPHWrapper(
        covariates=tuple(covariates), categorical=tuple(categorical), penalizer=penalizer
    )
    fitted, _, _ = fit_model(canonical, model)
    return fitted, fitted.coefficient_table()


def fit_lasso_cox(
    canonical: pd.DataFrame,
    covariates: Sequence[str],
    categorical: Sequence[str] = (),
    n_alphas: int = 100,
    alpha_min_ratio: float = 0.01,
    cv_folds: int = 5,
    random_state: int = 2026,
) -> Tuple[LassoCoxWrapper, pd.DataFrame]:
    """Fit the lasso Cox model on the complete cases; penalised counterpart of fit_cox_model."""
    model = LassoCoxWrapper(
        covariates=tuple(covariates),
        categorical=tuple(categorical),
        n_alphas=n_alphas,
        alpha_min_ratio=alpha_min_ratio,
        cv_folds=cv_folds,
        random_state=random_state,
    )
    fitted, _, _ = fit_model(canonical, model)
    return fitted, fitted.coefficient_table()


def fit_ensemble(
    canonical: pd.DataFrame,
    covariates: Sequence[str],
    categorical: Sequence[str] = (),
    n_repeats: int = 5,
    **forest_params,
) -> Tuple[RSFWrapper, Dict[str, float]]:
    """Fit a random survival forest and rank covariates by permutation importance.

    Args:
        canonical: Canonical survival records
        covariates: Covariates in model order
        categorical: Covariates expanded into indicator columns
        n_repeats: Permutations per design column
        **forest_params: Passed to RSFWrapper (n_estimators, random_state, ...)

    Returns:
        Tuple of (fitted RSFWrapper, covariate -> importance)
    """
    model = RSFWrapper(covariates=tuple(covariates), categorical=tuple(categorical), **forest_params)
    fitted, X, y = fit_model(canonical, model)
    return fitted, fitted.feature_importance(X, y, n_repeats=n_repeats)
