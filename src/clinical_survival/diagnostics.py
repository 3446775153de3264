"""Proportional hazards assumption checks for fitted Cox models.

The tests correlate Schoenfeld residuals with a transform of event time: a
covariate whose effect on the log hazard drifts over follow-up produces
residuals that trend with time. Results are reported only; the fitted model
is never refit or altered here.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import List
import logging

import numpy as np
import pandas as pd
from lifelines.statistics import proportional_hazard_test
from scipy import stats

from clinical_survival.models import CoxPHWrapper

logger = logging.getLogger("clinical_survival.diagnostics")

GLOBAL_TERM = "GLOBAL"

TIME_TRANSFORMS = {
    "rank": stats.rankdata,
    "identity": lambda t: np.asarray(t, dtype=float),
    "log": lambda t: np.log(np.asarray(t, dtype=float)),
}


@dataclass
class PHTestResult:
    """Per-covariate and global proportional hazards tests.

    Attributes:
        table: DataFrame with columns term, test_statistic, df, p_value,
            violation; the last row is the global test
        time_transform: Time transform used ("rank", "identity", "log")
        alpha: Significance level used for the violation flag
    """
    table: pd.DataFrame
    time_transform: str
    alpha: float

    @property
    def global_p_value(self) -> float:
        return float(self.table.loc[self.table["term"] == GLOBAL_TERM, "p_value"].iloc[0])

    @property
    def violations(self) -> List[str]:
        """Terms (excluding the global test) whose p-value is below alpha."""
        flagged = self.table[self.table["violation"] & (self.table["term"] != GLOBAL_TERM)]
        return flagged["term"].tolist()


def _training_frame(model: CoxPHWrapper, X: pd.DataFrame, y) -> pd.DataFrame:
    df = model.design(X).copy()
    df["time"] = y["time"]
    df["event"] = y["event"].astype(int)
    return df


def global_schoenfeld_test(model: CoxPHWrapper, df: pd.DataFrame, time_transform: str = "rank"):
    """Global score test of proportional hazards over all covariates.

    With unscaled Schoenfeld residuals R (d events x p terms), model variance
    V and centred transformed event times g, the statistic is
    ``u' V u * d / sum(g^2)`` where ``u = g' R``; it is chi-square with p
    degrees of freedom under proportional hazards. With a single term it
    equals the per-term scaled Schoenfeld statistic.

    Args:
        model: Fitted CoxPHWrapper
        df: Training frame (design columns plus time and event)
        time_transform: Key of TIME_TRANSFORMS

    Returns:
        Tuple of (statistic, degrees of freedom, p-value)
    """
    cph = model.cph_
    resid = cph.compute_residuals(df, kind="schoenfeld")
    variance = cph.variance_matrix_.loc[resid.columns, resid.columns].to_numpy()
    n_events = len(resid)

    g = TIME_TRANSFORMS[time_transform](df.loc[resid.index, "time"].to_numpy())
    g = g - g.mean()

    u = g @ resid.to_numpy()
    statistic = float(u @ variance @ u * n_events / np.sum(g ** 2))
    dof = resid.shape[1]
    return statistic, dof, float(stats.chi2.sf(statistic, dof))


def check_proportional_hazards(
    model: CoxPHWrapper,
    X: pd.DataFrame,
    y,
    time_transform: str = "rank",
    alpha: float = 0.05,
) -> PHTestResult:
    """Test the proportional hazards assumption for a fitted Cox model.

    Per-term tests use lifelines' ``proportional_hazard_test`` on scaled
    Schoenfeld residuals; the global test is computed by
    global_schoenfeld_test with the same time transform.

    Args:
        model: Fitted CoxPHWrapper
        X: Covariate frame the model was fitted on
        y: Structured survival array the model was fitted on
        time_transform: "rank", "identity" or "log"
        alpha: Significance level for the violation flag

    Returns:
        PHTestResult

    Example:
        >>> ph = check_proportional_hazards(cox, X, y)
        >>> ph.violations
        ['age_years']
    """
    if time_transform not in TIME_TRANSFORMS:
        raise ValueError(
            f"Unsupported time_transform: {time_transform}. "
            f"Supported: {sorted(TIME_TRANSFORMS)}"
        )

    df = _training_frame(model, X, y)
    results = proportional_hazard_test(model.cph_, df, time_transform=time_transform)
    summary = results.summary

    table = pd.DataFrame({
        "term": summary.index.astype(str),
        "test_statistic": summary["test_statistic"].to_numpy(dtype=float),
        "df": 1,
        "p_value": summary["p"].to_numpy(dtype=float),
    })

    statistic, dof, p_value = global_schoenfeld_test(model, df, time_transform)
    table = pd.concat([
        table,
        pd.DataFrame([{
            "term": GLOBAL_TERM, "test_statistic": statistic, "df": dof, "p_value": p_value
        }]),
    ], ignore_index=True)
    table["violation"] = table["p_value"] < alpha

    result = PHTestResult(table=table, time_transform=time_transform, alpha=alpha)
    if result.violations:
        logger.warning(f"Possible PH violations (p < {alpha}): {result.violations}")
    logger.info(f"Global PH test: chi2={statistic:.3f}, df={dof}, p={p_value:.4f}")
    return result
