from __future__ import annotations
from dataclasses import dataclass
import logging

import numpy as np
import pandas as pd
from lifelines import KaplanMeierFitter
from lifelines.statistics import multivariate_logrank_test

from clinical_survival.data import TIME_COL, EVENT_COL
from clinical_survival.errors import InsufficientDataError

logger = logging.getLogger("clinical_survival.descriptive")


@dataclass
class DescriptiveResult:
    """Kaplan-Meier curves per group and the log-rank comparison.

    Attributes:
        group_column: Grouping covariate
        curves: Long DataFrame with columns group, timeline, survival, at_risk
        summary: One row per group with n, events, median_survival
        logrank: One-row DataFrame with test_statistic, df, p_value
        n_used: Records used after dropping missing groups
    """
    group_column: str
    curves: pd.DataFrame
    summary: pd.DataFrame
    logrank: pd.DataFrame
    n_used: int

    @property
    def p_value(self) -> float:
        return float(self.logrank["p_value"].iloc[0])


def kaplan_meier_by_group(canonical: pd.DataFrame, group_column: str) -> DescriptiveResult:
    """Kaplan-Meier survival curves by group with a log-rank test.

    Rows with a missing group are dropped (never imputed). The log-rank test
    compares all group levels simultaneously.

    Args:
        canonical: Canonical survival records
        group_column: Covariate defining the groups

    Returns:
        DescriptiveResult

    Raises:
        InsufficientDataError: If no record has a non-missing group

    Example:
        >>> km = kaplan_meier_by_group(canonical, "stage_group")
        >>> km.summary[["group", "n", "median_survival"]]
    """
    data = canonical.dropna(subset=[group_column, TIME_COL, EVENT_COL])
    logger.info(f"Rows available for KM by {group_column}: {len(data):,} of {len(canonical):,}")
    if len(data) == 0:
        raise InsufficientDataError(
            "kaplan_meier", f"no records with non-missing {group_column}", n_records=0
        )

    groups = data[group_column]
    if isinstance(groups.dtype, pd.CategoricalDtype):
        levels = [lvl for lvl in groups.cat.categories if (groups == lvl).any()]
    else:
        levels = sorted(groups.unique().tolist())

    curves = []
    summary = []
    for level in levels:
        subset = data[groups == level]
        kmf = KaplanMeierFitter(label=str(level))
        kmf.fit(subset[TIME_COL], event_observed=subset[EVENT_COL])
        table = kmf.event_table
        curves.append(pd.DataFrame({
            "group": str(level),
            "timeline": kmf.survival_function_.index.to_numpy(dtype=float),
            "survival": kmf.survival_function_.iloc[:, 0].to_numpy(dtype=float),
            "at_risk": table["at_risk"].reindex(kmf.survival_function_.index).to_numpy(),
        }))
        summary.append({
            "group": str(level),
            "n": len(subset),
            "events": int(subset[EVENT_COL].sum()),
            "median_survival": float(kmf.median_survival_time_),
        })

    if len(levels) > 1:
        lr = multivariate_logrank_test(data[TIME_COL], groups.astype(str), data[EVENT_COL])
        logrank = pd.DataFrame([{
            "test_statistic": float(lr.test_statistic),
            "df": int(lr.degrees_of_freedom),
            "p_value": float(lr.p_value),
        }])
    else:
        logger.warning(f"Only one level of {group_column} present; log-rank test not defined")
        logrank = pd.DataFrame([{"test_statistic": np.nan, "df": 0, "p_value": np.nan}])

    return DescriptiveResult(
        group_column=group_column,
        curves=pd.concat(curves, ignore_index=True),
        summary=pd.DataFrame(summary),
        logrank=logrank,
        n_used=len(data),
    )
