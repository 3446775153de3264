"""Out-of-sample discrimination of survival models.

Two procedures share the same fit-then-score contract:

- train_test_validate: one seeded train/test partition; fit on train only,
  Harrell's C on test only.
- bootstrap_validate: repeated bootstrap resamples of the full record set;
  fit on the resample, Harrell's C on the out-of-bag records.

Every random draw derives from the run seed. Bootstrap iteration ``i`` uses
the ``i``-th child of ``SeedSequence(seed)``, so sequential and joblib-parallel
execution produce identical iterations.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Any, Optional
import logging
import warnings

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from lifelines.exceptions import ConvergenceError
from sklearn.model_selection import train_test_split

from clinical_survival.config import RunContext
from clinical_survival.errors import InsufficientDataError, DegenerateResampleWarning
from clinical_survival.logging_config import ProgressLogger, log_performance
from clinical_survival.models import BaseSurvivalModel, model_frame

logger = logging.getLogger("clinical_survival.validation")

# Reasons recorded for iterations whose concordance is undefined
OOB_TOO_SMALL = "oob_too_small"
NO_TRAIN_EVENTS = "no_events_in_resample"
NOT_CONVERGED = "fit_not_converged"
NOT_ESTIMABLE = "not_estimable"


def split_train_test(n: int, train_fraction: float, seed: int):
    """Seeded partition of record indices into train and test.

    Args:
        n: Number of records
        train_fraction: Fraction of records assigned to train, in (0, 1)
        seed: Random seed

    Returns:
        Tuple of (train_index, test_index), each sorted; disjoint and together
        covering ``range(n)``

    Raises:
        ValueError: If train_fraction is outside (0, 1)
        InsufficientDataError: If either partition would be empty

    Example:
        >>> tr, te = split_train_test(10, 0.7, seed=2026)
        >>> len(tr), len(te)
        (7, 3)
    """
    if not 0.0 < train_fraction < 1.0:
        raise ValueError(f"train_fraction must be in (0, 1), got {train_fraction}")
    n_train = int(np.floor(train_fraction * n))
    if n_train < 1 or n - n_train < 1:
        raise InsufficientDataError(
            "train_test", f"a {train_fraction:g} split of {n} records leaves a partition empty",
            n_records=n,
        )
    train_index, test_index = train_test_split(
        np.arange(n), train_size=train_fraction, random_state=seed, shuffle=True
    )
    return np.sort(train_index), np.sort(test_index)


@dataclass
class TrainTestResult:
    """Concordance of a model fitted on train and scored on test.

    Attributes:
        seed: Seed used for the partition
        train_fraction: Requested train fraction
        n_train: Training records
        n_test: Test records
        cindex: Harrell's C on the test records
        train_index: Positions (in the model frame) of training records
        test_index: Positions (in the model frame) of test records
    """
    seed: int
    train_fraction: float
    n_train: int
    n_test: int
    cindex: float
    train_index: np.ndarray
    test_index: np.ndarray

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{
            "seed": self.seed,
            "train_fraction": self.train_fraction,
            "n_train": self.n_train,
            "n_test": self.n_test,
            "cindex": self.cindex,
        }])


def train_test_validate(
    canonical: pd.DataFrame,
    model: BaseSurvivalModel,
    context: RunContext,
) -> TrainTestResult:
    """Fit on a seeded train partition and report Harrell's C on the test partition.

    The model never sees a test record during fitting; an unfitted copy of
    ``model`` is used so the caller's instance is left untouched.

    Args:
        canonical: Canonical survival records
        model: Model wrapper (fitted or not; only its configuration is used)
        context: Run context providing seed and train fraction

    Returns:
        TrainTestResult

    Raises:
        InsufficientDataError: If either partition is empty, the training
            partition has no events, or the test partition has no comparable pair
    """
    analysis = context.config.analysis
    X, y = model_frame(canonical, model.covariates, "train_test")
    train_index, test_index = split_train_test(len(X), analysis.train_fraction, analysis.seed)
    n_train_events = int(y["event"][train_index].sum())
    logger.info(
        f"Train/test split: {len(train_index):,} train ({n_train_events:,} events), "
        f"{len(test_index):,} test"
    )

    if len(train_index) == 0 or len(test_index) == 0:
        raise InsufficientDataError(
            "train_test", "empty partition", n_records=len(X), n_events=int(y["event"].sum())
        )
    if n_train_events == 0:
        raise InsufficientDataError(
            "train_test", "no observed events in training partition",
            n_records=len(train_index), n_events=0,
        )

    fitted = model.unfitted().fit(X.iloc[train_index], y[train_index])
    cindex = fitted.score(X.iloc[test_index], y[test_index])

    log_performance(
        context.logger, f"Train/test validation ({model.name})",
        n_train=len(train_index), n_test=len(test_index), cindex=round(cindex, 4),
    )
    return TrainTestResult(
        seed=analysis.seed,
        train_fraction=analysis.train_fraction,
        n_train=len(train_index),
        n_test=len(test_index),
        cindex=cindex,
        train_index=train_index,
        test_index=test_index,
    )


def _bootstrap_iteration(
    iteration: int,
    seed_seq: np.random.SeedSequence,
    X: pd.DataFrame,
    y: np.ndarray,
    model: BaseSurvivalModel,
    min_oob: int,
) -> Dict[str, Any]:
    """Fit on one bootstrap resample and score its out-of-bag records.

    Degenerate draws are recorded with ``cindex=NaN`` and a reason; they are
    never raised.
    """
    rng = np.random.default_rng(seed_seq)
    n = len(X)
    sample = rng.integers(0, n, size=n)
    in_bag = np.zeros(n, dtype=bool)
    in_bag[sample] = True
    oob = np.flatnonzero(~in_bag)

    row = {
        "iteration": iteration,
        "n_in_bag": int(in_bag.sum()),
        "n_oob": len(oob),
        "n_oob_events": int(y["event"][oob].sum()),
        "cindex": np.nan,
        "reason": "",
    }

    if len(oob) < min_oob:
        row["reason"] = OOB_TOO_SMALL
        return row
    if not y["event"][sample].any():
        row["reason"] = NO_TRAIN_EVENTS
        return row

    try:
        fitted = model.unfitted().fit(X.iloc[sample], y[sample])
        row["cindex"] = fitted.score(X.iloc[oob], y[oob])
    except ConvergenceError:
        row["reason"] = NOT_CONVERGED
    except InsufficientDataError as e:
        row["reason"] = f"{NOT_ESTIMABLE}: {e.reason}"
    return row


@dataclass
class BootstrapResult:
    """Out-of-bag concordance aggregated over bootstrap iterations.

    ``n_defined + n_degenerate == n_iterations`` always holds, and
    ``n_degenerate`` splits into ``n_oob_too_small`` (out-of-bag set below the
    minimum size) and ``n_other_missing`` (no events to fit, no comparable
    pair, failed fit). The mean and standard deviation use defined iterations
    only and are NaN (never zero) when too few iterations are defined.

    Attributes:
        n_iterations: Iterations requested
        n_defined: Iterations with a defined out-of-bag C-index
        n_degenerate: Iterations recorded as missing
        n_oob_too_small: Missing iterations whose out-of-bag set was too small
        mean_cindex: Mean out-of-bag C-index
        sd_cindex: Sample standard deviation (ddof=1) of the out-of-bag C-index
        iterations: One row per iteration (iteration, n_in_bag, n_oob,
            n_oob_events, cindex, reason)
    """
    n_iterations: int
    n_defined: int
    n_degenerate: int
    n_oob_too_small: int
    mean_cindex: float
    sd_cindex: float
    iterations: pd.DataFrame

    @classmethod
    def from_iterations(cls, iterations: pd.DataFrame) -> "BootstrapResult":
        values = iterations["cindex"].to_numpy(dtype=float)
        defined = values[~np.isnan(values)]
        return cls(
            n_iterations=len(values),
            n_defined=len(defined),
            n_degenerate=len(values) - len(defined),
            n_oob_too_small=int((iterations["reason"] == OOB_TOO_SMALL).sum()),
            mean_cindex=float(defined.mean()) if len(defined) else np.nan,
            sd_cindex=float(defined.std(ddof=1)) if len(defined) > 1 else np.nan,
            iterations=iterations,
        )

    @property
    def n_other_missing(self) -> int:
        return self.n_degenerate - self.n_oob_too_small

    def summary(self) -> Dict[str, float]:
        return {
            "n_iterations": self.n_iterations,
            "n_defined": self.n_defined,
            "n_degenerate": self.n_degenerate,
            "n_oob_too_small": self.n_oob_too_small,
            "n_other_missing": self.n_other_missing,
            "mean_cindex": self.mean_cindex,
            "sd_cindex": self.sd_cindex,
        }


def bootstrap_validate(
    canonical: pd.DataFrame,
    model: BaseSurvivalModel,
    context: RunContext,
    n_iterations: Optional[int] = None,
) -> BootstrapResult:
    """Out-of-bag bootstrap estimate of Harrell's C.

    Each iteration draws ``n`` records with replacement as the training set;
    records never drawn form the out-of-bag set. Iterations whose out-of-bag
    set is smaller than ``min_oob_size`` (or that cannot be fitted or scored)
    are recorded as missing and reported with a DegenerateResampleWarning.

    Args:
        canonical: Canonical survival records
        model: Model wrapper (only its configuration is used)
        context: Run context providing seed, iteration count, execution mode
        n_iterations: Override for ``context.config.analysis.n_bootstrap``

    Returns:
        BootstrapResult

    Raises:
        InsufficientDataError: If the model frame is empty or has no events

    Example:
        >>> boot = bootstrap_validate(canonical, CoxPHWrapper(), context)
        >>> print(f"OOB C-index: {boot.mean_cindex:.3f} (n={boot.n_defined})")
    """
    analysis = context.config.analysis
    execution = context.config.execution
    n_iterations = analysis.n_bootstrap if n_iterations is None else n_iterations

    X, y = model_frame(canonical, model.covariates, "bootstrap")
    seeds = context.seed_sequence().spawn(n_iterations)
    progress = ProgressLogger(
        logger, total=n_iterations, desc=f"Bootstrap ({model.name})",
        log_every=max(1, n_iterations // 4),
    )

    if execution.is_parallel():
        logger.info(f"Parallel bootstrap with {execution.n_jobs} jobs")
        rows = Parallel(
            n_jobs=execution.n_jobs,
            verbose=execution.verbose,
            backend=execution.backend,
        )(
            delayed(_bootstrap_iteration)(i, seeds[i], X, y, model, analysis.min_oob_size)
            for i in range(n_iterations)
        )
        progress.update(n_iterations)
    else:
        logger.info("Sequential bootstrap")
        rows = []
        for i in range(n_iterations):
            rows.append(_bootstrap_iteration(i, seeds[i], X, y, model, analysis.min_oob_size))
            progress.update(1)

    # Warnings are raised here rather than in the workers so they reach the caller
    for row in rows:
        if row["reason"]:
            warnings.warn(
                f"Bootstrap iteration {row['iteration']} out-of-bag C-index undefined "
                f"({row['reason']}, n_oob={row['n_oob']})",
                DegenerateResampleWarning,
                stacklevel=2,
            )

    columns = ["iteration", "n_in_bag", "n_oob", "n_oob_events", "cindex", "reason"]
    result = BootstrapResult.from_iterations(pd.DataFrame(rows, columns=columns))
    log_performance(
        context.logger, f"Bootstrap validation ({model.name})",
        n_iterations=result.n_iterations, n_defined=result.n_defined,
        mean_cindex=round(result.mean_cindex, 4), sd_cindex=round(result.sd_cindex, 4),
    )
    return result
