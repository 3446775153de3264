from __future__ import annotations
from typing import Dict
import numpy as np
from sksurv.exceptions import NoComparablePairException
from sksurv.metrics import concordance_index_censored

from clinical_survival.errors import InsufficientDataError


def concordance_details(y, risk_scores) -> Dict[str, float]:
    """Harrell's concordance index with its pair counts.

    A pair is comparable when the shorter of the two times is an observed
    event. A comparable pair is concordant when the record with the shorter
    time has the higher risk score; ties in risk score count as half
    concordant.

    Args:
        y: Structured array with dtype=[('event', bool), ('time', float)]
        risk_scores: Array of shape (n,) with predicted risk scores.
            Higher values indicate higher risk (shorter expected survival)

    Returns:
        Dictionary with cindex, concordant, discordant, tied_risk, tied_time

    Raises:
        InsufficientDataError: If the records contain no comparable pair
    """
    risk_scores = np.asarray(risk_scores, dtype=float)
    n_events = int(np.sum(y["event"]))
    try:
        cindex, concordant, discordant, tied_risk, tied_time = concordance_index_censored(
            y["event"], y["time"], risk_scores
        )
    except NoComparablePairException as e:
        raise InsufficientDataError(
            "concordance", "no comparable pairs", n_records=len(y), n_events=n_events
        ) from e
    return {
        "cindex": float(cindex),
        "concordant": int(concordant),
        "discordant": int(discordant),
        "tied_risk": int(tied_risk),
        "tied_time": int(tied_time),
    }


def compute_cindex(y, risk_scores) -> float:
    """Calculate Harrell's concordance index.

    Args:
        y: Structured array with dtype=[('event', bool), ('time', float)]
        risk_scores: Array of shape (n,) with predicted risk scores

    Returns:
        Concordance index between 0.0 and 1.0 (0.5 = random ordering)

    Raises:
        InsufficientDataError: If the records contain no comparable pair

    Example:
        >>> cindex = compute_cindex(y_test, model.predict_risk(X_test))
        >>> print(f"C-index: {cindex:.3f}")
        C-index: 0.712
    """
    if len(y) < 2 or not np.any(y["event"]):
        raise InsufficientDataError(
            "concordance", "need at least two records and one event",
            n_records=len(y), n_events=int(np.sum(y["event"])) if len(y) else 0,
        )
    return concordance_details(y, risk_scores)["cindex"]
