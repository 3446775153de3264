"""Unit tests for clinical_survival.metrics module.

Tests Harrell's concordance index and its pair counts.
"""
import pytest
import numpy as np

from clinical_survival.errors import InsufficientDataError
from clinical_survival.metrics import compute_cindex, concordance_details


def _y(events, times):
    return np.array(list(zip(events, times)), dtype=[("event", bool), ("time", float)])


class TestComputeCindex:
    """Tests for compute_cindex function."""

    def test_perfect_ordering(self):
        """Test risk that exactly reverses survival time gives C = 1."""
        y = _y([True] * 5, [1.0, 2.0, 3.0, 4.0, 5.0])

        assert compute_cindex(y, [5.0, 4.0, 3.0, 2.0, 1.0]) == pytest.approx(1.0)

    def test_reversed_ordering(self):
        """Test risk aligned with survival time gives C = 0."""
        y = _y([True] * 5, [1.0, 2.0, 3.0, 4.0, 5.0])

        assert compute_cindex(y, [1.0, 2.0, 3.0, 4.0, 5.0]) == pytest.approx(0.0)

    def test_tied_risk_counts_half(self):
        """Test a constant risk score gives C = 0.5."""
        y = _y([True, True, False, True], [2.0, 4.0, 6.0, 8.0])

        assert compute_cindex(y, np.zeros(4)) == pytest.approx(0.5)

    def test_censored_shorter_time_not_comparable(self, sample_structured_y):
        """Test pairs whose shorter time is censored are ignored."""
        details = concordance_details(sample_structured_y, [0.7, 0.1, 0.9, 0.2, 0.3])

        # comparable pairs: (6.0 event vs all longer) + (12.5 event vs 18, 24, 30)
        assert details["concordant"] + details["discordant"] + details["tied_risk"] == 7

    def test_range(self, sample_structured_y):
        """Test C-index lies in [0, 1]."""
        rng = np.random.default_rng(0)

        cindex = compute_cindex(sample_structured_y, rng.normal(size=5))

        assert 0.0 <= cindex <= 1.0

    def test_no_events_raises(self):
        """Test an all-censored set has no comparable pair."""
        y = _y([False, False, False], [1.0, 2.0, 3.0])

        with pytest.raises(InsufficientDataError):
            compute_cindex(y, [0.1, 0.2, 0.3])

    def test_single_record_raises(self):
        """Test a single record cannot form a pair."""
        with pytest.raises(InsufficientDataError):
            compute_cindex(_y([True], [1.0]), [0.5])

    def test_no_comparable_pairs_raises(self):
        """Test the only event at the longest time gives no comparable pair."""
        y = _y([False, False, True], [1.0, 2.0, 3.0])

        with pytest.raises(InsufficientDataError):
            compute_cindex(y, [0.1, 0.2, 0.3])
