"""Unit tests for clinical_survival.descriptive module."""
import pytest
import numpy as np
import pandas as pd

from clinical_survival.descriptive import kaplan_meier_by_group
from clinical_survival.errors import InsufficientDataError


class TestKaplanMeierByGroup:
    """Tests for kaplan_meier_by_group function."""

    def test_groups_and_summary(self, clinical_canonical):
        """Test one summary row per observed stage level."""
        km = kaplan_meier_by_group(clinical_canonical, "stage_group")

        assert km.summary["group"].tolist() == ["I", "II", "III", "IV"]
        assert km.summary["n"].sum() == len(clinical_canonical)
        assert km.summary["events"].sum() == clinical_canonical["event"].sum()
        assert km.n_used == len(clinical_canonical)

    def test_curves_monotone(self, clinical_canonical):
        """Test each survival curve starts at 1 and never increases."""
        km = kaplan_meier_by_group(clinical_canonical, "stage_group")

        for _, curve in km.curves.groupby("group"):
            survival = curve.sort_values("timeline")["survival"].to_numpy()
            assert survival[0] == pytest.approx(1.0)
            assert np.all(np.diff(survival) <= 1e-12)

    def test_logrank_detects_stage_effect(self, clinical_canonical):
        """Test the log-rank test across four levels."""
        km = kaplan_meier_by_group(clinical_canonical, "stage_group")

        assert km.logrank["df"].iloc[0] == 3
        assert km.p_value < 0.05

    def test_missing_group_dropped(self, clinical_canonical):
        """Test rows with missing group are excluded, not imputed."""
        df = clinical_canonical.copy()
        df.loc[:49, "stage_group"] = np.nan

        km = kaplan_meier_by_group(df, "stage_group")

        assert km.n_used == 150

    def test_single_group(self, clinical_canonical):
        """Test the log-rank statistic is undefined with one group."""
        df = clinical_canonical.assign(arm="A")

        km = kaplan_meier_by_group(df, "arm")

        assert km.summary["group"].tolist() == ["A"]
        assert np.isnan(km.p_value)

    def test_numeric_groups(self, simulated_canonical):
        """Test grouping by a 0/1 treatment indicator."""
        km = kaplan_meier_by_group(simulated_canonical, "treatment")

        assert km.summary["group"].tolist() == ["0", "1"]
        assert km.logrank["df"].iloc[0] == 1

    def test_empty_raises(self, clinical_canonical):
        """Test InsufficientDataError when every group value is missing."""
        df = clinical_canonical.assign(stage_group=np.nan)

        with pytest.raises(InsufficientDataError):
            kaplan_meier_by_group(df, "stage_group")
