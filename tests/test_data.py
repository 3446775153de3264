"""Unit tests for clinical_survival.data module.

Tests data loading, cohort simulation, GDC download flattening and design
matrix construction.
"""
import pytest
import numpy as np
import pandas as pd
import requests

from clinical_survival.data import (
    GDC_CASES_ENDPOINT,
    categorical_levels,
    design_columns_for,
    fetch_gdc_clinical,
    load_data,
    make_design_matrix,
    simulate_cohort,
    split_X_y,
    to_structured_y,
)


class TestToStructuredY:
    """Tests for to_structured_y function."""

    def test_basic_conversion(self):
        """Test basic conversion of canonical records to structured array."""
        df = pd.DataFrame({'event': [1, 0, 1], 'duration': [120.0, 800.0, 45.0]})
        y = to_structured_y(df)

        assert y.dtype.names == ('event', 'time')
        assert len(y) == 3
        assert y['event'].dtype == bool
        assert y['event'].tolist() == [True, False, True]
        assert y['time'][1] == 800.0


class TestLoadData:
    """Tests for load_data function."""

    def test_csv_and_pickle(self, tmp_path, raw_records):
        """Test both supported formats load the same rows."""
        raw_records.to_csv(tmp_path / "raw.csv", index=False)
        raw_records.to_pickle(tmp_path / "raw.pkl")

        from_csv = load_data(str(tmp_path / "raw.csv"))
        from_pickle = load_data(str(tmp_path / "raw.pkl"))

        assert len(from_csv) == len(from_pickle) == len(raw_records)
        assert list(from_csv.columns) == list(raw_records.columns)

    def test_missing_file(self, tmp_path):
        """Test FileNotFoundError for a missing path."""
        with pytest.raises(FileNotFoundError):
            load_data(str(tmp_path / "absent.csv"))

    def test_unsupported_format(self, tmp_path):
        """Test ValueError for an unsupported extension."""
        path = tmp_path / "raw.xlsx"
        path.write_text("x")

        with pytest.raises(ValueError, match="Unsupported file format"):
            load_data(str(path))


class TestSimulateCohort:
    """Tests for simulate_cohort function."""

    def test_shape_and_columns(self, simulated_raw):
        """Test the simulated cohort looks like raw clinical records."""
        assert len(simulated_raw) == 500
        for col in ["submitter_id", "vital_status", "days_to_death",
                    "days_to_last_follow_up", "ajcc_pathologic_stage",
                    "age_at_diagnosis", "treatment", "biomarker1"]:
            assert col in simulated_raw.columns

    def test_death_and_follow_up_exclusive(self, simulated_raw):
        """Test each record carries exactly one of death time or follow-up time."""
        has_death = simulated_raw["days_to_death"].notna()
        has_follow_up = simulated_raw["days_to_last_follow_up"].notna()

        assert (has_death ^ has_follow_up).all()
        assert (simulated_raw.loc[has_death, "vital_status"] == "Dead").all()

    def test_reproducible(self):
        """Test the same seed gives the same cohort."""
        pd.testing.assert_frame_equal(simulate_cohort(50, seed=1), simulate_cohort(50, seed=1))

    def test_seed_changes_cohort(self):
        """Test different seeds give different cohorts."""
        a = simulate_cohort(50, seed=1)
        b = simulate_cohort(50, seed=2)

        assert not np.allclose(a["biomarker1"], b["biomarker1"])


class _FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class _FakeSession:
    """Serves GDC case hits two at a time."""

    def __init__(self, hits, status=200):
        self.hits = hits
        self.status = status
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, params))
        start = params["from"]
        page = self.hits[start:start + params["size"]]
        return _FakeResponse(
            {"data": {"hits": page, "pagination": {"total": len(self.hits)}}},
            status=self.status,
        )


@pytest.fixture
def gdc_hits():
    return [
        {
            "id": f"uuid-{i}",
            "submitter_id": f"TCGA-A{i}",
            "demographic": {"vital_status": "Dead" if i % 2 else "Alive", "days_to_death": 100 * i if i % 2 else None},
            "diagnoses": [{"days_to_last_follow_up": 300 + i, "ajcc_pathologic_stage": "Stage IIA", "age_at_diagnosis": 20000 + i}],
        }
        for i in range(5)
    ]


class TestFetchGdcClinical:
    """Tests for fetch_gdc_clinical function (HTTP replaced by a fake session)."""

    def test_pagination_and_flattening(self, gdc_hits):
        """Test every page is requested and hits become flat rows."""
        session = _FakeSession(gdc_hits)

        df = fetch_gdc_clinical("TCGA-BRCA", page_size=2, session=session)

        assert len(df) == 5
        assert len(session.calls) == 3
        assert all(url == GDC_CASES_ENDPOINT for url, _ in session.calls)
        assert [p["from"] for _, p in session.calls] == [0, 2, 4]
        assert df.loc[1, "vital_status"] == "Dead"
        assert df.loc[1, "ajcc_pathologic_stage"] == "Stage IIA"
        assert df.loc[0, "case_id"] == "uuid-0"

    def test_primary_diagnosis_selected(self, gdc_hits):
        """Test the flagged primary diagnosis is used even when listed second."""
        gdc_hits[0]["diagnoses"] = [
            {"days_to_last_follow_up": 50, "ajcc_pathologic_stage": "Stage I",
             "age_at_diagnosis": 25000, "diagnosis_is_primary_disease": False},
            {"days_to_last_follow_up": 900, "ajcc_pathologic_stage": "Stage IIIB",
             "age_at_diagnosis": 21000, "diagnosis_is_primary_disease": True},
        ]

        df = fetch_gdc_clinical("TCGA-BRCA", page_size=10, session=_FakeSession(gdc_hits))

        assert df.loc[0, "ajcc_pathologic_stage"] == "Stage IIIB"
        assert df.loc[0, "days_to_last_follow_up"] == 900
        assert df.loc[1, "ajcc_pathologic_stage"] == "Stage IIA"
        assert "diagnosis_is_primary_disease" not in df.columns

    def test_project_filter(self, gdc_hits):
        """Test the project identifier is sent in the filter."""
        session = _FakeSession(gdc_hits)

        fetch_gdc_clinical("TCGA-LUAD", page_size=10, session=session)

        assert "TCGA-LUAD" in session.calls[0][1]["filters"]

    def test_http_error_propagates(self, gdc_hits):
        """Test an error status raises requests.HTTPError."""
        with pytest.raises(requests.HTTPError):
            fetch_gdc_clinical("TCGA-BRCA", session=_FakeSession(gdc_hits, status=500))

    def test_uses_requests_session_by_default(self, monkeypatch, gdc_hits):
        """Test a requests.Session is created when none is given."""
        fake = _FakeSession(gdc_hits)
        monkeypatch.setattr(requests, "Session", lambda: fake)

        df = fetch_gdc_clinical("TCGA-BRCA")

        assert len(df) == 5
        assert len(fake.calls) == 1


class TestDesignMatrix:
    """Tests for categorical_levels, make_design_matrix and design_columns_for."""

    @pytest.fixture
    def X(self):
        return pd.DataFrame({
            "age_years": [50.0, 61.0, 72.0],
            "stage_group": pd.Categorical(["I", "III", "III"], categories=["I", "II", "III", "IV"]),
        })

    def test_stage_levels_fixed(self, X):
        """Test stage keeps all four levels even when some are absent."""
        levels = categorical_levels(X, ["stage_group"])

        assert levels == {"stage_group": ["I", "II", "III", "IV"]}

    def test_indicator_columns(self, X):
        """Test one indicator per non-reference level."""
        levels = categorical_levels(X, ["stage_group"])

        design = make_design_matrix(X, ["age_years", "stage_group"], levels)

        assert design.columns.tolist() == [
            "age_years", "stage_group_II", "stage_group_III", "stage_group_IV"
        ]
        assert design["stage_group_III"].tolist() == [0.0, 1.0, 1.0]
        assert design["stage_group_IV"].sum() == 0.0

    def test_non_stage_categorical_uses_observed_levels(self):
        """Test other categoricals use their sorted observed values."""
        X = pd.DataFrame({"arm": ["b", "a", "c", "a"]})

        assert categorical_levels(X, ["arm"]) == {"arm": ["a", "b", "c"]}

    def test_design_columns_for(self, X):
        """Test mapping a covariate back to its design columns."""
        levels = categorical_levels(X, ["stage_group"])
        design = make_design_matrix(X, ["age_years", "stage_group"], levels)

        assert design_columns_for("age_years", design.columns, levels) == ["age_years"]
        assert design_columns_for("stage_group", design.columns, levels) == [
            "stage_group_II", "stage_group_III", "stage_group_IV"
        ]

    def test_split_X_y(self, clinical_canonical):
        """Test covariate frame and structured outcome line up."""
        X, y = split_X_y(clinical_canonical, ["age_years", "stage_group"])

        assert X.columns.tolist() == ["age_years", "stage_group"]
        assert len(y) == len(X) == 200
