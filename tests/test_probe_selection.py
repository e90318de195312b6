#!/usr/bin/env python
# coding: utf-8


"""
Tests for methmix.core.probe_selection.

Covers:
- Multiple-testing adjustment and design construction.
- Variance ranking (ordering, ties, bounds).
- Per-probe covariate association and the confounder filter.
- Strategy dispatch and provenance recording.
"""


import numpy as np
import pandas as pd
import pytest

from methmix.core.probe_selection import (
    adjust_pvalues,
    build_design,
    filter_confounded_probes,
    probe_covariate_association,
    select_probes,
    select_top_variance_probes,
)
from methmix.core.simulation import simulate_mixture
from methmix.io.data_utils import MethylationData


@pytest.fixture(scope="module")
def sim():
    return simulate_mixture(
        n_probes=300, n_samples=40, n_cell_types=3, n_confounded=30,
        age_effect=0.006, sex_effect=0.15, noise_sd=0.02, seed=11,
    )


@pytest.fixture
def data(sim):
    return MethylationData(beta=sim.beta.copy(), pheno=sim.covariates.copy())


class TestAdjustPvalues:
    """Test p-value correction"""

    def test_nan_treated_as_one(self):
        adj = adjust_pvalues(pd.Series([0.01, np.nan, 0.04], index=list("abc")))
        assert list(adj.index) == ["a", "b", "c"]
        assert adj["b"] == 1.0

    def test_none_passthrough(self):
        adj = adjust_pvalues([0.01, 0.5], method="none")
        np.testing.assert_allclose(adj.to_numpy(), [0.01, 0.5])

    def test_bonferroni(self):
        adj = adjust_pvalues(np.array([0.01, 0.02]), method="bonferroni")
        np.testing.assert_allclose(adj.to_numpy(), [0.02, 0.04])

    def test_invalid_method(self):
        with pytest.raises(ValueError):
            adjust_pvalues([0.1], method="made_up")

    def test_none_input(self):
        with pytest.raises(ValueError):
            adjust_pvalues(None)


class TestVarianceRanking:
    """Test top-variance probe selection"""

    def setup_method(self):
        self.beta = pd.DataFrame(
            {
                "S1": [0.1, 0.5, 0.2, 0.1, 0.3],
                "S2": [0.9, 0.5, 0.8, 0.9, 0.3],
                "S3": [0.1, 0.5, 0.2, 0.1, np.nan],
            },
            index=["p0", "p1", "p2", "p3", "p4"],
        )

    def test_descending_variance_with_ties_in_original_order(self):
        top = select_top_variance_probes(self.beta, 3)
        # p0 and p3 are identical rows
        assert list(top.index) == ["p0", "p3", "p2"]

    def test_n_larger_than_probe_count_keeps_all(self):
        top = select_top_variance_probes(self.beta, 50)
        assert len(top) == 5

    def test_exact_probe_count_does_not_warn(self, caplog):
        with caplog.at_level("WARNING", logger="methmix"):
            top = select_top_variance_probes(self.beta, 5)
        assert len(top) == 5
        assert "only 5 available" not in caplog.text
        with caplog.at_level("WARNING", logger="methmix"):
            select_top_variance_probes(self.beta, 6)
        assert "only 5 available" in caplog.text

    def test_n_below_one(self):
        with pytest.raises(ValueError):
            select_top_variance_probes(self.beta, 0)


class TestDesign:
    """Test design matrix construction"""

    def test_dummy_encoding_and_intercept(self):
        cov = pd.DataFrame({"age": [30, 40, 50], "sex": ["F", "M", "F"]}, index=list("abc"))
        X = build_design(cov)
        assert list(X.columns) == ["intercept", "age", "sex_M"]
        assert X["sex_M"].tolist() == [0.0, 1.0, 0.0]

    def test_explicit_categorical(self):
        cov = pd.DataFrame({"batch": [1, 2, 3]}, index=list("abc"))
        X = build_design(cov, categorical=["batch"], add_intercept=False)
        assert list(X.columns) == ["batch_2", "batch_3"]

    def test_requires_dataframe(self):
        with pytest.raises(TypeError):
            build_design(np.zeros((3, 2)))


class TestAssociation:
    """Test per-probe covariate association"""

    def test_matches_statsmodels_ols(self, sim):
        import statsmodels.api as sm

        beta = sim.beta.iloc[:5]
        res = probe_covariate_association(beta, sim.covariates)
        X = build_design(sim.covariates)
        for probe in beta.index:
            fit = sm.OLS(beta.loc[probe].to_numpy(), X.to_numpy()).fit()
            assert res.loc[probe, "F"] == pytest.approx(fit.fvalue, rel=1e-6)
            assert res.loc[probe, "pval"] == pytest.approx(fit.f_pvalue, rel=1e-6)
        assert (res["df1"] == 2).all()
        assert (res["df2"] == 40 - 3).all()

    def test_constant_and_collinear_covariates_use_design_rank(self, sim, caplog):
        beta = sim.beta.iloc[:5].copy()
        beta.iloc[0, :4] = np.nan
        cov = sim.covariates.copy()
        cov["site"] = 1.0
        cov["age_months"] = cov["age"] * 12
        with caplog.at_level("WARNING", logger="methmix"):
            res = probe_covariate_association(beta, cov)
        ref = probe_covariate_association(beta, sim.covariates)
        assert "rank" in caplog.text
        assert (res["df1"] == 2).all()
        np.testing.assert_allclose(res["df2"], ref["df2"])
        np.testing.assert_allclose(res["F"], ref["F"], rtol=1e-6)
        np.testing.assert_allclose(res["pval"], ref["pval"], rtol=1e-6)

    def test_only_constant_covariates_are_untested(self, sim):
        cov = pd.DataFrame({"site": 1.0}, index=sim.covariates.index)
        res = probe_covariate_association(sim.beta.iloc[:3], cov)
        assert res["F"].isna().all()
        assert (res["padj"] == 1.0).all()

    def test_missing_values_fit_on_observed(self, sim):
        beta = sim.beta.iloc[:10].copy()
        beta.iloc[0, :5] = np.nan
        res = probe_covariate_association(beta, sim.covariates)
        assert res.iloc[0]["df2"] == 35 - 3
        assert not np.isnan(res.iloc[0]["pval"])

    def test_too_few_observations_gives_nan(self, sim):
        beta = sim.beta.iloc[:4].copy()
        beta.iloc[1, 3:] = np.nan
        res = probe_covariate_association(beta, sim.covariates, min_observed=5)
        assert np.isnan(res.iloc[1]["F"])
        assert res.iloc[1]["padj"] == 1.0

    def test_missing_covariate_rows(self, sim):
        with pytest.raises(KeyError):
            probe_covariate_association(sim.beta, sim.covariates.iloc[:10])

    def test_covariate_missing_values(self, sim):
        cov = sim.covariates.copy()
        cov.iloc[0, 0] = np.nan
        with pytest.raises(ValueError, match="missing"):
            probe_covariate_association(sim.beta, cov)

    def test_filter_removes_confounded_probes(self, sim):
        kept, assoc = filter_confounded_probes(sim.beta, sim.covariates, alpha=0.05)
        flagged = set(assoc.index[assoc["confounded"]])
        truth = set(sim.confounded_probes)
        # most injected probes are detected and few clean probes are lost
        assert len(flagged & truth) >= 0.8 * len(truth)
        assert len(flagged - truth) <= 0.1 * len(sim.beta)
        assert set(kept.index).isdisjoint(flagged)
        assert list(kept.index) == [p for p in sim.beta.index if p not in flagged]

    def test_filter_invalid_alpha(self, sim):
        with pytest.raises(ValueError):
            filter_confounded_probes(sim.beta, sim.covariates, alpha=1.5)


class TestSelectProbes:
    """Test strategy dispatch"""

    def test_variance_strategy_records_step(self, data):
        subset, diag = select_probes(data, strategy="variance", n_top=50)
        assert subset.n_probes == 50
        assert diag["n_selected"] == 50
        step = subset.meta["probe_selection"][-1]
        assert step["strategy"] == "variance"
        assert step["n_before"] == 300
        assert data.meta["probe_selection"] == []

    def test_confounder_strategy(self, data, sim):
        subset, diag = select_probes(
            data, strategy="confounder", n_top=None, covariates=["age", "sex"]
        )
        assert "association" in diag
        assert subset.n_probes == 300 - diag["n_confounded"]
        assert subset.meta["probe_selection"][-1]["covariates"] == ["age", "sex"]

    def test_confounder_strategy_then_ranking(self, data):
        subset, _ = select_probes(data, strategy="confounder", n_top=40)
        assert subset.n_probes == 40

    def test_unknown_covariate(self, data):
        with pytest.raises(KeyError):
            select_probes(data, strategy="confounder", covariates=["bmi"])

    def test_unknown_strategy(self, data):
        with pytest.raises(ValueError, match="Unknown probe selection strategy"):
            select_probes(data, strategy="random")

    def test_variance_requires_n_top(self, data):
        with pytest.raises(ValueError):
            select_probes(data, strategy="variance", n_top=None)
