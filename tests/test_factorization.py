#!/usr/bin/env python
# coding: utf-8


"""
Tests for methmix.core.factorization.

Covers:
- Constrained projection in every constraint mode, with missing values and
  with joblib workers.
- Clustering-based initialization.
- Single-K fits (constraints, K=1 short-cut, finalization on a second matrix).
- The K sweep.
"""


import numpy as np
import pandas as pd
import pytest

from methmix.core.factorization import (
    CellMixResult,
    initialize_mu,
    project_mix,
    ref_free_cell_mix,
    ref_free_cell_mix_array,
)
from methmix.core.simulation import simulate_mixture

TOL = 1e-8


@pytest.fixture(scope="module")
def sim():
    return simulate_mixture(
        n_probes=150, n_samples=20, n_cell_types=3, n_confounded=0, seed=5
    )


class TestProjectMix:
    """Test the constrained projection"""

    def setup_method(self):
        rng = np.random.default_rng(0)
        self.X = rng.uniform(0, 1, size=(60, 3))

    def test_recovers_feasible_coefficients(self):
        b = np.array([[0.2, 0.3, 0.4], [0.5, 0.1, 0.0]])
        Y = self.X @ b.T
        est = project_mix(Y, self.X)
        assert est.shape == (2, 3)
        np.testing.assert_allclose(est, b, atol=1e-6)

    def test_sum_constraint_active(self):
        b = np.array([0.7, 0.6, 0.3])
        Y = (self.X @ b)[:, None]
        est = project_mix(Y, self.X)
        assert (est >= -TOL).all()
        assert est.sum() <= 1.0 + TOL

    def test_nonnegative_only(self):
        b = np.array([1.5, -0.4, 0.8])
        Y = (self.X @ b)[:, None]
        est = project_mix(Y, self.X, sum_less_than_one=False, less_than_one=False)
        assert (est >= 0).all()
        assert est.sum() > 1.0

    def test_box_constraint(self):
        b = np.array([1.4, 0.5, -0.2])
        Y = (self.X @ b)[:, None]
        est = project_mix(Y, self.X, sum_less_than_one=False)
        assert ((est >= -TOL) & (est <= 1 + TOL)).all()

    def test_unconstrained(self):
        b = np.array([1.4, -0.5, 0.2])
        Y = (self.X @ b)[:, None]
        est = project_mix(Y, self.X, nonnegative=False)
        np.testing.assert_allclose(est[0], b, atol=1e-8)

    def test_missing_values_skipped_per_subject(self):
        b = np.array([0.2, 0.3, 0.4])
        Y = np.column_stack([self.X @ b, self.X @ b])
        Y[:10, 0] = np.nan
        est = project_mix(Y, self.X)
        np.testing.assert_allclose(est[0], b, atol=1e-6)
        np.testing.assert_allclose(est[1], b, atol=1e-6)

    def test_all_missing_subject_is_nan(self):
        Y = np.column_stack([self.X @ [0.2, 0.2, 0.2], np.full(60, np.nan)])
        est = project_mix(Y, self.X)
        assert np.isnan(est[1]).all()
        assert not np.isnan(est[0]).any()

    def test_parallel_matches_serial(self):
        rng = np.random.default_rng(1)
        Y = np.clip(self.X @ rng.dirichlet([1, 1, 1], size=9).T + rng.normal(0, 0.05, (60, 9)), 0, 1)
        serial = project_mix(Y, self.X)
        parallel = project_mix(Y, self.X, n_jobs=2)
        np.testing.assert_allclose(parallel, serial, atol=1e-6)

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="Feature mismatch"):
            project_mix(np.zeros((5, 2)), self.X)

    def test_nan_in_basis(self):
        X = self.X.copy()
        X[0, 0] = np.nan
        with pytest.raises(ValueError, match="missing"):
            project_mix(np.zeros((60, 2)), X)


class TestInitialization:
    """Test clustering-based initial signatures"""

    def test_shape_and_range(self, sim):
        mu0 = initialize_mu(sim.beta, 3)
        assert mu0.shape == (150, 3)
        assert np.nanmin(mu0) >= 0 and np.nanmax(mu0) <= 1

    def test_invalid_k(self, sim):
        with pytest.raises(ValueError):
            initialize_mu(sim.beta, 0)
        with pytest.raises(ValueError):
            initialize_mu(sim.beta, 21)

    def test_large_sample_guard(self, monkeypatch, sim):
        monkeypatch.setattr("methmix.core.factorization.MAX_CLUSTER_SAMPLES", 10)
        with pytest.raises(ValueError, match="large_ok"):
            initialize_mu(sim.beta, 2)
        assert initialize_mu(sim.beta, 2, large_ok=True).shape == (150, 2)


class TestRefFreeCellMix:
    """Test single-K factorization"""

    def test_constraints_hold(self, sim):
        res = ref_free_cell_mix(sim.beta, k=3, iters=5)
        assert isinstance(res, CellMixResult)
        assert res.mu.shape == (150, 3)
        assert res.omega.shape == (20, 3)
        assert (res.omega.to_numpy() >= -TOL).all()
        assert (res.omega.sum(axis=1) <= 1 + TOL).all()
        mu = res.mu.to_numpy()
        assert (mu >= -TOL).all() and (mu <= 1 + TOL).all()
        assert len(res.incremental_change) == 5
        assert list(res.omega.index) == list(sim.beta.columns)
        assert list(res.mu.index) == list(sim.beta.index)

    def test_fit_reconstructs_data(self, sim):
        res = ref_free_cell_mix(sim.beta, k=3, iters=10)
        resid = sim.beta - res.reconstruct()
        assert float(np.sqrt((resid**2).mean().mean())) < 0.1

    def test_k_one_shortcut(self, sim):
        res = ref_free_cell_mix(sim.beta, k=1)
        np.testing.assert_allclose(res.mu[1].to_numpy(), sim.beta.mean(axis=1).to_numpy())
        assert (res.omega[1] == 1.0).all()
        assert res.incremental_change == []

    def test_requires_mu0_or_k(self, sim):
        with pytest.raises(ValueError, match="mu0 or k"):
            ref_free_cell_mix(sim.beta)

    def test_explicit_mu0(self, sim):
        res = ref_free_cell_mix(sim.beta, mu0=sim.mu.to_numpy(), iters=2)
        assert res.k == 3

    def test_mu0_wrong_rows(self, sim):
        with pytest.raises(ValueError):
            ref_free_cell_mix(sim.beta, mu0=np.full((10, 2), 0.5))

    def test_mu0_nan_rows_excluded_from_omega_step(self, sim):
        mu0 = initialize_mu(sim.beta, 2)
        mu0[:5] = np.nan
        res = ref_free_cell_mix(sim.beta, mu0=mu0, iters=1)
        assert not res.omega.isna().any().any()

    def test_missing_values_in_y(self, sim):
        Y = sim.beta.copy()
        Y.iloc[0, 0] = np.nan
        Y.iloc[10, 3] = np.nan
        res = ref_free_cell_mix(Y, k=2, iters=3)
        assert not res.mu.isna().any().any()
        assert (res.omega.sum(axis=1) <= 1 + TOL).all()

    def test_sample_without_observations(self, sim):
        Y = sim.beta.copy()
        Y.iloc[:, 0] = np.nan
        res = ref_free_cell_mix(Y, k=2, iters=2)
        assert res.omega.iloc[0].isna().all()
        assert not res.omega.iloc[1:].isna().any().any()
        assert not res.mu.isna().any().any()
        mu = res.mu.to_numpy()
        assert (mu >= -TOL).all() and (mu <= 1 + TOL).all()

    def test_sample_without_observations_matches_dropping_it(self, sim):
        Y = sim.beta.copy()
        Y.iloc[:, 0] = np.nan
        mu0 = initialize_mu(sim.beta.iloc[:, 1:], 2)
        with_empty = ref_free_cell_mix(Y, mu0=mu0, iters=2)
        dropped = ref_free_cell_mix(sim.beta.iloc[:, 1:], mu0=mu0, iters=2)
        np.testing.assert_allclose(
            with_empty.mu.to_numpy(), dropped.mu.to_numpy(), atol=1e-8
        )
        pd.testing.assert_frame_equal(with_empty.omega.iloc[1:], dropped.omega)

    def test_no_observed_sample_at_all(self, sim):
        Y = sim.beta.copy()
        Y.iloc[:, :] = np.nan
        with pytest.raises(ValueError, match="No sample has observed values"):
            ref_free_cell_mix(Y, mu0=np.full((150, 2), 0.5), iters=1)

    def test_y_final_leaves_omega_unchanged(self, sim):
        Y = sim.beta.iloc[:100]
        base = ref_free_cell_mix(Y, k=3, iters=4)
        final = ref_free_cell_mix(Y, k=3, iters=4, y_final=sim.beta)
        pd.testing.assert_frame_equal(final.omega, base.omega)
        assert final.mu.shape == (150, 3)
        assert list(final.mu.index) == list(sim.beta.index)
        assert final.finalized_on == "y_final"

    def test_y_final_k_one_uses_final_means(self, sim):
        Y = sim.beta.iloc[:50]
        res = ref_free_cell_mix(Y, k=1, y_final=sim.beta)
        assert res.mu.shape == (150, 1)

    def test_y_final_sample_mismatch(self, sim):
        with pytest.raises(ValueError, match="same samples"):
            ref_free_cell_mix(sim.beta, k=2, y_final=sim.beta.iloc[:, :5])

    def test_summary_and_repr(self, sim):
        res = ref_free_cell_mix(sim.beta, k=2, iters=2)
        summ = res.summary()
        assert summ["k"] == 2
        assert summ["omega_row_sum_max"] <= 1 + TOL
        assert summ["iterations"] == 2
        assert "k=2" in repr(res)


class TestRefFreeCellMixArray:
    """Test the K sweep"""

    def test_one_result_per_k(self, sim):
        results = ref_free_cell_mix_array(sim.beta, k_list=[1, 2, 3], iters=3)
        assert list(results) == [1, 2, 3]
        for k, res in results.items():
            assert res.k == k
            assert res.omega.shape == (20, k)

    def test_sweep_matches_single_fit(self, sim):
        results = ref_free_cell_mix_array(sim.beta, k_list=[2, 3], iters=3)
        single = ref_free_cell_mix(sim.beta, k=3, iters=3)
        pd.testing.assert_frame_equal(results[3].omega, single.omega)

    def test_invalid_k_list(self, sim):
        with pytest.raises(ValueError):
            ref_free_cell_mix_array(sim.beta, k_list=[])
        with pytest.raises(ValueError):
            ref_free_cell_mix_array(sim.beta, k_list=[0, 2])
