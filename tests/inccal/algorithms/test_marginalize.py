########################################################################################
##
##                                  TESTS FOR
##                            'algorithms/marginalize.py'
##
########################################################################################

# IMPORTS ==============================================================================

import unittest

import numpy as np
import pytest
import scipy.sparse as sci_sparse

from inccal.algorithms.marginalize import marginalize, MarginalizationResult


# HELPERS ==============================================================================

def _jt(J):
    """Sparse transpose, the layout the linear solver hands over."""
    return sci_sparse.csc_matrix(np.asarray(J, dtype=float).T)


# TESTS ================================================================================

class TestMarginalizeNoPsi(unittest.TestCase):
    """Without leading columns A_theta is the Jacobian itself."""

    def setUp(self):
        self.res = marginalize(_jt(np.diag([3.0, 1.0])), 0)

    def test_result_type(self):
        self.assertIsInstance(self.res, MarginalizationResult)

    def test_singular_values(self):
        np.testing.assert_allclose(self.res.singular_values, [3.0, 1.0])

    def test_full_rank(self):
        self.assertEqual(self.res.rank, 2)
        self.assertEqual(self.res.rank_deficiency, 0)
        self.assertEqual(self.res.nobs_basis.shape, (2, 0))
        self.assertEqual(self.res.obs_basis.shape, (2, 2))

    def test_covariance(self):
        np.testing.assert_allclose(
            self.res.sigma2_theta, np.diag([1.0 / 9.0, 1.0]), atol=1e-12
        )
        np.testing.assert_allclose(
            self.res.sigma2_theta_obs, np.diag([1.0 / 9.0, 1.0]), atol=1e-12
        )

    def test_log2_sum(self):
        self.assertAlmostEqual(self.res.sv_log2_sum, np.log2(3.0))

    def test_automatic_tolerance(self):
        eps = np.finfo(float).eps
        self.assertAlmostEqual(self.res.svd_tolerance, 2 * 3.0 * eps)

    def test_dense_input_equivalent(self):
        dense = marginalize(np.diag([3.0, 1.0]).T, 0)
        np.testing.assert_allclose(dense.singular_values, self.res.singular_values)


class TestMarginalizeProjection(unittest.TestCase):

    def test_component_in_psi_range_removed(self):
        # J_psi = e_0, J_theta = [1, 1]^T: only the second row informs theta
        J = np.array([[1.0, 1.0], [0.0, 1.0]])
        res = marginalize(_jt(J), 1)
        np.testing.assert_allclose(res.singular_values, [1.0], atol=1e-12)
        self.assertEqual(res.psi_rank, 1)

    def test_theta_fully_explained_by_psi(self):
        J = np.array([[1.0, 2.0], [0.0, 0.0]])
        res = marginalize(_jt(J), 1)
        self.assertEqual(res.rank, 0)
        self.assertEqual(res.rank_deficiency, 1)
        self.assertEqual(res.sv_log2_sum, 0.0)

    def test_tall_system_reduced(self):
        rng = np.random.default_rng(0)
        J = rng.normal(size=(20, 5))
        res = marginalize(_jt(J), 2)

        # reference: orthogonal projection with a dense pseudo-inverse
        J_psi, J_theta = J[:, :2], J[:, 2:]
        P = np.eye(20) - J_psi @ np.linalg.pinv(J_psi)
        s_ref = np.linalg.svd(P @ J_theta, compute_uv=False)
        np.testing.assert_allclose(res.singular_values, s_ref, rtol=1e-10)

        cov_ref = np.linalg.inv((P @ J_theta).T @ (P @ J_theta))
        np.testing.assert_allclose(res.sigma2_theta, cov_ref, rtol=1e-8)


class TestMarginalizeRankDeficient(unittest.TestCase):

    def setUp(self):
        # theta_2 never observed
        J = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
        self.res = marginalize(_jt(J), 0)

    def test_rank(self):
        self.assertEqual(self.res.rank, 2)
        self.assertEqual(self.res.rank_deficiency, 1)

    def test_spectrum_padded(self):
        self.assertEqual(self.res.singular_values.shape, (3,))
        np.testing.assert_allclose(self.res.singular_values, [2.0, 1.0, 0.0], atol=1e-12)

    def test_nobs_basis_spans_unobserved_axis(self):
        self.assertEqual(self.res.nobs_basis.shape, (3, 1))
        np.testing.assert_allclose(
            np.abs(self.res.nobs_basis[:, 0]), [0.0, 0.0, 1.0], atol=1e-12
        )

    def test_bases_orthonormal(self):
        B = np.hstack([self.res.obs_basis, self.res.nobs_basis])
        np.testing.assert_allclose(B.T @ B, np.eye(3), atol=1e-12)

    def test_covariance_zero_on_unobservable(self):
        n = self.res.nobs_basis[:, 0]
        np.testing.assert_allclose(self.res.sigma2_theta @ n, 0.0, atol=1e-12)


class TestMarginalizeScaling(unittest.TestCase):

    J = np.diag([100.0, 1.0])

    def test_scaled_spectrum(self):
        res = marginalize(_jt(self.J), 0)
        np.testing.assert_allclose(res.singular_values, [100.0, 1.0])
        np.testing.assert_allclose(res.singular_values_scaled, [1.0, 1.0])
        np.testing.assert_allclose(res.column_scales, [0.01, 1.0])
        np.testing.assert_allclose(res.sigma2_theta_scaled, np.eye(2), atol=1e-12)

    def test_log2_sum_follows_analysed_spectrum(self):
        raw = marginalize(_jt(self.J), 0, column_scaling=False)
        scaled = marginalize(_jt(self.J), 0, column_scaling=True)
        self.assertAlmostEqual(raw.sv_log2_sum, np.log2(100.0))
        self.assertAlmostEqual(scaled.sv_log2_sum, 0.0)

    def test_zero_column_left_unscaled(self):
        J = np.array([[1.0, 0.0], [2.0, 0.0]])
        res = marginalize(_jt(J), 0)
        self.assertEqual(res.column_scales[1], 1.0)
        self.assertEqual(res.rank, 1)


class TestMarginalizeEdgeCases:

    def test_explicit_svd_tolerance(self):
        res = marginalize(_jt(np.diag([3.0, 1.0])), 0, svd_tol=2.0)
        assert res.rank == 1
        assert res.svd_tolerance == 2.0
        assert res.sv_log2_sum == pytest.approx(np.log2(3.0))

    def test_empty_marginal_block(self):
        res = marginalize(_jt(np.eye(2)), 2)
        assert res.rank == 0
        assert res.rank_deficiency == 0
        assert res.singular_values.size == 0
        assert res.sv_log2_sum == 0.0

    def test_start_index_out_of_range(self):
        with pytest.raises(ValueError, match="out of range"):
            marginalize(_jt(np.eye(2)), 3)
        with pytest.raises(ValueError):
            marginalize(_jt(np.eye(2)), -1)

    def test_wide_theta_block(self):
        res = marginalize(_jt([[1.0, 1.0, 0.0]]), 0)
        np.testing.assert_allclose(res.singular_values, [np.sqrt(2.0), 0.0, 0.0], atol=1e-12)
        assert res.rank == 1
        assert res.nobs_basis.shape == (3, 2)
