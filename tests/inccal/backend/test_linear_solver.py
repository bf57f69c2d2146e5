########################################################################################
##
##                                  TESTS FOR
##                             'backend/linear_solver.py'
##
########################################################################################

# IMPORTS ==============================================================================

import unittest

import numpy as np
import pytest

from inccal.backend.linear_solver import (
    LinearSolver,
    LinearSolverOptions,
    SolverState,
    qr_flops,
    qr_tolerance,
)
from inccal.core.design_variable import DesignVariable
from inccal.core.error_term import ErrorTerm, FunctionErrorTerm
from inccal.exceptions import InvalidOperationError


# HELPERS ==============================================================================

def _layout(design_variables, error_terms):
    """Assign block index, column base and row base like the optimizer does."""
    col = 0
    for i, dv in enumerate(design_variables):
        dv.block_index = i
        dv.column_base = col
        col += dv.minimal_dimensions
    row = 0
    for et in error_terms:
        et.row_base = row
        row += et.dimension


def _small_system():
    """
    a in R^2, b in R^1 with
        e0 = a                 (J_a = I)
        e1 = a0 + 2 b0         (J_a = [1 0], J_b = [2])
    """
    a = DesignVariable([1.0, 2.0], name="a")
    b = DesignVariable([3.0], name="b")
    et0 = FunctionErrorTerm(lambda x: x, [a], jacobian=lambda x: [np.eye(2)])
    et1 = FunctionErrorTerm(
        lambda x, y: [x[0] + 2.0 * y[0]], [a, b],
        jacobian=lambda x, y: [[[1.0, 0.0]], [[2.0]]],
    )
    dvs, ets = [a, b], [et0, et1]
    _layout(dvs, ets)
    return dvs, ets


# TESTS ================================================================================

class TestHelpers(unittest.TestCase):

    def test_qr_tolerance(self):
        A = np.array([[3.0, 0.0], [4.0, 1.0]])
        eps = 1e-10
        self.assertAlmostEqual(qr_tolerance(A, eps), 20.0 * 4 * eps * 5.0)

    def test_qr_tolerance_empty(self):
        self.assertEqual(qr_tolerance(np.zeros((0, 0))), 0.0)

    def test_qr_flops(self):
        self.assertAlmostEqual(qr_flops(3, 3), 2 * 27 - 2 * 27 / 3)
        self.assertEqual(qr_flops(0, 0), 0.0)


class TestLinearSolverStates(unittest.TestCase):

    def test_initial_state(self):
        s = LinearSolver()
        self.assertIs(s.state, SolverState.UNINITIALIZED)
        self.assertIsNone(s.jacobian_transpose)
        self.assertEqual(s.cost, 0.0)

    def test_build_before_structure(self):
        with pytest.raises(InvalidOperationError):
            LinearSolver().build_system()

    def test_analyze_before_build(self):
        dvs, ets = _small_system()
        s = LinearSolver()
        s.init_matrix_structure(dvs, ets)
        with pytest.raises(InvalidOperationError):
            s.analyze_system()

    def test_state_transitions(self):
        dvs, ets = _small_system()
        s = LinearSolver()
        s.init_matrix_structure(dvs, ets)
        self.assertIs(s.state, SolverState.STRUCTURED)
        s.build_system()
        self.assertIs(s.state, SolverState.STRUCTURED)
        s.analyze_system()
        self.assertIs(s.state, SolverState.FACTORIZED)

    def test_unassigned_column(self):
        dv = DesignVariable([0.0], name="x")
        with pytest.raises(ValueError, match="no column"):
            LinearSolver().init_matrix_structure([dv], [])

    def test_inactive_rejected(self):
        dv = DesignVariable([0.0], name="x", active=False)
        dv.column_base = 0
        with pytest.raises(ValueError, match="inactive"):
            LinearSolver().init_matrix_structure([dv], [])

    def test_unassigned_row(self):
        dv = DesignVariable([0.0])
        dv.column_base = 0
        et = FunctionErrorTerm(lambda x: x, [dv])
        with pytest.raises(ValueError, match="no row"):
            LinearSolver().init_matrix_structure([dv], [et])


class TestLinearSolverAssembly(unittest.TestCase):

    def setUp(self):
        self.dvs, self.ets = _small_system()
        self.solver = LinearSolver()
        self.solver.init_matrix_structure(self.dvs, self.ets)
        self.solver.build_system()

    def test_dimensions(self):
        self.assertEqual(self.solver.num_cols, 3)
        self.assertEqual(self.solver.num_rows, 3)

    def test_jacobian_transpose(self):
        jt = self.solver.jacobian_transpose
        self.assertEqual(jt.format, "csc")
        expected = np.array([[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 0.0, 2.0]])
        np.testing.assert_allclose(jt.toarray(), expected.T)
        np.testing.assert_allclose(self.solver.jacobian.toarray(), expected)

    def test_rhs_and_cost(self):
        np.testing.assert_allclose(self.solver.rhs, [1.0, 2.0, 7.0])
        self.assertAlmostEqual(self.solver.cost, 54.0)

    def test_threaded_build_identical(self):
        serial = self.solver.jacobian_transpose.toarray()
        self.solver.build_system(n_threads=2)
        np.testing.assert_array_equal(self.solver.jacobian_transpose.toarray(), serial)

    def test_inactive_variable_has_no_columns(self):
        a = DesignVariable([1.0], name="a")
        b = DesignVariable([1.0], name="b", active=False)
        et = FunctionErrorTerm(
            lambda x, y: [x[0] * y[0]], [a, b],
            jacobian=lambda x, y: [[[y[0]]], [[x[0]]]],
        )
        _layout([a], [et])
        s = LinearSolver()
        s.init_matrix_structure([a], [et])
        s.build_system()
        self.assertEqual(s.jacobian_transpose.shape, (1, 1))


class _InPlaceQuadratic(ErrorTerm):
    """e = x_j ** 2 - c, Jacobian by in-place finite differences."""

    def __init__(self, dv, j, c):
        self.j, self.c = j, c
        super().__init__([dv], 1)

    def evaluate_error(self):
        return [self.design_variables[0].value[self.j] ** 2 - self.c]


def _shared_theta_system(n_terms=24, in_place=False):
    """Many finite-difference terms on one shared theta = [1, 2, 3]."""
    theta = DesignVariable([1.0, 2.0, 3.0], name="theta")
    ets = []
    for i in range(n_terms):
        j, c = i % 3, 0.1 * i
        if in_place and i % 2:
            ets.append(_InPlaceQuadratic(theta, j, c))
        else:
            ets.append(FunctionErrorTerm(
                lambda th, j=j, c=c: [th[j] ** 2 * th[(j + 1) % 3] - c], [theta]
            ))
    _layout([theta], ets)
    return theta, ets


class TestThreadedFiniteDifferences(unittest.TestCase):

    def _check(self, in_place):
        theta, ets = _shared_theta_system(in_place=in_place)
        s = LinearSolver()
        s.init_matrix_structure([theta], ets)
        s.build_system()
        rhs = s.rhs.copy()
        jt = s.jacobian_transpose.toarray()

        for _ in range(20):
            s.build_system(n_threads=4)
            np.testing.assert_array_equal(s.rhs, rhs)
            np.testing.assert_array_equal(s.jacobian_transpose.toarray(), jt)
        np.testing.assert_array_equal(theta.value, [1.0, 2.0, 3.0])

    def test_shared_variable_function_terms(self):
        self._check(in_place=False)

    def test_shared_variable_in_place_terms(self):
        self._check(in_place=True)

    def test_jacobian_values(self):
        theta, ets = _shared_theta_system(n_terms=3)
        s = LinearSolver()
        s.init_matrix_structure([theta], ets)
        s.build_system(n_threads=4)
        expected = np.array([
            [4.0, 1.0, 0.0],     # th0^2 th1
            [0.0, 12.0, 4.0],    # th1^2 th2
            [9.0, 0.0, 6.0],     # th2^2 th0
        ])
        np.testing.assert_allclose(s.jacobian.toarray(), expected, rtol=1e-6)


class TestLinearSolverAnalysis(unittest.TestCase):

    def test_full_rank_psi(self):
        dvs, ets = _small_system()
        s = LinearSolver()
        s.marg_dimension = 1
        s.init_matrix_structure(dvs, ets)
        s.build_system()
        s.analyze_system()
        self.assertEqual(s.marg_start_index, 2)
        self.assertEqual(s.rank, 2)
        self.assertEqual(s.rank_deficiency, 0)
        self.assertGreater(s.tolerance, 0.0)
        self.assertGreater(s.memory_usage, 0)
        self.assertGreaterEqual(s.peak_memory_usage, s.memory_usage)
        self.assertGreater(s.num_flops, 0.0)

    def test_rank_deficient_psi(self):
        a = DesignVariable([0.0, 0.0], name="a")
        et = FunctionErrorTerm(
            lambda x: [x[0] + x[1]], [a], jacobian=lambda x: [[[1.0, 1.0]]]
        )
        _layout([a], [et])
        s = LinearSolver()
        s.init_matrix_structure([a], [et])
        s.build_system()
        s.analyze_system()
        self.assertEqual(s.rank, 1)
        self.assertEqual(s.rank_deficiency, 1)

    def test_explicit_qr_tolerance(self):
        dvs, ets = _small_system()
        s = LinearSolver(LinearSolverOptions(qr_tol=1.5))
        s.init_matrix_structure(dvs, ets)
        s.build_system()
        s.analyze_system()
        self.assertEqual(s.tolerance, 1.5)

    def test_all_marginal(self):
        dvs, ets = _small_system()
        s = LinearSolver()
        s.marg_dimension = 3
        s.init_matrix_structure(dvs, ets)
        s.build_system()
        s.analyze_system()
        self.assertEqual(s.rank, 0)
        self.assertEqual(s.rank_deficiency, 0)
