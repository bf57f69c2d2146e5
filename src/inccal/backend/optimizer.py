#########################################################################################
##
##                              NONLINEAR OPTIMIZER
##                             (backend/optimizer.py)
##
##         Bounded trust-region solve of the aggregate least-squares problem.
##         Residuals and Jacobians are assembled by the linear solver; the
##         iteration itself is delegated to SciPy.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from dataclasses import dataclass, field

import numpy as np
import scipy.optimize as sci_opt

from ..exceptions import InvalidOperationError
from ..utils.logger import LoggerManager
from .linear_solver import LinearSolver, LinearSolverOptions


logger = LoggerManager().get_logger("optimizer")


# OPTIONS & RESULT ======================================================================

@dataclass
class OptimizerOptions:
    """Options of the nonlinear optimizer.

    Parameters
    ----------
    max_iterations : int
        Cap on residual evaluations of the trust-region solve.
    n_threads : int
        Worker threads used to evaluate error terms during assembly.
    verbose : bool
        Forwarded to ``scipy.optimize.least_squares`` (per-iteration report).
    convergence_delta_j : float
        Relative cost-change tolerance (``ftol``).
    convergence_delta_x : float
        Relative step tolerance (``xtol``).
    gradient_tolerance : float
        Gradient tolerance (``gtol``).
    """

    max_iterations: int = 20
    n_threads: int = 1
    verbose: bool = False
    convergence_delta_j: float = 1e-9
    convergence_delta_x: float = 1e-9
    gradient_tolerance: float = 1e-10


@dataclass
class SolutionReturnValue:
    """Outcome of one :meth:`Optimizer.optimize` call.

    ``iterations`` counts residual evaluations (SciPy's ``nfev``).
    """

    iterations: int = 0
    j_start: float = 0.0
    j_final: float = 0.0
    max_iterations_hit: bool = False
    success: bool = True
    message: str = ""
    dx: np.ndarray = field(default_factory=lambda: np.zeros(0))


    def __repr__(self) -> str:
        status = "SUCCESS" if self.success else "FAILED"
        return (
            f"SolutionReturnValue({status}, iterations={self.iterations}, "
            f"j_start={self.j_start:.4g}, j_final={self.j_final:.4g})"
        )


# CLASS =================================================================================

class Optimizer:
    """Trust-region least-squares optimizer over an aggregate problem.

    The problem object must enumerate its variables and error terms through
    ``design_variables`` and ``error_terms`` (see
    :class:`~inccal.core.incremental_problem.IncrementalOptimizationProblem`).

    Parameters
    ----------
    options : OptimizerOptions, optional
    linear_solver_options : LinearSolverOptions, optional
        Options for the solvers created by :meth:`initialize_linear_solver`.

    Notes
    -----
    The free vector handed to SciPy is a perturbation ``dx`` in minimal
    coordinates around the values at the start of :meth:`optimize`; every
    evaluation restores the start values and applies ``dx`` through
    :meth:`DesignVariable.update`, so manifold variables work unchanged.
    The cost reported is ``J = eᵀe`` of the weighted errors.
    """

    def __init__(
        self,
        options: OptimizerOptions | None = None,
        linear_solver_options: LinearSolverOptions | None = None,
    ):
        self.options = options if options is not None else OptimizerOptions()
        self.linear_solver_options = (
            linear_solver_options if linear_solver_options is not None
            else LinearSolverOptions()
        )
        self._problem = None
        self._linear_solver: LinearSolver | None = None


    # SETUP -----------------------------------------------------------------------------

    def set_problem(self, problem) -> None:
        self._problem = problem


    @property
    def problem(self):
        return self._problem


    def initialize_linear_solver(self) -> LinearSolver:
        """Replace the linear solver by a fresh one built from the current options."""
        self._linear_solver = LinearSolver(self.linear_solver_options)
        return self._linear_solver


    @property
    def linear_solver(self) -> LinearSolver:
        if self._linear_solver is None:
            self.initialize_linear_solver()
        return self._linear_solver


    def initialize(self) -> None:
        """Assign block layout of the active variables and hand it to the solver."""
        if self._problem is None:
            raise InvalidOperationError("Optimizer.initialize(): no problem set")

        active = []
        column_base = 0
        for dv in self._problem.design_variables:
            if not dv.active:
                continue
            dv.block_index = len(active)
            dv.column_base = column_base
            column_base += dv.minimal_dimensions
            active.append(dv)

        row_base = 0
        error_terms = self._problem.error_terms
        for et in error_terms:
            et.row_base = row_base
            row_base += et.dimension

        self.linear_solver.init_matrix_structure(active, error_terms)


    # OPTIMIZATION ----------------------------------------------------------------------

    def optimize(self) -> SolutionReturnValue:
        """Run the bounded solve and leave the solver factorized at the solution.

        Returns
        -------
        SolutionReturnValue
        """
        self.initialize()
        solver = self.linear_solver
        n_threads = int(self.options.n_threads)

        active = [dv for dv in self._problem.design_variables if dv.active]
        start = [dv.get_parameters() for dv in active]

        def _apply(dx: np.ndarray) -> None:
            for dv, params in zip(active, start):
                dv.set_parameters(params)
                if dv.minimal_dimensions:
                    dv.update(dx[dv.column_base:dv.column_base + dv.minimal_dimensions])

        def _residuals(dx: np.ndarray) -> np.ndarray:
            _apply(dx)
            solver.build_system(n_threads)
            return solver.rhs.copy()

        def _jacobian(dx: np.ndarray) -> np.ndarray:
            _apply(dx)
            solver.build_system(n_threads)
            return solver.jacobian.toarray()

        solver.build_system(n_threads)
        j_start = solver.cost

        if solver.num_cols == 0 or solver.num_rows == 0:
            solver.analyze_system()
            return SolutionReturnValue(
                iterations=0, j_start=j_start, j_final=j_start,
                message="nothing to optimize",
            )

        res = sci_opt.least_squares(
            _residuals,
            x0=np.zeros(solver.num_cols),
            jac=_jacobian,
            method="trf",
            tr_solver="exact",
            ftol=float(self.options.convergence_delta_j),
            xtol=float(self.options.convergence_delta_x),
            gtol=float(self.options.gradient_tolerance),
            max_nfev=int(self.options.max_iterations),
            verbose=2 if self.options.verbose else 0,
        )

        # final linearization at the solution
        _apply(res.x)
        solver.build_system(n_threads)
        solver.analyze_system()

        srv = SolutionReturnValue(
            iterations=int(res.nfev),
            j_start=j_start,
            j_final=solver.cost,
            max_iterations_hit=bool(res.status == 0),
            success=bool(res.success),
            message=str(res.message),
            dx=np.asarray(res.x, dtype=float),
        )

        if self.options.verbose:
            logger.info("%r: %s", srv, srv.message)

        return srv
