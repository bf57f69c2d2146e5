#########################################################################################
##
##                              LINEAR SOLVER ADAPTER
##                            (backend/linear_solver.py)
##
##         Assembles the weighted sparse Jacobian of the aggregate problem and
##         analyzes it with a column-pivoted QR decomposition of the
##         non-marginal block, providing numerical rank, tolerance and
##         resource counters.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import enum
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Sequence

import numpy as np
import scipy.linalg as sci_linalg
import scipy.sparse as sci_sparse

from ..core.design_variable import DesignVariable
from ..core.error_term import ErrorTerm
from ..exceptions import InvalidOperationError
from ..utils.logger import LoggerManager


_EPS = float(np.finfo(float).eps)

logger = LoggerManager().get_logger("linear_solver")


# OPTIONS ===============================================================================

@dataclass
class LinearSolverOptions:
    """Options of the truncated linear solver.

    Parameters
    ----------
    column_scaling : bool
        Normalize the columns of the marginal block before rank analysis.
    eps_norm : float
        Columns with a norm at or below this value are left unscaled.
    eps_svd : float
        Relative precision for the automatic SVD tolerance.
    eps_qr : float
        Relative precision for the automatic QR tolerance.
    svd_tol : float
        Singular values at or below this value are truncated; negative means
        automatic (``max(shape) * s_max * eps_svd``).
    qr_tol : float
        QR pivots at or below this value are treated as zero; negative means
        automatic (``20 * (m + n) * eps_qr * max_column_norm``).
    verbose : bool
        Log structure and analysis summaries.
    """

    column_scaling: bool = False
    eps_norm: float = _EPS
    eps_svd: float = _EPS
    eps_qr: float = _EPS
    svd_tol: float = -1.0
    qr_tol: float = -1.0
    verbose: bool = False


class SolverState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    STRUCTURED = "structured"
    FACTORIZED = "factorized"


# HELPERS ===============================================================================

def qr_tolerance(matrix: np.ndarray, eps: float = _EPS) -> float:
    """Default rank tolerance of a sparse QR: ``20 (m + n) eps max‖a_j‖``."""
    m, n = matrix.shape
    if matrix.size == 0:
        return 0.0
    max_norm = float(np.max(np.linalg.norm(matrix, axis=0)))
    return 20.0 * (m + n) * eps * max_norm


def qr_flops(m: int, n: int) -> float:
    """Householder QR flop count for an ``m x n`` matrix."""
    if m >= n:
        return max(2.0 * m * n * n - 2.0 * n ** 3 / 3.0, 0.0)
    return max(2.0 * n * m * m - 2.0 * m ** 3 / 3.0, 0.0)


# CLASS =================================================================================

class LinearSolver:
    """Jacobian assembly and rank analysis.

    The solver goes through three states: ``UNINITIALIZED`` after
    construction, ``STRUCTURED`` once :meth:`init_matrix_structure` fixed the
    block layout, and ``FACTORIZED`` after :meth:`analyze_system`. Rebuilding
    the structure (e.g. after a batch was dropped) means creating a fresh
    solver and walking the variables and error terms again.

    Parameters
    ----------
    options : LinearSolverOptions, optional

    Notes
    -----
    The last ``marg_dimension`` Jacobian columns form the marginal block; the
    QR analysis covers the columns in front of it (the whole matrix when
    ``marg_dimension`` is zero).
    """

    def __init__(self, options: LinearSolverOptions | None = None):
        self.options = options if options is not None else LinearSolverOptions()
        self.marg_dimension = 0

        self._state = SolverState.UNINITIALIZED
        self._design_variables: list[DesignVariable] = []
        self._error_terms: list[ErrorTerm] = []
        self._num_cols = 0
        self._num_rows = 0

        self._jacobian_transpose: sci_sparse.csc_matrix | None = None
        self._rhs: np.ndarray | None = None

        self._rank = 0
        self._rank_deficiency = 0
        self._tolerance = 0.0
        self._memory_usage = 0
        self._peak_memory_usage = 0
        self._num_flops = 0.0


    # PROPERTIES ------------------------------------------------------------------------

    @property
    def state(self) -> SolverState:
        return self._state


    @property
    def num_cols(self) -> int:
        return self._num_cols


    @property
    def num_rows(self) -> int:
        return self._num_rows


    @property
    def marg_start_index(self) -> int:
        """First column of the marginal block."""
        return max(self._num_cols - int(self.marg_dimension), 0)


    @property
    def jacobian_transpose(self) -> sci_sparse.csc_matrix | None:
        """Weighted Jacobian transpose ``(n_cols, n_rows)``, ``None`` before a build."""
        return self._jacobian_transpose


    @property
    def jacobian(self) -> sci_sparse.csr_matrix | None:
        if self._jacobian_transpose is None:
            return None
        return self._jacobian_transpose.T.tocsr()


    @property
    def rhs(self) -> np.ndarray | None:
        """Stacked weighted error vector of the last build."""
        return self._rhs


    @property
    def cost(self) -> float:
        """``eᵀe`` of the last build."""
        if self._rhs is None:
            return 0.0
        return float(self._rhs @ self._rhs)


    @property
    def rank(self) -> int:
        return self._rank


    @property
    def rank_deficiency(self) -> int:
        return self._rank_deficiency


    @property
    def tolerance(self) -> float:
        return self._tolerance


    @property
    def memory_usage(self) -> int:
        return self._memory_usage


    @property
    def peak_memory_usage(self) -> int:
        return self._peak_memory_usage


    @property
    def num_flops(self) -> float:
        return self._num_flops


    # STRUCTURE -------------------------------------------------------------------------

    def init_matrix_structure(
        self,
        design_variables: Sequence[DesignVariable],
        error_terms: Sequence[ErrorTerm],
    ) -> None:
        """Fix the block layout.

        *design_variables* must be the active variables with their
        ``block_index`` and ``column_base`` assigned; *error_terms* must carry
        their ``row_base``.
        """
        for dv in design_variables:
            if not dv.active:
                raise ValueError(
                    f"inactive design variable {dv.name!r} passed to the solver"
                )
            if dv.column_base < 0:
                raise ValueError(
                    f"design variable {dv.name!r} has no column assigned"
                )
        for et in error_terms:
            if et.row_base < 0:
                raise ValueError(f"{et!r} has no row assigned")

        self._design_variables = list(design_variables)
        self._error_terms = list(error_terms)
        self._num_cols = int(sum(dv.minimal_dimensions for dv in self._design_variables))
        self._num_rows = int(sum(et.dimension for et in self._error_terms))

        self._jacobian_transpose = None
        self._rhs = None
        self._state = SolverState.STRUCTURED

        if self.options.verbose:
            logger.info(
                "structure: %d design variable(s), %d error term(s), %d x %d",
                len(self._design_variables), len(self._error_terms),
                self._num_rows, self._num_cols,
            )


    # ASSEMBLY --------------------------------------------------------------------------

    def _evaluate_term(self, et: ErrorTerm):
        """Weighted error and Jacobian triplets of one error term."""
        r = et.weighted_error()
        rows, cols, vals = [], [], []
        for dv, J in zip(et.design_variables, et.evaluate_jacobians()):
            if not dv.active:
                continue
            J = np.asarray(J, dtype=float)
            ii, jj = np.nonzero(J)
            rows.append(ii + et.row_base)
            cols.append(jj + dv.column_base)
            vals.append(J[ii, jj])
        return et.row_base, r, rows, cols, vals


    def build_system(self, n_threads: int = 1) -> None:
        """Evaluate all error terms and assemble ``J`` and ``e``.

        Parameters
        ----------
        n_threads : int
            Error terms are evaluated on a thread pool of this size when
            larger than one. Terms that are not ``parallel_safe`` are
            evaluated first, serially, on the calling thread.
        """
        if self._state is SolverState.UNINITIALIZED:
            raise InvalidOperationError(
                "LinearSolver.build_system(): matrix structure not initialized"
            )

        if n_threads > 1 and len(self._error_terms) > 1:
            serial = [et for et in self._error_terms if not getattr(et, "parallel_safe", False)]
            pooled = [et for et in self._error_terms if getattr(et, "parallel_safe", False)]

            # no pool is running while serial terms perturb shared variables
            evaluated = [self._evaluate_term(et) for et in serial]
            if pooled:
                with ThreadPoolExecutor(max_workers=int(n_threads)) as executor:
                    evaluated.extend(executor.map(self._evaluate_term, pooled))
        else:
            evaluated = [self._evaluate_term(et) for et in self._error_terms]

        rhs = np.zeros(self._num_rows)
        rows, cols, vals = [], [], []
        for row_base, r, r_rows, r_cols, r_vals in evaluated:
            rhs[row_base:row_base + r.size] = r
            rows.extend(r_rows)
            cols.extend(r_cols)
            vals.extend(r_vals)

        if vals:
            data = np.concatenate(vals)
            row_idx = np.concatenate(rows)
            col_idx = np.concatenate(cols)
        else:
            data = np.zeros(0)
            row_idx = col_idx = np.zeros(0, dtype=int)

        # stored transposed: one column per error-term row
        self._jacobian_transpose = sci_sparse.csc_matrix(
            (data, (col_idx, row_idx)), shape=(self._num_cols, self._num_rows)
        )
        self._rhs = rhs
        self._state = SolverState.STRUCTURED


    # ANALYSIS --------------------------------------------------------------------------

    def analyze_system(self) -> None:
        """Column-pivoted QR of the non-marginal block: rank, tolerance, counters."""
        if self._jacobian_transpose is None:
            raise InvalidOperationError(
                "LinearSolver.analyze_system(): system not built"
            )

        J_psi = self._jacobian_transpose[:self.marg_start_index, :].T.toarray()
        m, n = J_psi.shape

        tol = self.options.qr_tol
        if tol < 0.0:
            tol = qr_tolerance(J_psi, self.options.eps_qr)

        r_bytes = 0
        if J_psi.size == 0:
            rank = 0
        else:
            R = sci_linalg.qr(J_psi, mode="r", pivoting=True)[0]
            diag = np.abs(np.diag(R))
            rank = int(np.sum(diag > tol))
            r_bytes = int(R.nbytes)

        jt = self._jacobian_transpose
        self._memory_usage = int(
            jt.data.nbytes + jt.indices.nbytes + jt.indptr.nbytes + r_bytes
        )
        self._peak_memory_usage = max(self._peak_memory_usage, self._memory_usage)
        self._num_flops = qr_flops(m, n)

        self._rank = rank
        self._rank_deficiency = n - rank
        self._tolerance = float(tol)
        self._state = SolverState.FACTORIZED

        if self.options.verbose:
            logger.info(
                "QR analysis: rank %d / %d (tolerance %.3g, %.3g flops)",
                rank, n, tol, self._num_flops,
            )
