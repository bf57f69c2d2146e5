#########################################################################################
##
##                          INCREMENTAL CALIBRATION ESTIMATOR
##                           (core/incremental_estimator.py)
##
##         Admits measurement batches one at a time, keeping a batch only if it
##         adds information on the marginalized (calibration) variables. Every
##         trial can be rolled back exactly: container, variable values and
##         linear-solver structure.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import numbers
import time
from dataclasses import dataclass, field, fields
from typing import Any, Mapping

import numpy as np

from ..algorithms.marginalize import marginalize
from ..backend.linear_solver import LinearSolverOptions
from ..backend.optimizer import Optimizer, OptimizerOptions, SolutionReturnValue
from ..exceptions import InvalidOperationError
from ..utils.logger import LoggerManager
from .incremental_problem import IncrementalOptimizationProblem
from .optimization_problem import OptimizationProblem
from .report import (
    _print_admission_table,
    _print_rank_table,
    _print_solve_summary,
    _print_spectrum,
    _plot_singular_values,
)


logger = LoggerManager().get_logger("estimator")


__all__ = [
    "EstimatorOptions",
    "ReturnValue",
    "TryBatchResult",
    "IncrementalEstimator",
]


def _empty_matrix() -> np.ndarray:
    return np.zeros((0, 0))


def _empty_vector() -> np.ndarray:
    return np.zeros(0)


# OPTIONS ===============================================================================

@dataclass
class EstimatorOptions:
    """Admission policy of the incremental estimator.

    Parameters
    ----------
    info_gain_delta : float
        Minimum information gain for a batch to count as informative.
    check_validity : bool
        Check the solve outcome; when off every solution counts as valid.
    max_iteration_hit_is_still_valid : bool
        With ``check_validity``, do not invalidate a solve that hit the
        iteration cap.
    verbose : bool
        Log one summary per batch and warn when the theta rank goes down.
    """

    info_gain_delta: float = 0.2
    check_validity: bool = False
    max_iteration_hit_is_still_valid: bool = False
    verbose: bool = False


# RETURN VALUE ==========================================================================

@dataclass
class ReturnValue:
    """Everything produced for one trial, removal or re-optimization.

    Attributes
    ----------
    batch_accepted : bool
        The batch is (now) part of the estimator.
    solution_valid : bool
        The solve stopped before the iteration cap and lowered the cost (only
        checked with ``EstimatorOptions.check_validity``).
    is_informative_batch : bool
        Valid solution and either the information gain exceeds the threshold
        or the theta rank increased.
    information_gain : float
        Mutual-information proxy from the change of the singular-value log-sum.
    rank_psi, rank_psi_deficiency : int
        Numerical rank (QR) of the incremental-measurement partition ``J_psi``.
    rank_theta, rank_theta_deficiency : int
        Numerical rank (SVD) of the calibration partition ``A_theta``.
    svd_tolerance, qr_tolerance : float
        Tolerances used for this result.
    nobs_basis, nobs_basis_scaled, obs_basis, obs_basis_scaled : np.ndarray
        Orthonormal bases of the unobservable / observable theta subspaces.
    sigma2_theta, sigma2_theta_scaled : np.ndarray
        Covariance of theta.
    sigma2_theta_obs, sigma2_theta_obs_scaled : np.ndarray
        Covariance of the observable theta coordinates.
    singular_values, singular_values_scaled : np.ndarray
        Spectrum of ``A_theta``.
    num_iterations : int
        Residual evaluations of the SciPy solve (``nfev``), not trust-region
        steps. Capped by ``OptimizerOptions.max_iterations``, which is passed
        as ``max_nfev``.
    j_start, j_final : float
        Cost before and after the solve.
    elapsed_time : float
        Wall time of the call [s].
    sv_log2_sum : float
        Log2-sum of the retained singular values.
    peak_memory_usage, memory_usage : int
        Linear-solver memory counters [bytes].
    num_flops : float
        Linear-solver flop estimate.
    """

    batch_accepted: bool = False
    solution_valid: bool = False
    is_informative_batch: bool = False
    information_gain: float = 0.0
    rank_psi: int = 0
    rank_psi_deficiency: int = 0
    rank_theta: int = 0
    rank_theta_deficiency: int = 0
    svd_tolerance: float = 0.0
    qr_tolerance: float = 0.0
    nobs_basis: np.ndarray = field(default_factory=_empty_matrix)
    nobs_basis_scaled: np.ndarray = field(default_factory=_empty_matrix)
    obs_basis: np.ndarray = field(default_factory=_empty_matrix)
    obs_basis_scaled: np.ndarray = field(default_factory=_empty_matrix)
    sigma2_theta: np.ndarray = field(default_factory=_empty_matrix)
    sigma2_theta_scaled: np.ndarray = field(default_factory=_empty_matrix)
    sigma2_theta_obs: np.ndarray = field(default_factory=_empty_matrix)
    sigma2_theta_obs_scaled: np.ndarray = field(default_factory=_empty_matrix)
    singular_values: np.ndarray = field(default_factory=_empty_vector)
    singular_values_scaled: np.ndarray = field(default_factory=_empty_vector)
    num_iterations: int = 0
    j_start: float = 0.0
    j_final: float = 0.0
    elapsed_time: float = 0.0
    sv_log2_sum: float = 0.0
    peak_memory_usage: int = 0
    memory_usage: int = 0
    num_flops: float = 0.0


    def __repr__(self) -> str:
        status = "ACCEPTED" if self.batch_accepted else "NOT ACCEPTED"
        return (
            f"ReturnValue({status}, valid={self.solution_valid}, "
            f"informative={self.is_informative_batch}, "
            f"gain={self.information_gain:.4g}, rank_theta={self.rank_theta}, "
            f"rank_psi={self.rank_psi}, iterations={self.num_iterations})"
        )


    # DISPLAY ===========================================================================

    def display(self) -> None:
        """Print admission flags, ranks, spectrum and solve summary."""
        W    = 72
        line = "=" * W

        print(line)
        print("  Incremental Estimator: Batch Result")
        print(line)

        _print_admission_table(self, W)
        _print_rank_table(self, W)
        _print_spectrum(
            self.singular_values, self.singular_values_scaled, self.rank_theta, W
        )
        _print_solve_summary(self, W)
        print(line)


    # PLOT ==============================================================================

    def plot(self, *, figsize: tuple = (11, 4.5)):
        """Plot the raw and scaled singular-value spectra of ``A_theta``.

        Returns
        -------
        fig : matplotlib.figure.Figure
        axes : np.ndarray of matplotlib.axes.Axes, shape (2,)
        """
        import matplotlib.pyplot as plt

        fig, axes = plt.subplots(1, 2, figsize=figsize)
        _plot_singular_values(
            self.singular_values, self.singular_values_scaled, self.rank_theta,
            axes,
            title_raw="A_theta Singular Values",
            title_scaled="Scaled A_theta Singular Values",
        )
        fig.suptitle("Calibration Parameter Observability", fontweight="bold")
        plt.tight_layout()
        return fig, axes


# COMMIT TOKEN ==========================================================================

class TryBatchResult:
    """Single-use handle on a batch trial.

    Returned by :meth:`IncrementalEstimator.try_batch`. Exactly one of
    :meth:`accept` or :meth:`reject` may be called; any further call raises
    :class:`~inccal.exceptions.InvalidOperationError`.

    Example
    -------
    .. code-block:: python

        trial = est.try_batch(batch)
        if trial.return_value.is_informative_batch:
            trial.accept()
        else:
            trial.reject(restore_design_variables=True)
    """

    def __init__(self, estimator, batch, return_value, snapshot_taken):
        self._estimator = estimator
        self._batch = batch
        self._return_value = return_value
        self._snapshot_taken = bool(snapshot_taken)


    @property
    def return_value(self) -> ReturnValue:
        return self._return_value


    @property
    def batch(self) -> OptimizationProblem | None:
        """The trialed batch, ``None`` once consumed."""
        return self._batch


    @property
    def is_set(self) -> bool:
        """True until :meth:`accept` or :meth:`reject` has been called."""
        return self._batch is not None


    @property
    def snapshot_taken(self) -> bool:
        return self._snapshot_taken


    def _check_set(self, operation: str) -> None:
        if self._batch is None:
            raise InvalidOperationError(
                f"TryBatchResult.{operation}(): result already consumed"
            )


    def accept(self) -> None:
        """Keep the batch and commit the trial to the estimator state."""
        self._check_set("accept")
        self._estimator._accept_batch(self)
        self._batch = None


    def reject(self, restore_design_variables: bool = True) -> None:
        """Drop the batch, optionally restoring the pre-trial variable values."""
        self._check_set("reject")
        self._estimator._reject_batch(self, restore_design_variables)
        self._batch = None


    def __repr__(self) -> str:
        state = "pending" if self.is_set else "consumed"
        return f"TryBatchResult({state}, {self._return_value!r})"


# INCREMENTAL ESTIMATOR =================================================================

class IncrementalEstimator:
    """Incremental estimator for calibration problems.

    Batches of error terms are trialed one at a time. After each trial the
    aggregate problem is solved and the calibration variables (the
    *marginalized group*) are analysed: the local variables are eliminated,
    and the remaining information on the calibration variables is described
    by the singular values of ``A_theta``. A batch is informative if it raises
    the log-sum of the retained singular values by more than
    ``info_gain_delta`` (in mutual-information units) or makes a new
    direction observable.

    Parameters
    ----------
    marg_group_id : int
        Group id of the calibration variables. They are moved to the last
        columns of the Jacobian before every solve.
    options : EstimatorOptions, optional
    linear_solver_options : LinearSolverOptions, optional
    optimizer_options : OptimizerOptions, optional
    optimizer : Optimizer, optional
        Custom optimizer strategy. Must provide ``set_problem``,
        ``initialize_linear_solver``, ``linear_solver`` and ``optimize``.

    Notes
    -----
    **Two-phase admission**

    :meth:`try_batch` inserts the batch and solves, but leaves the accepted
    state untouched; the returned :class:`TryBatchResult` commits or rolls
    back. Only one trial may be outstanding. :meth:`add_batch` wraps both
    phases.

    **Accepted state**

    Ranks, spectra, bases, covariances and the singular-value log-sum are
    those of the last accepted batch (or of the last :meth:`remove_batch` /
    :meth:`reoptimize`). Accessors read this state, except
    :attr:`jacobian_transpose` which reflects the current solver.

    The estimator is not synchronized; callers serialize trials.

    Example
    -------
    .. code-block:: python

        est = IncrementalEstimator(marg_group_id=1)
        for batch in batches:
            ret = est.add_batch(batch)
            print(ret.batch_accepted, ret.information_gain)

        est.get_sigma2_theta()      # calibration covariance
        est.get_nobs_basis()        # still unobservable directions
    """

    def __init__(
        self,
        marg_group_id: int,
        options: EstimatorOptions | None = None,
        linear_solver_options: LinearSolverOptions | None = None,
        optimizer_options: OptimizerOptions | None = None,
        *,
        optimizer: Optimizer | None = None,
    ):
        self._options = options if options is not None else EstimatorOptions()
        self._marg_group_id = int(marg_group_id)
        self._problem = IncrementalOptimizationProblem()

        if optimizer is None:
            optimizer = Optimizer(
                optimizer_options if optimizer_options is not None else OptimizerOptions(),
                linear_solver_options if linear_solver_options is not None
                else LinearSolverOptions(),
            )
        else:
            if optimizer_options is not None:
                optimizer.options = optimizer_options
            if linear_solver_options is not None:
                optimizer.linear_solver_options = linear_solver_options
        self._optimizer = optimizer
        self._optimizer.set_problem(self._problem)

        self._pending: TryBatchResult | None = None
        self._reset_accepted_state()


    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "IncrementalEstimator":
        """Build an estimator from a nested mapping.

        Parameters
        ----------
        config : mapping
            ``{"marg_group_id": int, "estimator": {...}, "linear_solver":
            {...}, "optimizer": {...}}``; the sections hold the fields of
            :class:`EstimatorOptions`, :class:`LinearSolverOptions` and
            :class:`OptimizerOptions`. Sections are optional.

        Returns
        -------
        IncrementalEstimator
        """
        known = {"marg_group_id", "estimator", "linear_solver", "optimizer"}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"unknown configuration key(s): {sorted(unknown)}")
        if "marg_group_id" not in config:
            raise ValueError("configuration requires 'marg_group_id'")

        def _section(name, options_cls):
            values = dict(config.get(name) or {})
            allowed = {f.name for f in fields(options_cls)}
            bad = set(values) - allowed
            if bad:
                raise ValueError(
                    f"unknown key(s) {sorted(bad)} in section '{name}'; "
                    f"allowed: {sorted(allowed)}"
                )
            return options_cls(**values)

        return cls(
            int(config["marg_group_id"]),
            options=_section("estimator", EstimatorOptions),
            linear_solver_options=_section("linear_solver", LinearSolverOptions),
            optimizer_options=_section("optimizer", OptimizerOptions),
        )


    def _reset_accepted_state(self) -> None:
        """Accepted state of an estimator that never accepted a batch."""
        self._has_baseline = False
        self._information_gain = 0.0
        self._sv_log2_sum = 0.0
        self._rank_psi = 0
        self._rank_psi_deficiency = 0
        self._rank_theta = 0
        self._rank_theta_deficiency = 0
        self._svd_tolerance = 0.0
        self._qr_tolerance = 0.0
        self._nobs_basis = _empty_matrix()
        self._nobs_basis_scaled = _empty_matrix()
        self._obs_basis = _empty_matrix()
        self._obs_basis_scaled = _empty_matrix()
        self._sigma2_theta = _empty_matrix()
        self._sigma2_theta_scaled = _empty_matrix()
        self._sigma2_theta_obs = _empty_matrix()
        self._sigma2_theta_obs_scaled = _empty_matrix()
        self._singular_values = _empty_vector()
        self._singular_values_scaled = _empty_vector()
        self._peak_memory_usage = 0
        self._memory_usage = 0
        self._num_flops = 0.0
        self._initial_cost = 0.0
        self._final_cost = 0.0


    # BATCH API -------------------------------------------------------------------------

    def try_batch(
        self,
        batch: OptimizationProblem,
        first_store_design_variables: bool = True,
    ) -> TryBatchResult:
        """Insert *batch*, solve, and evaluate its information contribution.

        Parameters
        ----------
        batch : OptimizationProblem
            Batch not yet in the estimator.
        first_store_design_variables : bool
            Snapshot the variable values before solving so that
            ``reject(restore_design_variables=True)`` can restore them. Pass
            ``False`` only if the batch will be accepted unconditionally.

        Returns
        -------
        TryBatchResult
            Single-use token; the accepted state is unchanged until
            :meth:`TryBatchResult.accept`.
        """
        if batch is None:
            raise ValueError("try_batch() requires a batch, got None")
        if self._pending is not None:
            raise InvalidOperationError(
                "IncrementalEstimator.try_batch(): a trial is still outstanding; "
                "accept() or reject() it first"
            )

        time_start = time.perf_counter()

        self._problem.add(batch)

        try:
            self._order_marginalized_design_variables()
        except InvalidOperationError:
            self._problem.remove(batch)
            raise

        if first_store_design_variables:
            self._problem.save_design_variables()

        try:
            srv = self._optimize()
            ret = ReturnValue()
            ret.solution_valid = self._is_solution_valid(srv)
            sv_log2_sum = self._marginalize(ret)
        except Exception:
            # roll back the insertion, then propagate
            self._problem.remove(batch)
            if first_store_design_variables:
                self._problem.restore_design_variables()
            try:
                self._restore_linear_solver()
            except Exception as err:
                # the original error is the one raised
                logger.error("could not rebuild the linear solver after a failed trial: %s", err)
            raise

        if not self._has_baseline:
            ret.information_gain = 0.0
        else:
            ret.information_gain = 0.5 * (sv_log2_sum - self._sv_log2_sum)
            if ret.rank_theta < self._rank_theta and self._options.verbose:
                logger.warning(
                    "rank of A_theta going down: %d -> %d",
                    self._rank_theta, ret.rank_theta,
                )

        ret.is_informative_batch = ret.solution_valid and (
            ret.information_gain > self._options.info_gain_delta
            or ret.rank_theta > self._rank_theta
        )

        self._fill_solve_info(ret, srv)
        ret.elapsed_time = time.perf_counter() - time_start

        result = TryBatchResult(self, batch, ret, first_store_design_variables)
        self._pending = result
        return result


    def add_batch(self, batch: OptimizationProblem, force: bool = False) -> ReturnValue:
        """Trial *batch* and keep it if informative (or if *force*).

        Returns
        -------
        ReturnValue
        """
        trial = self.try_batch(batch, not force)
        if force or trial.return_value.is_informative_batch:
            trial.accept()
        else:
            trial.reject(True)
        return trial.return_value


    def remove_batch(self, batch_or_idx) -> ReturnValue | None:
        """Unconditionally remove an accepted batch and refresh the state.

        Parameters
        ----------
        batch_or_idx : int or OptimizationProblem
            Index in insertion order, or the batch itself. An unknown batch is
            a no-op.

        Returns
        -------
        ReturnValue or None
            State after removal, with ``information_gain`` the *unscaled*
            change of the singular-value log-sum; ``None`` for a no-op.
        """
        if self._pending is not None:
            raise InvalidOperationError(
                "IncrementalEstimator.remove_batch(): a trial is still outstanding"
            )

        if isinstance(batch_or_idx, bool):
            raise TypeError(
                "IncrementalEstimator.remove_batch(): expected an index or a batch, got bool"
            )

        if not isinstance(batch_or_idx, numbers.Integral):
            idx = self._problem.index_of(batch_or_idx)
            if idx is None:
                return None
            return self.remove_batch(idx)

        time_start = time.perf_counter()
        self._problem.remove(int(batch_or_idx))

        if self._problem.num_batches == 0:
            self._reset_accepted_state()
            self._restore_linear_solver()
            return ReturnValue(elapsed_time=time.perf_counter() - time_start)

        self._order_marginalized_design_variables()
        srv = self._optimize()

        ret = ReturnValue()
        ret.solution_valid = self._is_solution_valid(srv)
        sv_log2_sum = self._marginalize(ret)
        ret.information_gain = sv_log2_sum - self._sv_log2_sum

        self._fill_solve_info(ret, srv)
        ret.elapsed_time = time.perf_counter() - time_start

        self._update_internal_variables(ret)
        self._has_baseline = True

        if self._options.verbose:
            logger.info("batch removed: %r", ret)

        return ret


    def reoptimize(self) -> ReturnValue:
        """Solve again without changing the batch set and refresh the state.

        Returns
        -------
        ReturnValue
            ``batch_accepted`` is always ``False``.
        """
        if self._pending is not None:
            raise InvalidOperationError(
                "IncrementalEstimator.reoptimize(): a trial is still outstanding"
            )

        time_start = time.perf_counter()
        self._order_marginalized_design_variables()
        srv = self._optimize()

        ret = ReturnValue()
        ret.solution_valid = self._is_solution_valid(srv)
        self._marginalize(ret)
        ret.batch_accepted = False
        ret.information_gain = 0.0

        self._fill_solve_info(ret, srv)
        ret.elapsed_time = time.perf_counter() - time_start

        self._update_internal_variables(ret)
        self._has_baseline = True
        return ret


    # COMMIT / ROLLBACK -----------------------------------------------------------------

    def _accept_batch(self, result: TryBatchResult) -> None:
        if result is not self._pending:
            raise InvalidOperationError(
                "IncrementalEstimator: result does not belong to the outstanding trial"
            )

        ret = result.return_value
        ret.batch_accepted = True
        self._update_internal_variables(ret)
        self._has_baseline = True
        self._pending = None

        if self._options.verbose:
            logger.info("batch accepted: %r", ret)


    def _reject_batch(self, result: TryBatchResult, restore_design_variables: bool) -> None:
        if result is not self._pending:
            raise InvalidOperationError(
                "IncrementalEstimator: result does not belong to the outstanding trial"
            )
        if restore_design_variables and not result.snapshot_taken:
            raise InvalidOperationError(
                "TryBatchResult.reject(): no design variable snapshot was taken "
                "for this trial (try_batch(..., first_store_design_variables=False))"
            )

        self._problem.remove(result.batch)

        if restore_design_variables:
            self._problem.restore_design_variables()

        self._restore_linear_solver()

        result.return_value.batch_accepted = False
        self._pending = None

        if self._options.verbose:
            logger.info("batch rejected: %r", result.return_value)


    # INTERNALS -------------------------------------------------------------------------

    def _order_marginalized_design_variables(self) -> None:
        """Make the marginalized group the last one in the group ordering."""
        ordering = self._problem.groups_ordering
        if self._marg_group_id not in ordering:
            raise InvalidOperationError(
                "IncrementalEstimator._order_marginalized_design_variables(): "
                f"marginalized group ID {self._marg_group_id} should appear in "
                f"the problem (groups: {ordering})"
            )

        pos = ordering.index(self._marg_group_id)
        if pos != len(ordering) - 1:
            ordering[pos], ordering[-1] = ordering[-1], ordering[pos]
            self._problem.set_groups_ordering(ordering)


    def _marg_dimension(self) -> int:
        if not self._problem.is_group_in(self._marg_group_id):
            return 0
        return self._problem.get_group_dim(self._marg_group_id)


    def _init_linear_solver(self) -> None:
        """Fresh linear solver from the current options."""
        solver = self._optimizer.initialize_linear_solver()
        solver.marg_dimension = self._marg_dimension()


    def _restore_linear_solver(self) -> None:
        """Rebuild and analyze the solver structure from the current problem."""
        self._init_linear_solver()
        solver = self._optimizer.linear_solver

        design_variables = []
        column_base = 0
        for dv in self._problem.design_variables:
            if dv.active:
                dv.block_index = len(design_variables)
                dv.column_base = column_base
                column_base += dv.minimal_dimensions
                design_variables.append(dv)

        error_terms = self._problem.error_terms
        row_base = 0
        for et in error_terms:
            et.row_base = row_base
            row_base += et.dimension

        solver.init_matrix_structure(design_variables, error_terms)
        solver.build_system(int(self._optimizer.options.n_threads))
        solver.analyze_system()


    def _optimize(self) -> SolutionReturnValue:
        self._init_linear_solver()
        return self._optimizer.optimize()


    def _is_solution_valid(self, srv: SolutionReturnValue) -> bool:
        if not self._options.check_validity:
            return True
        if srv.max_iterations_hit and not self._options.max_iteration_hit_is_still_valid:
            return False
        return srv.j_final < srv.j_start


    def _marginalize(self, ret: ReturnValue) -> float:
        """Analyse the trailing marginal block into *ret*; return its log2-sum."""
        solver = self._optimizer.linear_solver
        jt = solver.jacobian_transpose
        dim = self._problem.get_group_dim(self._marg_group_id)
        lso = self._optimizer.linear_solver_options

        res = marginalize(
            jt,
            jt.shape[0] - dim,
            column_scaling=lso.column_scaling,
            eps_norm=lso.eps_norm,
            eps_svd=lso.eps_svd,
            eps_qr=lso.eps_qr,
            svd_tol=lso.svd_tol,
            qr_tol=lso.qr_tol,
        )

        ret.rank_psi = solver.rank
        ret.rank_psi_deficiency = solver.rank_deficiency
        ret.qr_tolerance = solver.tolerance
        ret.rank_theta = res.rank
        ret.rank_theta_deficiency = res.rank_deficiency
        ret.svd_tolerance = res.svd_tolerance
        ret.nobs_basis = res.nobs_basis
        ret.nobs_basis_scaled = res.nobs_basis_scaled
        ret.obs_basis = res.obs_basis
        ret.obs_basis_scaled = res.obs_basis_scaled
        ret.sigma2_theta = res.sigma2_theta
        ret.sigma2_theta_scaled = res.sigma2_theta_scaled
        ret.sigma2_theta_obs = res.sigma2_theta_obs
        ret.sigma2_theta_obs_scaled = res.sigma2_theta_obs_scaled
        ret.singular_values = res.singular_values
        ret.singular_values_scaled = res.singular_values_scaled
        ret.sv_log2_sum = res.sv_log2_sum
        return res.sv_log2_sum


    def _fill_solve_info(self, ret: ReturnValue, srv: SolutionReturnValue) -> None:
        solver = self._optimizer.linear_solver
        ret.num_iterations = srv.iterations
        ret.j_start = srv.j_start
        ret.j_final = srv.j_final
        ret.memory_usage = solver.memory_usage
        ret.peak_memory_usage = solver.peak_memory_usage
        ret.num_flops = solver.num_flops


    def _update_internal_variables(self, ret: ReturnValue) -> None:
        """Copy *ret* into the accepted state."""
        self._information_gain = ret.information_gain
        self._sv_log2_sum = ret.sv_log2_sum
        self._rank_psi = ret.rank_psi
        self._rank_psi_deficiency = ret.rank_psi_deficiency
        self._rank_theta = ret.rank_theta
        self._rank_theta_deficiency = ret.rank_theta_deficiency
        self._svd_tolerance = ret.svd_tolerance
        self._qr_tolerance = ret.qr_tolerance
        self._nobs_basis = ret.nobs_basis.copy()
        self._nobs_basis_scaled = ret.nobs_basis_scaled.copy()
        self._obs_basis = ret.obs_basis.copy()
        self._obs_basis_scaled = ret.obs_basis_scaled.copy()
        self._sigma2_theta = ret.sigma2_theta.copy()
        self._sigma2_theta_scaled = ret.sigma2_theta_scaled.copy()
        self._sigma2_theta_obs = ret.sigma2_theta_obs.copy()
        self._sigma2_theta_obs_scaled = ret.sigma2_theta_obs_scaled.copy()
        self._singular_values = ret.singular_values.copy()
        self._singular_values_scaled = ret.singular_values_scaled.copy()
        self._peak_memory_usage = max(self._peak_memory_usage, ret.peak_memory_usage)
        self._memory_usage = ret.memory_usage
        self._num_flops = ret.num_flops
        self._initial_cost = ret.j_start
        self._final_cost = ret.j_final


    # ACCESSORS -------------------------------------------------------------------------

    @property
    def num_batches(self) -> int:
        return self._problem.num_batches


    @property
    def problem(self) -> IncrementalOptimizationProblem:
        return self._problem


    @property
    def options(self) -> EstimatorOptions:
        return self._options


    @property
    def linear_solver_options(self) -> LinearSolverOptions:
        return self._optimizer.linear_solver_options


    @property
    def optimizer_options(self) -> OptimizerOptions:
        return self._optimizer.options


    @property
    def optimizer(self) -> Optimizer:
        return self._optimizer


    @property
    def marg_group_id(self) -> int:
        return self._marg_group_id


    @property
    def has_pending_batch(self) -> bool:
        return self._pending is not None


    @property
    def is_observability_aware(self) -> bool:
        """The linear solver reports observable/unobservable subspaces."""
        return True


    @property
    def information_gain(self) -> float:
        return self._information_gain


    @property
    def jacobian_transpose(self):
        """Current Jacobian transpose of the solver (``None`` if never built)."""
        return self._optimizer.linear_solver.jacobian_transpose


    @property
    def rank_psi(self) -> int:
        return self._rank_psi


    @property
    def rank_psi_deficiency(self) -> int:
        return self._rank_psi_deficiency


    @property
    def rank_theta(self) -> int:
        return self._rank_theta


    @property
    def rank_theta_deficiency(self) -> int:
        return self._rank_theta_deficiency


    @property
    def svd_tolerance(self) -> float:
        return self._svd_tolerance


    @property
    def qr_tolerance(self) -> float:
        return self._qr_tolerance


    def get_nobs_basis(self, scaled: bool = False) -> np.ndarray:
        """Orthonormal basis of the unobservable theta subspace."""
        return self._nobs_basis_scaled if scaled else self._nobs_basis


    def get_obs_basis(self, scaled: bool = False) -> np.ndarray:
        """Orthonormal basis of the observable theta subspace."""
        return self._obs_basis_scaled if scaled else self._obs_basis


    def get_sigma2_theta(self, scaled: bool = False) -> np.ndarray:
        return self._sigma2_theta_scaled if scaled else self._sigma2_theta


    def get_sigma2_theta_obs(self, scaled: bool = False) -> np.ndarray:
        return self._sigma2_theta_obs_scaled if scaled else self._sigma2_theta_obs


    def get_singular_values(self, scaled: bool = False) -> np.ndarray:
        return self._singular_values_scaled if scaled else self._singular_values


    @property
    def peak_memory_usage(self) -> int:
        return self._peak_memory_usage


    @property
    def memory_usage(self) -> int:
        return self._memory_usage


    @property
    def num_flops(self) -> float:
        return self._num_flops


    @property
    def initial_cost(self) -> float:
        return self._initial_cost


    @property
    def final_cost(self) -> float:
        return self._final_cost


    # DISPLAY ===========================================================================

    def display(self) -> None:
        """Print the accepted state."""
        W    = 72
        line = "=" * W

        print(line)
        print("  Incremental Estimator: Accepted State")
        print(line)
        print(f"  {'Batches':<30} {self.num_batches:>12d}")
        print(f"  {'Marginalized group':<30} {self._marg_group_id:>12d}")
        print(f"  {'Information gain':<30} {self._information_gain:>12.4g}")
        print(f"  {'Log2 singular value sum':<30} {self._sv_log2_sum:>12.4g}")
        print(f"  {'Cost start / final':<30} {self._initial_cost:>12.4g} "
              f"{self._final_cost:>12.4g}")
        print("-" * W)
        _print_spectrum(
            self._singular_values, self._singular_values_scaled, self._rank_theta, W
        )
        print(line)
