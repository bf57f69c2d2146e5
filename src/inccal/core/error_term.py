#########################################################################################
##
##                                  ERROR TERMS
##                              (core/error_term.py)
##
##         Residual contract consumed by the linear solver: weighted error and
##         one Jacobian block per referenced design variable.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from typing import Callable, Sequence

import copy

import numpy as np

from .design_variable import DesignVariable


# BASE CLASS ============================================================================

class ErrorTerm:
    """Base error term ``r = L e(x)`` with square-root information ``L``.

    Subclasses implement :meth:`evaluate_error`; :meth:`evaluate_jacobians`
    falls back to central finite differences through the variables'
    :meth:`~DesignVariable.update`. That fallback perturbs the shared
    variables in place, so such terms are not ``parallel_safe`` and the
    solver evaluates them on the calling thread.

    Parameters
    ----------
    design_variables : sequence of DesignVariable
        Variables the error depends on.
    dimension : int
        Length of the error vector.
    sqrt_information : array_like, optional
        Square-root information matrix ``(dimension, dimension)``; identity if
        omitted. A scalar is interpreted as ``scalar * I``.

    Notes
    -----
    ``row_base`` is assigned by the solver when the system structure is built.
    Subclasses whose evaluation never writes to a design variable may set
    ``parallel_safe = True``.
    """

    parallel_safe = False

    def __init__(
        self,
        design_variables: Sequence[DesignVariable],
        dimension: int,
        sqrt_information=None,
    ):
        self.design_variables = list(design_variables)
        self.dimension = int(dimension)

        if sqrt_information is None:
            self.sqrt_information = np.eye(self.dimension)
        else:
            L = np.asarray(sqrt_information, dtype=float)
            if L.ndim == 0:
                L = float(L) * np.eye(self.dimension)
            if L.shape != (self.dimension, self.dimension):
                raise ValueError(
                    f"sqrt_information must have shape "
                    f"({self.dimension}, {self.dimension}), got {L.shape}"
                )
            self.sqrt_information = L

        self.row_base = -1


    def evaluate_error(self) -> np.ndarray:
        """Raw (unweighted) error at the current variable values."""
        raise NotImplementedError


    def weighted_error(self) -> np.ndarray:
        """Error premultiplied by the square-root information."""
        e = np.asarray(self.evaluate_error(), dtype=float).reshape(-1)
        if e.size != self.dimension:
            raise ValueError(
                f"{type(self).__name__}: error of size {e.size}, "
                f"expected {self.dimension}"
            )
        return self.sqrt_information @ e


    def evaluate(self) -> float:
        """Squared weighted error ``eᵀ Lᵀ L e``."""
        r = self.weighted_error()
        return float(r @ r)


    def evaluate_jacobians(self) -> list[np.ndarray]:
        """Weighted Jacobian blocks, one per design variable (same order).

        Returns
        -------
        list of np.ndarray
            Block ``k`` has shape ``(dimension, design_variables[k].minimal_dimensions)``.
        """
        return [self.sqrt_information @ J for J in self._numerical_jacobians()]


    def _numerical_jacobians(self, rel_step: float = 1e-6) -> list[np.ndarray]:
        """Central finite differences of the raw error."""
        blocks = []
        for dv in self.design_variables:
            n = dv.minimal_dimensions
            J = np.zeros((self.dimension, n))
            base = dv.get_parameters()
            scale = max(1.0, float(np.max(np.abs(base)))) if base.size else 1.0
            h = rel_step * scale
            for k in range(n):
                dx = np.zeros(n)
                dx[k] = h
                dv.update(dx)
                e_plus = np.asarray(self.evaluate_error(), dtype=float).reshape(-1)
                dv.set_parameters(base)
                dv.update(-dx)
                e_minus = np.asarray(self.evaluate_error(), dtype=float).reshape(-1)
                dv.set_parameters(base)
                J[:, k] = (e_plus - e_minus) / (2.0 * h)
            blocks.append(J)
        return blocks


    def __repr__(self) -> str:
        names = [dv.name for dv in self.design_variables]
        return f"{type(self).__name__}(dimension={self.dimension}, design_variables={names})"


# FUNCTION ERROR TERM ===================================================================

class FunctionErrorTerm(ErrorTerm):
    """Error term defined by a Python callable.

    Parameters
    ----------
    func : callable
        ``func(*values) -> e`` where ``values`` are the current values of
        *design_variables* in order.
    design_variables : sequence of DesignVariable
        Variables passed to *func*.
    dimension : int, optional
        Error dimension; inferred by evaluating *func* once if omitted.
    jacobian : callable, optional
        ``jacobian(*values) -> [J_0, J_1, ...]`` raw Jacobian blocks. Finite
        differences are used when omitted. They are taken on private copies
        of the values, so the term can be evaluated from several threads.
    sqrt_information : array_like, optional
        See :class:`ErrorTerm`.

    Example
    -------
    .. code-block:: python

        # range measurement z of a point p observed from a sensor offset theta
        et = FunctionErrorTerm(
            lambda p, theta: [np.linalg.norm(p - theta) - z],
            [point, theta],
            sqrt_information=1.0 / sigma,
        )
    """

    parallel_safe = True

    def __init__(
        self,
        func: Callable[..., np.ndarray],
        design_variables: Sequence[DesignVariable],
        dimension: int | None = None,
        jacobian: Callable[..., Sequence[np.ndarray]] | None = None,
        sqrt_information=None,
    ):
        self.func = func
        self.jacobian = jacobian

        if dimension is None:
            values = [dv.value for dv in design_variables]
            dimension = np.asarray(func(*values), dtype=float).size

        super().__init__(design_variables, dimension, sqrt_information)


    def evaluate_error(self) -> np.ndarray:
        values = [dv.value for dv in self.design_variables]
        return np.asarray(self.func(*values), dtype=float).reshape(-1)


    def evaluate_jacobians(self) -> list[np.ndarray]:
        if self.jacobian is None:
            return super().evaluate_jacobians()

        values = [dv.value for dv in self.design_variables]
        raw = self.jacobian(*values)
        if len(raw) != len(self.design_variables):
            raise ValueError(
                f"jacobian returned {len(raw)} block(s) for "
                f"{len(self.design_variables)} design variable(s)"
            )

        blocks = []
        for dv, J in zip(self.design_variables, raw):
            J_arr = np.asarray(J, dtype=float).reshape(
                self.dimension, dv.minimal_dimensions
            )
            blocks.append(self.sqrt_information @ J_arr)
        return blocks


    def _numerical_jacobians(self, rel_step: float = 1e-6) -> list[np.ndarray]:
        """Central finite differences of *func* on copies of the values."""
        values = [dv.value for dv in self.design_variables]
        blocks = []
        for i, dv in enumerate(self.design_variables):
            n = dv.minimal_dimensions
            J = np.zeros((self.dimension, n))
            base = dv.get_parameters()
            scale = max(1.0, float(np.max(np.abs(base)))) if base.size else 1.0
            h = rel_step * scale

            # update() is applied to a detached copy, never to dv itself
            shadow = copy.deepcopy(dv)
            args = list(values)
            for k in range(n):
                dx = np.zeros(n)
                dx[k] = h
                shadow.set_parameters(base)
                shadow.update(dx)
                args[i] = shadow.value
                e_plus = np.asarray(self.func(*args), dtype=float).reshape(-1)
                shadow.set_parameters(base)
                shadow.update(-dx)
                args[i] = shadow.value
                e_minus = np.asarray(self.func(*args), dtype=float).reshape(-1)
                J[:, k] = (e_plus - e_minus) / (2.0 * h)
            blocks.append(J)
        return blocks
