#########################################################################################
##
##                                DESIGN VARIABLES
##                            (core/design_variable.py)
##
##         Parameter blocks estimated by the optimizer. Each variable belongs to
##         exactly one group and receives its column placement from the linear
##         solver when the system structure is (re)built.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

import warnings

import numpy as np


# CLASS =================================================================================

class DesignVariable:
    """Euclidean parameter block.

    Parameters
    ----------
    value : array_like
        Initial value; scalars are promoted to shape ``(1,)``.
    name : str, optional
        Identifier used for display.
    group_id : int
        Group the variable belongs to. Groups partition the variables for
        ordering and marginalization.
    active : bool
        Inactive variables are held constant and receive no Jacobian columns.

    Notes
    -----
    Variables are compared and hashed by identity: the same object may be
    referenced by several batches and is counted once by the container.

    ``block_index`` and ``column_base`` are ``-1`` until a solver assigns a
    placement. Subclasses living on a manifold override :meth:`update`,
    :attr:`minimal_dimensions` and the parameter accessors.

    Example
    -------
    .. code-block:: python

        theta = DesignVariable(np.zeros(3), name="theta", group_id=1)
        theta.update(np.array([0.1, 0.0, -0.2]))
        theta.value   # array([ 0.1,  0. , -0.2])
    """

    def __init__(
        self,
        value,
        name: str | None = None,
        group_id: int = 0,
        active: bool = True,
    ):
        val = np.atleast_1d(np.asarray(value, dtype=float)).reshape(-1)
        if val.size == 0:
            warnings.warn(
                f"DesignVariable '{name}' has zero dimensions",
                UserWarning,
                stacklevel=2,
            )

        self._value = val.copy()
        self.name = name
        self.group_id = int(group_id)
        self.active = bool(active)

        self.block_index = -1
        self.column_base = -1


    @property
    def value(self) -> np.ndarray:
        """Copy of the current value."""
        return self._value.copy()


    @value.setter
    def value(self, new_value) -> None:
        self.set_parameters(new_value)


    @property
    def minimal_dimensions(self) -> int:
        """Number of columns the variable occupies in the Jacobian."""
        return int(self._value.size)


    def update(self, dx: np.ndarray) -> None:
        """Apply a perturbation in minimal coordinates (``x <- x + dx``)."""
        dx_arr = np.asarray(dx, dtype=float).reshape(-1)
        if dx_arr.size != self.minimal_dimensions:
            raise ValueError(
                f"DesignVariable '{self.name}': update of size {dx_arr.size}, "
                f"expected {self.minimal_dimensions}"
            )
        self._value = self._value + dx_arr


    def get_parameters(self) -> np.ndarray:
        """Full parameter vector, used for snapshot and restore."""
        return self._value.copy()


    def set_parameters(self, params) -> None:
        """Overwrite the full parameter vector."""
        p = np.asarray(params, dtype=float).reshape(-1)
        if p.size != self._value.size:
            raise ValueError(
                f"DesignVariable '{self.name}': expected {self._value.size} "
                f"parameters, got {p.size}"
            )
        self._value = p.copy()


    def __repr__(self) -> str:
        return (
            f"DesignVariable(name={self.name!r}, value={self._value}, "
            f"group_id={self.group_id}, active={self.active})"
        )
