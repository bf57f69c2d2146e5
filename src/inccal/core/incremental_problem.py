#########################################################################################
##
##                        INCREMENTAL OPTIMIZATION PROBLEM
##                           (core/incremental_problem.py)
##
##         Container of measurement batches. Keeps the de-duplicated set of
##         design variables they reference, grouped and ordered by group id,
##         and supports saving and restoring all active variable values.
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from collections.abc import Iterator

import numpy as np

from ..exceptions import InvalidOperationError
from .design_variable import DesignVariable
from .error_term import ErrorTerm
from .optimization_problem import OptimizationProblem


# CLASS =================================================================================

class IncrementalOptimizationProblem:
    """Ordered collection of batches forming one aggregate problem.

    Notes
    -----
    Design variables are reference counted: a variable shared by several
    batches is stored once and only dropped when the last batch referencing it
    is removed. Groups are appended to :attr:`groups_ordering` on first
    appearance and dropped (preserving the relative order of the others) once
    they hold no variable.

    Enumeration order matters to the solver: design variables are visited
    group by group following :attr:`groups_ordering` (insertion order inside a
    group), error terms batch by batch in container order.

    Example
    -------
    .. code-block:: python

        problem = IncrementalOptimizationProblem()
        problem.add(batch_0)
        problem.add(batch_1)
        problem.groups_ordering          # e.g. [1, 0]
        problem.set_groups_ordering([0, 1])
        problem.get_group_dim(1)         # columns of group 1
    """

    def __init__(self):
        self._batches: list[OptimizationProblem] = []
        # id(dv) -> [dv, reference count, group at insertion]
        self._dv_refs: dict[int, list] = {}
        self._groups: dict[int, list[DesignVariable]] = {}
        self._groups_ordering: list[int] = []
        # id(dv) -> (dv, saved parameters)
        self._saved: dict[int, tuple[DesignVariable, np.ndarray]] = {}


    # BATCHES ---------------------------------------------------------------------------

    def add(self, batch: OptimizationProblem) -> None:
        """Append a batch and register its design variables."""
        if not isinstance(batch, OptimizationProblem):
            raise TypeError(
                f"expected OptimizationProblem, got {type(batch).__name__}"
            )
        if self.is_batch_in(batch):
            raise InvalidOperationError(
                "IncrementalOptimizationProblem.add(): batch already in the container"
            )

        self._batches.append(batch)

        for dv in batch.design_variables:
            ref = self._dv_refs.get(id(dv))
            if ref is not None:
                ref[1] += 1
                continue

            self._dv_refs[id(dv)] = [dv, 1, dv.group_id]
            if dv.group_id not in self._groups:
                self._groups[dv.group_id] = []
                self._groups_ordering.append(dv.group_id)
            self._groups[dv.group_id].append(dv)


    def remove(self, batch_or_idx) -> OptimizationProblem:
        """Remove a batch given by index or identity and return it."""
        if isinstance(batch_or_idx, OptimizationProblem):
            idx = self.index_of(batch_or_idx)
            if idx is None:
                raise ValueError(
                    "IncrementalOptimizationProblem.remove(): batch not in the container"
                )
        else:
            idx = int(batch_or_idx)
            if idx < 0 or idx >= len(self._batches):
                raise IndexError(
                    f"batch index {idx} out of range (0..{len(self._batches) - 1})"
                )

        batch = self._batches.pop(idx)

        for dv in batch.design_variables:
            ref = self._dv_refs[id(dv)]
            ref[1] -= 1
            if ref[1] > 0:
                continue

            group_id = ref[2]
            del self._dv_refs[id(dv)]
            members = self._groups[group_id]
            members.remove(dv)
            if not members:
                del self._groups[group_id]
                self._groups_ordering.remove(group_id)

        return batch


    def is_batch_in(self, batch: OptimizationProblem) -> bool:
        return self.index_of(batch) is not None


    def index_of(self, batch: OptimizationProblem) -> int | None:
        """Index of *batch* (by identity), or ``None`` if absent."""
        for i, b in enumerate(self._batches):
            if b is batch:
                return i
        return None


    def get_batch(self, idx: int) -> OptimizationProblem:
        return self._batches[idx]


    @property
    def batches(self) -> list[OptimizationProblem]:
        return list(self._batches)


    @property
    def num_batches(self) -> int:
        return len(self._batches)


    def __len__(self) -> int:
        return len(self._batches)


    def __iter__(self) -> Iterator[OptimizationProblem]:
        return iter(list(self._batches))


    # GROUPS ----------------------------------------------------------------------------

    @property
    def groups_ordering(self) -> list[int]:
        """Copy of the current group ordering."""
        return list(self._groups_ordering)


    def set_groups_ordering(self, ordering) -> None:
        """Set the group ordering; must be a permutation of the present groups."""
        new_ordering = [int(g) for g in ordering]
        if sorted(new_ordering) != sorted(self._groups_ordering):
            raise ValueError(
                f"groups ordering {new_ordering} is not a permutation of the "
                f"present groups {self._groups_ordering}"
            )
        self._groups_ordering = new_ordering


    def is_group_in(self, group_id: int) -> bool:
        return group_id in self._groups


    def get_group_dim(self, group_id: int) -> int:
        """Total minimal dimension of the active variables in *group_id*."""
        if group_id not in self._groups:
            raise KeyError(f"group {group_id} not in the problem")
        return int(sum(
            dv.minimal_dimensions for dv in self._groups[group_id] if dv.active
        ))


    def get_group_design_variables(self, group_id: int) -> list[DesignVariable]:
        if group_id not in self._groups:
            raise KeyError(f"group {group_id} not in the problem")
        return list(self._groups[group_id])


    # DESIGN VARIABLES ------------------------------------------------------------------

    @property
    def design_variables(self) -> list[DesignVariable]:
        """All design variables, group by group in ordering order."""
        return [dv for g in self._groups_ordering for dv in self._groups[g]]


    def num_design_variables(self) -> int:
        return len(self._dv_refs)


    def design_variable(self, idx: int) -> DesignVariable:
        return self.design_variables[idx]


    def is_design_variable_in(self, design_variable: DesignVariable) -> bool:
        return id(design_variable) in self._dv_refs


    def save_design_variables(self) -> None:
        """Snapshot the values of all active design variables."""
        self._saved = {
            id(dv): (dv, dv.get_parameters())
            for dv in self.design_variables if dv.active
        }


    def restore_design_variables(self) -> None:
        """Write back the last snapshot, including variables removed since."""
        for dv, params in self._saved.values():
            dv.set_parameters(params)


    @property
    def has_saved_design_variables(self) -> bool:
        return bool(self._saved)


    # ERROR TERMS -----------------------------------------------------------------------

    @property
    def error_terms(self) -> list[ErrorTerm]:
        """All error terms, batch by batch."""
        return [et for b in self._batches for et in b.error_terms]


    def num_error_terms(self) -> int:
        return int(sum(b.num_error_terms for b in self._batches))


    def error_term(self, idx: int) -> ErrorTerm:
        return self.error_terms[idx]


    def evaluate(self) -> float:
        """Aggregate squared weighted error at the current values."""
        return float(sum(b.evaluate() for b in self._batches))


    def __repr__(self) -> str:
        return (
            f"IncrementalOptimizationProblem(batches={self.num_batches}, "
            f"design_variables={self.num_design_variables()}, "
            f"groups_ordering={self._groups_ordering})"
        )
