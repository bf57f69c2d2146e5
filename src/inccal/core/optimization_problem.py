#########################################################################################
##
##                        OPTIMIZATION PROBLEM (MEASUREMENT BATCH)
##                          (core/optimization_problem.py)
##
#########################################################################################

# IMPORTS ===============================================================================

from __future__ import annotations

from .design_variable import DesignVariable
from .error_term import ErrorTerm


# CLASS =================================================================================

class OptimizationProblem:
    """A batch: ordered design variables and the error terms over them.

    Batches are built by the caller and handed to the estimator by reference;
    the same design variable object may appear in many batches (typically the
    calibration parameters), each batch adding its own local variables.

    Example
    -------
    .. code-block:: python

        batch = OptimizationProblem()
        batch.add_design_variable(theta, group_id=1)
        batch.add_design_variable(pose, group_id=0)
        batch.add_error_term(FunctionErrorTerm(f, [pose, theta]))
    """

    def __init__(self):
        self._design_variables: list[DesignVariable] = []
        self._dv_set: set[int] = set()
        self._error_terms: list[ErrorTerm] = []


    # DESIGN VARIABLES ------------------------------------------------------------------

    def add_design_variable(
        self,
        design_variable: DesignVariable,
        group_id: int | None = None,
    ) -> "OptimizationProblem":
        """Add a design variable, optionally (re)assigning its group."""
        if not isinstance(design_variable, DesignVariable):
            raise TypeError(
                f"expected DesignVariable, got {type(design_variable).__name__}"
            )
        if id(design_variable) in self._dv_set:
            raise ValueError(
                f"design variable {design_variable.name!r} already in the batch"
            )

        if group_id is not None:
            design_variable.group_id = int(group_id)

        self._design_variables.append(design_variable)
        self._dv_set.add(id(design_variable))
        return self


    def is_design_variable_in(self, design_variable: DesignVariable) -> bool:
        return id(design_variable) in self._dv_set


    @property
    def design_variables(self) -> list[DesignVariable]:
        return list(self._design_variables)


    @property
    def num_design_variables(self) -> int:
        return len(self._design_variables)


    @property
    def group_ids(self) -> list[int]:
        """Distinct group ids in order of first appearance."""
        seen = []
        for dv in self._design_variables:
            if dv.group_id not in seen:
                seen.append(dv.group_id)
        return seen


    # ERROR TERMS -----------------------------------------------------------------------

    def add_error_term(self, error_term: ErrorTerm) -> "OptimizationProblem":
        """Add an error term; every variable it references must be in the batch."""
        for dv in error_term.design_variables:
            if id(dv) not in self._dv_set:
                raise ValueError(
                    f"error term references design variable {dv.name!r} "
                    "which was not added to the batch"
                )
        self._error_terms.append(error_term)
        return self


    @property
    def error_terms(self) -> list[ErrorTerm]:
        return list(self._error_terms)


    @property
    def num_error_terms(self) -> int:
        return len(self._error_terms)


    def evaluate(self) -> float:
        """Total squared weighted error of the batch at the current values."""
        return float(sum(et.evaluate() for et in self._error_terms))


    def __repr__(self) -> str:
        return (
            f"OptimizationProblem(design_variables={self.num_design_variables}, "
            f"error_terms={self.num_error_terms})"
        )
