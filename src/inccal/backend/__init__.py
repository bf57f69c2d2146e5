#########################################################################################
##
##                     LINEAR SOLVER & OPTIMIZER BACKENDS
##                            (backend/__init__.py)
##
#########################################################################################

from .linear_solver import (
    LinearSolver,
    LinearSolverOptions,
    SolverState,
)
from .optimizer import (
    Optimizer,
    OptimizerOptions,
    SolutionReturnValue,
)
