#########################################################################################
##
##                      INCREMENTAL ESTIMATION CORE: PUBLIC API
##                               (core/__init__.py)
##
#########################################################################################

from .design_variable import DesignVariable
from .error_term import ErrorTerm, FunctionErrorTerm
from .optimization_problem import OptimizationProblem
from .incremental_problem import IncrementalOptimizationProblem
from .incremental_estimator import (
    EstimatorOptions,
    ReturnValue,
    TryBatchResult,
    IncrementalEstimator,
)
