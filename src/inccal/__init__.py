from importlib import metadata

try:
    __version__ = metadata.version("inccal")
except Exception:
    __version__ = "unknown"

from .core import (
    DesignVariable,
    ErrorTerm,
    FunctionErrorTerm,
    OptimizationProblem,
    IncrementalOptimizationProblem,
    EstimatorOptions,
    ReturnValue,
    TryBatchResult,
    IncrementalEstimator,
)
from .backend import LinearSolverOptions, OptimizerOptions
from .exceptions import InvalidOperationError
from .utils.logger import LoggerManager
