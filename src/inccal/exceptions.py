#########################################################################################
##
##                                  EXCEPTIONS
##                               (exceptions.py)
##
#########################################################################################


class InvalidOperationError(RuntimeError):
    """Raised when an operation would violate a structural invariant of the
    estimator, e.g. the marginalized group is missing from the problem or a
    :class:`~inccal.core.incremental_estimator.TryBatchResult` is reused.

    Numerical problems (non-convergence, rank loss) are never reported through
    this exception; they are returned as data in the result objects.
    """
