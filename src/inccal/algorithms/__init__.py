#########################################################################################
##
##                          MARGINALIZATION ALGORITHMS
##                           (algorithms/__init__.py)
##
#########################################################################################

from .marginalize import marginalize, MarginalizationResult
