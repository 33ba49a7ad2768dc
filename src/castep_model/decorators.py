"""Decorators used across the castep_model package."""

import logging
from functools import wraps
from time import perf_counter

logger = logging.getLogger(__name__)


def time_it(func):
    """Measure the execution time of a function and log the result.

    Parameters
    ----------
    func:
        Callable to be wrapped.

    Returns
    -------
    callable
        Wrapped function that logs its runtime at :mod:`logging.INFO` level,
        also when it raises.

    """

    @wraps(func)
    def wrap(*args, **kwargs):
        start_time = perf_counter()
        try:
            return func(*args, **kwargs)
        finally:
            logger.info(
                "Function: %r took: %.2f sec to complete", func.__name__, perf_counter() - start_time
            )

    return wrap
