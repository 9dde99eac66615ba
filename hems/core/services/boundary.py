"""
Conversion of storage failures into ``SYSTEM_ERROR`` results.
"""

import functools
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from .logging import get_logging_service


def storage_boundary(failure_factory: Callable[[], object]):
    """Return ``failure_factory()`` when the wrapped call hits a storage error.

    The underlying error is logged; the caller only ever sees the generic
    system-error result.
    """

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except SQLAlchemyError as e:
                get_logging_service().log_error(
                    "storage",
                    str(e),
                    operation=func.__qualname__,
                    exc_type=type(e).__name__,
                )
                return failure_factory()

        return wrapper

    return decorator
