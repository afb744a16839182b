from __future__ import annotations

import functools
import logging
import time
from typing import Callable, TypeVar

from stockledger.app.core.config import get_settings
from stockledger.app.core.errors import ConcurrencyConflict

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_on_conflict(
    func: Callable[..., T] | None = None,
    *,
    attempts: int | None = None,
    backoff: float | None = None,
):
    """
    Retry ``func`` when it raises ConcurrencyConflict, with exponential backoff.

    Nothing else is retried: every other InventoryError is a business answer,
    not a transient failure. The last conflict propagates to the caller.
    Defaults come from ``conflict_retry_attempts`` / ``conflict_retry_backoff`` of
    the ``settings=`` keyword the call carries, else of the process settings.
    """

    def decorator(fn: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs) -> T:
            settings = kwargs.get("settings") or get_settings()
            max_attempts = attempts if attempts is not None else settings.conflict_retry_attempts
            delay = backoff if backoff is not None else settings.conflict_retry_backoff

            for attempt in range(1, max_attempts + 1):
                try:
                    return fn(*args, **kwargs)
                except ConcurrencyConflict as exc:
                    if attempt >= max_attempts:
                        logger.warning(
                            "%s: giving up after %d conflicting attempts (%s)",
                            fn.__name__,
                            attempt,
                            exc.detail,
                        )
                        raise
                    logger.info("%s: conflict on attempt %d, retrying (%s)", fn.__name__, attempt, exc.detail)
                    if delay:
                        time.sleep(delay * (2 ** (attempt - 1)))
            raise AssertionError("unreachable")  # pragma: no cover

        return wrapper

    if func is not None:
        return decorator(func)
    return decorator
