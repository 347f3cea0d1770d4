"""Bounded local retry for transient store failures."""
from __future__ import annotations

import logging
import random
import time
from typing import Callable, Tuple, Type, TypeVar

from .errors import TransientStoreError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def retry_transient(
    func: Callable[..., T],
    *args,
    attempts: int = 3,
    delay: float = 0.05,
    backoff: float = 2.0,
    jitter: bool = True,
    exceptions: Tuple[Type[BaseException], ...] = (TransientStoreError,),
    **kwargs,
) -> T:
    """Call ``func`` retrying on ``exceptions`` at most ``attempts`` times."""

    attempt = 1
    while True:
        try:
            return func(*args, **kwargs)
        except exceptions as exc:
            if attempt >= attempts:
                logger.error(
                    "%s failed after %d attempts: %s",
                    getattr(func, "__name__", repr(func)),
                    attempt,
                    exc,
                )
                raise
            wait = delay * (backoff ** (attempt - 1))
            if jitter:
                wait *= random.uniform(0.8, 1.2)  # nosec B311 - jitter only
            logger.warning(
                "%s attempt %d/%d failed: %s; retrying in %.3fs",
                getattr(func, "__name__", repr(func)),
                attempt,
                attempts,
                exc,
                wait,
            )
            time.sleep(wait)
            attempt += 1


__all__ = ["retry_transient"]
