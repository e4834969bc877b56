"""
Retry helper for read-only provider calls.

Only :class:`~cloudsweep.core.exceptions.TransientProviderError` (throttling,
timeouts) is retried, with exponential backoff and a fixed attempt cap.
Mutating calls must never go through this helper.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

from cloudsweep.core.cancel import CancelToken
from cloudsweep.core.exceptions import TransientProviderError

# Module logger
logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 4
DEFAULT_BASE_DELAY = 0.5
DEFAULT_MAX_DELAY = 8.0


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """
    Delay before retry number ``attempt`` (1-based).

    >>> [backoff_delay(n, 0.5, 8.0) for n in range(1, 6)]
    [0.5, 1.0, 2.0, 4.0, 8.0]
    """
    return min(max_delay, base_delay * (2 ** (attempt - 1)))


def call_with_backoff(
    func: Callable[[], T],
    description: str = "provider call",
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    cancel: Optional[CancelToken] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> T:
    """
    Call ``func`` and retry transient provider failures.

    Parameters
    ----------
    func : callable
        Zero-argument read-only call.
    description : str
        Used in log messages.
    max_attempts : int, default=4
        Total attempts including the first one.
    base_delay, max_delay : float
        Exponential backoff parameters in seconds.
    cancel : CancelToken, optional
        Checked before every attempt; waits are cut short on cancellation.
    sleep : callable, optional
        Replacement for ``time.sleep`` (tests).

    Returns
    -------
    object
        Whatever ``func`` returns.

    Raises
    ------
    TransientProviderError
        When every attempt failed transiently.
    ProviderError
        Non-transient errors propagate immediately.
    RunCancelled
        If the cancel token fires between attempts.
    """
    attempt = 1
    while True:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return func()
        except TransientProviderError as e:
            if attempt >= max_attempts:
                logger.warning(
                    "%s failed after %d attempts: %s", description, attempt, e
                )
                raise
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.debug(
                "%s failed transiently (attempt %d/%d), retrying in %.1fs: %s",
                description,
                attempt,
                max_attempts,
                delay,
                e,
            )
            if sleep is not None:
                sleep(delay)
            elif cancel is not None:
                cancel.wait(delay)
            else:
                time.sleep(delay)
            attempt += 1
