"""
Cooperative cancellation for audit runs.

A :class:`CancelToken` is shared by the orchestrator, adapters and the
action executor. Listing code checks it at I/O checkpoints (between pages,
before retries); the executor checks it before starting a mutation.
"""

from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from cloudsweep.core.exceptions import CloudSweepError


class RunCancelled(CloudSweepError):
    """Raised at a checkpoint once the run has been cancelled."""

    kind = "PartialFailure"


class CancelToken:
    """
    Cancellation signal with an optional deadline.

    Parameters
    ----------
    deadline_seconds : float, optional
        Seconds from creation after which the token reports cancelled.
    clock : callable, optional
        Monotonic clock, injectable for tests.

    Example
    -------
    >>> token = CancelToken(deadline_seconds=600)
    >>> token.raise_if_cancelled()
    >>> token.cancel("user interrupt")
    >>> token.cancelled
    True
    """

    def __init__(
        self,
        deadline_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + deadline_seconds if deadline_seconds else None
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation. Idempotent; the first reason wins."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    def raise_if_cancelled(self) -> None:
        """Raise :class:`RunCancelled` if the token has been cancelled."""
        if self.cancelled:
            raise RunCancelled(f"Run cancelled: {self.reason}")

    def wait(self, seconds: float) -> bool:
        """
        Sleep up to ``seconds``, waking early on cancellation.

        Returns
        -------
        bool
            True if cancelled while waiting.
        """
        if self._deadline is not None:
            seconds = max(0.0, min(seconds, self._deadline - self._clock()))
        return self._event.wait(seconds) or self.cancelled

    def __repr__(self) -> str:
        """Return string representation."""
        return f"CancelToken(cancelled={self._event.is_set()}, reason={self.reason!r})"
