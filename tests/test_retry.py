"""
Tests for retries and cancellation.
"""

import pytest

from cloudsweep.core.cancel import CancelToken, RunCancelled
from cloudsweep.core.exceptions import ProviderError, RateLimitError
from cloudsweep.core.retry import backoff_delay, call_with_backoff


class Flaky:
    """Callable failing ``failures`` times before returning."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or RateLimitError("slow down", code="Throttling")
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "ok"


class TestBackoff:
    """Tests for call_with_backoff."""

    def test_delays_grow_exponentially(self):
        """Test the backoff schedule and its cap."""
        assert [backoff_delay(n, 0.5, 2.0) for n in range(1, 5)] == [0.5, 1.0, 2.0, 2.0]

    def test_retries_transient_errors(self):
        """Test that throttling is retried until success."""
        delays = []
        func = Flaky(failures=2)
        assert call_with_backoff(func, sleep=delays.append) == "ok"
        assert func.calls == 3
        assert delays == [0.5, 1.0]

    def test_gives_up_after_max_attempts(self):
        """Test that the attempt cap is respected."""
        func = Flaky(failures=10)
        with pytest.raises(RateLimitError):
            call_with_backoff(func, max_attempts=3, sleep=lambda s: None)
        assert func.calls == 3

    def test_non_transient_errors_are_not_retried(self):
        """Test that permanent errors propagate immediately."""
        func = Flaky(failures=1, error=ProviderError("denied", code="AccessDenied"))
        with pytest.raises(ProviderError):
            call_with_backoff(func, sleep=lambda s: None)
        assert func.calls == 1

    def test_cancelled_before_retry(self):
        """Test that a cancelled token stops further attempts."""
        token = CancelToken()
        func = Flaky(failures=5)

        def sleep(seconds):
            token.cancel("user interrupt")

        with pytest.raises(RunCancelled):
            call_with_backoff(func, cancel=token, sleep=sleep)
        assert func.calls == 1


class TestCancelToken:
    """Tests for CancelToken."""

    def test_first_reason_wins(self):
        """Test that cancel is idempotent."""
        token = CancelToken()
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"

    def test_deadline(self):
        """Test that the deadline cancels the token."""
        clock = [100.0]
        token = CancelToken(deadline_seconds=5, clock=lambda: clock[0])
        assert not token.cancelled
        clock[0] = 105.0
        assert token.cancelled
        assert token.reason == "deadline exceeded"

    def test_raise_if_cancelled(self):
        """Test the checkpoint helper."""
        token = CancelToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(RunCancelled):
            token.raise_if_cancelled()
