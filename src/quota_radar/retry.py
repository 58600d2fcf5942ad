"""Retry policies for discovery and the first telemetry sync."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ScanRetryPolicy:
    """Bounded scan attempts with one free retry for a cold shell.

    The first command timeout is assumed to be a slow shell cold start and
    does not consume an attempt. Every later failure does.
    """

    max_attempts: int
    attempts_used: int = 0
    grace_used: bool = False

    @property
    def exhausted(self) -> bool:
        return self.attempts_used >= self.max_attempts

    @property
    def attempt(self) -> int:
        """1-based number of the attempt about to run."""
        return self.attempts_used + 1

    def record_failure(self, timed_out: bool = False, grace_allowed: bool = True) -> bool:
        """Record a failed attempt.

        Args:
            timed_out: The attempt failed because the command timed out
            grace_allowed: This platform grants the cold-start grace

        Returns:
            True if the grace retry was spent on this failure
        """
        if timed_out and grace_allowed and not self.grace_used:
            self.grace_used = True
            return True
        self.attempts_used += 1
        return False


def init_backoff_delay(retry: int, base: float = 2.0) -> float:
    """Seconds to wait before init retry number `retry` (0-based): 2, 4, 6..."""
    return base * (retry + 1)
