"""Reconnect attempt accounting with linear backoff."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_BASE_DELAY = 1.0
DEFAULT_MAX_ATTEMPTS = 5


@dataclass
class ReconnectPolicy:
    """Tracks consecutive reconnect attempts.

    ``next_delay`` returns the delay before the next attempt, or None once
    ``max_attempts`` has been used up. Only ``reset`` (called after a
    successful authentication) brings the counter back to zero.
    """

    base_delay: float = DEFAULT_BASE_DELAY
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    attempts: int = 0

    def next_delay(self) -> float | None:
        self.attempts += 1
        if self.attempts > self.max_attempts:
            return None
        return self.base_delay * self.attempts

    def reset(self) -> None:
        self.attempts = 0
