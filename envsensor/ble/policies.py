"""Bounded retry policy for callers that want to reconnect after a failure.

The connection state machine never retries on its own; these helpers are
used by consumers such as the command line monitor.
"""

import random
import time
from typing import Optional

from envsensor.ble.constants import BLEConfig


class ReconnectPolicy:
    """Jittered exponential backoff with an optional retry budget."""

    def __init__(
        self,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff: float = 2.0,
        jitter_ratio: float = 0.1,
        max_retries: Optional[int] = None,
        random_source=None,
    ):
        if initial_delay <= 0:
            raise ValueError(f"initial_delay must be > 0, got {initial_delay}")
        if max_delay < initial_delay:
            raise ValueError(
                f"max_delay ({max_delay}) must be >= initial_delay ({initial_delay})"
            )
        if backoff < 1.0:
            raise ValueError(f"backoff must be >= 1.0, got {backoff}")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError(f"jitter_ratio must be within [0, 1], got {jitter_ratio}")
        if max_retries is not None and max_retries < 0:
            raise ValueError(f"max_retries must be >= 0 or None, got {max_retries}")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff = backoff
        self.jitter_ratio = jitter_ratio
        self.max_retries = max_retries
        self._random = random_source or random
        self.attempts = 0

    def reset(self) -> None:
        self.attempts = 0

    def delay_for(self, attempt: int) -> float:
        """Jittered delay before retry number ``attempt`` (0-based)."""
        base = min(self.initial_delay * self.backoff**attempt, self.max_delay)
        spread = base * self.jitter_ratio
        return max(0.001, base + self._random.uniform(-spread, spread))

    @property
    def exhausted(self) -> bool:
        return self.max_retries is not None and self.attempts >= self.max_retries

    def next_delay(self) -> Optional[float]:
        """Consume one retry and return its delay, or None once the budget is spent."""
        if self.exhausted:
            return None
        delay = self.delay_for(self.attempts)
        self.attempts += 1
        return delay

    def wait(self, sleep=time.sleep) -> bool:
        """Sleep for the next delay; returns False without sleeping when exhausted."""
        delay = self.next_delay()
        if delay is None:
            return False
        sleep(delay)
        return True


def connect_retry(max_retries: int) -> ReconnectPolicy:
    """Policy used by the command line monitor between connection attempts."""
    return ReconnectPolicy(
        initial_delay=BLEConfig.CONNECT_RETRY_INITIAL_DELAY,
        max_delay=BLEConfig.CONNECT_RETRY_MAX_DELAY,
        backoff=BLEConfig.CONNECT_RETRY_BACKOFF,
        jitter_ratio=BLEConfig.CONNECT_RETRY_JITTER_RATIO,
        max_retries=max_retries,
    )
