"""
Tasseo Engine - Poller Backoff State

Exponential backoff with jitter for the queue pollers. A poller that cannot
reach the dequeue RPC records a failure and sleeps for the returned delay;
the first successful dequeue resets it.

Usage:
    from tasseo.core.backoff import BackoffState

    backoff = BackoffState()

    try:
        job = client.dequeue(kind)
        backoff.record_success()
    except httpx.HTTPError:
        await asyncio.sleep(backoff.record_failure())
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Optional

INITIAL_BACKOFF_SECONDS = 1.0
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_MULTIPLIER = 2.0
BACKOFF_JITTER = 0.2  # up to +20% on top of the computed delay


@dataclass
class BackoffState:
    """
    Tracks consecutive dequeue failures for one poller.

    Attributes:
        initial_delay: Delay after the first failure
        max_delay: Upper bound before jitter
        consecutive_failures: Failures since the last success
        last_failure_time: Monotonic timestamp of last failure
        total_failures: Failures since creation
    """

    initial_delay: float = INITIAL_BACKOFF_SECONDS
    max_delay: float = MAX_BACKOFF_SECONDS
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    total_failures: int = 0

    def record_failure(self) -> float:
        """
        Record a failure and return the delay to wait before the next poll.

        The delay doubles per consecutive failure up to max_delay, then gains
        0-20% positive jitter so pollers that failed together drift apart.
        """
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure_time = time.monotonic()

        delay = min(
            self.initial_delay * (BACKOFF_MULTIPLIER ** (self.consecutive_failures - 1)),
            self.max_delay,
        )
        return delay + delay * BACKOFF_JITTER * random.random()

    def record_success(self) -> None:
        self.consecutive_failures = 0

    def is_in_crash_loop(self, threshold: int = 10) -> bool:
        return self.consecutive_failures >= threshold
