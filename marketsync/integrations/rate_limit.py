"""
Shared rate-limit backoff for marketplace calls.

One gate exists per connection inside a process. Every worker calling the
marketplace for that connection waits on the same gate, so a burst of 429s
slows all of them down instead of each retrying on its own schedule.
"""

import asyncio
import logging
import random
import time
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


class RateLimitGate:
    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable = asyncio.sleep,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._clock = clock
        self._sleep = sleep
        self._blocked_until = 0.0
        self.consecutive_failures = 0

    def remaining(self) -> float:
        return max(0.0, self._blocked_until - self._clock())

    async def wait(self) -> None:
        delay = self.remaining()
        if delay > 0:
            logger.debug("Rate limit gate closed, waiting %.2fs", delay)
            await self._sleep(delay)

    def penalize(self, retry_after: Optional[float] = None) -> float:
        """Record a throttled/failed call and push the gate forward. Returns the delay."""
        self.consecutive_failures += 1
        delay = self.base_delay * (2 ** (self.consecutive_failures - 1))
        if retry_after is not None:
            delay = max(delay, retry_after)
        delay = min(delay, self.max_delay)
        # Equal jitter: half fixed, half random
        delay = delay / 2 + random.uniform(0, delay / 2)
        self._blocked_until = max(self._blocked_until, self._clock() + delay)
        return delay

    def reset(self) -> None:
        self.consecutive_failures = 0
        self._blocked_until = 0.0


class RateLimitRegistry:
    """Hands out one gate per key."""

    def __init__(self, base_delay: float = 1.0, max_delay: float = 60.0, sleep: Callable = asyncio.sleep):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._sleep = sleep
        self._gates: Dict[str, RateLimitGate] = {}

    def gate(self, key: str) -> RateLimitGate:
        gate = self._gates.get(key)
        if gate is None:
            gate = RateLimitGate(self.base_delay, self.max_delay, sleep=self._sleep)
            self._gates[key] = gate
        return gate
