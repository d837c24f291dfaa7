"""
Exponential backoff for retry loops.

Used between notification attempts of one delivery chain and by the
escalation worker loop after a failed tick.
"""

import random


class ExponentialBackoff:
    """
    Exponential backoff with optional jitter.

    Delays are ``min(base * multiplier^attempt, max_delay)`` plus a random
    +/- ``jitter_range`` fraction. With the notification defaults
    (base 0.5s, multiplier 2, no jitter) a chain waits 0.5s, 1s, 2s, ...

    Usage:
        backoff = ExponentialBackoff(base_delay=0.5, jitter_range=0.0)
        while attempts_left():
            if await send():
                break
            await asyncio.sleep(backoff.next_delay())
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter_range: float = 0.5,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.multiplier = multiplier
        self.jitter_range = jitter_range
        self._attempt = 0

    @property
    def attempt(self) -> int:
        """Delays handed out since the last reset."""
        return self._attempt

    def peek(self) -> float:
        """Delay ``next_delay()`` would return, before jitter."""
        return min(
            self.base_delay * (self.multiplier ** self._attempt),
            self.max_delay,
        )

    def next_delay(self) -> float:
        """Return the next delay and advance the attempt counter."""
        delay = self.peek()
        if self.jitter_range:
            delay += delay * random.uniform(-self.jitter_range, self.jitter_range)
        self._attempt += 1
        return max(0.0, delay)

    def reset(self) -> None:
        self._attempt = 0
