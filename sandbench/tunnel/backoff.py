# Copyright (c) 2025 Marc Schütze <scharc@gmail.com>
# SPDX-License-Identifier: MIT
# See LICENSE file in the project root for full license information.

"""Exponential backoff with jitter for reconnect attempts."""

import random
from typing import Optional

from sandbench.models.config import RetrySettings


class ExponentialBackoff:
    """Delay cursor for consecutive connection failures.

    The base delay for attempt k is min(min_delay * factor**k, max_delay).
    With jitter enabled the delay is drawn from [base(k), base(k + 1)], so
    successive delays never decrease and never exceed max_delay.
    """

    def __init__(
        self,
        min_delay: float = 1.0,
        max_delay: float = 20.0,
        factor: float = 2.0,
        jitter: bool = True,
        rng: Optional[random.Random] = None,
    ):
        self.min_delay = min_delay
        self.max_delay = max_delay
        self.factor = factor
        self.jitter = jitter
        self._rng = rng or random.Random()
        self._attempts = 0

    @classmethod
    def from_settings(
        cls, settings: RetrySettings, rng: Optional[random.Random] = None
    ) -> "ExponentialBackoff":
        return cls(
            min_delay=settings.min_delay,
            max_delay=settings.max_delay,
            factor=settings.factor,
            jitter=settings.jitter,
            rng=rng,
        )

    @property
    def attempts(self) -> int:
        """Number of delays handed out since the last reset."""
        return self._attempts

    def base_delay(self, attempt: int) -> float:
        # Stop multiplying once capped so long outages never overflow
        delay = self.min_delay
        for _ in range(attempt):
            delay *= self.factor
            if delay >= self.max_delay:
                return self.max_delay
        return min(delay, self.max_delay)

    def next_delay(self) -> float:
        """Return the delay before the next attempt and advance the cursor."""
        low = self.base_delay(self._attempts)
        self._attempts += 1
        if not self.jitter:
            return low
        high = self.base_delay(self._attempts)
        return self._rng.uniform(low, high)

    def reset(self) -> None:
        self._attempts = 0
