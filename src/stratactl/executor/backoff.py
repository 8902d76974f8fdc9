"""Exponential backoff shared by provider retries and provisioner connects."""
from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass
class ExponentialBackoff:
    """Produce growing wait intervals, capped at ``max_interval``.

    With the default ``randomization_factor`` of ``0`` the sequence is
    deterministic: ``initial_interval``, ``initial_interval * multiplier`` and
    so on. A non-zero factor spreads each interval uniformly within
    ``interval * (1 +/- factor)``; the cap applies to the base interval, not
    the randomised value.
    """

    initial_interval: float = 0.5
    multiplier: float = 2.0
    max_interval: float = 30.0
    randomization_factor: float = 0.0
    retries: int = field(default=0, init=False)
    _interval: float = field(default=0.0, init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate the tunables."""
        if self.initial_interval < 0:
            raise ValueError("initial_interval must be >= 0")
        if self.multiplier < 1:
            raise ValueError("multiplier must be >= 1")
        if not 0 <= self.randomization_factor <= 1:
            raise ValueError("randomization_factor must be between 0 and 1")

    def reset(self) -> None:
        """Start the sequence over."""
        self.retries = 0
        self._interval = 0.0

    def next_backoff(self) -> float:
        """Return the next interval to wait, in seconds."""
        if self.retries == 0:
            self._interval = min(self.initial_interval, self.max_interval)
        self.retries += 1

        interval = self._interval
        if self.randomization_factor > 0:
            spread = interval * self.randomization_factor
            interval = random.uniform(interval - spread, interval + spread)  # noqa: S311
        self._interval = min(self.max_interval, self._interval * self.multiplier)
        return interval


__all__ = ["ExponentialBackoff"]
