"""Retry/backoff strategies.

Used in two places:
- the workflow queue, to space out re-admissions of a failed job
- the HTTP client, to space out attempts of a single request

Policies:
- Fixed delay
- Exponential backoff (capped, with optional jitter)
- Linear backoff (``base_delay * attempt``, capped)

Usage:
    strategy = RetryStrategy.exponential(max_retries=5, base_delay=1.0, max_delay=60.0)
    delay = strategy.compute_delay(attempt)
"""

import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional


class RetryPolicy(str, Enum):
    """Available retry policies."""
    FIXED = "fixed"
    EXPONENTIAL = "exponential"
    LINEAR = "linear"
    NONE = "none"


@dataclass
class RetryStrategy:
    """Configurable retry strategy. Delays are in seconds."""
    policy: RetryPolicy
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 300.0
    multiplier: float = 2.0
    jitter: bool = False
    jitter_range: float = 0.5

    @classmethod
    def none(cls) -> 'RetryStrategy':
        """No retries, fail immediately."""
        return cls(policy=RetryPolicy.NONE, max_retries=0)

    @classmethod
    def fixed(cls, max_retries: int = 3, delay: float = 5.0) -> 'RetryStrategy':
        """Fixed delay between retries."""
        return cls(
            policy=RetryPolicy.FIXED,
            max_retries=max_retries,
            base_delay=delay,
            max_delay=delay,
        )

    @classmethod
    def exponential(
        cls,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        multiplier: float = 2.0,
        jitter: bool = False,
    ) -> 'RetryStrategy':
        """Exponential backoff: delay = base_delay * multiplier ** (attempt - 1)."""
        return cls(
            policy=RetryPolicy.EXPONENTIAL,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
            multiplier=multiplier,
            jitter=jitter,
        )

    @classmethod
    def linear(
        cls,
        max_retries: int = 5,
        base_delay: float = 2.0,
        max_delay: float = 30.0,
    ) -> 'RetryStrategy':
        """Linear backoff: delay = base_delay * attempt_number."""
        return cls(
            policy=RetryPolicy.LINEAR,
            max_retries=max_retries,
            base_delay=base_delay,
            max_delay=max_delay,
        )

    @classmethod
    def from_dict(cls, config: dict) -> 'RetryStrategy':
        """Create strategy from a plain configuration dict."""
        policy = config.get('policy', 'exponential')
        return cls(
            policy=RetryPolicy(policy),
            max_retries=config.get('max_retries', 3),
            base_delay=config.get('base_delay', 1.0),
            max_delay=config.get('max_delay', 300.0),
            multiplier=config.get('multiplier', 2.0),
            jitter=config.get('jitter', False),
            jitter_range=config.get('jitter_range', 0.5),
        )

    def to_dict(self) -> dict:
        return {
            'policy': self.policy.value,
            'max_retries': self.max_retries,
            'base_delay': self.base_delay,
            'max_delay': self.max_delay,
            'multiplier': self.multiplier,
            'jitter': self.jitter,
            'jitter_range': self.jitter_range,
        }

    def compute_delay(self, attempt: int) -> float:
        """Compute the delay for a given attempt number (1-based)."""
        if self.policy == RetryPolicy.NONE:
            return 0.0

        attempt = max(attempt, 1)
        if self.policy == RetryPolicy.FIXED:
            delay = self.base_delay
        elif self.policy == RetryPolicy.EXPONENTIAL:
            delay = self.base_delay * (self.multiplier ** (attempt - 1))
        elif self.policy == RetryPolicy.LINEAR:
            delay = self.base_delay * attempt
        else:
            delay = self.base_delay

        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_amount = delay * self.jitter_range
            delay = delay + random.uniform(-jitter_amount, jitter_amount)
            delay = max(0.0, delay)

        return round(delay, 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Decide whether another attempt is allowed after ``attempt`` failures.

        Errors carrying a ``retryable`` attribute (the HTTP client's error
        types) are honoured; anything else is treated as transient.
        """
        if self.policy == RetryPolicy.NONE:
            return False

        if attempt > self.max_retries:
            return False

        if error is None:
            return True

        return bool(getattr(error, "retryable", True))
