"""Circuit breaker pattern for outbound webhook calls.

Prevents hammering destinations that keep failing. After N consecutive
failures for a host, the breaker opens and rejects calls for a
cooldown period. The first call after the cooldown is a probe: if it
succeeds the host's entry is dropped, if it fails the breaker reopens.
"""

import time
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from core.exceptions import CircuitOpenError

logger = structlog.get_logger(__name__)


@dataclass
class CircuitBreakerEntry:
    """Failure tracking for a single host."""
    failures: int = 0
    last_failure: float = 0.0
    state: str = "closed"  # closed, open, half-open
    probe_started: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "failures": self.failures,
            "last_failure": self.last_failure,
            "probe_in_flight": self.probe_started is not None,
        }


class CircuitBreaker:
    """Per-host circuit breaker.

    State lives on the instance, so two HTTP clients never share breakers.
    Entries are created lazily on the first failure. While half-open only
    one probe call is admitted; a probe that never reports back is
    abandoned after another recovery_timeout and a new one is admitted.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._clock = clock
        self._entries: dict[str, CircuitBreakerEntry] = {}

    def check(self, host: str) -> None:
        """Raise CircuitOpenError if calls to this host are not allowed."""
        entry = self._entries.get(host)
        if entry is None or entry.state == "closed":
            return

        now = self._clock()
        if entry.state == "half-open":
            if entry.probe_started is not None and now - entry.probe_started < self.recovery_timeout:
                remaining = self.recovery_timeout - (now - entry.probe_started)
                logger.warning("Circuit half-open, probe in flight", host=host)
                raise CircuitOpenError(host, entry.failures, self.failure_threshold, remaining)
            entry.probe_started = now
            return

        elapsed = now - entry.last_failure
        if elapsed >= self.recovery_timeout:
            entry.state = "half-open"
            entry.probe_started = now
            logger.info("Circuit half-open", host=host, cooldown_s=round(elapsed, 1))
            return

        remaining = self.recovery_timeout - elapsed
        logger.warning("Circuit open, rejecting call", host=host, remaining_s=round(remaining, 1))
        raise CircuitOpenError(host, entry.failures, self.failure_threshold, remaining)

    def can_execute(self, host: str) -> bool:
        """Non-raising variant of check(). Claims the half-open probe slot too."""
        try:
            self.check(host)
        except CircuitOpenError:
            return False
        return True

    def record_success(self, host: str) -> None:
        """Record a successful call; a half-open probe closes the breaker."""
        entry = self._entries.get(host)
        if entry is None:
            return

        if entry.state == "half-open":
            del self._entries[host]
            logger.info("Circuit closed after successful probe", host=host)
        else:
            entry.failures = 0

    def record_failure(self, host: str, error: Optional[str] = None) -> None:
        """Record a failed call, which may trip the breaker."""
        entry = self._entries.setdefault(host, CircuitBreakerEntry())
        entry.failures += 1
        entry.last_failure = self._clock()
        entry.probe_started = None

        if entry.failures >= self.failure_threshold:
            if entry.state != "open":
                logger.error(
                    "Circuit opened",
                    host=host,
                    failures=entry.failures,
                    cooldown_s=self.recovery_timeout,
                    last_error=error,
                )
            entry.state = "open"

    def get_state(self, host: str) -> Optional[CircuitBreakerEntry]:
        """Return the tracking entry for a host, if any."""
        return self._entries.get(host)

    def get_status(self) -> dict:
        """Get status of all tracked hosts."""
        return {host: entry.to_dict() for host, entry in self._entries.items()}

    def reset(self, host: Optional[str] = None) -> None:
        """Reset breaker for a host or all hosts."""
        if host:
            self._entries.pop(host, None)
        else:
            self._entries.clear()
