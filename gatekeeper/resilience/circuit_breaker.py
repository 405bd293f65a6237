"""
Circuit Breaker Pattern for API Fault Tolerance

Protects callers from an unavailable reputation provider.

States:
- CLOSED: Normal operation, requests flow through
- OPEN: Failures reached threshold, requests fail immediately
- HALF_OPEN: Cooldown elapsed, a single probe request is allowed

Breakers are plain objects: construct one per provider and inject it where it
is needed, so every test scenario can own an independent breaker.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from gatekeeper.errors import CircuitOpenError
from gatekeeper.types import CircuitState

logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5          # Consecutive failures before opening
    cooldown: float = 60.0              # Seconds in OPEN before a probe is allowed
    excluded_exceptions: tuple = ()     # Exceptions that don't count as failures


@dataclass
class CircuitBreakerStats:
    """Statistics for circuit breaker."""
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    state_changes: int = 0
    last_failure_time: Optional[float] = None
    last_success_time: Optional[float] = None


class CircuitBreaker:
    """
    Circuit breaker implementation.

    Usage:
        breaker = CircuitBreaker("fairscale")
        score = await breaker.execute(fetch_score, wallet)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Identifier for this circuit breaker
            config: Configuration options
            clock: Monotonic time source, injectable for tests
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._next_attempt: Optional[float] = None
        self._probe_in_flight = False
        # Never held across an await.
        self._lock = threading.Lock()
        self.stats = CircuitBreakerStats()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _transition_to(self, new_state: CircuitState):
        """Transition to a new state. Caller holds the lock."""
        if self._state != new_state:
            log = logger.error if new_state == CircuitState.OPEN else logger.info
            log(f"Circuit '{self.name}': {self._state.value} -> {new_state.value}")
            self._state = new_state
            self.stats.state_changes += 1

    def _acquire(self) -> bool:
        """Decide whether a call may proceed, moving OPEN -> HALF_OPEN after cooldown."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._next_attempt is not None and self._clock() >= self._next_attempt:
                    self._transition_to(CircuitState.HALF_OPEN)
                    self._probe_in_flight = True
                    return True
                self.stats.rejected_calls += 1
                return False

            # HALF_OPEN: only the probe that caused the transition is admitted
            if not self._probe_in_flight:
                self._probe_in_flight = True
                return True
            self.stats.rejected_calls += 1
            return False

    def _record_success(self):
        with self._lock:
            self.stats.successful_calls += 1
            self.stats.last_success_time = self._clock()
            self._failure_count = 0
            self._probe_in_flight = False
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.CLOSED)
                self._next_attempt = None

    def _record_failure(self, exception: BaseException):
        if isinstance(exception, self.config.excluded_exceptions):
            with self._lock:
                self._probe_in_flight = False
            return

        with self._lock:
            now = self._clock()
            self.stats.failed_calls += 1
            self.stats.last_failure_time = now
            self._failure_count += 1
            self._probe_in_flight = False

            if self._state == CircuitState.HALF_OPEN or \
               self._failure_count >= self.config.failure_threshold:
                self._next_attempt = now + self.config.cooldown
                self._transition_to(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args,
        **kwargs
    ) -> T:
        """
        Execute async function with circuit breaker protection.

        Raises:
            CircuitOpenError: If circuit is open (no call is attempted)
            Original exception: If function fails
        """
        if not self._acquire():
            raise CircuitOpenError(
                f"Circuit '{self.name}' is OPEN - service unavailable",
                provider=self.name,
            )

        self.stats.total_calls += 1

        try:
            result = await func(*args, **kwargs)
        except BaseException as e:
            self._record_failure(e)
            raise
        self._record_success()
        return result

    def reset(self):
        """Manually reset the circuit breaker to closed state."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._next_attempt = None
            self._probe_in_flight = False
        logger.info(f"Circuit '{self.name}' manually reset")

    def get_status(self) -> dict:
        """Circuit state and derived health flag for health surfaces."""
        state = self._state
        return {
            "state": state.value,
            "healthy": state != CircuitState.OPEN,
        }

    def get_details(self) -> dict:
        return {
            "name": self.name,
            **self.get_status(),
            "failure_count": self._failure_count,
            "stats": {
                "total_calls": self.stats.total_calls,
                "successful_calls": self.stats.successful_calls,
                "failed_calls": self.stats.failed_calls,
                "rejected_calls": self.stats.rejected_calls,
                "state_changes": self.stats.state_changes,
            },
            "config": {
                "failure_threshold": self.config.failure_threshold,
                "cooldown": self.config.cooldown,
            },
        }
