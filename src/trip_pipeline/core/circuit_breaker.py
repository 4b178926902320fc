"""
Per-provider circuit breakers.

Each provider gets a CircuitBreaker that fails fast once the provider has
failed `failure_threshold` times in a row, and admits a single trial call
after the cooldown to test recovery. Breakers live in a ProviderHealthRegistry
that the router and the status endpoint share.
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)


class CircuitBreakerState(str, Enum):
    """Circuit breaker states"""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing fast
    HALF_OPEN = "half-open"  # One trial call in flight


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior"""
    failure_threshold: int = 5      # Consecutive failures before opening
    cooldown_seconds: float = 30.0  # Time in OPEN before a trial is admitted
    metrics_window: int = 50        # Samples kept for latency / error rate


class CircuitBreaker:
    """
    Circuit breaker for a single provider.

    closed -> open after `failure_threshold` consecutive failures.
    open -> half-open once `cooldown_seconds` have elapsed; the caller that
    observes the transition owns the only trial. Every other caller is
    rejected until the trial reports back.
    half-open -> closed on trial success, -> open on trial failure (the
    cooldown restarts).

    A success resets the consecutive failure counter in every state.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        # State management
        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at: Optional[float] = None
        self._trial_in_flight = False

        # Rolling window of (latency_ms, success)
        self._samples: Deque[Tuple[float, bool]] = deque(maxlen=self.config.metrics_window)

        # Thread safety
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitBreakerState:
        with self._lock:
            return self._state

    def can_execute(self) -> bool:
        """Check if a call may be made now. Claims the half-open trial when granted."""

        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return True

            if self._state == CircuitBreakerState.OPEN:
                if self._cooldown_elapsed():
                    self._state = CircuitBreakerState.HALF_OPEN
                    self._trial_in_flight = True
                    logger.info(f"CircuitBreaker '{self.name}' transitioning to HALF_OPEN")
                    return True
                return False

            # HALF_OPEN: only the caller that claimed the trial may proceed
            if not self._trial_in_flight:
                self._trial_in_flight = True
                return True
            return False

    def record_success(self, latency_ms: float = 0.0) -> None:
        """Record a successful call"""

        with self._lock:
            self._samples.append((latency_ms, True))
            self._consecutive_failures = 0

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._close_circuit()

    def record_failure(self, latency_ms: float = 0.0) -> None:
        """Record a failed call (network error, non-2xx, timeout or unusable payload)"""

        with self._lock:
            self._samples.append((latency_ms, False))
            self._consecutive_failures += 1

            if self._state == CircuitBreakerState.HALF_OPEN:
                self._open_circuit()
            elif (self._state == CircuitBreakerState.CLOSED
                    and self._consecutive_failures >= self.config.failure_threshold):
                self._open_circuit()

    def abandon(self) -> None:
        """Release a claimed half-open trial whose call was cancelled before it finished"""

        with self._lock:
            if self._state == CircuitBreakerState.HALF_OPEN:
                self._trial_in_flight = False

    def _cooldown_elapsed(self) -> bool:
        if self._opened_at is None:
            return True
        return (self._clock() - self._opened_at) >= self.config.cooldown_seconds

    def _open_circuit(self) -> None:
        self._state = CircuitBreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False

        logger.warning(
            f"CircuitBreaker '{self.name}' OPENED after {self._consecutive_failures} "
            f"consecutive failures - cooldown {self.config.cooldown_seconds}s"
        )

    def _close_circuit(self) -> None:
        self._state = CircuitBreakerState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = None
        self._trial_in_flight = False

        logger.info(f"CircuitBreaker '{self.name}' CLOSED")

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state"""

        with self._lock:
            total = len(self._samples)
            failures = sum(1 for _, success in self._samples if not success)
            avg_latency = sum(latency for latency, _ in self._samples) / total if total else 0.0

            return {
                "name": self.name,
                "circuit_state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "opened_at": self._opened_at,
                "trial_in_flight": self._trial_in_flight,
                "average_latency_ms": round(avg_latency, 2),
                "error_rate": round(failures / total, 4) if total else 0.0,
                "samples": total,
            }

    def force_open(self) -> None:
        """Manually force circuit breaker open"""

        with self._lock:
            self._open_circuit()
            logger.warning(f"CircuitBreaker '{self.name}' manually forced OPEN")

    def force_close(self) -> None:
        """Manually force circuit breaker closed"""

        with self._lock:
            self._close_circuit()


class ProviderHealthRegistry:
    """Holds one breaker per provider name. Breakers are created lazily."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        providers: Iterable[str] = (),
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

        for name in providers:
            self.get(name)

    def get(self, provider: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(provider)
            if breaker is None:
                breaker = CircuitBreaker(provider, self.config, clock=self._clock)
                self._breakers[provider] = breaker
            return breaker

    def names(self) -> List[str]:
        with self._lock:
            return list(self._breakers)

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        """State of every known breaker, keyed by provider"""
        return {name: self.get(name).get_state() for name in self.names()}

    def open_count(self) -> int:
        return sum(
            1 for name in self.names()
            if self.get(name).state != CircuitBreakerState.CLOSED
        )
