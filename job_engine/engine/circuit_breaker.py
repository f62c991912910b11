"""
Circuit Breaker for downstream dependencies.

One breaker per dependency name, shared by every worker that calls it.

State machine:
    CLOSED --(failure_threshold failures within monitoring window)--> OPEN
    OPEN --(recovery_timeout elapsed)--> HALF_OPEN
    HALF_OPEN --(success_threshold successes)--> CLOSED
    HALF_OPEN --(any failure)--> OPEN

Every transition starts a new state period. A call is credited only to the
period it was admitted in, so a slow call that returns after the breaker has
moved on leaves the state machine alone.

All counters are updated under a per-breaker lock. State is kept in memory
only and starts CLOSED on every process start.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .errors import CircuitOpenError, CircuitTimeoutError, FatalError


logger = logging.getLogger(__name__)


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Per-dependency breaker settings."""

    failure_threshold: int = 5
    recovery_timeout_ms: int = 60_000
    success_threshold: int = 3
    monitoring_window_ms: int = 300_000
    timeout_ms: Optional[int] = 30_000
    max_half_open_calls: int = 5

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")
        if self.max_half_open_calls < 1:
            raise ValueError("max_half_open_calls must be >= 1")
        if self.recovery_timeout_ms < 0 or self.monitoring_window_ms < 0:
            raise ValueError("timeouts must be non-negative")


@dataclass(frozen=True)
class _Admission:
    """State period a call was admitted in."""

    state: CircuitState
    generation: int


class CircuitBreaker:
    """
    Three-state health gate around calls to a single dependency.

    The breaker applies its own timeout to every call by running the
    operation on a private thread pool. A timed-out operation keeps running
    in the background; its result is discarded.

    FatalError raised by the operation is the caller's fault and counts as
    neither a failure nor a success.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics=None,
        pool_size: int = 8,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._metrics = metrics
        self._pool_size = pool_size
        self._pool: Optional[ThreadPoolExecutor] = None
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._failures: deque = deque()
        self._success_count = 0
        self._half_open_in_flight = 0
        self._opened_at: Optional[float] = None
        # Bumped on every transition
        self._generation = 0
        self._last_failure_time: Optional[float] = None
        self._last_success_time: Optional[float] = None

        # Lifetime counters
        self._requests = 0
        self._successes = 0
        self._failures_total = 0
        self._timeouts = 0
        self._rejections = 0
        self._total_response_ms = 0.0

    # =========================================================================
    # Execution
    # =========================================================================

    def execute(
        self,
        operation: Callable[..., Any],
        *args,
        timeout_ms: Optional[int] = None,
        **kwargs,
    ) -> Any:
        """
        Run operation through the breaker.

        Args:
            operation: Callable invoked with *args and **kwargs
            timeout_ms: Overrides the configured timeout for this call

        Raises:
            CircuitOpenError: If the call was rejected without running
            CircuitTimeoutError: If the operation exceeded the timeout
            Exception: Whatever the operation raised
        """
        admission = self._acquire()
        started = self._clock()
        try:
            result = self._run(operation, args, kwargs, timeout_ms)
        except CircuitTimeoutError:
            self._on_failure(admission, timed_out=True)
            raise
        except FatalError:
            raise
        except Exception:
            self._on_failure(admission)
            raise
        else:
            self._on_success(admission, (self._clock() - started) * 1000)
            return result
        finally:
            if admission.state == CircuitState.HALF_OPEN:
                with self._lock:
                    if admission.generation == self._generation:
                        self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    def _acquire(self) -> _Admission:
        """Admit or reject a call, recording the state period it was admitted in."""
        with self._lock:
            self._refresh_state()
            if self._state == CircuitState.OPEN:
                self._rejections += 1
                raise CircuitOpenError(self.name, retry_after_ms=self._retry_after_ms())
            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_in_flight >= self.config.max_half_open_calls:
                    self._rejections += 1
                    raise CircuitOpenError(self.name)
                self._half_open_in_flight += 1
            self._requests += 1
            return _Admission(self._state, self._generation)

    def _run(self, operation, args, kwargs, timeout_ms: Optional[int]):
        effective = timeout_ms if timeout_ms is not None else self.config.timeout_ms
        if not effective:
            return operation(*args, **kwargs)

        future = self._get_pool().submit(operation, *args, **kwargs)
        try:
            return future.result(timeout=effective / 1000)
        except FutureTimeoutError:
            future.cancel()
            raise CircuitTimeoutError(self.name, effective) from None

    def _get_pool(self) -> ThreadPoolExecutor:
        with self._lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(
                    max_workers=self._pool_size,
                    thread_name_prefix=f"breaker-{self.name}",
                )
            return self._pool

    # =========================================================================
    # Outcome recording
    # =========================================================================

    def _on_success(self, admission: _Admission, elapsed_ms: float) -> None:
        with self._lock:
            now = self._clock()
            self._successes += 1
            self._total_response_ms += elapsed_ms
            self._last_success_time = now

            if admission.generation != self._generation:
                logger.debug(
                    f"Circuit breaker '{self.name}': ignoring success admitted "
                    f"while {admission.state.value}"
                )
                return

            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition(CircuitState.CLOSED, "success threshold reached")

    def _on_failure(self, admission: _Admission, timed_out: bool = False) -> None:
        with self._lock:
            now = self._clock()
            self._failures_total += 1
            if timed_out:
                self._timeouts += 1
            self._last_failure_time = now

            if admission.generation != self._generation:
                logger.debug(
                    f"Circuit breaker '{self.name}': ignoring failure admitted "
                    f"while {admission.state.value}"
                )
                return

            if self._state == CircuitState.HALF_OPEN:
                self._transition(CircuitState.OPEN, "failure during half-open probe")
                return

            if self._state == CircuitState.CLOSED:
                self._failures.append(now)
                self._prune_failures(now)
                if len(self._failures) >= self.config.failure_threshold:
                    self._transition(
                        CircuitState.OPEN,
                        f"{len(self._failures)} failures within monitoring window",
                    )

    def _prune_failures(self, now: float) -> None:
        horizon = now - self.config.monitoring_window_ms / 1000
        while self._failures and self._failures[0] < horizon:
            self._failures.popleft()

    # =========================================================================
    # State
    # =========================================================================

    def _refresh_state(self) -> None:
        """Move OPEN to HALF_OPEN once the recovery timeout has elapsed. Caller holds lock."""
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        if self._clock() - self._opened_at >= self.config.recovery_timeout_ms / 1000:
            self._transition(CircuitState.HALF_OPEN, "recovery timeout elapsed")

    def _retry_after_ms(self) -> int:
        if self._opened_at is None:
            return 0
        remaining = self._opened_at + self.config.recovery_timeout_ms / 1000 - self._clock()
        return max(0, int(remaining * 1000))

    def _transition(self, new_state: CircuitState, reason: str) -> None:
        """Caller holds lock."""
        old_state = self._state
        self._state = new_state
        self._generation += 1

        if new_state == CircuitState.OPEN:
            self._opened_at = self._clock()
            self._success_count = 0
            logger.warning(
                f"Circuit breaker '{self.name}' {old_state.value} -> OPEN ({reason})"
            )
        elif new_state == CircuitState.HALF_OPEN:
            self._success_count = 0
            self._half_open_in_flight = 0
            logger.info(
                f"Circuit breaker '{self.name}' {old_state.value} -> HALF_OPEN ({reason})"
            )
        else:
            self._opened_at = None
            self._success_count = 0
            self._failures.clear()
            logger.info(
                f"Circuit breaker '{self.name}' {old_state.value} -> CLOSED ({reason})"
            )

        if self._metrics is not None and old_state != new_state:
            self._metrics.record_circuit_state_change(
                self.name, old_state.value, new_state.value
            )

    def get_state(self) -> CircuitState:
        """Current state, moving OPEN to HALF_OPEN if the recovery timeout elapsed."""
        with self._lock:
            self._refresh_state()
            return self._state

    def next_attempt_in_ms(self) -> int:
        """Milliseconds until an OPEN breaker admits a probe; 0 otherwise."""
        with self._lock:
            self._refresh_state()
            if self._state != CircuitState.OPEN:
                return 0
            return self._retry_after_ms()

    def get_metrics(self) -> dict:
        with self._lock:
            self._refresh_state()
            now = self._clock()
            if self._state == CircuitState.CLOSED:
                self._prune_failures(now)
            average = (
                self._total_response_ms / self._successes if self._successes else 0.0
            )
            return {
                "name": self.name,
                "state": self._state.value,
                "failure_count": len(self._failures),
                "success_count": self._success_count,
                "requests": self._requests,
                "successes": self._successes,
                "failures": self._failures_total,
                "timeouts": self._timeouts,
                "rejections": self._rejections,
                "average_response_time_ms": round(average, 2),
                "last_failure_time": self._last_failure_time,
                "last_success_time": self._last_success_time,
                "opened_at": self._opened_at,
                "next_attempt_in_ms": (
                    self._retry_after_ms() if self._state == CircuitState.OPEN else 0
                ),
            }

    def reset(self) -> None:
        """Force the breaker CLOSED and clear its window (operator action)."""
        with self._lock:
            self._transition(CircuitState.CLOSED, "manual reset")
            self._half_open_in_flight = 0
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def shutdown(self) -> None:
        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=False, cancel_futures=True)


class CircuitBreakerRegistry:
    """
    One breaker per dependency name.

    Settings are looked up by name with a shared default, so an unhealthy
    dependency never throttles calls to another.
    """

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        configs: Optional[dict] = None,
        clock: Callable[[], float] = time.monotonic,
        metrics=None,
        pool_size: int = 8,
    ):
        self.default_config = default_config or CircuitBreakerConfig()
        self.configs = dict(configs or {})
        self._clock = clock
        self._metrics = metrics
        self._pool_size = pool_size
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(
                    name,
                    config=self.configs.get(name, self.default_config),
                    clock=self._clock,
                    metrics=self._metrics,
                    pool_size=self._pool_size,
                )
                self._breakers[name] = breaker
                logger.debug(f"Created circuit breaker for '{name}'")
            return breaker

    def find(self, name: str) -> Optional[CircuitBreaker]:
        with self._lock:
            return self._breakers.get(name)

    def get_all_metrics(self) -> dict[str, dict]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_metrics() for breaker in breakers}

    def get_health_status(self) -> dict:
        """Healthy iff no breaker is OPEN."""
        with self._lock:
            breakers = list(self._breakers.values())
        states = {breaker.name: breaker.get_state() for breaker in breakers}
        open_circuits = sorted(
            name for name, state in states.items() if state == CircuitState.OPEN
        )
        half_open = sorted(
            name for name, state in states.items() if state == CircuitState.HALF_OPEN
        )
        return {
            "healthy": not open_circuits,
            "open_circuits": open_circuits,
            "half_open_circuits": half_open,
            "total_circuits": len(states),
        }

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
        logger.info(f"Reset {len(breakers)} circuit breakers")

    def shutdown(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.shutdown()
