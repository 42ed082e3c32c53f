"""Retry and circuit-breaker protection for generation backend calls.

Every backend call made by a stage goes through :func:`call_with_retry`:

- the endpoint's circuit breaker is checked first, so a dead endpoint
  fails fast instead of stacking up timeouts;
- failures are retried with exponential backoff, bounded by the policy;
- the run's cancellation token is checked before each attempt and the
  backoff sleep wakes early when the run is cancelled.

Breaker states:
  CLOSED    -- normal operation, requests pass through
  OPEN      -- endpoint is down, requests fail immediately
  HALF_OPEN -- cooldown expired, one trial request allowed
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from ..exceptions import GenerationError, PipelineCancelledError
from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_FAILURE_THRESHOLD = 5    # consecutive failures before opening
DEFAULT_COOLDOWN_SECONDS = 30    # seconds to wait before a half-open trial call
MAX_ATTEMPTS_LIMIT = 20


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    """Raised when the circuit is open and requests are blocked."""

    def __init__(self, endpoint: str, retry_after: float):
        self.endpoint = endpoint
        self.retry_after = retry_after
        super().__init__(
            f"Circuit breaker OPEN for '{endpoint}'. "
            f"Retry after {retry_after:.0f}s."
        )


class CircuitBreaker:
    """Per-endpoint circuit breaker, shared by every run using that model.

    Thread-safe: the per-unit worker pool records outcomes concurrently.
    """

    def __init__(
        self,
        endpoint: str,
        failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
        cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.endpoint = endpoint
        self._failure_threshold = failure_threshold
        self._cooldown_seconds = cooldown_seconds
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = 0.0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def thresholds(self) -> tuple[int, float]:
        return self._failure_threshold, self._cooldown_seconds

    def reconfigure(self, failure_threshold: int, cooldown_seconds: float) -> None:
        """Apply new thresholds; the current state and failure count are kept."""
        with self._lock:
            self._failure_threshold = failure_threshold
            self._cooldown_seconds = cooldown_seconds
            if self._state == CircuitState.CLOSED and self._failure_count >= failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit %s: CLOSED -> OPEN (threshold lowered to %d)",
                    self.endpoint, failure_threshold,
                )

    def check(self) -> None:
        """Check if a request is allowed. Raises CircuitBreakerOpen if not."""
        with self._lock:
            if self._state != CircuitState.OPEN:
                return
            elapsed = self._clock() - self._opened_at
            if elapsed >= self._cooldown_seconds:
                self._state = CircuitState.HALF_OPEN
                logger.info("Circuit %s: OPEN -> HALF_OPEN (cooldown expired)", self.endpoint)
                return
            raise CircuitBreakerOpen(self.endpoint, self._cooldown_seconds - elapsed)

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                logger.info("Circuit %s: HALF_OPEN -> CLOSED", self.endpoint)
            self._state = CircuitState.CLOSED
            self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._failure_count += 1
            if self._state == CircuitState.HALF_OPEN:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning("Circuit %s: HALF_OPEN -> OPEN (trial call failed)", self.endpoint)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self._failure_threshold:
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()
                logger.warning(
                    "Circuit %s: CLOSED -> OPEN (%d consecutive failures)",
                    self.endpoint, self._failure_count,
                )


# ---------------------------------------------------------------------------
# Global registry: one breaker per model endpoint
# ---------------------------------------------------------------------------

_breakers: dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(
    endpoint: str,
    failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
    cooldown_seconds: float = DEFAULT_COOLDOWN_SECONDS,
) -> CircuitBreaker:
    """Get or create the circuit breaker for a model endpoint.

    An existing breaker asked for with different thresholds is reconfigured
    to them, so the latest settings win.
    """
    wanted = (failure_threshold, cooldown_seconds)
    with _registry_lock:
        breaker = _breakers.get(endpoint)
        if breaker is None:
            breaker = _breakers[endpoint] = CircuitBreaker(
                endpoint=endpoint,
                failure_threshold=failure_threshold,
                cooldown_seconds=cooldown_seconds,
            )
        elif breaker.thresholds != wanted:
            logger.info(
                "Circuit %s: thresholds %s -> %s", endpoint, breaker.thresholds, wanted,
            )
            breaker.reconfigure(failure_threshold, cooldown_seconds)
        return breaker


def reset_all() -> None:
    """Forget every breaker (used by tests and on configuration reload)."""
    with _registry_lock:
        _breakers.clear()


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff: ``base_delay * multiplier ** (attempt - 1)``."""

    max_attempts: int = 5
    base_delay: float = 2.0
    multiplier: float = 2.0
    max_delay: float = 20.0

    def __post_init__(self):
        if not 1 <= self.max_attempts <= MAX_ATTEMPTS_LIMIT:
            raise ValueError(f"max_attempts must be between 1 and {MAX_ATTEMPTS_LIMIT}")

    def delay_for(self, attempt: int) -> float:
        """Delay after the *attempt*-th failure (1-based)."""
        return min(self.max_delay, self.base_delay * self.multiplier ** (attempt - 1))


class RetryExhausted(GenerationError):
    """Every attempt failed; carries the attempt count and the last error."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        super().__init__(
            f"{label} failed after {attempts} attempt(s): {last_error}",
            retryable=False,
        )
        self.label = label
        self.attempts = attempts
        self.last_error = last_error


def _sleep_unless_cancelled(
    seconds: float,
    token: Optional[CancellationToken],
    sleep: Callable[[float], None],
) -> None:
    if token is None:
        sleep(seconds)
    elif token.wait(seconds):
        raise PipelineCancelledError()


def call_with_retry(
    fn: Callable[[], T],
    policy: RetryPolicy,
    label: str,
    breaker: Optional[CircuitBreaker] = None,
    token: Optional[CancellationToken] = None,
    sleep: Callable[[float], None] = time.sleep,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> tuple[T, int]:
    """
    Run *fn* until it succeeds or the policy is exhausted.

    Args:
        fn: The backend call (including response parsing/validation)
        policy: Attempt bound and backoff curve
        label: Name used in logs and errors, e.g. ``"chapter:cache_store"``
        breaker: Endpoint circuit breaker, or None to skip the check
        token: Run cancellation token, checked before every attempt
        sleep: Sleep function used when no token is given (injectable for tests)
        on_retry: Called with (attempt, error) after each failed attempt

    Returns:
        Tuple of (result, attempts used)

    Raises:
        PipelineCancelledError: If the run is cancelled between attempts
        RetryExhausted: If every attempt failed
    """
    last_error: Optional[BaseException] = None
    for attempt in range(1, policy.max_attempts + 1):
        if token is not None:
            token.raise_if_cancelled()
        try:
            if breaker is not None:
                breaker.check()
            result = fn()
        except CircuitBreakerOpen as e:
            last_error = e
            delay = min(policy.max_delay, max(policy.delay_for(attempt), e.retry_after))
        except PipelineCancelledError:
            raise
        except GenerationError as e:
            if breaker is not None:
                breaker.record_failure()
            last_error = e
            if not e.retryable:
                break
            delay = policy.delay_for(attempt)
        except Exception as e:
            if breaker is not None:
                breaker.record_failure()
            last_error = e
            delay = policy.delay_for(attempt)
        else:
            if breaker is not None:
                breaker.record_success()
            return result, attempt

        logger.warning(
            "%s attempt %d/%d failed: %s", label, attempt, policy.max_attempts, last_error,
        )
        if on_retry is not None:
            on_retry(attempt, last_error)
        if attempt < policy.max_attempts:
            if token is not None:
                _sleep_unless_cancelled(delay, token, sleep)
            else:
                sleep(delay)

    raise RetryExhausted(label, attempt, last_error)
