"""
Decision Core — Retry with Backoff & Circuit Breaker

Wraps external calls (message delivery, oracle scoring) with:
  - Configurable retry on transient failures (timeout, connection, 5xx)
  - Exponential backoff between retries
  - Circuit breaker: N consecutive failures → stop accepting calls
  - Structured logging of every attempt

Design decisions:
  - Policies live in the coordinator config under protocol/oracle sections
  - Non-retryable errors (authentication, validation) propagate immediately
  - The sleep function is injectable so tests never wait

Usage:
    from engine.retry import call_with_retry, RetryPolicy

    policy = RetryPolicy(max_attempts=3, backoff_base=0.5)
    result = call_with_retry(lambda: transport.deliver(...), policy,
                             step_name="send:guardian_agent")
    # result.value is whatever the callable returned
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("decision_core.retry")


# ═══════════════════════════════════════════════════════════════════
# Retry Policy
# ═══════════════════════════════════════════════════════════════════

@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; actual delay = base * 2^attempt + jitter
    backoff_max: float = 10.0       # cap on delay between retries
    jitter: float = 0.2             # ±20% randomization on backoff

    # Circuit breaker
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset_seconds: float = 60.0

    retryable_exceptions: tuple = (
        TimeoutError,
        ConnectionError,
    )
    non_retryable_exceptions: tuple = ()
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


DEFAULT_POLICY = RetryPolicy()


def policy_from_config(cfg: dict[str, Any] | None, **overrides) -> RetryPolicy:
    """
    Build a RetryPolicy from a config section.

    Config format:
        protocol:
          max_attempts: 3
          backoff_base: 0.5
          backoff_max: 10.0
    """
    cfg = cfg or {}
    policy = RetryPolicy(
        max_attempts=int(cfg.get("max_attempts", DEFAULT_POLICY.max_attempts)),
        backoff_base=float(cfg.get("backoff_base", DEFAULT_POLICY.backoff_base)),
        backoff_max=float(cfg.get("backoff_max", DEFAULT_POLICY.backoff_max)),
        jitter=float(cfg.get("jitter", DEFAULT_POLICY.jitter)),
        circuit_breaker_threshold=int(cfg.get(
            "circuit_breaker_threshold", DEFAULT_POLICY.circuit_breaker_threshold)),
        circuit_breaker_reset_seconds=float(cfg.get(
            "circuit_breaker_reset_seconds", DEFAULT_POLICY.circuit_breaker_reset_seconds)),
    )
    for key, value in overrides.items():
        setattr(policy, key, value)
    return policy


# ═══════════════════════════════════════════════════════════════════
# Circuit Breaker
# ═══════════════════════════════════════════════════════════════════

class CircuitBreakerOpen(Exception):
    """Raised when circuit breaker is open (too many consecutive failures)."""
    pass


class CircuitBreaker:
    """
    Per-dependency circuit breaker.

    States:
      CLOSED  — normal operation, failures increment counter
      OPEN    — all calls rejected, waiting for reset timeout
      HALF_OPEN — one trial call allowed; success → CLOSED, failure → OPEN
    """

    def __init__(self, threshold: int = 5, reset_seconds: float = 60.0):
        self.threshold = threshold
        self.reset_seconds = reset_seconds
        self._failures = 0
        self._last_failure_time = 0.0
        self._state = "closed"  # closed | open | half_open
        self._lock = threading.Lock()

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> CircuitBreaker:
        return cls(
            threshold=policy.circuit_breaker_threshold,
            reset_seconds=policy.circuit_breaker_reset_seconds,
        )

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == "open":
                if time.time() - self._last_failure_time >= self.reset_seconds:
                    self._state = "half_open"
            return self._state

    def check(self):
        """Raise CircuitBreakerOpen if circuit is open."""
        if self.state == "open":
            raise CircuitBreakerOpen(
                f"Circuit breaker open: {self._failures} consecutive failures. "
                f"Resets in {self.reset_seconds - (time.time() - self._last_failure_time):.0f}s"
            )

    def record_success(self):
        with self._lock:
            self._failures = 0
            self._state = "closed"

    def record_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure_time = time.time()
            if self._failures >= self.threshold:
                self._state = "open"

    def reset(self):
        with self._lock:
            self._failures = 0
            self._state = "closed"
            self._last_failure_time = 0.0


# ═══════════════════════════════════════════════════════════════════
# Retry Result
# ═══════════════════════════════════════════════════════════════════

class RetriesExhausted(Exception):
    """Raised when every attempt failed with a retryable error."""

    def __init__(self, step_name: str, attempts: int, last_error: Exception):
        self.step_name = step_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{step_name}: {attempts} attempt(s) failed, last error: {last_error}"
        )


@dataclass
class RetryResult:
    """Result of a call with retry."""
    value: Any
    attempts: int                     # total attempts made (1 = first try succeeded)
    total_latency: float              # total wall time including retries
    attempt_log: list[dict[str, Any]] = field(default_factory=list)


# ═══════════════════════════════════════════════════════════════════
# Retry Logic
# ═══════════════════════════════════════════════════════════════════

def is_retryable(error: Exception, policy: RetryPolicy) -> bool:
    """Determine if an exception is retryable."""
    if policy.non_retryable_exceptions and isinstance(error, policy.non_retryable_exceptions):
        return False
    if isinstance(error, policy.retryable_exceptions):
        return True

    err_str = str(error).lower()

    # Auth errors are NOT retryable
    if "401" in err_str or "403" in err_str or "unauthorized" in err_str or "forbidden" in err_str:
        return False

    if "429" in err_str or "rate limit" in err_str or "too many requests" in err_str:
        return True

    for code in policy.retryable_status_codes:
        if str(code) in err_str:
            return True

    if any(term in err_str for term in ["timeout", "timed out", "connection", "unavailable"]):
        return True

    return False


def calculate_backoff(attempt: int, policy: RetryPolicy) -> float:
    """Calculate backoff delay with jitter."""
    base_delay = policy.backoff_base * (2 ** attempt)
    capped = min(base_delay, policy.backoff_max)
    jitter_range = capped * policy.jitter
    actual = capped + random.uniform(-jitter_range, jitter_range)
    return max(0.0, actual)


def call_with_retry(
    fn: Callable[[], Any],
    policy: RetryPolicy | None = None,
    step_name: str = "",
    breaker: CircuitBreaker | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
) -> RetryResult:
    """
    Call fn with retry, backoff, and an optional circuit breaker.

    Args:
        fn:        Zero-argument callable performing one attempt
        policy:    RetryPolicy (or default)
        step_name: For logging
        breaker:   Circuit breaker scoped to the dependency, if any
        sleep_fn:  Sleep function (injectable for testing)

    Returns:
        RetryResult with the successful value

    Raises:
        CircuitBreakerOpen: If the breaker is open
        RetriesExhausted: If every attempt failed with a retryable error
        Exception: Any non-retryable error, unchanged
    """
    if policy is None:
        policy = DEFAULT_POLICY
    if breaker is not None:
        breaker.check()

    attempt_log = []
    last_error: Exception | None = None
    total_t0 = time.time()

    for attempt in range(policy.max_attempts):
        entry: dict[str, Any] = {"attempt": attempt + 1, "step": step_name}
        t0 = time.time()
        try:
            value = fn()
        except Exception as e:
            entry["latency_s"] = round(time.time() - t0, 3)
            entry["error"] = str(e)[:200]
            last_error = e

            if not is_retryable(e, policy):
                entry["status"] = "non_retryable"
                attempt_log.append(entry)
                logger.error(
                    "Non-retryable error (step=%s): %s", step_name, str(e)[:100],
                )
                raise

            entry["status"] = "retryable_error"
            attempt_log.append(entry)
            logger.warning(
                "Retryable error (attempt %d/%d, step=%s): %s",
                attempt + 1, policy.max_attempts, step_name, str(e)[:100],
            )
            if attempt < policy.max_attempts - 1:
                delay = calculate_backoff(attempt, policy)
                entry["backoff_s"] = round(delay, 3)
                sleep_fn(delay)
            continue

        entry["latency_s"] = round(time.time() - t0, 3)
        entry["status"] = "success"
        attempt_log.append(entry)
        if breaker is not None:
            breaker.record_success()
        logger.debug(
            "Call succeeded (attempt %d, step=%s)", attempt + 1, step_name,
        )
        return RetryResult(
            value=value,
            attempts=attempt + 1,
            total_latency=time.time() - total_t0,
            attempt_log=attempt_log,
        )

    if breaker is not None:
        breaker.record_failure()
    logger.error(
        "All retry attempts exhausted (step=%s, attempts=%d)",
        step_name, len(attempt_log),
    )
    raise RetriesExhausted(step_name, len(attempt_log), last_error)
