"""Bounded retry with deterministic exponential backoff.

    result = run_with_retry(lambda: session.get(url, timeout=5), policy)

Attempts are sequential. Between attempts the *calling thread* sleeps
``min(initial_delay * multiplier ** (attempt - 1), max_delay)`` seconds; there
is no sleep after the final attempt and no jitter, so the total wait for N
permanently failing attempts is exactly the sum of the first N-1 delays.

Outcome on failure:
  - non-retryable error        → the original exception is re-raised unchanged
  - retryable on last attempt  → RetryExhaustedError(attempts, last_error)
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Callable, TypeVar

from agency_gateway.core.exceptions import RetryExhaustedError
from agency_gateway.integrations.types import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_POLICY = RetryPolicy()


def error_signal(error: BaseException) -> str | None:
    """Return the classification signal carried by an error, if any.

    A named transport code (``error.code``) wins over an HTTP status
    (``error.status`` / ``error.status_code``).
    """
    code = getattr(error, "code", None)
    if isinstance(code, str) and code:
        return code
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    if status:
        return str(status)
    return None


def is_retryable(error: BaseException, retryable_signals) -> bool:
    """True if the error's code or HTTP status is in the retryable set."""
    code = getattr(error, "code", None)
    if code is not None and str(code) in retryable_signals:
        return True
    status = getattr(error, "status", None) or getattr(error, "status_code", None)
    return status is not None and str(status) in retryable_signals


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
    label: str | None = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Args:
        operation: Zero-argument callable; each call is one attempt.
        policy:    RetryPolicy; defaults apply when None.
        sleep:     Blocking wait function (injected in tests to record delays).
        label:     Optional name used in retry log lines (partner / endpoint).

    Returns:
        Whatever ``operation`` returns on the first successful attempt.

    Raises:
        RetryExhaustedError: every attempt failed with a retryable error.
        Exception: the original error, if it was not retryable.
    """
    policy = policy or DEFAULT_POLICY
    attempt = 0

    while True:
        attempt += 1
        try:
            return operation()
        except Exception as exc:
            if not is_retryable(exc, policy.retryable_signals):
                raise
            if attempt >= policy.max_attempts:
                raise RetryExhaustedError(attempt, exc) from exc

            delay = policy.delay_for(attempt)
            code = error_signal(exc)
            logger.warning(
                "Attempt %d/%d failed code=%s%s; retrying in %.3fs",
                attempt, policy.max_attempts, code,
                f" target={label}" if label else "", delay,
                extra={"attempt": attempt, "error_code": code},
            )
            sleep(delay)


def with_retry(
    policy: RetryPolicy | None = None,
    *,
    sleep: Callable[[float], None] = time.sleep,
):
    """Decorator form of run_with_retry for functions and methods.

    ``sleep`` is the wait between attempts (a recorder in tests).

    Usage:
        @with_retry(RetryPolicy(max_attempts=2))
        def fetch_rates(self):
            ...
    """

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return run_with_retry(
                lambda: fn(*args, **kwargs), policy, sleep=sleep, label=fn.__qualname__
            )

        return wrapper

    return decorator
