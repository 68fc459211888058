"""Bounded exponential-backoff retries and access-issue classification."""

import math
import random
import time
from dataclasses import dataclass

from queen.phase_gate.github_client import GitHubApiError
from queen.phase_gate.logger import log_event

RETRYABLE_STATUSES = {502, 503, 504}
RETRYABLE_NETWORK_CODES = {"ETIMEDOUT", "ECONNRESET"}
JITTER_MS = 500

ACCESS_RATE_LIMIT = "rate_limit"
ACCESS_FORBIDDEN = "forbidden"


class RetryBudgetExceeded(GitHubApiError):
    pass


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_ms: int = 1000
    budget_ms: int = 30000


def _header(error, name):
    headers = getattr(error, "headers", None) or {}
    for key, value in headers.items():
        if str(key).lower() == name and value is not None:
            return str(value)
    return None


def is_rate_limit_error(error) -> bool:
    if getattr(error, "status", None) not in (403, 429):
        return False
    if _header(error, "x-ratelimit-remaining") == "0" or _header(error, "retry-after"):
        return True
    return "rate limit" in str(error).lower()


def is_retryable_error(error) -> bool:
    if getattr(error, "status", None) in RETRYABLE_STATUSES:
        return True
    if is_rate_limit_error(error):
        return True
    return getattr(error, "code", None) in RETRYABLE_NETWORK_CODES


def is_not_found_error(error) -> bool:
    return getattr(error, "status", None) in (404, 410)


def classify_access_issue(error):
    """Map an error to a non-fatal access issue reason, or None."""
    status = getattr(error, "status", None)
    if is_rate_limit_error(error) or status == 429:
        return ACCESS_RATE_LIMIT
    if status == 403:
        return ACCESS_FORBIDDEN
    return None


def retry_after_ms(error):
    raw = _header(error, "retry-after")
    if raw is None:
        return None
    try:
        seconds = float(raw)
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return int(seconds * 1000)


def backoff_delay_ms(attempt, base_delay_ms, jitter=random.random):
    return base_delay_ms * (2 ** (attempt - 1)) + jitter() * JITTER_MS


def with_retry(fn, policy=None, label="", sleep=time.sleep, clock=time.monotonic, jitter=random.random):
    """Call fn(), retrying transient failures.

    Non-retryable errors propagate immediately. After max_attempts the last
    error propagates. A delay that would overrun the policy's total budget
    aborts the sequence with RetryBudgetExceeded.
    """
    policy = policy or RetryPolicy()
    started = clock()
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if not is_retryable_error(exc) or attempt >= policy.max_attempts:
                raise
            delay_ms = backoff_delay_ms(attempt, policy.base_delay_ms, jitter)
            hinted = retry_after_ms(exc)
            if hinted is not None:
                delay_ms = max(delay_ms, hinted)
            elapsed_ms = (clock() - started) * 1000
            if elapsed_ms + delay_ms > policy.budget_ms:
                log_event(
                    "retry",
                    f"{label} retry budget exhausted attempt={attempt} delay_ms={int(delay_ms)} "
                    f"elapsed_ms={int(elapsed_ms)} budget_ms={policy.budget_ms}",
                    level="warning",
                )
                raise RetryBudgetExceeded(
                    f"retry budget exhausted after {attempt} attempt(s): {exc}",
                    status=getattr(exc, "status", None),
                    headers=getattr(exc, "headers", None),
                    code=getattr(exc, "code", None),
                ) from exc
            log_event(
                "retry",
                f"{label} attempt {attempt} failed, retrying in {int(round(delay_ms))}ms: {exc}",
                level="warning",
            )
            sleep(delay_ms / 1000.0)
            attempt += 1
