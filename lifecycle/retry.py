"""
Caseflow — Bounded Retry at the Caller Boundary

The transition engine never retries internally. Callers (CLI, API,
scheduled jobs) wrap calls in ``call_with_retry``, which re-invokes the
operation only for errors flagged ``retryable``. Because a transition
keyed by the same signature is idempotent, re-invoking it after a
rollback is safe.

Usage:
    from lifecycle.retry import RetryPolicy, call_with_retry

    result = call_with_retry(
        engine.process_transition, case, "Assessment", "Adjudication",
        policy=RetryPolicy(max_attempts=4),
    )
"""

from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from lifecycle.errors import LifecycleError

logger = logging.getLogger("caseflow.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff_base: float = 0.5       # seconds; delay = base * 2^attempt ± jitter
    backoff_max: float = 10.0
    jitter: float = 0.2             # ±20%

    def compute_delay(self, attempt: int) -> float:
        """Delay after the given 0-indexed failed attempt."""
        capped = min(self.backoff_base * (2 ** attempt), self.backoff_max)
        jitter_range = capped * self.jitter
        return max(0.0, capped + random.uniform(-jitter_range, jitter_range))

    @staticmethod
    def from_dict(data: dict[str, Any] | None) -> RetryPolicy:
        data = data or {}
        return RetryPolicy(
            max_attempts=int(data.get("max_attempts", 3)),
            backoff_base=float(data.get("backoff_base", 0.5)),
            backoff_max=float(data.get("backoff_max", 10.0)),
            jitter=float(data.get("jitter", 0.2)),
        )


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, LifecycleError) and error.retryable


def call_with_retry(
    fn: Callable[..., T],
    *args: Any,
    policy: RetryPolicy | None = None,
    sleep_fn: Callable[[float], None] = time.sleep,
    **kwargs: Any,
) -> T:
    """
    Call ``fn`` until it succeeds, raises a non-retryable error, or
    ``policy.max_attempts`` is exhausted. The last error is re-raised.
    """
    policy = policy or RetryPolicy()
    for attempt in range(policy.max_attempts):
        try:
            return fn(*args, **kwargs)
        except LifecycleError as e:
            if not e.retryable or attempt == policy.max_attempts - 1:
                raise
            delay = policy.compute_delay(attempt)
            logger.warning(
                "Retryable %s (attempt %d/%d), retrying in %.2fs: %s",
                type(e).__name__, attempt + 1, policy.max_attempts, delay, e,
            )
            sleep_fn(delay)
    raise ValueError("RetryPolicy.max_attempts must be at least 1")
