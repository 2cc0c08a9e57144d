from __future__ import annotations

import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple, Type, TypeVar

from ..errors import RetriesExhausted, UpstreamQuotaExceeded, UpstreamServerError
from ..logging import get_logger

LOG = get_logger("retry")

T = TypeVar("T")


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff for one family of retryable errors.

    delay(n) = base_delay * 2 ** (n - 1), plus uniform(0, base_delay) when
    jitter is enabled. ``n`` is the number of the attempt that just failed.
    """

    retry_on: Tuple[Type[BaseException], ...]
    base_delay: float = 1.0
    jitter: bool = False

    def matches(self, exc: BaseException) -> bool:
        return isinstance(exc, self.retry_on)

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        delay = self.base_delay * (2 ** max(0, attempt - 1))
        if self.jitter:
            delay += (rng or random).uniform(0, self.base_delay)
        return delay


def default_policies(base_delay: float = 1.0) -> Tuple[BackoffPolicy, ...]:
    """Quota errors back off with jitter; server and transport errors without."""
    return (
        BackoffPolicy(retry_on=(UpstreamQuotaExceeded,), base_delay=base_delay, jitter=True),
        BackoffPolicy(retry_on=(UpstreamServerError,), base_delay=base_delay, jitter=False),
    )


def call_with_backoff(
    fn: Callable[[], T],
    *,
    operation: str,
    max_attempts: int = 4,
    policies: Sequence[BackoffPolicy] = (),
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
) -> T:
    """Run ``fn`` until it succeeds or attempts run out.

    Exceptions no policy claims propagate immediately. When every attempt
    failed with a retryable error, RetriesExhausted is raised from the last one.
    """
    policies = tuple(policies) or default_policies()
    attempts = max(1, int(max_attempts))
    last_error: Optional[BaseException] = None

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except Exception as exc:
            policy = next((p for p in policies if p.matches(exc)), None)
            if policy is None:
                raise
            last_error = exc
            if attempt >= attempts:
                break
            delay = policy.delay_for(attempt, rng)
            LOG.warning(
                "%s failed (attempt %d/%d): %s; retrying in %.2fs",
                operation,
                attempt,
                attempts,
                exc,
                delay,
            )
            sleep(delay)

    LOG.error("%s gave up after %d attempts", operation, attempts)
    raise RetriesExhausted(operation, attempts, last_error) from last_error
