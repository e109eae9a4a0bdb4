from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from punchsync.errors import UpstreamAuthError, UpstreamError
from punchsync.settings import get_settings

T = TypeVar("T")

logger = logging.getLogger("punchsync.retry")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 45.0

    def delay_for(self, attempt: int) -> float:
        # attempt is 1-based: 1 -> base, 2 -> 2*base, ...
        return min(self.max_delay_seconds, self.base_delay_seconds * (2 ** max(0, attempt - 1)))


def default_retry_policy() -> RetryPolicy:
    settings = get_settings()
    return RetryPolicy(
        max_attempts=max(1, int(settings.upstream_max_retries)),
        base_delay_seconds=max(0.0, float(settings.upstream_retry_base_seconds)),
        max_delay_seconds=max(0.0, float(settings.upstream_retry_max_seconds)),
    )


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    retry_on: tuple[type[BaseException], ...] = (UpstreamError,),
    give_up_on: tuple[type[BaseException], ...] = (UpstreamAuthError,),
    sleep: Callable[[float], None] = time.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or the attempt budget is spent.

    Exceptions listed in ``give_up_on`` are raised immediately even when they
    also match ``retry_on``; auth failures need a re-login, not a retry.
    The last exception is re-raised once ``policy.max_attempts`` is reached.
    """
    active_policy = policy or default_retry_policy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return operation()
        except give_up_on:
            raise
        except retry_on as exc:
            if attempt >= active_policy.max_attempts:
                logger.warning(
                    "retry_exhausted",
                    extra={"label": label, "attempts": attempt, "error": str(exc)[:500]},
                )
                raise
            delay = active_policy.delay_for(attempt)
            logger.info(
                "retry_scheduled",
                extra={
                    "label": label,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(exc)[:500],
                },
            )
            sleep(delay)
