"""
Bounded retries for infrastructure calls.
"""

import logging
import time
from typing import Callable, Optional, Tuple, Type, TypeVar

from .exceptions import UnavailableError
from .models import RetryPolicy

logger = logging.getLogger("approvalflow.retry")

T = TypeVar("T")


def call_with_retry(
    func: Callable[[], T],
    *,
    policy: Optional[RetryPolicy] = None,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds or the policy is exhausted.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. Exhaustion raises ``UnavailableError``.
    """
    policy = policy or RetryPolicy()
    attempts = max(1, policy.max_retries)

    last_error: Optional[BaseException] = None
    for attempt in range(attempts):
        try:
            return func()
        except retry_on as e:
            last_error = e
            logger.warning("%s attempt %d failed: %s", description, attempt + 1, e)

        if attempt < attempts - 1:
            sleep(policy.delay_for(attempt))

    logger.error("%s failed after %d attempts", description, attempts)
    raise UnavailableError(f"{description} unavailable after {attempts} attempts") from last_error
