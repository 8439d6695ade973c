#!/usr/bin/env python3
"""Bounded retry for unreliable remote calls (broker quotes, trade store, webhooks)."""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    RetryCallState,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from config import (
    REMOTE_RETRY_ATTEMPTS,
    REMOTE_RETRY_MAX_WAIT_SEC,
    REMOTE_RETRY_MIN_WAIT_SEC,
    REMOTE_RETRY_MULTIPLIER,
)

logger = logging.getLogger(__name__)

__all__ = ["RetryPolicy", "TransientRemoteError", "with_remote_retry"]


def _default_backoff() -> wait_base:
    return wait_exponential(
        multiplier=REMOTE_RETRY_MULTIPLIER,
        min=REMOTE_RETRY_MIN_WAIT_SEC,
        max=REMOTE_RETRY_MAX_WAIT_SEC,
    )


@dataclass(frozen=True)
class RetryPolicy:
    """max_attempts: stop after N tries. backoff: tenacity wait strategy."""
    max_attempts: int = REMOTE_RETRY_ATTEMPTS
    backoff: wait_base = field(default_factory=_default_backoff)


class TransientRemoteError(Exception):
    """Raised when a remote call is still failing after all retries."""
    def __init__(self, operation: str, last_error: BaseException | None = None):
        self.operation = operation
        self.last_error = last_error
        super().__init__(f"{operation} failed after retries: {last_error!r}")


def _log_before_sleep(operation: str) -> Callable[[RetryCallState], None]:
    def log_it(retry_state: RetryCallState):
        logger.warning(
            "Retrying %s in %.2fs (attempt %d failed: %r)",
            operation, retry_state.next_action.sleep if retry_state.next_action else 0,
            retry_state.attempt_number, retry_state.outcome.exception(),
        )
    return log_it


async def with_remote_retry(
    fn: Callable[[], Awaitable[Any]],
    operation: str,
    policy: RetryPolicy | None = None,
) -> Any:
    """Await fn() until it succeeds or policy.max_attempts is reached.

    Any Exception counts as retryable. Raises TransientRemoteError carrying
    the operation name and the last underlying error once retries are spent.
    """
    policy = policy or RetryPolicy()
    try:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_attempts),
            wait=policy.backoff,
            before_sleep=_log_before_sleep(operation),
            reraise=False,
        ):
            with attempt:
                return await fn()
    except RetryError as e:
        raise TransientRemoteError(operation, e.last_attempt.exception()) from e
