"""Named retry policies wrapping connectivity and per-message fetch calls."""

from __future__ import annotations

import imaplib
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential_jitter,
)

from ..core.config import RetrySettings
from ..core.interfaces import (
    AuthenticationError,
    ConnectivityError,
    TransientFetchError,
)

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

ExceptionTypes = tuple[type[BaseException], ...]

CONNECTIVITY_ERRORS: ExceptionTypes = (
    ConnectivityError,
    TimeoutError,
    OSError,
    imaplib.IMAP4.abort,
)
FETCH_ERRORS: ExceptionTypes = (
    TransientFetchError,
    TimeoutError,
    OSError,
    imaplib.IMAP4.abort,
)


class RetryPolicy:
    """Bounded exponential backoff with jitter for one class of operation."""

    def __init__(
        self,
        name: str,
        *,
        retry_on: ExceptionTypes,
        never_retry: ExceptionTypes = (),
        retries: int = 3,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: float = 0.5,
    ) -> None:
        """Describe which failures are retried and how long to back off."""
        if not name:
            raise ValueError("Retry policy name is required")
        if retries < 0:
            raise ValueError("retries must not be negative")
        self.name = name
        self.retries = retries
        self._retry_on = retry_on
        self._never_retry = never_retry
        self._initial_delay = initial_delay
        self._max_delay = max_delay
        self._jitter = jitter

    def should_retry(self, exc: BaseException) -> bool:
        """Return ``True`` if ``exc`` is a transient failure for this policy."""
        if isinstance(exc, self._never_retry):
            return False
        return isinstance(exc, self._retry_on)

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` until it succeeds or the attempts are exhausted."""
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            wait=wait_exponential_jitter(
                multiplier=self._initial_delay,
                max=self._max_delay,
                jitter=self._jitter,
            ),
            retry=retry_if_exception(self.should_retry),
            before_sleep=self._log_retry,
            reraise=True,
        )
        return await retrying(operation)

    def _log_retry(self, state: RetryCallState) -> None:
        exc = state.outcome.exception() if state.outcome else None
        delay = state.next_action.sleep if state.next_action else 0.0
        LOGGER.warning(
            "Retry %s for %s after %.2f seconds: %s",
            state.attempt_number,
            self.name,
            delay,
            exc,
        )


def connectivity_policy(
    settings: RetrySettings, name: str = "IMAP connectivity"
) -> RetryPolicy:
    """Policy for connect/authenticate calls; rejected credentials fail fast."""
    return RetryPolicy(
        name,
        retry_on=CONNECTIVITY_ERRORS,
        never_retry=(AuthenticationError,),
        retries=settings.connectivity_retries,
        initial_delay=settings.connectivity_initial_delay_seconds,
        max_delay=settings.max_delay_seconds,
        jitter=settings.jitter_seconds,
    )


def fetch_policy(
    settings: RetrySettings, name: str = "IMAP message fetch"
) -> RetryPolicy:
    """Policy for retrieving a single message body."""
    return RetryPolicy(
        name,
        retry_on=FETCH_ERRORS,
        never_retry=(AuthenticationError,),
        retries=settings.fetch_retries,
        initial_delay=settings.fetch_initial_delay_seconds,
        max_delay=settings.max_delay_seconds,
        jitter=settings.jitter_seconds,
    )


__all__ = [
    "CONNECTIVITY_ERRORS",
    "FETCH_ERRORS",
    "RetryPolicy",
    "connectivity_policy",
    "fetch_policy",
]
