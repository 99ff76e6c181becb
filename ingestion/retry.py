"""
Retry manager: classifies failures and retries transient ones with backoff.

Classification:
- Transient: RetryableError subclasses, httpx timeouts/transport errors, and
  errors whose message looks like a network or 5xx failure
- Permanent: NonRetryableError subclasses (structure, schema, data format)
  and anything unrecognised

Complete unavailability (connection refused, DNS failure) means the source
service itself is down, so the first retry waits a long fixed interval instead
of the short exponential delay. A 429 carrying Retry-After waits at least that
long.
"""

import asyncio
import logging
from dataclasses import dataclass, asdict
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

import httpx

from core.config import settings
from core.exceptions import (
    ETLException,
    RetryableError,
    NonRetryableError,
    RateLimitError,
    SourceUnavailableError,
    RetryExhaustedError,
)

if TYPE_CHECKING:
    from ingestion.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_PATTERNS = (
    "network timeout",
    "connection refused",
    "econnreset",
    "econnrefused",
    "etimedout",
    "request timeout",
    "timed out",
    "socket hang up",
    "connection reset",
    "temporary failure",
    "503",
    "502",
    "504",
    "getaddrinfo enotfound",
)

UNAVAILABILITY_PATTERNS = (
    "connection refused",
    "econnrefused",
    "getaddrinfo enotfound",
    "name or service not known",
)


@dataclass
class RetryMetrics:
    total_attempts: int = 0
    successful_retries: int = 0
    failed_operations: int = 0


def is_transient_error(error: BaseException) -> bool:
    """Return True when the error is worth retrying."""
    if isinstance(error, NonRetryableError):
        return False
    if isinstance(error, RetryableError):
        return True
    if isinstance(error, (httpx.TimeoutException, httpx.TransportError)):
        return True
    if isinstance(error, ETLException):
        return False
    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_PATTERNS)


def is_unavailability_error(error: BaseException) -> bool:
    """Return True when the error means the whole source service is down."""
    if isinstance(error, SourceUnavailableError):
        return True
    if isinstance(error, httpx.ConnectError):
        return True
    message = str(error).lower()
    return any(pattern in message for pattern in UNAVAILABILITY_PATTERNS)


class RetryManager:
    """
    Execute async operations with classified retries.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        initial_delay: Base backoff in seconds; retry n waits initial_delay * 2**n
        unavailability_wait: Seconds to wait before the first retry when the
            source is completely unavailable
    """

    def __init__(
        self,
        max_retries: Optional[int] = None,
        initial_delay: Optional[float] = None,
        unavailability_wait: Optional[float] = None,
    ):
        self.max_retries = settings.MAX_RETRIES if max_retries is None else max_retries
        self.initial_delay = settings.INITIAL_RETRY_DELAY_SECONDS if initial_delay is None else initial_delay
        self.unavailability_wait = (
            settings.UNAVAILABILITY_WAIT_SECONDS if unavailability_wait is None else unavailability_wait
        )
        self.metrics = RetryMetrics()
        self.last_attempt_count = 0

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        return self.initial_delay * (2 ** attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "operation",
        is_complete_unavailability: Optional[bool] = None,
        cancel_token: Optional["CancellationToken"] = None,
    ) -> T:
        """
        Run `operation`, retrying transient failures.

        Args:
            operation: Zero-argument coroutine function
            description: Label used in log messages
            is_complete_unavailability: Force (True) or disable (False) the long
                unavailability wait; None detects it from the error
            cancel_token: Checked before every attempt; backoff sleeps wake
                early when it fires

        Raises:
            The original error for permanent failures
            ImportCancelledError when the token fires between attempts
            RetryExhaustedError once transient failures outlast max_retries
        """
        attempt = 0
        while True:
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            attempt += 1
            self.metrics.total_attempts += 1
            self.last_attempt_count = attempt
            try:
                result = await operation()
                if attempt > 1:
                    self.metrics.successful_retries += 1
                    logger.info(f"{description} succeeded after {attempt} attempts")
                return result

            except Exception as e:
                if not is_transient_error(e):
                    self.metrics.failed_operations += 1
                    logger.warning(
                        f"{description} failed with permanent error: {e}",
                        extra={"error_context": {"attempt": attempt, "error_type": type(e).__name__}}
                    )
                    raise

                retry_index = attempt - 1
                if retry_index >= self.max_retries:
                    self.metrics.failed_operations += 1
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise RetryExhaustedError(
                        f"{description} failed after {attempt} attempts",
                        context={"description": description},
                        original_exception=e,
                        attempts=attempt
                    )

                unavailable = (
                    is_unavailability_error(e)
                    if is_complete_unavailability is None
                    else is_complete_unavailability
                )
                if unavailable and retry_index == 0:
                    delay = self.unavailability_wait
                    logger.warning(
                        f"Source appears unavailable ({e}). Waiting {delay:.0f}s before retrying {description}"
                    )
                else:
                    delay = self.backoff_delay(retry_index)
                    if isinstance(e, RateLimitError) and e.retry_after:
                        # Never retry sooner than the source asked
                        delay = max(delay, e.retry_after)
                    logger.warning(
                        f"{description} failed with transient error: {e}. "
                        f"Retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries + 1})"
                    )
                if cancel_token is not None:
                    await cancel_token.sleep(delay)
                else:
                    await asyncio.sleep(delay)

    def get_metrics(self) -> dict:
        return asdict(self.metrics)

    def reset(self):
        self.metrics = RetryMetrics()
        self.last_attempt_count = 0
