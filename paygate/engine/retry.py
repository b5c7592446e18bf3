"""
Provider call failures and exponential backoff for idempotent reads.

Only calls that are safe to repeat (status lookups) go through ``with_retry``.
Money-moving calls are never retried automatically: a timed-out charge has an
unknown outcome and must be reconciled with a later status check instead.
"""

import asyncio
import logging
from typing import Any, Callable

from paygate.errors import GatewayError

logger = logging.getLogger("paygate.retry")

MAX_RETRIES = 3
BASE_DELAY = 0.5
MAX_DELAY = 10.0


class ProviderError(GatewayError):
    """A call to the payment provider failed."""

    def __init__(self, message: str, status_code: int = 500, retriable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable
        self.audit = None  # raw exchange, attached by the adapter that made the call


class RateLimitError(ProviderError):
    """429 Too Many Requests from the payment provider."""

    def __init__(self, message: str = "Rate limited", retry_after: float | None = None):
        super().__init__(message, status_code=429, retriable=True)
        self.retry_after = retry_after


class PermanentError(ProviderError):
    """Non-retriable provider error (e.g. unknown object, rejected request)."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message, status_code=status_code, retriable=False)


def _backoff(error: ProviderError, delay: float) -> float:
    if isinstance(error, RateLimitError) and error.retry_after:
        return min(error.retry_after, MAX_DELAY)
    return min(delay, MAX_DELAY)


async def with_retry(
    func: Callable[..., Any],
    *args: Any,
    operation: str = "provider call",
    max_retries: int = MAX_RETRIES,
    **kwargs: Any,
) -> Any:
    """
    Await ``func(*args, **kwargs)``, retrying retriable ``ProviderError``s.

    ``operation`` names the call in log lines, e.g. "status check for <id>".
    Non-retriable errors and the final failure propagate unchanged.
    """
    delay = BASE_DELAY
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except ProviderError as e:
            if not e.retriable or attempt >= max_retries:
                if e.retriable:
                    logger.error("%s failed after %d attempts: %s", operation, attempt + 1, e)
                raise
            sleep_for = _backoff(e, delay)
            attempt += 1
            logger.warning(
                "%s failed (attempt %d/%d, HTTP %s): %s, retrying in %.1fs",
                operation, attempt, max_retries + 1, e.status_code, e, sleep_for,
            )
            await asyncio.sleep(sleep_for)
            delay *= 2
