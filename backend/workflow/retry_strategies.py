"""Retry strategies for external calls made by step runners.

Delays follow exponential backoff:

    delay(attempt) = base_delay * backoff_factor ** (attempt - 1), capped at max_delay

A server-provided retry-after hint replaces the computed delay (still capped).
Only transient failures are retried: transport errors, timeouts, HTTP 5xx and 429.

Usage:
    strategy = RetryStrategy.from_node_config(node.config, settings)
    result = await execute_with_retry(call, strategy, on_retry=log_retry)
"""

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional

import httpx
import structlog

from core.exceptions import NonRetryableHttpError, RetryableTransportError

logger = structlog.get_logger(__name__)


def _as_number(value: Any, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass
class RetryStrategy:
    """Backoff policy for one node's external call.

    ``max_retries`` counts retries after the first attempt, so a call is
    attempted at most ``max_retries + 1`` times.
    """

    max_retries: int = 3
    base_delay: float = 1.0
    backoff_factor: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def none(cls) -> "RetryStrategy":
        """No retries, fail on the first error."""
        return cls(max_retries=0)

    @classmethod
    def from_node_config(
        cls,
        config: dict,
        settings: Any = None,
        default_max_retries: int = 3,
    ) -> "RetryStrategy":
        """Build a strategy from a node's config.

        Reads ``maxRetries``, ``retryOnFailure``, ``retryDelay`` (seconds),
        ``backoffFactor`` and ``maxDelay``; anything missing falls back to
        the engine settings.
        """
        base_delay = getattr(settings, "RETRY_BASE_DELAY", 1.0)
        backoff = getattr(settings, "RETRY_BACKOFF_FACTOR", 2.0)
        max_delay = getattr(settings, "RETRY_MAX_DELAY", 30.0)

        if config.get("retryOnFailure") is False:
            return cls.none()

        max_retries = int(_as_number(config.get("maxRetries"), default_max_retries))
        return cls(
            max_retries=max(0, max_retries),
            base_delay=max(0.0, _as_number(config.get("retryDelay"), base_delay)),
            backoff_factor=max(1.0, _as_number(config.get("backoffFactor"), backoff)),
            max_delay=max(0.0, _as_number(config.get("maxDelay"), max_delay)),
        )

    def compute_delay(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Compute the delay before retry number ``attempt`` (1-based)."""
        if retry_after is not None and retry_after >= 0:
            return round(min(float(retry_after), self.max_delay), 3)

        delay = self.base_delay * (self.backoff_factor ** (attempt - 1))
        return round(min(delay, self.max_delay), 3)

    def should_retry(self, attempt: int, error: Optional[Exception] = None) -> bool:
        """Decide whether a failed attempt may be retried.

        ``attempt`` is the number of attempts already made.
        """
        if attempt > self.max_retries:
            return False
        if error is None:
            return True
        return is_retryable(error)


def is_retryable(error: BaseException) -> bool:
    """Classify an exception as transient."""
    if isinstance(error, NonRetryableHttpError):
        return False
    if isinstance(error, RetryableTransportError):
        return True
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    if isinstance(error, httpx.TransportError):
        return True
    return False


def retry_after_hint(error: BaseException) -> Optional[float]:
    return getattr(error, "retry_after", None)


async def execute_with_retry(
    func: Callable,
    strategy: RetryStrategy,
    *args,
    on_retry: Optional[Callable] = None,
    **kwargs,
):
    """Execute a function with the given retry strategy.

    Args:
        func: Async callable to execute.
        strategy: RetryStrategy instance.
        on_retry: Optional callback(attempt, error, delay) called before each retry.

    Returns:
        The result of func(*args, **kwargs).

    Raises:
        The last exception if all retries are exhausted or the error is not retryable.
    """
    attempt = 0

    while True:
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            attempt += 1

            if not strategy.should_retry(attempt, e):
                raise

            delay = strategy.compute_delay(attempt, retry_after_hint(e))

            if on_retry:
                try:
                    outcome = on_retry(attempt, e, delay)
                    if inspect.isawaitable(outcome):
                        await outcome
                except Exception as callback_error:
                    logger.warning("Retry callback failed", error=str(callback_error))

            await asyncio.sleep(delay)
