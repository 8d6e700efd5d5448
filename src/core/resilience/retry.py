"""
Retry policy with exponential backoff.

One RetryConfig object describes how often and how long to back off; the
connection manager, the group coordinator and the fetcher all take their
delays from it and run their attempts through retry_async(), so retry
behaviour is uniform and testable in isolation.

Usage:
    policy = RetryConfig(max_attempts=5, base_delay=0.1, max_delay=2.0)

    async def attempt():
        return await manager.send(node_id, request, retry=False)

    response = await retry_async(attempt, policy, operation="offset_fetch")
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from core.errors.exceptions import is_retryable_error
from core.logging.utilities import log_exception, log_with_context

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for retry behavior.

    Delays are in seconds. Attempt numbers are 0-indexed: the delay before
    the first retry is ``get_delay(0) == base_delay``.
    """

    max_attempts: int = 3
    base_delay: float = 0.1
    multiplier: float = 2.0
    max_delay: float = 10.0

    # Fraction of the delay to randomize (+/-); 0 disables jitter
    jitter: float = 0.0

    def get_delay(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (0-indexed)."""
        delay = self.base_delay * (self.multiplier ** max(attempt, 0))
        delay = min(delay, self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = max(0.0, delay + random.uniform(-spread, spread))
        return delay

    def should_retry(self, exc: BaseException, attempt: int) -> bool:
        """Whether a failure on ``attempt`` (0-indexed) deserves another try."""
        return attempt + 1 < self.max_attempts and is_retryable_error(exc)

    @classmethod
    def from_ms(
        cls,
        max_attempts: int,
        base_delay_ms: int,
        max_delay_ms: int,
        multiplier: float = 2.0,
    ) -> "RetryConfig":
        """Build a policy from millisecond settings (the config's unit)."""
        return cls(
            max_attempts=max_attempts,
            base_delay=base_delay_ms / 1000.0,
            multiplier=multiplier,
            max_delay=max_delay_ms / 1000.0,
        )


DEFAULT_RETRY = RetryConfig()


async def retry_async(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY,
    operation: str = "operation",
    on_retry: Optional[Callable[[BaseException, int], Awaitable[None]]] = None,
    retry_on: Optional[Callable[[BaseException], bool]] = None,
) -> T:
    """
    Run ``func`` until it succeeds or the retry budget is spent.

    Non-retryable errors propagate immediately. The last error propagates
    once ``config.max_attempts`` attempts have failed.

    Args:
        func: Zero-argument coroutine factory
        config: Backoff policy
        operation: Name used in log messages
        on_retry: Optional hook awaited before each backoff sleep
        retry_on: Narrows which retryable errors are retried; others propagate
    """
    attempt = 0
    while True:
        try:
            return await func()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if retry_on is not None and not retry_on(e):
                raise
            if not config.should_retry(e, attempt):
                log_exception(
                    logger,
                    e,
                    f"{operation} failed",
                    level=logging.WARNING,
                    include_traceback=False,
                    operation=operation,
                    attempt=attempt + 1,
                )
                raise

            delay = config.get_delay(attempt)
            log_with_context(
                logger,
                logging.DEBUG,
                f"{operation} failed, retrying",
                operation=operation,
                attempt=attempt + 1,
                delay_ms=int(delay * 1000),
                error_message=str(e)[:200],
            )
            if on_retry is not None:
                await on_retry(e, attempt)
            await asyncio.sleep(delay)
            attempt += 1
