"""
Timeout + bounded retry shared by text providers and transcribers.

Timeouts use asyncio.wait_for, so the in-flight call is cancelled when the
timer wins; its result can never arrive late.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    timeout: Optional[float] = 30.0

    def delay_for(self, attempt: int) -> float:
        """Exponential backoff: base × 2^(attempt−1)."""
        return self.base_delay * (2 ** (attempt - 1))


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    is_retryable: Callable[[BaseException], bool],
    on_timeout: Callable[[], Exception],
    label: str = "call",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to policy.max_attempts times.

    Args:
        operation: zero-arg coroutine factory; called once per attempt
        is_retryable: decides whether an error is worth another attempt
        on_timeout: builds the error raised when an attempt times out

    Raises:
        The last error once attempts are exhausted or the error is not retryable.
    """
    last_error: Optional[BaseException] = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            if policy.timeout:
                return await asyncio.wait_for(operation(), timeout=policy.timeout)
            return await operation()
        except asyncio.TimeoutError as e:
            error = on_timeout()
            error.__cause__ = e
        except Exception as e:
            error = e

        last_error = error
        if attempt < policy.max_attempts and is_retryable(error):
            delay = policy.delay_for(attempt)
            logger.warning(f"{label} attempt {attempt}/{policy.max_attempts} failed ({error}); retrying in {delay:.2f}s")
            await sleep(delay)
            continue
        raise error

    raise last_error
