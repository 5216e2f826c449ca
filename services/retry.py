"""
Retry with exponential backoff for any fallible async operation.

Every search and LLM call in the pipeline goes through with_retry so transient
provider failures do not cost a whole article.
"""
import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar
from config import Settings
from errors import RetryExhaustedError
from utils.cancellation import CancellationToken

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt_index: int, initial_delay: float, max_delay: float, multiplier: float) -> float:
    """Delay before retry number attempt_index + 1 (attempt_index starts at 0)."""
    return min(initial_delay * (multiplier ** attempt_index), max_delay)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 10.0,
    backoff_multiplier: float = 2.0,
    cancel: Optional[CancellationToken] = None,
    context: str = "",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run `operation` up to max_attempts times.
    A failure observed after the token has fired is re-raised as-is without
    waiting. After the last attempt fails, RetryExhaustedError is raised with
    the original error chained as __cause__.
    """
    last_error: Optional[BaseException] = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if cancel is not None and cancel.cancelled:
                raise
            last_error = e
            if attempt + 1 >= max_attempts:
                break
            delay = backoff_delay(attempt, initial_delay, max_delay, backoff_multiplier)
            logger.warning(
                f"{context or 'Operation'} failed (attempt {attempt + 1}/{max_attempts}): {e}; "
                f"retrying in {delay:.1f}s"
            )
            await sleep(delay)

    raise RetryExhaustedError(context, max_attempts, last_error) from last_error


def retry_kwargs(cfg: Settings, cancel: Optional[CancellationToken], context: str, sleep=asyncio.sleep) -> dict:
    """Keyword arguments for with_retry taken from the settings."""
    return {
        "max_attempts": cfg.retry_max_attempts,
        "initial_delay": cfg.retry_initial_delay_sec,
        "max_delay": cfg.retry_max_delay_sec,
        "backoff_multiplier": cfg.retry_backoff_multiplier,
        "cancel": cancel,
        "context": context,
        "sleep": sleep,
    }
