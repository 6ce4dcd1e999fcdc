from __future__ import annotations

import asyncio
from functools import wraps
import logging
import time
from typing import TYPE_CHECKING, ParamSpec, TypeVar

from .exceptions import RetryError, RetryStatistics
from .strategies import RetryStrategy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from nested_tree.core.settings import TreeSettings

logger = logging.getLogger(__name__)

P = ParamSpec("P")
R = TypeVar("R")


def retry(
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
    jitter_range: tuple[float, float] = (0.5, 1.5),
    exceptions: tuple[type[Exception], ...] = (Exception,),
    retry_if: Callable[[Exception], bool] | None = None,
    stop_after_delay: float | None = None,
    on_retry: Callable[[Exception, int], None] | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Retry an async callable with exponential backoff and jitter.

    Args:
        max_attempts: Total attempts including the first call
        initial_delay: Delay before the second attempt, in seconds
        max_delay: Upper bound for a single delay
        exponential_base: Growth factor of the delay per attempt
        jitter: Multiply each delay by a random factor from ``jitter_range``
        jitter_range: Bounds of the jitter factor
        exceptions: Exception types that trigger a retry
        retry_if: Predicate overriding ``exceptions``
        stop_after_delay: Give up once this many seconds have elapsed
        on_retry: Called with (exception, attempt) before sleeping

    Raises:
        RetryError: When every attempt failed with a retryable exception
    """
    strategy = RetryStrategy(
        max_attempts=max_attempts,
        initial_delay=initial_delay,
        max_delay=max_delay,
        exponential_base=exponential_base,
        jitter=jitter,
        jitter_range=jitter_range,
        exceptions=exceptions,
        retry_if=retry_if,
        stop_after_delay=stop_after_delay,
    )
    return _with_strategy(strategy, on_retry)


def retry_on_conflict(
    settings: TreeSettings | None = None,
    *,
    on_retry: Callable[[Exception, int], None] | None = None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Retry a whole tree mutation when it hits ConcurrencyConflictError.

    The decorated callable must re-read the nodes it mutates on every call;
    handles left over from a failed attempt hold expired ranges.
    """
    if settings is None:
        from nested_tree.core.settings import get_tree_settings

        settings = get_tree_settings()
    return _with_strategy(RetryStrategy.for_conflicts(settings), on_retry)


def _with_strategy(
    strategy: RetryStrategy,
    on_retry: Callable[[Exception, int], None] | None,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    max_attempts = strategy.max_attempts

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def async_wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            statistics = RetryStatistics(start_time=time.monotonic())

            for attempt in range(max_attempts):
                try:
                    result = await func(*args, **kwargs)
                    if statistics.attempts > 0:
                        logger.info(
                            f"{func.__name__} succeeded after {attempt + 1} attempts",
                            extra={"function": func.__name__, "attempts": attempt + 1},
                        )
                    return result
                except Exception as e:
                    if not strategy.should_retry(e):
                        raise

                    statistics.exceptions.append(type(e).__name__)
                    elapsed = time.monotonic() - statistics.start_time
                    exhausted = attempt >= max_attempts - 1
                    timed_out = strategy.stop_after_delay is not None and elapsed >= strategy.stop_after_delay
                    if exhausted or timed_out:
                        statistics.end_time = time.monotonic()
                        logger.error(
                            f"All retry attempts exhausted for {func.__name__}",
                            extra={
                                "function": func.__name__,
                                "attempts": attempt + 1,
                                "last_exception": str(e),
                                "total_delay": statistics.total_delay,
                                "duration": statistics.duration,
                            },
                        )
                        raise RetryError(e, attempt + 1, statistics) from e

                    delay = strategy.calculate_delay(attempt)
                    statistics.attempts += 1
                    statistics.total_delay += delay

                    logger.warning(
                        f"Retrying {func.__name__} after {delay:.2f}s (attempt {attempt + 1}/{max_attempts})",
                        extra={
                            "function": func.__name__,
                            "attempt": attempt + 1,
                            "max_attempts": max_attempts,
                            "delay": delay,
                            "exception": str(e),
                        },
                    )

                    if on_retry:
                        on_retry(e, attempt + 1)

                    await asyncio.sleep(delay)

            msg = "Retry logic error: exhausted all attempts"
            raise RuntimeError(msg)

        return async_wrapper

    return decorator
