from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, TypeVar

from attachflow.core.config import Settings, get_settings

from .errors import DeadlineExceededError, FetchError, RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

Operation = Callable[[], Awaitable[T]]
RetryHook = Callable[[int, Exception], None]
SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryOptions:
    max_retries: int = 3
    initial_delay_ms: float = 1000
    max_delay_ms: float = 10_000
    backoff_multiplier: float = 2

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1.")
        if self.initial_delay_ms < 0 or self.max_delay_ms < 0:
            raise ValueError("Retry delays cannot be negative.")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be at least 1.")

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> RetryOptions:
        settings = settings or get_settings()
        return cls(
            max_retries=settings.retry_max_retries,
            initial_delay_ms=settings.retry_initial_delay_ms,
            max_delay_ms=settings.retry_max_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
        )


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    data: T | None = None
    error: Any = None


def backoff_delay_ms(attempt_index: int, options: RetryOptions) -> float:
    delay = options.initial_delay_ms * (options.backoff_multiplier**attempt_index)
    return min(delay, options.max_delay_ms)


def _unpack_fetch_result(result: Any) -> Any:
    if isinstance(result, FetchResult):
        data, error = result.data, result.error
    elif isinstance(result, tuple) and len(result) == 2:
        data, error = result
    else:
        raise TypeError(f"Expected a FetchResult or (data, error) pair, got {type(result).__name__}.")

    if error is not None:
        message = getattr(error, "message", None) or str(error)
        raise FetchError(message, error=error)
    if data is None:
        raise FetchError("Operation returned no data.")
    return data


class RetryPolicy:
    """Bounded retries with exponential backoff around an async operation.

    Cancellation is never retried: ``asyncio.CancelledError`` propagates as-is
    from the operation or from a backoff wait.
    """

    def __init__(
        self,
        options: RetryOptions | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
    ):
        self.options = options or RetryOptions.from_settings()
        self._sleep = sleep

    async def execute(
        self,
        operation: Operation[T],
        options: RetryOptions | None = None,
        *,
        on_retry: RetryHook | None = None,
    ) -> T:
        opts = options or self.options
        last_error: Exception | None = None

        for attempt_index in range(opts.max_retries):
            try:
                return await operation()
            except Exception as exc:
                last_error = exc

            if attempt_index + 1 >= opts.max_retries:
                logger.warning("Giving up after %d attempt(s): %s", opts.max_retries, last_error)
                raise RetryExhaustedError(opts.max_retries, last_error) from last_error

            delay_ms = backoff_delay_ms(attempt_index, opts)
            logger.warning(
                "Attempt %d/%d failed (%s); retrying in %.0f ms.",
                attempt_index + 1,
                opts.max_retries,
                last_error,
                delay_ms,
            )
            if on_retry is not None:
                on_retry(attempt_index, last_error)
            await self._sleep(delay_ms / 1000)

        raise ValueError("max_retries must be at least 1.")

    async def execute_result(
        self,
        operation: Callable[[], Awaitable[FetchResult[T] | tuple[T | None, Any]]],
        options: RetryOptions | None = None,
        *,
        on_retry: RetryHook | None = None,
    ) -> T:
        async def _normalized() -> T:
            return _unpack_fetch_result(await operation())

        return await self.execute(_normalized, options, on_retry=on_retry)


def _consume_outcome(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


async def run_with_deadline(awaitable: Awaitable[T], timeout_seconds: float) -> T:
    """Race ``awaitable`` against a timer.

    A losing operation is left running and its eventual outcome is discarded.
    """
    task = asyncio.ensure_future(awaitable)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if task in done:
        return task.result()
    task.add_done_callback(_consume_outcome)
    raise DeadlineExceededError(timeout_seconds)
