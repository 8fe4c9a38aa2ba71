from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, TypeVar

from as_built.exceptions import DeadlineExceededError
from as_built.llm import LlmError, LlmErrorCode
from as_built.logging import logger

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY = 2.0


def deadline_message(seconds: float) -> str:
    """User-facing text for a scan that ran out of time."""
    return f"Scan exceeded its {seconds:g}-second execution deadline."


class Deadline:
    """Wall-clock budget shared by every suspension point of a scan."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.seconds = seconds
        self._clock = clock
        self._expires_at = clock() + seconds

    def remaining(self) -> float:
        """Seconds left, never negative."""
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0

    def error(self) -> DeadlineExceededError:
        """The exception describing this deadline's expiry."""
        return DeadlineExceededError(deadline_seconds=self.seconds, message=deadline_message(self.seconds))


def backoff_delay(attempt: int, base_delay: float = DEFAULT_BASE_DELAY) -> float:
    """Delay before retrying after the zero-based ``attempt`` failed: 2s, 4s, 8s..."""
    return base_delay * 2**attempt


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    label: str,
    log: Callable[[str], Awaitable[None]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    deadline: Deadline | None = None,
) -> T:
    """Run ``operation`` with exponential backoff.

    A non-retryable :class:`LlmError` is reported once and re-raised at once.
    Any other failure is retried until ``max_attempts`` calls were made, with
    one progress line per retry. The last error is re-raised unchanged.

    Args:
        operation (Callable[[], Awaitable[T]]): zero-argument coroutine factory
        label (str): what is being attempted, e.g. "LLM call"
        log (Callable[[str], Awaitable[None]]): progress-log sink
        max_attempts (int): total number of calls, first one included
        base_delay (float): delay after the first failure, doubled each time
        sleep (Callable[[float], Awaitable[None]]): injectable sleep
        deadline (Deadline | None): budget the waits must fit in

    Raises:
        DeadlineExceededError: if the next wait would outlive ``deadline``

    Returns:
        T: the operation's result
    """
    for attempt in range(max_attempts):
        try:
            return await operation()
        except LlmError as err:
            if not err.retryable:
                await log(f"✗ {label} failed ({err.code}): {err.message}")
                raise
            code = str(err.code)
            last_attempt = attempt + 1 >= max_attempts
            if last_attempt:
                raise
        except Exception:
            code = str(LlmErrorCode.UNKNOWN)
            if attempt + 1 >= max_attempts:
                raise

        delay = backoff_delay(attempt, base_delay)
        if deadline is not None and deadline.remaining() <= delay:
            logger.warning("Retry would overrun the deadline", label=label, delay=delay)
            raise deadline.error()
        await log(
            f"⚠ {label} attempt {attempt + 1}/{max_attempts} failed ({code}). Retrying in {delay:.0f}s...",
        )
        logger.info("Retrying", label=label, attempt=attempt + 1, max_attempts=max_attempts, delay=delay)
        await sleep(delay)

    msg = "max_attempts must be at least 1"
    raise ValueError(msg)
