"""Bounded exponential backoff for external calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt + 1`` (``attempt`` is zero-based)."""
    return min(base_delay * (2**attempt), max_delay)


async def with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    *,
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` and retry it on failure.

    The operation is invoked at most ``max_retries + 1`` times. Between
    attempts it waits ``min(base_delay * 2**attempt, max_delay)``. When every
    attempt fails the last exception is re-raised unchanged.
    """
    retries = max(int(max_retries), 0)
    last_error: Exception | None = None

    for attempt in range(retries + 1):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            if attempt >= retries:
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                f"{label} failed (attempt {attempt + 1}/{retries + 1}): {exc!r}; retrying in {delay:.2f}s"
            )
            await sleep(delay)

    assert last_error is not None
    raise last_error


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    sleep: Sleep = asyncio.sleep

    @classmethod
    def from_settings(cls, max_retries: int | None = None) -> "RetryPolicy":
        from awardprobe.config import settings

        if max_retries is None:
            max_retries = settings.retry_max_retries
        return cls(
            max_retries=max(int(max_retries), 0),
            base_delay=max(float(settings.retry_base_delay_seconds), 0.0),
            max_delay=max(float(settings.retry_max_delay_seconds), 0.0),
        )

    async def run(self, operation: Callable[[], Awaitable[T]], *, label: str = "operation") -> T:
        return await with_backoff(
            operation,
            self.max_retries,
            self.base_delay,
            self.max_delay,
            sleep=self.sleep,
            label=label,
        )
