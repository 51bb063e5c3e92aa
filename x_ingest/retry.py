from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Exponential backoff retry policy shared by every upstream client.

    - max_attempts counts the initial attempt (max_attempts=4 => 1 try + 3 retries).
    - base_delay_seconds is the first delay after the first failure.
    - max_delay_seconds bounds every computed delay.
    - jitter_ratio adds multiplicative jitter in [1-jitter, 1+jitter].
    """

    max_attempts: int = 4
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 5.0
    jitter_ratio: float = 0.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < 0:
            raise ValueError("max_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if not (0.0 <= self.jitter_ratio <= 1.0):
            raise ValueError("jitter_ratio must be between 0 and 1")


@dataclass(frozen=True)
class RetryEvent:
    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int

    delay_seconds: float
    reason: str | None

    error_type: str
    error_message: str


IsRetryableFn = Callable[[BaseException], tuple[bool, str | None]]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], Awaitable[None]]


def compute_backoff_seconds(failure_attempt: int, cfg: RetryConfig) -> float:
    # failure_attempt=1 => base delay.
    exponent = max(0, int(failure_attempt) - 1)
    delay = cfg.base_delay_seconds * (2**exponent)
    return min(cfg.max_delay_seconds, max(0.0, float(delay)))


def _apply_jitter(delay: float, cfg: RetryConfig) -> float:
    d = max(0.0, float(delay))
    if d == 0.0 or cfg.jitter_ratio <= 0:
        return d
    factor = random.uniform(1.0 - cfg.jitter_ratio, 1.0 + cfg.jitter_ratio)
    return min(cfg.max_delay_seconds, max(0.0, d * factor))


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
) -> T:
    """
    Await fn() with retries on retryable failures.

    Retry logic:
    - If is_retryable(exc) => (True, reason), retry until max_attempts.
    - Delay uses exponential backoff clamped to [base_delay_seconds, max_delay_seconds].
    - Cancellation is never retried.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or asyncio.sleep

    for attempt in range(1, int(cfg.max_attempts) + 1):
        try:
            return await fn()
        except Exception as exc:
            retryable, reason = is_retryable(exc)

            if not retryable or attempt >= int(cfg.max_attempts):
                raise

            delay = _apply_jitter(compute_backoff_seconds(attempt, cfg), cfg)

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=int(attempt),
                        next_attempt=int(attempt) + 1,
                        max_attempts=int(cfg.max_attempts),
                        delay_seconds=float(delay),
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=(str(exc) or "").strip(),
                    )
                )

            if delay > 0:
                await sleeper(float(delay))

    # Unreachable, but keeps typing happy.
    raise RuntimeError(f"Retry loop exited unexpectedly for operation={op}")
