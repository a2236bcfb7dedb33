from __future__ import annotations

import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """
    Backoff policy for one outbound API call (VK or Telegram).

    `max_attempts` includes the first try. The n-th failure waits
    `base_delay_seconds * 2**(n-1)`, capped at `max_delay_seconds`, raised to any
    server-provided wait (itself capped at `retry_after_cap_seconds`, 0 = no cap)
    and spread by +/- `jitter_ratio`.
    """

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 10.0
    jitter_ratio: float = 0.2
    retry_after_cap_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if not 0 <= self.base_delay_seconds <= self.max_delay_seconds:
            raise ValueError("need 0 <= base_delay_seconds <= max_delay_seconds")
        if not 0.0 <= self.jitter_ratio <= 1.0:
            raise ValueError("jitter_ratio must be between 0 and 1")
        if self.retry_after_cap_seconds < 0:
            raise ValueError("retry_after_cap_seconds must be >= 0")


@dataclass(frozen=True)
class RetryEvent:
    """Reported to `on_retry` right before waiting for the next attempt."""

    operation: str
    failure_attempt: int
    next_attempt: int
    max_attempts: int
    delay_seconds: float
    retry_after_seconds: float | None
    reason: str | None
    error_type: str
    error_message: str


IsRetryableFn = Callable[[BaseException], "tuple[bool, float | None, str | None]"]
OnRetryFn = Callable[[RetryEvent], None]
SleepFn = Callable[[float], None]


def backoff_seconds(failure_attempt: int, cfg: RetryConfig) -> float:
    steps = max(0, int(failure_attempt) - 1)
    return min(cfg.max_delay_seconds, cfg.base_delay_seconds * (2**steps))


def server_wait_seconds(value: float | None, cfg: RetryConfig) -> float | None:
    """A usable Retry-After / retry_after value, or None."""
    if value is None:
        return None
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return None
    if seconds < 0:
        return None
    if cfg.retry_after_cap_seconds > 0:
        return min(seconds, cfg.retry_after_cap_seconds)
    return seconds


def next_delay(failure_attempt: int, cfg: RetryConfig, retry_after: float | None = None) -> float:
    delay = backoff_seconds(failure_attempt, cfg)
    if retry_after is not None:
        delay = max(delay, retry_after)
    if delay <= 0 or cfg.jitter_ratio <= 0:
        return max(0.0, delay)
    spread = random.uniform(-cfg.jitter_ratio, cfg.jitter_ratio)
    return max(0.0, delay * (1.0 + spread))


def _wait(seconds: float, sleeper: SleepFn, stop: threading.Event | None) -> bool:
    """Wait before the next attempt; False when `stop` fired meanwhile."""
    if seconds <= 0:
        return stop is None or not stop.is_set()
    if stop is not None:
        return not stop.wait(seconds)
    sleeper(seconds)
    return True


def call_with_retries(
    fn: Callable[[], T],
    *,
    cfg: RetryConfig,
    is_retryable: IsRetryableFn,
    operation: str,
    on_retry: OnRetryFn | None = None,
    sleep_fn: SleepFn | None = None,
    stop: threading.Event | None = None,
) -> T:
    """
    Run fn(), retrying while is_retryable(exc) allows and attempts remain.

    Waits go through `sleep_fn`, or `stop.wait()` when a stop event is given, so a
    shutting down service re-raises the last error instead of sleeping it out.
    """
    op = (operation or "").strip() or "operation"
    sleeper = sleep_fn or time.sleep
    attempt = 0

    while True:
        attempt += 1
        try:
            return fn()
        except Exception as exc:
            retryable, retry_after, reason = is_retryable(exc)
            if not retryable or attempt >= cfg.max_attempts:
                raise
            if stop is not None and stop.is_set():
                raise

            server_wait = server_wait_seconds(retry_after, cfg)
            delay = next_delay(attempt, cfg, server_wait)

            if on_retry is not None:
                on_retry(
                    RetryEvent(
                        operation=op,
                        failure_attempt=attempt,
                        next_attempt=attempt + 1,
                        max_attempts=cfg.max_attempts,
                        delay_seconds=delay,
                        retry_after_seconds=server_wait,
                        reason=reason,
                        error_type=type(exc).__name__,
                        error_message=str(exc).strip(),
                    )
                )

            if not _wait(delay, sleeper, stop):
                raise
