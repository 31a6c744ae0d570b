"""Retry and circuit-breaker helpers for outbound price lookups."""
from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar
from urllib.error import HTTPError, URLError

from .config import RetryPolicy

T = TypeVar("T")

# HTTP statuses worth another attempt; anything else (bad key, bad request) fails fast.
TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class CircuitBreakerOpen(RuntimeError):
    """Raised when a provider has failed too often to be called again."""


@dataclass
class CircuitBreaker:
    """Counts consecutive provider failures for the lifetime of a cascade."""

    threshold: int
    consecutive_failures: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_success(self) -> None:
        with self._lock:
            self.consecutive_failures = 0

    def record_failure(self) -> None:
        if self.threshold > 0:
            with self._lock:
                self.consecutive_failures += 1

    @property
    def is_open(self) -> bool:
        with self._lock:
            return self.threshold > 0 and self.consecutive_failures >= self.threshold


def is_transient(exc: BaseException) -> bool:
    if isinstance(exc, HTTPError):
        return exc.code in TRANSIENT_STATUS
    return isinstance(exc, (URLError, socket.timeout, TimeoutError, ConnectionError))


def call_provider(
    action: Callable[[float], T],
    *,
    policy: RetryPolicy,
    provider: str,
    logger,
    breaker: Optional[CircuitBreaker] = None,
    retry_if: Callable[[BaseException], bool] = is_transient,
    sleeper: Callable[[float], None] = time.sleep,
) -> T:
    """
    Run ``action(timeout)`` against ``provider`` under ``policy``.

    Transient failures are retried with exponential backoff up to
    ``policy.retries`` times; the final failure (or any non-transient one)
    counts against ``breaker`` and is re-raised to the caller.
    """

    if breaker is not None and breaker.is_open:
        raise CircuitBreakerOpen(f"{provider} disabled after repeated failures")

    failures = 0
    while True:
        try:
            result = action(policy.timeout_seconds)
        except Exception as exc:
            failures += 1
            if failures > policy.retries or not retry_if(exc):
                if breaker is not None:
                    breaker.record_failure()
                raise
            delay = max(0.0, policy.backoff_factor * (2 ** (failures - 1)))
            logger.warning(
                "%s call failed (%d/%d): %s; retrying in %.2fs",
                provider,
                failures,
                policy.retries,
                exc,
                delay,
            )
            if delay:
                sleeper(delay)
            continue
        if breaker is not None:
            breaker.record_success()
        return result


__all__ = ["CircuitBreaker", "CircuitBreakerOpen", "call_provider", "is_transient"]
