from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx

from .logging_utils import log_event
from .metrics_store import increment
from .routing_errors import GraphStoreUnavailable
from .settings import settings

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})


class TransientStoreError(RuntimeError):
    """A storage call failed in a way that is worth retrying."""


@dataclass
class RetryStats:
    attempt_count: int = 0
    retry_count: int = 0
    retry_total_backoff_ms: int = 0
    last_error_name: str | None = None
    last_error_status: int | None = None
    deadline_exceeded: bool = False

    def note_failure(self, exc: Exception) -> None:
        self.last_error_name = type(exc).__name__
        self.last_error_status = int(exc.response.status_code) if isinstance(exc, httpx.HTTPStatusError) else None

    def as_details(self) -> dict[str, Any]:
        return {
            "retry_attempts": self.attempt_count,
            "retry_count": self.retry_count,
            "retry_total_backoff_ms": self.retry_total_backoff_ms,
            "retry_last_error": self.last_error_name,
            "retry_last_status_code": self.last_error_status,
            "retry_deadline_exceeded": self.deadline_exceeded,
        }


def _status_code(token: str) -> int | None:
    try:
        code = int(token.strip())
    except ValueError:
        return None
    return code if 100 <= code <= 599 else None


def retryable_status_codes() -> frozenset[int]:
    """Codes from STORE_RETRYABLE_STATUS_CODES; unparseable input falls back to the defaults."""
    tokens = str(settings.store_retryable_status_codes or "").split(",")
    parsed = frozenset(code for code in map(_status_code, tokens) if code is not None)
    return parsed or DEFAULT_RETRYABLE_STATUS_CODES


def is_retryable_exception(exc: Exception) -> bool:
    if isinstance(exc, TransientStoreError):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return int(exc.response.status_code) in retryable_status_codes()
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError))


def compute_backoff_ms(attempt_index: int) -> int:
    """Exponential backoff for the n-th retry, capped, plus optional jitter."""
    base_ms = max(0, int(settings.store_retry_backoff_base_ms))
    cap_ms = max(base_ms, int(settings.store_retry_backoff_max_ms))
    wait_ms = base_ms * (2 ** (max(1, int(attempt_index)) - 1))
    jitter_ms = int(settings.store_retry_jitter_ms)
    if jitter_ms > 0:
        wait_ms += random.randint(0, jitter_ms)
    return min(cap_ms, wait_ms)


def call_with_bounded_retry(
    operation: str,
    fn: Callable[[], T],
    *,
    max_attempts: int | None = None,
    deadline_at_monotonic_s: float | None = None,
) -> T:
    """Call `fn`, retrying transient failures with exponential backoff.

    Raises GraphStoreUnavailable once attempts or the deadline run out; a
    non-retryable error is re-raised unchanged.
    """
    attempts_allowed = max(1, int(max_attempts or settings.store_max_attempts))
    if deadline_at_monotonic_s is None:
        deadline_ms = max(1, int(settings.store_retry_deadline_ms))
        deadline_at_monotonic_s = time.monotonic() + (deadline_ms / 1000.0)
    stats = RetryStats()

    while stats.attempt_count < attempts_allowed:
        if deadline_at_monotonic_s - time.monotonic() <= 0.0:
            stats.deadline_exceeded = True
            break
        stats.attempt_count += 1
        try:
            return fn()
        except Exception as exc:
            if not is_retryable_exception(exc):
                raise
            stats.note_failure(exc)
            if stats.attempt_count >= attempts_allowed:
                break
            remaining_ms = int(max(0.0, (deadline_at_monotonic_s - time.monotonic()) * 1000.0))
            if remaining_ms <= 0:
                stats.deadline_exceeded = True
                break
            wait_ms = min(compute_backoff_ms(stats.retry_count + 1), remaining_ms)
            stats.retry_count += 1
            increment("graph_store_retries")
            log_event(
                "store_retry_scheduled",
                level=logging.DEBUG,
                operation=operation,
                attempt=stats.attempt_count,
                wait_ms=wait_ms,
                error=stats.last_error_name,
            )
            if wait_ms > 0:
                time.sleep(wait_ms / 1000.0)
                stats.retry_total_backoff_ms += wait_ms

    log_event("store_retry_exhausted", level=logging.WARNING, operation=operation, **stats.as_details())
    raise GraphStoreUnavailable(operation, details=stats.as_details())
