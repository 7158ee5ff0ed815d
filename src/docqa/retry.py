from __future__ import annotations

import logging
from random import random
from time import monotonic, sleep
from typing import Callable, TypeVar

from docqa.errors import (
    ProviderResponseError,
    ProviderUnavailableError,
    RagError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def deadline_after(seconds: float | None) -> float | None:
    return None if seconds is None else monotonic() + seconds


def time_left(deadline: float | None, *, limit: float, label: str = "provider call") -> float:
    """Seconds the next call may take: ``limit`` capped by what remains before ``deadline``."""
    if deadline is None:
        return limit
    remaining = deadline - monotonic()
    if remaining <= 0:
        raise RequestTimeoutError(f"{label} ran out of time before it could start")
    return min(limit, remaining)


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, ProviderUnavailableError):
        return True
    if isinstance(exc, ProviderResponseError):
        return exc.retryable
    return False


def call_with_retry(
    operation: Callable[[], T],
    *,
    max_attempts: int = 1,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    label: str = "provider call",
    deadline: float | None = None,
    sleeper: Callable[[float], None] | None = None,
) -> T:
    """Run ``operation`` with bounded exponential backoff.

    Only transient provider failures are retried; timeouts and validation
    errors propagate on the first attempt. No retry is scheduled when its
    backoff would end past ``deadline``.
    """
    delay = base_delay
    attempt = 1

    while True:
        try:
            return operation()
        except RagError as exc:
            if attempt >= max_attempts or not is_retryable(exc):
                raise
            pause = delay + random() * 0.2 * delay
            if deadline is not None and monotonic() + pause >= deadline:
                raise
            logger.warning(
                "%s failed attempt=%d/%d kind=%s error=%s; retrying in %.1fs",
                label,
                attempt,
                max_attempts,
                exc.kind,
                exc,
                delay,
            )
            (sleeper or sleep)(pause)
            delay = min(delay * 2, max_delay)
            attempt += 1
