"""Capped retry with exponential backoff for LLM calls."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any, TypeVar

from core.errors import LLMError, LLMProviderError

logger = logging.getLogger("mta.llm.retry")

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    max_retries: int,
    backoff_seconds: float,
    label: str = "llm",
    cancel_token: Any | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``fn`` and retry ``LLMError`` up to ``max_retries`` extra times.

    No new attempt starts once ``cancel_token`` is cancelled; the last error
    (or a cancellation error) is raised when attempts run out.
    """
    last_error: LLMError | None = None
    attempts = max(0, max_retries) + 1
    for attempt in range(1, attempts + 1):
        if cancel_token is not None and cancel_token.is_cancelled():
            raise last_error or LLMProviderError(f"{label} call cancelled")
        try:
            return fn()
        except LLMError as exc:
            last_error = exc
            if attempt == attempts:
                break
            wait = backoff_seconds * (2 ** (attempt - 1))
            logger.warning(
                "%s call failed (attempt %d/%d), retrying in %.2fs: %s",
                label,
                attempt,
                attempts,
                wait,
                exc,
            )
            if wait > 0:
                sleep(wait)
    logger.error("%s call exhausted %d attempts: %s", label, attempts, last_error)
    raise last_error or LLMProviderError(f"{label} call failed")
