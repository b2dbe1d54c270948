"""Request-level cancellation token."""

from __future__ import annotations

import threading


class CancellationToken:
    """Cooperative cancellation flag shared by one request's workers.

    Cancelling stops new LLM calls and new tool steps; work already in
    flight is left to finish or time out.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        self.reason = reason
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()
