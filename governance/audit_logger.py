"""Structured JSONL audit logger for tool invocations."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any


class AuditLogger:
    """Writes one JSON line per tool invocation."""

    def __init__(self, log_path: Path) -> None:
        self.log_path = log_path
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self.logger = logging.getLogger("mta.audit")
        self._lock = threading.Lock()

    @staticmethod
    def _hash_inputs(inputs: dict[str, Any]) -> str:
        payload = json.dumps(inputs, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(payload).hexdigest()

    def log(
        self,
        *,
        tool: str,
        step_id: str,
        inputs: dict[str, Any],
        outcome: str,
        attempts: int,
        duration_ms: float,
        reason: str = "",
    ) -> dict[str, Any]:
        """Append one JSONL audit event and return it."""
        event = {
            "timestamp": datetime.now(UTC).isoformat(),
            "tool": tool,
            "step_id": step_id,
            "inputs_hash": self._hash_inputs(inputs),
            "outcome": outcome,
            "attempts": attempts,
            "duration_ms": round(duration_ms, 3),
            "reason": reason,
        }
        line = json.dumps(event, ensure_ascii=True)
        with self._lock:
            with self.log_path.open("a", encoding="utf-8") as fh:
                fh.write(line + "\n")
        self.logger.info(line)
        return event

    def read(self) -> list[dict[str, Any]]:
        if not self.log_path.exists():
            return []
        with self.log_path.open("r", encoding="utf-8") as fh:
            return [json.loads(line) for line in fh if line.strip()]
