"""Step runner: per-call timeout, transient-only retries and auditing."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any

from core.errors import ToolExecutionError, ToolTimeoutError
from executor.cancellation import CancellationToken
from governance.audit_logger import AuditLogger
from tools.base_tool import BaseTool

logger = logging.getLogger("mta.executor.runner")


@dataclass
class StepRun:
    """Outcome of running one step, after retries."""

    success: bool
    result: Any = None
    error: str | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    transient: bool = False


class SafeRunner:
    """Runs a tool call with a timeout and bounded retry, then audits it."""

    def __init__(
        self,
        audit_logger: AuditLogger | None = None,
        *,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.audit_logger = audit_logger
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep

    @classmethod
    def from_config(
        cls,
        config: dict[str, Any],
        audit_logger: AuditLogger | None = None,
    ) -> SafeRunner:
        exec_cfg = config.get("execution", {})
        return cls(
            audit_logger,
            timeout_seconds=float(exec_cfg.get("step_timeout_seconds", 30)),
            max_retries=int(exec_cfg.get("max_retries", 2)),
            backoff_seconds=float(exec_cfg.get("backoff_seconds", 0.5)),
        )

    def _call_once(self, tool: BaseTool, args: dict[str, Any]) -> Any:
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"tool-{tool.name}")
        try:
            future = pool.submit(tool.execute, args)
            try:
                return future.result(timeout=self.timeout_seconds)
            except FutureTimeout:
                future.cancel()
                raise ToolTimeoutError(
                    f"{tool.name}: no result within {self.timeout_seconds:.1f}s"
                ) from None
        finally:
            pool.shutdown(wait=False)

    def run(
        self,
        step_id: str,
        tool: BaseTool,
        args: dict[str, Any],
        cancel_token: CancellationToken | None = None,
    ) -> StepRun:
        """Execute ``tool`` with ``args``; never raises for tool failures."""
        started = time.perf_counter()
        attempts = 0
        run = StepRun(success=False)
        while True:
            attempts += 1
            try:
                result = self._call_once(tool, args)
                run = StepRun(success=True, result=result)
                break
            except ToolExecutionError as exc:
                run = StepRun(success=False, error=str(exc), transient=exc.transient)
            except Exception as exc:
                logger.exception("Tool %s raised unexpectedly", tool.name)
                run = StepRun(success=False, error=f"{tool.name}: {exc}", transient=False)

            if not run.transient or attempts > self.max_retries:
                break
            if cancel_token is not None and cancel_token.is_cancelled():
                logger.info("Not retrying step %s: request cancelled", step_id)
                break
            wait = self.backoff_seconds * (2 ** (attempts - 1))
            logger.warning(
                "Step %s (%s) failed transiently on attempt %d, retrying in %.2fs: %s",
                step_id,
                tool.name,
                attempts,
                wait,
                run.error,
            )
            if wait > 0:
                self._sleep(wait)

        run.attempts = attempts
        run.duration_ms = (time.perf_counter() - started) * 1000.0
        if self.audit_logger is not None:
            self.audit_logger.log(
                tool=tool.name,
                step_id=step_id,
                inputs=args,
                outcome="success" if run.success else "failed",
                attempts=attempts,
                duration_ms=run.duration_ms,
                reason=run.error or "",
            )
        return run
