"""Shared error types for the agent core."""

from __future__ import annotations


class AgentCoreError(Exception):
    """Base class for all typed agent-core failures."""


class LLMError(AgentCoreError):
    """Raised when an LLM completion cannot be produced."""


class LLMTimeout(LLMError):
    """The LLM provider did not answer within its timeout."""


class LLMProviderError(LLMError):
    """The LLM provider failed or is not configured."""


class MemoryStoreError(AgentCoreError):
    """A graph, vector or relational store operation failed."""


class ToolNotFoundError(AgentCoreError):
    """A tool name is not present in the registry."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool '{tool_name}' is not registered.")
        self.tool_name = tool_name


class ToolExecutionError(AgentCoreError):
    """A single tool invocation failed.

    ``transient`` marks failures worth retrying (network, timeouts, 5xx).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class ToolValidationError(ToolExecutionError):
    """Tool arguments did not satisfy the parameter schema."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class ToolTimeoutError(ToolExecutionError):
    """Tool invocation exceeded its per-step timeout."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=True)


class BindingResolutionError(ToolExecutionError):
    """A ``{{stepId.path}}`` placeholder could not be resolved."""

    def __init__(self, message: str) -> None:
        super().__init__(message, transient=False)


class ResponseParseError(AgentCoreError):
    """LLM output held no usable structured object."""
