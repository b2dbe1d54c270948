"""Base tool interface with schema validation."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, ValidationError

from core.errors import ToolValidationError


class BaseTool(ABC):
    """Named capability with a pydantic parameter schema.

    Subclasses set ``name``, ``description``, ``parameter_schema`` and may set
    ``mutating`` (needs user confirmation) and ``keywords`` (used to guess the
    tool from a query when the LLM names none).
    """

    name: str = ""
    description: str = ""
    parameter_schema: type[BaseModel]
    mutating: bool = False
    keywords: tuple[str, ...] = ()

    def __init__(
        self,
        name: str | None = None,
        enabled: bool = True,
        settings: dict[str, Any] | None = None,
    ) -> None:
        if name:
            self.name = name
        if not self.name:
            raise ValueError(f"{type(self).__name__} needs a name")
        self.enabled = enabled
        self.settings = settings or {}

    def is_mutating(self, args: dict[str, Any]) -> bool:
        """Whether this particular invocation changes external state."""
        _ = args
        return self.mutating

    def json_schema(self) -> dict[str, Any]:
        return self.parameter_schema.model_json_schema()

    def required_params(self) -> list[str]:
        return list(self.json_schema().get("required", []))

    def validate(self, args: dict[str, Any]) -> BaseModel:
        try:
            return self.parameter_schema.model_validate(args)
        except ValidationError as exc:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'args'}: {err['msg']}"
                for err in exc.errors()
            )
            raise ToolValidationError(f"{self.name}: invalid arguments ({problems})") from exc

    def execute(self, args: dict[str, Any]) -> Any:
        """Validate ``args`` then run the tool."""
        return self._run(self.validate(args))

    @abstractmethod
    def _run(self, params: Any) -> Any:
        """Tool-specific execution logic."""
