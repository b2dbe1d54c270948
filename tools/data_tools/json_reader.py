"""Parse JSON and extract values by path."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, Field

from core.errors import BindingResolutionError, ToolValidationError
from planner.bindings import lookup, parse_path
from tools.base_tool import BaseTool


class JsonReaderParams(BaseModel):
    json_string: Any = Field(description="JSON text, or an already-parsed object/array")
    path: str | None = Field(default=None, description="Optional path like 'a.b[0].c'")


class JsonReaderTool(BaseTool):
    name = "json_reader"
    description = (
        "Parse JSON and optionally extract a value by path ('a.b[0].c' or 'a.b.0.c'). "
        "Returns {value, type}."
    )
    parameter_schema = JsonReaderParams
    keywords = ("json", "parse", "extract")

    def _run(self, params: JsonReaderParams) -> dict[str, Any]:
        data = params.json_string
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise ToolValidationError(f"json_reader: invalid JSON ({exc.msg})") from exc
        value = data
        if params.path:
            try:
                value = lookup(data, parse_path(params.path), params.path)
            except BindingResolutionError as exc:
                raise ToolValidationError(f"json_reader: {exc}") from exc
        return {"value": value, "type": type(value).__name__}
