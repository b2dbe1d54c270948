"""Tool registry and default tool wiring."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from core.errors import ToolNotFoundError
from tools.base_tool import BaseTool
from tools.data_tools.calculator import CalculatorTool
from tools.data_tools.json_reader import JsonReaderTool
from tools.system_tools.file_reader import FileReaderTool
from tools.web_tools.api_call import ApiCallTool
from tools.web_tools.weather_api import WeatherApiTool


@dataclass
class RegisteredTool:
    """Metadata for tool listing output."""

    name: str
    enabled: bool
    mutating: bool
    description: str


class ToolRegistry:
    """In-memory registry of named tools."""

    def __init__(self) -> None:
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Tool '{tool.name}' already registered")
        self._tools[tool.name] = tool

    def get(self, name: str) -> BaseTool | None:
        tool = self._tools.get(name)
        if tool and tool.enabled:
            return tool
        return None

    def require(self, name: str) -> BaseTool:
        tool = self.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        return tool

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def names(self) -> list[str]:
        return [name for name, tool in self._tools.items() if tool.enabled]

    def list_tools(self) -> list[RegisteredTool]:
        return [
            RegisteredTool(
                name=name,
                enabled=tool.enabled,
                mutating=tool.mutating,
                description=tool.description,
            )
            for name, tool in sorted(self._tools.items())
        ]

    def schemas(self, names: list[str] | None = None) -> list[dict[str, Any]]:
        selected = self.names() if names is None else [n for n in names if n in self]
        return [
            {
                "name": name,
                "description": self._tools[name].description,
                "parameters": self._tools[name].json_schema(),
                "mutating": self._tools[name].mutating,
            }
            for name in selected
        ]

    def match_tools(self, query: str) -> list[str]:
        """Enabled tools whose keywords occur as whole words in ``query``."""
        lowered = query.lower()
        matched: list[str] = []
        for name in self.names():
            for keyword in self._tools[name].keywords:
                if re.search(rf"\b{re.escape(keyword.lower())}\b", lowered):
                    matched.append(name)
                    break
        return matched


def _tool_cfg(config: dict[str, Any], tool_name: str) -> dict[str, Any]:
    tool_cfg = config.get("tools_cfg", {}).get(tool_name, {})
    return dict(tool_cfg) if isinstance(tool_cfg, dict) else {}


def build_default_registry(config: dict[str, Any], workspace_dir: Path | None = None) -> ToolRegistry:
    """Build the registry of built-in tools from config.

    ``file_reader`` is rooted at ``workspace_dir`` unless its settings name a
    ``root_dir``.
    """
    registry = ToolRegistry()
    for tool_cls in (CalculatorTool, JsonReaderTool, ApiCallTool, WeatherApiTool):
        settings = _tool_cfg(config, tool_cls.name)
        registry.register(
            tool_cls(enabled=bool(settings.get("enabled", True)), settings=settings)
        )
    settings = _tool_cfg(config, FileReaderTool.name)
    registry.register(
        FileReaderTool(
            enabled=bool(settings.get("enabled", True)),
            settings=settings,
            root_dir=settings.get("root_dir") or workspace_dir,
        )
    )
    return registry
