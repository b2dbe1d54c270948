"""Read-only file tool confined to a root directory."""

from __future__ import annotations

import base64
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field

from core.errors import ToolExecutionError, ToolValidationError
from tools.base_tool import BaseTool


class FileReaderParams(BaseModel):
    path: str = Field(min_length=1, description="File or directory path, relative to the tool root")
    operation: Literal["read", "list", "info"] = "read"
    encoding: Literal["utf8", "ascii", "base64"] = "utf8"


def _mtime(target: Path) -> str:
    return datetime.fromtimestamp(target.stat().st_mtime, UTC).isoformat()


class FileReaderTool(BaseTool):
    name = "file_reader"
    description = (
        "Read a text file, list a directory, or get file info. Paths are relative to the "
        "agent workspace and never leave it. Returns {path, content|items|size}."
    )
    parameter_schema = FileReaderParams
    keywords = ("file", "files", "directory", "folder")

    def __init__(
        self,
        name: str | None = None,
        enabled: bool = True,
        settings: dict[str, Any] | None = None,
        root_dir: Path | str | None = None,
    ) -> None:
        super().__init__(name=name, enabled=enabled, settings=settings)
        root = root_dir or self.settings.get("root_dir") or Path.cwd()
        self.root_dir = Path(root).resolve()
        self.max_bytes = int(self.settings.get("max_bytes", 65536))

    def _resolve_target(self, path_value: str) -> Path:
        raw = Path(path_value)
        resolved = (raw if raw.is_absolute() else self.root_dir / raw).resolve()
        try:
            resolved.relative_to(self.root_dir)
        except ValueError as exc:
            raise ToolValidationError(f"file_reader: {path_value} is outside {self.root_dir}") from exc
        return resolved

    def _run(self, params: FileReaderParams) -> dict[str, Any]:
        target = self._resolve_target(params.path)
        if not target.exists():
            raise ToolExecutionError(f"file_reader: not found: {params.path}", transient=False)
        try:
            if params.operation == "list":
                return self._list(target, params.path)
            if params.operation == "info":
                return {
                    "path": params.path,
                    "is_directory": target.is_dir(),
                    "is_file": target.is_file(),
                    "size": target.stat().st_size,
                    "modified": _mtime(target),
                }
            return self._read(target, params)
        except PermissionError as exc:
            raise ToolExecutionError(f"file_reader: permission denied: {params.path}") from exc

    def _list(self, target: Path, shown: str) -> dict[str, Any]:
        if not target.is_dir():
            raise ToolExecutionError(f"file_reader: not a directory: {shown}")
        items = [
            {
                "name": child.name,
                "is_directory": child.is_dir(),
                "size": child.stat().st_size,
                "modified": _mtime(child),
            }
            for child in sorted(target.iterdir())
        ]
        return {"path": shown, "items": items}

    def _read(self, target: Path, params: FileReaderParams) -> dict[str, Any]:
        if not target.is_file():
            raise ToolExecutionError(f"file_reader: not a file: {params.path}")
        raw = target.read_bytes()
        truncated = len(raw) > self.max_bytes
        raw = raw[: self.max_bytes]
        if params.encoding == "base64":
            content = base64.b64encode(raw).decode("ascii")
        else:
            codec = "ascii" if params.encoding == "ascii" else "utf-8"
            try:
                content = raw.decode(codec, errors="ignore" if truncated else "strict")
            except UnicodeDecodeError as exc:
                raise ToolExecutionError(
                    f"file_reader: {params.path} is not {params.encoding} text; use base64"
                ) from exc
        return {
            "path": params.path,
            "content": content,
            "encoding": params.encoding,
            "size": target.stat().st_size,
            "truncated": truncated,
        }
