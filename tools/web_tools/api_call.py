"""HTTP API call tool."""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx
from pydantic import BaseModel, Field, field_validator

from core.errors import ToolExecutionError, ToolTimeoutError
from tools.base_tool import BaseTool

logger = logging.getLogger("mta.tools.api_call")

_SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


class ApiCallParams(BaseModel):
    url: str = Field(description="Absolute http(s) URL")
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    timeout: float | None = Field(default=None, gt=0)

    @field_validator("method", mode="before")
    @classmethod
    def _upper(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @field_validator("url")
    @classmethod
    def _absolute(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return value


class ApiCallTool(BaseTool):
    name = "api_call"
    description = (
        "Make an HTTP request. Returns {status, data, headers} where data is the "
        "decoded JSON body (or text). GET is read-only; other methods change remote state."
    )
    parameter_schema = ApiCallParams
    keywords = ("api", "http", "fetch", "get", "post", "request", "endpoint", "url")

    def __init__(
        self,
        name: str | None = None,
        enabled: bool = True,
        settings: dict[str, Any] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(name=name, enabled=enabled, settings=settings)
        self.default_timeout = float(self.settings.get("default_timeout_seconds", 10))
        self._transport = transport

    def is_mutating(self, args: dict[str, Any]) -> bool:
        method = str(args.get("method") or "GET").upper()
        return method not in _SAFE_METHODS

    def _run(self, params: ApiCallParams) -> dict[str, Any]:
        timeout = httpx.Timeout(params.timeout or self.default_timeout)
        request: dict[str, Any] = {"headers": params.headers}
        if params.body is not None and params.method not in _SAFE_METHODS:
            if isinstance(params.body, (dict, list)):
                request["json"] = params.body
            else:
                request["content"] = str(params.body)
        try:
            with httpx.Client(timeout=timeout, transport=self._transport) as client:
                response = client.request(params.method, params.url, **request)
        except httpx.TimeoutException as exc:
            raise ToolTimeoutError(f"api_call: {params.method} {params.url} timed out") from exc
        except httpx.RequestError as exc:
            raise ToolExecutionError(
                f"api_call: {params.method} {params.url} failed: {exc}", transient=True
            ) from exc

        if response.status_code >= 500:
            raise ToolExecutionError(
                f"api_call: server error {response.status_code} from {params.url}",
                transient=True,
            )
        if response.status_code >= 400:
            raise ToolExecutionError(
                f"api_call: client error {response.status_code} from {params.url}",
                transient=False,
            )
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        logger.debug("%s %s -> %d", params.method, params.url, response.status_code)
        return {
            "status": response.status_code,
            "data": data,
            "headers": {"content-type": response.headers.get("content-type", "")},
        }
