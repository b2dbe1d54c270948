"""Current weather lookup via wttr.in."""

from __future__ import annotations

import logging
from typing import Any, Literal
from urllib.parse import quote

import httpx
from pydantic import BaseModel, Field

from core.errors import ToolExecutionError, ToolTimeoutError
from tools.base_tool import BaseTool

logger = logging.getLogger("mta.tools.weather_api")

_KMH_TO_MS = 1000 / 3600


class WeatherApiParams(BaseModel):
    city: str = Field(min_length=1, description="City name")
    country: str | None = Field(default=None, description="Optional country to disambiguate")
    units: Literal["metric", "imperial"] = "metric"


class WeatherApiTool(BaseTool):
    name = "weather_api"
    description = (
        "Get the current weather for a city. Returns {city, country, temperature, "
        "feels_like, humidity, pressure, description, wind_speed, wind_direction, units}."
    )
    parameter_schema = WeatherApiParams
    keywords = ("weather", "temperature", "forecast")

    def __init__(
        self,
        name: str | None = None,
        enabled: bool = True,
        settings: dict[str, Any] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        super().__init__(name=name, enabled=enabled, settings=settings)
        self.base_url = str(self.settings.get("base_url", "https://wttr.in")).rstrip("/")
        self.timeout = float(self.settings.get("timeout_seconds", 10))
        self._transport = transport

    def _run(self, params: WeatherApiParams) -> dict[str, Any]:
        location = f"{params.city},{params.country}" if params.country else params.city
        url = f"{self.base_url}/{quote(location)}"
        try:
            with httpx.Client(timeout=httpx.Timeout(self.timeout), transport=self._transport) as client:
                response = client.get(url, params={"format": "j1", "lang": "en"})
        except httpx.TimeoutException as exc:
            raise ToolTimeoutError(f"weather_api: lookup for {location} timed out") from exc
        except httpx.RequestError as exc:
            raise ToolExecutionError(
                f"weather_api: lookup for {location} failed: {exc}", transient=True
            ) from exc

        if response.status_code >= 500:
            raise ToolExecutionError(f"weather_api: server error {response.status_code}", transient=True)
        if response.status_code >= 400:
            raise ToolExecutionError(f"weather_api: no weather for {location} ({response.status_code})")
        try:
            return self._report(response.json(), params)
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise ToolExecutionError(f"weather_api: unexpected response for {location}") from exc

    @staticmethod
    def _report(data: dict[str, Any], params: WeatherApiParams) -> dict[str, Any]:
        current = data["current_condition"][0]
        area = (data.get("nearest_area") or [{}])[0]
        metric = params.units == "metric"
        wind_kmh = float(current["windspeedKmph"])
        logger.debug("Weather for %s: %s", params.city, current["weatherDesc"][0]["value"])
        return {
            "city": area.get("areaName", [{"value": params.city}])[0]["value"],
            "country": area.get("country", [{"value": params.country or ""}])[0]["value"],
            "temperature": float(current["temp_C"] if metric else current["temp_F"]),
            "feels_like": float(current["FeelsLikeC"] if metric else current["FeelsLikeF"]),
            "humidity": int(current["humidity"]),
            "pressure": int(current["pressure"]),
            "description": current["weatherDesc"][0]["value"],
            "wind_speed": round(wind_kmh * _KMH_TO_MS, 2) if metric else float(current["windspeedMiles"]),
            "wind_direction": int(current["winddirDegree"]),
            "units": params.units,
        }
