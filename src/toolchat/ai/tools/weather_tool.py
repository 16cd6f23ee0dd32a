"""Capability returning simulated weather for well-known cities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from .types import Capability, object_schema

TOOL_NAME = "getWeather"
DESCRIPTION = (
    "Get current weather information for a specific city.\n"
    "Returns temperature, conditions, and humidity."
)
PARAMETERS = object_schema(
    {"city": {"type": "string", "description": "City name, e.g. 'London'."}},
    required=("city",),
)

# Static sample data until a real weather provider is wired in.
WEATHER_TABLE: dict[str, str] = {
    "New York": "Sunny, 22°C, Humidity: 65%",
    "London": "Cloudy, 15°C, Humidity: 80%",
    "Tokyo": "Rainy, 18°C, Humidity: 90%",
    "Paris": "Partly Cloudy, 20°C, Humidity: 70%",
    "Sydney": "Clear, 25°C, Humidity: 55%",
    "Berlin": "Overcast, 16°C, Humidity: 75%",
    "Moscow": "Snow, -5°C, Humidity: 85%",
    "Dubai": "Hot, 35°C, Humidity: 40%",
}


def build_weather_capability(clock: Callable[[], datetime] | None = None) -> Capability:
    now_fn = clock or (lambda: datetime.now(timezone.utc))

    async def get_weather(arguments: Mapping[str, Any]) -> str:
        city = str(arguments.get("city") or "").strip()
        conditions = WEATHER_TABLE.get(city, f"Weather data not available for {city}")
        return "\n".join(
            [
                f"Current weather in {city}:",
                conditions,
                f"Last updated: {now_fn().strftime('%H:%M')}",
            ]
        )

    return Capability(name=TOOL_NAME, description=DESCRIPTION, handler=get_weather, parameters=PARAMETERS)
