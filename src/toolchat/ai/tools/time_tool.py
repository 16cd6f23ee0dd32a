"""Capability reporting the current time, date and time of day."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Mapping
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .types import Capability, object_schema

LOGGER = logging.getLogger(__name__)

TOOL_NAME = "getTime"
DESCRIPTION = (
    "Get current time information including date, time, and timezone.\n"
    "Can also calculate time differences and convert between timezones."
)
PARAMETERS = object_schema(
    {
        "timezone": {
            "type": ["string", "null"],
            "description": "IANA timezone name such as 'Europe/Berlin'. Defaults to UTC.",
        },
        "format": {
            "type": ["string", "null"],
            "description": "Level of detail, 'full' or 'short'. Defaults to 'full'.",
        },
    }
)


def time_of_day(hour: int) -> str:
    if 5 <= hour < 12:
        return "Morning"
    if 12 <= hour < 17:
        return "Afternoon"
    if 17 <= hour < 21:
        return "Evening"
    return "Night"


def _resolve_zone(name: str | None) -> tuple[Any, str | None]:
    """Return the tzinfo for ``name`` and a note when it had to fall back to UTC."""
    if not name:
        return timezone.utc, None
    try:
        return ZoneInfo(name), None
    except (ZoneInfoNotFoundError, ValueError):
        LOGGER.debug("Unknown timezone %r; falling back to UTC", name)
        return timezone.utc, f"Unknown timezone '{name}', showing UTC instead"


def build_time_capability(clock: Callable[[], datetime] | None = None) -> Capability:
    """Build the ``getTime`` capability.

    Args:
        clock: Returns the current aware datetime. Defaults to UTC now.
    """
    now_fn = clock or (lambda: datetime.now(timezone.utc))

    async def get_time(arguments: Mapping[str, Any]) -> str:
        requested = arguments.get("timezone")
        detail = (arguments.get("format") or "full").lower()
        zone, note = _resolve_zone(requested)
        now = now_fn().astimezone(zone)

        lines = ["Current time information:", ""]
        lines.append(f"Local time: {now.strftime('%A, %d %B %Y %H:%M:%S %Z')}")
        if requested:
            lines.append(f"Requested timezone: {requested}")
        if note:
            lines.append(note)
        if detail != "short":
            lines.append(f"Hour: {now.hour}")
            lines.append(f"Minute: {now.minute}")
            lines.append(f"Date: {now.day}/{now.month}/{now.year}")
        lines.append(f"Time of day: {time_of_day(now.hour)}")
        lines.append(f"Unix timestamp: {int(now.timestamp())}")
        return "\n".join(lines)

    return Capability(name=TOOL_NAME, description=DESCRIPTION, handler=get_time, parameters=PARAMETERS)
