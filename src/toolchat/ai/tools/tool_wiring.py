"""Builds the default capability set and its registry."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable

from .memory_tool import MemoryStore, build_memory_capability
from .registry import ToolRegistry
from .time_tool import build_time_capability
from .types import Capability
from .weather_tool import build_weather_capability

LOGGER = logging.getLogger(__name__)

MEMORY_FILENAME = "memories.json"


def default_capabilities(memory_store: MemoryStore) -> tuple[Capability, ...]:
    """Return the built-in capabilities in declaration order."""
    return (
        build_weather_capability(),
        build_time_capability(),
        build_memory_capability(memory_store),
    )


def build_registry(
    data_dir: Path | None,
    *,
    enabled: Iterable[str] | None = None,
) -> ToolRegistry:
    """Create the registry for the built-in capabilities.

    Args:
        data_dir: Directory holding the memory file, or None for in-process memories.
        enabled: Names enabled initially; every built-in when omitted.
    """
    memory_path = data_dir / MEMORY_FILENAME if data_dir is not None else None
    registry = ToolRegistry(default_capabilities(MemoryStore(memory_path)), enabled=enabled)
    LOGGER.debug(
        "Built tool registry (known=%s, enabled=%s)",
        [capability.name for capability in registry.list_known()],
        list(registry.enabled_names()),
    )
    return registry
