"""Tool registry holding known capabilities and the enabled subset.

The set of known capabilities is fixed when the registry is built; only the
enabled-name set changes afterwards. Sessions never read the registry
directly, they receive a snapshot of :meth:`ToolRegistry.active_subset`.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator

from .types import Capability

__all__ = [
    "ToolRegistry",
    "DuplicateToolError",
]

LOGGER = logging.getLogger(__name__)

_UNKNOWN_DESCRIPTION = "Unknown tool"


class DuplicateToolError(Exception):
    """Raised when two capabilities share the same name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")


class ToolRegistry:
    """Registry for the universe of capabilities and which ones are enabled.

    Example:
        registry = ToolRegistry([time_tool, weather_tool], enabled={"getTime"})
        registry.toggle("getWeather")
        names = [tool.name for tool in registry.active_subset()]
    """

    def __init__(
        self,
        capabilities: Iterable[Capability],
        *,
        enabled: Iterable[str] | None = None,
    ) -> None:
        """Initialize the registry.

        Args:
            capabilities: Known capabilities, in declaration order.
            enabled: Names enabled initially. Defaults to every known name.

        Raises:
            DuplicateToolError: If two capabilities share a name.
        """
        self._known: dict[str, Capability] = {}
        for capability in capabilities:
            if capability.name in self._known:
                raise DuplicateToolError(capability.name)
            self._known[capability.name] = capability
            LOGGER.debug("Registered tool: %s", capability.name)
        if enabled is None:
            self._enabled: set[str] = set(self._known)
        else:
            self._enabled = set(enabled)

    def list_known(self) -> tuple[Capability, ...]:
        """Return every registered capability in declaration order."""
        return tuple(self._known.values())

    def get(self, name: str) -> Capability | None:
        """Return a known capability by name, enabled or not."""
        return self._known.get(name)

    def describe(self, name: str) -> str:
        """Return the human-readable description for ``name``."""
        capability = self._known.get(name)
        if capability is None:
            return _UNKNOWN_DESCRIPTION
        return capability.description

    def is_enabled(self, name: str) -> bool:
        return name in self._enabled

    def enabled_names(self) -> tuple[str, ...]:
        """Return enabled names that are known, in declaration order."""
        return tuple(capability.name for capability in self.active_subset())

    def toggle(self, name: str) -> bool:
        """Flip membership of ``name`` in the enabled set.

        Sessions built before the toggle keep their own snapshot; the change
        applies from the next session construction.

        Returns:
            Whether ``name`` is enabled after the toggle.
        """
        if name in self._enabled:
            self._enabled.discard(name)
            enabled = False
        else:
            self._enabled.add(name)
            enabled = True
        if name not in self._known:
            LOGGER.debug("Toggled unknown tool name %s (enabled=%s)", name, enabled)
        else:
            LOGGER.debug("Toggled tool %s (enabled=%s)", name, enabled)
        return enabled

    def set_enabled(self, names: Iterable[str]) -> None:
        """Replace the enabled set, e.g. when restoring persisted preferences."""
        self._enabled = set(names)

    def active_subset(self) -> tuple[Capability, ...]:
        """Return known ∩ enabled in declaration order, recomputed on each call."""
        return tuple(
            capability for name, capability in self._known.items() if name in self._enabled
        )

    def __iter__(self) -> Iterator[Capability]:
        return iter(self._known.values())

    def __len__(self) -> int:
        """Get the number of known capabilities (enabled or not)."""
        return len(self._known)

    def __contains__(self, name: object) -> bool:
        return name in self._known
