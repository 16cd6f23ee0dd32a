"""Capability types for the tool-calling engine.

Capabilities are plain data: a name, a description, a JSON schema for the
arguments and an async handler returning text. There is no class hierarchy;
the executor dispatches by name through a table of these records.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Mapping

__all__ = [
    "Capability",
    "CapabilityHandler",
    "object_schema",
]

CapabilityHandler = Callable[[Mapping[str, Any]], Awaitable[str]]


def object_schema(
    properties: Mapping[str, Mapping[str, Any]] | None = None,
    *,
    required: tuple[str, ...] = (),
) -> dict[str, Any]:
    """Build a JSON schema describing an object argument payload."""

    schema: dict[str, Any] = {
        "type": "object",
        "properties": {name: dict(spec) for name, spec in (properties or {}).items()},
        "additionalProperties": False,
    }
    if required:
        schema["required"] = list(required)
    return schema


@dataclass(slots=True, frozen=True)
class Capability:
    """A named, described, schema-typed async callable the model may invoke.

    Attributes:
        name: Unique identifier within a registry.
        description: Human-readable description, copied verbatim into the
            session preamble and the backend tool definition.
        handler: Coroutine function receiving the decoded arguments.
        parameters: JSON schema for the arguments object.
    """

    name: str
    description: str
    handler: CapabilityHandler = field(compare=False, repr=False)
    parameters: Mapping[str, Any] = field(default_factory=object_schema, compare=False)

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValueError("Capability name is required")
        if not inspect.iscoroutinefunction(self.handler):
            raise TypeError(f"Capability '{self.name}' handler must be a coroutine function")

    async def invoke(self, arguments: Mapping[str, Any]) -> str:
        """Run the handler and coerce its result to text."""
        result = await self.handler(arguments)
        return result if isinstance(result, str) else str(result)

    def to_openai_tool(self) -> dict[str, Any]:
        """Convert to OpenAI tool definition format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": dict(self.parameters) if self.parameters else object_schema(),
            },
        }
