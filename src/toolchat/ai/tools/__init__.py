"""Capabilities, the registry that enables them and the executor that runs them.

Example:
    from toolchat.ai.tools import Capability, ToolRegistry, ToolExecutor

    async def greet(args):
        return f"Hello, {args.get('name', 'World')}!"

    registry = ToolRegistry([Capability(name="greet", description="Greet", handler=greet)])
    executor = ToolExecutor(registry.active_subset())
    outcome = await executor.execute("greet", '{"name": "Alice"}')
"""

from .types import (
    Capability,
    CapabilityHandler,
    object_schema,
)

from .registry import (
    ToolRegistry,
    DuplicateToolError,
)

from .executor import (
    ToolExecutor,
    ExecutorConfig,
    ToolOutcome,
)

__all__ = [
    # types.py
    "Capability",
    "CapabilityHandler",
    "object_schema",
    # registry.py
    "ToolRegistry",
    "DuplicateToolError",
    # executor.py
    "ToolExecutor",
    "ExecutorConfig",
    "ToolOutcome",
]
