"""Tool executor bound to one session's capability snapshot.

The executor is a dispatch table (name → capability) built from the subset a
session was constructed with. It decodes and validates the backend-supplied
arguments, runs the capability with a timeout and reports failures as
:class:`ToolInvocationError` so the session can feed them back as text.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ...errors import GenerationError, ToolInvocationError
from .types import Capability

__all__ = [
    "ToolExecutor",
    "ExecutorConfig",
    "ToolOutcome",
]

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class ExecutorConfig:
    """Configuration for the tool executor.

    Attributes:
        default_timeout: Timeout for a single capability call in seconds.
        log_arguments: Whether to log tool arguments (may contain personal data).
        log_results: Whether to log tool results.
    """

    default_timeout: float | None = 30.0
    log_arguments: bool = False
    log_results: bool = False


@dataclass(slots=True, frozen=True)
class ToolOutcome:
    """Result of a single capability call."""

    name: str
    call_id: str
    text: str
    duration_ms: float


class ToolExecutor:
    """Dispatch table for the capabilities bound to a generation session.

    Example:
        executor = ToolExecutor([time_tool])
        outcome = await executor.execute("getTime", '{"timezone": "UTC"}')
    """

    def __init__(
        self,
        capabilities: Iterable[Capability],
        config: ExecutorConfig | None = None,
    ) -> None:
        self._table: dict[str, Capability] = {capability.name: capability for capability in capabilities}
        self._validators: dict[str, Draft202012Validator] = {}
        self._config = config or ExecutorConfig()

    @property
    def config(self) -> ExecutorConfig:
        return self._config

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._table)

    def has_tool(self, name: str) -> bool:
        return name in self._table

    def openai_tools(self) -> list[dict[str, Any]]:
        """Return tool definitions in OpenAI format for the bound capabilities."""
        return [capability.to_openai_tool() for capability in self._table.values()]

    async def execute(
        self,
        name: str,
        arguments: str | Mapping[str, Any] | None,
        *,
        call_id: str = "",
    ) -> ToolOutcome:
        """Execute a bound capability by name.

        Args:
            name: Name requested by the model.
            arguments: Raw JSON text or already-decoded arguments.
            call_id: Backend identifier of the call, for tracing.

        Returns:
            The capability's textual result.

        Raises:
            GenerationError: If the arguments cannot be decoded or violate the
                capability's schema.
            ToolInvocationError: If the name is not bound to this session, the
                capability fails or it times out.
        """
        capability = self._table.get(name)
        if capability is None:
            LOGGER.warning("Tool '%s' is not available in this session", name)
            raise ToolInvocationError(f"Tool '{name}' is not available", tool_name=name)

        decoded = self._decode_arguments(name, arguments)
        self._validate_arguments(capability, decoded)

        if self._config.log_arguments:
            LOGGER.debug("Executing tool %s (call_id=%s) with arguments: %s", name, call_id, decoded)
        else:
            LOGGER.debug("Executing tool %s (call_id=%s)", name, call_id)

        timeout = self._config.default_timeout
        start_time = time.perf_counter()
        try:
            if timeout is not None and timeout > 0:
                text = await asyncio.wait_for(capability.invoke(decoded), timeout=timeout)
            else:
                text = await capability.invoke(decoded)
        except asyncio.TimeoutError as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning(
                "Tool %s timed out after %.1fms (timeout=%.1fs)",
                name,
                duration_ms,
                timeout,
            )
            raise ToolInvocationError(
                f"Tool '{name}' timed out after {timeout:g}s",
                tool_name=name,
                cause=exc,
            ) from exc
        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            LOGGER.warning("Tool %s failed after %.1fms: %s", name, duration_ms, exc)
            raise ToolInvocationError(str(exc) or type(exc).__name__, tool_name=name, cause=exc) from exc

        duration_ms = (time.perf_counter() - start_time) * 1000
        if self._config.log_results:
            LOGGER.debug("Tool %s completed in %.1fms with result: %s", name, duration_ms, text)
        else:
            LOGGER.debug("Tool %s completed in %.1fms", name, duration_ms)
        return ToolOutcome(name=name, call_id=call_id, text=text, duration_ms=duration_ms)

    @staticmethod
    def _decode_arguments(name: str, arguments: str | Mapping[str, Any] | None) -> dict[str, Any]:
        if arguments is None:
            return {}
        if isinstance(arguments, Mapping):
            return dict(arguments)
        text = arguments.strip()
        if not text:
            return {}
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError as exc:
            raise GenerationError(f"Malformed arguments for tool '{name}': {exc.msg}", cause=exc) from exc
        if not isinstance(decoded, dict):
            raise GenerationError(f"Malformed arguments for tool '{name}': expected a JSON object")
        return decoded

    def _validate_arguments(self, capability: Capability, arguments: Mapping[str, Any]) -> None:
        validator = self._validators.get(capability.name)
        if validator is None:
            try:
                Draft202012Validator.check_schema(capability.parameters)
            except SchemaError as exc:
                raise ToolInvocationError(
                    f"Tool '{capability.name}' declares an invalid schema: {exc.message}",
                    tool_name=capability.name,
                    cause=exc,
                ) from exc
            validator = Draft202012Validator(capability.parameters)
            self._validators[capability.name] = validator
        error = next(iter(validator.iter_errors(arguments)), None)
        if error is not None:
            location = "/".join(str(part) for part in error.absolute_path) or "arguments"
            raise GenerationError(
                f"Malformed arguments for tool '{capability.name}' at {location}: {error.message}"
            )
