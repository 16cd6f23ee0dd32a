"""Generation session bound to an immutable (instructions, tools) snapshot."""

from __future__ import annotations

import asyncio
import hashlib
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Sequence

from ...errors import BackendUnavailable, GenerationError, ToolInvocationError
from ...events import EventBus, ToolInvoked
from ..client import AIClient
from ..tools.executor import ExecutorConfig, ToolExecutor
from ..tools.types import Capability

__all__ = [
    "DEFAULT_INSTRUCTIONS",
    "GenerationSession",
    "ReplySnapshot",
    "SessionKey",
    "ToolCallRequest",
    "build_preamble",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = (
    "You are a helpful AI assistant. Provide clear, concise, and helpful responses to user questions."
)
DEFAULT_MAX_TOOL_ITERATIONS = 8


@dataclass(slots=True, frozen=True)
class ReplySnapshot:
    """Latest partial (or final) reply text; each snapshot replaces the previous one."""

    text: str
    final: bool = False


@dataclass(slots=True, frozen=True)
class SessionKey:
    """Invalidation token identifying what a session was built with."""

    instructions: str
    tool_names: tuple[str, ...] = ()

    @property
    def fingerprint(self) -> str:
        digest = hashlib.sha256()
        digest.update(self.instructions.encode("utf-8"))
        for name in self.tool_names:
            digest.update(b"\x1f")
            digest.update(name.encode("utf-8"))
        return digest.hexdigest()[:16]


@dataclass(slots=True)
class ToolCallRequest:
    """Tool call emitted by the model during one streamed turn."""

    call_id: str
    name: str
    index: int
    arguments: str | None

    def as_message_entry(self) -> Dict[str, Any]:
        return {
            "id": self.call_id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments or "{}"},
        }


@dataclass(slots=True)
class _ModelTurn:
    text: str = ""
    tool_calls: List[ToolCallRequest] = field(default_factory=list)


def build_preamble(instructions: str, tools: Sequence[Capability]) -> str:
    """Compose the system preamble enumerating the bound tools."""

    text = instructions.strip()
    if not tools:
        return text
    lines = [text, "", "You can use the following tools when they help answer the user:"]
    lines.extend(f"- {tool.name}: {tool.description}" for tool in tools)
    return "\n".join(lines)


class GenerationSession:
    """One live backend context with a fixed tool subset.

    The session keeps the backend-side message history. ``stream_reply``
    appends to it only when a reply completes; failed or cancelled calls leave
    the history as it was before the call.
    """

    def __init__(
        self,
        client: AIClient,
        instructions: str,
        tools: Sequence[Capability] = (),
        *,
        executor_config: ExecutorConfig | None = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        temperature: float | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._client = client
        self._tools = tuple(tools)
        self._key = SessionKey(instructions, tuple(tool.name for tool in self._tools))
        self._preamble = build_preamble(instructions, self._tools)
        self._executor = ToolExecutor(self._tools, executor_config)
        self._max_tool_iterations = max(0, max_tool_iterations)
        self._temperature = temperature
        self._event_bus = event_bus
        self._messages: List[Dict[str, Any]] = self._initial_messages()
        self._lock = asyncio.Lock()
        self._prewarm_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def key(self) -> SessionKey:
        return self._key

    @property
    def tool_names(self) -> tuple[str, ...]:
        return self._key.tool_names

    @property
    def preamble(self) -> str:
        return self._preamble

    @property
    def history(self) -> List[Dict[str, Any]]:
        return [dict(message) for message in self._messages]

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def stream_reply(self, user_text: str) -> AsyncIterator[ReplySnapshot]:
        """Stream the reply to ``user_text`` as replacing snapshots.

        The last snapshot has ``final=True``. A second caller waits for the
        first call to finish.

        Raises:
            GenerationError: If the backend fails or the model sends malformed
                tool arguments.
            BackendUnavailable: If the client cannot reach any backend.
        """

        async with self._lock:
            messages = self._messages
            checkpoint = len(messages)
            messages.append({"role": "user", "content": user_text})
            committed = False
            try:
                final_text = ""
                for round_index in range(self._max_tool_iterations + 1):
                    turn = _ModelTurn()
                    async with aclosing(self._stream_model_turn(messages, turn)) as snapshots:
                        async for snapshot in snapshots:
                            yield snapshot
                    final_text = turn.text

                    if turn.tool_calls and round_index >= self._max_tool_iterations:
                        LOGGER.warning(
                            "Tool loop stopped after %s iteration(s); returning last text",
                            self._max_tool_iterations,
                        )
                        turn.tool_calls.clear()

                    messages.append(self._assistant_message(turn))
                    if not turn.tool_calls:
                        break
                    for call in turn.tool_calls:
                        messages.append(await self._run_tool(call))
                committed = True
            except (GenerationError, BackendUnavailable):
                raise
            except Exception as exc:
                raise GenerationError(str(exc) or type(exc).__name__, cause=exc) from exc
            finally:
                if not committed:
                    LOGGER.debug("Discarding %s uncommitted message(s)", len(messages) - checkpoint)
                    del messages[checkpoint:]
            yield ReplySnapshot(final_text, final=True)

    async def _stream_model_turn(
        self,
        messages: List[Dict[str, Any]],
        turn: _ModelTurn,
    ) -> AsyncIterator[ReplySnapshot]:
        tools = self._executor.openai_tools() or None
        done_text: str | None = None
        stream = self._client.stream_chat(messages, tools=tools, temperature=self._temperature)
        async with aclosing(stream) as events:
            async for event in events:
                if event.type == "content.delta" and event.content:
                    turn.text += event.content
                    yield ReplySnapshot(turn.text)
                elif event.type == "content.done" and event.content is not None:
                    done_text = event.content
                elif event.type == "refusal.done" and event.content:
                    done_text = event.content
                elif event.type == "tool_calls.function.arguments.done":
                    turn.tool_calls.append(self._tool_call_from_event(event, len(turn.tool_calls)))
        if done_text is not None and done_text != turn.text:
            turn.text = done_text
            yield ReplySnapshot(turn.text)

    @staticmethod
    def _tool_call_from_event(event: Any, fallback_index: int) -> ToolCallRequest:
        name = event.tool_name or ""
        index = event.tool_index if event.tool_index is not None else fallback_index
        call_id = event.tool_call_id or f"{name or 'tool'}:{index}"
        return ToolCallRequest(call_id=call_id, name=name, index=index, arguments=event.tool_arguments)

    async def _run_tool(self, call: ToolCallRequest) -> Dict[str, Any]:
        success = True
        duration_ms = 0.0
        try:
            outcome = await self._executor.execute(call.name, call.arguments, call_id=call.call_id)
        except ToolInvocationError as exc:
            success = False
            content = f"Error: {exc}"
        else:
            content = outcome.text
            duration_ms = outcome.duration_ms
        if self._event_bus is not None:
            self._event_bus.publish(
                ToolInvoked(
                    tool_name=call.name,
                    call_id=call.call_id,
                    success=success,
                    duration_ms=duration_ms,
                )
            )
        return {"role": "tool", "tool_call_id": call.call_id, "content": content}

    @staticmethod
    def _assistant_message(turn: _ModelTurn) -> Dict[str, Any]:
        message: Dict[str, Any] = {"role": "assistant", "content": turn.text or None}
        if turn.tool_calls:
            message["tool_calls"] = [call.as_message_entry() for call in turn.tool_calls]
        elif not turn.text:
            message["content"] = ""
        return message

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prewarm(self) -> None:
        """Schedule a background warm-up request; never raises."""

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.debug("Prewarm skipped: no running event loop")
            return
        if self._prewarm_task is not None and not self._prewarm_task.done():
            return
        try:
            self._prewarm_task = loop.create_task(self._prewarm())
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("Prewarm could not be scheduled: %s", exc)

    async def _prewarm(self) -> None:
        try:
            await self._client.list_models()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.debug("Prewarm request failed: %s", exc)
        else:
            LOGGER.debug("Session %s prewarmed", self._key.fingerprint)

    def reset(self) -> None:
        """Drop the accumulated context, keeping the bound preamble and tools."""

        self._messages = self._initial_messages()
        LOGGER.debug("Session %s reset", self._key.fingerprint)

    def close(self) -> None:
        task = self._prewarm_task
        self._prewarm_task = None
        if task is not None and not task.done():
            task.cancel()

    def _initial_messages(self) -> List[Dict[str, Any]]:
        return [{"role": "system", "content": self._preamble}]
