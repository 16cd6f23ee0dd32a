"""Shared test helpers and stub classes.

Import from here instead of duplicating these classes in individual test files.

Example:
    from tests.helpers import ScriptedClient, text_turn

    client = ScriptedClient(text_turn("Hi", " there"))
"""

from __future__ import annotations

import asyncio
import json
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any, Iterable, Mapping, cast

from openai import AsyncOpenAI

from toolchat.ai.client import AIClient, AIStreamEvent, Availability, ClientSettings
from toolchat.ai.tools.types import Capability, object_schema
from toolchat.events import Event, EventBus


def text_turn(*pieces: str) -> list[AIStreamEvent]:
    """Script one model turn streaming ``pieces`` and then completing."""

    events = [AIStreamEvent(type="content.delta", content=piece) for piece in pieces]
    events.append(AIStreamEvent(type="content.done", content="".join(pieces)))
    return events


def tool_turn(
    name: str,
    arguments: Mapping[str, Any] | str,
    *,
    call_id: str | None = "call_1",
    index: int = 0,
) -> list[AIStreamEvent]:
    """Script one model turn that only requests a tool call."""

    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return [
        AIStreamEvent(
            type="tool_calls.function.arguments.done",
            tool_name=name,
            tool_index=index,
            tool_arguments=raw,
            tool_call_id=call_id,
        )
    ]


class ScriptedClient:
    """Stand-in for :class:`~toolchat.ai.client.AIClient` replaying scripted turns.

    Each call to ``stream_chat`` consumes the next script. A script is a list
    of stream events; an exception instance in the list is raised at that
    point, and an :class:`asyncio.Event` in the list pauses the stream until
    it is set. An exception instance as a whole script fails the call before
    any event. When the scripts run out every call replies ``"ok"``.
    """

    def __init__(self, *scripts: Any) -> None:
        self.scripts: list[Any] = list(scripts)
        self.calls: list[dict[str, Any]] = []
        self.list_models_calls = 0
        self.availability_result = Availability.ok()
        self.closed = False

    def queue(self, *scripts: Any) -> None:
        self.scripts.extend(scripts)

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any]],
        *,
        tools: Iterable[Mapping[str, Any]] | None = None,
        temperature: float | None = None,
        **_: Any,
    ):
        tool_defs = list(tools or [])
        self.calls.append(
            {
                "messages": [dict(message) for message in messages],
                "tools": tool_defs,
                "tool_names": [tool["function"]["name"] for tool in tool_defs],
            }
        )
        script = self.scripts.pop(0) if self.scripts else text_turn("ok")
        if isinstance(script, BaseException):
            raise script
        for item in script:
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, asyncio.Event):
                await item.wait()
                continue
            yield item

    async def list_models(self, *, force_refresh: bool = False) -> list[str]:
        self.list_models_calls += 1
        return ["test-model"]

    async def availability(self, *, force_refresh: bool = False) -> Availability:
        return self.availability_result

    async def aclose(self) -> None:
        self.closed = True


def make_capability(
    name: str,
    reply: str = "done",
    *,
    description: str | None = None,
    calls: list[Mapping[str, Any]] | None = None,
    properties: Mapping[str, Mapping[str, Any]] | None = None,
    error: Exception | None = None,
) -> Capability:
    """Build a capability returning ``reply`` and recording its arguments."""

    async def handler(arguments: Mapping[str, Any]) -> str:
        if calls is not None:
            calls.append(dict(arguments))
        if error is not None:
            raise error
        return reply

    return Capability(
        name=name,
        description=description or f"{name} capability",
        handler=handler,
        parameters=object_schema(properties or {}),
    )


class EventRecorder:
    """Subscribes to event types on a bus and records what was published."""

    def __init__(self, bus: EventBus, *event_types: type[Event]) -> None:
        self.events: list[Event] = []
        for event_type in event_types:
            bus.subscribe(event_type, self._record)

    def _record(self, event: Event) -> None:
        self.events.append(event)

    def of_type(self, event_type: type[Event]) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


# =============================================================================
# OpenAI client fakes
# =============================================================================


@dataclass
class FakeStreamEvent:
    """Simple structure emulating ChatCompletionStreamEvent attributes."""

    type: str
    delta: str | None = None
    content: str | None = None
    name: str | None = None
    index: int | None = None
    arguments: str | None = None
    refusal: str | None = None
    chunk: Any | None = None


class _FakeStream:
    def __init__(self, events: Iterable[Any]):
        self._iterator = iter(list(events))

    def __aiter__(self) -> "_FakeStream":
        return self

    async def __anext__(self) -> FakeStreamEvent:
        try:
            item = next(self._iterator)
        except StopIteration as exc:
            raise StopAsyncIteration from exc
        if isinstance(item, BaseException):
            raise item
        return item


class _FakeStreamContext:
    def __init__(self, events: Iterable[Any]):
        self._events = list(events)

    async def __aenter__(self) -> _FakeStream:
        return _FakeStream(self._events)

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeCompletions:
    """Replays one event list per ``stream`` call; the last list repeats.

    An exception instance inside a list is raised when the stream reaches it.
    """

    def __init__(self, *attempts: Iterable[Any]):
        self._attempts = [list(events) for events in attempts] or [[]]
        self.calls: list[dict[str, Any]] = []

    def stream(self, **kwargs: Any) -> _FakeStreamContext:
        self.calls.append(kwargs)
        index = min(len(self.calls) - 1, len(self._attempts) - 1)
        return _FakeStreamContext(self._attempts[index])


class FakeModels:
    def __init__(self, payload: list[SimpleNamespace] | None = None, error: Exception | None = None):
        self._payload = payload or []
        self._error = error
        self.calls = 0

    async def list(self) -> SimpleNamespace:
        self.calls += 1
        if self._error is not None:
            raise self._error
        return SimpleNamespace(data=self._payload)


def fake_openai_client(*attempts: Iterable[Any], models: FakeModels | None = None) -> SimpleNamespace:
    """Build an object shaped like ``AsyncOpenAI`` for :class:`AIClient`."""

    return SimpleNamespace(
        chat=SimpleNamespace(completions=FakeCompletions(*attempts)),
        models=models or FakeModels([SimpleNamespace(id="test-model")]),
    )


def real_client(fake_client: SimpleNamespace, **overrides: Any) -> AIClient:
    """Wrap ``fake_client`` in a real :class:`AIClient` with instant retries."""

    settings = ClientSettings(
        base_url="http://local",
        api_key="test",
        model=overrides.pop("model", "test-model"),
        max_retries=overrides.pop("max_retries", 1),
        retry_min_seconds=0.0,
        retry_max_seconds=0.0,
        **overrides,
    )
    return AIClient(settings, client=cast(AsyncOpenAI, fake_client))
