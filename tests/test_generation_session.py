"""Tests for :mod:`toolchat.ai.orchestration.session`."""

from __future__ import annotations

import asyncio
from typing import Any, Mapping

import pytest

from toolchat.ai.client import AIStreamEvent
from toolchat.ai.orchestration.session import (
    DEFAULT_INSTRUCTIONS,
    GenerationSession,
    ReplySnapshot,
    SessionKey,
    build_preamble,
)
from toolchat.errors import BackendUnavailable, GenerationError, UnavailableReason
from toolchat.events import EventBus, ToolInvoked

from tests.helpers import EventRecorder, ScriptedClient, make_capability, text_turn, tool_turn

SYSTEM = {"role": "system", "content": DEFAULT_INSTRUCTIONS}


async def _snapshots(session: GenerationSession, text: str) -> list[ReplySnapshot]:
    return [snapshot async for snapshot in session.stream_reply(text)]


async def _final(session: GenerationSession, text: str) -> str:
    snapshots = await _snapshots(session, text)
    return snapshots[-1].text


async def _until(predicate) -> None:
    for _ in range(200):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    @pytest.mark.asyncio
    async def test_snapshots_replace_and_end_with_final(self) -> None:
        session = GenerationSession(ScriptedClient(text_turn("Hel", "lo")), DEFAULT_INSTRUCTIONS)

        snapshots = await _snapshots(session, "Hi")

        assert [snapshot.text for snapshot in snapshots] == ["Hel", "Hello", "Hello"]
        assert [snapshot.final for snapshot in snapshots] == [False, False, True]
        assert sum(snapshot.final for snapshot in snapshots) == 1

    @pytest.mark.asyncio
    async def test_done_text_supersedes_accumulated_deltas(self) -> None:
        script = [
            AIStreamEvent(type="content.delta", content="Draft"),
            AIStreamEvent(type="content.done", content="Final answer"),
        ]
        session = GenerationSession(ScriptedClient(script), DEFAULT_INSTRUCTIONS)

        snapshots = await _snapshots(session, "Hi")

        assert [snapshot.text for snapshot in snapshots] == ["Draft", "Final answer", "Final answer"]

    @pytest.mark.asyncio
    async def test_refusal_becomes_reply_text(self) -> None:
        script = [AIStreamEvent(type="refusal.done", content="I can't help with that.")]
        session = GenerationSession(ScriptedClient(script), DEFAULT_INSTRUCTIONS)

        assert await _final(session, "Hi") == "I can't help with that."

    @pytest.mark.asyncio
    async def test_completed_reply_is_committed_to_history(self) -> None:
        client = ScriptedClient(text_turn("Hello"), text_turn("Again"))
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)

        await _final(session, "Hi")
        await _final(session, "More")

        assert session.history == [
            SYSTEM,
            {"role": "user", "content": "Hi"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "More"},
            {"role": "assistant", "content": "Again"},
        ]
        assert client.calls[1]["messages"][:3] == session.history[:3]

    @pytest.mark.asyncio
    async def test_session_without_tools_sends_none(self) -> None:
        client = ScriptedClient()
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)

        assert await _final(session, "Hi") == "ok"
        assert client.calls[0]["tools"] == []


# =============================================================================
# Tool routing
# =============================================================================


class TestToolRouting:
    @pytest.mark.asyncio
    async def test_tool_result_is_fed_back_to_model(self) -> None:
        calls: list[Mapping[str, Any]] = []
        bus = EventBus()
        recorder = EventRecorder(bus, ToolInvoked)
        client = ScriptedClient(tool_turn("getTime", {"timezone": "UTC"}), text_turn("It is noon"))
        session = GenerationSession(
            client,
            DEFAULT_INSTRUCTIONS,
            [make_capability("getTime", reply="12:00", calls=calls, properties={"timezone": {"type": "string"}})],
            event_bus=bus,
        )

        assert await _final(session, "What time is it?") == "It is noon"

        assert calls == [{"timezone": "UTC"}]
        assert client.calls[0]["tool_names"] == ["getTime"]
        follow_up = client.calls[1]["messages"]
        assert follow_up[-2]["tool_calls"][0]["id"] == "call_1"
        assert follow_up[-1] == {"role": "tool", "tool_call_id": "call_1", "content": "12:00"}
        (invoked,) = recorder.of_type(ToolInvoked)
        assert invoked.tool_name == "getTime"
        assert invoked.success is True

    @pytest.mark.asyncio
    async def test_capability_failure_is_reported_as_text(self) -> None:
        bus = EventBus()
        recorder = EventRecorder(bus, ToolInvoked)
        client = ScriptedClient(tool_turn("memory", {}), text_turn("Sorry"))
        session = GenerationSession(
            client,
            DEFAULT_INSTRUCTIONS,
            [make_capability("memory", error=RuntimeError("disk full"))],
            event_bus=bus,
        )

        assert await _final(session, "Remember this") == "Sorry"

        tool_message = client.calls[1]["messages"][-1]
        assert tool_message["role"] == "tool"
        assert tool_message["content"] == "Error: disk full"
        assert recorder.of_type(ToolInvoked)[0].success is False

    @pytest.mark.asyncio
    async def test_unknown_tool_is_reported_as_text(self) -> None:
        client = ScriptedClient(tool_turn("ghost", {}), text_turn("Done"))
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS, [make_capability("getTime")])

        assert await _final(session, "Hi") == "Done"
        assert client.calls[1]["messages"][-1]["content"] == "Error: Tool 'ghost' is not available"

    @pytest.mark.asyncio
    async def test_missing_call_id_falls_back_to_name_and_index(self) -> None:
        client = ScriptedClient(tool_turn("getTime", {}, call_id=None), text_turn("Done"))
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS, [make_capability("getTime")])

        await _final(session, "Hi")

        assert client.calls[1]["messages"][-1]["tool_call_id"] == "getTime:0"

    @pytest.mark.asyncio
    async def test_malformed_arguments_fail_and_roll_back(self) -> None:
        calls: list[Mapping[str, Any]] = []
        client = ScriptedClient(tool_turn("getTime", '{"timezone": '))
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS, [make_capability("getTime", calls=calls)])

        with pytest.raises(GenerationError, match="Malformed arguments"):
            await _final(session, "Hi")

        assert calls == []
        assert session.history == [{"role": "system", "content": session.preamble}]

    @pytest.mark.asyncio
    async def test_tool_loop_stops_after_max_iterations(self) -> None:
        calls: list[Mapping[str, Any]] = []
        client = ScriptedClient(
            tool_turn("getTime", {}),
            tool_turn("getTime", {}, call_id="call_2"),
        )
        session = GenerationSession(
            client,
            DEFAULT_INSTRUCTIONS,
            [make_capability("getTime", calls=calls)],
            max_tool_iterations=1,
        )

        snapshots = await _snapshots(session, "Hi")

        assert snapshots[-1] == ReplySnapshot("", final=True)
        assert len(client.calls) == 2
        assert calls == [{}]
        assert session.history[-1] == {"role": "assistant", "content": ""}


# =============================================================================
# Failures and cancellation
# =============================================================================


class TestFailures:
    @pytest.mark.asyncio
    async def test_backend_exception_becomes_generation_error(self) -> None:
        session = GenerationSession(ScriptedClient(RuntimeError("socket closed")), DEFAULT_INSTRUCTIONS)

        with pytest.raises(GenerationError, match="socket closed") as excinfo:
            await _final(session, "Hi")

        assert isinstance(excinfo.value.cause, RuntimeError)
        assert session.history == [SYSTEM]

    @pytest.mark.asyncio
    async def test_backend_unavailable_propagates(self) -> None:
        error = BackendUnavailable(UnavailableReason.DISABLED)
        session = GenerationSession(ScriptedClient(error), DEFAULT_INSTRUCTIONS)

        with pytest.raises(BackendUnavailable):
            await _final(session, "Hi")

    @pytest.mark.asyncio
    async def test_failure_mid_stream_discards_partial_turn(self) -> None:
        script = [AIStreamEvent(type="content.delta", content="Half"), GenerationError("Stream interrupted")]
        client = ScriptedClient(script)
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)
        seen: list[str] = []

        with pytest.raises(GenerationError):
            async for snapshot in session.stream_reply("Hi"):
                seen.append(snapshot.text)

        assert seen == ["Half"]
        assert session.history == [SYSTEM]

    @pytest.mark.asyncio
    async def test_cancellation_rolls_back(self) -> None:
        gate = asyncio.Event()
        client = ScriptedClient([AIStreamEvent(type="content.delta", content="Hi"), gate])
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)
        seen: list[ReplySnapshot] = []

        async def consume() -> None:
            async for snapshot in session.stream_reply("Hello"):
                seen.append(snapshot)

        task = asyncio.create_task(consume())
        await _until(lambda: bool(seen))
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert session.history == [SYSTEM]
        assert not session.is_busy
        assert not any(snapshot.final for snapshot in seen)


# =============================================================================
# Concurrency and lifecycle
# =============================================================================


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_concurrent_replies_are_serialized(self) -> None:
        gate = asyncio.Event()
        first_script = [
            AIStreamEvent(type="content.delta", content="A"),
            gate,
            AIStreamEvent(type="content.done", content="A"),
        ]
        client = ScriptedClient(first_script, text_turn("B"))
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)

        first = asyncio.create_task(_final(session, "one"))
        await _until(lambda: len(client.calls) == 1)
        second = asyncio.create_task(_final(session, "two"))
        for _ in range(10):
            await asyncio.sleep(0)

        assert len(client.calls) == 1
        assert session.is_busy
        gate.set()

        assert await first == "A"
        assert await second == "B"
        assert [message["content"] for message in client.calls[1]["messages"][1:]] == ["one", "A", "two"]

    @pytest.mark.asyncio
    async def test_reset_drops_context_but_keeps_preamble(self) -> None:
        tools = [make_capability("getTime", description="Tells the time")]
        session = GenerationSession(ScriptedClient(), DEFAULT_INSTRUCTIONS, tools)
        await _final(session, "Hi")

        session.reset()

        assert session.history == [{"role": "system", "content": session.preamble}]
        assert "- getTime: Tells the time" in session.preamble
        assert session.tool_names == ("getTime",)

    @pytest.mark.asyncio
    async def test_prewarm_issues_background_request(self) -> None:
        client = ScriptedClient()
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)

        session.prewarm()
        session.prewarm()
        await _until(lambda: client.list_models_calls == 1)
        session.close()

    @pytest.mark.asyncio
    async def test_prewarm_failure_is_swallowed(self) -> None:
        class _FailingClient(ScriptedClient):
            async def list_models(self, *, force_refresh: bool = False) -> list[str]:
                self.list_models_calls += 1
                raise ConnectionError("offline")

        client = _FailingClient()
        session = GenerationSession(client, DEFAULT_INSTRUCTIONS)

        session.prewarm()
        await _until(lambda: client.list_models_calls == 1)
        await asyncio.sleep(0)

        assert await _final(session, "Hi") == "ok"

    def test_prewarm_without_event_loop_is_noop(self) -> None:
        session = GenerationSession(ScriptedClient(), DEFAULT_INSTRUCTIONS)
        session.prewarm()


class TestKeys:
    def test_fingerprint_tracks_tool_subset(self) -> None:
        base = SessionKey("Be helpful", ("getTime",))
        assert base.fingerprint == SessionKey("Be helpful", ("getTime",)).fingerprint
        assert base.fingerprint != SessionKey("Be helpful", ("getTime", "memory")).fingerprint
        assert base.fingerprint != SessionKey("Be terse", ("getTime",)).fingerprint
        assert len(base.fingerprint) == 16

    def test_preamble_without_tools_is_instructions(self) -> None:
        assert build_preamble("  Be helpful.  ", ()) == "Be helpful."
