"""Owns the current generation session and serializes replies through it."""

from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing

from ...errors import BackendUnavailable, GenerationError
from ...events import ErrorChanged, EventBus, LoadingChanged, ReplyStreamed, SessionRebuilt, ToolToggled
from ..client import AIClient, Availability
from ..tools.executor import ExecutorConfig
from ..tools.registry import ToolRegistry
from .session import (
    DEFAULT_INSTRUCTIONS,
    DEFAULT_MAX_TOOL_ITERATIONS,
    GenerationSession,
    SessionKey,
    build_preamble,
)

__all__ = [
    "EMPTY_REPLY_ERROR",
    "EMPTY_REPLY_TEXT",
    "ERROR_REPLY_TEXT",
    "SessionOrchestrator",
]

LOGGER = logging.getLogger(__name__)

ERROR_REPLY_TEXT = "I'm sorry, there was an error generating a response."
EMPTY_REPLY_TEXT = "I'm sorry, I couldn't generate a response."
EMPTY_REPLY_ERROR = "The model did not return any text."


class SessionOrchestrator:
    """Keeps one generation session matching the registry's active subset.

    The session is rebuilt whenever the :class:`SessionKey` derived from the
    instructions and ``registry.active_subset()`` differs from the key the
    current session was built with. Rebuilds happen in
    :meth:`ensure_current_session`, which runs before every reply and after
    every :meth:`toggle_tool`.
    """

    def __init__(
        self,
        client: AIClient,
        registry: ToolRegistry,
        *,
        instructions: str = DEFAULT_INSTRUCTIONS,
        event_bus: EventBus | None = None,
        executor_config: ExecutorConfig | None = None,
        max_tool_iterations: int = DEFAULT_MAX_TOOL_ITERATIONS,
        temperature: float | None = None,
    ) -> None:
        self._client = client
        self._registry = registry
        self._instructions = instructions
        self._event_bus = event_bus
        self._executor_config = executor_config
        self._max_tool_iterations = max_tool_iterations
        self._temperature = temperature
        self._session: GenerationSession | None = None
        self._lock = asyncio.Lock()
        self._is_loading = False
        self._last_error: str | None = None

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def is_loading(self) -> bool:
        return self._is_loading

    @property
    def last_error(self) -> str | None:
        return self._last_error

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def client(self) -> AIClient:
        return self._client

    @property
    def session(self) -> GenerationSession | None:
        """The current session, if one was built."""
        return self._session

    def current_key(self) -> SessionKey:
        names = tuple(capability.name for capability in self._registry.active_subset())
        return SessionKey(self._instructions, names)

    def preamble(self) -> str:
        return build_preamble(self._instructions, self._registry.active_subset())

    def dismiss_error(self) -> None:
        self._set_error(None)

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    def ensure_current_session(self) -> GenerationSession:
        """Return the current session, rebuilding it when its key is stale."""

        tools = self._registry.active_subset()
        key = SessionKey(self._instructions, tuple(capability.name for capability in tools))
        session = self._session
        if session is not None and session.key == key:
            return session

        if session is not None:
            session.close()
        session = GenerationSession(
            self._client,
            self._instructions,
            tools,
            executor_config=self._executor_config,
            max_tool_iterations=self._max_tool_iterations,
            temperature=self._temperature,
            event_bus=self._event_bus,
        )
        self._session = session
        LOGGER.info("Built generation session %s with tools %s", key.fingerprint, list(key.tool_names))
        self._publish(SessionRebuilt(tool_names=key.tool_names, fingerprint=key.fingerprint))
        return session

    def toggle_tool(self, name: str) -> bool:
        """Flip ``name`` in the registry and rebuild the session for the next reply."""

        enabled = self._registry.toggle(name)
        self._publish(ToolToggled(tool_name=name, enabled=enabled))
        self.ensure_current_session()
        return enabled

    def clear_current(self) -> None:
        """Reset the current session's context; no-op when none exists."""

        if self._session is None:
            return
        self._session.reset()

    def prewarm(self) -> None:
        """Warm up the current session in the background; never raises."""

        try:
            self.ensure_current_session().prewarm()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("Prewarm failed: %s", exc)

    async def availability(self, *, force_refresh: bool = False) -> Availability:
        return await self._client.availability(force_refresh=force_refresh)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate_reply(self, text: str) -> str:
        """Return the model's full reply to ``text``.

        Failures never propagate: ``last_error`` is set and a fallback reply
        is returned instead. Cancellation propagates to the caller.
        """

        async with self._lock:
            self._set_loading(True)
            self._set_error(None)
            final_text = ""
            try:
                session = self.ensure_current_session()
                async with aclosing(session.stream_reply(text)) as stream:
                    async for snapshot in stream:
                        final_text = snapshot.text
                        self._publish(ReplyStreamed(text=snapshot.text, final=snapshot.final))
            except (GenerationError, BackendUnavailable) as exc:
                LOGGER.warning("Reply generation failed: %s", exc)
                self._set_error(f"Error: {exc}")
                return ERROR_REPLY_TEXT
            finally:
                self._set_loading(False)

        if not final_text.strip():
            self._set_error(EMPTY_REPLY_ERROR)
            return EMPTY_REPLY_TEXT
        return final_text

    async def complete(self, prompt: str) -> str:
        """Run a one-shot, tool-less generation outside the chat context.

        Raises:
            GenerationError: If the backend fails.
            BackendUnavailable: If no backend is usable.
        """

        async with self._lock:
            scratch = GenerationSession(
                self._client,
                self._instructions,
                (),
                temperature=self._temperature,
            )
            final_text = ""
            async with aclosing(scratch.stream_reply(prompt)) as stream:
                async for snapshot in stream:
                    final_text = snapshot.text
            return final_text

    async def aclose(self) -> None:
        if self._session is not None:
            self._session.close()
            self._session = None
        await self._client.aclose()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_loading(self, value: bool) -> None:
        if self._is_loading == value:
            return
        self._is_loading = value
        self._publish(LoadingChanged(is_loading=value))

    def _set_error(self, message: str | None) -> None:
        if self._last_error == message:
            return
        self._last_error = message
        self._publish(ErrorChanged(message=message))

    def _publish(self, event) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
