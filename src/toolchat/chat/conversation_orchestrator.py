"""Conversation lifecycle and the send-message sequence."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from ..ai.orchestration.session_orchestrator import SessionOrchestrator
from ..errors import BackendUnavailable, GenerationError, PersistenceError
from ..events import (
    ConversationChanged,
    ConversationDeleted,
    ConversationUpdated,
    ErrorChanged,
    Event,
    EventBus,
)
from .models import Conversation, Turn, default_title
from .store import ConversationStore

__all__ = [
    "ConversationOrchestrator",
    "TITLE_MAX_LENGTH",
    "sanitize_title",
]

LOGGER = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 50
_TITLE_QUOTES = "\"'“”‘’"
_TITLE_TURN_COUNT = 2

TITLE_PROMPT = (
    "Write a short, descriptive title of at most six words for a conversation "
    "that starts with the exchange below. Reply with the title only.\n\n"
    "User: {user}\n"
    "Assistant: {assistant}"
)


def sanitize_title(raw: str) -> str | None:
    """Clean a model-suggested title; None when it is unusable.

    Quote characters are removed and surrounding whitespace trimmed. Titles
    that end up empty or longer than :data:`TITLE_MAX_LENGTH` are rejected.
    """

    cleaned = "".join(char for char in raw if char not in _TITLE_QUOTES).strip()
    if not cleaned or len(cleaned) > TITLE_MAX_LENGTH:
        return None
    return cleaned


class ConversationOrchestrator:
    """Owns the active conversation and wraps generation with turn persistence.

    Store and active-conversation mutations run under one short-held
    :class:`asyncio.Lock`. Generation runs outside it, serialized per
    conversation, so renaming or deleting other chats never waits on a reply.
    """

    def __init__(
        self,
        store: ConversationStore,
        sessions: SessionOrchestrator,
        *,
        event_bus: EventBus | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._sessions = sessions
        self._event_bus = event_bus
        self._clock = clock
        self._current: Conversation | None = None
        self._last_error: str | None = None
        self._lock = asyncio.Lock()
        self._send_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------

    @property
    def current_conversation(self) -> Conversation | None:
        return self._current

    @property
    def is_loading(self) -> bool:
        return self._sessions.is_loading

    @property
    def last_error(self) -> str | None:
        return self._last_error or self._sessions.last_error

    @property
    def store(self) -> ConversationStore:
        return self._store

    @property
    def sessions(self) -> SessionOrchestrator:
        return self._sessions

    def dismiss_error(self) -> None:
        self._set_error(None)
        self._sessions.dismiss_error()

    def list_conversations(self) -> list[Conversation]:
        return self._store.query()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_conversation(self, title: str | None = None) -> Conversation:
        """Create, persist and activate a conversation.

        A failed save is reported through ``last_error``; the conversation is
        still returned but the previously active one stays active.
        """

        async with self._lock:
            return self._create_locked(title)

    async def load_conversation(self, conversation: Conversation) -> None:
        async with self._lock:
            self._activate_locked(conversation)

    async def restore_or_create(self) -> Conversation:
        """Activate the most recently updated conversation, creating one if none exist.

        When the new conversation cannot be saved nothing is active afterwards.
        """

        async with self._lock:
            existing = self._store.query()
            if existing:
                self._activate_locked(existing[0])
                return existing[0]
            return self._create_locked(None)

    async def delete_conversation(self, conversation: Conversation) -> None:
        async with self._lock:
            if self._current is not None and self._current.id == conversation.id:
                self._set_current(None)
            self._store.delete(conversation)
            self._send_locks.pop(conversation.id, None)
            self._publish(ConversationDeleted(conversation_id=conversation.id))
            self._save_or_report("Failed to delete chat")

    async def rename_conversation(self, conversation: Conversation, title: str) -> None:
        async with self._lock:
            conversation.rename(title, self._now())
            self._publish_updated(conversation)
            self._save_or_report("Failed to update chat title")

    async def clear_conversation(self) -> None:
        conversation = self._current
        if conversation is None:
            return
        # Waits for an in-flight reply so it cannot land in the emptied chat.
        async with self._send_lock(conversation), self._lock:
            conversation.clear_turns(self._now())
            self._sessions.clear_current()
            self._publish_updated(conversation)
            self._save_or_report("Failed to clear chat")

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def send_message(self, text: str) -> Turn | None:
        """Append ``text`` as a user turn, generate a reply and persist both.

        Returns the assistant turn, or None when nothing was sent. Generation
        never starts for a user turn that failed to save. Sends to the same
        conversation run one at a time.
        """

        if not text or not text.strip():
            return None
        conversation = self._current
        if conversation is None:
            LOGGER.debug("send_message ignored: no active conversation")
            return None

        async with self._send_lock(conversation):
            async with self._lock:
                self._set_error(None)
                if conversation.id not in self._store:
                    LOGGER.debug("send_message ignored: conversation %s was deleted", conversation.id)
                    return None
                user_turn = conversation.append_turn(text, from_user=True, now=self._now())
                if not self._save_or_report("Failed to save message"):
                    conversation.remove_turn(user_turn)
                    return None
                self._publish_updated(conversation)

            reply = await self._sessions.generate_reply(text)

            async with self._lock:
                if conversation.id not in self._store:
                    LOGGER.info("Dropping reply for deleted conversation %s", conversation.id)
                    return None
                assistant_turn = conversation.append_turn(reply, from_user=False, now=self._now())
                self._save_or_report("Failed to save AI response")
                self._publish_updated(conversation)
                # Count-based: this also fires if a conversation were ever seeded with turns.
                needs_title = conversation.turn_count == _TITLE_TURN_COUNT

            if needs_title:
                await self._synthesize_title(conversation)
            return assistant_turn

    async def _synthesize_title(self, conversation: Conversation) -> None:
        user_text = conversation.first_text(from_user=True)
        assistant_text = conversation.first_text(from_user=False)
        if not user_text or not assistant_text:
            return
        prompt = TITLE_PROMPT.format(user=user_text, assistant=assistant_text)
        try:
            raw_title = await self._sessions.complete(prompt)
        except (GenerationError, BackendUnavailable) as exc:
            LOGGER.warning("Title generation failed for %s: %s", conversation.id, exc)
            return

        title = sanitize_title(raw_title)
        if title is None:
            LOGGER.debug("Discarding unusable title suggestion %r", raw_title)
            return
        async with self._lock:
            if conversation.id not in self._store:
                return
            conversation.rename(title, self._now())
            self._publish_updated(conversation)
            try:
                self._store.save()
            except PersistenceError as exc:
                LOGGER.warning("Failed to save generated title for %s: %s", conversation.id, exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_locked(self, title: str | None) -> Conversation:
        now = self._now()
        conversation = Conversation(title=title or default_title(now.astimezone()), created_at=now)
        self._store.insert(conversation)
        if self._save_or_report("Failed to create new chat"):
            self._activate_locked(conversation)
        return conversation

    def _activate_locked(self, conversation: Conversation) -> None:
        self._set_current(conversation)
        self._sessions.clear_current()

    def _send_lock(self, conversation: Conversation) -> asyncio.Lock:
        return self._send_locks.setdefault(conversation.id, asyncio.Lock())

    def _save_or_report(self, context: str) -> bool:
        try:
            self._store.save()
        except PersistenceError as exc:
            message = f"{context}: {exc}"
            LOGGER.warning("%s", message)
            self._set_error(message)
            return False
        return True

    def _now(self) -> datetime:
        return self._clock() if self._clock is not None else datetime.now(timezone.utc)

    def _set_current(self, conversation: Conversation | None) -> None:
        self._current = conversation
        if conversation is None:
            self._publish(ConversationChanged(conversation_id=None))
        else:
            self._publish(ConversationChanged(conversation_id=conversation.id, title=conversation.title))

    def _set_error(self, message: str | None) -> None:
        if self._last_error == message:
            return
        self._last_error = message
        self._publish(ErrorChanged(message=message))

    def _publish_updated(self, conversation: Conversation) -> None:
        self._publish(
            ConversationUpdated(
                conversation_id=conversation.id,
                turn_count=conversation.turn_count,
                title=conversation.title,
            )
        )

    def _publish(self, event: Event) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
