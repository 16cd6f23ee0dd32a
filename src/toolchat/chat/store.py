"""JSON-file conversation store.

Mutations (:meth:`ConversationStore.insert`, :meth:`ConversationStore.delete`
and in-place edits of the returned conversations) stay in memory until
:meth:`ConversationStore.save` flushes every conversation to disk.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from ..errors import PersistenceError
from .models import Conversation

__all__ = ["ConversationStore", "CONVERSATIONS_FILENAME"]

LOGGER = logging.getLogger(__name__)

CONVERSATIONS_FILENAME = "conversations.json"
_STORE_VERSION = 1


class ConversationStore:
    """Transactional object store for :class:`Conversation` records.

    ``path=None`` keeps conversations in memory only; ``save`` then succeeds
    without touching the filesystem.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._conversations: dict[str, Conversation] = {}

    @property
    def path(self) -> Path | None:
        return self._path

    def load(self) -> list[Conversation]:
        """Replace the in-memory state with what is on disk."""

        self._conversations = {}
        for entry in self._read_payload().get("conversations", []):
            if not isinstance(entry, Mapping):
                continue
            try:
                conversation = Conversation.from_dict(entry)
            except (TypeError, ValueError) as exc:
                LOGGER.warning("Skipping unreadable conversation in %s: %s", self._path, exc)
                continue
            self._conversations[conversation.id] = conversation
        LOGGER.debug("Loaded %s conversation(s) from %s", len(self._conversations), self._path)
        return self.query()

    def insert(self, conversation: Conversation) -> None:
        self._conversations[conversation.id] = conversation

    def delete(self, conversation: Conversation) -> None:
        self._conversations.pop(conversation.id, None)

    def get(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def query(self) -> list[Conversation]:
        """Return every conversation, most recently updated first."""

        return sorted(
            self._conversations.values(),
            key=lambda conversation: conversation.updated_at or conversation.created_at,
            reverse=True,
        )

    def __len__(self) -> int:
        return len(self._conversations)

    def __contains__(self, conversation_id: object) -> bool:
        return conversation_id in self._conversations

    def save(self) -> None:
        """Flush all conversations to disk.

        Raises:
            PersistenceError: If the payload cannot be serialized or written.
        """

        if self._path is None:
            return
        payload = {
            "version": _STORE_VERSION,
            "conversations": [conversation.to_dict() for conversation in self._conversations.values()],
        }
        tmp_path = self._path.with_suffix(".tmp")
        try:
            body = json.dumps(payload, indent=2, ensure_ascii=False)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(body, encoding="utf-8")
            tmp_path.replace(self._path)
        except (OSError, TypeError, ValueError) as exc:
            LOGGER.warning("Failed to save conversations to %s: %s", self._path, exc)
            raise PersistenceError(str(exc) or type(exc).__name__, cause=exc) from exc

    def _read_payload(self) -> dict[str, Any]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except json.JSONDecodeError as exc:
            LOGGER.warning("Conversation store %s is not valid JSON: %s", self._path, exc)
            return {}
        if not isinstance(data, Mapping):
            return {}
        return dict(data)
