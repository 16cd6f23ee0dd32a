"""Keyed memory capability backed by a small JSON file."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Mapping

from .types import Capability, object_schema

__all__ = ["MemoryAction", "MemoryStore", "build_memory_capability"]

LOGGER = logging.getLogger(__name__)

TOOL_NAME = "memory"
DESCRIPTION = (
    "Store, retrieve, or search through user memories and notes.\n"
    "Can save important information for future reference."
)
_STORE_VERSION = 1


class MemoryAction(str, Enum):
    STORE = "store"
    RETRIEVE = "retrieve"
    SEARCH = "search"
    LIST = "list"
    DELETE = "delete"


PARAMETERS = object_schema(
    {
        "action": {"type": "string", "enum": [action.value for action in MemoryAction]},
        "key": {"type": ["string", "null"]},
        "value": {"type": ["string", "null"]},
        "searchTerm": {"type": ["string", "null"]},
    },
    required=("action",),
)


class MemoryStore:
    """Key/value memory persisted as JSON; lives independently of chat sessions.

    ``path=None`` keeps memories in process only.
    """

    def __init__(self, path: Path | None = None) -> None:
        self._path = path
        self._entries: dict[str, str] = self._read_payload()

    @property
    def path(self) -> Path | None:
        return self._path

    def get(self, key: str) -> str | None:
        return self._entries.get(key)

    def put(self, key: str, value: str) -> None:
        self._entries[key] = value
        self._flush()

    def remove(self, key: str) -> bool:
        if key not in self._entries:
            return False
        del self._entries[key]
        self._flush()
        return True

    def items(self) -> list[tuple[str, str]]:
        return sorted(self._entries.items())

    def _flush(self) -> None:
        if self._path is None:
            return
        payload = {"version": _STORE_VERSION, "entries": self._entries}
        body = json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)

    def _read_payload(self) -> dict[str, str]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Memory store %s is not valid JSON: %s", self._path, exc)
            return {}
        entries = data.get("entries") if isinstance(data, Mapping) else None
        if not isinstance(entries, Mapping):
            return {}
        return {str(key): str(value) for key, value in entries.items()}


def build_memory_capability(
    store: MemoryStore,
    clock: Callable[[], datetime] | None = None,
) -> Capability:
    now_fn = clock or (lambda: datetime.now(timezone.utc))

    def _store(key: str, value: str) -> str:
        if not key or not value:
            return "Error: Both key and value are required to store a memory."
        store.put(key, value)
        return "\n".join(
            [
                "Memory stored successfully!",
                f"Key: {key}",
                f"Value: {value}",
                f"Timestamp: {now_fn().isoformat(timespec='seconds')}",
            ]
        )

    def _retrieve(key: str) -> str:
        if not key:
            return "Error: Key is required to retrieve a memory."
        value = store.get(key)
        if value is None:
            return f"No memory found with key: {key}"
        return f"Retrieved memory:\nKey: {key}\nValue: {value}"

    def _search(term: str) -> str:
        if not term:
            return "Error: Search term is required."
        needle = term.casefold()
        found = [(key, value) for key, value in store.items() if needle in key.casefold() or needle in value.casefold()]
        if not found:
            return f"No memories found containing: {term}"
        lines = [f"Found {len(found)} memories containing '{term}':", ""]
        lines.extend(f"• {key}: {value}" for key, value in found)
        return "\n".join(lines)

    def _list() -> str:
        entries = store.items()
        if not entries:
            return "No memories stored."
        lines = [f"All stored memories ({len(entries)}):", ""]
        lines.extend(f"• {key}: {value}" for key, value in entries)
        return "\n".join(lines)

    def _delete(key: str) -> str:
        if not key:
            return "Error: Key is required to delete a memory."
        if store.remove(key):
            return f"Memory deleted successfully: {key}"
        return f"No memory found with key: {key}"

    async def memory(arguments: Mapping[str, Any]) -> str:
        action = MemoryAction(arguments["action"])
        key = str(arguments.get("key") or "").strip()
        if action is MemoryAction.STORE:
            return _store(key, str(arguments.get("value") or ""))
        if action is MemoryAction.RETRIEVE:
            return _retrieve(key)
        if action is MemoryAction.SEARCH:
            return _search(str(arguments.get("searchTerm") or "").strip())
        if action is MemoryAction.LIST:
            return _list()
        return _delete(key)

    return Capability(name=TOOL_NAME, description=DESCRIPTION, handler=memory, parameters=PARAMETERS)
