"""Conversation and turn records."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

__all__ = ["Conversation", "Turn", "default_title"]

NO_MESSAGES_PREVIEW = "No messages yet"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


def _parse_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value)
    else:
        return _utcnow()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def default_title(now: datetime | None = None) -> str:
    """Return the timestamp-derived title used for new conversations.

    Example:
        >>> default_title(datetime(2025, 9, 28, 14, 5))
        'Chat Sep 28, 2025, 2:05 PM'
    """

    moment = now or datetime.now().astimezone()
    hour = moment.hour % 12 or 12
    meridiem = "AM" if moment.hour < 12 else "PM"
    return f"Chat {moment:%b} {moment.day}, {moment.year}, {hour}:{moment.minute:02d} {meridiem}"


@dataclass(slots=True, frozen=True)
class Turn:
    """One message authored by the user or the assistant."""

    text: str
    from_user: bool
    conversation_id: str
    timestamp: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "from_user": self.from_user,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any], conversation_id: str) -> "Turn":
        return cls(
            text=str(payload.get("text", "")),
            from_user=bool(payload.get("from_user", False)),
            conversation_id=conversation_id,
            timestamp=_parse_timestamp(payload.get("timestamp")),
            id=str(payload.get("id") or _new_id()),
        )


@dataclass(slots=True)
class Conversation:
    """A titled, timestamped, ordered collection of turns.

    ``updated_at`` never moves backwards: :meth:`touch` ignores clock readings
    older than the current value. Turn timestamps are clamped the same way so
    sorting turns by timestamp reproduces insertion order.
    """

    title: str
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime | None = None
    turns: list[Turn] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.updated_at is None:
            self.updated_at = self.created_at

    @property
    def turn_count(self) -> int:
        return len(self.turns)

    @property
    def last_turn(self) -> Turn | None:
        if not self.turns:
            return None
        return self.sorted_turns()[-1]

    @property
    def preview_text(self) -> str:
        last = self.last_turn
        return last.text if last is not None else NO_MESSAGES_PREVIEW

    def sorted_turns(self) -> list[Turn]:
        return sorted(self.turns, key=lambda turn: turn.timestamp)

    def touch(self, now: datetime | None = None) -> datetime:
        moment = now or _utcnow()
        if self.updated_at is None or moment > self.updated_at:
            self.updated_at = moment
        return self.updated_at

    def append_turn(self, text: str, *, from_user: bool, now: datetime | None = None) -> Turn:
        timestamp = now or _utcnow()
        if self.turns and timestamp < self.turns[-1].timestamp:
            timestamp = self.turns[-1].timestamp
        turn = Turn(text=text, from_user=from_user, conversation_id=self.id, timestamp=timestamp)
        self.turns.append(turn)
        self.touch(timestamp)
        return turn

    def remove_turn(self, turn: Turn) -> bool:
        for index, existing in enumerate(self.turns):
            if existing.id == turn.id:
                del self.turns[index]
                return True
        return False

    def clear_turns(self, now: datetime | None = None) -> None:
        self.turns.clear()
        self.touch(now)

    def rename(self, title: str, now: datetime | None = None) -> None:
        self.title = title
        self.touch(now)

    def first_text(self, *, from_user: bool) -> str | None:
        for turn in self.turns:
            if turn.from_user is from_user:
                return turn.text
        return None

    def to_dict(self) -> dict[str, Any]:
        updated_at = self.updated_at or self.created_at
        return {
            "id": self.id,
            "title": self.title,
            "created_at": self.created_at.isoformat(),
            "updated_at": updated_at.isoformat(),
            "turns": [turn.to_dict() for turn in self.turns],
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "Conversation":
        conversation_id = str(payload.get("id") or _new_id())
        created_at = _parse_timestamp(payload.get("created_at"))
        raw_turns = payload.get("turns")
        turns = [
            Turn.from_dict(entry, conversation_id)
            for entry in (raw_turns if isinstance(raw_turns, list) else [])
            if isinstance(entry, Mapping)
        ]
        return cls(
            title=str(payload.get("title", "")),
            id=conversation_id,
            created_at=created_at,
            updated_at=_parse_timestamp(payload.get("updated_at") or created_at),
            turns=turns,
        )
