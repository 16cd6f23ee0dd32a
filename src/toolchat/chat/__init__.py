"""Conversation records, their store and the conversation orchestrator."""

from .conversation_orchestrator import ConversationOrchestrator, sanitize_title
from .models import Conversation, Turn, default_title
from .store import ConversationStore

__all__ = [
    "Conversation",
    "ConversationOrchestrator",
    "ConversationStore",
    "Turn",
    "default_title",
    "sanitize_title",
]
