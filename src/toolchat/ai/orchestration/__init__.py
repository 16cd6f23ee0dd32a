"""Generation sessions and the orchestrator that keeps them current."""

from .session import DEFAULT_INSTRUCTIONS, GenerationSession, ReplySnapshot, SessionKey, build_preamble
from .session_orchestrator import SessionOrchestrator

__all__ = [
    "DEFAULT_INSTRUCTIONS",
    "GenerationSession",
    "ReplySnapshot",
    "SessionKey",
    "SessionOrchestrator",
    "build_preamble",
]
