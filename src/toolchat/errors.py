"""Error taxonomy shared by the orchestration layers."""

from __future__ import annotations

from enum import Enum

__all__ = [
    "ToolchatError",
    "PersistenceError",
    "UnavailableReason",
    "BackendUnavailable",
    "GenerationError",
    "ToolInvocationError",
]


class ToolchatError(Exception):
    """Base class for all errors raised by toolchat."""


class PersistenceError(ToolchatError):
    """Raised when the conversation store fails to write its payload."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class UnavailableReason(Enum):
    """Why the language backend cannot serve a session.

    Values:
        NOT_ELIGIBLE: The endpoint does not offer the configured model.
        DISABLED: The assistant has not been switched on (no API key).
        NOT_READY: The endpoint could not be reached yet.
    """

    NOT_ELIGIBLE = "not_eligible"
    DISABLED = "disabled"
    NOT_READY = "not_ready"


class BackendUnavailable(ToolchatError):
    """Raised when no usable session can be built against the backend."""

    def __init__(self, reason: UnavailableReason, detail: str = "") -> None:
        self.reason = reason
        self.detail = detail
        message = f"Backend unavailable ({reason.value})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class GenerationError(ToolchatError):
    """Raised when a streamed generation fails before producing a final reply."""

    def __init__(self, message: str, *, cause: Exception | None = None) -> None:
        self.cause = cause
        super().__init__(message)


class ToolInvocationError(ToolchatError):
    """Raised when a capability fails; converted to text before reaching the model."""

    def __init__(
        self,
        message: str,
        tool_name: str = "",
        cause: Exception | None = None,
    ) -> None:
        self.tool_name = tool_name
        self.cause = cause
        super().__init__(message)
