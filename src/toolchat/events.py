"""Event bus infrastructure for observable orchestrator state.

Orchestrators keep their state in plain attributes and announce every
transition through this bus so front ends can react synchronously.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    TypeVar,
    TYPE_CHECKING,
)
from weakref import WeakMethod, ref

if TYPE_CHECKING:  # pragma: no cover - imports for type checking only
    from typing import DefaultDict

logger = logging.getLogger(__name__)

E = TypeVar("E", bound="Event")

Handler = Callable[[E], None]


@dataclass(slots=True)
class Event:
    """Base class for all events in the system.

    Example::

        @dataclass(slots=True)
        class ConversationChanged(Event):
            conversation_id: str | None
    """

    pass


# High-frequency event types that should not log each publish
_QUIET_EVENT_TYPES: set[type] = set()


# =============================================================================
# Conversation Events
# =============================================================================


@dataclass(slots=True)
class ConversationChanged(Event):
    """Emitted when the active conversation reference changes.

    Attributes:
        conversation_id: Identifier of the newly active conversation, or None
            when no conversation is selected.
        title: Title of the active conversation (empty when none).
    """

    conversation_id: str | None
    title: str = ""


@dataclass(slots=True)
class ConversationUpdated(Event):
    """Emitted after a conversation's turns or title were mutated.

    Attributes:
        conversation_id: Identifier of the mutated conversation.
        turn_count: Number of turns after the mutation.
        title: Title after the mutation.
    """

    conversation_id: str
    turn_count: int
    title: str


@dataclass(slots=True)
class ConversationDeleted(Event):
    """Emitted when a conversation is removed from the store."""

    conversation_id: str


# =============================================================================
# Generation Events
# =============================================================================


@dataclass(slots=True)
class LoadingChanged(Event):
    """Emitted when a generation call starts or finishes."""

    is_loading: bool


@dataclass(slots=True)
class ErrorChanged(Event):
    """Emitted when the user-facing error notice is set or dismissed.

    Attributes:
        message: The error text, or None once the notice is cleared.
    """

    message: str | None


@dataclass(slots=True)
class ReplyStreamed(Event):
    """Emitted for every partial reply snapshot received from the backend.

    Attributes:
        text: The latest snapshot. Each snapshot replaces the previous one.
        final: Whether this is the completed reply.
    """

    text: str
    final: bool = False


_QUIET_EVENT_TYPES.add(ReplyStreamed)


@dataclass(slots=True)
class ToolInvoked(Event):
    """Emitted after a capability ran on behalf of the model.

    Attributes:
        tool_name: Name of the capability.
        call_id: Backend identifier for the call.
        success: Whether the capability returned without error.
        duration_ms: Execution time in milliseconds.
    """

    tool_name: str
    call_id: str
    success: bool = True
    duration_ms: float = 0.0


@dataclass(slots=True)
class SessionRebuilt(Event):
    """Emitted when the generation session is replaced.

    Attributes:
        tool_names: Names bound to the new session, in declaration order.
        fingerprint: Invalidation token of the new session.
    """

    tool_names: tuple[str, ...]
    fingerprint: str


@dataclass(slots=True)
class ToolToggled(Event):
    """Emitted when a capability is enabled or disabled."""

    tool_name: str
    enabled: bool


class EventBus(Generic[E]):
    """A typed publish-subscribe event bus for decoupled communication.

    Handlers are stored as weak references where possible (bound methods)
    to prevent memory leaks.

    Example::

        bus = EventBus()

        def on_loading(event: LoadingChanged) -> None:
            print("busy" if event.is_loading else "idle")

        bus.subscribe(LoadingChanged, on_loading)
        bus.publish(LoadingChanged(is_loading=True))
        bus.unsubscribe(LoadingChanged, on_loading)

    Thread Safety:
        This implementation is NOT thread-safe. All operations should be
        performed from the thread running the asyncio event loop.
    """

    __slots__ = ("_handlers",)

    def __init__(self) -> None:
        self._handlers: DefaultDict[type[Event], list[_HandlerRef]] = defaultdict(list)

    def subscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Register a handler to receive events of the specified type.

        Args:
            event_type: The class of events to subscribe to.
            handler: A callable that will be invoked with the event.

        Note:
            Subscribing the same handler multiple times will result in
            multiple invocations when an event is published.
        """
        handler_ref = _HandlerRef.create(handler)
        self._handlers[event_type].append(handler_ref)
        logger.debug(
            "Subscribed handler %s to event type %s",
            _handler_name(handler),
            event_type.__name__,
        )

    def unsubscribe(self, event_type: type[E], handler: Handler[E]) -> None:
        """Remove a previously registered handler.

        If the handler was registered multiple times, only the first
        occurrence is removed. Unknown handlers are ignored.
        """
        handlers = self._handlers.get(event_type)
        if handlers is None:
            return

        for i, handler_ref in enumerate(handlers):
            if handler_ref.matches(handler):
                handlers.pop(i)
                logger.debug(
                    "Unsubscribed handler %s from event type %s",
                    _handler_name(handler),
                    event_type.__name__,
                )
                return

    def publish(self, event: E) -> None:
        """Broadcast an event to all registered handlers.

        Handlers are invoked synchronously in the order they were
        registered. If a handler raises an exception, it is logged
        and remaining handlers continue to be invoked.
        """
        event_type = type(event)
        handlers = self._handlers.get(event_type)
        is_quiet = event_type in _QUIET_EVENT_TYPES

        if handlers is None:
            if not is_quiet:
                logger.debug("No handlers for event type %s", event_type.__name__)
            return

        if not is_quiet:
            logger.debug(
                "Publishing %s to %d handler(s)",
                event_type.__name__,
                len(handlers),
            )

        dead_indices: list[int] = []

        # Iterate over a copy; handlers may subscribe/unsubscribe while running.
        for i, handler_ref in enumerate(list(handlers)):
            handler = handler_ref.resolve()
            if handler is None:
                dead_indices.append(i)
                continue

            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Handler %s raised exception for event %s",
                    _handler_name(handler),
                    event_type.__name__,
                )

        for i in reversed(dead_indices):
            if i < len(handlers) and handlers[i].resolve() is None:
                handlers.pop(i)

    def clear(self) -> None:
        """Remove all registered handlers."""
        self._handlers.clear()
        logger.debug("Cleared all event handlers")

    def handler_count(self, event_type: type[E] | None = None) -> int:
        """Return the number of registered handlers.

        Args:
            event_type: If provided, return count for that event type only.
                       If None, return total count across all event types.
        """
        if event_type is not None:
            return len(self._handlers.get(event_type, []))
        return sum(len(handlers) for handlers in self._handlers.values())


class _HandlerRef:
    """Wrapper for handler references supporting both weak and strong refs.

    Bound methods are held through ``WeakMethod`` so the owner can be
    garbage collected; plain functions and lambdas are held strongly.
    """

    __slots__ = ("_ref", "_is_weak")

    def __init__(self, handler_ref: WeakMethod | ref | Handler, is_weak: bool) -> None:
        self._ref = handler_ref
        self._is_weak = is_weak

    @classmethod
    def create(cls, handler: Handler) -> _HandlerRef:
        if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
            try:
                return cls(WeakMethod(handler), is_weak=True)
            except TypeError:
                pass

        return cls(handler, is_weak=False)

    def resolve(self) -> Handler | None:
        if not self._is_weak:
            return self._ref  # type: ignore[return-value]
        return self._ref()  # type: ignore[operator]

    def matches(self, handler: Handler) -> bool:
        resolved = self.resolve()
        if resolved is None:
            return False
        return resolved == handler


def _handler_name(handler: Any) -> str:
    """Get a human-readable name for a handler for logging purposes."""
    if hasattr(handler, "__self__") and hasattr(handler, "__func__"):
        cls_name = type(handler.__self__).__name__
        return f"{cls_name}.{handler.__func__.__name__}"
    if hasattr(handler, "__name__"):
        return handler.__name__
    return repr(handler)


__all__ = [
    "Event",
    "EventBus",
    "Handler",
    "ConversationChanged",
    "ConversationUpdated",
    "ConversationDeleted",
    "LoadingChanged",
    "ErrorChanged",
    "ReplyStreamed",
    "ToolInvoked",
    "SessionRebuilt",
    "ToolToggled",
]
