"""Application bootstrap and terminal front end for toolchat."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Sequence, TextIO, get_args, get_origin, get_type_hints

from .ai.client import AIClient, ClientSettings
from .ai.orchestration.session import DEFAULT_INSTRUCTIONS
from .ai.orchestration.session_orchestrator import SessionOrchestrator
from .ai.tools.executor import ExecutorConfig
from .ai.tools.registry import ToolRegistry
from .ai.tools.tool_wiring import build_registry
from .chat.conversation_orchestrator import ConversationOrchestrator
from .chat.models import Conversation
from .chat.store import CONVERSATIONS_FILENAME, ConversationStore
from .events import ErrorChanged, EventBus, ReplyStreamed, SessionRebuilt, ToolInvoked
from .services.settings import Settings, SettingsStore, redact_secret
from .utils import logging as logging_utils

_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}
_FALSE_VALUES = {"0", "false", "no", "off", "disabled"}
_LOGGER = logging.getLogger(__name__)

_HELP_TEXT = """\
Commands:
  /new [title]     start a new conversation
  /list            list conversations, most recent first
  /load N          switch to conversation N from /list
  /delete N        delete conversation N from /list
  /rename TITLE    rename the active conversation
  /clear           remove every message from the active conversation
  /tools           show tools and whether they are enabled
  /toggle NAME     enable or disable a tool
  /dismiss         dismiss the current error notice
  /quit            exit
Anything else is sent to the assistant."""


def configure_logging(debug: bool = False, *, force: bool = False) -> None:
    """Configure logging for the application."""

    level = logging.DEBUG if debug else logging.INFO
    logging_utils.setup_logging(level, force=force)
    _LOGGER.debug("Logging configured (level=%s)", logging.getLevelName(level))


def load_settings(
    path: Optional[Path] = None,
    *,
    store: SettingsStore | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> Settings:
    """Load persisted settings or fall back to defaults."""

    active_store = store or SettingsStore(path)
    try:
        settings = active_store.load(overrides=overrides)
    except (OSError, ValueError) as exc:  # pragma: no cover - defensive path
        _LOGGER.warning("Failed to load settings from %s: %s", active_store.path, exc)
        settings = Settings()
    return settings


# ---------------------------------------------------------------------------
# Runtime wiring
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class ChatRuntime:
    """The wired-up object graph behind the front end."""

    settings: Settings
    event_bus: EventBus
    registry: ToolRegistry
    sessions: SessionOrchestrator
    conversations: ConversationOrchestrator
    settings_store: SettingsStore | None = None

    def persist_enabled_tools(self) -> None:
        if self.settings_store is None:
            return
        self.settings.enabled_tools = list(self.registry.enabled_names())
        try:
            self.settings_store.save(self.settings)
        except OSError as exc:
            _LOGGER.warning("Failed to persist enabled tools: %s", exc)

    async def aclose(self) -> None:
        await self.sessions.aclose()


def build_client_settings(settings: Settings) -> ClientSettings:
    return ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        temperature=settings.temperature,
        debug_logging=settings.debug_logging,
    )


def build_runtime(
    settings: Settings,
    *,
    settings_store: SettingsStore | None = None,
    client: AIClient | None = None,
) -> ChatRuntime:
    """Construct registry, orchestrators and store from ``settings``."""

    data_dir = settings.resolved_data_dir()
    event_bus = EventBus()
    registry = build_registry(data_dir, enabled=settings.enabled_tools)
    sessions = SessionOrchestrator(
        client or AIClient(build_client_settings(settings)),
        registry,
        instructions=settings.system_instructions or DEFAULT_INSTRUCTIONS,
        event_bus=event_bus,
        executor_config=ExecutorConfig(
            default_timeout=settings.tool_timeout,
            log_arguments=settings.debug_logging,
            log_results=settings.debug_logging,
        ),
        max_tool_iterations=settings.max_tool_iterations,
        temperature=settings.temperature,
    )
    store = ConversationStore(data_dir / CONVERSATIONS_FILENAME)
    store.load()
    conversations = ConversationOrchestrator(store, sessions, event_bus=event_bus)
    return ChatRuntime(
        settings=settings,
        event_bus=event_bus,
        registry=registry,
        sessions=sessions,
        conversations=conversations,
        settings_store=settings_store,
    )


# ---------------------------------------------------------------------------
# Terminal front end
# ---------------------------------------------------------------------------


@dataclass
class ChatConsole:
    """Line-oriented front end driving the conversation orchestrator."""

    runtime: ChatRuntime
    output: TextIO = field(default_factory=lambda: sys.stdout)
    _printed: str = field(default="", init=False)
    _listing: list[Conversation] = field(default_factory=list, init=False)

    def __post_init__(self) -> None:
        bus = self.runtime.event_bus
        bus.subscribe(ReplyStreamed, self._on_reply_streamed)
        bus.subscribe(ToolInvoked, self._on_tool_invoked)
        bus.subscribe(ErrorChanged, self._on_error_changed)
        bus.subscribe(SessionRebuilt, self._on_session_rebuilt)

    async def run(self, read_line=None) -> int:
        """Read commands until EOF or ``/quit``; returns the exit status."""

        reader = read_line or _read_line
        availability = await self.runtime.sessions.availability()
        if not availability.available:
            self._write(availability.message)
            if availability.detail:
                _LOGGER.info("Backend unavailable: %s", availability.detail)
            return 1

        conversation = await self.runtime.conversations.restore_or_create()
        if self.runtime.conversations.current_conversation is conversation:
            self._write(f"Chatting in '{conversation.title}'. Type /help for commands.")
        else:
            self._write("No active conversation; use /new to start one.")
        self.runtime.sessions.prewarm()
        while True:
            line = await reader("> ")
            if line is None:
                return 0
            if not await self.handle_line(line):
                return 0

    async def handle_line(self, line: str) -> bool:
        """Process one input line; False means the user asked to quit."""

        text = line.strip()
        if not text:
            return True
        if not text.startswith("/"):
            self._printed = ""
            await self.runtime.conversations.send_message(text)
            return True

        command, _, argument = text.partition(" ")
        argument = argument.strip()
        conversations = self.runtime.conversations
        if command in ("/quit", "/exit"):
            return False
        if command == "/help":
            self._write(_HELP_TEXT)
        elif command == "/new":
            conversation = await conversations.create_conversation(argument or None)
            if conversations.current_conversation is conversation:
                self._write(f"Started '{conversation.title}'.")
        elif command == "/list":
            self._show_listing()
        elif command in ("/load", "/delete"):
            target = self._resolve_listing_entry(argument)
            if target is None:
                return True
            if command == "/load":
                await conversations.load_conversation(target)
                self._write(f"Switched to '{target.title}'.")
                self._show_transcript(target)
            else:
                await conversations.delete_conversation(target)
                self._listing = conversations.list_conversations()
                self._write(f"Deleted '{target.title}'.")
        elif command == "/rename":
            current = conversations.current_conversation
            if current is None or not argument:
                self._write("Usage: /rename TITLE (with an active conversation)")
            else:
                await conversations.rename_conversation(current, argument)
                self._write(f"Renamed to '{current.title}'.")
        elif command == "/clear":
            await conversations.clear_conversation()
            self._write("Conversation cleared.")
        elif command == "/tools":
            self._show_tools()
        elif command == "/toggle":
            if not argument:
                self._write("Usage: /toggle NAME")
            else:
                enabled = self.runtime.sessions.toggle_tool(argument)
                self.runtime.persist_enabled_tools()
                state = "enabled" if enabled else "disabled"
                self._write(f"{argument} {state}; applies from the next message.")
        elif command == "/dismiss":
            conversations.dismiss_error()
        else:
            self._write(f"Unknown command {command}. Type /help for commands.")
        return True

    # ------------------------------------------------------------------
    # Rendering
    # ------------------------------------------------------------------

    def _show_listing(self) -> None:
        self._listing = self.runtime.conversations.list_conversations()
        if not self._listing:
            self._write("No conversations yet.")
            return
        current = self.runtime.conversations.current_conversation
        for index, conversation in enumerate(self._listing, start=1):
            marker = "*" if current is not None and current.id == conversation.id else " "
            self._write(f"{marker} {index}. {conversation.title} ({conversation.preview_text[:40]})")

    def _resolve_listing_entry(self, argument: str) -> Conversation | None:
        if not self._listing:
            self._listing = self.runtime.conversations.list_conversations()
        try:
            index = int(argument, 10)
        except ValueError:
            self._write("Expected a number from /list.")
            return None
        if not 1 <= index <= len(self._listing):
            self._write(f"No conversation {index}; run /list first.")
            return None
        return self._listing[index - 1]

    def _show_transcript(self, conversation: Conversation) -> None:
        for turn in conversation.sorted_turns():
            speaker = "you" if turn.from_user else "assistant"
            self._write(f"{speaker}: {turn.text}")

    def _show_tools(self) -> None:
        registry = self.runtime.registry
        for capability in registry.list_known():
            state = "on " if registry.is_enabled(capability.name) else "off"
            summary = capability.description.splitlines()[0] if capability.description else ""
            self._write(f"[{state}] {capability.name}: {summary}")

    def _on_reply_streamed(self, event: ReplyStreamed) -> None:
        if event.text.startswith(self._printed):
            self.output.write(event.text[len(self._printed):])
        else:
            self.output.write("\n" + event.text)
        self._printed = event.text
        if event.final:
            self.output.write("\n")
            self._printed = ""
        self.output.flush()

    def _on_tool_invoked(self, event: ToolInvoked) -> None:
        status = "ok" if event.success else "failed"
        self._write(f"[tool {event.tool_name} {status}]")

    def _on_error_changed(self, event: ErrorChanged) -> None:
        if event.message:
            self._write(f"! {event.message} (/dismiss)")

    def _on_session_rebuilt(self, event: SessionRebuilt) -> None:
        _LOGGER.debug("Session rebuilt with tools %s", list(event.tool_names))

    def _write(self, text: str) -> None:
        self.output.write(text + "\n")
        self.output.flush()


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def run_chat(settings: Settings, settings_store: SettingsStore | None = None) -> int:
    runtime = build_runtime(settings, settings_store=settings_store)
    console = ChatConsole(runtime)
    try:
        return await console.run()
    finally:
        await runtime.aclose()


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> None:
    """Entry point invoked by the `toolchat` console script."""

    args = _parse_cli_args(argv)
    debug = args.debug or _env_flag("TOOLCHAT_DEBUG", default=False)
    configure_logging(debug)

    settings_path = args.settings_path or os.environ.get("TOOLCHAT_SETTINGS_PATH")
    resolved_path = Path(settings_path).expanduser() if settings_path else None
    settings_store = SettingsStore(resolved_path)
    try:
        cli_overrides = _coerce_cli_overrides(args.overrides or [])
    except ValueError as exc:
        print(f"Invalid --set override: {exc}", file=sys.stderr)
        raise SystemExit(2) from exc

    settings = load_settings(resolved_path, store=settings_store, overrides=cli_overrides or None)

    if args.dump_settings:
        _dump_settings(settings, settings_store, overrides=cli_overrides)
        return

    if settings.debug_logging and not debug:
        configure_logging(True, force=True)

    status = 0
    try:
        status = asyncio.run(run_chat(settings, settings_store))
    except KeyboardInterrupt:  # pragma: no cover - manual shutdown path
        _LOGGER.info("Shutdown requested by user.")
    if status:
        raise SystemExit(status)


def _env_flag(name: str, *, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _parse_cli_args(argv: Sequence[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="toolchat",
        description="Chat with a tool-calling assistant or inspect its configuration.",
    )
    parser.add_argument(
        "--dump-settings",
        action="store_true",
        help="Print the effective settings payload (with secrets redacted) and exit.",
    )
    parser.add_argument(
        "--settings",
        dest="settings_path",
        metavar="PATH",
        help="Override the default ~/.toolchat/settings.json path.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging.",
    )
    parser.add_argument(
        "--set",
        dest="overrides",
        metavar="KEY=VALUE",
        action="append",
        default=[],
        help="Override persisted settings for this run (repeatable).",
    )
    return parser.parse_args(argv)


def _coerce_cli_overrides(items: Sequence[str]) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if not items:
        return overrides

    fields = Settings.__dataclass_fields__  # type: ignore[attr-defined]
    type_hints = get_type_hints(Settings)
    for entry in items:
        if "=" not in entry:
            raise ValueError(f"Override '{entry}' must use KEY=VALUE syntax.")
        key, raw_value = entry.split("=", 1)
        key = key.strip()
        if not key:
            raise ValueError("Override is missing a field name.")
        if key not in fields:
            raise ValueError(f"Unknown setting '{key}'.")
        annotation = type_hints.get(key, fields[key].type)
        overrides[key] = _coerce_value(annotation, raw_value.strip())
    return overrides


def _coerce_value(annotation: Any, raw_value: str) -> Any:
    target = _resolve_annotation(annotation)
    normalized = raw_value.strip()

    if normalized.lower() in {"none", "null"} and _is_optional(annotation):
        return None
    if target is str or target is Any:
        return normalized
    if target is bool:
        return _parse_bool(normalized)
    if target is int:
        return int(normalized, 10)
    if target is float:
        return float(normalized)
    if target is list:
        if normalized.startswith("["):
            try:
                return json.loads(normalized)
            except json.JSONDecodeError as exc:
                raise ValueError("List overrides must be valid JSON arrays") from exc
        return [item.strip() for item in normalized.split(",") if item.strip()]
    return normalized


def _resolve_annotation(annotation: Any) -> Any:
    origin = get_origin(annotation)
    if origin is None:
        return annotation
    if origin in {list, dict}:
        return origin
    args = [arg for arg in get_args(annotation) if arg is not type(None)]
    if not args:
        return origin
    return _resolve_annotation(args[0])


def _is_optional(annotation: Any) -> bool:
    return type(None) in get_args(annotation)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Cannot coerce '{value}' to a boolean.")


def _dump_settings(
    settings: Settings,
    store: SettingsStore,
    *,
    overrides: Mapping[str, Any],
    stream: TextIO | None = None,
) -> None:
    destination = stream or sys.stdout
    payload = asdict(settings)
    payload["api_key"] = redact_secret(payload.get("api_key") or "")
    metadata = {
        "path": str(store.path),
        "secret_backend": store.vault.strategy,
        "cli_overrides": sorted(overrides.keys()),
        "environment_variables": _active_env_overrides(),
    }
    json.dump({"settings": payload, "meta": metadata}, destination, indent=2)
    destination.write("\n")


def _active_env_overrides() -> list[str]:
    return sorted(name for name in os.environ if name.startswith("TOOLCHAT_"))


if __name__ == "__main__":  # pragma: no cover - manual invocation
    with contextlib.suppress(KeyboardInterrupt):
        main()
