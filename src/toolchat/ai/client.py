"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Sequence, cast

import httpx
from openai import AsyncOpenAI, APIConnectionError, APIError, APIStatusError, RateLimitError
from openai.lib.streaming.chat import ChatCompletionStreamEvent
from openai.types.chat import (
    ChatCompletionMessageParam,
    ChatCompletionToolParam,
)
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..errors import BackendUnavailable, GenerationError, UnavailableReason

LOGGER = logging.getLogger(__name__)

_RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)

_UNAVAILABLE_MESSAGES: Mapping[UnavailableReason, str] = {
    UnavailableReason.NOT_ELIGIBLE: "Sorry, the configured endpoint does not offer the selected model.",
    UnavailableReason.DISABLED: "AI Chat is unavailable because no API key has been configured.",
    UnavailableReason.NOT_READY: "AI Chat isn't ready yet. Try again later.",
}


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    debug_logging: bool = False


@dataclass(slots=True, frozen=True)
class Availability:
    """Backend availability as seen by the front end."""

    available: bool
    reason: UnavailableReason | None = None
    detail: str = ""

    @classmethod
    def ok(cls) -> "Availability":
        return cls(available=True)

    @classmethod
    def unavailable(cls, reason: UnavailableReason, detail: str = "") -> "Availability":
        return cls(available=False, reason=reason, detail=detail)

    @property
    def message(self) -> str:
        """User-facing description of the state."""
        if self.available:
            return "AI Chat is available."
        if self.reason is None:
            return "AI Chat is currently unavailable."
        return _UNAVAILABLE_MESSAGES[self.reason]


@dataclass(slots=True)
class AIStreamEvent:
    """Normalized representation of streaming deltas."""

    type: str
    content: str | None = None
    tool_name: str | None = None
    tool_index: int | None = None
    tool_arguments: str | None = None
    tool_call_id: str | None = None


class AIClient:
    """Async client providing streaming helpers with retry semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._settings = settings
        self._client = client if client is not None else self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    @property
    def model(self) -> str:
        return self._settings.model

    async def stream_chat(
        self,
        messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam],
        *,
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None = None,
        temperature: float | None = None,
    ) -> AsyncIterator[AIStreamEvent]:
        """Stream chat completions for the provided messages.

        Connection-level failures are retried only until the first event has
        been yielded; after that the failure surfaces as :class:`GenerationError`
        so callers never observe duplicated output.

        Raises:
            BackendUnavailable: If no API key is configured.
        """

        openai_client = self._require_client()
        payload = self._build_chat_payload(
            messages=self._coerce_messages(messages),
            tools=tools,
            temperature=temperature if temperature is not None else self._settings.temperature,
        )
        LOGGER.debug(
            "Starting streamed chat completion via %s with %s message(s)",
            self._settings.model,
            len(payload["messages"]),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        emitted = False
        async for attempt in self._retrying():
            with attempt:
                call_ids: Dict[int, str] = {}
                try:
                    async with openai_client.chat.completions.stream(**payload) as stream:
                        async for event in stream:
                            self._collect_tool_call_ids(event, call_ids)
                            normalized = self._normalize_stream_event(event)
                            if normalized is not None:
                                if normalized.tool_index is not None and not normalized.tool_call_id:
                                    normalized.tool_call_id = call_ids.get(normalized.tool_index)
                                emitted = True
                                yield normalized
                except _RETRYABLE_ERRORS as exc:
                    if emitted:
                        raise GenerationError(f"Stream interrupted: {exc}", cause=exc) from exc
                    raise
                break

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        openai_client = self._require_client()
        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await openai_client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

    async def availability(self, *, force_refresh: bool = False) -> Availability:
        """Query the endpoint and classify why it cannot be used, if it cannot."""

        if self._client is None:
            return Availability.unavailable(UnavailableReason.DISABLED)
        try:
            models = await self.list_models(force_refresh=force_refresh)
        except APIStatusError as exc:
            if exc.status_code in (401, 403):
                return Availability.unavailable(UnavailableReason.DISABLED, str(exc))
            return Availability.unavailable(UnavailableReason.NOT_READY, str(exc))
        except (APIConnectionError, httpx.HTTPError) as exc:
            return Availability.unavailable(UnavailableReason.NOT_READY, str(exc))
        # Some compatible servers return an empty listing; treat that as eligible.
        if models and self._settings.model not in models:
            return Availability.unavailable(
                UnavailableReason.NOT_ELIGIBLE,
                f"model '{self._settings.model}' not offered",
            )
        return Availability.ok()

    def _require_client(self) -> AsyncOpenAI:
        if self._client is None:
            raise BackendUnavailable(UnavailableReason.DISABLED, "no API key configured")
        return self._client

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI | None:
        if not (settings.api_key or "").strip():
            LOGGER.info("No API key configured; AI client disabled")
            return None
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS),
        )

    def _coerce_messages(
        self, messages: Iterable[Mapping[str, Any] | ChatCompletionMessageParam]
    ) -> List[ChatCompletionMessageParam]:
        normalized: List[ChatCompletionMessageParam] = []
        for message in messages:
            normalized.append(cast(ChatCompletionMessageParam, dict(message)))
        if not normalized:
            raise ValueError("At least one message is required to start a chat")
        return normalized

    def _build_chat_payload(
        self,
        *,
        messages: Sequence[ChatCompletionMessageParam],
        tools: Iterable[ChatCompletionToolParam | Mapping[str, Any]] | None,
        temperature: float | None,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": list(messages),
        }

        tool_list = list(tools) if tools else []
        if tool_list:
            payload["tools"] = tool_list
        if temperature is not None:
            payload["temperature"] = temperature

        return payload

    def _normalize_stream_event(self, event: ChatCompletionStreamEvent[Any]) -> AIStreamEvent | None:
        event_type = getattr(event, "type", None)
        if event_type is None:
            return None

        if event_type == "chunk":
            return None
        if event_type == "content.delta":
            delta_text = getattr(event, "delta", None)
            if delta_text:
                return AIStreamEvent(type=event_type, content=str(delta_text))
            return None
        if event_type == "content.done":
            return AIStreamEvent(type=event_type, content=getattr(event, "content", None))
        if event_type == "refusal.done":
            return AIStreamEvent(type=event_type, content=getattr(event, "refusal", None))
        if event_type == "tool_calls.function.arguments.done":
            return AIStreamEvent(
                type=event_type,
                tool_name=getattr(event, "name", None),
                tool_index=getattr(event, "index", None),
                tool_arguments=getattr(event, "arguments", None),
                tool_call_id=getattr(event, "id", None)
                or getattr(event, "tool_call_id", None),
            )
        return None

    @staticmethod
    def _collect_tool_call_ids(event: Any, call_ids: Dict[int, str]) -> None:
        if getattr(event, "type", None) != "chunk":
            return
        chunk = getattr(event, "chunk", None)
        for choice in getattr(chunk, "choices", None) or ():
            delta = getattr(choice, "delta", None)
            for tool_call in getattr(delta, "tool_calls", None) or ():
                index = getattr(tool_call, "index", None)
                call_id = getattr(tool_call, "id", None)
                if index is not None and call_id:
                    call_ids.setdefault(index, call_id)

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        if self._client is None:
            return
        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
        except Exception as exc:  # pragma: no cover - defensive guard
            LOGGER.debug("AI client close failed to start: %s", exc)
            return
        if inspect.isawaitable(result):
            await result
