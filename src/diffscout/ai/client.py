"""Async AI client wrapper built around OpenAI-compatible endpoints."""

from __future__ import annotations

import inspect
import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Mapping

import httpx
import tiktoken
from openai import (
    AsyncOpenAI,
    APIConnectionError,
    APIError,
    APIStatusError,
    AuthenticationError,
    BadRequestError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    UnprocessableEntityError,
)
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .ai_types import ModelDescriptor, TokenCounterProtocol
from .orchestration.cancellation import CancellationToken, run_cancellable
from .orchestration.errors import CancellationError, ModelRequestError
from .orchestration.types import ModelReply, ModelRequest, ToolCallRef

__all__ = [
    "AIClient",
    "ApproxByteCounter",
    "ClientSettings",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "client_settings_from",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4

# Input windows for common models; anything else falls back to settings or the budget default.
_KNOWN_CONTEXT_WINDOWS: Mapping[str, int] = {
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_000_000,
    "gpt-4.1-mini": 1_000_000,
    "gpt-4-turbo": 128_000,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
}

_RETRYABLE_ERRORS = (
    APIError,
    APIStatusError,
    APIConnectionError,
    RateLimitError,
    httpx.TimeoutException,
)

# Rejections that will fail the same way on every attempt.
_FATAL_ERRORS = (
    AuthenticationError,
    PermissionDeniedError,
    NotFoundError,
    BadRequestError,
    UnprocessableEntityError,
)

_SERVICE_UNAVAILABLE = 503


class ApproxByteCounter(TokenCounterProtocol):
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TiktokenCounter(TokenCounterProtocol):
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str, *, encoding_name: str | None = None) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        self.model_name = model_name
        self._encoding = self._load_encoding(model_name, encoding_name)
        self._fallback = ApproxByteCounter(model_name=model_name)

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    def _load_encoding(self, model_name: str, encoding_name: str | None):
        try:
            if encoding_name:
                return tiktoken.get_encoding(encoding_name)
            return tiktoken.encoding_for_model(model_name)
        except KeyError:
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            return tiktoken.get_encoding("cl100k_base")


class TokenCounterRegistry:
    """Registry maintaining tokenizer implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the AI client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    temperature: float | None = 0.1
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_input_tokens: int | None = None
    default_headers: Mapping[str, str] | None = None
    metadata: Mapping[str, str] | None = None
    debug_logging: bool = False


class AIClient:
    """Async chat-completions client with retry and cancellation semantics."""

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def send_request(self, request: ModelRequest, cancellation: CancellationToken | None = None) -> ModelReply:
        """Send one non-streaming chat completion and normalize the reply.

        Raises:
            CancellationError: If *cancellation* fires while waiting.
            ModelRequestError: When the endpoint keeps failing after retries.
        """

        payload = self._build_chat_payload(request)
        LOGGER.debug(
            "Sending chat completion via %s with %d message(s) and %d tool(s)",
            self._settings.model,
            len(payload["messages"]),
            len(request.tools),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        work = self._create_with_retries(payload)
        if cancellation is not None:
            response = await run_cancellable(work, cancellation)
        else:
            response = await work
        return self._normalize_response(response)

    async def get_current_model(self) -> ModelDescriptor:
        """Describe the configured model for context budgeting."""

        model_name = self._settings.model
        return ModelDescriptor(
            name=model_name,
            max_input_tokens=self._settings.max_input_tokens or _lookup_context_window(model_name),
            counter=self.get_token_counter(model_name),
        )

    def get_token_counter(self, model: str | None = None) -> TokenCounterProtocol:
        return self._token_registry.get(model or self._settings.model)

    def count_tokens(self, text: str, *, model: str | None = None) -> int:
        if not text:
            return 0
        return self._token_registry.count(model or self._settings.model, text)

    async def aclose(self) -> None:
        """Close the underlying OpenAI client to release network resources."""

        close = getattr(self._client, "close", None)
        if close is None:
            return
        result = close()
        if inspect.isawaitable(result):
            await result

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            default_headers=headers,
            max_retries=0,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        try:
            counter: TokenCounterProtocol = TiktokenCounter(model_name)
        except Exception as exc:  # pragma: no cover - tokenizer download failures
            LOGGER.warning("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            counter = ApproxByteCounter(model_name=model_name)
        self._token_registry.register(model_name, counter)

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(_RETRYABLE_ERRORS) & retry_if_not_exception_type(_FATAL_ERRORS),
        )

    async def _create_with_retries(self, payload: Mapping[str, Any]) -> Any:
        try:
            async for attempt in self._retrying():
                with attempt:
                    return await self._client.chat.completions.create(**payload)
        except CancellationError:
            raise
        except _FATAL_ERRORS as exc:
            LOGGER.error("Chat completion rejected: %s", exc)
            raise ModelRequestError(f"Model request failed: {exc}", cause=exc, fatal=True) from exc
        except (RetryError, *_RETRYABLE_ERRORS) as exc:
            LOGGER.warning("Chat completion failed after %d attempt(s): %s", self._settings.max_retries, exc)
            fatal = getattr(exc, "status_code", None) == _SERVICE_UNAVAILABLE
            raise ModelRequestError(f"Model request failed: {exc}", cause=exc, fatal=fatal) from exc
        raise ModelRequestError("Model request failed: no attempt was made")  # pragma: no cover

    def _build_chat_payload(self, request: ModelRequest) -> Dict[str, Any]:
        messages = request.to_chat_messages()
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
        }
        if self._settings.metadata:
            payload["metadata"] = dict(self._settings.metadata)
        if request.tools:
            payload["tools"] = [dict(tool) for tool in request.tools]
            payload["tool_choice"] = "auto"
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        return payload

    def _normalize_response(self, response: Any) -> ModelReply:
        choices = getattr(response, "choices", None) or []
        if not choices:
            raise ModelRequestError("Model returned no choices")
        choice = choices[0]
        message = getattr(choice, "message", None)
        content = getattr(message, "content", None)
        tool_calls: list[ToolCallRef] = []
        for index, raw in enumerate(getattr(message, "tool_calls", None) or ()):
            function = getattr(raw, "function", None)
            if function is None:
                continue
            tool_calls.append(
                ToolCallRef(
                    id=getattr(raw, "id", None) or f"call_{index}",
                    name=getattr(function, "name", "") or "",
                    arguments_json=getattr(function, "arguments", None) or "{}",
                )
            )
        return ModelReply(
            content=content,
            tool_calls=tuple(tool_calls),
            finish_reason=getattr(choice, "finish_reason", None),
        )

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)


def _lookup_context_window(model_name: str | None) -> int | None:
    key = (model_name or "").strip().lower()
    if not key:
        return None
    if key in _KNOWN_CONTEXT_WINDOWS:
        return _KNOWN_CONTEXT_WINDOWS[key]
    # Dated snapshots such as "gpt-4o-2024-08-06" share the base model's window.
    for prefix in sorted(_KNOWN_CONTEXT_WINDOWS, key=len, reverse=True):
        if key.startswith(prefix + "-"):
            return _KNOWN_CONTEXT_WINDOWS[prefix]
    return None


def client_settings_from(settings: Any) -> ClientSettings:
    """Build :class:`ClientSettings` from the persisted application settings."""

    return ClientSettings(
        base_url=settings.base_url,
        api_key=settings.api_key,
        model=settings.model,
        organization=settings.organization,
        temperature=settings.temperature,
        request_timeout=settings.request_timeout,
        max_retries=settings.max_retries,
        retry_min_seconds=settings.retry_min_seconds,
        retry_max_seconds=settings.retry_max_seconds,
        max_input_tokens=settings.max_input_tokens,
        default_headers=settings.default_headers or None,
        metadata=settings.metadata or None,
        debug_logging=settings.debug_logging,
    )
