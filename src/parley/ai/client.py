"""Async model client built around OpenAI-compatible endpoints."""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Protocol, cast

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI, RateLimitError
from openai.types.chat import ChatCompletionMessageParam
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

try:  # pragma: no cover - optional dependency used when installed
    import tiktoken  # type: ignore
except Exception:  # pragma: no cover - optional fallback when package missing
    tiktoken = None

from .orchestration.cancellation import CancellationToken
from .orchestration.errors import (
    FatalErrorClassifier,
    FatalModelError,
    OperationCancelledError,
    ServiceUnavailableError,
    TransientModelError,
    error_message,
    is_service_unavailable_error,
)
from .orchestration.types import ToolCall, ToolCallRequest, ToolCallResponse

__all__ = [
    "AIClient",
    "ClientSettings",
    "ModelInfo",
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TiktokenCounter",
    "TokenCounterRegistry",
    "RETRYABLE_ERRORS",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4
_TIKTOKEN_WARNING_EMITTED = False

# Only failures a second attempt can plausibly fix. Status errors such as
# 400/404/503 are classified instead of retried.
RETRYABLE_ERRORS: tuple[type[BaseException], ...] = (
    APIConnectionError,
    APITimeoutError,
    RateLimitError,
    httpx.TimeoutException,
)


# -----------------------------------------------------------------------------
# Token counting
# -----------------------------------------------------------------------------


class TokenCounterProtocol(Protocol):
    """Protocol describing tokenizer implementations."""

    model_name: str | None

    def count(self, text: str) -> int:
        """Return the precise token count for *text*."""
        ...

    def estimate(self, text: str) -> int:
        """Return a deterministic fallback estimate when precise counts fail."""
        ...


class ApproxByteCounter:
    """Deterministic fallback counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        return max(1, math.ceil(len(text.encode("utf-8", errors="ignore")) / self._bytes_per_token))


class TiktokenCounter:
    """Token counter backed by OpenAI's tiktoken package."""

    def __init__(self, model_name: str) -> None:
        if not model_name:
            raise ValueError("model_name is required for TiktokenCounter")
        if tiktoken is None:  # pragma: no cover - depends on optional dependency
            raise RuntimeError("tiktoken is not installed")
        self.model_name = model_name
        self._fallback = ApproxByteCounter(model_name=model_name)
        token_module = cast(Any, tiktoken)
        try:
            self._encoding = token_module.encoding_for_model(model_name)
        except Exception:  # pragma: no cover - unknown models use the default encoding
            LOGGER.debug("Falling back to cl100k_base encoding for model %s", model_name)
            self._encoding = token_module.get_encoding("cl100k_base")

    def count(self, text: str) -> int:
        if not text:
            return 0
        try:
            return len(self._encoding.encode(text, disallowed_special=()))
        except Exception:  # pragma: no cover - encoder failure
            LOGGER.debug("tiktoken encode failed; falling back to approximation", exc_info=True)
            return self._fallback.estimate(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)


class TokenCounterRegistry:
    """Tokenizer implementations keyed by model name."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> TokenCounterRegistry:
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        return self._counters.get(self._normalize_key(model_name), self._fallback)

    def count(self, model_name: str | None, text: str) -> int:
        counter = self.get(model_name)
        try:
            return counter.count(text)
        except Exception:  # pragma: no cover - counter failure
            LOGGER.debug("Token counter failed; falling back to estimate", exc_info=True)
            return counter.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def _log_tiktoken_warning_once() -> None:
    global _TIKTOKEN_WARNING_EMITTED
    if _TIKTOKEN_WARNING_EMITTED:
        return
    _TIKTOKEN_WARNING_EMITTED = True
    LOGGER.warning(
        "tiktoken is not installed; using approximate byte counter for token estimates. Install the optional "
        "[ai_tokenizers] dependency group for exact counts."
    )


# -----------------------------------------------------------------------------
# Settings and model handle
# -----------------------------------------------------------------------------


@dataclass(slots=True)
class ClientSettings:
    """Subset of settings required to configure the model client."""

    base_url: str
    api_key: str
    model: str
    organization: str | None = None
    request_timeout: float | None = 90.0
    max_retries: int = 3
    retry_min_seconds: float = 0.5
    retry_max_seconds: float = 6.0
    max_input_tokens: int | None = None
    temperature: float | None = 0.2
    default_headers: Mapping[str, str] | None = None
    fatal_error_patterns: tuple[Mapping[str, Any], ...] = ()
    debug_logging: bool = False


@dataclass(slots=True)
class ModelInfo:
    """Handle for the active model, used by the budget manager.

    Attributes:
        name: Model identifier sent with each request.
        max_input_tokens: Input window size; None lets callers apply a default.
    """

    name: str
    max_input_tokens: int | None
    _registry: TokenCounterRegistry = field(repr=False, default_factory=TokenCounterRegistry.global_instance)

    async def count_tokens(self, text: str, cancellation: CancellationToken | None = None) -> int:
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        if not text:
            return 0
        return self._registry.count(self.name, text)


# -----------------------------------------------------------------------------
# Client
# -----------------------------------------------------------------------------


class AIClient:
    """Async client sending tool-calling chat requests with retry semantics.

    Vendor errors are translated at this boundary: fatal configuration errors
    become :class:`FatalModelError`, 503s become :class:`ServiceUnavailableError`
    and anything else is wrapped in :class:`TransientModelError`.
    """

    def __init__(
        self,
        settings: ClientSettings,
        *,
        client: AsyncOpenAI | None = None,
        token_registry: TokenCounterRegistry | None = None,
        fatal_classifier: FatalErrorClassifier | None = None,
    ) -> None:
        self._settings = settings
        self._client = client or self._build_client(settings)
        self._models_cache: List[str] | None = None
        self._models_lock = asyncio.Lock()
        self._token_registry = token_registry or TokenCounterRegistry.global_instance()
        self._fatal_classifier = fatal_classifier or FatalErrorClassifier.from_settings(settings.fatal_error_patterns)
        self._register_default_token_counter()

    @property
    def settings(self) -> ClientSettings:
        return self._settings

    async def send_request(
        self,
        request: ToolCallRequest,
        cancellation: CancellationToken | None = None,
    ) -> ToolCallResponse:
        """Send one chat completion request and normalize the reply.

        Raises:
            OperationCancelledError: ``cancellation`` fired before the request.
            FatalModelError: The vendor rejected the model or the request shape.
            ServiceUnavailableError: Upstream answered 503.
            TransientModelError: Any other failure once retries are exhausted.
        """
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        payload = self._build_chat_payload(request)
        LOGGER.debug(
            "Sending chat completion via %s with %s message(s) and %s tool(s)",
            self._settings.model,
            len(payload["messages"]),
            len(request.tools),
        )
        if self._settings.debug_logging:
            self._log_prompt_payload(payload)

        try:
            async for attempt in self._retrying():
                with attempt:
                    completion = await self._client.chat.completions.create(**payload)
        except Exception as exc:
            raise self._translate_error(exc, cancellation) from exc
        return self._normalize_completion(completion)

    async def get_current_model(self) -> ModelInfo:
        return ModelInfo(
            name=self._settings.model,
            max_input_tokens=self._settings.max_input_tokens,
            _registry=self._token_registry,
        )

    async def list_models(self, *, force_refresh: bool = False) -> List[str]:
        """Return a list of supported model identifiers."""

        if self._models_cache is not None and not force_refresh:
            return list(self._models_cache)

        async with self._models_lock:
            if self._models_cache is not None and not force_refresh:
                return list(self._models_cache)

            response = await self._client.models.list()
            models = [item.id for item in response.data if getattr(item, "id", None)]
            self._models_cache = models
            return list(models)

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
    # Internals
    # ------------------------------------------------------------------
    def _build_client(self, settings: ClientSettings) -> AsyncOpenAI:
        headers = dict(settings.default_headers) if settings.default_headers else None
        # Retries are handled by tenacity, not the SDK.
        return AsyncOpenAI(
            api_key=settings.api_key,
            base_url=settings.base_url,
            organization=settings.organization,
            timeout=settings.request_timeout,
            max_retries=0,
            default_headers=headers,
        )

    def _register_default_token_counter(self) -> None:
        model_name = (self._settings.model or "").strip()
        if not model_name or self._token_registry.has(model_name):
            return
        if tiktoken is None:
            _log_tiktoken_warning_once()
            self._token_registry.register(model_name, ApproxByteCounter(model_name=model_name))
            return
        try:
            self._token_registry.register(model_name, TiktokenCounter(model_name))
        except Exception as exc:  # pragma: no cover - tokenizer download failures
            LOGGER.debug("Failed to initialize tiktoken counter for %s: %s", model_name, exc)
            self._token_registry.register(model_name, ApproxByteCounter(model_name=model_name))

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(max(1, self._settings.max_retries)),
            wait=wait_exponential(
                multiplier=self._settings.retry_min_seconds,
                max=self._settings.retry_max_seconds,
            ),
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
        )

    def _build_chat_payload(self, request: ToolCallRequest) -> Dict[str, Any]:
        messages: List[ChatCompletionMessageParam] = [message.to_chat_param() for message in request.messages]
        if not messages:
            raise ValueError("At least one message is required to start a chat")
        payload: Dict[str, Any] = {
            "model": self._settings.model,
            "messages": messages,
        }
        if request.tools:
            payload["tools"] = list(request.tools)
        if self._settings.temperature is not None:
            payload["temperature"] = self._settings.temperature
        return payload

    def _translate_error(self, error: Exception, cancellation: CancellationToken | None) -> Exception:
        if isinstance(error, (FatalModelError, ServiceUnavailableError, OperationCancelledError)):
            return error
        if cancellation is not None and cancellation.is_cancellation_requested:
            return OperationCancelledError()
        fatal = self._fatal_classifier.classify(error, model_name=self._settings.model)
        if fatal is not None:
            return fatal
        message = error_message(error)
        if is_service_unavailable_error(error):
            LOGGER.warning("Model service unavailable: %s", message)
            return ServiceUnavailableError(message)
        if isinstance(error, APIStatusError):
            message = f"{error.status_code}: {message}"
        return TransientModelError(message)

    @staticmethod
    def _normalize_completion(completion: Any) -> ToolCallResponse:
        choices = getattr(completion, "choices", None) or []
        if not choices:
            return ToolCallResponse()
        message = getattr(choices[0], "message", None)
        if message is None:
            return ToolCallResponse()
        tool_calls: list[ToolCall] = []
        for raw in getattr(message, "tool_calls", None) or ():
            function = getattr(raw, "function", None)
            if function is None:
                continue
            tool_calls.append(
                ToolCall(
                    id=str(getattr(raw, "id", "") or ""),
                    name=str(getattr(function, "name", "") or ""),
                    arguments_json=getattr(function, "arguments", None) or "{}",
                )
            )
        return ToolCallResponse(content=getattr(message, "content", None), tool_calls=tuple(tool_calls))

    def _log_prompt_payload(self, payload: Mapping[str, Any]) -> None:
        try:
            serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        except (TypeError, ValueError):
            LOGGER.debug("AI prompt payload (unserializable): %s", payload)
        else:
            LOGGER.debug("AI prompt payload:\n%s", serialized)
