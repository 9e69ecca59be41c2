# The module normalizes every call to the model provider (the model gateway).
# Date: 2026-10-18
# Version: 0.2.0

import asyncio
import random
import re
from functools import lru_cache
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence, Union

import openai
from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from grounded_agent.core.config import Settings, get_settings
from grounded_agent.core.exceptions import (
    ProviderAuthError,
    ProviderContentFilterError,
    ProviderContextLengthError,
    ProviderError,
    ProviderGenericError,
    ProviderRateLimitError,
)
from grounded_agent.models.common import Message, TokenUsage, ToolCall
from grounded_agent.utils.logger import console

MessageLike = Union[Message, Dict[str, Any]]

CONTEXT_LENGTH_PATTERN = re.compile(
    r"context[_ ]length|maximum context length|too many tokens|prompt is too long|reduce the length",
    re.IGNORECASE,
)
CONTENT_FILTER_PATTERN = re.compile(
    r"content[_ ]filter|content management policy|responsible ?ai|flagged by|safety system",
    re.IGNORECASE,
)
RETRYABLE_STATUS_CODES = {408, 409}


class CompletionOptions(BaseModel):
    """
    Per-call options of the gateway.
    Attributes:
        model (Optional[str]): Logical alias ("fast", "smart", "reasoning") or a concrete model id.
        temperature (Optional[float]): Sampling temperature, settings default when omitted.
        max_tokens (Optional[int]): Maximum output tokens, settings default when omitted.
        tools (Optional[List[Dict[str, Any]]]): Function-calling tool schemas.
        tool_choice (Optional[Union[str, Dict[str, Any]]]): "auto", "none", "required" or a forced function.
        response_format (Optional[Dict[str, Any]]): Structured-output schema.
    """
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tools: Optional[List[Dict[str, Any]]] = None
    tool_choice: Optional[Union[str, Dict[str, Any]]] = None
    response_format: Optional[Dict[str, Any]] = None


class CompletionResult(BaseModel):
    message: Message
    finish_reason: Optional[str] = None
    model: str
    usage: TokenUsage = Field(default_factory=TokenUsage)


# --- Alias resolution ---

def model_aliases(settings: Settings) -> Dict[str, str]:
    return {
        "fast": settings.MODEL_FAST,
        "smart": settings.MODEL_SMART,
        "reasoning": settings.MODEL_REASONING,
    }


def resolve_model(name: Optional[str], settings: Optional[Settings] = None) -> str:
    """Maps a logical model name to a concrete id; unknown names are already concrete."""
    settings = settings or get_settings()
    aliases = model_aliases(settings)
    name = name or settings.DEFAULT_MODEL
    return aliases.get(name.lower(), name)


# --- Tool schema cleaning ---

def clean_schema(schema: Any) -> Dict[str, Any]:
    """
    Makes a JSON schema acceptable to the chat-completions API: arrays need an
    'items' schema, objects need 'properties', '$schema' is not accepted.
    """
    if not isinstance(schema, dict):
        return {"type": "object", "properties": {}}

    cleaned = {key: value for key, value in schema.items() if key != "$schema"}
    if cleaned.get("type") == "array" and not cleaned.get("items"):
        cleaned["items"] = {"type": "object"}
    if cleaned.get("type") == "object" and "properties" not in cleaned:
        cleaned["properties"] = {}
    if isinstance(cleaned.get("properties"), dict):
        cleaned["properties"] = {name: clean_schema(prop) for name, prop in cleaned["properties"].items()}
    if isinstance(cleaned.get("items"), dict):
        cleaned["items"] = clean_schema(cleaned["items"])
    if isinstance(cleaned.get("additionalProperties"), dict):
        cleaned["additionalProperties"] = clean_schema(cleaned["additionalProperties"])
    return cleaned


def prepare_tools(tools: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Normalizes tool definitions (OpenAI or name/description/parameters shape)."""
    prepared = []
    for tool in tools:
        function = tool.get("function", tool)
        parameters = function.get("parameters") or function.get("input_schema") or {}
        if not parameters.get("type"):
            parameters = {**parameters, "type": "object"}
        prepared.append({
            "type": "function",
            "function": {
                "name": function["name"],
                "description": function.get("description", ""),
                "parameters": clean_schema(parameters),
            },
        })
    return prepared


# --- Error classification ---

def classify_status(status: Optional[int], message: str, retry_after: Optional[float] = None) -> ProviderError:
    """Maps a provider status code and message onto the error taxonomy."""
    if status in (401, 403):
        return ProviderAuthError(message, status=status)
    if status == 429:
        return ProviderRateLimitError(message, retry_after=retry_after)
    if status is not None and 400 <= status < 500 and status not in RETRYABLE_STATUS_CODES:
        if CONTEXT_LENGTH_PATTERN.search(message):
            return ProviderContextLengthError(message, status=status)
        if CONTENT_FILTER_PATTERN.search(message):
            return ProviderContentFilterError(message, status=status)
        return ProviderGenericError(message, retryable=False, status=status)
    if status is None or status >= 500 or status in RETRYABLE_STATUS_CODES:
        return ProviderGenericError(message, retryable=True, status=status)
    return ProviderGenericError(message, retryable=False, status=status)


def _retry_after(headers) -> Optional[float]:
    if headers is None:
        return None
    value = headers.get("retry-after-ms")
    if value is not None:
        try:
            return float(value) / 1000.0
        except ValueError:
            pass
    value = headers.get("retry-after")
    if value is not None:
        try:
            return float(value)
        except ValueError:
            return None
    return None


def _api_error_message(exc: openai.APIError) -> str:
    body = getattr(exc, "body", None)
    if isinstance(body, dict):
        error = body.get("error", body)
        if isinstance(error, dict) and error.get("message"):
            code = error.get("code")
            return f"{error['message']} ({code})" if code else error["message"]
    return getattr(exc, "message", None) or str(exc)


def classify_provider_error(exc: Exception) -> ProviderError:
    """Converts any exception raised by the OpenAI client into a typed ProviderError."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, openai.APITimeoutError):
        return ProviderGenericError("Request to the model provider timed out.", retryable=True)
    if isinstance(exc, openai.APIConnectionError):
        return ProviderGenericError(f"Could not reach the model provider: {exc}", retryable=True)
    if isinstance(exc, openai.APIStatusError):
        headers = exc.response.headers if exc.response is not None else None
        return classify_status(exc.status_code, _api_error_message(exc), _retry_after(headers))
    if isinstance(exc, openai.APIError):
        return ProviderGenericError(_api_error_message(exc), retryable=False)
    return ProviderGenericError(f"Unexpected model provider failure: {exc}", retryable=False)


# --- Streaming ---

class CompletionStream:
    """
    Async iterator over the text deltas of one streamed completion. Text and
    tool-call fragments are accumulated on the way, so after the iteration
    ends `result` holds the complete assistant message.
    """

    def __init__(self, open_stream: Callable[[], Awaitable[Any]], model: str,
                 on_finish: Optional[Callable[[CompletionResult], None]] = None):
        self._open_stream = open_stream
        self._on_finish = on_finish
        self.model = model
        self.result: Optional[CompletionResult] = None
        self._text: List[str] = []
        self._tool_calls: Dict[int, Dict[str, str]] = {}
        self._finish_reason: Optional[str] = None
        self._usage = TokenUsage()

    def __aiter__(self) -> AsyncIterator[str]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        stream = await self._open_stream()
        try:
            async for chunk in stream:
                usage = getattr(chunk, "usage", None)
                if usage:
                    self._usage = TokenUsage(
                        input_tokens=usage.prompt_tokens or 0,
                        output_tokens=usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta
                if delta is not None and delta.content:
                    self._text.append(delta.content)
                    yield delta.content
                if delta is not None and delta.tool_calls:
                    for fragment in delta.tool_calls:
                        self._accumulate(fragment)
                if choice.finish_reason:
                    self._finish_reason = choice.finish_reason
        except ProviderError:
            raise
        except Exception as e:
            raise classify_provider_error(e) from e

        self.result = self._build_result()
        if self._on_finish:
            self._on_finish(self.result)
        if self._finish_reason == "content_filter":
            raise ProviderContentFilterError("The response was blocked by the provider's content filter.")

    def _accumulate(self, fragment: Any):
        index = getattr(fragment, "index", None) or 0
        entry = self._tool_calls.setdefault(index, {"id": "", "name": "", "arguments": ""})
        if fragment.id:
            entry["id"] = fragment.id
        function = fragment.function
        if function is not None:
            if function.name:
                entry["name"] = function.name
            if function.arguments:
                entry["arguments"] += function.arguments

    def _build_result(self) -> CompletionResult:
        tool_calls = [
            ToolCall(
                id=entry["id"] or f"call_{index}",
                function={"name": entry["name"], "arguments": entry["arguments"]},
            )
            for index, entry in sorted(self._tool_calls.items())
            if entry["name"]
        ]
        message = Message(
            role="assistant",
            content="".join(self._text) or None,
            tool_calls=tool_calls or None,
        )
        return CompletionResult(
            message=message,
            finish_reason=self._finish_reason,
            model=self.model,
            usage=self._usage,
        )

    async def collect(self) -> CompletionResult:
        """Drains the stream and returns the accumulated result."""
        async for _ in self:
            pass
        return self.result


# --- Gateway ---

class LLMGateway:
    """
    Normalizes calls to an OpenAI-compatible provider: single-shot completion,
    streamed completion and single-turn generation, with alias resolution,
    typed errors and bounded retries for transient failures.
    """

    def __init__(self, client: Optional[AsyncOpenAI] = None, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        # Retries are owned here, so the SDK's own retry loop is disabled.
        self._client = client or AsyncOpenAI(
            api_key=self.settings.OPENAI_API_KEY,
            base_url=self.settings.OPENAI_BASE_URL,
            timeout=self.settings.LLM_TIMEOUT_SECONDS,
            max_retries=0,
        )
        self.max_retries = self.settings.LLM_MAX_RETRIES
        self.retry_base_delay = self.settings.LLM_RETRY_BASE_DELAY
        self._usage = TokenUsage()

    def resolve_model(self, name: Optional[str]) -> str:
        return resolve_model(name, self.settings)

    def _build_params(self, messages: Sequence[MessageLike], options: CompletionOptions) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": self.resolve_model(options.model),
            "messages": [m.to_provider() if isinstance(m, Message) else m for m in messages],
            "temperature": options.temperature if options.temperature is not None else self.settings.LLM_TEMPERATURE,
            "max_tokens": options.max_tokens or self.settings.LLM_MAX_TOKENS,
        }
        if options.tools:
            params["tools"] = prepare_tools(options.tools)
            params["tool_choice"] = options.tool_choice or "auto"
        if options.response_format:
            params["response_format"] = options.response_format
        return params

    async def _with_retries(self, operation: Callable[[], Awaitable[Any]], label: str) -> Any:
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                error = classify_provider_error(e)
                if not error.retryable or attempt >= self.max_retries:
                    console.error(f"LLM call '{label}' failed with {error.code}: {error.message}")
                    if error is e:
                        raise
                    raise error from e
                if isinstance(error, ProviderRateLimitError) and error.retry_after:
                    delay = error.retry_after
                else:
                    delay = self.retry_base_delay * (2 ** attempt) + random.uniform(0, 0.5)
                attempt += 1
                console.warning(
                    f"Retry {attempt}/{self.max_retries} for '{label}' after {error.code} (delay {delay:.1f}s)"
                )
                await asyncio.sleep(delay)

    def _record_usage(self, result: CompletionResult):
        self._usage.add(result.usage)

    async def complete(self, messages: Sequence[MessageLike],
                       options: Optional[CompletionOptions] = None) -> CompletionResult:
        """Sends the conversation and returns the complete assistant turn."""
        options = options or CompletionOptions()
        params = self._build_params(messages, options)
        console.info(f"Calling LLM '{params['model']}' with {len(params['messages'])} messages...")

        response = await self._with_retries(
            lambda: self._client.chat.completions.create(**params), "complete"
        )

        choice = response.choices[0]
        if choice.finish_reason == "content_filter":
            raise ProviderContentFilterError("The response was blocked by the provider's content filter.")

        raw = choice.message
        tool_calls = [
            ToolCall(id=tc.id, function={"name": tc.function.name, "arguments": tc.function.arguments or ""})
            for tc in (raw.tool_calls or [])
        ]
        usage = getattr(response, "usage", None)
        result = CompletionResult(
            message=Message(role="assistant", content=raw.content, tool_calls=tool_calls or None),
            finish_reason=choice.finish_reason,
            model=params["model"],
            usage=TokenUsage(
                input_tokens=(usage.prompt_tokens or 0) if usage else 0,
                output_tokens=(usage.completion_tokens or 0) if usage else 0,
            ),
        )
        self._record_usage(result)
        return result

    def complete_streaming(self, messages: Sequence[MessageLike],
                           options: Optional[CompletionOptions] = None) -> CompletionStream:
        """
        Streams the assistant turn. Iterate the returned stream for text deltas;
        its `result` attribute holds the reconstructed message once it is drained.
        Only opening the stream is retried, never a partially consumed stream.
        """
        options = options or CompletionOptions()
        params = self._build_params(messages, options)
        params["stream"] = True
        params["stream_options"] = {"include_usage": True}

        async def open_stream():
            console.info(f"Streaming LLM '{params['model']}' with {len(params['messages'])} messages...")
            return await self._with_retries(
                lambda: self._client.chat.completions.create(**params), "complete_streaming"
            )

        return CompletionStream(open_stream, params["model"], on_finish=self._record_usage)

    async def generate(self, prompt: str, options: Optional[CompletionOptions] = None,
                       system: Optional[str] = None) -> str:
        """Single-turn convenience: one prompt in, the answer text out."""
        messages = []
        if system:
            messages.append(Message(role="system", content=system))
        messages.append(Message(role="user", content=prompt))
        result = await self.complete(messages, options)
        return result.message.text().strip()

    def get_total_usage(self) -> TokenUsage:
        return self._usage.model_copy()

    def reset_usage(self):
        self._usage = TokenUsage()

    async def close(self):
        await self._client.close()


@lru_cache
def get_gateway() -> LLMGateway:
    return LLMGateway()
