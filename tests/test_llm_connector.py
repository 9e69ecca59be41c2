import httpx
import openai
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

from grounded_agent.core.exceptions import (
    ProviderAuthError,
    ProviderContentFilterError,
    ProviderContextLengthError,
    ProviderGenericError,
    ProviderRateLimitError,
)
from grounded_agent.models.common import Message
from grounded_agent.services.llm_connector import (
    CompletionOptions,
    LLMGateway,
    classify_provider_error,
    classify_status,
    clean_schema,
    resolve_model,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _status_error(cls, status, message="failure", headers=None, body=None):
    response = httpx.Response(status, headers=headers or {}, request=REQUEST)
    return cls(message, response=response, body=body)


def _gateway(create):
    client = MagicMock()
    client.chat.completions.create = create
    return LLMGateway(client=client)


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)], usage=usage)


def _fragment(index, id=None, name=None, arguments=None):
    return SimpleNamespace(index=index, id=id, function=SimpleNamespace(name=name, arguments=arguments))


async def _agen(items):
    for item in items:
        yield item


# --- Alias resolution ---

def test_resolve_model_maps_aliases():
    assert resolve_model("fast") == "gpt-4o-mini"
    assert resolve_model("SMART") == "gpt-4o"
    assert resolve_model("reasoning") == "o3-mini"


def test_resolve_model_passes_concrete_ids_through():
    assert resolve_model("gpt-4.1-nano") == "gpt-4.1-nano"


def test_resolve_model_uses_default_when_missing():
    assert resolve_model(None) == "gpt-4o"


# --- Schema cleaning ---

def test_clean_schema_fills_array_items_and_object_properties():
    schema = {
        "$schema": "http://json-schema.org/draft-07/schema#",
        "type": "object",
        "properties": {
            "ids": {"type": "array"},
            "filters": {"type": "object"},
        },
    }
    cleaned = clean_schema(schema)
    assert "$schema" not in cleaned
    assert cleaned["properties"]["ids"]["items"] == {"type": "object"}
    assert cleaned["properties"]["filters"]["properties"] == {}


# --- Error classification ---

def test_classify_status_auth():
    error = classify_status(401, "Invalid API key")
    assert isinstance(error, ProviderAuthError)
    assert error.retryable is False


def test_classify_status_rate_limit_keeps_retry_after():
    error = classify_status(429, "Slow down", retry_after=7.0)
    assert isinstance(error, ProviderRateLimitError)
    assert error.retryable is True
    assert error.retry_after == 7.0


def test_classify_status_context_length():
    error = classify_status(400, "This model's maximum context length is 128000 tokens.")
    assert isinstance(error, ProviderContextLengthError)


def test_classify_status_content_filter():
    error = classify_status(400, "The response was filtered due to our content management policy.")
    assert isinstance(error, ProviderContentFilterError)


def test_classify_status_server_errors_are_retryable():
    error = classify_status(503, "Service unavailable")
    assert isinstance(error, ProviderGenericError)
    assert error.retryable is True


def test_classify_status_other_client_errors_are_not_retryable():
    error = classify_status(404, "Model not found")
    assert isinstance(error, ProviderGenericError)
    assert error.retryable is False


def test_classify_provider_error_reads_retry_after_header():
    exc = _status_error(openai.RateLimitError, 429, headers={"retry-after": "3"})
    error = classify_provider_error(exc)
    assert isinstance(error, ProviderRateLimitError)
    assert error.retry_after == 3.0


def test_classify_provider_error_timeout_is_retryable():
    error = classify_provider_error(openai.APITimeoutError(request=REQUEST))
    assert isinstance(error, ProviderGenericError)
    assert error.retryable is True


def test_classify_provider_error_uses_body_message():
    body = {"error": {"message": "Incorrect API key provided", "code": "invalid_api_key"}}
    exc = _status_error(openai.AuthenticationError, 401, body=body)
    error = classify_provider_error(exc)
    assert isinstance(error, ProviderAuthError)
    assert "Incorrect API key provided" in error.message


# --- complete ---

@pytest.mark.asyncio
async def test_complete_returns_message_and_usage(stub_response):
    create = AsyncMock(return_value=stub_response(content="Hello there"))
    gateway = _gateway(create)

    result = await gateway.complete([Message(role="user", content="Hi")], CompletionOptions(model="fast"))

    assert result.message.content == "Hello there"
    assert result.message.tool_calls is None
    assert result.model == "gpt-4o-mini"
    assert result.usage.total_tokens == 20
    kwargs = create.call_args[1]
    assert kwargs["model"] == "gpt-4o-mini"
    assert kwargs["messages"] == [{"role": "user", "content": "Hi"}]
    assert "tools" not in kwargs


@pytest.mark.asyncio
async def test_complete_parses_tool_calls(stub_response):
    response = stub_response(
        tool_calls=[{"id": "call_1", "name": "search_records", "arguments": '{"query": "Acme"}'}],
        finish_reason="tool_calls",
    )
    gateway = _gateway(AsyncMock(return_value=response))
    tools = [{"type": "function", "function": {"name": "search_records", "parameters": {"type": "object"}}}]

    result = await gateway.complete([Message(role="user", content="Find Acme")], CompletionOptions(tools=tools))

    assert len(result.message.tool_calls) == 1
    call = result.message.tool_calls[0]
    assert call.id == "call_1"
    assert call.function_name == "search_records"
    assert call.arguments == '{"query": "Acme"}'


@pytest.mark.asyncio
async def test_complete_sends_tools_with_auto_choice(stub_response):
    create = AsyncMock(return_value=stub_response(content="ok"))
    gateway = _gateway(create)
    tools = [{"name": "lookup", "description": "Looks up", "parameters": {"properties": {}}}]

    await gateway.complete([Message(role="user", content="x")], CompletionOptions(tools=tools))

    kwargs = create.call_args[1]
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["tools"][0]["function"]["name"] == "lookup"
    assert kwargs["tools"][0]["function"]["parameters"]["type"] == "object"


@pytest.mark.asyncio
async def test_complete_raises_on_content_filter_finish(stub_response):
    gateway = _gateway(AsyncMock(return_value=stub_response(content=None, finish_reason="content_filter")))
    with pytest.raises(ProviderContentFilterError):
        await gateway.complete([Message(role="user", content="x")])


@pytest.mark.asyncio
async def test_complete_retries_retryable_errors(stub_response):
    create = AsyncMock(side_effect=[
        _status_error(openai.InternalServerError, 500),
        stub_response(content="recovered"),
    ])
    gateway = _gateway(create)

    with patch("grounded_agent.services.llm_connector.asyncio.sleep", new=AsyncMock()) as sleep:
        result = await gateway.complete([Message(role="user", content="x")])

    assert result.message.content == "recovered"
    assert create.await_count == 2
    sleep.assert_awaited_once()


@pytest.mark.asyncio
async def test_complete_does_not_retry_auth_errors():
    create = AsyncMock(side_effect=_status_error(openai.AuthenticationError, 401, "bad key"))
    gateway = _gateway(create)

    with patch("grounded_agent.services.llm_connector.asyncio.sleep", new=AsyncMock()) as sleep:
        with pytest.raises(ProviderAuthError):
            await gateway.complete([Message(role="user", content="x")])

    assert create.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_complete_gives_up_after_max_retries():
    create = AsyncMock(side_effect=_status_error(openai.RateLimitError, 429, headers={"retry-after": "1"}))
    gateway = _gateway(create)

    with patch("grounded_agent.services.llm_connector.asyncio.sleep", new=AsyncMock()) as sleep:
        with pytest.raises(ProviderRateLimitError):
            await gateway.complete([Message(role="user", content="x")])

    assert create.await_count == gateway.max_retries + 1
    assert sleep.await_args_list[0].args[0] == 1.0


# --- usage tracking ---

@pytest.mark.asyncio
async def test_usage_accumulates_and_resets(stub_response):
    gateway = _gateway(AsyncMock(return_value=stub_response(content="r", prompt_tokens=100, completion_tokens=50)))

    await gateway.complete([Message(role="user", content="1")])
    await gateway.complete([Message(role="user", content="2")])
    usage = gateway.get_total_usage()
    assert usage.input_tokens == 200
    assert usage.output_tokens == 100
    assert usage.total_tokens == 300

    gateway.reset_usage()
    assert gateway.get_total_usage().total_tokens == 0


# --- generate ---

@pytest.mark.asyncio
async def test_generate_passes_system_prompt(stub_response):
    create = AsyncMock(return_value=stub_response(content="  Paris  "))
    gateway = _gateway(create)

    answer = await gateway.generate("Capital of France?", system="Answer in one word.")

    assert answer == "Paris"
    messages = create.call_args[1]["messages"]
    assert messages[0] == {"role": "system", "content": "Answer in one word."}
    assert messages[1] == {"role": "user", "content": "Capital of France?"}


# --- complete_streaming ---

@pytest.mark.asyncio
async def test_streaming_yields_deltas_and_builds_result():
    chunks = [
        _chunk(content="Hel"),
        _chunk(content="lo"),
        _chunk(finish_reason="stop"),
        SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=5, completion_tokens=2)),
    ]
    create = AsyncMock(return_value=_agen(chunks))
    gateway = _gateway(create)

    stream = gateway.complete_streaming([Message(role="user", content="Hi")])
    deltas = [delta async for delta in stream]

    assert deltas == ["Hel", "lo"]
    assert stream.result.message.content == "Hello"
    assert stream.result.finish_reason == "stop"
    assert stream.result.usage.total_tokens == 7
    assert create.call_args[1]["stream"] is True
    assert gateway.get_total_usage().total_tokens == 7


@pytest.mark.asyncio
async def test_streaming_accumulates_tool_call_fragments_by_index():
    chunks = [
        _chunk(tool_calls=[_fragment(0, id="call_a", name="search_records", arguments='{"qu')]),
        _chunk(tool_calls=[_fragment(1, id="call_b", name="send_email", arguments="{}")]),
        _chunk(tool_calls=[_fragment(0, arguments='ery": "Acme"}')]),
        _chunk(finish_reason="tool_calls"),
    ]
    gateway = _gateway(AsyncMock(return_value=_agen(chunks)))

    result = await gateway.complete_streaming([Message(role="user", content="x")]).collect()

    calls = result.message.tool_calls
    assert [c.id for c in calls] == ["call_a", "call_b"]
    assert calls[0].arguments == '{"query": "Acme"}'
    assert calls[1].function_name == "send_email"
    assert result.message.content is None


@pytest.mark.asyncio
async def test_streaming_synthesizes_missing_tool_call_ids():
    chunks = [_chunk(tool_calls=[_fragment(2, name="search_records", arguments="{}")])]
    gateway = _gateway(AsyncMock(return_value=_agen(chunks)))

    result = await gateway.complete_streaming([Message(role="user", content="x")]).collect()

    assert result.message.tool_calls[0].id == "call_2"


@pytest.mark.asyncio
async def test_streaming_classifies_mid_stream_failures():
    async def broken():
        yield _chunk(content="partial")
        raise openai.APIConnectionError(request=REQUEST)

    gateway = _gateway(AsyncMock(return_value=broken()))
    stream = gateway.complete_streaming([Message(role="user", content="x")])

    received = []
    with pytest.raises(ProviderGenericError):
        async for delta in stream:
            received.append(delta)
    assert received == ["partial"]
    assert stream.result is None
