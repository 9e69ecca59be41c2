import json
from types import SimpleNamespace
from typing import List, Optional

import pytest
from pydantic import BaseModel

from grounded_agent.core.grounding import build_result
from grounded_agent.models.common import Message, TokenUsage, ToolCall
from grounded_agent.models.grounding import EmailSendFacts, SearchFacts, ToolFamily
from grounded_agent.services.cache import reset_cache_stats
from grounded_agent.services.llm_connector import CompletionResult
from grounded_agent.tools.base_tool import BaseTool


# --- Scripted model responses ---

def tool_call(call_id: str, name: str, arguments) -> ToolCall:
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ToolCall(id=call_id, function={"name": name, "arguments": raw})


def text_turn(content: str, input_tokens: int = 10, output_tokens: int = 5) -> CompletionResult:
    return CompletionResult(
        message=Message(role="assistant", content=content),
        finish_reason="stop",
        model="gpt-4o",
        usage=TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens),
    )


def tool_turn(*calls: ToolCall) -> CompletionResult:
    return CompletionResult(
        message=Message(role="assistant", content=None, tool_calls=list(calls)),
        finish_reason="tool_calls",
        model="gpt-4o",
        usage=TokenUsage(input_tokens=10, output_tokens=5),
    )


class FakeStream:
    """Mimics CompletionStream: yields the scripted text in small pieces."""

    def __init__(self, result: CompletionResult, piece: int = 7):
        self._result = result
        self._piece = piece
        self.result: Optional[CompletionResult] = None

    async def _iterate(self):
        text = self._result.message.text()
        for start in range(0, len(text), self._piece):
            yield text[start:start + self._piece]
        self.result = self._result

    def __aiter__(self):
        return self._iterate()


class FakeGateway:
    """Returns scripted turns in order and records every conversation it was sent."""

    def __init__(self, turns: List, repeat_last: bool = False):
        self.turns = list(turns)
        self.repeat_last = repeat_last
        self.calls: List[List[Message]] = []
        self.options: List = []

    def _next(self, messages, options=None):
        self.calls.append(list(messages))
        self.options.append(options)
        if len(self.turns) > 1 or not self.repeat_last:
            turn = self.turns.pop(0)
        else:
            turn = self.turns[0]
        if isinstance(turn, Exception):
            raise turn
        return turn

    async def complete(self, messages, options=None):
        return self._next(messages, options)

    def complete_streaming(self, messages, options=None):
        return FakeStream(self._next(messages, options))


# --- Tools ---

class SendEmailArgs(BaseModel):
    to: List[str]
    subject: str


class SendEmailTool(BaseTool):
    name = "send_email"
    description = "Sends an email."
    args_schema = SendEmailArgs
    family = ToolFamily.SEND_EMAIL

    async def execute(self, to, subject):
        facts = EmailSendFacts(
            action_completed=True,
            email_sent=True,
            recipients=to,
            delivery_status="sent",
            subject=subject,
        )
        return build_result(self.family, True, facts)


class SearchArgs(BaseModel):
    query: str


class SearchRecordsTool(BaseTool):
    name = "search_records"
    description = "Searches CRM records."
    args_schema = SearchArgs
    family = ToolFamily.SEARCH

    async def execute(self, query):
        rows = [{"id": "001", "name": f"{query} Corp"}]
        facts = SearchFacts(
            action_completed=True,
            query_executed=True,
            search_criteria={"query": query},
            total_matching=len(rows),
            results_returned=len(rows),
        )
        return build_result(self.family, True, facts, data=rows)


class ExplodingTool(BaseTool):
    name = "explode"
    description = "Always raises."
    args_schema = SearchArgs

    async def execute(self, query):
        raise RuntimeError("boom")


@pytest.fixture
def email_tool():
    return SendEmailTool()


@pytest.fixture
def search_tool():
    return SearchRecordsTool()


@pytest.fixture(autouse=True)
def _reset_cache_stats():
    reset_cache_stats()
    yield
    reset_cache_stats()


@pytest.fixture
def stub_response():
    """Builds an object shaped like an OpenAI chat.completions response."""
    def _build(content=None, tool_calls=None, finish_reason="stop", prompt_tokens=12, completion_tokens=8):
        calls = [
            SimpleNamespace(id=c["id"], function=SimpleNamespace(name=c["name"], arguments=c["arguments"]))
            for c in tool_calls or []
        ]
        message = SimpleNamespace(content=content, tool_calls=calls or None)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=message, finish_reason=finish_reason)],
            usage=SimpleNamespace(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        )
    return _build
