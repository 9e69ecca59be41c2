import json
import time

import pytest
from fastapi.testclient import TestClient

from grounded_agent.api.v1.endpoints.chat import get_tool_registry
from grounded_agent.core.exceptions import ProviderRateLimitError
from grounded_agent.core.orchestrator import ToolCallOrchestrator
from grounded_agent.core.tool_registry import ToolRegistry
from grounded_agent.main import app
from grounded_agent.services.cache import CacheService, InMemoryCacheBackend
from grounded_agent.services.delivery import StreamingDeliveryManager, get_delivery_manager
from grounded_agent.services.task_supervisor import TaskSupervisor

from conftest import FakeGateway, SendEmailTool, text_turn, tool_call, tool_turn

BODY = {"messages": [{"role": "user", "content": "Email a@x.com that we are on for Tuesday"}]}


def _install(turns):
    gateway = FakeGateway(turns)
    manager = StreamingDeliveryManager(
        ToolCallOrchestrator(gateway),
        CacheService(InMemoryCacheBackend()),
        chunk_ttl=300,
        min_chunk_chars=8,
        supervisor=TaskSupervisor(),
    )
    registry = ToolRegistry(discover=False)
    registry.register(SendEmailTool())
    app.dependency_overrides[get_delivery_manager] = lambda: manager
    app.dependency_overrides[get_tool_registry] = lambda: registry
    return gateway


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _email_turns(final="Email sent to a@x.com."):
    return [
        tool_turn(tool_call("call_1", "send_email", {"to": ["a@x.com"], "subject": "Tuesday"})),
        text_turn(final),
    ]


def test_health_check(client):
    response = client.get("/")
    assert response.status_code == 200
    assert "alive" in response.json()["message"]


def test_blocking_chat_returns_answer_and_tool_summary(client):
    _install(_email_turns())

    response = client.post("/v1/chat/", json=BODY)

    assert response.status_code == 200
    data = response.json()
    assert data["content"] == "Email sent to a@x.com."
    assert data["iterations"] == 2
    assert data["tool_calls"] == [
        {"id": "call_1", "name": "send_email", "success": True, "risk_level": "CRITICAL"}
    ]


def test_provider_errors_use_error_envelope(client):
    _install([ProviderRateLimitError("Too many requests", retry_after=2.0)])

    response = client.post("/v1/chat/", json=BODY)

    assert response.status_code == 429
    error = response.json()["error"]
    assert error["code"] == "provider_rate_limited"
    assert error["message"] == "Too many requests"
    assert error["retry_after"] == 2.0


def test_max_iterations_uses_error_envelope(client):
    looping = tool_turn(tool_call("c", "send_email", {"to": ["a@x.com"], "subject": "x"}))
    _install([looping] * 10)

    response = client.post("/v1/chat/", json=BODY)

    assert response.status_code == 500
    assert response.json()["error"]["code"] == "max_iterations_exceeded"


def test_empty_conversation_is_rejected(client):
    response = client.post("/v1/chat/", json={"messages": []})
    assert response.status_code == 422


def test_stream_emits_deltas_then_complete_then_done(client):
    _install(_email_turns(final="Your email to a@x.com was sent."))

    response = client.post("/v1/chat/stream", json=BODY)

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    events = [
        json.loads(line[len("data: "):])
        for line in response.text.splitlines()
        if line.startswith("data: ") and line != "data: {}"
    ]
    deltas = [e["content"] for e in events if e["type"] == "delta"]
    assert "".join(deltas) == "Your email to a@x.com was sent."
    assert events[-1]["type"] == "complete"
    assert response.text.rstrip().endswith("event: done\ndata: {}")


def test_stream_reports_errors_as_events(client):
    _install([ProviderRateLimitError("Too many requests")])

    response = client.post("/v1/chat/stream", json=BODY)

    events = [json.loads(line[6:]) for line in response.text.splitlines() if line.startswith("data: {\"")]
    assert events == [{"type": "error", "error": {"code": "provider_rate_limited",
                                                   "message": "Too many requests", "retryable": True}}]


def test_poll_flow(client):
    _install(_email_turns(final="The email to a@x.com was delivered successfully."))

    start = client.post("/v1/chat/poll", json={**BODY, "conversation_id": "conv-1"})
    assert start.status_code == 202
    request_id = start.json()["request_id"]

    result = None
    for _ in range(50):
        result = client.get(f"/v1/chat/poll/{request_id}", params={"last_index": 0}).json()
        if result["is_complete"]:
            break
        time.sleep(0.01)

    assert result["is_complete"] is True
    assert result["chunks"][-1]["kind"] == "complete"
    assert "".join(c["content"] for c in result["chunks"]) == "The email to a@x.com was delivered successfully."

    tail = client.get(f"/v1/chat/poll/{request_id}", params={"last_index": result["total_chunks"]}).json()
    assert tail["chunks"] == []
    assert tail["is_complete"] is True


def test_poll_unknown_request(client):
    _install([])
    response = client.get("/v1/chat/poll/unknown-id")
    assert response.json() == {"chunks": [], "is_complete": True, "total_chunks": 0}


def test_poll_rejects_negative_index(client):
    _install([])
    response = client.get("/v1/chat/poll/x", params={"last_index": -1})
    assert response.status_code == 422
