# The module is to define the API endpoints for chat interactions.
# Date: 2026-10-18
# Version: 0.2.0

import asyncio
import json
from typing import Any, AsyncGenerator, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import StreamingResponse

from grounded_agent.core.config import Settings, get_settings
from grounded_agent.core.orchestrator import RunResult
from grounded_agent.core.tool_registry import ToolRegistry, tool_registry
from grounded_agent.models.api_models import (
    ChatRequest,
    ChatResponse,
    ErrorResponse,
    PollResponse,
    StartPollResponse,
    ToolCallSummary,
)
from grounded_agent.models.common import ErrorDetail
from grounded_agent.services.delivery import StreamingDeliveryManager, get_delivery_manager
from grounded_agent.tasks import process_poll_request
from grounded_agent.utils.logger import console

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
}


def get_tool_registry() -> ToolRegistry:
    return tool_registry


def _tool_definitions(request: ChatRequest, registry: ToolRegistry) -> List[Dict[str, Any]]:
    return registry.get_definitions(request.tools)


def _to_response(result: RunResult) -> ChatResponse:
    return ChatResponse(
        content=result.content,
        iterations=result.iterations,
        tool_calls=[
            ToolCallSummary(
                id=record.id,
                name=record.name,
                success=record.result.success,
                risk_level=record.result.risk_level.value,
            )
            for record in result.tool_calls
        ],
        usage=result.usage,
        audit=result.audit,
    )


@router.post("/", response_model=ChatResponse, responses=ERROR_RESPONSES)
async def chat(request: ChatRequest,
               manager: StreamingDeliveryManager = Depends(get_delivery_manager),
               registry: ToolRegistry = Depends(get_tool_registry)):
    """
    Runs the conversation to completion and returns the final answer.
    """
    console.info(f"Received blocking chat request with {len(request.messages)} messages.")
    result = await manager.run_synchronous(
        request.messages,
        _tool_definitions(request, registry),
        registry.execute,
        request.completion_options(),
    )
    console.success("Sending blocking chat response.")
    return _to_response(result)


class QueueSink:
    """Push sink that hands events to the SSE generator through a queue."""

    def __init__(self):
        self.queue: "asyncio.Queue[Optional[Dict[str, Any]]]" = asyncio.Queue()

    async def send(self, text: str):
        await self.queue.put({"type": "delta", "content": text})

    async def complete(self, result: RunResult):
        await self.queue.put({"type": "complete", **_to_response(result).model_dump(mode="json")})

    async def error(self, detail: ErrorDetail):
        await self.queue.put({"type": "error", "error": detail.model_dump(exclude_none=True)})

    async def close(self):
        # Sentinel: tells the generator to stop
        await self.queue.put(None)


@router.post("/stream")
async def chat_stream(request: ChatRequest,
                      manager: StreamingDeliveryManager = Depends(get_delivery_manager),
                      registry: ToolRegistry = Depends(get_tool_registry)) -> StreamingResponse:
    """
    Streams the run as Server-Sent Events.

    Each event carries a JSON payload:

    - ``{"type": "delta", "content": "..."}`` a piece of generated text
    - ``{"type": "complete", "content": "...", ...}`` the final answer and run summary
    - ``{"type": "error", "error": {"code": "...", "message": "..."}}`` if the run failed

    The stream ends with an ``event: done``. A client disconnect cancels the run.
    """
    sink = QueueSink()
    tools = _tool_definitions(request, registry)
    console.info(f"Received streaming chat request with {len(request.messages)} messages.")

    async def _event_generator() -> AsyncGenerator[str, None]:
        task = asyncio.create_task(
            manager.run_push(request.messages, tools, registry.execute, sink, request.completion_options())
        )
        try:
            while True:
                event = await sink.queue.get()
                if event is None:
                    yield "event: done\ndata: {}\n\n"
                    break
                yield f"data: {json.dumps(event, ensure_ascii=False)}\n\n"
        finally:
            if not task.done():
                console.warning("Stream client disconnected; cancelling the run.")
                task.cancel()

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/poll", response_model=StartPollResponse, status_code=202)
async def start_poll(request: ChatRequest,
                     manager: StreamingDeliveryManager = Depends(get_delivery_manager),
                     registry: ToolRegistry = Depends(get_tool_registry),
                     settings: Settings = Depends(get_settings)):
    """
    Starts a run in the background and returns its request id at once.
    """
    backend = settings.POLL_BACKEND
    if backend == "celery" and settings.CACHE_BACKEND != "redis":
        console.warning("POLL_BACKEND 'celery' needs the redis cache backend; running the request in-process.")
        backend = "asyncio"

    if backend == "celery":
        request_id = await manager.create_buffer(request.conversation_id)
        process_poll_request.delay(
            request_id,
            [message.to_provider() for message in request.messages],
            request.tools,
            request.completion_options().model_dump(exclude_none=True),
            request.conversation_id,
        )
        console.info(f"Poll request '{request_id}' dispatched to Celery worker.")
    else:
        request_id = await manager.start_poll(
            request.messages,
            _tool_definitions(request, registry),
            registry.execute,
            request.completion_options(),
            request.conversation_id,
        )
    return StartPollResponse(request_id=request_id)


@router.get("/poll/{request_id}", response_model=PollResponse)
async def poll(request_id: str,
               last_index: int = Query(default=0, ge=0, description="Number of chunks already received."),
               manager: StreamingDeliveryManager = Depends(get_delivery_manager)):
    """
    Returns the chunks produced since `last_index`.
    """
    result = await manager.poll(request_id, last_index)
    return PollResponse(**result.model_dump())
