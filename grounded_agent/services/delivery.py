# The module delivers orchestration output to blocking, push and poll clients.
# Date: 2026-10-18
# Version: 0.1.0

import asyncio
from functools import lru_cache
from typing import Any, Dict, List, Optional, Protocol, Sequence, Union
from uuid import uuid4

from grounded_agent.core.config import get_settings
from grounded_agent.core.exceptions import GroundedAgentError
from grounded_agent.core.orchestrator import RunResult, ToolCallOrchestrator, ToolExecutor
from grounded_agent.models.common import ChunkBuffer, ErrorDetail, Message, PollResult, StreamChunk
from grounded_agent.services.cache import CacheService, get_cache
from grounded_agent.services.llm_connector import CompletionOptions, get_gateway
from grounded_agent.services.task_supervisor import TaskSupervisor, task_supervisor
from grounded_agent.utils.logger import console

Conversation = Sequence[Union[Message, Dict[str, Any]]]
Tools = Optional[Sequence[Dict[str, Any]]]

CHUNK_KEY_PREFIX = "chunks:"


class PushSink(Protocol):
    """Receives a live run: any number of `send` calls, then `complete` or `error`, then `close`."""

    async def send(self, text: str) -> None:
        ...

    async def complete(self, result: RunResult) -> None:
        ...

    async def error(self, detail: ErrorDetail) -> None:
        ...

    async def close(self) -> None:
        ...


def _error_detail(exc: Exception) -> ErrorDetail:
    if isinstance(exc, GroundedAgentError):
        return exc.to_detail()
    return ErrorDetail(code="internal_error", message=str(exc) or type(exc).__name__)


class StreamingDeliveryManager:
    """
    Runs the orchestrator for three kinds of client:

    * blocking: `run_synchronous` returns the full result;
    * push: `run_push` forwards every delta to a sink as it arrives;
    * poll: `start_poll` returns a request id at once and a supervised
      background task fills a chunk buffer that `poll` reads from.
    """

    def __init__(self, orchestrator: ToolCallOrchestrator, cache: CacheService,
                 chunk_ttl: Optional[int] = None, min_chunk_chars: Optional[int] = None,
                 supervisor: Optional[TaskSupervisor] = None):
        settings = get_settings()
        self.orchestrator = orchestrator
        self.cache = cache
        self.chunk_ttl = settings.CHUNK_TTL_SECONDS if chunk_ttl is None else chunk_ttl
        self.min_chunk_chars = settings.POLL_MIN_CHUNK_CHARS if min_chunk_chars is None else min_chunk_chars
        self.supervisor = supervisor or task_supervisor

    # --- Blocking ---

    async def run_synchronous(self, conversation: Conversation, tools: Tools = None,
                              executor: Optional[ToolExecutor] = None,
                              options: Optional[CompletionOptions] = None) -> RunResult:
        return await self.orchestrator.run(conversation, tools, executor, options)

    # --- Push ---

    async def run_push(self, conversation: Conversation, tools: Tools, executor: Optional[ToolExecutor],
                       sink: PushSink, options: Optional[CompletionOptions] = None) -> Optional[RunResult]:
        """
        Streams a run into `sink`. Errors are reported through `sink.error`;
        cancellation propagates so no further model or tool calls are made.
        The sink is closed in every case.
        """
        try:
            result = await self.orchestrator.run(conversation, tools, executor, options, on_delta=sink.send)
            await sink.complete(result)
            return result
        except GroundedAgentError as e:
            console.warning(f"Push run failed ({e.code}): {e.message}")
            await sink.error(e.to_detail())
            return None
        except Exception as e:
            console.exception("Push run failed with an unexpected error.")
            await sink.error(_error_detail(e))
            return None
        finally:
            await sink.close()

    # --- Poll ---

    @staticmethod
    def buffer_key(request_id: str) -> str:
        return f"{CHUNK_KEY_PREFIX}{request_id}"

    async def _write(self, request_id: str, buffer: ChunkBuffer):
        stored = await self.cache.set(self.buffer_key(request_id), buffer.model_dump(mode="json"), self.chunk_ttl)
        if not stored:
            console.warning(f"Chunk buffer for request '{request_id}' could not be written.")

    async def create_buffer(self, conversation_id: Optional[str] = None,
                            request_id: Optional[str] = None) -> str:
        """Writes an empty buffer and returns its request id."""
        request_id = request_id or str(uuid4())
        await self._write(request_id, ChunkBuffer(conversation_id=conversation_id))
        return request_id

    async def start_poll(self, conversation: Conversation, tools: Tools = None,
                         executor: Optional[ToolExecutor] = None,
                         options: Optional[CompletionOptions] = None,
                         conversation_id: Optional[str] = None) -> str:
        """Creates the buffer, starts filling it in the background and returns immediately."""
        request_id = await self.create_buffer(conversation_id)
        self.supervisor.spawn(
            self.fill_buffer(request_id, conversation, tools, executor, options, conversation_id),
            name=f"poll:{request_id}",
        )
        console.info(f"Poll request '{request_id}' started.")
        return request_id

    async def fill_buffer(self, request_id: str, conversation: Conversation, tools: Tools = None,
                          executor: Optional[ToolExecutor] = None,
                          options: Optional[CompletionOptions] = None,
                          conversation_id: Optional[str] = None):
        """
        Runs the orchestrator and writes its text into the buffer of `request_id`.
        Deltas are coalesced into chunks of at least `min_chunk_chars`; the run
        always ends with exactly one `complete` chunk, which on failure carries
        "Error: <message>" and the error detail.
        """
        buffer = ChunkBuffer(conversation_id=conversation_id)
        pending: List[str] = []

        async def on_delta(delta: str):
            pending.append(delta)
            if sum(len(part) for part in pending) >= self.min_chunk_chars:
                buffer.chunks.append(StreamChunk(index=len(buffer.chunks), content="".join(pending)))
                pending.clear()
                await self._write(request_id, buffer)

        try:
            await self.orchestrator.run(conversation, tools, executor, options, on_delta=on_delta)
            buffer.chunks.append(StreamChunk(index=len(buffer.chunks), content="".join(pending), kind="complete"))
            buffer.is_complete = True
            await self._write(request_id, buffer)
            console.success(f"Poll request '{request_id}' completed with {len(buffer.chunks)} chunk(s).")
        except asyncio.CancelledError:
            await self._fail(request_id, buffer, ErrorDetail(code="cancelled", message="Request was cancelled."))
            raise
        except GroundedAgentError as e:
            console.warning(f"Poll request '{request_id}' failed ({e.code}): {e.message}")
            await self._fail(request_id, buffer, e.to_detail())
        except Exception as e:
            console.exception(f"Poll request '{request_id}' failed with an unexpected error.")
            await self._fail(request_id, buffer, _error_detail(e))

    async def _fail(self, request_id: str, buffer: ChunkBuffer, detail: ErrorDetail):
        buffer.chunks.append(StreamChunk(
            index=len(buffer.chunks),
            content=f"Error: {detail.message}",
            kind="complete",
            error=detail,
        ))
        buffer.is_complete = True
        await self._write(request_id, buffer)

    async def poll(self, request_id: str, last_index: int = 0) -> PollResult:
        """
        Returns the chunks after the first `last_index` ones. Read-only, so
        repeating a poll returns the same answer. An unknown or expired request
        reads as complete with no chunks.
        """
        raw = await self.cache.get(self.buffer_key(request_id))
        if raw is None:
            return PollResult(chunks=[], is_complete=True, total_chunks=0)
        buffer = ChunkBuffer.model_validate(raw)
        start = max(last_index, 0)
        return PollResult(
            chunks=buffer.chunks[start:],
            is_complete=buffer.is_complete,
            total_chunks=len(buffer.chunks),
        )


@lru_cache
def get_delivery_manager() -> StreamingDeliveryManager:
    return StreamingDeliveryManager(ToolCallOrchestrator(get_gateway()), get_cache())
