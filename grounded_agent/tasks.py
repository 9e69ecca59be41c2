# grounded_agent/tasks.py
# This module defines the background task that fills a poll buffer out of process.
# Date: 2026-10-18
# Version: 3.0.0

import asyncio
from typing import Any, Dict, List, Optional

from grounded_agent.worker import celery_app
from grounded_agent.core.config import get_settings
from grounded_agent.core.orchestrator import ToolCallOrchestrator
from grounded_agent.core.tool_registry import tool_registry
from grounded_agent.services.cache import CacheService, RedisCacheBackend
from grounded_agent.services.delivery import StreamingDeliveryManager
from grounded_agent.services.llm_connector import CompletionOptions, LLMGateway
from grounded_agent.utils.logger import console


async def _async_fill_buffer(request_id: str, conversation: List[Dict[str, Any]],
                             tool_names: Optional[List[str]], options: Dict[str, Any],
                             conversation_id: Optional[str]):
    """
    Runs the whole poll request within a single event loop. Clients bound to an
    event loop (OpenAI, Redis) are created here and closed before the loop ends.
    """
    settings = get_settings()
    cache = CacheService(
        RedisCacheBackend(settings.REDIS_URL),
        namespace=settings.CACHE_NAMESPACE,
        default_ttl=settings.CACHE_DEFAULT_TTL,
    )
    gateway = LLMGateway()
    manager = StreamingDeliveryManager(ToolCallOrchestrator(gateway), cache)
    tools = tool_registry.get_definitions(tool_names)
    try:
        await manager.fill_buffer(
            request_id,
            conversation,
            tools,
            tool_registry.execute,
            CompletionOptions.model_validate(options or {}),
            conversation_id,
        )
    finally:
        await gateway.close()
        await cache.close()


@celery_app.task(name="grounded_agent.tasks.process_poll_request")
def process_poll_request(request_id: str, conversation: List[Dict[str, Any]],
                         tool_names: Optional[List[str]] = None,
                         options: Optional[Dict[str, Any]] = None,
                         conversation_id: Optional[str] = None) -> str:
    """
    A Celery task to fill the chunk buffer of a poll request.
    Failures of the run itself are written into the buffer by `fill_buffer`.
    """
    console.info(f"[Celery Task {process_poll_request.request.id}] Started for poll request '{request_id}'.")

    try:
        asyncio.run(_async_fill_buffer(request_id, conversation, tool_names, options or {}, conversation_id))
        console.success(f"[Celery Task {process_poll_request.request.id}] Completed successfully.")
        return request_id

    except Exception as e:
        console.exception(f"[Celery Task {process_poll_request.request.id}] Failed.")
        raise e
