# The module is to define the API router for the application.
# Date: 2026-10-18
# Version: 0.2.0

from fastapi import APIRouter
from grounded_agent.api.v1.endpoints import chat

api_router = APIRouter()

# Include the chat router with a '/chat' prefix
api_router.include_router(chat.router, prefix="/chat", tags=["Conversation"])
