# The module is to define the API models for the application.
# Date: 2026-10-18
# Version: 0.2.0

from pydantic import BaseModel, Field
from typing import List, Optional

from grounded_agent.core.response_audit import GroundingAudit
from grounded_agent.models.common import ErrorDetail, Message, StreamChunk, TokenUsage
from grounded_agent.services.llm_connector import CompletionOptions


class ChatRequest(BaseModel):
    """
    Defines the request body for the /v1/chat endpoints.
    Attributes:
        messages (List[Message]): The conversation so far, oldest first.
        model (Optional[str]): Logical alias or concrete model id.
        temperature (Optional[float]): Sampling temperature.
        max_tokens (Optional[int]): Maximum output tokens per model call.
        tools (Optional[List[str]]): Names of registered tools to offer; all of them when omitted.
        conversation_id (Optional[str]): Caller's conversation id, stored with a poll buffer.
    """
    messages: List[Message] = Field(..., min_length=1, description="The conversation so far.")
    model: Optional[str] = Field(default=None, description="Logical alias or concrete model id.")
    temperature: Optional[float] = Field(default=None, ge=0.0, le=2.0)
    max_tokens: Optional[int] = Field(default=None, gt=0)
    tools: Optional[List[str]] = Field(default=None, description="Names of registered tools to offer.")
    conversation_id: Optional[str] = None

    def completion_options(self) -> CompletionOptions:
        return CompletionOptions(model=self.model, temperature=self.temperature, max_tokens=self.max_tokens)


class ToolCallSummary(BaseModel):
    id: str
    name: str
    success: bool
    risk_level: str


class ChatResponse(BaseModel):
    """
    Defines the response body for the blocking /v1/chat endpoint.
    Attributes:
        role (str): Always 'assistant'.
        content (str): The final assistant text.
        iterations (int): Model calls made by the run.
        tool_calls (List[ToolCallSummary]): The tools executed during the run.
        usage (TokenUsage): Token usage of the run.
        audit (Optional[GroundingAudit]): Claim audit of the final text.
    """
    role: str = "assistant"
    content: str
    iterations: int
    tool_calls: List[ToolCallSummary] = Field(default_factory=list)
    usage: TokenUsage
    audit: Optional[GroundingAudit] = None


class StartPollResponse(BaseModel):
    request_id: str


class PollResponse(BaseModel):
    chunks: List[StreamChunk]
    is_complete: bool
    total_chunks: int


class ErrorResponse(BaseModel):
    error: ErrorDetail
