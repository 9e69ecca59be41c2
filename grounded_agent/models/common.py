# The module is to define the common model for the application.
# Date: 2026-10-18
# Version: 0.2.0


from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional, Literal, Union, Dict, Any

# The Role literal type remains unchanged.
Role = Literal["system", "user",
               "assistant", "tool"]

ChunkKind = Literal["text", "complete"]


class ContentBlock(BaseModel):
    """
    One block of a multi-part message content (text, image reference, ...).
    Unknown provider fields are kept so the block round-trips unchanged.
    """
    model_config = ConfigDict(extra="allow")

    type: str = Field(default="text", description="The block type, e.g. 'text' or 'image_url'.")
    text: Optional[str] = Field(default=None, description="The text of a text block.")


class ToolCall(BaseModel):
    """
    Represents a tool call made by the assistant, including the function name and arguments.
    Attributes:
        id (str): The unique ID for the tool call.
        function (dict): The function name and its JSON-encoded arguments.
        type (str): The type of the tool call, e.g., 'function'.
    """
    id: str = Field(..., description="The unique ID for the tool call.")
    function: Dict[str, Any] = Field(..., description="The function name and arguments.")
    type: str = Field(default="function", description="The type of the tool call, e.g., 'function'.")

    @property
    def function_name(self) -> str:
        return self.function.get("name") or ""

    @property
    def arguments(self) -> str:
        return self.function.get("arguments") or ""


class Message(BaseModel):
    """
    Represents a message in the conversation, which can be from the system, user, assistant, or tool.
    Attributes:
        role (Role): The role of the message sender (system, user, assistant, or tool).
        content (Optional[Union[str, List[ContentBlock]]]): Text or an ordered list of content blocks.
        tool_calls (Optional[List[ToolCall]]): A list of tool calls requested by the assistant.
        tool_call_id (Optional[str]): The ID of the tool call this message is a result of.
    """
    role: Role = Field(..., description="The role of the message sender.")
    content: Optional[Union[str, List[ContentBlock]]] = Field(default=None, description="The content of the message.")
    tool_calls: Optional[List[ToolCall]] = Field(default=None, description="A list of tool calls requested by the assistant.")
    tool_call_id: Optional[str] = Field(default=None, description="The ID of the tool call this message is a result of.")

    def text(self) -> str:
        """Returns the textual content, joining the text blocks of a multi-part message."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(block.text or "" for block in self.content if block.type == "text")

    def to_provider(self) -> Dict[str, Any]:
        """Serialises the message into the chat-completions wire shape."""
        return self.model_dump(exclude_none=True)


class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def add(self, other: "TokenUsage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens


class ErrorDetail(BaseModel):
    """The structured error object handed to every kind of client."""
    code: str
    message: str
    retryable: Optional[bool] = None
    retry_after: Optional[float] = None


class StreamChunk(BaseModel):
    """
    One piece of generated text for a poll client.
    Chunks of a request are strictly ordered by index; a 'complete' chunk is always the last one.
    """
    index: int = Field(..., ge=0)
    content: str = ""
    kind: ChunkKind = "text"
    error: Optional[ErrorDetail] = None


class ChunkBuffer(BaseModel):
    """The cache entry a background poll task writes and pollers read."""
    chunks: List[StreamChunk] = Field(default_factory=list)
    is_complete: bool = False
    conversation_id: Optional[str] = None


class PollResult(BaseModel):
    chunks: List[StreamChunk] = Field(default_factory=list)
    is_complete: bool
    total_chunks: int = 0
