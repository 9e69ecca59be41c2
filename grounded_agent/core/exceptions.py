# The module defines the typed error taxonomy of the action-execution core.
# Date: 2026-10-18
# Version: 0.1.0

from typing import Optional

from grounded_agent.models.common import ErrorDetail


class GroundedAgentError(Exception):
    """
    Base class for every error raised by the action-execution core.

    Attributes:
        code (str): Stable machine-readable error code.
        status_code (int): HTTP status the API layer answers with.
        message (str): Human readable message.
    """
    code: str = "internal_error"
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(code=self.code, message=self.message)


# --- Model provider errors ---

class ProviderError(GroundedAgentError):
    """A failed round-trip to the model provider."""
    code = "provider_error"
    status_code = 502

    def __init__(self, message: str, retryable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(code=self.code, message=self.message, retryable=self.retryable)


class ProviderAuthError(ProviderError):
    code = "provider_auth_error"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, retryable=False, status=status)


class ProviderRateLimitError(ProviderError):
    code = "provider_rate_limited"
    status_code = 429

    def __init__(self, message: str, retry_after: Optional[float] = None, status: Optional[int] = 429):
        super().__init__(message, retryable=True, status=status)
        self.retry_after = retry_after

    def to_detail(self) -> ErrorDetail:
        return ErrorDetail(
            code=self.code,
            message=self.message,
            retryable=True,
            retry_after=self.retry_after,
        )


class ProviderContextLengthError(ProviderError):
    code = "context_length_exceeded"
    status_code = 400

    def __init__(self, message: str, status: Optional[int] = 400):
        super().__init__(message, retryable=False, status=status)


class ProviderContentFilterError(ProviderError):
    code = "content_filtered"
    status_code = 400

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, retryable=False, status=status)


class ProviderGenericError(ProviderError):
    code = "provider_error"


# --- Tool step errors (always recovered into a tool-result message) ---

class ToolExecutionError(GroundedAgentError):
    """Wraps any failure raised while running a tool."""
    code = "tool_execution_error"

    def __init__(self, message: str, tool_name: Optional[str] = None):
        super().__init__(message)
        self.tool_name = tool_name


class ArgumentParseError(ToolExecutionError):
    """The model produced tool arguments that are not valid JSON or fail validation."""
    code = "argument_parse_error"


# --- Orchestration errors ---

class MaxIterationsExceeded(GroundedAgentError):
    code = "max_iterations_exceeded"
    status_code = 500

    def __init__(self, max_iterations: int):
        super().__init__(
            f"The model was still requesting tools after {max_iterations} iterations."
        )
        self.max_iterations = max_iterations
