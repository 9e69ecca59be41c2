# The module runs the bounded model/tool loop of one orchestration run.
# Date: 2026-10-18
# Version: 4.0.0

import asyncio
import inspect
import json
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

from pydantic import BaseModel, Field

from grounded_agent.core.config import get_settings
from grounded_agent.core.exceptions import ArgumentParseError, MaxIterationsExceeded, ToolExecutionError
from grounded_agent.core.grounding import enforce, failed_result, render_tool_message
from grounded_agent.core.response_audit import GroundingAudit, ResponseAuditor
from grounded_agent.models.common import Message, TokenUsage, ToolCall
from grounded_agent.models.grounding import ToolExecutionResult
from grounded_agent.services.llm_connector import CompletionOptions, CompletionResult, LLMGateway
from grounded_agent.utils.logger import console

ToolExecutor = Callable[[str, Dict[str, Any]], Awaitable[ToolExecutionResult]]
DeltaCallback = Callable[[str], Union[None, Awaitable[None]]]

# --- System prompt added when tools are offered ---
GROUNDING_RULES = """When you report on an action performed by a tool:
- Repeat the tool result text exactly as given for emails, meetings and record changes. Do not add recipients, times, links or statuses it does not contain.
- If a tool result says an action failed, say that it failed. Never imply it succeeded.
- After repeating a successful email or meeting result you may suggest next steps. After a successful record change you may also add brief context.
- Only add the kinds of content a tool result explicitly permits."""


class OrchestratorState(str, Enum):
    AWAITING_MODEL = "AWAITING_MODEL"
    EXECUTING_TOOLS = "EXECUTING_TOOLS"
    DONE_SUCCESS = "DONE_SUCCESS"
    MAX_ITERATIONS_EXCEEDED = "MAX_ITERATIONS_EXCEEDED"


class ToolCallRecord(BaseModel):
    """One executed tool call: what the model asked for and what it was told."""
    id: str
    name: str
    arguments: str
    iteration: int
    result: ToolExecutionResult
    surfaced: str


class RunResult(BaseModel):
    """
    The outcome of a completed orchestration run.
    Attributes:
        content (str): The final assistant text.
        messages (List[Message]): The full conversation of the run, tool messages included.
        iterations (int): Number of loop iterations (equal to the model calls).
        model_calls (int): Number of gateway calls made.
        tool_calls (List[ToolCallRecord]): Every executed tool call in order.
        usage (TokenUsage): Token usage summed over all model calls.
        audit (Optional[GroundingAudit]): Claim audit of the final text, when enabled.
        state (OrchestratorState): Terminal state of the run.
    """
    content: str
    messages: List[Message]
    iterations: int
    model_calls: int
    tool_calls: List[ToolCallRecord] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    audit: Optional[GroundingAudit] = None
    state: OrchestratorState = OrchestratorState.DONE_SUCCESS


def _with_grounding_rules(messages: List[Message]) -> List[Message]:
    """Inserts the grounding rules after the leading system messages."""
    position = 0
    while position < len(messages) and messages[position].role == "system":
        position += 1
    return messages[:position] + [Message(role="system", content=GROUNDING_RULES)] + messages[position:]


def _is_forced(tool_choice: Optional[Union[str, Dict[str, Any]]]) -> bool:
    return isinstance(tool_choice, dict) or tool_choice == "required"


class ToolCallOrchestrator:
    """
    Drives the loop: call the model, run the tools it requests, feed the
    grounded results back, repeat until it answers without tools or the
    iteration ceiling is reached.
    """

    def __init__(self, gateway: LLMGateway, max_iterations: Optional[int] = None,
                 auditor: Optional[ResponseAuditor] = None, audit_final_response: Optional[bool] = None,
                 grounding_prompt: bool = True):
        settings = get_settings()
        self.gateway = gateway
        self.max_iterations = settings.MAX_TOOL_ITERATIONS if max_iterations is None else max_iterations
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        self.auditor = auditor or ResponseAuditor()
        self.audit_final_response = (
            settings.AUDIT_FINAL_RESPONSE if audit_final_response is None else audit_final_response
        )
        self.grounding_prompt = grounding_prompt

    async def run(self, conversation: Sequence[Union[Message, Dict[str, Any]]],
                  tools: Optional[Sequence[Dict[str, Any]]] = None,
                  executor: Optional[ToolExecutor] = None,
                  options: Optional[CompletionOptions] = None,
                  on_delta: Optional[DeltaCallback] = None) -> RunResult:
        """
        Runs one orchestration.

        Args:
            conversation: The messages so far. The caller's list is copied, never mutated.
            tools: Tool definitions offered to the model.
            executor: Runs a tool by name with parsed arguments. Defaults to the global tool registry.
            options: Gateway options; `tools` is set from the argument above. A forced
                `tool_choice` ("required" or a named function) is sent on the first call only.
            on_delta: When given, model calls are streamed and every text delta is passed to it.

        Raises:
            MaxIterationsExceeded: The model still requested tools on the last permitted call.
            ProviderError: A gateway call failed.
        """
        if executor is None:
            from grounded_agent.core.tool_registry import tool_registry
            executor = tool_registry.execute

        messages = [m if isinstance(m, Message) else Message.model_validate(m) for m in conversation]
        if tools and self.grounding_prompt:
            messages = _with_grounding_rules(messages)
        call_options = (options or CompletionOptions()).model_copy(
            update={"tools": list(tools) if tools else None}
        )

        usage = TokenUsage()
        records: List[ToolCallRecord] = []
        results: List[ToolExecutionResult] = []

        for iteration in range(1, self.max_iterations + 1):
            console.rule(f"Orchestration iteration {iteration}/{self.max_iterations}")
            completion = await self._call_model(messages, call_options, on_delta)
            usage.add(completion.usage)
            assistant = completion.message
            messages.append(assistant)
            if iteration == 1 and _is_forced(call_options.tool_choice):
                # A forced tool choice applies to the first call only.
                call_options = call_options.model_copy(update={"tool_choice": None})

            if not assistant.tool_calls:
                content = assistant.text()
                console.success(f"Run finished after {iteration} model call(s) and {len(records)} tool call(s).")
                console.display_data_as_table(
                    {
                        "model_calls": iteration,
                        "tools": [record.name for record in records],
                        "input_tokens": usage.input_tokens,
                        "output_tokens": usage.output_tokens,
                    },
                    "Run summary",
                )
                return RunResult(
                    content=content,
                    messages=messages,
                    iterations=iteration,
                    model_calls=iteration,
                    tool_calls=records,
                    usage=usage,
                    audit=self._audit(content, results),
                    state=OrchestratorState.DONE_SUCCESS,
                )

            if iteration == self.max_iterations:
                console.error(
                    f"Model requested {len(assistant.tool_calls)} tool(s) on call {iteration}; "
                    f"iteration ceiling reached."
                )
                raise MaxIterationsExceeded(self.max_iterations)

            console.info(f"Executing tools: {[call.function_name for call in assistant.tool_calls]}")
            outcomes = await asyncio.gather(
                *(self._execute_call(call, executor) for call in assistant.tool_calls)
            )
            # One tool message per call id, in request order.
            for call, (result, surfaced) in zip(assistant.tool_calls, outcomes):
                messages.append(Message(role="tool", tool_call_id=call.id, content=surfaced))
                records.append(ToolCallRecord(
                    id=call.id,
                    name=call.function_name,
                    arguments=call.arguments,
                    iteration=iteration,
                    result=result,
                    surfaced=surfaced,
                ))
                results.append(result)

        # Unreachable: the last iteration either returns or raises.
        raise MaxIterationsExceeded(self.max_iterations)

    async def _call_model(self, messages: List[Message], options: CompletionOptions,
                          on_delta: Optional[DeltaCallback]) -> CompletionResult:
        if on_delta is None:
            return await self.gateway.complete(messages, options)

        stream = self.gateway.complete_streaming(messages, options)
        async for delta in stream:
            outcome = on_delta(delta)
            if inspect.isawaitable(outcome):
                await outcome
        return stream.result

    async def _execute_call(self, call: ToolCall, executor: ToolExecutor) -> Tuple[ToolExecutionResult, str]:
        name = call.function_name
        try:
            result = await executor(name, self._parse_arguments(call))
            if not isinstance(result, ToolExecutionResult):
                raise ToolExecutionError(
                    f"Tool '{name}' returned {type(result).__name__} instead of a grounded result.",
                    tool_name=name,
                )
        except ToolExecutionError as e:
            console.warning(f"Tool '{name}' failed ({e.code}): {e.message}")
            result = failed_result(e.message, name)
        except Exception as e:
            console.exception(f"Tool '{name}' raised an unexpected error.")
            result = failed_result(str(e) or type(e).__name__, name)

        output = enforce(result)
        return result, render_tool_message(output, result)

    @staticmethod
    def _parse_arguments(call: ToolCall) -> Dict[str, Any]:
        raw = call.arguments
        if not raw.strip():
            return {}
        try:
            arguments = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ArgumentParseError(
                f"Arguments for tool '{call.function_name}' are not valid JSON: {e.msg}",
                tool_name=call.function_name,
            ) from e
        if not isinstance(arguments, dict):
            raise ArgumentParseError(
                f"Arguments for tool '{call.function_name}' must be a JSON object.",
                tool_name=call.function_name,
            )
        return arguments

    def _audit(self, content: str, results: List[ToolExecutionResult]) -> Optional[GroundingAudit]:
        if not self.audit_final_response or not results:
            return None
        return self.auditor.audit(content, results)
