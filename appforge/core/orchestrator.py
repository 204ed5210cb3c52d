"""
Tool-calling conversation loop.

Drives a bounded exchange with an AI provider:

    AWAITING_MODEL -> EXECUTING_TOOLS -> AWAITING_MODEL ... -> DONE

Each model call counts as one iteration. A response without tool calls ends
the run. Tools run sequentially in the order the model requested them, since
later edits may depend on earlier ones.

When the task requires edits and the first response has no tool calls, the
first attempt is discarded and exactly one forced retry is sent with tool use
made mandatory. The escalation is a fixed two-step sequence, not a retry
policy.

Tool failures reported as ``ok=False`` are fed back to the model and counted
as patch failures. Exceptions raised by a tool or the provider abort the run.
"""

import json
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional

import structlog

from appforge.sdk.base import AIProvider, Message, ProviderResponse, ToolResultBlock, ToolUseBlock

from .token_counter import TokenUsage
from .tools import ToolRegistry, ToolResult

logger = structlog.get_logger()

DEFAULT_MAX_ITERATIONS = 5

FORCED_TOOL_USE_INSTRUCTION = (
    "IMPORTANT: You must make the requested changes using the provided tools. "
    "Tool calls are mandatory for this request. Do not answer with text only."
)

_EDIT_VERBS = re.compile(
    r"\b(create|add|edit|fix|update|change|modify|remove|delete|rename|replace|"
    r"implement|build|make|refactor|move|insert|write)\b",
    re.IGNORECASE,
)


def requires_edits(message: str, selected_file_path: Optional[str] = None) -> bool:
    """Whether a request should be expected to produce tool calls."""
    if selected_file_path:
        return True
    return bool(_EDIT_VERBS.search(message or ""))


class RunOutcome(Enum):
    COMPLETED = "completed"
    NO_TOOLS_PRODUCED = "no_tools_produced"
    ITERATION_LIMIT = "iteration_limit"


@dataclass(frozen=True)
class ToolExecution:
    """One executed tool call."""
    tool_use_id: str
    name: str
    arguments: Any
    result: ToolResult
    duration_ms: int


@dataclass
class OrchestratorResult:
    outcome: RunOutcome
    text: str
    tool_executions: List[ToolExecution] = field(default_factory=list)
    usage: TokenUsage = TokenUsage()
    iterations: int = 0
    forced_retry: bool = False
    stop_reason: Optional[str] = None

    @property
    def tool_calls_count(self) -> int:
        return len(self.tool_executions)

    @property
    def patch_failures(self) -> int:
        return sum(1 for e in self.tool_executions if not e.result.ok)

    @property
    def applied_tools(self) -> List[ToolExecution]:
        return [e for e in self.tool_executions if e.result.ok]


ToolObserver = Callable[[ToolExecution], None]


class ToolCallingOrchestrator:
    """Runs one AI conversation against a project's file store."""

    def __init__(
        self,
        provider: AIProvider,
        tools: ToolRegistry,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ):
        if max_iterations < 1:
            raise ValueError("max_iterations must be >= 1")
        self.provider = provider
        self.tools = tools
        self.max_iterations = max_iterations

    def run(
        self,
        project_id: str,
        system_prompt: str,
        user_message: str,
        history: Optional[List[Message]] = None,
        enforce_tool_use: bool = False,
        on_tool_executed: Optional[ToolObserver] = None,
    ) -> OrchestratorResult:
        """Run the loop until the model stops calling tools or the cap is hit.

        Args:
            project_id: Project whose files the tools operate on
            system_prompt: System prompt including file context
            user_message: The user's request
            history: Earlier conversation turns, oldest first
            enforce_tool_use: Whether a text-only first answer triggers the
                forced retry
            on_tool_executed: Called after each tool execution

        Returns:
            OrchestratorResult with aggregated usage and tool executions
        """
        conversation: List[Message] = list(history or [])
        conversation.append({"role": "user", "content": user_message})
        definitions = self.tools.definitions

        result = OrchestratorResult(outcome=RunOutcome.COMPLETED, text="")
        text_parts: List[str] = []

        response = self._call(result, system_prompt, conversation, definitions, force=False)

        if enforce_tool_use and not response.tool_use_blocks:
            logger.info("No tool calls on first attempt, forcing tool use", project_id=project_id)
            result.forced_retry = True
            conversation[-1] = {
                "role": "user",
                "content": f"{user_message}\n\n{FORCED_TOOL_USE_INSTRUCTION}",
            }
            response = self._call(result, system_prompt, conversation, definitions, force=True)
            if not response.tool_use_blocks:
                logger.warning("Model produced no tool calls after forced retry", project_id=project_id)
                result.outcome = RunOutcome.NO_TOOLS_PRODUCED
                result.text = response.text
                return result

        while True:
            if response.text:
                text_parts.append(response.text)
            if not response.tool_use_blocks:
                break

            conversation.append({
                "role": "assistant",
                "content": response.text,
                "tool_calls": list(response.tool_use_blocks),
            })
            results = [
                self._execute(project_id, call, result, on_tool_executed)
                for call in response.tool_use_blocks
            ]
            conversation.append({"role": "tool", "results": results})

            if result.iterations >= self.max_iterations:
                logger.warning(
                    "Tool-calling iteration limit reached",
                    project_id=project_id,
                    iterations=result.iterations,
                    tool_calls=result.tool_calls_count,
                )
                result.outcome = RunOutcome.ITERATION_LIMIT
                break

            response = self._call(result, system_prompt, conversation, definitions, force=False)

        result.text = "\n\n".join(part for part in text_parts if part.strip())
        return result

    def _call(
        self,
        result: OrchestratorResult,
        system_prompt: str,
        conversation: List[Message],
        definitions,
        force: bool,
    ) -> ProviderResponse:
        response = self.provider.send_message(
            system_prompt, list(conversation), definitions, force_tool_use=force
        )
        result.iterations += 1
        result.usage = result.usage + response.usage
        result.stop_reason = response.stop_reason
        return response

    def _execute(
        self,
        project_id: str,
        call: ToolUseBlock,
        result: OrchestratorResult,
        on_tool_executed: Optional[ToolObserver],
    ) -> ToolResultBlock:
        started = time.monotonic()
        outcome = self.tools.execute(project_id, call.name, call.arguments)
        duration_ms = int((time.monotonic() - started) * 1000)

        execution = ToolExecution(
            tool_use_id=call.id,
            name=call.name,
            arguments=call.arguments,
            result=outcome,
            duration_ms=duration_ms,
        )
        result.tool_executions.append(execution)
        if not outcome.ok:
            logger.warning(
                "Tool execution failed",
                project_id=project_id,
                tool=call.name,
                error=outcome.error,
            )
        if on_tool_executed is not None:
            on_tool_executed(execution)

        return ToolResultBlock(
            tool_use_id=call.id,
            content=json.dumps(outcome.to_payload()),
            is_error=not outcome.ok,
        )
