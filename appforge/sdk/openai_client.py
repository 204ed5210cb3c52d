"""
OpenAI chat completions adapter.

Translates neutral history and tool definitions into the function-calling
format. Failures are loud: vendor errors and malformed responses propagate.
"""

import json
from typing import Any, Dict, List, Optional

from openai import OpenAI

from ..core.token_counter import TokenUsage
from .base import AIProvider, Message, ProviderResponse, ToolDefinition, ToolUseBlock


def parse_tool_arguments(raw: Optional[str]) -> Any:
    """Decode function-call arguments, keeping undecodable text as-is.

    The tool registry rejects anything that is not an object, so a malformed
    call is reported back to the model instead of ending the run.
    """
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


def dump_tool_arguments(arguments: Any) -> str:
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)


def to_openai_messages(system_prompt: str, history: List[Message]) -> List[Dict[str, Any]]:
    """Translate neutral history into chat completion messages.

    Tool results become one ``tool`` message per result.
    """
    messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
    for message in history:
        role = message["role"]
        if role == "user":
            messages.append({"role": "user", "content": message["content"]})
        elif role == "assistant":
            entry: Dict[str, Any] = {"role": "assistant", "content": message.get("content") or None}
            calls = message.get("tool_calls", [])
            if calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": dump_tool_arguments(call.arguments)},
                    }
                    for call in calls
                ]
            messages.append(entry)
        elif role == "tool":
            for result in message["results"]:
                messages.append({
                    "role": "tool",
                    "tool_call_id": result.tool_use_id,
                    "content": result.content,
                })
        else:
            raise ValueError(f"Unknown message role: {role}")
    return messages


class OpenAIToolProvider(AIProvider):
    """Tool-calling provider backed by the OpenAI SDK."""

    def __init__(self, model: str, max_tokens: int = 4096, client: Optional[OpenAI] = None):
        """Initialize the provider.

        Args:
            model: OpenAI model name (required)
            max_tokens: Maximum tokens to generate per turn
            client: Optional preconfigured client

        Raises:
            ValueError: If model is missing/empty
        """
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.max_tokens = max_tokens
        self.client = client or OpenAI()

    def send_message(
        self,
        system_prompt: str,
        history: List[Message],
        tools: List[ToolDefinition],
        force_tool_use: bool = False,
    ) -> ProviderResponse:
        """Create a chat completion for the conversation.

        Raises:
            ValueError: If history is empty or the response has no usage
            OpenAI API errors: Propagated without modification
        """
        if not history:
            raise ValueError("history is required and cannot be empty")

        request: Dict[str, Any] = {
            "model": self.model,
            "messages": to_openai_messages(system_prompt, history),
            "max_tokens": self.max_tokens,
        }
        if tools:
            request["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": t.name,
                        "description": t.description,
                        "parameters": t.input_schema,
                    },
                }
                for t in tools
            ]
            request["tool_choice"] = "required" if force_tool_use else "auto"

        response = self.client.chat.completions.create(**request)

        usage = response.usage
        if not usage:
            raise ValueError("OpenAI response missing usage information")

        choice = response.choices[0]
        message = choice.message

        text_blocks = [message.content] if message.content else []
        tool_use_blocks = []
        for call in message.tool_calls or []:
            tool_use_blocks.append(ToolUseBlock(
                id=call.id,
                name=call.function.name,
                arguments=parse_tool_arguments(call.function.arguments),
            ))

        details = getattr(usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", None) if details is not None else None
        return ProviderResponse(
            text_blocks=text_blocks,
            tool_use_blocks=tool_use_blocks,
            usage=TokenUsage(
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
                cache_read_tokens=cached if isinstance(cached, int) else 0,
            ),
            stop_reason=choice.finish_reason,
        )
