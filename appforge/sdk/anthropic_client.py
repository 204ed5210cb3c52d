"""
Anthropic Messages API adapter.
"""

from typing import Any, Dict, List, Optional

from anthropic import Anthropic

from ..core.token_counter import TokenUsage
from .base import AIProvider, Message, ProviderResponse, ToolDefinition, ToolUseBlock


def to_anthropic_messages(history: List[Message]) -> List[Dict[str, Any]]:
    """Translate neutral history into Anthropic content blocks."""
    messages = []
    for message in history:
        role = message["role"]
        if role == "user":
            messages.append({"role": "user", "content": message["content"]})
        elif role == "assistant":
            blocks: List[Dict[str, Any]] = []
            if message.get("content"):
                blocks.append({"type": "text", "text": message["content"]})
            for call in message.get("tool_calls", []):
                blocks.append({
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": call.arguments,
                })
            messages.append({"role": "assistant", "content": blocks})
        elif role == "tool":
            messages.append({
                "role": "user",
                "content": [
                    {
                        "type": "tool_result",
                        "tool_use_id": result.tool_use_id,
                        "content": result.content,
                        "is_error": result.is_error,
                    }
                    for result in message["results"]
                ],
            })
        else:
            raise ValueError(f"Unknown message role: {role}")
    return messages


class AnthropicToolProvider(AIProvider):
    """Tool-calling provider backed by the Anthropic SDK."""

    def __init__(self, model: str, max_tokens: int = 4096, client: Optional[Anthropic] = None):
        if not model or not model.strip():
            raise ValueError("model is required and cannot be empty")
        self.model = model
        self.max_tokens = max_tokens
        self.client = client or Anthropic()

    def send_message(
        self,
        system_prompt: str,
        history: List[Message],
        tools: List[ToolDefinition],
        force_tool_use: bool = False,
    ) -> ProviderResponse:
        if not history:
            raise ValueError("history is required and cannot be empty")

        request: Dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "system": system_prompt,
            "messages": to_anthropic_messages(history),
        }
        if tools:
            request["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.input_schema}
                for t in tools
            ]
            request["tool_choice"] = {"type": "any"} if force_tool_use else {"type": "auto"}

        response = self.client.messages.create(**request)

        text_blocks = []
        tool_use_blocks = []
        for block in response.content:
            if block.type == "text":
                text_blocks.append(block.text)
            elif block.type == "tool_use":
                tool_use_blocks.append(ToolUseBlock(
                    id=block.id,
                    name=block.name,
                    arguments=dict(block.input or {}),
                ))

        usage = response.usage
        return ProviderResponse(
            text_blocks=text_blocks,
            tool_use_blocks=tool_use_blocks,
            usage=TokenUsage(
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
                cache_read_tokens=getattr(usage, "cache_read_input_tokens", None) or 0,
                cache_write_tokens=getattr(usage, "cache_creation_input_tokens", None) or 0,
            ),
            stop_reason=response.stop_reason,
        )
