"""
AI vendor adapters.

Each adapter implements the provider contract consumed by the tool-calling
orchestrator.
"""

from .anthropic_client import AnthropicToolProvider
from .base import (
    AIProvider,
    ProviderResponse,
    ToolDefinition,
    ToolResultBlock,
    ToolUseBlock,
)
from .openai_client import OpenAIToolProvider

__all__ = [
    "AIProvider",
    "AnthropicToolProvider",
    "OpenAIToolProvider",
    "ProviderResponse",
    "ToolDefinition",
    "ToolResultBlock",
    "ToolUseBlock",
    "provider_for_model",
]


def provider_for_model(model: str, max_tokens: int = 4096) -> AIProvider:
    """Pick the vendor adapter for a model name."""
    if model.startswith(("gpt-", "o1", "o3", "o4")):
        return OpenAIToolProvider(model, max_tokens=max_tokens)
    return AnthropicToolProvider(model, max_tokens=max_tokens)
