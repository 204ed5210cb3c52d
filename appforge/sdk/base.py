"""
Provider-neutral message and response types.

Conversation history is kept in a neutral shape and translated by each vendor
adapter:

- ``{"role": "user", "content": str}``
- ``{"role": "assistant", "content": str, "tool_calls": [ToolUseBlock, ...]}``
- ``{"role": "tool", "results": [ToolResultBlock, ...]}``
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..core.token_counter import TokenUsage

Message = Dict[str, Any]


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    input_schema: Dict[str, Any]


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    arguments: Any


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False


@dataclass(frozen=True)
class ProviderResponse:
    """One model turn."""
    text_blocks: List[str] = field(default_factory=list)
    tool_use_blocks: List[ToolUseBlock] = field(default_factory=list)
    usage: TokenUsage = TokenUsage()
    stop_reason: Optional[str] = None

    @property
    def text(self) -> str:
        return "".join(self.text_blocks)


class AIProvider:
    """Black-box model backend used by the orchestrator.

    Vendor errors (network, auth, rate limits) propagate unchanged; retries
    are the caller's concern.
    """

    def send_message(
        self,
        system_prompt: str,
        history: List[Message],
        tools: List[ToolDefinition],
        force_tool_use: bool = False,
    ) -> ProviderResponse:
        raise NotImplementedError
