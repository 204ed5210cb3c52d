"""
Data models for storage layer.

Defines database entities and data structures shared by the core.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class OwnerType(Enum):
    """Billing entity kinds."""
    INDIVIDUAL = "INDIVIDUAL"
    TEAM = "TEAM"


class EntryType(Enum):
    """Kinds of credit movement."""
    MONTHLY_GRANT = "MONTHLY_GRANT"
    TOPUP = "TOPUP"
    SPEND = "SPEND"
    ADJUSTMENT = "ADJUSTMENT"


class PlanTier(Enum):
    FREE = "FREE"
    PRO = "PRO"
    TEAM = "TEAM"


class SubscriptionStatus(Enum):
    ACTIVE = "ACTIVE"
    CANCELED = "CANCELED"
    PAST_DUE = "PAST_DUE"


class RunStatus(Enum):
    RUNNING = "running"
    APPLIED = "applied"
    FAILED = "failed"


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Owner:
    """The billing entity credits are tracked against.

    Ledger, balance and gate code thread this through opaquely; only the
    entitlement resolver decides which variant a request maps to.
    """
    owner_type: OwnerType
    owner_id: str

    @classmethod
    def individual(cls, user_id: str) -> "Owner":
        return cls(OwnerType.INDIVIDUAL, user_id)

    @classmethod
    def team(cls, team_id: str) -> "Owner":
        return cls(OwnerType.TEAM, team_id)

    def __str__(self) -> str:
        return f"{self.owner_type.value}:{self.owner_id}"


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of a credit movement.

    Entries are never mutated or deleted; corrections are new ADJUSTMENT
    entries. SPEND amounts are negative.
    """
    owner: Owner
    entry_type: EntryType
    amount: float
    created_at: datetime
    period_key: Optional[str] = None
    ref: Optional[str] = None
    id: Optional[int] = None


@dataclass(frozen=True)
class SubscriptionState:
    owner: Owner
    tier: PlanTier
    status: SubscriptionStatus
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


@dataclass(frozen=True)
class TeamMembership:
    team_id: str
    user_id: str
    joined_at: datetime


@dataclass(frozen=True)
class UsageEvent:
    """One billable AI interaction, written once per charged run."""
    request_id: str
    user_id: str
    owner: Owner
    model: str
    input_tokens: int
    output_tokens: int
    vendor_cost_usd: float
    credits_charged: float
    created_at: datetime
    project_id: Optional[str] = None
    team_id: Optional[str] = None


@dataclass(frozen=True)
class ProjectFile:
    path: str
    content: str

    @property
    def size(self) -> int:
        return len(self.content.encode("utf-8"))


@dataclass(frozen=True)
class ChatMessage:
    chat_session_id: str
    role: MessageRole
    content: str
    created_at: datetime
    id: Optional[int] = None


@dataclass
class AiRun:
    """One agent invocation for a chat session.

    Written by a single coordinator invocation: created as RUNNING and
    finished once as APPLIED or FAILED.
    """
    id: str
    user_id: str
    project_id: str
    chat_session_id: str
    prompt: str
    model: str
    status: RunStatus
    created_at: datetime
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_write_tokens: int = 0
    tool_calls_count: int = 0
    patch_failures: int = 0
    retry_count: int = 0
    iterations: int = 0
    duration_ms: int = 0
    stop_reason: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ToolInvocation:
    run_id: str
    tool_name: str
    args: Any
    ok: bool
    result: Dict[str, Any] = field(default_factory=dict)
    duration_ms: int = 0
    created_at: Optional[datetime] = None
