"""
Error taxonomy for metering and AI runs.

Each error carries a ``kind`` so callers can map failures to user-facing
outcomes without inspecting message text.
"""

from typing import Optional


class AppForgeError(Exception):
    """Base class for all expected, user-facing failures."""
    kind = "internal"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(AppForgeError):
    """Malformed amounts or request payloads, rejected before any side effect."""
    kind = "validation"


class LedgerValidationError(ValidationError):
    """Raised when a charge, topup or adjustment amount is invalid."""


class PaymentRequiredError(AppForgeError):
    """Raised when the owner's balance cannot cover a request.

    Distinct from validation errors so the caller can produce a
    tier-specific message.
    """
    kind = "payment_required"

    def __init__(
        self,
        message: str,
        balance: Optional[float] = None,
        required: Optional[float] = None,
    ):
        super().__init__(message)
        self.balance = balance
        self.required = required


class NoToolsProducedError(AppForgeError):
    """The model never emitted a tool call despite enforcement. Never charged."""
    kind = "no_tools_produced"


class AuthorizationError(AppForgeError):
    """Caller does not own the project or chat session."""
    kind = "unauthorized"


class RateLimitExceededError(AppForgeError):
    kind = "rate_limited"
