"""
Credit balance and charging.

The balance is always recomputed from the full ledger of an owner: every
non-grant entry counts, and MONTHLY_GRANT entries count only for the current
UTC period. Grants from earlier months stay in the ledger but stop
contributing once the period rolls over. There is no cache; a full scan per
owner is the known scaling limit.

Charging is optimistic. ``charge`` re-reads the balance right before it
appends, but the ledger has no lock, so two concurrent charges for the same
owner can both pass the check and briefly take the balance below zero.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog

from appforge.storage.models import EntryType, LedgerEntry, Owner, OwnerType, PlanTier
from appforge.storage.repository import LedgerRepository, SubscriptionRepository

from .errors import LedgerValidationError, PaymentRequiredError
from .periods import PeriodKey, utcnow

logger = structlog.get_logger()

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class GrantPolicy:
    """Monthly allotment per tier. TEAM is per seat and pooled to the team."""
    free_credits: float = 1.0
    pro_credits: float = 10.0
    team_credits_per_seat: float = 15.0


class BalanceCalculator:
    """Derives an owner's balance from their ledger entries."""

    def __init__(self, ledger: LedgerRepository, clock: Clock = utcnow):
        self.ledger = ledger
        self.clock = clock

    def current_period(self) -> PeriodKey:
        return PeriodKey.current(self.clock())

    def get_balance(self, owner: Owner) -> float:
        """Current balance in credits.

        Args:
            owner: Billing owner

        Returns:
            Sum of all non-grant entries plus grants of the current period
        """
        current_key = str(self.current_period())
        balance = 0.0
        for entry in self.ledger.find_entries(owner):
            if entry.entry_type == EntryType.MONTHLY_GRANT:
                if entry.period_key == current_key:
                    balance += entry.amount
            else:
                # SPEND entries are already negative
                balance += entry.amount
        return balance


class CreditGate:
    """Grant, affordability and charge operations over the ledger."""

    def __init__(
        self,
        ledger: LedgerRepository,
        subscriptions: SubscriptionRepository,
        policy: GrantPolicy = GrantPolicy(),
        clock: Clock = utcnow,
    ):
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.policy = policy
        self.clock = clock
        self.balances = BalanceCalculator(ledger, clock)

    def get_balance(self, owner: Owner) -> float:
        return self.balances.get_balance(owner)

    def grant_amount(self, owner: Owner, tier: PlanTier) -> float:
        """Credits granted per month to ``owner`` on ``tier``."""
        if tier == PlanTier.FREE:
            return self.policy.free_credits
        if tier == PlanTier.PRO:
            return self.policy.pro_credits
        if owner.owner_type == OwnerType.TEAM:
            seats = max(1, self.subscriptions.find_team_seat_count(owner.owner_id))
            return self.policy.team_credits_per_seat * seats
        # TEAM tier resolved to an individual owner: a single seat
        return self.policy.team_credits_per_seat

    def ensure_monthly_grant(self, owner: Owner, tier: PlanTier) -> Optional[LedgerEntry]:
        """Append this period's MONTHLY_GRANT unless one already exists.

        Idempotent and safe to call on every request. The ledger's unique
        index on (owner, period) for grants closes the check-then-append race.

        Returns:
            The appended grant, or None if the period already had one
        """
        period_key = str(PeriodKey.current(self.clock()))
        if self.ledger.find_monthly_grant(owner, period_key) is not None:
            return None

        amount = self.grant_amount(owner, tier)
        if amount <= 0:
            return None

        entry = self.ledger.append_monthly_grant(LedgerEntry(
            owner=owner,
            entry_type=EntryType.MONTHLY_GRANT,
            amount=amount,
            period_key=period_key,
            created_at=self.clock(),
        ))
        if entry is not None:
            logger.info(
                "Monthly grant appended",
                owner=str(owner),
                tier=tier.value,
                period=period_key,
                credits=amount,
            )
        return entry

    def can_afford(self, owner: Owner, estimated_credits: float) -> bool:
        return self.get_balance(owner) >= estimated_credits

    def charge(self, owner: Owner, credits: float, request_id: str) -> LedgerEntry:
        """Append a SPEND entry of ``-credits`` after re-reading the balance.

        Raises:
            LedgerValidationError: If credits is not positive
            PaymentRequiredError: If the balance no longer covers the charge
        """
        if credits <= 0:
            raise LedgerValidationError("Charge amount must be positive")

        balance = self.get_balance(owner)
        if balance < credits:
            logger.warning(
                "Charge rejected, insufficient credits",
                owner=str(owner),
                balance=balance,
                required=credits,
                request_id=request_id,
            )
            raise PaymentRequiredError(
                f"Insufficient credits. Balance: {balance}, Required: {credits}",
                balance=balance,
                required=credits,
            )

        entry = self.ledger.append(LedgerEntry(
            owner=owner,
            entry_type=EntryType.SPEND,
            amount=-credits,
            ref=request_id,
            created_at=self.clock(),
        ))
        logger.info("Credits charged", owner=str(owner), credits=credits, request_id=request_id)
        return entry

    def add_topup(self, owner: Owner, amount: float, ref: Optional[str] = None) -> LedgerEntry:
        """Append a TOPUP entry.

        Raises:
            LedgerValidationError: If amount is not positive
        """
        if amount <= 0:
            raise LedgerValidationError("Topup amount must be positive")
        now = self.clock()
        return self.ledger.append(LedgerEntry(
            owner=owner,
            entry_type=EntryType.TOPUP,
            amount=amount,
            ref=ref or f"topup-{int(now.timestamp() * 1000)}",
            created_at=now,
        ))

    def add_adjustment(self, owner: Owner, amount: float, reason: str) -> LedgerEntry:
        """Append a signed administrative correction."""
        if amount == 0:
            raise LedgerValidationError("Adjustment amount must be non-zero")
        if not reason or not reason.strip():
            raise LedgerValidationError("Adjustment reason is required")
        now = self.clock()
        entry = self.ledger.append(LedgerEntry(
            owner=owner,
            entry_type=EntryType.ADJUSTMENT,
            amount=amount,
            ref=f"admin-adjust-{int(now.timestamp() * 1000)}: {reason.strip()}",
            created_at=now,
        ))
        logger.info("Credits adjusted", owner=str(owner), credits=amount, reason=reason)
        return entry

    def refund(self, owner: Owner, credits: float, request_id: str) -> LedgerEntry:
        """Reverse a charge whose run could not be persisted."""
        if credits <= 0:
            raise LedgerValidationError("Refund amount must be positive")
        entry = self.ledger.append(LedgerEntry(
            owner=owner,
            entry_type=EntryType.ADJUSTMENT,
            amount=credits,
            ref=f"refund:{request_id}",
            created_at=self.clock(),
        ))
        logger.warning("Charge refunded", owner=str(owner), credits=credits, request_id=request_id)
        return entry
