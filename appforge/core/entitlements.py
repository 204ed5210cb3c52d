"""
Plan entitlements.

Resolves which tier and billing owner apply to a user's request, and holds
the static limits per tier.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Optional

import structlog

from appforge.storage.models import (
    Owner,
    OwnerType,
    PlanTier,
    SubscriptionState,
    SubscriptionStatus,
)
from appforge.storage.repository import SubscriptionRepository

from .periods import PeriodKey, utcnow

logger = structlog.get_logger()


@dataclass(frozen=True)
class PlanLimits:
    """Static limits of a tier."""
    max_input_tokens: int
    max_output_tokens: int
    max_context_files: int
    backend_allowed: bool
    backend_quota: int
    max_ai_runs_per_day: Optional[int] = None


PLAN_LIMITS: Dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(
        max_input_tokens=50000,
        max_output_tokens=4096,
        max_context_files=10,
        max_ai_runs_per_day=20,
        backend_allowed=True,
        backend_quota=1,
    ),
    PlanTier.PRO: PlanLimits(
        max_input_tokens=200000,
        max_output_tokens=8192,
        max_context_files=50,
        backend_allowed=True,
        backend_quota=1,
    ),
    PlanTier.TEAM: PlanLimits(
        max_input_tokens=500000,
        max_output_tokens=16384,
        max_context_files=100,
        backend_allowed=True,
        backend_quota=3,
    ),
}


def get_plan_limits(tier: PlanTier) -> PlanLimits:
    return PLAN_LIMITS[tier]


@dataclass(frozen=True)
class EffectivePlan:
    """Resolved (tier, owner) pair governing one request."""
    tier: PlanTier
    owner: Owner
    team_id: Optional[str] = None


@dataclass(frozen=True)
class BackendQuotaCheck:
    allowed: bool
    current_count: int
    quota: int
    reason: Optional[str] = None


class EntitlementResolver:
    """Maps users and owners to their effective plan via subscription state."""

    def __init__(
        self,
        subscriptions: SubscriptionRepository,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.subscriptions = subscriptions
        self.clock = clock

    def get_effective_plan_for_user(self, user_id: str) -> EffectivePlan:
        """Resolve a user's plan. First match wins:

        1. Primary (earliest joined) team has an ACTIVE TEAM subscription:
           TEAM tier, billed to the team.
        2. User has an ACTIVE PRO subscription: PRO, billed to the user.
        3. Otherwise FREE, billed to the user.

        Team membership alone is not enough; a team without a TEAM plan falls
        through to the user's own subscription.
        """
        membership = self.subscriptions.find_team_membership(user_id)
        if membership is not None:
            team_owner = Owner.team(membership.team_id)
            team_subscription = self.subscriptions.find_active_subscription(team_owner)
            if team_subscription is not None and team_subscription.tier == PlanTier.TEAM:
                return EffectivePlan(
                    tier=PlanTier.TEAM,
                    owner=team_owner,
                    team_id=membership.team_id,
                )

        user_owner = Owner.individual(user_id)
        user_subscription = self.subscriptions.find_active_subscription(user_owner)
        if user_subscription is not None and user_subscription.tier == PlanTier.PRO:
            return EffectivePlan(tier=PlanTier.PRO, owner=user_owner)

        return EffectivePlan(tier=PlanTier.FREE, owner=user_owner)

    def get_effective_plan_for_owner(self, owner: Owner) -> EffectivePlan:
        """Plan of an owner from its own subscription, FREE if none is active."""
        subscription = self.subscriptions.find_active_subscription(owner)
        team_id = owner.owner_id if owner.owner_type == OwnerType.TEAM else None
        tier = subscription.tier if subscription is not None else PlanTier.FREE
        return EffectivePlan(tier=tier, owner=owner, team_id=team_id)

    def can_create_backend(self, owner: Owner) -> BackendQuotaCheck:
        """Check the owner's managed backend quota."""
        limits = get_plan_limits(self.get_effective_plan_for_owner(owner).tier)
        if not limits.backend_allowed:
            return BackendQuotaCheck(
                allowed=False,
                current_count=0,
                quota=0,
                reason="Backend creation not allowed for this plan",
            )

        count = self.subscriptions.count_active_backends(owner)
        if count >= limits.backend_quota:
            return BackendQuotaCheck(
                allowed=False,
                current_count=count,
                quota=limits.backend_quota,
                reason=f"Backend quota exceeded. Limit: {limits.backend_quota}",
            )
        return BackendQuotaCheck(allowed=True, current_count=count, quota=limits.backend_quota)

    def set_plan(self, owner: Owner, tier: PlanTier) -> SubscriptionState:
        """Upsert an ACTIVE subscription for the current UTC month."""
        start, end = PeriodKey.current(self.clock()).bounds()
        state = SubscriptionState(
            owner=owner,
            tier=tier,
            status=SubscriptionStatus.ACTIVE,
            period_start=start,
            period_end=end,
        )
        self.subscriptions.upsert_subscription(state)
        logger.info("Plan set", owner=str(owner), tier=tier.value)
        return state
