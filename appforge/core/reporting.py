"""
Admin reporting over the ledger and usage events.

Read-only aggregates for operators: spend this month, vendor cost, model mix
and the FREE-tier strong-model sanity check.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from appforge.storage.models import EntryType, PlanTier, UsageEvent
from appforge.storage.repository import LedgerRepository, SubscriptionRepository, UsageRepository

from .entitlements import EntitlementResolver
from .periods import PeriodKey, utcnow
from .pricing import ModelRouting

ACTIVE_USER_WINDOW = timedelta(days=7)


@dataclass(frozen=True)
class MonthlySpendSummary:
    period: PeriodKey
    active_users_7d: int
    credits_spent: float
    vendor_cost_usd: float
    requests: int
    cheap_model_requests: int
    strong_model_requests: int
    free_tier_strong_requests: int
    backends_by_status: Dict[str, int] = field(default_factory=dict)

    @property
    def gross_margin_usd(self) -> float:
        return self.credits_spent - self.vendor_cost_usd


@dataclass(frozen=True)
class UsagePage:
    events: List[UsageEvent]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        if self.total == 0:
            return 0
        return (self.total + self.page_size - 1) // self.page_size


def monthly_spend_summary(
    ledger: LedgerRepository,
    usage: UsageRepository,
    subscriptions: SubscriptionRepository,
    routing: ModelRouting = ModelRouting(),
    now: Optional[datetime] = None,
) -> MonthlySpendSummary:
    """Aggregate spend for the current UTC month.

    ``free_tier_strong_requests`` counts this month's strong-model events
    billed to owners whose effective plan is FREE. Model routing keeps FREE on
    the cheap model, so anything above zero means routing was bypassed.

    Args:
        ledger: Credit ledger
        usage: Usage event store
        subscriptions: Subscription state, for the FREE-tier check
        routing: Which model names count as cheap and strong
        now: Reference time, current UTC time when None

    Returns:
        MonthlySpendSummary for the month containing ``now``
    """
    now = now or utcnow()
    period = PeriodKey.current(now)
    month_start, _ = period.bounds()

    month_events = usage.get_events_since(month_start)
    recent_events = usage.get_events_since(now - ACTIVE_USER_WINDOW)

    resolver = EntitlementResolver(subscriptions, clock=lambda: now)
    tiers: Dict[str, PlanTier] = {}
    free_strong = 0
    for event in month_events:
        if event.model != routing.strong:
            continue
        key = str(event.owner)
        if key not in tiers:
            tiers[key] = resolver.get_effective_plan_for_owner(event.owner).tier
        if tiers[key] == PlanTier.FREE:
            free_strong += 1

    # Refunded charges are netted out of spend
    credits_spent = max(0.0, -(
        ledger.sum_amounts_since(EntryType.SPEND, month_start)
        + ledger.sum_refunds_since(month_start)
    ))

    return MonthlySpendSummary(
        period=period,
        active_users_7d=len({e.user_id for e in recent_events}),
        credits_spent=credits_spent,
        vendor_cost_usd=sum(e.vendor_cost_usd for e in month_events),
        requests=len(month_events),
        cheap_model_requests=sum(1 for e in month_events if e.model == routing.cheap),
        strong_model_requests=sum(1 for e in month_events if e.model == routing.strong),
        free_tier_strong_requests=free_strong,
        backends_by_status=subscriptions.count_backends_by_status(),
    )


def list_usage_events(
    usage: UsageRepository,
    model: Optional[str] = None,
    user_id: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = 1,
    page_size: int = 50,
) -> UsagePage:
    """One page of usage events, newest first.

    Raises:
        ValueError: If page or page_size is out of range
    """
    if page < 1:
        raise ValueError("page must be >= 1")
    if not 1 <= page_size <= 500:
        raise ValueError("page_size must be between 1 and 500")

    events, total = usage.get_events(
        model=model,
        user_id=user_id,
        since=since,
        until=until,
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return UsagePage(events=events, total=total, page=page, page_size=page_size)
