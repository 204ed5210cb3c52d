"""
Pricing calculations and model routing.

Maps vendor token usage to USD cost and USD cost to credits. 1 credit is
1 USD after markup.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple

import structlog

from appforge.storage.models import PlanTier

logger = structlog.get_logger()

TOKENS_PER_MILLION = 1_000_000
DEFAULT_MARKUP = 1.20
CREDITS_PER_USD = 1.0

DEFAULT_CHEAP_MODEL = "claude-3-5-haiku-20241022"
DEFAULT_STRONG_MODEL = "claude-sonnet-4-5"


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_price_per_1m: float  # USD per 1M input tokens
    output_price_per_1m: float  # USD per 1M output tokens


# Rate applied to models missing from the table
DEFAULT_PRICING = ModelPricing(input_price_per_1m=3.0, output_price_per_1m=15.0)


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]
    default: ModelPricing = DEFAULT_PRICING

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, falling back to the default rate.

        A table miss is logged, never raised: a charge must not be blocked
        by a missing price.
        """
        pricing = self.prices.get(model)
        if pricing is None:
            logger.warning("Unknown model pricing, using default", model=model)
            return self.default
        return pricing

    def __contains__(self, model: str) -> bool:
        return model in self.prices


PRICING_TABLE = PricingTable({
    "claude-sonnet-4-5": ModelPricing(input_price_per_1m=3.0, output_price_per_1m=15.0),
    "claude-3-5-sonnet-20241022": ModelPricing(input_price_per_1m=3.0, output_price_per_1m=15.0),
    "claude-3-5-haiku-20241022": ModelPricing(input_price_per_1m=1.0, output_price_per_1m=5.0),
    "claude-3-opus-20240229": ModelPricing(input_price_per_1m=15.0, output_price_per_1m=75.0),
    "gpt-4o": ModelPricing(input_price_per_1m=2.5, output_price_per_1m=10.0),
    "gpt-4o-mini": ModelPricing(input_price_per_1m=0.15, output_price_per_1m=0.6),
})


def calculate_vendor_cost(
    model: str,
    input_tokens: int,
    output_tokens: int,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Vendor cost in USD for a token count.

    ``input_tokens / 1e6 * input price + output_tokens / 1e6 * output price``

    Args:
        model: Model identifier
        input_tokens: Input (prompt) tokens
        output_tokens: Output (completion) tokens
        table: Pricing table to consult

    Returns:
        Cost in USD, unrounded
    """
    if input_tokens < 0 or output_tokens < 0:
        raise ValueError("token counts must be >= 0")
    pricing = table.get_pricing(model)
    input_cost = (input_tokens / TOKENS_PER_MILLION) * pricing.input_price_per_1m
    output_cost = (output_tokens / TOKENS_PER_MILLION) * pricing.output_price_per_1m
    return input_cost + output_cost


def calculate_credits_charged(vendor_cost_usd: float, markup: float = DEFAULT_MARKUP) -> float:
    """Credits to charge for a vendor cost, with markup applied."""
    return vendor_cost_usd * markup * CREDITS_PER_USD


def estimate_credits_charged(
    model: str,
    estimated_input_tokens: int,
    estimated_output_tokens: int,
    markup: float = DEFAULT_MARKUP,
    table: PricingTable = PRICING_TABLE,
) -> float:
    """Credits for a conservative token estimate, used before the AI call."""
    vendor_cost = calculate_vendor_cost(
        model, estimated_input_tokens, estimated_output_tokens, table
    )
    return calculate_credits_charged(vendor_cost, markup)


def estimate_tokens(
    max_input_tokens: int,
    max_output_tokens: int,
    default_input_tokens: int = 50000,
    default_output_tokens: int = 4096,
) -> Tuple[int, int]:
    """Upper-bound token estimate for a request, capped at the plan limits."""
    return (
        min(default_input_tokens, max_input_tokens),
        min(default_output_tokens, max_output_tokens),
    )


class TaskType(Enum):
    """Kinds of AI work a request can ask for."""
    UX_REVIEW = "UX_REVIEW"
    SUMMARIZE = "SUMMARIZE"
    FILE_SELECT = "FILE_SELECT"
    CODE_EDIT = "CODE_EDIT"
    MULTI_FILE_CHANGE = "MULTI_FILE_CHANGE"
    BACKEND_SCHEMA = "BACKEND_SCHEMA"


CHEAP_TASKS: FrozenSet[TaskType] = frozenset({
    TaskType.UX_REVIEW,
    TaskType.SUMMARIZE,
    TaskType.FILE_SELECT,
})
COMPLEX_TASKS: FrozenSet[TaskType] = frozenset({
    TaskType.CODE_EDIT,
    TaskType.MULTI_FILE_CHANGE,
    TaskType.BACKEND_SCHEMA,
})
EDIT_TASKS: FrozenSet[TaskType] = frozenset({
    TaskType.CODE_EDIT,
    TaskType.MULTI_FILE_CHANGE,
})


@dataclass(frozen=True)
class ModelRouting:
    """Which model serves cheap work, complex work, and anything else."""
    cheap: str = DEFAULT_CHEAP_MODEL
    strong: str = DEFAULT_STRONG_MODEL
    default: str = DEFAULT_STRONG_MODEL


def get_model_for_task(
    task_type: TaskType,
    tier: PlanTier,
    routing: ModelRouting = ModelRouting(),
) -> str:
    """Pick the model for a task.

    FREE is hard-locked to the cheap model for every task type. PRO and TEAM
    route cheap tasks to the cheap model and complex tasks to the strong one.
    """
    if tier == PlanTier.FREE:
        return routing.cheap

    if task_type in CHEAP_TASKS:
        return routing.cheap
    if task_type in COMPLEX_TASKS:
        return routing.strong
    return routing.default
