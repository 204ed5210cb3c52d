"""
End-to-end AI edit runs.

One ``run_ai_edit`` call executes these steps in strict order, each gating the
next:

1. Validate the request and apply the per-user rate limit.
2. Authorize: the caller owns the project and the chat session belongs to it.
3. Resolve the entitlement, ensure this month's grant, require a positive
   balance.
4. Select the model, estimate an upper-bound cost, require it be affordable.
5. Load recent chat turns as history, then persist the user's message (kept
   even if everything after fails).
6. Build the file context within the plan's file and size limits.
7. Run the tool-calling loop.
8. Price the actual usage, re-check the balance, charge, then write the
   snapshot, assistant reply and usage event together.

No credits move unless step 8 is reached. A cancelled or failed run therefore
never needs a compensating entry, except when the snapshot write itself fails
after the charge; that charge is refunded with an ADJUSTMENT.
"""

import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import structlog

from appforge.sdk import provider_for_model
from appforge.sdk.base import AIProvider, Message
from appforge.storage.models import (
    AiRun,
    ChatMessage,
    MessageRole,
    PlanTier,
    RunStatus,
    ToolInvocation,
    UsageEvent,
)
from appforge.storage.repository import LedgerRepository, SubscriptionRepository
from appforge.storage.workspace import WorkspaceStore

from .context import build_project_context, get_system_prompt
from .credits import CreditGate
from .entitlements import EffectivePlan, EntitlementResolver, get_plan_limits
from .errors import (
    AuthorizationError,
    NoToolsProducedError,
    PaymentRequiredError,
    RateLimitExceededError,
    ValidationError,
)
from .orchestrator import (
    OrchestratorResult,
    RunOutcome,
    ToolCallingOrchestrator,
    ToolExecution,
    requires_edits,
)
from .periods import utcnow
from .pricing import (
    DEFAULT_MARKUP,
    EDIT_TASKS,
    ModelRouting,
    TaskType,
    calculate_credits_charged,
    calculate_vendor_cost,
    estimate_credits_charged,
    estimate_tokens,
    get_model_for_task,
)
from .ratelimit import TokenBucketRateLimiter
from .tools import ToolRegistry, build_file_tool_registry

logger = structlog.get_logger()

ProviderFactory = Callable[[str], AIProvider]

HISTORY_MESSAGES = 10


@dataclass(frozen=True)
class RunAiEditRequest:
    user_id: str
    project_id: str
    chat_session_id: str
    base_snapshot_id: str
    message: str
    selected_file_path: Optional[str] = None
    task_type: TaskType = TaskType.CODE_EDIT


@dataclass(frozen=True)
class AppliedTool:
    name: str
    arguments: dict
    message: Optional[str]
    duration_ms: int


@dataclass(frozen=True)
class RunAiEditResult:
    run_id: str
    request_id: str
    new_snapshot_id: str
    assistant_text: str
    applied_tools: List[AppliedTool]
    credits_charged: float
    credits_remaining: float
    vendor_cost_usd: float
    model: str
    tier: PlanTier
    iteration_limit_reached: bool = False


@dataclass(frozen=True)
class CoordinatorOptions:
    routing: ModelRouting = field(default_factory=ModelRouting)
    markup: float = DEFAULT_MARKUP
    estimated_input_tokens: int = 50000
    estimated_output_tokens: int = 4096
    max_iterations: int = 5


def payment_required_message(tier: PlanTier, out_of_credits: bool) -> str:
    """User-facing message for an unaffordable request."""
    lead = "Out of credits." if out_of_credits else "Insufficient credits."
    if tier == PlanTier.FREE:
        return f"{lead} Upgrade to Pro for more credits."
    return f"{lead} Top-up coming soon."


def chat_history(messages: Sequence[ChatMessage]) -> List[Message]:
    """Earlier chat turns as provider-neutral history, oldest first.

    Consecutive turns of one role are merged. Leading assistant turns and
    trailing unanswered user turns are dropped, so the new request continues
    an alternating conversation.
    """
    history: List[Message] = []
    for message in messages:
        role = "user" if message.role == MessageRole.USER else "assistant"
        if not history and role == "assistant":
            continue
        if history and history[-1]["role"] == role:
            history[-1] = {
                "role": role,
                "content": f"{history[-1]['content']}\n\n{message.content}",
            }
        else:
            history.append({"role": role, "content": message.content})
    if history and history[-1]["role"] == "user":
        history.pop()
    return history


def _assistant_reply(result: OrchestratorResult) -> str:
    if result.text.strip():
        return result.text
    applied = result.applied_tools
    if not applied:
        return "No changes were made."
    lines = [f"Applied {len(applied)} change(s):"]
    lines.extend(f"- {e.result.message or e.name}" for e in applied)
    return "\n".join(lines)


class AiRunCoordinator:
    """Wires entitlements, credits, the tool loop and snapshots together."""

    def __init__(
        self,
        workspace: WorkspaceStore,
        resolver: EntitlementResolver,
        gate: CreditGate,
        tools: ToolRegistry,
        provider_factory: ProviderFactory,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        options: CoordinatorOptions = CoordinatorOptions(),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.workspace = workspace
        self.resolver = resolver
        self.gate = gate
        self.tools = tools
        self.provider_factory = provider_factory
        self.rate_limiter = rate_limiter
        self.options = options
        self.clock = clock

    def run_ai_edit(self, request: RunAiEditRequest) -> RunAiEditResult:
        """Run one AI edit request end to end.

        Raises:
            ValidationError: Malformed request
            RateLimitExceededError: Too many requests from this user
            AuthorizationError: Caller does not own the project or session
            PaymentRequiredError: Balance too low before or at charge time
            NoToolsProducedError: The model made no changes to an edit task
            Exception: Vendor and unexpected errors, after the run is marked failed
        """
        self._validate(request)
        self._check_rate_limit(request.user_id)
        self._authorize(request)

        plan = self.resolver.get_effective_plan_for_user(request.user_id)
        limits = get_plan_limits(plan.tier)
        self._check_daily_runs(request.user_id, limits.max_ai_runs_per_day)

        self.gate.ensure_monthly_grant(plan.owner, plan.tier)
        balance = self.gate.get_balance(plan.owner)
        if balance <= 0:
            raise PaymentRequiredError(
                payment_required_message(plan.tier, out_of_credits=True),
                balance=balance,
                required=0.0,
            )

        model = get_model_for_task(request.task_type, plan.tier, self.options.routing)
        est_input, est_output = estimate_tokens(
            limits.max_input_tokens,
            limits.max_output_tokens,
            self.options.estimated_input_tokens,
            self.options.estimated_output_tokens,
        )
        estimated_credits = estimate_credits_charged(
            model, est_input, est_output, markup=self.options.markup
        )
        if not self.gate.can_afford(plan.owner, estimated_credits):
            raise PaymentRequiredError(
                payment_required_message(plan.tier, out_of_credits=False),
                balance=balance,
                required=estimated_credits,
            )

        history = chat_history(self.workspace.list_chat_messages(
            request.chat_session_id, limit=HISTORY_MESSAGES
        ))
        self.workspace.append_chat_message(
            request.chat_session_id, MessageRole.USER, request.message
        )
        run = self.workspace.create_run(
            user_id=request.user_id,
            project_id=request.project_id,
            chat_session_id=request.chat_session_id,
            prompt=request.message,
            model=model,
        )
        log = logger.bind(run_id=run.id, user_id=request.user_id, project_id=request.project_id)
        log.info("AI run started", model=model, tier=plan.tier.value, estimated_credits=estimated_credits)

        started = time.monotonic()
        try:
            return self._execute(request, plan, model, run, history, started, log)
        except Exception as e:
            self._fail_run(run, str(e) or type(e).__name__, started)
            if isinstance(e, (PaymentRequiredError, NoToolsProducedError)):
                log.warning("AI run failed", error_kind=e.kind, error=str(e))
            else:
                log.exception("AI run failed", error=str(e))
            raise

    def _execute(
        self,
        request: RunAiEditRequest,
        plan: EffectivePlan,
        model: str,
        run: AiRun,
        history: List[Message],
        started: float,
        log,
    ) -> RunAiEditResult:
        limits = get_plan_limits(plan.tier)
        context = build_project_context(
            self.workspace.get_snapshot_files(request.base_snapshot_id),
            selected_file_path=request.selected_file_path,
            max_context_files=limits.max_context_files,
        )
        system_prompt = get_system_prompt(context)

        enforce = request.task_type in EDIT_TASKS and requires_edits(
            request.message, request.selected_file_path
        )
        orchestrator = ToolCallingOrchestrator(
            self.provider_factory(model),
            self.tools,
            max_iterations=self.options.max_iterations,
        )

        def record(execution: ToolExecution) -> None:
            self.workspace.record_tool_invocation(ToolInvocation(
                run_id=run.id,
                tool_name=execution.name,
                args=execution.arguments,
                ok=execution.result.ok,
                result=execution.result.to_payload(),
                duration_ms=execution.duration_ms,
                created_at=self.clock(),
            ))

        result = orchestrator.run(
            request.project_id,
            system_prompt,
            request.message,
            history=history,
            enforce_tool_use=enforce,
            on_tool_executed=record,
        )
        self._apply_metrics(run, result)

        if result.outcome == RunOutcome.NO_TOOLS_PRODUCED:
            raise NoToolsProducedError(
                "AI did not make changes. Try rephrasing your request."
            )

        vendor_cost = calculate_vendor_cost(
            model, result.usage.input_tokens, result.usage.output_tokens
        )
        credits = calculate_credits_charged(vendor_cost, self.options.markup)
        request_id = uuid.uuid4().hex

        usage_event = None
        if credits > 0:
            if not self.gate.can_afford(plan.owner, credits):
                raise PaymentRequiredError(
                    "Insufficient credits after request processing",
                    balance=self.gate.get_balance(plan.owner),
                    required=credits,
                )
            self.gate.charge(plan.owner, credits, request_id)
            usage_event = UsageEvent(
                request_id=request_id,
                user_id=request.user_id,
                project_id=request.project_id,
                owner=plan.owner,
                team_id=plan.team_id,
                model=model,
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
                vendor_cost_usd=vendor_cost,
                credits_charged=credits,
                created_at=self.clock(),
            )

        reply = _assistant_reply(result)
        try:
            snapshot_id = self.workspace.commit_assistant_turn(
                request.project_id,
                request.chat_session_id,
                reply,
                label=f"AI: {request.message[:60]}",
                usage_event=usage_event,
            )
        except Exception:
            if credits > 0:
                self.gate.refund(plan.owner, credits, request_id)
            raise

        run.status = RunStatus.APPLIED
        run.duration_ms = int((time.monotonic() - started) * 1000)
        self.workspace.finish_run(run)

        iteration_limit = result.outcome == RunOutcome.ITERATION_LIMIT
        if iteration_limit:
            log.warning("AI run stopped at iteration limit", iterations=result.iterations)
        log.info(
            "AI run applied",
            credits_charged=credits,
            vendor_cost_usd=vendor_cost,
            tool_calls=result.tool_calls_count,
            patch_failures=result.patch_failures,
        )

        return RunAiEditResult(
            run_id=run.id,
            request_id=request_id,
            new_snapshot_id=snapshot_id,
            assistant_text=reply,
            applied_tools=[
                AppliedTool(
                    name=e.name,
                    arguments=e.arguments,
                    message=e.result.message,
                    duration_ms=e.duration_ms,
                )
                for e in result.applied_tools
            ],
            credits_charged=credits,
            credits_remaining=self.gate.get_balance(plan.owner),
            vendor_cost_usd=vendor_cost,
            model=model,
            tier=plan.tier,
            iteration_limit_reached=iteration_limit,
        )

    def _validate(self, request: RunAiEditRequest) -> None:
        for name in ("user_id", "project_id", "chat_session_id", "base_snapshot_id"):
            value = getattr(request, name)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"{name} is required")
        if not isinstance(request.message, str) or not request.message.strip():
            raise ValidationError("message is required")
        if not isinstance(request.task_type, TaskType):
            raise ValidationError(f"Unknown task type: {request.task_type}")

    def _check_rate_limit(self, user_id: str) -> None:
        if self.rate_limiter is not None and not self.rate_limiter.check(user_id):
            raise RateLimitExceededError("Too many AI requests. Please wait a minute.")

    def _check_daily_runs(self, user_id: str, max_runs: Optional[int]) -> None:
        if max_runs is None:
            return
        since = self.clock() - timedelta(days=1)
        if self.workspace.count_runs_since(user_id, since) >= max_runs:
            raise RateLimitExceededError(
                f"Daily AI run limit of {max_runs} reached. Upgrade to Pro for more runs."
            )

    def _authorize(self, request: RunAiEditRequest) -> None:
        owner = self.workspace.get_project_owner(request.project_id)
        if owner is None or owner != request.user_id:
            raise AuthorizationError("Project not found or access denied")
        if self.workspace.get_chat_session_project(request.chat_session_id) != request.project_id:
            raise AuthorizationError("Chat session not found or access denied")
        if not self.workspace.snapshot_exists(request.project_id, request.base_snapshot_id):
            raise AuthorizationError("Snapshot not found or access denied")

    def _apply_metrics(self, run: AiRun, result: OrchestratorResult) -> None:
        run.input_tokens = result.usage.input_tokens
        run.output_tokens = result.usage.output_tokens
        run.cache_read_tokens = result.usage.cache_read_tokens
        run.cache_write_tokens = result.usage.cache_write_tokens
        run.tool_calls_count = result.tool_calls_count
        run.patch_failures = result.patch_failures
        run.retry_count = 1 if result.forced_retry else 0
        run.iterations = result.iterations
        run.stop_reason = result.stop_reason

    def _fail_run(self, run: AiRun, error: str, started: float) -> None:
        if run.status != RunStatus.RUNNING:
            return
        failed = replace(
            run,
            status=RunStatus.FAILED,
            error=error,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        self.workspace.finish_run(failed)


def build_coordinator(
    settings,
    provider_factory: Optional[ProviderFactory] = None,
    rate_limiter: Optional[TokenBucketRateLimiter] = None,
) -> AiRunCoordinator:
    """Assemble a coordinator over the SQLite stores named in ``settings``.

    Args:
        settings: Loaded ``appforge.config.loader.Settings``
        provider_factory: Model name to provider; vendor adapters by default
        rate_limiter: Shared limiter; a fresh in-process one by default
    """
    db_path = settings.db_path
    subscriptions = SubscriptionRepository(db_path)
    workspace = WorkspaceStore(db_path)
    max_tokens = settings.orchestrator.max_output_tokens

    return AiRunCoordinator(
        workspace=workspace,
        resolver=EntitlementResolver(subscriptions),
        gate=CreditGate(
            LedgerRepository(db_path),
            subscriptions,
            policy=settings.billing.grant_policy(),
        ),
        tools=build_file_tool_registry(workspace),
        provider_factory=provider_factory or (lambda model: provider_for_model(model, max_tokens)),
        rate_limiter=rate_limiter or TokenBucketRateLimiter(settings.rate_limit.ai_per_minute),
        options=CoordinatorOptions(
            routing=settings.models.routing(),
            markup=settings.billing.markup,
            estimated_input_tokens=settings.estimates.input_tokens,
            estimated_output_tokens=settings.estimates.output_tokens,
            max_iterations=settings.orchestrator.max_iterations,
        ),
    )
