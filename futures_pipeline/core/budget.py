"""
Budget guard for externally billed generation calls.

Enforcement Order:
1. Organization halted - the daily kill switch already tripped today
2. Daily ceiling - recorded plus reserved spend has reached the limit
3. Per-episode ceiling - checked after the call, once real usage is known

Breaching the daily ceiling halts all generation for the organization until
the next UTC day. Breaching the per-episode ceiling fails and flags that
single episode for administrative review; other projects keep running.

The decision logic is pure (``evaluate_preflight``/``evaluate_postflight``);
``BudgetGuard`` binds it to the cost ledger's atomic reservation so that a
burst of concurrent generations cannot jointly overshoot the daily ceiling.
"""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from enum import Enum, auto
from typing import Callable, Optional

from ..config.loader import BudgetConfig
from ..storage.ledger import CostLedger
from ..storage.models import DailySpend, Organization, utcnow

logger = logging.getLogger(__name__)


class BudgetVerdict(Enum):
    """Outcomes of pre- and postflight checks."""
    ALLOWED = auto()
    DENIED = auto()
    WITHIN_LIMIT = auto()
    EXCEEDED = auto()


class DenialReason(Enum):
    ORGANIZATION_HALTED = "ORGANIZATION_HALTED"
    DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"
    NOT_ENTITLED = "NOT_ENTITLED"


@dataclass(frozen=True)
class BudgetPolicy:
    """Per-episode and per-organization daily ceilings."""
    daily_ceiling: float
    episode_ceiling: float

    def __post_init__(self):
        if self.daily_ceiling <= 0:
            raise ValueError("daily_ceiling must be > 0")
        if self.episode_ceiling <= 0:
            raise ValueError("episode_ceiling must be > 0")


def resolve_policy(budget: BudgetConfig, organization: Optional[Organization] = None) -> BudgetPolicy:
    """Configured ceilings, overridden by the organization's own limits."""
    daily = budget.daily
    per_episode = budget.per_episode
    if organization is not None:
        if organization.daily_cost_limit is not None:
            daily = organization.daily_cost_limit
        if organization.episode_cost_limit is not None:
            per_episode = organization.episode_cost_limit
    return BudgetPolicy(daily_ceiling=daily, episode_ceiling=per_episode)


@dataclass(frozen=True)
class BudgetDecision:
    """Result of a preflight check, holding any reservation it made."""
    verdict: BudgetVerdict
    organization_id: str
    day: date
    daily_spend: float = 0.0
    reserved: float = 0.0
    reason: Optional[DenialReason] = None
    message: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict == BudgetVerdict.ALLOWED


@dataclass(frozen=True)
class PostflightResult:
    """Actual spend compared against both ceilings."""
    verdict: BudgetVerdict
    daily_total: float
    episode_total: float
    daily_exceeded: bool = False
    episode_exceeded: bool = False
    message: str = ""

    @property
    def exceeded(self) -> bool:
        return self.verdict == BudgetVerdict.EXCEEDED


def _utc_day(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


def evaluate_preflight(state: DailySpend, policy: BudgetPolicy) -> BudgetDecision:
    """Decide whether another billed call may start for the organization.

    Uses recorded plus reserved spend, so calls already in flight count
    against the ceiling.
    """
    if state.halted:
        return BudgetDecision(
            verdict=BudgetVerdict.DENIED,
            organization_id=state.organization_id,
            day=state.day,
            daily_spend=state.total_cost,
            reason=DenialReason.ORGANIZATION_HALTED,
            message=(
                f"Generation halted for {state.organization_id} on {state.day}: "
                f"{state.halted_reason or 'daily ceiling breached'}"
            ),
        )
    if state.committed_cost >= policy.daily_ceiling:
        return BudgetDecision(
            verdict=BudgetVerdict.DENIED,
            organization_id=state.organization_id,
            day=state.day,
            daily_spend=state.total_cost,
            reason=DenialReason.DAILY_LIMIT_REACHED,
            message=(
                f"Daily limit of £{policy.daily_ceiling:.2f} reached for {state.organization_id}. "
                f"Spent £{state.total_cost:.2f}, in flight £{state.reserved_cost:.2f}"
            ),
        )
    return BudgetDecision(
        verdict=BudgetVerdict.ALLOWED,
        organization_id=state.organization_id,
        day=state.day,
        daily_spend=state.total_cost,
    )


def evaluate_postflight(daily_total: float, episode_total: float, policy: BudgetPolicy) -> PostflightResult:
    """Compare actual spend, known only after the call, with both ceilings."""
    daily_exceeded = daily_total > policy.daily_ceiling
    episode_exceeded = episode_total > policy.episode_ceiling

    messages = []
    if daily_exceeded:
        messages.append(
            f"daily spend £{daily_total:.2f} exceeds ceiling £{policy.daily_ceiling:.2f}"
        )
    if episode_exceeded:
        messages.append(
            f"episode cost £{episode_total:.2f} exceeds ceiling £{policy.episode_ceiling:.2f}"
        )

    return PostflightResult(
        verdict=BudgetVerdict.EXCEEDED if messages else BudgetVerdict.WITHIN_LIMIT,
        daily_total=daily_total,
        episode_total=episode_total,
        daily_exceeded=daily_exceeded,
        episode_exceeded=episode_exceeded,
        message="; ".join(messages),
    )


class BudgetGuard:
    """Consulted before and after every billed generation call."""

    def __init__(
        self,
        ledger: CostLedger,
        budget: BudgetConfig,
        organizations: Callable[[str], Organization],
    ):
        self.ledger = ledger
        self.budget = budget
        self.organizations = organizations

    def policy_for(self, organization_id: str) -> BudgetPolicy:
        return resolve_policy(self.budget, self.organizations(organization_id))

    def preflight_check(
        self,
        organization_id: str,
        project_id: str,
        now: Optional[datetime] = None,
    ) -> BudgetDecision:
        """Check the daily ceiling and reserve one episode's worth of spend.

        The check and the reservation are a single atomic step in the
        ledger. An allowed decision must be passed to ``release`` once the
        call has finished, whatever its outcome.
        """
        day = _utc_day(now or utcnow())
        organization = self.organizations(organization_id)
        if not organization.entitled:
            logger.warning("Preflight denied for project=%s: org=%s not entitled", project_id, organization_id)
            return BudgetDecision(
                verdict=BudgetVerdict.DENIED,
                organization_id=organization_id,
                day=day,
                reason=DenialReason.NOT_ENTITLED,
                message=f"Organization {organization_id} is not entitled to generation",
            )

        policy = resolve_policy(self.budget, organization)
        granted, state = self.ledger.reserve(
            organization_id,
            day,
            policy.episode_ceiling,
            admit=lambda current: evaluate_preflight(current, policy).allowed,
        )
        if not granted:
            decision = evaluate_preflight(state, policy)
            logger.warning("Preflight denied for project=%s: %s", project_id, decision.message)
            return decision

        return BudgetDecision(
            verdict=BudgetVerdict.ALLOWED,
            organization_id=organization_id,
            day=day,
            daily_spend=state.total_cost,
            reserved=policy.episode_ceiling,
        )

    def release(self, decision: BudgetDecision) -> None:
        """Return the reservation held by an allowed preflight decision."""
        if decision.allowed and decision.reserved > 0:
            self.ledger.release(decision.organization_id, decision.day, decision.reserved)

    def postflight_check(
        self,
        organization_id: str,
        episode_id: str,
        actual_cost: float,
        now: Optional[datetime] = None,
    ) -> PostflightResult:
        """Re-validate real spend once the call has returned.

        A daily breach trips the organization's kill switch for the rest of
        the day. The caller decides what happens to the episode.
        """
        day = _utc_day(now or utcnow())
        policy = self.policy_for(organization_id)
        daily_total = self.ledger.daily_spend(organization_id, day)
        episode_total = max(self.ledger.episode_spend(episode_id), actual_cost)

        result = evaluate_postflight(daily_total, episode_total, policy)
        if result.daily_exceeded:
            self.ledger.halt(organization_id, day, result.message)
        if result.exceeded:
            logger.warning("Postflight exceeded for episode=%s: %s", episode_id, result.message)
        return result
