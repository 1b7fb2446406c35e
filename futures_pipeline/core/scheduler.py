"""
Cadence maths and due-slot discovery.

Generation for a delivery slot starts ``lead_time`` before the slot and must
finish ``safety_margin`` before it::

    window start = slot - lead_time
    window end   = slot - safety_margin

Attempts are spaced evenly across the window. When the window closes
without a published episode the slot fails for that cycle and the schedule
moves on to the next cadence occurrence.

Each tick is independent: the scheduler holds no state between calls, so
overlapping ticks from several workers are safe as long as claims go
through the episode store.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from ..config.loader import ScheduleConfig
from ..storage.episodes import EpisodeStore, slot_is_open
from ..storage.ledger import CostLedger
from ..storage.models import Cadence, Episode, Organization, Project, SubscriptionTier
from ..storage.repository import ProjectRepository

logger = logging.getLogger(__name__)


def next_slot(cadence: Cadence, after: datetime) -> datetime:
    """First delivery instant strictly after ``after``, in UTC.

    Delivery times are wall-clock times in the cadence's timezone, so a
    09:00 slot stays at 09:00 local across daylight-saving changes.
    """
    if after.tzinfo is None:
        raise ValueError("after must be timezone-aware")
    zone = ZoneInfo(cadence.timezone)
    local_day = after.astimezone(zone).date()
    for offset in range(8):
        day = local_day + timedelta(days=offset)
        if day.weekday() not in cadence.days:
            continue
        candidate = datetime.combine(day, cadence.delivery_time, tzinfo=zone).astimezone(timezone.utc)
        if candidate > after:
            return candidate
    raise ValueError(f"cadence has no slot within a week of {after.isoformat()}")


def generation_window(slot: datetime, config: ScheduleConfig) -> Tuple[datetime, datetime]:
    return slot - config.lead_time, slot - config.safety_margin


def upcoming_slot(cadence: Cadence, now: datetime, config: ScheduleConfig) -> datetime:
    """The earliest slot whose generation window has not yet closed."""
    return next_slot(cadence, now + config.safety_margin)


def retry_at(slot: datetime, attempts: int, now: datetime, config: ScheduleConfig) -> Optional[datetime]:
    """When the next attempt for ``slot`` may start.

    Args:
        slot: Scheduled delivery instant
        attempts: Attempts already made
        now: Current time
        config: Schedule settings

    Returns:
        The next attempt time, or None when attempts are exhausted or the
        window cannot hold another one
    """
    if attempts >= config.max_attempts:
        return None
    start, end = generation_window(slot, config)
    spacing = (end - start) / config.max_attempts
    candidate = max(start + spacing * attempts, now)
    if candidate >= end:
        return None
    return candidate


def queue_priority(tier: SubscriptionTier, attempts: int = 0) -> int:
    """Higher runs first: paying tiers, then retries, then trials."""
    if tier == SubscriptionTier.ENTERPRISE:
        return 10
    if tier == SubscriptionTier.GROWTH:
        return 9
    if attempts > 0:
        return 8
    if tier == SubscriptionTier.TRIAL:
        return 6
    return 5


@dataclass(frozen=True)
class DueSlot:
    """A project slot that needs a generation attempt now."""
    project: Project
    slot: datetime
    priority: int
    episode: Optional[Episode] = None


@dataclass
class SweepReport:
    released: List[Episode] = field(default_factory=list)
    expired: List[Episode] = field(default_factory=list)
    advanced: int = 0


def _utc_day(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


class Scheduler:
    """Finds due slots and closes the ones whose window has passed."""

    def __init__(
        self,
        projects: ProjectRepository,
        episodes: EpisodeStore,
        ledger: CostLedger,
        config: ScheduleConfig,
        organizations: Optional[Callable[[str], Organization]] = None,
    ):
        self.projects = projects
        self.episodes = episodes
        self.ledger = ledger
        self.config = config
        self.organizations = organizations or projects.get_organization

    def due_projects(self, now: datetime) -> List[DueSlot]:
        """Slots of active projects that need an attempt at ``now``.

        Skips paused projects, organizations without entitlement, and
        organizations whose daily budget has been halted today.
        """
        day = _utc_day(now)
        halted = {}
        due = []
        for project in self.projects.schedulable_projects():
            org_id = project.organization_id
            if org_id not in halted:
                halted[org_id] = self.ledger.is_halted(org_id, day)
                if halted[org_id]:
                    logger.info("Skipping projects of org=%s: generation halted for %s", org_id, day)
            if halted[org_id]:
                continue

            slot = upcoming_slot(project.cadence, now, self.config)
            start, _ = generation_window(slot, self.config)
            if now < start:
                continue

            episode = self.episodes.find(project.id, slot)
            if not slot_is_open(episode, now):
                continue

            attempts = episode.generation_attempts if episode is not None else 0
            tier = self.organizations(org_id).subscription_tier
            due.append(DueSlot(
                project=project,
                slot=slot,
                priority=queue_priority(tier, attempts),
                episode=episode,
            ))

        due.sort(key=lambda item: (-item.priority, item.slot, item.project.id))
        return due

    def next_open_slot(self, project: Project, now: datetime) -> datetime:
        """Earliest slot still awaiting an episode, skipping finished ones."""
        slot = upcoming_slot(project.cadence, now, self.config)
        episode = self.episodes.find(project.id, slot)
        if episode is not None and episode.status.terminal:
            return next_slot(project.cadence, slot)
        return slot

    def sweep(self, now: datetime) -> SweepReport:
        """Recover stale claims, fail closed windows, advance schedules."""
        report = SweepReport()
        report.released = self.episodes.release_stale_claims(
            now - self.config.stale_claim_after,
            self.config.max_attempts,
            now,
        )
        report.expired = self.episodes.expire_overdue(now, self.config.safety_margin)

        for project in self.projects.schedulable_projects():
            upcoming = self.next_open_slot(project, now)
            if project.next_scheduled_at != upcoming:
                self.projects.advance_schedule(project.id, upcoming)
                report.advanced += 1

        if report.released or report.expired:
            logger.info(
                "Sweep released %d stale claim(s), expired %d slot(s)",
                len(report.released), len(report.expired),
            )
        return report
