"""
Episode pipeline orchestration.

Control flow of one attempt:

    cancellation check -> claim -> preflight -> directives -> generate
    -> (usage recorded) -> postflight -> publish -> consume feedback
    -> update project -> notify

A tick sweeps expired and stale slots, discovers due slots and runs one
attempt per slot, concurrently across projects up to ``max_concurrency``.
"""

import asyncio
import logging
import os
import socket
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import List, Optional, Tuple

from .budget import BudgetGuard, DenialReason
from .errors import (
    FailureReason,
    GenerationError,
    InvalidTransition,
    NotFoundError,
    RetryableGenerationError,
)
from .feedback import FeedbackAggregator
from .generator import ContentProvider, EpisodeGenerator
from .scheduler import DueSlot, Scheduler, SweepReport, retry_at
from ..config.loader import PipelineConfig
from ..sdk.notifications import LoggingNotifier, Notifier
from ..storage.episodes import EpisodeStore
from ..storage.feedback import FeedbackRepository
from ..storage.ledger import CostLedger
from ..storage.models import (
    DailySpend,
    Episode,
    EpisodeDraft,
    EpisodeOrigin,
    EpisodeStatus,
    EpisodeStatusView,
    FeedbackNote,
    NoteScope,
    Project,
    utcnow,
)
from ..storage.repository import ProjectRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AttemptOutcome:
    """What one generation attempt did to its episode."""
    episode: Episode
    published: bool = False
    skipped: bool = False
    retry_at: Optional[datetime] = None
    reason: Optional[FailureReason] = None
    message: str = ""


@dataclass
class TickReport:
    sweep: SweepReport
    due: List[DueSlot] = field(default_factory=list)
    outcomes: List[AttemptOutcome] = field(default_factory=list)
    errors: List[Tuple[DueSlot, str]] = field(default_factory=list)

    @property
    def published(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.published)

    @property
    def failed(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.episode.status == EpisodeStatus.FAILED)

    @property
    def retrying(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.retry_at is not None)

    @property
    def skipped(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.skipped)


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _utc_day(now: datetime) -> date:
    return now.astimezone(timezone.utc).date()


def _storage_error(error: sqlite3.Error) -> RetryableGenerationError:
    return RetryableGenerationError(f"Storage error: {error}", FailureReason.STORAGE_ERROR)


class EpisodePipeline:
    """Runs scheduled and manual generation for every project."""

    def __init__(
        self,
        config: PipelineConfig,
        projects: ProjectRepository,
        episodes: EpisodeStore,
        ledger: CostLedger,
        guard: BudgetGuard,
        generator: EpisodeGenerator,
        feedback: FeedbackAggregator,
        scheduler: Scheduler,
        notifier: Optional[Notifier] = None,
        worker_id: Optional[str] = None,
    ):
        self.config = config
        self.projects = projects
        self.episodes = episodes
        self.ledger = ledger
        self.guard = guard
        self.generator = generator
        self.feedback = feedback
        self.scheduler = scheduler
        self.notifier = notifier or LoggingNotifier()
        self.worker_id = worker_id or default_worker_id()

    @classmethod
    def from_config(
        cls,
        config: PipelineConfig,
        provider: ContentProvider,
        notifier: Optional[Notifier] = None,
        worker_id: Optional[str] = None,
    ) -> "EpisodePipeline":
        """Wire every component against the configured SQLite database."""
        db_path = config.storage.db_path
        timeout = config.storage.timeout_seconds
        projects = ProjectRepository(db_path, timeout)
        episodes = EpisodeStore(db_path, timeout)
        ledger = CostLedger(db_path, timeout)
        return cls(
            config=config,
            projects=projects,
            episodes=episodes,
            ledger=ledger,
            guard=BudgetGuard(ledger, config.budget, projects.get_organization),
            generator=EpisodeGenerator(provider, ledger, config.generation),
            feedback=FeedbackAggregator(FeedbackRepository(db_path, timeout)),
            scheduler=Scheduler(projects, episodes, ledger, config.schedule),
            notifier=notifier,
            worker_id=worker_id,
        )

    async def tick(self, now: Optional[datetime] = None) -> TickReport:
        """One scheduler pass. Safe to overlap with ticks on other workers.

        Each due slot runs in isolation: an error escaping one attempt is
        logged against its slot and never cancels the others.
        """
        now = now or utcnow()
        report = TickReport(sweep=await asyncio.to_thread(self.scheduler.sweep, now))
        report.due = await asyncio.to_thread(self.scheduler.due_projects, now)
        if not report.due:
            return report

        semaphore = asyncio.Semaphore(self.config.schedule.max_concurrency)

        async def run(due: DueSlot) -> Optional[AttemptOutcome]:
            async with semaphore:
                try:
                    episode, _ = await asyncio.to_thread(
                        self.episodes.get_or_create, due.project, due.slot, EpisodeOrigin.SCHEDULE, now,
                    )
                    return await self.run_attempt(due.project, episode, now)
                except (sqlite3.Error, InvalidTransition) as e:
                    logger.exception("Attempt for project=%s slot=%s aborted", due.project.id, due.slot.isoformat())
                    report.errors.append((due, str(e)))
                    return None

        results = await asyncio.gather(*(run(due) for due in report.due))
        report.outcomes = [outcome for outcome in results if outcome is not None]
        logger.info(
            "Tick at %s: %d due, %d published, %d retrying, %d failed, %d skipped, %d errors",
            now.isoformat(), len(report.due), report.published, report.retrying,
            report.failed, report.skipped, len(report.errors),
        )
        return report

    async def run_attempt(
        self,
        project: Project,
        episode: Episode,
        now: Optional[datetime] = None,
        skip_if_halted: bool = True,
    ) -> AttemptOutcome:
        """Run one generation attempt for a PENDING episode.

        A storage error after the claim is treated as a retryable
        STORAGE_ERROR failure of the attempt.

        Args:
            project: Owning project
            episode: Episode to claim and generate
            now: Current time
            skip_if_halted: Leave the episode untouched when its organization
                is halted for the day, rather than claiming it and failing
                on the budget check

        Returns:
            AttemptOutcome describing the episode's new state
        """
        now = now or utcnow()
        org_id = project.organization_id

        if skip_if_halted and await asyncio.to_thread(self.ledger.is_halted, org_id, _utc_day(now)):
            logger.info("Skipping episode %s: org=%s halted for the day", episode.id, org_id)
            return AttemptOutcome(episode=episode, skipped=True, message="organization halted")

        claimed = await asyncio.to_thread(self.episodes.claim, episode.id, self.worker_id, now)
        if claimed is None:
            current = await asyncio.to_thread(self.episodes.get, episode.id)
            return AttemptOutcome(episode=current, skipped=True, message="claimed elsewhere")

        try:
            decision = await asyncio.to_thread(self.guard.preflight_check, org_id, project.id, now)
        except sqlite3.Error as e:
            return await self._handle_failure(claimed, _storage_error(e), now)

        if not decision.allowed:
            reason = (
                FailureReason.NOT_ENTITLED
                if decision.reason == DenialReason.NOT_ENTITLED
                else FailureReason.BUDGET_EXCEEDED
            )
            failed = await asyncio.to_thread(
                self.episodes.fail, claimed.id, reason, decision.message, now, worker_id=self.worker_id,
            )
            return AttemptOutcome(episode=failed, reason=reason, message=decision.message)

        try:
            return await self._generate_and_publish(project, claimed, now)
        finally:
            try:
                await asyncio.to_thread(self.guard.release, decision)
            except sqlite3.Error:
                logger.exception("Could not release the budget reservation for episode %s", claimed.id)

    async def _generate_and_publish(
        self,
        project: Project,
        episode: Episode,
        now: datetime,
    ) -> AttemptOutcome:
        org_id = project.organization_id
        try:
            policy = await asyncio.to_thread(self.guard.policy_for, org_id)
            spent = await asyncio.to_thread(self.ledger.episode_spend, episode.id)
            directives = await asyncio.to_thread(self.feedback.directives_for, project.id)
        except sqlite3.Error as e:
            return await self._handle_failure(episode, _storage_error(e), now)

        try:
            draft = await self.generator.generate(
                project, episode, directives, max_cost=policy.episode_ceiling - spent, now=now,
            )
        except GenerationError as e:
            if e.usage is not None:
                # Cost was incurred; the daily kill switch still applies.
                try:
                    await asyncio.to_thread(self.guard.postflight_check, org_id, episode.id, 0.0, now)
                except sqlite3.Error:
                    logger.exception("Postflight check failed for episode %s", episode.id)
            return await self._handle_failure(episode, e, now)

        try:
            postflight = await asyncio.to_thread(self.guard.postflight_check, org_id, episode.id, draft.cost, now)
            if postflight.exceeded:
                failed = await asyncio.to_thread(
                    self.episodes.fail,
                    episode.id,
                    FailureReason.BUDGET_EXCEEDED,
                    postflight.message,
                    now,
                    flagged=postflight.episode_exceeded,
                    draft=draft,
                    worker_id=self.worker_id,
                )
                return AttemptOutcome(
                    episode=failed, reason=FailureReason.BUDGET_EXCEEDED, message=postflight.message,
                )

            published = await asyncio.to_thread(self.episodes.publish, episode.id, self.worker_id, draft, now)
        except InvalidTransition as e:
            logger.error("Could not publish episode %s: %s", episode.id, e)
            return AttemptOutcome(
                episode=await asyncio.to_thread(self.episodes.get, episode.id),
                reason=FailureReason.IDEMPOTENCY_CONFLICT,
                message=str(e),
            )
        except sqlite3.Error as e:
            return await self._handle_failure(episode, _storage_error(e), now)

        await self._after_publish(project, published, draft, now)
        return AttemptOutcome(episode=published, published=True)

    async def _after_publish(self, project: Project, episode: Episode, draft: EpisodeDraft, now: datetime) -> None:
        # The episode is out; each follow-up runs whether or not the others fail.
        try:
            await asyncio.to_thread(self.feedback.mark_consumed, draft.consumed_note_ids, episode, now)
        except sqlite3.Error:
            logger.exception("Could not mark feedback consumed by episode %s", episode.id)
        try:
            upcoming = await asyncio.to_thread(self.scheduler.next_open_slot, project, now)
            await asyncio.to_thread(self.projects.mark_published, project.id, now, upcoming)
        except sqlite3.Error:
            logger.exception("Could not advance the schedule of project=%s after %s", project.id, episode.id)
        self._notify(project, episode)

    async def _handle_failure(self, episode: Episode, error: GenerationError, now: datetime) -> AttemptOutcome:
        try:
            return await self._record_failure(episode, error, now)
        except InvalidTransition as e:
            logger.warning(
                "Episode %s lost its claim before the %s failure was recorded: %s",
                episode.id, error.reason.value, e,
            )
            return AttemptOutcome(
                episode=await asyncio.to_thread(self.episodes.get, episode.id),
                reason=FailureReason.IDEMPOTENCY_CONFLICT,
                message=str(e),
            )

    async def _record_failure(self, episode: Episode, error: GenerationError, now: datetime) -> AttemptOutcome:
        message = str(error)
        if not error.retryable:
            failed = await asyncio.to_thread(
                self.episodes.fail, episode.id, error.reason, message, now, worker_id=self.worker_id,
            )
            return AttemptOutcome(episode=failed, reason=error.reason, message=message)

        if episode.origin == EpisodeOrigin.MANUAL:
            next_attempt = now if episode.generation_attempts < self.config.schedule.max_attempts else None
        else:
            next_attempt = retry_at(episode.scheduled_for, episode.generation_attempts, now, self.config.schedule)

        if next_attempt is None:
            failed = await asyncio.to_thread(
                self.episodes.fail,
                episode.id,
                FailureReason.RETRIES_EXHAUSTED,
                f"{error.reason.value}: {message}",
                now,
                worker_id=self.worker_id,
            )
            return AttemptOutcome(episode=failed, reason=FailureReason.RETRIES_EXHAUSTED, message=message)

        pending = await asyncio.to_thread(
            self.episodes.schedule_retry, episode.id, self.worker_id, error.reason, message, next_attempt, now,
        )
        return AttemptOutcome(episode=pending, retry_at=next_attempt, reason=error.reason, message=message)

    def _notify(self, project: Project, episode: Episode) -> None:
        try:
            self.notifier.episode_published(project.user_id, episode.id)
        except Exception:
            logger.exception("Notification failed for episode %s; publication stands", episode.id)

    async def generate_now(
        self,
        project_id: str,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Episode:
        """Manual trigger: generate an episode outside the cadence.

        Still budget guarded. Retryable failures are retried inline up to
        the configured attempt limit. Repeating the call within the same
        minute returns the same episode.

        Raises:
            NotFoundError: If the project does not exist or belongs to
                another organization
        """
        now = now or utcnow()
        project = await asyncio.to_thread(self._project_for, project_id, organization_id)
        slot = now.replace(second=0, microsecond=0)
        episode, created = await asyncio.to_thread(
            self.episodes.get_or_create, project, slot, EpisodeOrigin.MANUAL, now,
        )
        if not created and episode.status != EpisodeStatus.PENDING:
            return episode

        logger.info("Manual generation of episode %s for project=%s", episode.id, project.id)
        while True:
            outcome = await self.run_attempt(project, episode, now, skip_if_halted=False)
            if outcome.skipped or outcome.retry_at is None:
                return outcome.episode
            episode = outcome.episode

    def episode_status(self, episode_id: str, organization_id: Optional[str] = None) -> EpisodeStatusView:
        """Lifecycle state of an episode, with the failure reason when FAILED.

        Raises:
            NotFoundError: If the episode does not exist or belongs to
                another organization
        """
        episode = self.episodes.get(episode_id)
        if organization_id is not None and episode.organization_id != organization_id:
            raise NotFoundError(f"Episode not found: {episode_id}")
        return self.episodes.status(episode_id)

    def submit_feedback(
        self,
        episode_id: str,
        user_id: str,
        rating: Optional[int] = None,
        note: Optional[str] = None,
        scope: NoteScope = NoteScope.NEXT_EPISODE,
        organization_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> FeedbackNote:
        """Record feedback on a published episode for the next run.

        Raises:
            NotFoundError: If the episode does not exist or belongs to
                another organization
            FeedbackRejected: If the episode is not PUBLISHED or the
                feedback is invalid
        """
        episode = self.episodes.get(episode_id)
        if organization_id is not None and episode.organization_id != organization_id:
            raise NotFoundError(f"Episode not found: {episode_id}")
        return self.feedback.submit(episode, user_id, rating=rating, note=note, scope=scope, now=now)

    def dismiss_feedback(self, note_id: str, organization_id: Optional[str] = None) -> FeedbackNote:
        """Withdraw a pending feedback note before an episode reads it.

        Raises:
            NotFoundError: If the note does not exist or belongs to another
                organization
            FeedbackRejected: If the note is no longer pending
        """
        return self.feedback.dismiss(note_id, organization_id)

    def daily_spend(self, organization_id: str, day: Optional[date] = None) -> DailySpend:
        return self.ledger.daily_state(organization_id, day or _utc_day(utcnow()))

    def _project_for(self, project_id: str, organization_id: Optional[str]) -> Project:
        project = self.projects.get_project(project_id)
        if organization_id is not None and project.organization_id != organization_id:
            raise NotFoundError(f"Project not found: {project_id}")
        return project
