"""
Episode store: lifecycle persistence with per-slot idempotency.

State machine::

    PENDING -> GENERATING -> PUBLISHED
                          -> FAILED
               GENERATING -> PENDING   (retry path, attempts already counted)
    PENDING -> FAILED                  (window closed or budget denied)

Every transition is checked against ``ALLOWED_TRANSITIONS`` and applied as
one conditional UPDATE guarded by the current status and, while
GENERATING, by the worker holding the claim. Concurrent scheduler ticks
race on the database rather than on a read-then-write in Python, and a
worker whose claim was released cannot touch the slot again. Exactly one
row exists per ``(project_id, scheduled_for)``; retries reuse it.
"""

import json
import logging
import sqlite3
import uuid
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, get_connection, write_transaction
from .models import (
    Episode,
    EpisodeDraft,
    EpisodeOrigin,
    EpisodeStatus,
    EpisodeStatusView,
    Project,
    can_transition,
    from_iso,
    to_iso,
    utcnow,
)
from ..core.errors import FailureReason, InvalidTransition, NotFoundError

logger = logging.getLogger(__name__)


def idempotency_key(project_id: str, slot: datetime) -> str:
    return f"{project_id}:{to_iso(slot)}"


def _row_to_episode(row: sqlite3.Row) -> Episode:
    return Episode(
        id=row["id"],
        project_id=row["project_id"],
        organization_id=row["organization_id"],
        idempotency_key=row["idempotency_key"],
        scheduled_for=from_iso(row["scheduled_for"]),
        sequence=row["sequence"],
        status=EpisodeStatus(row["status"]),
        generation_attempts=row["generation_attempts"],
        title=row["title"],
        content=row["content"],
        reading_minutes=row["reading_minutes"],
        next_attempt_at=from_iso(row["next_attempt_at"]),
        claimed_at=from_iso(row["claimed_at"]),
        claimed_by=row["claimed_by"],
        failure_reason=row["failure_reason"],
        failure_message=row["failure_message"],
        generation_errors=json.loads(row["generation_errors"]),
        flagged_for_review=bool(row["flagged_for_review"]),
        cost=row["cost"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        model=row["model"],
        published_at=from_iso(row["published_at"]),
        origin=EpisodeOrigin(row["origin"]),
    )


def slot_is_open(episode: Optional[Episode], now: datetime) -> bool:
    """Whether a slot still needs a generation attempt right now.

    True when no episode exists yet, or when the episode is PENDING and
    its retry time has arrived. GENERATING, PUBLISHED and FAILED slots
    are closed.
    """
    if episode is None:
        return True
    if episode.status != EpisodeStatus.PENDING:
        return False
    return episode.next_attempt_at is None or episode.next_attempt_at <= now


def _error_entry(attempt: int, reason: FailureReason, message: str, now: datetime) -> dict:
    return {
        "attempt": attempt,
        "reason": reason.value,
        "message": message,
        "at": to_iso(now),
    }


class EpisodeStore:
    """Persists episodes through PENDING, GENERATING, PUBLISHED and FAILED."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, self.timeout)

    def get_or_create(
        self,
        project: Project,
        slot: datetime,
        origin: EpisodeOrigin = EpisodeOrigin.SCHEDULE,
        now: Optional[datetime] = None,
    ) -> Tuple[Episode, bool]:
        """Return the episode for ``(project, slot)``, creating it as PENDING.

        Returns:
            (episode, created)
        """
        now = now or utcnow()
        slot_iso = to_iso(slot)
        with write_transaction(self.db_path, self.timeout) as conn:
            row = conn.execute(
                "SELECT * FROM episode WHERE project_id = ? AND scheduled_for = ?",
                (project.id, slot_iso),
            ).fetchone()
            if row is not None:
                return _row_to_episode(row), False

            sequence = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 FROM episode WHERE project_id = ?",
                (project.id,),
            ).fetchone()[0]
            episode_id = str(uuid.uuid4())
            conn.execute("""
                INSERT INTO episode
                (id, project_id, organization_id, idempotency_key, scheduled_for,
                 sequence, status, origin, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                episode_id,
                project.id,
                project.organization_id,
                idempotency_key(project.id, slot),
                slot_iso,
                sequence,
                EpisodeStatus.PENDING.value,
                origin.value,
                to_iso(now),
                to_iso(now),
            ))
            row = conn.execute("SELECT * FROM episode WHERE id = ?", (episode_id,)).fetchone()
        logger.info("Created episode %s #%d for project=%s slot=%s", episode_id, sequence, project.id, slot_iso)
        return _row_to_episode(row), True

    def get(self, episode_id: str) -> Episode:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM episode WHERE id = ?", (episode_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Episode not found: {episode_id}")
        return _row_to_episode(row)

    def find(self, project_id: str, slot: datetime) -> Optional[Episode]:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM episode WHERE project_id = ? AND scheduled_for = ?",
                (project_id, to_iso(slot)),
            ).fetchone()
        finally:
            conn.close()
        return _row_to_episode(row) if row is not None else None

    def list_for_project(self, project_id: str) -> List[Episode]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM episode WHERE project_id = ? ORDER BY scheduled_for",
                (project_id,),
            ).fetchall()
        finally:
            conn.close()
        return [_row_to_episode(row) for row in rows]

    def status(self, episode_id: str) -> EpisodeStatusView:
        episode = self.get(episode_id)
        return EpisodeStatusView(
            episode_id=episode.id,
            project_id=episode.project_id,
            status=episode.status,
            scheduled_for=episode.scheduled_for,
            generation_attempts=episode.generation_attempts,
            failure_reason=episode.failure_reason,
            published_at=episode.published_at,
        )

    def slot_is_open(self, project_id: str, slot: datetime, now: datetime) -> bool:
        return slot_is_open(self.find(project_id, slot), now)

    def claim(self, episode_id: str, worker_id: str, now: Optional[datetime] = None) -> Optional[Episode]:
        """Atomically move a PENDING episode to GENERATING.

        Counts the attempt. Returns None when another worker holds the
        claim, the episode is no longer PENDING, or its retry time has not
        arrived.
        """
        now = now or utcnow()
        now_iso = to_iso(now)
        with write_transaction(self.db_path, self.timeout) as conn:
            cursor = conn.execute("""
                UPDATE episode
                SET status = 'GENERATING',
                    generation_attempts = generation_attempts + 1,
                    claimed_at = ?,
                    claimed_by = ?,
                    next_attempt_at = NULL,
                    updated_at = ?
                WHERE id = ?
                  AND status = 'PENDING'
                  AND (next_attempt_at IS NULL OR next_attempt_at <= ?)
            """, (now_iso, worker_id, now_iso, episode_id, now_iso))
            claimed = cursor.rowcount == 1

        if not claimed:
            logger.debug("Claim on episode %s by %s lost", episode_id, worker_id)
            return None
        return self.get(episode_id)

    def schedule_retry(
        self,
        episode_id: str,
        worker_id: str,
        reason: FailureReason,
        message: str,
        next_attempt_at: datetime,
        now: Optional[datetime] = None,
    ) -> Episode:
        """Retry path: GENERATING back to PENDING, not before ``next_attempt_at``.

        Raises:
            InvalidTransition: If the episode is not GENERATING under
                ``worker_id``'s claim
        """
        now = now or utcnow()
        with write_transaction(self.db_path, self.timeout) as conn:
            row = self._require_transition(conn, episode_id, EpisodeStatus.PENDING, worker_id)
            errors = json.loads(row["generation_errors"])
            errors.append(_error_entry(row["generation_attempts"], reason, message, now))
            conn.execute("""
                UPDATE episode
                SET status = 'PENDING',
                    next_attempt_at = ?,
                    claimed_at = NULL,
                    claimed_by = NULL,
                    generation_errors = ?,
                    updated_at = ?
                WHERE id = ? AND status = 'GENERATING' AND claimed_by = ?
            """, (to_iso(next_attempt_at), json.dumps(errors), to_iso(now), episode_id, worker_id))
        logger.info(
            "Episode %s attempt %d failed (%s); retry at %s",
            episode_id, row["generation_attempts"], reason.value, to_iso(next_attempt_at),
        )
        return self.get(episode_id)

    def publish(
        self,
        episode_id: str,
        worker_id: str,
        draft: EpisodeDraft,
        now: Optional[datetime] = None,
    ) -> Episode:
        """GENERATING to PUBLISHED.

        Refused unless the cost ledger already holds usage for the episode.

        Raises:
            InvalidTransition: If the episode is not GENERATING under
                ``worker_id``'s claim, or has no recorded usage
        """
        now = now or utcnow()
        with write_transaction(self.db_path, self.timeout) as conn:
            cursor = conn.execute("""
                UPDATE episode
                SET status = 'PUBLISHED',
                    title = ?,
                    content = ?,
                    reading_minutes = ?,
                    cost = ?,
                    prompt_tokens = ?,
                    completion_tokens = ?,
                    model = ?,
                    failure_reason = NULL,
                    failure_message = NULL,
                    published_at = ?,
                    updated_at = ?
                WHERE id = ?
                  AND status = 'GENERATING'
                  AND claimed_by = ?
                  AND EXISTS (SELECT 1 FROM token_usage WHERE episode_id = ?)
            """, (
                draft.title,
                draft.content,
                draft.reading_minutes,
                draft.cost,
                draft.prompt_tokens,
                draft.completion_tokens,
                draft.model,
                to_iso(now),
                to_iso(now),
                episode_id,
                worker_id,
                episode_id,
            ))
            if cursor.rowcount != 1:
                self._require_transition(conn, episode_id, EpisodeStatus.PUBLISHED, worker_id)
                raise InvalidTransition(
                    f"Episode {episode_id} has no recorded usage and cannot be published"
                )
        logger.info("Published episode %s (cost %.4f)", episode_id, draft.cost)
        return self.get(episode_id)

    def fail(
        self,
        episode_id: str,
        reason: FailureReason,
        message: str,
        now: Optional[datetime] = None,
        flagged: bool = False,
        draft: Optional[EpisodeDraft] = None,
        worker_id: Optional[str] = None,
    ) -> Episode:
        """Move a PENDING or GENERATING episode to FAILED.

        ``draft`` keeps the cost summary (and the content, for review) of a
        call that completed but breached a budget ceiling. When
        ``worker_id`` is given, a GENERATING episode must be held by it.
        """
        now = now or utcnow()
        with write_transaction(self.db_path, self.timeout) as conn:
            row = self._require_transition(conn, episode_id, EpisodeStatus.FAILED, worker_id)

            errors = json.loads(row["generation_errors"])
            errors.append(_error_entry(row["generation_attempts"], reason, message, now))
            params = [
                reason.value,
                message,
                json.dumps(errors),
                int(flagged or row["flagged_for_review"]),
                to_iso(now),
            ]
            assignments = """
                status = 'FAILED',
                failure_reason = ?,
                failure_message = ?,
                generation_errors = ?,
                flagged_for_review = ?,
                claimed_at = NULL,
                claimed_by = NULL,
                next_attempt_at = NULL,
                updated_at = ?
            """
            if draft is not None:
                assignments += """,
                title = ?, content = ?, reading_minutes = ?, cost = ?,
                prompt_tokens = ?, completion_tokens = ?, model = ?
                """
                params += [
                    draft.title,
                    draft.content,
                    draft.reading_minutes,
                    draft.cost,
                    draft.prompt_tokens,
                    draft.completion_tokens,
                    draft.model,
                ]
            conn.execute(
                f"UPDATE episode SET {assignments} WHERE id = ? AND status = ? AND claimed_by IS ?",
                params + [episode_id, row["status"], row["claimed_by"]],
            )
        logger.error("Episode %s failed: %s (%s)", episode_id, reason.value, message)
        return self.get(episode_id)

    def release_stale_claims(
        self,
        cutoff: datetime,
        max_attempts: int,
        now: Optional[datetime] = None,
    ) -> List[Episode]:
        """Recover episodes whose worker vanished while GENERATING.

        Claims older than ``cutoff`` go back to PENDING through the retry
        path, or to FAILED when no attempts remain. Manual episodes are
        never rescheduled, so their stale claims fail outright. Each release
        is made against the claim that was observed, so a slot re-claimed
        in the meantime is left alone.
        """
        now = now or utcnow()
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT id, generation_attempts, origin, claimed_by FROM episode
                WHERE status = 'GENERATING' AND claimed_at < ?
            """, (to_iso(cutoff),)).fetchall()
        finally:
            conn.close()

        released = []
        for row in rows:
            message = "generation claim expired without a result"
            exhausted = (
                row["generation_attempts"] >= max_attempts
                or row["origin"] == EpisodeOrigin.MANUAL.value
            )
            try:
                if exhausted:
                    released.append(self.fail(
                        row["id"], FailureReason.RETRIES_EXHAUSTED, message, now, worker_id=row["claimed_by"],
                    ))
                else:
                    released.append(self.schedule_retry(
                        row["id"], row["claimed_by"], FailureReason.TIMEOUT, message, now, now,
                    ))
            except InvalidTransition:
                # Finished or re-claimed between the scan and the update.
                continue
        return released

    def expire_overdue(self, now: datetime, safety_margin: timedelta) -> List[Episode]:
        """Fail scheduled PENDING episodes whose generation window has closed."""
        cutoff = now + safety_margin
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT id FROM episode
                WHERE status = 'PENDING' AND origin = 'schedule' AND scheduled_for <= ?
            """, (to_iso(cutoff),)).fetchall()
        finally:
            conn.close()

        expired = []
        for row in rows:
            try:
                expired.append(self.fail(
                    row["id"],
                    FailureReason.RETRIES_EXHAUSTED,
                    "generation window closed before a successful attempt",
                    now,
                ))
            except InvalidTransition:
                continue
        return expired

    @staticmethod
    def _require_transition(
        conn: sqlite3.Connection,
        episode_id: str,
        target: EpisodeStatus,
        worker_id: Optional[str] = None,
    ) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM episode WHERE id = ?", (episode_id,)).fetchone()
        if row is None:
            raise NotFoundError(f"Episode not found: {episode_id}")
        current = EpisodeStatus(row["status"])
        if current.terminal:
            raise InvalidTransition(f"Episode {episode_id} is already {current.value}")
        if not can_transition(current, target):
            raise InvalidTransition(
                f"Episode {episode_id} is {current.value} and cannot move to {target.value}"
            )
        if current == EpisodeStatus.GENERATING and worker_id is not None and row["claimed_by"] != worker_id:
            raise InvalidTransition(
                f"Episode {episode_id} is claimed by {row['claimed_by']}, not {worker_id}"
            )
        return row
