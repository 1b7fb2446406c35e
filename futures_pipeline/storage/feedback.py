"""
Feedback note persistence.

Notes stay ``pending`` until an episode that read them is published; only
then are they marked ``incorporated``. A failed run leaves them pending
for the next attempt.
"""

import sqlite3
import uuid
from datetime import datetime
from typing import List, Optional, Sequence

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, get_connection, write_transaction
from .models import FeedbackNote, NoteScope, NoteStatus, from_iso, to_iso, utcnow


def _row_to_note(row: sqlite3.Row) -> FeedbackNote:
    return FeedbackNote(
        id=row["id"],
        episode_id=row["episode_id"],
        project_id=row["project_id"],
        organization_id=row["organization_id"],
        user_id=row["user_id"],
        scope=NoteScope(row["scope"]),
        status=NoteStatus(row["status"]),
        created_at=from_iso(row["created_at"]),
        rating=row["rating"],
        note=row["note"],
        consumed_at=from_iso(row["consumed_at"]),
        consumed_by_episode_id=row["consumed_by_episode_id"],
    )


class FeedbackRepository:
    """Repository for feedback notes."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, self.timeout)

    def add_note(
        self,
        episode_id: str,
        project_id: str,
        organization_id: str,
        user_id: str,
        rating: Optional[int] = None,
        note: Optional[str] = None,
        scope: NoteScope = NoteScope.NEXT_EPISODE,
        now: Optional[datetime] = None,
    ) -> FeedbackNote:
        created = FeedbackNote(
            id=str(uuid.uuid4()),
            episode_id=episode_id,
            project_id=project_id,
            organization_id=organization_id,
            user_id=user_id,
            scope=scope,
            status=NoteStatus.PENDING,
            created_at=now or utcnow(),
            rating=rating,
            note=note,
        )
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO feedback_note
                (id, episode_id, project_id, organization_id, user_id, rating, note,
                 scope, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                created.id,
                created.episode_id,
                created.project_id,
                created.organization_id,
                created.user_id,
                created.rating,
                created.note,
                created.scope.value,
                created.status.value,
                to_iso(created.created_at),
            ))
            conn.commit()
        finally:
            conn.close()
        return created

    def get(self, note_id: str) -> Optional[FeedbackNote]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM feedback_note WHERE id = ?", (note_id,)).fetchone()
        finally:
            conn.close()
        return _row_to_note(row) if row is not None else None

    def unconsumed_for_project(self, project_id: str) -> List[FeedbackNote]:
        """Pending notes of a project, oldest first."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT * FROM feedback_note
                WHERE project_id = ? AND status = 'pending'
                ORDER BY created_at, id
            """, (project_id,)).fetchall()
        finally:
            conn.close()
        return [_row_to_note(row) for row in rows]

    def mark_consumed(self, note_ids: Sequence[str], episode_id: str, now: Optional[datetime] = None) -> int:
        """Mark pending notes as incorporated by ``episode_id``.

        Notes that are no longer pending are left untouched, so a note is
        never consumed twice.

        Returns:
            Number of notes updated
        """
        if not note_ids:
            return 0
        now_iso = to_iso(now or utcnow())
        updated = 0
        with write_transaction(self.db_path, self.timeout) as conn:
            for note_id in note_ids:
                cursor = conn.execute("""
                    UPDATE feedback_note
                    SET status = 'incorporated', consumed_at = ?, consumed_by_episode_id = ?
                    WHERE id = ? AND status = 'pending'
                """, (now_iso, episode_id, note_id))
                updated += cursor.rowcount
        return updated

    def dismiss(self, note_id: str) -> bool:
        conn = self._connect()
        try:
            cursor = conn.execute(
                "UPDATE feedback_note SET status = 'dismissed' WHERE id = ? AND status = 'pending'",
                (note_id,),
            )
            dismissed = cursor.rowcount == 1
            conn.commit()
        finally:
            conn.close()
        return dismissed
