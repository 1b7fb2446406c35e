"""
Feedback aggregation.

Turns a project's unconsumed feedback notes into short weighted
directives for the next generation run. Feedback only influences the next
cycle; a published episode is never regenerated because of it.

Weighting:
- Scope: NEXT_EPISODE notes weigh 1.0, GENERAL notes 0.5
- Intensity: ratings further from neutral (3) push harder, from 0.5 at
  a neutral rating to 1.0 at either extreme; a note without a rating
  counts at full intensity
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple

from .errors import FeedbackRejected, InvalidFeedback, NotFoundError
from ..storage.feedback import FeedbackRepository
from ..storage.models import Episode, EpisodeStatus, FeedbackNote, NoteScope

logger = logging.getLogger(__name__)

MAX_NOTE_LENGTH = 2000
NEUTRAL_RATING = 3
RATING_RANGE = (1, 5)

SCOPE_WEIGHTS = {
    NoteScope.NEXT_EPISODE: 1.0,
    NoteScope.GENERAL: 0.5,
}


@dataclass(frozen=True)
class FeedbackDirective:
    """One distilled instruction and the notes it came from."""
    note_ids: Tuple[str, ...]
    text: str
    weight: float


def _intensity(rating: Optional[int]) -> float:
    if rating is None:
        return 1.0
    return 0.5 + abs(rating - NEUTRAL_RATING) / 4


def _directive_text(note: FeedbackNote) -> str:
    prefix = "Keep" if note.rating is not None and note.rating > NEUTRAL_RATING else "Change"
    if note.note:
        body = note.note
        if note.rating is not None:
            body = f"{body} (rated {note.rating}/5)"
    else:
        body = f"the reader rated a previous episode {note.rating}/5"
    return f"{prefix}: {body}"


def build_directives(notes: Sequence[FeedbackNote]) -> List[FeedbackDirective]:
    """Convert feedback notes into directives, strongest first.

    Args:
        notes: Unconsumed notes of one project

    Returns:
        Directives ordered by weight (descending), then note age
    """
    ranked = []
    for position, note in enumerate(notes):
        weight = round(SCOPE_WEIGHTS[note.scope] * _intensity(note.rating), 3)
        ranked.append((-weight, position, FeedbackDirective(
            note_ids=(note.id,),
            text=_directive_text(note),
            weight=weight,
        )))
    ranked.sort(key=lambda item: (item[0], item[1]))
    return [directive for _, _, directive in ranked]


def consumed_note_ids(directives: Sequence[FeedbackDirective]) -> List[str]:
    ids = []
    for directive in directives:
        ids.extend(directive.note_ids)
    return ids


class FeedbackAggregator:
    """Reads, records and consumes feedback for projects."""

    def __init__(self, repository: FeedbackRepository):
        self.repository = repository

    def directives_for(self, project_id: str) -> List[FeedbackDirective]:
        return build_directives(self.repository.unconsumed_for_project(project_id))

    def mark_consumed(self, note_ids: Sequence[str], episode: Episode, now: Optional[datetime] = None) -> int:
        """Mark notes incorporated once the episode that read them is published.

        Raises:
            ValueError: If the episode has not been published
        """
        if episode.status != EpisodeStatus.PUBLISHED:
            raise ValueError(
                f"feedback can only be consumed by a published episode, "
                f"episode {episode.id} is {episode.status.value}"
            )
        consumed = self.repository.mark_consumed(note_ids, episode.id, now)
        logger.info("Episode %s incorporated %d feedback note(s)", episode.id, consumed)
        return consumed

    def submit(
        self,
        episode: Episode,
        user_id: str,
        rating: Optional[int] = None,
        note: Optional[str] = None,
        scope: NoteScope = NoteScope.NEXT_EPISODE,
        now: Optional[datetime] = None,
    ) -> FeedbackNote:
        """Record a rating and/or note against a published episode.

        Raises:
            FeedbackRejected: If the episode is not PUBLISHED
            InvalidFeedback: If the rating is out of range or neither a
                rating nor a note was given
        """
        if episode.status != EpisodeStatus.PUBLISHED:
            raise FeedbackRejected(
                f"Episode {episode.id} is {episode.status.value}; feedback requires PUBLISHED"
            )
        if rating is not None:
            if isinstance(rating, bool) or not isinstance(rating, int):
                raise InvalidFeedback("rating must be an integer")
            low, high = RATING_RANGE
            if not low <= rating <= high:
                raise InvalidFeedback(f"rating must be between {low} and {high}")
        if note is not None:
            note = note.strip()[:MAX_NOTE_LENGTH] or None
        if rating is None and note is None:
            raise InvalidFeedback("feedback needs a rating or a note")

        return self.repository.add_note(
            episode_id=episode.id,
            project_id=episode.project_id,
            organization_id=episode.organization_id,
            user_id=user_id,
            rating=rating,
            note=note,
            scope=scope,
            now=now,
        )

    def dismiss(self, note_id: str, organization_id: Optional[str] = None) -> FeedbackNote:
        """Withdraw a pending note so no future episode reads it.

        Raises:
            NotFoundError: If the note does not exist or belongs to another
                organization
            FeedbackRejected: If the note was already incorporated or
                dismissed
        """
        existing = self.repository.get(note_id)
        if existing is None or (organization_id is not None and existing.organization_id != organization_id):
            raise NotFoundError(f"Feedback note not found: {note_id}")
        if not self.repository.dismiss(note_id):
            current = self.repository.get(note_id)
            raise FeedbackRejected(f"Feedback note {note_id} is {current.status.value} and cannot be dismissed")
        logger.info("Dismissed feedback note %s for project=%s", note_id, existing.project_id)
        return self.repository.get(note_id)
