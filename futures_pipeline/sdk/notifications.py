"""
Notification dispatch for published episodes.

Fire-and-forget from the pipeline's point of view: a failed notification
is logged and never rolls back publication.
"""

import logging
from typing import List, Protocol, Tuple

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def episode_published(self, user_id: str, episode_id: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier: records the event in the log."""

    def episode_published(self, user_id: str, episode_id: str) -> None:
        logger.info("Episode %s published for user %s", episode_id, user_id)


class RecordingNotifier:
    """Keeps notifications in memory; useful for local runs and tests."""

    def __init__(self):
        self.sent: List[Tuple[str, str]] = []

    def episode_published(self, user_id: str, episode_id: str) -> None:
        self.sent.append((user_id, episode_id))
