"""
Data models for storage layer.

Defines database entities and data structures.
"""

import json
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional


class SubscriptionTier(Enum):
    TRIAL = "TRIAL"
    STARTER = "STARTER"
    GROWTH = "GROWTH"
    ENTERPRISE = "ENTERPRISE"


class EpisodeStatus(Enum):
    """Lifecycle states of an episode."""
    PENDING = "PENDING"
    GENERATING = "GENERATING"
    PUBLISHED = "PUBLISHED"
    FAILED = "FAILED"

    @property
    def terminal(self) -> bool:
        return self in (EpisodeStatus.PUBLISHED, EpisodeStatus.FAILED)


# GENERATING -> PENDING is the retry path; PENDING -> FAILED covers window
# expiry and budget denial before any content was produced.
ALLOWED_TRANSITIONS: Dict[EpisodeStatus, FrozenSet[EpisodeStatus]] = {
    EpisodeStatus.PENDING: frozenset({EpisodeStatus.GENERATING, EpisodeStatus.FAILED}),
    EpisodeStatus.GENERATING: frozenset({
        EpisodeStatus.PENDING,
        EpisodeStatus.PUBLISHED,
        EpisodeStatus.FAILED,
    }),
    EpisodeStatus.PUBLISHED: frozenset(),
    EpisodeStatus.FAILED: frozenset(),
}


def can_transition(current: EpisodeStatus, target: EpisodeStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class EpisodeOrigin(Enum):
    """What created the episode row."""
    SCHEDULE = "schedule"
    MANUAL = "manual"


class NoteScope(Enum):
    NEXT_EPISODE = "NEXT_EPISODE"
    GENERAL = "GENERAL"


class NoteStatus(Enum):
    PENDING = "pending"
    INCORPORATED = "incorporated"
    DISMISSED = "dismissed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(value: Optional[datetime]) -> Optional[str]:
    """Serialize an aware datetime as UTC ISO-8601 text."""
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError("naive datetimes are not stored; attach a timezone")
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class Organization:
    """Tenant boundary; owns projects and aggregates daily spend."""
    id: str
    name: str
    subscription_tier: SubscriptionTier = SubscriptionTier.TRIAL
    daily_cost_limit: Optional[float] = None
    episode_cost_limit: Optional[float] = None
    entitled: bool = True


@dataclass(frozen=True)
class Cadence:
    """Recurring delivery schedule: weekdays (Monday=0) at a local time."""
    days: FrozenSet[int]
    delivery_time: time
    timezone: str = "Europe/London"

    def __post_init__(self):
        if not self.days:
            raise ValueError("cadence needs at least one weekday")
        if any(day not in range(7) for day in self.days):
            raise ValueError("cadence days must be between 0 (Monday) and 6 (Sunday)")

    def to_json(self) -> str:
        return json.dumps({
            "days": sorted(self.days),
            "delivery_time": self.delivery_time.strftime("%H:%M"),
            "timezone": self.timezone,
        })

    @classmethod
    def from_json(cls, raw: str) -> "Cadence":
        data = json.loads(raw)
        return cls(
            days=frozenset(int(day) for day in data["days"]),
            delivery_time=time.fromisoformat(data["delivery_time"]),
            timezone=data.get("timezone", "Europe/London"),
        )


@dataclass(frozen=True)
class Project:
    """A standing subscription to periodic episodes."""
    id: str
    organization_id: str
    user_id: str
    title: str
    brief: Dict[str, Any]
    cadence: Cadence
    is_paused: bool = False
    last_published_at: Optional[datetime] = None
    next_scheduled_at: Optional[datetime] = None


@dataclass(frozen=True)
class Episode:
    """One generated artifact for a project's scheduled slot."""
    id: str
    project_id: str
    organization_id: str
    idempotency_key: str
    scheduled_for: datetime
    sequence: int
    status: EpisodeStatus
    generation_attempts: int = 0
    title: Optional[str] = None
    content: Optional[str] = None
    reading_minutes: Optional[int] = None
    next_attempt_at: Optional[datetime] = None
    claimed_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    failure_reason: Optional[str] = None
    failure_message: Optional[str] = None
    generation_errors: List[Dict[str, Any]] = field(default_factory=list)
    flagged_for_review: bool = False
    cost: float = 0.0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    model: Optional[str] = None
    published_at: Optional[datetime] = None
    origin: EpisodeOrigin = EpisodeOrigin.SCHEDULE


@dataclass(frozen=True)
class EpisodeDraft:
    """Generated content plus the usage it cost, ready to publish.

    The body is an opaque markdown payload; the pipeline never inspects
    its structure beyond the title and length.
    """
    title: str
    content: str
    reading_minutes: int
    model: str
    prompt_tokens: int
    completion_tokens: int
    cost: float
    request_id: Optional[str] = None
    consumed_note_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class EpisodeStatusView:
    """What ``GET episode-status`` returns."""
    episode_id: str
    project_id: str
    status: EpisodeStatus
    scheduled_for: datetime
    generation_attempts: int
    failure_reason: Optional[str] = None
    published_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "episode_id": self.episode_id,
            "project_id": self.project_id,
            "status": self.status.value,
            "scheduled_for": to_iso(self.scheduled_for),
            "generation_attempts": self.generation_attempts,
            "failure_reason": self.failure_reason,
            "published_at": to_iso(self.published_at),
        }


@dataclass(frozen=True)
class TokenUsageRecord:
    """Immutable record of LLM usage for financial tracking.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.

    ``model`` is the model the call was priced at; ``provider_model`` is
    the identifier the provider reported back, when it reported one.
    """
    id: int
    organization_id: str
    project_id: Optional[str]
    episode_id: Optional[str]
    operation: str
    model: str
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    cost: float
    created_at: datetime
    request_id: Optional[str] = None
    provider_model: Optional[str] = None


@dataclass(frozen=True)
class DailySpend:
    """Materialized spend of one organization on one UTC day."""
    organization_id: str
    day: date
    total_cost: float = 0.0
    total_tokens: int = 0
    generation_cost: float = 0.0
    chat_cost: float = 0.0
    episode_count: int = 0
    reserved_cost: float = 0.0
    halted: bool = False
    halted_reason: Optional[str] = None

    @property
    def committed_cost(self) -> float:
        """Recorded spend plus spend reserved by in-flight calls."""
        return self.total_cost + self.reserved_cost


@dataclass(frozen=True)
class FeedbackNote:
    """User rating and/or note submitted against a published episode."""
    id: str
    episode_id: str
    project_id: str
    organization_id: str
    user_id: str
    scope: NoteScope
    status: NoteStatus
    created_at: datetime
    rating: Optional[int] = None
    note: Optional[str] = None
    consumed_at: Optional[datetime] = None
    consumed_by_episode_id: Optional[str] = None
