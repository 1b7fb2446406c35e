"""
Schema management and project/organization data access.

Organizations and projects are created by the onboarding and tenancy
collaborators; the pipeline only reads them and updates scheduling
pointers and pause state.
"""

import json
import sqlite3
from datetime import datetime
from typing import List, Optional

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, get_connection
from .models import (
    Cadence,
    Organization,
    Project,
    SubscriptionTier,
    from_iso,
    to_iso,
    utcnow,
)
from ..core.errors import NotFoundError


SCHEMA = """
CREATE TABLE IF NOT EXISTS organization (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    subscription_tier TEXT NOT NULL DEFAULT 'TRIAL'
        CHECK (subscription_tier IN ('TRIAL', 'STARTER', 'GROWTH', 'ENTERPRISE')),
    daily_cost_limit REAL,
    episode_cost_limit REAL,
    entitled INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project (
    id TEXT PRIMARY KEY,
    organization_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    brief TEXT NOT NULL,
    cadence TEXT NOT NULL,
    is_paused INTEGER NOT NULL DEFAULT 0,
    last_published_at TEXT,
    next_scheduled_at TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS episode (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
    organization_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
    idempotency_key TEXT NOT NULL,
    scheduled_for TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'PENDING'
        CHECK (status IN ('PENDING', 'GENERATING', 'PUBLISHED', 'FAILED')),
    title TEXT,
    content TEXT,
    reading_minutes INTEGER,
    generation_attempts INTEGER NOT NULL DEFAULT 0,
    next_attempt_at TEXT,
    claimed_at TEXT,
    claimed_by TEXT,
    failure_reason TEXT,
    failure_message TEXT,
    generation_errors TEXT NOT NULL DEFAULT '[]',
    flagged_for_review INTEGER NOT NULL DEFAULT 0,
    cost REAL NOT NULL DEFAULT 0,
    prompt_tokens INTEGER NOT NULL DEFAULT 0,
    completion_tokens INTEGER NOT NULL DEFAULT 0,
    model TEXT,
    origin TEXT NOT NULL DEFAULT 'schedule' CHECK (origin IN ('schedule', 'manual')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    published_at TEXT,
    UNIQUE (project_id, scheduled_for),
    UNIQUE (idempotency_key)
);

CREATE INDEX IF NOT EXISTS idx_episode_status ON episode (status);

CREATE TABLE IF NOT EXISTS token_usage (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    organization_id TEXT NOT NULL REFERENCES organization(id),
    project_id TEXT REFERENCES project(id),
    episode_id TEXT REFERENCES episode(id),
    operation TEXT NOT NULL DEFAULT 'generation',
    model TEXT NOT NULL,
    provider_model TEXT,
    prompt_tokens INTEGER NOT NULL,
    completion_tokens INTEGER NOT NULL,
    total_tokens INTEGER NOT NULL,
    cost REAL NOT NULL,
    request_id TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_token_usage_org ON token_usage (organization_id, created_at);
CREATE INDEX IF NOT EXISTS idx_token_usage_episode ON token_usage (episode_id);

CREATE TRIGGER IF NOT EXISTS token_usage_no_update
BEFORE UPDATE ON token_usage
BEGIN
    SELECT RAISE(ABORT, 'token_usage is append-only');
END;

CREATE TRIGGER IF NOT EXISTS token_usage_no_delete
BEFORE DELETE ON token_usage
BEGIN
    SELECT RAISE(ABORT, 'token_usage is append-only');
END;

CREATE TABLE IF NOT EXISTS org_daily_spend (
    organization_id TEXT NOT NULL REFERENCES organization(id),
    day TEXT NOT NULL,
    total_cost REAL NOT NULL DEFAULT 0,
    total_tokens INTEGER NOT NULL DEFAULT 0,
    generation_cost REAL NOT NULL DEFAULT 0,
    chat_cost REAL NOT NULL DEFAULT 0,
    episode_count INTEGER NOT NULL DEFAULT 0,
    reserved_cost REAL NOT NULL DEFAULT 0,
    halted INTEGER NOT NULL DEFAULT 0,
    halted_reason TEXT,
    last_updated TEXT NOT NULL,
    PRIMARY KEY (organization_id, day)
);

CREATE TABLE IF NOT EXISTS feedback_note (
    id TEXT PRIMARY KEY,
    episode_id TEXT NOT NULL REFERENCES episode(id) ON DELETE CASCADE,
    project_id TEXT NOT NULL REFERENCES project(id) ON DELETE CASCADE,
    organization_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
    user_id TEXT NOT NULL,
    rating INTEGER CHECK (rating IS NULL OR rating BETWEEN 1 AND 5),
    note TEXT,
    scope TEXT NOT NULL DEFAULT 'NEXT_EPISODE' CHECK (scope IN ('NEXT_EPISODE', 'GENERAL')),
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'incorporated', 'dismissed')),
    created_at TEXT NOT NULL,
    consumed_at TEXT,
    consumed_by_episode_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_feedback_note_project ON feedback_note (project_id, status);
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all pipeline tables if they don't exist.

    ``token_usage`` is an append-only ledger: triggers abort any UPDATE or
    DELETE against it.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def _row_to_organization(row: sqlite3.Row) -> Organization:
    return Organization(
        id=row["id"],
        name=row["name"],
        subscription_tier=SubscriptionTier(row["subscription_tier"]),
        daily_cost_limit=row["daily_cost_limit"],
        episode_cost_limit=row["episode_cost_limit"],
        entitled=bool(row["entitled"]),
    )


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        organization_id=row["organization_id"],
        user_id=row["user_id"],
        title=row["title"],
        brief=json.loads(row["brief"]),
        cadence=Cadence.from_json(row["cadence"]),
        is_paused=bool(row["is_paused"]),
        last_published_at=from_iso(row["last_published_at"]),
        next_scheduled_at=from_iso(row["next_scheduled_at"]),
    )


class ProjectRepository:
    """Repository for organizations and their projects."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, self.timeout)

    def add_organization(self, organization: Organization) -> Organization:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO organization
                (id, name, subscription_tier, daily_cost_limit, episode_cost_limit,
                 entitled, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                organization.id,
                organization.name,
                organization.subscription_tier.value,
                organization.daily_cost_limit,
                organization.episode_cost_limit,
                int(organization.entitled),
                to_iso(utcnow()),
            ))
            conn.commit()
        finally:
            conn.close()
        return organization

    def get_organization(self, organization_id: str) -> Organization:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = ?", (organization_id,)
            ).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Organization not found: {organization_id}")
        return _row_to_organization(row)

    def set_entitlement(self, organization_id: str, entitled: bool) -> None:
        """Mirror the billing service's entitlement flag."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                "UPDATE organization SET entitled = ? WHERE id = ?",
                (int(entitled), organization_id),
            )
            updated = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        if updated == 0:
            raise NotFoundError(f"Organization not found: {organization_id}")

    def add_project(self, project: Project) -> Project:
        conn = self._connect()
        try:
            conn.execute("""
                INSERT INTO project
                (id, organization_id, user_id, title, brief, cadence, is_paused,
                 last_published_at, next_scheduled_at, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                project.id,
                project.organization_id,
                project.user_id,
                project.title,
                json.dumps(project.brief),
                project.cadence.to_json(),
                int(project.is_paused),
                to_iso(project.last_published_at),
                to_iso(project.next_scheduled_at),
                to_iso(utcnow()),
            ))
            conn.commit()
        finally:
            conn.close()
        return project

    def get_project(self, project_id: str) -> Project:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM project WHERE id = ?", (project_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            raise NotFoundError(f"Project not found: {project_id}")
        return _row_to_project(row)

    def schedulable_projects(self) -> List[Project]:
        """Unpaused projects whose organization is entitled to generation."""
        conn = self._connect()
        try:
            rows = conn.execute("""
                SELECT p.* FROM project p
                JOIN organization o ON o.id = p.organization_id
                WHERE p.is_paused = 0 AND o.entitled = 1
                ORDER BY p.id
            """).fetchall()
        finally:
            conn.close()
        return [_row_to_project(row) for row in rows]

    def set_paused(self, project_id: str, paused: bool) -> None:
        self._update(project_id, "is_paused = ?", (int(paused),))

    def mark_published(self, project_id: str, published_at: datetime, next_scheduled_at: Optional[datetime]) -> None:
        self._update(
            project_id,
            "last_published_at = ?, next_scheduled_at = ?",
            (to_iso(published_at), to_iso(next_scheduled_at)),
        )

    def advance_schedule(self, project_id: str, next_scheduled_at: Optional[datetime]) -> None:
        self._update(project_id, "next_scheduled_at = ?", (to_iso(next_scheduled_at),))

    def _update(self, project_id: str, assignments: str, params: tuple) -> None:
        conn = self._connect()
        try:
            cursor = conn.execute(
                f"UPDATE project SET {assignments} WHERE id = ?",
                params + (project_id,),
            )
            updated = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        if updated == 0:
            raise NotFoundError(f"Project not found: {project_id}")
