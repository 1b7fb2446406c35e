"""
Cost ledger: append-only token usage records and daily spend aggregates.

Every provider call that incurs cost is written here before any content it
produced is delivered. The per-organization daily aggregate is maintained
in the same transaction as the usage insert, so reads of the aggregate are
always consistent with the last committed usage write.
"""

import logging
import sqlite3
from datetime import date, datetime, timezone
from typing import Callable, List, Optional, Tuple

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, get_connection, write_transaction
from .models import DailySpend, TokenUsageRecord, from_iso, to_iso, utcnow
from ..core.errors import LedgerWriteError
from ..core.pricing import PRICING_TABLE, PricingTable, calculate_cost
from ..core.token_counter import TokenUsage

logger = logging.getLogger(__name__)

OPERATIONS = ("generation", "chat")


def _day_key(value: date) -> str:
    return value.isoformat()


def _ensure_daily_row(conn: sqlite3.Connection, organization_id: str, day: date) -> None:
    conn.execute("""
        INSERT OR IGNORE INTO org_daily_spend (organization_id, day, last_updated)
        VALUES (?, ?, ?)
    """, (organization_id, _day_key(day), to_iso(utcnow())))


def _read_daily(conn: sqlite3.Connection, organization_id: str, day: date) -> DailySpend:
    row = conn.execute("""
        SELECT total_cost, total_tokens, generation_cost, chat_cost, episode_count,
               reserved_cost, halted, halted_reason
        FROM org_daily_spend
        WHERE organization_id = ? AND day = ?
    """, (organization_id, _day_key(day))).fetchone()
    if row is None:
        return DailySpend(organization_id=organization_id, day=day)
    return DailySpend(
        organization_id=organization_id,
        day=day,
        total_cost=row["total_cost"],
        total_tokens=row["total_tokens"],
        generation_cost=row["generation_cost"],
        chat_cost=row["chat_cost"],
        episode_count=row["episode_count"],
        reserved_cost=row["reserved_cost"],
        halted=bool(row["halted"]),
        halted_reason=row["halted_reason"],
    )


def _row_to_record(row: sqlite3.Row) -> TokenUsageRecord:
    return TokenUsageRecord(
        id=row["id"],
        organization_id=row["organization_id"],
        project_id=row["project_id"],
        episode_id=row["episode_id"],
        operation=row["operation"],
        model=row["model"],
        prompt_tokens=row["prompt_tokens"],
        completion_tokens=row["completion_tokens"],
        total_tokens=row["total_tokens"],
        cost=row["cost"],
        created_at=from_iso(row["created_at"]),
        request_id=row["request_id"],
        provider_model=row["provider_model"],
    )


class CostLedger:
    """Durable store of per-call token and cost records."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        pricing: PricingTable = PRICING_TABLE,
    ):
        self.db_path = db_path
        self.timeout = timeout
        self.pricing = pricing

    def record_usage(
        self,
        organization_id: str,
        project_id: Optional[str],
        episode_id: Optional[str],
        prompt_tokens: int,
        completion_tokens: int,
        model: str,
        operation: str = "generation",
        request_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
        provider_model: Optional[str] = None,
    ) -> TokenUsageRecord:
        """Append a usage record and bump the organization's daily aggregate.

        Both writes commit together or not at all. Failures are loud: the
        caller must treat the generation attempt as failed. Cost is always
        priced at ``model``; ``provider_model`` is kept for audit only.

        Raises:
            ValueError: If token counts are negative, the model is unknown
                or the operation is not recognised
            LedgerWriteError: If the durable write fails
        """
        if not organization_id:
            raise ValueError("organization_id is required")
        if operation not in OPERATIONS:
            raise ValueError(f"operation must be one of: {OPERATIONS}")

        usage = TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
        cost = calculate_cost(model, usage, self.pricing)
        created_at = timestamp or utcnow()
        if created_at.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        day = created_at.astimezone(timezone.utc).date()

        try:
            with write_transaction(self.db_path, self.timeout) as conn:
                first_for_episode = episode_id is not None and conn.execute(
                    "SELECT 1 FROM token_usage WHERE episode_id = ? LIMIT 1", (episode_id,)
                ).fetchone() is None

                cursor = conn.execute("""
                    INSERT INTO token_usage
                    (organization_id, project_id, episode_id, operation, model, provider_model,
                     prompt_tokens, completion_tokens, total_tokens, cost,
                     request_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    organization_id,
                    project_id,
                    episode_id,
                    operation,
                    model,
                    provider_model,
                    usage.prompt_tokens,
                    usage.completion_tokens,
                    usage.total_tokens,
                    cost,
                    request_id,
                    to_iso(created_at),
                ))
                record_id = cursor.lastrowid

                conn.execute("""
                    INSERT INTO org_daily_spend
                    (organization_id, day, total_cost, total_tokens, generation_cost,
                     chat_cost, episode_count, last_updated)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT (organization_id, day) DO UPDATE SET
                        total_cost = ROUND(total_cost + excluded.total_cost, 4),
                        total_tokens = total_tokens + excluded.total_tokens,
                        generation_cost = ROUND(generation_cost + excluded.generation_cost, 4),
                        chat_cost = ROUND(chat_cost + excluded.chat_cost, 4),
                        episode_count = episode_count + excluded.episode_count,
                        last_updated = excluded.last_updated
                """, (
                    organization_id,
                    _day_key(day),
                    cost,
                    usage.total_tokens,
                    cost if operation == "generation" else 0.0,
                    cost if operation == "chat" else 0.0,
                    1 if first_for_episode else 0,
                    to_iso(utcnow()),
                ))
        except sqlite3.Error as e:
            logger.error(
                "Usage write failed for org=%s episode=%s (%s tokens, %.4f): %s",
                organization_id, episode_id, usage.total_tokens, cost, e,
            )
            raise LedgerWriteError(f"Failed to record usage: {e}") from e

        logger.debug(
            "Recorded usage org=%s episode=%s model=%s tokens=%d cost=%.4f",
            organization_id, episode_id, model, usage.total_tokens, cost,
        )
        return TokenUsageRecord(
            id=record_id,
            organization_id=organization_id,
            project_id=project_id,
            episode_id=episode_id,
            operation=operation,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens,
            cost=cost,
            created_at=created_at,
            request_id=request_id,
            provider_model=provider_model,
        )

    def daily_state(self, organization_id: str, day: date) -> DailySpend:
        conn = get_connection(self.db_path, self.timeout)
        try:
            return _read_daily(conn, organization_id, day)
        finally:
            conn.close()

    def daily_spend(self, organization_id: str, day: date) -> float:
        """Spend recorded so far for ``organization_id`` on ``day`` (UTC)."""
        return self.daily_state(organization_id, day).total_cost

    def is_halted(self, organization_id: str, day: date) -> bool:
        return self.daily_state(organization_id, day).halted

    def episode_spend(self, episode_id: str) -> float:
        """Total cost of every attempt recorded against an episode."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            row = conn.execute(
                "SELECT ROUND(COALESCE(SUM(cost), 0), 4) FROM token_usage WHERE episode_id = ?",
                (episode_id,),
            ).fetchone()
            return float(row[0])
        finally:
            conn.close()

    def latest_episode_spend(self, project_id: str) -> float:
        """Spend of the most recently scheduled episode of a project."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            row = conn.execute("""
                SELECT id FROM episode
                WHERE project_id = ?
                ORDER BY scheduled_for DESC
                LIMIT 1
            """, (project_id,)).fetchone()
        finally:
            conn.close()
        if row is None:
            return 0.0
        return self.episode_spend(row["id"])

    def usage_for_episode(self, episode_id: str) -> List[TokenUsageRecord]:
        conn = get_connection(self.db_path, self.timeout)
        try:
            rows = conn.execute(
                "SELECT * FROM token_usage WHERE episode_id = ? ORDER BY id",
                (episode_id,),
            ).fetchall()
            return [_row_to_record(row) for row in rows]
        finally:
            conn.close()

    def fetch_usage(self, organization_id: str, day: Optional[date] = None, limit: int = 1000) -> List[TokenUsageRecord]:
        """Usage records of an organization, newest first, optionally for one day."""
        conn = get_connection(self.db_path, self.timeout)
        try:
            query = "SELECT * FROM token_usage WHERE organization_id = ?"
            params: list = [organization_id]
            if day is not None:
                query += " AND substr(created_at, 1, 10) = ?"
                params.append(_day_key(day))
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            rows = conn.execute(query, params).fetchall()
            return [_row_to_record(row) for row in rows]
        finally:
            conn.close()

    def reserve(
        self,
        organization_id: str,
        day: date,
        amount: float,
        admit: Callable[[DailySpend], bool],
    ) -> Tuple[bool, DailySpend]:
        """Atomically check the daily aggregate and reserve ``amount`` against it.

        ``admit`` decides from the current aggregate whether the reservation
        may be taken. The check and the increment run under one write lock,
        so concurrent callers for the same organization see each other's
        reservations.

        Returns:
            (granted, state) where state is the aggregate seen by the check
        """
        if amount < 0:
            raise ValueError("reservation amount cannot be negative")
        with write_transaction(self.db_path, self.timeout) as conn:
            _ensure_daily_row(conn, organization_id, day)
            state = _read_daily(conn, organization_id, day)
            if not admit(state):
                return False, state
            conn.execute("""
                UPDATE org_daily_spend
                SET reserved_cost = ROUND(reserved_cost + ?, 4), last_updated = ?
                WHERE organization_id = ? AND day = ?
            """, (amount, to_iso(utcnow()), organization_id, _day_key(day)))
            return True, state

    def release(self, organization_id: str, day: date, amount: float) -> None:
        """Return a reservation once the call it covered has finished."""
        with write_transaction(self.db_path, self.timeout) as conn:
            conn.execute("""
                UPDATE org_daily_spend
                SET reserved_cost = MAX(0, ROUND(reserved_cost - ?, 4)), last_updated = ?
                WHERE organization_id = ? AND day = ?
            """, (amount, to_iso(utcnow()), organization_id, _day_key(day)))

    def halt(self, organization_id: str, day: date, reason: str) -> None:
        """Block all further generation for the organization on ``day``."""
        with write_transaction(self.db_path, self.timeout) as conn:
            _ensure_daily_row(conn, organization_id, day)
            conn.execute("""
                UPDATE org_daily_spend
                SET halted = 1, halted_reason = ?, last_updated = ?
                WHERE organization_id = ? AND day = ?
            """, (reason, to_iso(utcnow()), organization_id, _day_key(day)))
        logger.warning("Generation halted for org=%s on %s: %s", organization_id, day, reason)
