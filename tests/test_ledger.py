"""
Unit tests for the cost ledger.

Tests usage recording, the materialized daily aggregate, append-only
enforcement and atomic reservations.
"""

import sqlite3
import threading
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from conftest import SLOT
from futures_pipeline.core.errors import LedgerWriteError
from futures_pipeline.storage.db import get_connection
from futures_pipeline.storage.episodes import EpisodeStore
from futures_pipeline.storage.ledger import CostLedger

DAY = date(2025, 8, 20)
MORNING = datetime(2025, 8, 20, 6, 0, tzinfo=timezone.utc)


@pytest.fixture
def ledger(db_path, make_org, make_project):
    make_org("org_1")
    make_org("org_2")
    make_project("proj_1", org_id="org_1")
    return CostLedger(db_path)


class TestRecordUsage:
    """Test appending usage records."""

    def test_record_usage_computes_cost(self, ledger):
        record = ledger.record_usage("org_1", "proj_1", None, 1000, 2000, "gpt-4o", timestamp=MORNING)

        assert record.id is not None
        assert record.total_tokens == 3000
        assert record.cost == 0.018
        assert record.created_at == MORNING

    def test_aggregate_updated_with_insert(self, ledger):
        ledger.record_usage("org_1", "proj_1", None, 1000, 2000, "gpt-4o", timestamp=MORNING)
        ledger.record_usage("org_1", "proj_1", None, 1000, 0, "gpt-4o", operation="chat", timestamp=MORNING)

        state = ledger.daily_state("org_1", DAY)
        assert state.total_cost == 0.02
        assert state.generation_cost == 0.018
        assert state.chat_cost == 0.002
        assert state.total_tokens == 4000
        assert ledger.daily_spend("org_2", DAY) == 0.0

    def test_day_is_utc_date(self, ledger):
        late = datetime(2025, 8, 20, 23, 30, tzinfo=timezone.utc)
        ledger.record_usage("org_1", "proj_1", None, 1000, 0, "gpt-4o", timestamp=late)

        assert ledger.daily_spend("org_1", DAY) == 0.002
        assert ledger.daily_spend("org_1", date(2025, 8, 21)) == 0.0

    def test_negative_tokens_rejected(self, ledger):
        with pytest.raises(ValueError, match="negative"):
            ledger.record_usage("org_1", "proj_1", None, -1, 0, "gpt-4o")

    def test_unknown_operation_rejected(self, ledger):
        with pytest.raises(ValueError, match="operation must be one of"):
            ledger.record_usage("org_1", "proj_1", None, 1, 1, "gpt-4o", operation="embedding")

    def test_unknown_model_rejected(self, ledger):
        with pytest.raises(ValueError, match="Unsupported model"):
            ledger.record_usage("org_1", "proj_1", None, 1, 1, "unknown-model")

    def test_naive_timestamp_rejected(self, ledger):
        with pytest.raises(ValueError, match="timezone-aware"):
            ledger.record_usage("org_1", "proj_1", None, 1, 1, "gpt-4o", timestamp=datetime(2025, 8, 20))

    def test_write_failure_is_loud(self, ledger):
        """A failed durable write raises a retryable ledger error."""
        with patch("futures_pipeline.storage.ledger.write_transaction",
                   side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(LedgerWriteError) as exc_info:
                ledger.record_usage("org_1", "proj_1", None, 1, 1, "gpt-4o")

        assert exc_info.value.retryable
        assert ledger.fetch_usage("org_1") == []

    def test_fetch_usage_filters_by_day(self, ledger):
        ledger.record_usage("org_1", "proj_1", None, 10, 10, "gpt-4o", timestamp=MORNING)
        ledger.record_usage("org_1", "proj_1", None, 20, 20, "gpt-4o",
                            timestamp=datetime(2025, 8, 21, 6, 0, tzinfo=timezone.utc))

        assert len(ledger.fetch_usage("org_1")) == 2
        records = ledger.fetch_usage("org_1", DAY)
        assert [record.prompt_tokens for record in records] == [10]


class TestEpisodeSpend:
    """Test per-episode spend lookups."""

    def test_latest_episode_spend_sums_its_attempts(self, ledger, db_path, projects):
        store = EpisodeStore(db_path)
        project = projects.get_project("proj_1")
        earlier, _ = store.get_or_create(project, SLOT, now=MORNING)
        latest, _ = store.get_or_create(project, SLOT + timedelta(days=7), now=MORNING)
        ledger.record_usage("org_1", "proj_1", earlier.id, 1000, 2000, "gpt-4o", timestamp=MORNING)
        ledger.record_usage("org_1", "proj_1", latest.id, 1000, 2000, "gpt-4o", timestamp=MORNING)
        ledger.record_usage("org_1", "proj_1", latest.id, 1000, 0, "gpt-4o", timestamp=MORNING)

        assert ledger.episode_spend(earlier.id) == 0.018
        assert ledger.latest_episode_spend("proj_1") == 0.02

    def test_project_without_episodes_has_no_spend(self, ledger, make_project):
        make_project("proj_2", org_id="org_2")
        assert ledger.latest_episode_spend("proj_2") == 0.0


class TestAppendOnly:
    """Test that usage records are immutable."""

    def test_update_is_rejected(self, ledger, db_path):
        record = ledger.record_usage("org_1", "proj_1", None, 1, 1, "gpt-4o")
        conn = get_connection(db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError, match="append-only"):
                conn.execute("UPDATE token_usage SET cost = 0 WHERE id = ?", (record.id,))
        finally:
            conn.close()

    def test_delete_is_rejected(self, ledger, db_path):
        record = ledger.record_usage("org_1", "proj_1", None, 1, 1, "gpt-4o")
        conn = get_connection(db_path)
        try:
            with pytest.raises(sqlite3.IntegrityError, match="append-only"):
                conn.execute("DELETE FROM token_usage WHERE id = ?", (record.id,))
        finally:
            conn.close()


class TestReservations:
    """Test the atomic check-and-reserve on the daily aggregate."""

    def test_reserve_and_release(self, ledger):
        granted, state = ledger.reserve("org_1", DAY, 3.0, admit=lambda s: True)
        assert granted
        assert state.reserved_cost == 0.0
        assert ledger.daily_state("org_1", DAY).reserved_cost == 3.0

        ledger.release("org_1", DAY, 3.0)
        assert ledger.daily_state("org_1", DAY).reserved_cost == 0.0

    def test_release_never_goes_negative(self, ledger):
        ledger.release("org_1", DAY, 5.0)
        assert ledger.daily_state("org_1", DAY).reserved_cost == 0.0

    def test_denied_reservation_leaves_aggregate(self, ledger):
        granted, _ = ledger.reserve("org_1", DAY, 3.0, admit=lambda s: False)
        assert not granted
        assert ledger.daily_state("org_1", DAY).reserved_cost == 0.0

    def test_concurrent_reservations_respect_ceiling(self, ledger):
        """Ten threads race for a £10 ceiling in £3 steps; only four fit."""
        results = []
        barrier = threading.Barrier(10)

        def worker():
            barrier.wait()
            granted, _ = ledger.reserve(
                "org_1", DAY, 3.0,
                admit=lambda state: state.committed_cost < 10.0,
            )
            results.append(granted)

        threads = [threading.Thread(target=worker) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 4
        assert ledger.daily_state("org_1", DAY).reserved_cost == 12.0

    def test_halt(self, ledger):
        assert not ledger.is_halted("org_1", DAY)
        ledger.halt("org_1", DAY, "daily ceiling breached")

        state = ledger.daily_state("org_1", DAY)
        assert state.halted
        assert state.halted_reason == "daily ceiling breached"
        assert not ledger.is_halted("org_2", DAY)
        assert not ledger.is_halted("org_1", date(2025, 8, 21))
