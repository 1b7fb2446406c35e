"""
Unit tests for the episode store.

Tests per-slot idempotency, the lifecycle state machine, atomic claims and
recovery of stale or overdue slots.
"""

import threading
from datetime import timedelta
from unittest.mock import patch

import pytest

from conftest import SLOT, WINDOW_START
from futures_pipeline.core.errors import FailureReason, InvalidTransition, NotFoundError
from futures_pipeline.storage.episodes import EpisodeStore, slot_is_open
from futures_pipeline.storage.ledger import CostLedger
from futures_pipeline.storage.models import ALLOWED_TRANSITIONS, EpisodeDraft, EpisodeOrigin, EpisodeStatus

DRAFT = EpisodeDraft(
    title="Signals from the grid",
    content="# Signals from the grid\n\nbody",
    reading_minutes=2,
    model="gpt-4o",
    prompt_tokens=1000,
    completion_tokens=2000,
    cost=0.018,
)


@pytest.fixture
def store(db_path):
    return EpisodeStore(db_path)


@pytest.fixture
def project(make_org, make_project):
    make_org()
    return make_project()


class TestGetOrCreate:
    """Test idempotent episode creation per (project, slot)."""

    def test_creates_pending_episode(self, store, project):
        episode, created = store.get_or_create(project, SLOT, now=WINDOW_START)

        assert created
        assert episode.status == EpisodeStatus.PENDING
        assert episode.sequence == 1
        assert episode.generation_attempts == 0
        assert episode.scheduled_for == SLOT
        assert episode.idempotency_key == "proj_1:2025-08-20T09:00:00.000000+00:00"
        assert episode.origin == EpisodeOrigin.SCHEDULE

    def test_same_slot_returns_same_row(self, store, project):
        first, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        second, created = store.get_or_create(project, SLOT, now=WINDOW_START)

        assert not created
        assert second.id == first.id
        assert len(store.list_for_project(project.id)) == 1

    def test_sequence_is_monotonic(self, store, project):
        store.get_or_create(project, SLOT, now=WINDOW_START)
        later, _ = store.get_or_create(project, SLOT + timedelta(days=7), now=WINDOW_START)
        assert later.sequence == 2

    def test_get_missing_raises(self, store):
        with pytest.raises(NotFoundError):
            store.get("missing")


class TestClaim:
    """Test the exclusive PENDING -> GENERATING claim."""

    def test_claim_counts_attempt(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        claimed = store.claim(episode.id, "worker-a", WINDOW_START)

        assert claimed.status == EpisodeStatus.GENERATING
        assert claimed.generation_attempts == 1
        assert claimed.claimed_by == "worker-a"

    def test_second_claim_fails(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        assert store.claim(episode.id, "worker-a", WINDOW_START) is not None
        assert store.claim(episode.id, "worker-b", WINDOW_START) is None

    def test_concurrent_claims_have_one_winner(self, store, project):
        """Two ticks race to claim the same slot; exactly one succeeds."""
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        barrier = threading.Barrier(2)
        results = {}

        def tick(worker_id):
            barrier.wait()
            results[worker_id] = store.claim(episode.id, worker_id, WINDOW_START)

        threads = [threading.Thread(target=tick, args=(name,)) for name in ("tick-1", "tick-2")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        winners = [name for name, claimed in results.items() if claimed is not None]
        assert len(winners) == 1
        assert store.get(episode.id).generation_attempts == 1

    def test_claim_waits_for_retry_time(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        retry_time = WINDOW_START + timedelta(minutes=70)
        store.schedule_retry(episode.id, "worker-a", FailureReason.TIMEOUT, "slow", retry_time, WINDOW_START)

        assert store.claim(episode.id, "worker-a", WINDOW_START + timedelta(minutes=10)) is None
        claimed = store.claim(episode.id, "worker-a", retry_time)
        assert claimed.generation_attempts == 2


class TestTransitions:
    """Test the lifecycle state machine."""

    def test_retry_path_records_error(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        retry_time = WINDOW_START + timedelta(minutes=70)

        pending = store.schedule_retry(
            episode.id, "worker-a", FailureReason.TIMEOUT, "slow", retry_time, WINDOW_START,
        )

        assert pending.status == EpisodeStatus.PENDING
        assert pending.next_attempt_at == retry_time
        assert pending.claimed_by is None
        assert pending.generation_errors[0]["reason"] == "TIMEOUT"
        assert pending.generation_errors[0]["attempt"] == 1

    def test_retry_requires_generating(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        with pytest.raises(InvalidTransition, match="PENDING and cannot move to PENDING"):
            store.schedule_retry(episode.id, "worker-a", FailureReason.TIMEOUT, "slow", WINDOW_START, WINDOW_START)

    def test_publish_requires_usage_record(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)

        with pytest.raises(InvalidTransition, match="no recorded usage"):
            store.publish(episode.id, "worker-a", DRAFT, WINDOW_START)
        assert store.get(episode.id).status == EpisodeStatus.GENERATING

    def test_publish_after_usage(self, store, project, db_path):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        CostLedger(db_path).record_usage("org_1", project.id, episode.id, 1000, 2000, "gpt-4o", timestamp=WINDOW_START)

        published = store.publish(episode.id, "worker-a", DRAFT, WINDOW_START)

        assert published.status == EpisodeStatus.PUBLISHED
        assert published.title == "Signals from the grid"
        assert published.cost == 0.018
        assert published.published_at == WINDOW_START

    def test_pending_cannot_publish(self, store, project, db_path):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        CostLedger(db_path).record_usage("org_1", project.id, episode.id, 1, 1, "gpt-4o")

        with pytest.raises(InvalidTransition, match="PENDING and cannot move to PUBLISHED"):
            store.publish(episode.id, "worker-a", DRAFT, WINDOW_START)

    def test_fail_is_terminal(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        failed = store.fail(episode.id, FailureReason.BUDGET_EXCEEDED, "over", WINDOW_START, flagged=True)

        assert failed.status == EpisodeStatus.FAILED
        assert failed.failure_reason == "BUDGET_EXCEEDED"
        assert failed.flagged_for_review
        with pytest.raises(InvalidTransition, match="already FAILED"):
            store.fail(episode.id, FailureReason.TIMEOUT, "again", WINDOW_START)
        assert store.claim(episode.id, "worker-a", WINDOW_START) is None

    def test_fail_keeps_draft_for_review(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)

        failed = store.fail(episode.id, FailureReason.BUDGET_EXCEEDED, "over", WINDOW_START, draft=DRAFT)

        assert failed.content == DRAFT.content
        assert failed.cost == 0.018

    def test_status_view(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.fail(episode.id, FailureReason.RETRIES_EXHAUSTED, "window closed", WINDOW_START)

        view = store.status(episode.id).as_dict()
        assert view["status"] == "FAILED"
        assert view["failure_reason"] == "RETRIES_EXHAUSTED"
        assert view["published_at"] is None

    def test_published_is_terminal(self, store, project, publish_episode):
        episode = publish_episode(project)

        with pytest.raises(InvalidTransition, match="already PUBLISHED"):
            store.schedule_retry(episode.id, "worker-test", FailureReason.TIMEOUT, "late", WINDOW_START, WINDOW_START)
        with pytest.raises(InvalidTransition, match="already PUBLISHED"):
            store.fail(episode.id, FailureReason.TIMEOUT, "late", WINDOW_START)

    def test_store_follows_transition_table(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        narrowed = {EpisodeStatus.PENDING: frozenset({EpisodeStatus.GENERATING})}

        with patch.dict(ALLOWED_TRANSITIONS, narrowed):
            with pytest.raises(InvalidTransition, match="cannot move to FAILED"):
                store.fail(episode.id, FailureReason.RETRIES_EXHAUSTED, "window closed", WINDOW_START)
        assert store.get(episode.id).status == EpisodeStatus.PENDING


class TestClaimOwnership:
    """Test that only the worker holding a claim can finish the attempt."""

    @pytest.fixture
    def reclaimed(self, store, project):
        """Claimed by worker-a, released as stale, then claimed by worker-b."""
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        later = WINDOW_START + timedelta(minutes=20)
        store.release_stale_claims(later - timedelta(minutes=15), max_attempts=3, now=later)
        assert store.claim(episode.id, "worker-b", later) is not None
        return episode

    def _assert_held_by_b(self, store, episode_id):
        current = store.get(episode_id)
        assert current.status == EpisodeStatus.GENERATING
        assert current.claimed_by == "worker-b"
        assert current.generation_attempts == 2

    def test_late_worker_cannot_reschedule(self, store, reclaimed):
        with pytest.raises(InvalidTransition, match="claimed by worker-b, not worker-a"):
            store.schedule_retry(reclaimed.id, "worker-a", FailureReason.TIMEOUT, "slow", WINDOW_START, WINDOW_START)
        self._assert_held_by_b(store, reclaimed.id)

    def test_late_worker_cannot_fail(self, store, reclaimed):
        with pytest.raises(InvalidTransition, match="claimed by worker-b"):
            store.fail(reclaimed.id, FailureReason.CONTENT_POLICY, "refused", WINDOW_START, worker_id="worker-a")
        self._assert_held_by_b(store, reclaimed.id)

    def test_late_worker_cannot_publish(self, store, reclaimed, project, db_path):
        CostLedger(db_path).record_usage(
            "org_1", project.id, reclaimed.id, 1000, 2000, "gpt-4o", timestamp=WINDOW_START,
        )

        with pytest.raises(InvalidTransition, match="claimed by worker-b"):
            store.publish(reclaimed.id, "worker-a", DRAFT, WINDOW_START)
        self._assert_held_by_b(store, reclaimed.id)

        published = store.publish(reclaimed.id, "worker-b", DRAFT, WINDOW_START)
        assert published.status == EpisodeStatus.PUBLISHED


class TestSlotOpenness:
    """Test which slots still need an attempt."""

    def test_open_states(self, store, project):
        assert slot_is_open(None, WINDOW_START)

        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        assert store.slot_is_open(project.id, SLOT, WINDOW_START)

        store.claim(episode.id, "worker-a", WINDOW_START)
        assert not store.slot_is_open(project.id, SLOT, WINDOW_START)

        retry_time = WINDOW_START + timedelta(minutes=70)
        store.schedule_retry(episode.id, "worker-a", FailureReason.TIMEOUT, "slow", retry_time, WINDOW_START)
        assert not store.slot_is_open(project.id, SLOT, WINDOW_START)
        assert store.slot_is_open(project.id, SLOT, retry_time)


class TestRecovery:
    """Test stale claim release and window expiry."""

    def test_stale_claim_returns_to_pending(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        later = WINDOW_START + timedelta(minutes=20)

        released = store.release_stale_claims(later - timedelta(minutes=15), max_attempts=3, now=later)

        assert [e.id for e in released] == [episode.id]
        assert store.get(episode.id).status == EpisodeStatus.PENDING

    def test_fresh_claim_is_kept(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        later = WINDOW_START + timedelta(minutes=5)

        assert store.release_stale_claims(later - timedelta(minutes=15), max_attempts=3, now=later) == []
        assert store.get(episode.id).status == EpisodeStatus.GENERATING

    def test_stale_claim_with_no_attempts_left_fails(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        store.claim(episode.id, "worker-a", WINDOW_START)
        later = WINDOW_START + timedelta(minutes=20)

        store.release_stale_claims(later, max_attempts=1, now=later)

        failed = store.get(episode.id)
        assert failed.status == EpisodeStatus.FAILED
        assert failed.failure_reason == "RETRIES_EXHAUSTED"

    def test_expire_overdue_fails_closed_windows(self, store, project):
        episode, _ = store.get_or_create(project, SLOT, now=WINDOW_START)
        margin = timedelta(minutes=30)

        assert store.expire_overdue(SLOT - timedelta(minutes=31), margin) == []
        expired = store.expire_overdue(SLOT - margin, margin)

        assert [e.id for e in expired] == [episode.id]
        assert store.get(episode.id).failure_reason == "RETRIES_EXHAUSTED"

    def test_expire_overdue_ignores_manual_episodes(self, store, project):
        store.get_or_create(project, SLOT, origin=EpisodeOrigin.MANUAL, now=WINDOW_START)
        assert store.expire_overdue(SLOT + timedelta(hours=1), timedelta(minutes=30)) == []
