"""
Shared fixtures: a fresh SQLite database per test, seeded tenants and a
scripted content provider.
"""

import asyncio
import os
import shutil
import tempfile
from dataclasses import replace
from datetime import datetime, time, timezone

import pytest

from futures_pipeline.config.loader import GenerationConfig, default_config
from futures_pipeline.core.pipeline import EpisodePipeline
from futures_pipeline.core.token_counter import TokenUsage
from futures_pipeline.sdk.notifications import RecordingNotifier
from futures_pipeline.sdk.openai_client import Completion
from futures_pipeline.storage.episodes import EpisodeStore
from futures_pipeline.storage.ledger import CostLedger
from futures_pipeline.storage.models import Cadence, EpisodeDraft, Organization, Project, SubscriptionTier
from futures_pipeline.storage.repository import ProjectRepository, initialize_schema

# Wednesday 2025-08-20 09:00 UTC; generation window 05:00 to 08:30.
SLOT = datetime(2025, 8, 20, 9, 0, tzinfo=timezone.utc)
WINDOW_START = datetime(2025, 8, 20, 5, 0, tzinfo=timezone.utc)

ARTICLE = "# Signals from the grid\n\n" + " ".join(["foresight"] * 400)


class FakeProvider:
    """Content provider that replays a script of responses.

    Script steps: an Exception is raised, ``"hang"`` sleeps past any test
    timeout, a Completion is returned as is, and anything else returns a
    standard article (1000 prompt + 2000 completion tokens).
    """

    def __init__(self, script=None, model="gpt-4o"):
        self.model = model
        self.script = list(script or [])
        self.calls = []

    async def complete(self, messages, max_tokens=None, temperature=None):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "temperature": temperature})
        step = self.script.pop(0) if self.script else None
        if isinstance(step, Exception):
            raise step
        if step == "hang":
            await asyncio.sleep(5)
        if isinstance(step, Completion):
            return step
        return Completion(
            text=ARTICLE,
            usage=TokenUsage(prompt_tokens=1000, completion_tokens=2000),
            model=self.model,
            request_id=f"req_{len(self.calls)}",
            finish_reason="stop",
        )


def completion(text=ARTICLE, prompt_tokens=1000, completion_tokens=2000, finish_reason="stop"):
    return Completion(
        text=text,
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
        model="gpt-4o",
        request_id="req_custom",
        finish_reason=finish_reason,
    )


@pytest.fixture
def db_path():
    temp_dir = tempfile.mkdtemp()
    path = os.path.join(temp_dir, "test.db")
    initialize_schema(path)
    yield path
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def projects(db_path):
    return ProjectRepository(db_path)


@pytest.fixture
def make_org(projects):
    def _make(org_id="org_1", tier=SubscriptionTier.STARTER, **overrides):
        return projects.add_organization(Organization(
            id=org_id,
            name=f"Org {org_id}",
            subscription_tier=tier,
            **overrides
        ))
    return _make


@pytest.fixture
def make_project(projects):
    def _make(project_id="proj_1", org_id="org_1", days=(2,), at=time(9, 0), tz="UTC", **overrides):
        return projects.add_project(Project(
            id=project_id,
            organization_id=org_id,
            user_id=f"user_{project_id}",
            title=f"Futures of {project_id}",
            brief={"focus": "energy storage", "horizon": "10 years"},
            cadence=Cadence(days=frozenset(days), delivery_time=at, timezone=tz),
            **overrides
        ))
    return _make


@pytest.fixture
def config(db_path):
    base = default_config(db_path)
    return replace(base, generation=GenerationConfig(timeout_seconds=0.05))


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def build_pipeline(config, notifier):
    def _build(provider, **overrides):
        return EpisodePipeline.from_config(
            overrides.pop("config", config),
            provider,
            notifier=overrides.pop("notifier", notifier),
            worker_id=overrides.pop("worker_id", "worker-test"),
        )
    return _build


@pytest.fixture
def publish_episode(db_path):
    """Drive an episode straight to PUBLISHED with one usage record."""
    def _publish(project, slot=SLOT, now=WINDOW_START):
        store = EpisodeStore(db_path)
        episode, _ = store.get_or_create(project, slot, now=now)
        store.claim(episode.id, "worker-test", now)
        CostLedger(db_path).record_usage(
            project.organization_id, project.id, episode.id, 1000, 2000, "gpt-4o", timestamp=now,
        )
        draft = EpisodeDraft(
            title="Signals from the grid",
            content=ARTICLE,
            reading_minutes=3,
            model="gpt-4o",
            prompt_tokens=1000,
            completion_tokens=2000,
            cost=0.018,
        )
        return store.publish(episode.id, "worker-test", draft, now)
    return _publish
