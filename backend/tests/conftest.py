import os
import sys
import tempfile
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.append(str(ROOT_DIR))

# Keep the default SQLite file out of the user's home directory
os.environ.setdefault("PORTRAIT_BATCH_ROOT_DIR", tempfile.mkdtemp(prefix="portrait-batch-tests-"))

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from portrait_batch.api.endpoints import batch_jobs, status
from portrait_batch.core.error_handlers import register_batch_error_handlers
from portrait_batch.core.generator_client import GeneratedVariation, SourceImage
from portrait_batch.db.engine import create_db_engine
from portrait_batch.db.init_db import init_db
from portrait_batch.models.variation import BreedCoatTarget, FormatTarget, OutfitTarget
from portrait_batch.services.artifact_store import ArtifactRef
from portrait_batch.services.job_store import JobStore
from portrait_batch.services.orchestrator import BatchOrchestrator
from portrait_batch.services.pacing import PacingConfig


@pytest.fixture()
def engine():
    engine = create_db_engine("sqlite://", poolclass=StaticPool)
    init_db(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def store(engine):
    return JobStore(bind=engine)


def make_targets(count: int):
    """Ordered mix of all three target kinds."""
    targets = []
    for n in range(count):
        if n % 3 == 0:
            targets.append(BreedCoatTarget(breed_id=f"breed-{n}", coat_id=f"coat-{n}"))
        elif n % 3 == 1:
            targets.append(OutfitTarget(outfit_id=f"outfit-{n}"))
        else:
            targets.append(FormatTarget(format_id=f"format-{n}"))
    return targets


JOB_CONFIG = {
    "source_image_id": "img-source",
    "source_image_url": "https://images.example.test/source.png",
    "source_prompt": "A golden retriever in a red scarf",
    "source_attributes": {"breed_id": "golden", "coat_id": "gold"},
    "labels": {"golden": "Golden Retriever", "gold": "Gold"},
}


@pytest.fixture()
def make_job(store):
    def _make(count: int = 3, config=None):
        return store.create_job(make_targets(count), dict(config or JOB_CONFIG))

    return _make


class FakeGenerator:
    """Scripted generator: each outcome is None (success), an exception, or a callable."""

    def __init__(self, outcomes=None):
        self.outcomes = list(outcomes or [])
        self.requests = []

    def generate(self, request):
        call = len(self.requests)
        self.requests.append(request)
        outcome = self.outcomes[call] if call < len(self.outcomes) else None
        if callable(outcome) and not isinstance(outcome, BaseException):
            outcome = outcome(request)
        if isinstance(outcome, BaseException):
            raise outcome
        return GeneratedVariation(
            image_data=b"generated",
            mime_type="image/png",
            prompt=f"variation {call}",
            metadata={"variation_type": request.target.kind, "target": request.target.model_dump()},
        )


class FakeArtifacts:
    def __init__(self, error=None):
        self.error = error
        self.stored = []

    def store(self, variation, *, job_id, item_index, source_attributes=None):
        if self.error is not None:
            raise self.error
        self.stored.append((job_id, item_index))
        return ArtifactRef(id=f"image-{item_index}", url=f"https://cdn.example.test/{job_id}/{item_index}.png")


@pytest.fixture()
def fake_generator():
    return FakeGenerator()


@pytest.fixture()
def fake_artifacts():
    return FakeArtifacts()


@pytest.fixture()
def delays():
    return []


@pytest.fixture()
def make_orchestrator(store, fake_artifacts, delays):
    async def record_sleep(seconds):
        delays.append(seconds)

    def _make(generator, **kwargs):
        kwargs.setdefault("artifacts", fake_artifacts)
        kwargs.setdefault("pacing", PacingConfig())
        kwargs.setdefault("source_fetcher", lambda url: SourceImage(data=b"source"))
        kwargs.setdefault("generation_timeout", 5)
        kwargs.setdefault("max_attempts", 1)
        kwargs.setdefault("sleep", record_sleep)
        return BatchOrchestrator(store=store, generator=generator, **kwargs)

    return _make


class DummyRunner:
    def __init__(self):
        self.submitted = []

    def submit(self, job_id):
        self.submitted.append(job_id)

    def status(self):
        return {
            "running": True,
            "workers": 2,
            "max_concurrent_jobs": 2,
            "queued": len(self.submitted),
            "active_jobs": [],
            "stale_policy": "resume",
        }


@pytest.fixture()
def runner():
    return DummyRunner()


@pytest.fixture()
def client(store, runner):
    app = FastAPI()
    app.include_router(batch_jobs.router, prefix="/api/v1/batch-jobs", tags=["batch-jobs"])
    app.include_router(status.router, prefix="/api/v1", tags=["status"])
    register_batch_error_handlers(app)

    app.dependency_overrides[batch_jobs.get_job_store] = lambda: store
    app.dependency_overrides[batch_jobs.get_job_runner] = lambda: runner
    app.dependency_overrides[status.get_store] = lambda: store
    app.dependency_overrides[status.get_runner] = lambda: runner
    return TestClient(app)
