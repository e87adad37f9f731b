import asyncio
import threading
import time

import httpx

from portrait_batch.core.cloudinary_client import ArtifactUploadError
from portrait_batch.core.generator_client import GeminiVariationClient, GenerationError
from portrait_batch.models.batch_job import ItemStatus, JobStatus
from portrait_batch.services.orchestrator import BatchOrchestrator, load_job_context

from conftest import JOB_CONFIG, FakeArtifacts, FakeGenerator


def _statuses(store, job_id):
    return [item.status for item in store.get_items(job_id)]


def test_all_items_succeed(store, make_job, make_orchestrator, delays):
    job = make_job(5)
    generator = FakeGenerator()

    asyncio.run(make_orchestrator(generator).run(job.id))

    refreshed = store.get_job(job.id)
    items = store.get_items(job.id)
    assert refreshed.status == JobStatus.COMPLETED.value
    assert refreshed.completed_at is not None
    assert refreshed.started_at <= refreshed.completed_at
    assert (refreshed.completed_items, refreshed.successful_items, refreshed.failed_items) == (5, 5, 0)
    assert all(item.status == ItemStatus.COMPLETED.value for item in items)
    assert [item.generated_image_id for item in items] == [f"image-{n}" for n in range(5)]
    assert all(item.total_duration_ms is not None for item in items)
    # the very first call waits the base delay, then the pace speeds up
    assert delays == [1.5, 1.154, 1.154, 1.154, 1.154]


def test_items_run_in_index_order(store, make_job, make_orchestrator):
    job = make_job(4)
    generator = FakeGenerator()

    asyncio.run(make_orchestrator(generator).run(job.id))

    kinds = [request.target.kind for request in generator.requests]
    assert kinds == ["breed_coat", "outfit", "format", "breed_coat"]
    assert generator.requests[0].source_prompt == JOB_CONFIG["source_prompt"]
    assert generator.requests[0].labels["golden"] == "Golden Retriever"


def test_partial_failures_still_complete_the_job(store, make_job, make_orchestrator, delays):
    job = make_job(10)
    failures = {1, 4, 7}
    generator = FakeGenerator(
        [GenerationError(f"quota exceeded on {n}") if n in failures else None for n in range(10)]
    )

    asyncio.run(make_orchestrator(generator).run(job.id))

    refreshed = store.get_job(job.id)
    items = store.get_items(job.id)
    assert refreshed.status == JobStatus.COMPLETED.value
    assert (refreshed.completed_items, refreshed.successful_items, refreshed.failed_items) == (10, 7, 3)
    assert {item.item_index for item in items if item.status == ItemStatus.FAILED.value} == failures
    assert items[4].error_message == "quota exceeded on 4"
    # third failure trips the emergency brake for the next item
    assert delays[8] == 6.0


def test_upload_failure_is_an_item_failure(store, make_job, make_orchestrator):
    job = make_job(2)
    orchestrator = make_orchestrator(
        FakeGenerator(), artifacts=FakeArtifacts(error=ArtifactUploadError("cloud unavailable"))
    )

    asyncio.run(orchestrator.run(job.id))

    refreshed = store.get_job(job.id)
    assert refreshed.status == JobStatus.COMPLETED.value
    assert refreshed.failed_items == 2
    assert store.get_items(job.id)[0].error_message == "cloud unavailable"


def test_generation_timeout_fails_only_that_item(store, make_job, make_orchestrator):
    job = make_job(2)

    def hang(request):
        time.sleep(0.3)

    generator = FakeGenerator([hang, None])

    asyncio.run(make_orchestrator(generator, generation_timeout=0.05).run(job.id))

    items = store.get_items(job.id)
    assert store.get_job(job.id).status == JobStatus.COMPLETED.value
    assert items[0].status == ItemStatus.FAILED.value
    assert "timed out" in items[0].error_message
    assert items[1].status == ItemStatus.COMPLETED.value


def test_timed_out_call_never_overlaps_the_next_one(store, make_job, make_orchestrator):
    job = make_job(2)
    lock = threading.Lock()
    calls = {"active": 0, "peak": 0}

    def tracked(delay):
        def _call(request):
            with lock:
                calls["active"] += 1
                calls["peak"] = max(calls["peak"], calls["active"])
            time.sleep(delay)
            with lock:
                calls["active"] -= 1

        return _call

    generator = FakeGenerator([tracked(0.4), tracked(0)])

    asyncio.run(make_orchestrator(generator, generation_timeout=0.05).run(job.id))

    items = store.get_items(job.id)
    assert calls["peak"] == 1
    assert calls["active"] == 0
    assert "timed out" in items[0].error_message
    assert items[1].status == ItemStatus.COMPLETED.value


def test_retries_are_counted(store, make_job, make_orchestrator):
    job = make_job(1)
    generator = FakeGenerator([GenerationError("flaky"), GenerationError("flaky"), None])

    asyncio.run(make_orchestrator(generator, max_attempts=3).run(job.id))

    item = store.get_items(job.id)[0]
    assert item.status == ItemStatus.COMPLETED.value
    assert item.retry_count == 2
    assert len(generator.requests) == 3


def test_retries_exhausted_marks_item_failed(store, make_job, make_orchestrator):
    job = make_job(1)
    generator = FakeGenerator([GenerationError("down")] * 2)

    asyncio.run(make_orchestrator(generator, max_attempts=2).run(job.id))

    item = store.get_items(job.id)[0]
    assert item.status == ItemStatus.FAILED.value
    assert item.retry_count == 1


def test_cancellation_between_items(store, make_job, make_orchestrator):
    job = make_job(10)

    def cancel_during_third(request):
        store.request_cancellation(job.id)

    generator = FakeGenerator([None, None, cancel_during_third])

    asyncio.run(make_orchestrator(generator).run(job.id))

    refreshed = store.get_job(job.id)
    statuses = _statuses(store, job.id)
    assert refreshed.status == JobStatus.CANCELLED.value
    assert refreshed.completed_at is not None
    # the in-flight third item still records its result
    assert statuses[:3] == ["completed"] * 3
    assert statuses[3:] == ["skipped"] * 7
    assert refreshed.completed_items == 3
    assert len(generator.requests) == 3


def test_cancelled_before_start_never_calls_generator(store, make_job, make_orchestrator):
    job = make_job(3)
    store.request_cancellation(job.id)
    generator = FakeGenerator()

    asyncio.run(make_orchestrator(generator).run(job.id))

    assert generator.requests == []
    assert store.get_job(job.id).status == JobStatus.CANCELLED.value
    assert _statuses(store, job.id) == ["skipped"] * 3


def test_source_fetch_failure_fails_the_job(store, make_job, make_orchestrator):
    job = make_job(2)

    def unreachable(url):
        raise httpx.ConnectError("connection refused")

    generator = FakeGenerator()
    asyncio.run(make_orchestrator(generator, source_fetcher=unreachable).run(job.id))

    refreshed = store.get_job(job.id)
    assert refreshed.status == JobStatus.FAILED.value
    assert "connection refused" in refreshed.error_log[0]
    assert _statuses(store, job.id) == ["skipped", "skipped"]
    assert generator.requests == []


def test_malformed_config_fails_the_job(store, make_job, make_orchestrator):
    job = make_job(2, config={"source_prompt": "no url"})

    asyncio.run(make_orchestrator(FakeGenerator()).run(job.id))

    refreshed = store.get_job(job.id)
    assert refreshed.status == JobStatus.FAILED.value
    assert refreshed.error_log[0].startswith("JobConfigurationError")


def test_store_error_fails_job_and_closes_running_item(monkeypatch, store, make_job, make_orchestrator):
    job = make_job(3)
    finalize_item = store.finalize_item

    def flaky_finalize(job_id, item_index, status, **fields):
        if item_index == 1:
            raise RuntimeError("database is locked")
        return finalize_item(job_id, item_index, status, **fields)

    monkeypatch.setattr(store, "finalize_item", flaky_finalize)

    asyncio.run(make_orchestrator(FakeGenerator()).run(job.id))

    refreshed = store.get_job(job.id)
    assert refreshed.status == JobStatus.FAILED.value
    assert _statuses(store, job.id) == ["completed", "failed", "skipped"]
    assert (refreshed.completed_items, refreshed.successful_items, refreshed.failed_items) == (2, 1, 1)
    assert refreshed.error_log == ["RuntimeError: database is locked"]


def test_unexpected_generator_error_fails_only_that_item(store, make_job, make_orchestrator):
    job = make_job(3)
    generator = FakeGenerator([None, RuntimeError("bug"), None])

    asyncio.run(make_orchestrator(generator).run(job.id))

    refreshed = store.get_job(job.id)
    items = store.get_items(job.id)
    assert refreshed.status == JobStatus.COMPLETED.value
    assert _statuses(store, job.id) == ["completed", "failed", "completed"]
    assert items[1].error_message == "RuntimeError: bug"
    assert (refreshed.completed_items, refreshed.successful_items, refreshed.failed_items) == (3, 2, 1)


def test_unexpected_artifact_error_fails_only_that_item(store, make_job, make_orchestrator):
    job = make_job(2)

    asyncio.run(
        make_orchestrator(FakeGenerator(), artifacts=FakeArtifacts(error=KeyError("public_id"))).run(job.id)
    )

    assert store.get_job(job.id).status == JobStatus.COMPLETED.value
    assert _statuses(store, job.id) == ["failed", "failed"]


def test_malformed_generator_response_fails_only_that_item(store, make_job, make_orchestrator):
    job = make_job(3)
    bodies = [
        {"candidates": [{"content": {"parts": [{"inlineData": {"data": 123}}]}}]},
        ["not", "an", "object"],
        {"candidates": [{"content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": "cG5n"}}]}}]},
    ]

    def handler(request):
        return httpx.Response(200, json=bodies.pop(0))

    generator = GeminiVariationClient(api_key="k", transport=httpx.MockTransport(handler))

    asyncio.run(make_orchestrator(generator).run(job.id))

    refreshed = store.get_job(job.id)
    items = store.get_items(job.id)
    assert refreshed.status == JobStatus.COMPLETED.value
    assert _statuses(store, job.id) == ["failed", "failed", "completed"]
    assert items[0].error_message == "Generator returned undecodable image data"
    assert items[1].error_message == "Generator returned an unexpected list body"
    assert refreshed.error_log == []


def test_terminal_job_is_left_alone(store, make_job, make_orchestrator):
    job = make_job(1)
    orchestrator = make_orchestrator(FakeGenerator())
    asyncio.run(orchestrator.run(job.id))
    completed_at = store.get_job(job.id).completed_at

    asyncio.run(make_orchestrator(FakeGenerator()).run(job.id))

    assert store.get_job(job.id).completed_at == completed_at


def test_resume_skips_finished_items(store, make_job, make_orchestrator):
    job = make_job(3)
    store.claim_item(job.id, 0)
    store.finalize_item(job.id, 0, ItemStatus.COMPLETED.value, generated_image_id="earlier")
    generator = FakeGenerator()

    asyncio.run(make_orchestrator(generator).run(job.id))

    items = store.get_items(job.id)
    assert len(generator.requests) == 2
    assert items[0].generated_image_id == "earlier"
    assert store.get_job(job.id).successful_items == 3


def test_missing_job_is_ignored(store, make_orchestrator):
    asyncio.run(make_orchestrator(FakeGenerator()).run("missing"))


def test_load_job_context_reads_config(make_job):
    job = make_job(1)

    context = load_job_context(job)

    assert context.source_image_url == JOB_CONFIG["source_image_url"]
    assert context.source_attributes["breed_id"] == "golden"
    assert context.source_attributes["theme_id"] is None


def test_default_settings_are_used(monkeypatch, store):
    from portrait_batch.core.config import settings

    monkeypatch.setattr(settings, "ITEM_MAX_ATTEMPTS", 4)
    monkeypatch.setattr(settings, "GENERATION_TIMEOUT_S", 9.0)

    orchestrator = BatchOrchestrator(store=store, generator=FakeGenerator(), artifacts=FakeArtifacts())

    assert orchestrator.max_attempts == 4
    assert orchestrator.generation_timeout == 9.0
