from __future__ import annotations

import time
import uuid
from dataclasses import replace

import pytest

from cvtailor.errors import NotFoundError
from cvtailor.llm_provider import MockGenerator
from cvtailor.maintenance import MAINTENANCE_JOB_NAME, MAINTENANCE_QUEUE
from cvtailor.queue_backend import InMemoryJobQueue
from cvtailor.runtime import build_runtime
from cvtailor.submission_store import Submission
from cvtailor.tailoring import TAILORING_QUEUE


def test_build_runtime_wires_queues_and_schedule(runtime, pdf_engine):
    assert isinstance(runtime.queue, InMemoryJobQueue)
    assert isinstance(runtime.generator, MockGenerator)
    assert runtime.renderer.engine is pdf_engine
    assert set(runtime.worker.queue_names) == {TAILORING_QUEUE, MAINTENANCE_QUEUE}
    assert TAILORING_QUEUE in runtime.worker.failure_hooks

    [job] = runtime.scheduler.jobs()
    assert job.name == MAINTENANCE_JOB_NAME
    assert job.queue_name == MAINTENANCE_QUEUE
    assert job.as_dict()["cron"] == "0 2 * * *"
    assert job.next_run_at.hour == 2


def test_explicit_generator_is_used(settings, pdf_engine, scripted):
    generator = scripted(["{}"])
    rt = build_runtime(settings, generator=generator, render_engine=pdf_engine)
    try:
        assert rt.generator is generator
        assert rt.orchestrator.generator is generator
    finally:
        rt.stop()


def test_invalid_settings_are_rejected(settings):
    with pytest.raises(ValueError, match="unsupported QUEUE_BACKEND"):
        build_runtime(replace(settings, queue_backend="kafka"))


def test_reset_clears_process_state(runtime):
    submission = Submission.new(original_cv_text="cv", job_spec_text="job")
    runtime.store.create(submission)
    job = runtime.queue.enqueue(queue_name=TAILORING_QUEUE, payload={"submission_id": submission.id})
    runtime.metrics.record_request(12.0, status_code=500)

    runtime.reset()

    with pytest.raises(NotFoundError):
        runtime.store.get(submission.id)
    assert runtime.queue.get(job.job_id) is None
    assert runtime.metrics.snapshot()["request_count"] == 0


def test_reset_clears_rate_limit_counters(make_client):
    client = make_client(rate_limit_max=1)
    path = f"/submission/{uuid.uuid4()}"
    assert client.get(path).status_code == 404
    assert client.get(path).status_code == 429

    client.app.state.runtime.reset()

    assert client.get(path).status_code == 404


def test_embedded_worker_starts_and_stops(runtime):
    runtime.start()
    try:
        assert runtime.worker.is_running
        assert not runtime.monitor.is_running
    finally:
        runtime.stop()
    assert not runtime.worker.is_running


def test_start_can_skip_worker(runtime):
    runtime.start(worker=False)
    assert not runtime.worker.is_running


def test_embedded_worker_drains_maintenance_jobs(runtime):
    job = runtime.queue.enqueue(queue_name=MAINTENANCE_QUEUE, payload={})
    runtime.start()
    try:
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            current = runtime.queue.get(job.job_id)
            if current is None or current.is_terminal:
                break
            time.sleep(0.01)
    finally:
        runtime.stop()
    current = runtime.queue.get(job.job_id)
    assert current is None or current.state == "completed"
