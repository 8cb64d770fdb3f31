from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta

from cvtailor.errors import GenerativeServiceError
from cvtailor.queue_backend import BackoffPolicy, InMemoryJobQueue, JobOptions
from cvtailor.scheduler import Scheduler
from cvtailor.worker_runtime import WorkerRuntime, describe_error


def _options(**kwargs) -> JobOptions:
    kwargs.setdefault("backoff", BackoffPolicy(base_delay_ms=0))
    return JobOptions(**kwargs)


def test_run_once_drains_registered_queues():
    q = InMemoryJobQueue()
    seen = []
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: seen.append(job.payload["n"]) or "ok"})
    for n in range(3):
        q.enqueue(queue_name="tailoring", payload={"n": n}, options=_options())

    result = rt.run_once()
    assert result == {"processed": 3, "succeeded": 3, "retrying": 0, "failed": 0, "scheduled": 0}
    assert sorted(seen) == [0, 1, 2]
    assert q.counts(queue_name="tailoring")["completed"] == 3


def test_run_once_respects_max_jobs_per_iteration():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None}, max_jobs_per_iteration=2)
    for n in range(3):
        q.enqueue(queue_name="tailoring", payload={"n": n}, options=_options())
    assert rt.run_once()["processed"] == 2
    assert rt.run_once()["processed"] == 1


def test_queues_without_handlers_are_left_alone():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None})
    q.enqueue(queue_name="maintenance", payload={}, options=_options())
    assert rt.run_once()["processed"] == 0
    assert q.counts(queue_name="maintenance")["waiting"] == 1


def test_failing_handler_retries_then_runs_failure_hook():
    q = InMemoryJobQueue()
    hook_calls = []

    def handler(job):
        raise GenerativeServiceError()

    rt = WorkerRuntime(queue_backend=q)
    rt.register("tailoring", handler, on_failed=lambda job, exc: hook_calls.append((job.state, type(exc).__name__)))
    job = q.enqueue(queue_name="tailoring", payload={}, options=_options(max_attempts=2))

    # zero backoff: the retry is claimed again within the same iteration
    result = rt.run_once()
    assert result["processed"] == 2
    assert result["retrying"] == 1
    assert result["failed"] == 1
    assert hook_calls == [("failed", "GenerativeServiceError")]
    stored = q.get(job.job_id)
    assert stored.state == "failed"
    assert stored.last_error["code"] == "GENERATIVE_UNAVAILABLE"
    assert stored.last_error["retryable"] is True


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


def test_handler_recovers_after_backed_off_retries():
    clock = FakeClock()
    q = InMemoryJobQueue(clock=clock)
    calls = []

    def flaky(job):
        calls.append(clock.now)
        if len(calls) < 3:
            raise GenerativeServiceError()
        return {"done": True}

    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": flaky})
    job = q.enqueue(
        queue_name="tailoring",
        payload={},
        options=JobOptions(max_attempts=3, backoff=BackoffPolicy(base_delay_ms=1_000)),
    )

    assert rt.run_once()["retrying"] == 1
    assert rt.run_once()["processed"] == 0
    clock.advance(1_000)
    assert rt.run_once()["retrying"] == 1
    clock.advance(1_999)
    assert rt.run_once()["processed"] == 0
    clock.advance(1)
    assert rt.run_once()["succeeded"] == 1

    stored = q.get(job.job_id)
    assert stored.state == "completed"
    assert stored.attempt == 3
    assert stored.result == {"done": True}
    delays = [entry["retry_delay_ms"] for entry in stored.attempt_log if "retry_delay_ms" in entry]
    assert delays == [1_000, 2_000]
    assert [entry["outcome"] for entry in stored.attempt_log] == ["error", "error", "completed"]
    assert len(calls) == 3


def test_failure_hook_errors_do_not_stop_the_worker():
    q = InMemoryJobQueue()

    def broken_hook(job, exc):
        raise RuntimeError("hook broke")

    rt = WorkerRuntime(queue_backend=q)
    rt.register("tailoring", lambda job: 1 / 0, on_failed=broken_hook)
    q.enqueue(queue_name="tailoring", payload={}, options=_options(max_attempts=1))
    q.enqueue(queue_name="tailoring", payload={}, options=_options(max_attempts=1))
    assert rt.run_once()["failed"] == 2


def test_scheduler_tick_runs_before_queues():
    q = InMemoryJobQueue()
    scheduler = Scheduler(queue_backend=q)
    start = datetime(2026, 1, 1, tzinfo=UTC)
    scheduler.register(name="maintenance", cron="0 2 * * *", queue_name="maintenance", now=start)
    ran = []
    rt = WorkerRuntime(queue_backend=q, handlers={"maintenance": lambda job: ran.append(job.job_id)}, scheduler=scheduler)

    result = rt.run_once(now=datetime(2026, 1, 1, 2, 0, tzinfo=UTC))
    assert result["scheduled"] == 1
    assert result["succeeded"] == 1
    assert ran == [f"repeat:maintenance:{int(datetime(2026, 1, 1, 2, 0, tzinfo=UTC).timestamp())}"]


def test_run_forever_stops_after_iterations():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None}, poll_interval_ms=1)
    q.enqueue(queue_name="tailoring", payload={}, options=_options())
    stats = rt.run_forever(stop_after_iterations=2)
    assert stats["processed"] == 1
    assert stats["succeeded"] == 1


def test_run_forever_survives_broker_errors(monkeypatch):
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None}, poll_interval_ms=1)

    def broken_claim(**kwargs):
        raise ConnectionError("broker down")

    monkeypatch.setattr(q, "claim", broken_claim)
    assert rt.run_forever(stop_after_iterations=2)["processed"] == 0


def test_run_until_drives_job_to_completion():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: {"done": True}}, poll_interval_ms=1)
    job = q.enqueue(queue_name="tailoring", payload={}, options=_options())
    finished = rt.run_until(job.job_id, timeout_s=2)
    assert finished.state == "completed"
    assert finished.result == {"done": True}


def test_run_until_times_out_on_paused_queue():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None}, poll_interval_ms=1)
    job = q.enqueue(queue_name="tailoring", payload={}, options=_options())
    q.pause("tailoring")
    assert rt.run_until(job.job_id, timeout_s=0.05).state == "waiting"


def test_start_and_stop_background_thread():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None}, poll_interval_ms=5)
    rt.start()
    try:
        assert rt.is_running
        job = q.enqueue(queue_name="tailoring", payload={}, options=_options())
        assert q.wait_for(job.job_id, timeout_s=2).state == "completed"
    finally:
        rt.stop()
    assert not rt.is_running


def test_describe_error_keeps_api_error_code():
    assert describe_error(GenerativeServiceError()) == {
        "type": "GenerativeServiceError",
        "message": "generative service unavailable",
        "code": "GENERATIVE_UNAVAILABLE",
        "retryable": True,
    }
    assert describe_error(ValueError("x" * 600))["message"] == "x" * 500


def test_stop_interrupts_idle_wait():
    q = InMemoryJobQueue()
    rt = WorkerRuntime(queue_backend=q, handlers={"tailoring": lambda job: None}, poll_interval_ms=10_000)
    rt.start()
    t0 = time.monotonic()
    rt.stop(timeout_s=2)
    assert time.monotonic() - t0 < 2
