from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from cvtailor.errors import ApiError
from cvtailor.queue_backend import Job, JobQueueBackend

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Any]
FailureHook = Callable[[Job, BaseException], None]


@dataclass
class WorkerRunStats:
    processed: int = 0
    succeeded: int = 0
    retrying: int = 0
    failed: int = 0
    scheduled: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retrying": self.retrying,
            "failed": self.failed,
            "scheduled": self.scheduled,
        }

    def add(self, other: dict[str, int]) -> None:
        self.processed += int(other.get("processed", 0))
        self.succeeded += int(other.get("succeeded", 0))
        self.retrying += int(other.get("retrying", 0))
        self.failed += int(other.get("failed", 0))
        self.scheduled += int(other.get("scheduled", 0))


def describe_error(exc: BaseException) -> dict[str, Any]:
    error: dict[str, Any] = {
        "type": type(exc).__name__,
        "message": str(exc)[:500],
    }
    if isinstance(exc, ApiError):
        error["code"] = exc.code
        error["retryable"] = exc.retryable
    return error


class WorkerRuntime:
    """Resident worker that drains named queues with one handler per queue."""

    def __init__(
        self,
        *,
        queue_backend: JobQueueBackend,
        handlers: dict[str, JobHandler] | None = None,
        failure_hooks: dict[str, FailureHook] | None = None,
        scheduler: Any | None = None,
        max_jobs_per_iteration: int = 4,
        poll_interval_ms: int = 200,
    ) -> None:
        self.queue_backend = queue_backend
        self.handlers: dict[str, JobHandler] = dict(handlers or {})
        self.failure_hooks: dict[str, FailureHook] = dict(failure_hooks or {})
        self.scheduler = scheduler
        self.max_jobs_per_iteration = max(1, int(max_jobs_per_iteration))
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def queue_names(self) -> list[str]:
        return list(self.handlers)

    def register(self, queue_name: str, handler: JobHandler, *, on_failed: FailureHook | None = None) -> None:
        self.handlers[queue_name] = handler
        if on_failed is not None:
            self.failure_hooks[queue_name] = on_failed

    def _run_failure_hook(self, job: Job, exc: BaseException) -> None:
        hook = self.failure_hooks.get(job.queue_name)
        if hook is None:
            return
        try:
            hook(job, exc)
        except Exception:
            logger.exception("job_failure_hook_failed job_id=%s queue=%s", job.job_id, job.queue_name)

    def process_one(self, *, queue_name: str, stats: WorkerRunStats) -> bool:
        handler = self.handlers.get(queue_name)
        if handler is None:
            return False
        job = self.queue_backend.claim(queue_name=queue_name)
        if job is None:
            return False
        stats.processed += 1
        t0 = time.monotonic()
        logger.info("job_started job_id=%s queue=%s attempt=%s", job.job_id, queue_name, job.attempt + 1)
        try:
            result = handler(job)
        except Exception as exc:
            # Keep worker loop alive; the broker decides between retry and failed.
            logger.exception(
                "job_execution_failed job_id=%s queue=%s attempt=%s error=%s",
                job.job_id,
                queue_name,
                job.attempt + 1,
                type(exc).__name__,
            )
            updated = self.queue_backend.fail(job_id=job.job_id, error=describe_error(exc))
            if updated is not None and updated.state == "failed":
                stats.failed += 1
                logger.warning(
                    "job_failed job_id=%s queue=%s attempts=%s",
                    job.job_id,
                    queue_name,
                    updated.attempt,
                )
                self._run_failure_hook(updated, exc)
            else:
                stats.retrying += 1
            return True
        self.queue_backend.complete(job_id=job.job_id, result=result)
        stats.succeeded += 1
        logger.info(
            "job_completed job_id=%s queue=%s latency_ms=%.1f",
            job.job_id,
            queue_name,
            (time.monotonic() - t0) * 1000,
        )
        return True

    def run_once(self, *, now: datetime | None = None) -> dict[str, int]:
        stats = WorkerRunStats()
        if self.scheduler is not None:
            try:
                stats.scheduled += len(self.scheduler.tick(now or datetime.now(UTC)))
            except Exception:
                logger.exception("scheduler_tick_failed")
        for queue_name in self.queue_names:
            while stats.processed < self.max_jobs_per_iteration:
                if not self.process_one(queue_name=queue_name, stats=stats):
                    break
        return stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        aggregate = WorkerRunStats()
        iterations = 0
        while not self._stop.is_set():
            try:
                current = self.run_once()
            except Exception:
                # broker outage: back off one poll interval and try again
                logger.exception("worker_iteration_failed")
                current = WorkerRunStats().as_dict()
            aggregate.add(current)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
            if int(current["processed"]) == 0:
                self._stop.wait(self.poll_interval_ms / 1000.0)
        return aggregate.as_dict()

    def run_until(self, job_id: str, *, timeout_s: float) -> Job | None:
        """Drive the queues from the calling thread until ``job_id`` is terminal or time runs out."""
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        while True:
            job = self.queue_backend.get(job_id)
            if job is None or job.is_terminal:
                return job
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return job
            current = self.run_once()
            if int(current["processed"]) == 0:
                time.sleep(min(self.poll_interval_ms / 1000.0, remaining))

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self.run_forever, name="cvtailor-worker", daemon=True)
        self._thread.start()
        logger.info("worker_started queues=%s", ",".join(self.queue_names))

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_s)
        self._thread = None
        logger.info("worker_stopped")
