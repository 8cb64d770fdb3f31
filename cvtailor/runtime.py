from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from slowapi import Limiter

from cvtailor.blob_storage import BlobStorage, create_blob_storage
from cvtailor.cache import CacheBackend, create_cache_backend
from cvtailor.health import HealthChecker, HealthMonitor, MetricsState
from cvtailor.llm_provider import create_generator
from cvtailor.maintenance import MAINTENANCE_JOB_NAME, MAINTENANCE_QUEUE, MaintenanceTask
from cvtailor.queue_backend import JobQueueBackend, create_queue_backend, default_job_options
from cvtailor.rate_limit import build_limiter
from cvtailor.renderer import ArtifactRenderer, create_render_engine
from cvtailor.scheduler import Scheduler
from cvtailor.settings import Settings
from cvtailor.submission_store import SubmissionStore, create_submission_repository
from cvtailor.tailoring import TAILORING_QUEUE, TailoringOrchestrator
from cvtailor.worker_runtime import WorkerRuntime

logger = logging.getLogger(__name__)


@dataclass
class AppRuntime:
    """Every long-lived component of one process, built from Settings."""

    settings: Settings
    metrics: MetricsState
    cache: CacheBackend
    store: SubmissionStore
    queue: JobQueueBackend
    blob_storage: BlobStorage
    generator: Any
    renderer: ArtifactRenderer
    scheduler: Scheduler
    worker: WorkerRuntime
    orchestrator: TailoringOrchestrator
    maintenance: MaintenanceTask
    health: HealthChecker
    monitor: HealthMonitor
    limiter: Limiter

    def start(self, *, worker: bool | None = None) -> None:
        run_worker = self.settings.worker_mode == "embedded" if worker is None else worker
        if run_worker:
            self.worker.start()
        if self.settings.health_monitor_enabled:
            self.monitor.start()
        logger.info(
            "runtime_started worker_mode=%s store=%s cache=%s queue=%s generator=%s",
            self.settings.worker_mode,
            self.settings.store_backend,
            self.settings.cache_backend,
            self.settings.queue_backend,
            getattr(self.generator, "name", type(self.generator).__name__),
        )

    def stop(self) -> None:
        self.monitor.stop()
        self.worker.stop()
        logger.info("runtime_stopped")

    def reset(self) -> None:
        """Clear every in-process state: store, cache, queue, blobs, metrics and rate windows."""
        self.store.reset()
        self.queue.reset()
        blob_reset = getattr(self.blob_storage, "reset", None)
        if callable(blob_reset):
            blob_reset()
        self.metrics.reset()
        self.limiter.reset()


def build_runtime(settings: Settings, *, generator: Any | None = None, render_engine: Any | None = None) -> AppRuntime:
    settings.validate()
    metrics = MetricsState()
    cache = create_cache_backend(settings)
    store = SubmissionStore(
        repository=create_submission_repository(settings),
        cache=cache,
        ttl_s=settings.cache_ttl_submission_s,
        timeout_ms=settings.store_query_timeout_ms,
        key_prefix=settings.cache_key_prefix,
        metrics=metrics,
    )
    queue = create_queue_backend(settings)
    blob_storage = create_blob_storage(settings)
    generator = generator or create_generator(settings)
    renderer = ArtifactRenderer(
        engine=render_engine or create_render_engine(settings),
        timeout_ms=settings.render_timeout_ms,
    )
    scheduler = Scheduler(queue_backend=queue)
    worker = WorkerRuntime(
        queue_backend=queue,
        scheduler=scheduler,
        max_jobs_per_iteration=settings.worker_max_jobs_per_iteration,
        poll_interval_ms=settings.worker_poll_interval_ms,
    )
    orchestrator = TailoringOrchestrator(
        store=store,
        queue=queue,
        generator=generator,
        renderer=renderer,
        blob_storage=blob_storage,
        job_options=default_job_options(settings),
        generation_max_attempts=settings.generation_max_attempts,
        wait_timeout_ms=settings.tailor_wait_timeout_ms,
        worker=worker,
        worker_mode=settings.worker_mode,
    )
    maintenance = MaintenanceTask(queue=queue, cache=cache, stalled_after_ms=settings.queue_stalled_after_ms)
    worker.register(TAILORING_QUEUE, orchestrator.run_tailoring_job, on_failed=orchestrator.on_job_failed)
    worker.register(MAINTENANCE_QUEUE, maintenance.run)
    scheduler.register(
        name=MAINTENANCE_JOB_NAME,
        cron=settings.maintenance_cron,
        queue_name=MAINTENANCE_QUEUE,
        priority=10,
    )
    health = HealthChecker(
        store=store,
        cache=cache,
        queue=queue,
        metrics=metrics,
        queue_names=(TAILORING_QUEUE, MAINTENANCE_QUEUE),
        slow_query_ms=settings.store_slow_query_ms,
        backlog_warn=settings.queue_backlog_warn,
        memory_warn_percent=settings.memory_warn_percent,
        cpu_warn_percent=settings.cpu_warn_percent,
    )
    return AppRuntime(
        settings=settings,
        metrics=metrics,
        cache=cache,
        store=store,
        queue=queue,
        blob_storage=blob_storage,
        generator=generator,
        renderer=renderer,
        scheduler=scheduler,
        worker=worker,
        orchestrator=orchestrator,
        maintenance=maintenance,
        health=health,
        monitor=HealthMonitor(checker=health, interval_s=settings.health_check_interval_s),
        limiter=build_limiter(settings),
    )
