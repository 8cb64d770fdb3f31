from __future__ import annotations

import logging
from typing import Any

from cvtailor.cache import CacheBackend
from cvtailor.errors import CacheError
from cvtailor.queue_backend import Job, JobQueueBackend

logger = logging.getLogger(__name__)

MAINTENANCE_QUEUE = "maintenance"
MAINTENANCE_JOB_NAME = "daily-cleanup"


class MaintenanceTask:
    """Recurring housekeeping. Never touches submissions."""

    def __init__(self, *, queue: JobQueueBackend, cache: CacheBackend, stalled_after_ms: int = 300_000) -> None:
        self.queue = queue
        self.cache = cache
        self.stalled_after_ms = max(1, int(stalled_after_ms))

    def run(self, job: Job | None = None) -> dict[str, Any]:
        requeued: dict[str, int] = {}
        pruned: dict[str, int] = {}
        for queue_name in self.queue.queue_names():
            requeued[queue_name] = self.queue.requeue_stalled(
                queue_name=queue_name,
                stalled_after_ms=self.stalled_after_ms,
            )
            pruned[queue_name] = self.queue.prune(queue_name=queue_name)
        try:
            purged = self.cache.purge_expired()
        except CacheError as exc:
            logger.warning("maintenance_cache_purge_failed error=%s", exc)
            purged = 0
        logger.info(
            "maintenance_completed job_id=%s requeued=%s pruned=%s cache_purged=%s",
            job.job_id if job else None,
            sum(requeued.values()),
            sum(pruned.values()),
            purged,
        )
        return {"requeued": requeued, "pruned": pruned, "cache_purged": purged}
