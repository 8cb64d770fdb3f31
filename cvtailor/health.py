"""
Health checks and request metrics.

``MetricsState`` is an explicit object owned by the runtime container and
injected wherever counters are recorded; there is no module-level state.
``HealthChecker`` runs isolated checks against the store, cache, broker and
host, and folds them into one composite status (worst of healthy < warning <
unhealthy). ``HealthMonitor`` repeats the comprehensive check on a timer.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from cvtailor.cache import CacheBackend, NullCacheBackend
from cvtailor.errors import ApiError
from cvtailor.queue_backend import JobQueueBackend

logger = logging.getLogger(__name__)

SERVICE_NAME = "cvtailor"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    UNHEALTHY = "unhealthy"


_SEVERITY = {HealthStatus.HEALTHY.value: 0, HealthStatus.WARNING.value: 1, HealthStatus.UNHEALTHY.value: 2}


def worst_status(statuses: Iterable[str]) -> str:
    worst = HealthStatus.HEALTHY.value
    for status in statuses:
        # unknown statuses count as unhealthy
        if _SEVERITY.get(status, 2) > _SEVERITY[worst]:
            worst = status if status in _SEVERITY else HealthStatus.UNHEALTHY.value
    return worst


def http_status_for(status: str) -> int:
    return 503 if status == HealthStatus.UNHEALTHY.value else 200


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class MetricsState:
    """Request and cache counters for one process."""

    def __init__(self, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self.init()

    def init(self) -> None:
        with self._lock:
            self._started = self._clock()
            self._started_at = _now_iso()
            self._request_count = 0
            self._error_count = 0
            self._avg_response_ms = 0.0
            self._cache_error_count = 0

    def reset(self) -> None:
        """Zero every counter and restart the uptime clock."""
        self.init()

    def record_request(self, duration_ms: float, *, status_code: int = 200) -> None:
        with self._lock:
            self._request_count += 1
            n = self._request_count
            self._avg_response_ms = (self._avg_response_ms * (n - 1) + float(duration_ms)) / n
            if status_code >= 400:
                self._error_count += 1

    def record_error(self) -> None:
        with self._lock:
            self._error_count += 1

    def record_cache_error(self) -> None:
        with self._lock:
            self._cache_error_count += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            requests = self._request_count
            errors = self._error_count
            return {
                "started_at": self._started_at,
                "uptime_s": round(self._clock() - self._started, 3),
                "request_count": requests,
                "error_count": errors,
                "error_rate": round(errors / requests * 100, 2) if requests else 0.0,
                "avg_response_ms": round(self._avg_response_ms, 2),
                "cache_error_count": self._cache_error_count,
            }


def _read_meminfo(path: str = "/proc/meminfo") -> dict[str, int]:
    values: dict[str, int] = {}
    meminfo = Path(path)
    if not meminfo.exists():
        return values
    for line in meminfo.read_text(encoding="ascii", errors="ignore").splitlines():
        name, _, rest = line.partition(":")
        parts = rest.split()
        if parts and parts[0].isdigit():
            values[name.strip()] = int(parts[0]) * 1024
    return values


def sample_host() -> dict[str, Any]:
    """Memory and load figures from the OS; fields are None where the platform has no source."""
    total = available = None
    meminfo = _read_meminfo()
    if "MemTotal" in meminfo:
        total = meminfo["MemTotal"]
        available = meminfo.get("MemAvailable", meminfo.get("MemFree"))
    elif hasattr(os, "sysconf"):
        try:
            page = os.sysconf("SC_PAGE_SIZE")
            total = page * os.sysconf("SC_PHYS_PAGES")
            available = page * os.sysconf("SC_AVPHYS_PAGES")
        except (ValueError, OSError):
            total = available = None
    try:
        load_1m = os.getloadavg()[0]
    except (AttributeError, OSError):
        load_1m = None
    memory_percent = None
    if total and available is not None:
        memory_percent = round((total - available) / total * 100, 2)
    return {
        "memory_total_bytes": total,
        "memory_available_bytes": available,
        "memory_percent": memory_percent,
        "load_1m": load_1m,
        "cpu_count": os.cpu_count() or 1,
        "pid": os.getpid(),
    }


class HealthChecker:
    def __init__(
        self,
        *,
        store: Any,
        cache: CacheBackend,
        queue: JobQueueBackend,
        metrics: MetricsState,
        queue_names: Iterable[str] = (),
        slow_query_ms: float = 1_000,
        backlog_warn: int = 100,
        memory_warn_percent: float = 90.0,
        cpu_warn_percent: float = 80.0,
        host_sampler: Callable[[], dict[str, Any]] = sample_host,
    ) -> None:
        self.store = store
        self.cache = cache
        self.queue = queue
        self.metrics = metrics
        self.queue_names = tuple(queue_names)
        self.slow_query_ms = float(slow_query_ms)
        self.backlog_warn = int(backlog_warn)
        self.memory_warn_percent = float(memory_warn_percent)
        self.cpu_warn_percent = float(cpu_warn_percent)
        self.host_sampler = host_sampler

    def basic(self) -> dict[str, Any]:
        return {"status": HealthStatus.HEALTHY.value, "timestamp": _now_iso(), "service": SERVICE_NAME}

    def database(self) -> dict[str, Any]:
        try:
            latency_ms = self.store.ping()
        except ApiError as exc:
            logger.warning("health_database_failed code=%s", exc.code)
            return {"status": HealthStatus.UNHEALTHY.value, "service": "database", "error": exc.code}
        status = HealthStatus.WARNING.value if latency_ms > self.slow_query_ms else HealthStatus.HEALTHY.value
        return {
            "status": status,
            "service": "database",
            "response_time_ms": latency_ms,
            "slow_threshold_ms": self.slow_query_ms,
        }

    def cache_check(self) -> dict[str, Any]:
        if isinstance(self.cache, NullCacheBackend):
            return {"status": HealthStatus.HEALTHY.value, "service": "cache", "backend": "none"}
        t0 = time.monotonic()
        try:
            self.cache.ping()
        except ApiError as exc:
            # the cache is fail-open, so an outage degrades rather than breaks the service
            logger.warning("health_cache_failed code=%s", exc.code)
            return {"status": HealthStatus.WARNING.value, "service": "cache", "error": "cache connection failed"}
        return {
            "status": HealthStatus.HEALTHY.value,
            "service": "cache",
            "response_time_ms": round((time.monotonic() - t0) * 1000, 2),
        }

    def queue_check(self) -> dict[str, Any]:
        try:
            names = list(dict.fromkeys([*self.queue_names, *self.queue.queue_names()]))
            stats = {
                name: {**self.queue.counts(queue_name=name), "paused": self.queue.is_paused(name)} for name in names
            }
        except Exception as exc:
            logger.exception("health_queue_failed")
            return {"status": HealthStatus.UNHEALTHY.value, "service": "queues", "error": type(exc).__name__}
        backlog = [name for name, counts in stats.items() if counts.get("waiting", 0) > self.backlog_warn]
        total = sum(counts[state] for counts in stats.values() for state in ("waiting", "active", "completed", "failed"))
        result: dict[str, Any] = {
            "status": HealthStatus.WARNING.value if backlog else HealthStatus.HEALTHY.value,
            "service": "queues",
            "stats": stats,
            "total_jobs": total,
        }
        if backlog:
            result["backlog"] = backlog
        return result

    def system(self) -> dict[str, Any]:
        host = self.host_sampler()
        memory_percent = host.get("memory_percent")
        load_1m = host.get("load_1m")
        cores = max(1, int(host.get("cpu_count") or 1))
        load_percent = round(load_1m / cores * 100, 2) if load_1m is not None else None
        memory_ok = memory_percent is None or memory_percent < self.memory_warn_percent
        cpu_ok = load_percent is None or load_percent < self.cpu_warn_percent
        return {
            "status": HealthStatus.HEALTHY.value if memory_ok and cpu_ok else HealthStatus.WARNING.value,
            "service": "system",
            "memory": {"percent": memory_percent, "healthy": memory_ok, "threshold_percent": self.memory_warn_percent},
            "cpu": {
                "load_1m": load_1m,
                "cores": cores,
                "load_percent": load_percent,
                "healthy": cpu_ok,
                "threshold_percent": self.cpu_warn_percent,
            },
            "pid": host.get("pid"),
        }

    def comprehensive(self) -> dict[str, Any]:
        checks: list[dict[str, Any]] = []
        for name, check in (
            ("basic", self.basic),
            ("database", self.database),
            ("cache", self.cache_check),
            ("queue", self.queue_check),
            ("system", self.system),
        ):
            try:
                result = check()
            except Exception as exc:
                logger.exception("health_check_crashed check=%s", name)
                result = {"status": HealthStatus.UNHEALTHY.value, "error": type(exc).__name__}
            checks.append({"name": name, **result})
        return {
            "status": worst_status(check["status"] for check in checks),
            "timestamp": _now_iso(),
            "checks": checks,
            "metrics": self.metrics.snapshot(),
        }

    def metrics_report(self) -> dict[str, Any]:
        return {
            "timestamp": _now_iso(),
            "metrics": self.metrics.snapshot(),
            "system": self.host_sampler(),
        }


class HealthMonitor:
    """Runs the comprehensive check every ``interval_s`` seconds on a daemon thread."""

    def __init__(self, *, checker: HealthChecker, interval_s: float = 300.0) -> None:
        self.checker = checker
        self.interval_s = max(0.01, float(interval_s))
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_report: dict[str, Any] | None = None

    @property
    def last_report(self) -> dict[str, Any] | None:
        with self._lock:
            return self._last_report

    def run_once(self) -> dict[str, Any]:
        report = self.checker.comprehensive()
        with self._lock:
            self._last_report = report
        if report["status"] != HealthStatus.HEALTHY.value:
            degraded = [check["name"] for check in report["checks"] if check["status"] != HealthStatus.HEALTHY.value]
            logger.warning("health_check_degraded status=%s checks=%s", report["status"], ",".join(degraded))
        return report

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_s):
            try:
                self.run_once()
            except Exception:
                logger.exception("health_monitor_iteration_failed")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="cvtailor-health", daemon=True)
        self._thread.start()
        logger.info("health_monitor_started interval_s=%s", self.interval_s)

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout=timeout_s)
        self._thread = None
