from __future__ import annotations

import pytest

from cvtailor.cache import CacheBackend, InMemoryCacheBackend, NullCacheBackend
from cvtailor.errors import CacheError, OperationTimeoutError
from cvtailor.health import HealthChecker, HealthMonitor, MetricsState, http_status_for, sample_host, worst_status
from cvtailor.queue_backend import InMemoryJobQueue, JobOptions


class FakeStore:
    def __init__(self, latency_ms: float = 3.0, error: Exception | None = None) -> None:
        self.latency_ms = latency_ms
        self.error = error

    def ping(self) -> float:
        if self.error is not None:
            raise self.error
        return self.latency_ms


class DownCache(CacheBackend):
    def ping(self) -> None:
        raise CacheError("redis ping failed: ConnectionError")


class BrokenQueue(InMemoryJobQueue):
    def queue_names(self):
        raise ConnectionError("broker down")


def _host(memory_percent=40.0, load_1m=0.5, cpu_count=4):
    return lambda: {"memory_percent": memory_percent, "load_1m": load_1m, "cpu_count": cpu_count, "pid": 123}


def _checker(**overrides) -> HealthChecker:
    kwargs = {
        "store": FakeStore(),
        "cache": InMemoryCacheBackend(),
        "queue": InMemoryJobQueue(),
        "metrics": MetricsState(),
        "queue_names": ("tailoring", "maintenance"),
        "host_sampler": _host(),
    }
    kwargs.update(overrides)
    return HealthChecker(**kwargs)


def test_worst_status_and_http_mapping():
    assert worst_status([]) == "healthy"
    assert worst_status(["healthy", "warning"]) == "warning"
    assert worst_status(["warning", "unhealthy", "healthy"]) == "unhealthy"
    assert worst_status(["healthy", "mystery"]) == "unhealthy"
    assert http_status_for("healthy") == 200
    assert http_status_for("warning") == 200
    assert http_status_for("unhealthy") == 503


class TestMetricsState:
    def test_counts_requests_and_errors(self):
        metrics = MetricsState()
        metrics.record_request(10, status_code=200)
        metrics.record_request(30, status_code=500)
        metrics.record_error()
        metrics.record_cache_error()
        snap = metrics.snapshot()
        assert snap["request_count"] == 2
        assert snap["error_count"] == 2
        assert snap["error_rate"] == 100.0
        assert snap["avg_response_ms"] == 20.0
        assert snap["cache_error_count"] == 1

    def test_reset_restarts_uptime(self):
        now = [100.0]
        metrics = MetricsState(clock=lambda: now[0])
        metrics.record_request(5)
        now[0] = 160.0
        assert metrics.snapshot()["uptime_s"] == 60.0
        metrics.reset()
        snap = metrics.snapshot()
        assert snap["uptime_s"] == 0.0
        assert snap["request_count"] == 0
        assert snap["error_rate"] == 0.0


class TestHealthChecker:
    def test_basic(self):
        report = _checker().basic()
        assert report["status"] == "healthy"
        assert report["service"] == "cvtailor"

    def test_database_latency_thresholds(self):
        assert _checker().database()["status"] == "healthy"
        slow = _checker(store=FakeStore(latency_ms=2_500), slow_query_ms=1_000).database()
        assert slow["status"] == "warning"
        assert slow["response_time_ms"] == 2_500

    def test_database_failure_is_unhealthy(self):
        report = _checker(store=FakeStore(error=OperationTimeoutError(code="STORE_TIMEOUT"))).database()
        assert report == {"status": "unhealthy", "service": "database", "error": "STORE_TIMEOUT"}

    def test_cache_outage_is_only_a_warning(self):
        assert _checker(cache=DownCache()).cache_check()["status"] == "warning"
        assert _checker(cache=NullCacheBackend()).cache_check()["backend"] == "none"

    def test_queue_stats_include_known_and_discovered_queues(self):
        queue = InMemoryJobQueue()
        queue.enqueue(queue_name="extra", payload={}, options=JobOptions())
        queue.pause("maintenance")
        report = _checker(queue=queue).queue_check()
        assert report["status"] == "healthy"
        assert set(report["stats"]) == {"tailoring", "maintenance", "extra"}
        assert report["stats"]["maintenance"]["paused"] is True
        assert report["stats"]["extra"]["waiting"] == 1
        assert report["total_jobs"] == 1

    def test_queue_backlog_warns(self):
        queue = InMemoryJobQueue()
        for _ in range(3):
            queue.enqueue(queue_name="tailoring", payload={}, options=JobOptions())
        report = _checker(queue=queue, backlog_warn=2).queue_check()
        assert report["status"] == "warning"
        assert report["backlog"] == ["tailoring"]

    def test_queue_failure_is_unhealthy(self):
        report = _checker(queue=BrokenQueue()).queue_check()
        assert report["status"] == "unhealthy"
        assert report["error"] == "ConnectionError"

    @pytest.mark.parametrize(
        ("host", "status"),
        [
            (_host(), "healthy"),
            (_host(memory_percent=95.0), "warning"),
            (_host(load_1m=3.6, cpu_count=4), "warning"),
            (_host(memory_percent=None, load_1m=None), "healthy"),
        ],
    )
    def test_system_thresholds(self, host, status):
        assert _checker(host_sampler=host).system()["status"] == status

    def test_comprehensive_reports_worst_check(self):
        report = _checker(cache=DownCache()).comprehensive()
        assert report["status"] == "warning"
        assert [check["name"] for check in report["checks"]] == ["basic", "database", "cache", "queue", "system"]
        assert "request_count" in report["metrics"]

    def test_comprehensive_survives_crashing_check(self):
        def crash():
            raise RuntimeError("sampler crashed")

        report = _checker(host_sampler=crash).comprehensive()
        assert report["status"] == "unhealthy"
        assert report["checks"][-1] == {"name": "system", "status": "unhealthy", "error": "RuntimeError"}

    def test_metrics_report(self):
        report = _checker().metrics_report()
        assert report["system"]["pid"] == 123
        assert report["metrics"]["request_count"] == 0


def test_sample_host_shape():
    host = sample_host()
    assert set(host) >= {"memory_percent", "load_1m", "cpu_count", "pid"}
    assert host["cpu_count"] >= 1


def test_monitor_keeps_last_report():
    monitor = HealthMonitor(checker=_checker(store=FakeStore(error=OperationTimeoutError())), interval_s=60)
    assert monitor.last_report is None
    report = monitor.run_once()
    assert report["status"] == "unhealthy"
    assert monitor.last_report is report


def test_monitor_thread_starts_and_stops():
    monitor = HealthMonitor(checker=_checker(), interval_s=0.01)
    monitor.start()
    try:
        assert monitor.is_running
    finally:
        monitor.stop()
    assert not monitor.is_running


class TestHealthEndpoints:
    def test_basic_health(self, client):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    @pytest.mark.parametrize("path", ["/health/database", "/health/cache", "/health/redis", "/health/queue"])
    def test_component_checks(self, client, path):
        resp = client.get(path)
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"

    def test_comprehensive_includes_tailoring_queue(self, client):
        body = client.get("/health/comprehensive").json()
        queue_check = next(check for check in body["checks"] if check["name"] == "queue")
        assert "tailoring" in queue_check["stats"]

    def test_unhealthy_database_is_503(self, client, monkeypatch):
        runtime = client.app.state.runtime

        def broken_ping():
            raise OperationTimeoutError(code="STORE_TIMEOUT")

        monkeypatch.setattr(runtime.store, "ping", broken_ping)
        resp = client.get("/health/database")
        assert resp.status_code == 503
        assert resp.json()["error"] == "STORE_TIMEOUT"

    def test_metrics_count_requests(self, client):
        client.get("/health")
        client.get("/submissions/not-a-uuid")
        metrics = client.get("/metrics").json()["metrics"]
        assert metrics["request_count"] >= 2
        assert metrics["error_count"] >= 1
