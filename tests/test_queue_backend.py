from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from cvtailor.queue_backend import (
    BackoffPolicy,
    InMemoryJobQueue,
    JobOptions,
    RedisJobQueue,
    SqliteJobQueue,
    create_queue_backend,
    default_job_options,
)
from cvtailor.settings import Settings


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += timedelta(milliseconds=ms)


class FakeRedis:
    """Just enough of the redis client surface for the job queue."""

    def __init__(self) -> None:
        self.strings: dict[str, str] = {}
        self.sets: dict[str, set[str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}

    def set(self, key, value, nx=False):
        if nx and key in self.strings:
            return None
        self.strings[key] = value
        return True

    def get(self, key):
        return self.strings.get(key)

    def sadd(self, key, *members):
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    def srem(self, key, *members):
        bucket = self.sets.get(key, set())
        removed = len(bucket & set(members))
        bucket.difference_update(members)
        return removed

    def smembers(self, key):
        return set(self.sets.get(key, set()))

    def sismember(self, key, member):
        return member in self.sets.get(key, set())

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrem(self, key, *members):
        bucket = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if bucket.pop(member, None) is not None:
                removed += 1
        return removed

    def _ordered(self, key):
        bucket = self.zsets.get(key, {})
        return sorted(bucket, key=lambda member: (bucket[member], member))

    @staticmethod
    def _slice(items, start, end):
        stop = None if end == -1 else end + 1
        return items[start:stop]

    def zrange(self, key, start, end):
        return self._slice(self._ordered(key), start, end)

    def zrevrange(self, key, start, end):
        return self._slice(list(reversed(self._ordered(key))), start, end)

    def zrangebyscore(self, key, low, high, start=None, num=None):
        bucket = self.zsets.get(key, {})
        lo, hi = float(low), float(high)
        items = [member for member in self._ordered(key) if lo <= bucket[member] <= hi]
        if start is not None and num is not None:
            items = items[start : start + num]
        return items

    def zcard(self, key):
        return len(self.zsets.get(key, {}))

    def delete(self, *keys):
        removed = 0
        for key in keys:
            for store in (self.strings, self.sets, self.zsets):
                if store.pop(key, None) is not None:
                    removed += 1
        return removed

    def ping(self):
        return True


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sqlite", "redis"])
def make_queue(request, tmp_path, clock):
    def factory(**kwargs):
        kwargs.setdefault("clock", clock)
        if request.param == "memory":
            return InMemoryJobQueue(**kwargs)
        if request.param == "sqlite":
            return SqliteJobQueue(tmp_path / "queue.sqlite3", **kwargs)
        return RedisJobQueue(namespace="test", client=FakeRedis(), **kwargs)

    return factory


def _options(**kwargs) -> JobOptions:
    kwargs.setdefault("backoff", BackoffPolicy(base_delay_ms=1_000, max_delay_ms=60_000))
    return JobOptions(**kwargs)


class TestBackoffPolicy:
    def test_exponential_delays_double_and_cap(self):
        policy = BackoffPolicy(base_delay_ms=2_000, max_delay_ms=60_000)
        assert [policy.delay_ms(n) for n in (1, 2, 3)] == [2_000, 4_000, 8_000]
        assert policy.delay_ms(10) == 60_000

    def test_fixed_delay(self):
        assert BackoffPolicy(kind="fixed", base_delay_ms=500).delay_ms(4) == 500


class TestJobLifecycle:
    def test_enqueue_claim_complete(self, make_queue):
        queue = make_queue()
        job = queue.enqueue(queue_name="tailoring", payload={"submission_id": "s-1"}, options=_options())
        assert job.state == "waiting"
        assert queue.counts(queue_name="tailoring")["waiting"] == 1

        claimed = queue.claim(queue_name="tailoring")
        assert claimed.job_id == job.job_id
        assert claimed.state == "active"
        assert queue.claim(queue_name="tailoring") is None

        done = queue.complete(job_id=job.job_id, result={"ok": True})
        assert done.state == "completed"
        assert done.attempt == 1
        assert done.result == {"ok": True}
        assert queue.get(job.job_id).is_terminal
        assert queue.queue_names() == ["tailoring"]

    def test_finishing_a_job_that_is_not_active_is_a_noop(self, make_queue):
        queue = make_queue()
        job = queue.enqueue(queue_name="tailoring", payload={}, options=_options())
        assert queue.complete(job_id=job.job_id) is None
        assert queue.fail(job_id="missing", error={"type": "X"}) is None

    def test_retries_with_exponential_backoff_then_fails(self, make_queue, clock):
        queue = make_queue()
        job = queue.enqueue(queue_name="tailoring", payload={}, options=_options(max_attempts=3))

        queue.claim(queue_name="tailoring")
        first = queue.fail(job_id=job.job_id, error={"type": "GenerativeServiceError"})
        assert first.state == "waiting"
        assert first.attempt_log[-1]["retry_delay_ms"] == 1_000
        assert queue.claim(queue_name="tailoring") is None

        clock.advance(1_000)
        assert queue.claim(queue_name="tailoring") is not None
        second = queue.fail(job_id=job.job_id, error={"type": "GenerativeServiceError"})
        assert second.attempt_log[-1]["retry_delay_ms"] == 2_000

        clock.advance(1_999)
        assert queue.claim(queue_name="tailoring") is None
        clock.advance(1)
        assert queue.claim(queue_name="tailoring") is not None
        final = queue.fail(job_id=job.job_id, error={"type": "GenerativeServiceError", "code": "GENERATIVE_UNAVAILABLE"})
        assert final.state == "failed"
        assert final.attempt == 3
        assert final.last_error["code"] == "GENERATIVE_UNAVAILABLE"
        assert [entry["outcome"] for entry in final.attempt_log] == ["error", "error", "error"]

        clock.advance(600_000)
        assert queue.claim(queue_name="tailoring") is None
        assert queue.counts(queue_name="tailoring")["failed"] == 1

    def test_lower_priority_number_is_claimed_first(self, make_queue):
        queue = make_queue()
        queue.enqueue(queue_name="work", payload={"n": "maintenance"}, options=_options(priority=10))
        queue.enqueue(queue_name="work", payload={"n": "tailor"}, options=_options(priority=1))
        assert queue.claim(queue_name="work").payload == {"n": "tailor"}
        assert queue.claim(queue_name="work").payload == {"n": "maintenance"}

    def test_delayed_job_waits(self, make_queue, clock):
        queue = make_queue()
        queue.enqueue(queue_name="work", payload={}, options=_options(delay_ms=5_000))
        assert queue.claim(queue_name="work") is None
        clock.advance(5_000)
        assert queue.claim(queue_name="work") is not None

    def test_enqueue_is_idempotent_on_job_id(self, make_queue):
        queue = make_queue()
        first = queue.enqueue(queue_name="work", payload={"n": 1}, options=_options(job_id="tailor:abc"))
        second = queue.enqueue(queue_name="work", payload={"n": 2}, options=_options(job_id="tailor:abc"))
        assert first.job_id == second.job_id == "tailor:abc"
        assert second.payload == {"n": 1}
        assert queue.counts(queue_name="work")["waiting"] == 1

    def test_pause_and_resume(self, make_queue):
        queue = make_queue()
        queue.enqueue(queue_name="work", payload={}, options=_options())
        queue.pause("work")
        assert queue.is_paused("work")
        assert queue.claim(queue_name="work") is None
        queue.resume("work")
        assert queue.claim(queue_name="work") is not None

    def test_global_pause_covers_every_queue(self, make_queue):
        queue = make_queue()
        queue.enqueue(queue_name="other", payload={}, options=_options())
        queue.pause()
        assert queue.is_paused("other")
        assert queue.claim(queue_name="other") is None
        queue.resume()
        assert not queue.is_paused("other")

    def test_retention_keeps_newest_finished_jobs(self, make_queue, clock):
        queue = make_queue(retain_completed=2)
        ids = []
        for n in range(3):
            job = queue.enqueue(queue_name="work", payload={"n": n}, options=_options(job_id=f"job-{n}"))
            queue.claim(queue_name="work")
            clock.advance(1_000)
            queue.complete(job_id=job.job_id)
            ids.append(job.job_id)

        assert queue.get("job-0") is None
        listed = queue.list_jobs(queue_name="work", state="completed")
        assert [job.job_id for job in listed] == ["job-2", "job-1"]
        assert queue.counts(queue_name="work")["completed"] == 2

    def test_stalled_active_jobs_are_requeued(self, make_queue, clock):
        queue = make_queue()
        job = queue.enqueue(queue_name="work", payload={}, options=_options())
        queue.claim(queue_name="work")
        clock.advance(10_000)
        assert queue.requeue_stalled(queue_name="work", stalled_after_ms=30_000) == 0

        clock.advance(30_000)
        assert queue.requeue_stalled(queue_name="work", stalled_after_ms=30_000) == 1
        requeued = queue.get(job.job_id)
        assert requeued.state == "waiting"
        assert requeued.attempt_log[-1]["outcome"] == "stalled"
        assert queue.claim(queue_name="work").job_id == job.job_id

    def test_wait_for_returns_terminal_job(self, make_queue):
        queue = make_queue()
        job = queue.enqueue(queue_name="work", payload={}, options=_options())
        queue.claim(queue_name="work")
        queue.complete(job_id=job.job_id, result=1)
        assert queue.wait_for(job.job_id, timeout_s=0.1).state == "completed"

    def test_wait_for_gives_up_with_last_seen_state(self, make_queue):
        queue = make_queue()
        job = queue.enqueue(queue_name="work", payload={}, options=_options())
        assert queue.wait_for(job.job_id, timeout_s=0.05).state == "waiting"
        assert queue.wait_for("missing", timeout_s=0.05) is None

    def test_reset_clears_jobs_and_pauses(self, make_queue):
        queue = make_queue()
        job = queue.enqueue(queue_name="work", payload={}, options=_options())
        queue.pause("work")
        queue.reset()
        assert queue.get(job.job_id) is None
        assert not queue.is_paused("work")


def test_sqlite_queue_survives_reopen(tmp_path, clock):
    path = tmp_path / "queue.sqlite3"
    first = SqliteJobQueue(path, clock=clock)
    job = first.enqueue(queue_name="tailoring", payload={"submission_id": "s-1"}, options=_options())
    first.pause("maintenance")

    second = SqliteJobQueue(path, clock=clock)
    assert second.get(job.job_id).payload == {"submission_id": "s-1"}
    assert second.is_paused("maintenance")
    assert second.claim(queue_name="tailoring").job_id == job.job_id


def test_queue_factory(tmp_path):
    assert isinstance(create_queue_backend(Settings()), InMemoryJobQueue)
    sqlite_queue = create_queue_backend(
        Settings(queue_backend="sqlite", queue_sqlite_path=str(tmp_path / "q.sqlite3"), queue_retain_completed=7)
    )
    assert isinstance(sqlite_queue, SqliteJobQueue)
    assert sqlite_queue.retain_completed == 7
    with pytest.raises(RuntimeError, match="unsupported queue backend"):
        create_queue_backend(Settings(queue_backend="kafka"))


def test_default_job_options_follow_settings():
    settings = Settings(job_max_attempts=5, job_backoff_base_ms=1_500, job_backoff_max_ms=30_000)
    options = default_job_options(settings, priority=1, job_id="tailor:x")
    assert options.max_attempts == 5
    assert options.backoff.base_delay_ms == 1_500
    assert options.backoff.max_delay_ms == 30_000
    assert options.priority == 1
    assert options.job_id == "tailor:x"
