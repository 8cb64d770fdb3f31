"""
Named job queues with per-job retry, exponential backoff and bounded retention.

A job moves ``waiting -> active -> completed`` or, after a raising execution,
back to ``waiting`` with a backoff delay until ``attempt`` reaches
``max_attempts``, at which point it is ``failed`` and never retried again.
Three brokers share the same contract: in-process memory, SQLite for a single
host, and Redis for several worker processes. The broker is the only arbiter
of which worker runs a job; delivery is at-least-once.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from cvtailor.settings import Settings

JOB_STATES = ("waiting", "active", "completed", "failed")
TERMINAL_JOB_STATES = frozenset({"completed", "failed"})

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(dt: datetime) -> str:
    return dt.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_iso(raw: str | None) -> datetime | None:
    if not raw:
        return None
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


@dataclass
class BackoffPolicy:
    kind: str = "exponential"
    base_delay_ms: int = 2_000
    max_delay_ms: int = 60_000

    def delay_ms(self, attempt: int) -> int:
        """Delay before the retry that follows failed execution number ``attempt``."""
        base = max(0, int(self.base_delay_ms))
        if self.kind == "fixed":
            return base
        delay = base * (2 ** max(0, int(attempt) - 1))
        if self.max_delay_ms > 0:
            delay = min(delay, int(self.max_delay_ms))
        return delay


@dataclass
class JobOptions:
    priority: int = 0
    delay_ms: int = 0
    max_attempts: int = 3
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    job_id: str | None = None


@dataclass
class Job:
    job_id: str
    queue_name: str
    payload: dict[str, Any]
    state: str = "waiting"
    attempt: int = 0
    max_attempts: int = 3
    priority: int = 0
    backoff_kind: str = "exponential"
    backoff_base_ms: int = 2_000
    backoff_max_ms: int = 60_000
    available_at: str = ""
    created_at: str = ""
    updated_at: str = ""
    started_at: str | None = None
    finished_at: str | None = None
    result: Any = None
    last_error: dict[str, Any] | None = None
    attempt_log: list[dict[str, Any]] = field(default_factory=list)

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(
            kind=self.backoff_kind,
            base_delay_ms=self.backoff_base_ms,
            max_delay_ms=self.backoff_max_ms,
        )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_JOB_STATES

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Job":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_json(self) -> str:
        return json.dumps(self.as_dict(), ensure_ascii=True, sort_keys=True, separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls.from_dict(json.loads(raw))


def _new_job(
    *,
    queue_name: str,
    payload: dict[str, Any],
    options: JobOptions,
    now: datetime,
) -> Job:
    return Job(
        job_id=options.job_id or f"job_{uuid.uuid4().hex[:16]}",
        queue_name=queue_name,
        payload=dict(payload),
        max_attempts=max(1, int(options.max_attempts)),
        priority=int(options.priority),
        backoff_kind=options.backoff.kind,
        backoff_base_ms=int(options.backoff.base_delay_ms),
        backoff_max_ms=int(options.backoff.max_delay_ms),
        available_at=_iso(now + timedelta(milliseconds=max(0, int(options.delay_ms)))),
        created_at=_iso(now),
        updated_at=_iso(now),
    )


def _mark_active(job: Job, now: datetime) -> Job:
    job.state = "active"
    job.started_at = _iso(now)
    job.updated_at = _iso(now)
    return job


def _mark_completed(job: Job, result: Any, now: datetime) -> Job:
    job.attempt = min(job.max_attempts, job.attempt + 1)
    job.state = "completed"
    job.result = result
    job.finished_at = _iso(now)
    job.updated_at = _iso(now)
    job.attempt_log.append({"attempt": job.attempt, "outcome": "completed", "at": _iso(now)})
    return job


def _mark_failed_attempt(job: Job, error: dict[str, Any], now: datetime) -> Job:
    job.attempt = min(job.max_attempts, job.attempt + 1)
    job.last_error = dict(error)
    job.updated_at = _iso(now)
    entry: dict[str, Any] = {"attempt": job.attempt, "outcome": "error", "at": _iso(now), "error": dict(error)}
    if job.attempt >= job.max_attempts:
        job.state = "failed"
        job.finished_at = _iso(now)
    else:
        delay_ms = job.backoff.delay_ms(job.attempt)
        job.state = "waiting"
        job.available_at = _iso(now + timedelta(milliseconds=delay_ms))
        entry["retry_delay_ms"] = delay_ms
    job.attempt_log.append(entry)
    return job


def _mark_stalled(job: Job, now: datetime) -> Job:
    job.state = "waiting"
    job.available_at = _iso(now)
    job.updated_at = _iso(now)
    job.attempt_log.append({"attempt": job.attempt, "outcome": "stalled", "at": _iso(now)})
    return job


def _claim_order(job: Job) -> tuple[int, str, str, str]:
    return (job.priority, job.available_at, job.created_at, job.job_id)


class JobQueueBackend:
    backend_name = "base"

    def __init__(
        self,
        *,
        retain_completed: int = 100,
        retain_failed: int = 50,
        clock: Clock = _utcnow,
        poll_interval_s: float = 0.05,
    ) -> None:
        self.retain_completed = max(0, int(retain_completed))
        self.retain_failed = max(0, int(retain_failed))
        self._clock = clock
        self._poll_interval_s = max(0.001, float(poll_interval_s))

    def _now(self) -> datetime:
        return self._clock()

    def enqueue(self, *, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None) -> Job:
        raise NotImplementedError

    def claim(self, *, queue_name: str) -> Job | None:
        raise NotImplementedError

    def complete(self, *, job_id: str, result: Any = None) -> Job | None:
        raise NotImplementedError

    def fail(self, *, job_id: str, error: dict[str, Any]) -> Job | None:
        raise NotImplementedError

    def get(self, job_id: str) -> Job | None:
        raise NotImplementedError

    def list_jobs(self, *, queue_name: str, state: str, limit: int = 50) -> list[Job]:
        raise NotImplementedError

    def counts(self, *, queue_name: str) -> dict[str, int]:
        raise NotImplementedError

    def queue_names(self) -> list[str]:
        raise NotImplementedError

    def pause(self, queue_name: str | None = None) -> None:
        raise NotImplementedError

    def resume(self, queue_name: str | None = None) -> None:
        raise NotImplementedError

    def is_paused(self, queue_name: str) -> bool:
        raise NotImplementedError

    def requeue_stalled(self, *, queue_name: str, stalled_after_ms: int) -> int:
        raise NotImplementedError

    def prune(self, *, queue_name: str) -> int:
        raise NotImplementedError

    def ping(self) -> None:
        return None

    def reset(self) -> None:
        raise NotImplementedError

    def wait_for(self, job_id: str, *, timeout_s: float) -> Job | None:
        """Block until the job is terminal; returns the last seen state on timeout."""
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        job = self.get(job_id)
        while job is not None and not job.is_terminal:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            time.sleep(min(self._poll_interval_s, remaining))
            job = self.get(job_id)
        return job


class InMemoryJobQueue(JobQueueBackend):
    backend_name = "memory"

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self._jobs: dict[str, Job] = {}
        self._queues: set[str] = set()
        self._paused: set[str] = set()

    @staticmethod
    def _copy(job: Job) -> Job:
        return Job.from_dict(json.loads(job.to_json()))

    def enqueue(self, *, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None) -> Job:
        opts = options or JobOptions()
        with self._lock:
            if opts.job_id and opts.job_id in self._jobs:
                return self._copy(self._jobs[opts.job_id])
            job = _new_job(queue_name=queue_name, payload=payload, options=opts, now=self._now())
            self._jobs[job.job_id] = job
            self._queues.add(queue_name)
            self._changed.notify_all()
            return self._copy(job)

    def claim(self, *, queue_name: str) -> Job | None:
        with self._lock:
            if self.is_paused(queue_name):
                return None
            now_iso = _iso(self._now())
            ready = [
                job
                for job in self._jobs.values()
                if job.queue_name == queue_name and job.state == "waiting" and job.available_at <= now_iso
            ]
            if not ready:
                return None
            job = min(ready, key=_claim_order)
            _mark_active(job, self._now())
            return self._copy(job)

    def _finish(self, job_id: str, apply: Callable[[Job], Job]) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.state != "active":
                return None
            apply(job)
            if job.is_terminal:
                self.prune(queue_name=job.queue_name)
            self._changed.notify_all()
            return self._copy(job)

    def complete(self, *, job_id: str, result: Any = None) -> Job | None:
        return self._finish(job_id, lambda job: _mark_completed(job, result, self._now()))

    def fail(self, *, job_id: str, error: dict[str, Any]) -> Job | None:
        return self._finish(job_id, lambda job: _mark_failed_attempt(job, error, self._now()))

    def get(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._copy(job) if job is not None else None

    def list_jobs(self, *, queue_name: str, state: str, limit: int = 50) -> list[Job]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.queue_name == queue_name and j.state == state]
            jobs.sort(key=lambda j: j.updated_at, reverse=True)
            return [self._copy(j) for j in jobs[: max(0, int(limit))]]

    def counts(self, *, queue_name: str) -> dict[str, int]:
        with self._lock:
            out = {state: 0 for state in JOB_STATES}
            for job in self._jobs.values():
                if job.queue_name == queue_name:
                    out[job.state] += 1
            return out

    def queue_names(self) -> list[str]:
        with self._lock:
            return sorted(self._queues)

    def pause(self, queue_name: str | None = None) -> None:
        with self._lock:
            self._paused.add(queue_name or "*")

    def resume(self, queue_name: str | None = None) -> None:
        with self._lock:
            if queue_name is None:
                self._paused.clear()
            else:
                self._paused.discard(queue_name)
            self._changed.notify_all()

    def is_paused(self, queue_name: str) -> bool:
        with self._lock:
            return "*" in self._paused or queue_name in self._paused

    def requeue_stalled(self, *, queue_name: str, stalled_after_ms: int) -> int:
        with self._lock:
            cutoff = _iso(self._now() - timedelta(milliseconds=max(0, int(stalled_after_ms))))
            moved = 0
            for job in self._jobs.values():
                if job.queue_name != queue_name or job.state != "active":
                    continue
                if (job.started_at or "") <= cutoff:
                    _mark_stalled(job, self._now())
                    moved += 1
            if moved:
                self._changed.notify_all()
            return moved

    def prune(self, *, queue_name: str) -> int:
        with self._lock:
            removed = 0
            for state, keep in (("completed", self.retain_completed), ("failed", self.retain_failed)):
                finished = [j for j in self._jobs.values() if j.queue_name == queue_name and j.state == state]
                finished.sort(key=lambda j: (j.finished_at or "", j.job_id), reverse=True)
                for job in finished[keep:]:
                    self._jobs.pop(job.job_id, None)
                    removed += 1
            return removed

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
            self._queues.clear()
            self._paused.clear()
            self._changed.notify_all()

    def wait_for(self, job_id: str, *, timeout_s: float) -> Job | None:
        deadline = time.monotonic() + max(0.0, float(timeout_s))
        with self._lock:
            while True:
                job = self._jobs.get(job_id)
                if job is None or job.is_terminal:
                    return self._copy(job) if job is not None else None
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return self._copy(job)
                self._changed.wait(timeout=remaining)


class SqliteJobQueue(JobQueueBackend):
    """SQLite-backed queue for single-host persistence and replay tests."""

    backend_name = "sqlite"

    def __init__(self, db_path: str | Path, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=10.0)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_jobs (
                    job_id TEXT PRIMARY KEY,
                    queue_name TEXT NOT NULL,
                    state TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 0,
                    available_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    data TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_queue_jobs_claim
                ON queue_jobs(queue_name, state, priority, available_at, created_at)
                """
            )
            conn.execute("CREATE TABLE IF NOT EXISTS queue_pauses (queue_name TEXT PRIMARY KEY)")
            conn.commit()

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> Job:
        return Job.from_json(row["data"])

    @staticmethod
    def _write(conn: sqlite3.Connection, job: Job) -> None:
        conn.execute(
            """
            INSERT INTO queue_jobs(job_id, queue_name, state, priority, available_at, created_at, started_at, finished_at, data)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(job_id) DO UPDATE SET
                state = excluded.state,
                available_at = excluded.available_at,
                started_at = excluded.started_at,
                finished_at = excluded.finished_at,
                data = excluded.data
            """,
            (
                job.job_id,
                job.queue_name,
                job.state,
                job.priority,
                job.available_at,
                job.created_at,
                job.started_at,
                job.finished_at,
                job.to_json(),
            ),
        )

    def enqueue(self, *, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None) -> Job:
        opts = options or JobOptions()
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                if opts.job_id:
                    row = conn.execute("SELECT data FROM queue_jobs WHERE job_id = ?", (opts.job_id,)).fetchone()
                    if row is not None:
                        conn.commit()
                        return self._row_to_job(row)
                job = _new_job(queue_name=queue_name, payload=payload, options=opts, now=self._now())
                self._write(conn, job)
                conn.commit()
                return job

    def claim(self, *, queue_name: str) -> Job | None:
        with self._lock:
            if self.is_paused(queue_name):
                return None
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    """
                    SELECT data FROM queue_jobs
                    WHERE queue_name = ? AND state = 'waiting' AND available_at <= ?
                    ORDER BY priority ASC, available_at ASC, created_at ASC, job_id ASC
                    LIMIT 1
                    """,
                    (queue_name, _iso(self._now())),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                job = _mark_active(self._row_to_job(row), self._now())
                self._write(conn, job)
                conn.commit()
                return job

    def _finish(self, job_id: str, apply: Callable[[Job], Job]) -> Job | None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                row = conn.execute(
                    "SELECT data FROM queue_jobs WHERE job_id = ? AND state = 'active'",
                    (job_id,),
                ).fetchone()
                if row is None:
                    conn.commit()
                    return None
                job = apply(self._row_to_job(row))
                self._write(conn, job)
                conn.commit()
            if job.is_terminal:
                self.prune(queue_name=job.queue_name)
            return job

    def complete(self, *, job_id: str, result: Any = None) -> Job | None:
        return self._finish(job_id, lambda job: _mark_completed(job, result, self._now()))

    def fail(self, *, job_id: str, error: dict[str, Any]) -> Job | None:
        return self._finish(job_id, lambda job: _mark_failed_attempt(job, error, self._now()))

    def get(self, job_id: str) -> Job | None:
        with self._connect() as conn:
            row = conn.execute("SELECT data FROM queue_jobs WHERE job_id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row is not None else None

    def list_jobs(self, *, queue_name: str, state: str, limit: int = 50) -> list[Job]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT data FROM queue_jobs
                WHERE queue_name = ? AND state = ?
                ORDER BY COALESCE(finished_at, started_at, created_at) DESC
                LIMIT ?
                """,
                (queue_name, state, max(0, int(limit))),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def counts(self, *, queue_name: str) -> dict[str, int]:
        out = {state: 0 for state in JOB_STATES}
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM queue_jobs WHERE queue_name = ? GROUP BY state",
                (queue_name,),
            ).fetchall()
        for row in rows:
            out[str(row["state"])] = int(row["n"])
        return out

    def queue_names(self) -> list[str]:
        with self._connect() as conn:
            rows = conn.execute("SELECT DISTINCT queue_name FROM queue_jobs ORDER BY queue_name").fetchall()
        return [str(row["queue_name"]) for row in rows]

    def pause(self, queue_name: str | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("INSERT OR IGNORE INTO queue_pauses(queue_name) VALUES (?)", (queue_name or "*",))
                conn.commit()

    def resume(self, queue_name: str | None = None) -> None:
        with self._lock:
            with self._connect() as conn:
                if queue_name is None:
                    conn.execute("DELETE FROM queue_pauses")
                else:
                    conn.execute("DELETE FROM queue_pauses WHERE queue_name = ?", (queue_name,))
                conn.commit()

    def is_paused(self, queue_name: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM queue_pauses WHERE queue_name IN ('*', ?) LIMIT 1",
                (queue_name,),
            ).fetchone()
        return row is not None

    def requeue_stalled(self, *, queue_name: str, stalled_after_ms: int) -> int:
        cutoff = _iso(self._now() - timedelta(milliseconds=max(0, int(stalled_after_ms))))
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                rows = conn.execute(
                    """
                    SELECT data FROM queue_jobs
                    WHERE queue_name = ? AND state = 'active' AND COALESCE(started_at, '') <= ?
                    """,
                    (queue_name, cutoff),
                ).fetchall()
                for row in rows:
                    self._write(conn, _mark_stalled(self._row_to_job(row), self._now()))
                conn.commit()
        return len(rows)

    def prune(self, *, queue_name: str) -> int:
        removed = 0
        with self._lock:
            with self._connect() as conn:
                for state, keep in (("completed", self.retain_completed), ("failed", self.retain_failed)):
                    cursor = conn.execute(
                        """
                        DELETE FROM queue_jobs
                        WHERE job_id IN (
                            SELECT job_id FROM queue_jobs
                            WHERE queue_name = ? AND state = ?
                            ORDER BY finished_at DESC, job_id DESC
                            LIMIT -1 OFFSET ?
                        )
                        """,
                        (queue_name, state, keep),
                    )
                    removed += max(0, cursor.rowcount)
                conn.commit()
        return removed

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM queue_jobs")
                conn.execute("DELETE FROM queue_pauses")
                conn.commit()


def _import_redis() -> Any:
    try:
        import redis  # type: ignore
    except ImportError as exc:
        raise RuntimeError("redis is required for QUEUE_BACKEND=redis; install redis>=5") from exc
    return redis


class RedisJobQueue(JobQueueBackend):
    """Redis-backed queue shared by API and worker processes."""

    backend_name = "redis"
    _CLAIM_SCAN = 50

    def __init__(
        self,
        *,
        host: str = "localhost",
        port: int = 6379,
        password: str = "",
        db: int = 0,
        namespace: str = "cvtailor",
        client: Any | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._namespace = namespace.strip() or "cvtailor"
        self._lock = threading.RLock()
        if client is not None:
            self._client = client
        else:
            redis = _import_redis()
            self._client = redis.Redis(
                host=host,
                port=int(port),
                password=password or None,
                db=int(db),
                decode_responses=True,
            )

    def _job_key(self, job_id: str) -> str:
        return f"{self._namespace}:job:{job_id}"

    def _state_key(self, queue_name: str, state: str) -> str:
        return f"{self._namespace}:queue:{queue_name}:{state}"

    def _queues_key(self) -> str:
        return f"{self._namespace}:queues"

    def _paused_key(self) -> str:
        return f"{self._namespace}:paused"

    @staticmethod
    def _score(iso_value: str) -> float:
        dt = _parse_iso(iso_value) or _utcnow()
        return dt.timestamp() * 1000.0

    def _load(self, job_id: str) -> Job | None:
        raw = self._client.get(self._job_key(job_id))
        if not isinstance(raw, str) or not raw:
            return None
        try:
            return Job.from_json(raw)
        except (TypeError, ValueError):
            return None

    def _save(self, job: Job) -> None:
        self._client.set(self._job_key(job.job_id), job.to_json())

    def enqueue(self, *, queue_name: str, payload: dict[str, Any], options: JobOptions | None = None) -> Job:
        opts = options or JobOptions()
        with self._lock:
            job = _new_job(queue_name=queue_name, payload=payload, options=opts, now=self._now())
            created = self._client.set(self._job_key(job.job_id), job.to_json(), nx=True)
            if not created:
                existing = self._load(job.job_id)
                if existing is not None:
                    return existing
                self._save(job)
            self._client.sadd(self._queues_key(), queue_name)
            self._client.zadd(self._state_key(queue_name, "waiting"), {job.job_id: self._score(job.available_at)})
            return job

    def claim(self, *, queue_name: str) -> Job | None:
        with self._lock:
            if self.is_paused(queue_name):
                return None
            waiting_key = self._state_key(queue_name, "waiting")
            now = self._now()
            ids = self._client.zrangebyscore(waiting_key, "-inf", now.timestamp() * 1000.0, start=0, num=self._CLAIM_SCAN)
            candidates: list[Job] = []
            for job_id in ids:
                job = self._load(job_id)
                if job is None:
                    self._client.zrem(waiting_key, job_id)
                    continue
                candidates.append(job)
            for job in sorted(candidates, key=_claim_order):
                # zrem is the atomic hand-off between competing workers
                if int(self._client.zrem(waiting_key, job.job_id)) != 1:
                    continue
                _mark_active(job, now)
                self._save(job)
                self._client.zadd(self._state_key(queue_name, "active"), {job.job_id: self._score(job.started_at or "")})
                return job
            return None

    def _finish(self, job_id: str, apply: Callable[[Job], Job]) -> Job | None:
        with self._lock:
            job = self._load(job_id)
            if job is None or job.state != "active":
                return None
            queue_name = job.queue_name
            apply(job)
            self._save(job)
            self._client.zrem(self._state_key(queue_name, "active"), job.job_id)
            if job.state == "waiting":
                self._client.zadd(self._state_key(queue_name, "waiting"), {job.job_id: self._score(job.available_at)})
            else:
                self._client.zadd(
                    self._state_key(queue_name, job.state),
                    {job.job_id: self._score(job.finished_at or "")},
                )
                self.prune(queue_name=queue_name)
            return job

    def complete(self, *, job_id: str, result: Any = None) -> Job | None:
        return self._finish(job_id, lambda job: _mark_completed(job, result, self._now()))

    def fail(self, *, job_id: str, error: dict[str, Any]) -> Job | None:
        return self._finish(job_id, lambda job: _mark_failed_attempt(job, error, self._now()))

    def get(self, job_id: str) -> Job | None:
        return self._load(job_id)

    def list_jobs(self, *, queue_name: str, state: str, limit: int = 50) -> list[Job]:
        ids = self._client.zrevrange(self._state_key(queue_name, state), 0, max(0, int(limit)) - 1)
        jobs = [self._load(job_id) for job_id in ids]
        return [job for job in jobs if job is not None]

    def counts(self, *, queue_name: str) -> dict[str, int]:
        return {state: int(self._client.zcard(self._state_key(queue_name, state))) for state in JOB_STATES}

    def queue_names(self) -> list[str]:
        return sorted(str(x) for x in self._client.smembers(self._queues_key()))

    def pause(self, queue_name: str | None = None) -> None:
        self._client.sadd(self._paused_key(), queue_name or "*")

    def resume(self, queue_name: str | None = None) -> None:
        if queue_name is None:
            self._client.delete(self._paused_key())
        else:
            self._client.srem(self._paused_key(), queue_name)

    def is_paused(self, queue_name: str) -> bool:
        key = self._paused_key()
        return bool(self._client.sismember(key, "*")) or bool(self._client.sismember(key, queue_name))

    def requeue_stalled(self, *, queue_name: str, stalled_after_ms: int) -> int:
        cutoff = self._now() - timedelta(milliseconds=max(0, int(stalled_after_ms)))
        active_key = self._state_key(queue_name, "active")
        moved = 0
        with self._lock:
            for job_id in self._client.zrangebyscore(active_key, "-inf", cutoff.timestamp() * 1000.0):
                if int(self._client.zrem(active_key, job_id)) != 1:
                    continue
                job = self._load(job_id)
                if job is None:
                    continue
                _mark_stalled(job, self._now())
                self._save(job)
                self._client.zadd(self._state_key(queue_name, "waiting"), {job.job_id: self._score(job.available_at)})
                moved += 1
        return moved

    def prune(self, *, queue_name: str) -> int:
        removed = 0
        for state, keep in (("completed", self.retain_completed), ("failed", self.retain_failed)):
            key = self._state_key(queue_name, state)
            total = int(self._client.zcard(key))
            if total <= keep:
                continue
            # oldest first; keep the newest ``keep`` entries
            stale = self._client.zrange(key, 0, total - keep - 1)
            if stale:
                self._client.zrem(key, *stale)
                self._client.delete(*[self._job_key(job_id) for job_id in stale])
                removed += len(stale)
        return removed

    def ping(self) -> None:
        if not self._client.ping():
            raise RuntimeError("redis ping returned a falsy reply")

    def reset(self) -> None:
        with self._lock:
            for queue_name in self.queue_names():
                for state in JOB_STATES:
                    key = self._state_key(queue_name, state)
                    ids = self._client.zrange(key, 0, -1)
                    if ids:
                        self._client.delete(*[self._job_key(job_id) for job_id in ids])
                    self._client.delete(key)
            self._client.delete(self._queues_key(), self._paused_key())


def create_queue_backend(settings: Settings) -> JobQueueBackend:
    common: dict[str, Any] = {
        "retain_completed": settings.queue_retain_completed,
        "retain_failed": settings.queue_retain_failed,
    }
    backend = settings.queue_backend
    if backend == "memory":
        return InMemoryJobQueue(**common)
    if backend == "sqlite":
        return SqliteJobQueue(settings.queue_sqlite_path, **common)
    if backend == "redis":
        return RedisJobQueue(
            host=settings.redis_host,
            port=settings.redis_port,
            password=settings.redis_password,
            db=settings.redis_db,
            namespace=settings.queue_key_prefix,
            **common,
        )
    raise RuntimeError(f"unsupported queue backend: {backend}")


def default_job_options(settings: Settings, **overrides: Any) -> JobOptions:
    options = JobOptions(
        max_attempts=settings.job_max_attempts,
        backoff=BackoffPolicy(
            kind="exponential",
            base_delay_ms=settings.job_backoff_base_ms,
            max_delay_ms=settings.job_backoff_max_ms,
        ),
    )
    for key, value in overrides.items():
        setattr(options, key, value)
    return options
