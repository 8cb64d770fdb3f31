"""
Submission entity, its status machine, and the cache-fronted store.

The repository is authoritative. The cache is read-through on ``get`` and
write-through on ``create``/``update``/``transition`` (store first, cache
second) and is fail-open: a cache failure is logged, counted and otherwise
ignored. Status changes go through ``transition`` only, which validates the
move against the stored row and writes with a compare-and-set on the previous
status so concurrent writers can never regress it.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from cvtailor.cache import CacheBackend
from cvtailor.deadlines import call_with_deadline
from cvtailor.db.postgres import PostgresTxRunner
from cvtailor.errors import (
    ApiError,
    CacheError,
    NotFoundError,
    OperationTimeoutError,
    StateTransitionError,
    StorageError,
    ValidationError,
)
from cvtailor.repositories.submissions import (
    InMemorySubmissionRepository,
    PostgresSubmissionRepository,
    RestSubmissionRepository,
    SqliteSubmissionRepository,
)
from cvtailor.settings import Settings

if TYPE_CHECKING:
    from cvtailor.health import MetricsState

logger = logging.getLogger(__name__)


class SubmissionStatus(str, Enum):
    UPLOADED = "uploaded"
    QUEUED = "queued"
    TAILORING = "tailoring"
    TAILORED = "tailored"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "uploaded": {"queued", "failed"},
    "queued": {"tailoring", "failed"},
    "tailoring": {"tailored", "failed"},
    "tailored": set(),
    "failed": set(),
}
TERMINAL_STATUSES = frozenset({"tailored", "failed"})


def check_transition(current: str, new: str) -> None:
    if new not in ALLOWED_TRANSITIONS:
        raise StateTransitionError(f"unknown submission status: {new}")
    if current == new:
        return
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise StateTransitionError(f"invalid submission transition: {current} -> {new}")


def _utcnow_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class Submission:
    id: str
    original_cv_text: str
    job_spec_text: str
    status: str = SubmissionStatus.UPLOADED.value
    created_at: str = field(default_factory=_utcnow_iso)
    updated_at: str | None = None
    original_cv_url: str | None = None
    job_spec_url: str | None = None
    tailored_cv: dict[str, Any] | None = None
    tailored_cv_url: str | None = None
    job_id: str | None = None
    error_code: str | None = None

    @classmethod
    def new(
        cls,
        *,
        original_cv_text: str,
        job_spec_text: str,
        original_cv_url: str | None = None,
        job_spec_url: str | None = None,
    ) -> "Submission":
        return cls(
            id=str(uuid.uuid4()),
            original_cv_text=original_cv_text,
            job_spec_text=job_spec_text,
            original_cv_url=original_cv_url,
            job_spec_url=job_spec_url,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Submission":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class SubmissionStore:
    def __init__(
        self,
        *,
        repository: Any,
        cache: CacheBackend,
        ttl_s: int = 1_800,
        timeout_ms: int = 10_000,
        key_prefix: str = "cvtailor",
        metrics: "MetricsState | None" = None,
    ) -> None:
        self.repository = repository
        self.cache = cache
        self.ttl_s = max(1, int(ttl_s))
        self.timeout_s = max(1, int(timeout_ms)) / 1000.0
        self.key_prefix = key_prefix
        self.metrics = metrics

    def cache_key(self, submission_id: str) -> str:
        return f"{self.key_prefix}:submission:{submission_id}"

    # store calls

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        try:
            return call_with_deadline(fn, timeout_s=self.timeout_s, name=f"submission-store-{op}")
        except TimeoutError as exc:
            logger.error("store_call_timeout op=%s timeout_s=%s", op, self.timeout_s)
            raise OperationTimeoutError("submission store did not respond in time", code="STORE_TIMEOUT") from exc
        except ApiError:
            logger.exception("store_call_failed op=%s", op)
            raise
        except Exception as exc:
            logger.exception("store_call_failed op=%s", op)
            raise StorageError(details={"op": op, "error": type(exc).__name__}) from exc

    def _read_store(self, submission_id: str) -> Submission | None:
        row = self._call("get", lambda: self.repository.get(submission_id=submission_id))
        return Submission.from_dict(row) if row is not None else None

    # cache calls, all fail-open

    def _cache_failed(self, op: str, submission_id: str, exc: Exception) -> None:
        logger.warning("cache_failed op=%s submission_id=%s error=%s", op, submission_id, exc)
        if self.metrics is not None:
            self.metrics.record_cache_error()

    def _cache_get(self, submission_id: str) -> Submission | None:
        try:
            raw = self.cache.get(self.cache_key(submission_id))
        except CacheError as exc:
            self._cache_failed("get", submission_id, exc)
            return None
        if raw is None:
            return None
        try:
            return Submission.from_dict(json.loads(raw))
        except (TypeError, ValueError) as exc:
            self._cache_failed("decode", submission_id, exc)
            self._cache_delete(submission_id)
            return None

    def _cache_put(self, submission: Submission) -> None:
        payload = json.dumps(submission.as_dict(), ensure_ascii=True, sort_keys=True)
        try:
            self.cache.set(self.cache_key(submission.id), payload, ttl_s=self.ttl_s)
        except CacheError as exc:
            self._cache_failed("set", submission.id, exc)
            self._cache_delete(submission.id)

    def _cache_delete(self, submission_id: str) -> None:
        try:
            self.cache.delete(self.cache_key(submission_id))
        except CacheError as exc:
            self._cache_failed("delete", submission_id, exc)

    # public operations

    def create(self, submission: Submission) -> str:
        if submission.status != SubmissionStatus.UPLOADED.value:
            raise StateTransitionError("new submissions must start as uploaded")
        if not submission.original_cv_text.strip() or not submission.job_spec_text.strip():
            raise ValidationError("submission requires CV text and job specification text")
        record = submission.as_dict()
        self._call("insert", lambda: self.repository.insert(record=record))
        self._cache_put(submission)
        logger.info("submission_created submission_id=%s", submission.id)
        return submission.id

    def find(self, submission_id: str) -> Submission | None:
        cached = self._cache_get(submission_id)
        if cached is not None:
            return cached
        submission = self._read_store(submission_id)
        if submission is not None:
            self._cache_put(submission)
        return submission

    def get(self, submission_id: str) -> Submission:
        submission = self.find(submission_id)
        if submission is None:
            raise NotFoundError("submission not found", code="SUBMISSION_NOT_FOUND")
        return submission

    def get_fresh(self, submission_id: str) -> Submission:
        """Read straight from the store, then refresh the cache."""
        submission = self._read_store(submission_id)
        if submission is None:
            raise NotFoundError("submission not found", code="SUBMISSION_NOT_FOUND")
        self._cache_put(submission)
        return submission

    def update(
        self,
        submission_id: str,
        changes: dict[str, Any],
        *,
        expected_status: str | None = None,
    ) -> Submission:
        if "status" in changes:
            raise ValueError("status changes must go through transition()")
        payload = dict(changes)
        payload["updated_at"] = _utcnow_iso()
        row = self._call(
            "update",
            lambda: self.repository.update(
                submission_id=submission_id,
                fields=payload,
                expected_status=expected_status,
            ),
        )
        if row is None:
            self._cache_delete(submission_id)
            if self._read_store(submission_id) is None:
                raise NotFoundError("submission not found", code="SUBMISSION_NOT_FOUND")
            raise StateTransitionError(
                f"submission is no longer {expected_status}",
                code="SUBMISSION_STATE_CONFLICT",
            )
        submission = Submission.from_dict(row)
        self._cache_put(submission)
        return submission

    def transition(
        self,
        submission_id: str,
        new_status: str,
        *,
        changes: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> Submission:
        current = self._read_store(submission_id)
        if current is None:
            raise NotFoundError("submission not found", code="SUBMISSION_NOT_FOUND")
        if expected_status is not None and current.status != expected_status:
            self._cache_put(current)
            raise StateTransitionError(
                f"submission is {current.status}, expected {expected_status}",
                code="SUBMISSION_STATE_CONFLICT",
            )
        check_transition(current.status, new_status)
        if current.status == new_status and not changes:
            return current
        payload = dict(changes or {})
        payload["status"] = new_status
        payload["updated_at"] = _utcnow_iso()
        row = self._call(
            "transition",
            lambda: self.repository.update(
                submission_id=submission_id,
                fields=payload,
                expected_status=current.status,
            ),
        )
        if row is None:
            self._cache_delete(submission_id)
            raise StateTransitionError(
                f"submission status changed concurrently from {current.status}",
                code="SUBMISSION_STATE_CONFLICT",
            )
        submission = Submission.from_dict(row)
        self._cache_put(submission)
        logger.info(
            "submission_transition submission_id=%s from=%s to=%s",
            submission_id,
            current.status,
            new_status,
        )
        return submission

    def ping(self) -> float:
        """Round-trip the store and return the latency in milliseconds."""
        t0 = time.monotonic()
        self._call("ping", self.repository.ping)
        return round((time.monotonic() - t0) * 1000, 2)

    def reset(self) -> None:
        reset = getattr(self.repository, "reset", None)
        if callable(reset):
            reset()
        cache_reset = getattr(self.cache, "reset", None)
        if callable(cache_reset):
            cache_reset()


def create_submission_repository(settings: Settings) -> Any:
    backend = settings.store_backend
    if backend == "memory":
        return InMemorySubmissionRepository()
    if backend == "sqlite":
        return SqliteSubmissionRepository(
            settings.store_sqlite_path,
            timeout_s=settings.store_query_timeout_ms / 1000.0,
        )
    if backend == "postgres":
        repository = PostgresSubmissionRepository(
            tx_runner=PostgresTxRunner(
                settings.postgres_dsn,
                statement_timeout_ms=settings.store_query_timeout_ms,
            ),
            table_name=settings.store_table,
        )
        repository.ensure_schema()
        return repository
    if backend == "rest":
        return RestSubmissionRepository(
            base_url=settings.store_url,
            api_key=settings.store_key,
            table_name=settings.store_table,
            timeout_s=settings.store_query_timeout_ms / 1000.0,
        )
    raise RuntimeError(f"unsupported submission store backend: {backend}")
