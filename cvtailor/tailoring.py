"""
Tailoring orchestration: submission state machine, generation with bounded
structured-output retries, rendering and job hand-off.

Two retry policies live at different layers. A response that does not parse
as the CV schema is re-requested at once, up to ``generation_max_attempts``
calls, and exhausting them fails the submission for good. Transient failures
(generative service down, store or blob storage errors, timeouts) escape the
job handler so the queue retries the whole job with exponential backoff.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from typing import Any

import jsonschema
from pydantic import ValidationError as PydanticValidationError

from cvtailor.blob_storage import BlobStorage
from cvtailor.errors import (
    ApiError,
    GenerativeFormatError,
    GenerativeServiceError,
    NotFoundError,
    OperationTimeoutError,
    RenderError,
    StateTransitionError,
    StorageError,
    ValidationError,
)
from cvtailor.prompts import build_tailoring_prompt
from cvtailor.queue_backend import Job, JobOptions, JobQueueBackend
from cvtailor.renderer import ArtifactRenderer
from cvtailor.schemas import TailoredCv
from cvtailor.submission_store import Submission, SubmissionStatus, SubmissionStore
from cvtailor.worker_runtime import WorkerRuntime

logger = logging.getLogger(__name__)

TAILORING_QUEUE = "tailoring"
TAILORING_JOB_PRIORITY = 1
ARTIFACT_FILENAME = "tailored_cv.pdf"

_STRING_OR_NULL = {"type": ["string", "null", "number"]}
_LINES = {"anyOf": [{"type": "array", "items": {"type": ["string", "number"]}}, {"type": "string"}, {"type": "null"}]}

CV_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["full_name"],
    "properties": {
        "full_name": {"type": "string", "minLength": 1},
        "email": _STRING_OR_NULL,
        "phone_number": _STRING_OR_NULL,
        "linkedin_url": _STRING_OR_NULL,
        "portfolio_github_url": _STRING_OR_NULL,
        "address": _STRING_OR_NULL,
        "summary": _STRING_OR_NULL,
        "experience": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "job_title": _STRING_OR_NULL,
                    "company_name": _STRING_OR_NULL,
                    "start_date": _STRING_OR_NULL,
                    "end_date": _STRING_OR_NULL,
                    "location": _STRING_OR_NULL,
                    "achievements": _LINES,
                },
            },
        },
        "education": {
            "type": ["array", "null"],
            "items": {
                "type": "object",
                "properties": {
                    "degree_name": _STRING_OR_NULL,
                    "university_name": _STRING_OR_NULL,
                    "location": _STRING_OR_NULL,
                    "start_date": _STRING_OR_NULL,
                    "end_date": _STRING_OR_NULL,
                    "details": _LINES,
                },
            },
        },
        "technical_skills": _LINES,
        "soft_skills": _LINES,
    },
}

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?|\n?\s*```\s*$")

_FAILURE_ERRORS: dict[str, type[ApiError]] = {
    "GENERATIVE_FORMAT_INVALID": GenerativeFormatError,
    "RENDER_FAILED": RenderError,
    "GENERATIVE_UNAVAILABLE": GenerativeServiceError,
}


class StructuredOutputError(ValueError):
    """Generated text is not a CV object of the expected shape."""


def extract_json_object(text: str) -> str:
    cleaned = _FENCE_RE.sub("", (text or "").strip())
    start = cleaned.find("{")
    end = cleaned.rfind("}")
    if start < 0 or end <= start:
        raise StructuredOutputError("no JSON object in generated text")
    return cleaned[start : end + 1]


def parse_structured_output(text: str) -> TailoredCv:
    try:
        data = json.loads(extract_json_object(text))
    except json.JSONDecodeError as exc:
        raise StructuredOutputError(f"invalid JSON: {exc.msg}") from exc
    try:
        jsonschema.validate(instance=data, schema=CV_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise StructuredOutputError(f"schema mismatch: {exc.message}") from exc
    try:
        return TailoredCv.model_validate(data)
    except PydanticValidationError as exc:
        raise StructuredOutputError(f"model mismatch: {exc.error_count()} errors") from exc


def generate_structured_cv(generator: Any, prompt: str, *, max_attempts: int = 3) -> tuple[TailoredCv, int]:
    """Call the generator until its output parses; returns (cv, calls made).

    Exceptions raised by the generator itself propagate unchanged.
    """
    attempts = max(1, int(max_attempts))
    for attempt in range(1, attempts + 1):
        text = generator.generate(prompt)
        try:
            return parse_structured_output(text), attempt
        except StructuredOutputError as exc:
            logger.warning("generation_output_invalid attempt=%s max_attempts=%s reason=%s", attempt, attempts, exc)
    raise GenerativeFormatError(attempts=attempts)


class SingleFlight:
    """At most one in-flight block per key inside this process."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, list[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


def tailoring_job_id(submission_id: str) -> str:
    return f"tailor:{submission_id}"


class TailoringOrchestrator:
    def __init__(
        self,
        *,
        store: SubmissionStore,
        queue: JobQueueBackend,
        generator: Any,
        renderer: ArtifactRenderer,
        blob_storage: BlobStorage,
        job_options: JobOptions | None = None,
        generation_max_attempts: int = 3,
        wait_timeout_ms: int = 180_000,
        worker: WorkerRuntime | None = None,
        worker_mode: str = "embedded",
    ) -> None:
        self.store = store
        self.queue = queue
        self.generator = generator
        self.renderer = renderer
        self.blob_storage = blob_storage
        self.job_options = job_options or JobOptions()
        self.generation_max_attempts = max(1, int(generation_max_attempts))
        self.wait_timeout_s = max(1, int(wait_timeout_ms)) / 1000.0
        self.worker = worker
        self.worker_mode = worker_mode
        self._single_flight = SingleFlight()

    # request side

    def request_tailoring(self, submission_id: str, *, trace_id: str | None = None) -> Submission:
        """Make sure exactly one tailoring job exists for the submission and return it."""
        with self._single_flight.hold(submission_id):
            submission = self.store.find(submission_id)
            if submission is None:
                raise ValidationError("submission not found", code="SUBMISSION_NOT_FOUND")
            if not (submission.original_cv_text or "").strip() or not (submission.job_spec_text or "").strip():
                raise ValidationError("submission is missing CV or job specification text", code="SUBMISSION_INCOMPLETE")
            if submission.status == SubmissionStatus.TAILORED.value:
                return submission
            if submission.status == SubmissionStatus.FAILED.value:
                raise ValidationError(
                    "tailoring already failed for this submission; upload the files again",
                    code="SUBMISSION_ALREADY_FAILED",
                )
            if submission.job_id:
                logger.info("tailoring_joined submission_id=%s job_id=%s", submission_id, submission.job_id)
                self._ensure_job(submission_id, submission.job_id, trace_id)
                return submission

            job_id = tailoring_job_id(submission_id)
            try:
                queued = self.store.transition(
                    submission_id,
                    SubmissionStatus.QUEUED.value,
                    changes={"job_id": job_id},
                    expected_status=SubmissionStatus.UPLOADED.value,
                )
            except StateTransitionError:
                # another process claimed the submission first
                current = self.store.get_fresh(submission_id)
                if current.status == SubmissionStatus.FAILED.value:
                    raise ValidationError(
                        "tailoring already failed for this submission; upload the files again",
                        code="SUBMISSION_ALREADY_FAILED",
                    ) from None
                logger.info("tailoring_joined submission_id=%s job_id=%s", submission_id, current.job_id)
                if not current.is_terminal:
                    self._ensure_job(submission_id, current.job_id or job_id, trace_id)
                return current

            self._enqueue(submission_id, job_id, trace_id)
            return queued

    def _ensure_job(self, submission_id: str, job_id: str, trace_id: str | None) -> None:
        """Re-enqueue a joined job the queue no longer holds.

        The submission row can outlive its job: an in-memory queue restarted
        under a durable store, or a stalled job pruned away. Enqueueing with
        the same job id is idempotent, so racing joiners still share one job.
        """
        try:
            existing = self.queue.get(job_id)
        except Exception as exc:
            logger.exception("tailoring_job_lookup_failed submission_id=%s job_id=%s", submission_id, job_id)
            raise StorageError("job queue unavailable", code="QUEUE_UNAVAILABLE") from exc
        if existing is not None:
            return
        logger.warning("tailoring_job_missing submission_id=%s job_id=%s", submission_id, job_id)
        self._enqueue(submission_id, job_id, trace_id)

    def _enqueue(self, submission_id: str, job_id: str, trace_id: str | None) -> None:
        options = replace(self.job_options, priority=TAILORING_JOB_PRIORITY, job_id=job_id)
        try:
            self.queue.enqueue(
                queue_name=TAILORING_QUEUE,
                payload={"submission_id": submission_id, "trace_id": trace_id},
                options=options,
            )
        except Exception as exc:
            logger.exception("tailoring_enqueue_failed submission_id=%s job_id=%s", submission_id, job_id)
            self._mark_failed(submission_id, "QUEUE_UNAVAILABLE")
            raise StorageError("job queue unavailable", code="QUEUE_UNAVAILABLE") from exc
        logger.info("tailoring_enqueued submission_id=%s job_id=%s trace_id=%s", submission_id, job_id, trace_id)

    def tailor(self, submission_id: str, *, trace_id: str | None = None) -> bytes:
        """Request tailoring, wait for it, and return the rendered PDF."""
        submission = self.request_tailoring(submission_id, trace_id=trace_id)
        if submission.status != SubmissionStatus.TAILORED.value:
            job = self._wait(submission.job_id or tailoring_job_id(submission_id))
            submission = self.store.get_fresh(submission_id)
            if submission.is_terminal:
                return self._artifact_for(submission)
            if job is None or not job.is_terminal:
                logger.error("tailoring_wait_timeout submission_id=%s job_id=%s", submission_id, submission.job_id)
                raise OperationTimeoutError("tailoring did not finish in time", code="TAILORING_TIMEOUT")
            if job.state == "failed":
                # waiter can observe the failed job before the failure hook ran
                code = (job.last_error or {}).get("code") or "TAILORING_FAILED"
                submission = self._mark_failed(submission_id, code) or self.store.get_fresh(submission_id)
        return self._artifact_for(submission)

    def _wait(self, job_id: str) -> Job | None:
        if self.worker is not None and not self.worker.is_running and self.worker_mode != "external":
            return self.worker.run_until(job_id, timeout_s=self.wait_timeout_s)
        return self.queue.wait_for(job_id, timeout_s=self.wait_timeout_s)

    def _artifact_for(self, submission: Submission) -> bytes:
        if submission.status == SubmissionStatus.TAILORED.value and submission.tailored_cv_url:
            return self.blob_storage.get(storage_uri=submission.tailored_cv_url)
        if submission.status == SubmissionStatus.FAILED.value:
            raise failure_error(submission.error_code)
        raise OperationTimeoutError("tailoring did not finish in time", code="TAILORING_TIMEOUT")

    # worker side

    def run_tailoring_job(self, job: Job) -> dict[str, Any]:
        submission_id = str(job.payload.get("submission_id") or "")
        trace_id = job.payload.get("trace_id")
        submission = self.store.get_fresh(submission_id)
        if submission.is_terminal:
            logger.info("tailoring_job_skipped submission_id=%s status=%s", submission_id, submission.status)
            return {"submission_id": submission_id, "status": submission.status, "skipped": True}
        if submission.status == SubmissionStatus.UPLOADED.value:
            submission = self.store.transition(submission_id, SubmissionStatus.QUEUED.value, changes={"job_id": job.job_id})
        if submission.status == SubmissionStatus.QUEUED.value:
            submission = self.store.transition(
                submission_id,
                SubmissionStatus.TAILORING.value,
                expected_status=SubmissionStatus.QUEUED.value,
            )

        prompt = build_tailoring_prompt(cv_text=submission.original_cv_text, job_spec_text=submission.job_spec_text)
        try:
            cv, generation_attempts = generate_structured_cv(
                self.generator,
                prompt,
                max_attempts=self.generation_max_attempts,
            )
        except GenerativeFormatError as exc:
            logger.error(
                "tailoring_output_invalid submission_id=%s job_id=%s attempts=%s trace_id=%s",
                submission_id,
                job.job_id,
                exc.attempts,
                trace_id,
            )
            self._mark_failed(submission_id, exc.code)
            return {"submission_id": submission_id, "status": "failed", "error_code": exc.code}

        try:
            pdf = self.renderer.render(cv)
        except RenderError as exc:
            logger.error(
                "tailoring_render_failed submission_id=%s job_id=%s code=%s trace_id=%s",
                submission_id,
                job.job_id,
                exc.code,
                trace_id,
            )
            self._mark_failed(submission_id, "RENDER_FAILED")
            return {"submission_id": submission_id, "status": "failed", "error_code": "RENDER_FAILED"}

        artifact_uri = self.blob_storage.put(
            submission_id=submission_id,
            kind="artifacts",
            filename=ARTIFACT_FILENAME,
            content_bytes=pdf,
            content_type="application/pdf",
        )
        self.store.transition(
            submission_id,
            SubmissionStatus.TAILORED.value,
            changes={"tailored_cv": cv.model_dump(), "tailored_cv_url": artifact_uri},
            expected_status=SubmissionStatus.TAILORING.value,
        )
        logger.info(
            "tailoring_completed submission_id=%s job_id=%s generation_attempts=%s pdf_bytes=%s",
            submission_id,
            job.job_id,
            generation_attempts,
            len(pdf),
        )
        return {
            "submission_id": submission_id,
            "status": SubmissionStatus.TAILORED.value,
            "tailored_cv_url": artifact_uri,
            "generation_attempts": generation_attempts,
        }

    def on_job_failed(self, job: Job, exc: BaseException) -> None:
        submission_id = str(job.payload.get("submission_id") or "")
        code = exc.code if isinstance(exc, ApiError) else "TAILORING_FAILED"
        logger.error("tailoring_job_exhausted submission_id=%s job_id=%s code=%s", submission_id, job.job_id, code)
        self._mark_failed(submission_id, code)

    def _mark_failed(self, submission_id: str, code: str) -> Submission | None:
        try:
            current = self.store.get_fresh(submission_id)
            if current.is_terminal:
                # the first recorded failure cause wins
                logger.warning(
                    "submission_fail_skipped submission_id=%s code=%s status=%s",
                    submission_id,
                    code,
                    current.status,
                )
                return current
            return self.store.transition(
                submission_id,
                SubmissionStatus.FAILED.value,
                changes={"error_code": code},
                expected_status=current.status,
            )
        except (StateTransitionError, NotFoundError) as exc:
            logger.warning("submission_fail_skipped submission_id=%s code=%s reason=%s", submission_id, code, exc.code)
            return None


def failure_error(error_code: str | None) -> ApiError:
    """Caller-facing error for a failed submission."""
    code = error_code or "TAILORING_FAILED"
    error_cls = _FAILURE_ERRORS.get(code)
    if error_cls is not None:
        return error_cls()
    if code.endswith("_TIMEOUT"):
        return OperationTimeoutError(code=code)
    return ApiError(
        code="TAILORING_FAILED",
        message="failed to tailor CV",
        error_class="permanent",
        retryable=False,
        http_status=500,
    )
