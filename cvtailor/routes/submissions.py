# Annotations are evaluated eagerly: FastAPI resolves them through the slowapi wrapper.

import logging
import os
from typing import Any

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from slowapi import Limiter
from starlette.concurrency import run_in_threadpool

from cvtailor.errors import NotFoundError, ValidationError
from cvtailor.extractor import extract_text
from cvtailor.rate_limit import (
    GENERAL_LIMIT_MESSAGE,
    GENERAL_LIMIT_SCOPE,
    TAILOR_LIMIT_MESSAGE,
    UPLOAD_LIMIT_MESSAGE,
    RateLimits,
)
from cvtailor.routes._deps import runtime_from_request, trace_id_from_request
from cvtailor.schemas import TailorCvRequest, success_envelope
from cvtailor.security import is_uuid, sanitize_filename
from cvtailor.settings import Settings
from cvtailor.submission_store import Submission
from cvtailor.tailoring import ARTIFACT_FILENAME

logger = logging.getLogger(__name__)

UPLOAD_SUCCESS_MESSAGE = "Files uploaded and submission created successfully!"
_GENERIC_MEDIA_TYPES = {"", "application/octet-stream", "binary/octet-stream"}


def _has_file(upload: UploadFile | None) -> bool:
    return upload is not None and bool(upload.filename)


async def _read_checked(upload: UploadFile, *, field: str, max_bytes: int, settings: Settings) -> bytes:
    filename = upload.filename or ""
    ext = os.path.splitext(filename)[1].lower()
    if ext not in settings.allowed_extensions:
        raise ValidationError(
            f"{field}: file extension not allowed",
            code="FILE_TYPE_NOT_ALLOWED",
            details={"field": field, "allowed": list(settings.allowed_extensions)},
        )
    media_type = (upload.content_type or "").split(";", 1)[0].strip().lower()
    if media_type not in _GENERIC_MEDIA_TYPES and media_type not in settings.allowed_media_types:
        raise ValidationError(
            f"{field}: file type not allowed",
            code="FILE_TYPE_NOT_ALLOWED",
            details={"field": field, "allowed": list(settings.allowed_media_types)},
        )
    data = await upload.read(max_bytes + 1)
    if len(data) > max_bytes:
        raise ValidationError(
            f"{field}: file exceeds {max_bytes} bytes",
            code="FILE_TOO_LARGE",
            details={"field": field, "max_bytes": max_bytes},
        )
    if not data:
        raise ValidationError(f"{field}: file is empty", code="FILE_EMPTY", details={"field": field})
    return data


def _check_job_spec_text(text: str, settings: Settings) -> str:
    cleaned = text.strip()
    if not settings.job_spec_text_min_chars <= len(cleaned) <= settings.job_spec_text_max_chars:
        raise ValidationError(
            f"job specification text must be {settings.job_spec_text_min_chars} to "
            f"{settings.job_spec_text_max_chars} characters",
            code="JOB_SPEC_TEXT_LENGTH",
        )
    return cleaned


def _public_view(submission: Submission, blob_storage: Any) -> dict[str, Any]:
    data = submission.as_dict()
    for key in ("original_cv_url", "job_spec_url", "tailored_cv_url"):
        data[key] = blob_storage.url(data.get(key))
    return data


async def upload(
    request: Request,
    cv: UploadFile | None = File(default=None),
    job_spec: UploadFile | None = File(default=None),
    job_spec_text_input: str | None = Form(default=None),
):
    runtime = runtime_from_request(request)
    settings = runtime.settings

    if not _has_file(cv):
        raise ValidationError("CV file is required", code="CV_FILE_REQUIRED")
    has_spec_file = _has_file(job_spec)
    has_spec_text = bool(job_spec_text_input and job_spec_text_input.strip())
    if has_spec_file and has_spec_text:
        raise ValidationError(
            "provide either a job specification file or job specification text, not both",
            code="JOB_SPEC_AMBIGUOUS",
        )
    if not has_spec_file and not has_spec_text:
        raise ValidationError("a job specification file or text is required", code="JOB_SPEC_REQUIRED")

    cv_bytes = await _read_checked(cv, field="cv", max_bytes=settings.max_cv_bytes, settings=settings)
    cv_text = await run_in_threadpool(extract_text, cv_bytes, cv.content_type, filename=cv.filename)

    spec_bytes: bytes | None = None
    if has_spec_file:
        spec_bytes = await _read_checked(
            job_spec,
            field="job_spec",
            max_bytes=settings.max_job_spec_bytes,
            settings=settings,
        )
        spec_text = await run_in_threadpool(extract_text, spec_bytes, job_spec.content_type, filename=job_spec.filename)
    else:
        spec_text = _check_job_spec_text(job_spec_text_input or "", settings)

    submission = Submission.new(original_cv_text=cv_text, job_spec_text=spec_text)
    submission.original_cv_url = await run_in_threadpool(
        lambda: runtime.blob_storage.put(
            submission_id=submission.id,
            kind="uploads",
            filename=f"cv-{sanitize_filename(cv.filename, default='cv')}",
            content_bytes=cv_bytes,
            content_type=cv.content_type,
        )
    )
    if spec_bytes is not None:
        submission.job_spec_url = await run_in_threadpool(
            lambda: runtime.blob_storage.put(
                submission_id=submission.id,
                kind="uploads",
                filename=f"job-spec-{sanitize_filename(job_spec.filename, default='job_spec')}",
                content_bytes=spec_bytes,
                content_type=job_spec.content_type,
            )
        )
    await run_in_threadpool(runtime.store.create, submission)
    logger.info(
        "upload_accepted submission_id=%s cv_chars=%s job_spec_chars=%s job_spec_source=%s trace_id=%s",
        submission.id,
        len(cv_text),
        len(spec_text),
        "file" if has_spec_file else "text",
        trace_id_from_request(request),
    )
    data = [{"id": submission.id, "status": submission.status, "created_at": submission.created_at}]
    return JSONResponse(
        status_code=200,
        content=success_envelope(data, trace_id_from_request(request), message=UPLOAD_SUCCESS_MESSAGE),
    )


def tailor_cv(payload: TailorCvRequest, request: Request):
    if not is_uuid(payload.submission_id):
        raise ValidationError("submissionId must be a valid UUID", code="SUBMISSION_ID_INVALID")
    runtime = runtime_from_request(request)
    pdf = runtime.orchestrator.tailor(payload.submission_id, trace_id=trace_id_from_request(request))
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename={ARTIFACT_FILENAME}"},
    )


def get_submission(submission_id: str, request: Request):
    if not is_uuid(submission_id):
        raise NotFoundError("submission not found", code="SUBMISSION_NOT_FOUND")
    runtime = runtime_from_request(request)
    submission = runtime.store.get(submission_id)
    return JSONResponse(content=jsonable_encoder(_public_view(submission, runtime.blob_storage)))


def build_router(limiter: Limiter, limits: RateLimits) -> APIRouter:
    router = APIRouter(tags=["submissions"])
    router.post("/upload")(limiter.limit(limits.upload, error_message=UPLOAD_LIMIT_MESSAGE)(upload))
    router.post("/tailor-cv")(limiter.limit(limits.tailor, error_message=TAILOR_LIMIT_MESSAGE)(tailor_cv))
    router.get("/submission/{submission_id}")(
        limiter.shared_limit(limits.general, scope=GENERAL_LIMIT_SCOPE, error_message=GENERAL_LIMIT_MESSAGE)(
            get_submission
        )
    )
    return router
