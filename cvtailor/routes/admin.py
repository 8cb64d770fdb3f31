# Annotations are evaluated eagerly: FastAPI resolves them through the slowapi wrapper.

import logging

from fastapi import APIRouter, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from slowapi import Limiter

from cvtailor.errors import ValidationError
from cvtailor.queue_backend import JOB_STATES
from cvtailor.rate_limit import GENERAL_LIMIT_MESSAGE, GENERAL_LIMIT_SCOPE, RateLimits
from cvtailor.routes._deps import runtime_from_request, trace_id_from_request
from cvtailor.schemas import QueueControlRequest, success_envelope

logger = logging.getLogger(__name__)


def _ok(request: Request, data: object, message: str = "ok") -> JSONResponse:
    return JSONResponse(content=jsonable_encoder(success_envelope(data, trace_id_from_request(request), message=message)))


def _known_queues(request: Request) -> list[str]:
    runtime = runtime_from_request(request)
    return list(dict.fromkeys([*runtime.worker.queue_names, *runtime.queue.queue_names()]))


def _check_queue_name(request: Request, queue_name: str | None) -> None:
    if queue_name is not None and queue_name not in _known_queues(request):
        raise ValidationError(f"unknown queue: {queue_name}", code="QUEUE_UNKNOWN")


def _queue_overview(request: Request) -> dict[str, dict[str, object]]:
    queue = runtime_from_request(request).queue
    return {
        name: {**queue.counts(queue_name=name), "paused": queue.is_paused(name)} for name in _known_queues(request)
    }


def list_queues(request: Request):
    return _ok(request, {"queues": _queue_overview(request)})


def pause_queues(request: Request, payload: QueueControlRequest | None = None):
    queue_name = payload.queue_name if payload else None
    _check_queue_name(request, queue_name)
    runtime_from_request(request).queue.pause(queue_name)
    logger.warning("queue_paused queue=%s trace_id=%s", queue_name or "*", trace_id_from_request(request))
    return _ok(request, {"queues": _queue_overview(request)}, message="paused")


def resume_queues(request: Request, payload: QueueControlRequest | None = None):
    queue_name = payload.queue_name if payload else None
    _check_queue_name(request, queue_name)
    runtime_from_request(request).queue.resume(queue_name)
    logger.info("queue_resumed queue=%s trace_id=%s", queue_name or "*", trace_id_from_request(request))
    return _ok(request, {"queues": _queue_overview(request)}, message="resumed")


def list_queue_jobs(
    queue_name: str,
    request: Request,
    state: str = Query(default="failed"),
    limit: int = Query(default=50, ge=1, le=500),
):
    _check_queue_name(request, queue_name)
    if state not in JOB_STATES:
        raise ValidationError(f"state must be one of {', '.join(JOB_STATES)}", code="QUEUE_STATE_INVALID")
    jobs = runtime_from_request(request).queue.list_jobs(queue_name=queue_name, state=state, limit=limit)
    items = [job.as_dict() for job in jobs]
    return _ok(request, {"items": items, "total": len(items)})


def build_router(limiter: Limiter, limits: RateLimits) -> APIRouter:
    router = APIRouter(prefix="/admin", tags=["admin"])
    shared = limiter.shared_limit(limits.general, scope=GENERAL_LIMIT_SCOPE, error_message=GENERAL_LIMIT_MESSAGE)
    router.get("/queues")(shared(list_queues))
    router.post("/queues/pause")(shared(pause_queues))
    router.post("/queues/resume")(shared(resume_queues))
    router.get("/queues/{queue_name}/jobs")(shared(list_queue_jobs))
    return router
