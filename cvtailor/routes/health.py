from __future__ import annotations

from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from cvtailor.health import HealthChecker, http_status_for
from cvtailor.routes._deps import runtime_from_request

router = APIRouter(tags=["health"])


async def _report(request: Request, check: Callable[[HealthChecker], dict[str, Any]]) -> JSONResponse:
    checker = runtime_from_request(request).health
    report = await run_in_threadpool(check, checker)
    return JSONResponse(status_code=http_status_for(report["status"]), content=report)


@router.get("/health")
async def health_basic(request: Request):
    return await _report(request, lambda checker: checker.basic())


@router.get("/health/database")
async def health_database(request: Request):
    return await _report(request, lambda checker: checker.database())


@router.get("/health/cache")
@router.get("/health/redis")
async def health_cache(request: Request):
    return await _report(request, lambda checker: checker.cache_check())


@router.get("/health/queue")
async def health_queue(request: Request):
    return await _report(request, lambda checker: checker.queue_check())


@router.get("/health/system")
async def health_system(request: Request):
    return await _report(request, lambda checker: checker.system())


@router.get("/health/comprehensive")
async def health_comprehensive(request: Request):
    return await _report(request, lambda checker: checker.comprehensive())


@router.get("/metrics")
def metrics(request: Request):
    return runtime_from_request(request).health.metrics_report()
