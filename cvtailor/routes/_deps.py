from __future__ import annotations

import uuid
from typing import TYPE_CHECKING

from fastapi import Request
from fastapi.responses import JSONResponse

from cvtailor.errors import ApiError
from cvtailor.schemas import error_envelope

if TYPE_CHECKING:
    from cvtailor.runtime import AppRuntime


def trace_id_from_request(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id:
        return trace_id
    return uuid.uuid4().hex


def runtime_from_request(request: Request) -> "AppRuntime":
    return request.app.state.runtime


def client_ip(request: Request) -> str:
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def error_response(
    request: Request,
    *,
    code: str,
    message: str,
    error_class: str,
    retryable: bool,
    status_code: int,
    details: dict | None = None,
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=error_envelope(
            code=code,
            message=message,
            error_class=error_class,
            retryable=retryable,
            trace_id=trace_id_from_request(request),
            details=details,
        ),
    )


def api_error_response(request: Request, exc: ApiError) -> JSONResponse:
    return error_response(
        request,
        code=exc.code,
        message=exc.message,
        error_class=exc.error_class,
        retryable=exc.retryable,
        status_code=exc.http_status,
        details=exc.details if exc.http_status < 500 else None,
    )
