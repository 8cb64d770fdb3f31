"""
HTTP middleware as an explicit, ordered chain.

Each middleware is ``async (request, call_next) -> Response``. ``compose``
folds a list of them into one callable registered once on the app, so the
order reads top to bottom in ``build_middleware_chain``: the first entry sees
the request first and the response last.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Sequence

from fastapi import Request
from starlette.responses import Response

from cvtailor.errors import ApiError
from cvtailor.health import MetricsState
from cvtailor.routes._deps import api_error_response, client_ip, error_response, trace_id_from_request
from cvtailor.security import redact_sensitive

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]
Middleware = Callable[[Request, CallNext], Awaitable[Response]]


def compose(chain: Sequence[Middleware]) -> Middleware:
    middlewares = tuple(chain)

    async def composed(request: Request, call_next: CallNext) -> Response:
        async def dispatch(index: int, req: Request) -> Response:
            if index == len(middlewares):
                return await call_next(req)
            return await middlewares[index](req, lambda r: dispatch(index + 1, r))

        return await dispatch(0, request)

    return composed


def error_boundary() -> Middleware:
    async def middleware(request: Request, call_next: CallNext) -> Response:
        try:
            return await call_next(request)
        except ApiError as exc:
            response = api_error_response(request, exc)
        except Exception:
            logger.exception(
                "unhandled_error method=%s path=%s trace_id=%s",
                request.method,
                request.url.path,
                trace_id_from_request(request),
            )
            response = error_response(
                request,
                code="INTERNAL_ERROR",
                message="internal server error",
                error_class="internal",
                retryable=False,
                status_code=500,
            )
        response.headers["x-trace-id"] = trace_id_from_request(request)
        return response

    return middleware


def trace_id() -> Middleware:
    async def middleware(request: Request, call_next: CallNext) -> Response:
        incoming = request.headers.get("x-trace-id", "").strip()
        request.state.trace_id = incoming[:128] or uuid.uuid4().hex
        response = await call_next(request)
        response.headers["x-trace-id"] = request.state.trace_id
        return response

    return middleware


def request_logging() -> Middleware:
    async def middleware(request: Request, call_next: CallNext) -> Response:
        t0 = time.monotonic()
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "http_request_started method=%s path=%s headers=%s",
                request.method,
                request.url.path,
                redact_sensitive(dict(request.headers.items())),
            )
        try:
            response = await call_next(request)
        except Exception:
            logger.error(
                "http_request_failed method=%s path=%s latency_ms=%.1f client=%s trace_id=%s",
                request.method,
                request.url.path,
                (time.monotonic() - t0) * 1000,
                client_ip(request),
                trace_id_from_request(request),
            )
            raise
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(
            level,
            "http_request method=%s path=%s status=%s latency_ms=%.1f client=%s trace_id=%s",
            request.method,
            request.url.path,
            response.status_code,
            (time.monotonic() - t0) * 1000,
            client_ip(request),
            trace_id_from_request(request),
        )
        return response

    return middleware


def request_metrics(metrics: MetricsState) -> Middleware:
    async def middleware(request: Request, call_next: CallNext) -> Response:
        t0 = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            metrics.record_request((time.monotonic() - t0) * 1000, status_code=500)
            raise
        metrics.record_request((time.monotonic() - t0) * 1000, status_code=response.status_code)
        return response

    return middleware


def build_middleware_chain(*, metrics: MetricsState) -> list[Middleware]:
    return [
        error_boundary(),
        trace_id(),
        request_logging(),
        request_metrics(metrics),
    ]
