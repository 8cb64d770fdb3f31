from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from slowapi.errors import RateLimitExceeded
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.cors import CORSMiddleware

from cvtailor.errors import ApiError
from cvtailor.logging_setup import configure_logging
from cvtailor.middleware import build_middleware_chain, compose
from cvtailor.rate_limit import RateLimits, rate_limit_exceeded_handler
from cvtailor.routes import admin, health, submissions
from cvtailor.routes._deps import api_error_response, error_response, trace_id_from_request
from cvtailor.runtime import AppRuntime, build_runtime
from cvtailor.settings import Settings

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    runtime: AppRuntime | None = None,
    start_background: bool = True,
) -> FastAPI:
    if settings is None:
        settings = runtime.settings if runtime is not None else Settings.from_env()
    configure_logging(settings)
    if runtime is None:
        runtime = build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if start_background:
            runtime.start()
        try:
            yield
        finally:
            runtime.stop()

    app = FastAPI(title="CV Tailor API", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.state.limiter = runtime.limiter

    app.middleware("http")(
        compose(build_middleware_chain(metrics=runtime.metrics))
    )
    if settings.cors_origins:
        # outermost, so responses built by the chain carry CORS headers too
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["Content-Disposition", "x-trace-id"],
        )

    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        level = logging.ERROR if exc.http_status >= 500 else logging.INFO
        logger.log(
            level,
            "api_error code=%s status=%s path=%s trace_id=%s",
            exc.code,
            exc.http_status,
            request.url.path,
            trace_id_from_request(request),
        )
        return api_error_response(request, exc)

    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        fields = [".".join(str(part) for part in err.get("loc", ())) for err in exc.errors()]
        return error_response(
            request,
            code="REQ_VALIDATION_FAILED",
            message="invalid payload",
            error_class="validation",
            retryable=False,
            status_code=400,
            details={"fields": fields},
        )

    @app.exception_handler(StarletteHTTPException)
    async def handle_http_error(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(
                request,
                code="REQ_NOT_FOUND",
                message="resource not found",
                error_class="validation",
                retryable=False,
                status_code=404,
            )
        return error_response(
            request,
            code="REQ_HTTP_ERROR",
            message=str(exc.detail),
            error_class="validation",
            retryable=False,
            status_code=exc.status_code,
        )

    limits = RateLimits.from_settings(settings)
    app.include_router(submissions.build_router(runtime.limiter, limits))
    app.include_router(health.router)
    if settings.admin_api_enabled:
        app.include_router(admin.build_router(runtime.limiter, limits))
    return app


app = create_app()
