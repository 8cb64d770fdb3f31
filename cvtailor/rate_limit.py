"""
Per-client request limits, one allowance per endpoint class.

Limits are held by a slowapi ``Limiter`` that the runtime container builds from
``Settings``; routers apply them with ``limiter.limit`` (upload, tailor) and
``limiter.shared_limit`` (every other public read or admin call). Health and
metrics routes carry no limit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from fastapi import Request
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from cvtailor.errors import RateLimitedError
from cvtailor.routes._deps import api_error_response, client_ip
from cvtailor.settings import Settings

logger = logging.getLogger(__name__)

UPLOAD_LIMIT_MESSAGE = "Too many upload requests. Please try again later."
TAILOR_LIMIT_MESSAGE = "Too many CV tailoring requests. Please try again later."
GENERAL_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
GENERAL_LIMIT_SCOPE = "general"


@dataclass(frozen=True)
class RateLimits:
    upload: str
    tailor: str
    general: str

    @classmethod
    def from_settings(cls, settings: Settings) -> "RateLimits":
        window_s = max(1, settings.rate_limit_window_ms // 1000)
        return cls(
            upload=f"{settings.rate_limit_upload_max} per {window_s} second",
            tailor=f"{settings.rate_limit_tailor_max} per {window_s} second",
            general=f"{settings.rate_limit_max} per {window_s} second",
        )


def build_limiter(settings: Settings) -> Limiter:
    return Limiter(
        key_func=get_remote_address,
        strategy="fixed-window",
        storage_uri=settings.rate_limit_storage_uri,
        headers_enabled=True,
    )


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    item = exc.limit.limit
    logger.warning(
        "rate_limited limit=%s client=%s path=%s",
        item,
        client_ip(request),
        request.url.path,
    )
    response = api_error_response(request, RateLimitedError(str(exc.detail)))
    response.headers["Retry-After"] = str(max(1, int(item.get_expiry())))
    response.headers["X-RateLimit-Limit"] = str(item.amount)
    response.headers["X-RateLimit-Remaining"] = "0"
    return response
