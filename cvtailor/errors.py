from __future__ import annotations

from typing import Any


class ApiError(Exception):
    def __init__(
        self,
        *,
        code: str,
        message: str,
        error_class: str,
        retryable: bool,
        http_status: int,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.error_class = error_class
        self.retryable = retryable
        self.http_status = http_status
        self.details = details


class ValidationError(ApiError):
    """Missing or malformed input the caller can correct."""

    def __init__(
        self,
        message: str,
        *,
        code: str = "REQ_VALIDATION_FAILED",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
            details=details,
        )


class ExtractionError(ApiError):
    """Uploaded document could not be turned into text."""

    def __init__(self, message: str, *, code: str = "EXTRACTION_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=400,
        )


class NotFoundError(ApiError):
    def __init__(self, message: str = "resource not found", *, code: str = "REQ_NOT_FOUND") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="validation",
            retryable=False,
            http_status=404,
        )


class StateTransitionError(ApiError):
    def __init__(self, message: str, *, code: str = "SUBMISSION_STATE_TRANSITION_INVALID") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="business_rule",
            retryable=False,
            http_status=409,
        )


class RateLimitedError(ApiError):
    def __init__(self, message: str = "too many requests, please try again later") -> None:
        super().__init__(
            code="RATE_LIMITED",
            message=message,
            error_class="throttled",
            retryable=True,
            http_status=429,
        )


class StorageError(ApiError):
    """Store, blob storage or broker failure. The message is safe to show callers."""

    def __init__(
        self,
        message: str = "storage backend unavailable",
        *,
        code: str = "STORAGE_UNAVAILABLE",
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=500,
            details=details,
        )


class CacheError(ApiError):
    """Cache backend failure. Absorbed inside the cache layer, never returned to callers."""

    def __init__(self, message: str, *, code: str = "CACHE_UNAVAILABLE") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=500,
        )


class GenerativeServiceError(ApiError):
    def __init__(self, message: str = "generative service unavailable", *, code: str = "GENERATIVE_UNAVAILABLE") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=500,
        )


class GenerativeFormatError(ApiError):
    def __init__(
        self,
        message: str = "failed to tailor CV",
        *,
        code: str = "GENERATIVE_FORMAT_INVALID",
        attempts: int = 0,
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="permanent",
            retryable=False,
            http_status=500,
            details={"attempts": attempts} if attempts else None,
        )
        self.attempts = attempts


class RenderError(ApiError):
    def __init__(self, message: str = "failed to render tailored CV", *, code: str = "RENDER_FAILED") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="permanent",
            retryable=False,
            http_status=500,
        )


class OperationTimeoutError(ApiError):
    def __init__(self, message: str = "operation timed out", *, code: str = "OPERATION_TIMEOUT") -> None:
        super().__init__(
            code=code,
            message=message,
            error_class="transient",
            retryable=True,
            http_status=500,
        )
