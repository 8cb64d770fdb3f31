"""
Runtime configuration for the CV tailoring service.

Every knob is read from the environment once, into a frozen ``Settings``
instance that the runtime container hands to each component. Development
defaults run the whole pipeline in-process (memory store/cache/queue, local
blob storage, mock generator, PyMuPDF renderer); production settings are
checked by ``Settings.validate()``.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlparse

from cvtailor.runtime_profile import as_bool, true_stack_required

DOCX_MEDIA_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

DEFAULT_ALLOWED_MEDIA_TYPES = (
    "application/pdf",
    DOCX_MEDIA_TYPE,
    "text/plain",
    "text/markdown",
)
DEFAULT_ALLOWED_EXTENSIONS = (".pdf", ".docx", ".txt", ".md")


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_str(env: Mapping[str, str], name: str, default: str = "") -> str:
    return str(env.get(name, default)).strip()


def _env_list(env: Mapping[str, str], name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    return tuple(x.strip().lower() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    require_true_stack: bool = False

    # submission store
    store_backend: str = "memory"
    store_sqlite_path: str = ".runtime/cvtailor_store.sqlite3"
    store_url: str = ""
    store_key: str = ""
    store_table: str = "cv_submissions"
    postgres_dsn: str = ""
    store_query_timeout_ms: int = 10_000
    store_slow_query_ms: int = 1_000

    # cache
    cache_backend: str = "memory"
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_password: str = ""
    redis_db: int = 0
    cache_key_prefix: str = "cvtailor"
    cache_ttl_submission_s: int = 1_800
    cache_socket_timeout_ms: int = 500

    # job queue
    queue_backend: str = "memory"
    queue_sqlite_path: str = ".runtime/cvtailor_queue.sqlite3"
    queue_key_prefix: str = "cvtailor"
    job_max_attempts: int = 3
    job_backoff_base_ms: int = 2_000
    job_backoff_max_ms: int = 60_000
    queue_retain_completed: int = 100
    queue_retain_failed: int = 50
    queue_stalled_after_ms: int = 300_000
    queue_backlog_warn: int = 100
    maintenance_cron: str = "0 2 * * *"

    # worker
    worker_mode: str = "embedded"
    worker_poll_interval_ms: int = 200
    worker_max_jobs_per_iteration: int = 4
    tailor_wait_timeout_ms: int = 180_000

    # generative service
    llm_api_key: str = ""
    llm_base_url: str = "https://openrouter.ai/api/v1"
    llm_model: str = "anthropic/claude-3-opus"
    llm_temperature: float = 0.2
    llm_max_tokens: int = 2_000
    llm_timeout_s: float = 120.0
    mock_llm_enabled: bool = True
    generation_max_attempts: int = 3

    # rendering
    render_engine: str = "pymupdf"
    render_timeout_ms: int = 30_000

    # blob storage
    blob_backend: str = "local"
    blob_bucket: str = "easycv-files"
    blob_root: str = ".runtime/blobs"
    blob_prefix: str = ""
    blob_endpoint: str = ""
    blob_public_base_url: str = ""
    blob_region: str = ""
    blob_access_key: str = ""
    blob_secret_key: str = ""
    blob_force_path_style: bool = True

    # http surface
    cors_origins: tuple[str, ...] = ("http://localhost:3000",)
    rate_limit_window_ms: int = 900_000
    rate_limit_max: int = 100
    rate_limit_upload_max: int = 10
    rate_limit_tailor_max: int = 5
    rate_limit_storage_uri: str = "memory://"
    admin_api_enabled: bool = True
    max_cv_bytes: int = 5 * 1024 * 1024
    max_job_spec_bytes: int = 2 * 1024 * 1024
    job_spec_text_min_chars: int = 10
    job_spec_text_max_chars: int = 10_000
    allowed_media_types: tuple[str, ...] = DEFAULT_ALLOWED_MEDIA_TYPES
    allowed_extensions: tuple[str, ...] = DEFAULT_ALLOWED_EXTENSIONS

    # logging and health
    log_level: str = "INFO"
    log_dir: str = ""
    health_check_interval_s: int = 300
    health_monitor_enabled: bool = True
    memory_warn_percent: float = 90.0
    cpu_warn_percent: float = 80.0

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def strict(self) -> bool:
        return self.is_production or self.require_true_stack

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ
        app_env = _env_str(env, "APP_ENV", "development").lower() or "development"
        llm_api_key = _env_str(env, "LLM_API_KEY") or _env_str(env, "OPENROUTER_API_KEY")
        cors_raw = _env_str(env, "CORS_ORIGIN", "http://localhost:3000")
        return cls(
            app_env=app_env,
            require_true_stack=true_stack_required(env),
            store_backend=_env_str(env, "SUBMISSION_STORE_BACKEND", "memory").lower() or "memory",
            store_sqlite_path=_env_str(env, "SUBMISSION_STORE_SQLITE_PATH", ".runtime/cvtailor_store.sqlite3"),
            store_url=_env_str(env, "SUBMISSION_STORE_URL"),
            store_key=_env_str(env, "SUBMISSION_STORE_KEY"),
            store_table=_env_str(env, "SUBMISSION_STORE_TABLE", "cv_submissions") or "cv_submissions",
            postgres_dsn=_env_str(env, "POSTGRES_DSN"),
            store_query_timeout_ms=_env_int(env, "STORE_QUERY_TIMEOUT_MS", default=10_000, minimum=1),
            store_slow_query_ms=_env_int(env, "STORE_SLOW_QUERY_MS", default=1_000, minimum=1),
            cache_backend=_env_str(env, "CACHE_BACKEND", "memory").lower() or "memory",
            redis_host=_env_str(env, "REDIS_HOST", "localhost") or "localhost",
            redis_port=_env_int(env, "REDIS_PORT", default=6379, minimum=1),
            redis_password=_env_str(env, "REDIS_PASSWORD"),
            redis_db=_env_int(env, "REDIS_DB", default=0),
            cache_key_prefix=_env_str(env, "CACHE_KEY_PREFIX", "cvtailor") or "cvtailor",
            cache_ttl_submission_s=_env_int(env, "CACHE_TTL_SUBMISSION_S", default=1_800, minimum=1),
            cache_socket_timeout_ms=_env_int(env, "CACHE_SOCKET_TIMEOUT_MS", default=500, minimum=1),
            queue_backend=_env_str(env, "QUEUE_BACKEND", "memory").lower() or "memory",
            queue_sqlite_path=_env_str(env, "QUEUE_SQLITE_PATH", ".runtime/cvtailor_queue.sqlite3"),
            queue_key_prefix=_env_str(env, "QUEUE_KEY_PREFIX", "cvtailor") or "cvtailor",
            job_max_attempts=_env_int(env, "JOB_MAX_ATTEMPTS", default=3, minimum=1),
            job_backoff_base_ms=_env_int(env, "JOB_BACKOFF_BASE_MS", default=2_000),
            job_backoff_max_ms=_env_int(env, "JOB_BACKOFF_MAX_MS", default=60_000),
            queue_retain_completed=_env_int(env, "QUEUE_RETAIN_COMPLETED", default=100),
            queue_retain_failed=_env_int(env, "QUEUE_RETAIN_FAILED", default=50),
            queue_stalled_after_ms=_env_int(env, "QUEUE_STALLED_AFTER_MS", default=300_000, minimum=1),
            queue_backlog_warn=_env_int(env, "QUEUE_BACKLOG_WARN", default=100, minimum=1),
            maintenance_cron=_env_str(env, "MAINTENANCE_CRON", "0 2 * * *") or "0 2 * * *",
            worker_mode=_env_str(env, "WORKER_MODE", "embedded").lower() or "embedded",
            worker_poll_interval_ms=_env_int(env, "WORKER_POLL_INTERVAL_MS", default=200, minimum=1),
            worker_max_jobs_per_iteration=_env_int(env, "WORKER_MAX_JOBS_PER_ITERATION", default=4, minimum=1),
            tailor_wait_timeout_ms=_env_int(env, "TAILOR_WAIT_TIMEOUT_MS", default=180_000, minimum=1),
            llm_api_key=llm_api_key,
            llm_base_url=_env_str(env, "LLM_BASE_URL", "https://openrouter.ai/api/v1"),
            llm_model=_env_str(env, "LLM_MODEL", "anthropic/claude-3-opus") or "anthropic/claude-3-opus",
            llm_temperature=_env_float(env, "LLM_TEMPERATURE", default=0.2),
            llm_max_tokens=_env_int(env, "LLM_MAX_TOKENS", default=2_000, minimum=1),
            llm_timeout_s=_env_float(env, "LLM_TIMEOUT_S", default=120.0, minimum=1.0),
            mock_llm_enabled=as_bool(env.get("MOCK_LLM_ENABLED"), default=not llm_api_key),
            generation_max_attempts=_env_int(env, "GENERATION_MAX_ATTEMPTS", default=3, minimum=1),
            render_engine=_env_str(env, "RENDER_ENGINE", "pymupdf").lower() or "pymupdf",
            render_timeout_ms=_env_int(env, "RENDER_TIMEOUT_MS", default=30_000, minimum=1),
            blob_backend=_env_str(env, "BLOB_STORAGE_BACKEND", "local").lower() or "local",
            blob_bucket=_env_str(env, "BLOB_STORAGE_BUCKET", "easycv-files") or "easycv-files",
            blob_root=_env_str(env, "BLOB_STORAGE_ROOT", ".runtime/blobs") or ".runtime/blobs",
            blob_prefix=_env_str(env, "BLOB_STORAGE_PREFIX"),
            blob_endpoint=_env_str(env, "BLOB_STORAGE_ENDPOINT"),
            blob_public_base_url=_env_str(env, "BLOB_STORAGE_PUBLIC_BASE_URL"),
            blob_region=_env_str(env, "BLOB_STORAGE_REGION"),
            blob_access_key=_env_str(env, "BLOB_STORAGE_ACCESS_KEY"),
            blob_secret_key=_env_str(env, "BLOB_STORAGE_SECRET_KEY"),
            blob_force_path_style=as_bool(env.get("BLOB_STORAGE_FORCE_PATH_STYLE"), default=True),
            cors_origins=tuple(x.strip() for x in cors_raw.split(",") if x.strip()),
            rate_limit_window_ms=_env_int(env, "RATE_LIMIT_WINDOW_MS", default=900_000, minimum=1),
            rate_limit_max=_env_int(env, "RATE_LIMIT_MAX", default=100, minimum=1),
            rate_limit_upload_max=_env_int(env, "RATE_LIMIT_UPLOAD_MAX", default=10, minimum=1),
            rate_limit_tailor_max=_env_int(env, "RATE_LIMIT_TAILOR_MAX", default=5, minimum=1),
            rate_limit_storage_uri=_env_str(env, "RATE_LIMIT_STORAGE_URI", "memory://") or "memory://",
            admin_api_enabled=as_bool(env.get("ADMIN_API_ENABLED"), default=app_env != "production"),
            max_cv_bytes=_env_int(env, "MAX_CV_BYTES", default=5 * 1024 * 1024, minimum=1),
            max_job_spec_bytes=_env_int(env, "MAX_JOB_SPEC_BYTES", default=2 * 1024 * 1024, minimum=1),
            job_spec_text_min_chars=_env_int(env, "JOB_SPEC_TEXT_MIN_CHARS", default=10, minimum=1),
            job_spec_text_max_chars=_env_int(env, "JOB_SPEC_TEXT_MAX_CHARS", default=10_000, minimum=1),
            allowed_media_types=_env_list(env, "ALLOWED_MEDIA_TYPES", DEFAULT_ALLOWED_MEDIA_TYPES),
            allowed_extensions=_env_list(env, "ALLOWED_EXTENSIONS", DEFAULT_ALLOWED_EXTENSIONS),
            log_level=(_env_str(env, "LOG_LEVEL", "INFO") or "INFO").upper(),
            log_dir=_env_str(env, "LOG_DIR"),
            health_check_interval_s=_env_int(env, "HEALTH_CHECK_INTERVAL_S", default=300, minimum=1),
            health_monitor_enabled=as_bool(env.get("HEALTH_MONITOR_ENABLED"), default=True),
            memory_warn_percent=_env_float(env, "HEALTH_MEMORY_WARN_PERCENT", default=90.0),
            cpu_warn_percent=_env_float(env, "HEALTH_CPU_WARN_PERCENT", default=80.0),
        )

    def validate(self) -> "Settings":
        """Raise ``ValueError`` listing every missing or invalid setting in strict mode."""
        problems: list[str] = []
        if self.store_backend not in {"memory", "sqlite", "postgres", "rest"}:
            problems.append(f"unsupported SUBMISSION_STORE_BACKEND: {self.store_backend}")
        if self.cache_backend not in {"memory", "redis", "none"}:
            problems.append(f"unsupported CACHE_BACKEND: {self.cache_backend}")
        if self.queue_backend not in {"memory", "sqlite", "redis"}:
            problems.append(f"unsupported QUEUE_BACKEND: {self.queue_backend}")
        if self.worker_mode not in {"embedded", "inline", "external"}:
            problems.append(f"unsupported WORKER_MODE: {self.worker_mode}")
        if self.render_engine not in {"pymupdf", "playwright"}:
            problems.append(f"unsupported RENDER_ENGINE: {self.render_engine}")
        if self.blob_backend not in {"local", "s3"}:
            problems.append(f"unsupported BLOB_STORAGE_BACKEND: {self.blob_backend}")
        if self.store_backend == "rest":
            parsed = urlparse(self.store_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                problems.append("SUBMISSION_STORE_URL must be a valid http(s) URL")
            if len(self.store_key) < 20:
                problems.append("SUBMISSION_STORE_KEY must be at least 20 characters")
        if self.store_backend == "postgres" and not self.postgres_dsn:
            problems.append("POSTGRES_DSN must be set when SUBMISSION_STORE_BACKEND=postgres")
        if self.queue_backend == "memory" and self.worker_mode == "external":
            problems.append("QUEUE_BACKEND=memory cannot be shared with an external worker")
        if self.strict:
            if self.store_backend == "memory":
                problems.append("SUBMISSION_STORE_BACKEND=memory is not allowed in production")
            if self.mock_llm_enabled:
                problems.append("MOCK_LLM_ENABLED must be false in production")
            if len(self.llm_api_key) < 20:
                problems.append("LLM_API_KEY (or OPENROUTER_API_KEY) must be at least 20 characters")
        if problems:
            raise ValueError("invalid configuration: " + "; ".join(problems))
        return self
