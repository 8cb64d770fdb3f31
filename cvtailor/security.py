from __future__ import annotations

import os
import re
import uuid

_SENSITIVE_KEYS = {
    "authorization",
    "cookie",
    "token",
    "secret",
    "password",
    "api_key",
    "apikey",
    "x-api-key",
    "access_token",
}
_FILENAME_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")


def redact_sensitive(value: object) -> object:
    if isinstance(value, dict):
        redacted: dict[str, object] = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower in _SENSITIVE_KEYS:
                redacted[str(key)] = "***REDACTED***"
            else:
                redacted[str(key)] = redact_sensitive(item)
        return redacted
    if isinstance(value, list):
        return [redact_sensitive(x) for x in value]
    if isinstance(value, str):
        if len(value) >= 24 and any(k in value.lower() for k in ("sk-", "bearer ", "token")):
            return "***REDACTED***"
    return value


def sanitize_filename(filename: str | None, *, default: str = "upload") -> str:
    """Strip directories and anything outside ``[a-zA-Z0-9._-]`` from a client filename."""
    base = os.path.basename((filename or "").replace("\\", "/"))
    cleaned = _FILENAME_UNSAFE.sub("", base).lstrip(".")
    return cleaned[:120] or default


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except (TypeError, ValueError):
        return False
    return True
