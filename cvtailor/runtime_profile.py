from __future__ import annotations

from collections.abc import Mapping
import os


def as_bool(value: str | None, *, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def true_stack_required(environ: Mapping[str, str] | None = None) -> bool:
    """True when in-process fallbacks (memory store, mock generator) must be refused."""
    env = os.environ if environ is None else environ
    return as_bool(env.get("CVT_REQUIRE_TRUESTACK"))
