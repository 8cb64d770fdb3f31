"""
Bounded waits on blocking calls that cannot be interrupted.

``call_with_deadline`` runs each call on its own daemon thread. When the wait
runs out the caller gets ``TimeoutError`` and the thread is abandoned; it
finishes in the background whenever the blocked call returns. Nothing is
pooled, so a call that never returns cannot hold up the calls after it.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future
from typing import Any

logger = logging.getLogger(__name__)


def call_with_deadline(fn: Callable[..., Any], *args: Any, timeout_s: float, name: str = "deadline-call") -> Any:
    """Return ``fn(*args)``, re-raise its error, or raise TimeoutError after ``timeout_s``."""
    future: Future = Future()
    abandoned = threading.Event()

    def run() -> None:
        future.set_running_or_notify_cancel()
        try:
            result = fn(*args)
        except BaseException as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)
        if abandoned.is_set():
            logger.info("deadline_call_finished_late name=%s", name)

    threading.Thread(target=run, name=name, daemon=True).start()
    try:
        return future.result(timeout=timeout_s)
    except TimeoutError:
        abandoned.set()
        raise
