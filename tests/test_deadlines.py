from __future__ import annotations

import threading

import pytest

from cvtailor.deadlines import call_with_deadline


def test_returns_result():
    assert call_with_deadline(lambda a, b: a + b, 2, 3, timeout_s=1) == 5


def test_reraises_call_error():
    def boom():
        raise KeyError("missing")

    with pytest.raises(KeyError):
        call_with_deadline(boom, timeout_s=1)


def test_overrun_raises_timeout_and_leaves_call_running():
    release = threading.Event()
    finished = threading.Event()

    def stuck():
        release.wait(5)
        finished.set()

    with pytest.raises(TimeoutError):
        call_with_deadline(stuck, timeout_s=0.05, name="stuck-call")
    assert not finished.is_set()

    release.set()
    assert finished.wait(5)
