import pathlib
import sys
from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from cvtailor.main import create_app
from cvtailor.runtime import build_runtime
from cvtailor.settings import Settings

CV_TEXT = """Jane Doe
jane.doe@example.com | +44 7700 900123 | linkedin.com/in/janedoe
Senior Backend Engineer, Acme Ltd, 2019 - 2024
- Built Python services on FastAPI serving two million requests a day
- Led the migration of batch jobs to Docker and Kubernetes
Skills: Python, Docker, Kubernetes, PostgreSQL, Communication, Mentoring
"""

JOB_TEXT = """Platform Engineer
We are looking for an engineer with Kubernetes and Docker experience and strong communication.
"""


class FakePdfEngine:
    name = "fake"

    def __init__(self) -> None:
        self.rendered: list[str] = []

    def to_pdf(self, html: str) -> bytes:
        self.rendered.append(html)
        return b"%PDF-1.7\n" + html.encode("utf-8") + b"\n%%EOF\n"


class ScriptedGenerator:
    """Returns the scripted outputs in order; exceptions in the script are raised."""

    name = "scripted"

    def __init__(self, outputs: list) -> None:
        self.outputs = list(outputs)
        self.prompts: list[str] = []

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        item = self.outputs[min(len(self.prompts), len(self.outputs)) - 1]
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def settings(tmp_path: pathlib.Path) -> Settings:
    return Settings(
        blob_root=str(tmp_path / "blobs"),
        cors_origins=(),
        health_monitor_enabled=False,
        job_backoff_base_ms=0,
        tailor_wait_timeout_ms=10_000,
        worker_poll_interval_ms=5,
    )


@pytest.fixture
def pdf_engine() -> FakePdfEngine:
    return FakePdfEngine()


@pytest.fixture
def runtime(settings: Settings, pdf_engine: FakePdfEngine):
    rt = build_runtime(settings, render_engine=pdf_engine)
    yield rt
    rt.stop()


@pytest.fixture
def make_client(settings: Settings, pdf_engine: FakePdfEngine):
    """Build a client over a fresh runtime; keyword arguments override settings."""
    runtimes = []

    def _make(*, generator=None, render_engine=None, **overrides) -> TestClient:
        rt = build_runtime(
            replace(settings, **overrides),
            generator=generator,
            render_engine=render_engine or pdf_engine,
        )
        runtimes.append(rt)
        return TestClient(create_app(runtime=rt, start_background=False))

    yield _make
    for rt in runtimes:
        rt.stop()


@pytest.fixture
def client(runtime) -> TestClient:
    app = create_app(runtime=runtime, start_background=False)
    return TestClient(app)


@pytest.fixture
def uploaded(client: TestClient) -> str:
    resp = client.post(
        "/upload",
        files={"cv": ("jane_doe.txt", CV_TEXT.encode("utf-8"), "text/plain")},
        data={"job_spec_text_input": JOB_TEXT},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["data"][0]["id"]


@pytest.fixture
def cv_text() -> str:
    return CV_TEXT


@pytest.fixture
def job_text() -> str:
    return JOB_TEXT


@pytest.fixture
def scripted():
    return ScriptedGenerator
