from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
import requests

from cvtailor.db.postgres import PostgresTxRunner
from cvtailor.errors import OperationTimeoutError, StorageError
from cvtailor.repositories.submissions import (
    SUBMISSION_COLUMNS,
    PostgresSubmissionRepository,
    RestSubmissionRepository,
)

SUBMISSION_ID = "7f1d3c36-5a55-4b8a-8f8c-1a9b3f0f3e11"


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self.conn = conn

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None


class FakeConnection:
    def __init__(self, rows=None) -> None:
        self.rows = list(rows or [])
        self.executed: list[tuple[str, tuple | None]] = []

    def cursor(self):
        return FakeCursor(self)


class FakeTxRunner:
    def __init__(self, rows=None) -> None:
        self.conn = FakeConnection(rows)

    def run_in_tx(self, *, fn):
        return fn(self.conn)


def _row(**overrides):
    values = {
        "id": SUBMISSION_ID,
        "original_cv_text": "cv",
        "job_spec_text": "job",
        "status": "completed",
        "created_at": datetime(2026, 1, 5, 9, 30, tzinfo=timezone.utc),
        "updated_at": None,
        "original_cv_url": None,
        "job_spec_url": None,
        "tailored_cv": {"full_name": "Jane Doe"},
        "tailored_cv_url": "object://local/easycv-files/x.pdf",
        "job_id": f"tailor:{SUBMISSION_ID}",
        "error_code": None,
    }
    values.update(overrides)
    return tuple(values[col] for col in SUBMISSION_COLUMNS)


class TestPostgresSubmissionRepository:
    def test_insert_encodes_json_column(self):
        runner = FakeTxRunner()
        repo = PostgresSubmissionRepository(tx_runner=runner)
        record = {col: None for col in SUBMISSION_COLUMNS} | {"id": SUBMISSION_ID, "tailored_cv": {"b": 1, "a": 2}}
        assert repo.insert(record=record)["id"] == SUBMISSION_ID

        sql, params = runner.conn.executed[0]
        assert sql.startswith("INSERT INTO cv_submissions (id, original_cv_text")
        assert "%s::jsonb" in sql
        assert params[SUBMISSION_COLUMNS.index("tailored_cv")] == json.dumps({"a": 2, "b": 1})

    def test_get_converts_row(self):
        runner = FakeTxRunner(rows=[_row(tailored_cv='{"full_name": "Jane Doe"}')])
        record = PostgresSubmissionRepository(tx_runner=runner).get(submission_id=SUBMISSION_ID)
        assert record["created_at"] == "2026-01-05T09:30:00+00:00"
        assert record["tailored_cv"] == {"full_name": "Jane Doe"}
        assert PostgresSubmissionRepository(tx_runner=FakeTxRunner()).get(submission_id=SUBMISSION_ID) is None

    def test_update_with_expected_status(self):
        runner = FakeTxRunner(rows=[_row(status="processing")])
        repo = PostgresSubmissionRepository(tx_runner=runner)
        record = repo.update(
            submission_id=SUBMISSION_ID,
            fields={"status": "processing", "job_id": "tailor:x"},
            expected_status="uploaded",
        )
        assert record["status"] == "processing"
        sql, params = runner.conn.executed[0]
        assert "SET status = %s, job_id = %s WHERE id = %s AND status = %s RETURNING" in sql
        assert params == ("processing", "tailor:x", SUBMISSION_ID, "uploaded")

    def test_update_rejects_immutable_fields(self):
        repo = PostgresSubmissionRepository(tx_runner=FakeTxRunner())
        with pytest.raises(ValueError, match="cannot update"):
            repo.update(submission_id=SUBMISSION_ID, fields={"original_cv_text": "other"})

    def test_table_name_is_validated(self):
        with pytest.raises(ValueError, match="invalid SQL identifier"):
            PostgresSubmissionRepository(tx_runner=FakeTxRunner(), table_name="cv; DROP TABLE x")

    def test_ensure_schema_creates_table(self):
        runner = FakeTxRunner()
        PostgresSubmissionRepository(tx_runner=runner, table_name="tailor_jobs").ensure_schema()
        assert runner.conn.executed[0][0].startswith("CREATE TABLE IF NOT EXISTS tailor_jobs")


def test_tx_runner_requires_dsn():
    with pytest.raises(ValueError, match="POSTGRES_DSN"):
        PostgresTxRunner("  ")


class FakeResponse:
    def __init__(self, status_code: int = 200, payload=None) -> None:
        self.status_code = status_code
        self._payload = payload
        self.content = b"" if payload is None else json.dumps(payload).encode("utf-8")

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error", response=self)

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, responses) -> None:
        self.responses = list(responses)
        self.calls: list[dict] = []

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _rest(responses) -> tuple[RestSubmissionRepository, FakeSession]:
    session = FakeSession(responses)
    repo = RestSubmissionRepository(
        base_url="https://store.example.com/",
        api_key="service-key-0123456789abcdef",
        session=session,
    )
    return repo, session


class TestRestSubmissionRepository:
    def test_get_filters_by_id(self):
        repo, session = _rest([FakeResponse(payload=[{"id": SUBMISSION_ID, "status": "uploaded"}])])
        assert repo.get(submission_id=SUBMISSION_ID)["status"] == "uploaded"
        call = session.calls[0]
        assert call["url"] == "https://store.example.com/rest/v1/cv_submissions"
        assert call["params"] == {"id": f"eq.{SUBMISSION_ID}", "select": "*"}
        assert call["headers"]["Authorization"] == "Bearer service-key-0123456789abcdef"

    def test_get_missing_row(self):
        repo, _ = _rest([FakeResponse(payload=[])])
        assert repo.get(submission_id=SUBMISSION_ID) is None

    def test_insert_falls_back_to_record_without_body(self):
        repo, session = _rest([FakeResponse(payload=None)])
        assert repo.insert(record={"id": SUBMISSION_ID}) == {"id": SUBMISSION_ID}
        assert session.calls[0]["headers"]["Prefer"] == "return=representation"

    def test_conditional_update(self):
        repo, session = _rest([FakeResponse(payload=[])])
        assert repo.update(submission_id=SUBMISSION_ID, fields={"status": "processing"}, expected_status="uploaded") is None
        assert session.calls[0]["method"] == "PATCH"
        assert session.calls[0]["params"] == {"id": f"eq.{SUBMISSION_ID}", "status": "eq.uploaded"}

    def test_timeout_maps_to_store_timeout(self):
        repo, _ = _rest([requests.Timeout("slow")])
        with pytest.raises(OperationTimeoutError) as exc_info:
            repo.ping()
        assert exc_info.value.code == "STORE_TIMEOUT"

    def test_http_error_maps_to_storage_error(self):
        repo, _ = _rest([FakeResponse(status_code=503)])
        with pytest.raises(StorageError) as exc_info:
            repo.get(submission_id=SUBMISSION_ID)
        assert exc_info.value.details == {"method": "GET", "error": "HTTPError"}

    def test_requires_url_and_key(self):
        with pytest.raises(ValueError):
            RestSubmissionRepository(base_url="", api_key="k", session=FakeSession([]))
