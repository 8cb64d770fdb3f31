from __future__ import annotations

import json
import re
import sqlite3
import threading
from pathlib import Path
from typing import Any

from cvtailor.db.postgres import PostgresTxRunner
from cvtailor.errors import OperationTimeoutError, StorageError

SUBMISSION_COLUMNS = (
    "id",
    "original_cv_text",
    "job_spec_text",
    "status",
    "created_at",
    "updated_at",
    "original_cv_url",
    "job_spec_url",
    "tailored_cv",
    "tailored_cv_url",
    "job_id",
    "error_code",
)
MUTABLE_COLUMNS = frozenset(SUBMISSION_COLUMNS) - {"id", "created_at", "original_cv_text", "job_spec_text"}
_JSON_COLUMNS = {"tailored_cv"}


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid SQL identifier: {name}")
    return name


def _check_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - MUTABLE_COLUMNS
    if unknown:
        raise ValueError(f"cannot update submission fields: {sorted(unknown)}")
    return dict(fields)


class InMemorySubmissionRepository:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, dict[str, Any]] = {}

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            submission_id = str(record["id"])
            if submission_id in self._rows:
                raise StorageError("submission already exists", code="SUBMISSION_DUPLICATE_ID")
            self._rows[submission_id] = json.loads(json.dumps(record))
            return dict(self._rows[submission_id])

    def get(self, *, submission_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._rows.get(submission_id)
            return json.loads(json.dumps(row)) if row is not None else None

    def update(
        self,
        *,
        submission_id: str,
        fields: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        fields = _check_fields(fields)
        with self._lock:
            row = self._rows.get(submission_id)
            if row is None:
                return None
            if expected_status is not None and row.get("status") != expected_status:
                return None
            row.update(json.loads(json.dumps(fields)))
            return json.loads(json.dumps(row))

    def ping(self) -> None:
        return None

    def reset(self) -> None:
        with self._lock:
            self._rows.clear()


class SqliteSubmissionRepository:
    """SQLite-backed submissions used for single-host persistence and tests."""

    def __init__(self, db_path: str | Path, *, timeout_s: float = 10.0) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._timeout_s = max(0.1, float(timeout_s))
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout_s)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS submissions (
                    id TEXT PRIMARY KEY,
                    original_cv_text TEXT NOT NULL,
                    job_spec_text TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    original_cv_url TEXT,
                    job_spec_url TEXT,
                    tailored_cv TEXT,
                    tailored_cv_url TEXT,
                    job_id TEXT,
                    error_code TEXT
                )
                """
            )
            conn.commit()

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS and value is not None:
            return json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> dict[str, Any]:
        record = {key: row[key] for key in SUBMISSION_COLUMNS}
        if record["tailored_cv"]:
            record["tailored_cv"] = json.loads(record["tailored_cv"])
        return record

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        placeholders = ", ".join("?" for _ in SUBMISSION_COLUMNS)
        values = tuple(self._encode(col, record.get(col)) for col in SUBMISSION_COLUMNS)
        with self._lock:
            with self._connect() as conn:
                try:
                    conn.execute(
                        f"INSERT INTO submissions({', '.join(SUBMISSION_COLUMNS)}) VALUES ({placeholders})",
                        values,
                    )
                except sqlite3.IntegrityError as exc:
                    raise StorageError("submission already exists", code="SUBMISSION_DUPLICATE_ID") from exc
                conn.commit()
        return dict(record)

    def get(self, *, submission_id: str) -> dict[str, Any] | None:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions WHERE id = ? LIMIT 1",
                    (submission_id,),
                ).fetchone()
        return self._row_to_record(row) if row is not None else None

    def update(
        self,
        *,
        submission_id: str,
        fields: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        fields = _check_fields(fields)
        if not fields:
            return self.get(submission_id=submission_id)
        assignments = ", ".join(f"{col} = ?" for col in fields)
        params: list[Any] = [self._encode(col, value) for col, value in fields.items()]
        sql = f"UPDATE submissions SET {assignments} WHERE id = ?"
        params.append(submission_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                cursor = conn.execute(sql, tuple(params))
                if cursor.rowcount == 0:
                    conn.commit()
                    return None
                row = conn.execute(
                    f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM submissions WHERE id = ? LIMIT 1",
                    (submission_id,),
                ).fetchone()
                conn.commit()
        return self._row_to_record(row) if row is not None else None

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT COUNT(*) FROM (SELECT id FROM submissions LIMIT 1)").fetchone()

    def reset(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute("DELETE FROM submissions")
                conn.commit()


class PostgresSubmissionRepository:
    """Submissions in PostgreSQL; ``tailored_cv`` is stored as jsonb."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "cv_submissions") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                id uuid PRIMARY KEY,
                original_cv_text text NOT NULL,
                job_spec_text text NOT NULL,
                status text NOT NULL DEFAULT 'uploaded',
                created_at timestamptz NOT NULL DEFAULT now(),
                updated_at timestamptz,
                original_cv_url text,
                job_spec_url text,
                tailored_cv jsonb,
                tailored_cv_url text,
                job_id text,
                error_code text
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    @staticmethod
    def _encode(column: str, value: Any) -> Any:
        if column in _JSON_COLUMNS and value is not None:
            return json.dumps(value, ensure_ascii=True, sort_keys=True)
        return value

    @staticmethod
    def _row_to_record(row: tuple[Any, ...]) -> dict[str, Any]:
        record = dict(zip(SUBMISSION_COLUMNS, row))
        record["id"] = str(record["id"])
        for col in ("created_at", "updated_at"):
            value = record.get(col)
            if value is not None and not isinstance(value, str):
                record[col] = value.isoformat()
        if isinstance(record.get("tailored_cv"), str):
            record["tailored_cv"] = json.loads(record["tailored_cv"])
        return record

    def _placeholder(self, column: str) -> str:
        return "%s::jsonb" if column in _JSON_COLUMNS else "%s"

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        columns = ", ".join(SUBMISSION_COLUMNS)
        placeholders = ", ".join(self._placeholder(col) for col in SUBMISSION_COLUMNS)
        sql = f"INSERT INTO {self._table_name} ({columns}) VALUES ({placeholders})"
        values = tuple(self._encode(col, record.get(col)) for col in SUBMISSION_COLUMNS)

        def _op(conn: Any) -> dict[str, Any]:
            with conn.cursor() as cur:
                cur.execute(sql, values)
            return dict(record)

        return self._tx_runner.run_in_tx(fn=_op)

    def get(self, *, submission_id: str) -> dict[str, Any] | None:
        sql = f"SELECT {', '.join(SUBMISSION_COLUMNS)} FROM {self._table_name} WHERE id = %s LIMIT 1"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, (submission_id,))
                row = cur.fetchone()
            return self._row_to_record(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def update(
        self,
        *,
        submission_id: str,
        fields: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        fields = _check_fields(fields)
        if not fields:
            return self.get(submission_id=submission_id)
        assignments = ", ".join(f"{col} = {self._placeholder(col)}" for col in fields)
        params: list[Any] = [self._encode(col, value) for col, value in fields.items()]
        sql = f"UPDATE {self._table_name} SET {assignments} WHERE id = %s"
        params.append(submission_id)
        if expected_status is not None:
            sql += " AND status = %s"
            params.append(expected_status)
        sql += f" RETURNING {', '.join(SUBMISSION_COLUMNS)}"

        def _op(conn: Any) -> dict[str, Any] | None:
            with conn.cursor() as cur:
                cur.execute(sql, tuple(params))
                row = cur.fetchone()
            return self._row_to_record(row) if row is not None else None

        return self._tx_runner.run_in_tx(fn=_op)

    def ping(self) -> None:
        sql = f"SELECT COUNT(*) FROM (SELECT id FROM {self._table_name} LIMIT 1) AS one_row"

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)
                cur.fetchone()

        self._tx_runner.run_in_tx(fn=_op)


def _import_requests() -> Any:
    try:
        import requests  # type: ignore
    except ImportError as exc:
        raise RuntimeError("requests is required for SUBMISSION_STORE_BACKEND=rest") from exc
    return requests


class RestSubmissionRepository:
    """Submissions behind a PostgREST-style endpoint authenticated with an API key."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        table_name: str = "cv_submissions",
        timeout_s: float = 10.0,
        session: Any | None = None,
    ) -> None:
        if not base_url.strip() or not api_key.strip():
            raise ValueError("SUBMISSION_STORE_URL and SUBMISSION_STORE_KEY must be set for rest store backend")
        self._requests = _import_requests()
        self._endpoint = f"{base_url.strip().rstrip('/')}/rest/v1/{_validate_identifier(table_name)}"
        self._timeout_s = max(0.1, float(timeout_s))
        self._session = session if session is not None else self._requests.Session()
        self._headers = {
            "apikey": api_key.strip(),
            "Authorization": f"Bearer {api_key.strip()}",
            "Content-Type": "application/json",
        }

    def _request(self, method: str, *, params: dict[str, str], json_body: Any = None, prefer: str = "") -> Any:
        headers = dict(self._headers)
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = self._session.request(
                method,
                self._endpoint,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self._timeout_s,
            )
            response.raise_for_status()
        except self._requests.Timeout as exc:
            raise OperationTimeoutError("submission store request timed out", code="STORE_TIMEOUT") from exc
        except self._requests.RequestException as exc:
            raise StorageError(
                "submission store request failed",
                details={"method": method, "error": type(exc).__name__},
            ) from exc
        if not response.content:
            return []
        return response.json()

    def insert(self, *, record: dict[str, Any]) -> dict[str, Any]:
        rows = self._request("POST", params={}, json_body=record, prefer="return=representation")
        return dict(rows[0]) if rows else dict(record)

    def get(self, *, submission_id: str) -> dict[str, Any] | None:
        rows = self._request("GET", params={"id": f"eq.{submission_id}", "select": "*"})
        return dict(rows[0]) if rows else None

    def update(
        self,
        *,
        submission_id: str,
        fields: dict[str, Any],
        expected_status: str | None = None,
    ) -> dict[str, Any] | None:
        fields = _check_fields(fields)
        params = {"id": f"eq.{submission_id}"}
        if expected_status is not None:
            params["status"] = f"eq.{expected_status}"
        rows = self._request("PATCH", params=params, json_body=fields, prefer="return=representation")
        return dict(rows[0]) if rows else None

    def ping(self) -> None:
        self._request("GET", params={"select": "id", "limit": "1"})
