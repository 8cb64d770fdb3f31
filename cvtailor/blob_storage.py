from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cvtailor.errors import NotFoundError, StorageError
from cvtailor.settings import Settings

logger = logging.getLogger(__name__)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat()


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def parse_storage_uri(uri: str) -> dict[str, str]:
    if not uri.startswith("object://"):
        raise ValueError("invalid storage uri")
    raw = uri[len("object://") :]
    parts = raw.split("/", 2)
    if len(parts) != 3 or not all(parts):
        raise ValueError("invalid storage uri")
    return {"backend": parts[0], "bucket": parts[1], "key": parts[2]}


@dataclass(frozen=True)
class BlobStorageConfig:
    backend: str
    bucket: str
    root: str
    prefix: str = ""
    public_base_url: str = ""
    endpoint: str = ""
    region: str = ""
    access_key: str = ""
    secret_key: str = ""
    force_path_style: bool = True

    @classmethod
    def from_settings(cls, settings: Settings) -> "BlobStorageConfig":
        return cls(
            backend=settings.blob_backend,
            bucket=settings.blob_bucket,
            root=settings.blob_root,
            prefix=settings.blob_prefix,
            public_base_url=settings.blob_public_base_url,
            endpoint=settings.blob_endpoint,
            region=settings.blob_region,
            access_key=settings.blob_access_key,
            secret_key=settings.blob_secret_key,
            force_path_style=settings.blob_force_path_style,
        )


class BlobStorage:
    """Uploaded originals and rendered artifacts, addressed by ``object://backend/bucket/key`` URIs."""

    backend_name = "base"

    def __init__(self, *, config: BlobStorageConfig) -> None:
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        self._public_base_url = config.public_base_url.rstrip("/")

    def put(
        self,
        *,
        submission_id: str,
        kind: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        raise NotImplementedError

    def get(self, *, storage_uri: str) -> bytes:
        raise NotImplementedError

    def delete(self, *, storage_uri: str) -> bool:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def url(self, storage_uri: str | None) -> str | None:
        """Public URL for a stored object, or the storage URI when no public base is configured."""
        if not storage_uri:
            return None
        if not self._public_base_url:
            return storage_uri
        parsed = parse_storage_uri(storage_uri)
        return f"{self._public_base_url}/{parsed['bucket']}/{parsed['key']}"

    def build_key(self, *, submission_id: str, kind: str, filename: str) -> str:
        base = f"submissions/{_clean_segment(submission_id)}/{_clean_segment(kind)}/{_clean_segment(filename)}"
        if self._prefix:
            return f"{self._prefix}/{base}"
        return base

    def _uri_for_key(self, key: str) -> str:
        return f"object://{self.backend_name}/{self._bucket}/{key}"

    def _parse_own(self, storage_uri: str) -> dict[str, str]:
        try:
            parsed = parse_storage_uri(storage_uri)
        except ValueError as exc:
            raise StorageError("invalid artifact location", code="BLOB_URI_INVALID") from exc
        if parsed["backend"] != self.backend_name:
            raise StorageError("artifact stored on another backend", code="BLOB_URI_INVALID")
        return parsed


class LocalBlobStorage(BlobStorage):
    backend_name = "local"

    def __init__(self, *, config: BlobStorageConfig) -> None:
        super().__init__(config=config)
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    def put(
        self,
        *,
        submission_id: str,
        kind: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self.build_key(submission_id=submission_id, kind=kind, filename=filename)
        path = self._root / self._bucket / key
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(f".{path.name}.tmp")
            tmp.write_bytes(content_bytes)
            tmp.replace(path)
            self._meta_path(path).write_text(
                json.dumps(
                    {"content_type": content_type or "application/octet-stream", "created_at": _now_iso()},
                    ensure_ascii=True,
                    sort_keys=True,
                ),
                encoding="utf-8",
            )
        except OSError as exc:
            logger.exception("blob_put_failed backend=local key=%s", key)
            raise StorageError("failed to store file", code="BLOB_UNAVAILABLE") from exc
        return self._uri_for_key(key)

    def get(self, *, storage_uri: str) -> bytes:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            raise NotFoundError("stored file not found", code="BLOB_NOT_FOUND")
        try:
            return path.read_bytes()
        except OSError as exc:
            logger.exception("blob_get_failed backend=local uri=%s", storage_uri)
            raise StorageError("failed to read stored file", code="BLOB_UNAVAILABLE") from exc

    def delete(self, *, storage_uri: str) -> bool:
        path = self._path_for_uri(storage_uri)
        if not path.exists():
            return False
        path.unlink()
        meta = self._meta_path(path)
        if meta.exists():
            meta.unlink()
        return True

    def content_type(self, *, storage_uri: str) -> str:
        meta = self._meta_path(self._path_for_uri(storage_uri))
        if not meta.exists():
            return "application/octet-stream"
        try:
            return str(json.loads(meta.read_text(encoding="utf-8")).get("content_type") or "application/octet-stream")
        except json.JSONDecodeError:
            return "application/octet-stream"

    def ping(self) -> bool:
        return self._root.is_dir()

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _path_for_uri(self, storage_uri: str) -> Path:
        parsed = self._parse_own(storage_uri)
        path = (self._root / parsed["bucket"] / parsed["key"]).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError("invalid artifact location", code="BLOB_URI_INVALID")
        return path

    def _meta_path(self, path: Path) -> Path:
        return Path(f"{path}.meta.json")


def _import_boto3():
    try:
        import boto3
        from botocore.config import Config
    except ImportError as exc:
        raise RuntimeError("boto3 is required for s3 blob storage backend") from exc
    return boto3, Config


class S3BlobStorage(BlobStorage):
    backend_name = "s3"

    def __init__(self, *, config: BlobStorageConfig, client: Any | None = None) -> None:
        super().__init__(config=config)
        if client is None:
            boto3, Config = _import_boto3()
            session = boto3.session.Session(
                aws_access_key_id=config.access_key or None,
                aws_secret_access_key=config.secret_key or None,
                region_name=config.region or None,
            )
            client = session.client(
                "s3",
                endpoint_url=config.endpoint or None,
                config=Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
            )
        self._client = client

    def put(
        self,
        *,
        submission_id: str,
        kind: str,
        filename: str,
        content_bytes: bytes,
        content_type: str | None = None,
    ) -> str:
        key = self.build_key(submission_id=submission_id, kind=kind, filename=filename)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content_bytes,
                ContentType=content_type or "application/octet-stream",
            )
        except Exception as exc:
            logger.exception("blob_put_failed backend=s3 bucket=%s key=%s", self._bucket, key)
            raise StorageError("failed to store file", code="BLOB_UNAVAILABLE") from exc
        return self._uri_for_key(key)

    def get(self, *, storage_uri: str) -> bytes:
        parsed = self._parse_own(storage_uri)
        try:
            response = self._client.get_object(Bucket=parsed["bucket"], Key=parsed["key"])
            return response["Body"].read()
        except Exception as exc:
            error_code = getattr(exc, "response", {}).get("Error", {}).get("Code", "")
            if error_code in {"NoSuchKey", "404"}:
                raise NotFoundError("stored file not found", code="BLOB_NOT_FOUND") from exc
            logger.exception("blob_get_failed backend=s3 uri=%s", storage_uri)
            raise StorageError("failed to read stored file", code="BLOB_UNAVAILABLE") from exc

    def delete(self, *, storage_uri: str) -> bool:
        parsed = self._parse_own(storage_uri)
        try:
            self._client.delete_object(Bucket=parsed["bucket"], Key=parsed["key"])
        except Exception as exc:
            logger.exception("blob_delete_failed backend=s3 uri=%s", storage_uri)
            raise StorageError("failed to delete stored file", code="BLOB_UNAVAILABLE") from exc
        return True

    def ping(self) -> bool:
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except Exception:
            logger.warning("blob_ping_failed backend=s3 bucket=%s", self._bucket)
            return False
        return True


def create_blob_storage(settings: Settings) -> BlobStorage:
    config = BlobStorageConfig.from_settings(settings)
    if config.backend == "s3":
        return S3BlobStorage(config=config)
    if config.backend == "local":
        return LocalBlobStorage(config=config)
    raise RuntimeError(f"unsupported blob storage backend: {config.backend}")
