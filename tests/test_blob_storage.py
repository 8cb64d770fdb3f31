from __future__ import annotations

import io

import pytest
from botocore.exceptions import ClientError

from cvtailor.blob_storage import (
    BlobStorageConfig,
    LocalBlobStorage,
    S3BlobStorage,
    create_blob_storage,
    parse_storage_uri,
)
from cvtailor.errors import NotFoundError, StorageError
from cvtailor.settings import Settings

SUBMISSION_ID = "7f1d3c36-5a55-4b8a-8f8c-1a9b3f0f3e11"


def _local(tmp_path, **kwargs) -> LocalBlobStorage:
    return LocalBlobStorage(config=BlobStorageConfig(backend="local", bucket="easycv-files", root=str(tmp_path), **kwargs))


class FakeS3Client:
    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], dict] = {}
        self.bucket_ok = True

    def put_object(self, *, Bucket, Key, Body, ContentType):
        self.objects[(Bucket, Key)] = {"Body": Body, "ContentType": ContentType}

    def get_object(self, *, Bucket, Key):
        if (Bucket, Key) not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[(Bucket, Key)]["Body"])}

    def delete_object(self, *, Bucket, Key):
        self.objects.pop((Bucket, Key), None)

    def head_bucket(self, *, Bucket):
        if not self.bucket_ok:
            raise ClientError({"Error": {"Code": "403", "Message": "denied"}}, "HeadBucket")


def test_parse_storage_uri():
    assert parse_storage_uri("object://s3/easycv-files/submissions/a/cv/x.pdf") == {
        "backend": "s3",
        "bucket": "easycv-files",
        "key": "submissions/a/cv/x.pdf",
    }
    for bad in ("s3://bucket/key", "object://local/bucket", "object://local//key"):
        with pytest.raises(ValueError):
            parse_storage_uri(bad)


class TestLocalBlobStorage:
    def test_put_get_delete(self, tmp_path):
        storage = _local(tmp_path)
        uri = storage.put(
            submission_id=SUBMISSION_ID,
            kind="tailored_cv",
            filename="tailored_cv.pdf",
            content_bytes=b"%PDF-1.7",
            content_type="application/pdf",
        )
        assert uri == f"object://local/easycv-files/submissions/{SUBMISSION_ID}/tailored_cv/tailored_cv.pdf"
        assert storage.get(storage_uri=uri) == b"%PDF-1.7"
        assert storage.content_type(storage_uri=uri) == "application/pdf"
        assert storage.delete(storage_uri=uri) is True
        assert storage.delete(storage_uri=uri) is False
        with pytest.raises(NotFoundError) as exc_info:
            storage.get(storage_uri=uri)
        assert exc_info.value.code == "BLOB_NOT_FOUND"

    def test_prefix_and_unsafe_segments(self, tmp_path):
        storage = _local(tmp_path, prefix="/prod/")
        uri = storage.put(submission_id=SUBMISSION_ID, kind="cv", filename="My CV (1).pdf", content_bytes=b"x")
        assert uri.endswith(f"/prod/submissions/{SUBMISSION_ID}/cv/My_CV_1_.pdf")

    def test_rejects_foreign_and_escaping_uris(self, tmp_path):
        storage = _local(tmp_path)
        for uri in (
            "object://s3/easycv-files/submissions/a/cv/x.pdf",
            "object://local/easycv-files/../../../etc/passwd",
            "file:///etc/passwd",
        ):
            with pytest.raises(StorageError) as exc_info:
                storage.get(storage_uri=uri)
            assert exc_info.value.code == "BLOB_URI_INVALID"

    def test_public_url(self, tmp_path):
        uri = f"object://local/easycv-files/submissions/{SUBMISSION_ID}/cv/cv.pdf"
        assert _local(tmp_path).url(uri) == uri
        public = _local(tmp_path, public_base_url="https://cdn.example.com/")
        assert public.url(uri) == f"https://cdn.example.com/easycv-files/submissions/{SUBMISSION_ID}/cv/cv.pdf"
        assert public.url(None) is None

    def test_reset_and_ping(self, tmp_path):
        storage = _local(tmp_path / "blobs")
        uri = storage.put(submission_id=SUBMISSION_ID, kind="cv", filename="cv.txt", content_bytes=b"x")
        assert storage.ping() is True
        storage.reset()
        with pytest.raises(NotFoundError):
            storage.get(storage_uri=uri)


class TestS3BlobStorage:
    def _storage(self, client: FakeS3Client) -> S3BlobStorage:
        return S3BlobStorage(config=BlobStorageConfig(backend="s3", bucket="easycv-files", root=""), client=client)

    def test_put_and_get(self):
        client = FakeS3Client()
        storage = self._storage(client)
        uri = storage.put(
            submission_id=SUBMISSION_ID,
            kind="original_cv",
            filename="cv.pdf",
            content_bytes=b"%PDF",
            content_type="application/pdf",
        )
        assert uri.startswith("object://s3/easycv-files/submissions/")
        assert client.objects[("easycv-files", f"submissions/{SUBMISSION_ID}/original_cv/cv.pdf")]["ContentType"] == "application/pdf"
        assert storage.get(storage_uri=uri) == b"%PDF"
        assert storage.delete(storage_uri=uri) is True

    def test_missing_key_is_not_found(self):
        storage = self._storage(FakeS3Client())
        with pytest.raises(NotFoundError):
            storage.get(storage_uri="object://s3/easycv-files/submissions/x/cv/none.pdf")

    def test_put_failure_is_storage_error(self, monkeypatch):
        client = FakeS3Client()

        def broken_put(**kwargs):
            raise ClientError({"Error": {"Code": "500", "Message": "boom"}}, "PutObject")

        monkeypatch.setattr(client, "put_object", broken_put)
        with pytest.raises(StorageError) as exc_info:
            self._storage(client).put(submission_id=SUBMISSION_ID, kind="cv", filename="cv.pdf", content_bytes=b"x")
        assert exc_info.value.code == "BLOB_UNAVAILABLE"

    def test_ping(self):
        client = FakeS3Client()
        storage = self._storage(client)
        assert storage.ping() is True
        client.bucket_ok = False
        assert storage.ping() is False


def test_blob_storage_factory(tmp_path):
    local = create_blob_storage(Settings(blob_root=str(tmp_path)))
    assert isinstance(local, LocalBlobStorage)
    with pytest.raises(RuntimeError, match="unsupported blob storage backend"):
        create_blob_storage(Settings(blob_backend="gcs", blob_root=str(tmp_path)))
