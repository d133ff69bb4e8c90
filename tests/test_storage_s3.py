import hashlib
import sys
import types

import pytest

from mediastore.storage import S3ObjectStorage


class _FakeS3Client:
    def __init__(self, objects: dict[str, bytes] | None = None, fail_part: int | None = None) -> None:
        self.calls: list[tuple[str, dict]] = []
        self.objects = dict(objects or {})
        self.fail_part = fail_part

    def create_multipart_upload(self, **kwargs):
        self.calls.append(("create_multipart_upload", kwargs))
        return {"UploadId": "upload-xyz"}

    def upload_part(self, **kwargs):
        self.calls.append(("upload_part", kwargs))
        if kwargs["PartNumber"] == self.fail_part:
            raise RuntimeError("part upload failed")
        return {"ETag": f'"etag-{kwargs["PartNumber"]}"'}

    def put_object(self, **kwargs):
        self.calls.append(("put_object", kwargs))
        self.objects[kwargs["Key"]] = kwargs["Body"]
        return {"ETag": '"etag-put"'}

    def complete_multipart_upload(self, **kwargs):
        self.calls.append(("complete_multipart_upload", kwargs))
        return {}

    def abort_multipart_upload(self, **kwargs):
        self.calls.append(("abort_multipart_upload", kwargs))
        return {}

    def get_object(self, **kwargs):
        self.calls.append(("get_object", kwargs))
        data = self.objects[kwargs["Key"]]
        return {"Body": types.SimpleNamespace(read=lambda: data)}

    def list_objects_v2(self, **kwargs):
        self.calls.append(("list_objects_v2", kwargs))
        keys = sorted(k for k in self.objects if k.startswith(kwargs["Prefix"]))
        return {"Contents": [{"Key": k} for k in keys], "IsTruncated": False}

    def delete_object(self, **kwargs):
        self.calls.append(("delete_object", kwargs))
        self.objects.pop(kwargs["Key"], None)
        return {}


def _install(monkeypatch, fake_client: _FakeS3Client) -> None:
    fake_boto3 = types.SimpleNamespace(client=lambda service_name, **kwargs: fake_client)
    monkeypatch.setitem(sys.modules, "boto3", fake_boto3)


def test_s3_storage_multipart_merge(monkeypatch) -> None:
    fake_client = _FakeS3Client({"chunks/u1/0": b"abc", "chunks/u1/1": b"de"})
    _install(monkeypatch, fake_client)

    storage = S3ObjectStorage(bucket="bucket-1", region="us-east-1")
    digest = storage.merge_objects(["chunks/u1/0", "chunks/u1/1"], "files/u1.mp4")

    assert digest == hashlib.md5(b"abcde").hexdigest()
    assert [name for name, _ in fake_client.calls] == [
        "create_multipart_upload",
        "get_object",
        "upload_part",
        "get_object",
        "upload_part",
        "complete_multipart_upload",
    ]
    complete = fake_client.calls[-1][1]
    assert complete["Key"] == "files/u1.mp4"
    assert complete["MultipartUpload"]["Parts"] == [
        {"PartNumber": 1, "ETag": '"etag-1"'},
        {"PartNumber": 2, "ETag": '"etag-2"'},
    ]


def test_s3_storage_single_chunk_uses_put_object(monkeypatch) -> None:
    fake_client = _FakeS3Client({"chunks/u2/0": b"only"})
    _install(monkeypatch, fake_client)

    storage = S3ObjectStorage(bucket="bucket-1", region="us-east-1")
    storage.merge_objects(["chunks/u2/0"], "files/u2.png")

    assert fake_client.objects["files/u2.png"] == b"only"
    assert "create_multipart_upload" not in [name for name, _ in fake_client.calls]


def test_s3_storage_aborts_multipart_on_failure(monkeypatch) -> None:
    fake_client = _FakeS3Client({"chunks/u3/0": b"a", "chunks/u3/1": b"b"}, fail_part=2)
    _install(monkeypatch, fake_client)

    storage = S3ObjectStorage(bucket="bucket-1", region="us-east-1")
    with pytest.raises(RuntimeError):
        storage.merge_objects(["chunks/u3/0", "chunks/u3/1"], "files/u3.mp4")

    assert fake_client.calls[-1][0] == "abort_multipart_upload"
    assert fake_client.calls[-1][1]["UploadId"] == "upload-xyz"


def test_s3_storage_delete_prefix(monkeypatch) -> None:
    fake_client = _FakeS3Client({"chunks/u4/0": b"a", "chunks/u4/1": b"b", "files/keep": b"c"})
    _install(monkeypatch, fake_client)

    storage = S3ObjectStorage(bucket="bucket-1", region="us-east-1")
    assert storage.delete_prefix("chunks/u4/") == 2
    assert list(fake_client.objects) == ["files/keep"]


def test_r2_backend_requires_bucket() -> None:
    with pytest.raises(ValueError):
        S3ObjectStorage(bucket="", region="auto")
