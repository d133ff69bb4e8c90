import hashlib
import os
from dataclasses import dataclass
from pathlib import Path

from mediastore.config import settings

MIN_MULTIPART_PART_SIZE = 5 * 1024 * 1024


@dataclass(frozen=True)
class StorageWriteResult:
    key: str
    etag: str | None = None


class ObjectStorage:
    def chunk_key(self, session_id: str, chunk_index: int) -> str:
        return f"chunks/{session_id}/{chunk_index}"

    def write_object(self, key: str, data: bytes) -> StorageWriteResult:
        raise NotImplementedError

    def read_object(self, key: str) -> bytes:
        raise NotImplementedError

    def merge_objects(self, keys: list[str], final_key: str) -> str:
        """Concatenate ``keys`` in order into ``final_key`` and return the MD5 of the result."""
        raise NotImplementedError

    def list_keys(self, prefix: str = "") -> list[str]:
        raise NotImplementedError

    def delete_key(self, key: str) -> None:
        raise NotImplementedError

    def delete_prefix(self, prefix: str) -> int:
        keys = self.list_keys(prefix)
        for key in keys:
            self.delete_key(key)
        return len(keys)


class LocalObjectStorage(ObjectStorage):
    def __init__(self, root: str) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def write_object(self, key: str, data: bytes) -> StorageWriteResult:
        full_path = self.root / key
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_bytes(data)
        return StorageWriteResult(key=key)

    def read_object(self, key: str) -> bytes:
        return (self.root / key).read_bytes()

    def merge_objects(self, keys: list[str], final_key: str) -> str:
        target = self.root / final_key
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(target.name + ".tmp")
        digest = hashlib.md5()
        try:
            with tmp_path.open("wb") as merged:
                for key in keys:
                    with (self.root / key).open("rb") as part:
                        while True:
                            block = part.read(1024 * 1024)
                            if not block:
                                break
                            merged.write(block)
                            digest.update(block)
                merged.flush()
                os.fsync(merged.fileno())
            os.replace(tmp_path, target)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()
        return digest.hexdigest()

    def list_keys(self, prefix: str = "") -> list[str]:
        base = self.root / prefix if prefix else self.root
        if not base.exists():
            return []
        root = self.root
        return [str(path.relative_to(root)).replace("\\", "/") for path in base.rglob("*") if path.is_file()]

    def delete_key(self, key: str) -> None:
        target = self.root / key
        if target.exists():
            target.unlink()


class S3ObjectStorage(ObjectStorage):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    def write_object(self, key: str, data: bytes) -> StorageWriteResult:
        result = self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        return StorageWriteResult(key=key, etag=result.get("ETag"))

    def read_object(self, key: str) -> bytes:
        obj = self.client.get_object(Bucket=self.bucket, Key=key)
        return obj["Body"].read()

    def merge_objects(self, keys: list[str], final_key: str) -> str:
        digest = hashlib.md5()
        if len(keys) == 1:
            data = self.read_object(keys[0])
            digest.update(data)
            self.client.put_object(Bucket=self.bucket, Key=final_key, Body=data)
            return digest.hexdigest()

        # Every part but the last must be at least MIN_MULTIPART_PART_SIZE.
        multipart = self.client.create_multipart_upload(Bucket=self.bucket, Key=final_key)
        upload_id = multipart["UploadId"]
        parts: list[dict] = []
        try:
            for part_number, key in enumerate(keys, start=1):
                data = self.read_object(key)
                digest.update(data)
                result = self.client.upload_part(
                    Bucket=self.bucket,
                    Key=final_key,
                    PartNumber=part_number,
                    UploadId=upload_id,
                    Body=data,
                )
                parts.append({"PartNumber": part_number, "ETag": result.get("ETag")})
            self.client.complete_multipart_upload(
                Bucket=self.bucket,
                Key=final_key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except Exception:
            self.client.abort_multipart_upload(Bucket=self.bucket, Key=final_key, UploadId=upload_id)
            raise
        return digest.hexdigest()

    def list_keys(self, prefix: str = "") -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def delete_key(self, key: str) -> None:
        self.client.delete_object(Bucket=self.bucket, Key=key)


def build_storage() -> ObjectStorage:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalObjectStorage(settings.storage_root)
    if backend == "s3":
        return S3ObjectStorage(settings.s3_bucket, settings.aws_region)
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3ObjectStorage(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")


storage = build_storage()
