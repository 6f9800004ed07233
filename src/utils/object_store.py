from __future__ import annotations

from pathlib import Path
from typing import Any, List, Protocol
from urllib.parse import quote, unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from src.utils import storage
from src.utils.errors import StorageFailure, ValidationError
from src.utils.logging import get_logger
from src.utils.settings import Settings, get_settings
from src.utils.upload_signing import sign_object_url

log = get_logger(__name__)

LOCAL_OBJECTS_BASE_PATH = "/v1/objects"


def object_key_from_location(location: str) -> str:
    """Derive the object key from a stored location: its last path segment."""

    path = urlparse(location).path or location
    key = unquote(path.rstrip("/").rsplit("/", 1)[-1])
    if not key:
        raise ValidationError(f"Cannot derive an object key from location: {location}")
    return key


class ObjectStore(Protocol):
    def put(self, key: str, data: bytes, content_type: str) -> str: ...

    def presigned_url(self, key: str, expires_in: int) -> str: ...

    def delete(self, key: str) -> None: ...

    def list_keys(self) -> List[str]: ...

    def location(self, key: str) -> str: ...


class S3ObjectStore:
    def __init__(self, bucket: str, *, region: str, client: Any | None = None) -> None:
        self.bucket = bucket
        self.region = region
        self._client = client or boto3.client("s3", region_name=region)

    def location(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{quote(key)}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        try:
            self._client.put_object(Bucket=self.bucket, Key=key, Body=data, ContentType=content_type)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"Failed to store object {key}: {exc}") from exc
        return self.location(key)

    def presigned_url(self, key: str, expires_in: int) -> str:
        try:
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=expires_in,
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"Failed to presign object {key}: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._client.delete_object(Bucket=self.bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"Failed to delete object {key}: {exc}") from exc

    def list_keys(self) -> List[str]:
        keys: List[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket):
                keys.extend(item["Key"] for item in page.get("Contents", []) or [])
        except (BotoCoreError, ClientError) as exc:
            raise StorageFailure(f"Failed to list bucket {self.bucket}: {exc}") from exc
        return keys


class LocalObjectStore:
    """Filesystem-backed store for development; reads go through signed URLs."""

    def __init__(self, root: Path | None = None, *, base_path: str = LOCAL_OBJECTS_BASE_PATH) -> None:
        self._root = root
        self.base_path = base_path

    @property
    def root(self) -> Path:
        return self._root or storage.UPLOADS_DIR

    def path_for(self, key: str) -> Path:
        if not key or key != Path(key).name or key.startswith("."):
            raise ValidationError(f"Invalid object key: {key}")
        return self.root / key

    def location(self, key: str) -> str:
        return f"{self.base_path}/{quote(key)}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        target = self.path_for(key)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            raise StorageFailure(f"Failed to store object {key}: {exc}") from exc
        return self.location(key)

    def presigned_url(self, key: str, expires_in: int) -> str:
        return sign_object_url(key, base_path=self.base_path, expires_in=expires_in).url

    def delete(self, key: str) -> None:
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Failed to delete object {key}: {exc}") from exc

    def list_keys(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(item.name for item in self.root.iterdir() if item.is_file())


def build_object_store(settings: Settings | None = None) -> ObjectStore:
    settings = settings or get_settings()
    if settings.object_store_backend == "s3":
        if not settings.s3_bucket_name:
            raise StorageFailure("S3_BUCKET_NAME is required for the s3 object store")
        return S3ObjectStore(settings.s3_bucket_name, region=settings.aws_region)
    if settings.object_store_backend != "local":
        log.warning("object_store_backend_unknown", backend=settings.object_store_backend)
    return LocalObjectStore()
