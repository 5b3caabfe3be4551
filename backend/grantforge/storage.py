from __future__ import annotations

import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Any, Protocol

from grantforge.config import Settings

logger = logging.getLogger("grantforge.storage")

PARTNER_DOCS_BUCKET = "partner-docs"
GLOBAL_LIBRARY_BUCKET = "global-library"


class StorageError(RuntimeError):
    """Raised when object storage read/write fails."""


@dataclass(frozen=True)
class StoredObject:
    bucket: str
    path: str
    size_bytes: int
    content_type: str

    def to_dict(self) -> dict[str, object]:
        return {
            "bucket": self.bucket,
            "path": self.path,
            "size_bytes": self.size_bytes,
            "content_type": self.content_type,
        }


class ObjectStorage(Protocol):
    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        ...

    def download(self, bucket: str, path: str) -> bytes:
        ...

    def list(self, bucket: str) -> list[StoredObject]:
        ...


def _normalize_backend(value: str) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"local", "filesystem", "fs"}:
        return "local"
    if normalized in {"s3"}:
        return "s3"
    raise StorageError(f"Unsupported STORAGE_BACKEND '{value}'. Use 'local' or 's3'.")


def _safe_relative_path(path: str) -> PurePosixPath:
    candidate = PurePosixPath(str(path or "").replace("\\", "/").lstrip("/"))
    if not candidate.parts or any(part in {"", ".", ".."} for part in candidate.parts):
        raise StorageError(f"Invalid object path '{path}'.")
    return candidate


def _safe_bucket(bucket: str) -> str:
    name = str(bucket or "").strip()
    if not name or "/" in name or name in {".", ".."}:
        raise StorageError(f"Invalid bucket name '{bucket}'.")
    return name


def _guess_content_type(path: str) -> str:
    return mimetypes.guess_type(path)[0] or "application/octet-stream"


class LocalObjectStorage:
    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    def _resolve(self, bucket: str, path: str) -> Path:
        return self._root / _safe_bucket(bucket) / Path(*_safe_relative_path(path).parts)

    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        destination = self._resolve(bucket, path)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_bytes(content)
        except OSError as exc:
            raise StorageError(f"Failed to write object '{bucket}/{path}': {exc}") from exc
        logger.info(
            "object_uploaded",
            extra={
                "event": "object_uploaded",
                "backend": "local",
                "bucket": bucket,
                "path": path,
                "size_bytes": len(content),
                "content_type": content_type,
            },
        )
        return str(destination)

    def download(self, bucket: str, path: str) -> bytes:
        source = self._resolve(bucket, path)
        if not source.is_file():
            raise StorageError(f"Stored object not found at '{bucket}/{path}'.")
        return source.read_bytes()

    def list(self, bucket: str) -> list[StoredObject]:
        bucket_root = self._root / _safe_bucket(bucket)
        if not bucket_root.is_dir():
            return []
        objects: list[StoredObject] = []
        for item in sorted(bucket_root.rglob("*")):
            if not item.is_file():
                continue
            relative = item.relative_to(bucket_root).as_posix()
            objects.append(
                StoredObject(
                    bucket=bucket,
                    path=relative,
                    size_bytes=item.stat().st_size,
                    content_type=_guess_content_type(relative),
                )
            )
        return objects


class S3ObjectStorage:
    def __init__(self, *, settings: Settings, client: Any | None = None) -> None:
        self._bucket = str(settings.s3_bucket or "").strip()
        if not self._bucket:
            raise StorageError("S3 storage backend selected but S3_BUCKET is not configured.")
        self._prefix = str(settings.s3_prefix or "").strip().strip("/")
        self._client = client or self._create_client(settings.aws_region)

    @staticmethod
    def _create_client(aws_region: str) -> Any:
        try:
            import boto3  # type: ignore
        except ImportError as exc:
            raise StorageError("boto3 is required for S3 storage backend.") from exc
        return boto3.client("s3", region_name=aws_region)

    def _bucket_prefix(self, bucket: str) -> str:
        base = f"{self._prefix}/" if self._prefix else ""
        return f"{base}{_safe_bucket(bucket)}/"

    def _key(self, bucket: str, path: str) -> str:
        return f"{self._bucket_prefix(bucket)}{_safe_relative_path(path).as_posix()}"

    def upload(self, bucket: str, path: str, content: bytes, content_type: str) -> str:
        key = self._key(bucket, path)
        try:
            self._client.put_object(
                Bucket=self._bucket,
                Key=key,
                Body=content,
                ContentType=content_type or "application/octet-stream",
            )
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to write object to S3 (bucket={self._bucket}, key={key}): {exc}") from exc
        return f"s3://{self._bucket}/{key}"

    def download(self, bucket: str, path: str) -> bytes:
        key = self._key(bucket, path)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to read object from S3 (bucket={self._bucket}, key={key}): {exc}") from exc
        body = response.get("Body")
        if body is None:
            raise StorageError(f"S3 get_object returned no body (bucket={self._bucket}, key={key}).")
        return body.read()

    def list(self, bucket: str) -> list[StoredObject]:
        prefix = self._bucket_prefix(bucket)
        objects: list[StoredObject] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self._bucket, Prefix=prefix):
                for entry in page.get("Contents", []):
                    relative = str(entry["Key"])[len(prefix) :]
                    objects.append(
                        StoredObject(
                            bucket=bucket,
                            path=relative,
                            size_bytes=int(entry.get("Size", 0)),
                            content_type=_guess_content_type(relative),
                        )
                    )
        except Exception as exc:  # pragma: no cover - depends on AWS runtime integration
            raise StorageError(f"Failed to list S3 objects (bucket={self._bucket}, prefix={prefix}): {exc}") from exc
        return objects


def create_object_storage(settings: Settings) -> ObjectStorage:
    backend = _normalize_backend(settings.storage_backend)
    if backend == "local":
        return LocalObjectStorage(settings.storage_root)
    return S3ObjectStorage(settings=settings)
