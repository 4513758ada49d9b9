"""Blob storage for uploaded files (bank statement CSVs, health-check objects).

Keys are slash separated, e.g. ``bank-statements/<user>/<uuid>.csv``. The local
backend maps them under LOCAL_STORAGE_ROOT; the S3 backend uses them as object keys.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from functools import cached_property
from pathlib import Path, PurePosixPath

import boto3
from botocore.exceptions import BotoCoreError, ClientError


class StorageError(RuntimeError):
    pass


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def read_bytes(self, key: str) -> bytes:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError


def _check_key(key: str) -> str:
    cleaned = key.replace("\\", "/").lstrip("/")
    if not cleaned or ".." in PurePosixPath(cleaned).parts:
        raise StorageError(f"Invalid storage key: {key!r}")
    return cleaned


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def path_for(self, key: str) -> Path:
        return self.root.joinpath(*PurePosixPath(_check_key(key)).parts)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        target = self.path_for(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    def read_bytes(self, key: str) -> bytes:
        try:
            return self.path_for(key).read_bytes()
        except FileNotFoundError as e:
            raise StorageError(f"No stored file for {key!r}") from e

    def delete(self, key: str) -> None:
        self.path_for(key).unlink(missing_ok=True)


@dataclass(frozen=True)
class S3Storage(Storage):
    bucket: str
    endpoint: str = ""
    region: str = ""
    access_key_id: str = ""
    secret_access_key: str = ""

    @cached_property
    def client(self):
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra = {"ContentType": content_type} if content_type else {}
        try:
            self.client.put_object(Bucket=self.bucket, Key=_check_key(key), Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Upload of {key!r} failed: {e}") from e

    def read_bytes(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=_check_key(key))
            return obj["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Download of {key!r} failed: {e}") from e

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=_check_key(key))
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Delete of {key!r} failed: {e}") from e


def storage_from_config(config) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "local":
        return LocalStorage(root=Path(config.get("LOCAL_STORAGE_ROOT") or Path(os.getcwd()) / "storage"))
    if backend == "s3":
        bucket = (config.get("S3_BUCKET") or "").strip()
        if not bucket:
            raise StorageError("S3_BUCKET must be set when STORAGE_BACKEND=s3.")
        return S3Storage(
            bucket=bucket,
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
        )
    raise StorageError(f"Unknown STORAGE_BACKEND {backend!r}; expected 'local' or 's3'.")
