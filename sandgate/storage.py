"""
Storage abstraction for S3-compatible object stores and in-memory testing.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

_MISSING_CODES = {"NoSuchKey", "404", "NotFound"}


class StorageClient(Protocol):
    """Defines the operations the sync engine needs from object storage."""

    def get_bytes(self, path: str) -> bytes:
        ...

    def put_bytes(self, path: str, data: bytes) -> None:
        ...

    def list_keys(self, prefix: str) -> list[str]:
        ...

    def upload_file(self, src_path: str, dest_path: str) -> None:
        ...

    def download_file(self, src_path: str, dest_path: str) -> None:
        ...


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    stored_objects: dict = None

    def __post_init__(self):
        if self.stored_objects is None:
            self.stored_objects = {}

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored

    def put_bytes(self, path: str, data: bytes) -> None:
        self.stored_objects[path] = bytes(data)

    def list_keys(self, prefix: str) -> list[str]:
        return sorted(key for key in self.stored_objects if key.startswith(prefix))

    def upload_file(self, src_path: str, dest_path: str) -> None:
        with open(src_path, "rb") as f:
            self.stored_objects[dest_path] = f.read()

    def download_file(self, src_path: str, dest_path: str) -> None:
        data = self.get_bytes(src_path)
        Path(dest_path).write_bytes(data)


@dataclass
class S3StorageClient:
    """
    Storage client for any S3-compatible endpoint (AWS, R2, MinIO).
    """

    bucket: str
    region: str
    endpoint: str | None
    access_key_id: str
    secret_access_key: str
    addressing_style: str = "auto"

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": self.addressing_style},
            signature_version="s3v4",
            retries={"max_attempts": 3, "mode": "standard"},
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=config,
        )

    def get_bytes(self, path: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise FileNotFoundError(path) from exc
            raise
        return response["Body"].read()

    def put_bytes(self, path: str, data: bytes) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType="application/octet-stream",
        )

    def list_keys(self, prefix: str) -> list[str]:
        paginator = self._client.get_paginator("list_objects_v2")
        keys = []
        for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
            keys.extend(item["Key"] for item in page.get("Contents", []))
        return keys

    def upload_file(self, src_path: str, dest_path: str) -> None:
        self._client.upload_file(src_path, self.bucket, dest_path)

    def download_file(self, src_path: str, dest_path: str) -> None:
        try:
            self._client.download_file(self.bucket, src_path, dest_path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in _MISSING_CODES:
                raise FileNotFoundError(src_path) from exc
            raise
