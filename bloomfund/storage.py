"""
Storage abstraction for S3-compatible object storage and in-memory testing.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from bloomfund.enums import MediaType
from bloomfund.errors import ValidationFailedError
from bloomfund.retry import retrying

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_FILES_PER_UPLOAD = 10
ALLOWED_IMAGE_TYPES = ("image/jpeg", "image/png", "image/webp", "image/gif")
ALLOWED_VIDEO_TYPES = ("video/mp4", "video/webm", "video/ogg")
_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9_-]")


class StorageClient(Protocol):
    """Defines the operations the API needs from object storage."""

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        ...

    def delete(self, path: str) -> None:
        ...

    def exists(self, path: str) -> bool:
        ...

    def public_url(self, path: str) -> str:
        ...

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        ...

    def presign_put(self, path: str, expires_in: int = 3600, content_type: Optional[str] = None) -> str:
        ...

    def get_bytes(self, path: str) -> bytes:
        ...


def media_type_for(content_type: str) -> MediaType:
    return MediaType.VIDEO if content_type in ALLOWED_VIDEO_TYPES else MediaType.IMAGE


def validate_upload(
    filename: str,
    content_type: str,
    size: int,
    *,
    max_size: int = MAX_FILE_SIZE,
    allowed_types: Optional[tuple[str, ...]] = None,
) -> None:
    """Raise ValidationFailedError when a file may not be uploaded."""
    errors = []
    if size > max_size:
        errors.append(f"File size must be less than {max_size // (1024 * 1024)}MB")
    types = allowed_types or ALLOWED_IMAGE_TYPES + ALLOWED_VIDEO_TYPES
    if content_type not in types:
        errors.append(f"File type {content_type} is not allowed")
    if not filename:
        errors.append("File name is required")
    if errors:
        raise ValidationFailedError(errors, detail="Invalid upload")


def generate_object_path(folder: str, filename: str) -> str:
    """Unique object key: <folder>/<millis>-<random>.<ext>."""
    _, ext = os.path.splitext(filename)
    suffix = ext.lower() if ext else ""
    return f"{folder.strip('/')}/{int(time.time() * 1000)}-{secrets.token_hex(6)}{suffix}"


def _safe_segment(value: str) -> str:
    return _UNSAFE_SEGMENT.sub("-", value.strip("/")) or "uploads"


def owner_folder(folder: str, user_id: str) -> str:
    """Folder that holds one user's uploads: <folder>/<user_id>."""
    return f"{_safe_segment(folder)}/{_safe_segment(user_id)}"


def is_owned_by(path: str, user_id: str) -> bool:
    """True when ``path`` lies inside a folder created by owner_folder for the user."""
    parts = path.split("/")
    if len(parts) != 3 or any(part in ("", ".", "..") for part in parts):
        return False
    return parts[1] == _safe_segment(user_id)


@dataclass
class InMemoryStorageClient:
    """Test double for storage interactions."""

    base_url: str = "https://example.test/storage"
    stored_objects: Dict[str, tuple[bytes, str]] = field(default_factory=dict)

    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self.stored_objects[path] = (bytes(data), content_type)

    def delete(self, path: str) -> None:
        self.stored_objects.pop(path, None)

    def exists(self, path: str) -> bool:
        return path in self.stored_objects

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        return f"{self.base_url}/{path}?op=get&expires={expires_in}"

    def presign_put(self, path: str, expires_in: int = 3600, content_type: Optional[str] = None) -> str:
        return f"{self.base_url}/{path}?op=put&expires={expires_in}"

    def get_bytes(self, path: str) -> bytes:
        stored = self.stored_objects.get(path)
        if stored is None:
            raise FileNotFoundError(path)
        return stored[0]


@dataclass
class S3StorageClient:
    """
    S3-compatible storage client for campaign media.
    """

    bucket: str
    region: str
    endpoint: str
    access_key_id: str
    secret_access_key: str
    public_base_url: Optional[str] = None

    def __post_init__(self):
        config = Config(
            s3={"addressing_style": "virtual"},
            signature_version="s3v4",
        )
        self._client = boto3.client(
            "s3",
            endpoint_url=self.endpoint or None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id or None,
            aws_secret_access_key=self.secret_access_key or None,
            config=config,
        )

    @retrying()
    def upload_bytes(self, path: str, data: bytes, content_type: str) -> None:
        self._client.put_object(
            Bucket=self.bucket,
            Key=path,
            Body=data,
            ContentType=content_type,
            CacheControl="max-age=3600",
        )
        logger.debug("Uploaded %s (%d bytes) to %s", path, len(data), self.bucket)

    @retrying()
    def delete(self, path: str) -> None:
        self._client.delete_object(Bucket=self.bucket, Key=path)

    def exists(self, path: str) -> bool:
        try:
            self._client.head_object(Bucket=self.bucket, Key=path)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise
        return True

    def public_url(self, path: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{path}"
        return f"https://{self.bucket}.{self.endpoint.split('://')[-1]}/{path}"

    def presign_get(self, path: str, expires_in: int = 3600) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="get_object",
            Params={"Bucket": self.bucket, "Key": path},
            ExpiresIn=expires_in,
        )

    def presign_put(self, path: str, expires_in: int = 3600, content_type: Optional[str] = None) -> str:
        return self._client.generate_presigned_url(
            ClientMethod="put_object",
            Params={
                "Bucket": self.bucket,
                "Key": path,
                "ContentType": content_type or "application/octet-stream",
            },
            ExpiresIn=expires_in,
        )

    @retrying()
    def get_bytes(self, path: str) -> bytes:
        response = self._client.get_object(Bucket=self.bucket, Key=path)
        return response["Body"].read()
