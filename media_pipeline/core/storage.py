"""
Artifact storage.

Local storage leaves artifacts in the processed directory and serves them
through the API. R2 storage uploads them to a Cloudflare R2 bucket, hands
out presigned URLs and drops the local copy.
"""

import logging
import mimetypes
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from media_pipeline.config import (
    PRESIGNED_URL_EXPIRY_SECONDS,
    R2_ACCESS_KEY_ID,
    R2_BUCKET_NAME,
    R2_ENDPOINT_URL,
    R2_KEY_PREFIX,
    R2_SECRET_ACCESS_KEY,
    STORAGE_BACKEND,
)
from media_pipeline.core.errors import ErrorCode, TransientIOFault

logger = logging.getLogger(__name__)

_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".avif": "image/avif",
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".mkv": "video/x-matroska",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
}


def content_type_for(path: Path) -> str:
    suffix = path.suffix.lower()
    return _CONTENT_TYPES.get(suffix) or mimetypes.guess_type(path.name)[0] or "application/octet-stream"


class ArtifactStorage(ABC):
    """Where finished artifacts live once a job completes."""

    @abstractmethod
    def put(self, path: Path, key: str) -> str:
        """Store the artifact at ``path``. Returns its reference."""
        ...

    @abstractmethod
    def delete(self, ref: str) -> None:
        ...

    @abstractmethod
    def url_for(self, ref: str) -> Optional[str]:
        """External download URL, or None when the API serves the file."""
        ...

    def local_path(self, ref: str) -> Optional[Path]:
        return None

    def is_available(self, ref: str) -> bool:
        """Whether ``ref`` can still be downloaded. Remote objects are assumed present until expired."""
        return True


class LocalArtifactStorage(ArtifactStorage):
    def put(self, path: Path, key: str) -> str:
        return str(path)

    def delete(self, ref: str) -> None:
        Path(ref).unlink(missing_ok=True)

    def url_for(self, ref: str) -> Optional[str]:
        return None

    def local_path(self, ref: str) -> Optional[Path]:
        path = Path(ref)
        return path if path.is_file() else None

    def is_available(self, ref: str) -> bool:
        return self.local_path(ref) is not None


class R2ArtifactStorage(ArtifactStorage):
    def __init__(
        self,
        bucket: str = R2_BUCKET_NAME,
        key_prefix: str = R2_KEY_PREFIX,
        url_expiry: int = PRESIGNED_URL_EXPIRY_SECONDS,
        client: Optional[Any] = None,
    ):
        self.bucket = bucket
        self.key_prefix = key_prefix.strip("/")
        self.url_expiry = url_expiry
        self._client = client

    @property
    def client(self):
        if self._client is None:
            session = boto3.session.Session()
            self._client = session.client(
                "s3",
                endpoint_url=R2_ENDPOINT_URL or None,
                aws_access_key_id=R2_ACCESS_KEY_ID or None,
                aws_secret_access_key=R2_SECRET_ACCESS_KEY or None,
                # Cloudflare R2 requires signature version 4 (sigv4)
                config=Config(signature_version="s3v4"),
                region_name="auto",
            )
        return self._client

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}/{key}" if self.key_prefix else key

    def put(self, path: Path, key: str) -> str:
        object_key = self._key(key)
        extra_args: Dict[str, Any] = {"ContentType": content_type_for(path)}
        try:
            self.client.upload_file(str(path), self.bucket, object_key, ExtraArgs=extra_args)
        except (ClientError, BotoCoreError) as exc:
            raise TransientIOFault(
                f"Failed to upload artifact to R2: {exc}",
                code=ErrorCode.STORAGE_ERROR,
            ) from exc
        logger.info("Uploaded %s to r2://%s/%s", path.name, self.bucket, object_key)
        path.unlink(missing_ok=True)
        return object_key

    def delete(self, ref: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=ref)
        except ClientError as exc:
            logger.warning("Failed to delete %s from R2: %s", ref, exc)

    def url_for(self, ref: str) -> Optional[str]:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": ref},
                ExpiresIn=self.url_expiry,
            )
        except ClientError as exc:
            logger.error("Failed to generate presigned URL for %s: %s", ref, exc)
            return None


def create_storage(backend: str = STORAGE_BACKEND) -> ArtifactStorage:
    if backend == "r2":
        if not R2_BUCKET_NAME:
            raise ValueError("STORAGE_BACKEND=r2 requires R2_BUCKET_NAME")
        return R2ArtifactStorage()
    if backend != "local":
        raise ValueError(f"Unknown storage backend: {backend}")
    return LocalArtifactStorage()
