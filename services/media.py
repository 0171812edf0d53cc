"""Product media uploads to local disk or a remote object store."""

from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import requests
from requests.exceptions import RequestException

from config_models import MediaConfig
from services.errors import ProviderError, ValidationError
from utils import optional_float

logger = logging.getLogger(__name__)

IMAGE_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
VIDEO_MIME_TYPES = {"video/mp4", "video/quicktime"}
IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp"}
VIDEO_EXTENSIONS = {"mp4", "mov"}
MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
}
BUCKETS = {"image": "product-images", "video": "product-videos"}


@dataclass
class StoredMedia:
    url: str
    bucket: str
    path: str
    media_type: str

    def to_dict(self) -> dict:
        return {"url": self.url, "bucket": self.bucket, "path": self.path, "mediaType": self.media_type}


class LocalMediaStorage:
    """Writes files below ``MediaConfig.root``; the app serves them at ``base_url``."""

    def __init__(self, config: MediaConfig):
        self.root = config.root
        self.base_url = config.base_url.rstrip("/")

    def store(self, bucket: str, path: str, data: bytes, content_type: Optional[str]) -> str:
        target = os.path.join(self.root, bucket, *path.split("/"))
        os.makedirs(os.path.dirname(target), exist_ok=True)
        with open(target, "wb") as handle:
            handle.write(data)
        return f"{self.base_url}/{bucket}/{path}"


class RemoteMediaStorage:
    """Object store reachable over HTTP (``PUT <remote_url>/object/<bucket>/<path>``)."""

    def __init__(self, config: MediaConfig):
        self.base_url = config.remote_url.rstrip("/")
        self.api_key = config.remote_key

    def store(self, bucket: str, path: str, data: bytes, content_type: Optional[str]) -> str:
        if not self.base_url:
            raise ProviderError("MEDIA_REMOTE_URL is not configured")
        url = f"{self.base_url}/object/{bucket}/{path}"
        headers = {"Authorization": f"Bearer {self.api_key}", "x-upsert": "false"}
        if content_type:
            headers["Content-Type"] = content_type
        try:
            logger.info("Uploading media to %s/%s", bucket, path)
            response = requests.put(url, data=data, headers=headers, timeout=60)
            response.raise_for_status()
        except RequestException as exc:
            logger.error("Media upload to %s failed: %s", url, exc)
            raise ProviderError(f"Media upload failed: {exc}") from exc
        return f"{self.base_url}/object/public/{bucket}/{path}"


def get_media_storage(config: MediaConfig):
    if config.backend == "remote":
        return RemoteMediaStorage(config)
    return LocalMediaStorage(config)


def _extension(filename: str) -> str:
    if "." not in filename:
        return ""
    return filename.rsplit(".", 1)[-1].lower()


def validate_media(
    media_type: str,
    filename: str,
    mimetype: Optional[str],
    size: int,
    duration_seconds,
    config: MediaConfig,
) -> str:
    """Check limits and format; return the file extension to store under."""
    extension = _extension(filename)
    mimetype = (mimetype or "").lower()

    if media_type == "image":
        if size > config.image_max_bytes:
            raise ValidationError("Image exceeds 5MB limit")
        if mimetype not in IMAGE_MIME_TYPES and extension not in IMAGE_EXTENSIONS:
            raise ValidationError("Image must be JPG, PNG, or WebP")
        allowed = IMAGE_EXTENSIONS
    else:
        if size > config.video_max_bytes:
            raise ValidationError("Video exceeds 30MB limit")
        if mimetype not in VIDEO_MIME_TYPES and extension not in VIDEO_EXTENSIONS:
            raise ValidationError("Video must be MP4 or MOV")
        duration = optional_float(duration_seconds)
        if duration is None or duration <= 0:
            raise ValidationError("duration_seconds is required for video uploads")
        if duration > config.video_max_seconds:
            raise ValidationError(f"Video must be {config.video_max_seconds} seconds or shorter")
        allowed = VIDEO_EXTENSIONS

    if extension in allowed:
        return extension
    return MIME_EXTENSIONS.get(mimetype, "jpg" if media_type == "image" else "mp4")


def upload_product_media(
    storage,
    config: MediaConfig,
    media_type: str,
    filename: Optional[str],
    mimetype: Optional[str],
    data: Optional[bytes],
    duration_seconds=None,
) -> StoredMedia:
    if not filename or data is None:
        raise ValidationError("file is required")
    media_type = (media_type or "").strip().lower()
    if media_type not in BUCKETS:
        raise ValidationError("mediaType must be image or video")

    extension = validate_media(media_type, filename, mimetype, len(data), duration_seconds, config)
    bucket = BUCKETS[media_type]
    path = f"products/{int(time.time() * 1000)}-{uuid.uuid4()}.{extension}"
    url = storage.store(bucket, path, data, mimetype)
    logger.info("Stored %s upload %s/%s (%d bytes)", media_type, bucket, path, len(data))
    return StoredMedia(url=url, bucket=bucket, path=path, media_type=media_type)
