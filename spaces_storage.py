"""Image hosting for the edit service.

The edit service only accepts images it can resolve by URL. Two hosts are
available: ``InlineImageHost`` embeds the bytes as a ``data:`` URI, and
``SpacesImageHost`` uploads to a DigitalOcean Spaces bucket with a public-read
ACL and hands back the public URL.
"""

import asyncio
import base64
import logging
import os
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from urllib.parse import urlparse

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from booth_errors import EditFailed
from booth_settings import BoothSettings, ImageHostKind

logger = logging.getLogger("photobooth.spaces_storage")

S3_MAX_ATTEMPTS = 20
OUTPUT_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%SZ"
PUBLIC_READ_ACL = {"ACL": "public-read"}
DEFAULT_REGION = "sfo3"


class SpacesCollisionError(Exception):
    """Raised when a Spaces key collision cannot be resolved."""


def normalize_region(endpoint: Optional[str], region: Optional[str]) -> str:
    if not endpoint or not region:
        return region or DEFAULT_REGION
    normalized = region.strip()
    aws_like = bool(re.fullmatch(r"[a-z]{2}-[a-z]+-\d", normalized))
    if aws_like and DEFAULT_REGION not in normalized:
        logger.warning(
            "SPACES_REGION '%s' does not match DigitalOcean region inferred from endpoint '%s'; defaulting to '%s'.",
            normalized,
            endpoint,
            DEFAULT_REGION,
        )
        return DEFAULT_REGION
    return normalized


def safe_file_name(name: str) -> str:
    if not name:
        raise ValueError("File name cannot be empty.")
    candidate = name.replace("\\", "/").strip("/")
    if "/" in candidate or ".." in candidate:
        raise ValueError("File name must not contain path separators or '..'.")
    return candidate


def compose_key(base_path: Optional[str], name: str) -> str:
    """Object key for ``name`` under the configured base path."""
    sanitized_name = safe_file_name(name)
    prefix = (base_path or "").replace("\\", "/").strip("/")
    return f"{prefix}/{sanitized_name}" if prefix else sanitized_name


def _apply_timestamp_suffix(key: str, timestamp: str) -> str:
    base, ext = os.path.splitext(key)
    return f"{base}_{timestamp}{ext}"


class InlineImageHost:
    """Hands images to the edit service as base64 ``data:`` URIs."""

    async def upload(self, data: bytes, name: str, content_type: str = "image/jpeg") -> str:
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{content_type};base64,{encoded}"


class SpacesImageHost:
    def __init__(self, settings: BoothSettings, client: Optional[Any] = None) -> None:
        if not settings.spaces_bucket:
            raise RuntimeError("SPACES_BUCKET must be set when IMAGE_HOST=spaces.")
        self.settings = settings
        self.bucket = settings.spaces_bucket
        self.base_path = settings.spaces_base_path
        self._client = client

    def get_s3_client(self):
        if self._client:
            return self._client
        settings = self.settings
        if not all([settings.spaces_endpoint, settings.spaces_access_key, settings.spaces_secret_key]):
            raise RuntimeError(
                "DigitalOcean Spaces configuration is incomplete; set SPACES_ENDPOINT, ACCESS_KEY, and SECRET_KEY."
            )
        session = boto3.session.Session(
            aws_access_key_id=settings.spaces_access_key,
            aws_secret_access_key=settings.spaces_secret_key,
        )
        config = Config(
            region_name=normalize_region(settings.spaces_endpoint, settings.spaces_region),
            retries={
                "max_attempts": S3_MAX_ATTEMPTS,
                "mode": "standard",
            },
        )
        self._client = session.client("s3", endpoint_url=settings.spaces_endpoint, config=config)
        return self._client

    def _key_exists(self, key: str) -> bool:
        client = self.get_s3_client()
        try:
            client.head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError as exc:
            error_code = exc.response.get("Error", {}).get("Code")
            if error_code in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise

    def upload_with_suffix_on_conflict(self, key: str, data: bytes, content_type: str) -> Dict[str, Any]:
        client = self.get_s3_client()
        timestamp = datetime.now(timezone.utc).strftime(OUTPUT_TIMESTAMP_FORMAT)
        final_key = key
        if self._key_exists(key):
            candidate = _apply_timestamp_suffix(key, timestamp)
            if self._key_exists(candidate):
                raise SpacesCollisionError(f"Unable to resolve key collision for {self.bucket}/{key}")
            final_key = candidate
        client.put_object(
            Bucket=self.bucket,
            Key=final_key,
            Body=data,
            ContentType=content_type,
            **PUBLIC_READ_ACL,
        )
        return {"final_key": final_key, "size_bytes": len(data)}

    def public_url(self, key: str) -> str:
        if self.settings.spaces_public_url:
            return f"{self.settings.spaces_public_url.rstrip('/')}/{key}"
        parsed = urlparse(self.settings.spaces_endpoint or "")
        host = parsed.netloc or f"{DEFAULT_REGION}.digitaloceanspaces.com"
        return f"https://{self.bucket}.{host}/{key}"

    async def upload(self, data: bytes, name: str, content_type: str = "image/jpeg") -> str:
        key = compose_key(self.base_path, name)
        try:
            result = await asyncio.to_thread(self.upload_with_suffix_on_conflict, key, data, content_type)
        except (ClientError, BotoCoreError, SpacesCollisionError, RuntimeError) as exc:
            logger.error("upload of %s to %s failed: %s", key, self.bucket, exc)
            raise EditFailed(f"Upload of {name} failed: {exc}") from exc
        logger.info("uploaded %s (%s bytes) to %s/%s", name, result["size_bytes"], self.bucket, result["final_key"])
        return self.public_url(result["final_key"])


def build_image_host(settings: BoothSettings):
    if settings.image_host == ImageHostKind.SPACES:
        if settings.spaces_endpoint and ".cdn." in (urlparse(settings.spaces_endpoint).netloc or ""):
            logger.warning(
                "SPACES_ENDPOINT '%s' contains '.cdn.'; use the S3 API endpoint such as https://sfo3.digitaloceanspaces.com instead.",
                settings.spaces_endpoint,
            )
        return SpacesImageHost(settings)
    return InlineImageHost()
