# === NAVMAP v1 ===
# {
#   "module": "MediaTier.storage.s3_provider",
#   "purpose": "Amazon S3 storage provider for the remote media tier.",
#   "sections": [
#     {
#       "id": "is-not-found",
#       "name": "is_not_found",
#       "anchor": "function-is-not-found",
#       "kind": "function"
#     },
#     {
#       "id": "s3provider",
#       "name": "S3Provider",
#       "anchor": "class-s3provider",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""Amazon S3 storage provider for the remote media tier.

Objects are addressed as ``prefix + relative_path`` in a private bucket:
  - write  -> PutObject (ContentType + sha256 metadata)
  - read   -> GetObject (whole object buffered in memory)
  - exists -> HeadObject
  - delete -> DeleteObject (idempotent on S3)
  - serve  -> presigned GetObject URL with a limited lifetime

boto3 is synchronous; every call runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from threading import RLock
from typing import Any, Optional

from botocore.exceptions import BotoCoreError, ClientError

from MediaTier.errors import UnexpectedIOError
from MediaTier.storage.base import FileStats, ProviderType, ReadResult, WriteResult
from MediaTier.storage.paths import compute_sha256, guess_mime_type

logger = logging.getLogger(__name__)

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_FORBIDDEN_CODES = {"403", "AccessDenied", "Forbidden"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def _status_code(error: ClientError) -> Optional[int]:
    return error.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


def is_not_found(error: ClientError) -> bool:
    """True if a ClientError means the key does not exist."""
    return _error_code(error) in _NOT_FOUND_CODES or _status_code(error) == 404


def is_forbidden(error: ClientError) -> bool:
    return _error_code(error) in _FORBIDDEN_CODES or _status_code(error) == 403


class S3Provider:
    """S3 provider for the private media bucket."""

    type = ProviderType.REMOTE

    def __init__(
        self,
        bucket: str,
        region: str = "us-east-1",
        prefix: str = "media/",
        presigned_ttl_s: int = 3600,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ):
        """Initialize S3 provider.

        Args:
            bucket: S3 bucket name
            region: AWS region (default 'us-east-1')
            prefix: Object key prefix (default 'media/')
            presigned_ttl_s: Lifetime of serve URLs in seconds
            endpoint_url: Custom endpoint for S3-compatible stores
            client: Pre-built S3 client (default: boto3 client from the
                standard credential chain)
        """
        self.bucket = bucket
        self.region = region
        self.prefix = prefix.rstrip("/") + "/" if prefix else ""
        self.presigned_ttl_s = presigned_ttl_s
        self.endpoint_url = endpoint_url
        self._lock = RLock()
        self.s3_client = client

        if self.s3_client is None and self.bucket:
            self._init_client()

    def _init_client(self) -> None:
        """Initialize S3 client."""
        try:
            import boto3
        except ImportError:
            raise ImportError("boto3 not installed. " "Install with: pip install boto3")

        logger.info(f"Connecting to S3 bucket: {self.bucket} (region: {self.region})")
        self.s3_client = boto3.client("s3", region_name=self.region, endpoint_url=self.endpoint_url)

    def key_for(self, relative_path: str) -> str:
        """S3 key for a canonical relative path."""
        return f"{self.prefix}{relative_path}"

    def uri_for(self, relative_path: str) -> str:
        return f"s3://{self.bucket}/{self.key_for(relative_path)}"

    async def _call(self, method: str, **kwargs: Any) -> Any:
        func = getattr(self.s3_client, method)
        return await asyncio.to_thread(func, **kwargs)

    def _unexpected(self, action: str, relative_path: str, error: Exception) -> UnexpectedIOError:
        return UnexpectedIOError(
            f"S3 {action} failed for {self.key_for(relative_path)}: {error}",
            provider=self.type.value,
            path=relative_path,
        )

    async def is_available(self) -> bool:
        if self.s3_client is None or not self.bucket:
            return False

        try:
            await self._call("head_object", Bucket=self.bucket, Key=f"{self.prefix}.test")
            return True
        except ClientError as e:
            # 404 means the bucket is reachable and the probe key just doesn't exist
            if is_not_found(e):
                return True
            if is_forbidden(e):
                logger.warning(f"Access denied to bucket {self.bucket}")
                return False
            logger.warning(f"S3 availability check failed: {e}")
            return False
        except Exception as e:  # never raise from an availability check
            logger.warning(f"S3 availability check failed: {e}")
            return False

    async def write(self, relative_path: str, data: bytes, mime_type: Optional[str] = None) -> WriteResult:
        if self.s3_client is None:
            return WriteResult.failed(relative_path, "S3 client not configured")

        key = self.key_for(relative_path)
        sha256 = compute_sha256(data)

        try:
            await self._call(
                "put_object",
                Bucket=self.bucket,
                Key=key,
                Body=data,
                ContentType=mime_type or guess_mime_type(relative_path),
                Metadata={"sha256": sha256},
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"Write failed for {key}: {e}")
            raise self._unexpected("write", relative_path, e) from e

        logger.debug(f"Wrote object: {key} ({len(data)} bytes)")
        return WriteResult(
            success=True,
            relative_path=relative_path,
            location=self.uri_for(relative_path),
            size=len(data),
            sha256=sha256,
        )

    async def read(self, relative_path: str) -> Optional[ReadResult]:
        if self.s3_client is None:
            return None

        try:
            response = await self._call("get_object", Bucket=self.bucket, Key=self.key_for(relative_path))
            body = response.get("Body")
            if body is None:
                return None
            data = await asyncio.to_thread(body.read)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise self._unexpected("read", relative_path, e) from e
        except BotoCoreError as e:
            raise self._unexpected("read", relative_path, e) from e

        return ReadResult(
            data=data,
            size=len(data),
            mime_type=response.get("ContentType") or guess_mime_type(relative_path),
        )

    async def _head(self, relative_path: str) -> Optional[dict]:
        try:
            return await self._call("head_object", Bucket=self.bucket, Key=self.key_for(relative_path))
        except ClientError as e:
            if is_not_found(e):
                return None
            raise self._unexpected("head", relative_path, e) from e
        except BotoCoreError as e:
            raise self._unexpected("head", relative_path, e) from e

    async def exists(self, relative_path: str) -> bool:
        if self.s3_client is None:
            return False
        return await self._head(relative_path) is not None

    async def delete(self, relative_path: str) -> bool:
        if self.s3_client is None:
            return False

        key = self.key_for(relative_path)
        try:
            await self._call("delete_object", Bucket=self.bucket, Key=key)
        except ClientError as e:
            if is_not_found(e):
                return True
            raise self._unexpected("delete", relative_path, e) from e
        except BotoCoreError as e:
            raise self._unexpected("delete", relative_path, e) from e

        logger.debug(f"Deleted object: {key}")
        return True

    def get_serve_url(self, relative_path: str) -> str:
        """Presigned, expiring GET URL (the bucket is private).

        Falls back to the server-side redirect route when no client is
        configured or signing fails.
        """
        fallback = f"/api/storage/s3/{relative_path}"
        if self.s3_client is None:
            return fallback

        with self._lock:
            try:
                return self.s3_client.generate_presigned_url(
                    "get_object",
                    Params={"Bucket": self.bucket, "Key": self.key_for(relative_path)},
                    ExpiresIn=self.presigned_ttl_s,
                )
            except (ClientError, BotoCoreError) as e:
                logger.error(f"Failed to generate presigned URL for {self.key_for(relative_path)}: {e}")
                return fallback

    async def get_stats(self, relative_path: str) -> Optional[FileStats]:
        if self.s3_client is None:
            return None

        head = await self._head(relative_path)
        if head is None:
            return None

        # S3 has no server-side SHA-256 we can trust; hash the stored bytes
        read_result = await self.read(relative_path)
        if read_result is None:
            return None

        return FileStats(
            size=head.get("ContentLength", read_result.size),
            sha256=compute_sha256(read_result.data),
            mime_type=head.get("ContentType") or guess_mime_type(relative_path),
            modified_at=head.get("LastModified"),
        )

    def __repr__(self) -> str:
        return f"S3Provider(bucket={self.bucket!r}, prefix={self.prefix!r})"
