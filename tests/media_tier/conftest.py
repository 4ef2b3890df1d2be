"""Shared fixtures for MediaTier tests: providers on tmp_path, a fake S3 client, a SQLite catalog."""

from __future__ import annotations

import io
from datetime import datetime, timezone
from typing import Dict, Optional, Set

import pytest
from botocore.exceptions import ClientError

from MediaTier.catalog import MediaAsset, SQLiteMediaCatalog
from MediaTier.storage.base import ProviderType
from MediaTier.storage.cache_provider import CacheProvider
from MediaTier.storage.local_provider import LocalVolumeProvider
from MediaTier.storage.registry import ProviderRegistry
from MediaTier.storage.s3_provider import S3Provider


def _client_error(code: str, status: int, operation: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        operation,
    )


class FakeS3Client:
    """In-memory stand-in for a boto3 S3 client.

    Attributes:
        objects: key -> stored object dict
        fail_ops: operation names that raise a 500 InternalError
        denied: when True every call raises AccessDenied
        corrupt_writes: when True put_object stores different bytes
    """

    def __init__(self):
        self.objects: Dict[str, dict] = {}
        self.fail_ops: Set[str] = set()
        self.denied = False
        self.corrupt_writes = False
        self.calls: list = []

    def _check(self, operation: str) -> None:
        self.calls.append(operation)
        if self.denied:
            raise _client_error("AccessDenied", 403, operation)
        if operation in self.fail_ops:
            raise _client_error("InternalError", 500, operation)

    def put_object(self, Bucket: str, Key: str, Body: bytes, ContentType: Optional[str] = None, Metadata=None):
        self._check("PutObject")
        data = Body + b"!" if self.corrupt_writes else Body
        self.objects[Key] = {
            "Body": data,
            "ContentType": ContentType,
            "Metadata": dict(Metadata or {}),
            "LastModified": datetime.now(timezone.utc),
        }
        return {"ETag": '"etag"'}

    def get_object(self, Bucket: str, Key: str):
        self._check("GetObject")
        if Key not in self.objects:
            raise _client_error("NoSuchKey", 404, "GetObject")
        obj = self.objects[Key]
        return {"Body": io.BytesIO(obj["Body"]), "ContentType": obj["ContentType"]}

    def head_object(self, Bucket: str, Key: str):
        self._check("HeadObject")
        if Key not in self.objects:
            raise _client_error("404", 404, "HeadObject")
        obj = self.objects[Key]
        return {
            "ContentLength": len(obj["Body"]),
            "ContentType": obj["ContentType"],
            "LastModified": obj["LastModified"],
            "Metadata": obj["Metadata"],
        }

    def delete_object(self, Bucket: str, Key: str):
        self._check("DeleteObject")
        self.objects.pop(Key, None)
        return {}

    def generate_presigned_url(self, ClientMethod: str, Params: dict, ExpiresIn: int):
        return f"https://{Params['Bucket']}.s3.amazonaws.com/{Params['Key']}?X-Amz-Expires={ExpiresIn}"


@pytest.fixture
def s3_client():
    return FakeS3Client()


@pytest.fixture
def local(tmp_path):
    root = tmp_path / "volume"
    root.mkdir()
    return LocalVolumeProvider(str(root))


@pytest.fixture
def cache(tmp_path):
    root = tmp_path / "ssd"
    root.mkdir()
    return CacheProvider(str(root), availability_ttl_s=0)


@pytest.fixture
def remote(s3_client):
    return S3Provider(bucket="media-bucket", prefix="media/", client=s3_client)


@pytest.fixture
def registry(local, cache, remote):
    return ProviderRegistry([local, cache, remote], mode="remote")


@pytest.fixture
def catalog(tmp_path):
    """SQLite catalog on a temp file."""
    cat = SQLiteMediaCatalog(str(tmp_path / "catalog.sqlite3"), wal_mode=False)
    yield cat
    cat.conn.close()


def make_asset(
    asset_id: str,
    provider: ProviderType,
    *,
    person_id: str = "p1",
    relative_path: Optional[str] = None,
    source_url: Optional[str] = None,
    uploaded_at: Optional[datetime] = None,
    sha256: Optional[str] = None,
    file_size: int = 0,
    source: Optional[str] = None,
) -> MediaAsset:
    """Build a catalog row with canonical defaults."""
    return MediaAsset(
        id=asset_id,
        person_id=person_id,
        relative_path=relative_path or f"profiles/{person_id}/2024/05/{asset_id}.jpg",
        storage_provider=provider,
        sha256=sha256,
        file_size=file_size,
        source_url=source_url,
        uploaded_at=uploaded_at or datetime(2024, 5, 3, tzinfo=timezone.utc),
        source=source,
    )


@pytest.fixture
def asset_factory():
    return make_asset
