"""Object storage for uploaded certificates.

Objects live under ``certificates/<ownerId>/<epoch-millis>-<filename>``.
Keys are not content-addressed: two uploads of the same bytes get two keys.
Anchoring state is kept in the object's user metadata (``hash``, ``txhash``,
``anchor-status``) so the bucket listing is the only record needed.
"""

import logging
import posixpath
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Protocol

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import NotFoundError, StorageError, ValidationError

logger = logging.getLogger(__name__)

KEY_ROOT = "certificates"

# User metadata fields
META_HASH = "hash"
META_TXHASH = "txhash"
META_STATUS = "anchor-status"

_MISSING_CODES = {"404", "NoSuchKey", "NotFound"}
_TAKEN_CODES = {"412", "PreconditionFailed"}

# Conditional puts that find the key taken retry with a later stamp
_PUT_ATTEMPTS = 3


@dataclass
class ObjectInfo:
    key: str
    filename: str
    size: int
    last_modified: Optional[datetime]
    url: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)


def owner_prefix(owner_id: str) -> str:
    if not isinstance(owner_id, str) or not owner_id or "/" in owner_id:
        raise ValidationError(f"Invalid owner id: {owner_id!r}")
    return f"{KEY_ROOT}/{owner_id}/"


def build_key(owner_id: str, filename: str, stamp_ms: int) -> str:
    """Build the storage key for an upload.

    Only the basename of the client-supplied filename is kept so a crafted
    name cannot escape the owner's prefix.
    """
    name = posixpath.basename((filename or "").replace("\\", "/")).strip()
    if not name:
        raise ValidationError("A filename is required")
    return f"{owner_prefix(owner_id)}{stamp_ms}-{name}"


class ObjectStore(Protocol):
    """Protocol for certificate object stores."""

    def put(
        self,
        owner_id: str,
        filename: str,
        content_type: str,
        data: bytes,
        metadata: Optional[Dict[str, str]] = None,
    ) -> str:
        """Store a blob under a fresh key and return the key."""
        ...

    def list(self, owner_id: str) -> List[ObjectInfo]:
        """List every object owned by ``owner_id`` with a signed URL."""
        ...

    def get(self, owner_id: str, filename: str) -> bytes:
        """Fetch an object by its stored leaf name."""
        ...

    def read(self, key: str) -> bytes:
        ...

    def head(self, key: str) -> Dict[str, str]:
        """Return the user metadata of an object."""
        ...

    def set_metadata(self, key: str, updates: Dict[str, str]) -> Dict[str, str]:
        """Merge ``updates`` into an object's metadata without touching its bytes."""
        ...

    def iter_keys(self, prefix: str = KEY_ROOT + "/") -> Iterator[str]:
        ...


class _MonotonicMillis:
    """Wall-clock milliseconds that never repeat within a process."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            stamp = int(self._clock() * 1000)
            if stamp <= self._last:
                stamp = self._last + 1
            self._last = stamp
            return stamp


class S3ObjectStore:
    """S3-backed object store."""

    def __init__(self, client, bucket: str, url_expiry: int = 3600, clock=time.time):
        self.client = client
        self.bucket = bucket
        self.url_expiry = url_expiry
        self._stamp = _MonotonicMillis(clock)

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3ObjectStore":
        settings.require("s3_bucket", "aws_region")
        client = boto3.client(
            "s3",
            region_name=settings.aws_region,
            config=Config(
                connect_timeout=settings.request_timeout,
                read_timeout=settings.request_timeout,
                retries={"max_attempts": 3, "mode": "standard"},
            ),
        )
        return cls(client, settings.s3_bucket, settings.signed_url_expiry)

    def put(self, owner_id, filename, content_type, data, metadata=None):
        """Write a new object, never overwriting one another process wrote.

        Stamps only increase within a process, so across worker processes
        the write is conditional (``If-None-Match: *``) and a taken key is
        retried with a fresh stamp.
        """
        for _ in range(_PUT_ATTEMPTS):
            key = build_key(owner_id, filename, self._stamp())
            try:
                self.client.put_object(
                    Bucket=self.bucket,
                    Key=key,
                    Body=bytes(data),
                    ContentType=content_type or "application/octet-stream",
                    Metadata=dict(metadata or {}),
                    IfNoneMatch="*",
                )
            except ClientError as e:
                if _error_code(e) in _TAKEN_CODES:
                    logger.warning("Key %s already exists, retrying with a new stamp", key)
                    continue
                logger.error("Failed to store %s: %s", key, e)
                raise StorageError(f"Failed to store certificate: {e}") from e
            except BotoCoreError as e:
                logger.error("Failed to store %s: %s", key, e)
                raise StorageError(f"Failed to store certificate: {e}") from e
            logger.debug("Stored %s (%d bytes)", key, len(data))
            return key
        raise StorageError(f"No free key for {filename!r} after {_PUT_ATTEMPTS} attempts")

    def list(self, owner_id):
        objects = []
        for item in self._iter_objects(owner_prefix(owner_id)):
            key = item["Key"]
            objects.append(
                ObjectInfo(
                    key=key,
                    filename=key.rsplit("/", 1)[-1],
                    size=item.get("Size", 0),
                    last_modified=item.get("LastModified"),
                    url=self._signed_url(key),
                    metadata=self._head_best_effort(key),
                )
            )
        return objects

    def get(self, owner_id, filename):
        name = posixpath.basename(filename or "")
        if not name:
            raise ValidationError("A filename is required")
        return self.read(owner_prefix(owner_id) + name)

    def read(self, key):
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=key)
            return response["Body"].read()
        except ClientError as e:
            self._raise_for(e, key)
        except BotoCoreError as e:
            raise StorageError(f"Failed to read {key}: {e}") from e

    def head(self, key):
        return self._head(key)[0]

    def set_metadata(self, key, updates):
        metadata, content_type = self._head(key)
        merged = dict(metadata)
        merged.update(updates)
        try:
            self.client.copy_object(
                Bucket=self.bucket,
                Key=key,
                CopySource={"Bucket": self.bucket, "Key": key},
                Metadata=merged,
                MetadataDirective="REPLACE",
                ContentType=content_type,
            )
        except ClientError as e:
            self._raise_for(e, key)
        except BotoCoreError as e:
            raise StorageError(f"Failed to update metadata for {key}: {e}") from e
        return merged

    def iter_keys(self, prefix=KEY_ROOT + "/"):
        for item in self._iter_objects(prefix):
            yield item["Key"]

    # --- internals ---

    def _iter_objects(self, prefix: str):
        paginator = self.client.get_paginator("list_objects_v2")
        try:
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                yield from page.get("Contents", [])
        except (ClientError, BotoCoreError) as e:
            logger.error("Failed to list %s: %s", prefix, e)
            raise StorageError(f"Failed to list certificates: {e}") from e

    def _signed_url(self, key: str) -> str:
        try:
            return self.client.generate_presigned_url(
                "get_object",
                Params={"Bucket": self.bucket, "Key": key},
                ExpiresIn=self.url_expiry,
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(f"Failed to sign URL for {key}: {e}") from e

    def _head(self, key: str):
        try:
            response = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            self._raise_for(e, key)
        except BotoCoreError as e:
            raise StorageError(f"Failed to read metadata for {key}: {e}") from e
        return response.get("Metadata", {}), response.get("ContentType", "application/octet-stream")

    def _head_best_effort(self, key: str) -> Dict[str, str]:
        try:
            return self.head(key)
        except (StorageError, NotFoundError) as e:
            logger.warning("Error getting metadata for %s: %s", key, e)
            return {}

    def _raise_for(self, error: ClientError, key: str):
        if _error_code(error) in _MISSING_CODES:
            raise NotFoundError(f"Certificate not found: {key}") from error
        raise StorageError(f"Storage request for {key} failed: {error}") from error


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))
