"""Key-value persistence for licenses, webhook events and identity mappings.

Backends store one JSON document per key. `RedisBlobStore` is the deployed
backend. `FileBlobStore` (CLI and local dev server) writes to a temp file and
`os.replace`s it into place, so a failed write never leaves a partial record.
Typed wrappers sit on top:

  LicenseStore   - LicenseRecord under 'order_id:external_product_id'
  EventLog       - append-only WebhookEvent entries
  IdentityStore  - IdentityMapping per Clerk user + reverse index per customer
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import secrets
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any, Protocol
from urllib.parse import quote, unquote

import redis
from pydantic import ValidationError

from fedlicense.config import (
    EVENT_STORE_NAME,
    IDENTITY_STORE_NAME,
    LICENSE_STORE_NAME,
    REDIS_KEY_PREFIX,
    Settings,
)
from fedlicense.errors import ConfigurationError, StoreError
from fedlicense.schema import IdentityMapping, LicenseRecord, WebhookEvent
from fedlicense.utils import isoformat_utc

logger = logging.getLogger("fedlicense.store")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class BlobStore(Protocol):
    """Minimal JSON key-value store (last writer wins per key)."""

    def get_json(self, key: str) -> dict[str, Any] | None: ...

    def set_json(self, key: str, data: dict[str, Any]) -> None: ...

    def list_keys(self, prefix: str = "") -> list[str]: ...


class MemoryBlobStore:
    """In-process store. Values are kept serialized so callers never share dicts."""

    def __init__(self, name: str = "memory"):
        self.name = name
        self._data: dict[str, str] = {}

    def get_json(self, key: str) -> dict[str, Any] | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set_json(self, key: str, data: dict[str, Any]) -> None:
        try:
            self._data[key] = json.dumps(data)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Cannot serialize value for {key!r}: {e}") from e

    def list_keys(self, prefix: str = "") -> list[str]:
        return sorted(k for k in self._data if k.startswith(prefix))


class FileBlobStore:
    """One JSON file per key under `<root>/<name>/`."""

    def __init__(self, root: str | os.PathLike[str], name: str):
        self.name = name
        self.directory = Path(root) / name

    def _path(self, key: str) -> Path:
        # Keys contain ':' and may contain '/', so encode them into a flat filename
        return self.directory / f"{quote(key, safe='')}.json"

    def get_json(self, key: str) -> dict[str, Any] | None:
        path = self._path(key)
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to read {self.name}/{key}: {e}") from e

    def set_json(self, key: str, data: dict[str, Any]) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
        except OSError as e:
            raise StoreError(f"Failed to write {self.name}/{key}: {e}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False)
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            with contextlib.suppress(OSError):
                os.unlink(tmp_path)
            raise StoreError(f"Failed to write {self.name}/{key}: {e}") from e

    def list_keys(self, prefix: str = "") -> list[str]:
        if not self.directory.is_dir():
            return []
        keys = (unquote(p.name[: -len(".json")]) for p in self.directory.glob("*.json"))
        return sorted(k for k in keys if k.startswith(prefix))


class RedisBlobStore:
    """One JSON string per key under `<namespace>:<name>:` in Redis.

    This is the deployed backend: serverless functions have no durable disk.
    A single SET replaces the whole value, so readers never see a partial record.
    """

    def __init__(self, client: redis.Redis, name: str, namespace: str = REDIS_KEY_PREFIX):
        self.client = client
        self.name = name
        self._prefix = f"{namespace}:{name}:"

    def get_json(self, key: str) -> dict[str, Any] | None:
        try:
            raw = self.client.get(self._prefix + key)
        except redis.RedisError as e:
            raise StoreError(f"Failed to read {self.name}/{key}: {e}") from e
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            raise StoreError(f"Corrupt value at {self.name}/{key}: {e}") from e

    def set_json(self, key: str, data: dict[str, Any]) -> None:
        try:
            raw = json.dumps(data, ensure_ascii=False)
        except (TypeError, ValueError) as e:
            raise StoreError(f"Cannot serialize value for {key!r}: {e}") from e
        try:
            self.client.set(self._prefix + key, raw)
        except redis.RedisError as e:
            raise StoreError(f"Failed to write {self.name}/{key}: {e}") from e

    def list_keys(self, prefix: str = "") -> list[str]:
        # Filter in Python: keys may contain glob metacharacters
        try:
            found = self.client.scan_iter(match=f"{self._prefix}*", count=500)
            keys = [k.decode() if isinstance(k, bytes) else k for k in found]
        except redis.RedisError as e:
            raise StoreError(f"Failed to list {self.name}: {e}") from e
        keys = (k[len(self._prefix) :] for k in keys)
        return sorted(k for k in keys if k.startswith(prefix))


# ---------------------------------------------------------------------------
# License store
# ---------------------------------------------------------------------------


class LicenseStore:
    def __init__(self, backend: BlobStore):
        self.backend = backend

    def get(self, key: str) -> LicenseRecord | None:
        data = self.backend.get_json(key)
        if data is None:
            return None
        try:
            return LicenseRecord.model_validate(data)
        except ValidationError as e:
            raise StoreError(f"License record {key!r} is malformed: {e}") from e

    def put(self, record: LicenseRecord) -> None:
        """Overwrite the whole record at its key."""
        self.backend.set_json(record.key, record.model_dump(mode="json"))

    def list_keys(self) -> list[str]:
        return self.backend.list_keys()

    def scan(self) -> Iterator[tuple[str, LicenseRecord]]:
        """Yield every readable record; unreadable entries are logged and skipped."""
        for key in self.list_keys():
            try:
                record = self.get(key)
            except StoreError:
                logger.warning("Skipping unreadable license record %s", key, exc_info=True)
                continue
            if record is not None:
                yield key, record


# ---------------------------------------------------------------------------
# Event log
# ---------------------------------------------------------------------------


def event_key(event: WebhookEvent, suffix: str | None = None) -> str:
    """Unique key even for duplicate deliveries within the same second."""
    rand = suffix or secrets.token_hex(6)
    return f"evt_{event.received_at}_{event.event_name}_{event.order_id}_{rand}"


class EventLog:
    """Append-only record of authenticated webhook deliveries."""

    def __init__(self, backend: BlobStore):
        self.backend = backend

    def append(self, event: WebhookEvent) -> str:
        key = event_key(event)
        self.backend.set_json(key, event.model_dump(mode="json"))
        return key

    def get(self, key: str) -> WebhookEvent | None:
        data = self.backend.get_json(key)
        return None if data is None else WebhookEvent.model_validate(data)

    def list_keys(self) -> list[str]:
        return self.backend.list_keys("evt_")


# ---------------------------------------------------------------------------
# Identity store
# ---------------------------------------------------------------------------


class IdentityStore:
    """Forward mapping per Clerk user plus a reverse entry per LS customer id."""

    USER_PREFIX = "user:"
    CUSTOMER_PREFIX = "customer:"

    def __init__(self, backend: BlobStore):
        self.backend = backend

    def get_mapping(self, auth_user_id: str) -> IdentityMapping | None:
        data = self.backend.get_json(f"{self.USER_PREFIX}{auth_user_id}")
        if data is None:
            return None
        try:
            return IdentityMapping.model_validate(data)
        except ValidationError as e:
            raise StoreError(f"Identity mapping for {auth_user_id!r} is malformed: {e}") from e

    def put_mapping(self, mapping: IdentityMapping) -> None:
        self.backend.set_json(
            f"{self.USER_PREFIX}{mapping.auth_user_id}", mapping.model_dump(mode="json")
        )

    def put_reverse(self, customer_id: str, auth_user_id: str) -> None:
        self.backend.set_json(
            f"{self.CUSTOMER_PREFIX}{customer_id}",
            {"auth_user_id": auth_user_id, "linked_at": isoformat_utc()},
        )

    def get_reverse(self, customer_id: str) -> str | None:
        data = self.backend.get_json(f"{self.CUSTOMER_PREFIX}{customer_id}")
        return None if data is None else data.get("auth_user_id")


def file_stores(root: str | os.PathLike[str]) -> tuple[LicenseStore, EventLog, IdentityStore]:
    """Build the three stores on disk under `root`."""
    return (
        LicenseStore(FileBlobStore(root, LICENSE_STORE_NAME)),
        EventLog(FileBlobStore(root, EVENT_STORE_NAME)),
        IdentityStore(FileBlobStore(root, IDENTITY_STORE_NAME)),
    )


def redis_stores(settings: Settings) -> tuple[LicenseStore, EventLog, IdentityStore]:
    """Build the three stores on the Redis instance at REDIS_URL (or KV_URL)."""
    if settings.redis_url is None:
        raise ConfigurationError("REDIS_URL (or KV_URL) is not set; no durable license store")
    try:
        client = redis.Redis.from_url(settings.redis_url.get_secret_value())
    except ValueError as e:
        raise ConfigurationError(f"REDIS_URL is not a valid Redis URL: {e}") from e
    return (
        LicenseStore(RedisBlobStore(client, LICENSE_STORE_NAME)),
        EventLog(RedisBlobStore(client, EVENT_STORE_NAME)),
        IdentityStore(RedisBlobStore(client, IDENTITY_STORE_NAME)),
    )
