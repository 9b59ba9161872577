"""Tests for blob backends and the typed license / event / identity stores."""

import os

import pytest
import redis
from pydantic import SecretStr

from fedlicense.config import Settings
from fedlicense.errors import ConfigurationError, StoreError
from fedlicense.schema import IdentityMapping, WebhookEvent
from fedlicense.store import (
    EventLog,
    FileBlobStore,
    IdentityStore,
    LicenseStore,
    MemoryBlobStore,
    RedisBlobStore,
    event_key,
    file_stores,
    redis_stores,
)
from tests.conftest import FakeRedis, make_record


@pytest.fixture(params=["memory", "file", "redis"])
def backend(request, tmp_path):
    if request.param == "memory":
        return MemoryBlobStore("test")
    if request.param == "redis":
        return RedisBlobStore(FakeRedis(), "test")
    return FileBlobStore(tmp_path, "test")


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------


class TestBlobBackends:
    def test_missing_key_is_none(self, backend):
        assert backend.get_json("nope") is None

    def test_set_then_get(self, backend):
        backend.set_json("ORD-1:636851", {"a": 1, "b": ["x"]})
        assert backend.get_json("ORD-1:636851") == {"a": 1, "b": ["x"]}

    def test_set_overwrites_whole_value(self, backend):
        backend.set_json("k", {"a": 1, "b": 2})
        backend.set_json("k", {"a": 3})
        assert backend.get_json("k") == {"a": 3}

    def test_list_keys_sorted_with_prefix(self, backend):
        for key in ("user:2", "customer:9", "user:1"):
            backend.set_json(key, {})
        assert backend.list_keys() == ["customer:9", "user:1", "user:2"]
        assert backend.list_keys("user:") == ["user:1", "user:2"]

    def test_values_are_copies(self, backend):
        data = {"a": [1]}
        backend.set_json("k", data)
        data["a"].append(2)
        loaded = backend.get_json("k")
        loaded["a"].append(3)
        assert backend.get_json("k") == {"a": [1]}

    def test_unserializable_value(self, backend):
        with pytest.raises(StoreError):
            backend.set_json("k", {"a": object()})


class TestFileBlobStore:
    def test_awkward_keys_round_trip(self, tmp_path):
        store = FileBlobStore(tmp_path, "licenses")
        key = "evt_2025-11-23T14:18:29Z_order_created_a/b_0f"
        store.set_json(key, {"ok": True})
        assert store.list_keys() == [key]
        assert store.get_json(key) == {"ok": True}

    def test_failed_write_leaves_no_partial_record(self, tmp_path, monkeypatch):
        store = FileBlobStore(tmp_path, "licenses")

        def broken_replace(src, dst):
            raise OSError("disk full")

        monkeypatch.setattr(os, "replace", broken_replace)
        with pytest.raises(StoreError, match="disk full"):
            store.set_json("ORD-1:636851", {"a": 1})

        assert store.get_json("ORD-1:636851") is None
        assert list(store.directory.iterdir()) == []

    def test_corrupt_file_raises(self, tmp_path):
        store = FileBlobStore(tmp_path, "licenses")
        store.set_json("k", {"a": 1})
        (store.directory / "k.json").write_text("{not json", encoding="utf-8")
        with pytest.raises(StoreError):
            store.get_json("k")

    def test_list_keys_without_directory(self, tmp_path):
        assert FileBlobStore(tmp_path, "empty").list_keys() == []

    def test_file_stores_layout(self, tmp_path):
        licenses, events, identities = file_stores(tmp_path)
        assert licenses.backend.directory == tmp_path / "licenses"
        assert events.backend.directory == tmp_path / "ls_events"
        assert identities.backend.directory == tmp_path / "identities"


class TestRedisBlobStore:
    def test_keys_are_namespaced(self):
        client = FakeRedis()
        RedisBlobStore(client, "licenses").set_json("ORD-1:636851", {"a": 1})
        assert list(client.data) == ["fedlicense:licenses:ORD-1:636851"]

    def test_stores_sharing_a_client_stay_apart(self):
        client = FakeRedis()
        licenses = RedisBlobStore(client, "licenses")
        events = RedisBlobStore(client, "ls_events")
        licenses.set_json("ORD-1:636851", {"a": 1})
        events.set_json("evt_1", {"b": 2})
        assert licenses.list_keys() == ["ORD-1:636851"]
        assert events.list_keys() == ["evt_1"]
        assert events.get_json("ORD-1:636851") is None

    def test_glob_characters_in_keys(self):
        store = RedisBlobStore(FakeRedis(), "licenses")
        for key in ("a*b", "a?c", "[x]"):
            store.set_json(key, {})
        assert store.list_keys("a*") == ["a*b"]
        assert store.list_keys() == ["[x]", "a*b", "a?c"]

    @pytest.mark.parametrize(
        "call", [lambda s: s.get_json("k"), lambda s: s.set_json("k", {}), lambda s: s.list_keys()]
    )
    def test_connection_error_is_store_error(self, call):
        client = FakeRedis()
        client.down = True
        with pytest.raises(StoreError, match="Connection refused"):
            call(RedisBlobStore(client, "licenses"))

    def test_corrupt_value_raises(self):
        client = FakeRedis()
        client.data["fedlicense:licenses:k"] = b"{not json"
        with pytest.raises(StoreError, match="Corrupt"):
            RedisBlobStore(client, "licenses").get_json("k")


class TestRedisStores:
    def test_missing_url(self):
        with pytest.raises(ConfigurationError, match="REDIS_URL"):
            redis_stores(Settings())

    def test_invalid_url(self):
        with pytest.raises(ConfigurationError):
            redis_stores(Settings(redis_url=SecretStr("http://not-redis")))

    def test_layout(self, monkeypatch):
        client = FakeRedis()
        seen = []

        def from_url(url):
            seen.append(url)
            return client

        monkeypatch.setattr(redis.Redis, "from_url", from_url)
        licenses, events, identities = redis_stores(
            Settings(redis_url=SecretStr("redis://kv.example.com:6379"))
        )
        assert seen == ["redis://kv.example.com:6379"]
        identities.put_reverse("C42", "U1")
        assert list(client.data) == ["fedlicense:identities:customer:C42"]
        assert licenses.backend.client is client
        assert events.backend.name == "ls_events"


# ---------------------------------------------------------------------------
# Typed stores
# ---------------------------------------------------------------------------


class TestLicenseStore:
    def test_put_get_by_reproducible_key(self, backend, signer):
        store = LicenseStore(backend)
        record = make_record(signer, order_id="ORD-1", product_id="636851")
        store.put(record)
        assert store.get("ORD-1:636851") == record

    def test_get_missing(self, backend):
        assert LicenseStore(backend).get("ORD-9:1") is None

    def test_scan_skips_malformed(self, backend, signer):
        store = LicenseStore(backend)
        store.put(make_record(signer, order_id="ORD-1"))
        backend.set_json("ORD-2:636851", {"order_id": "ORD-2"})
        assert [key for key, _ in store.scan()] == ["ORD-1:636851"]

    def test_get_malformed_raises(self, backend):
        backend.set_json("ORD-2:1", {"order_id": "ORD-2"})
        with pytest.raises(StoreError, match="malformed"):
            LicenseStore(backend).get("ORD-2:1")


class TestEventLog:
    def _event(self):
        return WebhookEvent(
            received_at="2025-11-23T14:18:29Z",
            event_name="order_created",
            order_id="ORD-1",
            payload={"meta": {"event_name": "order_created"}},
        )

    def test_key_layout(self):
        assert event_key(self._event(), "abc123") == (
            "evt_2025-11-23T14:18:29Z_order_created_ORD-1_abc123"
        )

    def test_duplicate_deliveries_get_distinct_keys(self, backend):
        log = EventLog(backend)
        first = log.append(self._event())
        second = log.append(self._event())
        assert first != second
        assert log.list_keys() == sorted([first, second])

    def test_append_then_get(self, backend):
        log = EventLog(backend)
        key = log.append(self._event())
        assert log.get(key) == self._event()
        assert log.get("evt_missing") is None


class TestIdentityStore:
    def test_mapping_round_trip(self, backend):
        store = IdentityStore(backend)
        mapping = IdentityMapping(
            auth_user_id="U1",
            customer_ids=["C42"],
            linked_at="2025-01-01T00:00:00Z",
            updated_at="2025-01-01T00:00:00Z",
        )
        store.put_mapping(mapping)
        assert store.get_mapping("U1") == mapping
        assert backend.list_keys() == ["user:U1"]

    def test_missing_mapping(self, backend):
        assert IdentityStore(backend).get_mapping("U9") is None

    def test_reverse_index(self, backend):
        store = IdentityStore(backend)
        store.put_reverse("C42", "U1")
        assert store.get_reverse("C42") == "U1"
        assert store.get_reverse("C43") is None
