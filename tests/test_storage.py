import os
import stat

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from portalauth.config import Settings, StorageBackend
from portalauth.storage.durable import FileStorage, MemoryStorage, RedisStorage, build_storage
from portalauth.storage.errors import StorageUnavailableError


class TestFileStorage:
    def test_set_get_remove(self, tmp_path):
        storage = FileStorage(tmp_path / "nested" / "storage.json")
        assert storage.get_item("device_id") is None
        storage.set_item("device_id", "device-abc")
        assert storage.get_item("device_id") == "device-abc"
        storage.remove_item("device_id")
        assert storage.get_item("device_id") is None

    def test_file_is_private(self, tmp_path):
        path = tmp_path / "storage.json"
        FileStorage(path).set_item("k", "v")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_corrupt_file_reads_empty(self, tmp_path):
        path = tmp_path / "storage.json"
        path.write_text("{truncated", encoding="utf-8")
        storage = FileStorage(path)
        assert storage.get_item("k") is None
        storage.set_item("k", "v")
        assert storage.get_item("k") == "v"

    def test_unwritable_location_raises_storage_unavailable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        storage = FileStorage(blocker / "storage.json")
        with pytest.raises(StorageUnavailableError) as excinfo:
            storage.set_item("k", "v")
        assert "path" in excinfo.value.detail


class TestMemoryStorage:
    def test_initial_items(self):
        storage = MemoryStorage({"a": "1"})
        assert storage.get_item("a") == "1"
        storage.remove_item("missing")


class BrokenRedis:
    def get(self, key):
        raise RedisConnectionError("redis down")

    def set(self, key, value):
        raise RedisConnectionError("redis down")

    def delete(self, key):
        raise RedisConnectionError("redis down")


class TestRedisStorage:
    def test_errors_become_storage_unavailable(self):
        storage = RedisStorage("redis://localhost:6379/15")
        storage.client = BrokenRedis()
        with pytest.raises(StorageUnavailableError):
            storage.get_item("device_id")
        with pytest.raises(StorageUnavailableError):
            storage.set_item("device_id", "device-x")
        with pytest.raises(StorageUnavailableError):
            storage.remove_item("device_id")

    def test_keys_are_namespaced(self):
        storage = RedisStorage("redis://localhost:6379/15", namespace="ns")
        assert storage._key("device_id") == "ns:device_id"


def test_build_storage_selects_backend(tmp_path):
    memory = build_storage(Settings(storage_backend=StorageBackend.MEMORY, csrf_secret="s"))
    assert isinstance(memory, MemoryStorage)
    file_backed = build_storage(
        Settings(storage_backend="file", storage_path=str(tmp_path / "s.json"), csrf_secret="s")
    )
    assert isinstance(file_backed, FileStorage)
    redis_backed = build_storage(Settings(storage_backend="redis", csrf_secret="s"))
    assert isinstance(redis_backed, RedisStorage)
