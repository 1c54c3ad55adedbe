from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol

from redis import Redis
from redis.exceptions import RedisError

from portalauth.config import Settings, StorageBackend
from portalauth.logging import get_logger
from portalauth.storage.errors import StorageUnavailableError

logger = get_logger(__name__)


class DurableStorage(Protocol):
    """String key/value storage that survives process restarts.

    Every method raises ``StorageUnavailableError`` when the backing store
    cannot be reached; callers decide whether to degrade.
    """

    def get_item(self, key: str) -> Optional[str]: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...


class MemoryStorage:
    """Process-local storage for tests and ephemeral runs."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._items: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            self._items[key] = value

    def remove_item(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)


class FileStorage:
    """JSON document on disk holding every key.

    Writes go through a temp file and ``os.replace`` so a crash mid-write
    never leaves a truncated document behind.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser()
        self._lock = threading.Lock()

    def _read_all(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as exc:
            raise StorageUnavailableError(
                "storage file unreadable", {"path": str(self.path), "error": str(exc)}
            ) from exc
        if not raw.strip():
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("storage_file_corrupt", path=str(self.path))
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(k): v for k, v in data.items() if isinstance(v, str)}

    def _write_all(self, items: Dict[str, str]) -> None:
        tmp_path = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self.path.parent), prefix=".storage_", suffix=".tmp"
            )
            try:
                os.write(fd, json.dumps(items, sort_keys=True).encode("utf-8"))
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise StorageUnavailableError(
                "storage file not writable", {"path": str(self.path), "error": str(exc)}
            ) from exc

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._read_all().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            items = self._read_all()
            items[key] = value
            self._write_all(items)

    def remove_item(self, key: str) -> None:
        with self._lock:
            items = self._read_all()
            if key in items:
                del items[key]
                self._write_all(items)


class RedisStorage:
    """Storage namespace inside a Redis database, shared by every process on the host."""

    def __init__(
        self,
        redis_url: str,
        *,
        namespace: str = "portalauth:storage",
        socket_timeout: float = 5.0,
    ) -> None:
        self.redis_url = redis_url
        self.namespace = namespace
        self.client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get_item(self, key: str) -> Optional[str]:
        try:
            return self.client.get(self._key(key))
        except RedisError as exc:
            raise StorageUnavailableError("redis get failed", {"key": key, "error": str(exc)}) from exc

    def set_item(self, key: str, value: str) -> None:
        try:
            self.client.set(self._key(key), value)
        except RedisError as exc:
            raise StorageUnavailableError("redis set failed", {"key": key, "error": str(exc)}) from exc

    def remove_item(self, key: str) -> None:
        try:
            self.client.delete(self._key(key))
        except RedisError as exc:
            raise StorageUnavailableError("redis delete failed", {"key": key, "error": str(exc)}) from exc

    def close(self) -> None:
        self.client.close()


def build_storage(settings: Settings) -> DurableStorage:
    backend = StorageBackend(settings.storage_backend)
    if backend == StorageBackend.MEMORY:
        return MemoryStorage()
    if backend == StorageBackend.REDIS:
        return RedisStorage(settings.redis_url)
    return FileStorage(settings.storage_path)


__all__ = [
    "DurableStorage",
    "MemoryStorage",
    "FileStorage",
    "RedisStorage",
    "build_storage",
]
