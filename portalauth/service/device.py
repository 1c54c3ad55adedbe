from __future__ import annotations

import json
import locale
import platform
import random
import re
import secrets
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import httpx

from portalauth.logging import get_logger
from portalauth.storage.durable import DurableStorage
from portalauth.storage.errors import StorageUnavailableError
from portalauth.storage.models import ClientInfo, DeviceIdentity

logger = get_logger(__name__)

DEVICE_ID_KEY = "device_id"
CLIENT_INFO_KEY = "client_info"
DEVICE_ID_PREFIX = "device-"
CLIENT_INFO_TTL_HOURS = 24

DEVICE_ID_PATTERN = re.compile(r"^device-[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")


def _is_stable_id(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(DEVICE_ID_PREFIX) and len(value) > len(DEVICE_ID_PREFIX)


def _fallback_uuid(randbytes: Callable[[int], bytes]) -> str:
    """UUID v4 layout built from an arbitrary byte source."""
    raw = bytearray(randbytes(16))
    raw[6] = (raw[6] & 0x0F) | 0x40
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def generate_device_id() -> str:
    """New ``device-<uuid4>`` identifier.

    ``uuid4`` draws from the OS CSPRNG. If that source fails the same layout
    is built from ``secrets`` and, as a last resort, from ``random``.
    """
    try:
        return f"{DEVICE_ID_PREFIX}{uuid.uuid4()}"
    except Exception as exc:
        logger.warning("device_id_uuid4_failed", error=str(exc))
    try:
        return f"{DEVICE_ID_PREFIX}{_fallback_uuid(secrets.token_bytes)}"
    except Exception as exc:
        logger.warning("device_id_secrets_failed", error=str(exc))
    return f"{DEVICE_ID_PREFIX}{_fallback_uuid(lambda n: bytes(random.getrandbits(8) for _ in range(n)))}"


class DeviceIdentityManager:
    """Permanent opaque identifier for this installation.

    The identifier is written once and then returned unchanged for as long as
    the durable storage keeps it. When storage is unreachable a fresh value is
    returned for the call without being persisted.
    """

    def __init__(
        self,
        storage: DurableStorage,
        *,
        generator: Callable[[], str] = generate_device_id,
    ) -> None:
        self.storage = storage
        self._generator = generator

    def _read_existing(self) -> Optional[str]:
        stored = self.storage.get_item(DEVICE_ID_KEY)
        if not stored:
            return None
        if stored.strip().startswith("{"):
            # Older releases stored {"id": "...", "createdAt": ...}
            try:
                parsed = json.loads(stored)
            except json.JSONDecodeError:
                return None
            legacy_id = parsed.get("id") if isinstance(parsed, dict) else None
            if _is_stable_id(legacy_id):
                self.storage.set_item(DEVICE_ID_KEY, legacy_id)
                logger.info("device_id_migrated", format="json")
                return legacy_id
            return None
        if _is_stable_id(stored):
            return stored
        return None

    def get_or_create(self) -> str:
        try:
            existing = self._read_existing()
            if existing:
                return existing
            device_id = self._generator()
            self.storage.set_item(DEVICE_ID_KEY, device_id)
            logger.info("device_id_generated", device_id=device_id)
            return device_id
        except StorageUnavailableError as exc:
            logger.warning(
                "device_id_storage_unavailable",
                error=exc.message,
                detail=exc.detail,
                persistent=False,
            )
            return self._generator()

    def identity(self) -> DeviceIdentity:
        return DeviceIdentity(id=self.get_or_create())

    def clear(self) -> None:
        try:
            self.storage.remove_item(DEVICE_ID_KEY)
            logger.info("device_id_cleared")
        except StorageUnavailableError as exc:
            logger.warning("device_id_clear_failed", error=exc.message)


class ClientInfoCache:
    """Last-known IP address and user agent, cached for a day."""

    def __init__(
        self,
        storage: DurableStorage,
        *,
        user_agent: str,
        ttl_hours: int = CLIENT_INFO_TTL_HOURS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.storage = storage
        self.user_agent = user_agent
        self.ttl = timedelta(hours=ttl_hours)
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def get_cached(self) -> Optional[ClientInfo]:
        try:
            raw = self.storage.get_item(CLIENT_INFO_KEY)
        except StorageUnavailableError as exc:
            logger.warning("client_info_read_failed", error=exc.message)
            return None
        if not raw:
            return None
        try:
            info = ClientInfo.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, ValueError, AttributeError):
            self._discard()
            return None
        if self._now() - info.cached_at < self.ttl:
            return info
        self._discard()
        return None

    def _discard(self) -> None:
        try:
            self.storage.remove_item(CLIENT_INFO_KEY)
        except StorageUnavailableError as exc:
            logger.warning("client_info_discard_failed", error=exc.message)

    def store(self, info: ClientInfo) -> None:
        try:
            self.storage.set_item(CLIENT_INFO_KEY, json.dumps(info.to_dict()))
        except StorageUnavailableError as exc:
            logger.warning("client_info_write_failed", error=exc.message)

    async def fetch(self, client: httpx.AsyncClient, url: str) -> ClientInfo:
        """Cached info when fresh, else ``GET url``; never raises."""
        cached = self.get_cached()
        if cached:
            return cached
        try:
            response = await client.get(url, headers={"cache-control": "no-store"})
            if response.status_code != 200:
                raise httpx.HTTPStatusError(
                    f"client info returned {response.status_code}",
                    request=response.request,
                    response=response,
                )
            payload = response.json()
            info = ClientInfo(
                ip_address=payload.get("ipAddress"),
                user_agent=payload.get("userAgent") or self.user_agent,
                cached_at=self._now(),
            )
        except (httpx.HTTPError, ValueError, AttributeError) as exc:
            logger.warning("client_info_fetch_failed", error=str(exc))
            return ClientInfo(ip_address=None, user_agent=self.user_agent, cached_at=self._now())
        self.store(info)
        return info

    def cached_ip_address(self) -> Optional[str]:
        cached = self.get_cached()
        return cached.ip_address if cached else None


def device_info(manager: DeviceIdentityManager, user_agent: str) -> Dict[str, str]:
    """Descriptive fields for diagnostics and session listings."""
    lang, _ = locale.getlocale()
    return {
        "deviceId": manager.get_or_create(),
        "userAgent": user_agent,
        "language": lang or "en",
        "platform": platform.system() or "unknown",
        "timezone": time.tzname[0] if time.tzname else "UTC",
    }


__all__ = [
    "DeviceIdentityManager",
    "ClientInfoCache",
    "DEVICE_ID_KEY",
    "CLIENT_INFO_KEY",
    "DEVICE_ID_PATTERN",
    "device_info",
    "generate_device_id",
]
