from __future__ import annotations

import asyncio
import threading
from typing import Optional

import httpx

from portalauth.api.schemas import DeviceContext
from portalauth.config import Settings, get_settings, reset_settings_cache
from portalauth.logging import get_logger
from portalauth.service.actions import SessionActions
from portalauth.service.background import (
    AsyncioBackgroundPlatform,
    BackgroundPlatform,
    BackgroundRefreshWorker,
    RefreshBroadcast,
)
from portalauth.service.device import ClientInfoCache, DeviceIdentityManager
from portalauth.service.identity import IdentityProviderClient
from portalauth.service.interceptor import RequestInterceptor
from portalauth.service.refresh import RefreshCoordinator, RefreshOutcome
from portalauth.service.route_gate import Navigator, ProtectedRouteGate
from portalauth.service.scheduler import ProactiveRefreshScheduler
from portalauth.service.session_state import SessionStateStore
from portalauth.storage.durable import DurableStorage, RedisStorage, build_storage

logger = get_logger(__name__)


class AuthRuntime:
    """Holds the session components of one running instance, wired together."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        storage: Optional[DurableStorage] = None,
        platform: Optional[BackgroundPlatform] = None,
        broadcast: Optional[RefreshBroadcast] = None,
    ) -> None:
        self.settings = settings or get_settings()
        s = self.settings
        logger.info(
            "runtime_init_started",
            storage_backend=s.storage_backend.value if storage is None else type(storage).__name__,
            background_sync=s.background_sync_enabled,
        )
        self.storage = storage if storage is not None else build_storage(s)
        self.devices = DeviceIdentityManager(self.storage)
        self.device = self.devices.identity()
        self.device_id = self.device.id
        self.client_info = ClientInfoCache(
            self.storage, user_agent=s.user_agent, ttl_hours=s.client_info_ttl_hours
        )
        self.client = httpx.AsyncClient(
            transport=transport,
            timeout=s.request_timeout_seconds,
            headers={"user-agent": s.user_agent},
        )
        self.identity = IdentityProviderClient(
            self.client,
            s.identity_base_url,
            device_id=self.device_id,
            csrf_cookie_name=s.csrf_cookie_name,
            csrf_header_name=s.csrf_header_name,
        )
        self.store = SessionStateStore()
        self.coordinator = self._coordinator(self.store)
        self.interceptor = RequestInterceptor(self.coordinator)

        self.broadcast = broadcast or RefreshBroadcast()
        self.platform = platform or AsyncioBackgroundPlatform()
        worker = None
        self._unsubscribe_broadcast = None
        if s.background_sync_enabled:
            worker = BackgroundRefreshWorker(self._coordinator(SessionStateStore()), self.broadcast)
            self._unsubscribe_broadcast = self.broadcast.subscribe(self.coordinator.apply_broadcast)
        self.scheduler = ProactiveRefreshScheduler(
            self.coordinator,
            safety_margin_seconds=s.refresh_safety_margin_seconds,
            platform=self.platform,
            worker=worker,
        )
        self.actions = SessionActions(self.store, self.coordinator, scheduler=self.scheduler)
        logger.info("runtime_init_completed", device_id=self.device_id)

    def _coordinator(self, store: SessionStateStore) -> RefreshCoordinator:
        return RefreshCoordinator(
            store,
            self.identity,
            access_token_ttl_seconds=self.settings.access_token_ttl_seconds,
            device_context=self.device_context,
        )

    def device_context(self) -> DeviceContext:
        return DeviceContext(
            device_id=self.device_id,
            user_agent=self.settings.user_agent,
            ip_address=self.client_info.cached_ip_address(),
        )

    def gate(self, navigator: Navigator, *, location: str = "/") -> ProtectedRouteGate:
        return ProtectedRouteGate(
            self.store,
            navigator,
            location=location,
            login_path=self.settings.login_path,
            return_param=self.settings.return_param,
            public_paths=self.settings.public_paths,
        )

    async def start(self) -> RefreshOutcome:
        """Warm the client info cache, then run the one startup refresh."""
        url = f"{self.settings.portal_api_base_url.rstrip('/')}/client-info"
        await self.client_info.fetch(self.client, url)
        return await self.coordinator.silent_refresh()

    async def aclose(self) -> None:
        self.scheduler.close()
        if self._unsubscribe_broadcast is not None:
            self._unsubscribe_broadcast()
        await self.client.aclose()
        if isinstance(self.storage, RedisStorage):
            self.storage.close()
        logger.info("runtime_closed")


runtime: Optional[AuthRuntime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> AuthRuntime:
    """Get or create the process-wide runtime (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = AuthRuntime()
        return runtime


def reset_runtime_for_tests() -> AuthRuntime:
    """Rebuild the runtime from freshly read settings."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            previous = runtime
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(previous.aclose())
            except RuntimeError:
                asyncio.run(previous.aclose())
        reset_settings_cache()
        runtime = AuthRuntime()
        return runtime


__all__ = ["AuthRuntime", "get_runtime", "reset_runtime_for_tests"]
