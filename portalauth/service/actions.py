from __future__ import annotations

from typing import Awaitable, Callable, Optional

import httpx

from portalauth.api.schemas import SessionPage, SessionQuery, UserProfile
from portalauth.logging import get_logger
from portalauth.service.errors import ServiceError
from portalauth.service.identity import IdentityProviderClient, ProviderReply
from portalauth.service.refresh import ACCESS_COOKIE, RefreshCoordinator
from portalauth.service.scheduler import ProactiveRefreshScheduler
from portalauth.service.session_state import SessionStateStore
from portalauth.storage.models import Session, SessionStatus

logger = get_logger(__name__)

REFRESH_COOKIE = "refreshToken"
MARKER_COOKIE = "isAuthenticated"


class SessionActions:
    """User-initiated session changes.

    ``logout()`` and ``logout_all()`` always end with the session Anonymous,
    even when the identity provider cannot be reached. Revoking other
    sessions leaves this instance's state untouched.

    ``current_user()`` and ``list_sessions()`` read through the access
    cookie; a 401 gets one refresh and one retry, as data calls do.
    """

    def __init__(
        self,
        store: SessionStateStore,
        coordinator: RefreshCoordinator,
        *,
        scheduler: Optional[ProactiveRefreshScheduler] = None,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.identity: IdentityProviderClient = coordinator.identity
        self.scheduler = scheduler
        self.user: Optional[UserProfile] = None

    async def _call(self, name: str, call) -> Optional[ProviderReply]:
        try:
            reply = await call()
        except (ServiceError, httpx.HTTPError) as exc:
            logger.warning("logout_call_failed", action=name, error=str(exc))
            return None
        if not reply.ok:
            logger.warning("logout_call_rejected", action=name, status_code=reply.status_code)
        return reply

    def _clear_local(self) -> Session:
        if self.scheduler is not None:
            self.scheduler.stop()
        self.coordinator.forget_credential()
        self.user = None
        for name in (ACCESS_COOKIE, REFRESH_COOKIE, MARKER_COOKIE):
            self.identity.client.cookies.delete(name)
        return self.store.transition(
            SessionStatus.ANONYMOUS,
            access_token_present=False,
            access_expires_at=None,
            challenge_id=None,
            masked_phone=None,
            error=None,
        )

    async def _settle_inflight(self) -> None:
        if self.coordinator.in_flight:
            await self.coordinator.refresh()

    async def _authorized(
        self, name: str, call: Callable[[], Awaitable[ProviderReply]]
    ) -> Optional[ProviderReply]:
        generation = self.coordinator.generation
        try:
            reply = await call()
            if reply.status_code == 401:
                if self.coordinator.generation == generation:
                    outcome = await self.coordinator.refresh()
                    if not outcome.success:
                        logger.info("session_read_unauthorized", action=name, reason=outcome.reason)
                        return reply
                reply = await call()
        except (ServiceError, httpx.HTTPError) as exc:
            logger.warning("session_read_failed", action=name, error=str(exc))
            return None
        if not reply.ok:
            logger.warning("session_read_rejected", action=name, status_code=reply.status_code)
        return reply

    async def current_user(self) -> Optional[UserProfile]:
        """Fetch the signed-in user's profile; None when it cannot be read."""
        reply = await self._authorized("me", self.identity.me)
        if reply is None or not reply.ok:
            return None
        self.user = reply.result.data
        return self.user

    async def list_sessions(self, query: Optional[SessionQuery] = None) -> Optional[SessionPage]:
        reply = await self._authorized("sessions", lambda: self.identity.sessions(query))
        if reply is None or not reply.ok:
            return None
        return reply.result.data or SessionPage()

    async def logout(self, refresh_token: Optional[str] = None) -> bool:
        await self._settle_inflight()
        token = refresh_token or self.identity.client.cookies.get(REFRESH_COOKIE)
        reply = await self._call("logout", lambda: self.identity.logout(token))
        self._clear_local()
        logger.info("logout_completed", remote_ok=bool(reply and reply.ok))
        return bool(reply and reply.ok)

    async def logout_all(self) -> bool:
        await self._settle_inflight()
        reply = await self._call("logout_all", self.identity.logout_all)
        self._clear_local()
        logger.info("logout_all_completed", remote_ok=bool(reply and reply.ok))
        return bool(reply and reply.ok)

    async def logout_others(self) -> bool:
        reply = await self._call("logout_others", self.identity.logout_others)
        return bool(reply and reply.ok)

    async def logout_session(self, session_id: str) -> bool:
        reply = await self._call("logout_session", lambda: self.identity.logout_session(session_id))
        return bool(reply and reply.ok)


__all__ = ["SessionActions"]
