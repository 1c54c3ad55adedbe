from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import httpx

from portalauth.api.schemas import DeviceContext, SendOtpRequest, VerifyOtpRequest
from portalauth.logging import get_logger
from portalauth.service.background import BroadcastKind, RefreshMessage
from portalauth.service.errors import ServiceError
from portalauth.service.identity import IdentityProviderClient, ProviderReply
from portalauth.service.session_state import SessionStateStore
from portalauth.storage.models import SessionStatus, utcnow

logger = get_logger(__name__)

ACCESS_COOKIE = "accessToken"
CHALLENGE_PENDING = "challenge_pending"
DEFAULT_ACCESS_TTL_SECONDS = 15 * 60


@dataclass(frozen=True)
class RefreshOutcome:
    success: bool
    reason: Optional[str] = None
    access_expires_at: Optional[datetime] = None
    generation: int = 0
    challenge_id: Optional[str] = None

    @classmethod
    def ok(cls, access_expires_at: Optional[datetime], generation: int) -> "RefreshOutcome":
        return cls(success=True, access_expires_at=access_expires_at, generation=generation)

    @classmethod
    def failed(cls, reason: str, *, challenge_id: Optional[str] = None) -> "RefreshOutcome":
        return cls(success=False, reason=reason, challenge_id=challenge_id)


RefreshListener = Callable[[RefreshOutcome], None]


def token_expiry(token: Optional[str]) -> Optional[datetime]:
    """``exp`` claim of a JWT, read without verifying the signature."""
    if not token:
        return None
    parts = token.split(".")
    if len(parts) != 3:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        claims = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")))
    except (ValueError, UnicodeEncodeError):
        return None
    exp = claims.get("exp") if isinstance(claims, dict) else None
    if isinstance(exp, bool) or not isinstance(exp, (int, float)):
        return None
    try:
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        logger.warning("token_expiry_out_of_range", exp=str(exp))
        return None


class RefreshCoordinator:
    """Single-flight credential refresh.

    Every caller of ``refresh()`` while an attempt is pending awaits that same
    attempt and gets the same ``RefreshOutcome`` object. Waiters are shielded
    so one caller's cancellation never aborts the shared attempt; the
    attempt ends through the transport timeout. Outcomes are returned, never
    raised.

    Together with ``SessionActions`` this is the only writer of the
    session state store.
    """

    def __init__(
        self,
        store: SessionStateStore,
        identity: IdentityProviderClient,
        *,
        access_token_ttl_seconds: int = DEFAULT_ACCESS_TTL_SECONDS,
        device_context: Optional[Callable[[], DeviceContext]] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.identity = identity
        self.access_token_ttl = timedelta(seconds=access_token_ttl_seconds)
        self._device_context = device_context
        self._clock = clock
        self._inflight: Optional[asyncio.Task] = None
        self._silent: Optional[asyncio.Task] = None
        self._listeners: List[RefreshListener] = []
        self._access_token: Optional[str] = None
        self.generation = 0
        self.attempts = 0

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def in_flight(self) -> bool:
        return self._inflight is not None

    def add_listener(self, listener: RefreshListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _notify(self, outcome: RefreshOutcome) -> None:
        for listener in list(self._listeners):
            try:
                listener(outcome)
            except Exception as exc:
                logger.error("refresh_listener_failed", error=str(exc))

    async def refresh(self) -> RefreshOutcome:
        if self.store.status == SessionStatus.OTP_PENDING:
            logger.info("refresh_skipped", reason=CHALLENGE_PENDING)
            return RefreshOutcome.failed(CHALLENGE_PENDING)
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._run())
            logger.info("refresh_started", generation=self.generation)
        else:
            logger.debug("refresh_joined_inflight", generation=self.generation)
        return await asyncio.shield(self._inflight)

    async def silent_refresh(self) -> RefreshOutcome:
        """Startup refresh; only the first call per coordinator does any work."""
        if self._silent is None:
            self._silent = asyncio.ensure_future(self.refresh())
        return await asyncio.shield(self._silent)

    async def _run(self) -> RefreshOutcome:
        try:
            return await self._attempt()
        except Exception as exc:
            logger.error("refresh_crashed", error=str(exc), error_type=type(exc).__name__)
            return self._fail("refresh_error")
        finally:
            self._inflight = None

    def _enter_refreshing(self) -> None:
        if self.store.status != SessionStatus.REFRESHING:
            self.store.transition(SessionStatus.REFRESHING, error=None)

    def _context(self) -> DeviceContext:
        if self._device_context is not None:
            return self._device_context()
        return DeviceContext(device_id=self.identity.device_id)

    async def _attempt(self) -> RefreshOutcome:
        self.attempts += 1
        self._enter_refreshing()
        try:
            reply = await self.identity.refresh(self._context())
        except (ServiceError, httpx.HTTPError) as exc:
            reason = getattr(exc, "error_code", "network_error")
            logger.warning("refresh_failed", reason=reason, error=str(exc))
            return self._fail(reason)
        return self._apply_reply(reply)

    def _apply_reply(self, reply: ProviderReply) -> RefreshOutcome:
        result = reply.result
        if not reply.ok:
            logger.warning(
                "refresh_failed",
                reason="refresh_failed",
                status_code=reply.status_code,
                error=result.first_error("refresh rejected") if result is not None else None,
            )
            return self._fail("refresh_failed")
        data = result.data
        if data is not None and data.challenge_id and not data.access_token:
            self.store.transition(
                SessionStatus.OTP_PENDING,
                challenge_id=data.challenge_id,
                masked_phone=data.masked_phone_number,
                access_token_present=False,
                refresh_attempted=True,
            )
            logger.info("refresh_challenge_pending")
            outcome = RefreshOutcome.failed(CHALLENGE_PENDING, challenge_id=data.challenge_id)
            self._notify(outcome)
            return outcome
        token = data.access_token if data is not None else None
        token = token or self.identity.client.cookies.get(ACCESS_COOKIE)
        if not token:
            logger.warning("refresh_failed", reason="no_credential")
            return self._fail("no_credential")
        return self._succeed(token, data.expires_in if data is not None else None)

    def _expiry_for(self, token: Optional[str], expires_in: Optional[int]) -> datetime:
        exp = token_expiry(token)
        if exp is not None:
            return exp
        if expires_in:
            try:
                return self._clock() + timedelta(seconds=expires_in)
            except OverflowError:
                logger.warning("expires_in_out_of_range", expires_in=expires_in)
        return self._clock() + self.access_token_ttl

    def _succeed(self, token: Optional[str], expires_in: Optional[int]) -> RefreshOutcome:
        now = self._clock()
        expires_at = self._expiry_for(token, expires_in)
        self._access_token = token
        self.generation += 1
        self.store.transition(
            SessionStatus.AUTHENTICATED,
            access_token_present=bool(token),
            last_refreshed_at=now,
            access_expires_at=expires_at,
            refresh_attempted=True,
            challenge_id=None,
            masked_phone=None,
            error=None,
        )
        logger.info("refresh_succeeded", generation=self.generation, expires_at=expires_at.isoformat())
        outcome = RefreshOutcome.ok(expires_at, self.generation)
        self._notify(outcome)
        return outcome

    def _fail(self, reason: str) -> RefreshOutcome:
        self._access_token = None
        self.store.transition(
            SessionStatus.ANONYMOUS,
            access_token_present=False,
            access_expires_at=None,
            refresh_attempted=True,
            error=reason,
        )
        outcome = RefreshOutcome.failed(reason)
        self._notify(outcome)
        return outcome

    def forget_credential(self) -> None:
        self._access_token = None

    def apply_broadcast(self, message: RefreshMessage) -> None:
        """Mirror a background refresh result into this instance's store."""
        if self._inflight is not None:
            logger.info("refresh_broadcast_ignored", kind=message.kind.value, reason="inflight")
            return
        if message.kind == BroadcastKind.REFRESH_SUCCEEDED:
            if self.store.status not in (SessionStatus.AUTHENTICATED, SessionStatus.OTP_PENDING):
                self._enter_refreshing()
            expires_at = message.access_expires_at or (self._clock() + self.access_token_ttl)
            # The background context rotated the cookies; a held bearer is stale
            self._access_token = self.identity.client.cookies.get(ACCESS_COOKIE)
            self.generation += 1
            self.store.transition(
                SessionStatus.AUTHENTICATED,
                access_token_present=bool(self._access_token),
                last_refreshed_at=self._clock(),
                access_expires_at=expires_at,
                refresh_attempted=True,
                challenge_id=None,
                masked_phone=None,
                error=None,
            )
            self._notify(RefreshOutcome.ok(expires_at, self.generation))
        else:
            self._fail(message.reason or message.kind.value.lower())
        logger.info("refresh_broadcast_applied", kind=message.kind.value, status=self.store.status.value)

    async def start_login(self, national_code: str, *, purpose: str = "login") -> RefreshOutcome:
        """Request a one-time code; a challenge moves the session to OtpPending.

        Raises pydantic's ValidationError for a malformed national code before
        anything is sent.
        """
        context = self._context()
        request = SendOtpRequest(
            national_code=national_code,
            purpose=purpose,
            device_id=context.device_id,
            user_agent=context.user_agent,
            ip_address=context.ip_address,
        )
        if self._inflight is not None:
            await asyncio.shield(self._inflight)
        if self.store.status == SessionStatus.OTP_PENDING:
            # A new code request abandons the previous challenge
            self.store.transition(SessionStatus.ANONYMOUS, challenge_id=None, masked_phone=None)
        self._enter_refreshing()
        try:
            reply = await self.identity.send_otp(request)
        except (ServiceError, httpx.HTTPError) as exc:
            logger.warning("login_start_failed", error=str(exc))
            return self._fail(getattr(exc, "error_code", "network_error"))
        data = reply.result.data if reply.result is not None else None
        if not reply.ok or data is None or not data.challenge_id:
            reason = reply.result.first_error("otp_send_failed") if reply.result is not None else "otp_send_failed"
            logger.warning("login_start_failed", status_code=reply.status_code, error=reason)
            return self._fail("otp_send_failed")
        self.store.transition(
            SessionStatus.OTP_PENDING,
            challenge_id=data.challenge_id,
            masked_phone=data.masked_phone_number,
            access_token_present=False,
            error=None,
        )
        logger.info("login_challenge_issued")
        return RefreshOutcome.failed(CHALLENGE_PENDING, challenge_id=data.challenge_id)

    async def complete_challenge(self, otp_code: str) -> RefreshOutcome:
        """Verify the pending one-time code.

        A transport failure leaves the challenge pending so the user can
        retry; a rejected code moves the session to Error.
        """
        state = self.store.get_state()
        if state.status != SessionStatus.OTP_PENDING or not state.challenge_id:
            return RefreshOutcome.failed("no_challenge")
        request = VerifyOtpRequest(challenge_id=state.challenge_id, otp_code=otp_code)
        try:
            reply = await self.identity.verify_otp(request)
        except (ServiceError, httpx.HTTPError) as exc:
            logger.warning("otp_verify_unreachable", error=str(exc))
            return RefreshOutcome.failed(getattr(exc, "error_code", "network_error"))
        data = reply.result.data if reply.result is not None else None
        if not reply.ok or data is None or not data.is_success:
            logger.warning("otp_verify_rejected", status_code=reply.status_code)
            self.store.transition(SessionStatus.ERROR, error="otp_rejected", access_token_present=False)
            return RefreshOutcome.failed("otp_rejected")
        token = data.access_token or self.identity.client.cookies.get(ACCESS_COOKIE)
        return self._succeed(token, data.expires_in)


__all__ = ["RefreshCoordinator", "RefreshOutcome", "token_expiry", "CHALLENGE_PENDING"]
