from __future__ import annotations

from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from portalauth.api.schemas import (
    ApiResult,
    DeviceContext,
    LogoutData,
    MeResult,
    RefreshData,
    SendOtpData,
    SendOtpRequest,
    SessionData,
    SessionPage,
    SessionQuery,
    VerifyOtpData,
    VerifyOtpRequest,
)
from portalauth.logging import get_correlation_id, get_logger
from portalauth.service.csrf import csrf_header
from portalauth.service.errors import CsrfMismatchError, NetworkError

logger = get_logger(__name__)

REFRESH_PATH = "/refresh"
SESSION_PATH = "/session"
SESSIONS_PATH = "/sessions"
ME_PATH = "/me"
LOGOUT_PATH = "/logout"
LOGOUT_ALL_PATH = "/logout/all"
LOGOUT_OTHERS_PATH = "/logout/others"
LOGOUT_SESSION_PATH = "/logout/session/{session_id}"
SEND_OTP_PATH = "/send-otp"
VERIFY_OTP_PATH = "/verify-otp"

DEVICE_HEADER = "x-device-id"

D = TypeVar("D", bound=BaseModel)


class ProviderReply(BaseModel):
    """HTTP status plus the parsed envelope of one identity provider call."""

    status_code: int
    result: Any = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300 and bool(getattr(self.result, "is_success", False))


class IdentityProviderClient:
    """Thin client for the identity endpoints behind the adaptation layer.

    Shares the ``httpx.AsyncClient`` (and therefore the cookie jar holding
    the access, refresh and CSRF cookies) with the request interceptor.
    Transport failures surface as ``NetworkError``; non-2xx answers come
    back as a ``ProviderReply`` for the caller to judge.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        base_url: str,
        *,
        device_id: Optional[str] = None,
        csrf_cookie_name: str = "_csrf",
        csrf_header_name: str = "x-csrf-token",
    ) -> None:
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.device_id = device_id
        self.csrf_cookie_name = csrf_cookie_name
        self.csrf_header_name = csrf_header_name

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def is_refresh_url(self, url: httpx.URL | str) -> bool:
        target = httpx.URL(str(url))
        refresh = httpx.URL(self.url(REFRESH_PATH))
        if target.is_relative_url:
            return target.path == refresh.path
        return (target.host, target.path) == (refresh.host, refresh.path)

    def base_headers(self) -> Dict[str, str]:
        headers = {"content-type": "application/json"}
        if self.device_id:
            headers[DEVICE_HEADER] = self.device_id
        cid = get_correlation_id()
        if cid:
            headers["x-request-id"] = cid
        return headers

    def csrf_headers(self) -> Dict[str, str]:
        return csrf_header(
            self.client.cookies,
            cookie_name=self.csrf_cookie_name,
            header_name=self.csrf_header_name,
        )

    async def ensure_csrf(self) -> Dict[str, str]:
        """CSRF header for a mutating call, priming the cookie once when absent."""
        headers = self.csrf_headers()
        if headers:
            return headers
        # Any response from the adaptation layer sets the cookie when missing
        await self.session()
        headers = self.csrf_headers()
        if not headers:
            raise CsrfMismatchError("no CSRF cookie available for state-changing call")
        return headers

    async def _send(
        self,
        method: str,
        path: str,
        *,
        json: Optional[dict] = None,
        params: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        headers = self.base_headers()
        if method.upper() != "GET":
            headers.update(await self.ensure_csrf())
        try:
            return await self.client.request(
                method, self.url(path), json=json, params=params, headers=headers
            )
        except httpx.TransportError as exc:
            logger.warning("identity_provider_unreachable", path=path, error=str(exc))
            raise NetworkError(
                "identity provider unreachable", detail={"path": path, "error": str(exc)}
            ) from exc

    @staticmethod
    def _parse(response: httpx.Response, data_type: Type[D]) -> ProviderReply:
        return IdentityProviderClient._parse_as(response, ApiResult[data_type])

    @staticmethod
    def _parse_as(response: httpx.Response, result_type: Type[BaseModel]) -> ProviderReply:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        result = result_type()
        if isinstance(payload, dict):
            try:
                result = result_type.model_validate(payload)
            except ValidationError as exc:
                logger.warning(
                    "identity_provider_payload_invalid",
                    status_code=response.status_code,
                    error=str(exc),
                )
        return ProviderReply(status_code=response.status_code, result=result)

    async def refresh(self, context: Optional[DeviceContext] = None) -> ProviderReply:
        body = (context or DeviceContext(device_id=self.device_id)).model_dump(
            by_alias=True, exclude_none=True
        )
        response = await self._send("POST", REFRESH_PATH, json=body)
        return self._parse(response, RefreshData)

    async def session(self) -> ProviderReply:
        response = await self._send("GET", SESSION_PATH)
        return self._parse(response, SessionData)

    async def me(self) -> ProviderReply:
        """Profile of the user the access cookie belongs to."""
        response = await self._send("GET", ME_PATH)
        return self._parse_as(response, MeResult)

    async def sessions(self, query: Optional[SessionQuery] = None) -> ProviderReply:
        params = (query or SessionQuery()).to_params()
        response = await self._send("GET", SESSIONS_PATH, params=params)
        return self._parse(response, SessionPage)

    async def send_otp(self, request: SendOtpRequest) -> ProviderReply:
        response = await self._send(
            "POST", SEND_OTP_PATH, json=request.model_dump(by_alias=True, exclude_none=True)
        )
        return self._parse(response, SendOtpData)

    async def verify_otp(self, request: VerifyOtpRequest) -> ProviderReply:
        response = await self._send(
            "POST", VERIFY_OTP_PATH, json=request.model_dump(by_alias=True, exclude_none=True)
        )
        return self._parse(response, VerifyOtpData)

    async def logout(self, refresh_token: Optional[str] = None) -> ProviderReply:
        response = await self._send("POST", LOGOUT_PATH, json={"refreshToken": refresh_token})
        return self._parse(response, LogoutData)

    async def logout_all(self) -> ProviderReply:
        response = await self._send("POST", LOGOUT_ALL_PATH, json={})
        return self._parse(response, LogoutData)

    async def logout_others(self) -> ProviderReply:
        response = await self._send("POST", LOGOUT_OTHERS_PATH, json={})
        return self._parse(response, LogoutData)

    async def logout_session(self, session_id: str) -> ProviderReply:
        path = LOGOUT_SESSION_PATH.format(session_id=quote(session_id, safe=""))
        response = await self._send("POST", path, json={})
        return self._parse(response, LogoutData)


__all__ = [
    "IdentityProviderClient",
    "ProviderReply",
    "REFRESH_PATH",
    "SESSION_PATH",
    "SESSIONS_PATH",
    "ME_PATH",
    "DEVICE_HEADER",
]
