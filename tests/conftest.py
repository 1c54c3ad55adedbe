import asyncio
import inspect
import json
import os
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

os.environ.setdefault("CSRF_SECRET", "test-csrf-secret-for-testing-only-do-not-use-in-production")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ.setdefault("BACKGROUND_SYNC_ENABLED", "true")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from portalauth.config import reset_settings_cache  # noqa: E402
from portalauth.service.identity import IdentityProviderClient  # noqa: E402

IDENTITY_BASE = "https://portal.test/api/auth"
API_BASE = "https://portal.test/api"
DATA_URL = f"{API_BASE}/bills"


def _request_cookies(request: httpx.Request) -> Dict[str, str]:
    header = request.headers.get("cookie", "")
    cookies = {}
    for part in header.split(";"):
        if "=" in part:
            name, value = part.strip().split("=", 1)
            cookies[name] = value
    return cookies


def _json(status: int, payload: dict, cookies: Optional[List[str]] = None) -> httpx.Response:
    headers = [("content-type", "application/json")]
    for cookie in cookies or []:
        headers.append(("set-cookie", cookie))
    return httpx.Response(status, headers=headers, content=json.dumps(payload).encode())


class FakeIdentityProvider:
    """Identity provider plus one protected data endpoint behind MockTransport.

    Access tokens are ``token-<n>``; each successful refresh bumps ``n`` and
    the data endpoint only accepts the current one.
    """

    def __init__(
        self,
        *,
        refresh_delay: float = 0.0,
        refresh_ok: bool = True,
        expires_in: Optional[int] = 900,
        challenge_id: Optional[str] = None,
        issue_csrf: bool = True,
        reject_concurrent_refresh: bool = False,
    ) -> None:
        self.refresh_delay = refresh_delay
        self.refresh_ok = refresh_ok
        self.expires_in = expires_in
        self.challenge_id = challenge_id
        self.issue_csrf = issue_csrf
        self.reject_concurrent_refresh = reject_concurrent_refresh
        self.refresh_inflight = 0
        self.max_refresh_inflight = 0
        self.token_version = 0
        self.data_always_401 = False
        self.offline = False
        self.otp_code = "123456"
        self.issued_token: Optional[str] = None
        self.profile = {"id": "u-1", "firstName": "Sara", "nationalId": "0012345678", "roles": ["member"]}
        self.user_sessions = [
            {"id": "sess-1", "deviceId": "device-test", "isActive": True, "isRevoked": False,
             "isCurrent": True, "createdAt": "2026-01-01T10:00:00Z"},
            {"id": "sess-2", "deviceId": "device-tablet", "isActive": True, "isRevoked": False},
            {"id": "sess-3", "deviceId": "device-old", "isActive": False, "isRevoked": True},
        ]
        self.session_queries: List[Dict[str, str]] = []
        self.calls: List[Tuple[str, str]] = []
        self.request_headers: List[httpx.Headers] = []

    @property
    def current_token(self) -> str:
        return f"token-{self.token_version}"

    def count(self, path: str, method: Optional[str] = None) -> int:
        return sum(
            1 for m, p in self.calls if p == path and (method is None or m == method)
        )

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    async def _refresh(self) -> httpx.Response:
        if self.refresh_delay:
            await asyncio.sleep(self.refresh_delay)
        if self.reject_concurrent_refresh and self.refresh_inflight > 1:
            # a rotated refresh token is only good once
            return _json(401, {"isSuccess": False, "errors": ["refresh_token_reused"]})
        if not self.refresh_ok:
            return _json(401, {"isSuccess": False, "errors": ["refresh_failed"]})
        if self.challenge_id:
            return _json(
                200,
                {
                    "isSuccess": True,
                    "data": {"challengeId": self.challenge_id, "maskedPhoneNumber": "0912***4567"},
                },
            )
        self.token_version += 1
        data = {
            "accessToken": self.issued_token or self.current_token,
            "refreshToken": f"refresh-{self.token_version}",
        }
        if self.expires_in is not None:
            data["expiresIn"] = self.expires_in
        return _json(
            200,
            {"isSuccess": True, "message": "ok", "data": data},
            [f"accessToken={self.current_token}; Path=/; HttpOnly"],
        )

    def _account(self, request: httpx.Request, path: str, cookies: Dict[str, str]) -> httpx.Response:
        if cookies.get("accessToken") != self.current_token:
            if path.endswith("/me"):
                return _json(401, {"result": None, "errors": ["No access token found"]})
            return _json(401, {"isSuccess": False, "errors": ["unauthorized"]})
        if path.endswith("/me"):
            return _json(200, {"result": self.profile, "errors": None})
        params = request.url.params
        self.session_queries.append(dict(params))
        items = [
            s for s in self.user_sessions
            if all(str(s[key]).lower() == params[key] for key in ("isActive", "isRevoked") if key in params)
        ]
        page, size = int(params.get("pageNumber", "1")), int(params.get("pageSize", "10"))
        data = {
            "items": items[(page - 1) * size:page * size],
            "totalCount": len(items),
            "pageNumber": page,
            "pageSize": size,
        }
        return _json(200, {"isSuccess": True, "message": "Sessions retrieved successfully", "data": data})

    async def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        self.request_headers.append(request.headers)
        if self.offline:
            raise httpx.ConnectError("identity provider offline", request=request)
        cookies = _request_cookies(request)
        set_cookies: List[str] = []
        if self.issue_csrf and "_csrf" not in cookies:
            set_cookies.append("_csrf=raw-csrf.signature; Path=/; SameSite=Strict")

        if request.method != "GET":
            raw = cookies.get("_csrf", "").split(".", 1)[0]
            if not raw or request.headers.get("x-csrf-token") != raw:
                return _json(403, {"isSuccess": False, "errors": ["csrf_mismatch"]}, set_cookies)

        if path == "/api/auth/session":
            return _json(
                200,
                {"isSuccess": True, "data": {"authenticated": "accessToken" in cookies}},
                set_cookies,
            )
        if path == "/api/auth/refresh":
            self.refresh_inflight += 1
            self.max_refresh_inflight = max(self.max_refresh_inflight, self.refresh_inflight)
            try:
                return await self._refresh()
            finally:
                self.refresh_inflight -= 1
        if path in ("/api/auth/me", "/api/auth/sessions"):
            return self._account(request, path, cookies)
        if path == "/api/auth/send-otp":
            body = json.loads(request.content or b"{}")
            if body.get("nationalCode") == "0000000000":
                return _json(400, {"isSuccess": False, "errors": ["unknown user"]})
            return _json(
                200,
                {"isSuccess": True, "data": {"challengeId": "chal-1", "maskedPhoneNumber": "0912***4567"}},
            )
        if path == "/api/auth/verify-otp":
            body = json.loads(request.content or b"{}")
            if body.get("otpCode") != self.otp_code:
                return _json(400, {"isSuccess": False, "errors": ["invalid code"], "data": {"isSuccess": False}})
            self.token_version += 1
            return _json(
                200,
                {"isSuccess": True, "data": {"userId": "u-1", "isSuccess": True, "accessToken": self.current_token}},
                [f"accessToken={self.current_token}; Path=/; HttpOnly"],
            )
        if path.startswith("/api/auth/logout"):
            return _json(
                200,
                {"isSuccess": True, "data": {"isSuccess": True}},
                ["accessToken=; Path=/; Max-Age=0", "refreshToken=; Path=/; Max-Age=0"],
            )
        if path == "/api/client-info":
            return _json(200, {"ipAddress": "203.0.113.7", "userAgent": "pytest-agent"})
        if path == "/api/bills":
            auth = request.headers.get("authorization")
            if self.data_always_401 or auth != f"Bearer {self.current_token}":
                return _json(401, {"isSuccess": False, "errors": ["unauthorized"]})
            return _json(200, {"isSuccess": True, "data": {"bills": [], "token": self.current_token}})
        return _json(404, {"isSuccess": False, "errors": ["not_found"]})


@pytest.fixture
def provider() -> FakeIdentityProvider:
    return FakeIdentityProvider()


def make_identity(provider: FakeIdentityProvider, device_id: str = "device-test") -> IdentityProviderClient:
    client = httpx.AsyncClient(transport=provider.transport())
    return IdentityProviderClient(client, IDENTITY_BASE, device_id=device_id)


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
