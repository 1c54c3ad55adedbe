"""401 refresh-and-retry behaviour of the request interceptor."""

import asyncio

import httpx
import pytest

from conftest import DATA_URL, IDENTITY_BASE, FakeIdentityProvider, make_identity
from portalauth.service.errors import (
    AuthExpiredError,
    CsrfMismatchError,
    NetworkError,
    RefreshExhaustedError,
)
from portalauth.service.interceptor import RequestInterceptor
from portalauth.service.refresh import RefreshCoordinator
from portalauth.service.route_gate import ProtectedRouteGate
from portalauth.service.session_state import SessionStateStore
from portalauth.storage.models import SessionStatus


class RecordingNavigator:
    def __init__(self):
        self.locations = []

    def replace(self, location: str) -> None:
        self.locations.append(location)


def _interceptor(provider: FakeIdentityProvider):
    store = SessionStateStore()
    coordinator = RefreshCoordinator(store, make_identity(provider))
    return RequestInterceptor(coordinator), coordinator, store


@pytest.mark.asyncio
async def test_parallel_401s_trigger_single_refresh():
    provider = FakeIdentityProvider(refresh_delay=0.05)
    interceptor, coordinator, store = _interceptor(provider)

    responses = await asyncio.gather(*(interceptor.get(DATA_URL) for _ in range(5)))

    assert provider.count("/api/auth/refresh") == 1
    assert [r.status_code for r in responses] == [200] * 5
    assert all(r.json()["data"]["token"] == "token-1" for r in responses)
    # five originals plus exactly one retry each
    assert provider.count("/api/bills") == 10
    assert store.status == SessionStatus.AUTHENTICATED


@pytest.mark.asyncio
async def test_refresh_failure_surfaces_original_401_and_redirects_once():
    provider = FakeIdentityProvider(refresh_ok=False)
    interceptor, coordinator, store = _interceptor(provider)
    navigator = RecordingNavigator()
    ProtectedRouteGate(store, navigator, location="/dashboard/bills?page=2")
    anonymous = []
    store.subscribe(lambda snap: anonymous.append(snap) if snap.status == SessionStatus.ANONYMOUS else None)

    response = await interceptor.get(DATA_URL)

    assert response.status_code == 401
    assert provider.count("/api/bills") == 1
    assert len(anonymous) == 1
    assert navigator.locations == ["/login?r=%2Fdashboard%2Fbills%3Fpage%3D2"]


@pytest.mark.asyncio
async def test_persistent_401_retries_only_once():
    provider = FakeIdentityProvider()
    provider.data_always_401 = True
    interceptor, coordinator, _ = _interceptor(provider)

    response = await interceptor.get(DATA_URL)

    assert response.status_code == 401
    assert provider.count("/api/bills") == 2
    assert provider.count("/api/auth/refresh") == 1


@pytest.mark.asyncio
async def test_refresh_endpoint_401_is_not_intercepted():
    provider = FakeIdentityProvider(refresh_ok=False)
    interceptor, coordinator, _ = _interceptor(provider)
    await coordinator.identity.ensure_csrf()

    response = await interceptor.post(f"{IDENTITY_BASE}/refresh", json={})

    assert response.status_code == 401
    assert provider.count("/api/auth/refresh") == 1


@pytest.mark.asyncio
async def test_refresh_completed_while_in_flight_retries_without_new_refresh():
    provider = FakeIdentityProvider()
    interceptor, coordinator, _ = _interceptor(provider)

    original = provider.handle

    async def slow_bills(request):
        if request.url.path == "/api/bills" and provider.count("/api/bills") == 0:
            # another caller refreshes while this request is on the wire
            await coordinator.refresh()
        return await original(request)

    coordinator.identity.client._transport = httpx.MockTransport(slow_bills)

    response = await interceptor.get(DATA_URL)

    assert response.status_code == 200
    assert provider.count("/api/auth/refresh") == 1


@pytest.mark.asyncio
async def test_headers_attached():
    provider = FakeIdentityProvider()
    interceptor, coordinator, _ = _interceptor(provider)
    await coordinator.refresh()

    await interceptor.post(DATA_URL, json={"x": 1})

    headers = provider.request_headers[-1]
    assert headers["x-device-id"] == "device-test"
    assert headers["authorization"] == "Bearer token-1"
    assert headers["x-csrf-token"] == "raw-csrf"


@pytest.mark.asyncio
async def test_get_does_not_send_csrf_header():
    provider = FakeIdentityProvider()
    interceptor, _, _ = _interceptor(provider)
    await interceptor.get(DATA_URL)
    assert "x-csrf-token" not in provider.request_headers[0]


@pytest.mark.asyncio
async def test_mutating_call_without_obtainable_csrf_cookie_is_not_sent():
    provider = FakeIdentityProvider(issue_csrf=False)
    interceptor, _, _ = _interceptor(provider)

    with pytest.raises(CsrfMismatchError):
        await interceptor.post(DATA_URL, json={})

    assert provider.count("/api/bills") == 0
    assert provider.count("/api/auth/session", "GET") == 1


@pytest.mark.asyncio
async def test_csrf_rejection_raises():
    provider = FakeIdentityProvider()
    interceptor, coordinator, _ = _interceptor(provider)

    with pytest.raises(CsrfMismatchError):
        await interceptor.post(DATA_URL, json={}, headers={"x-csrf-token": "forged"})


@pytest.mark.asyncio
async def test_transport_failure_raises_network_error():
    provider = FakeIdentityProvider()
    provider.offline = True
    interceptor, _, _ = _interceptor(provider)
    with pytest.raises(NetworkError) as excinfo:
        await interceptor.get(DATA_URL)
    assert excinfo.value.status_code == 502


@pytest.mark.asyncio
async def test_request_json_raises_refresh_exhausted_when_refresh_fails():
    provider = FakeIdentityProvider(refresh_ok=False)
    interceptor, _, _ = _interceptor(provider)
    with pytest.raises(RefreshExhaustedError) as excinfo:
        await interceptor.request_json("GET", DATA_URL)
    assert excinfo.value.error_code == "refresh_failed"
    assert excinfo.value.status_code == 401
    assert excinfo.value.detail["reason"] == "refresh_failed"


@pytest.mark.asyncio
async def test_request_json_raises_auth_expired_when_retry_still_unauthorized():
    provider = FakeIdentityProvider()
    provider.data_always_401 = True
    interceptor, _, _ = _interceptor(provider)
    with pytest.raises(AuthExpiredError) as excinfo:
        await interceptor.request_json("GET", DATA_URL)
    assert not isinstance(excinfo.value, RefreshExhaustedError)
    assert excinfo.value.error_code == "unauthorized"
    assert provider.count("/api/bills") == 2


@pytest.mark.asyncio
async def test_request_json_returns_body():
    provider = FakeIdentityProvider()
    interceptor, _, _ = _interceptor(provider)
    body = await interceptor.request_json("GET", DATA_URL)
    assert body["data"]["bills"] == []
