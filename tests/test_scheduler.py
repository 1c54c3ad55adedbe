import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeIdentityProvider, make_identity
from portalauth.service.actions import SessionActions
from portalauth.service.background import (
    REFRESH_SYNC_TAG,
    AsyncioBackgroundPlatform,
    BackgroundRefreshWorker,
    RefreshBroadcast,
)
from portalauth.service.refresh import RefreshCoordinator
from portalauth.service.scheduler import ProactiveRefreshScheduler
from portalauth.service.session_state import SessionStateStore
from portalauth.storage.models import SessionStatus

FIXED_NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
REFRESH_PATH = "/api/auth/refresh"


def _clock():
    return FIXED_NOW


def _wired(provider: FakeIdentityProvider, **scheduler_kwargs):
    store = SessionStateStore()
    coordinator = RefreshCoordinator(store, make_identity(provider), clock=_clock)
    scheduler = ProactiveRefreshScheduler(
        coordinator, safety_margin_seconds=120, clock=_clock, **scheduler_kwargs
    )
    return store, coordinator, scheduler


class RecordingPlatform:
    def __init__(self):
        self.registered = {}
        self.unregistered = []

    def register(self, tag, job):
        self.registered[tag] = job
        return True

    def unregister(self, tag):
        self.unregistered.append(tag)
        self.registered.pop(tag, None)


@pytest.mark.asyncio
async def test_fires_once_before_expiry_then_reschedules_and_stops_on_logout():
    provider = FakeIdentityProvider(expires_in=900)
    store, coordinator, scheduler = _wired(provider)

    delay = scheduler.schedule(FIXED_NOW + timedelta(seconds=120.05))
    assert delay == pytest.approx(0.05, abs=1e-6)

    await asyncio.sleep(0.2)

    assert scheduler.fire_count == 1
    assert provider.count(REFRESH_PATH) == 1
    assert store.status == SessionStatus.AUTHENTICATED
    # rescheduled from the new expiry: 900s lifetime minus the 120s margin
    assert scheduler.active
    assert scheduler.scheduled_for == FIXED_NOW + timedelta(seconds=780)

    await SessionActions(store, coordinator, scheduler=scheduler).logout()

    assert not scheduler.active
    assert scheduler.scheduled_for is None
    assert store.status == SessionStatus.ANONYMOUS


@pytest.mark.asyncio
async def test_past_fire_time_never_negative():
    provider = FakeIdentityProvider()
    _, _, scheduler = _wired(provider)
    assert scheduler.schedule(FIXED_NOW - timedelta(minutes=5)) == 0.0
    scheduler.stop()


@pytest.mark.asyncio
async def test_success_from_any_caller_reschedules():
    provider = FakeIdentityProvider(expires_in=600)
    _, coordinator, scheduler = _wired(provider)
    scheduler.schedule(FIXED_NOW + timedelta(hours=1))

    await coordinator.refresh()

    assert scheduler.scheduled_for == FIXED_NOW + timedelta(seconds=480)
    assert scheduler.fire_count == 0
    scheduler.close()


@pytest.mark.asyncio
async def test_failed_proactive_refresh_stops_schedule():
    provider = FakeIdentityProvider(refresh_ok=False)
    store, _, scheduler = _wired(provider)

    scheduler.schedule(FIXED_NOW + timedelta(seconds=120.01))
    await asyncio.sleep(0.1)

    assert scheduler.fire_count == 1
    assert not scheduler.active
    assert store.status == SessionStatus.ANONYMOUS


@pytest.mark.asyncio
async def test_background_registration_when_hidden():
    provider = FakeIdentityProvider(expires_in=900)
    platform = RecordingPlatform()
    broadcast = RefreshBroadcast()
    store, coordinator, _ = _wired(provider)
    worker = BackgroundRefreshWorker(
        RefreshCoordinator(SessionStateStore(), coordinator.identity, clock=_clock), broadcast
    )
    scheduler = ProactiveRefreshScheduler(
        coordinator, safety_margin_seconds=120, clock=_clock, platform=platform, worker=worker
    )
    broadcast.subscribe(coordinator.apply_broadcast)

    scheduler.set_foreground(False)
    scheduler.schedule(FIXED_NOW + timedelta(hours=1))
    assert REFRESH_SYNC_TAG in platform.registered

    message = await worker.run()

    assert message.kind.value == "REFRESH_SUCCEEDED"
    assert store.status == SessionStatus.AUTHENTICATED
    assert store.get_state().access_expires_at == FIXED_NOW + timedelta(seconds=900)
    assert provider.count(REFRESH_PATH) == 1

    scheduler.set_foreground(True)
    assert REFRESH_SYNC_TAG in platform.unregistered
    scheduler.close()


@pytest.mark.asyncio
async def test_going_hidden_with_active_timer_registers_background():
    provider = FakeIdentityProvider()
    platform = RecordingPlatform()
    store, coordinator, _ = _wired(provider)
    worker = BackgroundRefreshWorker(coordinator, RefreshBroadcast())
    scheduler = ProactiveRefreshScheduler(
        coordinator, safety_margin_seconds=120, clock=_clock, platform=platform, worker=worker
    )
    scheduler.schedule(FIXED_NOW + timedelta(hours=1))
    assert platform.registered == {}

    scheduler.set_foreground(False)

    assert REFRESH_SYNC_TAG in platform.registered
    scheduler.close()


def _hidden(provider: FakeIdentityProvider):
    platform = AsyncioBackgroundPlatform()
    broadcast = RefreshBroadcast()
    store, coordinator, _ = _wired(provider)
    worker = BackgroundRefreshWorker(
        RefreshCoordinator(SessionStateStore(), coordinator.identity, clock=_clock), broadcast
    )
    scheduler = ProactiveRefreshScheduler(
        coordinator, safety_margin_seconds=120, clock=_clock, platform=platform, worker=worker
    )
    broadcast.subscribe(coordinator.apply_broadcast)
    scheduler.set_foreground(False)
    return store, coordinator, scheduler, platform


@pytest.mark.asyncio
async def test_hidden_schedule_runs_exactly_one_refresh():
    provider = FakeIdentityProvider(refresh_delay=0.05, reject_concurrent_refresh=True)
    store, _, scheduler, _ = _hidden(provider)

    scheduler.schedule(FIXED_NOW + timedelta(seconds=120.02))
    assert not scheduler.timer_armed
    await asyncio.sleep(0.3)

    assert provider.count(REFRESH_PATH) == 1
    assert provider.max_refresh_inflight == 1
    assert scheduler.fire_count == 0
    assert store.status == SessionStatus.AUTHENTICATED
    # the next run is handed to the background again
    assert scheduler.scheduled_for == FIXED_NOW + timedelta(seconds=780)
    assert not scheduler.timer_armed
    scheduler.close()


@pytest.mark.asyncio
async def test_returning_to_foreground_rearms_timer_for_same_fire_time():
    provider = FakeIdentityProvider()
    _, _, scheduler, _ = _hidden(provider)

    scheduler.schedule(FIXED_NOW + timedelta(hours=1))
    fire_at = scheduler.scheduled_for
    scheduler.set_foreground(True)

    assert scheduler.timer_armed
    assert scheduler.scheduled_for == fire_at
    assert provider.count(REFRESH_PATH) == 0
    scheduler.close()


@pytest.mark.asyncio
async def test_foreground_return_during_background_refresh_does_not_double_fire():
    provider = FakeIdentityProvider(refresh_delay=0.1, reject_concurrent_refresh=True)
    store, _, scheduler, _ = _hidden(provider)

    scheduler.schedule(FIXED_NOW + timedelta(seconds=120))
    await asyncio.sleep(0.05)
    scheduler.set_foreground(True)
    await asyncio.sleep(0.2)

    assert provider.count(REFRESH_PATH) == 1
    assert provider.max_refresh_inflight == 1
    assert store.status == SessionStatus.AUTHENTICATED
    assert scheduler.timer_armed
    assert scheduler.scheduled_for == FIXED_NOW + timedelta(seconds=780)
    scheduler.close()


@pytest.mark.asyncio
async def test_background_job_joins_foreground_refresh_in_flight():
    provider = FakeIdentityProvider(refresh_delay=0.1, reject_concurrent_refresh=True)
    store, coordinator, scheduler, _ = _hidden(provider)

    pending = asyncio.ensure_future(coordinator.refresh())
    await asyncio.sleep(0.01)
    scheduler.schedule(FIXED_NOW + timedelta(seconds=60))
    outcome = await pending
    await asyncio.sleep(0.05)

    assert outcome.success
    assert provider.count(REFRESH_PATH) == 1
    assert store.status == SessionStatus.AUTHENTICATED
    scheduler.close()
