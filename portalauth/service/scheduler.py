from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from portalauth.logging import get_logger
from portalauth.service.background import (
    REFRESH_SYNC_TAG,
    BackgroundPlatform,
    BackgroundRefreshWorker,
)
from portalauth.service.refresh import RefreshCoordinator, RefreshOutcome
from portalauth.storage.models import utcnow

logger = get_logger(__name__)

DEFAULT_SAFETY_MARGIN_SECONDS = 120


class ProactiveRefreshScheduler:
    """Refreshes shortly before the access credential expires.

    The timer fires at ``expiry - safety_margin`` (immediately when that is
    already past). Each successful refresh reschedules from the new expiry;
    a failed one stops the schedule until the next success.

    While the app is hidden the fire time is handed to the background
    platform instead of the foreground timer, so at most one of them is
    armed at a time. Coming back to the foreground re-arms the timer for
    the same fire time.
    """

    def __init__(
        self,
        coordinator: RefreshCoordinator,
        *,
        safety_margin_seconds: int = DEFAULT_SAFETY_MARGIN_SECONDS,
        clock: Callable[[], datetime] = utcnow,
        platform: Optional[BackgroundPlatform] = None,
        worker: Optional[BackgroundRefreshWorker] = None,
    ) -> None:
        self.coordinator = coordinator
        self.safety_margin = timedelta(seconds=max(0, safety_margin_seconds))
        self._clock = clock
        self.platform = platform
        self.worker = worker
        self.foreground = True
        self.fire_count = 0
        self._timer: Optional[asyncio.TimerHandle] = None
        self._fire_task: Optional[asyncio.Task] = None
        self._scheduled_for: Optional[datetime] = None
        self._remove_listener = coordinator.add_listener(self._on_refresh)

    @property
    def scheduled_for(self) -> Optional[datetime]:
        return self._scheduled_for

    @property
    def active(self) -> bool:
        return self._scheduled_for is not None

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    @property
    def can_background(self) -> bool:
        return self.platform is not None and self.worker is not None

    def delay_for(self, expires_at: datetime) -> float:
        return self._delay_until(expires_at - self.safety_margin)

    def _delay_until(self, fire_at: datetime) -> float:
        return max(0.0, (fire_at - self._clock()).total_seconds())

    def schedule(self, expires_at: datetime) -> float:
        """Replace any pending timer with one for ``expires_at``; returns the delay."""
        self._cancel_timer()
        self._scheduled_for = expires_at - self.safety_margin
        delay = self._delay_until(self._scheduled_for)
        logger.info("refresh_scheduled", delay_seconds=round(delay, 3), expires_at=expires_at.isoformat())
        if not self.foreground and self.can_background:
            self._register_background()
        else:
            self._arm(delay)
        return delay

    def stop(self) -> None:
        self._cancel_timer()
        if self.platform is not None:
            self.platform.unregister(REFRESH_SYNC_TAG)
        logger.info("refresh_schedule_stopped")

    def close(self) -> None:
        self.stop()
        if self._fire_task is not None and not self._fire_task.done():
            self._fire_task.cancel()
        self._remove_listener()

    def set_foreground(self, foreground: bool) -> None:
        self.foreground = foreground
        if foreground:
            if self.worker is not None and self.worker.coordinator.in_flight:
                # its broadcast reschedules on this side once it lands
                logger.info("refresh_background_kept", reason="inflight")
                return
            if self.platform is not None:
                self.platform.unregister(REFRESH_SYNC_TAG)
            if self._scheduled_for is not None and self._timer is None:
                self._arm(self._delay_until(self._scheduled_for))
        elif self._timer is not None and self.can_background:
            self._cancel_timer(keep_fire_time=True)
            self._register_background()

    def _arm(self, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self._fire)

    def _register_background(self) -> None:
        if not self.can_background:
            return
        worker = self.worker
        coordinator = self.coordinator
        delay = 0.0
        if self._scheduled_for is not None:
            delay = self._delay_until(self._scheduled_for)

        async def job() -> None:
            await asyncio.sleep(delay)
            if coordinator.in_flight:
                logger.info("refresh_background_joined_foreground")
                await coordinator.refresh()
                return
            await worker.run()

        self.platform.unregister(REFRESH_SYNC_TAG)
        if self.platform.register(REFRESH_SYNC_TAG, job):
            logger.info("refresh_background_registered", delay_seconds=round(delay, 3))

    def _cancel_timer(self, *, keep_fire_time: bool = False) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if not keep_fire_time:
            self._scheduled_for = None

    def _fire(self) -> None:
        self._timer = None
        self._scheduled_for = None
        self.fire_count += 1
        logger.info("refresh_timer_fired", count=self.fire_count)
        self._fire_task = asyncio.ensure_future(self.coordinator.refresh())

    def _on_refresh(self, outcome: RefreshOutcome) -> None:
        if outcome.success and outcome.access_expires_at is not None:
            self.schedule(outcome.access_expires_at)
        else:
            self.stop()
            logger.info("refresh_schedule_halted", reason=outcome.reason)


__all__ = ["ProactiveRefreshScheduler", "DEFAULT_SAFETY_MARGIN_SECONDS"]
