"""Background refresh and the foreground broadcast channel.

When the application is not in the foreground the scheduler hands a
refresh request to a ``BackgroundPlatform``. The platform runs a
``BackgroundRefreshWorker`` which drives its own RefreshCoordinator and
reports the result over ``RefreshBroadcast`` to every subscribed
foreground instance.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Dict, List, Optional, Protocol

from portalauth.logging import get_logger
from portalauth.storage.models import utcnow

if TYPE_CHECKING:
    from portalauth.service.refresh import RefreshCoordinator, RefreshOutcome

logger = get_logger(__name__)

REFRESH_SYNC_TAG = "refresh-token-sync"


class BroadcastKind(str, Enum):
    REFRESH_SUCCEEDED = "REFRESH_SUCCEEDED"
    REFRESH_FAILED = "REFRESH_FAILED"
    REFRESH_ERROR = "REFRESH_ERROR"


@dataclass(frozen=True)
class RefreshMessage:
    kind: BroadcastKind
    access_expires_at: Optional[datetime] = None
    reason: Optional[str] = None
    sent_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_outcome(cls, outcome: "RefreshOutcome") -> "RefreshMessage":
        if outcome.success:
            return cls(BroadcastKind.REFRESH_SUCCEEDED, access_expires_at=outcome.access_expires_at)
        return cls(BroadcastKind.REFRESH_FAILED, reason=outcome.reason)


BroadcastHandler = Callable[[RefreshMessage], None]


class RefreshBroadcast:
    """In-process fan-out of refresh results to foreground instances."""

    def __init__(self) -> None:
        self._handlers: List[BroadcastHandler] = []

    def subscribe(self, handler: BroadcastHandler) -> Callable[[], None]:
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def publish(self, message: RefreshMessage) -> int:
        delivered = 0
        for handler in list(self._handlers):
            try:
                handler(message)
                delivered += 1
            except Exception as exc:
                logger.error("refresh_broadcast_handler_failed", kind=message.kind.value, error=str(exc))
        logger.info("refresh_broadcast_sent", kind=message.kind.value, delivered=delivered)
        return delivered


class BackgroundPlatform(Protocol):
    """Whatever runs work while the app is hidden (service worker, OS task)."""

    def register(self, tag: str, job: Callable[[], Awaitable[None]]) -> bool:
        ...

    def unregister(self, tag: str) -> None:
        ...


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None


class AsyncioBackgroundPlatform:
    """Runs registered jobs as tasks on the current event loop.

    A tag that already has a pending task is not registered twice. A job
    may unregister and re-register its own tag while it runs; its task is
    released rather than cancelled.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}

    def register(self, tag: str, job: Callable[[], Awaitable[None]]) -> bool:
        existing = self._tasks.get(tag)
        if existing is not None and not existing.done():
            return False
        task = asyncio.get_running_loop().create_task(job())
        self._tasks[tag] = task
        logger.info("background_job_registered", tag=tag)
        return True

    def unregister(self, tag: str) -> None:
        task = self._tasks.pop(tag, None)
        if task is not None and not task.done() and task is not _current_task():
            task.cancel()
            logger.info("background_job_cancelled", tag=tag)

    async def drain(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class BackgroundRefreshWorker:
    """Background side of the refresh: same coordinator class, results broadcast."""

    def __init__(self, coordinator: "RefreshCoordinator", broadcast: RefreshBroadcast) -> None:
        self.coordinator = coordinator
        self.broadcast = broadcast

    async def run(self) -> RefreshMessage:
        try:
            outcome = await self.coordinator.refresh()
            message = RefreshMessage.from_outcome(outcome)
        except Exception as exc:
            logger.error("background_refresh_crashed", error=str(exc))
            message = RefreshMessage(BroadcastKind.REFRESH_ERROR, reason=str(exc))
        self.broadcast.publish(message)
        return message


__all__ = [
    "AsyncioBackgroundPlatform",
    "BackgroundPlatform",
    "BackgroundRefreshWorker",
    "BroadcastKind",
    "RefreshBroadcast",
    "RefreshMessage",
    "REFRESH_SYNC_TAG",
]
