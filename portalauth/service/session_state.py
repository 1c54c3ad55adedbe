from __future__ import annotations

import threading
from typing import Any, Callable, Dict, FrozenSet, List

from portalauth.logging import get_logger, log_session_transition
from portalauth.service.errors import InvalidTransitionError
from portalauth.storage.models import Session, SessionStatus

logger = get_logger(__name__)

SessionListener = Callable[[Session], None]

S = SessionStatus

# Logout (any state -> ANONYMOUS) is handled separately in transition()
_ALLOWED_EDGES: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    S.UNINITIALIZED: frozenset({S.REFRESHING}),
    S.REFRESHING: frozenset({S.AUTHENTICATED, S.ANONYMOUS, S.OTP_PENDING}),
    S.AUTHENTICATED: frozenset({S.REFRESHING}),
    S.ANONYMOUS: frozenset({S.REFRESHING}),
    S.OTP_PENDING: frozenset({S.AUTHENTICATED, S.ERROR}),
    S.ERROR: frozenset({S.REFRESHING}),
}


def is_allowed(current: SessionStatus, target: SessionStatus) -> bool:
    if target == S.ANONYMOUS:
        return True
    return target in _ALLOWED_EDGES.get(current, frozenset())


class SessionStateStore:
    """Authoritative authentication state for one running instance.

    Readers call ``get_state()`` or ``subscribe()``. Only the refresh
    coordinator and the logout action call ``transition()``; nothing else in
    the package writes here.
    """

    def __init__(self, initial: Session | None = None) -> None:
        self._state = initial or Session()
        self._listeners: List[SessionListener] = []
        self._lock = threading.RLock()

    def get_state(self) -> Session:
        return self._state

    @property
    def status(self) -> SessionStatus:
        return self._state.status

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener`` for every committed snapshot.

        Returns a callable that removes the listener; calling it twice is a
        no-op.
        """
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def transition(self, status: SessionStatus, **fields: Any) -> Session:
        """Commit a new snapshot with ``status`` and the given field changes.

        Raises InvalidTransitionError for edges outside the state machine.
        A change that leaves the snapshot identical is not re-published.
        """
        target = SessionStatus(status)
        with self._lock:
            previous = self._state
            if target != previous.status and not is_allowed(previous.status, target):
                raise InvalidTransitionError(
                    f"session cannot move from {previous.status.value} to {target.value}",
                    detail={"from": previous.status.value, "to": target.value},
                )
            if target == previous.status and target not in (S.ANONYMOUS, S.AUTHENTICATED, S.OTP_PENDING):
                raise InvalidTransitionError(
                    f"session already {target.value}",
                    detail={"from": previous.status.value, "to": target.value},
                )
            updated = previous.evolve(status=target, **fields)
            if updated == previous:
                return previous
            self._state = updated
            listeners = list(self._listeners)
        if previous.status != updated.status:
            log_session_transition(previous.status.value, updated.status.value, logger=logger)
        self._publish(updated, listeners)
        return updated

    def reset(self) -> Session:
        """Return to the process-start snapshot without notifying listeners."""
        with self._lock:
            self._state = Session()
            return self._state

    def _publish(self, snapshot: Session, listeners: List[SessionListener]) -> None:
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception as exc:
                logger.error(
                    "session_listener_failed",
                    listener=getattr(listener, "__qualname__", repr(listener)),
                    error=str(exc),
                )


__all__ = ["SessionStateStore", "SessionListener", "is_allowed"]
