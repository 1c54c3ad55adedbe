from __future__ import annotations

from enum import Enum
from typing import Callable, Iterable, Optional, Protocol, Sequence
from urllib.parse import quote, urlsplit

from portalauth.logging import get_logger
from portalauth.service.session_state import SessionStateStore
from portalauth.storage.models import Session, SessionStatus

logger = get_logger(__name__)

DEFAULT_PUBLIC_PATHS = ("/login", "/verify-otp", "/", "/public")


class GateView(str, Enum):
    LOADING = "loading"
    CONTENT = "content"
    VERIFY_OTP = "verify_otp"
    REDIRECTING = "redirecting"


class Navigator(Protocol):
    def replace(self, location: str) -> None:
        ...


def is_public_path(path: str, public_paths: Iterable[str]) -> bool:
    for public in public_paths:
        if path == public:
            return True
        # "/" only matches exactly; other entries also cover their subpaths
        if public != "/" and path.startswith(public.rstrip("/") + "/"):
            return True
    return False


def login_redirect(location: str, *, login_path: str = "/login", return_param: str = "r") -> str:
    return f"{login_path}?{return_param}={quote(location, safe='')}"


class ProtectedRouteGate:
    """Decides what a protected view shows for the current session.

    Unauthenticated sessions on a protected path navigate to the login page
    exactly once per pathname; the guard resets when the pathname changes.
    """

    def __init__(
        self,
        store: SessionStateStore,
        navigator: Navigator,
        *,
        location: str = "/",
        login_path: str = "/login",
        return_param: str = "r",
        public_paths: Sequence[str] = DEFAULT_PUBLIC_PATHS,
    ) -> None:
        self.store = store
        self.navigator = navigator
        self.login_path = login_path
        self.return_param = return_param
        self.public_paths = tuple(public_paths)
        self.location = location
        self.view = GateView.LOADING
        self._redirected_for: Optional[str] = None
        self._unsubscribe: Optional[Callable[[], None]] = store.subscribe(self._on_state)
        self._evaluate(store.get_state())

    @property
    def pathname(self) -> str:
        return urlsplit(self.location).path or "/"

    def navigate(self, location: str) -> GateView:
        """The app moved to ``location``; re-evaluate for the new pathname."""
        previous = self.pathname
        self.location = location
        if self.pathname != previous:
            self._redirected_for = None
        return self._evaluate(self.store.get_state())

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def _on_state(self, session: Session) -> None:
        self._evaluate(session)

    def _evaluate(self, session: Session) -> GateView:
        if is_public_path(self.pathname, self.public_paths):
            self.view = GateView.CONTENT
            return self.view
        status = session.status
        if status in (SessionStatus.UNINITIALIZED, SessionStatus.REFRESHING):
            self.view = GateView.LOADING
        elif status == SessionStatus.AUTHENTICATED:
            self.view = GateView.CONTENT
        elif status == SessionStatus.OTP_PENDING:
            self.view = GateView.VERIFY_OTP
        else:
            self.view = GateView.REDIRECTING
            self._redirect_once()
        return self.view

    def _redirect_once(self) -> None:
        pathname = self.pathname
        if self._redirected_for == pathname:
            return
        self._redirected_for = pathname
        target = login_redirect(self.location, login_path=self.login_path, return_param=self.return_param)
        logger.info("route_gate_redirect", pathname=pathname, target=target)
        self.navigator.replace(target)


__all__ = [
    "GateView",
    "Navigator",
    "ProtectedRouteGate",
    "DEFAULT_PUBLIC_PATHS",
    "is_public_path",
    "login_redirect",
]
