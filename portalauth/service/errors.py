from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session-coordination errors.

    Each subclass carries the HTTP status it corresponds to and a stable
    error code, so the same taxonomy is usable on both sides of the
    adaptation layer:
    - network_error (502)
    - unauthorized (401)
    - refresh_failed (401)
    - csrf_mismatch (403)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class NetworkError(ServiceError):
    """Transport failure reaching the identity provider (502)."""
    status_code = 502
    error_code = "network_error"


class AuthExpiredError(ServiceError):
    """A protected resource answered 401 (401)."""
    status_code = 401
    error_code = "unauthorized"


class RefreshExhaustedError(AuthExpiredError):
    """The refresh call itself returned a non-success outcome (401)."""
    error_code = "refresh_failed"


class CsrfMismatchError(ServiceError):
    """Missing, invalid or tampered CSRF pair (403)."""
    status_code = 403
    error_code = "csrf_mismatch"


class InvalidTransitionError(ServiceError):
    """Session state change along an edge the state machine does not allow."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "NetworkError",
    "AuthExpiredError",
    "RefreshExhaustedError",
    "CsrfMismatchError",
    "InvalidTransitionError",
]
