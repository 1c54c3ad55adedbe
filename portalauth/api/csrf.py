from __future__ import annotations

import json
from typing import Optional

from fastapi import FastAPI, Request
from starlette.responses import Response

from portalauth.api.error_handling import _error_response
from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.csrf import CSRF_BODY_FIELD, CsrfGuard, is_state_changing
from portalauth.storage.models import CsrfToken

logger = get_logger(__name__)


async def _body_token(request: Request) -> Optional[str]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    body = await request.body()
    if not body:
        return None
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(payload, dict):
        value = payload.get(CSRF_BODY_FIELD)
        return value if isinstance(value, str) else None
    return None


def install_csrf_protection(app: FastAPI, guard: CsrfGuard, settings: Settings) -> None:
    """Sign the CSRF cookie on every response and verify it on mutating calls.

    Rejection happens here, so a state-changing handler never runs without a
    matching header (or ``csrfToken`` body field) and signed cookie.
    """
    cookie_name = settings.csrf_cookie_name
    header_name = settings.csrf_header_name

    def _set_cookie(response: Response, token: CsrfToken) -> None:
        response.set_cookie(
            cookie_name,
            token.cookie_value,
            max_age=settings.csrf_ttl_seconds,
            path="/",
            httponly=False,
            samesite="strict",
            secure=settings.cookie_secure,
        )

    @app.middleware("http")
    async def enforce_csrf_token(request: Request, call_next):
        cookie = request.cookies.get(cookie_name)
        reissue = guard.unpack(cookie) is None
        token = guard.issue(cookie) if reissue else None

        if is_state_changing(request.method):
            incoming = request.headers.get(header_name) or await _body_token(request)
            if not guard.verify(cookie, incoming):
                logger.warning(
                    "csrf_validation_failed",
                    path=request.url.path,
                    method=request.method,
                    cookie_present=cookie is not None,
                    token_present=bool(incoming),
                )
                response = _error_response(
                    403, "missing or invalid CSRF token", code="csrf_mismatch"
                )
                if token is not None:
                    _set_cookie(response, token)
                return response

        response = await call_next(request)
        if token is not None:
            _set_cookie(response, token)
        return response


__all__ = ["install_csrf_protection"]
