from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import FastAPI, Request

from portalauth.api.csrf import install_csrf_protection
from portalauth.api.error_handling import register_exception_handlers
from portalauth.api.schemas import ClientInfoResponse
from portalauth.config import Settings, get_settings
from portalauth.logging import get_logger, set_correlation_id
from portalauth.service.csrf import CsrfGuard
from portalauth.storage.models import utcnow

logger = get_logger(__name__)

__version__ = "0.1.0"


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Adaptation-layer boundary: CSRF signing, error envelope, client info.

    The identity provider proxy handlers are mounted by the host
    application on the returned app and sit behind the CSRF check.
    """
    settings = settings or get_settings()
    app = FastAPI(title="portalauth", version=__version__)
    guard = CsrfGuard(settings.csrf_secret, ttl_seconds=settings.csrf_ttl_seconds)
    app.state.settings = settings
    app.state.csrf_guard = guard

    # Registered first so it runs innermost, after the correlation id is set
    install_csrf_protection(app, guard, settings)

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        response = await call_next(request)
        response.headers.setdefault("X-Frame-Options", "DENY")
        response.headers.setdefault("X-Content-Type-Options", "nosniff")
        response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
        response.headers.setdefault("Cache-Control", "no-store")
        return response

    @app.middleware("http")
    async def add_correlation_id(request, call_next):
        correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = correlation_id
        return response

    register_exception_handlers(app)

    @app.get("/client-info")
    async def client_info(request: Request) -> Dict[str, Any]:
        info = ClientInfoResponse(
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
            timestamp=int(utcnow().timestamp() * 1000),
        )
        return info.model_dump(by_alias=True)

    @app.get("/healthz")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": __version__}

    logger.info("app_created", cookie_secure=settings.cookie_secure)
    return app


__all__ = ["create_app", "__version__"]
