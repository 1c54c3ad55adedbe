"""Signed double-submit CSRF tokens.

The cookie carries ``raw.signature`` where ``signature`` is the base64url
HMAC-SHA256 of ``raw`` under a server secret. Scripts read the cookie and echo
only the raw half in the CSRF header; the server accepts a state-changing call
when the signature still validates and the echoed value equals the raw half.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Mapping, Optional

from portalauth.logging import get_logger
from portalauth.storage.models import CsrfToken

logger = get_logger(__name__)

CSRF_COOKIE = "_csrf"
CSRF_HEADER = "x-csrf-token"
CSRF_BODY_FIELD = "csrfToken"
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS", "TRACE"})
DEFAULT_TTL_SECONDS = 24 * 60 * 60


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def is_state_changing(method: str) -> bool:
    return method.upper() not in SAFE_METHODS


class CsrfGuard:
    """Issue and verify signed CSRF pairs.

    The secret stays inside this object; callers only ever see raw values and
    packed cookie strings.
    """

    def __init__(self, secret: str, *, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        if not secret:
            raise ValueError("CSRF secret must be non-empty")
        self._secret = secret.encode("utf-8")
        self.ttl_seconds = ttl_seconds

    def _sign(self, value: str) -> str:
        mac = hmac.new(self._secret, value.encode("utf-8"), hashlib.sha256).digest()
        return _b64url(mac)

    def unpack(self, packed: Optional[str]) -> Optional[str]:
        """Return the raw half of a packed cookie when its signature validates."""
        if not packed:
            return None
        idx = packed.rfind(".")
        if idx <= 0:
            return None
        value, signature = packed[:idx], packed[idx + 1:]
        if not signature:
            return None
        if not hmac.compare_digest(signature, self._sign(value)):
            return None
        return value

    def issue(self, existing_cookie: Optional[str] = None) -> CsrfToken:
        """Reuse ``existing_cookie`` when valid, otherwise mint a new pair."""
        raw = self.unpack(existing_cookie)
        if raw is not None:
            return CsrfToken(raw_value=raw, signature=self._sign(raw))
        raw = _b64url(secrets.token_bytes(32))
        now = datetime.now(timezone.utc)
        if existing_cookie:
            logger.info("csrf_cookie_reissued", reason="invalid_signature")
        return CsrfToken(
            raw_value=raw,
            signature=self._sign(raw),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
        )

    def verify(self, cookie: Optional[str], incoming: Optional[str]) -> bool:
        """Accept only a validly signed cookie whose raw half equals ``incoming``."""
        cookie_raw = self.unpack(cookie)
        if cookie_raw is None:
            return False
        if not incoming:
            return False
        # Clients send the raw half only; ignore anything after a separator
        incoming_raw = incoming.split(".", 1)[0]
        return hmac.compare_digest(incoming_raw.encode("utf-8"), cookie_raw.encode("utf-8"))


def raw_from_cookie(packed: Optional[str]) -> Optional[str]:
    """Client-side: the unsigned raw half of the CSRF cookie, if any."""
    if not packed:
        return None
    raw = packed.split(".", 1)[0]
    return raw or None


def csrf_header(
    cookies: Mapping[str, str],
    *,
    cookie_name: str = CSRF_COOKIE,
    header_name: str = CSRF_HEADER,
) -> dict[str, str]:
    """Header dict for a state-changing call, empty when no cookie is present."""
    token = raw_from_cookie(cookies.get(cookie_name))
    return {header_name: token} if token else {}


__all__ = [
    "CsrfGuard",
    "CSRF_COOKIE",
    "CSRF_HEADER",
    "CSRF_BODY_FIELD",
    "SAFE_METHODS",
    "csrf_header",
    "is_state_changing",
    "raw_from_cookie",
]
