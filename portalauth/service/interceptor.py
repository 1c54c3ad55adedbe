from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

import httpx

from portalauth.logging import get_correlation_id, get_logger
from portalauth.service.csrf import is_state_changing
from portalauth.service.errors import (
    AuthExpiredError,
    CsrfMismatchError,
    NetworkError,
    RefreshExhaustedError,
    ServiceError,
)
from portalauth.service.identity import DEVICE_HEADER
from portalauth.service.refresh import RefreshCoordinator, RefreshOutcome

logger = get_logger(__name__)

_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthorized",
    403: "forbidden",
    404: "not_found",
}


def _error_code(response: httpx.Response) -> Optional[str]:
    """Error code from either the local envelope or the provider's ``errors`` list."""
    try:
        body = response.json()
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    error = body.get("error")
    if isinstance(error, dict) and error.get("code"):
        return str(error["code"])
    errors = body.get("errors")
    if isinstance(errors, list) and errors:
        return str(errors[0])
    return None


class RequestInterceptor:
    """Outbound data calls with credentials attached and one refresh-and-retry.

    A 401 from anything but the refresh endpoint triggers (or joins) a single
    refresh through the coordinator; the original call is then repeated once
    at most. The retry's response is returned as is, whatever its status.
    """

    def __init__(self, coordinator: RefreshCoordinator) -> None:
        self.coordinator = coordinator
        self.identity = coordinator.identity
        self.client = coordinator.identity.client

    async def _headers(self, method: str, extra: Optional[Dict[str, str]]) -> Dict[str, str]:
        headers: Dict[str, str] = {}
        if self.identity.device_id:
            headers[DEVICE_HEADER] = self.identity.device_id
        cid = get_correlation_id()
        if cid:
            headers["x-request-id"] = cid
        token = self.coordinator.access_token
        if token:
            headers["authorization"] = f"Bearer {token}"
        if is_state_changing(method):
            headers.update(await self.identity.ensure_csrf())
        if extra:
            headers.update(extra)
        return headers

    async def _send(self, method: str, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        headers = await self._headers(method, kwargs.pop("headers", None))
        try:
            response = await self.client.request(method, url, headers=headers, **kwargs)
        except httpx.TransportError as exc:
            logger.warning("request_network_error", method=method, url=str(url), error=str(exc))
            raise NetworkError(
                "request failed before a response arrived",
                detail={"method": method, "url": str(url), "error": str(exc)},
            ) from exc
        if response.status_code == 403 and _error_code(response) == "csrf_mismatch":
            logger.warning("request_csrf_rejected", method=method, url=str(url))
            raise CsrfMismatchError("server rejected the CSRF token", detail={"url": str(url)})
        return response

    async def request(self, method: str, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        response, _ = await self._request(method, url, **kwargs)
        return response

    async def _request(
        self, method: str, url: httpx.URL | str, **kwargs: Any
    ) -> Tuple[httpx.Response, Optional[RefreshOutcome]]:
        method = method.upper()
        generation = self.coordinator.generation
        response = await self._send(method, url, **dict(kwargs))
        if response.status_code != 401 or self.identity.is_refresh_url(url):
            return response, None

        outcome = None
        if self.coordinator.generation != generation:
            logger.info("request_retry_after_concurrent_refresh", url=str(url))
        else:
            outcome = await self.coordinator.refresh()
            if not outcome.success:
                logger.info("request_unauthorized", url=str(url), reason=outcome.reason)
                return response, outcome
        logger.debug("request_retrying", url=str(url), generation=self.coordinator.generation)
        return await self._send(method, url, **dict(kwargs)), outcome

    async def get(self, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: httpx.URL | str, **kwargs: Any) -> httpx.Response:
        return await self.request("POST", url, **kwargs)

    async def request_json(self, method: str, url: httpx.URL | str, **kwargs: Any) -> Any:
        """Decoded JSON body of a successful call.

        Raises RefreshExhaustedError when the 401 stands because the refresh
        failed, AuthExpiredError when the retried call still answers 401, and
        ServiceError for any other error status.
        """
        response, outcome = await self._request(method, url, **kwargs)
        if response.status_code == 401:
            if outcome is not None and not outcome.success:
                raise RefreshExhaustedError(
                    "credential refresh failed",
                    detail={"url": str(url), "reason": outcome.reason},
                )
            raise AuthExpiredError("authentication expired", detail={"url": str(url)})
        if response.status_code >= 400:
            code = _error_code(response)
            raise ServiceError(
                f"request failed with status {response.status_code}",
                status_code=response.status_code,
                error_code=_STATUS_TO_CODE.get(response.status_code, "server_error"),
                detail={"url": str(url), "code": code},
            )
        if not response.content:
            return None
        return response.json()


__all__ = ["RequestInterceptor"]
