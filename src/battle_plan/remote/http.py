# src/battle_plan/remote/http.py

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from ..core.errors import (
    AuthExpiredError,
    BattlePlanError,
    NotFoundError,
    RemoteError,
    TransientError,
)
from .session import AuthSession

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_RATE_LIMIT_REASONS = {"rateLimitExceeded", "userRateLimitExceeded"}


def _error_payload(response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    err = data.get("error") if isinstance(data, dict) else None
    return err if isinstance(err, dict) else {}


def _error_message(response: httpx.Response) -> str:
    msg = _error_payload(response).get("message")
    return str(msg) if msg else f"HTTP {response.status_code}"


def _error_reasons(response: httpx.Response) -> set[str]:
    errors = _error_payload(response).get("errors") or []
    return {str(e.get("reason")) for e in errors if isinstance(e, dict) and e.get("reason")}


def classify_response(response: httpx.Response) -> BattlePlanError | None:
    """Map an HTTP response to a typed error, or None on success."""
    status = response.status_code
    if status < 400:
        return None

    payload = _error_payload(response)
    message = _error_message(response)

    if status == 401 or payload.get("status") == "UNAUTHENTICATED":
        return AuthExpiredError(f"session expired: {message}", status_code=status)
    if status == 429 or status >= 500:
        return TransientError(message, status_code=status)
    if status == 403 and _error_reasons(response) & _RATE_LIMIT_REASONS:
        return TransientError(message, status_code=status)
    if status == 404:
        return NotFoundError(message)
    return RemoteError(message, status_code=status)


class GoogleApiClient:
    """
    Thin async wrapper over httpx for Google REST endpoints.

    - bearer token taken from the shared AuthSession on every request
    - transient failures (network, 429, 5xx, 403 rate limit) are retried with
      increasing backoff (attempt * retry_base_seconds, or Retry-After), capped
      at max_attempts
    - everything else raises immediately as a typed error
    """

    def __init__(
        self,
        session: AuthSession,
        *,
        http: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
        max_attempts: int = 4,
        retry_base_seconds: float = 2.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.session = session
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._owns_http = http is None
        self._max_attempts = max(1, int(max_attempts))
        self._retry_base = max(0.0, float(retry_base_seconds))
        self._sleep = sleep

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _retry_delay(self, attempt: int, response: httpx.Response | None) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return max(0.0, float(retry_after))
                except ValueError:
                    pass
        return attempt * self._retry_base

    async def request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        content: str | bytes | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        token = self.session.token
        if not token:
            raise AuthExpiredError("not signed in to Google")

        req_headers = {"Authorization": f"Bearer {token}"}
        if headers:
            req_headers.update(headers)

        last_error: RemoteError | None = None
        for attempt in range(1, self._max_attempts + 1):
            response: httpx.Response | None = None
            try:
                response = await self._http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    content=content,
                    headers=req_headers,
                )
            except httpx.TransportError as e:
                last_error = TransientError(f"network error: {e.__class__.__name__}")
            else:
                error = classify_response(response)
                if error is None:
                    return response
                if not isinstance(error, TransientError):
                    logger.debug("%s %s -> %s (%s)", method, url, response.status_code, error)
                    raise error
                last_error = error

            if attempt >= self._max_attempts:
                break
            delay = self._retry_delay(attempt, response)
            logger.warning(
                "%s %s failed (%s); retry %d/%d in %.1fs",
                method,
                url,
                last_error,
                attempt,
                self._max_attempts - 1,
                delay,
            )
            await self._sleep(delay)

        assert last_error is not None
        raise last_error
