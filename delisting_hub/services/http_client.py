from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Mapping

import httpx

from delisting_hub.services.errors import ErrorKind
from delisting_hub.services.retry import is_retryable


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any]

    error_kind: ErrorKind | None = None
    error_message: str | None = None
    retryable: bool = False

    elapsed_ms: int | None = None


def classify_status(status_code: int) -> ErrorKind:
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.API_UNAVAILABLE
    if status_code == 401:
        return ErrorKind.TOKEN_EXPIRED
    if status_code == 403:
        return ErrorKind.INSUFFICIENT_PERMISSIONS
    if status_code == 404:
        return ErrorKind.LISTING_NOT_FOUND
    if status_code == 409:
        return ErrorKind.LISTING_ALREADY_ENDED
    if status_code == 422:
        return ErrorKind.LISTING_CANNOT_BE_ENDED
    return ErrorKind.INVALID_REQUEST


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


class ConnectorHttpClient:
    """
    Shared HTTP client for the marketplace connector service.

    - One AsyncClient instance (connection pooling).
    - No retries here; callers schedule retries with the retry policy.
    - Failures come back classified into ErrorKind with a retryable flag.
    """

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        default_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_body = max_response_body_chars
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(timeout_seconds),
            headers=dict(default_headers or {}),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def post_json(self, path: str, *, json_body: dict[str, Any]) -> HttpResult:
        t0 = time.perf_counter()
        try:
            resp = await self._client.post(path, json=json_body)
        except httpx.TimeoutException as e:
            return HttpResult(
                ok=False,
                status_code=None,
                detail={"error": "timeout"},
                error_kind=ErrorKind.TIMEOUT,
                error_message=str(e) or "timeout",
                retryable=True,
            )
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            return HttpResult(
                ok=False,
                status_code=None,
                detail={"error": "request_error"},
                error_kind=ErrorKind.NETWORK_ERROR,
                error_message=str(e) or type(e).__name__,
                retryable=True,
            )

        detail: dict[str, Any]
        try:
            parsed = resp.json()
            detail = parsed if isinstance(parsed, dict) else {"data": parsed}
        except ValueError:
            detail = {"raw": _cap_text(resp.text, max_chars=self._max_body)}

        elapsed_ms = int((time.perf_counter() - t0) * 1000)

        if 200 <= resp.status_code < 300:
            return HttpResult(ok=True, status_code=resp.status_code, detail=detail, elapsed_ms=elapsed_ms)

        kind = classify_status(resp.status_code)
        message = detail.get("message") or detail.get("error") or f"HTTP {resp.status_code}"
        return HttpResult(
            ok=False,
            status_code=resp.status_code,
            detail=detail,
            error_kind=kind,
            error_message=str(message),
            retryable=is_retryable(kind),
            elapsed_ms=elapsed_ms,
        )
