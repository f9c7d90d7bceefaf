from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Literal

import httpx


log = logging.getLogger(__name__)

HttpMethod = Literal["GET", "POST"]

# statuses worth another attempt later (facilitator passthrough turns these into 502)
RETRYABLE_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    detail: dict[str, Any]

    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False

    elapsed_ms: int | None = None


def _transport_failure(code: str, exc: Exception) -> HttpResult:
    # no response at all; always safe to retry, the request may never have arrived
    return HttpResult(
        ok=False,
        status_code=None,
        detail={"error": code.lower()},
        error_code=code,
        error_message=str(exc),
        retryable=True,
    )


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else f"{text[:limit]}...(truncated, {len(text)} chars)"


def _body_as_dict(resp: httpx.Response, *, limit: int) -> dict[str, Any]:
    """JSON objects as-is, JSON arrays under "data", anything else as clipped text."""
    if not resp.content:
        # Discord webhooks answer 204 No Content
        return {}
    content_type = (resp.headers.get("content-type") or "").lower()
    if "json" in content_type:
        try:
            parsed = resp.json()
        except ValueError:
            return {"raw": _clip(resp.text, limit)}
        return parsed if isinstance(parsed, dict) else {"data": parsed}
    return {"raw": _clip(resp.text, limit), "content_type": content_type or None}


class MarketHttpClient:
    """
    One pooled httpx.AsyncClient for every outbound call the market makes: the x402
    facilitator, Discord webhooks and Neynar lookups.

    Never raises for HTTP-level problems and never retries; callers get an HttpResult and
    decide (the outbox backs off, settlement passes the failure to the buyer).
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        default_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._max_body = max_response_body_chars
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds),
            headers=dict(default_headers or {}),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request_json(
        self,
        *,
        method: HttpMethod,
        url: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> HttpResult:
        try:
            resp = await self._client.request(
                method,
                url,
                headers=dict(headers or {}),
                params=dict(params or {}),
                json=json_body,
            )
        except httpx.TimeoutException as e:
            log.warning("http: %s %s timed out", method, url)
            return _transport_failure("TIMEOUT", e)
        except httpx.RequestError as e:
            log.warning("http: %s %s failed: %s", method, url, e)
            return _transport_failure("REQUEST_ERROR", e)

        detail = _body_as_dict(resp, limit=self._max_body)
        elapsed_ms = int(resp.elapsed.total_seconds() * 1000)

        if resp.is_success:
            return HttpResult(ok=True, status_code=resp.status_code, detail=detail, elapsed_ms=elapsed_ms)

        return HttpResult(
            ok=False,
            status_code=resp.status_code,
            detail=detail,
            error_code=f"HTTP_{resp.status_code}",
            error_message=f"HTTP {resp.status_code}",
            retryable=resp.status_code in RETRYABLE_STATUSES,
            elapsed_ms=elapsed_ms,
        )

    async def get_json(self, *, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, str] | None = None) -> HttpResult:
        return await self.request_json(method="GET", url=url, headers=headers, params=params)

    async def post_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: dict[str, Any] | None = None) -> HttpResult:
        return await self.request_json(method="POST", url=url, headers=headers, json_body=json_body)
