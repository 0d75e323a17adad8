"""Bounded outbound HTTP calls used by flow nodes and the CRM dispatcher."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional

import httpx

from .contracts import HttpRequest, HttpResponse
from .errors import HttpCallError, HttpTimeoutError

logger = logging.getLogger(__name__)

_TEXT_TYPES = ("text/", "application/xml", "application/javascript")


def decode_body(response: httpx.Response) -> Any:
    """Decode a response body according to its declared content type."""
    content_type = response.headers.get("content-type", "").lower()
    if "json" in content_type:
        return response.json()
    if any(marker in content_type for marker in _TEXT_TYPES):
        return response.text
    return response.content


def encode_body(body: Any, headers: dict[str, str]) -> Optional[str]:
    """Pass strings through and serialize structured values as JSON."""
    if body is None:
        return None
    if isinstance(body, str):
        return body
    if not any(key.lower() == "content-type" for key in headers):
        headers["Content-Type"] = "application/json"
    return json.dumps(body)


class HttpExecutor:
    """Issue single HTTP requests with an optional hard timeout.

    No retries are attempted and status codes are not interpreted; callers
    decide what a non-success status means. A shared ``httpx.AsyncClient`` can
    be injected, otherwise a short-lived client is opened per call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        default_timeout_ms: int | None = None,
    ) -> None:
        self._client = client
        self._default_timeout_ms = default_timeout_ms

    async def execute(self, request: HttpRequest) -> HttpResponse:
        """Perform ``request`` and return its decoded response.

        Raises:
            HttpTimeoutError: If ``timeout_ms`` elapses before the call completes.
            HttpCallError: On any network-level failure.
        """
        timeout_ms = request.timeout_ms or self._default_timeout_ms
        headers = dict(request.headers)
        content = encode_body(request.body, headers)
        method = request.method.upper()

        logger.debug(f"{method} {request.url} (timeout={timeout_ms}ms)")

        if self._client is not None:
            response = await self._send(
                self._client, method, request, headers, content, timeout_ms
            )
        else:
            async with httpx.AsyncClient(timeout=None) as client:
                response = await self._send(
                    client, method, request, headers, content, timeout_ms
                )

        try:
            data = decode_body(response)
        except ValueError:
            # declared JSON that does not parse
            data = response.text

        return HttpResponse(
            status=response.status_code,
            reason=response.reason_phrase,
            data=data,
            headers=dict(response.headers),
        )

    async def _send(
        self,
        client: httpx.AsyncClient,
        method: str,
        request: HttpRequest,
        headers: dict[str, str],
        content: Optional[str],
        timeout_ms: int | None,
    ) -> httpx.Response:
        call = client.request(
            method,
            request.url,
            headers=headers,
            content=content,
            params=request.params or None,
        )
        try:
            if timeout_ms is None:
                return await call
            # wait_for cancels the in-flight request and leaves no pending timer
            return await asyncio.wait_for(call, timeout=timeout_ms / 1000)
        except asyncio.TimeoutError as exc:
            logger.warning(f"{method} {request.url} timed out after {timeout_ms}ms")
            raise HttpTimeoutError(request.url, timeout_ms) from exc
        except httpx.HTTPError as exc:
            raise HttpCallError(f"HTTP request to {request.url} failed: {exc}") from exc
