"""Downstream sync channel invoked after internal-store updates."""

from __future__ import annotations

import logging
from typing import Any, Optional, Protocol

from .config import LeadflowConfig
from .contracts import HttpRequest
from .errors import LeadflowError, SyncChannelError
from .http import HttpExecutor

logger = logging.getLogger(__name__)


class SyncChannel(Protocol):
    async def invoke(self, payload: dict[str, Any]) -> Any:
        """Push ``payload`` downstream and return the channel's reply."""


class HttpSyncChannel:
    """POST updated records to a sync endpoint as JSON."""

    def __init__(
        self,
        url: str,
        http: HttpExecutor | None = None,
        timeout_ms: Optional[int] = None,
        headers: Optional[dict[str, str]] = None,
    ) -> None:
        self.url = url
        self._http = http or HttpExecutor()
        self._timeout_ms = timeout_ms
        self._headers = headers or {}

    async def invoke(self, payload: dict[str, Any]) -> Any:
        try:
            response = await self._http.execute(
                HttpRequest(
                    url=self.url,
                    method="POST",
                    headers=self._headers,
                    body=payload,
                    timeout_ms=self._timeout_ms,
                )
            )
        except LeadflowError as exc:
            raise SyncChannelError(f"Sync channel unreachable: {exc}") from exc

        if not response.ok:
            detail = response.data if response.data else response.reason
            raise SyncChannelError(f"Sync channel returned {response.status}: {detail}")
        logger.debug(f"Sync channel accepted update ({response.status})")
        return response.data


def build_sync_channel(
    config: LeadflowConfig, http: HttpExecutor | None = None
) -> HttpSyncChannel | None:
    """Return the configured sync channel, or ``None`` when sync is disabled."""
    if not config.sync.url:
        return None
    return HttpSyncChannel(config.sync.url, http=http, timeout_ms=config.sync.timeout_ms)
