"""Field-update dispatcher for leadflow.

Applies one field change for an entity either to the internal record store or
to the external CRM webhook, and records exactly one audit entry per call.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict

from .audit import AuditLog
from .config import LeadflowConfig, SideEffectPolicy, load_config
from .contracts import DispatchResult, FieldUpdateRequest, HttpRequest
from .enumerations import EnumerationCatalog, build_crm_query
from .errors import (
    CrmRequestError,
    CrmResponseError,
    MissingWebhookUrl,
    error_kind,
    error_message,
)
from .http import HttpExecutor
from .persistence import Repository
from .sync import SyncChannel

logger = logging.getLogger(__name__)


def parse_crm_body(data: Any) -> Dict[str, Any]:
    """Best-effort JSON decoding of a CRM reply; unparseable bodies become ``{}``."""
    if isinstance(data, dict):
        return data
    if isinstance(data, (bytes, bytearray)):
        data = data.decode("utf-8", errors="replace")
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return {}
    if isinstance(data, dict):
        return data
    if data is None:
        return {}
    return {"result": data}


class FieldUpdateDispatcher:
    """Service responsible for applying field updates to a target system."""

    def __init__(
        self,
        repository: Repository,
        http: HttpExecutor | None = None,
        sync_channel: SyncChannel | None = None,
        config: LeadflowConfig | None = None,
    ) -> None:
        self._repository = repository
        self._config = config or load_config()
        self._http = http or HttpExecutor(
            default_timeout_ms=self._config.http.default_timeout_ms
        )
        self._sync_channel = sync_channel
        self._audit = AuditLog(repository)

    async def dispatch(self, request: FieldUpdateRequest) -> DispatchResult:
        """Apply ``request`` and return a tagged result. Never raises."""
        action_label = request.action_label or f"Update {request.field}"
        attempted = self._attempted_payload(request)
        logger.info(
            f"Dispatching {request.field} for entity {request.entity_id} to {request.target}"
        )

        try:
            if request.target == "internal-store":
                result = await self._update_internal_store(request)
            else:
                result = await self._update_crm(request)
        except Exception as exc:
            message = error_message(exc)
            logger.error(
                f"Dispatch of {request.field} for entity {request.entity_id} failed: {message}"
            )
            result = DispatchResult(
                status="error",
                message=f"Failed to apply {action_label}: {message}",
                payload=attempted,
                error=message,
                error_kind=error_kind(exc),
            )

        result.audit_recorded = await self._record(request, action_label, attempted, result)
        return result

    # ------------------------------------------------------------------
    async def _update_internal_store(self, request: FieldUpdateRequest) -> DispatchResult:
        values = {"id": request.entity_id, **request.field_values()}
        record = await self._repository.upsert_record(str(request.entity_id), values)

        if request.contact is not None:
            await self._side_effect("contact", lambda: self._update_contact(request))

        synced = False
        if self._sync_channel is not None:
            sync_channel = self._sync_channel
            synced = await self._side_effect(
                "sync",
                lambda: sync_channel.invoke(
                    {
                        "record": values,
                        "webhookUrl": request.webhook_url,
                        "source": "internal-store",
                    }
                ),
            )

        suffix = " and synced downstream" if synced else ""
        return DispatchResult(
            status="success",
            message=f"Entity {request.entity_id} saved to internal store{suffix}.",
            payload={"record": record},
        )

    async def _update_crm(self, request: FieldUpdateRequest) -> DispatchResult:
        webhook_url = request.webhook_url or self._config.crm.webhook_url
        if not webhook_url:
            raise MissingWebhookUrl()

        catalog = EnumerationCatalog(request.enumeration_fields)
        fields = catalog.convert_all(request.field_values())
        params = build_crm_query(request.entity_id, fields)
        logger.debug(f"CRM update for entity {request.entity_id}: {params}")

        response = await self._http.execute(
            HttpRequest(
                url=webhook_url,
                method="GET",
                params=params,
                timeout_ms=self._config.crm.timeout_ms,
            )
        )
        body = parse_crm_body(response.data)

        if not response.ok or body.get("error"):
            detail = (
                body.get("error_description")
                or body.get("error")
                or response.reason
                or f"HTTP {response.status}"
            )
            if not response.ok:
                raise CrmRequestError(f"CRM request failed ({response.status}): {detail}")
            raise CrmResponseError(f"CRM error: {detail}")

        if request.contact is not None:
            await self._side_effect("contact", lambda: self._update_contact(request))
        await self._side_effect(
            "mirror",
            lambda: self._repository.upsert_record(
                str(request.entity_id),
                {"id": request.entity_id, **request.field_values(), "sync_status": "synced"},
            ),
        )

        crm_result = body.get("result")
        crm_id = crm_result.get("ID") if isinstance(crm_result, dict) else None
        return DispatchResult(
            status="success",
            message=f"Entity {request.entity_id} updated in CRM."
            + (f" ID: {crm_id}" if crm_id else ""),
            payload={"fields": fields, "response": body},
        )

    async def _update_contact(self, request: FieldUpdateRequest) -> None:
        snapshot = request.contact
        external_id = snapshot.external_id or str(request.entity_id)
        contact = snapshot.model_dump()
        contact["external_id"] = external_id
        contact["custom_attributes"] = {
            **snapshot.custom_attributes,
            **request.field_values(),
        }
        await self._repository.upsert_contact(external_id, contact)

    async def _side_effect(
        self, channel: str, action: Callable[[], Awaitable[Any]]
    ) -> bool:
        """Run one side channel under its configured policy.

        Returns ``False`` when a best-effort channel failed.
        """
        policy: SideEffectPolicy = getattr(self._config.policies, channel)
        try:
            await action()
        except Exception as exc:
            if policy == "mandatory":
                raise
            logger.warning(f"Best-effort {channel} update failed: {error_message(exc)}")
            return False
        return True

    # ------------------------------------------------------------------
    @staticmethod
    def _attempted_payload(request: FieldUpdateRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "field": request.field,
            "value": request.value,
            "target": request.target,
            "additional_fields": request.additional_fields,
        }
        if request.selected_value_display is not None:
            payload["selected_value_display"] = request.selected_value_display
        if request.metadata:
            payload["metadata"] = request.metadata
        return payload

    async def _record(
        self,
        request: FieldUpdateRequest,
        action_label: str,
        attempted: Dict[str, Any],
        result: DispatchResult,
    ) -> bool:
        """Write the single audit entry for ``result``.

        A failing audit store is logged, not raised; the dispatch outcome stands
        and callers see ``audit_recorded=False`` on the result.
        """
        try:
            await self._audit.record_outcome(
                entity_id=request.entity_id,
                action_label=action_label,
                payload=attempted,
                status="OK" if result.ok else "ERROR",
                error=result.error,
                acting_user=request.acting_user,
            )
        except Exception:
            logger.exception(
                f"Could not write audit entry for entity {request.entity_id}"
            )
            return False
        return True
