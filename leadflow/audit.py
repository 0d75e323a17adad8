"""Audit trail recording for dispatches and flow runs."""

from __future__ import annotations

import logging
from typing import Any, Optional

from .contracts import AuditEntry, AuditStatus
from .persistence import AuditLogStore

logger = logging.getLogger(__name__)


class AuditLog:
    """Records the terminal outcome of an attempted change.

    Callers invoke :meth:`record_outcome` exactly once per terminal point, with
    the status of that outcome; nothing else in the package writes audit rows.
    """

    def __init__(self, store: AuditLogStore) -> None:
        self._store = store

    async def record_outcome(
        self,
        entity_id: Any,
        action_label: str,
        payload: dict[str, Any],
        status: AuditStatus,
        error: Optional[str] = None,
        acting_user: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            entity_id=entity_id,
            action_label=action_label,
            payload=payload,
            status=status,
            error=error,
            acting_user=acting_user,
        )
        stored = await self._store.append_audit(entry)
        logger.info(
            f"Audit {status} for entity {stored.entity_id}: {action_label}"
            + (f" ({error})" if error else "")
        )
        return stored
