"""Repository abstraction for flow, run, audit and record persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from ..contracts import AuditEntry, Flow, FlowRun, NodeLog, RunStatus


class FlowStore(Protocol):
    async def save_flow(self, flow: Flow) -> None:
        """Insert or replace a flow definition."""

    async def get_flow(self, flow_id: str) -> Flow | None:
        """Retrieve a flow definition by id."""

    async def list_flows(self) -> list[Flow]:
        """Return all stored flows."""


class RunStore(Protocol):
    async def create_run(self, run: FlowRun) -> None:
        """Persist a new run record."""

    async def get_run(self, run_id: str) -> FlowRun | None:
        """Retrieve a run by id."""

    async def list_runs(self, flow_id: str | None = None) -> list[FlowRun]:
        """Return runs, optionally filtered by flow."""

    async def mark_run_started(self, run_id: str, started_at: datetime) -> None:
        """Record that the run was claimed."""

    async def update_run_logs(self, run_id: str, logs: list[NodeLog]) -> None:
        """Replace the persisted node log list."""

    async def mark_run_finished(
        self,
        run_id: str,
        status: RunStatus,
        finished_at: datetime,
        logs: list[NodeLog],
        output: Any = None,
    ) -> None:
        """Persist the terminal status, logs and output of a run."""


class AuditLogStore(Protocol):
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        """Insert an audit entry and return it with its id."""

    async def list_audit(self, entity_id: str | None = None) -> list[AuditEntry]:
        """Return audit entries in insertion order."""


class RecordStore(Protocol):
    async def upsert_record(self, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        """Merge ``values`` into the entity's record and return the result."""

    async def get_record(self, entity_id: str) -> dict[str, Any] | None:
        """Retrieve an entity record."""


class ContactStore(Protocol):
    async def upsert_contact(self, external_id: str, contact: dict[str, Any]) -> None:
        """Replace the contact stored under ``external_id``."""

    async def get_contact(self, external_id: str) -> dict[str, Any] | None:
        """Retrieve a contact by external id."""


class Repository(FlowStore, RunStore, AuditLogStore, RecordStore, ContactStore, Protocol):
    """Every store a backend provides."""
