"""In-memory implementation of the leadflow repository."""

from __future__ import annotations

import copy
from datetime import datetime
from typing import Any, Dict, List

from ..contracts import AuditEntry, Flow, FlowRun, NodeLog, RunStatus
from .repository import Repository


class InMemoryRepository(Repository):
    """Store flows, runs and records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._flows: Dict[str, Flow] = {}
        self._runs: Dict[str, FlowRun] = {}
        self._audit: List[AuditEntry] = []
        self._records: Dict[str, Dict[str, Any]] = {}
        self._contacts: Dict[str, Dict[str, Any]] = {}
        self._audit_id = 0

    # ------------------------------------------------------------------
    async def save_flow(self, flow: Flow) -> None:
        self._flows[flow.id] = flow

    async def get_flow(self, flow_id: str) -> Flow | None:
        return self._flows.get(flow_id)

    async def list_flows(self) -> list[Flow]:
        return list(self._flows.values())

    # ------------------------------------------------------------------
    async def create_run(self, run: FlowRun) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> FlowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, flow_id: str | None = None) -> list[FlowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if flow_id is None or run.flow_id == flow_id
        ]

    async def mark_run_started(self, run_id: str, started_at: datetime) -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = "running"
            run.started_at = started_at
            run.logs = []

    async def update_run_logs(self, run_id: str, logs: list[NodeLog]) -> None:
        run = self._runs.get(run_id)
        if run:
            run.logs = [log.model_copy() for log in logs]

    async def mark_run_finished(
        self,
        run_id: str,
        status: RunStatus,
        finished_at: datetime,
        logs: list[NodeLog],
        output: Any = None,
    ) -> None:
        run = self._runs.get(run_id)
        if run:
            run.status = status
            run.finished_at = finished_at
            run.logs = [log.model_copy() for log in logs]
            run.output = copy.deepcopy(output)

    # ------------------------------------------------------------------
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        self._audit_id += 1
        stored = entry.model_copy(update={"id": self._audit_id}, deep=True)
        self._audit.append(stored)
        return stored

    async def list_audit(self, entity_id: str | None = None) -> list[AuditEntry]:
        return [
            entry
            for entry in self._audit
            if entity_id is None or entry.entity_id == str(entity_id)
        ]

    # ------------------------------------------------------------------
    async def upsert_record(self, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        merged = {**self._records.get(str(entity_id), {}), **copy.deepcopy(values)}
        self._records[str(entity_id)] = merged
        return dict(merged)

    async def get_record(self, entity_id: str) -> dict[str, Any] | None:
        record = self._records.get(str(entity_id))
        return dict(record) if record is not None else None

    async def upsert_contact(self, external_id: str, contact: dict[str, Any]) -> None:
        self._contacts[str(external_id)] = copy.deepcopy(contact)

    async def get_contact(self, external_id: str) -> dict[str, Any] | None:
        contact = self._contacts.get(str(external_id))
        return copy.deepcopy(contact) if contact is not None else None
