"""PostgreSQL implementation of the leadflow repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

import asyncpg

from ..contracts import AuditEntry, Flow, FlowRun, NodeLog, RunStatus
from .repository import Repository


def _json(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


def _dump_logs(logs: list[NodeLog]) -> str:
    return json.dumps([log.model_dump(mode="json") for log in logs])


class PostgresRepository(Repository):
    """Persist flows, runs and records using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                nodes JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_runs (
                id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                entity_id TEXT,
                input JSONB,
                created_by TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                logs JSONB NOT NULL,
                output JSONB
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                id SERIAL PRIMARY KEY,
                entity_id TEXT NOT NULL,
                action_label TEXT NOT NULL,
                payload JSONB,
                status TEXT NOT NULL,
                error TEXT,
                acting_user TEXT,
                created_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                entity_id TEXT PRIMARY KEY,
                data JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS contacts (
                external_id TEXT PRIMARY KEY,
                data JSONB NOT NULL
            )
            """
        )

    @staticmethod
    def _row_to_run(row: asyncpg.Record) -> FlowRun:
        return FlowRun(
            id=row["id"],
            flow_id=row["flow_id"],
            status=row["status"],
            entity_id=row["entity_id"],
            input=_json(row["input"]) or {},
            created_by=row["created_by"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            logs=_json(row["logs"]),
            output=_json(row["output"]),
        )

    # ------------------------------------------------------------------
    async def save_flow(self, flow: Flow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flows (id, name, nodes) VALUES ($1, $2, $3)
                ON CONFLICT (id) DO UPDATE SET name = EXCLUDED.name, nodes = EXCLUDED.nodes
                """,
                flow.id,
                flow.name,
                json.dumps([node.model_dump(mode="json") for node in flow.nodes]),
            )
        finally:
            await conn.close()

    async def get_flow(self, flow_id: str) -> Flow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT id, name, nodes FROM flows WHERE id = $1", flow_id
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Flow(id=row["id"], name=row["name"], nodes=_json(row["nodes"]))

    async def list_flows(self) -> list[Flow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT id, name, nodes FROM flows ORDER BY name")
        finally:
            await conn.close()
        return [Flow(id=r["id"], name=r["name"], nodes=_json(r["nodes"])) for r in rows]

    # ------------------------------------------------------------------
    async def create_run(self, run: FlowRun) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flow_runs (id, flow_id, status, entity_id, input, created_by,
                                       created_at, started_at, finished_at, logs, output)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                """,
                run.id,
                run.flow_id,
                run.status,
                run.entity_id,
                json.dumps(run.input),
                run.created_by,
                run.created_at,
                run.started_at,
                run.finished_at,
                _dump_logs(run.logs),
                json.dumps(run.output) if run.output is not None else None,
            )
        finally:
            await conn.close()

    async def get_run(self, run_id: str) -> FlowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM flow_runs WHERE id = $1", run_id)
        finally:
            await conn.close()
        return self._row_to_run(row) if row else None

    async def list_runs(self, flow_id: str | None = None) -> list[FlowRun]:
        conn = await self._connect()
        try:
            if flow_id is None:
                rows = await conn.fetch("SELECT * FROM flow_runs ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM flow_runs WHERE flow_id = $1 ORDER BY created_at",
                    flow_id,
                )
        finally:
            await conn.close()
        return [self._row_to_run(r) for r in rows]

    async def mark_run_started(self, run_id: str, started_at: datetime) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE flow_runs SET status = 'running', started_at = $1, logs = '[]' WHERE id = $2",
                started_at,
                run_id,
            )
        finally:
            await conn.close()

    async def update_run_logs(self, run_id: str, logs: list[NodeLog]) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                "UPDATE flow_runs SET logs = $1 WHERE id = $2", _dump_logs(logs), run_id
            )
        finally:
            await conn.close()

    async def mark_run_finished(
        self,
        run_id: str,
        status: RunStatus,
        finished_at: datetime,
        logs: list[NodeLog],
        output: Any = None,
    ) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                UPDATE flow_runs
                SET status = $1, finished_at = $2, logs = $3, output = $4
                WHERE id = $5
                """,
                status,
                finished_at,
                _dump_logs(logs),
                json.dumps(output) if output is not None else None,
                run_id,
            )
        finally:
            await conn.close()

    # ------------------------------------------------------------------
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        conn = await self._connect()
        try:
            entry_id = await conn.fetchval(
                """
                INSERT INTO audit_log (entity_id, action_label, payload, status, error,
                                       acting_user, created_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING id
                """,
                entry.entity_id,
                entry.action_label,
                json.dumps(entry.payload, default=str),
                entry.status,
                entry.error,
                entry.acting_user,
                entry.created_at,
            )
        finally:
            await conn.close()
        return entry.model_copy(update={"id": entry_id})

    async def list_audit(self, entity_id: str | None = None) -> list[AuditEntry]:
        conn = await self._connect()
        try:
            if entity_id is None:
                rows = await conn.fetch("SELECT * FROM audit_log ORDER BY id")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM audit_log WHERE entity_id = $1 ORDER BY id",
                    str(entity_id),
                )
        finally:
            await conn.close()
        return [
            AuditEntry(
                id=r["id"],
                entity_id=r["entity_id"],
                action_label=r["action_label"],
                payload=_json(r["payload"]) or {},
                status=r["status"],
                error=r["error"],
                acting_user=r["acting_user"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def upsert_record(self, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        conn = await self._connect()
        try:
            # jsonb || merges top-level keys, last write wins
            data = await conn.fetchval(
                """
                INSERT INTO records (entity_id, data) VALUES ($1, $2::jsonb)
                ON CONFLICT (entity_id) DO UPDATE SET data = records.data || EXCLUDED.data
                RETURNING data
                """,
                str(entity_id),
                json.dumps(values),
            )
        finally:
            await conn.close()
        return _json(data)

    async def get_record(self, entity_id: str) -> dict[str, Any] | None:
        conn = await self._connect()
        try:
            data = await conn.fetchval(
                "SELECT data FROM records WHERE entity_id = $1", str(entity_id)
            )
        finally:
            await conn.close()
        return _json(data) if data is not None else None

    async def upsert_contact(self, external_id: str, contact: dict[str, Any]) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO contacts (external_id, data) VALUES ($1, $2::jsonb)
                ON CONFLICT (external_id) DO UPDATE SET data = EXCLUDED.data
                """,
                str(external_id),
                json.dumps(contact),
            )
        finally:
            await conn.close()

    async def get_contact(self, external_id: str) -> dict[str, Any] | None:
        conn = await self._connect()
        try:
            data = await conn.fetchval(
                "SELECT data FROM contacts WHERE external_id = $1", str(external_id)
            )
        finally:
            await conn.close()
        return _json(data) if data is not None else None
