"""SQLite implementation of the leadflow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Any

from ..contracts import AuditEntry, Flow, FlowRun, NodeLog, RunStatus
from .repository import Repository


def _dump_logs(logs: list[NodeLog]) -> str:
    return json.dumps([log.model_dump(mode="json") for log in logs])


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


class SQLiteRepository(Repository):
    """Persist flows, runs and records using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.executescript(
            """
            CREATE TABLE IF NOT EXISTS flows (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                nodes TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS flow_runs (
                id TEXT PRIMARY KEY,
                flow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                entity_id TEXT,
                input TEXT,
                created_by TEXT,
                created_at TEXT NOT NULL,
                started_at TEXT,
                finished_at TEXT,
                logs TEXT NOT NULL,
                output TEXT
            );
            CREATE TABLE IF NOT EXISTS audit_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                entity_id TEXT NOT NULL,
                action_label TEXT NOT NULL,
                payload TEXT,
                status TEXT NOT NULL,
                error TEXT,
                acting_user TEXT,
                created_at TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS records (
                entity_id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS contacts (
                external_id TEXT PRIMARY KEY,
                data TEXT NOT NULL
            );
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()
        return cur.lastrowid

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def _merge_record(self, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        # read-modify-write inside one transaction
        with self._conn:
            row = self._conn.execute(
                "SELECT data FROM records WHERE entity_id = ?", (entity_id,)
            ).fetchone()
            merged = {**(json.loads(row["data"]) if row else {}), **values}
            self._conn.execute(
                """
                INSERT INTO records (entity_id, data) VALUES (?, ?)
                ON CONFLICT(entity_id) DO UPDATE SET data = excluded.data
                """,
                (entity_id, json.dumps(merged)),
            )
        return merged

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> FlowRun:
        return FlowRun(
            id=row["id"],
            flow_id=row["flow_id"],
            status=row["status"],
            entity_id=row["entity_id"],
            input=json.loads(row["input"]) if row["input"] else {},
            created_by=row["created_by"],
            created_at=datetime.fromisoformat(row["created_at"]),
            started_at=datetime.fromisoformat(row["started_at"]) if row["started_at"] else None,
            finished_at=datetime.fromisoformat(row["finished_at"]) if row["finished_at"] else None,
            logs=json.loads(row["logs"]),
            output=json.loads(row["output"]) if row["output"] else None,
        )

    # ------------------------------------------------------------------
    # Flows
    async def save_flow(self, flow: Flow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO flows (id, name, nodes) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name, nodes = excluded.nodes
            """,
            flow.id,
            flow.name,
            json.dumps([node.model_dump(mode="json") for node in flow.nodes]),
        )

    async def get_flow(self, flow_id: str) -> Flow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT id, name, nodes FROM flows WHERE id = ?", flow_id
        )
        if not row:
            return None
        return Flow(id=row["id"], name=row["name"], nodes=json.loads(row["nodes"]))

    async def list_flows(self) -> list[Flow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT id, name, nodes FROM flows ORDER BY name"
        )
        return [
            Flow(id=r["id"], name=r["name"], nodes=json.loads(r["nodes"])) for r in rows
        ]

    # ------------------------------------------------------------------
    # Runs
    async def create_run(self, run: FlowRun) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO flow_runs (id, flow_id, status, entity_id, input, created_by,
                                   created_at, started_at, finished_at, logs, output)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            run.id,
            run.flow_id,
            run.status,
            run.entity_id,
            json.dumps(run.input),
            run.created_by,
            run.created_at.isoformat(),
            _iso(run.started_at),
            _iso(run.finished_at),
            _dump_logs(run.logs),
            json.dumps(run.output) if run.output is not None else None,
        )

    async def get_run(self, run_id: str) -> FlowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM flow_runs WHERE id = ?", run_id
        )
        return self._row_to_run(row) if row else None

    async def list_runs(self, flow_id: str | None = None) -> list[FlowRun]:
        if flow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM flow_runs ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM flow_runs WHERE flow_id = ? ORDER BY created_at",
                flow_id,
            )
        return [self._row_to_run(r) for r in rows]

    async def mark_run_started(self, run_id: str, started_at: datetime) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE flow_runs SET status = ?, started_at = ?, logs = ? WHERE id = ?",
            "running",
            started_at.isoformat(),
            "[]",
            run_id,
        )

    async def update_run_logs(self, run_id: str, logs: list[NodeLog]) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE flow_runs SET logs = ? WHERE id = ?",
            _dump_logs(logs),
            run_id,
        )

    async def mark_run_finished(
        self,
        run_id: str,
        status: RunStatus,
        finished_at: datetime,
        logs: list[NodeLog],
        output: Any = None,
    ) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            UPDATE flow_runs
            SET status = ?, finished_at = ?, logs = ?, output = ?
            WHERE id = ?
            """,
            status,
            finished_at.isoformat(),
            _dump_logs(logs),
            json.dumps(output) if output is not None else None,
            run_id,
        )

    # ------------------------------------------------------------------
    # Audit log
    async def append_audit(self, entry: AuditEntry) -> AuditEntry:
        entry_id = await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO audit_log (entity_id, action_label, payload, status, error,
                                   acting_user, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            entry.entity_id,
            entry.action_label,
            json.dumps(entry.payload, default=str),
            entry.status,
            entry.error,
            entry.acting_user,
            entry.created_at.isoformat(),
        )
        return entry.model_copy(update={"id": entry_id})

    async def list_audit(self, entity_id: str | None = None) -> list[AuditEntry]:
        if entity_id is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM audit_log ORDER BY id"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM audit_log WHERE entity_id = ? ORDER BY id",
                str(entity_id),
            )
        return [
            AuditEntry(
                id=r["id"],
                entity_id=r["entity_id"],
                action_label=r["action_label"],
                payload=json.loads(r["payload"]) if r["payload"] else {},
                status=r["status"],
                error=r["error"],
                acting_user=r["acting_user"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Entity records and contacts
    async def upsert_record(self, entity_id: str, values: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._merge_record, str(entity_id), values)

    async def get_record(self, entity_id: str) -> dict[str, Any] | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM records WHERE entity_id = ?", str(entity_id)
        )
        return json.loads(row["data"]) if row else None

    async def upsert_contact(self, external_id: str, contact: dict[str, Any]) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO contacts (external_id, data) VALUES (?, ?)
            ON CONFLICT(external_id) DO UPDATE SET data = excluded.data
            """,
            str(external_id),
            json.dumps(contact),
        )

    async def get_contact(self, external_id: str) -> dict[str, Any] | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM contacts WHERE external_id = ?", str(external_id)
        )
        return json.loads(row["data"]) if row else None
