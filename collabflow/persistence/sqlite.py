"""SQLite implementation of the flow repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, TypeVar

from ..contracts import utcnow
from ..errors import NotFound
from .models import (
    DECISION_ARBITRATION_FIELDS,
    DECISION_UPDATABLE_FIELDS,
    DEFINITION_METADATA_FIELDS,
    CollaborationDecisionLog,
    FlowDefinition,
    FlowExecutionLog,
    FlowInstance,
    apply_update,
    updated_columns,
)
from .repository import FlowRepository

T = TypeVar("T")

DEFINITION_COLUMNS = (
    "id", "name", "description", "version", "is_active", "trigger_type",
    "trigger_config", "nodes", "edges", "variables", "priority", "timeout",
    "retry_config", "created_by", "created_at", "updated_at",
)
INSTANCE_COLUMNS = (
    "id", "flow_definition_id", "flow_name", "status", "current_node_id",
    "session_id", "trigger_data", "result", "error_message", "started_at",
    "completed_at", "processing_time", "retry_count", "metadata",
)
LOG_COLUMNS = (
    "flow_instance_id", "node_id", "node_type", "node_name", "status",
    "input_data", "output_data", "error_message", "started_at", "completed_at",
    "processing_time",
)
DECISION_COLUMNS = (
    "id", "session_id", "message_id", "robot_id", "should_ai_reply", "ai_action",
    "staff_action", "priority", "reason", "business_role", "staff_context",
    "info_context", "strategy", "staff_id", "staff_name", "delay_seconds",
    "created_at", "updated_at",
)
JSON_COLUMNS = {
    "trigger_config", "nodes", "edges", "variables", "retry_config",
    "trigger_data", "result", "metadata", "input_data", "output_data",
}
BOOL_COLUMNS = {"is_active", "should_ai_reply"}


def _encode(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in JSON_COLUMNS:
        return json.dumps(value)
    if column in BOOL_COLUMNS:
        return int(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _decode_row(row: sqlite3.Row) -> dict[str, Any]:
    data: dict[str, Any] = {}
    for key in row.keys():
        value = row[key]
        if value is not None and key in JSON_COLUMNS:
            value = json.loads(value)
        elif key in BOOL_COLUMNS:
            value = bool(value)
        data[key] = value
    return data


def _row_values(model: Any, columns: tuple[str, ...]) -> tuple[Any, ...]:
    dumped = model.model_dump(mode="json")
    return tuple(
        _encode(c, getattr(model, c) if c not in JSON_COLUMNS else dumped[c])
        for c in columns
    )


class SQLiteFlowRepository(FlowRepository):
    """Persist engine state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._db_lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS flow_definitions (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT,
                    version TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 0,
                    trigger_type TEXT NOT NULL,
                    trigger_config TEXT,
                    nodes TEXT NOT NULL,
                    edges TEXT NOT NULL,
                    variables TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    timeout INTEGER,
                    retry_config TEXT,
                    created_by TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS ux_flow_definitions_active
                    ON flow_definitions (name) WHERE is_active = 1;
                CREATE TABLE IF NOT EXISTS flow_instances (
                    id TEXT PRIMARY KEY,
                    flow_definition_id TEXT NOT NULL,
                    flow_name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_node_id TEXT,
                    session_id TEXT,
                    trigger_data TEXT,
                    result TEXT,
                    error_message TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    processing_time INTEGER,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    metadata TEXT
                );
                CREATE TABLE IF NOT EXISTS flow_execution_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    flow_instance_id TEXT NOT NULL,
                    node_id TEXT NOT NULL,
                    node_type TEXT NOT NULL,
                    node_name TEXT,
                    status TEXT NOT NULL,
                    input_data TEXT,
                    output_data TEXT,
                    error_message TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    processing_time INTEGER
                );
                CREATE TABLE IF NOT EXISTS collaboration_decision_logs (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    message_id TEXT NOT NULL UNIQUE,
                    robot_id TEXT NOT NULL,
                    should_ai_reply INTEGER NOT NULL,
                    ai_action TEXT,
                    staff_action TEXT,
                    priority TEXT,
                    reason TEXT,
                    business_role TEXT,
                    staff_context TEXT,
                    info_context TEXT,
                    strategy TEXT,
                    staff_id TEXT,
                    staff_name TEXT,
                    delay_seconds INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work: Callable[[sqlite3.Connection], T]) -> T:
        """Run ``work`` inside one transaction; any error rolls everything back."""
        with self._db_lock:
            with self._conn:
                return work(self._conn)

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._db_lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _insert_sql(table: str, columns: tuple[str, ...]) -> str:
        placeholders = ", ".join("?" for _ in columns)
        return f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"

    # ------------------------------------------------------------------
    # Flow definitions
    async def insert_definition(self, definition: FlowDefinition) -> FlowDefinition:
        row = definition.model_copy(update={"is_active": False})
        await asyncio.to_thread(
            self._transaction,
            lambda conn: conn.execute(
                self._insert_sql("flow_definitions", DEFINITION_COLUMNS),
                _row_values(row, DEFINITION_COLUMNS),
            ),
        )
        return row

    async def insert_active_version(self, definition: FlowDefinition) -> FlowDefinition:
        row = definition.model_copy(update={"is_active": True})

        def work(conn: sqlite3.Connection) -> None:
            conn.execute(
                "UPDATE flow_definitions SET is_active = 0, updated_at = ? "
                "WHERE name = ? AND is_active = 1",
                (utcnow().isoformat(), row.name),
            )
            conn.execute(
                self._insert_sql("flow_definitions", DEFINITION_COLUMNS),
                _row_values(row, DEFINITION_COLUMNS),
            )

        await asyncio.to_thread(self._transaction, work)
        return row

    async def activate_definition(self, definition_id: str) -> FlowDefinition:
        def work(conn: sqlite3.Connection) -> None:
            target = conn.execute(
                "SELECT name FROM flow_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            if target is None:
                raise NotFound(f"Flow definition {definition_id} not found")
            now = utcnow().isoformat()
            conn.execute(
                "UPDATE flow_definitions SET is_active = 0, updated_at = ? "
                "WHERE name = ? AND is_active = 1 AND id != ?",
                (now, target["name"], definition_id),
            )
            conn.execute(
                "UPDATE flow_definitions SET is_active = 1, updated_at = ? WHERE id = ?",
                (now, definition_id),
            )

        await asyncio.to_thread(self._transaction, work)
        return await self.get_definition(definition_id)

    async def get_definition(self, definition_id: str) -> FlowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM flow_definitions WHERE id = ?", definition_id
        )
        return FlowDefinition.model_validate(_decode_row(row)) if row else None

    async def get_active_definition(self, name: str) -> FlowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM flow_definitions WHERE name = ? AND is_active = 1",
            name,
        )
        return FlowDefinition.model_validate(_decode_row(row)) if row else None

    async def list_definitions(self, name: str | None = None) -> list[FlowDefinition]:
        if name is None:
            rows = await asyncio.to_thread(
                self._fetchall, "SELECT * FROM flow_definitions ORDER BY created_at"
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM flow_definitions WHERE name = ? ORDER BY created_at",
                name,
            )
        return [FlowDefinition.model_validate(_decode_row(r)) for r in rows]

    async def update_definition(
        self, definition_id: str, fields: dict[str, Any]
    ) -> FlowDefinition:
        columns = updated_columns(fields, DEFINITION_METADATA_FIELDS)
        assignments = ", ".join(f"{c} = ?" for c in columns)

        def work(conn: sqlite3.Connection) -> FlowDefinition:
            existing = conn.execute(
                "SELECT * FROM flow_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
            if existing is None:
                raise NotFound(f"Flow definition {definition_id} not found")
            row = apply_update(
                FlowDefinition.model_validate(_decode_row(existing)),
                fields,
                DEFINITION_METADATA_FIELDS,
            )
            conn.execute(
                f"UPDATE flow_definitions SET {assignments} WHERE id = ?",
                (*_row_values(row, columns), definition_id),
            )
            return row

        return await asyncio.to_thread(self._transaction, work)

    async def delete_definition(self, definition_id: str) -> None:
        def work(conn: sqlite3.Connection) -> None:
            cur = conn.execute("DELETE FROM flow_definitions WHERE id = ?", (definition_id,))
            if cur.rowcount == 0:
                raise NotFound(f"Flow definition {definition_id} not found")

        await asyncio.to_thread(self._transaction, work)

    # ------------------------------------------------------------------
    # Flow instances
    async def create_instance(self, instance: FlowInstance) -> FlowInstance:
        await asyncio.to_thread(
            self._transaction,
            lambda conn: conn.execute(
                self._insert_sql("flow_instances", INSTANCE_COLUMNS),
                _row_values(instance, INSTANCE_COLUMNS),
            ),
        )
        return instance.model_copy(deep=True)

    async def save_instance(self, instance: FlowInstance) -> None:
        columns = INSTANCE_COLUMNS[1:]
        assignments = ", ".join(f"{c} = ?" for c in columns)

        def work(conn: sqlite3.Connection) -> None:
            cur = conn.execute(
                f"UPDATE flow_instances SET {assignments} WHERE id = ?",
                (*_row_values(instance, columns), instance.id),
            )
            if cur.rowcount == 0:
                raise NotFound(f"Flow instance {instance.id} not found")

        await asyncio.to_thread(self._transaction, work)

    async def get_instance(self, instance_id: str) -> FlowInstance | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM flow_instances WHERE id = ?", instance_id
        )
        return FlowInstance.model_validate(_decode_row(row)) if row else None

    async def list_instances(
        self,
        flow_definition_id: str | None = None,
        status: str | None = None,
        session_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[FlowInstance]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("flow_definition_id", flow_definition_id),
            ("status", status),
            ("session_id", session_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        query = (
            f"SELECT * FROM flow_instances {where} ORDER BY started_at DESC "
            "LIMIT ? OFFSET ?"
        )
        params.extend([limit if limit is not None else -1, offset])
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [FlowInstance.model_validate(_decode_row(r)) for r in rows]

    # ------------------------------------------------------------------
    # Execution logs
    async def append_log(self, log: FlowExecutionLog) -> FlowExecutionLog:
        def work(conn: sqlite3.Connection) -> int:
            cur = conn.execute(
                self._insert_sql("flow_execution_logs", LOG_COLUMNS),
                _row_values(log, LOG_COLUMNS),
            )
            return cur.lastrowid

        log_id = await asyncio.to_thread(self._transaction, work)
        return log.model_copy(update={"id": log_id})

    async def complete_log(
        self,
        log_id: int,
        status: str,
        output: dict | None = None,
        error: str | None = None,
    ) -> None:
        def work(conn: sqlite3.Connection) -> None:
            row = conn.execute(
                "SELECT status, started_at FROM flow_execution_logs WHERE id = ?",
                (log_id,),
            ).fetchone()
            if row is None:
                raise NotFound(f"Execution log {log_id} not found")
            if row["status"] != "running":
                return
            completed_at = utcnow()
            started_at = datetime.fromisoformat(row["started_at"])
            conn.execute(
                """
                UPDATE flow_execution_logs
                SET status = ?, output_data = ?, error_message = ?,
                    completed_at = ?, processing_time = ?
                WHERE id = ?
                """,
                (
                    status,
                    json.dumps(output or {}, default=str),
                    error,
                    completed_at.isoformat(),
                    int((completed_at - started_at).total_seconds() * 1000),
                    log_id,
                ),
            )

        await asyncio.to_thread(self._transaction, work)

    async def list_logs(self, instance_id: str) -> list[FlowExecutionLog]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM flow_execution_logs WHERE flow_instance_id = ? ORDER BY id",
            instance_id,
        )
        return [FlowExecutionLog.model_validate(_decode_row(r)) for r in rows]

    # ------------------------------------------------------------------
    # Decision logs
    async def upsert_decision(
        self, decision: CollaborationDecisionLog
    ) -> tuple[CollaborationDecisionLog, bool]:
        columns = DECISION_ARBITRATION_FIELDS + ("updated_at",)
        assignments = ", ".join(f"{c} = ?" for c in columns)
        row = decision.model_copy(update={"updated_at": utcnow()})

        def work(conn: sqlite3.Connection) -> bool:
            existing = conn.execute(
                "SELECT id FROM collaboration_decision_logs WHERE message_id = ?",
                (row.message_id,),
            ).fetchone()
            if existing is None:
                conn.execute(
                    self._insert_sql("collaboration_decision_logs", DECISION_COLUMNS),
                    _row_values(row, DECISION_COLUMNS),
                )
                return True
            conn.execute(
                f"UPDATE collaboration_decision_logs SET {assignments} WHERE message_id = ?",
                (*_row_values(row, columns), row.message_id),
            )
            return False

        created = await asyncio.to_thread(self._transaction, work)
        return await self.get_decision(row.message_id), created

    async def get_decision(self, message_id: str) -> CollaborationDecisionLog | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT * FROM collaboration_decision_logs WHERE message_id = ?",
            message_id,
        )
        return CollaborationDecisionLog.model_validate(_decode_row(row)) if row else None

    async def update_decision(
        self, message_id: str, fields: dict[str, Any]
    ) -> CollaborationDecisionLog:
        columns = updated_columns(fields, DECISION_UPDATABLE_FIELDS)
        assignments = ", ".join(f"{c} = ?" for c in columns)

        def work(conn: sqlite3.Connection) -> CollaborationDecisionLog:
            existing = conn.execute(
                "SELECT * FROM collaboration_decision_logs WHERE message_id = ?",
                (message_id,),
            ).fetchone()
            if existing is None:
                raise NotFound(f"Decision for message {message_id} not found")
            row = apply_update(
                CollaborationDecisionLog.model_validate(_decode_row(existing)),
                fields,
                DECISION_UPDATABLE_FIELDS,
            )
            conn.execute(
                f"UPDATE collaboration_decision_logs SET {assignments} WHERE message_id = ?",
                (*_row_values(row, columns), message_id),
            )
            return row

        return await asyncio.to_thread(self._transaction, work)

    async def list_decisions(
        self, session_id: str | None = None
    ) -> list[CollaborationDecisionLog]:
        if session_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM collaboration_decision_logs ORDER BY created_at DESC",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM collaboration_decision_logs WHERE session_id = ? "
                "ORDER BY created_at DESC",
                session_id,
            )
        return [CollaborationDecisionLog.model_validate(_decode_row(r)) for r in rows]
