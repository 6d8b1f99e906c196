"""PostgreSQL implementation of the flow repository."""

from __future__ import annotations

import json
from typing import Any

import asyncpg

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
from .sqlite import (
    DECISION_COLUMNS,
    DEFINITION_COLUMNS,
    INSTANCE_COLUMNS,
    JSON_COLUMNS,
    LOG_COLUMNS,
)


def _values(model: Any, columns: tuple[str, ...]) -> list[Any]:
    dumped = model.model_dump(mode="json")
    return [dumped[c] if c in JSON_COLUMNS else getattr(model, c) for c in columns]


def _insert_sql(table: str, columns: tuple[str, ...], returning: str = "") -> str:
    placeholders = ", ".join(f"${i}" for i in range(1, len(columns) + 1))
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
    return f"{sql} RETURNING {returning}" if returning else sql


def _assignments(columns: tuple[str, ...] | list[str], start: int = 1) -> str:
    return ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=start))


class PostgresFlowRepository(FlowRepository):
    """Persist engine state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        await conn.set_type_codec(
            "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
        )
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flow_definitions (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                description TEXT,
                version TEXT NOT NULL,
                is_active BOOLEAN NOT NULL DEFAULT FALSE,
                trigger_type TEXT NOT NULL,
                trigger_config JSONB,
                nodes JSONB NOT NULL,
                edges JSONB NOT NULL,
                variables JSONB,
                priority INTEGER NOT NULL DEFAULT 0,
                timeout INTEGER,
                retry_config JSONB,
                created_by TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            CREATE UNIQUE INDEX IF NOT EXISTS ux_flow_definitions_active
                ON flow_definitions (name) WHERE is_active;
            CREATE TABLE IF NOT EXISTS flow_instances (
                id TEXT PRIMARY KEY,
                flow_definition_id TEXT NOT NULL,
                flow_name TEXT NOT NULL,
                status TEXT NOT NULL,
                current_node_id TEXT,
                session_id TEXT,
                trigger_data JSONB,
                result JSONB,
                error_message TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                processing_time INTEGER,
                retry_count INTEGER NOT NULL DEFAULT 0,
                metadata JSONB
            );
            CREATE TABLE IF NOT EXISTS flow_execution_logs (
                id SERIAL PRIMARY KEY,
                flow_instance_id TEXT NOT NULL,
                node_id TEXT NOT NULL,
                node_type TEXT NOT NULL,
                node_name TEXT,
                status TEXT NOT NULL,
                input_data JSONB,
                output_data JSONB,
                error_message TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                processing_time INTEGER
            );
            CREATE TABLE IF NOT EXISTS collaboration_decision_logs (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL,
                message_id TEXT NOT NULL UNIQUE,
                robot_id TEXT NOT NULL,
                should_ai_reply BOOLEAN NOT NULL,
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
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            );
            """
        )

    # ------------------------------------------------------------------
    # Flow definitions
    async def insert_definition(self, definition: FlowDefinition) -> FlowDefinition:
        row = definition.model_copy(update={"is_active": False})
        conn = await self._connect()
        try:
            await conn.execute(
                _insert_sql("flow_definitions", DEFINITION_COLUMNS),
                *_values(row, DEFINITION_COLUMNS),
            )
        finally:
            await conn.close()
        return row

    async def insert_active_version(self, definition: FlowDefinition) -> FlowDefinition:
        row = definition.model_copy(update={"is_active": True})
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    "UPDATE flow_definitions SET is_active = FALSE, updated_at = $1 "
                    "WHERE name = $2 AND is_active",
                    utcnow(),
                    row.name,
                )
                await conn.execute(
                    _insert_sql("flow_definitions", DEFINITION_COLUMNS),
                    *_values(row, DEFINITION_COLUMNS),
                )
        finally:
            await conn.close()
        return row

    async def activate_definition(self, definition_id: str) -> FlowDefinition:
        conn = await self._connect()
        try:
            async with conn.transaction():
                name = await conn.fetchval(
                    "SELECT name FROM flow_definitions WHERE id = $1 FOR UPDATE",
                    definition_id,
                )
                if name is None:
                    raise NotFound(f"Flow definition {definition_id} not found")
                now = utcnow()
                await conn.execute(
                    "UPDATE flow_definitions SET is_active = FALSE, updated_at = $1 "
                    "WHERE name = $2 AND is_active AND id != $3",
                    now,
                    name,
                    definition_id,
                )
                row = await conn.fetchrow(
                    "UPDATE flow_definitions SET is_active = TRUE, updated_at = $1 "
                    "WHERE id = $2 RETURNING *",
                    now,
                    definition_id,
                )
        finally:
            await conn.close()
        return FlowDefinition.model_validate(dict(row))

    async def get_definition(self, definition_id: str) -> FlowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM flow_definitions WHERE id = $1", definition_id
            )
        finally:
            await conn.close()
        return FlowDefinition.model_validate(dict(row)) if row else None

    async def get_active_definition(self, name: str) -> FlowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM flow_definitions WHERE name = $1 AND is_active", name
            )
        finally:
            await conn.close()
        return FlowDefinition.model_validate(dict(row)) if row else None

    async def list_definitions(self, name: str | None = None) -> list[FlowDefinition]:
        conn = await self._connect()
        try:
            if name is None:
                rows = await conn.fetch("SELECT * FROM flow_definitions ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM flow_definitions WHERE name = $1 ORDER BY created_at",
                    name,
                )
        finally:
            await conn.close()
        return [FlowDefinition.model_validate(dict(r)) for r in rows]

    async def update_definition(
        self, definition_id: str, fields: dict[str, Any]
    ) -> FlowDefinition:
        columns = updated_columns(fields, DEFINITION_METADATA_FIELDS)
        conn = await self._connect()
        try:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "SELECT * FROM flow_definitions WHERE id = $1 FOR UPDATE", definition_id
                )
                if existing is None:
                    raise NotFound(f"Flow definition {definition_id} not found")
                row = apply_update(
                    FlowDefinition.model_validate(dict(existing)),
                    fields,
                    DEFINITION_METADATA_FIELDS,
                )
                await conn.execute(
                    f"UPDATE flow_definitions SET {_assignments(columns)} "
                    f"WHERE id = ${len(columns) + 1}",
                    *_values(row, columns),
                    definition_id,
                )
        finally:
            await conn.close()
        return row

    async def delete_definition(self, definition_id: str) -> None:
        conn = await self._connect()
        try:
            status = await conn.execute(
                "DELETE FROM flow_definitions WHERE id = $1", definition_id
            )
        finally:
            await conn.close()
        if status.endswith(" 0"):
            raise NotFound(f"Flow definition {definition_id} not found")

    # ------------------------------------------------------------------
    # Flow instances
    async def create_instance(self, instance: FlowInstance) -> FlowInstance:
        conn = await self._connect()
        try:
            await conn.execute(
                _insert_sql("flow_instances", INSTANCE_COLUMNS),
                *_values(instance, INSTANCE_COLUMNS),
            )
        finally:
            await conn.close()
        return instance.model_copy(deep=True)

    async def save_instance(self, instance: FlowInstance) -> None:
        columns = INSTANCE_COLUMNS[1:]
        conn = await self._connect()
        try:
            status = await conn.execute(
                f"UPDATE flow_instances SET {_assignments(columns)} "
                f"WHERE id = ${len(columns) + 1}",
                *_values(instance, columns),
                instance.id,
            )
        finally:
            await conn.close()
        if status.endswith(" 0"):
            raise NotFound(f"Flow instance {instance.id} not found")

    async def get_instance(self, instance_id: str) -> FlowInstance | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM flow_instances WHERE id = $1", instance_id)
        finally:
            await conn.close()
        return FlowInstance.model_validate(dict(row)) if row else None

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
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.extend([limit, offset])
        query = (
            f"SELECT * FROM flow_instances {where} ORDER BY started_at DESC "
            f"LIMIT ${len(params) - 1} OFFSET ${len(params)}"
        )
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [FlowInstance.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Execution logs
    async def append_log(self, log: FlowExecutionLog) -> FlowExecutionLog:
        conn = await self._connect()
        try:
            log_id = await conn.fetchval(
                _insert_sql("flow_execution_logs", LOG_COLUMNS, returning="id"),
                *_values(log, LOG_COLUMNS),
            )
        finally:
            await conn.close()
        return log.model_copy(update={"id": log_id})

    async def complete_log(
        self,
        log_id: int,
        status: str,
        output: dict | None = None,
        error: str | None = None,
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status, started_at FROM flow_execution_logs "
                    "WHERE id = $1 FOR UPDATE",
                    log_id,
                )
                if row is None:
                    raise NotFound(f"Execution log {log_id} not found")
                if row["status"] != "running":
                    return
                completed_at = utcnow()
                await conn.execute(
                    """
                    UPDATE flow_execution_logs
                    SET status = $1, output_data = $2, error_message = $3,
                        completed_at = $4, processing_time = $5
                    WHERE id = $6
                    """,
                    status,
                    json.loads(json.dumps(output or {}, default=str)),
                    error,
                    completed_at,
                    int((completed_at - row["started_at"]).total_seconds() * 1000),
                    log_id,
                )
        finally:
            await conn.close()

    async def list_logs(self, instance_id: str) -> list[FlowExecutionLog]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM flow_execution_logs WHERE flow_instance_id = $1 ORDER BY id",
                instance_id,
            )
        finally:
            await conn.close()
        return [FlowExecutionLog.model_validate(dict(r)) for r in rows]

    # ------------------------------------------------------------------
    # Decision logs
    async def upsert_decision(
        self, decision: CollaborationDecisionLog
    ) -> tuple[CollaborationDecisionLog, bool]:
        row = decision.model_copy(update={"updated_at": utcnow()})
        updatable = DECISION_ARBITRATION_FIELDS + ("updated_at",)
        excluded = ", ".join(f"{c} = EXCLUDED.{c}" for c in updatable)
        conn = await self._connect()
        try:
            result = await conn.fetchrow(
                _insert_sql("collaboration_decision_logs", DECISION_COLUMNS)
                + f" ON CONFLICT (message_id) DO UPDATE SET {excluded}"
                + " RETURNING *, (xmax = 0) AS inserted",
                *_values(row, DECISION_COLUMNS),
            )
        finally:
            await conn.close()
        data = dict(result)
        created = data.pop("inserted")
        return CollaborationDecisionLog.model_validate(data), created

    async def get_decision(self, message_id: str) -> CollaborationDecisionLog | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM collaboration_decision_logs WHERE message_id = $1",
                message_id,
            )
        finally:
            await conn.close()
        return CollaborationDecisionLog.model_validate(dict(row)) if row else None

    async def update_decision(
        self, message_id: str, fields: dict[str, Any]
    ) -> CollaborationDecisionLog:
        columns = updated_columns(fields, DECISION_UPDATABLE_FIELDS)
        conn = await self._connect()
        try:
            async with conn.transaction():
                existing = await conn.fetchrow(
                    "SELECT * FROM collaboration_decision_logs WHERE message_id = $1 FOR UPDATE",
                    message_id,
                )
                if existing is None:
                    raise NotFound(f"Decision for message {message_id} not found")
                row = apply_update(
                    CollaborationDecisionLog.model_validate(dict(existing)),
                    fields,
                    DECISION_UPDATABLE_FIELDS,
                )
                await conn.execute(
                    f"UPDATE collaboration_decision_logs SET {_assignments(columns)} "
                    f"WHERE message_id = ${len(columns) + 1}",
                    *_values(row, columns),
                    message_id,
                )
        finally:
            await conn.close()
        return row

    async def list_decisions(
        self, session_id: str | None = None
    ) -> list[CollaborationDecisionLog]:
        conn = await self._connect()
        try:
            if session_id is None:
                rows = await conn.fetch(
                    "SELECT * FROM collaboration_decision_logs ORDER BY created_at DESC"
                )
            else:
                rows = await conn.fetch(
                    "SELECT * FROM collaboration_decision_logs WHERE session_id = $1 "
                    "ORDER BY created_at DESC",
                    session_id,
                )
        finally:
            await conn.close()
        return [CollaborationDecisionLog.model_validate(dict(r)) for r in rows]
