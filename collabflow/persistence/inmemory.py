"""In-memory implementation of the flow repository."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List

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
)
from .repository import FlowRepository


class InMemoryFlowRepository(FlowRepository):
    """Store engine state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Rows are copied on the way in and
    out so callers never hold a reference to stored state.
    """

    def __init__(self) -> None:
        self._definitions: Dict[str, FlowDefinition] = {}
        self._instances: Dict[str, FlowInstance] = {}
        self._logs: Dict[int, FlowExecutionLog] = {}
        self._decisions: Dict[str, CollaborationDecisionLog] = {}
        self._log_id = 0
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Flow definitions
    async def insert_definition(self, definition: FlowDefinition) -> FlowDefinition:
        row = definition.model_copy(deep=True, update={"is_active": False})
        async with self._lock:
            self._definitions[row.id] = row
        return row.model_copy(deep=True)

    async def insert_active_version(self, definition: FlowDefinition) -> FlowDefinition:
        row = definition.model_copy(deep=True, update={"is_active": True})
        now = utcnow()
        async with self._lock:
            staged = dict(self._definitions)
            for key, existing in staged.items():
                if existing.name == row.name and existing.is_active:
                    staged[key] = existing.model_copy(
                        update={"is_active": False, "updated_at": now}
                    )
            staged[row.id] = row
            self._definitions = staged
        return row.model_copy(deep=True)

    async def activate_definition(self, definition_id: str) -> FlowDefinition:
        now = utcnow()
        async with self._lock:
            target = self._definitions.get(definition_id)
            if target is None:
                raise NotFound(f"Flow definition {definition_id} not found")
            staged = dict(self._definitions)
            for key, existing in staged.items():
                if existing.name == target.name and existing.is_active and key != definition_id:
                    staged[key] = existing.model_copy(
                        update={"is_active": False, "updated_at": now}
                    )
            staged[definition_id] = target.model_copy(
                update={"is_active": True, "updated_at": now}
            )
            self._definitions = staged
            return staged[definition_id].model_copy(deep=True)

    async def get_definition(self, definition_id: str) -> FlowDefinition | None:
        row = self._definitions.get(definition_id)
        return row.model_copy(deep=True) if row else None

    async def get_active_definition(self, name: str) -> FlowDefinition | None:
        for row in self._definitions.values():
            if row.name == name and row.is_active:
                return row.model_copy(deep=True)
        return None

    async def list_definitions(self, name: str | None = None) -> list[FlowDefinition]:
        rows = [
            r.model_copy(deep=True)
            for r in self._definitions.values()
            if name is None or r.name == name
        ]
        return sorted(rows, key=lambda r: r.created_at)

    async def update_definition(
        self, definition_id: str, fields: dict[str, Any]
    ) -> FlowDefinition:
        async with self._lock:
            row = self._definitions.get(definition_id)
            if row is None:
                raise NotFound(f"Flow definition {definition_id} not found")
            updated = apply_update(row, fields, DEFINITION_METADATA_FIELDS)
            self._definitions[definition_id] = updated
        return updated.model_copy(deep=True)

    async def delete_definition(self, definition_id: str) -> None:
        async with self._lock:
            if self._definitions.pop(definition_id, None) is None:
                raise NotFound(f"Flow definition {definition_id} not found")

    # ------------------------------------------------------------------
    # Flow instances
    async def create_instance(self, instance: FlowInstance) -> FlowInstance:
        async with self._lock:
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance.model_copy(deep=True)

    async def save_instance(self, instance: FlowInstance) -> None:
        async with self._lock:
            if instance.id not in self._instances:
                raise NotFound(f"Flow instance {instance.id} not found")
            self._instances[instance.id] = instance.model_copy(deep=True)

    async def get_instance(self, instance_id: str) -> FlowInstance | None:
        row = self._instances.get(instance_id)
        return row.model_copy(deep=True) if row else None

    async def list_instances(
        self,
        flow_definition_id: str | None = None,
        status: str | None = None,
        session_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[FlowInstance]:
        rows = [
            r
            for r in self._instances.values()
            if (flow_definition_id is None or r.flow_definition_id == flow_definition_id)
            and (status is None or r.status == status)
            and (session_id is None or r.session_id == session_id)
        ]
        rows.sort(key=lambda r: r.started_at, reverse=True)
        end = offset + limit if limit is not None else None
        return [r.model_copy(deep=True) for r in rows[offset:end]]

    # ------------------------------------------------------------------
    # Execution logs
    async def append_log(self, log: FlowExecutionLog) -> FlowExecutionLog:
        async with self._lock:
            self._log_id += 1
            row = log.model_copy(deep=True, update={"id": self._log_id})
            self._logs[row.id] = row
        return row.model_copy(deep=True)

    async def complete_log(
        self,
        log_id: int,
        status: str,
        output: dict | None = None,
        error: str | None = None,
    ) -> None:
        async with self._lock:
            row = self._logs.get(log_id)
            if row is None:
                raise NotFound(f"Execution log {log_id} not found")
            if row.status != "running":
                return
            completed_at = utcnow()
            elapsed = completed_at - row.started_at
            self._logs[log_id] = row.model_copy(
                update={
                    "status": status,
                    "output_data": output or {},
                    "error_message": error,
                    "completed_at": completed_at,
                    "processing_time": int(elapsed.total_seconds() * 1000),
                }
            )

    async def list_logs(self, instance_id: str) -> list[FlowExecutionLog]:
        rows: List[FlowExecutionLog] = [
            r for r in self._logs.values() if r.flow_instance_id == instance_id
        ]
        return [r.model_copy(deep=True) for r in sorted(rows, key=lambda r: r.id)]

    # ------------------------------------------------------------------
    # Decision logs
    async def upsert_decision(
        self, decision: CollaborationDecisionLog
    ) -> tuple[CollaborationDecisionLog, bool]:
        async with self._lock:
            existing = self._decisions.get(decision.message_id)
            if existing is None:
                row = decision.model_copy(deep=True)
                self._decisions[row.message_id] = row
                return row.model_copy(deep=True), True
            row = apply_update(existing, decision.model_dump(), DECISION_ARBITRATION_FIELDS)
            self._decisions[row.message_id] = row
            return row.model_copy(deep=True), False

    async def get_decision(self, message_id: str) -> CollaborationDecisionLog | None:
        row = self._decisions.get(message_id)
        return row.model_copy(deep=True) if row else None

    async def update_decision(
        self, message_id: str, fields: dict[str, Any]
    ) -> CollaborationDecisionLog:
        async with self._lock:
            existing = self._decisions.get(message_id)
            if existing is None:
                raise NotFound(f"Decision for message {message_id} not found")
            row = apply_update(existing, fields, DECISION_UPDATABLE_FIELDS)
            self._decisions[message_id] = row
        return row.model_copy(deep=True)

    async def list_decisions(
        self, session_id: str | None = None
    ) -> list[CollaborationDecisionLog]:
        rows = [
            r
            for r in self._decisions.values()
            if session_id is None or r.session_id == session_id
        ]
        rows.sort(key=lambda r: r.created_at, reverse=True)
        return [r.model_copy(deep=True) for r in rows]
