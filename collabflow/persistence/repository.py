"""Repository abstraction for engine state persistence."""

from __future__ import annotations

from typing import Any, Protocol

from .models import (
    CollaborationDecisionLog,
    FlowDefinition,
    FlowExecutionLog,
    FlowInstance,
)


class FlowRepository(Protocol):
    """Protocol for engine state persistence backends.

    ``insert_active_version`` and ``activate_definition`` are the only
    operations that write ``is_active``; both are atomic.
    """

    # -- flow definitions ------------------------------------------------
    async def insert_definition(self, definition: FlowDefinition) -> FlowDefinition:
        """Persist a definition row as given (``is_active`` forced to False)."""

    async def insert_active_version(self, definition: FlowDefinition) -> FlowDefinition:
        """Deactivate every active row of ``definition.name`` and insert ``definition`` as active."""

    async def activate_definition(self, definition_id: str) -> FlowDefinition:
        """Deactivate the other rows of the same name and activate ``definition_id``."""

    async def get_definition(self, definition_id: str) -> FlowDefinition | None:
        """Retrieve a definition by id."""

    async def get_active_definition(self, name: str) -> FlowDefinition | None:
        """Return the active version for ``name`` if any."""

    async def list_definitions(self, name: str | None = None) -> list[FlowDefinition]:
        """Return definitions, optionally restricted to one name."""

    async def update_definition(
        self, definition_id: str, fields: dict[str, Any]
    ) -> FlowDefinition:
        """Update descriptive fields of a definition; invalid values are rejected unwritten."""

    async def delete_definition(self, definition_id: str) -> None:
        """Remove a definition row."""

    # -- flow instances --------------------------------------------------
    async def create_instance(self, instance: FlowInstance) -> FlowInstance:
        """Persist a new instance."""

    async def save_instance(self, instance: FlowInstance) -> None:
        """Persist the current state of an instance."""

    async def get_instance(self, instance_id: str) -> FlowInstance | None:
        """Retrieve an instance by id."""

    async def list_instances(
        self,
        flow_definition_id: str | None = None,
        status: str | None = None,
        session_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[FlowInstance]:
        """Return instances newest first."""

    # -- execution logs --------------------------------------------------
    async def append_log(self, log: FlowExecutionLog) -> FlowExecutionLog:
        """Append a log row and return it with its id."""

    async def complete_log(
        self,
        log_id: int,
        status: str,
        output: dict | None = None,
        error: str | None = None,
    ) -> None:
        """Close a running log row; finished rows are left untouched."""

    async def list_logs(self, instance_id: str) -> list[FlowExecutionLog]:
        """Return the logs of an instance in execution order."""

    # -- decision logs ---------------------------------------------------
    async def upsert_decision(
        self, decision: CollaborationDecisionLog
    ) -> tuple[CollaborationDecisionLog, bool]:
        """Insert the decision keyed by ``message_id``, or rewrite its arbitration fields.

        Returns the stored row and whether it was created.
        """

    async def get_decision(self, message_id: str) -> CollaborationDecisionLog | None:
        """Retrieve the decision for a message."""

    async def update_decision(
        self, message_id: str, fields: dict[str, Any]
    ) -> CollaborationDecisionLog:
        """Patch an existing decision; invalid values are rejected unwritten."""

    async def list_decisions(
        self, session_id: str | None = None
    ) -> list[CollaborationDecisionLog]:
        """Return decisions newest first."""
