"""Interfaces of the collaborators the engine talks to."""

from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol

from ..contracts import AlertRecord, ChatMessage, TaskRequest


class MessageStore(Protocol):
    """Read-only access to stored chat messages."""

    async def recent_messages(
        self, session_id: str, since: datetime
    ) -> list[ChatMessage]:
        """Return messages of ``session_id`` created at or after ``since``, oldest first."""

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        """Return one message by id."""

    async def get_staff_type(self, user_id: str) -> Optional[str]:
        """Return the staff type of ``user_id`` or ``None`` for non-staff."""


class AlertStore(Protocol):
    """Alert persistence owned by the alerting subsystem."""

    async def close_alert(
        self, alert_id: str, handled_by: str, response_time: float, reason: str
    ) -> bool:
        """Close an alert on behalf of a staff member."""

    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        """Return an alert by id."""


class TaskStore(Protocol):
    """Sink for work items raised by task-creating business roles."""

    async def create_task(self, request: TaskRequest) -> str:
        """Create a task and return its id."""
