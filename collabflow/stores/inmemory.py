"""In-process collaborator stores for tests and single-node setups."""

from __future__ import annotations

import asyncio
import uuid
from collections import defaultdict
from datetime import datetime
from typing import DefaultDict, Dict, List, Optional, Tuple

from ..contracts import AlertRecord, ChatMessage, TaskRequest, utcnow
from ..errors import ExternalLookupFailed, NotFound


class InMemoryMessageStore:
    """Simple message list per session.

    Setting ``fail`` makes every lookup raise :class:`ExternalLookupFailed`,
    which lets tests simulate an unreachable store.
    """

    def __init__(self) -> None:
        self._messages: DefaultDict[str, List[ChatMessage]] = defaultdict(list)
        self._staff_types: Dict[str, str] = {}
        self.fail = False
        self.staff_type_lookups = 0

    def add_message(self, message: ChatMessage) -> None:
        self._messages[message.session_id].append(message)

    def register_staff(self, user_id: str, staff_type: str = "community") -> None:
        self._staff_types[user_id] = staff_type

    def _check(self) -> None:
        if self.fail:
            raise ExternalLookupFailed("message store unavailable")

    async def recent_messages(self, session_id: str, since: datetime) -> list[ChatMessage]:
        self._check()
        return sorted(
            (m for m in self._messages[session_id] if m.created_at >= since),
            key=lambda m: m.created_at,
        )

    async def get_message(self, message_id: str) -> Optional[ChatMessage]:
        self._check()
        for messages in self._messages.values():
            for message in messages:
                if message.message_id == message_id:
                    return message
        return None

    async def get_staff_type(self, user_id: str) -> Optional[str]:
        self._check()
        self.staff_type_lookups += 1
        return self._staff_types.get(user_id)


class InMemoryAlertStore:
    """Keeps alerts in a dict; records every close request."""

    def __init__(self) -> None:
        self._alerts: Dict[str, AlertRecord] = {}
        self.closed: List[Tuple[str, str, float, str]] = []
        self.fail = False
        self._lock = asyncio.Lock()

    def open_alert(self, alert_id: str, session_id: Optional[str] = None) -> AlertRecord:
        alert = AlertRecord(alert_id=alert_id, session_id=session_id)
        self._alerts[alert_id] = alert
        return alert

    async def close_alert(
        self, alert_id: str, handled_by: str, response_time: float, reason: str
    ) -> bool:
        if self.fail:
            raise ExternalLookupFailed("alert store unavailable")
        async with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise NotFound(f"Alert {alert_id} not found")
            self._alerts[alert_id] = alert.model_copy(
                update={
                    "status": "closed",
                    "handled_by": handled_by,
                    "response_time": response_time,
                    "reason": reason,
                    "closed_at": utcnow(),
                }
            )
            self.closed.append((alert_id, handled_by, response_time, reason))
        return True

    async def get_alert(self, alert_id: str) -> Optional[AlertRecord]:
        return self._alerts.get(alert_id)


class InMemoryTaskStore:
    """Collects task requests."""

    def __init__(self) -> None:
        self.tasks: Dict[str, TaskRequest] = {}

    async def create_task(self, request: TaskRequest) -> str:
        task_id = str(uuid.uuid4())
        self.tasks[task_id] = request
        return task_id
