"""Boundary contracts shared by the engine and its collaborators."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

AIBehavior = Literal["full_auto", "semi_auto", "record_only"]
ReplyMode = Literal["normal", "low_priority", "delay", "skip"]
Priority = Literal["high", "normal", "low"]
SenderType = Literal["user", "staff", "robot", "system"]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BusinessRole(BaseModel):
    """Arbitration settings for one category of conversation."""

    code: str
    name: str
    description: Optional[str] = None
    ai_behavior: AIBehavior = "semi_auto"
    staff_enabled: bool = True
    staff_type_filter: List[str] = Field(default_factory=list)
    keywords: List[str] = Field(default_factory=list)
    enable_task_creation: bool = False
    default_task_priority: Priority = "normal"
    reply_mode_when_staff_online: Optional[ReplyMode] = None
    staff_window_seconds: Optional[int] = None


class ChatMessage(BaseModel):
    """A message as seen through the read-only message store."""

    message_id: str
    session_id: str
    sender_id: str
    sender_name: Optional[str] = None
    sender_type: SenderType = "user"
    content: str = ""
    created_at: datetime = Field(default_factory=utcnow)


class InboundMessage(BaseModel):
    """A group-chat message that needs arbitration."""

    session_id: str
    message_id: str
    robot_id: str
    content: str = ""
    sender_id: Optional[str] = None
    sender_name: Optional[str] = None
    business_role: Optional[str] = Field(
        default=None, description="Explicit role code; bypasses keyword matching"
    )
    staff_context: Optional[str] = None
    info_context: Optional[str] = None


class StaffActivity(BaseModel):
    """Answer of the staff presence detector."""

    has_staff: bool = False
    staff_user_id: Optional[str] = None
    last_activity_at: Optional[datetime] = None


class SignalResult(BaseModel):
    """Answer of a user-satisfaction or escalation detector."""

    detected: bool = False
    detail: Dict[str, Any] = Field(default_factory=dict)


class TaskRequest(BaseModel):
    """Work item sent to the task store for task-creating roles."""

    priority: Priority
    session_id: str
    reason: str
    role_code: Optional[str] = None
    message_id: Optional[str] = None


class AlertRecord(BaseModel):
    alert_id: str
    session_id: Optional[str] = None
    status: str = "open"
    handled_by: Optional[str] = None
    response_time: Optional[float] = None
    reason: Optional[str] = None
    closed_at: Optional[datetime] = None


class NodeOutcome(BaseModel):
    """Result a node runner reports back to the executor."""

    status: Literal["completed", "failed", "cancelled"] = "completed"
    label: str = "default"
    output: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def success(cls, label: str = "default", **output: Any) -> "NodeOutcome":
        return cls(status="completed", label=label, output=output)

    @classmethod
    def failure(cls, error: str, **output: Any) -> "NodeOutcome":
        return cls(status="failed", label="failed", output=output, error=error)

    @classmethod
    def cancelled(cls, reason: str, **output: Any) -> "NodeOutcome":
        return cls(status="cancelled", label="cancelled", output=output, error=reason)

    def matches(self, condition: str) -> bool:
        """Return ``True`` when an edge ``condition`` selects this outcome."""
        return condition in (self.label, self.status, self.output.get("signal"))


class AlertMonitorConfig(BaseModel):
    alert_id: str
    session_id: str
    monitoring_duration: float = Field(..., gt=0, description="Seconds")
    enabled: bool = True


class AlertResult(BaseModel):
    alert_id: str
    status: Literal["resolved", "escalated", "timeout", "cancelled"]
    handled_by: Optional[str] = None
    handled_at: Optional[datetime] = None
    response_time: Optional[float] = None
    reason: str = ""
