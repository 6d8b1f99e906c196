"""Data models for persisted engine state."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator

from ..contracts import Priority, utcnow
from ..utils.retry import normalize_retry_config

InstanceStatus = Literal["pending", "running", "completed", "failed", "cancelled"]
LogStatus = Literal["running", "completed", "failed", "cancelled"]

TERMINAL_STATUSES = ("completed", "failed", "cancelled")


def new_id() -> str:
    return str(uuid.uuid4())


class NodeSpec(BaseModel):
    """One node of a flow definition."""

    id: str
    type: str
    name: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class EdgeSpec(BaseModel):
    """Directed edge between two nodes, optionally guarded by a condition."""

    source: str
    target: str
    condition: Optional[str] = None


class FlowDefinition(BaseModel):
    """A named, versioned workflow template."""

    id: str = Field(default_factory=new_id)
    name: str
    description: Optional[str] = None
    version: str = "1.0"
    is_active: bool = False
    trigger_type: str = "manual"
    trigger_config: Dict[str, Any] = Field(default_factory=dict)
    nodes: List[NodeSpec] = Field(default_factory=list)
    edges: List[EdgeSpec] = Field(default_factory=list)
    variables: Dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    timeout: Optional[int] = None
    retry_config: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("retry_config", mode="before")
    @classmethod
    def _normalize_retry_config(cls, value: Any) -> Dict[str, Any]:
        return normalize_retry_config(value)

    def node(self, node_id: str) -> Optional[NodeSpec]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def outgoing(self, node_id: str) -> List[EdgeSpec]:
        return [e for e in self.edges if e.source == node_id]


class FlowInstance(BaseModel):
    """One execution of a flow definition."""

    id: str = Field(default_factory=new_id)
    flow_definition_id: str
    flow_name: str
    status: InstanceStatus = "pending"
    current_node_id: Optional[str] = None
    session_id: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    processing_time: Optional[int] = None
    retry_count: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class FlowExecutionLog(BaseModel):
    """Record of a single node execution within an instance."""

    id: Optional[int] = None
    flow_instance_id: str
    node_id: str
    node_type: str
    node_name: Optional[str] = None
    status: LogStatus = "running"
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    processing_time: Optional[int] = None


class CollaborationDecisionLog(BaseModel):
    """Who was chosen to answer a message, and why."""

    id: str = Field(default_factory=new_id)
    session_id: str
    message_id: str
    robot_id: str
    should_ai_reply: bool = False
    ai_action: str = "none"
    staff_action: str = "none"
    priority: Priority = "normal"
    reason: str = ""
    business_role: Optional[str] = None
    staff_context: Optional[str] = None
    info_context: Optional[str] = None
    strategy: Optional[str] = None
    staff_id: Optional[str] = None
    staff_name: Optional[str] = None
    delay_seconds: Optional[int] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


DECISION_UPDATABLE_FIELDS = (
    "should_ai_reply",
    "ai_action",
    "staff_action",
    "priority",
    "reason",
    "business_role",
    "staff_context",
    "info_context",
    "strategy",
    "staff_id",
    "staff_name",
    "delay_seconds",
)

DEFINITION_METADATA_FIELDS = (
    "description",
    "trigger_type",
    "trigger_config",
    "priority",
    "timeout",
    "retry_config",
    "created_by",
)

# Written again when a message is re-decided; reply progress is left alone.
DECISION_ARBITRATION_FIELDS = (
    "should_ai_reply",
    "priority",
    "reason",
    "business_role",
    "staff_context",
    "info_context",
    "strategy",
    "delay_seconds",
)

M = TypeVar("M", bound=BaseModel)


def apply_update(row: M, fields: Mapping[str, Any], allowed: Iterable[str]) -> M:
    """Return a validated copy of ``row`` with the ``allowed`` subset of ``fields`` applied.

    Raises pydantic's ``ValidationError`` before anything is written when a
    value does not fit the model.
    """
    allowed = set(allowed)
    update = {k: v for k, v in fields.items() if k in allowed}
    update["updated_at"] = utcnow()
    return type(row).model_validate({**row.model_dump(), **update})


def updated_columns(fields: Mapping[str, Any], allowed: Iterable[str]) -> tuple[str, ...]:
    allowed = set(allowed)
    return tuple(k for k in fields if k in allowed) + ("updated_at",)
