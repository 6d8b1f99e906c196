"""Immediate node runners."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..contracts import InboundMessage, NodeOutcome, TaskRequest
from ..stores import TaskStore
from .base import NodeContext, NodeRunner

if TYPE_CHECKING:
    from ..decision import CollaborationDecisionEngine

logger = logging.getLogger(__name__)


class StartNodeRunner(NodeRunner):
    node_type = "start"

    async def run(self, context: NodeContext) -> NodeOutcome:
        return NodeOutcome.success()


class EndNodeRunner(NodeRunner):
    node_type = "end"

    async def run(self, context: NodeContext) -> NodeOutcome:
        return NodeOutcome.success(**context.config.get("result", {}))


class NoopNodeRunner(NodeRunner):
    node_type = "noop"

    async def run(self, context: NodeContext) -> NodeOutcome:
        return NodeOutcome.success()


class DecisionNodeRunner(NodeRunner):
    """Run the collaboration decision engine on the triggering message."""

    node_type = "collab_decision"

    def __init__(self, engine: "CollaborationDecisionEngine") -> None:
        self._engine = engine

    async def run(self, context: NodeContext) -> NodeOutcome:
        data = context.trigger_data
        message = InboundMessage(
            session_id=context.session_id or data["session_id"],
            message_id=data["message_id"],
            robot_id=data["robot_id"],
            content=data.get("content", ""),
            sender_id=data.get("sender_id"),
            business_role=context.config.get("business_role") or data.get("business_role"),
        )
        decision = await self._engine.decide(message)
        return NodeOutcome.success(
            "ai_reply" if decision.should_ai_reply else "skip",
            should_ai_reply=decision.should_ai_reply,
            priority=decision.priority,
            reason=decision.reason,
            business_role=decision.business_role,
        )


class CreateTaskNodeRunner(NodeRunner):
    """Send a work item to the task store."""

    node_type = "create_task"

    def __init__(self, task_store: TaskStore) -> None:
        self._task_store = task_store

    async def run(self, context: NodeContext) -> NodeOutcome:
        session_id = context.session_id or context.trigger_data["session_id"]
        request = TaskRequest(
            priority=context.config.get("priority", "normal"),
            session_id=session_id,
            reason=context.config.get("reason", f"raised by flow {context.flow_name}"),
            role_code=context.config.get("business_role"),
            message_id=context.trigger_data.get("message_id"),
        )
        task_id = await self._task_store.create_task(request)
        logger.info(f"Flow {context.flow_name} created task {task_id} for session {session_id}")
        return NodeOutcome.success("task_created", task_id=task_id)
