"""Wiring of the collaboration engine components."""

from __future__ import annotations

import logging
from typing import List, Optional

from pydantic import BaseModel, Field

from .alerts import AlertEscalationMonitor
from .config import EngineConfig, load_config
from .contracts import InboundMessage
from .decision import CollaborationDecisionEngine
from .executor import FlowInstanceExecutor
from .monitoring import FlowStatistics, collect_statistics
from .nodes import build_default_registry
from .persistence import (
    CollaborationDecisionLog,
    FlowDefinition,
    FlowInstance,
    FlowRepository,
    get_repository,
)
from .presence import KeywordSignalDetector, MessageStoreStaffPresenceDetector
from .roles import RoleRegistry
from .stores import AlertStore, MessageStore, TaskStore
from .versions import FlowVersionManager

logger = logging.getLogger(__name__)


class MessageHandlingResult(BaseModel):
    decision: CollaborationDecisionLog
    instances: List[FlowInstance] = Field(default_factory=list)


def triggered_by(definition: FlowDefinition, decision: CollaborationDecisionLog) -> bool:
    """Whether an active decision-triggered flow should start for ``decision``."""
    if definition.trigger_type != "decision":
        return False
    config = definition.trigger_config or {}
    roles = config.get("business_roles")
    if roles and decision.business_role not in roles:
        return False
    wanted = config.get("should_ai_reply")
    if wanted is not None and bool(wanted) != decision.should_ai_reply:
        return False
    return True


class CollaborationEngine:
    """Facade over decisions, flow versions, execution and alert monitoring."""

    def __init__(
        self,
        config: EngineConfig,
        repository: FlowRepository,
        registry: RoleRegistry,
        decisions: CollaborationDecisionEngine,
        versions: FlowVersionManager,
        executor: FlowInstanceExecutor,
        alerts: AlertEscalationMonitor,
    ) -> None:
        self.config = config
        self.repository = repository
        self.registry = registry
        self.decisions = decisions
        self.versions = versions
        self.executor = executor
        self.alerts = alerts

    @classmethod
    def from_config(
        cls,
        config: Optional[EngineConfig] = None,
        message_store: Optional[MessageStore] = None,
        alert_store: Optional[AlertStore] = None,
        task_store: Optional[TaskStore] = None,
        repository: Optional[FlowRepository] = None,
    ) -> "CollaborationEngine":
        config = config or load_config()
        if message_store is None or alert_store is None:
            raise ValueError("message_store and alert_store are required")
        repository = repository or get_repository(config=config)
        registry = RoleRegistry.from_config(config)

        ttl = config.presence.staff_type_cache_ttl
        presence = MessageStoreStaffPresenceDetector(message_store, cache_ttl=ttl)
        role_presence = {
            role.code: MessageStoreStaffPresenceDetector(
                message_store, role.staff_type_filter, cache_ttl=ttl
            )
            for role in registry.list()
            if role.staff_type_filter
        }
        satisfaction = KeywordSignalDetector(
            "user_satisfaction", message_store, config.presence.satisfaction_keywords
        )
        escalation = KeywordSignalDetector(
            "escalation", message_store, config.presence.escalation_keywords
        )

        decisions = CollaborationDecisionEngine(
            repository,
            registry,
            presence,
            settings=config.decision,
            task_store=task_store,
            role_presence=role_presence,
        )
        runners = build_default_registry(
            decision_engine=decisions,
            task_store=task_store,
            presence=presence,
            satisfaction=satisfaction,
            escalation=escalation,
            monitor_settings=config.monitor,
        )
        return cls(
            config=config,
            repository=repository,
            registry=registry,
            decisions=decisions,
            versions=FlowVersionManager(repository),
            executor=FlowInstanceExecutor(repository, runners, config.executor),
            alerts=AlertEscalationMonitor(presence, alert_store, config.monitor),
        )

    async def handle_message(self, message: InboundMessage) -> MessageHandlingResult:
        """Decide who answers ``message`` and start the flows the decision triggers."""
        decision = await self.decisions.decide(message)
        instances = []
        for definition in await self.repository.list_definitions():
            if not definition.is_active or not triggered_by(definition, decision):
                continue
            instance = await self.executor.start(
                definition.id,
                trigger_data={
                    "session_id": message.session_id,
                    "message_id": message.message_id,
                    "robot_id": message.robot_id,
                    "content": message.content,
                    "sender_id": message.sender_id,
                    "business_role": decision.business_role,
                    "should_ai_reply": decision.should_ai_reply,
                    "priority": decision.priority,
                },
                session_id=message.session_id,
            )
            instances.append(instance)
        if instances:
            logger.info(
                f"Message {message.message_id} started {len(instances)} flow instance(s)"
            )
        return MessageHandlingResult(decision=decision, instances=instances)

    async def statistics(self) -> FlowStatistics:
        return await collect_statistics(self.repository)

    async def shutdown(self) -> None:
        await self.executor.shutdown()
        await self.alerts.shutdown()
