"""Collaboration decision engine.

Decides per inbound message whether the AI responder should answer, based
on the business role of the conversation and recent staff activity, and
keeps one decision row per message id.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel

from .config import DecisionSettings
from .contracts import (
    BusinessRole,
    InboundMessage,
    Priority,
    ReplyMode,
    StaffActivity,
    TaskRequest,
)
from .errors import ExternalLookupFailed
from .persistence import CollaborationDecisionLog, FlowRepository
from .presence import StaffPresenceDetector
from .roles import RoleMatch, RoleRegistry
from .stores import TaskStore

logger = logging.getLogger(__name__)


class ReplyPlan(BaseModel):
    should_ai_reply: bool
    priority: Priority
    delay_seconds: Optional[int] = None


def reply_plan(mode: ReplyMode, delay_seconds: int) -> ReplyPlan:
    """Fixed plan for each reply mode used while staff is online."""
    plans = {
        "normal": ReplyPlan(should_ai_reply=True, priority="normal"),
        "low_priority": ReplyPlan(should_ai_reply=True, priority="low"),
        "delay": ReplyPlan(should_ai_reply=True, priority="low", delay_seconds=delay_seconds),
        "skip": ReplyPlan(should_ai_reply=False, priority="low"),
    }
    return plans[mode]


class DecisionStats(BaseModel):
    total_decisions: int
    ai_replies: int
    staff_replies: int
    unreplied: int
    collaboration_rate: str


class CollaborationDecisionEngine:
    """Arbitrates between the AI responder and human staff."""

    def __init__(
        self,
        repository: FlowRepository,
        registry: RoleRegistry,
        presence: StaffPresenceDetector,
        settings: Optional[DecisionSettings] = None,
        task_store: Optional[TaskStore] = None,
        role_presence: Optional[Mapping[str, StaffPresenceDetector]] = None,
    ) -> None:
        self._repository = repository
        self._registry = registry
        self._presence = presence
        self._settings = settings or DecisionSettings()
        self._task_store = task_store
        self._role_presence = dict(role_presence or {})

    async def decide(self, message: InboundMessage) -> CollaborationDecisionLog:
        """Decide for ``message`` and upsert the decision row keyed by message id."""
        match = self._registry.resolve(
            message.robot_id, message.content, message.business_role
        )
        decision = await self._evaluate(message, match)
        row, created = await self._repository.upsert_decision(decision)
        logger.info(
            f"Decision for message {message.message_id} in session {message.session_id}: "
            f"should_ai_reply={row.should_ai_reply} priority={row.priority} ({row.reason})"
        )
        if created:
            await self._maybe_create_task(row, match.role)
        return row

    async def _evaluate(
        self, message: InboundMessage, match: RoleMatch
    ) -> CollaborationDecisionLog:
        role = match.role
        fields: Dict[str, Any] = {
            "session_id": message.session_id,
            "message_id": message.message_id,
            "robot_id": message.robot_id,
            "business_role": role.code,
            "staff_context": message.staff_context,
            "info_context": message.info_context
            or (f"keywords: {', '.join(match.matched_keywords)}" if match.matched_keywords else None),
        }

        if role.ai_behavior == "full_auto":
            priority = "high" if match.matched_keywords else "normal"
            reason = f"role {role.code} is full_auto: AI replies"
            if match.matched_keywords:
                reason += f" (matched {', '.join(match.matched_keywords)})"
            return CollaborationDecisionLog(
                **fields,
                should_ai_reply=True,
                ai_action="processing",
                priority=priority,
                reason=reason,
                strategy="full_auto",
            )

        if role.ai_behavior == "record_only":
            return CollaborationDecisionLog(
                **fields,
                should_ai_reply=False,
                ai_action="none",
                priority="normal",
                reason=f"role {role.code} is record_only: message recorded, no AI reply",
                strategy="record_only",
            )

        return await self._evaluate_semi_auto(role, message, fields)

    async def _evaluate_semi_auto(
        self, role: BusinessRole, message: InboundMessage, fields: Dict[str, Any]
    ) -> CollaborationDecisionLog:
        if not role.staff_enabled:
            return CollaborationDecisionLog(
                **fields,
                should_ai_reply=True,
                ai_action="processing",
                priority="normal",
                reason=f"role {role.code} has staff detection disabled: AI replies",
                strategy="semi_auto:normal",
            )

        window = role.staff_window_seconds or self._settings.staff_window_seconds
        detector = self._role_presence.get(role.code, self._presence)
        lookup_error: Optional[str] = None
        try:
            activity = await detector.has_staff_activity(message.session_id, window)
        except ExternalLookupFailed as exc:
            logger.warning(
                f"Staff presence lookup failed for session {message.session_id}: {exc.message}"
            )
            activity = StaffActivity(has_staff=False)
            lookup_error = exc.message

        if not activity.has_staff:
            reason = f"no staff activity in the last {window}s: AI replies"
            if lookup_error:
                reason = f"staff presence unknown ({lookup_error}): AI replies"
            return CollaborationDecisionLog(
                **fields,
                should_ai_reply=True,
                ai_action="processing",
                priority="normal",
                reason=reason,
                strategy="semi_auto:normal",
            )

        mode: ReplyMode = (
            role.reply_mode_when_staff_online or self._settings.reply_mode_when_staff_online
        )
        plan = reply_plan(mode, self._settings.delay_seconds)
        if not fields["staff_context"]:
            fields["staff_context"] = (
                f"staff {activity.staff_user_id} active at "
                f"{activity.last_activity_at.isoformat() if activity.last_activity_at else 'unknown'}"
            )
        return CollaborationDecisionLog(
            **fields,
            should_ai_reply=plan.should_ai_reply,
            ai_action="processing" if plan.should_ai_reply else "skipped",
            staff_action="none" if plan.should_ai_reply else "handled",
            priority=plan.priority,
            delay_seconds=plan.delay_seconds,
            reason=f"staff present (active within {window}s): reply mode {mode}",
            strategy=f"semi_auto:{mode}",
            staff_id=activity.staff_user_id,
        )

    async def _maybe_create_task(
        self, decision: CollaborationDecisionLog, role: BusinessRole
    ) -> None:
        if self._task_store is None or not role.enable_task_creation:
            return
        priority = "high" if decision.priority == "high" else role.default_task_priority
        request = TaskRequest(
            priority=priority,
            session_id=decision.session_id,
            reason=decision.reason,
            role_code=role.code,
            message_id=decision.message_id,
        )
        try:
            task_id = await self._task_store.create_task(request)
        except Exception as exc:
            logger.error(
                f"Task creation failed for message {decision.message_id}: {exc}"
            )
            return
        logger.info(f"Created task {task_id} for message {decision.message_id}")

    # ------------------------------------------------------------------
    # Administrative surface
    async def record_decision(
        self, decision: CollaborationDecisionLog
    ) -> CollaborationDecisionLog:
        """Store a decision made elsewhere (upsert by message id)."""
        missing = [
            name
            for name in ("session_id", "message_id", "robot_id")
            if not getattr(decision, name)
        ]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")
        row, _ = await self._repository.upsert_decision(decision)
        return row

    async def update_decision(
        self, message_id: str, updates: Mapping[str, Any]
    ) -> CollaborationDecisionLog:
        row = await self._repository.update_decision(message_id, dict(updates))
        logger.info(f"Decision for message {message_id} updated: {dict(updates)}")
        return row

    async def get_decision(self, message_id: str) -> Optional[CollaborationDecisionLog]:
        return await self._repository.get_decision(message_id)

    async def get_reply_status(self, session_id: str) -> Dict[str, Dict[str, Any]]:
        """Map message id to who replied for every decision of a session."""
        status: Dict[str, Dict[str, Any]] = {}
        for decision in await self._repository.list_decisions(session_id):
            ai = decision.ai_action == "replied"
            staff = decision.staff_action == "replied"
            status[decision.message_id] = {
                "is_replied": ai or staff,
                "reply_type": "ai" if ai else ("human" if staff else "none"),
                "decision_at": decision.created_at,
                "ai_action": decision.ai_action,
                "staff_action": decision.staff_action,
                "priority": decision.priority,
                "reason": decision.reason,
            }
        return status

    async def decision_stats(self, session_id: str) -> DecisionStats:
        decisions = await self._repository.list_decisions(session_id)
        total = len(decisions)
        ai_replies = sum(1 for d in decisions if d.ai_action == "replied")
        staff_replies = sum(1 for d in decisions if d.staff_action == "replied")
        unreplied = sum(
            1 for d in decisions if d.ai_action != "replied" and d.staff_action != "replied"
        )
        rate = (total - unreplied) / total * 100 if total else 0.0
        return DecisionStats(
            total_decisions=total,
            ai_replies=ai_replies,
            staff_replies=staff_replies,
            unreplied=unreplied,
            collaboration_rate=f"{rate:.2f}",
        )
