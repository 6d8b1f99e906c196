"""Collaboration decisions."""

import pytest

from collabflow.config import DecisionSettings
from collabflow.contracts import BusinessRole, InboundMessage
from collabflow.decision import CollaborationDecisionEngine, reply_plan
from collabflow.errors import NotFound
from collabflow.persistence import CollaborationDecisionLog
from collabflow.presence import MessageStoreStaffPresenceDetector
from collabflow.roles import RoleRegistry


ROLES = [
    BusinessRole(
        code="after_sales",
        name="After sales",
        ai_behavior="semi_auto",
        reply_mode_when_staff_online="skip",
        keywords=["refund"],
    ),
    BusinessRole(
        code="vip",
        name="VIP",
        ai_behavior="full_auto",
        keywords=["urgent"],
        enable_task_creation=True,
    ),
    BusinessRole(code="audit", name="Audit", ai_behavior="record_only"),
    BusinessRole(code="presales", name="Presales", reply_mode_when_staff_online="delay"),
]


@pytest.fixture
def engine(repo, message_store, task_store):
    return CollaborationDecisionEngine(
        repo,
        RoleRegistry(ROLES),
        MessageStoreStaffPresenceDetector(message_store),
        settings=DecisionSettings(),
        task_store=task_store,
    )


def _message(message_id: str = "m1", role: str | None = None, content: str = "hi") -> InboundMessage:
    return InboundMessage(
        session_id="S1",
        message_id=message_id,
        robot_id="bot-1",
        content=content,
        business_role=role,
    )


def test_reply_plans():
    assert reply_plan("normal", 5).should_ai_reply
    assert reply_plan("low_priority", 5).priority == "low"
    assert reply_plan("delay", 7).delay_seconds == 7
    skip = reply_plan("skip", 5)
    assert not skip.should_ai_reply


@pytest.mark.asyncio
async def test_staff_present_with_skip_mode_blocks_ai(engine, repo, message_store, staff_message):
    message_store.add_message(staff_message("S1", ago=30))

    decision = await engine.decide(_message(role="after_sales"))

    assert decision.should_ai_reply is False
    assert "staff present" in decision.reason
    assert decision.staff_id == "staff-1"
    stored = await repo.get_decision("m1")
    assert stored is not None
    assert stored.should_ai_reply is False


@pytest.mark.asyncio
async def test_no_staff_means_ai_replies(engine):
    decision = await engine.decide(_message(role="after_sales"))
    assert decision.should_ai_reply
    assert decision.priority == "normal"


@pytest.mark.asyncio
async def test_delay_mode_sets_delay(engine, message_store, staff_message):
    message_store.add_message(staff_message("S1", ago=5))
    decision = await engine.decide(_message(role="presales"))
    assert decision.should_ai_reply
    assert decision.priority == "low"
    assert decision.delay_seconds == DecisionSettings().delay_seconds


@pytest.mark.asyncio
async def test_presence_failure_lets_ai_reply(engine, message_store):
    message_store.fail = True
    decision = await engine.decide(_message(role="after_sales"))
    assert decision.should_ai_reply
    assert "unknown" in decision.reason


@pytest.mark.asyncio
async def test_full_auto_keywords_raise_priority_and_create_one_task(engine, task_store):
    decision = await engine.decide(_message(role="vip", content="URGENT: order lost"))
    assert decision.should_ai_reply
    assert decision.priority == "high"
    assert len(task_store.tasks) == 1
    (request,) = task_store.tasks.values()
    assert request.priority == "high"
    assert request.message_id == "m1"

    # redelivery updates the same row without a second task
    await engine.decide(_message(role="vip", content="URGENT: order lost"))
    assert len(task_store.tasks) == 1


@pytest.mark.asyncio
async def test_full_auto_replies_even_when_staff_is_present(engine, message_store, staff_message):
    message_store.add_message(staff_message("S1", ago=5))

    decision = await engine.decide(_message(role="vip", content="where is my parcel"))

    assert decision.should_ai_reply is True
    assert decision.priority == "normal"
    assert decision.strategy == "full_auto"


@pytest.mark.asyncio
async def test_redelivery_keeps_reply_progress(engine, message_store, staff_message):
    await engine.decide(_message(role="after_sales"))
    await engine.update_decision("m1", {"ai_action": "replied"})

    message_store.add_message(staff_message("S1", ago=1))
    again = await engine.decide(_message(role="after_sales"))

    assert again.should_ai_reply is False
    assert "staff present" in again.reason
    assert again.ai_action == "replied"
    assert (await engine.get_reply_status("S1"))["m1"]["reply_type"] == "ai"
    assert (await engine.decision_stats("S1")).ai_replies == 1


@pytest.mark.asyncio
async def test_record_only_never_replies(engine, repo):
    decision = await engine.decide(_message(role="audit"))
    assert not decision.should_ai_reply
    assert decision.ai_action == "none"


@pytest.mark.asyncio
async def test_keyword_resolution_without_explicit_role(engine, message_store, staff_message):
    message_store.add_message(staff_message("S1", ago=1))
    decision = await engine.decide(_message(content="I need a refund"))
    assert decision.business_role == "after_sales"
    assert not decision.should_ai_reply


@pytest.mark.asyncio
async def test_admin_surface(engine):
    with pytest.raises(ValueError):
        await engine.record_decision(
            CollaborationDecisionLog(session_id="S1", message_id="", robot_id="bot-1")
        )

    await engine.record_decision(
        CollaborationDecisionLog(
            session_id="S1", message_id="a", robot_id="bot-1", ai_action="replied"
        )
    )
    await engine.record_decision(
        CollaborationDecisionLog(session_id="S1", message_id="b", robot_id="bot-1")
    )
    await engine.update_decision("b", {"staff_action": "replied", "staff_id": "staff-1"})

    status = await engine.get_reply_status("S1")
    assert status["a"]["reply_type"] == "ai"
    assert status["b"]["reply_type"] == "human"

    await engine.record_decision(
        CollaborationDecisionLog(session_id="S1", message_id="c", robot_id="bot-1")
    )
    stats = await engine.decision_stats("S1")
    assert stats.total_decisions == 3
    assert stats.ai_replies == 1
    assert stats.staff_replies == 1
    assert stats.unreplied == 1
    assert stats.collaboration_rate == "66.67"

    with pytest.raises(NotFound):
        await engine.update_decision("zzz", {"staff_action": "replied"})
