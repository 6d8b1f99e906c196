from datetime import timedelta

import pytest

import collabflow.persistence as persistence
from collabflow.config import MonitorSettings
from collabflow.contracts import ChatMessage, utcnow
from collabflow.persistence import EdgeSpec, FlowDefinition, InMemoryFlowRepository, NodeSpec
from collabflow.stores import InMemoryAlertStore, InMemoryMessageStore, InMemoryTaskStore


@pytest.fixture(autouse=True)
def _isolated_environment(monkeypatch, tmp_path):
    monkeypatch.delenv("COLLABFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.delenv("COLLABFLOW_LOG_LEVEL", raising=False)
    monkeypatch.setenv("COLLABFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def repo() -> InMemoryFlowRepository:
    return InMemoryFlowRepository()


@pytest.fixture
def message_store() -> InMemoryMessageStore:
    return InMemoryMessageStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()


@pytest.fixture
def task_store() -> InMemoryTaskStore:
    return InMemoryTaskStore()


@pytest.fixture
def fast_monitor() -> MonitorSettings:
    return MonitorSettings(
        poll_interval=0.05, min_duration=0.1, max_duration=3.0, default_duration=0.5
    )


def _staff_message(session_id: str, sender_id: str = "staff-1", ago: float = 0.0) -> ChatMessage:
    return ChatMessage(
        message_id=f"m-{sender_id}-{ago}",
        session_id=session_id,
        sender_id=sender_id,
        sender_type="staff",
        content="I'll take this one",
        created_at=utcnow() - timedelta(seconds=ago),
    )


def _user_message(session_id: str, content: str, ago: float = 0.0) -> ChatMessage:
    return ChatMessage(
        message_id=f"u-{content}-{ago}",
        session_id=session_id,
        sender_id="customer-1",
        sender_type="user",
        content=content,
        created_at=utcnow() - timedelta(seconds=ago),
    )


def _monitor_flow(name: str = "follow_up", duration: float = 0.3) -> FlowDefinition:
    """start -> monitor -(detected)-> handled / -(timeout)-> escalate."""
    return FlowDefinition(
        name=name,
        trigger_type="manual",
        nodes=[
            NodeSpec(id="start", type="start"),
            NodeSpec(
                id="watch",
                type="monitor",
                config={"duration": duration, "detect_staff": True},
            ),
            NodeSpec(id="handled", type="end", config={"result": {"outcome": "handled"}}),
            NodeSpec(id="escalate", type="end", config={"result": {"outcome": "escalated"}}),
        ],
        edges=[
            EdgeSpec(source="start", target="watch"),
            EdgeSpec(source="watch", target="handled", condition="detected"),
            EdgeSpec(source="watch", target="escalate", condition="timeout"),
        ],
    )


@pytest.fixture
def staff_message():
    return _staff_message


@pytest.fixture
def user_message():
    return _user_message


@pytest.fixture
def monitor_flow():
    return _monitor_flow
