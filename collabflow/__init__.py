"""Collabflow: human/AI collaboration flows for group chat."""

from .alerts import AlertEscalationMonitor
from .contracts import AlertMonitorConfig, BusinessRole, InboundMessage, NodeOutcome
from .decision import CollaborationDecisionEngine
from .engine import CollaborationEngine, MessageHandlingResult
from .errors import (
    EngineError,
    ExternalLookupFailed,
    InvalidTransition,
    NoActiveVersion,
    NotFound,
)
from .executor import FlowInstanceExecutor
from .persistence import get_repository
from .versions import FlowVersionManager

__version__ = "0.1.0"
__all__ = [
    "AlertEscalationMonitor",
    "AlertMonitorConfig",
    "BusinessRole",
    "CollaborationDecisionEngine",
    "CollaborationEngine",
    "EngineError",
    "ExternalLookupFailed",
    "FlowInstanceExecutor",
    "FlowVersionManager",
    "InboundMessage",
    "InvalidTransition",
    "MessageHandlingResult",
    "NoActiveVersion",
    "NodeOutcome",
    "NotFound",
    "get_repository",
]
