"""Node runners and the registry the executor dispatches through."""

from __future__ import annotations

from typing import TYPE_CHECKING, Dict, Iterable, List, Optional

from ..config import MonitorSettings
from ..presence import SignalDetector, StaffPresenceDetector
from ..stores import TaskStore
from .base import NodeContext, NodeRunner
from .builtin import (
    CreateTaskNodeRunner,
    DecisionNodeRunner,
    EndNodeRunner,
    NoopNodeRunner,
    StartNodeRunner,
)
from .monitor import MonitorNodeRunner, clamp_duration

if TYPE_CHECKING:
    from ..decision import CollaborationDecisionEngine


class NodeRunnerRegistry:
    """Maps node ``type`` strings to runners."""

    def __init__(self, runners: Iterable[NodeRunner] = ()) -> None:
        self._runners: Dict[str, NodeRunner] = {}
        for runner in runners:
            self.register(runner)

    def register(self, runner: NodeRunner) -> None:
        self._runners[runner.node_type] = runner

    def get(self, node_type: str) -> Optional[NodeRunner]:
        return self._runners.get(node_type)

    def types(self) -> List[str]:
        return sorted(self._runners)


def build_default_registry(
    decision_engine: Optional["CollaborationDecisionEngine"] = None,
    task_store: Optional[TaskStore] = None,
    presence: Optional[StaffPresenceDetector] = None,
    satisfaction: Optional[SignalDetector] = None,
    escalation: Optional[SignalDetector] = None,
    monitor_settings: Optional[MonitorSettings] = None,
) -> NodeRunnerRegistry:
    registry = NodeRunnerRegistry(
        [
            StartNodeRunner(),
            EndNodeRunner(),
            NoopNodeRunner(),
            MonitorNodeRunner(presence, satisfaction, escalation, monitor_settings),
        ]
    )
    if decision_engine is not None:
        registry.register(DecisionNodeRunner(decision_engine))
    if task_store is not None:
        registry.register(CreateTaskNodeRunner(task_store))
    return registry


__all__ = [
    "NodeContext",
    "NodeRunner",
    "NodeRunnerRegistry",
    "build_default_registry",
    "clamp_duration",
    "StartNodeRunner",
    "EndNodeRunner",
    "NoopNodeRunner",
    "DecisionNodeRunner",
    "CreateTaskNodeRunner",
    "MonitorNodeRunner",
]
