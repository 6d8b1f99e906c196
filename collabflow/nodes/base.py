"""Node runner interface."""

from __future__ import annotations

import abc
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import NodeOutcome
from ..persistence import NodeSpec
from ..polling import CancelToken


class NodeContext(BaseModel):
    """Everything a runner may look at while executing one node."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    instance_id: str
    flow_name: str
    node: NodeSpec
    session_id: Optional[str] = None
    trigger_data: Dict[str, Any] = Field(default_factory=dict)
    variables: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    token: CancelToken = Field(default_factory=CancelToken)

    @property
    def config(self) -> Dict[str, Any]:
        return self.node.config


class NodeRunner(metaclass=abc.ABCMeta):
    """Executes one node type.

    Runners with ``background = True`` hold a live resource for the length
    of their execution; the executor runs them in their own task and the
    runner must honour ``context.token``.
    """

    node_type: str = ""
    background: bool = False

    @abc.abstractmethod
    async def run(self, context: NodeContext) -> NodeOutcome:
        """Execute the node and describe how it ended."""
        raise NotImplementedError
