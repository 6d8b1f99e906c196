"""Flow instance executor.

An instance walks its definition node by node. Immediate nodes run inline;
background nodes (monitors) run in their own task and report back through
:meth:`FlowInstanceExecutor.advance`, as do delayed retries. Every state
change of an instance happens under that instance's lock, and at most one
live task owns the current node.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Mapping, Optional, Set

from .config import ExecutorSettings
from .contracts import NodeOutcome, utcnow
from .errors import InvalidTransition, NoActiveVersion, NotFound
from .nodes import NodeContext, NodeRunner, NodeRunnerRegistry
from .persistence import (
    EdgeSpec,
    FlowDefinition,
    FlowExecutionLog,
    FlowInstance,
    FlowRepository,
    NodeSpec,
)
from .polling import CancelToken
from .utils.retry import retry_delay

logger = logging.getLogger(__name__)


def select_edge(
    definition: FlowDefinition, node_id: str, outcome: NodeOutcome
) -> Optional[EdgeSpec]:
    """Pick the edge leaving ``node_id`` for ``outcome``.

    A conditional edge matching the outcome wins over the unconditional
    default path. Failed outcomes only follow an explicit edge.
    """
    edges = definition.outgoing(node_id)
    for edge in edges:
        if edge.condition and outcome.matches(edge.condition):
            return edge
    if outcome.status == "failed":
        return None
    return next((e for e in edges if not e.condition), None)


class FlowInstanceExecutor:
    """Starts, advances and cancels flow instances."""

    def __init__(
        self,
        repository: FlowRepository,
        runners: NodeRunnerRegistry,
        settings: Optional[ExecutorSettings] = None,
    ) -> None:
        self._repository = repository
        self._runners = runners
        self._settings = settings or ExecutorSettings()
        self._locks: DefaultDict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancelToken] = {}
        # superseded background tasks still winding down
        self._detached: Set[asyncio.Task] = set()

    async def start(
        self,
        flow_definition_id: str,
        trigger_data: Optional[Mapping[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> FlowInstance:
        """Create an instance of an active definition and run it to its first wait."""
        definition = await self._repository.get_definition(flow_definition_id)
        if definition is None:
            raise NotFound(f"Flow definition {flow_definition_id} not found")
        if not definition.is_active:
            raise NoActiveVersion(
                f"Flow {definition.name} version {definition.version} is not active",
                details={"flow_name": definition.name, "version": definition.version},
            )
        if not definition.nodes:
            raise InvalidTransition(f"Flow {definition.name} has no nodes")

        trigger = dict(trigger_data or {})
        instance = await self._repository.create_instance(
            FlowInstance(
                flow_definition_id=definition.id,
                flow_name=definition.name,
                session_id=session_id or trigger.get("session_id"),
                trigger_data=trigger,
                metadata={"version": definition.version, "steps": 0, "outputs": {}},
            )
        )
        first = next((n for n in definition.nodes if n.type == "start"), definition.nodes[0])
        async with self._locks[instance.id]:
            instance.status = "running"
            instance.current_node_id = first.id
            await self._repository.save_instance(instance)
            logger.info(
                f"Instance {instance.id} of flow {definition.name} "
                f"v{definition.version} started at node {first.id}"
            )
            return await self._run_from(instance, definition, first)

    async def advance(
        self,
        instance_id: str,
        outcome: NodeOutcome,
        expected_node_id: Optional[str] = None,
        log_id: Optional[int] = None,
    ) -> FlowInstance:
        """Record ``outcome`` for the current node and move the instance on.

        Background runners pass the node and log they were started for, and
        an outcome for any other node is rejected with
        :class:`InvalidTransition`. An outcome supplied by anyone else
        supersedes a live background node: its monitor is cancelled and its
        late result discarded.
        """
        async with self._locks[instance_id]:
            instance = await self._load(instance_id)
            if instance.status != "running":
                raise InvalidTransition(
                    f"Instance {instance_id} is {instance.status} and cannot advance",
                    details={"status": instance.status},
                )
            current_log_id = instance.metadata.get("current_log_id")
            if (expected_node_id is not None and expected_node_id != instance.current_node_id) or (
                log_id is not None and log_id != current_log_id
            ):
                raise InvalidTransition(
                    f"Outcome for node {expected_node_id} (log {log_id}) does not belong "
                    f"to current node {instance.current_node_id} of instance {instance_id}",
                    details={
                        "current_node_id": instance.current_node_id,
                        "current_log_id": current_log_id,
                        "expected_node_id": expected_node_id,
                        "log_id": log_id,
                    },
                )
            definition = await self._repository.get_definition(instance.flow_definition_id)
            node = definition.node(instance.current_node_id) if definition else None
            if definition is None or node is None:
                return await self._terminate(
                    instance, "failed", error="flow definition or current node disappeared"
                )
            token = self._tokens.pop(instance_id, None)
            if token is not None:
                if token.cancelled and outcome.status != "cancelled":
                    outcome = NodeOutcome.cancelled(token.reason or "cancelled", **outcome.output)
                if log_id is None:
                    token.cancel(f"superseded by advance of instance {instance_id}")
                    self._detach(instance_id)
            next_node = await self._finish_node(instance, definition, node, outcome)
            if next_node is None:
                return instance
            return await self._run_from(instance, definition, next_node)

    async def cancel(self, instance_id: str, reason: str = "cancelled") -> FlowInstance:
        """Cancel a running instance, interrupting its monitor if one is live."""
        instance = await self._load(instance_id)
        if instance.is_terminal:
            raise InvalidTransition(
                f"Instance {instance_id} is already {instance.status}",
                details={"status": instance.status},
            )
        token = self._tokens.get(instance_id)
        if token is not None:
            token.cancel(reason)
            return instance
        async with self._locks[instance_id]:
            token = self._tokens.get(instance_id)
            if token is not None:
                token.cancel(reason)
                return instance
            instance = await self._load(instance_id)
            if instance.is_terminal:
                return instance
            log_id = instance.metadata.get("current_log_id")
            if log_id is not None:
                await self._repository.complete_log(log_id, "cancelled", error=reason)
            return await self._terminate(instance, "cancelled", error=reason)

    async def cancel_session(self, session_id: str, reason: str = "session closed") -> List[str]:
        """Cancel every running instance bound to ``session_id``."""
        cancelled = []
        for instance in await self._repository.list_instances(
            session_id=session_id, status="running"
        ):
            try:
                await self.cancel(instance.id, reason)
            except InvalidTransition:
                continue
            cancelled.append(instance.id)
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} instance(s) of session {session_id}")
        return cancelled

    async def wait(self, instance_id: str, timeout: Optional[float] = None) -> FlowInstance:
        """Wait until no background node of ``instance_id`` is running."""

        async def drain() -> None:
            while True:
                task = self._tasks.get(instance_id)
                if task is None:
                    return
                await asyncio.wait({task})

        await asyncio.wait_for(drain(), timeout=timeout)
        return await self._load(instance_id)

    async def shutdown(self, reason: str = "shutdown") -> None:
        """Cancel live monitors and wait for their instances to settle."""
        for token in list(self._tokens.values()):
            token.cancel(reason)
        tasks = list(self._tasks.values()) + list(self._detached)
        if tasks:
            await asyncio.wait(tasks)

    def running(self) -> List[str]:
        """Ids of instances that currently hold a live background node."""
        return list(self._tasks)

    async def get_instance(self, instance_id: str) -> FlowInstance:
        return await self._load(instance_id)

    async def list_instances(self, **filters: Any) -> List[FlowInstance]:
        return await self._repository.list_instances(**filters)

    async def list_logs(self, instance_id: str) -> List[FlowExecutionLog]:
        await self._load(instance_id)
        return await self._repository.list_logs(instance_id)

    # ------------------------------------------------------------------
    async def _load(self, instance_id: str) -> FlowInstance:
        instance = await self._repository.get_instance(instance_id)
        if instance is None:
            raise NotFound(f"Flow instance {instance_id} not found")
        return instance

    async def _run_from(
        self, instance: FlowInstance, definition: FlowDefinition, node: Optional[NodeSpec]
    ) -> FlowInstance:
        while node is not None:
            steps = instance.metadata.get("steps", 0) + 1
            instance.metadata["steps"] = steps
            if steps > self._settings.max_steps:
                return await self._terminate(
                    instance,
                    "failed",
                    error=f"exceeded {self._settings.max_steps} steps at node {node.id}",
                )
            outcome = await self._enter(instance, definition, node)
            if outcome is None:
                return instance
            node = await self._finish_node(instance, definition, node, outcome)
        return instance

    async def _enter(
        self, instance: FlowInstance, definition: FlowDefinition, node: NodeSpec
    ) -> Optional[NodeOutcome]:
        """Log entry into ``node`` and run it; ``None`` means it went to the background."""
        log = await self._repository.append_log(
            FlowExecutionLog(
                flow_instance_id=instance.id,
                node_id=node.id,
                node_type=node.type,
                node_name=node.name,
                input_data={
                    "config": node.config,
                    "attempt": instance.metadata.get("retries", {}).get(node.id, 0),
                },
            )
        )
        instance.current_node_id = node.id
        instance.metadata["current_log_id"] = log.id
        await self._repository.save_instance(instance)

        runner = self._runners.get(node.type)
        if runner is None:
            return NodeOutcome.failure(f"no runner for node type {node.type}")

        context = NodeContext(
            instance_id=instance.id,
            flow_name=instance.flow_name,
            node=node,
            session_id=instance.session_id,
            trigger_data=instance.trigger_data,
            variables=definition.variables,
            outputs=instance.metadata.get("outputs", {}),
        )
        if runner.background:
            self._tokens[instance.id] = context.token
            self._tasks[instance.id] = asyncio.create_task(
                self._run_background(instance.id, runner, context, log.id)
            )
            logger.info(f"Instance {instance.id} waiting on {node.type} node {node.id}")
            return None

        try:
            return await runner.run(context)
        except Exception as exc:
            logger.exception(f"Node {node.id} of instance {instance.id} raised")
            return NodeOutcome.failure(str(exc) or type(exc).__name__)

    async def _run_background(
        self, instance_id: str, runner: NodeRunner, context: NodeContext, log_id: int
    ) -> None:
        try:
            try:
                outcome = await runner.run(context)
            except Exception as exc:
                logger.exception(f"Node {context.node.id} of instance {instance_id} raised")
                outcome = NodeOutcome.failure(str(exc) or type(exc).__name__)
            try:
                await self.advance(
                    instance_id, outcome, expected_node_id=context.node.id, log_id=log_id
                )
            except InvalidTransition as exc:
                logger.info(
                    f"Discarded {outcome.status} outcome of node {context.node.id}: {exc.message}"
                )
            except Exception:
                logger.exception(f"Instance {instance_id} could not advance")
        finally:
            self._release(instance_id, context.token)

    def _release(self, instance_id: str, token: CancelToken) -> None:
        """Forget the calling task and ``token`` unless a newer node replaced them."""
        if self._tokens.get(instance_id) is token:
            del self._tokens[instance_id]
        if self._tasks.get(instance_id) is asyncio.current_task():
            del self._tasks[instance_id]

    def _detach(self, instance_id: str) -> None:
        task = self._tasks.pop(instance_id, None)
        if task is not None and task is not asyncio.current_task():
            self._detached.add(task)
            task.add_done_callback(self._detached.discard)

    def _schedule_retry(self, instance: FlowInstance, node: NodeSpec, delay: float) -> None:
        token = CancelToken()
        self._tokens[instance.id] = token
        self._tasks[instance.id] = asyncio.create_task(
            self._retry_later(
                instance.id, node.id, instance.metadata.get("current_log_id"), token, delay
            )
        )

    async def _retry_later(
        self,
        instance_id: str,
        node_id: str,
        log_id: Optional[int],
        token: CancelToken,
        delay: float,
    ) -> None:
        """Re-enter ``node_id`` after ``delay`` without holding the instance lock meanwhile."""
        try:
            await token.wait(delay)
            async with self._locks[instance_id]:
                if self._tasks.get(instance_id) is not asyncio.current_task():
                    return
                if self._tokens.get(instance_id) is token:
                    del self._tokens[instance_id]
                instance = await self._load(instance_id)
                stale = instance.metadata.get("current_log_id") != log_id
                if instance.status != "running" or stale:
                    return
                if token.cancelled:
                    await self._terminate(instance, "cancelled", error=token.reason)
                    return
                definition = await self._repository.get_definition(instance.flow_definition_id)
                node = definition.node(node_id) if definition else None
                if definition is None or node is None:
                    await self._terminate(
                        instance, "failed", error="flow definition or current node disappeared"
                    )
                    return
                logger.info(f"Retrying node {node_id} of instance {instance_id}")
                await self._run_from(instance, definition, node)
        except Exception:
            logger.exception(f"Retry of node {node_id} for instance {instance_id} failed")
        finally:
            self._release(instance_id, token)

    async def _finish_node(
        self,
        instance: FlowInstance,
        definition: FlowDefinition,
        node: NodeSpec,
        outcome: NodeOutcome,
    ) -> Optional[NodeSpec]:
        """Close the node's log and return the node to run next.

        ``None`` means the instance stopped or is waiting for a delayed retry.
        """
        log_id = instance.metadata.get("current_log_id")
        if log_id is not None:
            await self._repository.complete_log(
                log_id, outcome.status, outcome.output, outcome.error
            )
        instance.metadata.setdefault("outputs", {})[node.id] = outcome.output

        if outcome.status == "cancelled":
            await self._terminate(instance, "cancelled", error=outcome.error)
            return None

        if outcome.status == "failed":
            retry_config = definition.retry_config
            max_retries = retry_config.get("max_retries", 0)
            # per node; retry_count keeps the instance-wide total
            retries = instance.metadata.setdefault("retries", {})
            attempt = retries.get(node.id, 0) + 1
            if attempt <= max_retries:
                retries[node.id] = attempt
                instance.retry_count += 1
                await self._repository.save_instance(instance)
                delay = retry_delay(attempt, retry_config)
                logger.warning(
                    f"Node {node.id} of instance {instance.id} failed ({outcome.error}); "
                    f"retry {attempt}/{max_retries} in {delay:.2f}s"
                )
                if delay <= 0:
                    return node
                self._schedule_retry(instance, node, delay)
                return None

        edge = select_edge(definition, node.id, outcome)
        if edge is None:
            if outcome.status == "failed":
                await self._terminate(
                    instance, "failed", error=f"node {node.id} failed: {outcome.error}"
                )
            else:
                await self._terminate(instance, "completed", result=outcome.output)
            return None

        next_node = definition.node(edge.target)
        if next_node is None:
            await self._terminate(
                instance, "failed", error=f"edge from {node.id} targets unknown node {edge.target}"
            )
            return None
        instance.current_node_id = next_node.id
        await self._repository.save_instance(instance)
        return next_node

    async def _terminate(
        self,
        instance: FlowInstance,
        status: str,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> FlowInstance:
        now = utcnow()
        instance.status = status
        instance.completed_at = now
        instance.processing_time = int((now - instance.started_at).total_seconds() * 1000)
        instance.result = result
        instance.error_message = error
        instance.metadata.pop("current_log_id", None)
        await self._repository.save_instance(instance)
        log = logger.info if status == "completed" else logger.warning
        log(
            f"Instance {instance.id} of flow {instance.flow_name} {status} "
            f"after {instance.processing_time}ms"
            + (f": {error}" if error else "")
        )
        return instance
