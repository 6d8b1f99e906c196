"""Flow instance execution."""

import asyncio
import time

import pytest
from pydantic import ValidationError

from collabflow.config import ExecutorSettings
from collabflow.contracts import NodeOutcome
from collabflow.errors import InvalidTransition, NoActiveVersion, NotFound
from collabflow.executor import FlowInstanceExecutor, select_edge
from collabflow.nodes import NodeRunner, build_default_registry
from collabflow.persistence import EdgeSpec, FlowDefinition, NodeSpec
from collabflow.presence import MessageStoreStaffPresenceDetector
from collabflow.versions import FlowVersionManager


class FlakyRunner(NodeRunner):
    node_type = "flaky"

    def __init__(self, failures: int, node_type: str = "flaky"):
        self.failures = failures
        self.node_type = node_type
        self.calls = 0

    async def run(self, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"attempt {self.calls} failed")
        return NodeOutcome.success(attempts=self.calls)


@pytest.fixture
def executor(repo, message_store, fast_monitor):
    runners = build_default_registry(
        presence=MessageStoreStaffPresenceDetector(message_store),
        monitor_settings=fast_monitor,
    )
    return FlowInstanceExecutor(repo, runners)


async def _activate(repo, definition: FlowDefinition) -> FlowDefinition:
    return await FlowVersionManager(repo).create_definition(definition)


def _linear(*types: str, **kwargs) -> FlowDefinition:
    nodes = [NodeSpec(id=f"n{i}", type=t) for i, t in enumerate(types)]
    edges = [EdgeSpec(source=f"n{i}", target=f"n{i + 1}") for i in range(len(types) - 1)]
    return FlowDefinition(name=kwargs.pop("name", "linear"), nodes=nodes, edges=edges, **kwargs)


def test_conditional_edge_beats_default_path():
    definition = FlowDefinition(
        name="f",
        nodes=[NodeSpec(id="a", type="noop")],
        edges=[
            EdgeSpec(source="a", target="fallback"),
            EdgeSpec(source="a", target="staff", condition="staff"),
        ],
    )
    detected = NodeOutcome.success("detected", signal="staff")
    assert select_edge(definition, "a", detected).target == "staff"
    assert select_edge(definition, "a", NodeOutcome.success()).target == "fallback"
    assert select_edge(definition, "a", NodeOutcome.failure("x")) is None


@pytest.mark.asyncio
async def test_immediate_flow_runs_to_completion(repo, executor):
    definition = await _activate(repo, _linear("start", "noop", "end"))

    instance = await executor.start(definition.id, {"session_id": "S1"})

    assert instance.status == "completed"
    assert instance.session_id == "S1"
    assert instance.processing_time is not None
    logs = await executor.list_logs(instance.id)
    assert [(log.node_id, log.status) for log in logs] == [
        ("n0", "completed"),
        ("n1", "completed"),
        ("n2", "completed"),
    ]


@pytest.mark.asyncio
async def test_start_requires_active_definition(repo, executor):
    manager = FlowVersionManager(repo)
    first = await manager.create_definition(_linear("start", "end"))
    await manager.create_version("linear")

    with pytest.raises(NoActiveVersion):
        await executor.start(first.id)
    with pytest.raises(NotFound):
        await executor.start("missing")


@pytest.mark.asyncio
async def test_monitor_timeout_completes_instance(repo, executor, monitor_flow, fast_monitor):
    definition = await _activate(repo, monitor_flow(duration=0.3))

    started = time.monotonic()
    instance = await executor.start(definition.id, {"session_id": "S1"})
    assert instance.status == "running"
    assert instance.current_node_id == "watch"

    instance = await executor.wait(instance.id, timeout=5)
    elapsed = time.monotonic() - started

    assert instance.status == "completed"
    assert instance.error_message is None
    assert instance.result == {"outcome": "escalated"}
    assert 0.3 <= elapsed <= 0.3 + fast_monitor.poll_interval + 0.5
    logs = await executor.list_logs(instance.id)
    watch = next(log for log in logs if log.node_id == "watch")
    assert watch.status == "completed"
    assert watch.output_data["polls"] >= 1


@pytest.mark.asyncio
async def test_monitor_detects_staff(repo, executor, message_store, monitor_flow, staff_message):
    definition = await _activate(repo, monitor_flow(duration=2.0))
    instance = await executor.start(definition.id, {"session_id": "S1"})

    await asyncio.sleep(0.1)
    message_store.add_message(staff_message("S1"))
    instance = await executor.wait(instance.id, timeout=5)

    assert instance.status == "completed"
    assert instance.result == {"outcome": "handled"}
    outputs = instance.metadata["outputs"]["watch"]
    assert outputs["signal"] == "staff"
    assert outputs["staff_user_id"] == "staff-1"


@pytest.mark.asyncio
async def test_monitor_duration_is_clamped(repo, executor, monitor_flow, fast_monitor):
    definition = await _activate(repo, monitor_flow(duration=0.001))
    instance = await executor.start(definition.id, {"session_id": "S1"})
    instance = await executor.wait(instance.id, timeout=5)

    logs = await executor.list_logs(instance.id)
    watch = next(log for log in logs if log.node_id == "watch")
    assert watch.output_data["duration"] == fast_monitor.min_duration


@pytest.mark.asyncio
async def test_cancel_interrupts_monitor(repo, executor, monitor_flow):
    definition = await _activate(repo, monitor_flow(duration=3.0))
    instance = await executor.start(definition.id, {"session_id": "S1"})

    started = time.monotonic()
    await executor.cancel(instance.id, "customer left")
    instance = await executor.wait(instance.id, timeout=2)

    assert time.monotonic() - started < 1.0
    assert instance.status == "cancelled"
    assert instance.error_message == "customer left"
    logs = await executor.list_logs(instance.id)
    assert logs[-1].status == "cancelled"

    with pytest.raises(InvalidTransition):
        await executor.cancel(instance.id)


@pytest.mark.asyncio
async def test_cancel_session_cancels_every_running_instance(repo, executor, monitor_flow):
    definition = await _activate(repo, monitor_flow(duration=3.0))
    first = await executor.start(definition.id, {"session_id": "S1"})
    second = await executor.start(definition.id, {"session_id": "S1"})
    other = await executor.start(definition.id, {"session_id": "S2"})

    cancelled = await executor.cancel_session("S1")

    assert set(cancelled) == {first.id, second.id}
    for instance_id in (first.id, second.id):
        assert (await executor.wait(instance_id, timeout=2)).status == "cancelled"
    assert (await executor.get_instance(other.id)).status == "running"
    await executor.shutdown()
    assert (await executor.get_instance(other.id)).status == "cancelled"


@pytest.mark.asyncio
async def test_monitor_without_session_fails_instance(repo, executor, monitor_flow):
    definition = await _activate(repo, monitor_flow())
    instance = await executor.start(definition.id)
    instance = await executor.wait(instance.id, timeout=2)
    assert instance.status == "failed"
    assert "session_id" in instance.error_message


@pytest.mark.asyncio
async def test_failed_node_is_retried(repo, executor):
    flaky = FlakyRunner(failures=2)
    executor._runners.register(flaky)
    definition = await _activate(
        repo,
        _linear("start", "flaky", "end", retry_config={"max_retries": 2, "retry_interval": 0}),
    )

    instance = await executor.start(definition.id)

    assert instance.status == "completed"
    assert instance.retry_count == 2
    statuses = [log.status for log in await executor.list_logs(instance.id) if log.node_type == "flaky"]
    assert statuses == ["failed", "failed", "completed"]


@pytest.mark.asyncio
async def test_failure_without_retries_fails_instance(repo, executor):
    executor._runners.register(FlakyRunner(failures=5))
    definition = await _activate(repo, _linear("start", "flaky", "end"))

    instance = await executor.start(definition.id)

    assert instance.status == "failed"
    assert "attempt 1 failed" in instance.error_message


@pytest.mark.asyncio
async def test_failure_edge_is_followed(repo, executor):
    executor._runners.register(FlakyRunner(failures=5))
    definition = FlowDefinition(
        name="recover",
        nodes=[
            NodeSpec(id="try", type="flaky"),
            NodeSpec(id="ok", type="end"),
            NodeSpec(id="recover", type="end", config={"result": {"recovered": True}}),
        ],
        edges=[
            EdgeSpec(source="try", target="ok"),
            EdgeSpec(source="try", target="recover", condition="failed"),
        ],
    )
    definition = await _activate(repo, definition)

    instance = await executor.start(definition.id)

    assert instance.status == "completed"
    assert instance.result == {"recovered": True}


@pytest.mark.asyncio
async def test_unknown_node_type_fails(repo, executor):
    definition = await _activate(repo, _linear("start", "teleport"))
    instance = await executor.start(definition.id)
    assert instance.status == "failed"
    assert "teleport" in instance.error_message


@pytest.mark.asyncio
async def test_cycle_is_stopped_by_step_limit(repo, message_store, fast_monitor):
    executor = FlowInstanceExecutor(
        repo, build_default_registry(), ExecutorSettings(max_steps=10)
    )
    definition = FlowDefinition(
        name="loop",
        nodes=[NodeSpec(id="a", type="noop"), NodeSpec(id="b", type="noop")],
        edges=[EdgeSpec(source="a", target="b"), EdgeSpec(source="b", target="a")],
    )
    definition = await _activate(repo, definition)

    instance = await executor.start(definition.id)

    assert instance.status == "failed"
    assert "exceeded 10 steps" in instance.error_message


@pytest.mark.asyncio
async def test_advance_rejects_finished_instance(repo, executor):
    definition = await _activate(repo, _linear("start", "end"))
    instance = await executor.start(definition.id)
    with pytest.raises(InvalidTransition):
        await executor.advance(instance.id, NodeOutcome.success())


def _relay(first: float, second: float) -> FlowDefinition:
    return FlowDefinition(
        name="relay",
        nodes=[
            NodeSpec(id="w1", type="monitor", config={"duration": first}),
            NodeSpec(id="w2", type="monitor", config={"duration": second}),
        ],
        edges=[EdgeSpec(source="w1", target="w2")],
    )


@pytest.mark.asyncio
async def test_external_advance_supersedes_live_monitor(repo, executor):
    definition = await _activate(repo, _relay(0.3, 2.5))
    instance = await executor.start(definition.id, {"session_id": "S1"})
    await asyncio.sleep(0.05)

    instance = await executor.advance(instance.id, NodeOutcome.success())
    assert instance.current_node_id == "w2"

    # w1's monitor would have timed out by now
    await asyncio.sleep(0.6)
    instance = await executor.get_instance(instance.id)
    assert instance.status == "running"
    assert instance.current_node_id == "w2"
    logs = await executor.list_logs(instance.id)
    assert [(log.node_id, log.status, log.output_data) for log in logs] == [
        ("w1", "completed", {}),
        ("w2", "running", None),
    ]

    await executor.cancel(instance.id, "done")
    instance = await executor.wait(instance.id, timeout=2)
    assert instance.status == "cancelled"
    assert (await executor.list_logs(instance.id))[-1].status == "cancelled"


@pytest.mark.asyncio
async def test_advance_rejects_outcome_for_another_node(repo, executor, monitor_flow):
    definition = await _activate(repo, monitor_flow(duration=2.0))
    instance = await executor.start(definition.id, {"session_id": "S1"})
    log_id = instance.metadata["current_log_id"]

    with pytest.raises(InvalidTransition):
        await executor.advance(instance.id, NodeOutcome.success(), expected_node_id="start")
    with pytest.raises(InvalidTransition):
        await executor.advance(
            instance.id, NodeOutcome.success(), expected_node_id="watch", log_id=log_id + 100
        )

    instance = await executor.get_instance(instance.id)
    assert instance.status == "running"
    assert instance.current_node_id == "watch"
    assert executor.running() == [instance.id]
    await executor.shutdown()


@pytest.mark.asyncio
async def test_delayed_retry_does_not_block_start(repo, executor):
    flaky = FlakyRunner(failures=1)
    executor._runners.register(flaky)
    definition = await _activate(
        repo,
        _linear("start", "flaky", "end", retry_config={"max_retries": 1, "retry_interval": 0.2}),
    )

    started = time.monotonic()
    instance = await executor.start(definition.id)
    assert time.monotonic() - started < 0.15
    assert instance.status == "running"

    instance = await executor.wait(instance.id, timeout=2)
    assert time.monotonic() - started >= 0.2
    assert instance.status == "completed"
    assert flaky.calls == 2


@pytest.mark.asyncio
async def test_cancel_during_retry_delay(repo, executor):
    flaky = FlakyRunner(failures=1)
    executor._runners.register(flaky)
    definition = await _activate(
        repo,
        _linear("start", "flaky", "end", retry_config={"max_retries": 1, "retry_interval": 5}),
    )
    instance = await executor.start(definition.id)

    await executor.cancel(instance.id, "customer left")
    instance = await executor.wait(instance.id, timeout=1)

    assert instance.status == "cancelled"
    assert instance.error_message == "customer left"
    assert flaky.calls == 1


@pytest.mark.asyncio
async def test_retries_are_counted_per_node(repo, executor):
    executor._runners.register(FlakyRunner(failures=1, node_type="flaky_a"))
    executor._runners.register(FlakyRunner(failures=1, node_type="flaky_b"))
    definition = await _activate(
        repo, _linear("start", "flaky_a", "flaky_b", "end", retry_config={"max_retries": 1})
    )

    instance = await executor.start(definition.id)

    assert instance.status == "completed"
    assert instance.retry_count == 2
    assert instance.metadata["retries"] == {"n1": 1, "n2": 1}


def test_retry_config_accepts_camel_case_and_rejects_unknown_keys():
    definition = _linear("start", "end", retry_config={"maxRetries": 3, "retryInterval": 1500})
    assert definition.retry_config == {"max_retries": 3, "retry_interval": 1.5}

    with pytest.raises(ValidationError):
        _linear("start", "end", retry_config={"retries": 3})
    with pytest.raises(ValidationError):
        _linear("start", "end", retry_config={"max_retries": 1, "maxRetries": 2})
    with pytest.raises(ValidationError):
        _linear("start", "end", retry_config={"retry_interval": -1})
