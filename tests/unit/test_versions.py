"""Flow definition versioning."""

import asyncio

import pytest

from collabflow.errors import InvalidTransition, NotFound
from collabflow.persistence import EdgeSpec, FlowDefinition, NodeSpec
from collabflow.versions import FlowVersionManager, increment_version, max_version


def _welcome() -> FlowDefinition:
    return FlowDefinition(
        name="welcome",
        nodes=[NodeSpec(id="start", type="start"), NodeSpec(id="end", type="end")],
        edges=[EdgeSpec(source="start", target="end")],
    )


def test_increment_version_bumps_minor_only():
    assert increment_version("1.0") == "1.1"
    assert increment_version("1.9") == "1.10"
    assert increment_version("2.3") == "2.4"


def test_max_version_is_numeric():
    assert max_version(["1.9", "1.10", "1.2"]) == "1.10"
    assert max_version([]) is None


@pytest.mark.asyncio
async def test_create_version_supersedes_active(repo):
    manager = FlowVersionManager(repo)
    first = await manager.create_definition(_welcome())
    assert first.version == "1.0"
    assert first.is_active

    second = await manager.create_version("welcome", {"variables": {"greeting": "hi"}})
    assert second.version == "1.1"
    assert second.is_active
    assert second.id != first.id
    assert second.variables == {"greeting": "hi"}
    assert [n.id for n in second.nodes] == ["start", "end"]

    old = await manager.get(first.id)
    assert not old.is_active
    assert old.variables == {}

    active = await manager.get_active("welcome")
    assert active.id == second.id


@pytest.mark.asyncio
async def test_create_version_without_active_version(repo):
    manager = FlowVersionManager(repo)
    with pytest.raises(NotFound):
        await manager.create_version("missing", {})


@pytest.mark.asyncio
async def test_concurrent_create_version_keeps_one_active(repo):
    manager = FlowVersionManager(repo)
    await manager.create_definition(_welcome())

    rows = await asyncio.gather(*(manager.create_version("welcome") for _ in range(5)))

    versions = sorted(r.version for r in rows)
    assert len(set(versions)) == 5
    history = await manager.list_versions("welcome")
    assert sum(1 for r in history if r.is_active) == 1
    assert history[0].version == "1.5"
    assert history[0].is_active


@pytest.mark.asyncio
async def test_rollback_creates_new_version_with_old_content(repo):
    manager = FlowVersionManager(repo)
    first = await manager.create_definition(_welcome())
    await manager.create_version(
        "welcome", {"nodes": [{"id": "start", "type": "start"}], "edges": []}
    )

    restored = await manager.rollback(first.id)

    assert restored.version == "1.2"
    assert restored.is_active
    assert [n.id for n in restored.nodes] == ["start", "end"]
    history = await manager.list_versions("welcome")
    assert [r.version for r in history] == ["1.2", "1.1", "1.0"]
    assert [r.is_active for r in history] == [True, False, False]


@pytest.mark.asyncio
async def test_rollback_unknown_version(repo):
    with pytest.raises(NotFound):
        await FlowVersionManager(repo).rollback("nope")


@pytest.mark.asyncio
async def test_activate_switches_active_row(repo):
    manager = FlowVersionManager(repo)
    first = await manager.create_definition(_welcome())
    await manager.create_version("welcome")

    row = await manager.activate(first.id)

    assert row.is_active
    history = await manager.list_versions("welcome")
    assert [r.version for r in history if r.is_active] == ["1.0"]


@pytest.mark.asyncio
async def test_create_definition_for_existing_name_is_inactive(repo):
    manager = FlowVersionManager(repo)
    await manager.create_definition(_welcome())

    row = await manager.create_definition(_welcome())

    assert row.version == "1.1"
    assert not row.is_active


@pytest.mark.asyncio
async def test_update_only_touches_metadata(repo):
    manager = FlowVersionManager(repo)
    row = await manager.create_definition(_welcome())

    updated = await manager.update(row.id, {"description": "greets new members"})
    assert updated.description == "greets new members"
    assert updated.version == "1.0"

    with pytest.raises(InvalidTransition):
        await manager.update(row.id, {"nodes": []})
    with pytest.raises(InvalidTransition):
        await manager.update(row.id, {"is_active": False})


@pytest.mark.asyncio
async def test_delete_refuses_active_version(repo):
    manager = FlowVersionManager(repo)
    first = await manager.create_definition(_welcome())
    await manager.create_version("welcome")
    latest = await manager.get_active("welcome")

    with pytest.raises(InvalidTransition):
        await manager.delete(latest.id)

    await manager.delete(first.id)
    with pytest.raises(NotFound):
        await manager.get(first.id)


@pytest.mark.asyncio
async def test_failed_insert_leaves_previous_version_active(repo, monkeypatch):
    manager = FlowVersionManager(repo)
    first = await manager.create_definition(_welcome())

    async def broken(definition):
        raise RuntimeError("disk full")

    monkeypatch.setattr(repo, "insert_active_version", broken)
    with pytest.raises(RuntimeError):
        await manager.create_version("welcome")

    active = await manager.get_active("welcome")
    assert active.id == first.id
