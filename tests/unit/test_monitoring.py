from datetime import timedelta

import pytest

from collabflow.contracts import utcnow
from collabflow.monitoring import collect_statistics
from collabflow.persistence import FlowInstance


async def _instance(repo, name, status, processing_time=None, days_ago=0):
    instance = FlowInstance(
        flow_definition_id=f"def-{name}",
        flow_name=name,
        status=status,
        processing_time=processing_time,
        started_at=utcnow() - timedelta(days=days_ago),
    )
    await repo.create_instance(instance)


@pytest.mark.asyncio
async def test_collect_statistics(repo):
    await _instance(repo, "welcome", "completed", 100)
    await _instance(repo, "welcome", "completed", 300)
    await _instance(repo, "welcome", "failed", 50, days_ago=1)
    await _instance(repo, "follow_up", "running")
    await _instance(repo, "old", "completed", 10, days_ago=40)

    stats = await collect_statistics(repo)

    assert stats.status_counts == {"completed": 3, "failed": 1, "running": 1}
    assert stats.status_processing["completed"] == pytest.approx(136.67)
    assert stats.average_processing_time == pytest.approx(115.0)
    assert [f.flow_name for f in stats.flow_stats] == ["welcome", "follow_up"]
    welcome = stats.flow_stats[0]
    assert (welcome.total, welcome.completed, welcome.failed) == (3, 2, 1)
    assert welcome.average_processing_time == pytest.approx(150.0)

    assert len(stats.trend) == 7
    assert stats.trend[-1].total == 3
    assert stats.trend[-2].failed == 1


@pytest.mark.asyncio
async def test_statistics_of_empty_repository(repo):
    stats = await collect_statistics(repo)
    assert stats.status_counts == {}
    assert stats.average_processing_time is None
    assert all(point.total == 0 for point in stats.trend)
