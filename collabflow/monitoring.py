"""Aggregate statistics over flow instances."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import utcnow
from .persistence import FlowInstance, FlowRepository


class FlowStat(BaseModel):
    flow_name: str
    total: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    average_processing_time: Optional[float] = None


class TrendPoint(BaseModel):
    date: str
    total: int = 0
    completed: int = 0
    failed: int = 0


class FlowStatistics(BaseModel):
    status_counts: Dict[str, int] = Field(default_factory=dict)
    status_processing: Dict[str, Optional[float]] = Field(default_factory=dict)
    average_processing_time: Optional[float] = None
    flow_stats: List[FlowStat] = Field(default_factory=list)
    trend: List[TrendPoint] = Field(default_factory=list)


def _average(values: List[int]) -> Optional[float]:
    return round(sum(values) / len(values), 2) if values else None


async def collect_statistics(
    repository: FlowRepository,
    now: Optional[datetime] = None,
    window_days: int = 30,
    trend_days: int = 7,
    top: int = 10,
) -> FlowStatistics:
    """Summarise instances by status, by flow (trailing window) and by day."""
    now = now or utcnow()
    instances = await repository.list_instances()

    status_counts = Counter(i.status for i in instances)
    times: Dict[str, List[int]] = defaultdict(list)
    for instance in instances:
        if instance.processing_time is not None:
            times[instance.status].append(instance.processing_time)
    all_times = [t for values in times.values() for t in values]

    window_start = now - timedelta(days=window_days)
    per_flow: Dict[str, List[FlowInstance]] = defaultdict(list)
    for instance in instances:
        if instance.started_at >= window_start:
            per_flow[instance.flow_name].append(instance)
    flow_stats = [
        FlowStat(
            flow_name=name,
            total=len(rows),
            completed=sum(1 for r in rows if r.status == "completed"),
            failed=sum(1 for r in rows if r.status == "failed"),
            cancelled=sum(1 for r in rows if r.status == "cancelled"),
            average_processing_time=_average(
                [r.processing_time for r in rows if r.processing_time is not None]
            ),
        )
        for name, rows in per_flow.items()
    ]
    flow_stats.sort(key=lambda s: (-s.total, s.flow_name))

    today = now.date()
    days = [today - timedelta(days=offset) for offset in range(trend_days - 1, -1, -1)]
    trend = {day: TrendPoint(date=day.isoformat()) for day in days}
    for instance in instances:
        point = trend.get(instance.started_at.date())
        if point is None:
            continue
        point.total += 1
        if instance.status == "completed":
            point.completed += 1
        elif instance.status == "failed":
            point.failed += 1

    return FlowStatistics(
        status_counts=dict(status_counts),
        status_processing={status: _average(values) for status, values in times.items()},
        average_processing_time=_average(all_times),
        flow_stats=flow_stats[:top],
        trend=list(trend.values()),
    )
