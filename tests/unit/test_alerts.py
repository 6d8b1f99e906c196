import asyncio
import time

import pytest

from collabflow.alerts import AlertEscalationMonitor
from collabflow.contracts import AlertMonitorConfig
from collabflow.errors import InvalidTransition
from collabflow.presence import MessageStoreStaffPresenceDetector


@pytest.fixture
def monitor(message_store, alert_store, fast_monitor):
    return AlertEscalationMonitor(
        MessageStoreStaffPresenceDetector(message_store), alert_store, fast_monitor
    )


@pytest.mark.asyncio
async def test_staff_response_resolves_alert(
    monitor, message_store, alert_store, staff_message, fast_monitor
):
    alert_store.open_alert("a-1", "S1")
    started = time.monotonic()
    task = monitor.start(AlertMonitorConfig(alert_id="a-1", session_id="S1", monitoring_duration=2))

    await asyncio.sleep(0.1)
    replied_at = time.monotonic() - started
    message_store.add_message(staff_message("S1"))
    result = await task

    assert result.status == "resolved"
    assert result.handled_by == "staff-1"
    # seen at the first poll after the reply, give or take scheduling
    assert replied_at - 0.02 <= result.response_time <= replied_at + fast_monitor.poll_interval + 0.05
    assert alert_store.closed[0][:2] == ("a-1", "staff-1")
    assert (await alert_store.get_alert("a-1")).status == "closed"


@pytest.mark.asyncio
async def test_no_response_times_out(monitor, alert_store):
    alert_store.open_alert("a-1", "S1")
    started = time.monotonic()
    result = await monitor.monitor_alert_handling(
        AlertMonitorConfig(alert_id="a-1", session_id="S1", monitoring_duration=0.2)
    )
    assert result.status == "timeout"
    assert time.monotonic() - started < 0.2 + 0.05 + 0.3
    assert alert_store.closed == []


@pytest.mark.asyncio
async def test_disabled_monitoring_returns_at_once(monitor):
    result = await monitor.monitor_alert_handling(
        AlertMonitorConfig(alert_id="a-1", session_id="S1", monitoring_duration=60, enabled=False)
    )
    assert result.status == "timeout"
    assert result.reason == "monitoring disabled"


@pytest.mark.asyncio
async def test_unreachable_store_reports_failure_reason(monitor, message_store):
    message_store.fail = True
    result = await monitor.monitor_alert_handling(
        AlertMonitorConfig(alert_id="a-1", session_id="S1", monitoring_duration=0.15)
    )
    assert result.status == "timeout"
    assert "message store unavailable" in result.reason


@pytest.mark.asyncio
async def test_close_failure_is_not_reported_as_resolved(
    monitor, message_store, alert_store, staff_message
):
    task = monitor.start(
        AlertMonitorConfig(alert_id="unknown", session_id="S1", monitoring_duration=1)
    )
    await asyncio.sleep(0.1)
    message_store.add_message(staff_message("S1"))
    result = await task
    assert result.status == "timeout"
    assert result.handled_by == "staff-1"
    assert "closing the alert failed" in result.reason


@pytest.mark.asyncio
async def test_cancel_stops_background_monitor(monitor, alert_store):
    alert_store.open_alert("a-1", "S1")
    config = AlertMonitorConfig(alert_id="a-1", session_id="S1", monitoring_duration=3)
    monitor.start(config)
    with pytest.raises(InvalidTransition):
        monitor.start(config)

    assert monitor.cancel("a-1", "alert closed manually")
    result = await monitor.wait("a-1")

    assert result.status == "cancelled"
    assert result.reason == "alert closed manually"
    assert not monitor.cancel("a-2")
