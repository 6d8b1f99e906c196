"""Alert escalation monitor.

Races staff activity in a session against a deadline for one alert. If a
staff member speaks first the alert is closed on their behalf; otherwise the
alert times out and stays open for the alerting subsystem to escalate.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional

from .config import MonitorSettings
from .contracts import AlertMonitorConfig, AlertResult, utcnow
from .errors import ExternalLookupFailed, InvalidTransition, NotFound
from .polling import CANCELLED, DETECTED, CancelToken, poll_until
from .presence import StaffPresenceDetector
from .stores import AlertStore

logger = logging.getLogger(__name__)


class AlertEscalationMonitor:
    def __init__(
        self,
        presence: StaffPresenceDetector,
        alert_store: AlertStore,
        settings: Optional[MonitorSettings] = None,
    ) -> None:
        self._presence = presence
        self._alert_store = alert_store
        self._settings = settings or MonitorSettings()
        self._tokens: Dict[str, CancelToken] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    async def monitor_alert_handling(
        self, config: AlertMonitorConfig, token: Optional[CancelToken] = None
    ) -> AlertResult:
        """Watch ``config.session_id`` until staff responds or the deadline passes."""
        if not config.enabled:
            return AlertResult(
                alert_id=config.alert_id, status="timeout", reason="monitoring disabled"
            )

        token = token or CancelToken()
        interval = self._settings.poll_interval

        async def check(elapsed: float):
            activity = await self._presence.has_staff_activity(
                config.session_id, max(elapsed, interval / 10)
            )
            return activity if activity.has_staff else None

        logger.info(
            f"Watching alert {config.alert_id} in session {config.session_id} "
            f"for {config.monitoring_duration}s"
        )
        result = await poll_until(check, config.monitoring_duration, interval, token)

        if result.status == CANCELLED:
            return AlertResult(
                alert_id=config.alert_id,
                status="cancelled",
                reason=result.cancel_reason or "cancelled",
            )
        if result.status != DETECTED:
            reason = f"no staff response within {config.monitoring_duration}s"
            if result.all_polls_failed:
                reason += f"; every lookup failed: {result.failures[-1]}"
            logger.info(f"Alert {config.alert_id} timed out: {reason}")
            return AlertResult(alert_id=config.alert_id, status="timeout", reason=reason)

        activity = result.value
        response_time = round(result.elapsed, 3)
        reason = f"staff {activity.staff_user_id} responded in session"
        failure = "alert store refused to close the alert"
        try:
            closed = await self._alert_store.close_alert(
                config.alert_id, activity.staff_user_id, response_time, reason
            )
        except (ExternalLookupFailed, NotFound) as exc:
            logger.error(f"Closing alert {config.alert_id} failed: {exc.message}")
            closed = False
            failure = f"closing the alert failed: {exc.message}"
        if not closed:
            return AlertResult(
                alert_id=config.alert_id,
                status="timeout",
                handled_by=activity.staff_user_id,
                response_time=response_time,
                reason=f"staff responded but {failure}",
            )
        logger.info(
            f"Alert {config.alert_id} resolved by {activity.staff_user_id} after {response_time}s"
        )
        return AlertResult(
            alert_id=config.alert_id,
            status="resolved",
            handled_by=activity.staff_user_id,
            handled_at=activity.last_activity_at or utcnow(),
            response_time=response_time,
            reason=reason,
        )

    def start(self, config: AlertMonitorConfig) -> asyncio.Task:
        """Run :meth:`monitor_alert_handling` in the background."""
        if config.alert_id in self._tasks:
            raise InvalidTransition(f"Alert {config.alert_id} is already being monitored")
        token = CancelToken()
        self._tokens[config.alert_id] = token
        task = asyncio.create_task(self.monitor_alert_handling(config, token))
        self._tasks[config.alert_id] = task
        task.add_done_callback(lambda _: self._forget(config.alert_id, task))
        return task

    def _forget(self, alert_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(alert_id) is task:
            del self._tasks[alert_id]
            self._tokens.pop(alert_id, None)

    def cancel(self, alert_id: str, reason: str = "cancelled") -> bool:
        token = self._tokens.get(alert_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    async def wait(self, alert_id: str) -> AlertResult:
        task = self._tasks.get(alert_id)
        if task is None:
            raise NotFound(f"Alert {alert_id} is not being monitored")
        return await task

    def monitored(self) -> List[str]:
        return list(self._tasks)

    async def shutdown(self) -> None:
        for token in list(self._tokens.values()):
            token.cancel("shutdown")
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.wait(tasks)
