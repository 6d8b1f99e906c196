"""Bounded monitor node: race detectors against a timer."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..config import MonitorSettings
from ..contracts import NodeOutcome
from ..errors import ExternalLookupFailed
from ..polling import CANCELLED, DETECTED, poll_until
from ..presence import SignalDetector, StaffPresenceDetector
from .base import NodeContext, NodeRunner

logger = logging.getLogger(__name__)

STAFF_SIGNAL = "staff"
SATISFACTION_SIGNAL = "user_satisfaction"
ESCALATION_SIGNAL = "escalation"


def clamp_duration(value: Any, settings: MonitorSettings) -> float:
    """Clamp a configured duration into ``[min_duration, max_duration]``."""
    try:
        duration = float(value)
    except (TypeError, ValueError):
        duration = settings.default_duration
    return min(max(duration, settings.min_duration), settings.max_duration)


class MonitorNodeRunner(NodeRunner):
    """Watch a session until a signal shows up, the deadline passes or it is cancelled.

    Node config:

    ``duration``
        seconds to watch, clamped into the configured bounds.
    ``detect_staff`` / ``detect_user_satisfaction`` / ``detect_escalation``
        which detectors take part; all default to on.

    The outcome label is ``detected`` (with ``output["signal"]`` naming the
    detector), ``timeout`` or ``cancelled``.
    """

    node_type = "monitor"
    background = True

    def __init__(
        self,
        presence: Optional[StaffPresenceDetector] = None,
        satisfaction: Optional[SignalDetector] = None,
        escalation: Optional[SignalDetector] = None,
        settings: Optional[MonitorSettings] = None,
    ) -> None:
        self._presence = presence
        self._satisfaction = satisfaction
        self._escalation = escalation
        self._settings = settings or MonitorSettings()

    def _enabled(self, config: Dict[str, Any]) -> List[Tuple[str, Any]]:
        enabled = []
        if config.get("detect_staff", True) and self._presence is not None:
            enabled.append((STAFF_SIGNAL, self._presence))
        if config.get("detect_user_satisfaction", True) and self._satisfaction is not None:
            enabled.append((SATISFACTION_SIGNAL, self._satisfaction))
        if config.get("detect_escalation", True) and self._escalation is not None:
            enabled.append((ESCALATION_SIGNAL, self._escalation))
        return enabled

    async def run(self, context: NodeContext) -> NodeOutcome:
        session_id = context.session_id or context.trigger_data.get("session_id")
        if not session_id:
            return NodeOutcome.failure("monitor node requires a session_id")

        duration = clamp_duration(
            context.config.get("duration", self._settings.default_duration), self._settings
        )
        interval = self._settings.poll_interval
        detectors = self._enabled(context.config)
        if not detectors:
            logger.warning(
                f"Monitor {context.node.id} of flow {context.flow_name} has no detectors enabled"
            )

        async def check(elapsed: float) -> Optional[Dict[str, Any]]:
            # only activity since the monitor started counts
            window = max(elapsed, interval / 10)
            error: Optional[ExternalLookupFailed] = None
            for name, detector in detectors:
                try:
                    if name == STAFF_SIGNAL:
                        activity = await detector.has_staff_activity(session_id, window)
                        if activity.has_staff:
                            return {
                                "signal": name,
                                "staff_user_id": activity.staff_user_id,
                                "last_activity_at": activity.last_activity_at.isoformat()
                                if activity.last_activity_at
                                else None,
                            }
                    else:
                        signal = await detector.detect(session_id, window)
                        if signal.detected:
                            return {"signal": name, **signal.detail}
                except ExternalLookupFailed as exc:
                    error = error or exc
            if error is not None:
                raise error
            return None

        logger.info(
            f"Monitor {context.node.id} watching session {session_id} for {duration}s"
        )
        result = await poll_until(check, duration, interval, context.token)
        elapsed = round(result.elapsed, 3)

        if result.status == DETECTED:
            logger.info(
                f"Monitor {context.node.id}: {result.value['signal']} detected after {elapsed}s"
            )
            return NodeOutcome.success("detected", elapsed_seconds=elapsed, **result.value)
        if result.status == CANCELLED:
            logger.info(f"Monitor {context.node.id} cancelled after {elapsed}s")
            return NodeOutcome.cancelled(
                result.cancel_reason or "cancelled", elapsed_seconds=elapsed
            )

        output: Dict[str, Any] = {
            "elapsed_seconds": elapsed,
            "duration": duration,
            "polls": result.polls,
        }
        if result.all_polls_failed:
            output["reason"] = f"every lookup failed: {result.failures[-1]}"
        elif result.failures:
            output["failed_polls"] = len(result.failures)
        logger.info(f"Monitor {context.node.id} timed out after {elapsed}s")
        return NodeOutcome.success("timeout", **output)
