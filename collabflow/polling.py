"""Bounded, cancellable polling race used by monitor nodes and alert monitors."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from .errors import ExternalLookupFailed

logger = logging.getLogger(__name__)

DETECTED = "detected"
TIMEOUT = "timeout"
CANCELLED = "cancelled"


class PollResult(BaseModel):
    """Terminal outcome of one polling race."""

    status: str
    elapsed: float
    value: Any = None
    polls: int = 0
    failures: List[str] = Field(default_factory=list)
    cancel_reason: Optional[str] = None

    @property
    def all_polls_failed(self) -> bool:
        return self.polls > 0 and len(self.failures) == self.polls


class CancelToken:
    """Cooperative cancellation flag that wakes a waiting poller at once."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self, timeout: float) -> bool:
        """Sleep up to ``timeout`` seconds; return ``True`` if cancelled meanwhile."""
        if timeout <= 0:
            return self.cancelled
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True


async def poll_until(
    check: Callable[[float], Awaitable[Any]],
    duration: float,
    interval: float,
    token: Optional[CancelToken] = None,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult:
    """Call ``check`` every ``interval`` seconds until it returns a value.

    ``check`` receives the seconds elapsed since the race started and returns
    ``None`` for "nothing yet". :class:`ExternalLookupFailed` from ``check`` is
    recorded and retried at the next tick. Each check is bounded by
    ``interval`` so the race always ends within ``duration + interval``.
    """

    token = token or CancelToken()
    started = clock()
    deadline = started + duration
    polls = 0
    failures: List[str] = []

    def result(status: str, value: Any = None) -> PollResult:
        return PollResult(
            status=status,
            elapsed=clock() - started,
            value=value,
            polls=polls,
            failures=failures,
            cancel_reason=token.reason if status == CANCELLED else None,
        )

    while True:
        if token.cancelled:
            return result(CANCELLED)
        if clock() >= deadline:
            return result(TIMEOUT)

        polls += 1
        try:
            value = await asyncio.wait_for(check(clock() - started), timeout=interval)
        except ExternalLookupFailed as exc:
            logger.warning(f"Poll {polls} failed: {exc.message}")
            failures.append(exc.message)
            value = None
        except asyncio.TimeoutError:
            logger.warning(f"Poll {polls} exceeded {interval}s")
            failures.append(f"lookup exceeded {interval}s")
            value = None

        if value is not None:
            return result(DETECTED, value)

        remaining = deadline - clock()
        if remaining <= 0:
            continue
        if await token.wait(min(interval, remaining)):
            return result(CANCELLED)
