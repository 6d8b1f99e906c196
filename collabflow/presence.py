"""Staff presence and conversation signal detectors backed by the message store."""

from __future__ import annotations

import logging
import time
from datetime import timedelta
from typing import Dict, Generic, Iterable, Optional, Protocol, Tuple, TypeVar

from .constants import STAFF_TYPE_CACHE_TTL
from .contracts import ChatMessage, SignalResult, StaffActivity, utcnow
from .errors import ExternalLookupFailed
from .stores import MessageStore

logger = logging.getLogger(__name__)

V = TypeVar("V")


class StaffPresenceDetector(Protocol):
    async def has_staff_activity(
        self, session_id: str, window_seconds: float
    ) -> StaffActivity:
        """Report whether a staff member acted in the trailing window."""


class SignalDetector(Protocol):
    name: str

    async def detect(self, session_id: str, window_seconds: float) -> SignalResult:
        """Report whether the signal occurred in the trailing window."""


class TTLCache(Generic[V]):
    """Bounded keyed cache whose entries expire after ``ttl`` seconds."""

    def __init__(self, ttl: float, maxsize: int = 1024) -> None:
        self.ttl = ttl
        self.maxsize = maxsize
        self._entries: Dict[str, Tuple[float, V]] = {}

    def get(self, key: str) -> Tuple[bool, Optional[V]]:
        entry = self._entries.get(key)
        if entry is None:
            return False, None
        stored_at, value = entry
        if time.monotonic() - stored_at >= self.ttl:
            del self._entries[key]
            return False, None
        return True, value

    def set(self, key: str, value: V) -> None:
        if key not in self._entries and len(self._entries) >= self.maxsize:
            oldest = min(self._entries, key=lambda k: self._entries[k][0])
            del self._entries[oldest]
        self._entries[key] = (time.monotonic(), value)

    def __len__(self) -> int:
        return len(self._entries)


async def _recent(
    store: MessageStore, session_id: str, window_seconds: float
) -> list[ChatMessage]:
    since = utcnow() - timedelta(seconds=window_seconds)
    try:
        return await store.recent_messages(session_id, since)
    except ExternalLookupFailed:
        raise
    except Exception as exc:
        raise ExternalLookupFailed(
            f"message lookup failed for session {session_id}: {exc}"
        ) from exc


class MessageStoreStaffPresenceDetector:
    """Detect staff activity from recent messages of a session.

    A sender counts as staff when the message is marked as a staff message
    or the directory knows a staff type for the sender. When
    ``staff_type_filter`` is set only those staff types count.
    """

    def __init__(
        self,
        message_store: MessageStore,
        staff_type_filter: Optional[Iterable[str]] = None,
        cache_ttl: float = STAFF_TYPE_CACHE_TTL,
    ) -> None:
        self._store = message_store
        self._filter = set(staff_type_filter or ())
        self._staff_types: TTLCache[Optional[str]] = TTLCache(cache_ttl)

    async def _staff_type(self, user_id: str) -> Optional[str]:
        hit, value = self._staff_types.get(user_id)
        if hit:
            return value
        try:
            value = await self._store.get_staff_type(user_id)
        except ExternalLookupFailed:
            raise
        except Exception as exc:
            raise ExternalLookupFailed(f"staff type lookup failed for {user_id}: {exc}") from exc
        self._staff_types.set(user_id, value)
        return value

    async def _is_staff(self, message: ChatMessage) -> bool:
        if message.sender_type in ("robot", "system"):
            return False
        if message.sender_type == "staff" and not self._filter:
            return True
        staff_type = await self._staff_type(message.sender_id)
        if staff_type is None:
            return message.sender_type == "staff" and not self._filter
        return not self._filter or staff_type in self._filter

    async def has_staff_activity(
        self, session_id: str, window_seconds: float
    ) -> StaffActivity:
        messages = await _recent(self._store, session_id, window_seconds)
        for message in reversed(messages):
            if await self._is_staff(message):
                return StaffActivity(
                    has_staff=True,
                    staff_user_id=message.sender_id,
                    last_activity_at=message.created_at,
                )
        return StaffActivity(has_staff=False)


class KeywordSignalDetector:
    """Detect a signal from keywords in recent user messages."""

    def __init__(self, name: str, message_store: MessageStore, keywords: Iterable[str]) -> None:
        self.name = name
        self._store = message_store
        self._keywords = [k.lower() for k in keywords if k]

    async def detect(self, session_id: str, window_seconds: float) -> SignalResult:
        messages = await _recent(self._store, session_id, window_seconds)
        for message in reversed(messages):
            if message.sender_type != "user":
                continue
            content = message.content.lower()
            hits = [k for k in self._keywords if k in content]
            if hits:
                return SignalResult(
                    detected=True,
                    detail={
                        "message_id": message.message_id,
                        "sender_id": message.sender_id,
                        "keywords": hits,
                    },
                )
        return SignalResult(detected=False)
