import pytest

from collabflow.contracts import ChatMessage
from collabflow.errors import ExternalLookupFailed
from collabflow.presence import (
    KeywordSignalDetector,
    MessageStoreStaffPresenceDetector,
    TTLCache,
)


@pytest.mark.asyncio
async def test_staff_message_in_window_is_detected(message_store, staff_message):
    message_store.add_message(staff_message("s-1", ago=10))
    detector = MessageStoreStaffPresenceDetector(message_store)

    activity = await detector.has_staff_activity("s-1", 60)
    assert activity.has_staff
    assert activity.staff_user_id == "staff-1"

    stale = await detector.has_staff_activity("s-1", 5)
    assert not stale.has_staff


@pytest.mark.asyncio
async def test_staff_type_filter_and_robot_exclusion(message_store):
    message_store.register_staff("agent-7", "after_sales")
    message_store.register_staff("agent-8", "community")
    message_store.add_message(
        ChatMessage(message_id="r", session_id="s", sender_id="bot", sender_type="robot")
    )
    message_store.add_message(
        ChatMessage(message_id="a", session_id="s", sender_id="agent-8", sender_type="user")
    )
    detector = MessageStoreStaffPresenceDetector(message_store, ["after_sales"])
    assert not (await detector.has_staff_activity("s", 60)).has_staff

    message_store.add_message(
        ChatMessage(message_id="b", session_id="s", sender_id="agent-7", sender_type="user")
    )
    activity = await detector.has_staff_activity("s", 60)
    assert activity.has_staff
    assert activity.staff_user_id == "agent-7"


@pytest.mark.asyncio
async def test_staff_type_lookups_are_cached(message_store):
    message_store.register_staff("agent-7", "after_sales")
    message_store.add_message(
        ChatMessage(message_id="b", session_id="s", sender_id="agent-7", sender_type="user")
    )
    detector = MessageStoreStaffPresenceDetector(message_store, ["after_sales"])

    for _ in range(3):
        await detector.has_staff_activity("s", 60)
    assert message_store.staff_type_lookups == 1


@pytest.mark.asyncio
async def test_store_failure_surfaces_as_lookup_failure(message_store):
    message_store.fail = True
    detector = MessageStoreStaffPresenceDetector(message_store)
    with pytest.raises(ExternalLookupFailed):
        await detector.has_staff_activity("s", 60)


@pytest.mark.asyncio
async def test_keyword_detector_reads_user_messages_only(message_store, user_message, staff_message):
    message_store.add_message(staff_message("s", ago=1))
    detector = KeywordSignalDetector("user_satisfaction", message_store, ["thanks"])
    assert not (await detector.detect("s", 60)).detected

    message_store.add_message(user_message("s", "Thanks, that solved it"))
    signal = await detector.detect("s", 60)
    assert signal.detected
    assert signal.detail["keywords"] == ["thanks"]


def test_ttl_cache_expiry_and_eviction(monkeypatch):
    now = [100.0]
    monkeypatch.setattr("collabflow.presence.time.monotonic", lambda: now[0])
    cache = TTLCache(ttl=10, maxsize=2)
    cache.set("a", 1)
    assert cache.get("a") == (True, 1)

    now[0] += 11
    assert cache.get("a") == (False, None)

    cache.set("b", 2)
    now[0] += 1
    cache.set("c", 3)
    cache.set("d", 4)
    assert len(cache) == 2
    assert cache.get("b") == (False, None)
