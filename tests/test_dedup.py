"""
Unit Tests for hash-based notification deduplication.
"""

from standup.dedup import (
    DEDUP_KEY_PREFIX,
    NotificationDeduplicator,
    build_dedup_key,
    canonicalize,
    hash_payload,
)
from standup.kv_store import InMemoryKVStore
from tests.conftest import FakeClock, async_test


class TestHashing:

    def test_key_order_does_not_change_hash(self):
        assert hash_payload({"a": 1, "b": [1, 2]}) == hash_payload({"b": [1, 2], "a": 1})

    def test_content_change_changes_hash(self):
        assert hash_payload({"remaining": 10}) != hash_payload({"remaining": 9})

    def test_strings_pass_through(self):
        assert canonicalize("summary text") == "summary text"

    def test_build_key(self):
        assert build_dedup_key("collection-summary", "sprint-42") == "collection-summary:sprint-42"


class TestNotificationDeduplicator:

    @async_test
    async def test_first_send_is_not_duplicate(self):
        dedup = NotificationDeduplicator(InMemoryKVStore())
        assert await dedup.is_duplicate_payload("k", {"x": 1}) is False

    @async_test
    async def test_same_payload_is_duplicate(self):
        dedup = NotificationDeduplicator(InMemoryKVStore())
        await dedup.is_duplicate_payload("k", {"x": 1})
        assert await dedup.is_duplicate_payload("k", {"x": 1}) is True

    @async_test
    async def test_changed_payload_reenables_within_window(self):
        kv = InMemoryKVStore()
        dedup = NotificationDeduplicator(kv)
        await dedup.is_duplicate_payload("k", {"x": 1})
        assert await dedup.is_duplicate_payload("k", {"x": 2}) is False
        assert await kv.get(DEDUP_KEY_PREFIX + "k") == hash_payload({"x": 2})
        assert await dedup.is_duplicate_payload("k", {"x": 2}) is True

    @async_test
    async def test_expired_entry_is_not_duplicate(self):
        clock = FakeClock()
        dedup = NotificationDeduplicator(InMemoryKVStore(clock=clock), ttl_seconds=60)
        await dedup.is_duplicate_payload("k", "same")
        clock.advance(61)
        assert await dedup.is_duplicate_payload("k", "same") is False

    @async_test
    async def test_keys_are_independent(self):
        dedup = NotificationDeduplicator(InMemoryKVStore())
        await dedup.is_duplicate_payload("a", "same")
        assert await dedup.is_duplicate_payload("b", "same") is False
