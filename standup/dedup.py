"""
Dedup / Idempotent Notification Cache

Suppresses re-sending an unchanged notification for one logical entity within
a TTL window. Suppression compares content hashes, not key existence, so a
materially changed payload re-enables the notification inside the same period.
"""

import hashlib
import json
import logging
from typing import Any

from .kv_store import KVStore

logger = logging.getLogger("standup.dedup")

DEDUP_KEY_PREFIX = "dedup:"
DEFAULT_DEDUP_TTL_SECONDS = 24 * 3600


def canonicalize(payload: Any) -> str:
    """Canonical JSON text: sorted keys, compact separators. Strings pass through."""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def hash_payload(payload: Any) -> str:
    """SHA-256 hex digest of the canonicalized payload."""
    return hashlib.sha256(canonicalize(payload).encode("utf-8")).hexdigest()


def build_dedup_key(kind: str, entity_id: str) -> str:
    """Stable per-entity key, e.g. build_dedup_key("collection", "sprint-42")."""
    return f"{kind}:{entity_id}"


class NotificationDeduplicator:
    """Hash-based duplicate detector over the shared KV store."""

    def __init__(self, kv: KVStore, ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS):
        self._kv = kv
        self._ttl = ttl_seconds

    async def is_duplicate(self, key: str, content_hash: str) -> bool:
        """
        Check-and-remember.

        Equal to the stored hash -> True, store untouched.
        Different or absent      -> store new hash with TTL, return False.
        """
        store_key = DEDUP_KEY_PREFIX + key
        existing = await self._kv.get(store_key)
        if existing == content_hash:
            logger.info(f"Duplicate notification suppressed | key={key}")
            return True
        await self._kv.put(store_key, content_hash, self._ttl)
        return False

    async def is_duplicate_payload(self, key: str, payload: Any) -> bool:
        return await self.is_duplicate(key, hash_payload(payload))
