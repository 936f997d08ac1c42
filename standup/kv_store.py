"""
Key-Value Store

Contract consumed by every state store in the orchestrator:

    get(key) -> Optional[str]
    put(key, value, ttl_seconds)
    delete(key)
    list(prefix, cursor) -> (keys, next_cursor | None)

The store is single-region, eventually consistent and has NO transactions
and NO conditional writes. Callers must treat read-then-write as non-atomic.

Two implementations are provided:
1. InMemoryKVStore - process-local, used by tests and single-instance runs
2. JsonFileKVStore - same semantics, persisted to one JSON file with fsync
"""

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

logger = logging.getLogger("standup.kv_store")

# -----------------------------------------------------------------------------
# Constants
# -----------------------------------------------------------------------------
DEFAULT_LIST_PAGE_SIZE = 1000


# -----------------------------------------------------------------------------
# Contract
# -----------------------------------------------------------------------------
class KVStore(ABC):
    """Abstract non-transactional key-value store with per-key TTL."""

    @abstractmethod
    async def get(self, key: str) -> Optional[str]:
        """Return the stored value, or None when absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        """Store value under key. ttl_seconds=None means no expiry."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Deleting an absent key is not an error."""

    @abstractmethod
    async def list(
        self,
        prefix: str,
        cursor: Optional[str] = None,
    ) -> Tuple[List[str], Optional[str]]:
        """
        List live keys starting with prefix.

        Returns:
            (keys, next_cursor) where next_cursor is None when listing is done
        """

    async def list_all(self, prefix: str) -> List[str]:
        """Follow cursors until the listing is complete."""
        keys: List[str] = []
        cursor: Optional[str] = None
        while True:
            page, cursor = await self.list(prefix, cursor)
            keys.extend(page)
            if cursor is None:
                return keys


# -----------------------------------------------------------------------------
# In-Memory Implementation
# -----------------------------------------------------------------------------
class InMemoryKVStore(KVStore):
    """
    Process-local store.

    Entries are kept as key -> (value, expires_at). Expired entries are
    dropped lazily on access.
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.time,
        page_size: int = DEFAULT_LIST_PAGE_SIZE,
    ):
        self._clock = clock
        self._page_size = page_size
        self._entries: Dict[str, Tuple[str, Optional[float]]] = {}

    def _is_live(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        _, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._entries[key]
            return False
        return True

    async def get(self, key: str) -> Optional[str]:
        if not self._is_live(key):
            return None
        return self._entries[key][0]

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)
        self._on_change()

    async def delete(self, key: str) -> None:
        if self._entries.pop(key, None) is not None:
            self._on_change()

    async def list(
        self,
        prefix: str,
        cursor: Optional[str] = None,
    ) -> Tuple[List[str], Optional[str]]:
        live = sorted(k for k in list(self._entries) if k.startswith(prefix) and self._is_live(k))
        start = int(cursor) if cursor else 0
        end = start + self._page_size
        next_cursor = str(end) if end < len(live) else None
        return live[start:end], next_cursor

    def _on_change(self) -> None:
        """Hook for persistent subclasses."""


# -----------------------------------------------------------------------------
# File-Backed Implementation
# -----------------------------------------------------------------------------
class JsonFileKVStore(InMemoryKVStore):
    """
    InMemoryKVStore persisted to a single JSON file.

    Every mutation rewrites the file via a temp file + fsync + atomic rename.
    Suitable for a single instance only.
    """

    def __init__(
        self,
        path: Path,
        clock: Callable[[], float] = time.time,
        page_size: int = DEFAULT_LIST_PAGE_SIZE,
    ):
        super().__init__(clock=clock, page_size=page_size)
        self._path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self._path.exists():
            return
        with open(self._path, "r") as f:
            try:
                raw = json.load(f)
            except json.JSONDecodeError:
                logger.error(f"KV file is corrupt, starting empty: {self._path}")
                return
        for key, entry in raw.items():
            self._entries[key] = (entry["value"], entry.get("expires_at"))
        logger.info(f"Loaded {len(self._entries)} keys from {self._path}")

    def _on_change(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            key: {"value": value, "expires_at": expires_at}
            for key, (value, expires_at) in self._entries.items()
        }
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            f.write(json.dumps(data))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self._path)


def create_kv_store(backend: str, path: Optional[str] = None) -> KVStore:
    """Build the configured store backend."""
    if backend == "file":
        return JsonFileKVStore(Path(path or "data/kv_store.json"))
    return InMemoryKVStore()
