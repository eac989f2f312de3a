"""Short-term tier - bounded key/value context with oldest-first eviction."""

from typing import Any

from cortex.core.logging import get_logger
from cortex.memory.base import MemoryTier
from cortex.memory.types import MISSING, ContextEntry, SnapshotKind, now_ms

logger = get_logger("memory.short_term")


class ShortTermTier(MemoryTier):
    """Recent context keyed by name.

    Dict order tracks write order: a rewrite moves the key to the end, so
    sorting by timestamp with a stable sort breaks ties by insertion order.
    """

    name = "short_term"
    kinds = (SnapshotKind.SHORT_TERM,)

    def __init__(self, max_entries: int = 50):
        super().__init__()
        self.max_entries = max_entries
        self._entries: dict[str, ContextEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not MISSING

    def keys(self) -> list[str]:
        return list(self._entries)

    def set(
        self,
        key: str,
        value: Any,
        ttl_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
        now: int | None = None,
    ) -> list[str]:
        """Store a value and return the keys evicted to stay within capacity."""
        now = now_ms() if now is None else now
        self._entries.pop(key, None)
        self._entries[key] = ContextEntry(
            key=key,
            value=value,
            timestamp=now,
            expires_at=now + ttl_ms if ttl_ms is not None else None,
            metadata=metadata,
        )
        self.touch()

        self.purge_expired(now)
        return self._evict_overflow()

    def get(self, key: str, now: int | None = None) -> Any:
        """Latest value for ``key``, or MISSING (expired entries read as absent)."""
        entry = self._entries.get(key)
        if entry is None:
            return MISSING
        if entry.is_expired(now_ms() if now is None else now):
            return MISSING
        return entry.value

    def entry(self, key: str) -> ContextEntry | None:
        return self._entries.get(key)

    def remove(self, key: str) -> bool:
        if self._entries.pop(key, None) is None:
            return False
        self.touch()
        return True

    def purge_expired(self, now: int | None = None) -> int:
        """Drop expired entries, return how many were removed."""
        now = now_ms() if now is None else now
        expired = [k for k, e in self._entries.items() if e.is_expired(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            self.touch()
            logger.debug(f"Purged {len(expired)} expired context entries")
        return len(expired)

    def _evict_overflow(self) -> list[str]:
        overflow = len(self._entries) - self.max_entries
        if overflow <= 0:
            return []

        oldest = sorted(self._entries.values(), key=lambda e: e.timestamp)[:overflow]
        evicted = [e.key for e in oldest]
        for key in evicted:
            del self._entries[key]
        self.touch()
        logger.debug(f"Evicted {len(evicted)} short-term entries: {evicted}")
        return evicted

    # Snapshot handling

    def snapshot(self, kind: SnapshotKind) -> dict[str, Any]:
        return {key: entry.to_dict() for key, entry in self._entries.items()}

    def restore(self, kind: SnapshotKind, data: Any) -> None:
        entries = [ContextEntry.from_dict(key, value) for key, value in data.items()]
        # Stored order may not be write order; rebuild it from timestamps.
        entries.sort(key=lambda e: e.timestamp)
        self._entries = {e.key: e for e in entries}
        self.clean(kind)
        self._evict_overflow()

    def reset(self, kind: SnapshotKind) -> None:
        self._entries = {}
        self.clean(kind)
