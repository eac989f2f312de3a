"""
Memory tier and persistence interfaces.
"""

from abc import ABC, abstractmethod
from typing import Any

from cortex.core.errors import CorruptSnapshotError
from cortex.memory.types import SnapshotKind


class PersistenceAdapter(ABC):
    """Durable storage for tier snapshots.

    Snapshots are plain JSON-compatible structures produced by
    ``MemoryTier.snapshot``. Implementations raise ``StorageIOError`` when the
    store is unreachable and ``CorruptSnapshotError`` when stored data cannot
    be decoded.
    """

    name: str = "abstract"

    async def connect(self) -> None:
        """Prepare the backing store. No-op by default."""
        return None

    async def close(self) -> None:
        """Release backing resources. No-op by default."""
        return None

    @property
    @abstractmethod
    def location(self) -> str:
        """Human-readable location of the backing store."""
        ...

    @abstractmethod
    async def load(self, kind: SnapshotKind) -> Any | None:
        """Load a snapshot, or None if it was never saved."""
        ...

    @abstractmethod
    async def save(self, kind: SnapshotKind, data: Any) -> float:
        """Replace a snapshot, return its new modification time."""
        ...

    @abstractmethod
    async def modified_at(self, kind: SnapshotKind) -> float | None:
        """Modification time of a snapshot, or None if absent."""
        ...


class MemoryTier(ABC):
    """In-memory state of one tier plus its snapshot bookkeeping."""

    name: str = "tier"
    kinds: tuple[SnapshotKind, ...] = ()

    def __init__(self) -> None:
        self.dirty_kinds: set[SnapshotKind] = set()
        self.loaded_at: dict[SnapshotKind, float | None] = {kind: None for kind in self.kinds}

    @abstractmethod
    def snapshot(self, kind: SnapshotKind) -> Any:
        """Serialize the state backing ``kind``."""
        ...

    @abstractmethod
    def restore(self, kind: SnapshotKind, data: Any) -> None:
        """Replace the state backing ``kind`` from a snapshot."""
        ...

    @abstractmethod
    def reset(self, kind: SnapshotKind) -> None:
        """Drop the state backing ``kind`` to its initial empty value."""
        ...

    def load(self, kind: SnapshotKind, data: Any) -> None:
        """Restore from a snapshot, translating shape errors to CorruptSnapshotError."""
        try:
            self.restore(kind, data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            self.reset(kind)
            raise CorruptSnapshotError(f"{self.name}/{kind.value}: {e}") from e

    @property
    def dirty(self) -> bool:
        """True while some snapshot of this tier has unsaved changes."""
        return bool(self.dirty_kinds)

    def touch(self, kind: SnapshotKind | None = None) -> None:
        """Mark one snapshot (default: all of them) as changed."""
        if kind is None:
            self.dirty_kinds.update(self.kinds)
        else:
            self.dirty_kinds.add(kind)

    def clean(self, kind: SnapshotKind) -> None:
        self.dirty_kinds.discard(kind)

    def mark_loaded(self, kind: SnapshotKind, modified_at: float | None) -> None:
        self.loaded_at[kind] = modified_at

    def is_stale(self, kind: SnapshotKind, modified_at: float | None) -> bool:
        """True when the stored snapshot is newer than what this tier holds."""
        if modified_at is None:
            return False
        loaded = self.loaded_at.get(kind)
        return loaded is None or modified_at > loaded
