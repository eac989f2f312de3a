"""Episodic tier - chronological conversation log with summary compaction."""

from collections.abc import Callable, Sequence
from typing import Any

from cortex.core.logging import get_logger
from cortex.memory.base import MemoryTier
from cortex.memory.summarizer import summarize
from cortex.memory.types import ConversationEntry, SnapshotKind, Summary, now_ms

logger = get_logger("memory.episodic")

Summarizer = Callable[[Sequence[ConversationEntry]], Summary]


class EpisodicTier(MemoryTier):
    """Append-only conversation log.

    Once the live log reaches ``max_entries + threshold`` the oldest entries
    are compacted, ``threshold`` at a time, into Summary records until the
    live log is back down to ``max_entries``. Summaries form a ring of at
    most ``max_summaries``.
    """

    name = "episodic"
    kinds = (SnapshotKind.EPISODIC, SnapshotKind.SUMMARIES)

    def __init__(
        self,
        max_entries: int = 100,
        threshold: int = 20,
        max_summaries: int = 500,
        summarizer: Summarizer = summarize,
    ):
        super().__init__()
        self.max_entries = max_entries
        self.threshold = threshold
        self.max_summaries = max_summaries
        self._summarize = summarizer
        self._entries: list[ConversationEntry] = []
        self._summaries: list[Summary] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[ConversationEntry]:
        return list(self._entries)

    @property
    def summaries(self) -> list[Summary]:
        return list(self._summaries)

    @property
    def summarized_count(self) -> int:
        """Conversations represented by retained summaries."""
        return sum(s.conversation_count for s in self._summaries)

    def append(self, entry: ConversationEntry) -> list[Summary]:
        """Add an entry, compacting if the trigger is reached.

        Returns the summaries produced by this call.
        """
        self._entries.append(entry)
        self.touch(SnapshotKind.EPISODIC)
        return self.compact()

    def compact(self) -> list[Summary]:
        """Compact the oldest entries while the live log is over its trigger."""
        if len(self._entries) < self.max_entries + self.threshold:
            return []

        produced = []
        while len(self._entries) > self.max_entries:
            batch_size = min(self.threshold, len(self._entries) - self.max_entries)
            batch = self._entries[:batch_size]
            try:
                summary = self._summarize(batch)
            except Exception as e:
                logger.warning(f"Summarizer failed, keeping degraded summary: {e}")
                summary = Summary(conversation_count=batch_size, timestamp=now_ms(), error=True)
            produced.append(summary)
            self._summaries.append(summary)
            del self._entries[:batch_size]
            logger.info(f"Compacted {batch_size} conversation entries into a summary")

        if len(self._summaries) > self.max_summaries:
            dropped = len(self._summaries) - self.max_summaries
            del self._summaries[:dropped]
            logger.debug(f"Dropped {dropped} oldest summaries")

        self.touch(SnapshotKind.EPISODIC)
        self.touch(SnapshotKind.SUMMARIES)
        return produced

    def tail(
        self, n: int, include_summaries: bool = True
    ) -> list[ConversationEntry | Summary]:
        """Most recent ``n`` items, oldest first.

        Live entries come first in priority; when there are fewer than ``n``
        and summaries are requested, the most recent summaries fill the gap
        and are placed before the live entries.
        """
        if n <= 0:
            return []

        live: list[ConversationEntry | Summary] = list(self._entries[-n:])
        if not include_summaries or len(live) >= n:
            return live

        gap = min(n - len(live), len(self._summaries))
        if gap == 0:
            return live
        return [*self._summaries[-gap:], *live]

    def search(self, text: str, limit: int = 10) -> list[ConversationEntry]:
        """Case-insensitive substring search over live entries, newest first."""
        needle = text.lower()
        matches = [e for e in reversed(self._entries) if needle in e.content.lower()]
        return matches[:limit]

    def by_conversation(self, conversation_id: str) -> list[ConversationEntry]:
        return [e for e in self._entries if e.conversation_id == conversation_id]

    def find(self, entry_id: str) -> ConversationEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def update_importance(self, entry_id: str, importance: int) -> bool:
        """Re-rank a live entry. Compacted entries can no longer be updated."""
        entry = self.find(entry_id)
        if entry is None:
            return False
        entry.importance = importance
        self.touch(SnapshotKind.EPISODIC)
        return True

    def related(self, entry_id: str) -> list[ConversationEntry]:
        """Live entries listed in ``entry_id``'s related ids, in log order."""
        entry = self.find(entry_id)
        if entry is None or not entry.related_ids:
            return []
        wanted = set(entry.related_ids)
        return [e for e in self._entries if e.id in wanted]

    # Snapshot handling

    def snapshot(self, kind: SnapshotKind) -> list[dict[str, Any]]:
        if kind == SnapshotKind.SUMMARIES:
            return [s.to_dict() for s in self._summaries]
        return [e.to_dict() for e in self._entries]

    def restore(self, kind: SnapshotKind, data: Any) -> None:
        if kind == SnapshotKind.SUMMARIES:
            summaries = [Summary.from_dict(item) for item in data]
            self._summaries = summaries[-self.max_summaries:]
        else:
            self._entries = [ConversationEntry.from_dict(item) for item in data]
        self.clean(kind)

    def reset(self, kind: SnapshotKind) -> None:
        if kind == SnapshotKind.SUMMARIES:
            self._summaries = []
        else:
            self._entries = []
        self.clean(kind)
