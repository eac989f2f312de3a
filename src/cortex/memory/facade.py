"""Memory facade - the single entry point collaborators call.

Every operation awaits a (throttled) refresh first, then reads or mutates
the relevant tier. A mutation and the persistence flush that follows it run
under that tier's lock. Persistence failures never fail the call: the
in-memory tier keeps the change and the result reports degraded durability.
A write that was not flushed is lost if the process exits before a later
flush succeeds.
"""

import asyncio
import json
from collections import deque
from collections.abc import Callable, Mapping
from typing import Any

from cortex.core.config import Settings
from cortex.core.errors import IssueKind, MemoryIssue, StorageIOError, WriteResult
from cortex.core.logging import get_logger
from cortex.memory.backends import create_adapter
from cortex.memory.base import MemoryTier, PersistenceAdapter
from cortex.memory.episodic import EpisodicTier
from cortex.memory.refresh import RefreshController, RefreshReport
from cortex.memory.semantic import SemanticTier
from cortex.memory.short_term import ShortTermTier
from cortex.memory.types import (
    MISSING,
    ConversationEntry,
    Direction,
    KnowledgeEntry,
    MemoryStatus,
    Relationship,
    Role,
    Summary,
    now_ms,
)

logger = get_logger("memory.facade")

RECENT_CONTEXT_KEY = "last_query_context"
CONVERSATION_COUNT_KEY = "conversation_count"
RECENT_CONTEXT_SIZE = 5
MAX_TRACKED_ISSUES = 100


def unstorable_reason(value: Any) -> str | None:
    """Why ``value`` cannot be persisted as UTF-8 JSON, or None if it can."""
    try:
        json.dumps(value, ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as e:
        return str(e)
    return None


class TieredMemory:
    """Short-term, episodic and semantic memory behind one interface.

    Construct one per process and pass it to the collaborators that need it.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        max_short_term_entries: int = 50,
        max_episodic_entries: int = 100,
        max_summarized_entries: int = 500,
        summarization_threshold: int = 20,
        refresh_interval_ms: int = 10_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.adapter = adapter
        self.short_term = ShortTermTier(max_entries=max_short_term_entries)
        self.episodic = EpisodicTier(
            max_entries=max_episodic_entries,
            threshold=summarization_threshold,
            max_summaries=max_summarized_entries,
        )
        self.semantic = SemanticTier()
        self.tiers: list[MemoryTier] = [self.short_term, self.episodic, self.semantic]
        self._locks = {tier.name: asyncio.Lock() for tier in self.tiers}
        self.refresher = RefreshController(
            adapter,
            self.tiers,
            self._locks,
            interval_ms=refresh_interval_ms,
            clock=clock,
        )
        self._issues: deque[MemoryIssue] = deque(maxlen=MAX_TRACKED_ISSUES)
        self._opened = False

    @classmethod
    def from_settings(cls, settings: Settings, **overrides: Any) -> "TieredMemory":
        return cls(
            create_adapter(settings),
            max_short_term_entries=settings.max_short_term_entries,
            max_episodic_entries=settings.max_episodic_entries,
            max_summarized_entries=settings.max_summarized_entries,
            summarization_threshold=settings.summarization_threshold,
            refresh_interval_ms=settings.refresh_interval_ms,
            **overrides,
        )

    # Lifecycle

    async def open(self) -> RefreshReport:
        """Connect storage and load every tier.

        Storage that cannot be opened leaves the store in in-memory mode.
        """
        try:
            await self.adapter.connect()
        except StorageIOError as e:
            logger.error(f"Memory storage unavailable, running in-memory only: {e}")
            self._record([MemoryIssue(IssueKind.IO_ERROR, "store", str(e))])

        report = await self.refresher.refresh(force=True)
        self._record(report.issues)
        self._opened = True
        logger.info(
            f"Memory opened ({self.adapter.name} at {self.adapter.location}): "
            f"{len(self.short_term)} context, {len(self.episodic)} conversations, "
            f"{len(self.episodic.summaries)} summaries, "
            f"{len(self.semantic.categories())} knowledge categories"
        )
        return report

    async def close(self) -> None:
        """Flush pending changes and release storage."""
        if self._opened:
            await self.flush()
        await self.adapter.close()
        self._opened = False

    async def __aenter__(self) -> "TieredMemory":
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # Short-term context

    async def store_context(
        self,
        key: str,
        value: Any,
        ttl_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        """Store a context value; evicts the oldest entries when over capacity.

        Values that cannot be persisted as JSON are rejected and leave the
        tier untouched.
        """
        reason = unstorable_reason([key, value, metadata])
        if reason is not None:
            return self._rejected(f"Context value for '{key}' cannot be stored: {reason}")

        await self._refresh()
        async with self._locks[self.short_term.name]:
            evicted = self.short_term.set(key, value, ttl_ms=ttl_ms, metadata=metadata)
            issues = []
            if evicted:
                issues.append(
                    MemoryIssue(
                        IssueKind.CAPACITY_EVENT,
                        self.short_term.name,
                        f"evicted {len(evicted)} oldest entries",
                    )
                )
            issues.extend(await self._persist(self.short_term))
        return self._result(issues)

    async def get_context(self, key: str, default: Any = None) -> Any:
        await self._refresh()
        value = self.short_term.get(key)
        return default if value is MISSING else value

    async def forget_context(self, key: str) -> WriteResult:
        await self._refresh()
        async with self._locks[self.short_term.name]:
            if not self.short_term.remove(key):
                return WriteResult(ok=False, error=f"No context entry '{key}'")
            issues = await self._persist(self.short_term)
        return self._result(issues)

    # Episodic conversation history

    async def store_conversation(
        self, entry: ConversationEntry | Mapping[str, Any]
    ) -> WriteResult:
        """Append a conversation turn, compacting old turns when needed.

        ``entry`` may be a mapping with ``role``, ``content`` and optional
        ``timestamp``, ``metadata``, ``id`` and ``related_ids``; a missing
        timestamp means now.
        """
        if not isinstance(entry, ConversationEntry):
            try:
                entry = ConversationEntry.from_dict(dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                return self._rejected(f"Invalid conversation entry: {e}")

        reason = unstorable_reason(entry.to_dict())
        if reason is not None:
            return self._rejected(f"Invalid conversation entry: {reason}")

        await self._refresh()
        async with self._locks[self.episodic.name]:
            produced = self.episodic.append(entry)
            issues = self._compaction_issues(produced)
            issues.extend(await self._persist(self.episodic))
        return self._result(issues)

    async def get_conversation_history(
        self, limit: int = 10, include_summaries: bool = True
    ) -> list[ConversationEntry | Summary]:
        """Recent turns, oldest first, preceded by summaries when short of ``limit``."""
        await self._refresh()
        return self.episodic.tail(limit, include_summaries=include_summaries)

    async def get_recent_conversations(self, limit: int = 10) -> list[ConversationEntry | Summary]:
        return await self.get_conversation_history(limit, include_summaries=True)

    async def search_conversations(self, text: str, limit: int = 10) -> list[ConversationEntry]:
        await self._refresh()
        return self.episodic.search(text, limit=limit)

    async def update_importance(self, entry_id: str, importance: int) -> WriteResult:
        """Re-rank a live conversation entry."""
        await self._refresh()
        async with self._locks[self.episodic.name]:
            if not self.episodic.update_importance(entry_id, importance):
                return WriteResult(ok=False, error=f"No live conversation entry '{entry_id}'")
            issues = await self._persist(self.episodic)
        return self._result(issues)

    async def get_related_conversations(self, entry_id: str) -> list[ConversationEntry]:
        await self._refresh()
        return self.episodic.related(entry_id)

    # Semantic knowledge

    async def store_knowledge(
        self,
        category: str,
        topic: str,
        value: Any,
        confidence: float = 1.0,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        """Insert or replace the fact for (category, topic)."""
        reason = unstorable_reason([category, topic, value, source, metadata])
        if reason is not None:
            return self._rejected(f"Knowledge {category}/{topic} cannot be stored: {reason}")

        await self._refresh()
        async with self._locks[self.semantic.name]:
            self.semantic.store(
                category, topic, value, confidence=confidence, source=source, metadata=metadata
            )
            issues = await self._persist(self.semantic)
        return self._result(issues)

    async def get_knowledge(self, category: str, topic: str, default: Any = None) -> Any:
        await self._refresh()
        value = self.semantic.get(category, topic)
        return default if value is MISSING else value

    async def get_category_knowledge(self, category: str) -> dict[str, Any]:
        await self._refresh()
        return self.semantic.get_category(category)

    async def search_knowledge(self, text: str, limit: int = 10) -> list[KnowledgeEntry]:
        await self._refresh()
        return self.semantic.search(text, limit=limit)

    async def forget_knowledge(self, category: str, topic: str) -> WriteResult:
        await self._refresh()
        async with self._locks[self.semantic.name]:
            if not self.semantic.remove(category, topic):
                return WriteResult(ok=False, error=f"No knowledge for {category}/{topic}")
            issues = await self._persist(self.semantic)
        return self._result(issues)

    async def relate_knowledge(
        self,
        source: tuple[str, str],
        target: tuple[str, str],
        relationship_type: str,
        strength: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> WriteResult:
        """Link two stored (category, topic) entries; relinking updates the link."""
        reason = unstorable_reason([list(source), list(target), relationship_type, metadata])
        if reason is not None:
            return self._rejected(f"Relationship cannot be stored: {reason}")

        await self._refresh()
        async with self._locks[self.semantic.name]:
            relationship = self.semantic.relate(
                source, target, relationship_type, strength=strength, metadata=metadata
            )
            if relationship is None:
                return WriteResult(
                    ok=False,
                    error=f"Cannot relate {'/'.join(source)} to {'/'.join(target)}: "
                    "both entries must exist",
                )
            issues = await self._persist(self.semantic)
        return self._result(issues)

    async def get_knowledge_relationships(
        self,
        category: str,
        topic: str,
        direction: Direction | str = Direction.BOTH,
        relationship_type: str | None = None,
    ) -> list[Relationship]:
        """Links touching (category, topic), strongest first."""
        await self._refresh()
        return self.semantic.relationships(
            (category, topic), direction=Direction(direction), relationship_type=relationship_type
        )

    async def forget_knowledge_relationship(
        self, source: tuple[str, str], target: tuple[str, str], relationship_type: str
    ) -> WriteResult:
        await self._refresh()
        async with self._locks[self.semantic.name]:
            if not self.semantic.unrelate(source, target, relationship_type):
                return WriteResult(ok=False, error=f"No {relationship_type} relationship")
            issues = await self._persist(self.semantic)
        return self._result(issues)

    # Conversation capture hooks

    async def process_before_response(self, user_input: str) -> WriteResult:
        """Record a user turn and keep the last few turns as quick context."""
        result = await self.store_conversation(ConversationEntry(role=Role.USER, content=user_input))
        recent = await self.get_conversation_history(RECENT_CONTEXT_SIZE)
        context = await self.store_context(RECENT_CONTEXT_KEY, [item.to_dict() for item in recent])
        return result.merge(context)

    async def process_after_response(self, response: str) -> WriteResult:
        """Record an assistant turn and count the completed exchange."""
        result = await self.store_conversation(
            ConversationEntry(role=Role.ASSISTANT, content=response)
        )
        count = await self.get_context(CONVERSATION_COUNT_KEY, 0)
        counted = await self.store_context(CONVERSATION_COUNT_KEY, count + 1)
        return result.merge(counted)

    # Status and maintenance

    def get_status(self) -> MemoryStatus:
        return MemoryStatus(
            short_term_entries=len(self.short_term),
            episodic_entries=len(self.episodic),
            summarized_entries=len(self.episodic.summaries),
            summarized_conversations=self.episodic.summarized_count,
            semantic_categories=len(self.semantic.categories()),
            last_refreshed=self.refresher.last_refresh_time,
            backend=self.adapter.name,
            location=self.adapter.location,
            semantic_relationships=self.semantic.relationship_count,
        )

    async def refresh(self, force: bool = False) -> RefreshReport:
        report = await self.refresher.refresh(force=force)
        self._record(report.issues)
        return report

    async def flush(self) -> WriteResult:
        """Retry persistence of every tier with unsaved changes."""
        issues = []
        for tier in self.tiers:
            if tier.dirty:
                async with self._locks[tier.name]:
                    issues.extend(await self._persist(tier))
        return self._result(issues)

    @property
    def issues(self) -> list[MemoryIssue]:
        """Recent non-fatal issues, oldest first."""
        return list(self._issues)

    def drain_issues(self) -> list[MemoryIssue]:
        drained = list(self._issues)
        self._issues.clear()
        return drained

    # Internals

    async def _refresh(self) -> None:
        report = await self.refresher.refresh()
        self._record(report.issues)

    async def _persist(self, tier: MemoryTier) -> list[MemoryIssue]:
        """Save each dirty snapshot of ``tier``. Caller holds the tier lock."""
        issues = []
        for kind in tier.kinds:
            if kind not in tier.dirty_kinds:
                continue
            try:
                modified_at = await self.adapter.save(kind, tier.snapshot(kind))
            except StorageIOError as e:
                logger.warning(f"Keeping {kind.value} in memory only, save failed: {e}")
                issues.append(MemoryIssue(IssueKind.IO_ERROR, tier.name, str(e)))
                continue
            tier.clean(kind)
            tier.mark_loaded(kind, modified_at)
        return issues

    def _compaction_issues(self, produced: list[Summary]) -> list[MemoryIssue]:
        issues = []
        if produced:
            compacted = sum(s.conversation_count for s in produced)
            issues.append(
                MemoryIssue(
                    IssueKind.CAPACITY_EVENT,
                    self.episodic.name,
                    f"compacted {compacted} entries into {len(produced)} summaries",
                )
            )
        for summary in produced:
            if summary.error:
                issues.append(
                    MemoryIssue(
                        IssueKind.SUMMARY_FAILED,
                        self.episodic.name,
                        f"degraded summary for {summary.conversation_count} entries",
                    )
                )
        return issues

    def _record(self, issues: list[MemoryIssue]) -> None:
        self._issues.extend(issues)

    def _rejected(self, error: str) -> WriteResult:
        logger.warning(error)
        return WriteResult(ok=False, error=error)

    def _result(self, issues: list[MemoryIssue]) -> WriteResult:
        self._record(issues)
        return WriteResult(ok=True, issues=issues)


def create_memory(settings: Settings | None = None, **overrides: Any) -> TieredMemory:
    """Build an unopened memory store from settings (environment by default)."""
    return TieredMemory.from_settings(settings or Settings(), **overrides)
