"""Tests for the TieredMemory facade."""

import asyncio
import os
from datetime import datetime
from pathlib import Path

import pytest

from cortex.core.errors import IssueKind, StorageIOError
from cortex.memory import ConversationEntry, Direction, Role, Summary, TieredMemory
from cortex.memory.backends import JsonFileAdapter, SQLiteAdapter
from cortex.memory.types import SnapshotKind


def make_adapter(root: Path, backend: str):
    if backend == "sqlite":
        return SQLiteAdapter(root / "memory.db")
    return JsonFileAdapter(root)


@pytest.fixture
async def open_memory(tmp_path: Path):
    """Factory for opened stores sharing one root; all are closed afterwards."""
    opened: list[TieredMemory] = []

    async def factory(backend: str = "json", **overrides) -> TieredMemory:
        overrides.setdefault("refresh_interval_ms", 0)
        memory = TieredMemory(make_adapter(tmp_path / "memory", backend), **overrides)
        await memory.open()
        opened.append(memory)
        return memory

    yield factory

    for memory in opened:
        await memory.close()


@pytest.fixture
async def memory(open_memory):
    return await open_memory()


# Short-term context


@pytest.mark.asyncio
async def test_store_and_get_context(memory: TieredMemory):
    """A stored context value reads back."""
    result = await memory.store_context("lastQuery", "hello")

    assert result
    assert result.durable
    assert await memory.get_context("lastQuery") == "hello"


@pytest.mark.asyncio
async def test_get_context_is_idempotent(memory: TieredMemory):
    """Reading a key twice without writes returns the same value."""
    await memory.store_context("profile", {"name": "Ada", "langs": ["en"]})

    first = await memory.get_context("profile")
    second = await memory.get_context("profile")
    assert first == second == {"name": "Ada", "langs": ["en"]}


@pytest.mark.asyncio
async def test_get_context_default(memory: TieredMemory):
    """Absent keys return the default; a stored None is still a value."""
    assert await memory.get_context("missing") is None
    assert await memory.get_context("missing", "fallback") == "fallback"

    await memory.store_context("nothing", None)
    assert await memory.get_context("nothing", "fallback") is None


@pytest.mark.asyncio
async def test_context_eviction_bounded(open_memory):
    """Short-term tier never exceeds its capacity and reports evictions."""
    memory = await open_memory(max_short_term_entries=3)

    for i in range(3):
        result = await memory.store_context(f"k{i}", i)
        assert not result.has(IssueKind.CAPACITY_EVENT)

    result = await memory.store_context("k3", 3)
    assert result
    assert result.has(IssueKind.CAPACITY_EVENT)
    assert memory.get_status().short_term_entries == 3
    assert await memory.get_context("k0") is None
    assert await memory.get_context("k3") == 3


@pytest.mark.asyncio
async def test_forget_context(memory: TieredMemory):
    """Forgetting removes the key; forgetting an absent key fails."""
    await memory.store_context("temp", 1)

    assert await memory.forget_context("temp")
    assert await memory.get_context("temp") is None

    result = await memory.forget_context("temp")
    assert not result
    assert "temp" in result.error


class GatedAdapter(JsonFileAdapter):
    """JSON adapter whose first short-term save waits until released."""

    def __init__(self, root: Path):
        super().__init__(root)
        self.started = asyncio.Event()
        self.gate = asyncio.Event()

    async def save(self, kind: SnapshotKind, data):
        if kind == SnapshotKind.SHORT_TERM and not self.gate.is_set():
            self.started.set()
            await self.gate.wait()
        return await super().save(kind, data)


@pytest.mark.asyncio
async def test_concurrent_writes_wait_for_save(tmp_path: Path):
    """A second write to a tier waits until the first one's save finishes."""
    adapter = GatedAdapter(tmp_path / "memory")
    memory = TieredMemory(adapter, refresh_interval_ms=0)
    await memory.open()

    first = asyncio.create_task(memory.store_context("a", 1))
    await asyncio.wait_for(adapter.started.wait(), timeout=1)
    second = asyncio.create_task(memory.store_context("b", 2))
    await asyncio.sleep(0.01)

    assert memory.short_term.keys() == ["a"]
    assert not second.done()

    adapter.gate.set()
    results = await asyncio.gather(first, second)

    assert all(r.durable for r in results)
    assert sorted(memory.short_term.keys()) == ["a", "b"]
    await memory.close()

    reopened = TieredMemory(JsonFileAdapter(tmp_path / "memory"), refresh_interval_ms=0)
    await reopened.open()
    assert await reopened.get_context("a") == 1
    assert await reopened.get_context("b") == 2
    await reopened.close()


# Episodic conversations


@pytest.mark.asyncio
async def test_compaction_through_facade(open_memory):
    """70 turns with max 50 and threshold 20 leave 50 live turns and one summary."""
    memory = await open_memory(max_episodic_entries=50, summarization_threshold=20)

    results = []
    for i in range(70):
        role = Role.USER if i % 2 == 0 else Role.ASSISTANT
        results.append(
            await memory.store_conversation(
                ConversationEntry(role=role, content=f"message {i}", timestamp=1000 + i)
            )
        )

    assert all(results)
    assert [r.has(IssueKind.CAPACITY_EVENT) for r in results].count(True) == 1
    assert results[-1].has(IssueKind.CAPACITY_EVENT)

    status = memory.get_status()
    assert status.episodic_entries == 50
    assert status.summarized_entries == 1
    assert status.summarized_conversations == 20
    assert status.episodic_entries + status.summarized_conversations == 70

    summary = memory.episodic.summaries[0]
    assert summary.start_time == 1000
    assert summary.end_time == 1019
    assert memory.episodic.entries[0].content == "message 20"


@pytest.mark.asyncio
async def test_recent_conversations_summaries_then_live(open_memory):
    """Summaries fill the gap ahead of live turns, oldest first."""
    memory = await open_memory(max_episodic_entries=3, summarization_threshold=1)
    for i in range(5):
        await memory.store_conversation(
            ConversationEntry(role=Role.USER, content=f"m{i}", timestamp=1000 + i)
        )

    recent = await memory.get_recent_conversations(5)

    assert len(recent) == 5
    assert [type(item) for item in recent] == [Summary, Summary] + [ConversationEntry] * 3
    assert [s.start_time for s in recent[:2]] == [1000, 1001]
    assert [e.content for e in recent[2:]] == ["m2", "m3", "m4"]


@pytest.mark.asyncio
async def test_history_without_summaries(open_memory):
    """Summaries can be excluded from history."""
    memory = await open_memory(max_episodic_entries=3, summarization_threshold=1)
    for i in range(5):
        await memory.store_conversation({"role": "user", "content": f"m{i}"})

    history = await memory.get_conversation_history(5, include_summaries=False)
    assert [e.content for e in history] == ["m2", "m3", "m4"]
    assert await memory.get_conversation_history(0) == []


@pytest.mark.asyncio
async def test_store_conversation_from_mapping(memory: TieredMemory):
    """Mappings are accepted; the timestamp defaults to now."""
    result = await memory.store_conversation(
        {"role": "assistant", "content": "Sure.", "metadata": {"model": "x"}}
    )
    assert result

    [entry] = await memory.get_conversation_history()
    assert entry.role == Role.ASSISTANT
    assert entry.metadata == {"model": "x"}
    assert entry.timestamp > 0


@pytest.mark.asyncio
async def test_store_conversation_rejects_invalid(memory: TieredMemory):
    """Bad roles and missing fields are rejected without touching the log."""
    bad_role = await memory.store_conversation({"role": "robot", "content": "beep"})
    no_content = await memory.store_conversation({"role": "user"})

    assert not bad_role
    assert not no_content
    assert "Invalid conversation entry" in bad_role.error
    assert memory.get_status().episodic_entries == 0


@pytest.mark.asyncio
async def test_search_conversations(memory: TieredMemory):
    """Search matches content case-insensitively, newest first."""
    await memory.store_conversation({"role": "user", "content": "Deploy the API", "timestamp": 1})
    await memory.store_conversation({"role": "user", "content": "unrelated", "timestamp": 2})
    await memory.store_conversation({"role": "user", "content": "api docs?", "timestamp": 3})

    found = await memory.search_conversations("API")
    assert [e.content for e in found] == ["api docs?", "Deploy the API"]


# Semantic knowledge


@pytest.mark.asyncio
async def test_store_and_get_knowledge(memory: TieredMemory):
    """Stored knowledge reads back as the same object."""
    value = {"name": "Executive Architect"}
    assert await memory.store_knowledge("agents", "ea", value)

    assert await memory.get_knowledge("agents", "ea") == value
    assert await memory.get_knowledge("agents", "missing", "none") == "none"


@pytest.mark.asyncio
async def test_knowledge_upsert(memory: TieredMemory):
    """Storing the same (category, topic) replaces the value."""
    await memory.store_knowledge("agents", "ea", {"version": 1})
    await memory.store_knowledge("agents", "ea", {"version": 2}, confidence=0.5)

    assert await memory.get_knowledge("agents", "ea") == {"version": 2}
    assert await memory.get_category_knowledge("agents") == {"ea": {"version": 2}}
    assert memory.semantic.entry("agents", "ea").confidence == 0.5


@pytest.mark.asyncio
async def test_search_and_forget_knowledge(memory: TieredMemory):
    """Knowledge can be searched by text and removed."""
    await memory.store_knowledge("tools", "grep", "search text in files")
    await memory.store_knowledge("tools", "sed", "stream editor")

    found = await memory.search_knowledge("search")
    assert [k.topic for k in found] == ["grep"]

    assert await memory.forget_knowledge("tools", "grep")
    assert not await memory.forget_knowledge("tools", "grep")
    assert await memory.get_category_knowledge("tools") == {"sed": "stream editor"}


# Relationships and importance


@pytest.mark.parametrize("backend", ["json", "sqlite"])
@pytest.mark.asyncio
async def test_knowledge_relationships_survive_reopen(open_memory, backend):
    """Links between knowledge entries persist and can be queried by direction."""
    memory = await open_memory(backend)
    await memory.store_knowledge("agents", "ea", "Executive Architect")
    await memory.store_knowledge("agents", "fe", "Frontend Developer")
    result = await memory.relate_knowledge(
        ("agents", "ea"), ("agents", "fe"), "delegates_to", strength=0.8, metadata={"why": "ui"}
    )
    assert result.durable
    await memory.close()

    reopened = await open_memory(backend)
    [link] = await reopened.get_knowledge_relationships("agents", "ea", "outgoing")
    assert link.target == ("agents", "fe")
    assert link.strength == 0.8
    assert link.metadata == {"why": "ui"}
    assert await reopened.get_knowledge_relationships("agents", "ea", Direction.INCOMING) == []
    assert reopened.get_status().semantic_relationships == 1

    assert await reopened.forget_knowledge_relationship(
        ("agents", "ea"), ("agents", "fe"), "delegates_to"
    )
    assert reopened.get_status().semantic_relationships == 0


@pytest.mark.asyncio
async def test_relate_unknown_knowledge(memory: TieredMemory):
    """Both ends of a link must already be stored."""
    await memory.store_knowledge("agents", "ea", "Executive Architect")

    result = await memory.relate_knowledge(("agents", "ea"), ("agents", "qa"), "delegates_to")

    assert not result
    assert "both entries must exist" in result.error
    assert memory.get_status().semantic_relationships == 0


@pytest.mark.asyncio
async def test_forget_knowledge_drops_links(open_memory):
    """Forgetting an entry removes its links from storage as well."""
    memory = await open_memory()
    await memory.store_knowledge("agents", "ea", 1)
    await memory.store_knowledge("agents", "fe", 2)
    await memory.relate_knowledge(("agents", "fe"), ("agents", "ea"), "reports_to")

    await memory.forget_knowledge("agents", "ea")

    reopened = await open_memory()
    assert await reopened.get_knowledge_relationships("agents", "fe") == []


@pytest.mark.parametrize("backend", ["json", "sqlite"])
@pytest.mark.asyncio
async def test_update_importance_persists(open_memory, backend):
    """Re-ranked conversation entries keep their importance across restarts."""
    memory = await open_memory(backend)
    await memory.store_conversation({"role": "user", "content": "remember this"})
    [entry] = await memory.get_conversation_history()

    assert await memory.update_importance(entry.id, 5)
    missing = await memory.update_importance("no-such-id", 5)
    assert not missing
    assert "no-such-id" in missing.error

    reopened = await open_memory(backend)
    [loaded] = await reopened.get_conversation_history()
    assert loaded.id == entry.id
    assert loaded.importance == 5


@pytest.mark.asyncio
async def test_related_conversations(memory: TieredMemory):
    """Entries resolve their related ids to live conversation turns."""
    question = ConversationEntry(role=Role.USER, content="Which port?", timestamp=1)
    await memory.store_conversation(question)
    await memory.store_conversation(
        {"role": "assistant", "content": "8080", "id": "answer", "related_ids": [question.id]}
    )

    related = await memory.get_related_conversations("answer")
    assert [e.content for e in related] == ["Which port?"]
    assert await memory.get_related_conversations(question.id) == []


# Rejected values


@pytest.mark.asyncio
async def test_unserializable_context_rejected(open_memory):
    """Values JSON cannot hold are refused and do not block later writes."""
    memory = await open_memory()
    await memory.store_context("kept", "v")

    rejected = await memory.store_context("when", datetime(2024, 1, 1))
    assert not rejected
    assert "cannot be stored" in rejected.error
    assert await memory.get_context("when", "absent") == "absent"
    assert not memory.short_term.dirty

    later = await memory.store_context("after", 2)
    assert later.durable
    assert later.issues == []

    restarted = await open_memory()
    assert await restarted.get_context("kept") == "v"
    assert await restarted.get_context("after") == 2


@pytest.mark.parametrize("backend", ["json", "sqlite"])
@pytest.mark.asyncio
async def test_unencodable_conversation_rejected(open_memory, backend):
    """Text with lone surrogates is refused; the log keeps persisting."""
    memory = await open_memory(backend)

    rejected = await memory.store_conversation({"role": "user", "content": "bad \udcff byte"})
    assert not rejected
    assert "Invalid conversation entry" in rejected.error
    assert memory.get_status().episodic_entries == 0

    later = await memory.store_conversation({"role": "user", "content": "fine"})
    assert later.durable

    restarted = await open_memory(backend)
    assert [e.content for e in await restarted.get_conversation_history()] == ["fine"]


@pytest.mark.asyncio
async def test_unserializable_knowledge_rejected(memory: TieredMemory):
    """Knowledge values and metadata must be JSON-compatible."""
    assert not await memory.store_knowledge("facts", "set", {1, 2})
    assert not await memory.store_knowledge("facts", "obj", 1, metadata={"o": object()})
    assert await memory.get_category_knowledge("facts") == {}
    assert not memory.semantic.dirty


# Persistence and failures


@pytest.mark.parametrize("backend", ["json", "sqlite"])
@pytest.mark.asyncio
async def test_state_survives_reopen(open_memory, backend):
    """A fresh instance over the same storage sees every tier."""
    memory = await open_memory(backend, max_episodic_entries=3, summarization_threshold=1)
    await memory.store_context("lastQuery", "hello", metadata={"source": "test"})
    for i in range(5):
        await memory.store_conversation({"role": "user", "content": f"m{i}", "timestamp": i})
    await memory.store_knowledge("agents", "ea", {"name": "Executive Architect"})
    await memory.close()

    reopened = await open_memory(backend, max_episodic_entries=3, summarization_threshold=1)

    assert await reopened.get_context("lastQuery") == "hello"
    assert await reopened.get_knowledge("agents", "ea") == {"name": "Executive Architect"}
    history = await reopened.get_conversation_history(5)
    assert [type(item) for item in history] == [Summary, Summary] + [ConversationEntry] * 3
    assert reopened.get_status().summarized_conversations == 2


@pytest.mark.asyncio
async def test_disk_failure_keeps_memory_value(open_memory, monkeypatch):
    """Failed saves still succeed in memory and are retried by flush."""
    memory = await open_memory()

    async def failing_save(kind: SnapshotKind, data):
        raise StorageIOError("disk full")

    monkeypatch.setattr(memory.adapter, "save", failing_save)
    result = await memory.store_context("draft", "unsaved")

    assert result
    assert not result.durable
    assert result.has(IssueKind.IO_ERROR)
    assert await memory.get_context("draft") == "unsaved"
    assert memory.short_term.dirty
    assert any(i.kind == IssueKind.IO_ERROR for i in memory.issues)

    # A restart before the next successful flush loses the write
    restarted = await open_memory()
    assert await restarted.get_context("draft") is None

    monkeypatch.undo()
    flushed = await memory.flush()
    assert flushed.durable
    assert not memory.short_term.dirty

    after_flush = await open_memory()
    assert await after_flush.get_context("draft") == "unsaved"


@pytest.mark.asyncio
async def test_unusable_root_runs_in_memory(tmp_path: Path):
    """A memory root that cannot be created degrades to in-memory operation."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    memory = TieredMemory(JsonFileAdapter(blocker / "memory"), refresh_interval_ms=0)

    await memory.open()
    result = await memory.store_context("k", "v")

    assert result
    assert not result.durable
    assert await memory.get_context("k") == "v"
    assert memory.issues[0].kind == IssueKind.IO_ERROR
    await memory.close()


@pytest.mark.asyncio
async def test_corrupt_snapshot_at_open(tmp_path: Path):
    """A corrupt tier starts empty, other tiers load, and writes repair it."""
    root = tmp_path / "memory"
    adapter = JsonFileAdapter(root)
    await adapter.connect()
    adapter.path_for(SnapshotKind.EPISODIC).write_text("[{oops", encoding="utf-8")
    await adapter.save(SnapshotKind.SHORT_TERM, {"k": {"value": "kept", "timestamp": 1}})

    memory = TieredMemory(JsonFileAdapter(root), refresh_interval_ms=0)
    report = await memory.open()

    assert [i.kind for i in report.issues] == [IssueKind.CORRUPT_DATA]
    assert await memory.get_context("k") == "kept"
    assert await memory.get_conversation_history() == []

    await memory.store_conversation({"role": "user", "content": "fresh start"})
    await memory.close()

    reopened = TieredMemory(JsonFileAdapter(root), refresh_interval_ms=0)
    report = await reopened.open()
    assert report.issues == []
    assert [e.content for e in await reopened.get_conversation_history()] == ["fresh start"]
    await reopened.close()


@pytest.mark.parametrize("backend", ["json", "sqlite"])
@pytest.mark.asyncio
async def test_two_instances_share_storage(open_memory, backend):
    """Interleaved writers on one storage root keep both writes."""
    first = await open_memory(backend)
    second = await open_memory(backend)

    await first.store_context("a", 1)
    await second.store_context("b", 2)

    if backend == "json":
        # Coarse mtime resolution could hide the second write from the first reader
        path = second.adapter.path_for(SnapshotKind.SHORT_TERM)
        stat = path.stat()
        os.utime(path, (stat.st_atime + 5, stat.st_mtime + 5))

    assert await second.get_context("a") == 1
    assert await first.get_context("b") == 2

    third = await open_memory(backend)
    assert await third.get_context("a") == 1
    assert await third.get_context("b") == 2


# Hooks and status


@pytest.mark.asyncio
async def test_process_before_response(memory: TieredMemory):
    """User input is logged and mirrored into quick context."""
    result = await memory.process_before_response("What is the plan?")
    assert result

    [entry] = await memory.get_conversation_history()
    assert entry.role == Role.USER
    assert entry.content == "What is the plan?"

    recent = await memory.get_context("last_query_context")
    assert recent[-1]["role"] == "user"
    assert recent[-1]["content"] == "What is the plan?"


@pytest.mark.asyncio
async def test_process_after_response_counts_exchanges(memory: TieredMemory):
    """Each assistant response is logged and bumps the exchange counter."""
    await memory.process_before_response("hi")
    await memory.process_after_response("hello!")
    await memory.process_before_response("bye")
    await memory.process_after_response("see you")

    history = await memory.get_conversation_history()
    assert [e.role for e in history] == [Role.USER, Role.ASSISTANT] * 2
    assert await memory.get_context("conversation_count") == 2


@pytest.mark.asyncio
async def test_status(memory: TieredMemory, tmp_path: Path):
    """Status reports counters, backend and refresh time."""
    await memory.store_context("k", "v")
    await memory.store_conversation({"role": "user", "content": "hi"})
    await memory.store_knowledge("a", "b", 1)
    await memory.store_knowledge("c", "d", 2)

    status = memory.get_status()
    assert status.short_term_entries == 1
    assert status.episodic_entries == 1
    assert status.summarized_entries == 0
    assert status.semantic_categories == 2
    assert status.backend == "json"
    assert status.location == str(tmp_path / "memory")
    assert status.last_refreshed is not None
    assert status.to_dict()["semantic_categories"] == 2


@pytest.mark.asyncio
async def test_drain_issues(open_memory):
    """Draining returns the recorded issues once."""
    memory = await open_memory(max_short_term_entries=1)
    await memory.store_context("a", 1)
    await memory.store_context("b", 2)

    drained = memory.drain_issues()
    assert [i.kind for i in drained] == [IssueKind.CAPACITY_EVENT]
    assert memory.issues == []
