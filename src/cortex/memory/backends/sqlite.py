"""SQLite persistence - one table per tier, snapshots replaced transactionally."""

import json
import sqlite3
import time
from pathlib import Path
from typing import Any

import aiosqlite

from cortex.core.errors import CorruptSnapshotError, StorageIOError
from cortex.core.logging import get_logger
from cortex.memory.base import PersistenceAdapter
from cortex.memory.types import SnapshotKind

logger = get_logger("memory.backends.sqlite")

SCHEMA = """
-- Short-term memory: recent context key/value pairs
CREATE TABLE IF NOT EXISTS short_term_memory (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    expiry_time INTEGER,
    metadata TEXT  -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_stm_timestamp ON short_term_memory(timestamp);

-- Episodic memory: live conversation log
CREATE TABLE IF NOT EXISTS episodic_memory (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    entry_id TEXT,
    conversation_id TEXT,
    type TEXT NOT NULL,  -- speaker role
    content TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    importance INTEGER DEFAULT 1,
    related_ids TEXT,  -- JSON array of entry_id values
    metadata TEXT  -- JSON object
);

CREATE INDEX IF NOT EXISTS idx_em_conversation ON episodic_memory(conversation_id);

-- Summaries of compacted episodic batches
CREATE TABLE IF NOT EXISTS episodic_summaries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    content TEXT NOT NULL  -- JSON object
);

-- Semantic memory: durable knowledge
CREATE TABLE IF NOT EXISTS semantic_knowledge (
    id TEXT PRIMARY KEY,
    category TEXT NOT NULL,
    topic TEXT NOT NULL,
    content TEXT NOT NULL,  -- JSON value
    confidence REAL DEFAULT 1.0,
    timestamp INTEGER NOT NULL,
    last_accessed INTEGER,
    source TEXT,
    metadata TEXT,  -- JSON object
    UNIQUE(category, topic)
);

CREATE INDEX IF NOT EXISTS idx_sk_category ON semantic_knowledge(category);

-- Typed, weighted links between knowledge entries
CREATE TABLE IF NOT EXISTS knowledge_relationships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL,  -- semantic_knowledge.id
    target_id TEXT NOT NULL,
    relationship_type TEXT NOT NULL,
    strength REAL DEFAULT 1.0,
    timestamp INTEGER NOT NULL,
    metadata TEXT,  -- JSON object
    UNIQUE(source_id, target_id, relationship_type)
);

CREATE INDEX IF NOT EXISTS idx_kr_source ON knowledge_relationships(source_id);
CREATE INDEX IF NOT EXISTS idx_kr_target ON knowledge_relationships(target_id);

-- Last save time per snapshot, compared by the refresh controller
CREATE TABLE IF NOT EXISTS snapshot_state (
    kind TEXT PRIMARY KEY,
    modified_at REAL NOT NULL
);
"""


def _dumps(value: Any) -> str | None:
    return json.dumps(value, ensure_ascii=False) if value is not None else None


def _loads(text: str | None) -> Any:
    return json.loads(text) if text is not None else None


def _node_id(category: str, topic: str) -> str:
    return json.dumps([category, topic], ensure_ascii=False)


class SQLiteAdapter(PersistenceAdapter):
    """Snapshot storage in an embedded SQLite database."""

    name = "sqlite"

    def __init__(self, db_path: Path):
        self.db_path = db_path
        self._conn: aiosqlite.Connection | None = None

    @property
    def location(self) -> str:
        return str(self.db_path)

    async def connect(self) -> None:
        """Initialize database connection and schema."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = await aiosqlite.connect(self.db_path)
            await self._conn.executescript(SCHEMA)
            await self._conn.commit()
        except (OSError, sqlite3.Error) as e:
            raise StorageIOError(f"Cannot open memory database {self.db_path}: {e}") from e
        logger.info(f"Connected to memory database: {self.db_path}")

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageIOError("Memory database not connected. Call connect() first.")
        return self._conn

    async def modified_at(self, kind: SnapshotKind) -> float | None:
        try:
            async with self.conn.execute(
                "SELECT modified_at FROM snapshot_state WHERE kind = ?", (kind.value,)
            ) as cursor:
                row = await cursor.fetchone()
        except sqlite3.Error as e:
            raise StorageIOError(f"Cannot read snapshot state for {kind.value}: {e}") from e
        return row[0] if row else None

    async def load(self, kind: SnapshotKind) -> Any | None:
        if await self.modified_at(kind) is None:
            return None

        try:
            if kind == SnapshotKind.SHORT_TERM:
                return await self._load_short_term()
            if kind == SnapshotKind.EPISODIC:
                return await self._load_episodic()
            if kind == SnapshotKind.SUMMARIES:
                return await self._load_summaries()
            if kind == SnapshotKind.RELATIONSHIPS:
                return await self._load_relationships()
            return await self._load_semantic()
        except json.JSONDecodeError as e:
            raise CorruptSnapshotError(f"Malformed row in {kind.value} snapshot: {e}") from e
        except sqlite3.DatabaseError as e:
            raise StorageIOError(f"Cannot load {kind.value} snapshot: {e}") from e

    async def save(self, kind: SnapshotKind, data: Any) -> float:
        try:
            if kind == SnapshotKind.SHORT_TERM:
                rows = self._short_term_rows(data)
            elif kind == SnapshotKind.EPISODIC:
                rows = self._episodic_rows(data)
            elif kind == SnapshotKind.SUMMARIES:
                rows = [(item["timestamp"], _dumps(item)) for item in data]
            elif kind == SnapshotKind.RELATIONSHIPS:
                rows = self._relationship_rows(data)
            else:
                rows = self._semantic_rows(data)
        except (TypeError, ValueError, KeyError) as e:
            raise StorageIOError(f"Cannot encode {kind.value} snapshot: {e}") from e

        modified_at = time.time()
        try:
            await self._replace(kind, rows)
            await self.conn.execute(
                """INSERT INTO snapshot_state (kind, modified_at) VALUES (?, ?)
                   ON CONFLICT(kind) DO UPDATE SET modified_at = excluded.modified_at""",
                (kind.value, modified_at),
            )
            await self.conn.commit()
        except (sqlite3.Error, ValueError) as e:
            # Binding text with lone surrogates raises UnicodeEncodeError
            await self.conn.rollback()
            raise StorageIOError(f"Cannot save {kind.value} snapshot: {e}") from e
        return modified_at

    async def _replace(self, kind: SnapshotKind, rows: list[tuple]) -> None:
        if kind == SnapshotKind.SHORT_TERM:
            await self.conn.execute("DELETE FROM short_term_memory")
            await self.conn.executemany(
                """INSERT INTO short_term_memory (key, value, timestamp, expiry_time, metadata)
                   VALUES (?, ?, ?, ?, ?)""",
                rows,
            )
        elif kind == SnapshotKind.EPISODIC:
            await self.conn.execute("DELETE FROM episodic_memory")
            await self.conn.executemany(
                """INSERT INTO episodic_memory
                   (entry_id, conversation_id, type, content, timestamp, importance,
                    related_ids, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        elif kind == SnapshotKind.SUMMARIES:
            await self.conn.execute("DELETE FROM episodic_summaries")
            await self.conn.executemany(
                "INSERT INTO episodic_summaries (timestamp, content) VALUES (?, ?)",
                rows,
            )
        elif kind == SnapshotKind.RELATIONSHIPS:
            await self.conn.execute("DELETE FROM knowledge_relationships")
            await self.conn.executemany(
                """INSERT INTO knowledge_relationships
                   (source_id, target_id, relationship_type, strength, timestamp, metadata)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                rows,
            )
        else:
            await self.conn.execute("DELETE FROM semantic_knowledge")
            await self.conn.executemany(
                """INSERT INTO semantic_knowledge
                   (id, category, topic, content, confidence, timestamp,
                    last_accessed, source, metadata)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )

    # Row encoding

    @staticmethod
    def _short_term_rows(data: dict[str, Any]) -> list[tuple]:
        return [
            (
                key,
                json.dumps(item["value"], ensure_ascii=False),
                item["timestamp"],
                item.get("expires_at"),
                _dumps(item.get("metadata")),
            )
            for key, item in data.items()
        ]

    @staticmethod
    def _episodic_rows(data: list[dict[str, Any]]) -> list[tuple]:
        return [
            (
                item.get("id"),
                item.get("conversation_id"),
                item["role"],
                item["content"],
                item["timestamp"],
                item.get("importance", 1),
                _dumps(item.get("related_ids") or None),
                _dumps(item.get("metadata") or None),
            )
            for item in data
        ]

    @staticmethod
    def _semantic_rows(data: dict[str, dict[str, Any]]) -> list[tuple]:
        rows = []
        for category, topics in data.items():
            for topic, item in topics.items():
                rows.append(
                    (
                        _node_id(category, topic),
                        category,
                        topic,
                        json.dumps(item["value"], ensure_ascii=False),
                        item.get("confidence", 1.0),
                        item["timestamp"],
                        item.get("last_accessed"),
                        item.get("source"),
                        _dumps(item.get("metadata")),
                    )
                )
        return rows

    @staticmethod
    def _relationship_rows(data: list[dict[str, Any]]) -> list[tuple]:
        return [
            (
                _node_id(*item["source"]),
                _node_id(*item["target"]),
                item["relationship_type"],
                item.get("strength", 1.0),
                item["timestamp"],
                _dumps(item.get("metadata")),
            )
            for item in data
        ]

    # Row decoding (back to the snapshot shapes tiers expect)

    async def _load_short_term(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        async with self.conn.execute(
            "SELECT key, value, timestamp, expiry_time, metadata FROM short_term_memory "
            "ORDER BY timestamp"
        ) as cursor:
            async for row in cursor:
                item: dict[str, Any] = {"value": json.loads(row[1]), "timestamp": row[2]}
                if row[3] is not None:
                    item["expires_at"] = row[3]
                if row[4] is not None:
                    item["metadata"] = json.loads(row[4])
                result[row[0]] = item
        return result

    async def _load_episodic(self) -> list[dict[str, Any]]:
        result = []
        async with self.conn.execute(
            "SELECT conversation_id, type, content, timestamp, importance, metadata, "
            "entry_id, related_ids FROM episodic_memory ORDER BY id"
        ) as cursor:
            async for row in cursor:
                item: dict[str, Any] = {
                    "role": row[1],
                    "content": row[2],
                    "timestamp": row[3],
                    "metadata": _loads(row[5]) or {},
                    "importance": row[4] if row[4] is not None else 1,
                }
                if row[0] is not None:
                    item["conversation_id"] = row[0]
                if row[6] is not None:
                    item["id"] = row[6]
                if row[7] is not None:
                    item["related_ids"] = json.loads(row[7])
                result.append(item)
        return result

    async def _load_summaries(self) -> list[dict[str, Any]]:
        async with self.conn.execute(
            "SELECT content FROM episodic_summaries ORDER BY id"
        ) as cursor:
            return [json.loads(row[0]) async for row in cursor]

    async def _load_semantic(self) -> dict[str, dict[str, Any]]:
        result: dict[str, dict[str, Any]] = {}
        async with self.conn.execute(
            "SELECT category, topic, content, confidence, timestamp, last_accessed, "
            "source, metadata FROM semantic_knowledge ORDER BY timestamp"
        ) as cursor:
            async for row in cursor:
                item: dict[str, Any] = {
                    "value": json.loads(row[2]),
                    "timestamp": row[4],
                    "confidence": row[3] if row[3] is not None else 1.0,
                }
                if row[5] is not None:
                    item["last_accessed"] = row[5]
                if row[6] is not None:
                    item["source"] = row[6]
                if row[7] is not None:
                    item["metadata"] = json.loads(row[7])
                result.setdefault(row[0], {})[row[1]] = item
        return result

    async def _load_relationships(self) -> list[dict[str, Any]]:
        result = []
        async with self.conn.execute(
            "SELECT source_id, target_id, relationship_type, strength, timestamp, metadata "
            "FROM knowledge_relationships ORDER BY id"
        ) as cursor:
            async for row in cursor:
                item: dict[str, Any] = {
                    "source": json.loads(row[0]),
                    "target": json.loads(row[1]),
                    "relationship_type": row[2],
                    "strength": row[3] if row[3] is not None else 1.0,
                    "timestamp": row[4],
                }
                if row[5] is not None:
                    item["metadata"] = json.loads(row[5])
                result.append(item)
        return result
