"""Semantic tier - durable category/topic knowledge, never evicted."""

import json
from typing import Any

from cortex.memory.base import MemoryTier
from cortex.memory.types import (
    MISSING,
    Direction,
    KnowledgeEntry,
    Relationship,
    SnapshotKind,
    now_ms,
)

Node = tuple[str, str]


class SemanticTier(MemoryTier):
    """Knowledge base keyed by (category, topic). Last write wins.

    Entries can be linked by typed, weighted relationships. Removing an
    entry removes every relationship that touches it.
    """

    name = "semantic"
    kinds = (SnapshotKind.SEMANTIC, SnapshotKind.RELATIONSHIPS)

    def __init__(self) -> None:
        super().__init__()
        self._knowledge: dict[str, dict[str, KnowledgeEntry]] = {}
        self._relationships: dict[tuple[Node, Node, str], Relationship] = {}

    def __len__(self) -> int:
        return sum(len(topics) for topics in self._knowledge.values())

    def categories(self) -> list[str]:
        return list(self._knowledge)

    def store(
        self,
        category: str,
        topic: str,
        value: Any,
        confidence: float = 1.0,
        source: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> KnowledgeEntry:
        """Insert or replace the fact for (category, topic)."""
        entry = KnowledgeEntry(
            category=category,
            topic=topic,
            value=value,
            timestamp=now_ms(),
            confidence=confidence,
            source=source,
            metadata=metadata,
        )
        self._knowledge.setdefault(category, {})[topic] = entry
        self.touch(SnapshotKind.SEMANTIC)
        return entry

    def get(self, category: str, topic: str) -> Any:
        """Stored value or MISSING. Records the access time."""
        entry = self.entry(category, topic)
        if entry is None:
            return MISSING
        entry.last_accessed = now_ms()
        return entry.value

    def entry(self, category: str, topic: str) -> KnowledgeEntry | None:
        return self._knowledge.get(category, {}).get(topic)

    def get_category(self, category: str) -> dict[str, Any]:
        return {topic: e.value for topic, e in self._knowledge.get(category, {}).items()}

    def remove(self, category: str, topic: str) -> bool:
        topics = self._knowledge.get(category)
        if not topics or topic not in topics:
            return False
        del topics[topic]
        if not topics:
            del self._knowledge[category]
        self.touch(SnapshotKind.SEMANTIC)

        node = (category, topic)
        dangling = [k for k, r in self._relationships.items() if node in (r.source, r.target)]
        for key in dangling:
            del self._relationships[key]
        if dangling:
            self.touch(SnapshotKind.RELATIONSHIPS)
        return True

    def search(self, text: str, limit: int = 10) -> list[KnowledgeEntry]:
        """Substring match over topics and serialized values, newest first."""
        needle = text.lower()
        matches = []
        for topics in self._knowledge.values():
            for entry in topics.values():
                haystack = f"{entry.topic} {json.dumps(entry.value, default=str)}".lower()
                if needle in haystack:
                    matches.append(entry)
        matches.sort(key=lambda e: e.timestamp, reverse=True)
        return matches[:limit]

    def entries(self) -> list[KnowledgeEntry]:
        return [e for topics in self._knowledge.values() for e in topics.values()]

    # Relationships

    def relate(
        self,
        source: Node,
        target: Node,
        relationship_type: str,
        strength: float = 1.0,
        metadata: dict[str, Any] | None = None,
    ) -> Relationship | None:
        """Create or update a link between two stored entries.

        Returns None when either endpoint does not exist.
        """
        if self.entry(*source) is None or self.entry(*target) is None:
            return None
        relationship = Relationship(
            source=tuple(source),
            target=tuple(target),
            relationship_type=relationship_type,
            strength=strength,
            timestamp=now_ms(),
            metadata=metadata,
        )
        self._relationships[relationship.key] = relationship
        self.touch(SnapshotKind.RELATIONSHIPS)
        return relationship

    def relationship(
        self, source: Node, target: Node, relationship_type: str
    ) -> Relationship | None:
        return self._relationships.get((tuple(source), tuple(target), relationship_type))

    def relationships(
        self,
        node: Node,
        direction: Direction = Direction.BOTH,
        relationship_type: str | None = None,
    ) -> list[Relationship]:
        """Links touching ``node``, strongest first, then newest first."""
        node = tuple(node)
        matches = []
        for relationship in self._relationships.values():
            if relationship_type is not None and relationship.relationship_type != relationship_type:
                continue
            outgoing = relationship.source == node
            incoming = relationship.target == node
            if direction == Direction.OUTGOING and not outgoing:
                continue
            if direction == Direction.INCOMING and not incoming:
                continue
            if not (outgoing or incoming):
                continue
            matches.append(relationship)
        matches.sort(key=lambda r: (r.strength, r.timestamp), reverse=True)
        return matches

    def unrelate(self, source: Node, target: Node, relationship_type: str) -> bool:
        if self._relationships.pop((tuple(source), tuple(target), relationship_type), None) is None:
            return False
        self.touch(SnapshotKind.RELATIONSHIPS)
        return True

    @property
    def relationship_count(self) -> int:
        return len(self._relationships)

    # Snapshot handling

    def snapshot(self, kind: SnapshotKind) -> Any:
        if kind == SnapshotKind.RELATIONSHIPS:
            return [r.to_dict() for r in self._relationships.values()]
        return {
            category: {topic: e.to_dict() for topic, e in topics.items()}
            for category, topics in self._knowledge.items()
        }

    def restore(self, kind: SnapshotKind, data: Any) -> None:
        if kind == SnapshotKind.RELATIONSHIPS:
            relationships = [Relationship.from_dict(item) for item in data]
            self._relationships = {r.key: r for r in relationships}
        else:
            self._knowledge = {
                category: {
                    topic: KnowledgeEntry.from_dict(category, topic, item)
                    for topic, item in topics.items()
                }
                for category, topics in data.items()
            }
        self.clean(kind)

    def reset(self, kind: SnapshotKind) -> None:
        if kind == SnapshotKind.RELATIONSHIPS:
            self._relationships = {}
        else:
            self._knowledge = {}
        self.clean(kind)
