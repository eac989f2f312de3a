"""Memory record definitions."""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Final
from uuid import uuid4


def now_ms() -> int:
    """Current wall-clock time as epoch milliseconds."""
    return int(time.time() * 1000)


class _Missing:
    """Marker for an absent value, distinct from a stored None."""

    _instance: "_Missing | None" = None

    def __new__(cls) -> "_Missing":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "MISSING"


MISSING: Final = _Missing()


class Role(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class SnapshotKind(Enum):
    """Durable snapshots, one per persisted piece of tier state."""

    SHORT_TERM = "short_term"
    EPISODIC = "episodic"
    SUMMARIES = "summaries"
    SEMANTIC = "semantic"
    RELATIONSHIPS = "relationships"


@dataclass
class ContextEntry:
    """Short-term key/value record."""

    key: str
    value: Any
    timestamp: int
    expires_at: int | None = None
    metadata: dict[str, Any] | None = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now > self.expires_at

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"value": self.value, "timestamp": self.timestamp}
        if self.expires_at is not None:
            data["expires_at"] = self.expires_at
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any]) -> "ContextEntry":
        return cls(
            key=key,
            value=data["value"],
            timestamp=int(data["timestamp"]),
            expires_at=data.get("expires_at"),
            metadata=data.get("metadata"),
        )


@dataclass
class ConversationEntry:
    """Single conversation turn in the episodic log."""

    role: Role
    content: str
    timestamp: int = field(default_factory=now_ms)
    metadata: dict[str, Any] = field(default_factory=dict)
    conversation_id: str | None = None
    importance: int = 1
    id: str = field(default_factory=lambda: str(uuid4()))
    related_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp,
            "metadata": self.metadata,
        }
        if self.conversation_id is not None:
            data["conversation_id"] = self.conversation_id
        if self.importance != 1:
            data["importance"] = self.importance
        if self.related_ids:
            data["related_ids"] = list(self.related_ids)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ConversationEntry":
        """Create from a stored dict or a caller-supplied mapping.

        ``timestamp`` and ``id`` are optional; they default to now and a
        fresh id.
        """
        timestamp = data.get("timestamp")
        entry = cls(
            role=Role(data["role"]),
            content=str(data["content"]),
            timestamp=int(timestamp) if timestamp is not None else now_ms(),
            metadata=dict(data.get("metadata") or {}),
            conversation_id=data.get("conversation_id"),
            importance=int(data.get("importance", 1)),
            related_ids=[str(i) for i in data.get("related_ids") or []],
        )
        if data.get("id") is not None:
            entry.id = str(data["id"])
        return entry


@dataclass(frozen=True)
class Summary:
    """Lossy digest of one compacted batch of conversation entries.

    A degraded summary (``error=True``) carries only the count and timestamp.
    """

    conversation_count: int
    timestamp: int
    start_time: int | None = None
    end_time: int | None = None
    duration_ms: int | None = None
    user_messages: int = 0
    assistant_messages: int = 0
    primary_topics: tuple[str, ...] = ()
    key_terms: tuple[str, ...] = ()
    error: bool = False

    def to_dict(self) -> dict[str, Any]:
        if self.error:
            return {
                "type": "summary",
                "error": True,
                "conversation_count": self.conversation_count,
                "timestamp": self.timestamp,
            }
        return {
            "type": "summary",
            "conversation_count": self.conversation_count,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "duration_ms": self.duration_ms,
            "user_messages": self.user_messages,
            "assistant_messages": self.assistant_messages,
            "primary_topics": list(self.primary_topics),
            "key_terms": list(self.key_terms),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Summary":
        return cls(
            conversation_count=int(data["conversation_count"]),
            timestamp=int(data["timestamp"]),
            start_time=data.get("start_time"),
            end_time=data.get("end_time"),
            duration_ms=data.get("duration_ms"),
            user_messages=int(data.get("user_messages", 0)),
            assistant_messages=int(data.get("assistant_messages", 0)),
            primary_topics=tuple(data.get("primary_topics", ())),
            key_terms=tuple(data.get("key_terms", ())),
            error=bool(data.get("error", False)),
        )


@dataclass
class KnowledgeEntry:
    """Durable fact keyed by (category, topic)."""

    category: str
    topic: str
    value: Any
    timestamp: int
    confidence: float = 1.0
    source: str | None = None
    metadata: dict[str, Any] | None = None
    last_accessed: int | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"value": self.value, "timestamp": self.timestamp}
        if self.confidence != 1.0:
            data["confidence"] = self.confidence
        if self.source is not None:
            data["source"] = self.source
        if self.metadata:
            data["metadata"] = self.metadata
        if self.last_accessed is not None:
            data["last_accessed"] = self.last_accessed
        return data

    @classmethod
    def from_dict(cls, category: str, topic: str, data: dict[str, Any]) -> "KnowledgeEntry":
        return cls(
            category=category,
            topic=topic,
            value=data["value"],
            timestamp=int(data["timestamp"]),
            confidence=float(data.get("confidence", 1.0)),
            source=data.get("source"),
            metadata=data.get("metadata"),
            last_accessed=data.get("last_accessed"),
        )


class Direction(Enum):
    OUTGOING = "outgoing"
    INCOMING = "incoming"
    BOTH = "both"


@dataclass
class Relationship:
    """Typed, weighted link between two knowledge entries.

    Endpoints are (category, topic) pairs. At most one relationship exists
    per (source, target, relationship_type).
    """

    source: tuple[str, str]
    target: tuple[str, str]
    relationship_type: str
    strength: float = 1.0
    timestamp: int = field(default_factory=now_ms)
    metadata: dict[str, Any] | None = None

    @property
    def key(self) -> tuple[tuple[str, str], tuple[str, str], str]:
        return (self.source, self.target, self.relationship_type)

    def other(self, node: tuple[str, str]) -> tuple[str, str]:
        """The endpoint opposite ``node``."""
        return self.target if node == self.source else self.source

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "source": list(self.source),
            "target": list(self.target),
            "relationship_type": self.relationship_type,
            "strength": self.strength,
            "timestamp": self.timestamp,
        }
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Relationship":
        source_category, source_topic = data["source"]
        target_category, target_topic = data["target"]
        return cls(
            source=(str(source_category), str(source_topic)),
            target=(str(target_category), str(target_topic)),
            relationship_type=str(data["relationship_type"]),
            strength=float(data.get("strength", 1.0)),
            timestamp=int(data["timestamp"]),
            metadata=data.get("metadata"),
        )


@dataclass
class MemoryStatus:
    """Point-in-time counters for the whole store."""

    short_term_entries: int
    episodic_entries: int
    summarized_entries: int
    summarized_conversations: int
    semantic_categories: int
    last_refreshed: int | None
    backend: str
    location: str
    semantic_relationships: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "short_term_entries": self.short_term_entries,
            "episodic_entries": self.episodic_entries,
            "summarized_entries": self.summarized_entries,
            "summarized_conversations": self.summarized_conversations,
            "semantic_categories": self.semantic_categories,
            "last_refreshed": self.last_refreshed,
            "backend": self.backend,
            "location": self.location,
            "semantic_relationships": self.semantic_relationships,
        }
