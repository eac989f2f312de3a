"""
Memory module - tiered memory store.

Tiers:
- short_term: Recent context key/value pairs (bounded, oldest evicted)
- episodic: Conversation log, old turns compacted into summaries
- semantic: Durable category/topic knowledge

Storage: JSON files or SQLite, refreshed from disk on a throttle
"""

from cortex.memory.facade import TieredMemory, create_memory
from cortex.memory.types import (
    MISSING,
    ContextEntry,
    ConversationEntry,
    Direction,
    KnowledgeEntry,
    MemoryStatus,
    Relationship,
    Role,
    Summary,
)

__all__ = [
    "MISSING",
    "ContextEntry",
    "ConversationEntry",
    "Direction",
    "KnowledgeEntry",
    "MemoryStatus",
    "Relationship",
    "Role",
    "Summary",
    "TieredMemory",
    "create_memory",
]
