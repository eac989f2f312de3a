"""
Error taxonomy.

Storage failures are raised by persistence adapters as exceptions and
converted by the facade into MemoryIssue records, so callers can tell
"degraded but continuing" apart from problems worth surfacing.
"""

from dataclasses import dataclass, field
from enum import Enum


class MemoryStoreError(Exception):
    """Base class for memory store failures."""


class StorageIOError(MemoryStoreError):
    """Backing storage unreachable or write failed."""


class CorruptSnapshotError(MemoryStoreError):
    """Persisted tier data could not be decoded."""


class IssueKind(Enum):
    IO_ERROR = "io_error"
    CORRUPT_DATA = "corrupt_data"
    CAPACITY_EVENT = "capacity_event"
    SUMMARY_FAILED = "summary_failed"


@dataclass(frozen=True)
class MemoryIssue:
    """Non-fatal condition observed while serving a memory operation."""

    kind: IssueKind
    tier: str
    detail: str = ""

    @property
    def degrades_durability(self) -> bool:
        return self.kind in (IssueKind.IO_ERROR, IssueKind.CORRUPT_DATA)


@dataclass
class WriteResult:
    """Outcome of a mutating memory call.

    Truthy whenever the in-memory mutation happened, even if persisting it
    failed. Check ``durable`` or ``issues`` for degraded persistence.
    """

    ok: bool = True
    issues: list[MemoryIssue] = field(default_factory=list)
    error: str | None = None

    def __bool__(self) -> bool:
        return self.ok

    @property
    def durable(self) -> bool:
        return self.ok and not any(i.degrades_durability for i in self.issues)

    def has(self, kind: IssueKind) -> bool:
        return any(i.kind is kind for i in self.issues)

    def merge(self, other: "WriteResult") -> "WriteResult":
        return WriteResult(
            ok=self.ok and other.ok,
            issues=self.issues + other.issues,
            error=self.error or other.error,
        )
