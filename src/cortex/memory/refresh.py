"""Refresh controller - throttled reload of tiers whose snapshots changed on disk."""

import asyncio
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

from cortex.core.errors import CorruptSnapshotError, IssueKind, MemoryIssue, StorageIOError
from cortex.core.logging import get_logger
from cortex.memory.base import MemoryTier, PersistenceAdapter
from cortex.memory.types import SnapshotKind, now_ms

logger = get_logger("memory.refresh")


class RefreshState(Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class RefreshReport:
    """What a refresh request did."""

    skipped: bool = False
    reloaded: list[SnapshotKind] = field(default_factory=list)
    issues: list[MemoryIssue] = field(default_factory=list)


class RefreshController:
    """Reconciles in-memory tiers with their stored snapshots.

    A request within ``interval_ms`` of the last completed refresh is
    skipped. Otherwise every snapshot whose modification time is newer than
    what its tier last loaded is reloaded, holding that tier's lock so no
    mutation interleaves with the reload. A failure in one tier is recorded
    and the remaining tiers are still refreshed.
    """

    def __init__(
        self,
        adapter: PersistenceAdapter,
        tiers: Sequence[MemoryTier],
        locks: Mapping[str, asyncio.Lock],
        interval_ms: int = 10_000,
        clock: Callable[[], int] = now_ms,
    ):
        self.adapter = adapter
        self.tiers = list(tiers)
        self.locks = locks
        self.interval_ms = interval_ms
        self.clock = clock
        self.state = RefreshState.IDLE
        self.last_refresh_time: int | None = None
        self.reload_count = 0
        self._lock = asyncio.Lock()

    def is_due(self) -> bool:
        if self.last_refresh_time is None:
            return True
        return self.clock() - self.last_refresh_time >= self.interval_ms

    async def refresh(self, force: bool = False) -> RefreshReport:
        """Reload stale tiers unless throttled (``force`` bypasses the throttle)."""
        async with self._lock:
            if not force and not self.is_due():
                elapsed = self.clock() - (self.last_refresh_time or 0)
                logger.debug(f"Skipping refresh - last refresh was {elapsed / 1000:.1f}s ago")
                return RefreshReport(skipped=True)

            self.state = RefreshState.REFRESHING
            report = RefreshReport()
            try:
                for tier in self.tiers:
                    async with self.locks[tier.name]:
                        for kind in tier.kinds:
                            await self._refresh_snapshot(tier, kind, report)
            finally:
                self.state = RefreshState.IDLE
                self.last_refresh_time = self.clock()

            if report.reloaded:
                logger.info(f"Refreshed snapshots: {[k.value for k in report.reloaded]}")
            return report

    async def _refresh_snapshot(
        self, tier: MemoryTier, kind: SnapshotKind, report: RefreshReport
    ) -> None:
        modified_at = None
        try:
            modified_at = await self.adapter.modified_at(kind)
            if not tier.is_stale(kind, modified_at):
                return

            data = await self.adapter.load(kind)
            if data is None:
                tier.reset(kind)
            else:
                tier.load(kind, data)
            tier.mark_loaded(kind, modified_at)
            self.reload_count += 1
            report.reloaded.append(kind)
        except CorruptSnapshotError as e:
            # Fall back to an empty tier; remember the bad snapshot's time so
            # it is not re-read until something rewrites it.
            tier.reset(kind)
            tier.mark_loaded(kind, modified_at)
            logger.error(f"Corrupt {kind.value} snapshot, starting empty: {e}")
            report.issues.append(MemoryIssue(IssueKind.CORRUPT_DATA, tier.name, str(e)))
        except StorageIOError as e:
            logger.warning(f"Could not refresh {kind.value} snapshot: {e}")
            report.issues.append(MemoryIssue(IssueKind.IO_ERROR, tier.name, str(e)))
