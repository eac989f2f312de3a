"""JSON file persistence - one document per snapshot under the memory root."""

import asyncio
import json
import os
import tempfile
from pathlib import Path
from typing import Any

from cortex.core.errors import CorruptSnapshotError, StorageIOError
from cortex.core.logging import get_logger
from cortex.memory.base import PersistenceAdapter
from cortex.memory.types import SnapshotKind

logger = get_logger("memory.backends.json")

SNAPSHOT_FILES: dict[SnapshotKind, Path] = {
    SnapshotKind.SHORT_TERM: Path("short_term") / "current_context.json",
    SnapshotKind.EPISODIC: Path("episodic") / "conversation_history.json",
    SnapshotKind.SUMMARIES: Path("episodic") / "summarized_history.json",
    SnapshotKind.SEMANTIC: Path("semantic") / "knowledge_base.json",
    SnapshotKind.RELATIONSHIPS: Path("semantic") / "relationships.json",
}


class JsonFileAdapter(PersistenceAdapter):
    """Snapshot storage as pretty-printed JSON files.

    Writes go to a temp file in the target directory and are moved into
    place with ``os.replace``, so readers never see a half-written file.
    """

    name = "json"

    def __init__(self, root: Path):
        self.root = root

    @property
    def location(self) -> str:
        return str(self.root)

    def path_for(self, kind: SnapshotKind) -> Path:
        return self.root / SNAPSHOT_FILES[kind]

    async def connect(self) -> None:
        """Create the tier directories."""
        try:
            await asyncio.to_thread(self._make_dirs)
        except OSError as e:
            raise StorageIOError(f"Cannot create memory root {self.root}: {e}") from e
        logger.info(f"Using JSON memory store: {self.root}")

    def _make_dirs(self) -> None:
        for relative in SNAPSHOT_FILES.values():
            (self.root / relative).parent.mkdir(parents=True, exist_ok=True)

    async def load(self, kind: SnapshotKind) -> Any | None:
        return await asyncio.to_thread(self._read, self.path_for(kind))

    async def save(self, kind: SnapshotKind, data: Any) -> float:
        return await asyncio.to_thread(self._write, self.path_for(kind), data)

    async def modified_at(self, kind: SnapshotKind) -> float | None:
        return await asyncio.to_thread(self._stat, self.path_for(kind))

    @staticmethod
    def _read(path: Path) -> Any | None:
        try:
            text = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(f"Cannot read {path}: {e}") from e

        try:
            return json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptSnapshotError(f"Malformed JSON in {path}: {e}") from e

    @staticmethod
    def _write(path: Path, data: Any) -> float:
        try:
            payload = json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")
        except (TypeError, ValueError) as e:
            # UnicodeEncodeError (lone surrogates) is a ValueError
            raise StorageIOError(f"Snapshot for {path.name} is not encodable: {e}") from e

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=path.parent, suffix=".tmp")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(payload)
                os.replace(tmp_path, path)
            except BaseException:
                Path(tmp_path).unlink(missing_ok=True)
                raise
            return path.stat().st_mtime
        except OSError as e:
            raise StorageIOError(f"Cannot write {path}: {e}") from e

    @staticmethod
    def _stat(path: Path) -> float | None:
        try:
            return path.stat().st_mtime
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StorageIOError(f"Cannot stat {path}: {e}") from e
