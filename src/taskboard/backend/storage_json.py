"""JSON File Storage Backend — MVP implementation of StorageBackend.

One JSON file per table, in-memory working set, write-through persistence.

Transactions are copy-on-write: a transaction reads the committed tables,
copies a table the first time it writes to it, and on clean exit swaps the
copies in and persists them (tmp file + os.replace). An exception inside
the block discards the copies, so a partially applied move never becomes
visible. A single commit lock serialises transactions within the process;
cross-writer conflicts surface through claim_version().

Files:
  boards.json, columns.json, tasks.json, ordering_versions.json
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from taskboard.shared.enums import ItemKind
from taskboard.shared.errors import PositionConflict, StorageError
from taskboard.shared.models import BoardRecord, OrderedItem, ParentSnapshot
from taskboard.shared.storage import PositionAssignment

logger = logging.getLogger("taskboard.storage")

T = TypeVar("T")

TABLE_FILES = [
    "boards",
    "columns",
    "tasks",
    "ordering_versions",
]

KIND_TABLES: dict[ItemKind, str] = {
    ItemKind.COLUMN: "columns",
    ItemKind.TASK: "tasks",
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


# ═══════════════════════════════════════════════════════════════════════════
#  TRANSACTION
# ═══════════════════════════════════════════════════════════════════════════

class _JsonTransaction:
    """Staged view over the committed tables."""

    def __init__(self, committed: dict[str, list[dict[str, Any]]]) -> None:
        self._committed = committed
        self._staged: dict[str, list[dict[str, Any]]] = {}

    @property
    def staged(self) -> dict[str, list[dict[str, Any]]]:
        return self._staged

    def _read(self, table: str) -> list[dict[str, Any]]:
        return self._staged.get(table, self._committed[table])

    def _write(self, table: str) -> list[dict[str, Any]]:
        if table not in self._staged:
            self._staged[table] = [dict(row) for row in self._committed[table]]
        return self._staged[table]

    # ───────────────────────────────────────────────────────────────────
    #  READS
    # ───────────────────────────────────────────────────────────────────

    async def get_board(self, board_id: str) -> BoardRecord | None:
        for row in self._read("boards"):
            if row["board_id"] == board_id:
                return BoardRecord(**row)
        return None

    async def get_item(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        for row in self._read(KIND_TABLES[kind]):
            if row["item_id"] == item_id:
                return OrderedItem(**row)
        return None

    async def list_children(self, kind: ItemKind, parent_id: str) -> list[OrderedItem]:
        rows = [r for r in self._read(KIND_TABLES[kind]) if r["parent_id"] == parent_id]
        rows.sort(key=lambda r: (r["position"], r["created_at"], r["item_id"]))
        return [OrderedItem(**r) for r in rows]

    async def get_version(self, kind: ItemKind, parent_id: str) -> int:
        for row in self._read("ordering_versions"):
            if row["kind"] == kind and row["parent_id"] == parent_id:
                return row["version"]
        return 0

    # ───────────────────────────────────────────────────────────────────
    #  WRITES
    # ───────────────────────────────────────────────────────────────────

    async def claim_version(self, kind: ItemKind, parent_id: str, expected: int) -> int:
        rows = self._write("ordering_versions")
        for row in rows:
            if row["kind"] == kind and row["parent_id"] == parent_id:
                if row["version"] != expected:
                    raise PositionConflict(
                        kind, parent_id, expected=expected, actual=row["version"]
                    )
                row["version"] += 1
                return row["version"]
        if expected != 0:
            raise PositionConflict(kind, parent_id, expected=expected, actual=0)
        rows.append({"kind": str(kind), "parent_id": parent_id, "version": 1})
        return 1

    async def insert_board(self, board: BoardRecord) -> None:
        rows = self._write("boards")
        if any(r["board_id"] == board.board_id for r in rows):
            raise StorageError(
                f"Unique constraint failed: boards.board_id {board.board_id}",
                code="constraint_violation",
                meta={"target": ["board_id"]},
            )
        rows.append(board.model_dump(mode="json"))

    async def insert_item(self, item: OrderedItem) -> None:
        rows = self._write(KIND_TABLES[item.kind])
        if any(r["item_id"] == item.item_id for r in rows):
            raise StorageError(
                f"Unique constraint failed: {item.kind}.item_id {item.item_id}",
                code="constraint_violation",
                meta={"target": ["item_id"]},
            )
        rows.append(item.model_dump(mode="json"))
        self._check_unique_positions(item.kind, rows)

    async def write_positions(
        self, kind: ItemKind, assignments: list[PositionAssignment]
    ) -> None:
        if not assignments:
            return
        rows = self._write(KIND_TABLES[kind])
        by_id = {r["item_id"]: r for r in rows}
        now = _now_utc().isoformat()
        for item_id, parent_id, position in assignments:
            row = by_id.get(item_id)
            if row is None:
                raise StorageError(
                    f"Record to update not found: {kind} {item_id}",
                    code="not_found",
                )
            row["parent_id"] = parent_id
            row["position"] = position
            row["updated_at"] = now
        self._check_unique_positions(kind, rows)

    async def delete_items(self, kind: ItemKind, item_ids: list[str]) -> int:
        if not item_ids:
            return 0
        doomed = set(item_ids)
        table = KIND_TABLES[kind]
        rows = self._write(table)
        kept = [r for r in rows if r["item_id"] not in doomed]
        removed = len(rows) - len(kept)
        self._staged[table] = kept
        if kind.child_kind is not None:
            versions = self._write("ordering_versions")
            self._staged["ordering_versions"] = [
                v for v in versions
                if not (v["kind"] == kind.child_kind and v["parent_id"] in doomed)
            ]
        return removed

    @staticmethod
    def _check_unique_positions(kind: ItemKind, rows: list[dict[str, Any]]) -> None:
        """Emulates UNIQUE (parent_id, position)."""
        seen: set[tuple[str, int]] = set()
        for r in rows:
            key = (r["parent_id"], r["position"])
            if key in seen:
                raise StorageError(
                    f"Unique constraint failed: {kind} (parent_id, position) = {key}",
                    code="constraint_violation",
                    meta={"target": ["parent_id", "position"]},
                )
            seen.add(key)


# ═══════════════════════════════════════════════════════════════════════════
#  JSON FILE STORAGE BACKEND
# ═══════════════════════════════════════════════════════════════════════════

class JsonStorageBackend:
    """MVP storage — one JSON file per table, in-memory + write-through."""

    def __init__(self, data_dir: str | Path | None = None):
        self._data_dir = Path(
            data_dir or os.environ.get("TASKBOARD_DATA", "data")
        )
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._commit_lock = asyncio.Lock()
        self._connected = False

    # ───────────────────────────────────────────────────────────────────
    #  LIFECYCLE
    # ───────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        self._data_dir.mkdir(parents=True, exist_ok=True)
        await self.connect()

    async def close(self) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        if self._connected:
            return
        if not self._data_dir.is_dir():
            raise StorageError(
                f"Can't reach database: data dir {self._data_dir} is missing",
                code="connection_failed",
            )
        for name in TABLE_FILES:
            fp = self._data_dir / f"{name}.json"
            if fp.exists():
                with open(fp, "r", encoding="utf-8") as f:
                    self._tables[name] = json.load(f)
            else:
                self._tables[name] = []
                self._persist(name)
        self._connected = True

    async def disconnect(self) -> None:
        if not self._connected:
            return
        async with self._commit_lock:
            for name in TABLE_FILES:
                if name in self._tables:
                    self._persist(name)
            self._tables = {}
            self._connected = False

    async def probe(self) -> None:
        self._require_connection()
        if not self._data_dir.is_dir():
            raise StorageError(
                f"Connection lost: data dir {self._data_dir} is missing",
                code="connection_failed",
            )

    def _require_connection(self) -> None:
        if not self._connected:
            raise StorageError("Connection refused: storage is disconnected", code="connection_failed")

    def _persist(self, table: str) -> None:
        fp = self._data_dir / f"{table}.json"
        tmp = fp.with_suffix(".json.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._tables[table], f, indent=2, default=str)
        os.replace(tmp, fp)
        # Restrict file permissions (no-op on Windows)
        try:
            os.chmod(fp, 0o600)
        except OSError:
            pass

    # ───────────────────────────────────────────────────────────────────
    #  UNITS OF WORK
    # ───────────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_JsonTransaction]:
        async with self._commit_lock:
            self._require_connection()
            tx = _JsonTransaction(self._tables)
            yield tx
            # Clean exit: publish every staged table, then persist
            for name, rows in tx.staged.items():
                self._tables[name] = rows
            for name in tx.staged:
                self._persist(name)

    async def execute(self, operation: Callable[[_JsonTransaction], Awaitable[T]]) -> T:
        async with self.transaction() as tx:
            return await operation(tx)

    # ───────────────────────────────────────────────────────────────────
    #  BOARDS
    # ───────────────────────────────────────────────────────────────────

    async def create_board(self, board_id: str, name: str) -> BoardRecord:
        rec = BoardRecord(board_id=board_id, name=name, created_at=_now_utc())
        async with self.transaction() as tx:
            await tx.insert_board(rec)
        return rec

    async def get_board(self, board_id: str) -> BoardRecord | None:
        self._require_connection()
        return await _JsonTransaction(self._tables).get_board(board_id)

    # ───────────────────────────────────────────────────────────────────
    #  ORDERED ITEMS (committed reads)
    # ───────────────────────────────────────────────────────────────────

    async def get_item(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        self._require_connection()
        return await _JsonTransaction(self._tables).get_item(kind, item_id)

    async def snapshot(self, kind: ItemKind, parent_id: str) -> ParentSnapshot:
        self._require_connection()
        view = _JsonTransaction(self._tables)
        return ParentSnapshot(
            kind=kind,
            parent_id=parent_id,
            version=await view.get_version(kind, parent_id),
            items=await view.list_children(kind, parent_id),
        )
