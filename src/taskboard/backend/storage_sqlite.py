"""SQLite Storage Backend — aiosqlite implementation of StorageBackend.

One shared connection in autocommit mode; every unit of work is an explicit
BEGIN IMMEDIATE ... COMMIT so the write lock is taken up front and a
multi-row position rewrite is all-or-nothing. An asyncio.Lock keeps other
coroutines off the connection while a transaction is open (they would
otherwise read its uncommitted rows).

Driver failures are NOT translated: sqlite3 exceptions carry
``sqlite_errorname`` and go to the classifier as-is.
"""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, TypeVar

import aiosqlite

from taskboard.shared.enums import ItemKind
from taskboard.shared.errors import PositionConflict, StorageError
from taskboard.shared.models import BoardRecord, OrderedItem, ParentSnapshot
from taskboard.shared.storage import PositionAssignment

logger = logging.getLogger("taskboard.storage")

T = TypeVar("T")

KIND_TABLES: dict[ItemKind, str] = {
    ItemKind.COLUMN: "columns",
    ItemKind.TASK: "tasks",
}

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS boards (
        board_id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS columns (
        item_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL DEFAULT 'column',
        parent_id TEXT NOT NULL REFERENCES boards(board_id) ON DELETE CASCADE,
        board_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        title TEXT NOT NULL,
        data TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_columns_parent_position ON columns(parent_id, position)",
    """
    CREATE TABLE IF NOT EXISTS tasks (
        item_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL DEFAULT 'task',
        parent_id TEXT NOT NULL REFERENCES columns(item_id) ON DELETE CASCADE,
        board_id TEXT NOT NULL,
        position INTEGER NOT NULL,
        title TEXT NOT NULL,
        data TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_tasks_parent_position ON tasks(parent_id, position)",
    """
    CREATE TABLE IF NOT EXISTS ordering_versions (
        kind TEXT NOT NULL,
        parent_id TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (kind, parent_id)
    )
    """,
)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _row_to_item(row: aiosqlite.Row) -> OrderedItem:
    data = dict(row)
    data["data"] = json.loads(data["data"]) if data.get("data") else {}
    return OrderedItem(**data)


# ═══════════════════════════════════════════════════════════════════════════
#  TRANSACTION
# ═══════════════════════════════════════════════════════════════════════════

class _SqliteTransaction:
    """Statements against a connection that already holds BEGIN IMMEDIATE."""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    # ───────────────────────────────────────────────────────────────────
    #  READS
    # ───────────────────────────────────────────────────────────────────

    async def get_board(self, board_id: str) -> BoardRecord | None:
        cursor = await self._conn.execute(
            "SELECT * FROM boards WHERE board_id = ?", (board_id,)
        )
        row = await cursor.fetchone()
        return BoardRecord(**dict(row)) if row else None

    async def get_item(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        cursor = await self._conn.execute(
            f"SELECT * FROM {KIND_TABLES[kind]} WHERE item_id = ?", (item_id,)
        )
        row = await cursor.fetchone()
        return _row_to_item(row) if row else None

    async def list_children(self, kind: ItemKind, parent_id: str) -> list[OrderedItem]:
        cursor = await self._conn.execute(
            f"SELECT * FROM {KIND_TABLES[kind]} WHERE parent_id = ? "
            "ORDER BY position ASC, created_at ASC, item_id ASC",
            (parent_id,),
        )
        rows = await cursor.fetchall()
        return [_row_to_item(r) for r in rows]

    async def get_version(self, kind: ItemKind, parent_id: str) -> int:
        cursor = await self._conn.execute(
            "SELECT version FROM ordering_versions WHERE kind = ? AND parent_id = ?",
            (str(kind), parent_id),
        )
        row = await cursor.fetchone()
        return row["version"] if row else 0

    # ───────────────────────────────────────────────────────────────────
    #  WRITES
    # ───────────────────────────────────────────────────────────────────

    async def claim_version(self, kind: ItemKind, parent_id: str, expected: int) -> int:
        await self._conn.execute(
            "INSERT OR IGNORE INTO ordering_versions (kind, parent_id, version) VALUES (?, ?, 0)",
            (str(kind), parent_id),
        )
        cursor = await self._conn.execute(
            "UPDATE ordering_versions SET version = version + 1 "
            "WHERE kind = ? AND parent_id = ? AND version = ?",
            (str(kind), parent_id, expected),
        )
        if cursor.rowcount == 0:
            actual = await self.get_version(kind, parent_id)
            raise PositionConflict(kind, parent_id, expected=expected, actual=actual)
        return expected + 1

    async def insert_board(self, board: BoardRecord) -> None:
        await self._conn.execute(
            "INSERT INTO boards (board_id, name, created_at) VALUES (?, ?, ?)",
            (board.board_id, board.name, board.created_at.isoformat()),
        )

    async def insert_item(self, item: OrderedItem) -> None:
        await self._conn.execute(
            f"INSERT INTO {KIND_TABLES[item.kind]} "
            "(item_id, kind, parent_id, board_id, position, title, data, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                item.item_id,
                str(item.kind),
                item.parent_id,
                item.board_id,
                item.position,
                item.title,
                json.dumps(item.data),
                item.created_at.isoformat(),
                item.updated_at.isoformat(),
            ),
        )

    async def write_positions(
        self, kind: ItemKind, assignments: list[PositionAssignment]
    ) -> None:
        if not assignments:
            return
        table = KIND_TABLES[kind]
        # Phase 1: park every touched row on a unique negative slot so the
        # UNIQUE (parent_id, position) index never sees a transient duplicate.
        await self._conn.executemany(
            f"UPDATE {table} SET position = ? WHERE item_id = ?",
            [(-(idx + 1), item_id) for idx, (item_id, _, _) in enumerate(assignments)],
        )
        # Phase 2: final parent and position
        now = _now_utc().isoformat()
        for item_id, parent_id, position in assignments:
            cursor = await self._conn.execute(
                f"UPDATE {table} SET parent_id = ?, position = ?, updated_at = ? WHERE item_id = ?",
                (parent_id, position, now, item_id),
            )
            if cursor.rowcount == 0:
                raise StorageError(
                    f"Record to update not found: {kind} {item_id}",
                    code="not_found",
                )

    async def delete_items(self, kind: ItemKind, item_ids: list[str]) -> int:
        if not item_ids:
            return 0
        placeholders = ", ".join("?" for _ in item_ids)
        cursor = await self._conn.execute(
            f"DELETE FROM {KIND_TABLES[kind]} WHERE item_id IN ({placeholders})",
            tuple(item_ids),
        )
        removed = cursor.rowcount
        if kind.child_kind is not None:
            await self._conn.execute(
                f"DELETE FROM ordering_versions WHERE kind = ? AND parent_id IN ({placeholders})",
                (str(kind.child_kind), *item_ids),
            )
        return removed


# ═══════════════════════════════════════════════════════════════════════════
#  SQLITE STORAGE BACKEND
# ═══════════════════════════════════════════════════════════════════════════

class SqliteStorageBackend:
    """aiosqlite storage with real transactions and a UNIQUE position index."""

    def __init__(self, db_path: str | Path, *, busy_timeout: float = 5.0):
        self.db_path = str(db_path)
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    # ───────────────────────────────────────────────────────────────────
    #  LIFECYCLE
    # ───────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        await self.connect()
        async with self._lock:
            for statement in _SCHEMA:
                await self._conn.execute(statement)

    async def close(self) -> None:
        await self.disconnect()

    async def connect(self) -> None:
        if self._conn is not None:
            return
        conn = await aiosqlite.connect(
            self.db_path, timeout=self._busy_timeout, isolation_level=None
        )
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA foreign_keys = ON")
        if self.db_path != ":memory:":
            await conn.execute("PRAGMA journal_mode = WAL")
        self._conn = conn

    async def disconnect(self) -> None:
        if self._conn is None:
            return
        async with self._lock:
            conn, self._conn = self._conn, None
            try:
                await conn.close()
            except Exception:
                logger.debug("Error closing sqlite connection", exc_info=True)

    async def probe(self) -> None:
        async with self._lock:
            conn = self._require_connection()
            cursor = await conn.execute("SELECT 1")
            await cursor.fetchone()

    def _require_connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise StorageError("Connection refused: storage is disconnected", code="connection_failed")
        return self._conn

    # ───────────────────────────────────────────────────────────────────
    #  UNITS OF WORK
    # ───────────────────────────────────────────────────────────────────

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[_SqliteTransaction]:
        async with self._lock:
            conn = self._require_connection()
            await conn.execute("BEGIN IMMEDIATE")
            try:
                yield _SqliteTransaction(conn)
            except BaseException:
                await conn.rollback()
                raise
            await conn.commit()

    async def execute(self, operation: Callable[[_SqliteTransaction], Awaitable[T]]) -> T:
        async with self.transaction() as tx:
            return await operation(tx)

    @asynccontextmanager
    async def _reading(self) -> AsyncIterator[_SqliteTransaction]:
        async with self._lock:
            yield _SqliteTransaction(self._require_connection())

    # ───────────────────────────────────────────────────────────────────
    #  BOARDS
    # ───────────────────────────────────────────────────────────────────

    async def create_board(self, board_id: str, name: str) -> BoardRecord:
        rec = BoardRecord(board_id=board_id, name=name, created_at=_now_utc())
        async with self.transaction() as tx:
            await tx.insert_board(rec)
        return rec

    async def get_board(self, board_id: str) -> BoardRecord | None:
        async with self._reading() as view:
            return await view.get_board(board_id)

    # ───────────────────────────────────────────────────────────────────
    #  ORDERED ITEMS (committed reads)
    # ───────────────────────────────────────────────────────────────────

    async def get_item(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        async with self._reading() as view:
            return await view.get_item(kind, item_id)

    async def snapshot(self, kind: ItemKind, parent_id: str) -> ParentSnapshot:
        async with self._reading() as view:
            return ParentSnapshot(
                kind=kind,
                parent_id=parent_id,
                version=await view.get_version(kind, parent_id),
                items=await view.list_children(kind, parent_id),
            )
