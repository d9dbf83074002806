"""StorageBackend Protocol — the contract between the persistence core
and whatever holds the rows.

╔══════════════════════════════════════════════════════════════════════════╗
║  DESIGN NOTE — ORDERING IS COMMITTED AGAINST A VERSION                 ║
║                                                                        ║
║  Every (kind, parent_id) pair carries an ordering version. A mutation  ║
║  reads a ParentSnapshot, computes the new positions, and commits them  ║
║  inside ONE transaction that first calls claim_version() with the      ║
║  version it read. A mismatch raises PositionConflict and the whole     ║
║  transaction is discarded: all shifts land or none do.                 ║
║                                                                        ║
║  RULE OF THUMB: every primitive below must map to a single SQL         ║
║  statement (or a fixed pair, for position rewrites that must dodge a   ║
║  UNIQUE (parent_id, position) index).                                  ║
╚══════════════════════════════════════════════════════════════════════════╝

Implementations live in:
  - backend/storage_json.py   (MVP: JSON files, copy-on-write transactions)
  - backend/storage_sqlite.py (aiosqlite, BEGIN IMMEDIATE transactions)

The same test suite (tests/test_storage.py) runs against both.
"""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Awaitable, Callable, Protocol, TypeVar, runtime_checkable

from .enums import ItemKind
from .models import BoardRecord, OrderedItem, ParentSnapshot

T = TypeVar("T")

# (item_id, parent_id, position); parent_id changes only for moves
PositionAssignment = tuple[str, str, int]


@runtime_checkable
class StorageTransaction(Protocol):
    """All-or-nothing unit of work. Writes become visible on commit only."""

    async def get_board(self, board_id: str) -> BoardRecord | None:
        ...

    async def get_item(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        ...

    async def list_children(self, kind: ItemKind, parent_id: str) -> list[OrderedItem]:
        """Children of one parent ordered by position ASC.

        Maps to: SELECT * FROM {kind}s WHERE parent_id = ? ORDER BY position
        """
        ...

    async def get_version(self, kind: ItemKind, parent_id: str) -> int:
        ...

    async def claim_version(self, kind: ItemKind, parent_id: str, expected: int) -> int:
        """Compare-and-swap the parent's ordering version.

        Maps to: UPDATE ordering_versions SET version = version + 1
                 WHERE kind = ? AND parent_id = ? AND version = ?
        Returns the new version; raises PositionConflict when zero rows match.
        """
        ...

    async def insert_item(self, item: OrderedItem) -> None:
        ...

    async def write_positions(
        self, kind: ItemKind, assignments: list[PositionAssignment]
    ) -> None:
        """Rewrite (parent_id, position) for the listed items.

        The assignments, applied together, must leave every touched parent
        dense. Intermediate states are never visible.
        """
        ...

    async def delete_items(self, kind: ItemKind, item_ids: list[str]) -> int:
        """Delete rows; returns how many existed. Deleting a parent kind
        also drops the ordering version rows it owned."""
        ...


@runtime_checkable
class StorageBackend(Protocol):
    """Abstract persistence interface for the task board."""

    # ───────────────────────────────────────────────────────────────────
    #  LIFECYCLE
    # ───────────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Create tables / files / indexes and connect. Called once at startup."""
        ...

    async def close(self) -> None:
        """Flush and release connections. Called on shutdown."""
        ...

    async def connect(self) -> None:
        """(Re)open the connection. Idempotent."""
        ...

    async def disconnect(self) -> None:
        """Drop the connection. Idempotent; never raises for an already
        closed connection."""
        ...

    async def probe(self) -> None:
        """Trivial liveness check (SELECT 1). Raises on failure."""
        ...

    # ───────────────────────────────────────────────────────────────────
    #  UNITS OF WORK
    # ───────────────────────────────────────────────────────────────────

    def transaction(self) -> AbstractAsyncContextManager[StorageTransaction]:
        """Commit on clean exit, roll back when the block raises."""
        ...

    async def execute(self, operation: Callable[[StorageTransaction], Awaitable[T]]) -> T:
        """Run one operation in its own transaction and return its result."""
        ...

    # ───────────────────────────────────────────────────────────────────
    #  BOARDS + COMMITTED READS
    # ───────────────────────────────────────────────────────────────────

    async def create_board(self, board_id: str, name: str) -> BoardRecord:
        ...

    async def get_board(self, board_id: str) -> BoardRecord | None:
        ...

    async def get_item(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        ...

    async def snapshot(self, kind: ItemKind, parent_id: str) -> ParentSnapshot:
        """Ordered children plus the ordering version, read consistently."""
        ...
