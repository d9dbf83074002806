"""Ordered Collection Manager — dense sibling ordering under concurrency.

For every (kind, parent_id) the children's positions are exactly
{0, ..., n-1}. Columns are ordered within a board, tasks within a column.

Every mutation follows the same optimistic shape:

  1. read a ParentSnapshot (children + ordering version) per parent touched
  2. compute the complete new order in memory
  3. open ONE storage transaction: claim_version() every parent read in
     step 1, then write only the rows whose (parent, position) changed

A concurrent writer that committed in between bumps the version and step 3
raises PositionConflict; the transaction is discarded so no parent is left
half-shifted. The whole read-compute-commit cycle runs under the resilient
executor, so transient storage failures re-read state before trying again
instead of replaying a stale mutation.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Mapping, NoReturn
from uuid import uuid4

from taskboard.shared.enums import ItemKind, MAX_TITLE_CHARS, RemovalPolicy
from taskboard.shared.errors import InvalidOperation, PositionConflict, ServiceDegraded
from taskboard.shared.models import ItemCreate, OrderedItem, ParentSnapshot
from taskboard.shared.storage import PositionAssignment, StorageTransaction

from .resilience import ResilienceContext

logger = logging.getLogger("taskboard.ordering")

COPY_SUFFIX = " (Copy)"


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


def plan_positions(
    parent_id: str,
    order: list[str],
    current: Mapping[str, tuple[str, int]],
) -> list[PositionAssignment]:
    """Assignments that turn ``current`` into ``order`` for one parent.

    ``current`` maps item_id → (parent_id, position). Items already at the
    right place are skipped; items absent from ``current`` (new rows) are
    the caller's to insert.
    """
    assignments: list[PositionAssignment] = []
    for position, item_id in enumerate(order):
        existing = current.get(item_id)
        if existing is None:
            continue
        if existing != (parent_id, position):
            assignments.append((item_id, parent_id, position))
    return assignments


def _placement(*snapshots: ParentSnapshot) -> dict[str, tuple[str, int]]:
    return {
        item.item_id: (item.parent_id, item.position)
        for snap in snapshots
        for item in snap.items
    }


class OrderedCollectionManager:
    """Insert / move / remove / reorder for columns and tasks."""

    def __init__(self, context: ResilienceContext) -> None:
        self._context = context
        self._storage = context.storage
        # Last committed view per parent; served while in CACHE_ONLY mode
        self._cache: dict[tuple[ItemKind, str], ParentSnapshot] = {}

    # ───────────────────────────────────────────────────────────────────
    #  READS
    # ───────────────────────────────────────────────────────────────────

    async def snapshot(self, kind: ItemKind, parent_id: str) -> ParentSnapshot:
        degradation = self._context.degradation
        if not degradation.allows_storage_reads():
            cached = self._cache.get((kind, parent_id))
            if cached is None:
                raise ServiceDegraded(degradation.mode, f"read of {kind} parent {parent_id}")
            return cached

        async def _op() -> ParentSnapshot:
            return await self._storage.snapshot(kind, parent_id)

        snap = await self._context.executor.run(f"snapshot_{kind}", _op)
        self._cache[(kind, parent_id)] = snap
        return snap

    async def list_children(self, kind: ItemKind, parent_id: str) -> list[OrderedItem]:
        return list((await self.snapshot(kind, parent_id)).items)

    async def get(self, kind: ItemKind, item_id: str) -> OrderedItem | None:
        degradation = self._context.degradation
        if not degradation.allows_storage_reads():
            for (cached_kind, _), snap in self._cache.items():
                if cached_kind != kind:
                    continue
                idx = snap.index_of(item_id)
                if idx is not None:
                    return snap.items[idx]
            raise ServiceDegraded(degradation.mode, f"read of {kind} {item_id}")

        async def _op() -> OrderedItem | None:
            return await self._storage.get_item(kind, item_id)

        return await self._context.executor.run(f"get_{kind}", _op)

    # ───────────────────────────────────────────────────────────────────
    #  INSERT
    # ───────────────────────────────────────────────────────────────────

    async def insert(
        self,
        kind: ItemKind,
        parent_id: str,
        new_item: ItemCreate,
        at_position: int | None = None,
        *,
        expected_version: int | None = None,
    ) -> OrderedItem:
        """Append, or open a slot at ``at_position`` (clamped to [0, n])."""
        self._require_writes(f"insert {kind}")

        async def _op() -> OrderedItem:
            snap = await self._storage.snapshot(kind, parent_id)
            _check_expected(snap, expected_version)
            n = snap.count
            position = n if at_position is None else _clamp(at_position, 0, n)
            now = datetime.now(timezone.utc)
            item_id = new_item.item_id or str(uuid4())

            order = snap.item_ids
            order.insert(position, item_id)

            async with self._storage.transaction() as tx:
                board_id = await self._resolve_board(tx, kind, parent_id)
                await tx.claim_version(kind, parent_id, snap.version)
                await tx.write_positions(kind, plan_positions(parent_id, order, _placement(snap)))
                item = OrderedItem(
                    item_id=item_id,
                    kind=kind,
                    parent_id=parent_id,
                    board_id=board_id,
                    position=position,
                    title=new_item.title,
                    data=dict(new_item.data),
                    created_at=now,
                    updated_at=now,
                )
                await tx.insert_item(item)
            return item

        item = await self._context.executor.run(f"insert_{kind}", _op)
        self._invalidate(kind, parent_id)
        logger.debug("Inserted %s %s into %s at %d", kind, item.item_id, parent_id, item.position)
        return item

    # ───────────────────────────────────────────────────────────────────
    #  MOVE
    # ───────────────────────────────────────────────────────────────────

    async def move(
        self,
        kind: ItemKind,
        item_id: str,
        from_parent: str,
        to_parent: str,
        new_position: int,
        *,
        expected_versions: Mapping[str, int] | None = None,
    ) -> OrderedItem:
        """Move an item within or across parents as one unit of work.

        Same-parent moves clamp into [0, n-1]; cross-parent moves clamp into
        [0, m] of the destination. Columns never leave their board.
        """
        self._require_writes(f"move {kind}")
        if kind is ItemKind.COLUMN and from_parent != to_parent:
            raise InvalidOperation("Columns cannot be moved to another board")
        expected_versions = expected_versions or {}

        async def _op() -> OrderedItem:
            source = await self._storage.snapshot(kind, from_parent)
            _check_expected(source, expected_versions.get(from_parent))
            old_index = source.index_of(item_id)
            if old_index is None:
                await self._raise_missing(kind, item_id, from_parent)
            moved = source.items[old_index]

            source_order = source.item_ids
            source_order.pop(old_index)

            if from_parent == to_parent:
                target_index = _clamp(new_position, 0, len(source_order))
                source_order.insert(target_index, item_id)
                async with self._storage.transaction() as tx:
                    await tx.claim_version(kind, from_parent, source.version)
                    await tx.write_positions(
                        kind, plan_positions(from_parent, source_order, _placement(source))
                    )
                    return await tx.get_item(kind, item_id)

            dest = await self._storage.snapshot(kind, to_parent)
            _check_expected(dest, expected_versions.get(to_parent))
            dest_order = dest.item_ids
            target_index = _clamp(new_position, 0, len(dest_order))
            dest_order.insert(target_index, item_id)

            placement = _placement(source, dest)
            assignments = (
                plan_positions(from_parent, source_order, placement)
                + plan_positions(to_parent, dest_order, placement)
            )
            async with self._storage.transaction() as tx:
                dest_column = await tx.get_item(ItemKind.COLUMN, to_parent)
                if dest_column is None:
                    raise InvalidOperation(f"Target column {to_parent} not found")
                if dest_column.board_id != moved.board_id:
                    raise InvalidOperation("Target column belongs to a different board")
                for parent_id, version in sorted(
                    ((from_parent, source.version), (to_parent, dest.version))
                ):
                    await tx.claim_version(kind, parent_id, version)
                await tx.write_positions(kind, assignments)
                return await tx.get_item(kind, item_id)

        item = await self._context.executor.run(f"move_{kind}", _op)
        self._invalidate(kind, from_parent, to_parent)
        logger.debug(
            "Moved %s %s from %s to %s at %d",
            kind, item_id, from_parent, to_parent, item.position,
        )
        return item

    # ───────────────────────────────────────────────────────────────────
    #  REMOVE
    # ───────────────────────────────────────────────────────────────────

    async def remove(
        self,
        kind: ItemKind,
        item_id: str,
        policy: RemovalPolicy = RemovalPolicy.DELETE_CHILDREN,
        *,
        target_parent_id: str | None = None,
    ) -> None:
        """Remove an item and close the gap among its siblings.

        Items that own children (columns) either hand them to a sibling
        (MOVE_CHILDREN, appended in order) or delete them first
        (DELETE_CHILDREN). The last column of a board is never removed.
        """
        self._require_writes(f"remove {kind}")
        child_kind = kind.child_kind

        async def _op() -> tuple[str, str | None]:
            item = await self._storage.get_item(kind, item_id)
            if item is None:
                raise InvalidOperation(f"{kind.capitalize()} {item_id} not found")
            siblings = await self._storage.snapshot(kind, item.parent_id)
            index = siblings.index_of(item_id)
            if index is None:
                raise PositionConflict(
                    kind, item.parent_id, reason=f"{item_id} left the parent while reading"
                )
            if child_kind is not None and siblings.count <= 1:
                raise InvalidOperation(
                    f"Cannot delete the last {kind}. At least one {kind} must remain."
                )

            children: ParentSnapshot | None = None
            target: ParentSnapshot | None = None
            if child_kind is not None:
                children = await self._storage.snapshot(child_kind, item_id)
                if policy is RemovalPolicy.MOVE_CHILDREN and children.count:
                    target = await self._move_target(kind, item, target_parent_id)

            remaining = siblings.item_ids
            remaining.pop(index)

            async with self._storage.transaction() as tx:
                await tx.claim_version(kind, item.parent_id, siblings.version)
                if children is not None:
                    await tx.claim_version(child_kind, item_id, children.version)
                    if target is not None:
                        await tx.claim_version(child_kind, target.parent_id, target.version)
                        await tx.write_positions(
                            child_kind,
                            [
                                (child.item_id, target.parent_id, target.count + offset)
                                for offset, child in enumerate(children.items)
                            ],
                        )
                    else:
                        await tx.delete_items(child_kind, children.item_ids)
                await tx.delete_items(kind, [item_id])
                await tx.write_positions(
                    kind, plan_positions(item.parent_id, remaining, _placement(siblings))
                )
            return item.parent_id, target.parent_id if target is not None else None

        parent_id, target_id = await self._context.executor.run(f"remove_{kind}", _op)
        self._invalidate(kind, parent_id)
        if child_kind is not None:
            self._invalidate(child_kind, item_id, *([target_id] if target_id else []))
        logger.debug("Removed %s %s from %s (policy=%s)", kind, item_id, parent_id, policy)

    async def _move_target(
        self, kind: ItemKind, item: OrderedItem, target_parent_id: str | None
    ) -> ParentSnapshot:
        if not target_parent_id:
            raise InvalidOperation(f"Target {kind} ID is required when moving children")
        if target_parent_id == item.item_id:
            raise InvalidOperation(f"Target {kind} must differ from the {kind} being removed")
        target_item = await self._storage.get_item(kind, target_parent_id)
        if target_item is None or target_item.parent_id != item.parent_id:
            raise InvalidOperation(f"Target {kind} {target_parent_id} not found on the same board")
        return await self._storage.snapshot(kind.child_kind, target_parent_id)

    # ───────────────────────────────────────────────────────────────────
    #  REORDER
    # ───────────────────────────────────────────────────────────────────

    async def reorder(
        self,
        kind: ItemKind,
        parent_id: str,
        ordered_item_ids: list[str],
        *,
        expected_version: int | None = None,
    ) -> list[OrderedItem]:
        """Rewrite positions to match a full permutation of the children."""
        self._require_writes(f"reorder {kind}")
        if len(set(ordered_item_ids)) != len(ordered_item_ids):
            raise InvalidOperation("Reorder list contains duplicate ids")
        order = list(ordered_item_ids)

        async def _op() -> list[OrderedItem]:
            snap = await self._storage.snapshot(kind, parent_id)
            _check_expected(snap, expected_version)
            if len(order) != snap.count:
                raise InvalidOperation(
                    f"Reorder expects {snap.count} ids for {kind} parent {parent_id}, got {len(order)}"
                )
            if set(order) != set(snap.item_ids):
                raise PositionConflict(
                    kind, parent_id, reason="children changed since the order was read"
                )
            async with self._storage.transaction() as tx:
                await tx.claim_version(kind, parent_id, snap.version)
                await tx.write_positions(kind, plan_positions(parent_id, order, _placement(snap)))
                return await tx.list_children(kind, parent_id)

        items = await self._context.executor.run(f"reorder_{kind}", _op)
        self._invalidate(kind, parent_id)
        return items

    # ───────────────────────────────────────────────────────────────────
    #  DUPLICATE / NORMALIZE
    # ───────────────────────────────────────────────────────────────────

    async def duplicate(
        self,
        item_id: str,
        *,
        to_parent: str | None = None,
        at_position: int | None = None,
    ) -> OrderedItem:
        """Copy a task into its own column or another column of its board."""
        if not self._context.degradation.allows_non_essential():
            raise ServiceDegraded(self._context.degradation.mode, "duplicate task")
        original = await self.get(ItemKind.TASK, item_id)
        if original is None:
            raise InvalidOperation(f"Task {item_id} not found")
        target = to_parent or original.parent_id
        if target != original.parent_id:
            column = await self.get(ItemKind.COLUMN, target)
            if column is None or column.board_id != original.board_id:
                raise InvalidOperation("Target column not found in task board")
        title = original.title[: MAX_TITLE_CHARS - len(COPY_SUFFIX)] + COPY_SUFFIX
        return await self.insert(
            ItemKind.TASK,
            target,
            ItemCreate(title=title, data=dict(original.data)),
            at_position,
        )

    async def normalize(self, kind: ItemKind, parent_id: str) -> list[OrderedItem]:
        """Rewrite positions densely in current order (repairs gaps/duplicates)."""
        self._require_writes(f"normalize {kind}")

        async def _op() -> list[OrderedItem]:
            snap = await self._storage.snapshot(kind, parent_id)
            assignments = plan_positions(parent_id, snap.item_ids, _placement(snap))
            if not assignments:
                return list(snap.items)
            async with self._storage.transaction() as tx:
                await tx.claim_version(kind, parent_id, snap.version)
                await tx.write_positions(kind, assignments)
                items = await tx.list_children(kind, parent_id)
            logger.info("Normalized %d %s positions under %s", len(assignments), kind, parent_id)
            return items

        items = await self._context.executor.run(f"normalize_{kind}", _op)
        self._invalidate(kind, parent_id)
        return items

    # ───────────────────────────────────────────────────────────────────
    #  HELPERS
    # ───────────────────────────────────────────────────────────────────

    def _require_writes(self, operation: str) -> None:
        degradation = self._context.degradation
        if not degradation.allows_writes():
            raise ServiceDegraded(degradation.mode, operation)

    def _invalidate(self, kind: ItemKind, *parent_ids: str) -> None:
        for parent_id in parent_ids:
            self._cache.pop((kind, parent_id), None)

    async def _resolve_board(self, tx: StorageTransaction, kind: ItemKind, parent_id: str) -> str:
        if kind is ItemKind.COLUMN:
            board = await tx.get_board(parent_id)
            if board is None:
                raise InvalidOperation(f"Board {parent_id} not found")
            return board.board_id
        column = await tx.get_item(ItemKind.COLUMN, parent_id)
        if column is None:
            raise InvalidOperation(f"Column {parent_id} not found")
        return column.board_id

    async def _raise_missing(self, kind: ItemKind, item_id: str, from_parent: str) -> NoReturn:
        item = await self._storage.get_item(kind, item_id)
        if item is None:
            raise InvalidOperation(f"{kind.capitalize()} {item_id} not found")
        raise PositionConflict(
            kind, from_parent, reason=f"{item_id} is no longer in {from_parent}"
        )


def _check_expected(snap: ParentSnapshot, expected_version: int | None) -> None:
    if expected_version is not None and expected_version != snap.version:
        raise PositionConflict(
            snap.kind, snap.parent_id, expected=expected_version, actual=snap.version
        )
