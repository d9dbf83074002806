"""Test harness — fresh storage per test in a temp directory."""

from __future__ import annotations

from pathlib import Path

import pytest

from taskboard.backend.config import ResilienceSettings
from taskboard.backend.ordering import OrderedCollectionManager
from taskboard.backend.resilience import ResilienceContext
from taskboard.backend.storage_json import JsonStorageBackend
from taskboard.backend.storage_sqlite import SqliteStorageBackend
from taskboard.shared.enums import ItemKind
from taskboard.shared.errors import StorageError
from taskboard.shared.models import ItemCreate, OrderedItem


async def no_sleep(delay: float) -> None:
    """Stand-in for asyncio.sleep that records nothing and waits for nothing."""


class RecordingSleep:
    """Collects requested delays instead of sleeping."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FlakyStorage:
    """Wraps a real backend and fails selected calls on demand.

    ``fail_next(n, exc)`` makes the next n guarded calls raise ``exc``;
    ``probe_failures`` controls how many probes fail (-1 = forever).
    """

    GUARDED = ("snapshot", "get_item", "get_board", "transaction")

    def __init__(self, inner) -> None:
        self._inner = inner
        self._failures: list[BaseException] = []
        self.probe_failures = 0
        self.calls: list[str] = []

    def fail_next(self, count: int, exc: BaseException) -> None:
        self._failures.extend([exc] * count)

    def _maybe_fail(self, name: str) -> None:
        self.calls.append(name)
        if self._failures:
            raise self._failures.pop(0)

    async def initialize(self) -> None:
        await self._inner.initialize()

    async def close(self) -> None:
        await self._inner.close()

    async def connect(self) -> None:
        self.calls.append("connect")
        await self._inner.connect()

    async def disconnect(self) -> None:
        self.calls.append("disconnect")
        await self._inner.disconnect()

    async def probe(self) -> None:
        self.calls.append("probe")
        if self.probe_failures:
            if self.probe_failures > 0:
                self.probe_failures -= 1
            raise StorageError("Connection refused by storage", code="connection_failed")
        await self._inner.probe()

    def transaction(self):
        self._maybe_fail("transaction")
        return self._inner.transaction()

    async def execute(self, operation):
        return await self._inner.execute(operation)

    async def create_board(self, board_id: str, name: str):
        return await self._inner.create_board(board_id, name)

    async def get_board(self, board_id: str):
        self._maybe_fail("get_board")
        return await self._inner.get_board(board_id)

    async def get_item(self, kind, item_id):
        self._maybe_fail("get_item")
        return await self._inner.get_item(kind, item_id)

    async def snapshot(self, kind, parent_id):
        self._maybe_fail("snapshot")
        return await self._inner.snapshot(kind, parent_id)


# ═══════════════════════════════════════════════════════════════════════════
#  STORAGE FIXTURES
# ═══════════════════════════════════════════════════════════════════════════

@pytest.fixture
async def json_storage(tmp_path: Path) -> JsonStorageBackend:
    backend = JsonStorageBackend(data_dir=tmp_path / "data")
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
async def sqlite_storage(tmp_path: Path) -> SqliteStorageBackend:
    backend = SqliteStorageBackend(tmp_path / "taskboard.db")
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture(params=["json", "sqlite"])
async def storage(request, tmp_path: Path):
    """Every storage contract test runs once per backend."""
    if request.param == "json":
        backend = JsonStorageBackend(data_dir=tmp_path / "data")
    else:
        backend = SqliteStorageBackend(tmp_path / "taskboard.db")
    await backend.initialize()
    yield backend
    await backend.close()


@pytest.fixture
def settings() -> ResilienceSettings:
    return ResilienceSettings(
        max_retry_attempts=3,
        retry_base_delay=0.01,
        recovery_max_attempts=5,
        recovery_settle_delay=0.0,
    )


@pytest.fixture
async def flaky(json_storage: JsonStorageBackend) -> FlakyStorage:
    return FlakyStorage(json_storage)


@pytest.fixture
async def context(storage, settings: ResilienceSettings) -> ResilienceContext:
    ctx = ResilienceContext(storage, settings=settings, sleep=no_sleep)
    yield ctx
    await ctx.drain()


@pytest.fixture
async def flaky_context(flaky: FlakyStorage, settings: ResilienceSettings) -> ResilienceContext:
    ctx = ResilienceContext(flaky, settings=settings, sleep=no_sleep)
    yield ctx
    await ctx.drain()


@pytest.fixture
def manager(context: ResilienceContext) -> OrderedCollectionManager:
    return OrderedCollectionManager(context)


@pytest.fixture
def flaky_manager(flaky_context: ResilienceContext) -> OrderedCollectionManager:
    return OrderedCollectionManager(flaky_context)


# ═══════════════════════════════════════════════════════════════════════════
#  HELPERS
# ═══════════════════════════════════════════════════════════════════════════

async def seed_board(
    manager: OrderedCollectionManager,
    board_id: str = "b1",
    columns: dict[str, int] | None = None,
) -> dict[str, list[OrderedItem]]:
    """Create a board with columns holding ``n`` tasks each.

    Returns column_id → tasks in position order.
    """
    columns = columns if columns is not None else {"todo": 0}
    storage = manager._storage
    await storage.create_board(board_id, f"Board {board_id}")
    out: dict[str, list[OrderedItem]] = {}
    for column_id, n_tasks in columns.items():
        await manager.insert(
            ItemKind.COLUMN, board_id, ItemCreate(title=column_id, item_id=column_id)
        )
        out[column_id] = [
            await manager.insert(
                ItemKind.TASK,
                column_id,
                ItemCreate(title=f"{column_id}-{i}", item_id=f"{column_id}-{i}"),
            )
            for i in range(n_tasks)
        ]
    return out


def assert_dense(items: list[OrderedItem]) -> None:
    assert [i.position for i in items] == list(range(len(items)))
