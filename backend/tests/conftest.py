import asyncio
import itertools
import sys
from pathlib import Path
from types import SimpleNamespace
from typing import Any

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


class ControlledOp:
    """Remote operation that stays in flight until the test settles it."""

    def __init__(self) -> None:
        self._future = asyncio.get_running_loop().create_future()
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        return await self._future

    def resolve(self, value: Any = None) -> None:
        self._future.set_result(value)

    def reject(self, exc: BaseException) -> None:
        self._future.set_exception(exc)


def failing(message: str = "boom"):
    async def _op():
        raise RuntimeError(message)

    return _op


def returning(value: Any):
    async def _op():
        return value

    return _op


async def settle(mutation) -> None:
    """Await a mutation, ignoring the remote failure it re-raises."""
    try:
        await mutation
    except Exception:
        pass


# ── Fake Supabase ─────────────────────────────────────────────────────────────


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.action = "select"
        self.payload: Any = None
        self.filters: list[tuple[str, str, Any]] = []
        self._order: tuple[str, bool] | None = None
        self._limit: int | None = None

    def select(self, _columns: str = "*") -> "FakeQuery":
        self.action = "select"
        return self

    def insert(self, payload: dict) -> "FakeQuery":
        self.action = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict) -> "FakeQuery":
        self.action = "update"
        self.payload = payload
        return self

    def delete(self) -> "FakeQuery":
        self.action = "delete"
        return self

    def eq(self, column: str, value: Any) -> "FakeQuery":
        self.filters.append(("eq", column, value))
        return self

    def in_(self, column: str, values: list) -> "FakeQuery":
        self.filters.append(("in", column, list(values)))
        return self

    def order(self, column: str, desc: bool = False) -> "FakeQuery":
        self._order = (column, desc)
        return self

    def limit(self, count: int) -> "FakeQuery":
        self._limit = count
        return self

    def _matches(self, row: dict) -> bool:
        for kind, column, value in self.filters:
            if kind == "eq" and str(row.get(column)) != str(value):
                return False
            if kind == "in" and row.get(column) not in value:
                return False
        return True

    def execute(self) -> SimpleNamespace:
        self.db.executed.append(self)
        if self.db.fail_next:
            exc, self.db.fail_next = self.db.fail_next, None
            raise exc

        rows = self.db.tables.setdefault(self.table, [])
        if self.action == "insert":
            row = {"id": str(next(self.db.ids)), **self.payload}
            rows.append(row)
            return SimpleNamespace(data=[dict(row)])

        matched = [row for row in rows if self._matches(row)]
        if self.action == "update":
            for row in matched:
                row.update(self.payload)
            return SimpleNamespace(data=[dict(row) for row in matched])
        if self.action == "delete":
            self.db.tables[self.table] = [row for row in rows if row not in matched]
            return SimpleNamespace(data=[dict(row) for row in matched])

        if self._order:
            column, desc = self._order
            matched = sorted(matched, key=lambda r: str(r.get(column) or ""), reverse=desc)
        if self._limit is not None:
            matched = matched[: self._limit]
        return SimpleNamespace(data=[dict(row) for row in matched])


class FakeSupabase:
    """In-memory stand-in for the supabase-py table query builder."""

    def __init__(self) -> None:
        self.tables: dict[str, list[dict]] = {}
        self.executed: list[FakeQuery] = []
        self.fail_next: Exception | None = None
        self.ids = itertools.count(100)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)


@pytest.fixture
def fake_db() -> FakeSupabase:
    return FakeSupabase()


ORG_ID = "org-1"


@pytest.fixture
def seeded_db(fake_db: FakeSupabase) -> FakeSupabase:
    fake_db.tables["patients"] = [
        {"id": "1", "organization_id": ORG_ID, "first_name": "Ada", "last_name": "Lovelace",
         "risk_level": "low", "created_at": "2024-01-03"},
        {"id": "2", "organization_id": ORG_ID, "first_name": "Alan", "last_name": "Turing",
         "risk_level": "medium", "created_at": "2024-01-02"},
        {"id": "3", "organization_id": "org-2", "first_name": "Grace", "last_name": "Hopper",
         "risk_level": "high", "created_at": "2024-01-01"},
    ]
    return fake_db
