"""Unit tests for the SQLAlchemy repositories that need no database."""

from __future__ import annotations

from datetime import date
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from farmops.core.exceptions import SystemicFailure
from farmops.db import _apply_asyncpg_scheme
from farmops.dto import ProgressDelta
from farmops.models import AnimalHealthRecord
from farmops.repositories.sqlalchemy import (
    SqlAlchemyBulkOperationRepository,
    SqlAlchemyEntityStore,
)
from farmops.repositories.sqlalchemy.operations import _escape_like
from farmops.schemas.changes import AnimalEdit, HealthEventType, HealthRecordEdit

pytestmark = pytest.mark.unit


class _FakeResult:
    def __init__(self, rows: list | None = None) -> None:
        self._rows = rows or []

    def all(self) -> list:
        return self._rows

    def first(self):
        return self._rows[0] if self._rows else None


class _FakeSession:
    """Stands in for ``AsyncSession`` inside ``async with factory() as s, s.begin()``."""

    def __init__(self, status: str | None = "active", error: Exception | None = None) -> None:
        self.status = status
        self.error = error
        self.added: list = []
        self.selects: list = []
        self.statements: list = []

    async def __aenter__(self) -> _FakeSession:
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def begin(self) -> _FakeSession:
        return self

    async def scalar(self, stmt):
        self.selects.append(stmt)
        return self.status

    async def execute(self, stmt):
        self.statements.append(stmt)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(rowcount=1)

    def add(self, obj) -> None:
        self.added.append(obj)


def _compile(stmt) -> str:
    return str(stmt.compile(dialect=postgresql.dialect()))


def test_escape_like_neutralises_wildcards() -> None:
    assert _escape_like("50%_off\\") == "50\\%\\_off\\\\"
    assert _escape_like("abc-123") == "abc-123"


@pytest.mark.parametrize(
    "raw",
    [
        "postgres://u:p@db/farm",
        "postgresql://u:p@db/farm",
        "postgresql+psycopg://u:p@db/farm",
        "postgresql+asyncpg://u:p@db/farm",
    ],
)
def test_database_url_is_normalised_to_asyncpg(raw: str) -> None:
    assert _apply_asyncpg_scheme(raw) == "postgresql+asyncpg://u:p@db/farm"


@pytest.mark.asyncio
async def test_search_uses_bound_ilike_pattern() -> None:
    session = AsyncMock()
    session.scalars.return_value = _FakeResult()
    repo = SqlAlchemyBulkOperationRepository(session)

    await repo.search(farm_id=1, query="a%b", limit=5)

    stmt = session.scalars.await_args.args[0]
    sql = _compile(stmt)
    assert "ILIKE" in sql.upper()
    assert "a%b" not in sql
    params = stmt.compile(dialect=postgresql.dialect()).params
    assert "%a\\%b%" in params.values()


@pytest.mark.asyncio
async def test_claim_reports_lost_compare_and_set() -> None:
    session = AsyncMock()
    session.execute.return_value = SimpleNamespace(rowcount=0)
    repo = SqlAlchemyBulkOperationRepository(session)

    assert await repo.claim("op-1", started_at=None) is False
    sql = _compile(session.execute.await_args.args[0])
    assert "UPDATE bulk_operations" in sql
    assert "bulk_operations.status =" in sql


@pytest.mark.asyncio
async def test_increment_progress_is_a_single_guarded_update() -> None:
    session = AsyncMock()
    session.execute.return_value = SimpleNamespace(rowcount=1)
    repo = SqlAlchemyBulkOperationRepository(session)

    assert await repo.increment_progress("op-1", ProgressDelta.failed()) is True
    sql = _compile(session.execute.await_args.args[0])
    assert "bulk_operations.processed_items +" in sql
    assert "bulk_operations.total_items" in sql


@pytest.mark.asyncio
async def test_entity_store_reports_missing_animal() -> None:
    store = SqlAlchemyEntityStore(lambda: _FakeSession(status=None))

    failure = await store.update(5, AnimalEdit(status="sold"), farm_id=1)

    assert failure is not None
    assert failure.code == "NOT_FOUND"


@pytest.mark.asyncio
async def test_entity_store_refuses_deceased_animal() -> None:
    session = _FakeSession(status="deceased")
    store = SqlAlchemyEntityStore(lambda: session)

    failure = await store.update(5, AnimalEdit(status="sold"), farm_id=1)

    assert failure.code == "INVALID_CHANGE"
    assert session.statements == []


@pytest.mark.asyncio
async def test_entity_store_applies_animal_edit() -> None:
    session = _FakeSession()
    store = SqlAlchemyEntityStore(lambda: session)
    change = AnimalEdit(breed="Dexter", notes="re-tagged")

    assert await store.update(5, change, farm_id=1) is None
    sql = _compile(session.statements[0])
    assert sql.startswith("UPDATE animals SET")
    assert "breed=" in sql and "notes=" in sql


@pytest.mark.asyncio
async def test_entity_store_adds_health_record() -> None:
    session = _FakeSession()
    store = SqlAlchemyEntityStore(lambda: session)
    change = HealthRecordEdit(
        event_type=HealthEventType.illness, details="mastitis", record_date=date(2026, 3, 2)
    )

    assert await store.update(5, change, farm_id=1) is None
    [record] = session.added
    assert isinstance(record, AnimalHealthRecord)
    assert (record.animal_id, record.event_type) == (5, "illness")


@pytest.mark.asyncio
async def test_entity_store_maps_constraint_violation_to_item_failure() -> None:
    error = IntegrityError("UPDATE animals", {}, Exception("duplicate key value"))
    store = SqlAlchemyEntityStore(lambda: _FakeSession(error=error))

    failure = await store.update(5, AnimalEdit(status="sold"), farm_id=1)

    assert failure.code == "UPDATE_REJECTED"
    assert "duplicate key value" in failure.message


@pytest.mark.asyncio
async def test_entity_store_raises_systemic_failure_when_unreachable() -> None:
    error = OperationalError("SELECT", {}, Exception("connection refused"))
    store = SqlAlchemyEntityStore(lambda: _FakeSession(error=error))

    with pytest.raises(SystemicFailure):
        await store.update(5, AnimalEdit(status="sold"), farm_id=1)


@pytest.mark.asyncio
async def test_entity_store_locks_only_rows_of_the_operation_farm() -> None:
    session = _FakeSession(status=None)
    store = SqlAlchemyEntityStore(lambda: session)

    failure = await store.update(5, AnimalEdit(status="sold"), farm_id=7)

    assert failure.code == "NOT_FOUND"
    sql = _compile(session.selects[0])
    assert "animals.farm_id =" in sql
    assert "FOR UPDATE" in sql


@pytest.mark.asyncio
async def test_entity_store_treats_pool_timeout_as_systemic() -> None:
    error = PoolTimeoutError("QueuePool limit of size 5 overflow 10 reached")
    store = SqlAlchemyEntityStore(lambda: _FakeSession(error=error))

    with pytest.raises(SystemicFailure):
        await store.update(5, AnimalEdit(status="sold"), farm_id=1)
