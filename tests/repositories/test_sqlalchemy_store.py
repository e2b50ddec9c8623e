"""Runs the bulk engine against PostgreSQL.

Requires TEST_DATABASE_URL (any postgres scheme); the tables are created and
dropped around each test.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmops.core.exceptions import InvalidStateError, NotFoundError
from farmops.db import build_engine, build_session_factory
from farmops.dto import FailureDetailRecord, ProgressDelta
from farmops.infra.unit_of_work import SqlAlchemyUnitOfWork
from farmops.models import Animal, Base, FarmPermission, OperationStatus, OperationType
from farmops.repositories.sqlalchemy import SqlAlchemyEntityStore, SqlAlchemyPermissionChecker
from farmops.schemas.changes import AnimalEdit
from farmops.services.approval_gate import ApprovalGate
from farmops.services.batch_executor import BatchExecutor
from farmops.services.operation_registry import OperationRegistry
from farmops.services.statistics import StatisticsAggregator
from tests.factories import ADMIN, FARM_ID, VIEWER, FrozenClock

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "")

pytestmark = [
    pytest.mark.integration,
    pytest.mark.skipif(
        not TEST_DATABASE_URL.startswith(("postgresql", "postgres://")),
        reason="TEST_DATABASE_URL is required for PostgreSQL integration tests",
    ),
]


@pytest_asyncio.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    factory = build_session_factory(engine)
    async with factory() as session:
        session.add_all(
            [Animal(id=i, farm_id=FARM_ID, breed="Angus") for i in range(1, 6)]
            + [Animal(id=6, farm_id=FARM_ID, status="deceased")]
            + [FarmPermission(farm_id=FARM_ID, user_id=ADMIN, role="admin")]
        )
        await session.commit()
    try:
        yield factory
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest.fixture
def sql_clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def sql_services(session_factory, sql_clock):
    def uow_factory():
        return SqlAlchemyUnitOfWork(session_factory)

    entity_store = SqlAlchemyEntityStore(session_factory)
    permissions = SqlAlchemyPermissionChecker(session_factory, clock=sql_clock)
    executor = BatchExecutor(
        uow_factory, entity_store, permissions=permissions, clock=sql_clock
    )
    gate = ApprovalGate(
        uow_factory,
        entity_store=entity_store,
        permissions=permissions,
        executor=executor,
        clock=sql_clock,
    )
    registry = OperationRegistry(uow_factory, permissions=permissions, clock=sql_clock)
    return gate, registry, executor, StatisticsAggregator(uow_factory)


@pytest.mark.asyncio
async def test_approval_flow_against_postgres(sql_services, session_factory) -> None:
    gate, registry, _, statistics = sql_services
    request = await gate.submit_request(
        farm_id=FARM_ID,
        target_item_ids=[1, 2, 6, 404],
        proposed_changes={"kind": "animal_edit", "status": "sold"},
        reason="autumn sale",
        requester=VIEWER,
    )

    operation = (await gate.approve(request.id, ADMIN)).operation

    assert operation.status is OperationStatus.completed
    assert (operation.success_count, operation.failure_count) == (2, 2)
    codes = {f.item_id: f.error_code for f in await registry.get_failure_details(operation.id)}
    assert codes == {6: "INVALID_CHANGE", 404: "NOT_FOUND"}
    async with session_factory() as session:
        assert (await session.get(Animal, 1)).status == "sold"
    stats = await statistics.get_stats(FARM_ID)
    assert stats.total_success == 2


@pytest.mark.asyncio
async def test_claim_and_progress_are_guarded(sql_services) -> None:
    _, registry, _, _ = sql_services
    operation = await registry.create_operation(
        farm_id=FARM_ID,
        operation_type=OperationType.data_import,
        total_items=1,
        created_by=ADMIN,
    )

    await registry.begin_execution(operation.id)
    with pytest.raises(InvalidStateError):
        await registry.begin_execution(operation.id)
    with pytest.raises(InvalidStateError):
        await registry.record_progress(operation.id, ProgressDelta.succeeded(2))
    assert (await registry.get(operation.id)).processed_items == 0


@pytest.mark.asyncio
async def test_failure_ledger_keeps_one_row_per_item(sql_services, session_factory, sql_clock):
    _, registry, _, _ = sql_services
    operation = await registry.create_operation(
        farm_id=FARM_ID,
        operation_type=OperationType.batch_edit,
        total_items=1,
        created_by=ADMIN,
    )
    detail = FailureDetailRecord(
        operation_id=operation.id,
        item_id=3,
        item_type="animal",
        error_code="NOT_FOUND",
        error_message="animal 3 not found",
        item_data=None,
        created_at=sql_clock.now(),
    )

    async with SqlAlchemyUnitOfWork(session_factory) as uow:
        assert await uow.failures.append(detail) is True
    async with SqlAlchemyUnitOfWork(session_factory) as uow:
        assert await uow.failures.append(detail) is False

    assert len(await registry.get_failure_details(operation.id)) == 1


@pytest.mark.asyncio
async def test_search_treats_wildcards_literally(sql_services) -> None:
    _, registry, _, _ = sql_services
    await registry.create_operation(
        farm_id=FARM_ID,
        operation_type=OperationType.data_export,
        total_items=1,
        created_by=ADMIN,
    )

    assert await registry.search_operations(farm_id=FARM_ID, query="%") == []
    assert await registry.search_operations(farm_id=FARM_ID, query="_") == []


@pytest.mark.asyncio
async def test_expired_grant_is_not_elevated(session_factory, sql_clock) -> None:
    async with session_factory() as session:
        session.add(
            FarmPermission(
                farm_id=FARM_ID,
                user_id="former-admin",
                role="admin",
                expires_at=sql_clock.now() - timedelta(days=1),
            )
        )
        await session.commit()
    checker = SqlAlchemyPermissionChecker(session_factory, clock=sql_clock)

    assert await checker.has_elevated_role(ADMIN, FARM_ID) is True
    assert await checker.has_elevated_role("former-admin", FARM_ID) is False
    assert await checker.has_elevated_role(VIEWER, FARM_ID) is False


@pytest.mark.asyncio
async def test_purge_deletes_request_and_ledger(sql_services, sql_clock) -> None:
    gate, registry, _, _ = sql_services
    request = await gate.submit_request(
        farm_id=FARM_ID,
        target_item_ids=[3, 404],
        proposed_changes=AnimalEdit(notes="moved to east paddock"),
        reason="paddock rotation",
        requester=VIEWER,
    )
    operation = (await gate.approve(request.id, ADMIN)).operation
    sql_clock.advance(days=91)

    assert await registry.purge_older_than(FARM_ID, 90, requested_by=ADMIN) == 1
    with pytest.raises(NotFoundError):
        await registry.get(operation.id)


@pytest.mark.asyncio
async def test_animal_moved_into_another_farm_is_not_edited(sql_services, session_factory):
    gate, registry, _, _ = sql_services
    request = await gate.submit_request(
        farm_id=FARM_ID,
        target_item_ids=[1, 50],
        proposed_changes={"kind": "animal_edit", "status": "sold"},
        reason="autumn sale",
        requester=VIEWER,
    )
    async with session_factory() as session:
        session.add(Animal(id=50, farm_id=FARM_ID + 1, breed="Dexter"))
        await session.commit()

    operation = (await gate.approve(request.id, ADMIN)).operation

    assert (operation.success_count, operation.failure_count) == (1, 1)
    [failure] = await registry.get_failure_details(operation.id)
    assert (failure.item_id, failure.error_code) == (50, "NOT_FOUND")
    async with session_factory() as session:
        assert (await session.get(Animal, 50)).status == "active"


@pytest.mark.asyncio
async def test_candidates_are_filtered_and_paged(session_factory) -> None:
    store = SqlAlchemyEntityStore(session_factory)

    page, total = await store.list_for_farm(FARM_ID, status="active", limit=2, offset=1)

    assert total == 5
    assert [r.id for r in page] == [2, 3]
    deceased, _ = await store.list_for_farm(FARM_ID, status="deceased")
    assert [r.id for r in deceased] == [6]
