"""Unit of Work abstraction used by the service layer."""

from __future__ import annotations

from contextlib import AbstractAsyncContextManager
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmops.repositories.interfaces import (
    ApprovalRequestRepository,
    BulkOperationRepository,
    FailureLedgerRepository,
    RetryLogRepository,
)
from farmops.repositories.memory import (
    InMemoryApprovalRequestRepository,
    InMemoryBulkOperationRepository,
    InMemoryFailureLedgerRepository,
    InMemoryOperationStore,
    InMemoryRetryLogRepository,
    OperationState,
)
from farmops.repositories.sqlalchemy import (
    SqlAlchemyApprovalRequestRepository,
    SqlAlchemyBulkOperationRepository,
    SqlAlchemyFailureLedgerRepository,
    SqlAlchemyRetryLogRepository,
)


class UnitOfWork(Protocol, AbstractAsyncContextManager["UnitOfWork"]):
    """Defines the repository boundary exposed to services.

    Committed on a clean exit, rolled back when the block raises.
    """

    operations: BulkOperationRepository
    approvals: ApprovalRequestRepository
    failures: FailureLedgerRepository
    retries: RetryLogRepository

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...

    async def ping(self) -> None: ...


class SqlAlchemyUnitOfWork(UnitOfWork):
    """Unit of Work backed by SQLAlchemy async sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._session: AsyncSession | None = None
        self.operations: BulkOperationRepository
        self.approvals: ApprovalRequestRepository
        self.failures: FailureLedgerRepository
        self.retries: RetryLogRepository

    async def __aenter__(self) -> SqlAlchemyUnitOfWork:
        session = self._session_factory()
        self._session = session
        self.operations = SqlAlchemyBulkOperationRepository(session)
        self.approvals = SqlAlchemyApprovalRequestRepository(session)
        self.failures = SqlAlchemyFailureLedgerRepository(session)
        self.retries = SqlAlchemyRetryLogRepository(session)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session is None:
            return
        try:
            if exc_type:
                await self._session.rollback()
            else:
                await self._session.commit()
        finally:
            await self._session.close()
            self._session = None

    async def commit(self) -> None:
        if self._session is not None:
            await self._session.commit()

    async def rollback(self) -> None:
        if self._session is not None:
            await self._session.rollback()

    async def ping(self) -> None:
        await self.session.execute(text("SELECT 1"))

    @property
    def session(self) -> AsyncSession:
        if self._session is None:
            raise RuntimeError("UnitOfWork session is not initialized. Use within context manager.")
        return self._session


class InMemoryUnitOfWork(UnitOfWork):
    """Unit of Work over an ``InMemoryOperationStore``.

    Holds the store lock for the whole block, so units of work must not be
    nested. Rollback restores the snapshot taken on entry (or at the last
    commit).
    """

    def __init__(self, store: InMemoryOperationStore) -> None:
        self._store = store
        self._snapshot: OperationState | None = None
        self.operations = InMemoryBulkOperationRepository(store.state)
        self.approvals = InMemoryApprovalRequestRepository(store.state)
        self.failures = InMemoryFailureLedgerRepository(store.state)
        self.retries = InMemoryRetryLogRepository(store.state)

    async def __aenter__(self) -> InMemoryUnitOfWork:
        await self._store.lock.acquire()
        self._snapshot = self._store.state.snapshot()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        try:
            if exc_type:
                await self.rollback()
        finally:
            self._snapshot = None
            self._store.lock.release()

    async def commit(self) -> None:
        self._snapshot = self._store.state.snapshot()

    async def rollback(self) -> None:
        if self._snapshot is not None:
            self._store.state.restore(self._snapshot.snapshot())

    async def ping(self) -> None:
        return None
