# tests/conftest.py
import os

import pytest
import pytest_asyncio
from dotenv import load_dotenv
from httpx import ASGITransport, AsyncClient

# Configure the environment before farmops.main builds its module-level app
load_dotenv(".env.test", override=False)
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("STORAGE_BACKEND", "memory")
os.environ["SENTRY_DSN"] = ""

from farmops.core.config import Settings  # noqa: E402
from farmops.infra.unit_of_work import InMemoryUnitOfWork  # noqa: E402
from farmops.main import create_app  # noqa: E402
from farmops.repositories.memory import (  # noqa: E402
    InMemoryOperationStore,
    StaticPermissionChecker,
)
from farmops.services.approval_gate import ApprovalGate  # noqa: E402
from farmops.services.batch_executor import BatchExecutor  # noqa: E402
from farmops.services.operation_registry import OperationRegistry  # noqa: E402
from farmops.services.statistics import StatisticsAggregator  # noqa: E402
from tests.factories import (  # noqa: E402
    ADMIN,
    FARM_ID,
    OTHER_FARM_ID,
    FrozenClock,
    ScriptedEntityStore,
    seed_animals,
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def operation_store() -> InMemoryOperationStore:
    return InMemoryOperationStore()


@pytest.fixture
def uow_factory(operation_store):
    return lambda: InMemoryUnitOfWork(operation_store)


@pytest.fixture
def entity_store() -> ScriptedEntityStore:
    store = ScriptedEntityStore()
    seed_animals(store, range(1, 11), FARM_ID)
    seed_animals(store, [901, 902], OTHER_FARM_ID)
    return store


@pytest.fixture
def permissions() -> StaticPermissionChecker:
    return StaticPermissionChecker({FARM_ID: {ADMIN}, OTHER_FARM_ID: set()})


@pytest.fixture
def registry(uow_factory, permissions, clock) -> OperationRegistry:
    return OperationRegistry(uow_factory, permissions=permissions, clock=clock)


@pytest.fixture
def executor(uow_factory, entity_store, permissions, clock) -> BatchExecutor:
    return BatchExecutor(uow_factory, entity_store, permissions=permissions, clock=clock)


@pytest.fixture
def gate(uow_factory, entity_store, permissions, executor, clock) -> ApprovalGate:
    return ApprovalGate(
        uow_factory,
        entity_store=entity_store,
        permissions=permissions,
        executor=executor,
        clock=clock,
    )


@pytest.fixture
def statistics(uow_factory) -> StatisticsAggregator:
    return StatisticsAggregator(uow_factory)


@pytest.fixture
def settings() -> Settings:
    return Settings(storage_backend="memory", app_env="test", sentry_dsn=None, _env_file=None)


@pytest.fixture
def app(settings, uow_factory, entity_store, permissions, clock):
    return create_app(
        settings,
        uow_factory=uow_factory,
        entity_store=entity_store,
        permissions=permissions,
        clock=clock,
    )


@pytest_asyncio.fixture
async def app_client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
