"""Entity store and permission checker over the farm record tables."""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DataError, IntegrityError, InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from farmops.core.clock import Clock, SystemClock
from farmops.core.exceptions import SystemicFailure
from farmops.dto import EntityRecord, ItemFailure
from farmops.models import Animal, AnimalHealthRecord, FarmPermission
from farmops.repositories.interfaces import EntityStore, PermissionChecker
from farmops.schemas.changes import AnimalEdit, AnimalStatus, HealthRecordEdit

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


def _entity_record(row: Animal) -> EntityRecord:
    return EntityRecord(
        id=row.id,
        farm_id=row.farm_id,
        attributes={
            "unique_tag_id": row.unique_tag_id,
            "breed": row.breed,
            "gender": row.gender,
            "status": row.status,
            "health_status": row.health_status,
            "notes": row.notes,
        },
    )


class SqlAlchemyEntityStore(EntityStore):
    """Applies each item edit in its own short transaction.

    Per-item outcomes never share a transaction with the operation counters,
    so an item that was written stays written even if the batch later aborts.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def read_many(self, ids: Sequence[int]) -> list[EntityRecord]:
        if not ids:
            return []
        try:
            async with self._session_factory() as session:
                rows = (await session.scalars(select(Animal).where(Animal.id.in_(ids)))).all()
        except _CONNECTIVITY_ERRORS as exc:
            raise SystemicFailure(f"entity store unavailable: {exc.__class__.__name__}") from exc
        return [_entity_record(row) for row in rows]

    async def list_for_farm(
        self,
        farm_id: int,
        *,
        status: str | None = None,
        breed: str | None = None,
        gender: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[EntityRecord], int]:
        conditions = [Animal.farm_id == farm_id]
        if status is not None:
            conditions.append(Animal.status == status)
        if breed is not None:
            conditions.append(Animal.breed == breed)
        if gender is not None:
            conditions.append(Animal.gender == gender)
        stmt = select(Animal).where(*conditions).order_by(Animal.id).limit(limit).offset(offset)
        count_stmt = select(func.count()).select_from(Animal).where(*conditions)
        try:
            async with self._session_factory() as session:
                rows = (await session.scalars(stmt)).all()
                total = await session.scalar(count_stmt)
        except _CONNECTIVITY_ERRORS as exc:
            raise SystemicFailure(f"entity store unavailable: {exc.__class__.__name__}") from exc
        return [_entity_record(row) for row in rows], int(total or 0)

    async def update(
        self, item_id: int, change: AnimalEdit | HealthRecordEdit, *, farm_id: int
    ) -> ItemFailure | None:
        try:
            async with self._session_factory() as session, session.begin():
                current = await session.scalar(
                    select(Animal.status)
                    .where(Animal.id == item_id, Animal.farm_id == farm_id)
                    .with_for_update()
                )
                if current is None:
                    return ItemFailure(
                        "NOT_FOUND", f"animal {item_id} not found in farm {farm_id}"
                    )
                if current == AnimalStatus.deceased.value:
                    return ItemFailure("INVALID_CHANGE", f"animal {item_id} is deceased")
                if isinstance(change, HealthRecordEdit):
                    session.add(
                        AnimalHealthRecord(
                            animal_id=item_id,
                            record_date=change.record_date,
                            event_type=change.event_type.value,
                            details=change.details,
                        )
                    )
                else:
                    await session.execute(
                        update(Animal).where(Animal.id == item_id).values(**change.updates())
                    )
        except (IntegrityError, DataError) as exc:
            return ItemFailure("UPDATE_REJECTED", str(exc.orig or exc)[:500])
        except _CONNECTIVITY_ERRORS as exc:
            raise SystemicFailure(f"entity store unavailable: {exc.__class__.__name__}") from exc
        return None


class SqlAlchemyPermissionChecker(PermissionChecker):
    """Looks up an unexpired ``farm_permissions`` grant with an elevated role."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        elevated_roles: Iterable[str] = ("admin",),
        clock: Clock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._roles = sorted(set(elevated_roles))
        self._clock = clock or SystemClock()

    async def has_elevated_role(self, user_id: str, farm_id: int) -> bool:
        stmt = (
            select(FarmPermission.id)
            .where(
                FarmPermission.farm_id == farm_id,
                FarmPermission.user_id == user_id,
                FarmPermission.role.in_(self._roles),
                or_(
                    FarmPermission.expires_at.is_(None),
                    FarmPermission.expires_at > self._clock.now(),
                ),
            )
            .limit(1)
        )
        async with self._session_factory() as session:
            return (await session.scalar(stmt)) is not None
