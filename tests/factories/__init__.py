from .bulk import (
    ADMIN,
    FARM_ID,
    OTHER_FARM_ID,
    START,
    VIEWER,
    FrozenClock,
    ScriptedEntityStore,
    animal,
    seed_animals,
)

__all__ = [
    "ADMIN",
    "FARM_ID",
    "OTHER_FARM_ID",
    "START",
    "VIEWER",
    "FrozenClock",
    "ScriptedEntityStore",
    "animal",
    "seed_animals",
]
