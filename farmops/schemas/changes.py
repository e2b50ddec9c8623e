"""Proposed change payloads, tagged by the kind of record they edit."""

from __future__ import annotations

from datetime import date
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic import ValidationError as PydanticValidationError

from farmops.core.exceptions import ValidationError


class AnimalStatus(str, Enum):
    active = "active"
    sold = "sold"
    culled = "culled"
    deceased = "deceased"


class HealthStatus(str, Enum):
    healthy = "healthy"
    sick = "sick"
    recovering = "recovering"


class HealthEventType(str, Enum):
    vaccination = "vaccination"
    treatment = "treatment"
    illness = "illness"
    checkup = "checkup"
    other = "other"


class AnimalEdit(BaseModel):
    """Field edits applied to each targeted animal."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["animal_edit"] = "animal_edit"
    status: AnimalStatus | None = None
    breed: str | None = Field(default=None, min_length=1, max_length=255)
    health_status: HealthStatus | None = None
    notes: str | None = Field(default=None, max_length=10000)

    @model_validator(mode="after")
    def _require_some_field(self) -> AnimalEdit:
        if not self.updates():
            raise ValueError("at least one field must be changed")
        return self

    def updates(self) -> dict[str, Any]:
        return {
            key: value
            for key, value in self.model_dump(mode="json", exclude={"kind"}).items()
            if value is not None
        }


class HealthRecordEdit(BaseModel):
    """Appends one health event to each targeted animal."""

    model_config = ConfigDict(extra="forbid")

    kind: Literal["health_record"] = "health_record"
    event_type: HealthEventType
    details: str = Field(min_length=1, max_length=10000)
    record_date: date


ProposedChange = Annotated[AnimalEdit | HealthRecordEdit, Field(discriminator="kind")]

_change_adapter: TypeAdapter[AnimalEdit | HealthRecordEdit] = TypeAdapter(ProposedChange)

ITEM_TYPES: dict[str, str] = {
    "animal_edit": "animal",
    "health_record": "health_record",
}


def parse_change(data: Any) -> AnimalEdit | HealthRecordEdit:
    """Validate a raw payload (or pass through a parsed one) at the service boundary."""

    if isinstance(data, (AnimalEdit, HealthRecordEdit)):
        return data
    try:
        return _change_adapter.validate_python(data)
    except PydanticValidationError as exc:
        first = exc.errors()[0] if exc.errors() else {}
        loc = ".".join(str(part) for part in first.get("loc", ()))
        msg = first.get("msg", "invalid change")
        raise ValidationError(f"invalid proposed_changes: {loc + ': ' if loc else ''}{msg}") from exc


def item_type_for(change: AnimalEdit | HealthRecordEdit) -> str:
    return ITEM_TYPES[change.kind]


def change_snapshot(change: AnimalEdit | HealthRecordEdit) -> dict[str, Any]:
    return change.model_dump(mode="json", exclude_none=True)
