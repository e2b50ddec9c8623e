from datetime import date

import pytest

from farmops.core.exceptions import ValidationError
from farmops.schemas.changes import (
    AnimalEdit,
    AnimalStatus,
    HealthEventType,
    HealthRecordEdit,
    change_snapshot,
    item_type_for,
    parse_change,
)

pytestmark = pytest.mark.unit


def test_parse_animal_edit():
    change = parse_change({"kind": "animal_edit", "status": "sold", "notes": "auction lot 12"})

    assert isinstance(change, AnimalEdit)
    assert change.status is AnimalStatus.sold
    assert change.updates() == {"status": "sold", "notes": "auction lot 12"}
    assert item_type_for(change) == "animal"


def test_parse_health_record():
    change = parse_change(
        {
            "kind": "health_record",
            "event_type": "treatment",
            "details": "foot rot, oxytetracycline",
            "record_date": "2026-02-14",
        }
    )

    assert isinstance(change, HealthRecordEdit)
    assert change.event_type is HealthEventType.treatment
    assert change.record_date == date(2026, 2, 14)
    assert item_type_for(change) == "health_record"


def test_parsed_change_passes_through():
    change = AnimalEdit(breed="Jersey")
    assert parse_change(change) is change


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"status": "sold"},
        {"kind": "crop_edit", "status": "sold"},
        {"kind": "animal_edit"},
        {"kind": "animal_edit", "status": "missing"},
        {"kind": "animal_edit", "status": "sold", "owner": "someone"},
        {"kind": "animal_edit", "breed": ""},
        {"kind": "health_record", "event_type": "vaccination", "record_date": "2026-01-01"},
        {
            "kind": "health_record",
            "event_type": "surgery",
            "details": "x",
            "record_date": "2026-01-01",
        },
    ],
)
def test_invalid_payloads_raise_validation_error(payload):
    with pytest.raises(ValidationError, match="invalid proposed_changes"):
        parse_change(payload)


def test_snapshot_omits_unset_fields():
    change = parse_change({"kind": "animal_edit", "health_status": "sick"})

    assert change_snapshot(change) == {"kind": "animal_edit", "health_status": "sick"}


def test_snapshot_of_health_record_is_json_ready():
    change = HealthRecordEdit(
        event_type=HealthEventType.checkup, details="annual", record_date=date(2026, 3, 1)
    )

    assert change_snapshot(change) == {
        "kind": "health_record",
        "event_type": "checkup",
        "details": "annual",
        "record_date": "2026-03-01",
    }
