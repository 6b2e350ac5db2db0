from __future__ import annotations

import pytest

from src.backend.qbo_sync.integrations.qbo_records import (
    PhoneParts,
    employee_payload,
    normalize_employee,
    normalize_time_activity,
    parse_phone_number,
)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("971501234567", PhoneParts("971", "501234567")),
        ("12025550123", PhoneParts("1", "2025550123")),
        ("201001234567", PhoneParts("20", "1001234567")),
        ("966501234567", PhoneParts("966", "501234567")),
        ("(971) 50-123-4567", PhoneParts("971", "501234567")),
        ("5551234", PhoneParts(None, "5551234")),
        ("2025550123", PhoneParts(None, "2025550123")),
        ("", PhoneParts(None, None)),
        (None, PhoneParts(None, None)),
        ("n/a", PhoneParts(None, None)),
    ],
)
def test_parse_phone_number(raw, expected) -> None:
    assert parse_phone_number(raw) == expected


def test_parse_phone_number_international_format() -> None:
    assert parse_phone_number("+971 50 123 4567") == PhoneParts("971", "501234567")
    assert parse_phone_number("+1 202-555-0123") == PhoneParts("1", "2025550123")


def test_parse_phone_number_unknown_prefix_keeps_trailing_ten_digits() -> None:
    parts = parse_phone_number("3312345678901")
    assert parts == PhoneParts("331", "2345678901")


def test_normalize_employee_maps_missing_fields_to_none() -> None:
    raw = {
        "Id": "55",
        "SyncToken": "2",
        "GivenName": "Layla",
        "FamilyName": " ",
        "DisplayName": "Layla H",
        "Active": True,
        "PrimaryPhone": {"FreeFormNumber": "971501234567"},
    }

    employee = normalize_employee(raw)

    assert employee.quickbooks_id == "55"
    assert employee.first_name == "Layla"
    assert employee.last_name is None
    assert employee.email is None
    assert employee.phone_code == "971"
    assert employee.phone_number == "501234567"
    assert employee.active is True
    assert employee.sync_token == "2"

    data = employee.to_dict()
    assert data["sync_to_quickbooks"] is True
    assert "" not in data.values()


def test_normalize_employee_without_phone() -> None:
    employee = normalize_employee({"Id": "1", "PrimaryEmailAddr": {"Address": "a@b.co"}})
    assert employee.email == "a@b.co"
    assert employee.phone_number is None
    assert employee.phone_code is None
    assert employee.active is None


def test_employee_payload_full_skips_empty_values() -> None:
    payload = employee_payload(
        {
            "first_name": "Ann",
            "last_name": "Lee",
            "email": "",
            "phone_number": "2025550123",
            "phone_code": "1",
            "active": False,
        }
    )

    assert payload == {
        "GivenName": "Ann",
        "FamilyName": "Lee",
        "PrimaryPhone": {"FreeFormNumber": "12025550123"},
    }


def test_employee_payload_partial_sends_present_keys() -> None:
    payload = employee_payload({"email": None, "active": True}, partial=True)

    assert payload == {"PrimaryEmailAddr": {"Address": None}, "Active": True}


def test_normalize_time_activity() -> None:
    record = normalize_time_activity(
        {
            "Id": "9",
            "SyncToken": "1",
            "TxnDate": "2024-01-05",
            "EmployeeRef": {"value": "55", "name": "Layla H"},
            "StartTime": "2024-01-05T09:00:00+00:00",
            "EndTime": "2024-01-05T17:30:00+00:00",
            "Hours": 8,
            "Minutes": "30",
            "MetaData": {"CreateTime": "2024-01-05T09:00:01-08:00"},
        }
    )

    assert record.id == "9"
    assert record.employee_ref == "55"
    assert record.employee_name == "Layla H"
    assert record.hours == 8
    assert record.minutes == 30
    assert record.description is None
    assert record.created_at == "2024-01-05T09:00:01-08:00"
    assert record.updated_at is None
