"""Helpers for mapping QBO entity payloads to internal records and back.

These functions are intentionally "dumb" and deterministic so they can be
unit-tested without calling QuickBooks. Missing values map to None, never to
an empty string.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass
from typing import Any

import phonenumbers

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PhoneParts:
    code: str | None
    number: str | None


# Tried in order; first match wins. (regex, description)
COUNTRY_CODE_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"^(20)(\d{9,10})$"), "Egypt"),
    (re.compile(r"^(971)(\d{9})$"), "UAE"),
    (re.compile(r"^(966)(\d{9})$"), "Saudi Arabia"),
    (re.compile(r"^(1)(\d{10})$"), "US/Canada"),
    (re.compile(r"^(44)(\d{10})$"), "UK"),
)

NATIONAL_NUMBER_LENGTH = 10


def _parse_with_library(raw: str) -> PhoneParts | None:
    try:
        parsed = phonenumbers.parse(raw, None)
    except phonenumbers.NumberParseException:
        return None
    if not phonenumbers.is_possible_number(parsed):
        return None
    return PhoneParts(
        code=str(parsed.country_code),
        number=phonenumbers.national_significant_number(parsed),
    )


def parse_phone_number(raw: Any) -> PhoneParts:
    """Split a free-form phone number into (country calling code, national number).

    1. International parsing via `phonenumbers` (needs a leading "+").
    2. Known country-code patterns against the digits-only string.
    3. No match: <= 10 digits has no country code; longer numbers keep the
       trailing 10 digits as the national number.
    """

    if raw is None:
        return PhoneParts(None, None)
    text = str(raw).strip()
    if not text:
        return PhoneParts(None, None)

    parts = _parse_with_library(text)
    if parts is not None:
        return parts

    digits = re.sub(r"\D", "", text)
    if not digits:
        logger.warning(f"Unable to parse phone number: {text!r}")
        return PhoneParts(None, None)

    for pattern, _country in COUNTRY_CODE_PATTERNS:
        m = pattern.match(digits)
        if m:
            return PhoneParts(code=m.group(1), number=m.group(2))

    if len(digits) > NATIONAL_NUMBER_LENGTH:
        return PhoneParts(
            code=digits[:-NATIONAL_NUMBER_LENGTH],
            number=digits[-NATIONAL_NUMBER_LENGTH:],
        )
    return PhoneParts(code=None, number=digits)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _nested(raw: dict[str, Any], key: str, field: str) -> str | None:
    obj = raw.get(key)
    if not isinstance(obj, dict):
        return None
    return _clean(obj.get(field))


@dataclass(frozen=True, slots=True)
class Employee:
    quickbooks_id: str | None
    first_name: str | None
    last_name: str | None
    email: str | None
    phone_number: str | None
    phone_code: str | None
    display_name: str | None = None
    employee_number: str | None = None
    active: bool | None = None
    sync_token: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["sync_to_quickbooks"] = True
        return data


def normalize_employee(raw: dict[str, Any]) -> Employee:
    phone = parse_phone_number(_nested(raw, "PrimaryPhone", "FreeFormNumber"))
    active = raw.get("Active")
    return Employee(
        quickbooks_id=_clean(raw.get("Id")),
        first_name=_clean(raw.get("GivenName")),
        last_name=_clean(raw.get("FamilyName")),
        email=_nested(raw, "PrimaryEmailAddr", "Address"),
        phone_number=phone.number,
        phone_code=phone.code,
        display_name=_clean(raw.get("DisplayName")),
        employee_number=_clean(raw.get("EmployeeNumber")),
        active=active if isinstance(active, bool) else None,
        sync_token=_clean(raw.get("SyncToken")),
    )


def employee_payload(data: dict[str, Any], *, partial: bool = False) -> dict[str, Any]:
    """Build a QBO Employee body from internal field names.

    With `partial=True` (sparse edits) a key that is present is sent even when
    falsy, so callers can clear a field; otherwise empty values are skipped.
    """

    def wanted(key: str) -> bool:
        return key in data if partial else bool(data.get(key))

    payload: dict[str, Any] = {}
    if data.get("first_name"):
        payload["GivenName"] = data["first_name"]
    if data.get("last_name"):
        payload["FamilyName"] = data["last_name"]
    if wanted("email"):
        payload["PrimaryEmailAddr"] = {"Address": data.get("email")}
    if wanted("phone_number"):
        number = data.get("phone_number")
        code = data.get("phone_code")
        payload["PrimaryPhone"] = {
            "FreeFormNumber": f"{code}{number}" if code and number else number
        }
    if wanted("display_name"):
        payload["DisplayName"] = data.get("display_name")
    if wanted("employee_number"):
        payload["EmployeeNumber"] = data.get("employee_number")
    if partial and "active" in data:
        payload["Active"] = data["active"]
    return payload


@dataclass(frozen=True, slots=True)
class TimeActivityRecord:
    id: str | None
    employee_ref: str | None
    employee_name: str | None
    date: str | None
    start_time: str | None
    end_time: str | None
    hours: int
    minutes: int
    description: str | None
    billable_status: str | None
    created_at: str | None
    updated_at: str | None
    sync_token: str | None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def coerce_int(value: Any) -> int:
    if value is None or value == "":
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def normalize_time_activity(raw: dict[str, Any]) -> TimeActivityRecord:
    return TimeActivityRecord(
        id=_clean(raw.get("Id")),
        employee_ref=_nested(raw, "EmployeeRef", "value"),
        employee_name=_nested(raw, "EmployeeRef", "name"),
        date=_clean(raw.get("TxnDate")),
        start_time=_clean(raw.get("StartTime")),
        end_time=_clean(raw.get("EndTime")),
        hours=coerce_int(raw.get("Hours")),
        minutes=coerce_int(raw.get("Minutes")),
        description=_clean(raw.get("Description")),
        billable_status=_clean(raw.get("BillableStatus")),
        created_at=_nested(raw, "MetaData", "CreateTime"),
        updated_at=_nested(raw, "MetaData", "LastUpdatedTime"),
        sync_token=_clean(raw.get("SyncToken")),
    )
