"""Clock-in / clock-out reconciliation against QBO TimeActivity records.

An *active* TimeActivity (clocked in, not yet out) is encoded on the wire as
StartTime == EndTime with Hours == Minutes == 0. `is_active` is the only place
that reads that encoding.

States per (tenant, employee): Idle -> Active (clock_in) -> Completed
(clock_out). A new clock_in creates a fresh record.

Arithmetic is done on UTC-normalized instants; QBO date/time strings are only
produced when payloads are built.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from datetime import date, datetime, time, timedelta, timezone
from typing import Any

from src.backend.qbo_sync.integrations.errors import AlreadyActive, InvalidInput, NotActive
from src.backend.qbo_sync.integrations.qbo_client import QBOClient
from src.backend.qbo_sync.integrations.qbo_records import (
    coerce_int,
    normalize_time_activity,
)

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Instant helpers
# ---------------------------------------------------------------------------


def to_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_qbo_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def coerce_instant(value: datetime | time | str) -> datetime | time:
    """Accept a datetime, a time of day, or their ISO-8601 strings."""

    if isinstance(value, (datetime, time)):
        return value
    if isinstance(value, str):
        dt = parse_qbo_datetime(value)
        if dt is not None and ("T" in value or " " in value.strip()):
            return dt
        try:
            return time.fromisoformat(value.strip())
        except ValueError:
            pass
    raise InvalidInput(f"Not a date-time or time of day: {value!r}")


def format_qbo_datetime(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat(timespec="seconds")


def _seconds_of_day(value: datetime | time) -> int:
    return value.hour * 3600 + value.minute * 60 + value.second


def compute_duration(start: datetime | time, end: datetime | time) -> tuple[int, int]:
    """Whole (hours, minutes) between two instants; seconds are truncated.

    Two full datetimes give the exact difference. If either side is only a time
    of day, an end earlier than the start is taken to be on the next day (+24h).
    """

    if isinstance(start, datetime) and isinstance(end, datetime):
        seconds = int((to_utc(end) - to_utc(start)).total_seconds())
        if seconds < 0:
            raise InvalidInput("Clock-out time is before clock-in time")
    else:
        seconds = _seconds_of_day(end) - _seconds_of_day(start)
        if seconds < 0:
            seconds += SECONDS_PER_DAY

    total_minutes = seconds // 60
    return total_minutes // 60, total_minutes % 60


def _place_time_of_day(start: datetime, end: time) -> datetime:
    """Put a time of day on the start's date (or the next one if it wraps)."""

    candidate = start.replace(
        hour=end.hour, minute=end.minute, second=end.second, microsecond=0
    )
    if _seconds_of_day(end) < _seconds_of_day(start):
        candidate += timedelta(days=1)
    return candidate


def is_active(record: dict[str, Any]) -> bool:
    start = record.get("StartTime")
    if not start:
        return False
    if coerce_int(record.get("Hours")) != 0 or coerce_int(record.get("Minutes")) != 0:
        return False
    end = record.get("EndTime")
    if start == end:
        return True
    start_dt = parse_qbo_datetime(start)
    end_dt = parse_qbo_datetime(end)
    return start_dt is not None and end_dt is not None and to_utc(start_dt) == to_utc(end_dt)


def _employee_of(record: dict[str, Any]) -> str | None:
    ref = record.get("EmployeeRef")
    if not isinstance(ref, dict) or ref.get("value") is None:
        return None
    return str(ref["value"])


def _ref(value: str | None) -> dict[str, str] | None:
    return {"value": str(value)} if value else None


def _as_date(value: str | date, name: str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError as e:
        raise InvalidInput(f"{name} must be YYYY-MM-DD, got {value!r}") from e


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------


class TimeActivityReconciler:
    def __init__(self, *, gateway: QBOClient, active_lookback_days: int = 7) -> None:
        self._gateway = gateway
        self._active_lookback_days = active_lookback_days
        # Held only around check-and-create for one employee within this process.
        self._locks: weakref.WeakValueDictionary[tuple[str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, tenant: str, employee_ref: str) -> asyncio.Lock:
        key = (tenant, employee_ref)
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    async def _time_activities_between(
        self, tenant: str, start_date: date, end_date: date, *, newest_first: bool = False
    ) -> list[dict[str, Any]]:
        q = (
            "SELECT * FROM TimeActivity "
            f"WHERE TxnDate >= '{start_date.isoformat()}' AND TxnDate <= '{end_date.isoformat()}'"
        )
        if newest_first:
            q += " ORDERBY TxnDate DESC"
        return await self._gateway.query_all(tenant, q)

    async def find_active(
        self, tenant: str, employee_ref: str, *, around: datetime
    ) -> dict[str, Any] | None:
        """Return the employee's open TimeActivity, if any.

        QBO cannot filter on EmployeeRef in a query, so records are fetched by
        date window and filtered here.
        """

        day = around.date()
        records = await self._time_activities_between(
            tenant, day - timedelta(days=self._active_lookback_days), day + timedelta(days=1)
        )
        for record in records:
            if _employee_of(record) == str(employee_ref) and is_active(record):
                return record
        return None

    async def clock_in(
        self,
        tenant: str,
        employee_ref: str,
        start: datetime | str,
        *,
        description: str | None = None,
        customer_ref: str | None = None,
        item_ref: str | None = None,
    ) -> dict[str, Any]:
        start_dt = coerce_instant(start)
        if not isinstance(start_dt, datetime):
            raise InvalidInput("Clock-in needs a full date-time")

        async with self._lock_for(tenant, str(employee_ref)):
            open_record = await self.find_active(tenant, str(employee_ref), around=start_dt)
            if open_record is not None:
                raise AlreadyActive(
                    f"Employee {employee_ref} is already clocked in",
                    details={"time_activity_id": open_record.get("Id")},
                )

            stamp = format_qbo_datetime(start_dt)
            payload: dict[str, Any] = {
                "NameOf": "Employee",
                "EmployeeRef": {"value": str(employee_ref)},
                "TxnDate": start_dt.date().isoformat(),
                "StartTime": stamp,
                "EndTime": stamp,
                "Hours": 0,
                "Minutes": 0,
            }
            if description:
                payload["Description"] = description
            if customer_ref:
                payload["CustomerRef"] = _ref(customer_ref)
            if item_ref:
                payload["ItemRef"] = _ref(item_ref)

            created = await self._gateway.create(tenant, "TimeActivity", payload)

        logger.info(f"⏱️ Employee {employee_ref} clocked in (TimeActivity {created.get('Id')})")
        return created

    async def clock_out(
        self,
        tenant: str,
        time_activity_id: str,
        end: datetime | time | str,
        *,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Close an active TimeActivity.

        `end` may be a full datetime (exact duration) or a time of day, which
        is placed on the clock-in date and wraps past midnight when needed.
        """

        # The read must precede the write: its SyncToken guards the update.
        record = await self._gateway.get(tenant, "TimeActivity", time_activity_id)
        if not is_active(record):
            raise NotActive(
                f"TimeActivity {time_activity_id} is not an open clock-in",
                details={"time_activity_id": time_activity_id},
            )
        start_dt = parse_qbo_datetime(record.get("StartTime"))
        if start_dt is None:
            raise NotActive(
                f"TimeActivity {time_activity_id} has no usable start time",
                details={"StartTime": record.get("StartTime")},
            )

        end_value = coerce_instant(end)
        hours, minutes = compute_duration(start_dt, end_value)
        end_dt = end_value if isinstance(end_value, datetime) else _place_time_of_day(start_dt, end_value)

        payload = {k: v for k, v in record.items() if k != "MetaData"}
        payload.update(
            EndTime=format_qbo_datetime(end_dt),
            Hours=hours,
            Minutes=minutes,
            sparse=False,
        )
        if description:
            payload["Description"] = description

        updated = await self._gateway.update(tenant, "TimeActivity", payload)
        logger.info(f"⏱️ TimeActivity {time_activity_id} clocked out after {hours}h {minutes}m")
        return updated

    async def record_working_hours(
        self,
        tenant: str,
        employee_ref: str,
        start: datetime | str,
        end: datetime | time | str,
        *,
        description: str | None = None,
    ) -> dict[str, Any]:
        """Create an already-completed TimeActivity in one call."""

        start_dt = coerce_instant(start)
        if not isinstance(start_dt, datetime):
            raise InvalidInput("Working hours need a full start date-time")
        end_value = coerce_instant(end)
        hours, minutes = compute_duration(start_dt, end_value)
        end_dt = end_value if isinstance(end_value, datetime) else _place_time_of_day(start_dt, end_value)

        payload: dict[str, Any] = {
            "NameOf": "Employee",
            "EmployeeRef": {"value": str(employee_ref)},
            "TxnDate": start_dt.date().isoformat(),
            "StartTime": format_qbo_datetime(start_dt),
            "EndTime": format_qbo_datetime(end_dt),
            "Hours": hours,
            "Minutes": minutes,
        }
        if description:
            payload["Description"] = description
        return await self._gateway.create(tenant, "TimeActivity", payload)

    async def employee_time_activities(
        self,
        tenant: str,
        employee_ref: str,
        start_date: str | date,
        end_date: str | date,
    ) -> dict[str, Any]:
        start_d = _as_date(start_date, "start_date")
        end_d = _as_date(end_date, "end_date")
        if end_d < start_d:
            raise InvalidInput("end_date must not be before start_date")

        records = await self._time_activities_between(tenant, start_d, end_d, newest_first=True)
        mine = [r for r in records if _employee_of(r) == str(employee_ref)]

        activities = []
        total_minutes = 0
        for record in mine:
            item = normalize_time_activity(record)
            total_minutes += item.hours * 60 + item.minutes
            activities.append({**item.to_dict(), "active": is_active(record)})

        logger.info(
            f"Found {len(records)} time activities, {len(mine)} for employee {employee_ref}"
        )
        return {
            "employee": {
                "quickbooks_id": str(employee_ref),
                "name": activities[0]["employee_name"] if activities else None,
            },
            "activities": activities,
            "summary": {
                "total_activities": len(activities),
                "total_hours": total_minutes // 60,
                "total_minutes": total_minutes % 60,
                "date_range": {"start": start_d.isoformat(), "end": end_d.isoformat()},
            },
        }
