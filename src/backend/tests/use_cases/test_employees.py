from __future__ import annotations

import pytest

from src.backend.qbo_sync.integrations.errors import InvalidInput, NotFound
from src.backend.qbo_sync.use_cases.employees import EmployeeSync


@pytest.fixture
def employees(fake_qbo) -> EmployeeSync:
    return EmployeeSync(gateway=fake_qbo)


@pytest.mark.asyncio
async def test_create_and_list_employees(employees, fake_qbo) -> None:
    created = await employees.create_employee(
        "acme",
        {
            "first_name": "Layla",
            "last_name": "Hassan",
            "email": "layla@example.com",
            "phone_code": "971",
            "phone_number": "501234567",
        },
    )

    assert created.quickbooks_id == "1"
    assert created.phone_code == "971"
    assert created.phone_number == "501234567"
    assert fake_qbo.entities[("Employee", "1")]["PrimaryPhone"] == {
        "FreeFormNumber": "971501234567"
    }

    listed = await employees.list_employees("acme")
    assert [e.email for e in listed] == ["layla@example.com"]
    assert fake_qbo.queries == ["SELECT * FROM Employee"]


@pytest.mark.asyncio
async def test_create_employee_requires_names(employees, fake_qbo) -> None:
    with pytest.raises(InvalidInput):
        await employees.create_employee("acme", {"first_name": "Layla"})
    assert fake_qbo.entities == {}


@pytest.mark.asyncio
async def test_edit_employee_is_sparse(employees, fake_qbo) -> None:
    fake_qbo.add(
        "Employee",
        {"Id": "7", "GivenName": "Omar", "FamilyName": "Saleh", "Active": True},
    )

    updated = await employees.edit_employee("acme", "7", {"email": "omar@example.com"})

    assert updated.first_name == "Omar"
    assert updated.email == "omar@example.com"
    assert updated.sync_token == "1"

    with pytest.raises(InvalidInput):
        await employees.edit_employee("acme", "7", {})


@pytest.mark.asyncio
async def test_delete_employee_deactivates_and_keeps_record(employees, fake_qbo) -> None:
    fake_qbo.add("Employee", {"Id": "7", "GivenName": "Omar", "Active": True})

    deleted = await employees.delete_employee("acme", "7")
    assert deleted.active is False

    # Still readable after the "delete".
    fetched = await employees.get_employee("acme", "7")
    assert fetched.active is False
    assert fetched.first_name == "Omar"
    assert fetched.sync_token == "1"


@pytest.mark.asyncio
async def test_get_missing_employee(employees) -> None:
    with pytest.raises(NotFound):
        await employees.get_employee("acme", "404")

