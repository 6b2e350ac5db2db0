"""Employee sync between the time-tracking app and QBO.

QBO is the source of truth; nothing is cached here. Employees are never
hard-deleted: `delete_employee` deactivates them and the record stays readable.
"""

from __future__ import annotations

import logging
from typing import Any

from src.backend.qbo_sync.integrations.errors import InvalidInput
from src.backend.qbo_sync.integrations.qbo_client import QBOClient
from src.backend.qbo_sync.integrations.qbo_records import (
    Employee,
    employee_payload,
    normalize_employee,
)

logger = logging.getLogger(__name__)


class EmployeeSync:
    def __init__(self, *, gateway: QBOClient) -> None:
        self._gateway = gateway

    async def list_employees(self, tenant: str) -> list[Employee]:
        raw = await self._gateway.query_all(tenant, "SELECT * FROM Employee")
        logger.info(f"Found {len(raw)} employees for tenant {tenant}")
        return [normalize_employee(e) for e in raw]

    async def get_employee(self, tenant: str, quickbooks_id: str) -> Employee:
        return normalize_employee(await self._gateway.get(tenant, "Employee", quickbooks_id))

    async def create_employee(self, tenant: str, data: dict[str, Any]) -> Employee:
        if not data.get("first_name") or not data.get("last_name"):
            raise InvalidInput("first_name and last_name are required")
        created = await self._gateway.create(tenant, "Employee", employee_payload(data))
        logger.info(f"Created employee {created.get('Id')} for tenant {tenant}")
        return normalize_employee(created)

    async def edit_employee(
        self, tenant: str, quickbooks_id: str, data: dict[str, Any]
    ) -> Employee:
        payload = employee_payload(data, partial=True)
        if not payload:
            raise InvalidInput("No employee fields to update")
        payload.update(Id=quickbooks_id, sparse=True)
        # No SyncToken here: the gateway fetches the current one.
        updated = await self._gateway.update(tenant, "Employee", payload)
        return normalize_employee(updated)

    async def delete_employee(self, tenant: str, quickbooks_id: str) -> Employee:
        deactivated = await self._gateway.soft_delete(tenant, "Employee", quickbooks_id)
        logger.info(f"Employee {quickbooks_id} marked inactive for tenant {tenant}")
        return normalize_employee(deactivated)
