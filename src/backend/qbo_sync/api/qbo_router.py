"""QuickBooks API Router.

Thin HTTP adapter over the credential lifecycle, employee sync and the
clock-in/clock-out reconciler. Responses follow the upstream contract
`{success, data | error, details?}`.
"""

import html
import logging
from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from src.backend.qbo_sync.integrations.errors import (
    AlreadyActive,
    CallbackError,
    ConcurrencyConflict,
    InvalidInput,
    NotActive,
    NotAuthenticated,
    NotFound,
    ReauthenticationRequired,
    RemoteValidationError,
    Unauthorized,
)
from src.backend.qbo_sync.integrations.qbo_auth import TokenLifecycleManager
from src.backend.qbo_sync.use_cases.employees import EmployeeSync
from src.backend.qbo_sync.use_cases.time_activity import TimeActivityReconciler

logger = logging.getLogger(__name__)

qbo_router = APIRouter(prefix="/api/quickbooks", tags=["QuickBooks"])


# ---------------------------------------------------------------------------
# Request Models
# ---------------------------------------------------------------------------


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DisconnectRequest(_CamelModel):
    company_id: str | None = Field(default=None, alias="companyId")
    user_id: str | None = Field(default=None, alias="userId")


class EmployeeRequest(_CamelModel):
    company_id: str | None = Field(default=None, alias="companyId")
    employee_data: dict[str, Any] = Field(default_factory=dict, alias="employeeData")


class ClockInRequest(_CamelModel):
    company_id: str | None = Field(default=None, alias="companyId")
    quickbooks_id: str | None = Field(default=None, alias="quickbooksId")
    clock_in_time: str | None = Field(default=None, alias="clockInTime")
    description: str | None = None
    customer_ref: str | None = Field(default=None, alias="customerRef")
    item_ref: str | None = Field(default=None, alias="itemRef")


class ClockOutRequest(_CamelModel):
    company_id: str | None = Field(default=None, alias="companyId")
    time_activity_id: str | None = Field(default=None, alias="timeActivityId")
    clock_out_time: str | None = Field(default=None, alias="clockOutTime")
    description: str | None = None


class WorkingHoursRequest(_CamelModel):
    company_id: str | None = Field(default=None, alias="companyId")
    quickbooks_id: str | None = Field(default=None, alias="quickbooksId")
    clock_in_time: str | None = Field(default=None, alias="clockInTime")
    clock_out_time: str | None = Field(default=None, alias="clockOutTime")
    description: str | None = None


# ---------------------------------------------------------------------------
# Helper Functions
# ---------------------------------------------------------------------------


def status_for(exc: Exception) -> int:
    if isinstance(
        exc, (InvalidInput, RemoteValidationError, CallbackError, AlreadyActive, NotActive)
    ):
        return 400
    if isinstance(exc, (NotAuthenticated, ReauthenticationRequired, Unauthorized)):
        return 401
    if isinstance(exc, NotFound):
        return 404
    if isinstance(exc, ConcurrencyConflict):
        return 409
    return 500


def error_response(exc: Exception) -> JSONResponse:
    status = status_for(exc)
    body: dict[str, Any] = {"success": False, "error": str(exc)}
    details = getattr(exc, "details", None)
    if details is not None:
        body["details"] = details
    if status >= 500:
        logger.error(f"❌ QuickBooks operation failed: {exc!r}")
    else:
        logger.warning(f"QuickBooks request rejected ({status}): {exc}")
    return JSONResponse(status_code=status, content=body)


async def qbo_error_handler(_request: Request, exc: Exception) -> JSONResponse:
    return error_response(exc)


def _require(value: str | None, name: str) -> str:
    if not value:
        raise InvalidInput(f"{name} is required")
    return value


def _ok(data: Any, **extra: Any) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}


def _tokens(request: Request) -> TokenLifecycleManager:
    return request.app.state.tokens


def _employees(request: Request) -> EmployeeSync:
    return request.app.state.employees


def _reconciler(request: Request) -> TimeActivityReconciler:
    return request.app.state.reconciler


# ---------------------------------------------------------------------------
# Connection Endpoints
# ---------------------------------------------------------------------------


@qbo_router.get("/auth")
async def start_authorization(
    request: Request, company_id: str | None = None, user_id: str | None = None
):
    tenant = _require(company_id, "company_id")
    auth_url = _tokens(request).build_authorization_url(tenant, user_id)
    return _ok({"auth_url": auth_url})


@qbo_router.get("/callback", response_class=HTMLResponse)
async def authorization_callback(request: Request):
    try:
        result = await _tokens(request).complete_authorization(str(request.url))
    except CallbackError as e:
        logger.error(f"❌ Error in OAuth callback ({e.reason}): {e}")
        return HTMLResponse(
            status_code=400,
            content=f"<html><body><h3>QuickBooks connection failed.</h3><p>{e.reason}</p></body></html>",
        )
    return HTMLResponse(
        "<html><body><h3>QuickBooks connected.</h3>"
        f"<p>Company {html.escape(result.tenant)} is linked. You can close this window.</p></body></html>"
    )


@qbo_router.get("/status")
async def connection_status(request: Request, company_id: str | None = None):
    tenant = _require(company_id, "company_id")
    return _ok(await _tokens(request).connection_status(tenant))


@qbo_router.post("/disconnect")
async def disconnect(request: Request, body: DisconnectRequest):
    tenant = _require(body.company_id, "company_id")
    deleted = await _tokens(request).revoke(tenant)
    if not deleted:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to remove stored credentials"},
        )
    return _ok({"message": "Disconnected from QuickBooks"})


# ---------------------------------------------------------------------------
# Employee Endpoints
# ---------------------------------------------------------------------------


@qbo_router.get("/employees")
async def list_employees(request: Request, company_id: str | None = None):
    tenant = _require(company_id, "company_id")
    employees = await _employees(request).list_employees(tenant)
    return _ok([e.to_dict() for e in employees], count=len(employees))


@qbo_router.get("/employees/{quickbooks_id}")
async def get_employee(request: Request, quickbooks_id: str, company_id: str | None = None):
    tenant = _require(company_id, "company_id")
    return _ok((await _employees(request).get_employee(tenant, quickbooks_id)).to_dict())


@qbo_router.post("/employees")
async def create_employee(request: Request, body: EmployeeRequest):
    tenant = _require(body.company_id, "company_id")
    employee = await _employees(request).create_employee(tenant, body.employee_data)
    return _ok(employee.to_dict())


@qbo_router.put("/employees/{quickbooks_id}")
async def edit_employee(request: Request, quickbooks_id: str, body: EmployeeRequest):
    tenant = _require(body.company_id, "company_id")
    employee = await _employees(request).edit_employee(tenant, quickbooks_id, body.employee_data)
    return _ok(employee.to_dict())


@qbo_router.delete("/employees/{quickbooks_id}")
async def delete_employee(request: Request, quickbooks_id: str, company_id: str | None = None):
    tenant = _require(company_id, "company_id")
    employee = await _employees(request).delete_employee(tenant, quickbooks_id)
    return _ok(employee.to_dict())


# ---------------------------------------------------------------------------
# Time Endpoints
# ---------------------------------------------------------------------------


@qbo_router.post("/clock-in")
async def clock_in(request: Request, body: ClockInRequest):
    tenant = _require(body.company_id, "company_id")
    record = await _reconciler(request).clock_in(
        tenant,
        _require(body.quickbooks_id, "quickbooksId"),
        _require(body.clock_in_time, "clockInTime"),
        description=body.description,
        customer_ref=body.customer_ref,
        item_ref=body.item_ref,
    )
    return _ok(record)


@qbo_router.post("/clock-out")
async def clock_out(request: Request, body: ClockOutRequest):
    tenant = _require(body.company_id, "company_id")
    record = await _reconciler(request).clock_out(
        tenant,
        _require(body.time_activity_id, "timeActivityId"),
        _require(body.clock_out_time, "clockOutTime"),
        description=body.description,
    )
    return _ok(record)


@qbo_router.post("/update-working-hours")
async def update_working_hours(request: Request, body: WorkingHoursRequest):
    tenant = _require(body.company_id, "company_id")
    record = await _reconciler(request).record_working_hours(
        tenant,
        _require(body.quickbooks_id, "quickbooksId"),
        _require(body.clock_in_time, "clockInTime"),
        _require(body.clock_out_time, "clockOutTime"),
        description=body.description,
    )
    return _ok(record)


@qbo_router.get("/employee-time-activities")
async def employee_time_activities(
    request: Request,
    companyId: str | None = None,  # noqa: N803
    quickbooksId: str | None = None,  # noqa: N803
    startDate: str | None = None,  # noqa: N803
    endDate: str | None = None,  # noqa: N803
):
    tenant = _require(companyId, "companyId")
    result = await _reconciler(request).employee_time_activities(
        tenant,
        _require(quickbooksId, "quickbooksId"),
        _require(startDate, "startDate"),
        _require(endDate, "endDate"),
    )
    return _ok(result["activities"], employee=result["employee"], summary=result["summary"])

