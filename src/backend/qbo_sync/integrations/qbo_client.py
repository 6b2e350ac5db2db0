"""QuickBooks Online (QBO) entity gateway.

Purpose
- Authenticated, async calls against the QBO accounting API for one tenant.
- Optimistic-concurrency discipline: every mutation carries the most recently
  observed SyncToken; a stale token surfaces as `ConcurrencyConflict`.
- Map QBO HTTP/Fault responses onto the error taxonomy in `errors.py`.

This module is intentionally independent of FastAPI.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable

import httpx

from src.backend.qbo_sync.config.settings import QBOSettings
from src.backend.qbo_sync.integrations.errors import (
    ConcurrencyConflict,
    GatewayError,
    NotFound,
    RemoteValidationError,
    TransientNetworkError,
    Unauthorized,
)
from src.backend.qbo_sync.integrations.qbo_auth import TokenLifecycleManager

logger = logging.getLogger(__name__)

# Entities QBO never hard-deletes; they are deactivated instead.
NO_DELETE_ENTITIES = frozenset(
    {
        "Account",
        "Class",
        "Customer",
        "Department",
        "Employee",
        "Item",
        "PaymentMethod",
        "TaxCode",
        "Term",
        "Vendor",
    }
)

_QUERY_RESPONSE_META_KEYS = frozenset({"startPosition", "maxResults", "totalCount"})

# QBO caps MAXRESULTS at 1000.
MAX_QUERY_PAGE_SIZE = 1000

STALE_OBJECT_FAULT_CODE = "5010"
OBJECT_NOT_FOUND_FAULT_CODE = "610"


def _fault_errors(body: Any) -> list[dict[str, Any]]:
    if not isinstance(body, dict):
        return []
    fault = body.get("Fault") or body.get("fault")
    if not isinstance(fault, dict):
        return []
    errors = fault.get("Error") or fault.get("error") or []
    if isinstance(errors, dict):
        errors = [errors]
    return [e for e in errors if isinstance(e, dict)]


def raise_for_qbo_response(status_code: int, body: Any) -> None:
    """Translate a non-2xx QBO response into a GatewayError subclass."""

    if status_code < 400:
        return

    errors = _fault_errors(body)
    codes = {str(e.get("code")) for e in errors if e.get("code") is not None}
    message = f"HTTP {status_code}"
    if errors:
        first = errors[0]
        message = f"HTTP {status_code}: {first.get('Message') or ''} {first.get('Detail') or ''}".strip()

    if status_code == 401:
        raise Unauthorized(message, status_code=status_code, details=body)
    if STALE_OBJECT_FAULT_CODE in codes:
        raise ConcurrencyConflict(message, status_code=status_code, details=body)
    if status_code == 404 or OBJECT_NOT_FOUND_FAULT_CODE in codes:
        raise NotFound(message, status_code=status_code, details=body)
    if status_code == 429 or status_code >= 500:
        raise TransientNetworkError(message, status_code=status_code, details=body)
    raise RemoteValidationError(message, status_code=status_code, details=body)


def retry_once_on_unauthorized(
    fn: Callable[..., Awaitable[Any]],
) -> Callable[..., Awaitable[Any]]:
    """Retry a tenant call exactly once with a force-refreshed token after a 401."""

    @functools.wraps(fn)
    async def wrapper(self: "QBOClient", tenant: str, *args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(self, tenant, *args, **kwargs)
        except Unauthorized:
            logger.info(f"QBO rejected the bearer token for tenant {tenant}; refreshing once")
            kwargs["force_refresh"] = True
            return await fn(self, tenant, *args, **kwargs)

    return wrapper


class QBOClient:
    def __init__(
        self,
        *,
        settings: QBOSettings,
        tokens: TokenLifecycleManager,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._tokens = tokens
        self._transport = transport
        self._sleep = sleep

    def _company_url(self, realm_id: str, path: str) -> str:
        return f"{self._settings.api_base_url}/v3/company/{realm_id}/{path}"

    async def _request_json(
        self,
        method: str,
        url: str,
        *,
        bearer_token: str,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        timeout: float,
    ) -> dict[str, Any]:
        headers = {
            "Authorization": f"Bearer {bearer_token}",
            "Accept": "application/json",
        }
        if json_body is not None:
            headers["Content-Type"] = "application/json"

        try:
            async with httpx.AsyncClient(timeout=timeout, transport=self._transport) as client:
                resp = await asyncio.wait_for(
                    client.request(method, url, headers=headers, params=params, json=json_body),
                    timeout=timeout,
                )
        except (httpx.TransportError, asyncio.TimeoutError) as e:
            raise TransientNetworkError(
                f"QBO request failed: {e!r}", details={"method": method, "url": url}
            ) from e

        # Only URL/params are logged, never tokens.
        logger.debug(f"[QBO] {method} {resp.url} -> {resp.status_code}")

        try:
            body: Any = resp.json()
        except ValueError:
            body = resp.text

        raise_for_qbo_response(resp.status_code, body)
        if not isinstance(body, dict):
            raise GatewayError(
                "QBO returned a non-JSON body", status_code=resp.status_code, details=body
            )
        return body

    @retry_once_on_unauthorized
    async def _send(
        self,
        tenant: str,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json_body: dict[str, Any] | None = None,
        timeout: float | None = None,
        force_refresh: bool = False,
    ) -> dict[str, Any]:
        credential = await self._tokens.get_valid_credential(tenant, force_refresh=force_refresh)
        url = self._company_url(credential.realm_id, path)
        all_params = {**(params or {}), "minorversion": self._settings.minorversion}

        # Mutations are never replayed automatically; a lost response could mean it landed.
        attempts = self._settings.max_attempts if method == "GET" else 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._request_json(
                    method,
                    url,
                    bearer_token=credential.access_token,
                    params=all_params,
                    json_body=json_body,
                    timeout=timeout or self._settings.timeout_seconds,
                )
            except TransientNetworkError as e:
                if attempt >= attempts:
                    raise
                delay = self._settings.retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    f"Transient QBO failure ({e.message}); retry {attempt}/{attempts - 1} in {delay:.2f}s"
                )
                await self._sleep(delay)
        raise AssertionError("unreachable")

    @staticmethod
    def _unwrap(body: dict[str, Any], entity_type: str) -> dict[str, Any]:
        entity = body.get(entity_type)
        return entity if isinstance(entity, dict) else body

    async def query(
        self, tenant: str, expression: str, *, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        """Run a QBO Query API statement and return the matched entities.

        QBO supports a SQL-like query language at /v3/company/<realmId>/query.
        No client-side filtering happens here.
        """

        resp = await self._send(
            tenant, "GET", "query", params={"query": expression}, timeout=timeout
        )
        qr = resp.get("QueryResponse")
        if not isinstance(qr, dict):
            return []
        for key, value in qr.items():
            if key in _QUERY_RESPONSE_META_KEYS:
                continue
            if isinstance(value, list):
                return value
            if isinstance(value, dict):
                return [value]
        return []

    async def query_all(
        self,
        tenant: str,
        expression: str,
        *,
        page_size: int = MAX_QUERY_PAGE_SIZE,
        timeout: float | None = None,
    ) -> list[dict[str, Any]]:
        """Run a query page by page until QBO returns a short page.

        `expression` must not carry its own STARTPOSITION/MAXRESULTS.
        """

        rows: list[dict[str, Any]] = []
        start = 1
        while True:
            page = await self.query(
                tenant,
                f"{expression} STARTPOSITION {start} MAXRESULTS {page_size}",
                timeout=timeout,
            )
            rows.extend(page)
            if len(page) < page_size:
                return rows
            start += page_size

    async def get(
        self, tenant: str, entity_type: str, entity_id: str, *, timeout: float | None = None
    ) -> dict[str, Any]:
        resp = await self._send(
            tenant, "GET", f"{entity_type.lower()}/{entity_id}", timeout=timeout
        )
        return self._unwrap(resp, entity_type)

    async def create(
        self,
        tenant: str,
        entity_type: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        resp = await self._send(
            tenant, "POST", entity_type.lower(), json_body=payload, timeout=timeout
        )
        return self._unwrap(resp, entity_type)

    async def update(
        self,
        tenant: str,
        entity_type: str,
        payload: dict[str, Any],
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Update an entity (sparse unless the payload says otherwise).

        A caller-supplied SyncToken is trusted as-is; without one, the current
        record is fetched first and its token used.
        """

        if not payload.get("Id"):
            raise ValueError(f"{entity_type} update requires an Id")

        body = dict(payload)
        if body.get("SyncToken") in (None, ""):
            current = await self.get(tenant, entity_type, str(body["Id"]), timeout=timeout)
            body["SyncToken"] = current.get("SyncToken")
            logger.debug(f"Fetched SyncToken {body['SyncToken']} for {entity_type} {body['Id']}")
        body.setdefault("sparse", True)

        resp = await self._send(
            tenant, "POST", entity_type.lower(), json_body=body, timeout=timeout
        )
        return self._unwrap(resp, entity_type)

    async def soft_delete(
        self,
        tenant: str,
        entity_type: str,
        entity_id: str,
        *,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Delete with a just-fetched SyncToken.

        Entities QBO cannot delete are deactivated (`Active=false`) and stay readable.
        """

        current = await self.get(tenant, entity_type, entity_id, timeout=timeout)
        sync_token = current.get("SyncToken")

        if entity_type in NO_DELETE_ENTITIES:
            return await self.update(
                tenant,
                entity_type,
                {"Id": entity_id, "SyncToken": sync_token, "Active": False, "sparse": True},
                timeout=timeout,
            )

        resp = await self._send(
            tenant,
            "POST",
            entity_type.lower(),
            params={"operation": "delete"},
            json_body={"Id": entity_id, "SyncToken": sync_token},
            timeout=timeout,
        )
        return self._unwrap(resp, entity_type)
