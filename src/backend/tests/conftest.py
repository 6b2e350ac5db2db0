"""Shared fakes for the QBO sync tests.

- FakeIntuit stands in for intuitlib's AuthClient (refresh / code exchange / revoke).
- FakeQBO is an in-memory QBO gateway that enforces SyncToken discipline.
- FrozenClock is an adjustable `time.time` replacement.
"""

from __future__ import annotations

import copy
import threading
import time
from typing import Any

import pytest

from src.backend.qbo_sync.config.settings import QBOSettings
from src.backend.qbo_sync.integrations.errors import ConcurrencyConflict, NotFound
from src.backend.qbo_sync.integrations.qbo_client import NO_DELETE_ENTITIES


class FrozenClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _FakeAuthClient:
    def __init__(self, intuit: "FakeIntuit", **kwargs: Any) -> None:
        self._intuit = intuit
        self.kwargs = kwargs
        self.access_token = kwargs.get("access_token")
        self.refresh_token = kwargs.get("refresh_token")
        self.realm_id = kwargs.get("realm_id")
        self.expires_in = None

    def refresh(self, refresh_token: str | None = None) -> None:
        self._intuit.refresh_calls.append(refresh_token)
        self._intuit.refresh_started.set()
        if self._intuit.refresh_delay:
            time.sleep(self._intuit.refresh_delay)
        if self._intuit.refresh_error is not None:
            raise self._intuit.refresh_error
        n = len(self._intuit.refresh_calls)
        self.access_token = self._intuit.refreshed_access_token or f"access-{n}"
        self.refresh_token = f"refresh-{n}"
        self.expires_in = self._intuit.expires_in

    def get_bearer_token(self, auth_code: str, realm_id: str | None = None) -> None:
        self._intuit.exchange_calls.append((auth_code, realm_id))
        if self._intuit.exchange_error is not None:
            raise self._intuit.exchange_error
        self.access_token = "initial-access"
        self.refresh_token = "initial-refresh"
        self.realm_id = realm_id
        self.expires_in = self._intuit.expires_in

    def revoke(self, token: str | None = None) -> bool:
        self._intuit.revoke_calls.append(token)
        if self._intuit.revoke_error is not None:
            raise self._intuit.revoke_error
        return True


class FakeIntuit:
    """Callable factory with the AuthClient constructor signature."""

    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []
        self.refresh_calls: list[str | None] = []
        self.exchange_calls: list[tuple[str, str | None]] = []
        self.revoke_calls: list[str | None] = []
        self.refresh_error: BaseException | None = None
        self.exchange_error: BaseException | None = None
        self.revoke_error: BaseException | None = None
        self.refreshed_access_token: str | None = None
        self.expires_in = 3600
        # refresh_started is set when a refresh begins, which then blocks for refresh_delay seconds.
        self.refresh_delay = 0.0
        self.refresh_started = threading.Event()

    def __call__(self, **kwargs: Any) -> _FakeAuthClient:
        self.created.append(kwargs)
        return _FakeAuthClient(self, **kwargs)


class FakeQBO:
    """In-memory stand-in for QBOClient.

    Rejects updates whose SyncToken is not the current one, like QBO does.
    """

    def __init__(self) -> None:
        self.entities: dict[tuple[str, str], dict[str, Any]] = {}
        self.queries: list[str] = []
        self.calls: list[tuple[str, str]] = []
        self._next_id = 1

    def add(self, entity_type: str, record: dict[str, Any]) -> dict[str, Any]:
        rec = copy.deepcopy(record)
        rec.setdefault("Id", str(self._next_id))
        rec.setdefault("SyncToken", "0")
        self._next_id += 1
        self.entities[(entity_type, rec["Id"])] = rec
        return copy.deepcopy(rec)

    async def query(self, tenant: str, expression: str) -> list[dict[str, Any]]:
        self.queries.append(expression)
        entity_type = expression.split("FROM ", 1)[1].split()[0]
        return [copy.deepcopy(r) for (t, _), r in self.entities.items() if t == entity_type]

    async def query_all(self, tenant: str, expression: str) -> list[dict[str, Any]]:
        return await self.query(tenant, expression)

    async def get(self, tenant: str, entity_type: str, entity_id: str) -> dict[str, Any]:
        self.calls.append(("get", entity_type))
        rec = self.entities.get((entity_type, str(entity_id)))
        if rec is None:
            raise NotFound(f"{entity_type} {entity_id} not found", status_code=400)
        return copy.deepcopy(rec)

    async def create(self, tenant: str, entity_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("create", entity_type))
        return self.add(entity_type, {k: v for k, v in payload.items() if k not in ("Id", "SyncToken")})

    async def update(self, tenant: str, entity_type: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update", entity_type))
        key = (entity_type, str(payload["Id"]))
        current = self.entities.get(key)
        if current is None:
            raise NotFound(f"{entity_type} {payload['Id']} not found", status_code=400)
        token = payload.get("SyncToken")
        if token in (None, ""):
            token = current["SyncToken"]
        if str(token) != current["SyncToken"]:
            raise ConcurrencyConflict("Stale Object Error", status_code=400)
        body = {k: v for k, v in payload.items() if k not in ("sparse", "SyncToken")}
        merged = {**current, **body} if payload.get("sparse", True) else {**body, "Id": current["Id"]}
        merged["SyncToken"] = str(int(current["SyncToken"]) + 1)
        self.entities[key] = merged
        return copy.deepcopy(merged)

    async def soft_delete(self, tenant: str, entity_type: str, entity_id: str) -> dict[str, Any]:
        current = await self.get(tenant, entity_type, entity_id)
        if entity_type in NO_DELETE_ENTITIES:
            return await self.update(
                tenant,
                entity_type,
                {"Id": entity_id, "SyncToken": current["SyncToken"], "Active": False, "sparse": True},
            )
        del self.entities[(entity_type, str(entity_id))]
        return {"Id": entity_id, "status": "Deleted"}


@pytest.fixture
def settings() -> QBOSettings:
    return QBOSettings(
        client_id="cid",
        client_secret="secret",
        redirect_uri="http://localhost:8000/api/quickbooks/callback",
        environment="sandbox",
        timeout_seconds=5.0,
        max_attempts=3,
        retry_backoff_seconds=0.0,
        token_store="memory",
    )


@pytest.fixture
def fake_intuit() -> FakeIntuit:
    return FakeIntuit()


@pytest.fixture
def fake_qbo() -> FakeQBO:
    return FakeQBO()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(1_700_000_000.0)
