"""Per-tenant OAuth credential storage.

A store only persists and retrieves records. It never checks expiry or talks
to the authorization server; that is the token manager's job.

Backends:
- InMemoryCredentialStore: tests and single-process runs.
- JsonFileCredentialStore: one JSON file per tenant on local disk.
- RemoteCredentialStore: a token service reachable over HTTP.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import httpx

from src.backend.qbo_sync.config.settings import QBOSettings
from src.backend.qbo_sync.integrations.errors import (
    CredentialStoreError,
    InvalidInput,
    TransientNetworkError,
)

logger = logging.getLogger(__name__)


def parse_expires_at(value: Any) -> int:
    """Return epoch milliseconds from an ISO-8601 string or an epoch-ms number."""

    if isinstance(value, bool):
        raise ValueError(f"Invalid expires_at: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.isdigit():
            return int(text)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp() * 1000)
    raise ValueError(f"Invalid expires_at: {value!r}")


@dataclass(frozen=True, slots=True)
class CredentialRecord:
    access_token: str
    refresh_token: str
    realm_id: str
    expires_at: int  # epoch ms
    user_id: str | None = None

    def is_expired(self, now_ms: int) -> bool:
        return now_ms >= self.expires_at

    def to_dict(self) -> dict[str, Any]:
        expires_iso = datetime.fromtimestamp(
            self.expires_at / 1000, tz=timezone.utc
        ).isoformat()
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "realm_id": self.realm_id,
            "expires_at": expires_iso,
            "user_id": self.user_id,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "CredentialRecord":
        return cls(
            access_token=raw.get("access_token") or "",
            refresh_token=raw.get("refresh_token") or "",
            realm_id=str(raw.get("realm_id") or raw.get("realmId") or ""),
            expires_at=parse_expires_at(raw.get("expires_at")),
            user_id=raw.get("user_id"),
        )


class CredentialStore(ABC):
    """load/save/delete keyed by tenant id. Writes fully replace."""

    @abstractmethod
    async def load(self, tenant: str) -> CredentialRecord | None: ...

    @abstractmethod
    async def save(self, tenant: str, record: CredentialRecord) -> bool: ...

    @abstractmethod
    async def delete(self, tenant: str) -> bool: ...


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, records: dict[str, CredentialRecord] | None = None) -> None:
        self._records: dict[str, CredentialRecord] = dict(records or {})

    async def load(self, tenant: str) -> CredentialRecord | None:
        return self._records.get(tenant)

    async def save(self, tenant: str, record: CredentialRecord) -> bool:
        self._records[tenant] = record
        return True

    async def delete(self, tenant: str) -> bool:
        self._records.pop(tenant, None)
        return True


class JsonFileCredentialStore(CredentialStore):
    """One `<tenant>.json` per tenant; writes go through temp file + rename."""

    def __init__(self, directory: str) -> None:
        self._directory = directory

    def _path(self, tenant: str) -> str:
        if not tenant or tenant in {".", ".."} or any(
            sep in tenant for sep in ("/", "\\", os.sep)
        ):
            raise InvalidInput(f"Invalid tenant id for file store: {tenant!r}")
        return os.path.join(self._directory, f"{tenant}.json")

    def _read(self, path: str) -> CredentialRecord | None:
        if not os.path.exists(path):
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return CredentialRecord.from_dict(raw)
        except (ValueError, AttributeError) as e:
            raise CredentialStoreError(
                f"Stored credentials at {path} are unreadable: {e}", details={"path": path}
            ) from e

    def _write(self, path: str, payload: dict[str, Any]) -> None:
        os.makedirs(self._directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=self._directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
            os.replace(tmp_path, path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    async def load(self, tenant: str) -> CredentialRecord | None:
        return await asyncio.to_thread(self._read, self._path(tenant))

    async def save(self, tenant: str, record: CredentialRecord) -> bool:
        try:
            await asyncio.to_thread(self._write, self._path(tenant), record.to_dict())
        except OSError as e:
            logger.error(f"Failed to write credentials for tenant {tenant}: {e}")
            return False
        return True

    async def delete(self, tenant: str) -> bool:
        path = self._path(tenant)
        try:
            await asyncio.to_thread(os.remove, path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to delete credentials for tenant {tenant}: {e}")
            return False
        return True


class RemoteCredentialStore(CredentialStore):
    """Token service over HTTP.

    GET    {base}/quickbooks/tokens/{tenant}  -> {"success": true, "data": {...}}
    POST   {base}/quickbooks/tokens           <- {"company_id": tenant, ...record}
    DELETE {base}/quickbooks/tokens/{tenant}
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout_seconds,
            transport=self._transport,
        )

    async def load(self, tenant: str) -> CredentialRecord | None:
        try:
            async with self._client() as client:
                resp = await client.get(f"/quickbooks/tokens/{quote(tenant, safe='')}")
        except httpx.HTTPError as e:
            raise TransientNetworkError(
                f"Token service unreachable: {e}", details={"tenant": tenant}
            ) from e

        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise TransientNetworkError(
                f"Token service returned HTTP {resp.status_code}",
                status_code=resp.status_code,
                details=resp.text,
            )

        try:
            body = resp.json()
        except ValueError as e:
            raise CredentialStoreError(
                "Token service returned a non-JSON body", details={"tenant": tenant}
            ) from e
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, dict) or not body.get("success"):
            logger.info(f"No credentials stored for tenant {tenant}")
            return None
        try:
            return CredentialRecord.from_dict(data)
        except ValueError as e:
            raise CredentialStoreError(
                f"Token service returned an unusable record: {e}", details={"tenant": tenant}
            ) from e

    async def save(self, tenant: str, record: CredentialRecord) -> bool:
        payload = {"company_id": tenant, **record.to_dict()}
        try:
            async with self._client() as client:
                resp = await client.post("/quickbooks/tokens", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Error saving credentials for tenant {tenant}: {e}")
            return False
        if resp.status_code >= 400:
            logger.error(
                f"Token service rejected save for tenant {tenant}: "
                f"HTTP {resp.status_code} {resp.text}"
            )
            return False
        return True

    async def delete(self, tenant: str) -> bool:
        try:
            async with self._client() as client:
                resp = await client.delete(f"/quickbooks/tokens/{quote(tenant, safe='')}")
        except httpx.HTTPError as e:
            logger.error(f"Error deleting credentials for tenant {tenant}: {e}")
            return False
        if resp.status_code >= 400 and resp.status_code != 404:
            logger.error(
                f"Token service rejected delete for tenant {tenant}: HTTP {resp.status_code}"
            )
            return False
        return True


def build_credential_store(settings: QBOSettings) -> CredentialStore:
    kind = settings.token_store
    if kind == "memory":
        return InMemoryCredentialStore()
    if kind == "remote":
        if not settings.token_service_url:
            raise ValueError("Remote credential store requires token_service_url")
        return RemoteCredentialStore(
            settings.token_service_url, timeout_seconds=settings.timeout_seconds
        )
    if kind == "file":
        return JsonFileCredentialStore(settings.tokens_dir)
    raise ValueError(f"Unknown token store: {kind!r}")
