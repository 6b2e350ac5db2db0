"""QuickBooks Online OAuth2 credential lifecycle.

Purpose
- Hand out a usable access token per tenant, refreshing only on demand.
- Run the authorization-code flow (authorization URL + callback completion).
- Disconnect a tenant (best-effort remote revoke, guaranteed local delete).

Credential records are owned by this module; nothing else writes them.
A fresh intuitlib `AuthClient` is created for every operation, so tenants
never share client state.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable
from urllib.parse import parse_qs, urlencode, urlparse

import requests
from intuitlib.client import AuthClient
from intuitlib.enums import Scopes
from intuitlib.exceptions import AuthClientError

from src.backend.qbo_sync.config.settings import QBOSettings
from src.backend.qbo_sync.integrations.credential_store import (
    CredentialRecord,
    CredentialStore,
)
from src.backend.qbo_sync.integrations.errors import (
    CallbackError,
    NotAuthenticated,
    ReauthenticationRequired,
)

logger = logging.getLogger(__name__)

AUTHORIZATION_ENDPOINT = "https://appcenter.intuit.com/connect/oauth2"

DEFAULT_SCOPES = (Scopes.ACCOUNTING, Scopes.OPENID, Scopes.PROFILE, Scopes.EMAIL)

# Failures of the intuitlib round trip that mean "the grant did not work".
_AUTH_FAILURES = (AuthClientError, requests.RequestException, asyncio.TimeoutError)


def encode_state(tenant: str, user_context: str | None) -> str:
    return json.dumps({"company_id": tenant, "user_id": user_context}, separators=(",", ":"))


def decode_state(state: str | None) -> tuple[str | None, str | None]:
    """Recover (tenant, user_context) from a callback `state`; (None, None) if unusable."""

    if not state:
        return None, None
    try:
        payload = json.loads(state)
    except ValueError:
        logger.warning("OAuth state is not valid JSON; falling back to query parameters")
        return None, None
    if not isinstance(payload, dict):
        return None, None
    tenant = payload.get("company_id")
    user_id = payload.get("user_id")
    return (str(tenant) if tenant else None), (str(user_id) if user_id else None)


@dataclass(frozen=True, slots=True)
class AuthorizationResult:
    tenant: str
    user_id: str | None
    credential: CredentialRecord


class TokenLifecycleManager:
    def __init__(
        self,
        *,
        settings: QBOSettings,
        store: CredentialStore,
        auth_client_factory: Callable[..., Any] = AuthClient,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings
        self._store = store
        self._auth_client_factory = auth_client_factory
        self._clock = clock

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def _new_auth_client(self, record: CredentialRecord | None = None) -> Any:
        kwargs: dict[str, Any] = {
            "client_id": self._settings.client_id,
            "client_secret": self._settings.client_secret,
            "redirect_uri": self._settings.redirect_uri,
            "environment": self._settings.environment,
        }
        if record is not None:
            kwargs.update(
                access_token=record.access_token,
                refresh_token=record.refresh_token,
                realm_id=record.realm_id,
            )
        return self._auth_client_factory(**kwargs)

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        # intuitlib is blocking (requests); keep it off the event loop and bounded.
        return await asyncio.wait_for(
            asyncio.to_thread(fn, *args), timeout=self._settings.timeout_seconds
        )

    # ------------------------------------------------------------------
    # Blocking intuitlib round trips (run in a worker thread)
    # ------------------------------------------------------------------

    def _refresh_blocking(self, record: CredentialRecord) -> Any:
        auth = self._new_auth_client(record)
        auth.refresh(refresh_token=record.refresh_token)
        return auth

    def _exchange_blocking(self, code: str, realm_id: str | None) -> Any:
        auth = self._new_auth_client()
        auth.get_bearer_token(code, realm_id=realm_id)
        return auth

    def _revoke_blocking(self, record: CredentialRecord) -> Any:
        auth = self._new_auth_client(record)
        return auth.revoke(token=record.refresh_token)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def get_valid_credential(
        self, tenant: str, *, force_refresh: bool = False
    ) -> CredentialRecord:
        """Return a usable credential, refreshing it only when expired.

        `force_refresh` is for callers whose token was just rejected by the
        API even though it had not reached `expires_at`.
        """

        record = await self._store.load(tenant)
        if record is None or not record.access_token:
            raise NotAuthenticated(
                "Not authenticated with QuickBooks. Please authorize the connection.",
                details={"tenant": tenant},
            )

        if not force_refresh and not record.is_expired(self._now_ms()):
            return record

        logger.info(f"🔄 Refreshing QuickBooks token for tenant {tenant}")
        return await self._refresh(tenant, record)

    async def _refresh(self, tenant: str, record: CredentialRecord) -> CredentialRecord:
        try:
            auth = await self._call(self._refresh_blocking, record)
        except _AUTH_FAILURES as e:
            logger.error(f"❌ Token refresh failed for tenant {tenant}: {e!r}")
            raise ReauthenticationRequired(
                "Token refresh failed. Please re-authenticate.",
                details={"tenant": tenant, "error": str(e)},
            ) from e

        access_token = getattr(auth, "access_token", None)
        refresh_token = getattr(auth, "refresh_token", None)
        expires_in = getattr(auth, "expires_in", None)
        if not access_token or not refresh_token:
            raise ReauthenticationRequired(
                "QBO token refresh failed (missing refreshed access_token/refresh_token)",
                details={"tenant": tenant},
            )
        if access_token == record.access_token:
            raise ReauthenticationRequired(
                "QBO token refresh returned the previous access token",
                details={"tenant": tenant},
            )
        try:
            lifetime_seconds = int(expires_in)
        except (TypeError, ValueError):
            lifetime_seconds = 0
        if lifetime_seconds <= 0:
            raise ReauthenticationRequired(
                "QBO token refresh returned no usable lifetime",
                details={"tenant": tenant, "expires_in": expires_in},
            )

        updated = CredentialRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            realm_id=getattr(auth, "realm_id", None) or record.realm_id,
            expires_at=self._now_ms() + lifetime_seconds * 1000,
            user_id=record.user_id,
        )
        if not await self._store.save(tenant, updated):
            # The new token is still good for this request; the next expiry will refresh again.
            logger.error(f"Refreshed token for tenant {tenant} could not be persisted")
        else:
            logger.info(f"✅ Token refreshed for tenant {tenant}")
        return updated

    def build_authorization_url(
        self,
        tenant: str,
        user_context: str | None = None,
        *,
        scopes: tuple[Scopes, ...] = DEFAULT_SCOPES,
    ) -> str:
        """Intuit consent URL; `state` carries tenant + user so the callback needs no session."""

        params = {
            "client_id": self._settings.client_id,
            "response_type": "code",
            "scope": " ".join(s.value for s in scopes),
            "redirect_uri": self._settings.redirect_uri,
            "state": encode_state(tenant, user_context),
        }
        return f"{AUTHORIZATION_ENDPOINT}?{urlencode(params)}"

    async def complete_authorization(self, callback_url: str) -> AuthorizationResult:
        query = parse_qs(urlparse(callback_url).query)

        def first(name: str) -> str | None:
            values = query.get(name)
            return values[0] if values and values[0] else None

        error = first("error")
        if error:
            raise CallbackError(
                CallbackError.AUTHORIZATION_DENIED,
                f"Authorization was not granted: {error}",
                details={"error": error},
            )

        tenant, user_id = decode_state(first("state"))
        if not tenant:
            tenant = first("company_id")
            user_id = user_id or first("user_id")
        if not tenant:
            raise CallbackError(CallbackError.MISSING_TENANT, "company_id is required")

        code = first("code")
        if not code:
            raise CallbackError(CallbackError.MISSING_CODE, "Authorization code is missing")

        realm_id = first("realmId")
        try:
            auth = await self._call(self._exchange_blocking, code, realm_id)
        except _AUTH_FAILURES as e:
            logger.error(f"❌ Code exchange failed for tenant {tenant}: {e!r}")
            raise CallbackError(
                CallbackError.TOKEN_EXCHANGE_FAILED,
                "Could not exchange the authorization code",
                details={"error": str(e)},
            ) from e

        access_token = getattr(auth, "access_token", None)
        refresh_token = getattr(auth, "refresh_token", None)
        if not access_token or not refresh_token:
            raise CallbackError(
                CallbackError.TOKEN_EXCHANGE_FAILED,
                "Token response is missing access_token/refresh_token",
            )

        record = CredentialRecord(
            access_token=access_token,
            refresh_token=refresh_token,
            realm_id=str(getattr(auth, "realm_id", None) or realm_id or ""),
            expires_at=self._now_ms() + int(getattr(auth, "expires_in", 0) or 0) * 1000,
            user_id=user_id,
        )
        if not await self._store.save(tenant, record):
            raise CallbackError(CallbackError.PERSIST_FAILED, "Failed to save tokens")

        logger.info(f"✅ QuickBooks connected for tenant {tenant} (realm {record.realm_id})")
        return AuthorizationResult(tenant=tenant, user_id=user_id, credential=record)

    async def revoke(self, tenant: str) -> bool:
        """Disconnect a tenant. Remote revocation is best-effort; local deletion always runs."""

        deleted = False
        try:
            record = await self._store.load(tenant)
            if record is not None and record.refresh_token:
                await self._call(self._revoke_blocking, record)
                logger.info(f"Revoked QuickBooks token for tenant {tenant}")
        except Exception as e:  # noqa: BLE001
            logger.warning(f"Error revoking token for tenant {tenant}: {e!r}")
        finally:
            deleted = await self._store.delete(tenant)
        return deleted

    async def connection_status(self, tenant: str) -> dict[str, Any]:
        record = await self._store.load(tenant)
        if record is None or not record.access_token:
            return {"connected": False}
        return {
            "connected": True,
            "realm_id": record.realm_id,
            "expires_at": record.to_dict()["expires_at"],
            "expired": record.is_expired(self._now_ms()),
        }
