"""Error taxonomy for the QBO sync integration.

Every error carries a human message plus an optional structured `details`
payload (usually the remote `Fault` body) so callers can diagnose without
retrying.
"""

from __future__ import annotations

from typing import Any


class QBOSyncError(Exception):
    def __init__(self, message: str, *, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class InvalidInput(QBOSyncError, ValueError):
    """Caller-supplied value is missing or malformed (HTTP 400)."""


# ---------------------------------------------------------------------------
# Credential lifecycle
# ---------------------------------------------------------------------------


class NotAuthenticated(QBOSyncError):
    """No usable credential is stored for the tenant."""


class CredentialStoreError(QBOSyncError):
    """A stored credential record could not be read or decoded."""


class ReauthenticationRequired(QBOSyncError):
    """Refresh failed; a human has to restart authorization."""


class CallbackError(QBOSyncError):
    MISSING_TENANT = "missing_tenant"
    MISSING_CODE = "missing_code"
    AUTHORIZATION_DENIED = "authorization_denied"
    TOKEN_EXCHANGE_FAILED = "token_exchange_failed"
    PERSIST_FAILED = "persist_failed"

    def __init__(self, reason: str, message: str | None = None, *, details: Any = None) -> None:
        super().__init__(message or reason, details=details)
        self.reason = reason


# ---------------------------------------------------------------------------
# Remote API
# ---------------------------------------------------------------------------


class GatewayError(QBOSyncError):
    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        details: Any = None,
    ) -> None:
        super().__init__(message, details=details)
        self.status_code = status_code


class Unauthorized(GatewayError):
    """Bearer token rejected; refresh and retry once."""


class ConcurrencyConflict(GatewayError):
    """Stale SyncToken. Re-fetch before retrying."""


class NotFound(GatewayError):
    pass


class RemoteValidationError(GatewayError):
    """Payload rejected; not retryable without changes."""


class TransientNetworkError(GatewayError):
    """Timeout, transport failure or 5xx. Safe to retry with backoff."""


# ---------------------------------------------------------------------------
# Clock state machine
# ---------------------------------------------------------------------------


class AlreadyActive(QBOSyncError):
    pass


class NotActive(QBOSyncError):
    pass
