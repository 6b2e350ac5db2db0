"""Configuration for the QuickBooks time sync service.

Everything comes from environment variables (optionally via `.env`). Secrets
are never defaulted; everything else has a local-friendly default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import dotenv_values, load_dotenv

load_dotenv(override=False)

# Convenience: allow local runs with only `.env.example` filled.
# Blank placeholders in `.env.example` must not override real values.
if not os.environ.get("QBO_CLIENT_ID"):
    example_path = os.path.abspath(".env.example")
    if os.path.exists(example_path):
        for k, v in (dotenv_values(example_path) or {}).items():
            if not k or v is None or v == "":
                continue
            if not os.environ.get(k):
                os.environ[k] = v


PRODUCTION_API_BASE_URL = "https://quickbooks.api.intuit.com"
SANDBOX_API_BASE_URL = "https://sandbox-quickbooks.api.intuit.com"
DEFAULT_MINORVERSION = "65"


@dataclass(frozen=True, slots=True)
class QBOSettings:
    client_id: str
    client_secret: str
    redirect_uri: str = "http://localhost:8000/api/quickbooks/callback"
    environment: str = "sandbox"
    minorversion: str = DEFAULT_MINORVERSION
    timeout_seconds: float = 30.0
    max_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    token_store: str = "file"
    tokens_dir: str = ".qbo_tokens"
    token_service_url: str | None = None
    active_lookback_days: int = 7

    @property
    def api_base_url(self) -> str:
        return (
            PRODUCTION_API_BASE_URL
            if self.environment == "production"
            else SANDBOX_API_BASE_URL
        )

    @classmethod
    def from_env(cls) -> "QBOSettings":
        load_dotenv(override=False)
        client_id = os.environ.get("QBO_CLIENT_ID")
        client_secret = os.environ.get("QBO_CLIENT_SECRET")
        if not client_id or not client_secret:
            raise ValueError("Missing QBO_CLIENT_ID or QBO_CLIENT_SECRET")

        token_store = os.environ.get("QBO_TOKEN_STORE", "file").strip().lower()
        token_service_url = os.environ.get("QBO_TOKEN_SERVICE_URL") or None
        if token_store == "remote" and not token_service_url:
            raise ValueError("QBO_TOKEN_STORE=remote requires QBO_TOKEN_SERVICE_URL")

        return cls(
            client_id=client_id,
            client_secret=client_secret,
            redirect_uri=os.environ.get(
                "QBO_REDIRECT_URI", "http://localhost:8000/api/quickbooks/callback"
            ),
            environment=os.environ.get("QBO_ENVIRONMENT", "sandbox"),
            minorversion=os.environ.get("QBO_MINORVERSION", DEFAULT_MINORVERSION),
            timeout_seconds=float(os.environ.get("QBO_HTTP_TIMEOUT_SECONDS", "30")),
            max_attempts=max(1, int(os.environ.get("QBO_MAX_ATTEMPTS", "3"))),
            retry_backoff_seconds=float(
                os.environ.get("QBO_RETRY_BACKOFF_SECONDS", "0.5")
            ),
            token_store=token_store,
            tokens_dir=os.environ.get(
                "QBO_TOKENS_DIR", os.path.abspath(".qbo_tokens")
            ),
            token_service_url=token_service_url,
            active_lookback_days=int(os.environ.get("QBO_ACTIVE_LOOKBACK_DAYS", "7")),
        )
