import logging
import os
from contextlib import asynccontextmanager
from typing import Any, Callable

import httpx
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from src.backend.qbo_sync.api.qbo_router import qbo_error_handler, qbo_router
from src.backend.qbo_sync.config.settings import QBOSettings
from src.backend.qbo_sync.integrations.credential_store import (
    CredentialStore,
    build_credential_store,
)
from src.backend.qbo_sync.integrations.errors import QBOSyncError
from src.backend.qbo_sync.integrations.qbo_auth import TokenLifecycleManager
from src.backend.qbo_sync.integrations.qbo_client import QBOClient
from src.backend.qbo_sync.use_cases.employees import EmployeeSync
from src.backend.qbo_sync.use_cases.time_activity import TimeActivityReconciler


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage FastAPI application lifecycle - startup and shutdown."""
    logger = logging.getLogger(__name__)
    logger.info(
        f"🚀 Starting QuickBooks time sync ({app.state.settings.environment}, "
        f"token store: {app.state.settings.token_store})"
    )
    yield
    logger.info("👋 QuickBooks time sync shutdown complete")


def create_app(
    settings: QBOSettings | None = None,
    *,
    store: CredentialStore | None = None,
    auth_client_factory: Callable[..., Any] | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    """Wire the credential store, token manager, gateway and use cases onto one app.

    Run with: uvicorn src.backend.app:create_app --factory
    """

    logging.basicConfig(
        level=getattr(logging, os.environ.get("LOG_LEVEL", "INFO").upper(), logging.INFO)
    )
    # httpx logs every request URL at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    settings = settings or QBOSettings.from_env()
    store = store or build_credential_store(settings)

    token_kwargs: dict[str, Any] = {"settings": settings, "store": store}
    if auth_client_factory is not None:
        token_kwargs["auth_client_factory"] = auth_client_factory
    tokens = TokenLifecycleManager(**token_kwargs)
    gateway = QBOClient(settings=settings, tokens=tokens, transport=transport)

    app = FastAPI(title="QuickBooks Time Sync", lifespan=lifespan)
    app.state.settings = settings
    app.state.tokens = tokens
    app.state.gateway = gateway
    app.state.employees = EmployeeSync(gateway=gateway)
    app.state.reconciler = TimeActivityReconciler(
        gateway=gateway, active_lookback_days=settings.active_lookback_days
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(QBOSyncError, qbo_error_handler)
    app.include_router(qbo_router)

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app
