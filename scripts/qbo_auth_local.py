"""Minimal local OAuth2 (3-legged) flow for one QuickBooks Online tenant.

What this does:
- Starts a tiny local HTTP server on your redirect URI
- Opens the Intuit consent page in your browser
- Hands the full callback URL to TokenLifecycleManager.complete_authorization
- Persists the credential record in the configured store (QBO_TOKEN_STORE)

Prereqs (env vars):
- QBO_CLIENT_ID
- QBO_CLIENT_SECRET
- QBO_REDIRECT_URI         (must exactly match what's configured in Intuit Developer)
- QBO_ENVIRONMENT          (sandbox | production)  [default: sandbox]

Optional:
- QBO_LOCAL_REDIRECT_URI   Local listener URI when QBO_REDIRECT_URI is a public
                           HTTPS URL (e.g. ngrok) forwarding to localhost.

Run:
  python scripts/qbo_auth_local.py <company_id> [user_id]
"""

from __future__ import annotations

import asyncio
import os
import sys
import threading
import time
import webbrowser
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from urllib.parse import urlparse

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from src.backend.qbo_sync.config.settings import QBOSettings  # noqa: E402
from src.backend.qbo_sync.integrations.credential_store import (  # noqa: E402
    build_credential_store,
)
from src.backend.qbo_sync.integrations.errors import CallbackError  # noqa: E402
from src.backend.qbo_sync.integrations.qbo_auth import TokenLifecycleManager  # noqa: E402


class _CallbackState:
    def __init__(self) -> None:
        self.callback_path: str | None = None


def main() -> None:
    if len(sys.argv) < 2:
        raise SystemExit("Usage: python scripts/qbo_auth_local.py <company_id> [user_id]")
    company_id = sys.argv[1]
    user_id = sys.argv[2] if len(sys.argv) > 2 else None

    try:
        settings = QBOSettings.from_env()
    except ValueError as e:
        raise SystemExit(f"{e}. Put it in your .env/.env.example and export it before running.")

    local_redirect_uri = os.environ.get("QBO_LOCAL_REDIRECT_URI") or settings.redirect_uri
    local_parsed = urlparse(local_redirect_uri)
    if local_parsed.scheme not in {"http", "https"}:
        raise SystemExit("QBO_LOCAL_REDIRECT_URI must start with http:// or https://")
    if not local_parsed.hostname or not local_parsed.port:
        raise SystemExit(
            "QBO_LOCAL_REDIRECT_URI must include hostname and port, e.g. http://localhost:8040/qbo/callback"
        )

    state = _CallbackState()

    class Handler(BaseHTTPRequestHandler):
        def do_GET(self):  # noqa: N802
            # Only accept the configured callback path
            if urlparse(self.path).path != local_parsed.path:
                self.send_response(404)
                self.end_headers()
                self.wfile.write(b"Not found")
                return

            state.callback_path = self.path
            self.send_response(200)
            self.send_header("Content-Type", "text/html")
            self.end_headers()
            self.wfile.write(
                b"<html><body><h3>QBO callback received.</h3><p>You can close this tab and return to the terminal.</p></body></html>"
            )

        def log_message(self, *_args, **_kwargs):
            # Quiet default HTTP server logging
            return

    server = HTTPServer((local_parsed.hostname, local_parsed.port), Handler)
    thread = threading.Thread(
        target=lambda: server.serve_forever(poll_interval=0.1), daemon=True
    )
    thread.start()

    tokens = TokenLifecycleManager(settings=settings, store=build_credential_store(settings))
    auth_url = tokens.build_authorization_url(company_id, user_id)

    print("\n1) Opening Intuit consent page in your browser...")
    print("   If it doesn't open, copy/paste this URL:")
    print(auth_url)
    try:
        webbrowser.open(auth_url)
    except webbrowser.Error:
        pass

    print(f"\n2) Waiting for callback on {local_redirect_uri} ...")
    timeout_s = int(os.environ.get("QBO_AUTH_TIMEOUT_SECONDS", "180"))
    start = time.time()
    while time.time() - start < timeout_s and not state.callback_path:
        time.sleep(0.1)
    server.shutdown()

    if not state.callback_path:
        raise SystemExit(
            "Timed out waiting for OAuth callback. Check that your Redirect URI in Intuit Developer Portal matches QBO_REDIRECT_URI exactly."
        )

    print("\n3) Exchanging auth code for tokens...")
    try:
        result = asyncio.run(tokens.complete_authorization(state.callback_path))
    except CallbackError as e:
        raise SystemExit(f"OAuth error ({e.reason}): {e}")

    print(f"\n✅ Success. Company {result.tenant} connected (realm {result.credential.realm_id}).")
    print(f"   Credentials stored via the '{settings.token_store}' token store.")


if __name__ == "__main__":
    main()
