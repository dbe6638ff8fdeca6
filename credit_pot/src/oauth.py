"""Interactive OAuth grant acquisition for Monzo and TrueLayer.

Prerequisites:
1. Create clients at https://developers.monzo.com and https://console.truelayer.com
2. Set the redirect URI of both to: http://localhost:8080/callback
3. Create .env.secrets in project root with:
   ENCRYPTION_KEY=<long random passphrase>
   MONZO_CLIENT_ID=oauth2client_xxx
   MONZO_CLIENT_SECRET=mnzconf.xxx
   TRUELAYER_CLIENT_ID=xxx
   TRUELAYER_CLIENT_SECRET=xxx
"""

import base64
import hashlib
import http.server
import logging
import secrets
import threading
import urllib.parse
import webbrowser
from typing import Any

from credit_pot.src.config import (
    MONZO,
    MONZO_AUTH_URL,
    REDIRECT_URI,
    TRUELAYER_PROVIDERS,
    TRUELAYER_SCOPE,
    Settings,
)
from credit_pot.src.errors import ConfigError
from credit_pot.src.models import CredentialRecord
from credit_pot.src.token_lifecycle import TokenLifecycleManager

logger = logging.getLogger(__name__)

CALLBACK_PORT = 8080


class CallbackHandler(http.server.BaseHTTPRequestHandler):
    """Handler for OAuth callback requests."""

    auth_code: str | None = None
    state_token: str | None = None
    received = threading.Event()

    def do_GET(self) -> None:
        """Handle GET request for OAuth callback."""
        logger.debug(f"Received request: {self.path}")
        parsed = urllib.parse.urlparse(self.path)

        if parsed.path != "/callback":
            self.send_response(404)
            self.end_headers()
            self.wfile.write(b"Not Found")
            return

        params = urllib.parse.parse_qs(parsed.query)
        received_code = params.get("code", [None])[0]
        received_state = params.get("state", [None])[0]

        if received_state is None or not secrets.compare_digest(
            received_state, CallbackHandler.state_token or ""
        ):
            logger.warning("State mismatch detected! Close old browser tabs and try again.")
            self.send_response(400)
            self.end_headers()
            self.wfile.write(b"State mismatch - used old tab? Close tabs and try again.")
            return

        CallbackHandler.auth_code = received_code
        CallbackHandler.received.set()
        logger.info("Auth code received successfully.")
        self.send_response(200)
        self.send_header("Content-type", "text/html")
        self.end_headers()
        self.wfile.write(b"""
            <html><body style="font-family: sans-serif; text-align: center; padding-top: 50px;">
            <h1>Authorization successful!</h1>
            <p>You can close this window and return to the terminal.</p>
            </body></html>
        """)

    def log_message(self, fmt: str, *args: Any) -> None:
        """Log arbitrary message to debug logger."""
        logger.debug("%s - - [%s] %s", self.client_address[0], self.log_date_time_string(), fmt % args)


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and its S256 code_challenge."""
    verifier = base64.urlsafe_b64encode(secrets.token_bytes(32)).decode().rstrip("=")
    challenge = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
    return verifier, challenge


def build_authorization_url(
    provider: str, settings: Settings, state: str, code_challenge: str | None = None
) -> str:
    """Authorization URL for the direct Monzo grant or a TrueLayer connection.

    Raises:
        ConfigError: If the client id for the grant type is not configured.
    """
    if provider == MONZO:
        if not settings.monzo_client_id:
            msg = "MONZO_CLIENT_ID is not set"
            raise ConfigError(msg)
        params = {
            "client_id": settings.monzo_client_id,
            "redirect_uri": REDIRECT_URI,
            "response_type": "code",
            "state": state,
        }
        return f"{MONZO_AUTH_URL}/?{urllib.parse.urlencode(params)}"

    if not settings.truelayer_client_id:
        msg = "TRUELAYER_CLIENT_ID is not set"
        raise ConfigError(msg)
    params = {
        "client_id": settings.truelayer_client_id,
        "redirect_uri": REDIRECT_URI,
        "response_type": "code",
        "scope": TRUELAYER_SCOPE,
        "state": state,
        "providers": TRUELAYER_PROVIDERS,
    }
    if code_challenge:
        params["code_challenge"] = code_challenge
        params["code_challenge_method"] = "S256"
    return f"{settings.truelayer_urls['auth']}/?{urllib.parse.urlencode(params)}"


def wait_for_auth_code(auth_url: str, state: str) -> str | None:
    """Open the browser and capture the code on a local callback server."""
    CallbackHandler.state_token = state
    CallbackHandler.auth_code = None
    CallbackHandler.received.clear()

    class ReusableTCPServer(http.server.HTTPServer):
        allow_reuse_address = True

    server = ReusableTCPServer(("localhost", CALLBACK_PORT), CallbackHandler)
    server_thread = threading.Thread(target=server.serve_forever, daemon=True)
    server_thread.start()

    logger.info("Opening browser for authentication...")
    logger.info(f"If the browser does not open, visit this URL:\n  {auth_url}\n")
    threading.Thread(target=lambda: webbrowser.open(auth_url), daemon=True).start()
    logger.info(f"Waiting for callback on {REDIRECT_URI} ...")

    try:
        # Timeout loop keeps Ctrl+C responsive
        while not CallbackHandler.received.is_set():
            CallbackHandler.received.wait(0.5)
    except KeyboardInterrupt:
        logger.info("Operation cancelled.")
        return None
    finally:
        server.shutdown()
        server.server_close()

    return CallbackHandler.auth_code


def authorize(
    lifecycle: TokenLifecycleManager, settings: Settings, user_id: str, provider: str
) -> CredentialRecord | None:
    """Run the full grant flow and store the encrypted result.

    TrueLayer connections use PKCE. Returns None if the user cancels.
    """
    state = secrets.token_urlsafe(32)
    verifier, challenge = (None, None) if provider == MONZO else generate_pkce_pair()
    auth_url = build_authorization_url(provider, settings, state, challenge)

    code = wait_for_auth_code(auth_url, state)
    if not code:
        return None

    logger.info("Exchanging code for access token...")
    token = lifecycle.exchange_code(code, REDIRECT_URI, code_verifier=verifier)
    record = lifecycle.store_grant(user_id, provider, token)

    if provider == MONZO:
        logger.info("IMPORTANT: Open the Monzo app and approve the access request!")
    if not token.refresh_token:
        logger.info("No refresh token issued: re-authorize when the access token expires")
    return record
