"""Zoho OAuth2 authorization flow.

Runs the authorization code grant with a local callback server, then stores
the resulting refresh token in the encrypted credential store.
"""

import asyncio
import logging
import secrets
import webbrowser
from typing import Optional
from urllib.parse import urlencode

from aiohttp import web

from .config import accounts_url_for
from .credential_store import CredentialStore
from .models import TokenGrant
from .zoho_client import ZohoAPIError, ZohoBooksClient

logger = logging.getLogger(__name__)

CALLBACK_TIMEOUT_SECONDS = 300


class ZohoOAuth:
    """Handles the Zoho OAuth2 authorization code grant flow."""

    SCOPES = ["ZohoBooks.fullaccess.all"]

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        datacenter: str = "us",
        redirect_uri: str = "http://localhost:8080/callback",
    ):
        self.client_id = client_id
        self.client_secret = client_secret
        self.datacenter = datacenter
        self.redirect_uri = redirect_uri

        # CSRF protection
        self.state: Optional[str] = None

    def generate_authorization_url(self) -> str:
        """Build the consent URL; offline access is required to get a refresh token."""
        self.state = secrets.token_urlsafe(32)

        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "scope": ",".join(self.SCOPES),
            "redirect_uri": self.redirect_uri,
            "access_type": "offline",
            "prompt": "consent",
            "state": self.state,
        }
        return f"{accounts_url_for(self.datacenter)}/oauth/v2/auth?{urlencode(params)}"

    async def wait_for_code(self, port: int = 8080, timeout: int = CALLBACK_TIMEOUT_SECONDS) -> str:
        """Open the consent page and wait for the redirect carrying the grant code.

        Raises:
            ZohoAPIError: Authorization was denied, timed out or failed the state check
        """
        auth_code: Optional[str] = None
        auth_state: Optional[str] = None
        error_message: Optional[str] = None

        async def callback_handler(request: web.Request) -> web.Response:
            nonlocal auth_code, auth_state, error_message

            if "error" in request.query:
                error_message = request.query["error"]
                return web.Response(
                    text=f"<html><body><h1>Authorization Failed</h1><p>{error_message}</p></body></html>",
                    content_type="text/html",
                    status=400,
                )

            auth_code = request.query.get("code")
            auth_state = request.query.get("state")
            if not auth_code:
                return web.Response(text="Missing authorization code", status=400)

            return web.Response(
                text=(
                    "<html><body><h1>Authorization Successful!</h1>"
                    "<p>You can close this window and return to the terminal.</p></body></html>"
                ),
                content_type="text/html",
            )

        app = web.Application()
        app.router.add_get("/callback", callback_handler)

        runner = web.AppRunner(app)
        await runner.setup()
        site = web.TCPSite(runner, "localhost", port)
        await site.start()
        logger.info(f"Started OAuth callback server on http://localhost:{port}")

        try:
            auth_url = self.generate_authorization_url()
            logger.info(f"If the browser doesn't open, visit: {auth_url}")
            webbrowser.open(auth_url)

            for _ in range(timeout):
                if auth_code or error_message:
                    break
                await asyncio.sleep(1)
            else:
                raise ZohoAPIError(f"OAuth flow timed out after {timeout} seconds")

            if error_message:
                raise ZohoAPIError(f"Authorization failed: {error_message}")
            if auth_state != self.state:
                raise ZohoAPIError("State mismatch - possible CSRF attack")
            return auth_code
        finally:
            await runner.cleanup()
            logger.info("OAuth callback server stopped")

    async def authorize(self, client: ZohoBooksClient, credentials: CredentialStore) -> TokenGrant:
        """Run the full flow and persist the credentials.

        Args:
            client: Open Zoho client used for the token exchange
            credentials: Store receiving the client and refresh token

        Returns:
            The granted tokens
        """
        code = await self.wait_for_code()
        logger.info("Authorization code received, exchanging for tokens...")

        grant = await client.exchange_grant_code(
            self.client_id,
            self.client_secret,
            code,
            datacenter=self.datacenter,
            redirect_uri=self.redirect_uri,
        )
        credentials.save_credentials(self.client_id, self.client_secret, grant.refresh_token)
        if grant.access_token:
            credentials.save_access_token(grant.access_token, grant.expires_in)
        return grant
