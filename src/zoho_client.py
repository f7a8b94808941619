"""Zoho Books API client.

Every outbound call passes through ``ZohoBooksClient.request``, which gates
it on the shared rate limiter, makes sure a fresh access token exists and
logs failures with their context before re-raising them. Responses are
deserialized into the typed Zoho* models at this boundary.
"""

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import httpx

from .config import Settings, accounts_url_for
from .constants import (
    ACCESS_TOKEN_LIFETIME_SECONDS,
    DATACENTERS,
    REQUEST_TIMEOUT_SECONDS,
)
from .credential_store import CredentialStore
from .models import (
    PageContext,
    TokenGrant,
    ZohoContact,
    ZohoCreditNote,
    ZohoCreditNoteRefund,
    ZohoInvoice,
    ZohoOrganization,
    ZohoPayment,
)
from .rate_limiter import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ZohoAPIError(Exception):
    """Base exception for Zoho API errors."""
    pass


class NotConfiguredError(ZohoAPIError):
    """Raised when OAuth credentials have not been set up."""
    pass


class TokenRefreshError(ZohoAPIError):
    """Raised when an OAuth token exchange fails."""
    pass


class RateLimitExceededError(ZohoAPIError):
    """Raised when no request capacity became available in time."""
    def __init__(self, retry_after: float = 60.0):
        self.retry_after = retry_after
        super().__init__(f"Zoho API rate limit exceeded. Retry after {retry_after}s")


class RemoteValidationError(ZohoAPIError):
    """Business rule failure that needs a human, e.g. a currency mismatch."""
    pass


class RemoteApiError(ZohoAPIError):
    """Zoho answered with a non-zero code or an error status.

    ``str(error)`` is Zoho's message, unchanged.
    """
    def __init__(self, message: str, code: Optional[int] = None, status_code: Optional[int] = None):
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


class MalformedResponseError(ZohoAPIError):
    """Raised when a response body is not the JSON we expect."""
    pass


# Grant codes look like 1000.<32 hex>.<32+ hex>; refresh tokens do not
GRANT_CODE_PATTERN = re.compile(r"^1000\.[a-f0-9]{32}\.[a-f0-9]{32,}$", re.IGNORECASE)


class ZohoBooksClient:
    """Async client for the Zoho Books v3 API."""

    BODY_METHODS = ("POST", "PUT", "PATCH")

    def __init__(
        self,
        settings: Settings,
        credentials: CredentialStore,
        rate_limiter: RateLimiter,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize Zoho Books client.

        Args:
            settings: Application settings (region, organization, limits)
            credentials: Encrypted credential and token storage
            rate_limiter: Shared outbound request limiter
            sleep: Coroutine used for retry backoff
        """
        self.settings = settings
        self.credentials = credentials
        self.rate_limiter = rate_limiter
        self.base_url = settings.zoho_api_url
        self.accounts_url = settings.zoho_accounts_url
        self.organization_id = settings.zoho_organization_id
        self._sleep = sleep
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ZohoBooksClient":
        """Async context manager entry."""
        self._client = httpx.AsyncClient(timeout=REQUEST_TIMEOUT_SECONDS)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def is_configured(self) -> bool:
        return self.credentials.has_credentials()

    # =========================================================================
    # TOKENS
    # =========================================================================

    async def refresh_access_token(self) -> str:
        """Exchange the stored refresh token for a new access token.

        Zoho does not reliably report ``expires_in``, so the token is stored
        with a fixed one hour lifetime.

        Returns:
            The new access token

        Raises:
            NotConfiguredError: No credentials are stored
            TokenRefreshError: The exchange failed
        """
        credentials = self.credentials.get_credentials()
        if not credentials:
            raise NotConfiguredError(
                "Zoho credentials not configured. Run 'python sync.py --authorize' first."
            )

        try:
            data = await self._post_token_request(
                self.accounts_url,
                {
                    "refresh_token": credentials["refresh_token"],
                    "client_id": credentials["client_id"],
                    "client_secret": credentials["client_secret"],
                    "grant_type": "refresh_token",
                },
            )
        except TokenRefreshError as e:
            logger.error(f"Failed to refresh access token: {e}")
            raise TokenRefreshError(f"Failed to refresh Zoho access token: {e}") from e

        access_token = data.get("access_token")
        if not access_token:
            raise TokenRefreshError("Failed to refresh Zoho access token: no access token in response")

        self.credentials.save_access_token(access_token, ACCESS_TOKEN_LIFETIME_SECONDS)
        logger.info("Zoho access token refreshed successfully")
        return access_token

    async def exchange_grant_code(
        self,
        client_id: str,
        client_secret: str,
        grant_code: str,
        datacenter: str = "us",
        redirect_uri: Optional[str] = None,
    ) -> TokenGrant:
        """Exchange a one-time grant code for access and refresh tokens.

        Grant codes expire within minutes and can be used once.

        Args:
            client_id: OAuth client ID
            client_secret: OAuth client secret
            grant_code: Authorization grant code
            datacenter: Region the organization lives in
            redirect_uri: Redirect URI used when the code was issued

        Returns:
            TokenGrant with the new tokens

        Raises:
            TokenRefreshError: The exchange failed or no refresh token was granted
        """
        logger.info("Exchanging grant code for tokens")
        region = datacenter if datacenter in DATACENTERS else "us"
        form = {
            "code": grant_code,
            "client_id": client_id,
            "client_secret": client_secret,
            "grant_type": "authorization_code",
        }
        if redirect_uri:
            form["redirect_uri"] = redirect_uri

        try:
            data = await self._post_token_request(accounts_url_for(region), form)
        except TokenRefreshError as e:
            logger.error(f"Grant code exchange failed: {e}")
            raise TokenRefreshError(f"Failed to exchange grant code: {e}") from e

        if not data.get("refresh_token"):
            raise TokenRefreshError(
                "Failed to exchange grant code: no refresh token received. "
                "Ensure the grant code was issued with offline access."
            )

        logger.info("Grant code exchanged successfully")
        return TokenGrant(
            access_token=data.get("access_token", ""),
            refresh_token=data["refresh_token"],
            expires_in=ACCESS_TOKEN_LIFETIME_SECONDS,
        )

    @staticmethod
    def is_grant_code(token: str) -> bool:
        """Check whether a pasted token looks like a grant code rather than a refresh token."""
        return bool(GRANT_CODE_PATTERN.match(token or ""))

    async def _post_token_request(self, accounts_url: str, form: Dict[str, str]) -> dict:
        if not self._client:
            raise ZohoAPIError("Client not initialized. Use async context manager.")

        try:
            response = await self._client.post(f"{accounts_url}/oauth/v2/token", params=form)
        except httpx.RequestError as e:
            raise TokenRefreshError(f"Request failed: {e}") from e

        try:
            data = response.json()
        except ValueError:
            raise TokenRefreshError(f"Invalid response ({response.status_code})")

        if response.status_code != 200 or "error" in data:
            raise TokenRefreshError(str(data.get("error", f"HTTP {response.status_code}")))
        return data

    async def _ensure_access_token(self) -> str:
        token = self.credentials.get_access_token()
        if not token or self.credentials.is_token_expired():
            token = await self.refresh_access_token()
        return token

    # =========================================================================
    # REQUEST PIPELINE
    # =========================================================================

    async def request(self, call: Callable[[], Awaitable[T]], context: Optional[dict] = None) -> T:
        """Run an API call with a valid access token.

        Args:
            call: Coroutine factory performing the actual call
            context: Log context (endpoint, order and entity IDs)

        Returns:
            Whatever ``call`` returns

        Raises:
            RateLimitExceededError: No capacity became available in time
            ZohoAPIError: The call failed (logged with context, then re-raised)
        """
        context = context or {}

        await self._ensure_access_token()

        try:
            return await call()
        except ZohoAPIError as e:
            logger.error(f"Zoho API call failed: {e}", extra={"error": str(e), **context})
            raise

    async def _acquire_slot(self) -> None:
        """Wait for and record one outbound request in the local rate window.

        Raises:
            RateLimitExceededError: No capacity became available in time
        """
        if not self.rate_limiter.can_make_request():
            wait_seconds = self.rate_limiter.seconds_until_reset()
            logger.warning(f"Rate limit reached, waiting up to {self.settings.rate_limit_wait_seconds}s",
                           extra={"wait_seconds": wait_seconds})
            available = await self.rate_limiter.wait_for_availability(self.settings.rate_limit_wait_seconds)
            if not available:
                raise RateLimitExceededError(retry_after=self.rate_limiter.seconds_until_reset() or 60)

        self.rate_limiter.record_request()

    async def _send(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
    ) -> dict:
        """Make one HTTP request with transport retries.

        Each attempt takes a slot in the local rate window. A resend after a
        token refresh does not count towards ``request_retries``.

        Args:
            method: HTTP method
            path: API path below /books/v3 (e.g. "/invoices")
            params: Query parameters (organization_id is added)
            json_data: JSON body for POST/PUT

        Returns:
            Decoded JSON response

        Raises:
            RateLimitExceededError: Local or remote rate limit exhausted
            RemoteApiError: Zoho returned a non-zero code or an error status
            MalformedResponseError: The body was not valid JSON
        """
        if not self._client:
            raise ZohoAPIError("Client not initialized. Use async context manager.")

        url = f"{self.base_url}{path}"
        query = {"organization_id": self.organization_id, **(params or {})}
        retries = self.settings.request_retries
        refreshed = False
        attempt = 0

        while attempt < retries:
            token = self.credentials.get_access_token() or ""
            await self._acquire_slot()
            try:
                response = await self._client.request(
                    method=method,
                    url=url,
                    params=query,
                    json=json_data if method in self.BODY_METHODS else None,
                    headers={"Authorization": f"Zoho-oauthtoken {token}"},
                )
                logger.debug(f"Zoho API call: {method} {path} ({response.status_code})")

                if response.status_code == 401 and not refreshed:
                    # Token revoked or expired early; refresh once and resend
                    # without spending an attempt
                    logger.warning("Zoho rejected the access token, refreshing")
                    refreshed = True
                    await self.refresh_access_token()
                    continue

                if response.status_code == 429:
                    retry_after = float(response.headers.get("Retry-After", "60"))
                    if attempt < retries - 1:
                        logger.warning(f"Remote rate limit hit, waiting {retry_after}s")
                        await self._sleep(retry_after)
                        attempt += 1
                        continue
                    raise RateLimitExceededError(retry_after=retry_after)

                return self._parse_response(method, path, response)

            except httpx.TimeoutException:
                logger.warning(f"Request timeout (attempt {attempt + 1}/{retries})")
                if attempt < retries - 1:
                    await self._sleep(2 ** attempt)  # Exponential backoff
                    attempt += 1
                    continue
                raise RemoteApiError(f"Request timeout after {retries} attempts")

            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt + 1}/{retries}): {e}")
                if attempt < retries - 1:
                    await self._sleep(2 ** attempt)
                    attempt += 1
                    continue
                raise RemoteApiError(f"Request failed: {e}")

        raise RemoteApiError(f"Request to {method} {path} failed after {retries} attempts")

    def _parse_response(self, method: str, path: str, response: httpx.Response) -> dict:
        try:
            result = response.json()
        except ValueError:
            logger.error(
                "Invalid JSON response from Zoho API",
                extra={
                    "method": method,
                    "endpoint": path,
                    "status_code": response.status_code,
                    "raw_body": response.text[:500],
                },
            )
            raise MalformedResponseError("Invalid JSON response from Zoho API")

        if not isinstance(result, dict):
            raise MalformedResponseError("Unexpected JSON response from Zoho API")

        code = result.get("code", 0)
        if code != 0 or response.status_code >= 400:
            message = result.get("message") or f"API error {response.status_code}"
            logger.error(
                f"Zoho API error: {message}",
                extra={
                    "method": method,
                    "endpoint": path,
                    "status_code": response.status_code,
                    "zoho_code": code,
                },
            )
            raise RemoteApiError(message, code=code, status_code=response.status_code)

        return result

    async def _call(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        json_data: Optional[dict] = None,
        context: Optional[dict] = None,
    ) -> dict:
        return await self.request(
            lambda: self._send(method, path, params=params, json_data=json_data),
            {"method": method, "endpoint": path, **(context or {})},
        )

    async def raw_request(self, method: str, path: str, body: Optional[dict] = None) -> dict:
        """Call an endpoint the structured methods do not cover.

        Args:
            method: HTTP method
            path: API path (e.g. "/creditnotes/123/refunds")
            body: JSON body (ignored for GET/DELETE)

        Returns:
            Decoded JSON response
        """
        method = method.upper()
        logger.debug("Raw API request", extra={"method": method, "endpoint": path})
        return await self._call(method, path, json_data=body if body else None)

    @staticmethod
    def _entity(response: dict, key: str, model):
        data = response.get(key)
        if not isinstance(data, dict):
            raise MalformedResponseError(f"Response has no '{key}' object")
        return model.model_validate(data)

    @staticmethod
    def _entities(response: dict, key: str, model) -> list:
        return [model.model_validate(item) for item in response.get(key) or []]

    @staticmethod
    def _page_context(response: dict) -> PageContext:
        return PageContext.model_validate(response.get("page_context") or {})

    # =========================================================================
    # ORGANIZATIONS
    # =========================================================================

    async def get_organizations(self) -> List[ZohoOrganization]:
        response = await self._call("GET", "/organizations")
        return self._entities(response, "organizations", ZohoOrganization)

    async def test_connection(self) -> bool:
        """Check that the credentials can reach the organization."""
        try:
            organizations = await self.get_organizations()
            return len(organizations) > 0
        except ZohoAPIError as e:
            logger.error(f"Connection test failed: {e}")
            return False

    # =========================================================================
    # CONTACTS
    # =========================================================================

    async def find_contact_by_email(self, email: str) -> Optional[ZohoContact]:
        """Find a contact whose email matches exactly (case-insensitive).

        Args:
            email: Customer email

        Returns:
            ZohoContact or None
        """
        response = await self._call("GET", "/contacts", params={"email": email}, context={"email": email})
        for contact in self._entities(response, "contacts", ZohoContact):
            if (contact.email or "").lower() == email.lower():
                return contact
        return None

    async def get_contact(self, contact_id: str) -> ZohoContact:
        response = await self._call("GET", f"/contacts/{contact_id}", context={"contact_id": contact_id})
        return self._entity(response, "contact", ZohoContact)

    async def create_contact(self, payload: dict) -> ZohoContact:
        response = await self._call("POST", "/contacts", json_data=payload)
        contact = self._entity(response, "contact", ZohoContact)
        logger.info(f"Created Zoho contact {contact.contact_id}: {contact.display_name}")
        return contact

    async def update_contact(self, contact_id: str, payload: dict) -> ZohoContact:
        response = await self._call(
            "PUT", f"/contacts/{contact_id}", json_data=payload, context={"contact_id": contact_id}
        )
        return self._entity(response, "contact", ZohoContact)

    # =========================================================================
    # INVOICES
    # =========================================================================

    async def list_invoices(
        self,
        page: int = 1,
        per_page: int = 200,
        **filters: Any,
    ) -> Tuple[List[ZohoInvoice], PageContext]:
        """List one page of invoices.

        Args:
            page: Page number (1-based)
            per_page: Page size (max 200)
            **filters: Field filters such as reference_number or date_start

        Returns:
            Tuple of (invoices, page context)
        """
        params = {"page": page, "per_page": per_page, **filters}
        response = await self._call("GET", "/invoices", params=params)
        return self._entities(response, "invoices", ZohoInvoice), self._page_context(response)

    async def find_invoice_by_reference(self, reference_number: str) -> Optional[ZohoInvoice]:
        invoices, _ = await self.list_invoices(per_page=10, reference_number=reference_number)
        for invoice in invoices:
            if invoice.reference_number == reference_number:
                return invoice
        return None

    async def find_invoice_by_number(self, invoice_number: str) -> Optional[ZohoInvoice]:
        invoices, _ = await self.list_invoices(per_page=10, invoice_number=invoice_number)
        for invoice in invoices:
            if invoice.invoice_number == invoice_number:
                return invoice
        return None

    async def get_invoice(self, invoice_id: str) -> ZohoInvoice:
        response = await self._call("GET", f"/invoices/{invoice_id}", context={"invoice_id": invoice_id})
        return self._entity(response, "invoice", ZohoInvoice)

    async def create_invoice(self, payload: dict, send: bool = False) -> ZohoInvoice:
        """Create an invoice.

        Args:
            payload: Invoice body
            send: Ask Zoho to email the invoice to the customer

        Returns:
            Created ZohoInvoice
        """
        params = {"send": str(send).lower()}
        if payload.get("invoice_number"):
            params["ignore_auto_number_generation"] = "true"
        response = await self._call(
            "POST", "/invoices", params=params, json_data=payload,
            context={"reference_number": payload.get("reference_number")},
        )
        invoice = self._entity(response, "invoice", ZohoInvoice)
        logger.info(f"Created Zoho invoice {invoice.invoice_number} ({invoice.invoice_id})")
        return invoice

    async def mark_invoice_sent(self, invoice_id: str) -> None:
        await self._call("POST", f"/invoices/{invoice_id}/status/sent", context={"invoice_id": invoice_id})

    async def void_invoice(self, invoice_id: str) -> None:
        await self._call("POST", f"/invoices/{invoice_id}/status/void", context={"invoice_id": invoice_id})

    # =========================================================================
    # CREDIT NOTES
    # =========================================================================

    async def create_credit_note(self, payload: dict) -> ZohoCreditNote:
        params = {"ignore_auto_number_generation": "true"} if payload.get("creditnote_number") else None
        response = await self._call(
            "POST", "/creditnotes", params=params, json_data=payload,
            context={"creditnote_number": payload.get("creditnote_number")},
        )
        credit_note = self._entity(response, "creditnote", ZohoCreditNote)
        logger.info(f"Created Zoho credit note {credit_note.creditnote_number} ({credit_note.creditnote_id})")
        return credit_note

    async def apply_credit_note_to_invoice(self, creditnote_id: str, invoice_id: str, amount: float) -> None:
        """Apply a credit note to an invoice from the credit note side."""
        await self._call(
            "POST",
            f"/creditnotes/{creditnote_id}/invoices",
            json_data={"invoices": [{"invoice_id": invoice_id, "amount_applied": amount}]},
            context={"creditnote_id": creditnote_id, "invoice_id": invoice_id},
        )

    async def apply_credits_to_invoice(self, invoice_id: str, creditnote_id: str, amount: float) -> None:
        """Apply a credit note to an invoice from the invoice side."""
        await self._call(
            "POST",
            f"/invoices/{invoice_id}/credits",
            json_data={"apply_creditnotes": [{"creditnote_id": creditnote_id, "amount_applied": amount}]},
            context={"creditnote_id": creditnote_id, "invoice_id": invoice_id},
        )

    async def create_credit_note_refund(self, creditnote_id: str, payload: dict) -> ZohoCreditNoteRefund:
        """Record money paid back to the customer against a credit note."""
        response = await self._call(
            "POST", f"/creditnotes/{creditnote_id}/refunds", json_data=payload,
            context={"creditnote_id": creditnote_id},
        )
        return self._entity(response, "creditnote_refund", ZohoCreditNoteRefund)

    # =========================================================================
    # CUSTOMER PAYMENTS
    # =========================================================================

    async def list_customer_payments(
        self,
        page: int = 1,
        per_page: int = 200,
        **filters: Any,
    ) -> Tuple[List[ZohoPayment], PageContext]:
        params = {"page": page, "per_page": per_page, **filters}
        response = await self._call("GET", "/customerpayments", params=params)
        return self._entities(response, "customerpayments", ZohoPayment), self._page_context(response)

    async def create_customer_payment(self, payload: dict) -> ZohoPayment:
        response = await self._call(
            "POST", "/customerpayments", json_data=payload,
            context={"reference_number": payload.get("reference_number")},
        )
        payment = self._entity(response, "payment", ZohoPayment)
        logger.info(f"Created Zoho payment {payment.payment_number} ({payment.payment_id})")
        return payment
