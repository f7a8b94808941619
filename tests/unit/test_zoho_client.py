"""Unit tests for the Zoho Books API client.

Tests verify that:
- Requests carry the organization ID and OAuth header
- Access tokens are refreshed when expired or rejected
- Remote errors and malformed bodies raise typed errors
- Remote rate limiting and transport failures are retried
- The local rate limiter gates outbound calls
- Responses are deserialized into typed models
"""

import json
import re
from unittest.mock import AsyncMock

import httpx
import pytest

from src.models import ZohoContact, ZohoInvoice
from src.rate_limiter import RateLimiter
from src.zoho_client import (
    MalformedResponseError,
    NotConfiguredError,
    RateLimitExceededError,
    RemoteApiError,
    TokenRefreshError,
    ZohoAPIError,
    ZohoBooksClient,
)

from tests.fixtures.zoho_fixtures import (
    ZOHO_ERROR_NOT_FOUND,
    ZOHO_GRANT_RESPONSE,
    ZOHO_ORGANIZATIONS,
    ZOHO_TOKEN_ERROR,
    ZOHO_TOKEN_RESPONSE,
    envelope,
    make_invoices_response,
    make_zoho_contact,
    make_zoho_invoice,
)

API = "https://www.zohoapis.com/books/v3"
TOKEN_URL = re.compile(r"https://accounts\.zoho\.com/oauth/v2/token.*")


def api_url(path: str) -> re.Pattern:
    return re.compile(re.escape(f"{API}{path}") + r"(\?.*)?$")


@pytest.fixture
def rate_limiter(database):
    return RateLimiter(database)


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def client(settings, credential_store, rate_limiter, sleep):
    return ZohoBooksClient(settings, credential_store, rate_limiter, sleep=sleep)


class TestClientContextManager:
    """Tests for async context manager."""

    @pytest.mark.asyncio
    async def test_context_manager_creates_and_closes_client(self, client):
        """Test the httpx client only lives inside the context."""
        async with client as c:
            assert c._client is not None

        assert client._client is None

    @pytest.mark.asyncio
    async def test_call_outside_context_fails(self, client):
        """Test calls without an open client raise."""
        with pytest.raises(ZohoAPIError):
            await client.get_invoice("1")

    def test_is_configured(self, client, credential_store):
        """Test configuration follows the stored credentials."""
        assert client.is_configured() is True
        credential_store.clear_credentials()
        assert client.is_configured() is False


class TestRequests:
    """Tests for request formatting and response parsing."""

    @pytest.mark.asyncio
    async def test_get_invoice_sends_org_and_token(self, client, httpx_mock):
        """Test organization ID and OAuth header are sent."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/invoices/460000000031001"),
            json=envelope(invoice=make_zoho_invoice()),
        )

        async with client:
            invoice = await client.get_invoice("460000000031001")

        assert isinstance(invoice, ZohoInvoice)
        assert invoice.invoice_number == "INV-000101"
        request = httpx_mock.get_request()
        assert request.url.params["organization_id"] == "60000000001"
        assert request.headers["Authorization"] == "Zoho-oauthtoken test_access_token"

    @pytest.mark.asyncio
    async def test_non_zero_code_raises_remote_error(self, client, httpx_mock):
        """Test Zoho's message is kept verbatim."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/invoices/missing"),
            status_code=404,
            json=ZOHO_ERROR_NOT_FOUND,
        )

        async with client:
            with pytest.raises(RemoteApiError) as exc_info:
                await client.get_invoice("missing")

        assert str(exc_info.value) == "Invoice does not exist."
        assert exc_info.value.code == 1002
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_non_zero_code_with_200_still_fails(self, client, httpx_mock):
        """Test a 200 response with an error code is an error."""
        httpx_mock.add_response(
            method="POST",
            url=api_url("/contacts"),
            json={"code": 3062, "message": "Contact with this name already exists."},
        )

        async with client:
            with pytest.raises(RemoteApiError, match="already exists"):
                await client.create_contact({"contact_name": "Jane Doe"})

    @pytest.mark.asyncio
    async def test_invalid_json_raises_malformed(self, client, httpx_mock):
        """Test a non-JSON body is never treated as empty."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/invoices/1"),
            text="<html>Bad gateway</html>",
        )

        async with client:
            with pytest.raises(MalformedResponseError):
                await client.get_invoice("1")

    @pytest.mark.asyncio
    async def test_missing_entity_raises_malformed(self, client, httpx_mock):
        """Test a success envelope without the entity is malformed."""
        httpx_mock.add_response(method="GET", url=api_url("/invoices/1"), json=envelope())

        async with client:
            with pytest.raises(MalformedResponseError):
                await client.get_invoice("1")

    @pytest.mark.asyncio
    async def test_raw_request(self, client, httpx_mock):
        """Test raw requests go through the same pipeline."""
        httpx_mock.add_response(
            method="POST",
            url=api_url("/invoices/1/status/void"),
            json=envelope(),
        )

        async with client:
            result = await client.raw_request("post", "/invoices/1/status/void")

        assert result["code"] == 0


class TestTokenHandling:
    """Tests for access token refresh."""

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_before_call(self, client, credential_store, httpx_mock):
        """Test a missing token is refreshed before the request."""
        credential_store.clear_tokens()
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=ZOHO_TOKEN_RESPONSE)
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            organizations = await client.get_organizations()

        assert organizations[0].organization_id == "60000000001"
        assert credential_store.get_access_token() == "1000.new_access_token"
        token_request = httpx_mock.get_requests()[0]
        assert token_request.url.params["grant_type"] == "refresh_token"
        assert token_request.url.params["refresh_token"] == "1000.refresh.token"

    @pytest.mark.asyncio
    async def test_401_refreshes_once_and_retries(self, client, credential_store, httpx_mock):
        """Test a rejected token is refreshed and the call repeated."""
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), status_code=401, json={})
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=ZOHO_TOKEN_RESPONSE)
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            organizations = await client.get_organizations()

        assert len(organizations) == 1
        last_request = httpx_mock.get_requests()[-1]
        assert last_request.headers["Authorization"] == "Zoho-oauthtoken 1000.new_access_token"

    @pytest.mark.asyncio
    async def test_refresh_resend_does_not_use_an_attempt(
        self, client, settings, httpx_mock, monkeypatch
    ):
        """Test the refreshed token is used even with a single attempt."""
        monkeypatch.setattr(settings, "request_retries", 1)
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), status_code=401, json={})
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=ZOHO_TOKEN_RESPONSE)
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            organizations = await client.get_organizations()

        assert len(organizations) == 1

    @pytest.mark.asyncio
    async def test_second_401_is_not_refreshed_again(self, client, httpx_mock):
        """Test a token rejected after refreshing raises instead of looping."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/organizations"),
            status_code=401,
            json={"code": 57, "message": "You are not authorized to perform this operation"},
        )
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=ZOHO_TOKEN_RESPONSE)
        httpx_mock.add_response(
            method="GET",
            url=api_url("/organizations"),
            status_code=401,
            json={"code": 57, "message": "You are not authorized to perform this operation"},
        )

        async with client:
            with pytest.raises(RemoteApiError) as exc_info:
                await client.get_organizations()

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    async def test_refresh_failure_raises(self, client, credential_store, httpx_mock):
        """Test a failed refresh raises TokenRefreshError."""
        credential_store.clear_tokens()
        httpx_mock.add_response(method="POST", url=TOKEN_URL, status_code=400, json=ZOHO_TOKEN_ERROR)

        async with client:
            with pytest.raises(TokenRefreshError):
                await client.get_organizations()

    @pytest.mark.asyncio
    async def test_refresh_without_credentials_raises(self, client, credential_store):
        """Test refreshing without stored credentials is a configuration error."""
        credential_store.clear_credentials()

        async with client:
            with pytest.raises(NotConfiguredError):
                await client.refresh_access_token()

    @pytest.mark.asyncio
    async def test_exchange_grant_code(self, client, httpx_mock):
        """Test a grant code is exchanged for a refresh token."""
        httpx_mock.add_response(
            method="POST",
            url=re.compile(r"https://accounts\.zoho\.eu/oauth/v2/token.*"),
            json=ZOHO_GRANT_RESPONSE,
        )

        async with client:
            grant = await client.exchange_grant_code("cid", "secret", "1000.code", datacenter="eu")

        assert grant.refresh_token == "1000.granted_refresh_token"
        assert grant.access_token == "1000.granted_access_token"
        assert httpx_mock.get_request().url.params["grant_type"] == "authorization_code"

    @pytest.mark.asyncio
    async def test_exchange_grant_code_without_refresh_token(self, client, httpx_mock):
        """Test a grant without offline access is rejected."""
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=ZOHO_TOKEN_RESPONSE)

        async with client:
            with pytest.raises(TokenRefreshError, match="no refresh token"):
                await client.exchange_grant_code("cid", "secret", "1000.code")

    def test_is_grant_code(self):
        """Test grant codes are told apart from refresh tokens."""
        grant = "1000." + "a" * 32 + "." + "b" * 32
        assert ZohoBooksClient.is_grant_code(grant) is True
        assert ZohoBooksClient.is_grant_code("1000.refresh.token") is False
        assert ZohoBooksClient.is_grant_code("") is False


class TestRetries:
    """Tests for remote rate limiting and transport retries."""

    @pytest.mark.asyncio
    async def test_429_waits_retry_after(self, client, sleep, httpx_mock):
        """Test a 429 waits for Retry-After before retrying."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/organizations"),
            status_code=429,
            headers={"Retry-After": "7"},
            json={},
        )
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            organizations = await client.get_organizations()

        assert len(organizations) == 1
        sleep.assert_awaited_once_with(7.0)

    @pytest.mark.asyncio
    async def test_429_on_every_attempt_raises(self, client, settings, httpx_mock):
        """Test persistent remote throttling surfaces as RateLimitExceededError."""
        for _ in range(settings.request_retries):
            httpx_mock.add_response(
                method="GET",
                url=api_url("/organizations"),
                status_code=429,
                headers={"Retry-After": "1"},
                json={},
            )

        async with client:
            with pytest.raises(RateLimitExceededError):
                await client.get_organizations()

    @pytest.mark.asyncio
    async def test_timeout_retried_with_backoff(self, client, sleep, httpx_mock):
        """Test timeouts are retried with exponential backoff."""
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            organizations = await client.get_organizations()

        assert len(organizations) == 1
        sleep.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_timeout_on_every_attempt_raises(self, client, settings, httpx_mock):
        """Test exhausted retries raise RemoteApiError."""
        for _ in range(settings.request_retries):
            httpx_mock.add_exception(httpx.ReadTimeout("timed out"))

        async with client:
            with pytest.raises(RemoteApiError, match="timeout"):
                await client.get_organizations()


class TestRateLimitGate:
    """Tests for the local rate limiter in the request pipeline."""

    @pytest.mark.asyncio
    async def test_requests_are_counted(self, client, rate_limiter, httpx_mock):
        """Test every call records a request."""
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            await client.get_organizations()

        assert rate_limiter.get_request_count() == 1

    @pytest.mark.asyncio
    async def test_retried_attempts_are_counted(self, client, rate_limiter, httpx_mock):
        """Test every HTTP attempt, not just every call, uses up the window."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/organizations"),
            status_code=429,
            headers={"Retry-After": "1"},
            json={},
        )
        httpx_mock.add_exception(httpx.ReadTimeout("timed out"))
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            await client.get_organizations()

        assert len(httpx_mock.get_requests()) == 3
        assert rate_limiter.get_request_count() == 3

    @pytest.mark.asyncio
    async def test_token_resend_is_counted(self, client, rate_limiter, httpx_mock):
        """Test the resend after a token refresh is counted too."""
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), status_code=401, json={})
        httpx_mock.add_response(method="POST", url=TOKEN_URL, json=ZOHO_TOKEN_RESPONSE)
        httpx_mock.add_response(method="GET", url=api_url("/organizations"), json=ZOHO_ORGANIZATIONS)

        async with client:
            await client.get_organizations()

        assert rate_limiter.get_request_count() == 2

    @pytest.mark.asyncio
    async def test_exhausted_window_raises(self, settings, credential_store, database, monkeypatch):
        """Test a full window raises RateLimitExceededError after the wait."""
        monkeypatch.setattr(settings, "rate_limit_wait_seconds", 0)
        limiter = RateLimiter(database, limit=1)
        limiter.record_request()
        client = ZohoBooksClient(settings, credential_store, limiter, sleep=AsyncMock())

        async with client:
            with pytest.raises(RateLimitExceededError) as exc_info:
                await client.get_organizations()

        assert exc_info.value.retry_after > 0


class TestEntities:
    """Tests for typed entity operations."""

    @pytest.mark.asyncio
    async def test_find_contact_by_email_exact_match(self, client, httpx_mock):
        """Test only an exact (case-insensitive) email match is returned."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/contacts"),
            json=envelope(contacts=[
                make_zoho_contact(contact_id="1", email="jane.doe@example.com.au"),
                make_zoho_contact(contact_id="2", email="Jane.Doe@Example.com"),
            ]),
        )

        async with client:
            contact = await client.find_contact_by_email("jane.doe@example.com")

        assert isinstance(contact, ZohoContact)
        assert contact.contact_id == "2"

    @pytest.mark.asyncio
    async def test_find_contact_by_email_none(self, client, httpx_mock):
        """Test no match returns None."""
        httpx_mock.add_response(method="GET", url=api_url("/contacts"), json=envelope(contacts=[]))

        async with client:
            assert await client.find_contact_by_email("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_create_invoice_with_number_skips_auto_numbering(self, client, httpx_mock):
        """Test a forced invoice number disables auto numbering."""
        httpx_mock.add_response(
            method="POST",
            url=api_url("/invoices"),
            json=envelope(invoice=make_zoho_invoice(invoice_number="1001")),
        )

        async with client:
            invoice = await client.create_invoice(
                {"customer_id": "1", "invoice_number": "1001", "reference_number": "1001"}
            )

        assert invoice.invoice_number == "1001"
        request = httpx_mock.get_request()
        assert request.url.params["ignore_auto_number_generation"] == "true"
        assert request.url.params["send"] == "false"
        assert json.loads(request.content)["reference_number"] == "1001"

    @pytest.mark.asyncio
    async def test_find_invoice_by_reference(self, client, httpx_mock):
        """Test the reference must match exactly."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/invoices"),
            json=make_invoices_response([
                make_zoho_invoice(invoice_id="9", reference_number="10011"),
                make_zoho_invoice(invoice_id="10", reference_number="1001"),
            ]),
        )

        async with client:
            invoice = await client.find_invoice_by_reference("1001")

        assert invoice.invoice_id == "10"

    @pytest.mark.asyncio
    async def test_list_invoices_page_context(self, client, httpx_mock):
        """Test pagination info is returned with the page."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/invoices"),
            json=make_invoices_response([make_zoho_invoice()], has_more_page=True),
        )

        async with client:
            invoices, page_context = await client.list_invoices(page=1, per_page=200, date_start="2024-01-01")

        assert len(invoices) == 1
        assert page_context.has_more_page is True
        assert httpx_mock.get_request().url.params["date_start"] == "2024-01-01"

    @pytest.mark.asyncio
    async def test_void_invoice(self, client, httpx_mock):
        """Test voiding posts to the status endpoint."""
        httpx_mock.add_response(method="POST", url=api_url("/invoices/5/status/void"), json=envelope())

        async with client:
            await client.void_invoice("5")

        assert httpx_mock.get_request().method == "POST"

    @pytest.mark.asyncio
    async def test_test_connection_false_on_error(self, client, httpx_mock):
        """Test the connection check reports failures as False."""
        httpx_mock.add_response(
            method="GET",
            url=api_url("/organizations"),
            status_code=400,
            json={"code": 57, "message": "You are not authorized to perform this operation"},
        )

        async with client:
            assert await client.test_connection() is False
