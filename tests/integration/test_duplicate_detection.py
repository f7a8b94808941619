"""Integration tests for duplicate detection.

Tests verify that:
- Existing contacts are found by email before creation
- Existing invoices are found by reference or number before creation
- An invoice belonging to another contact is not reused
- Conflict-checked syncs link an existing invoice instead of duplicating it
- Currency conflicts stop the sync before anything is created
"""

import json
import re
from unittest.mock import AsyncMock

import pytest

from src.customer_service import CustomerService
from src.invoice_service import InvoiceService
from src.models import SyncStatus
from src.rate_limiter import RateLimiter
from src.sync_orchestrator import SyncOrchestrator
from src.zoho_client import ZohoBooksClient

from tests.fixtures.zoho_fixtures import (
    envelope,
    make_invoices_response,
    make_zoho_contact,
    make_zoho_invoice,
)

API = "https://www.zohoapis.com/books/v3"
CONTACT_ID = "460000000026049"
INVOICE_ID = "460000000031001"


def api_url(path: str) -> re.Pattern:
    return re.compile(re.escape(f"{API}{path}") + r"(\?.*)?$")


def invoice_lookup(field: str) -> re.Pattern:
    """Invoice list request filtered on one field."""
    return re.compile(re.escape(f"{API}/invoices?") + rf".*\b{field}=")


def requests_to(httpx_mock, method: str, path: str) -> list:
    return [
        r for r in httpx_mock.get_requests()
        if r.method == method and r.url.path == f"/books/v3{path}"
    ]


@pytest.fixture
def client(settings, credential_store, database):
    return ZohoBooksClient(settings, credential_store, RateLimiter(database), sleep=AsyncMock())


@pytest.fixture
def orchestrator(settings, database, client):
    return SyncOrchestrator(
        settings=settings,
        db=database,
        customers=CustomerService(client),
        invoices=InvoiceService(client, settings),
        sleep=AsyncMock(),
    )


def add_contact_lookup(httpx_mock, **contact):
    httpx_mock.add_response(
        method="GET", url=api_url("/contacts"), json=envelope(contacts=[make_zoho_contact(**contact)])
    )
    httpx_mock.add_response(
        method="GET", url=api_url(f"/contacts/{CONTACT_ID}"), json=envelope(contact=make_zoho_contact(**contact))
    )


def add_invoice_creation(httpx_mock, invoice_id: str = INVOICE_ID):
    httpx_mock.add_response(
        method="POST", url=api_url("/invoices"), json=envelope(invoice=make_zoho_invoice(invoice_id=invoice_id))
    )
    httpx_mock.add_response(method="POST", url=api_url(f"/invoices/{invoice_id}/status/sent"), json=envelope())


class TestContactDuplicateDetection:
    """Integration tests for contact resolution."""

    @pytest.mark.asyncio
    async def test_existing_contact_reused(self, orchestrator, client, sample_order, httpx_mock):
        """Test a contact with the billing email is used, not recreated."""
        add_contact_lookup(httpx_mock)
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_invoice_creation(httpx_mock)

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.contact_id == CONTACT_ID
        assert requests_to(httpx_mock, "POST", "/contacts") == []
        assert requests_to(httpx_mock, "PUT", f"/contacts/{CONTACT_ID}") == []

    @pytest.mark.asyncio
    async def test_email_match_is_case_insensitive(self, orchestrator, client, sample_order, httpx_mock):
        """Test Zoho's stored email casing does not matter."""
        add_contact_lookup(httpx_mock, email="Jane.Doe@Example.com")
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_invoice_creation(httpx_mock)

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.success is True
        assert requests_to(httpx_mock, "POST", "/contacts") == []

    @pytest.mark.asyncio
    async def test_new_contact_created(self, orchestrator, client, sample_order, httpx_mock):
        """Test a contact is created when the email is unknown."""
        httpx_mock.add_response(method="GET", url=api_url("/contacts"), json=envelope(contacts=[]))
        httpx_mock.add_response(method="POST", url=api_url("/contacts"), json=envelope(contact=make_zoho_contact()))
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_invoice_creation(httpx_mock)

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.success is True
        body = json.loads(requests_to(httpx_mock, "POST", "/contacts")[0].content)
        assert body["email"] == "jane.doe@example.com"
        assert body["currency_code"] == "USD"

    @pytest.mark.asyncio
    async def test_changed_details_update_contact(self, orchestrator, client, sample_order, httpx_mock):
        """Test a reused contact with stale details is updated without its currency."""
        add_contact_lookup(httpx_mock, phone="+440000000000")
        httpx_mock.add_response(
            method="PUT", url=api_url(f"/contacts/{CONTACT_ID}"), json=envelope(contact=make_zoho_contact())
        )
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_invoice_creation(httpx_mock)

        async with client:
            await orchestrator.sync_order(sample_order)

        body = json.loads(requests_to(httpx_mock, "PUT", f"/contacts/{CONTACT_ID}")[0].content)
        assert body["phone"] == "+441234567890"
        assert "currency_code" not in body

    @pytest.mark.asyncio
    async def test_currency_conflict_fails_sync(self, orchestrator, client, database, sample_order, httpx_mock):
        """Test a contact in another currency blocks the invoice."""
        add_contact_lookup(httpx_mock, currency_code="EUR")

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.success is False
        assert result.error.startswith("Currency mismatch: Contact is set to EUR but order uses USD.")
        assert requests_to(httpx_mock, "POST", "/invoices") == []
        assert database.get_sync_state("1001").status == SyncStatus.FAILED


class TestInvoiceDuplicateDetection:
    """Integration tests for invoice reuse."""

    @pytest.mark.asyncio
    async def test_invoice_found_by_reference_reused(self, orchestrator, client, database, sample_order, httpx_mock):
        """Test an invoice referencing the order is linked instead of recreated."""
        add_contact_lookup(httpx_mock)
        httpx_mock.add_response(
            method="GET",
            url=invoice_lookup("reference_number"),
            json=make_invoices_response([make_zoho_invoice(customer_id=None)]),
        )
        httpx_mock.add_response(
            method="GET", url=api_url(f"/invoices/{INVOICE_ID}"), json=envelope(invoice=make_zoho_invoice())
        )

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.success is True
        assert result.invoice_id == INVOICE_ID
        assert result.data["existing"] is True
        assert requests_to(httpx_mock, "POST", "/invoices") == []
        assert database.get_sync_state("1001").invoice_id == INVOICE_ID

    @pytest.mark.asyncio
    async def test_invoice_found_by_number(self, orchestrator, client, sample_order, httpx_mock):
        """Test invoices numbered after the order are found too."""
        add_contact_lookup(httpx_mock)
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(
            method="GET",
            url=invoice_lookup("invoice_number"),
            json=make_invoices_response([make_zoho_invoice(invoice_number="1001", reference_number=None)]),
        )
        httpx_mock.add_response(
            method="GET", url=api_url(f"/invoices/{INVOICE_ID}"), json=envelope(invoice=make_zoho_invoice())
        )

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.data["existing"] is True
        assert requests_to(httpx_mock, "POST", "/invoices") == []

    @pytest.mark.asyncio
    async def test_reference_must_match_exactly(self, orchestrator, client, sample_order, httpx_mock):
        """Test a similar reference returned by Zoho's search is ignored."""
        add_contact_lookup(httpx_mock)
        httpx_mock.add_response(
            method="GET",
            url=invoice_lookup("reference_number"),
            json=make_invoices_response([make_zoho_invoice(invoice_id="other", reference_number="10011")]),
        )
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_invoice_creation(httpx_mock)

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.invoice_id == INVOICE_ID
        assert len(requests_to(httpx_mock, "POST", "/invoices")) == 1

    @pytest.mark.asyncio
    async def test_invoice_of_other_contact_not_reused(self, orchestrator, client, sample_order, httpx_mock):
        """Test a matching invoice for a different customer is not linked."""
        add_contact_lookup(httpx_mock)
        httpx_mock.add_response(
            method="GET",
            url=invoice_lookup("reference_number"),
            json=make_invoices_response([make_zoho_invoice(invoice_id="460000000039999")]),
        )
        httpx_mock.add_response(
            method="GET",
            url=api_url("/invoices/460000000039999"),
            json=envelope(invoice=make_zoho_invoice(invoice_id="460000000039999", customer_id="460000000099999")),
        )
        add_invoice_creation(httpx_mock)

        async with client:
            result = await orchestrator.sync_order(sample_order)

        assert result.invoice_id == INVOICE_ID
        assert result.data.get("existing") is None
        assert len(requests_to(httpx_mock, "POST", "/invoices")) == 1


class TestConflictCheckedSync:
    """Integration tests for sync_order_with_conflict_check."""

    @pytest.mark.asyncio
    async def test_existing_invoice_linked(self, orchestrator, client, database, sample_order, httpx_mock):
        """Test the existing invoice and contact are recorded without creating anything."""
        httpx_mock.add_response(
            method="GET",
            url=invoice_lookup("reference_number"),
            json=make_invoices_response([make_zoho_invoice()]),
        )
        add_contact_lookup(httpx_mock)

        async with client:
            result = await orchestrator.sync_order_with_conflict_check(sample_order)

        assert result.data["linked_existing"] is True
        assert result.invoice_id == INVOICE_ID
        assert result.contact_id == CONTACT_ID
        assert [r.method for r in httpx_mock.get_requests()] == ["GET", "GET", "GET"]

        state = database.get_sync_state("1001")
        assert state.status == SyncStatus.SYNCED
        assert state.invoice_id == INVOICE_ID
        assert "linked to existing Zoho Books invoice" in database.get_order_notes("1001")[0].note

    @pytest.mark.asyncio
    async def test_no_conflict_syncs_normally(self, orchestrator, client, sample_order, httpx_mock):
        """Test orders without an existing invoice are created as usual."""
        # Conflict detection
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_contact_lookup(httpx_mock)
        # Sync
        add_contact_lookup(httpx_mock)
        httpx_mock.add_response(method="GET", url=invoice_lookup("reference_number"), json=make_invoices_response([]))
        httpx_mock.add_response(method="GET", url=invoice_lookup("invoice_number"), json=make_invoices_response([]))
        add_invoice_creation(httpx_mock)

        async with client:
            result = await orchestrator.sync_order_with_conflict_check(sample_order)

        assert result.success is True
        assert result.data.get("linked_existing") is None
        assert len(requests_to(httpx_mock, "POST", "/invoices")) == 1
