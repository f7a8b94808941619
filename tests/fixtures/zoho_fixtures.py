"""Mock fixtures for Zoho Books API responses.

These fixtures provide realistic mock data for testing Zoho Books API
operations. Every response carries Zoho's ``code``/``message`` envelope.
"""


def envelope(**payload) -> dict:
    """Wrap a payload in Zoho's success envelope."""
    return {"code": 0, "message": "success", **payload}


def page_context(page: int = 1, per_page: int = 200, has_more_page: bool = False) -> dict:
    return {"page": page, "per_page": per_page, "has_more_page": has_more_page}


# =============================================================================
# CONTACT FIXTURES
# =============================================================================

def make_zoho_contact(
    contact_id: str = "460000000026049",
    contact_name: str = "Jane Doe",
    email: str = "jane.doe@example.com",
    currency_code: str = "USD",
    **kwargs
) -> dict:
    """Create a mock Zoho contact.

    The default contact matches the billing details of ``make_order``.
    """
    contact = {
        "contact_id": contact_id,
        "contact_name": contact_name,
        "company_name": "",
        "email": email,
        "phone": "+441234567890",
        "currency_code": currency_code,
        "contact_type": "customer",
        "billing_address": {
            "address": "123 High Street",
            "street2": "Flat 2",
            "city": "London",
            "state": "Greater London",
            "zip": "SW1A 1AA",
            "country": "GB",
        },
        "shipping_address": {
            "address": "123 High Street",
            "street2": "Flat 2",
            "city": "London",
            "state": "Greater London",
            "zip": "SW1A 1AA",
            "country": "GB",
        },
    }
    contact.update(kwargs)
    return contact


# =============================================================================
# INVOICE FIXTURES
# =============================================================================

def make_zoho_invoice(
    invoice_id: str = "460000000031001",
    invoice_number: str = "INV-000101",
    reference_number: str = "1001",
    customer_id: str = "460000000026049",
    status: str = "sent",
    total: float = 100.00,
    balance: float = 100.00,
    **kwargs
) -> dict:
    """Create a mock Zoho invoice.

    Amount components default to the breakdown of ``make_order``.
    """
    invoice = {
        "invoice_id": invoice_id,
        "invoice_number": invoice_number,
        "reference_number": reference_number,
        "customer_id": customer_id,
        "customer_name": "Jane Doe",
        "status": status,
        "date": "2024-01-15",
        "currency_code": "USD",
        "sub_total": 90.00,
        "shipping_charge": 10.00,
        "discount": 0.0,
        "tax_total": 0.0,
        "adjustment": 0.0,
        "total": total,
        "balance": balance,
        "payment_made": round(total - balance, 2),
        "credits_applied": 0.0,
    }
    invoice.update(kwargs)
    return invoice


def make_invoices_response(invoices: list, has_more_page: bool = False, page: int = 1) -> dict:
    return envelope(invoices=invoices, page_context=page_context(page=page, has_more_page=has_more_page))


# =============================================================================
# PAYMENT / CREDIT NOTE FIXTURES
# =============================================================================

def make_zoho_payment(
    payment_id: str = "460000000035001",
    invoice_id: str = "460000000031001",
    amount: float = 100.00,
    date: str = "2024-01-15",
    **kwargs
) -> dict:
    payment = {
        "payment_id": payment_id,
        "payment_number": "PAY-0001",
        "customer_id": "460000000026049",
        "date": date,
        "amount": amount,
        "reference_number": "ch_3Abc123",
        "payment_mode": "Credit Card",
        "invoices": [{"invoice_id": invoice_id, "invoice_number": "INV-000101", "amount_applied": amount}],
    }
    payment.update(kwargs)
    return payment


def make_zoho_credit_note(
    creditnote_id: str = "460000000040001",
    creditnote_number: str = "CN-1001-501",
    total: float = 40.00,
    **kwargs
) -> dict:
    credit_note = {
        "creditnote_id": creditnote_id,
        "creditnote_number": creditnote_number,
        "customer_id": "460000000026049",
        "status": "open",
        "total": total,
        "balance": total,
    }
    credit_note.update(kwargs)
    return credit_note


# =============================================================================
# AUTH FIXTURES
# =============================================================================

ZOHO_TOKEN_RESPONSE = {
    "access_token": "1000.new_access_token",
    "api_domain": "https://www.zohoapis.com",
    "token_type": "Bearer",
    "expires_in": 3600,
}

ZOHO_GRANT_RESPONSE = {
    "access_token": "1000.granted_access_token",
    "refresh_token": "1000.granted_refresh_token",
    "api_domain": "https://www.zohoapis.com",
    "token_type": "Bearer",
    "expires_in": 3600,
}

ZOHO_TOKEN_ERROR = {"error": "invalid_code"}

ZOHO_ORGANIZATIONS = envelope(organizations=[
    {"organization_id": "60000000001", "name": "Wax Pop Ltd", "currency_code": "USD"},
])

# Error responses
ZOHO_ERROR_NOT_FOUND = {"code": 1002, "message": "Invoice does not exist."}
ZOHO_ERROR_VALIDATION = {"code": 4, "message": "Invalid value passed for customer_id"}
