"""Constants and mappings for the Zoho Books order sync.

This file contains the lookup tables that may need to be adapted for a
specific store, such as payment method to Zoho payment mode mappings and
the order meta keys payment gateways use to report their fees.
"""

from typing import NamedTuple, Optional


# =============================================================================
# ZOHO REGIONS
# =============================================================================
# Zoho runs isolated data centers; an organization only exists in one.

DATACENTERS: dict[str, str] = {
    "us": "https://www.zohoapis.com",
    "eu": "https://www.zohoapis.eu",
    "in": "https://www.zohoapis.in",
    "au": "https://www.zohoapis.com.au",
    "jp": "https://www.zohoapis.jp",
    "cn": "https://www.zohoapis.com.cn",
}


# =============================================================================
# API LIMITS AND TOKEN LIFETIME
# =============================================================================

RATE_LIMIT_PER_MINUTE = 100
RATE_WINDOW_SECONDS = 60
RATE_LIMIT_WAIT_SECONDS = 30

# Zoho does not always return expires_in, so a conservative lifetime is assumed
ACCESS_TOKEN_LIFETIME_SECONDS = 3600
TOKEN_REFRESH_MARGIN_SECONDS = 300

REQUEST_TIMEOUT_SECONDS = 30.0

# Zoho caps reference_number at 50 characters
MAX_REFERENCE_LENGTH = 50


# =============================================================================
# RETRY POLICY
# =============================================================================

RETRY_MODE_MAX_RETRIES = "max_retries"
RETRY_MODE_INDEFINITE = "indefinite"
RETRY_MODE_MANUAL = "manual"
RETRY_MODES = (RETRY_MODE_MAX_RETRIES, RETRY_MODE_INDEFINITE, RETRY_MODE_MANUAL)

# Keeps 2 ** retry_count finite before the delay cap is applied
MAX_BACKOFF_EXPONENT = 32


# =============================================================================
# RECONCILIATION
# =============================================================================

RECONCILIATION_FREQUENCIES = ("daily", "weekly", "monthly")
RECONCILIATION_INVOICE_PAGE_LIMIT = 100
RECONCILIATION_PAYMENT_PAGE_LIMIT = 5
RECONCILIATION_PAGE_SIZE = 200

# Local order status -> remote invoice statuses considered aligned
ORDER_INVOICE_STATUS_MAP: dict[str, tuple] = {
    "completed": ("paid", "partially_paid"),
    "processing": ("draft", "sent", "overdue"),
    "refunded": ("void",),
}

# Orders in these statuses have always passed through a sync trigger
ALWAYS_SYNCED_STATUSES = ("completed", "refunded")

# Order statuses the commerce store treats as paid
PAID_ORDER_STATUSES = ("processing", "completed")


# =============================================================================
# PAYMENT MODES
# =============================================================================

class GatewayFeeSource(NamedTuple):
    """Where a payment gateway stores its fee and processing currency."""
    fee_key: str
    currency_key: Optional[str]
    description: str


DEFAULT_PAYMENT_MODE = "Others"

PAYMENT_MODE_MAPPING: dict[str, str] = {
    "paypal": "PayPal",
    "stripe": "Credit Card",
    "stripe_cc": "Credit Card",
    "bacs": "Bank Transfer",
    "cheque": "Check",
    "cod": "Cash",
    "square": "Credit Card",
    "braintree": "Credit Card",
    "amazon_payments_advanced": "Amazon Pay",
}

REFUND_MODE_MAPPING: dict[str, str] = {
    "paypal": "PayPal",
    "stripe": "Credit Card",
    "stripe_cc": "Credit Card",
    "bacs": "Bank Transfer",
    "cheque": "Check",
    "cod": "Cash",
}

# Crypto gateways report 64 character transaction hashes, too long for a
# Zoho reference number; the order number is used instead.
LONG_TRANSACTION_ID_METHODS = (
    "bitcoin",
    "btc",
    "btcpay",
    "btcpay_greenfield",
    "coinbase",
    "coinbase_commerce",
    "bitpay",
    "opennode",
)

# Checked in order; the first positive numeric value wins
GATEWAY_FEE_SOURCES: tuple = (
    GatewayFeeSource("_stripe_fee", "_stripe_currency", "Stripe"),
    GatewayFeeSource("_paypal_fee", "_paypal_currency", "PayPal"),
    GatewayFeeSource("_paypal_transaction_fee", "_paypal_currency", "PayPal (alternative)"),
    GatewayFeeSource("_wcpay_transaction_fee", "_wcpay_currency", "WooCommerce Payments"),
    GatewayFeeSource("_square_fee", None, "Square"),
    GatewayFeeSource("_payment_gateway_fee", None, "Generic"),
    GatewayFeeSource("_transaction_fee", None, "Generic"),
)

# Net amount the gateway settled, in its processing currency
STRIPE_NET_META_KEY = "_stripe_net"
STRIPE_FEE_META_KEY = "_stripe_fee"


def get_payment_mode(method: Optional[str], overrides: Optional[dict] = None) -> str:
    """Get the Zoho payment mode for a payment method slug.

    Configured overrides win over the built-in table; unknown methods map
    to "Others".

    Args:
        method: Payment method slug (e.g. "stripe")
        overrides: Configured method -> mode mapping

    Returns:
        Zoho payment mode name

    Example:
        >>> get_payment_mode("bacs")
        'Bank Transfer'
    """
    if not method:
        return DEFAULT_PAYMENT_MODE
    if overrides and overrides.get(method):
        return overrides[method]
    return PAYMENT_MODE_MAPPING.get(method, DEFAULT_PAYMENT_MODE)


def get_refund_mode(method: Optional[str]) -> str:
    """Get the Zoho refund mode for a payment method slug."""
    if not method:
        return DEFAULT_PAYMENT_MODE
    return REFUND_MODE_MAPPING.get(method, DEFAULT_PAYMENT_MODE)


def uses_order_number_reference(method: Optional[str]) -> bool:
    """Check whether a payment method needs the order number as reference."""
    return bool(method) and method in LONG_TRANSACTION_ID_METHODS
