"""Mock fixtures for store orders.

These fixtures provide realistic order payloads as the commerce store
exports them.
"""


# =============================================================================
# ORDER FIXTURES
# =============================================================================

def make_billing(
    email: str = "jane.doe@example.com",
    first_name: str = "Jane",
    last_name: str = "Doe",
    **kwargs
) -> dict:
    """Create a billing address block."""
    billing = {
        "first_name": first_name,
        "last_name": last_name,
        "company": "",
        "address_1": "123 High Street",
        "address_2": "Flat 2",
        "city": "London",
        "state": "Greater London",
        "postcode": "SW1A 1AA",
        "country": "GB",
        "email": email,
        "phone": "+441234567890",
    }
    billing.update(kwargs)
    return billing


def make_line_item(
    item_id: int = 1,
    name: str = "Lavender Wax Melt",
    product_id: int = 222,
    quantity: int = 2,
    subtotal: float = 40.00,
    **kwargs
) -> dict:
    """Create an order line item."""
    item = {
        "id": item_id,
        "name": name,
        "product_id": product_id,
        "sku": f"SKU-{product_id}",
        "quantity": quantity,
        "subtotal": subtotal,
        "total": subtotal,
        "total_tax": 0.0,
    }
    item.update(kwargs)
    return item


def make_order(
    order_id: int = 1001,
    number: str = "1001",
    status: str = "completed",
    currency: str = "USD",
    total: float = 100.00,
    with_shipping: bool = True,
    **kwargs
) -> dict:
    """Create a mock order payload.

    The default order has two product lines (40.00 + 50.00) and 10.00
    shipping, totalling 100.00, and was paid by Stripe.

    Args:
        order_id: Order ID
        number: Customer-facing order number
        status: Order status
        currency: Order currency
        total: Order total
        with_shipping: Whether to include a shipping address
        **kwargs: Additional fields to override

    Returns:
        Dictionary representing an order
    """
    order = {
        "id": order_id,
        "number": number,
        "status": status,
        "currency": currency,
        "date_created": "2024-01-15T10:30:00Z",
        "date_paid": "2024-01-15T10:31:00Z",
        "date_completed": "2024-01-16T09:00:00Z" if status == "completed" else None,
        "billing": make_billing(),
        "shipping": None,
        "line_items": [
            make_line_item(1, "Lavender Wax Melt", 222, 2, 40.00),
            make_line_item(2, "Rose Candle", 223, 1, 50.00),
        ],
        "fees": [],
        "shipping_total": 10.00,
        "discount_total": 0.0,
        "total_tax": 0.0,
        "total": total,
        "payment_method": "stripe",
        "payment_method_title": "Credit Card (Stripe)",
        "transaction_id": "ch_3Abc123",
        "customer_note": None,
        "refunds": [],
        "meta": {},
    }

    if with_shipping:
        order["shipping"] = {
            "first_name": "Jane",
            "last_name": "Doe",
            "address_1": "123 High Street",
            "address_2": "Flat 2",
            "city": "London",
            "state": "Greater London",
            "postcode": "SW1A 1AA",
            "country": "GB",
        }

    order.update(kwargs)
    return order


def make_refund(
    refund_id: int = 501,
    amount: float = -40.00,
    itemized: bool = True,
    **kwargs
) -> dict:
    """Create a refund payload. Amounts are negative, as the store reports them."""
    refund = {
        "id": refund_id,
        "amount": amount,
        "reason": "Damaged in transit",
        "line_items": [],
        "shipping_total": 0.0,
        "date_created": "2024-01-20T12:00:00Z",
    }
    if itemized:
        refund["line_items"] = [
            {"id": 1, "name": "Lavender Wax Melt", "quantity": -2, "total": -40.00},
        ]
    refund.update(kwargs)
    return refund


# Orders with edge-case data
ORDER_ZERO_TOTAL = make_order(
    order_id=1002,
    number="1002",
    total=0.0,
    line_items=[make_line_item(1, "Free Sample", 300, 1, 0.0)],
    shipping_total=0.0,
)

ORDER_NO_EMAIL = make_order(
    order_id=1003,
    number="1003",
    billing=make_billing(email=""),
)

ORDER_PROCESSING = make_order(
    order_id=1004,
    number="1004",
    status="processing",
)
