"""Payment application.

Records an order's payment against its Zoho invoice as a customer payment,
including gateway fees as bank charges when a deposit account is mapped.
"""

import logging
from typing import Optional, Tuple

from .config import Settings
from .constants import (
    GATEWAY_FEE_SOURCES,
    MAX_REFERENCE_LENGTH,
    STRIPE_FEE_META_KEY,
    STRIPE_NET_META_KEY,
    get_payment_mode,
    uses_order_number_reference,
)
from .models import Order, PaymentResult, ZohoInvoice
from .order_notes import OrderNoteService
from .zoho_client import RemoteApiError, ZohoBooksClient

logger = logging.getLogger(__name__)

# Invoices in these states cannot take a payment
UNPAYABLE_INVOICE_STATUSES = ("void", "draft")


def _as_float(value) -> Optional[float]:
    """Numeric meta value as float, None for empty or non-numeric values."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class PaymentService:
    """Applies order payments to Zoho invoices."""

    def __init__(
        self,
        client: ZohoBooksClient,
        settings: Settings,
        notes: Optional[OrderNoteService] = None,
    ):
        self.client = client
        self.settings = settings
        self.notes = notes

    async def apply_payment(self, order: Order, invoice_id: str, contact_id: str) -> PaymentResult:
        """Record the order's payment against its invoice.

        Zero-total orders and invoices that are already paid succeed without
        a payment. The amount applied is the smaller of the order total and
        the invoice balance.

        Args:
            order: Paid order
            invoice_id: Zoho invoice for the order
            contact_id: Zoho contact the invoice belongs to

        Returns:
            PaymentResult

        Raises:
            ZohoAPIError: Creating the payment failed
        """
        amount = order.total
        if amount <= 0:
            logger.debug(f"Skipping payment for zero amount order {order.id}")
            return PaymentResult(success=True)

        invoice, error, already_paid = await self.validate_invoice_for_payment(invoice_id)
        if invoice is None or error:
            if already_paid:
                logger.debug(f"Invoice {invoice_id} for order {order.id}: {error}")
                return PaymentResult(success=True)
            logger.warning(f"Invoice {invoice_id} cannot take payment for order {order.id}: {error}")
            return PaymentResult(success=False, error=error)

        warnings = []
        payment_amount = round(min(amount, invoice.balance), 2)
        if abs(amount - invoice.balance) > 0.01:
            message = (
                f"Payment amount mismatch: order total {amount:.2f}, invoice balance "
                f"{invoice.balance:.2f}; applying {payment_amount:.2f}"
            )
            logger.warning(f"Order {order.id}: {message}")
            warnings.append(message)

        bank_charges, fee_warning = self.get_order_bank_charges(order)
        if fee_warning:
            warnings.append(fee_warning)

        payload = self.map_order_to_payment(order, invoice_id, contact_id, payment_amount, bank_charges)

        logger.info(
            f"Applying payment of {payment_amount:.2f} {order.currency} to invoice {invoice_id} "
            f"for order {order.id} via {order.payment_method_title}"
        )
        payment = await self.client.create_customer_payment(payload)

        return PaymentResult(
            success=True,
            payment_id=payment.payment_id,
            payment_number=payment.payment_number,
            amount=payment_amount,
            warnings=warnings,
        )

    async def validate_invoice_for_payment(
        self, invoice_id: str
    ) -> Tuple[Optional[ZohoInvoice], Optional[str], bool]:
        """Check that an invoice can take a payment.

        Returns:
            Tuple of (invoice, error, already_paid)
        """
        try:
            invoice = await self.client.get_invoice(invoice_id)
        except RemoteApiError as e:
            logger.warning(f"Failed to get invoice {invoice_id}: {e}")
            return None, "Invoice not found in Zoho Books (may have been deleted)", False

        status = invoice.status or ""
        if status in UNPAYABLE_INVOICE_STATUSES:
            return invoice, f"Invoice is {status} and cannot accept payments", False
        if status == "paid":
            return invoice, "Invoice is already fully paid", True
        if invoice.balance <= 0:
            return invoice, "Invoice has no outstanding balance", True
        return invoice, None, False

    # =========================================================================
    # MAPPING
    # =========================================================================

    def map_order_to_payment(
        self,
        order: Order,
        invoice_id: str,
        contact_id: str,
        amount: float,
        bank_charges: float = 0.0,
    ) -> dict:
        """Build the customer payment body."""
        paid_on = order.date_paid or order.date_completed or order.date_created
        payment = {
            "customer_id": contact_id,
            "date": paid_on.strftime("%Y-%m-%d"),
            "amount": amount,
            "invoices": [{"invoice_id": invoice_id, "amount_applied": amount}],
        }

        if not order.payment_method_title:
            return payment

        method = order.payment_method
        payment["payment_mode"] = get_payment_mode(method, self.settings.payment_mode_mapping)
        payment["reference_number"] = self.get_payment_reference(order)
        payment["description"] = f"Payment for Order #{order.order_number} via {order.payment_method_title}"

        # Zoho only accepts bank charges together with a deposit account
        account_id = self.settings.payment_account_mapping.get(method or "")
        if account_id:
            payment["account_id"] = account_id
            if bank_charges > 0:
                payment["bank_charges"] = bank_charges
                fee_account_id = self.settings.payment_fee_account_mapping.get(method or "")
                if fee_account_id:
                    payment["bank_charges_account_id"] = fee_account_id

        return payment

    def get_payment_reference(self, order: Order) -> str:
        """Transaction ID, or the order number when the ID cannot be a Zoho reference."""
        transaction_id = order.transaction_id
        if uses_order_number_reference(order.payment_method) or (
            transaction_id and len(transaction_id) > MAX_REFERENCE_LENGTH
        ):
            if transaction_id:
                self._add_transaction_note(order)
            return order.order_number
        return transaction_id or order.order_number

    def _add_transaction_note(self, order: Order) -> None:
        if self.notes is None:
            return
        self.notes.add_transaction_note(order.id, order.transaction_id)

    # =========================================================================
    # GATEWAY FEES
    # =========================================================================

    def get_order_bank_charges(self, order: Order) -> Tuple[float, Optional[str]]:
        """Gateway fee for an order, in the order's currency.

        Fees reported in another currency are converted with the rate the
        gateway's own net and fee figures imply. When no rate can be derived
        the fee is dropped rather than booked in the wrong currency.

        Returns:
            Tuple of (fee, warning)
        """
        raw_fee = self.extract_raw_fee(order)
        if raw_fee <= 0:
            return 0.0, None

        fee_currency = self.get_fee_currency(order)
        if not fee_currency or fee_currency == order.currency.upper():
            return raw_fee, None

        rate = self.calculate_gateway_exchange_rate(order)
        if rate is None or rate <= 0:
            warning = (
                f"Bank fee of {raw_fee} {fee_currency} skipped: cannot derive an exchange "
                f"rate to {order.currency}"
            )
            logger.warning(f"Order {order.id}: {warning}")
            return 0.0, warning

        converted = round(raw_fee / rate, 2)
        logger.info(
            f"Converted bank fee for order {order.id}: {raw_fee} {fee_currency} -> "
            f"{converted} {order.currency} (rate {rate})"
        )
        return converted, None

    @staticmethod
    def extract_raw_fee(order: Order) -> float:
        for source in GATEWAY_FEE_SOURCES:
            fee = _as_float(order.get_meta(source.fee_key))
            if fee and fee > 0:
                return round(fee, 2)
        return 0.0

    @staticmethod
    def get_fee_currency(order: Order) -> Optional[str]:
        for source in GATEWAY_FEE_SOURCES:
            if source.currency_key and order.get_meta(source.currency_key):
                return str(order.get_meta(source.currency_key)).upper()
        return None

    @staticmethod
    def calculate_gateway_exchange_rate(order: Order) -> Optional[float]:
        """Gateway currency units per order currency unit, from Stripe's net + fee."""
        if order.total <= 0:
            return None

        net = _as_float(order.get_meta(STRIPE_NET_META_KEY))
        if not net:
            return None
        fee = _as_float(order.get_meta(STRIPE_FEE_META_KEY)) or 0.0

        gateway_total = net + fee
        if gateway_total <= 0:
            return None
        return gateway_total / order.total
