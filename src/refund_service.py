"""Refund workflow: credit note, credit application and cash refund.

Only the credit note has to succeed. Applying it to the invoice and
recording the money paid back are best-effort steps whose failures are
returned as warnings.
"""

import logging
from typing import List, Optional

from .config import Settings
from .constants import get_refund_mode
from .models import Order, OrderRefund, RefundResult, utcnow
from .zoho_client import ZohoAPIError, ZohoBooksClient

logger = logging.getLogger(__name__)


class RefundService:
    """Pushes order refunds to Zoho as credit notes."""

    def __init__(self, client: ZohoBooksClient, settings: Settings):
        self.client = client
        self.settings = settings

    async def process_refund(
        self,
        order: Order,
        refund: OrderRefund,
        invoice_id: str,
        contact_id: str,
    ) -> RefundResult:
        """Create a credit note for a refund and apply it to the invoice.

        Args:
            order: Refunded order
            refund: The refund to push
            invoice_id: Zoho invoice of the order
            contact_id: Zoho contact of the order

        Returns:
            RefundResult; a zero-amount refund succeeds without a credit note

        Raises:
            ZohoAPIError: Creating the credit note failed
        """
        amount = refund.total
        logger.info(f"Processing refund {refund.id} of {amount:.2f} for order {order.id}")

        if amount <= 0:
            logger.debug(f"Skipping zero amount refund {refund.id}")
            return RefundResult(success=True)

        payload = self.map_refund_to_credit_note(order, refund, contact_id)
        credit_note = await self.client.create_credit_note(payload)
        if not credit_note.creditnote_id:
            return RefundResult(success=False, error="Failed to create credit note")

        warnings: List[str] = []
        if not await self.apply_credit_to_invoice(credit_note.creditnote_id, invoice_id, amount):
            warnings.append(f"Credit note {credit_note.creditnote_id} could not be applied to invoice {invoice_id}")

        zoho_refund_id = None
        if self.settings.refund_create_cash_refund:
            zoho_refund_id = await self.create_refund_from_credit(credit_note.creditnote_id, amount, order)
            if zoho_refund_id is None:
                warnings.append(f"Cash refund could not be recorded for credit note {credit_note.creditnote_id}")
        else:
            logger.debug(f"Cash refund disabled, credit note {credit_note.creditnote_id} left as credit")

        logger.info(
            f"Refund {refund.id} for order {order.id} synced as credit note "
            f"{credit_note.creditnote_id} (refund {zoho_refund_id})"
        )
        return RefundResult(
            success=True,
            credit_note_id=credit_note.creditnote_id,
            credit_note_number=credit_note.creditnote_number,
            refund_id=zoho_refund_id,
            warnings=warnings,
        )

    # =========================================================================
    # MAPPING
    # =========================================================================

    def map_refund_to_credit_note(self, order: Order, refund: OrderRefund, contact_id: str) -> dict:
        reason = refund.reason or "Refund"
        refunded_on = refund.date_created or utcnow()
        credit_note = {
            "customer_id": contact_id,
            "creditnote_number": f"CN-{order.order_number}-{refund.id}",
            "reference_number": f"Refund for Order #{order.order_number}",
            "date": refunded_on.strftime("%Y-%m-%d"),
            "notes": reason,
        }
        if refund.line_items:
            credit_note["line_items"] = self.map_refund_items(refund)
        else:
            credit_note["line_items"] = [{
                "name": f"Refund for Order #{order.order_number}",
                "description": reason,
                "quantity": 1,
                "rate": refund.total,
            }]
        return credit_note

    @staticmethod
    def map_refund_items(refund: OrderRefund) -> List[dict]:
        """Credit note lines for an itemized refund (quantities arrive negative)."""
        line_items = []
        for item in refund.line_items:
            quantity = abs(item.quantity)
            if quantity <= 0:
                continue
            line_items.append({
                "name": item.name,
                "quantity": quantity,
                "rate": round(abs(item.total) / quantity, 2),
            })

        shipping_total = abs(refund.shipping_total)
        if shipping_total > 0:
            line_items.append({"name": "Shipping Refund", "quantity": 1, "rate": shipping_total})

        if not line_items:
            line_items.append({"name": "Refund", "quantity": 1, "rate": refund.total})
        return line_items

    # =========================================================================
    # BEST-EFFORT STEPS
    # =========================================================================

    async def apply_credit_to_invoice(self, credit_note_id: str, invoice_id: str, amount: float) -> bool:
        """Apply a credit note to an invoice.

        Which endpoint is permitted depends on the organization, so the
        credit note side is tried first and the invoice side second.
        """
        try:
            await self.client.apply_credit_note_to_invoice(credit_note_id, invoice_id, amount)
            logger.info(f"Applied credit note {credit_note_id} to invoice {invoice_id}")
            return True
        except ZohoAPIError as e:
            logger.debug(f"Applying credit note {credit_note_id} via credit note failed: {e}")

        try:
            await self.client.apply_credits_to_invoice(invoice_id, credit_note_id, amount)
            logger.info(f"Applied credit note {credit_note_id} to invoice {invoice_id} via invoice credits")
            return True
        except ZohoAPIError as e:
            logger.warning(f"Failed to apply credit note {credit_note_id} to invoice {invoice_id}: {e}")
            return False

    async def create_refund_from_credit(self, credit_note_id: str, amount: float, order: Order) -> Optional[str]:
        """Record the money paid back against a credit note."""
        payload = {
            "date": utcnow().strftime("%Y-%m-%d"),
            "refund_mode": get_refund_mode(order.payment_method),
            "amount": amount,
            "description": f"Refund for Order #{order.order_number}",
        }
        if self.settings.refund_account_id:
            payload["from_account_id"] = self.settings.refund_account_id

        try:
            refund = await self.client.create_credit_note_refund(credit_note_id, payload)
            return refund.creditnote_refund_id
        except ZohoAPIError as e:
            logger.warning(f"Failed to create refund for credit note {credit_note_id}: {e}")
            return None
