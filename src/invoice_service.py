"""Invoice mapping and duplicate detection.

Maps orders to Zoho invoice bodies and creates invoices, reusing an invoice
that already carries the order number when it belongs to the same contact.
"""

import logging
from typing import List, Optional

from .config import Settings
from .models import Order, SyncResult, SyncStatus, ZohoInvoice
from .order_notes import generate_sync_comment
from .zoho_client import ZohoAPIError, ZohoBooksClient

logger = logging.getLogger(__name__)


class InvoiceService:
    """Creates Zoho invoices for orders."""

    def __init__(self, client: ZohoBooksClient, settings: Settings):
        self.client = client
        self.settings = settings

    # =========================================================================
    # DUPLICATE DETECTION
    # =========================================================================

    async def find_invoice_by_order_number(self, order_number: str) -> Optional[ZohoInvoice]:
        """Find an invoice created for an order number.

        The reference number is checked first, then the invoice number, so
        invoices created under either numbering policy are found.
        """
        invoice = await self.client.find_invoice_by_reference(order_number)
        if invoice is not None:
            return invoice
        return await self.client.find_invoice_by_number(order_number)

    # =========================================================================
    # CREATE
    # =========================================================================

    async def create_invoice(self, order: Order, contact_id: str, as_draft: bool = False) -> SyncResult:
        """Create the invoice for an order, or reuse a matching one.

        Args:
            order: Order to invoice
            contact_id: Resolved Zoho contact
            as_draft: Leave the invoice as a draft instead of marking it sent

        Returns:
            Successful SyncResult; ``warnings`` lists best-effort steps that failed

        Raises:
            ZohoAPIError: Lookup or creation failed
        """
        order_number = order.order_number

        existing = await self.find_invoice_by_order_number(order_number)
        if existing is not None:
            # List results can omit customer_id, so load the full invoice
            full = await self.client.get_invoice(existing.invoice_id)
            if full.customer_id == contact_id:
                logger.info(f"Invoice {full.invoice_id} already exists for order {order.id}")
                return SyncResult.ok(
                    invoice_id=full.invoice_id,
                    contact_id=contact_id,
                    status=SyncStatus.SYNCED,
                    data={"invoice_number": full.invoice_number, "existing": True},
                )
            logger.warning(
                f"Invoice {full.invoice_id} for order number {order_number} belongs to "
                f"customer {full.customer_id}, not {contact_id}; creating a new invoice"
            )

        payload = self.map_order_to_invoice(order, contact_id)
        send_email = self.settings.invoice_send_email
        logger.info(
            f"Creating invoice for order {order.id} (#{order_number}): "
            f"{order.total} {order.currency}, draft={as_draft}"
        )

        invoice = await self.client.create_invoice(payload, send=send_email)

        warnings: List[str] = []
        marked_as_sent = False
        if not as_draft and self.settings.invoice_mark_as_sent:
            marked_as_sent = await self.mark_as_sent(invoice.invoice_id)
            if not marked_as_sent:
                warnings.append("Failed to mark invoice as sent")

        status = SyncStatus.DRAFT if as_draft else SyncStatus.SYNCED
        logger.info(f"Invoice {invoice.invoice_id} created for order {order.id} ({status.value})")

        return SyncResult.ok(
            invoice_id=invoice.invoice_id,
            contact_id=contact_id,
            status=status,
            data={
                "invoice_number": invoice.invoice_number,
                "invoice_status": invoice.status,
                "marked_as_sent": marked_as_sent,
                "email_sent": send_email,
            },
            warnings=warnings,
        )

    async def mark_as_sent(self, invoice_id: str) -> bool:
        """Mark an invoice as sent. Failures are logged and return False."""
        try:
            await self.client.mark_invoice_sent(invoice_id)
            logger.debug(f"Invoice {invoice_id} marked as sent")
            return True
        except ZohoAPIError as e:
            logger.warning(f"Failed to mark invoice {invoice_id} as sent: {e}")
            return False

    # =========================================================================
    # MAPPING
    # =========================================================================

    def map_order_to_invoice(self, order: Order, contact_id: str) -> dict:
        """Build the Zoho invoice body for an order."""
        order_number = order.order_number
        invoice = {
            "customer_id": contact_id,
            "date": order.date_created.strftime("%Y-%m-%d"),
            "line_items": self.map_line_items(order),
            # Always stored for lookup, whatever the numbering policy
            "reference_number": order_number,
        }

        if not self.settings.invoice_use_reference_number:
            invoice["invoice_number"] = order_number

        if order.shipping_total > 0:
            invoice["shipping_charge"] = order.shipping_total
            if self.settings.shipping_account_id:
                invoice["shipping_charge_account_id"] = self.settings.shipping_account_id

        if order.discount_total > 0:
            invoice["discount"] = order.discount_total
            invoice["discount_type"] = "entity_level"
            invoice["is_discount_before_tax"] = True

        if order.currency:
            invoice["currency_code"] = order.currency

        sync_comment = generate_sync_comment(order, "invoice")
        if order.customer_note:
            invoice["notes"] = f"{order.customer_note}\n\n{sync_comment}"
        else:
            invoice["notes"] = sync_comment

        return invoice

    def map_line_items(self, order: Order) -> List[dict]:
        line_items = []
        for item in order.line_items:
            if item.quantity <= 0:
                continue

            line_item = {
                "name": item.name,
                "quantity": item.quantity,
                "rate": round(item.subtotal / item.quantity, 2),
            }
            if item.description:
                line_item["description"] = item.description

            # "0" is a valid item ID, so only None and "" mean unmapped
            zoho_item_id = self.settings.item_mappings.get(item.product_id) if item.product_id else None
            if zoho_item_id is not None and zoho_item_id != "":
                line_item["item_id"] = zoho_item_id

            line_items.append(line_item)

        for fee in order.fees:
            line_items.append({
                "name": fee.name,
                "quantity": 1,
                "rate": fee.total,
            })

        return line_items
