"""Human-readable audit notes attached to orders."""

import logging
from typing import Optional

from .database import Database
from .models import Order, SyncStatus, utcnow

logger = logging.getLogger(__name__)

APP_NAME = "Zoho Books Order Sync"

WEB_DOMAINS = {
    "us": "books.zoho.com",
    "eu": "books.zoho.eu",
    "in": "books.zoho.in",
    "au": "books.zoho.com.au",
    "jp": "books.zoho.jp",
    "cn": "books.zoho.com.cn",
}

WEB_PATHS = {
    "invoice": "invoices",
    "payment": "customerpayments",
    "creditnote": "creditnotes",
    "contact": "contacts",
}


def zoho_web_url(datacenter: str, entity_type: str, entity_id: str) -> str:
    """Link to an entity in the Zoho Books web app.

    Example:
        >>> zoho_web_url("eu", "invoice", "123")
        'https://books.zoho.eu/app#/invoices/123'
    """
    domain = WEB_DOMAINS.get(datacenter, WEB_DOMAINS["us"])
    path = WEB_PATHS.get(entity_type, entity_type)
    return f"https://{domain}/app#/{path}/{entity_id}"


def generate_sync_comment(order: Order, context: str = "sync") -> str:
    """Comment stored on Zoho documents to record where they came from."""
    timestamp = utcnow().strftime("%Y-%m-%d %H:%M:%S UTC")
    return f"Synced {context} for order #{order.order_number} via {APP_NAME} on {timestamp}"


class OrderNoteService:
    """Appends sync notes to an order's audit trail."""

    def __init__(self, db: Database, datacenter: str = "us"):
        self.db = db
        self.datacenter = datacenter

    def _add(self, order_id: str, note: str) -> None:
        self.db.add_order_note(order_id, note)
        logger.debug(f"Order {order_id} note: {note}")

    def _link(self, entity_type: str, entity_id: str) -> str:
        return f"{entity_id} ({zoho_web_url(self.datacenter, entity_type, entity_id)})"

    def add_invoice_created_note(self, order_id: str, invoice_id: str, status: SyncStatus) -> None:
        suffix = " (draft)" if status == SyncStatus.DRAFT else ""
        self._add(order_id, f"Order synced to Zoho Books: Invoice {self._link('invoice', invoice_id)}{suffix}")

    def add_invoice_linked_note(self, order_id: str, invoice_id: str) -> None:
        self._add(order_id, f"Order linked to existing Zoho Books invoice: {self._link('invoice', invoice_id)}")

    def add_payment_applied_note(self, order_id: str, payment_id: str, invoice_id: str) -> None:
        self._add(
            order_id,
            f"Payment recorded in Zoho Books: {self._link('payment', payment_id)} "
            f"for Invoice {invoice_id} (paid)",
        )

    def add_credit_note_created_note(
        self,
        order_id: str,
        credit_note_id: str,
        amount: float,
        currency: str,
        refund_id: Optional[str] = None,
    ) -> None:
        suffix = " (refunded)" if refund_id else ""
        self._add(
            order_id,
            f"Credit note created in Zoho Books: {self._link('creditnote', credit_note_id)} "
            f"for {amount:.2f} {currency}{suffix}",
        )

    def add_transaction_note(self, order_id: str, transaction_id: str) -> None:
        """Keep a transaction hash too long for a Zoho reference on the order, once."""
        note = f"Payment transaction ID: {transaction_id}"
        if any(n.note == note for n in self.db.get_order_notes(order_id)):
            return
        self._add(order_id, note)

    def add_sync_failed_note(self, order_id: str, error: str) -> None:
        self._add(order_id, f"Zoho Books sync failed: {error}")
