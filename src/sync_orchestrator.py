"""Per-order sync orchestration.

Drives each order through UNSYNCED -> PENDING -> SYNCED/DRAFT/FAILED and
owns the follow-up workflows (payment, refunds, conflict linking). Every
entry point returns a result object; remote failures are persisted on the
order's checkpoint instead of being raised to the caller.
"""

import asyncio
import logging
import weakref
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from .config import Settings
from .customer_service import CustomerService
from .database import Database
from .invoice_service import InvoiceService
from .models import (
    ConflictReport,
    Order,
    OrderRefund,
    PaymentResult,
    RefundMapping,
    RefundResult,
    SyncResult,
    SyncStatus,
    utcnow,
)
from .order_notes import OrderNoteService
from .payment_service import PaymentService
from .refund_service import RefundService

logger = logging.getLogger(__name__)

EVENT_ORDER_SYNCED = "order_synced"
EVENT_ORDER_SYNC_FAILED = "order_sync_failed"
EVENT_PAYMENT_APPLIED = "payment_applied"
EVENT_REFUND_PROCESSED = "refund_processed"
EVENTS = (EVENT_ORDER_SYNCED, EVENT_ORDER_SYNC_FAILED, EVENT_PAYMENT_APPLIED, EVENT_REFUND_PROCESSED)

EventHandler = Callable[[dict], None]


@dataclass
class BulkSyncStats:
    """Outcome of syncing a list of orders."""
    success: int = 0
    failed: int = 0
    results: Dict[str, dict] = field(default_factory=dict)

    @property
    def total_processed(self) -> int:
        return self.success + self.failed


def _error_message(error: Exception) -> str:
    return str(error) or type(error).__name__


class SyncOrchestrator:
    """Coordinates contact, invoice, payment and refund sync for orders.

    Calls for the same order are serialized with a per-order lock; the
    checkpoint checks (existing invoice, payment or refund mapping) make
    repeated calls no-ops.
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        customers: CustomerService,
        invoices: InvoiceService,
        payments: Optional[PaymentService] = None,
        refunds: Optional[RefundService] = None,
        notes: Optional[OrderNoteService] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.settings = settings
        self.db = db
        self.customers = customers
        self.invoices = invoices
        self.payments = payments
        self.refunds = refunds
        self.notes = notes or OrderNoteService(db, settings.zoho_datacenter)
        self._sleep = sleep
        # Held only while a sync on the order is running or waiting
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._handlers: Dict[str, List[EventHandler]] = defaultdict(list)

    # =========================================================================
    # EVENTS
    # =========================================================================

    def on(self, event: str, handler: EventHandler) -> None:
        """Register a handler called with the event payload."""
        if event not in EVENTS:
            raise ValueError(f"Unknown event {event!r}, expected one of {EVENTS}")
        self._handlers[event].append(handler)

    def _emit(self, event: str, payload: dict) -> None:
        for handler in self._handlers.get(event, []):
            try:
                handler(payload)
            except Exception as e:
                # A listener must not turn a finished sync into a failure
                logger.error(f"Handler for {event} failed: {e}", extra={"order_id": payload.get("order_id")})

    def _lock(self, order_id: str) -> asyncio.Lock:
        lock = self._locks.get(order_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[order_id] = lock
        return lock

    # =========================================================================
    # INVOICE SYNC
    # =========================================================================

    def should_create_as_draft(self, order: Order) -> bool:
        """Draft/submit decision from the current trigger configuration.

        Statuses matching neither trigger are synced as drafts.
        """
        if self.settings.sync_trigger_draft and order.status == self.settings.sync_trigger_draft:
            return True
        if self.settings.sync_trigger_submit and order.status == self.settings.sync_trigger_submit:
            return False
        return True

    async def sync_order(self, order: Order, as_draft: bool = False) -> SyncResult:
        """Sync an order to a Zoho invoice.

        An order that already has an invoice is returned as-is without any
        remote call.

        Args:
            order: Order to sync
            as_draft: Leave the invoice as a draft

        Returns:
            SyncResult; failures are persisted on the checkpoint, never raised
        """
        async with self._lock(order.id):
            return await self._sync_order(order, as_draft)

    async def _sync_order(self, order: Order, as_draft: bool) -> SyncResult:
        state = self.db.get_sync_state(order.id)
        if state.invoice_id:
            logger.debug(f"Order {order.id} already synced to invoice {state.invoice_id}")
            return SyncResult.ok(
                invoice_id=state.invoice_id,
                contact_id=state.contact_id,
                status=state.status,
                data={"invoice_number": state.invoice_number, "already_synced": True},
            )

        self.db.update_sync_state(order.id, status=SyncStatus.PENDING, last_sync_attempt=utcnow())
        logger.info(f"Syncing order {order.id} (#{order.order_number}), draft={as_draft}")

        try:
            contact_name = state.contact_name
            if state.contact_id:
                contact_id = state.contact_id
                if not contact_name:
                    contact_name = await self.customers.get_contact_name(contact_id)
            else:
                contact = await self.customers.find_or_create_contact(order)
                contact_id = contact.contact_id
                contact_name = contact.display_name

            result = await self.invoices.create_invoice(order, contact_id, as_draft)

            self.db.update_sync_state(
                order.id,
                status=result.status,
                invoice_id=result.invoice_id,
                invoice_number=result.data.get("invoice_number"),
                invoice_status=result.data.get("invoice_status"),
                contact_id=contact_id,
                contact_name=contact_name,
                last_error=None,
            )
        except Exception as e:
            return self._record_failure(order, e)

        for warning in result.warnings:
            logger.warning(f"Order {order.id}: {warning}")

        self.notes.add_invoice_created_note(order.id, result.invoice_id, result.status)
        self._emit(EVENT_ORDER_SYNCED, {
            "order_id": order.id,
            "invoice_id": result.invoice_id,
            "contact_id": contact_id,
            "status": result.status.value,
        })
        logger.info(f"Order {order.id} synced to invoice {result.invoice_id} ({result.status.value})")
        return result

    def _record_failure(self, order: Order, error: Exception) -> SyncResult:
        message = _error_message(error)
        logger.error(
            f"Sync failed for order {order.id}: {message}",
            extra={"order_id": order.id, "error_type": type(error).__name__},
        )
        self.db.update_sync_state(order.id, status=SyncStatus.FAILED, last_error=message)
        self.notes.add_sync_failed_note(order.id, message)
        self._emit(EVENT_ORDER_SYNC_FAILED, {"order_id": order.id, "error": message})
        return SyncResult.failure(message)

    async def retry_sync(self, order: Order) -> SyncResult:
        """Retry a failed order with the current draft/submit decision."""
        async with self._lock(order.id):
            state = self.db.get_sync_state(order.id)
            self.db.update_sync_state(order.id, last_error=None, retry_count=state.retry_count + 1)
            as_draft = self.should_create_as_draft(order)
            logger.info(f"Retrying order {order.id} (attempt {state.retry_count + 1}), draft={as_draft}")
            return await self._sync_order(order, as_draft)

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    async def detect_conflicts(self, order: Order) -> ConflictReport:
        """Check what already exists in Zoho for an order without changing anything.

        Raises:
            ZohoAPIError: A lookup failed
        """
        report = ConflictReport(order_currency=order.currency)

        invoice = await self.invoices.find_invoice_by_order_number(order.order_number)
        if invoice is not None:
            report.has_conflict = True
            report.invoice_exists = True
            report.invoice_id = invoice.invoice_id

        if order.billing_email:
            contact = await self.customers.get_contact_by_email(order.billing_email)
            if contact is not None:
                report.contact_exists = True
                report.contact_id = contact.contact_id
                if not self.customers.is_currency_compatible(contact, order):
                    report.has_conflict = True
                    report.currency_mismatch = True
                    report.contact_currency = contact.currency_code

        return report

    async def sync_order_with_conflict_check(self, order: Order, as_draft: bool = False) -> SyncResult:
        """Sync an order, linking an existing Zoho invoice instead of duplicating it."""
        async with self._lock(order.id):
            state = self.db.get_sync_state(order.id)
            if state.invoice_id:
                return SyncResult.ok(
                    invoice_id=state.invoice_id,
                    contact_id=state.contact_id,
                    status=state.status,
                    data={"invoice_number": state.invoice_number, "already_synced": True},
                )

            try:
                conflicts = await self.detect_conflicts(order)
            except Exception as e:
                return self._record_failure(order, e)

            if not conflicts.invoice_id:
                return await self._sync_order(order, as_draft)

            logger.info(f"Linking order {order.id} to existing invoice {conflicts.invoice_id}")
            self.db.update_sync_state(
                order.id,
                status=SyncStatus.SYNCED,
                invoice_id=conflicts.invoice_id,
                contact_id=conflicts.contact_id,
                last_sync_attempt=utcnow(),
                last_error=None,
            )
            self.notes.add_invoice_linked_note(order.id, conflicts.invoice_id)
            return SyncResult.ok(
                invoice_id=conflicts.invoice_id,
                contact_id=conflicts.contact_id,
                status=SyncStatus.SYNCED,
                data={"conflict_resolved": True, "linked_existing": True},
            )

    # =========================================================================
    # PAYMENTS
    # =========================================================================

    async def apply_payment(self, order: Order) -> PaymentResult:
        """Record the order's payment against its invoice, once."""
        async with self._lock(order.id):
            return await self._apply_payment(order)

    async def _apply_payment(self, order: Order) -> PaymentResult:
        if self.payments is None:
            return PaymentResult(success=False, error="Payment service not configured")

        state = self.db.get_sync_state(order.id)
        if not state.invoice_id:
            return PaymentResult(success=False, error="Order has not been synced to Zoho Books")
        if state.payment_id:
            logger.debug(f"Order {order.id} already has payment {state.payment_id}")
            return PaymentResult(success=True, payment_id=state.payment_id, payment_number=state.payment_number)

        try:
            result = await self.payments.apply_payment(order, state.invoice_id, state.contact_id)
        except Exception as e:
            message = _error_message(e)
            logger.error(
                f"Payment failed for order {order.id}: {message}",
                extra={"order_id": order.id, "invoice_id": state.invoice_id},
            )
            return PaymentResult(success=False, error=message)

        if result.success and result.payment_id:
            self.db.update_sync_state(
                order.id,
                payment_id=result.payment_id,
                payment_number=result.payment_number,
            )
            self.notes.add_payment_applied_note(order.id, result.payment_id, state.invoice_id)
            self._emit(EVENT_PAYMENT_APPLIED, {
                "order_id": order.id,
                "invoice_id": state.invoice_id,
                "payment_id": result.payment_id,
                "amount": result.amount,
            })
        return result

    async def sync_order_with_payment(self, order: Order, as_draft: bool = False) -> SyncResult:
        """Sync an order and, for a submitted invoice of a paid order, apply its payment.

        A payment failure does not fail the sync; it is listed in ``warnings``.
        """
        async with self._lock(order.id):
            result = await self._sync_order(order, as_draft)
            if not result.success or as_draft or result.status == SyncStatus.DRAFT or not order.is_paid:
                return result

            payment = await self._apply_payment(order)
            if payment.success and payment.payment_id:
                result.data["payment_id"] = payment.payment_id
            elif not payment.success:
                result.warnings.append(f"Payment not applied: {payment.error}")
            result.warnings.extend(payment.warnings)
            return result

    # =========================================================================
    # REFUNDS
    # =========================================================================

    async def process_refund(self, order: Order, refund: OrderRefund) -> RefundResult:
        """Push a refund as a credit note, once per local refund."""
        async with self._lock(order.id):
            return await self._process_refund(order, refund)

    async def _process_refund(self, order: Order, refund: OrderRefund) -> RefundResult:
        if self.refunds is None:
            return RefundResult(success=False, error="Refund service not configured")

        state = self.db.get_sync_state(order.id)
        if not state.invoice_id:
            return RefundResult(success=False, error="Order has not been synced to Zoho Books")

        mapping = state.find_refund(refund.id)
        if mapping is not None:
            logger.debug(f"Refund {refund.id} of order {order.id} already synced")
            return RefundResult(
                success=True,
                credit_note_id=mapping.remote_credit_note_id,
                credit_note_number=mapping.credit_note_number,
                refund_id=mapping.remote_refund_id,
            )

        try:
            result = await self.refunds.process_refund(order, refund, state.invoice_id, state.contact_id)
        except Exception as e:
            message = _error_message(e)
            logger.error(
                f"Refund {refund.id} failed for order {order.id}: {message}",
                extra={"order_id": order.id, "refund_id": refund.id},
            )
            return RefundResult(success=False, error=message)

        if result.success and result.credit_note_id:
            self.db.add_refund_mapping(order.id, RefundMapping(
                local_refund_id=refund.id,
                remote_refund_id=result.refund_id,
                remote_credit_note_id=result.credit_note_id,
                credit_note_number=result.credit_note_number,
                created_at=utcnow(),
            ))
            self.notes.add_credit_note_created_note(
                order.id, result.credit_note_id, refund.total, order.currency, result.refund_id
            )
            self._emit(EVENT_REFUND_PROCESSED, {
                "order_id": order.id,
                "refund_id": refund.id,
                "credit_note_id": result.credit_note_id,
                "amount": refund.total,
            })
        for warning in result.warnings:
            logger.warning(f"Order {order.id} refund {refund.id}: {warning}")
        return result

    async def process_order_refunds(self, order: Order) -> List[RefundResult]:
        """Push every refund on an order; already synced refunds are skipped."""
        results = []
        async with self._lock(order.id):
            for refund in order.refunds:
                results.append(await self._process_refund(order, refund))
        return results

    # =========================================================================
    # BULK
    # =========================================================================

    async def sync_orders(self, order_ids: List[str]) -> BulkSyncStats:
        """Sync stored orders one at a time.

        Each order gets the draft/submit decision from its own status; paid
        orders synced as submitted invoices also get their payment applied.
        """
        stats = BulkSyncStats()
        logger.info(f"Starting bulk sync of {len(order_ids)} orders")

        for index, order_id in enumerate(order_ids):
            order = self.db.get_order(order_id)
            if order is None:
                stats.failed += 1
                stats.results[order_id] = {"success": False, "error": "Order not found"}
                continue

            as_draft = self.should_create_as_draft(order)
            result = await self.sync_order(order, as_draft)
            entry = result.to_dict()

            if result.success and not as_draft and order.is_paid:
                payment = await self.apply_payment(order)
                if not payment.success and payment.error:
                    logger.warning(f"Payment failed during bulk sync of order {order_id}: {payment.error}")
                entry["payment"] = {
                    "success": payment.success,
                    "payment_id": payment.payment_id,
                    "error": payment.error,
                }

            if result.success:
                stats.success += 1
            else:
                stats.failed += 1
            stats.results[order_id] = entry

            if index < len(order_ids) - 1 and self.settings.bulk_sync_delay > 0:
                await self._sleep(self.settings.bulk_sync_delay)

        logger.info(f"Bulk sync completed: {stats.success} succeeded, {stats.failed} failed")
        return stats
