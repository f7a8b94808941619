"""Reconciliation of local orders against Zoho Books invoices.

Remote invoices and payments for the period are loaded in pages and
indexed once; local orders are then compared against the index, and
invoices nobody claimed are reported as orphans. No per-order remote
lookups are made.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import Dict, List, Optional, Tuple

from .config import Settings
from .constants import (
    ALWAYS_SYNCED_STATUSES,
    RECONCILIATION_INVOICE_PAGE_LIMIT,
    RECONCILIATION_PAGE_SIZE,
    RECONCILIATION_PAYMENT_PAGE_LIMIT,
)
from .database import Database, period_bounds
from .models import (
    AmountMismatch,
    BreakdownComponent,
    MissingInLocal,
    MissingInRemote,
    Order,
    PaymentMismatch,
    ReconciliationReport,
    RefundMismatch,
    StatusMismatch,
    SyncStatus,
    ZohoInvoice,
    ZohoPayment,
    utcnow,
)
from .zoho_client import NotConfiguredError, ZohoBooksClient

logger = logging.getLogger(__name__)

# Remote invoice statuses a completed order's invoice is expected to have
PAID_INVOICE_STATUSES = ("paid", "partially_paid")

# Scheduled runs start at this time of day
SCHEDULED_RUN_TIME = time(2, 0)


def _money(value: float) -> str:
    return f"{value:.2f}"


class ReconciliationEngine:
    """Compares local orders with Zoho invoices for a period."""

    def __init__(self, client: ZohoBooksClient, db: Database, settings: Settings):
        self.client = client
        self.db = db
        self.settings = settings

    @property
    def tolerance(self) -> float:
        return self.settings.reconciliation_tolerance

    def differs(self, local: float, remote: float) -> bool:
        """Whether two amounts differ by more than the tolerance, compared in cents."""
        return round(abs(local - remote), 2) > self.tolerance

    # =========================================================================
    # RUN
    # =========================================================================

    async def run(self, start: date, end: date) -> ReconciliationReport:
        """Reconcile orders created between two dates (inclusive).

        The report is saved as running first and saved again when it is
        completed or failed. A failed report keeps the counts gathered
        before the failure.

        Args:
            start: First day of the period
            end: Last day of the period

        Returns:
            The finalized report
        """
        report = ReconciliationReport(period_start=start, period_end=end)
        self.db.save_report(report)
        logger.info(f"Starting reconciliation {report.id} for {start} to {end}")

        try:
            invoices = await self.fetch_remote_invoices(start, end)
            invoice_map = self.build_invoice_map(invoices)
            payment_map = await self.fetch_remote_payments(start, end)
            orders = self.get_local_orders(start, end)

            self.compare(report, orders, invoice_map, invoices, payment_map)
            report.complete()
            logger.info(
                f"Reconciliation {report.id} completed: {report.discrepancy_count} discrepancies",
                extra={"summary": report.summary},
            )
        except Exception as e:
            self._update_difference(report)
            report.fail(str(e) or type(e).__name__)
            logger.error(f"Reconciliation {report.id} failed: {e}")

        self.db.save_report(report)
        return report

    # =========================================================================
    # REMOTE DATA
    # =========================================================================

    async def fetch_remote_invoices(self, start: date, end: date) -> List[ZohoInvoice]:
        """All invoices dated within the period, up to the page safety limit."""
        if not self.client.is_configured():
            raise NotConfiguredError("Zoho Books API is not configured.")

        invoices: List[ZohoInvoice] = []
        page = 1
        while page <= RECONCILIATION_INVOICE_PAGE_LIMIT:
            batch, page_context = await self.client.list_invoices(
                page=page,
                per_page=RECONCILIATION_PAGE_SIZE,
                date_start=start.isoformat(),
                date_end=end.isoformat(),
            )
            if not batch:
                break
            invoices.extend(batch)
            if not page_context.has_more_page:
                break
            page += 1
        else:
            logger.warning(
                f"Stopped fetching invoices after {RECONCILIATION_INVOICE_PAGE_LIMIT} pages "
                f"({len(invoices)} invoices)"
            )

        logger.info(f"Fetched {len(invoices)} Zoho invoices for {start} to {end}")
        return invoices

    @staticmethod
    def build_invoice_map(invoices: List[ZohoInvoice]) -> Dict[str, ZohoInvoice]:
        """Index invoices by reference number; unreferenced invoices are left out."""
        return {inv.reference_number: inv for inv in invoices if inv.reference_number}

    async def fetch_remote_payments(self, start: date, end: date) -> Dict[str, List[ZohoPayment]]:
        """Customer payments dated within the period, keyed by invoice ID.

        The payments endpoint has no date filter, so the newest pages are
        read and filtered here.
        """
        payment_map: Dict[str, List[ZohoPayment]] = {}
        start_str, end_str = start.isoformat(), end.isoformat()

        for page in range(1, RECONCILIATION_PAYMENT_PAGE_LIMIT + 1):
            payments, page_context = await self.client.list_customer_payments(
                page=page, per_page=RECONCILIATION_PAGE_SIZE
            )
            for payment in payments:
                if not payment.date or not (start_str <= payment.date[:10] <= end_str):
                    continue
                for applied in payment.invoices:
                    payment_map.setdefault(applied.invoice_id, []).append(payment)
            if not payments or not page_context.has_more_page:
                break

        return payment_map

    # =========================================================================
    # LOCAL DATA
    # =========================================================================

    def get_local_orders(self, start: date, end: date) -> List[Order]:
        """Orders in the period in a sync status, or already carrying an invoice."""
        start_dt, end_dt = period_bounds(start, end)
        sync_statuses = self.settings.sync_statuses
        orders = []
        for order in self.db.get_orders_between(start_dt, end_dt):
            if order.status in sync_statuses or self.db.get_sync_state(order.id).invoice_id:
                orders.append(order)
        return orders

    def should_have_synced(self, order: Order) -> bool:
        return order.status in self.settings.sync_statuses or order.status in ALWAYS_SYNCED_STATUSES

    # =========================================================================
    # COMPARISON
    # =========================================================================

    def compare(
        self,
        report: ReconciliationReport,
        orders: List[Order],
        invoice_map: Dict[str, ZohoInvoice],
        invoices: List[ZohoInvoice],
        payment_map: Optional[Dict[str, List[ZohoPayment]]] = None,
    ) -> None:
        """Classify every order and orphan invoice into the report."""
        payment_map = payment_map or {}
        matched_refs = set()

        report.set_summary("total_local_orders", len(orders))
        report.set_summary("total_remote_invoices", len(invoices))

        for order in orders:
            order_number = order.order_number
            report.set_summary(
                "local_total_amount", round(report.summary["local_total_amount"] + order.total, 2)
            )
            state = self.db.get_sync_state(order.id)
            invoice = invoice_map.get(order_number)

            if invoice is None:
                if not state.invoice_id and self.should_have_synced(order):
                    report.increment("missing_in_remote")
                    report.add_discrepancy(MissingInRemote(
                        order_id=order.id,
                        order_number=order_number,
                        order_total=order.total,
                        order_status=order.status,
                        order_date=order.date_created.strftime("%Y-%m-%d"),
                        message="Order not found in Zoho Books",
                    ))
                continue

            matched_refs.add(order_number)
            report.set_summary(
                "remote_total_amount", round(report.summary["remote_total_amount"] + invoice.total, 2)
            )

            self.check_amounts(report, order, invoice)
            self.check_status_alignment(report, order, invoice)
            self.check_payment_alignment(report, order, invoice, payment_map.get(invoice.invoice_id, []))
            self.check_refund_alignment(report, order, invoice)

            if self.settings.reconciliation_auto_link and not state.invoice_id:
                self.link_invoice(order, invoice)
                report.increment("auto_linked")

        for invoice in invoices:
            ref = invoice.reference_number
            if ref and ref not in matched_refs:
                report.increment("missing_in_local")
                report.add_discrepancy(MissingInLocal(
                    invoice_id=invoice.invoice_id,
                    invoice_number=invoice.invoice_number,
                    reference_number=ref,
                    invoice_total=invoice.total,
                    invoice_date=invoice.date,
                    message="Invoice has no matching local order",
                ))

        self._update_difference(report)

    @staticmethod
    def _update_difference(report: ReconciliationReport) -> None:
        if report.is_final:
            return
        local_total = report.summary.get("local_total_amount", 0.0)
        remote_total = report.summary.get("remote_total_amount", 0.0)
        report.set_summary("amount_difference", round(abs(local_total - remote_total), 2))

    def check_amounts(self, report: ReconciliationReport, order: Order, invoice: ZohoInvoice) -> None:
        difference = round(abs(order.total - invoice.total), 2)
        if not self.differs(order.total, invoice.total):
            report.increment("matched_count")
            return

        breakdown = self.get_breakdown(order, invoice)
        report.increment("amount_mismatches")
        report.add_discrepancy(AmountMismatch(
            order_id=order.id,
            order_number=order.order_number,
            order_total=order.total,
            order_date=order.date_created.strftime("%Y-%m-%d"),
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            invoice_total=invoice.total,
            invoice_date=invoice.date,
            difference=difference,
            breakdown=breakdown,
            message=self.format_breakdown_message(order.total, invoice.total, difference, breakdown),
        ))

    def get_breakdown(self, order: Order, invoice: ZohoInvoice) -> Dict[str, BreakdownComponent]:
        """Components whose local and remote amounts differ beyond the tolerance."""
        components = {
            "subtotal": (order.subtotal, invoice.sub_total),
            "shipping": (order.shipping_total, invoice.shipping_charge),
            "discount": (order.discount_total, invoice.discount),
            "tax": (order.total_tax, invoice.tax_total),
            "fees_adjustment": (order.fees_total, invoice.adjustment),
        }
        breakdown = {}
        for name, (local, remote) in components.items():
            if self.differs(local, remote):
                breakdown[name] = BreakdownComponent(local=local, remote=remote, diff=round(local - remote, 2))
        return breakdown

    @staticmethod
    def format_breakdown_message(
        local_total: float,
        remote_total: float,
        difference: float,
        breakdown: Dict[str, BreakdownComponent],
    ) -> str:
        message = (
            f"Total mismatch: local {_money(local_total)} vs Zoho {_money(remote_total)} "
            f"(diff: {_money(difference)})"
        )
        if breakdown:
            details = [
                f"{name.replace('_', ' ').capitalize()}: local {_money(c.local)} vs Zoho {_money(c.remote)}"
                for name, c in breakdown.items()
            ]
            message += " | " + "; ".join(details)
        return message

    def check_status_alignment(self, report: ReconciliationReport, order: Order, invoice: ZohoInvoice) -> None:
        """Flag completed orders whose invoice is not (partially) paid."""
        invoice_status = invoice.status or ""
        if order.status != "completed" or invoice_status in PAID_INVOICE_STATUSES:
            return

        report.increment("status_mismatches")
        report.add_discrepancy(StatusMismatch(
            order_id=order.id,
            order_number=order.order_number,
            order_status=order.status,
            order_date=order.date_created.strftime("%Y-%m-%d"),
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            invoice_status=invoice_status,
            invoice_date=invoice.date,
            message=f"Invoice is {invoice_status or 'unknown'} but order is {order.status}",
        ))

    def check_payment_alignment(
        self,
        report: ReconciliationReport,
        order: Order,
        invoice: ZohoInvoice,
        payments: List[ZohoPayment],
    ) -> None:
        """Compare what the order received with what the invoice has settled.

        Payments are recorded in the order's currency, so the locally paid
        amount needs no conversion.
        """
        if not order.is_paid:
            return

        local_paid = order.total
        remote_paid = invoice.amount_paid
        if not self.differs(local_paid, remote_paid):
            return

        report.increment("payment_mismatches")
        report.add_discrepancy(PaymentMismatch(
            order_id=order.id,
            order_number=order.order_number,
            order_date=order.date_created.strftime("%Y-%m-%d"),
            local_paid=local_paid,
            remote_paid=remote_paid,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.date,
            payment_ids=[p.payment_id for p in payments],
            message=f"Payment mismatch: order received {_money(local_paid)} vs Zoho received {_money(remote_paid)}",
        ))

    def check_refund_alignment(self, report: ReconciliationReport, order: Order, invoice: ZohoInvoice) -> None:
        """Flag refunded orders whose invoice shows no credits applied."""
        refund_total = order.refund_total
        if not self.differs(refund_total, 0) or round(invoice.credits_applied, 2) >= self.tolerance:
            return

        report.increment("refund_mismatches")
        report.add_discrepancy(RefundMismatch(
            order_id=order.id,
            order_number=order.order_number,
            order_date=order.date_created.strftime("%Y-%m-%d"),
            local_refund_total=refund_total,
            remote_credits=invoice.credits_applied,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            invoice_date=invoice.date,
            message=(
                f"Refund mismatch: order refunded {_money(refund_total)} but Zoho shows "
                f"{_money(invoice.credits_applied)} credits"
            ),
        ))

    def link_invoice(self, order: Order, invoice: ZohoInvoice) -> None:
        """Record a matched remote invoice on an order that has none locally."""
        status = SyncStatus.DRAFT if invoice.status == "draft" else SyncStatus.SYNCED
        self.db.update_sync_state(
            order.id,
            status=status,
            invoice_id=invoice.invoice_id,
            invoice_number=invoice.invoice_number,
            invoice_status=invoice.status,
            contact_id=invoice.customer_id,
            last_error=None,
        )
        logger.info(f"Linked order {order.id} to Zoho invoice {invoice.invoice_id}")

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def get_reconciliation_period(self, today: Optional[date] = None) -> Tuple[date, date]:
        """Period covered by a scheduled run, ending yesterday."""
        today = today or utcnow().date()
        end = today - timedelta(days=1)
        frequency = self.settings.reconciliation_frequency
        if frequency == "daily":
            start = end
        elif frequency == "monthly":
            start = end.replace(day=1)
        else:
            start = end - timedelta(days=6)
        return start, end

    def get_next_scheduled_run(self, now: Optional[datetime] = None) -> datetime:
        """Next scheduled run time for the configured frequency (02:00 UTC)."""
        now = now or utcnow()
        today = now.date()
        frequency = self.settings.reconciliation_frequency

        if frequency == "daily":
            run_day = today + timedelta(days=1)
        elif frequency == "monthly":
            first_of_next = (today.replace(day=1) + timedelta(days=32)).replace(day=1)
            run_day = first_of_next + timedelta(days=self.settings.reconciliation_day_of_month - 1)
        else:
            # Settings count weekdays from Sunday = 0
            target = (self.settings.reconciliation_day_of_week - 1) % 7
            days_ahead = (target - today.weekday()) % 7 or 7
            run_day = today + timedelta(days=days_ahead)

        return datetime.combine(run_day, SCHEDULED_RUN_TIME, tzinfo=now.tzinfo)
