#!/usr/bin/env python3
"""Main entry point for the Zoho Books order sync.

Usage:
    python sync.py --authorize                  # Authorize with Zoho (one time)
    python sync.py --import-orders orders.json  # Load orders into the local store
    python sync.py --order 1001                 # Sync one stored order
    python sync.py --bulk 1001 1002             # Sync several stored orders
    python sync.py --retry                      # Retry failed syncs that are due
    python sync.py --reconcile                  # Reconcile the scheduled period
    python sync.py --stats                      # Show sync statistics
    python sync.py --reset 1001                 # Forget an order's local sync state
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import date
from pathlib import Path

from pythonjsonlogger import jsonlogger

from src.config import get_settings, Settings
from src.credential_store import CredentialStore
from src.customer_service import CustomerService
from src.database import Database
from src.invoice_service import InvoiceService
from src.models import Order
from src.order_notes import OrderNoteService
from src.payment_service import PaymentService
from src.rate_limiter import RateLimiter
from src.reconciliation import ReconciliationEngine
from src.refund_service import RefundService
from src.retry_scheduler import RetryScheduler
from src.sync_orchestrator import SyncOrchestrator
from src.zoho_client import ZohoAPIError, ZohoBooksClient
from src.zoho_oauth import ZohoOAuth


def setup_logging(settings: Settings) -> None:
    """Configure logging for the application.

    Args:
        settings: Application settings
    """
    settings.log_file.parent.mkdir(parents=True, exist_ok=True)

    console_formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    json_formatter = jsonlogger.JsonFormatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(logging.DEBUG)

    # File handler (JSON format for parsing)
    file_handler = logging.FileHandler(settings.log_file)
    file_handler.setFormatter(json_formatter)
    file_handler.setLevel(logging.DEBUG)

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, settings.log_level))
    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

    # Reduce noise from httpx
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def build_orchestrator(settings: Settings, database: Database, client: ZohoBooksClient) -> SyncOrchestrator:
    """Wire the services behind the orchestrator."""
    notes = OrderNoteService(database, settings.zoho_datacenter)
    return SyncOrchestrator(
        settings=settings,
        db=database,
        customers=CustomerService(client),
        invoices=InvoiceService(client, settings),
        payments=PaymentService(client, settings, notes),
        refunds=RefundService(client, settings),
        notes=notes,
    )


async def import_bootstrap_credentials(
    settings: Settings,
    credentials: CredentialStore,
    client: ZohoBooksClient,
) -> None:
    """Move credentials from the environment into the encrypted store on first run.

    A pasted grant code is exchanged for a refresh token first.
    """
    logger = logging.getLogger(__name__)
    if credentials.has_credentials():
        return
    if not (settings.zoho_client_id and settings.zoho_client_secret and settings.zoho_refresh_token):
        return

    refresh_token = settings.zoho_refresh_token
    if client.is_grant_code(refresh_token):
        logger.info("ZOHO_REFRESH_TOKEN looks like a grant code, exchanging it")
        grant = await client.exchange_grant_code(
            settings.zoho_client_id,
            settings.zoho_client_secret,
            refresh_token,
            datacenter=settings.zoho_datacenter,
        )
        refresh_token = grant.refresh_token

    credentials.save_credentials(
        settings.zoho_client_id,
        settings.zoho_client_secret,
        refresh_token,
        skip_validation=True,
    )
    logger.info("Imported Zoho credentials from the environment")


def import_orders(database: Database, path: Path) -> int:
    """Load a JSON list of orders into the local order store."""
    with open(path, "r", encoding="utf-8") as f:
        payload = json.load(f)

    orders = payload if isinstance(payload, list) else [payload]
    for raw in orders:
        database.upsert_order(Order.model_validate(raw))
    return len(orders)


async def run_sync(args: argparse.Namespace) -> int:
    """Run the requested operation.

    Args:
        args: Command line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logger = logging.getLogger(__name__)

    try:
        settings = get_settings()
    except Exception as e:
        logger.error(f"Failed to load settings: {e}")
        logger.error("Make sure .env file exists with required environment variables")
        return 1

    setup_logging(settings)

    database = Database(settings.database_path)

    if args.stats:
        stats = database.get_stats()
        logger.info("Sync Statistics:")
        logger.info(f"  Orders by status: {stats.get('orders_by_status', {})}")
        logger.info(f"  Refunds synced: {stats.get('refunds_synced', 0)}")
        logger.info(f"  Orders imported: {stats.get('orders_imported', 0)}")
        logger.info(f"  Last reconciliation: {stats.get('last_reconciliation') or 'Never'}")
        return 0

    if args.import_orders:
        count = import_orders(database, args.import_orders)
        logger.info(f"Imported {count} orders from {args.import_orders}")
        return 0

    if args.reset:
        if database.delete_sync_state(args.reset):
            logger.info(f"Cleared sync state for order {args.reset}")
        else:
            logger.info(f"Order {args.reset} has no sync state")
        return 0

    credentials = CredentialStore(database, settings)
    rate_limiter = RateLimiter(database, settings.rate_limit_per_minute)

    async with ZohoBooksClient(settings, credentials, rate_limiter) as client:
        try:
            if args.authorize:
                if not (settings.zoho_client_id and settings.zoho_client_secret):
                    logger.error("Set ZOHO_CLIENT_ID and ZOHO_CLIENT_SECRET before authorizing")
                    return 1
                oauth = ZohoOAuth(settings.zoho_client_id, settings.zoho_client_secret, settings.zoho_datacenter)
                await oauth.authorize(client, credentials)
                logger.info("Authorization complete, credentials stored")
                return 0

            await import_bootstrap_credentials(settings, credentials, client)
        except ZohoAPIError as e:
            logger.error(f"Authorization failed: {e}")
            return 1

        if not client.is_configured():
            logger.error("Zoho credentials not configured. Run 'python sync.py --authorize' first.")
            return 1

        orchestrator = build_orchestrator(settings, database, client)

        if args.retry:
            scheduler = RetryScheduler(settings, database, orchestrator, client)
            stats = await scheduler.run()
            if stats.aborted:
                logger.info(f"Retry run skipped: {stats.aborted}")
            return 1 if stats.failed else 0

        if args.reconcile:
            engine = ReconciliationEngine(client, database, settings)
            if args.start and args.end:
                start, end = args.start, args.end
            else:
                start, end = engine.get_reconciliation_period()
            report = await engine.run(start, end)
            logger.info("=" * 60)
            logger.info(f"Reconciliation {report.id}: {report.status.value}")
            logger.info("=" * 60)
            for key, value in report.summary.items():
                logger.info(f"  {key}: {value}")
            for discrepancy in report.discrepancies[:20]:
                logger.warning(f"  [{discrepancy.type}] {discrepancy.message}")
            if report.discrepancy_count > 20:
                logger.warning(f"  ... and {report.discrepancy_count - 20} more")
            return 0 if report.error is None else 1

        if args.bulk:
            stats = await orchestrator.sync_orders(args.bulk)
            logger.info(f"Bulk sync: {stats.success} succeeded, {stats.failed} failed")
            return 1 if stats.failed else 0

        if args.order:
            order = database.get_order(args.order)
            if order is None:
                logger.error(f"Order {args.order} not found. Import it with --import-orders first.")
                return 1

            as_draft = args.draft or orchestrator.should_create_as_draft(order)
            if args.conflict_check:
                result = await orchestrator.sync_order_with_conflict_check(order, as_draft)
            elif args.with_payment:
                result = await orchestrator.sync_order_with_payment(order, as_draft)
            else:
                result = await orchestrator.sync_order(order, as_draft)

            if args.refunds and result.success:
                for refund_result in await orchestrator.process_order_refunds(order):
                    if not refund_result.success:
                        logger.warning(f"Refund failed: {refund_result.error}")

            logger.info(json.dumps(result.to_dict()))
            return 0 if result.success else 1

    logger.error("Nothing to do, see --help")
    return 1


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Sync store orders to Zoho Books invoices, payments and credit notes",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python sync.py --authorize                   Authorize with Zoho Books
  python sync.py --import-orders orders.json   Store orders for syncing
  python sync.py --order 1001 --with-payment   Sync an order and apply its payment
  python sync.py --retry                       Retry failed syncs that are due
  python sync.py --reconcile --start 2024-01-01 --end 2024-01-31
  python sync.py --stats                       Show sync statistics
        """,
    )

    parser.add_argument("--authorize", action="store_true", help="Run the Zoho OAuth flow")
    parser.add_argument("--import-orders", type=Path, metavar="FILE", help="Import orders from a JSON file")
    parser.add_argument("--order", metavar="ORDER_ID", help="Sync a single stored order")
    parser.add_argument("--bulk", nargs="+", metavar="ORDER_ID", help="Sync several stored orders")
    parser.add_argument("--draft", action="store_true", help="Create the invoice as a draft")
    parser.add_argument(
        "--with-payment",
        action="store_true",
        help="Apply the payment after syncing a paid order",
    )
    parser.add_argument(
        "--conflict-check",
        action="store_true",
        help="Link an existing Zoho invoice instead of creating one",
    )
    parser.add_argument("--refunds", action="store_true", help="Push the order's refunds as credit notes")
    parser.add_argument("--retry", action="store_true", help="Retry failed syncs that are due")
    parser.add_argument("--reconcile", action="store_true", help="Reconcile orders against Zoho invoices")
    parser.add_argument("--start", type=date.fromisoformat, help="Reconciliation start date (YYYY-MM-DD)")
    parser.add_argument("--end", type=date.fromisoformat, help="Reconciliation end date (YYYY-MM-DD)")
    parser.add_argument("--stats", action="store_true", help="Show sync statistics and exit")
    parser.add_argument("--reset", metavar="ORDER_ID", help="Delete the local sync state of an order")

    args = parser.parse_args()

    exit_code = asyncio.run(run_sync(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
