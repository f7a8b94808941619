"""SQLite database operations for sync state management.

Stands in for the commerce store's per-order metadata and settings
storage: it holds the sync checkpoint of every order, refund to credit note
mappings, order audit notes, imported orders, encrypted secrets, the shared
rate limit counter and reconciliation report history.
"""

import sqlite3
import json
import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, List, Optional, Tuple
from contextlib import contextmanager

from .models import (
    Order,
    OrderNote,
    ReconciliationReport,
    RefundMapping,
    SyncState,
    SyncStatus,
    parse_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)


class Database:
    """SQLite database manager for sync state."""

    SCHEMA = """
    -- Per-order sync checkpoint
    CREATE TABLE IF NOT EXISTS order_sync_state (
        order_id TEXT PRIMARY KEY,
        status TEXT NOT NULL DEFAULT 'unsynced',
        invoice_id TEXT,
        invoice_number TEXT,
        invoice_status TEXT,
        contact_id TEXT,
        contact_name TEXT,
        payment_id TEXT,
        payment_number TEXT,
        retry_count INTEGER NOT NULL DEFAULT 0,
        last_sync_attempt TIMESTAMP,
        last_error TEXT,
        updated_at TIMESTAMP
    );

    -- Index for finding failed orders to retry
    CREATE INDEX IF NOT EXISTS idx_sync_state_status
    ON order_sync_state(status, last_sync_attempt);

    -- Local refund -> Zoho credit note
    CREATE TABLE IF NOT EXISTS refund_mappings (
        order_id TEXT NOT NULL,
        local_refund_id TEXT NOT NULL,
        remote_refund_id TEXT,
        remote_credit_note_id TEXT,
        credit_note_number TEXT,
        created_at TIMESTAMP NOT NULL,
        PRIMARY KEY (order_id, local_refund_id)
    );

    -- Human-readable audit trail per order
    CREATE TABLE IF NOT EXISTS order_notes (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        order_id TEXT NOT NULL,
        note TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_notes_order
    ON order_notes(order_id);

    -- Orders imported from the commerce store
    CREATE TABLE IF NOT EXISTS orders (
        order_id TEXT PRIMARY KEY,
        order_number TEXT NOT NULL,
        status TEXT NOT NULL,
        date_created TIMESTAMP NOT NULL,
        payload TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_orders_date
    ON orders(date_created);

    -- Encrypted credentials and tokens
    CREATE TABLE IF NOT EXISTS secrets (
        name TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        updated_at TIMESTAMP NOT NULL
    );

    -- Fixed-window request counter shared by every process using this file
    CREATE TABLE IF NOT EXISTS rate_windows (
        window_key INTEGER PRIMARY KEY,
        count INTEGER NOT NULL,
        expires_at REAL NOT NULL
    );

    -- Reconciliation history
    CREATE TABLE IF NOT EXISTS reconciliation_reports (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        status TEXT NOT NULL,
        summary TEXT NOT NULL,
        discrepancies TEXT NOT NULL,
        error TEXT,
        created_at TIMESTAMP NOT NULL,
        completed_at TIMESTAMP
    );

    -- Short-lived cached values (e.g. connection health)
    CREATE TABLE IF NOT EXISTS cache (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL,
        expires_at REAL NOT NULL
    );
    """

    def __init__(self, db_path: Path):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._ensure_directory()
        self._init_schema()

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_schema(self) -> None:
        """Initialize database schema if not exists."""
        with self._get_connection() as conn:
            conn.executescript(self.SCHEMA)
            logger.info(f"Database initialized at {self.db_path}")

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings.

        Yields:
            sqlite3.Connection: Database connection
        """
        conn = sqlite3.connect(
            self.db_path,
            timeout=30.0  # Wait up to 30 seconds for locks to clear
        )
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @staticmethod
    def _timestamp(value: Optional[datetime]) -> Optional[str]:
        return value.astimezone(timezone.utc).isoformat() if value else None

    # =========================================================================
    # SYNC STATE
    # =========================================================================

    def get_sync_state(self, order_id: str) -> SyncState:
        """Get the sync checkpoint for an order.

        Orders never seen before get a fresh UNSYNCED state.

        Args:
            order_id: Local order ID

        Returns:
            SyncState including refund mappings
        """
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM order_sync_state WHERE order_id = ?",
                (order_id,)
            ).fetchone()
            refunds = conn.execute(
                "SELECT * FROM refund_mappings WHERE order_id = ? ORDER BY created_at, rowid",
                (order_id,)
            ).fetchall()

        mappings = [self._row_to_refund_mapping(r) for r in refunds]
        if not row:
            return SyncState(order_id=order_id, refund_mappings=mappings)
        return self._row_to_state(row, mappings)

    def _row_to_state(self, row: sqlite3.Row, mappings: List[RefundMapping]) -> SyncState:
        return SyncState(
            order_id=row["order_id"],
            status=SyncStatus(row["status"]),
            invoice_id=row["invoice_id"],
            invoice_number=row["invoice_number"],
            invoice_status=row["invoice_status"],
            contact_id=row["contact_id"],
            contact_name=row["contact_name"],
            payment_id=row["payment_id"],
            payment_number=row["payment_number"],
            retry_count=row["retry_count"],
            last_sync_attempt=parse_datetime(row["last_sync_attempt"]),
            last_error=row["last_error"],
            refund_mappings=mappings,
        )

    @staticmethod
    def _row_to_refund_mapping(row: sqlite3.Row) -> RefundMapping:
        return RefundMapping(
            local_refund_id=row["local_refund_id"],
            remote_refund_id=row["remote_refund_id"],
            remote_credit_note_id=row["remote_credit_note_id"],
            credit_note_number=row["credit_note_number"],
            created_at=parse_datetime(row["created_at"]),
        )

    def save_sync_state(self, state: SyncState) -> SyncState:
        """Insert or update an order's sync checkpoint.

        The state is re-validated first, so a checkpoint that breaks the
        invoice/status or payment/invoice invariants is never written.

        Args:
            state: SyncState to persist (refund mappings are stored separately)

        Returns:
            The validated state
        """
        state = SyncState.model_validate(state.model_dump())
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO order_sync_state
                    (order_id, status, invoice_id, invoice_number, invoice_status,
                     contact_id, contact_name, payment_id, payment_number,
                     retry_count, last_sync_attempt, last_error, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(order_id) DO UPDATE SET
                    status = excluded.status,
                    invoice_id = excluded.invoice_id,
                    invoice_number = excluded.invoice_number,
                    invoice_status = excluded.invoice_status,
                    contact_id = excluded.contact_id,
                    contact_name = excluded.contact_name,
                    payment_id = excluded.payment_id,
                    payment_number = excluded.payment_number,
                    retry_count = excluded.retry_count,
                    last_sync_attempt = excluded.last_sync_attempt,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (
                    state.order_id,
                    state.status.value,
                    state.invoice_id,
                    state.invoice_number,
                    state.invoice_status,
                    state.contact_id,
                    state.contact_name,
                    state.payment_id,
                    state.payment_number,
                    state.retry_count,
                    self._timestamp(state.last_sync_attempt),
                    state.last_error,
                    self._timestamp(utcnow()),
                )
            )
            logger.debug(f"Saved sync state for order {state.order_id}: {state.status.value}")
        return state

    def update_sync_state(self, order_id: str, **changes: Any) -> SyncState:
        """Apply field changes to an order's checkpoint and persist it.

        Args:
            order_id: Local order ID
            **changes: SyncState field values to set

        Returns:
            Updated SyncState
        """
        current = self.get_sync_state(order_id)
        data = current.model_dump()
        data.update(changes)
        return self.save_sync_state(SyncState.model_validate(data))

    def increment_retry_count(self, order_id: str) -> int:
        """Increment an order's retry counter.

        Returns:
            New retry count
        """
        state = self.get_sync_state(order_id)
        updated = self.update_sync_state(order_id, retry_count=state.retry_count + 1)
        return updated.retry_count

    def delete_sync_state(self, order_id: str) -> bool:
        """Delete an order's checkpoint and refund mappings.

        Returns:
            True if a checkpoint existed
        """
        with self._get_connection() as conn:
            conn.execute("DELETE FROM refund_mappings WHERE order_id = ?", (order_id,))
            cursor = conn.execute(
                "DELETE FROM order_sync_state WHERE order_id = ?",
                (order_id,)
            )
            return cursor.rowcount > 0

    def get_failed_order_ids(self, limit: int = 10) -> List[str]:
        """Get failed orders, oldest attempt first.

        Args:
            limit: Maximum number of order IDs

        Returns:
            List of order IDs
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT order_id FROM order_sync_state
                WHERE status = ?
                ORDER BY last_sync_attempt ASC
                LIMIT ?
                """,
                (SyncStatus.FAILED.value, limit)
            )
            return [row["order_id"] for row in cursor.fetchall()]

    def get_status_counts(self) -> dict:
        """Count orders per sync status."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT status, COUNT(*) AS count FROM order_sync_state GROUP BY status"
            )
            return {row["status"]: row["count"] for row in cursor.fetchall()}

    # =========================================================================
    # REFUND MAPPINGS
    # =========================================================================

    def add_refund_mapping(self, order_id: str, mapping: RefundMapping) -> None:
        """Record the credit note created for a local refund.

        Args:
            order_id: Local order ID
            mapping: RefundMapping to store
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO refund_mappings
                    (order_id, local_refund_id, remote_refund_id,
                     remote_credit_note_id, credit_note_number, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(order_id, local_refund_id) DO UPDATE SET
                    remote_refund_id = excluded.remote_refund_id,
                    remote_credit_note_id = excluded.remote_credit_note_id,
                    credit_note_number = excluded.credit_note_number
                """,
                (
                    order_id,
                    mapping.local_refund_id,
                    mapping.remote_refund_id,
                    mapping.remote_credit_note_id,
                    mapping.credit_note_number,
                    self._timestamp(mapping.created_at or utcnow()),
                )
            )
            logger.debug(
                f"Mapped refund {mapping.local_refund_id} -> "
                f"credit note {mapping.remote_credit_note_id}"
            )

    def get_refund_mapping(self, order_id: str, local_refund_id: str) -> Optional[RefundMapping]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM refund_mappings WHERE order_id = ? AND local_refund_id = ?",
                (order_id, str(local_refund_id))
            ).fetchone()
            return self._row_to_refund_mapping(row) if row else None

    # =========================================================================
    # ORDER NOTES
    # =========================================================================

    def add_order_note(self, order_id: str, note: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "INSERT INTO order_notes (order_id, note, created_at) VALUES (?, ?, ?)",
                (order_id, note, self._timestamp(utcnow()))
            )

    def get_order_notes(self, order_id: str) -> List[OrderNote]:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM order_notes WHERE order_id = ? ORDER BY id",
                (order_id,)
            )
            return [
                OrderNote(
                    id=row["id"],
                    order_id=row["order_id"],
                    note=row["note"],
                    created_at=parse_datetime(row["created_at"]),
                )
                for row in cursor.fetchall()
            ]

    # =========================================================================
    # ORDER STORE
    # =========================================================================

    def upsert_order(self, order: Order) -> None:
        """Insert or replace an imported order.

        Args:
            order: Order to store
        """
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO orders (order_id, order_number, status, date_created, payload)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(order_id) DO UPDATE SET
                    order_number = excluded.order_number,
                    status = excluded.status,
                    date_created = excluded.date_created,
                    payload = excluded.payload
                """,
                (
                    order.id,
                    order.order_number,
                    order.status,
                    self._timestamp(order.date_created),
                    order.model_dump_json(),
                )
            )

    def get_order(self, order_id: str) -> Optional[Order]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT payload FROM orders WHERE order_id = ?",
                (order_id,)
            ).fetchone()
            return Order.model_validate_json(row["payload"]) if row else None

    def get_orders_between(self, start: datetime, end: datetime) -> List[Order]:
        """Get orders created within a period (inclusive).

        Args:
            start: Period start
            end: Period end

        Returns:
            List of Order objects, oldest first
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                SELECT payload FROM orders
                WHERE date_created >= ? AND date_created <= ?
                ORDER BY date_created
                """,
                (self._timestamp(start), self._timestamp(end))
            )
            return [Order.model_validate_json(row["payload"]) for row in cursor.fetchall()]

    # =========================================================================
    # SECRETS
    # =========================================================================

    def get_secret(self, name: str) -> Optional[str]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM secrets WHERE name = ?",
                (name,)
            ).fetchone()
            return row["value"] if row else None

    def set_secret(self, name: str, value: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO secrets (name, value, updated_at) VALUES (?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (name, value, self._timestamp(utcnow()))
            )

    def delete_secret(self, name: str) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM secrets WHERE name = ?", (name,))
            return cursor.rowcount > 0

    # =========================================================================
    # RATE WINDOWS
    # =========================================================================

    def increment_rate_window(self, window_key: int, expires_at: float, now: float) -> int:
        """Atomically increment a rate window counter.

        The upsert takes SQLite's write lock, and the read-back happens in the
        same transaction, so concurrent processes never observe or lose each
        other's increments. ``expires_at`` is only set when the window is
        created. Expired windows are purged in the same transaction.

        Args:
            window_key: floor(now / 60)
            expires_at: Epoch seconds at which a new window expires
            now: Current epoch seconds

        Returns:
            Count after the increment
        """
        with self._get_connection() as conn:
            conn.execute("DELETE FROM rate_windows WHERE expires_at <= ?", (now,))
            conn.execute(
                """
                INSERT INTO rate_windows (window_key, count, expires_at)
                VALUES (?, 1, ?)
                ON CONFLICT(window_key) DO UPDATE SET count = count + 1
                """,
                (window_key, expires_at)
            )
            row = conn.execute(
                "SELECT count FROM rate_windows WHERE window_key = ?",
                (window_key,)
            ).fetchone()
            return row["count"]

    def get_rate_window(self, window_key: int, now: float) -> Optional[Tuple[int, float]]:
        """Get (count, expires_at) for a live window, or None."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT count, expires_at FROM rate_windows WHERE window_key = ? AND expires_at > ?",
                (window_key, now)
            ).fetchone()
            return (row["count"], row["expires_at"]) if row else None

    def delete_rate_window(self, window_key: int) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM rate_windows WHERE window_key = ?", (window_key,))

    # =========================================================================
    # CACHE
    # =========================================================================

    def cache_get(self, key: str, now: float) -> Optional[Any]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM cache WHERE key = ? AND expires_at > ?",
                (key, now)
            ).fetchone()
            return json.loads(row["value"]) if row else None

    def cache_set(self, key: str, value: Any, expires_at: float) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT INTO cache (key, value, expires_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, json.dumps(value), expires_at)
            )

    # =========================================================================
    # RECONCILIATION REPORTS
    # =========================================================================

    def save_report(self, report: ReconciliationReport) -> ReconciliationReport:
        """Insert or update a reconciliation report.

        Assigns ``report.id`` on first save.

        Args:
            report: Report to persist

        Returns:
            The same report
        """
        payload = report.model_dump(mode="json")
        values = (
            payload["period_start"],
            payload["period_end"],
            report.status.value,
            json.dumps(payload["summary"]),
            json.dumps(payload["discrepancies"]),
            report.error,
            self._timestamp(report.created_at),
            self._timestamp(report.completed_at),
        )
        with self._get_connection() as conn:
            if report.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO reconciliation_reports
                        (period_start, period_end, status, summary, discrepancies,
                         error, created_at, completed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    values
                )
                report.id = cursor.lastrowid
            else:
                conn.execute(
                    """
                    UPDATE reconciliation_reports SET
                        period_start = ?, period_end = ?, status = ?, summary = ?,
                        discrepancies = ?, error = ?, created_at = ?, completed_at = ?
                    WHERE id = ?
                    """,
                    values + (report.id,)
                )
        logger.debug(f"Saved reconciliation report {report.id} ({report.status.value})")
        return report

    def _row_to_report(self, row: sqlite3.Row) -> ReconciliationReport:
        return ReconciliationReport.model_validate({
            "id": row["id"],
            "period_start": row["period_start"],
            "period_end": row["period_end"],
            "status": row["status"],
            "summary": json.loads(row["summary"]),
            "discrepancies": json.loads(row["discrepancies"]),
            "error": row["error"],
            "created_at": parse_datetime(row["created_at"]),
            "completed_at": parse_datetime(row["completed_at"]),
        })

    def get_report(self, report_id: int) -> Optional[ReconciliationReport]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM reconciliation_reports WHERE id = ?",
                (report_id,)
            ).fetchone()
            return self._row_to_report(row) if row else None

    def get_latest_report(self) -> Optional[ReconciliationReport]:
        reports = self.get_reports(limit=1)
        return reports[0] if reports else None

    def get_reports(self, limit: int = 20) -> List[ReconciliationReport]:
        """Get report history, most recent first."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM reconciliation_reports ORDER BY id DESC LIMIT ?",
                (limit,)
            )
            return [self._row_to_report(row) for row in cursor.fetchall()]

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def get_stats(self) -> dict:
        """Get sync statistics.

        Returns:
            Dictionary with sync statistics
        """
        stats = {"orders_by_status": self.get_status_counts()}
        with self._get_connection() as conn:
            stats["refunds_synced"] = conn.execute(
                "SELECT COUNT(*) AS count FROM refund_mappings"
            ).fetchone()["count"]
            stats["orders_imported"] = conn.execute(
                "SELECT COUNT(*) AS count FROM orders"
            ).fetchone()["count"]

        latest = self.get_latest_report()
        stats["last_reconciliation"] = (
            f"{latest.period_start} to {latest.period_end} ({latest.status.value})"
            if latest else None
        )
        return stats


def period_bounds(start: date, end: date) -> Tuple[datetime, datetime]:
    """Expand a date range to inclusive UTC datetime bounds."""
    start_dt = parse_datetime(start)
    end_dt = parse_datetime(end).replace(hour=23, minute=59, second=59, microsecond=999999)
    return start_dt, end_dt
