"""Pydantic data models for local orders, Zoho Books entities and sync state.

These models provide validation and type safety for data moving between
the commerce store, Zoho Books, and the local SQLite database. Every Zoho
response is deserialized into one of the Zoho* models at the client
boundary, so services never inspect raw response shapes.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .constants import PAID_ORDER_STATUSES


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_datetime(value):
    """Parse datetime values from order payloads and the database.

    Accepts datetimes, ISO 8601 strings (with or without a 'Z' suffix or a
    colon-less offset) and plain dates. Naive values are treated as UTC.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, str):
        cleaned = value.strip()
        if cleaned.endswith("Z"):
            cleaned = cleaned[:-1] + "+00:00"
        # 2024-01-15T12:30:45+0000 -> +00:00
        cleaned = re.sub(r"([+-]\d{2})(\d{2})$", r"\1:\2", cleaned)
        parsed = datetime.fromisoformat(cleaned)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return value


def _to_amount(value) -> float:
    """Coerce Zoho amounts, which may arrive as strings or null, to float."""
    if value is None or value == "":
        return 0.0
    return float(value)


# =============================================================================
# ORDER MODELS (commerce store side)
# =============================================================================

class OrderAddress(BaseModel):
    """Billing or shipping address on an order."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    company: Optional[str] = None
    address_1: Optional[str] = None
    address_2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None

    @property
    def has_address(self) -> bool:
        return any([self.address_1, self.city, self.postcode, self.country])


class OrderLineItem(BaseModel):
    """Product line on an order.

    ``subtotal`` is the line amount before discounts, ``total`` after.
    """
    id: str
    name: str
    product_id: Optional[str] = None
    sku: Optional[str] = None
    description: Optional[str] = None
    quantity: int = 1
    subtotal: float = 0.0
    total: float = 0.0
    total_tax: float = 0.0

    @field_validator("id", "product_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return None if value is None else str(value)


class OrderFee(BaseModel):
    """Non-product fee line (e.g. a handling surcharge)."""
    id: Optional[str] = None
    name: str
    total: float = 0.0
    total_tax: float = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return None if value is None else str(value)


class RefundLineItem(BaseModel):
    """Line item on a refund. Quantities and totals may be negative."""
    id: Optional[str] = None
    name: str
    quantity: int = 0
    total: float = 0.0

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return None if value is None else str(value)


class OrderRefund(BaseModel):
    """Refund issued against an order."""
    id: str
    amount: float
    reason: Optional[str] = None
    line_items: List[RefundLineItem] = Field(default_factory=list)
    shipping_total: float = 0.0
    date_created: Optional[datetime] = None

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)

    @field_validator("date_created", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return parse_datetime(value)

    @property
    def total(self) -> float:
        """Refunded amount as a positive number."""
        return abs(self.amount)


class Order(BaseModel):
    """Order as exported by the commerce store."""
    id: str
    number: Optional[str] = None
    status: str
    currency: str = "USD"
    date_created: datetime
    date_paid: Optional[datetime] = None
    date_completed: Optional[datetime] = None
    billing: OrderAddress = Field(default_factory=OrderAddress)
    shipping: Optional[OrderAddress] = None
    line_items: List[OrderLineItem] = Field(default_factory=list)
    fees: List[OrderFee] = Field(default_factory=list)
    shipping_total: float = 0.0
    discount_total: float = 0.0
    total_tax: float = 0.0
    total: float = 0.0
    payment_method: Optional[str] = None
    payment_method_title: Optional[str] = None
    transaction_id: Optional[str] = None
    customer_note: Optional[str] = None
    refunds: List[OrderRefund] = Field(default_factory=list)
    meta: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def strip_status_prefix(cls, value: str) -> str:
        value = str(value).lower()
        return value[3:] if value.startswith("wc-") else value

    @field_validator("date_created", "date_paid", "date_completed", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return parse_datetime(value)

    @property
    def order_number(self) -> str:
        """Customer-facing order number (falls back to the order ID)."""
        return self.number or self.id

    @property
    def billing_email(self) -> Optional[str]:
        return self.billing.email

    @property
    def subtotal(self) -> float:
        """Sum of product line amounts before discounts."""
        return round(sum(item.subtotal for item in self.line_items), 2)

    @property
    def fees_total(self) -> float:
        return round(sum(fee.total for fee in self.fees), 2)

    @property
    def refund_total(self) -> float:
        return round(sum(refund.total for refund in self.refunds), 2)

    @property
    def is_paid(self) -> bool:
        return self.date_paid is not None or self.status in PAID_ORDER_STATUSES

    @property
    def has_shipping_address(self) -> bool:
        return self.shipping is not None and self.shipping.has_address

    @property
    def contact_name(self) -> str:
        """Billing name, or the billing email when no name was given."""
        name = " ".join(p for p in [self.billing.first_name, self.billing.last_name] if p).strip()
        return name or (self.billing.email or "")

    def get_meta(self, key: str) -> Any:
        return self.meta.get(key)

    def get_refund(self, refund_id: str) -> Optional[OrderRefund]:
        for refund in self.refunds:
            if refund.id == str(refund_id):
                return refund
        return None


# =============================================================================
# ZOHO BOOKS MODELS
# =============================================================================

class ZohoAddress(BaseModel):
    """Zoho contact address."""
    address: Optional[str] = None
    street2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip: Optional[str] = None
    country: Optional[str] = None


class ZohoContact(BaseModel):
    """Zoho Books contact (customer)."""
    contact_id: str
    contact_name: Optional[str] = None
    company_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    currency_code: Optional[str] = None
    contact_type: Optional[str] = None
    billing_address: Optional[ZohoAddress] = None
    shipping_address: Optional[ZohoAddress] = None

    @field_validator("contact_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)

    @property
    def display_name(self) -> Optional[str]:
        return self.contact_name or self.company_name


class ZohoInvoice(BaseModel):
    """Zoho Books invoice.

    List endpoints return a subset of the fields, so everything except the
    ID is optional and amounts default to zero.
    """
    invoice_id: str
    invoice_number: Optional[str] = None
    reference_number: Optional[str] = None
    customer_id: Optional[str] = None
    customer_name: Optional[str] = None
    status: Optional[str] = None
    date: Optional[str] = None
    currency_code: Optional[str] = None
    sub_total: float = 0.0
    shipping_charge: float = 0.0
    discount: float = 0.0
    tax_total: float = 0.0
    adjustment: float = 0.0
    total: float = 0.0
    balance: float = 0.0
    payment_made: float = 0.0
    credits_applied: float = 0.0

    @field_validator("invoice_id", "customer_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return None if value is None else str(value)

    @field_validator(
        "sub_total", "shipping_charge", "discount", "tax_total", "adjustment",
        "total", "balance", "payment_made", "credits_applied",
        mode="before",
    )
    @classmethod
    def coerce_amount(cls, value):
        return _to_amount(value)

    @field_validator("status", mode="before")
    @classmethod
    def normalise_status(cls, value):
        return value.lower() if isinstance(value, str) else value

    @property
    def amount_paid(self) -> float:
        """What the customer has settled so far."""
        return round(self.total - self.balance, 2)


class ZohoAppliedInvoice(BaseModel):
    """Invoice a payment was applied to."""
    invoice_id: str
    invoice_number: Optional[str] = None
    amount_applied: float = 0.0

    @field_validator("invoice_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)

    @field_validator("amount_applied", mode="before")
    @classmethod
    def coerce_amount(cls, value):
        return _to_amount(value)


class ZohoPayment(BaseModel):
    """Zoho Books customer payment."""
    payment_id: str
    payment_number: Optional[str] = None
    customer_id: Optional[str] = None
    date: Optional[str] = None
    amount: float = 0.0
    reference_number: Optional[str] = None
    payment_mode: Optional[str] = None
    invoices: List[ZohoAppliedInvoice] = Field(default_factory=list)

    @field_validator("payment_id", "customer_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return None if value is None else str(value)

    @field_validator("amount", mode="before")
    @classmethod
    def coerce_amount(cls, value):
        return _to_amount(value)


class ZohoCreditNote(BaseModel):
    """Zoho Books credit note."""
    creditnote_id: str
    creditnote_number: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    total: float = 0.0
    balance: float = 0.0

    @field_validator("creditnote_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)

    @field_validator("total", "balance", mode="before")
    @classmethod
    def coerce_amount(cls, value):
        return _to_amount(value)


class ZohoCreditNoteRefund(BaseModel):
    """Cash refund recorded against a credit note."""
    creditnote_refund_id: str
    amount: float = 0.0

    @field_validator("creditnote_refund_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)


class ZohoOrganization(BaseModel):
    """Zoho Books organization."""
    organization_id: str
    name: Optional[str] = None
    currency_code: Optional[str] = None

    @field_validator("organization_id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return str(value)


class PageContext(BaseModel):
    """Pagination block returned by Zoho list endpoints."""
    page: int = 1
    per_page: int = 200
    has_more_page: bool = False


class TokenGrant(BaseModel):
    """Result of an OAuth grant code exchange."""
    access_token: str
    refresh_token: str
    expires_in: int


# =============================================================================
# SYNC STATE MODELS
# =============================================================================

class SyncStatus(str, Enum):
    """Per-order sync state."""
    UNSYNCED = "unsynced"
    PENDING = "pending"
    SYNCED = "synced"
    DRAFT = "draft"
    FAILED = "failed"

    @property
    def label(self) -> str:
        return self.value.capitalize()


class RefundMapping(BaseModel):
    """Local refund -> Zoho credit note (and cash refund) link."""
    local_refund_id: str
    remote_refund_id: Optional[str] = None
    remote_credit_note_id: Optional[str] = None
    credit_note_number: Optional[str] = None
    created_at: Optional[datetime] = None


class SyncState(BaseModel):
    """Durable per-order checkpoint that makes re-syncing idempotent."""
    order_id: str
    status: SyncStatus = SyncStatus.UNSYNCED
    invoice_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_status: Optional[str] = None
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    payment_id: Optional[str] = None
    payment_number: Optional[str] = None
    retry_count: int = Field(default=0, ge=0)
    last_sync_attempt: Optional[datetime] = None
    last_error: Optional[str] = None
    refund_mappings: List[RefundMapping] = Field(default_factory=list)

    @field_validator("last_sync_attempt", mode="before")
    @classmethod
    def parse_dates(cls, value):
        return parse_datetime(value)

    @model_validator(mode="after")
    def check_invariants(self) -> "SyncState":
        """An invoice implies a synced/draft status; a payment implies an invoice."""
        if self.invoice_id and self.status not in (SyncStatus.SYNCED, SyncStatus.DRAFT):
            raise ValueError(
                f"Order {self.order_id} has invoice {self.invoice_id} "
                f"but status {self.status.value}"
            )
        if self.payment_id and not self.invoice_id:
            raise ValueError(f"Order {self.order_id} has a payment but no invoice")
        return self

    @property
    def is_synced(self) -> bool:
        return self.status in (SyncStatus.SYNCED, SyncStatus.DRAFT)

    def find_refund(self, local_refund_id: str) -> Optional[RefundMapping]:
        for mapping in self.refund_mappings:
            if mapping.local_refund_id == str(local_refund_id):
                return mapping
        return None


class OrderNote(BaseModel):
    """Audit note attached to an order."""
    id: Optional[int] = None
    order_id: str
    note: str
    created_at: datetime


# =============================================================================
# OPERATION RESULTS
# =============================================================================

@dataclass
class SyncResult:
    """Result of an order sync.

    ``error`` is set only when the whole operation failed. Best-effort steps
    that failed after the invoice was created are listed in ``warnings``.
    """
    success: bool
    status: SyncStatus
    invoice_id: Optional[str] = None
    contact_id: Optional[str] = None
    error: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def ok(
        cls,
        invoice_id: str,
        contact_id: Optional[str] = None,
        status: SyncStatus = SyncStatus.SYNCED,
        data: Optional[Dict[str, Any]] = None,
        warnings: Optional[List[str]] = None,
    ) -> "SyncResult":
        return cls(
            success=True,
            status=status,
            invoice_id=invoice_id,
            contact_id=contact_id,
            data=data or {},
            warnings=warnings or [],
        )

    @classmethod
    def failure(cls, error: str, data: Optional[Dict[str, Any]] = None) -> "SyncResult":
        return cls(success=False, status=SyncStatus.FAILED, error=error, data=data or {})

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "status": self.status.value,
            "invoice_id": self.invoice_id,
            "contact_id": self.contact_id,
            "error": self.error,
            "data": self.data,
            "warnings": self.warnings,
        }


@dataclass
class PaymentResult:
    """Result of applying an order payment to its invoice."""
    success: bool
    payment_id: Optional[str] = None
    payment_number: Optional[str] = None
    amount: Optional[float] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class RefundResult:
    """Result of pushing a refund as a credit note."""
    success: bool
    credit_note_id: Optional[str] = None
    credit_note_number: Optional[str] = None
    refund_id: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ConflictReport:
    """Read-only probe of what already exists remotely for an order."""
    order_currency: str
    has_conflict: bool = False
    invoice_id: Optional[str] = None
    contact_id: Optional[str] = None
    invoice_exists: bool = False
    contact_exists: bool = False
    currency_mismatch: bool = False
    contact_currency: Optional[str] = None


# =============================================================================
# RECONCILIATION MODELS
# =============================================================================

class DiscrepancyType(str, Enum):
    MISSING_IN_REMOTE = "missing_in_remote"
    MISSING_IN_LOCAL = "missing_in_local"
    AMOUNT_MISMATCH = "amount_mismatch"
    STATUS_MISMATCH = "status_mismatch"
    PAYMENT_MISMATCH = "payment_mismatch"
    REFUND_MISMATCH = "refund_mismatch"


class BreakdownComponent(BaseModel):
    """One component of an amount mismatch (local minus remote)."""
    model_config = ConfigDict(frozen=True)

    local: float
    remote: float
    diff: float


class _Discrepancy(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class MissingInRemote(_Discrepancy):
    """Order that should have an invoice but none was found."""
    type: Literal["missing_in_remote"] = "missing_in_remote"
    order_id: str
    order_number: str
    order_total: float
    order_status: str
    order_date: str


class MissingInLocal(_Discrepancy):
    """Invoice whose reference matches no local order."""
    type: Literal["missing_in_local"] = "missing_in_local"
    invoice_id: str
    invoice_number: Optional[str] = None
    reference_number: str
    invoice_total: float
    invoice_date: Optional[str] = None


class AmountMismatch(_Discrepancy):
    type: Literal["amount_mismatch"] = "amount_mismatch"
    order_id: str
    order_number: str
    order_total: float
    order_date: str
    invoice_id: str
    invoice_number: Optional[str] = None
    invoice_total: float
    invoice_date: Optional[str] = None
    difference: float
    breakdown: Dict[str, BreakdownComponent] = Field(default_factory=dict)


class StatusMismatch(_Discrepancy):
    type: Literal["status_mismatch"] = "status_mismatch"
    order_id: str
    order_number: str
    order_status: str
    order_date: str
    invoice_id: str
    invoice_number: Optional[str] = None
    invoice_status: str
    invoice_date: Optional[str] = None


class PaymentMismatch(_Discrepancy):
    type: Literal["payment_mismatch"] = "payment_mismatch"
    order_id: str
    order_number: str
    order_date: str
    local_paid: float
    remote_paid: float
    invoice_id: str
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    payment_ids: List[str] = Field(default_factory=list)


class RefundMismatch(_Discrepancy):
    type: Literal["refund_mismatch"] = "refund_mismatch"
    order_id: str
    order_number: str
    order_date: str
    local_refund_total: float
    remote_credits: float
    invoice_id: str
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None


DiscrepancyRecord = Annotated[
    Union[
        MissingInRemote,
        MissingInLocal,
        AmountMismatch,
        StatusMismatch,
        PaymentMismatch,
        RefundMismatch,
    ],
    Field(discriminator="type"),
]


class ReportStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class ReportFinalizedError(Exception):
    """Raised when a completed or failed report is modified."""
    pass


def empty_summary() -> Dict[str, Union[int, float]]:
    return {
        "total_local_orders": 0,
        "total_remote_invoices": 0,
        "matched_count": 0,
        "missing_in_remote": 0,
        "missing_in_local": 0,
        "amount_mismatches": 0,
        "status_mismatches": 0,
        "payment_mismatches": 0,
        "refund_mismatches": 0,
        "local_total_amount": 0.0,
        "remote_total_amount": 0.0,
        "amount_difference": 0.0,
    }


class ReconciliationReport(BaseModel):
    """Outcome of comparing local orders with Zoho invoices for a period.

    Built incrementally while the comparison runs and frozen once it is
    completed or failed.
    """
    id: Optional[int] = None
    period_start: date
    period_end: date
    status: ReportStatus = ReportStatus.RUNNING
    summary: Dict[str, Union[int, float]] = Field(default_factory=empty_summary)
    discrepancies: List[DiscrepancyRecord] = Field(default_factory=list)
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def is_final(self) -> bool:
        return self.status != ReportStatus.RUNNING

    @property
    def discrepancy_count(self) -> int:
        return len(self.discrepancies)

    def _ensure_mutable(self) -> None:
        if self.is_final:
            raise ReportFinalizedError(
                f"Report {self.id} is {self.status.value} and can no longer change"
            )

    def add_discrepancy(self, record: DiscrepancyRecord) -> None:
        self._ensure_mutable()
        self.discrepancies.append(record)

    def increment(self, key: str, by: int = 1) -> None:
        self._ensure_mutable()
        self.summary[key] = self.summary.get(key, 0) + by

    def set_summary(self, key: str, value: Union[int, float]) -> None:
        self._ensure_mutable()
        self.summary[key] = value

    def discrepancies_of(self, kind: DiscrepancyType) -> list:
        return [d for d in self.discrepancies if d.type == kind.value]

    def complete(self) -> None:
        self._ensure_mutable()
        self.status = ReportStatus.COMPLETED
        self.completed_at = utcnow()

    def fail(self, error: str) -> None:
        self._ensure_mutable()
        self.status = ReportStatus.FAILED
        self.error = error
        self.completed_at = utcnow()
