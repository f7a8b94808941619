"""Configuration management for the Zoho Books order sync.

Uses pydantic-settings to load configuration from environment variables
with validation and type coercion.
"""

from pathlib import Path
from typing import Dict, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    DATACENTERS,
    RATE_LIMIT_PER_MINUTE,
    RATE_LIMIT_WAIT_SECONDS,
    RECONCILIATION_FREQUENCIES,
    RETRY_MODES,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Zoho Books Configuration
    zoho_datacenter: str = Field(
        default="us",
        description="Zoho data center region (us, eu, in, au, jp, cn)"
    )
    zoho_organization_id: str = Field(
        ...,
        description="Zoho Books organization ID"
    )
    zoho_client_id: Optional[str] = Field(
        default=None,
        description="OAuth client ID (imported into the encrypted store on first run)"
    )
    zoho_client_secret: Optional[str] = Field(
        default=None,
        description="OAuth client secret (imported into the encrypted store on first run)"
    )
    zoho_refresh_token: Optional[str] = Field(
        default=None,
        description="OAuth refresh token (imported into the encrypted store on first run)"
    )

    # Secrets used to derive the credential encryption key
    encryption_key: Optional[str] = Field(
        default=None,
        description="Application secret used to derive the credential encryption key"
    )
    site_secret: Optional[str] = Field(
        default=None,
        description="Site-specific secret, used when no encryption key is set"
    )

    # Application Settings
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)"
    )
    database_path: Path = Field(
        default=Path("data/sync.db"),
        description="SQLite database file path"
    )
    log_file: Path = Field(
        default=Path("logs/sync.log"),
        description="Log file path"
    )

    # Rate Limiting
    rate_limit_per_minute: int = Field(
        default=RATE_LIMIT_PER_MINUTE,
        ge=1,
        le=1000,
        description="Maximum outbound API calls per minute"
    )
    rate_limit_wait_seconds: int = Field(
        default=RATE_LIMIT_WAIT_SECONDS,
        ge=0,
        le=300,
        description="How long a request waits for rate limit capacity"
    )

    # Sync Triggers (order status that causes each action)
    sync_trigger_draft: str = Field(
        default="processing",
        description="Order status that creates a draft invoice"
    )
    sync_trigger_submit: str = Field(
        default="completed",
        description="Order status that creates a submitted invoice"
    )
    sync_trigger_creditnote: str = Field(
        default="refunded",
        description="Order status that creates a credit note"
    )

    # Invoice Options
    invoice_use_reference_number: bool = Field(
        default=True,
        description="Use Zoho auto-numbering and store the order number as reference only"
    )
    invoice_mark_as_sent: bool = Field(
        default=True,
        description="Mark submitted invoices as sent after creation"
    )
    invoice_send_email: bool = Field(
        default=False,
        description="Ask Zoho to email the invoice to the customer on creation"
    )
    shipping_account_id: Optional[str] = Field(
        default=None,
        description="Zoho account ID for shipping charges"
    )
    item_mappings: Dict[str, str] = Field(
        default_factory=dict,
        description="Local product ID to Zoho item ID"
    )

    # Payment Options
    payment_account_mapping: Dict[str, str] = Field(
        default_factory=dict,
        description="Payment method slug to Zoho deposit account ID"
    )
    payment_fee_account_mapping: Dict[str, str] = Field(
        default_factory=dict,
        description="Payment method slug to Zoho bank charges expense account ID"
    )
    payment_mode_mapping: Dict[str, str] = Field(
        default_factory=dict,
        description="Payment method slug to Zoho payment mode (overrides defaults)"
    )

    # Refund Options
    refund_create_cash_refund: bool = Field(
        default=True,
        description="Record a cash refund against the credit note"
    )
    refund_account_id: Optional[str] = Field(
        default=None,
        description="Zoho account ID the cash refund is paid from"
    )

    # Retry Policy
    retry_mode: str = Field(
        default="max_retries",
        description="Retry mode: max_retries, indefinite or manual"
    )
    retry_max_count: int = Field(
        default=5,
        ge=1,
        le=100,
        description="Maximum automatic retries in max_retries mode"
    )
    retry_backoff_minutes: int = Field(
        default=15,
        ge=1,
        le=1440,
        description="Base backoff, doubled for every retry already made"
    )
    retry_max_delay_minutes: int = Field(
        default=1440,
        ge=1,
        le=43200,
        description="Upper bound on the computed backoff delay"
    )
    retry_batch_size: int = Field(
        default=10,
        ge=1,
        le=500,
        description="Failed orders examined per retry run"
    )
    health_check_ttl_seconds: int = Field(
        default=300,
        ge=0,
        le=3600,
        description="How long a connection health probe result is cached"
    )

    # Reconciliation
    reconciliation_tolerance: float = Field(
        default=0.05,
        ge=0.0,
        le=100.0,
        description="Amount difference tolerated before flagging a mismatch"
    )
    reconciliation_frequency: str = Field(
        default="weekly",
        description="Reconciliation schedule: daily, weekly or monthly"
    )
    reconciliation_day_of_week: int = Field(
        default=1,
        ge=0,
        le=6,
        description="Weekly run day (0 = Sunday)"
    )
    reconciliation_day_of_month: int = Field(
        default=1,
        ge=1,
        le=28,
        description="Monthly run day"
    )
    reconciliation_auto_link: bool = Field(
        default=False,
        description="Link matched remote invoices to unsynced local orders"
    )

    # Performance Tuning
    bulk_sync_delay: float = Field(
        default=0.1,
        ge=0.0,
        le=5.0,
        description="Delay between orders during bulk sync (seconds)"
    )
    request_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a request that times out or fails to connect"
    )

    @field_validator("zoho_datacenter")
    @classmethod
    def validate_datacenter(cls, v: str) -> str:
        """Ensure the data center is a known region."""
        v = v.lower().strip()
        if v not in DATACENTERS:
            raise ValueError(f"Datacenter must be one of: {sorted(DATACENTERS)}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        v = v.upper()
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    @field_validator("retry_mode")
    @classmethod
    def validate_retry_mode(cls, v: str) -> str:
        v = v.lower()
        if v not in RETRY_MODES:
            raise ValueError(f"Retry mode must be one of: {RETRY_MODES}")
        return v

    @field_validator("reconciliation_frequency")
    @classmethod
    def validate_frequency(cls, v: str) -> str:
        v = v.lower()
        if v not in RECONCILIATION_FREQUENCIES:
            raise ValueError(f"Frequency must be one of: {RECONCILIATION_FREQUENCIES}")
        return v

    @field_validator("sync_trigger_draft", "sync_trigger_submit", "sync_trigger_creditnote")
    @classmethod
    def strip_status_prefix(cls, v: str) -> str:
        """Accept statuses written with the commerce store's 'wc-' prefix."""
        v = v.strip().lower()
        return v[3:] if v.startswith("wc-") else v

    @property
    def zoho_api_url(self) -> str:
        """Get the Zoho Books API base URL for the configured region."""
        return f"{DATACENTERS[self.zoho_datacenter]}/books/v3"

    @property
    def zoho_accounts_url(self) -> str:
        """Get the Zoho accounts (OAuth) URL for the configured region."""
        return accounts_url_for(self.zoho_datacenter)

    @property
    def sync_statuses(self) -> list:
        """Order statuses that should have produced an invoice."""
        statuses = [s for s in (self.sync_trigger_draft, self.sync_trigger_submit) if s]
        return statuses or ["processing", "completed"]


def accounts_url_for(datacenter: str) -> str:
    """Map a data center to its OAuth host (www.zohoapis.eu -> accounts.zoho.eu)."""
    api_host = DATACENTERS.get(datacenter, DATACENTERS["us"])
    return api_host.replace("www.zohoapis", "accounts.zoho")


def get_settings() -> Settings:
    """Get application settings singleton.

    Returns:
        Settings: Application settings loaded from environment
    """
    return Settings()
