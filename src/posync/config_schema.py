"""Pydantic configuration schema for PO sync alerts.

This module defines the configuration schema that mirrors config.yaml structure.
All configuration is validated against these models on startup and hot-reload.

Usage:
    from posync.config_schema import AppConfig

    config = AppConfig(**yaml_data)
"""

from pydantic import BaseModel, Field, field_validator

# Current schema version - increment when adding new required fields
CURRENT_SCHEMA_VERSION = 1

# Short business subjects that unrelated customers routinely reuse. Threads are
# never merged on these subjects alone.
DEFAULT_GENERIC_SUBJECTS = [
    "rfq",
    "po",
    "purchase order",
    "quote",
    "quote request",
    "request for quote",
    "quotation",
    "invoice",
    "order",
    "new order",
    "order confirmation",
    "inquiry",
    "enquiry",
    "question",
    "thanks",
    "thank you",
    "hello",
    "hi",
    "update",
    "fyi",
    "status",
    "follow up",
    "follow-up",
    "followup",
    "reminder",
    "payment",
    "statement",
    "drawing",
    "drawings",
    "pricing",
    "price",
    "request",
    "info",
    "(no subject)",
]


class DatabaseConfig(BaseModel):
    """SQLite storage configuration."""

    path: str = Field(
        default="data/posync.db",
        description="Path to the SQLite database file",
    )

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        """Ensure database path doesn't contain path traversal."""
        if not v or not v.strip():
            raise ValueError("Database path cannot be empty")
        if ".." in v:
            raise ValueError("Database path cannot contain '..' (path traversal)")
        return v


class AccountingConfig(BaseModel):
    """Conductor (QuickBooks Desktop) API configuration.

    Leaving api_key or end_user_id empty runs the alert manager in degraded
    mode: alerts are created without customer or Sales Order details.
    """

    base_url: str = Field(
        default="https://api.conductor.is/v1",
        description="Conductor REST API base URL",
    )
    api_key: str = Field(default="", description="Conductor secret key")
    end_user_id: str = Field(default="", description="Conductor end-user ID")
    page_size: int = Field(default=150, ge=1, le=150, description="Records per page")
    max_customer_pages: int = Field(
        default=30,
        ge=1,
        le=200,
        description="Maximum pages fetched when listing customers",
    )
    max_document_pages: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum pages fetched per document type and customer",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, le=300)
    max_retries: int = Field(default=3, ge=0, le=10)
    requests_per_second: float = Field(default=5.0, gt=0, le=50)

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key and self.end_user_id)


class AlertsConfig(BaseModel):
    """Alert lifecycle configuration."""

    escalation_hours: float = Field(
        default=4.0,
        gt=0,
        le=720,
        description="Hours after detection before po_detected escalates to po_missing_so",
    )
    amount_tolerance: float = Field(
        default=0.05,
        ge=0,
        le=1,
        description="Relative tolerance when matching a PO total to a Sales Order total",
    )
    check_interval_minutes: int = Field(
        default=60,
        ge=1,
        le=1440,
        description="Minutes between scheduled escalation and resolution checks (watch mode)",
    )


class ThreadingConfig(BaseModel):
    """Thread resolution configuration."""

    min_specific_subject_length: int = Field(
        default=10,
        ge=0,
        le=200,
        description="Subjects must be longer than this to merge threads by subject",
    )
    generic_subjects: list[str] = Field(
        default_factory=lambda: list(DEFAULT_GENERIC_SUBJECTS),
        description="Normalized subjects never used for subject-based merging",
    )
    max_reference_hops: int = Field(
        default=2,
        ge=1,
        le=10,
        description="Reference-chain passes when expanding a window to full threads",
    )

    @field_validator("generic_subjects")
    @classmethod
    def normalize_generic_subjects(cls, v: list[str]) -> list[str]:
        return [s.strip().lower() for s in v if s and s.strip()]


class TrustConfig(BaseModel):
    """Trusted-domain filter configuration."""

    manual_domains: list[str] = Field(
        default_factory=list,
        description="Domains always trusted (in addition to sent-mail recipients)",
    )
    include_customer_domains: bool = Field(
        default=True,
        description="Trust the email domains of accounting-system customers",
    )

    @field_validator("manual_domains")
    @classmethod
    def normalize_domains(cls, v: list[str]) -> list[str]:
        return [d.strip().lower() for d in v if d and d.strip()]


class LoggingConfig(BaseModel):
    """Logging output configuration."""

    level: str = Field(default="INFO", description="DEBUG, INFO, WARNING or ERROR")
    json_output: bool = Field(default=True, description="JSON lines instead of console output")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
            raise ValueError(f"Unknown log level '{v}'")
        return level


class AppConfig(BaseModel):
    """Root configuration model."""

    schema_version: int = Field(default=CURRENT_SCHEMA_VERSION, ge=1)
    our_domain: str = Field(
        description="Our own email domain; senders on it are never treated as contacts",
    )
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    accounting: AccountingConfig = Field(default_factory=AccountingConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    threading: ThreadingConfig = Field(default_factory=ThreadingConfig)
    trust: TrustConfig = Field(default_factory=TrustConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("our_domain")
    @classmethod
    def validate_our_domain(cls, v: str) -> str:
        domain = v.strip().lower().lstrip("@")
        if not domain or "." not in domain:
            raise ValueError("our_domain must be a domain such as 'example.com'")
        return domain
