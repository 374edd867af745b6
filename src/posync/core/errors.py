"""Custom exception types for PO sync alerts.

All exceptions follow the same message convention:
- What failed (specific operation or component)
- Why it failed (the specific condition)
- How to fix it (actionable guidance, where there is any)
"""


class PoSyncError(Exception):
    """Base exception for all PO sync errors."""

    pass


class ConfigValidationError(PoSyncError):
    """Raised when config.yaml fails Pydantic validation.

    Includes specific field errors with actionable messages.
    """

    pass


class ConfigLoadError(PoSyncError):
    """Raised when config.yaml cannot be loaded (file not found, YAML parse error)."""

    pass


class DatabaseError(PoSyncError):
    """Raised when SQLite operations fail."""

    pass


class AccountingAPIError(PoSyncError):
    """Raised when the accounting system (Conductor / QuickBooks) returns an error.

    Attributes:
        status_code: HTTP status code from the API (None for network failures)
        error_code: Error code from the API response (if available)
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        error_code: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.error_code = error_code


class AccountingUnavailableError(AccountingAPIError):
    """Raised when no accounting connection is configured.

    The alert manager treats this the same as any connectivity failure and
    falls back to its degraded behavior.
    """

    def __init__(self, message: str = "Accounting system is not configured"):
        super().__init__(message, status_code=None, error_code="unavailable")


class RateLimitExceeded(AccountingAPIError):
    """Raised when API rate limits are exceeded and cannot be recovered.

    This is raised when the rate limiter would require an excessive wait time
    (>20 seconds) rather than blocking indefinitely, or when Conductor keeps
    answering 429 after all retries. Callers handle it like any other
    accounting failure.
    """

    def __init__(self, message: str, status_code: int | None = 429):
        super().__init__(message, status_code=status_code, error_code="rate_limited")
