"""Error taxonomy shared by the loaders, the signal builders and the screener."""

from typing import Any, Dict, Optional


class TrendScreenError(Exception):
    """Base class for all application errors."""


class ConfigurationError(TrendScreenError):
    """Missing or invalid settings. Fatal at process start."""


class ProviderError(TrendScreenError):
    """Non-retryable failure from the price/fundamentals provider (4xx other than 408/429)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Network reset, timeout, 5xx, 408 or 429. Safe to retry."""


class RetryExhaustedError(TrendScreenError):
    """Raised when all retry attempts are exhausted."""

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"All {attempts} retry attempts exhausted"
        if last_error:
            message += f": {last_error}"
        super().__init__(message)


class DataQualityError(TrendScreenError):
    """A single record is malformed and must be rejected (the batch continues)."""

    def __init__(self, message: str, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message)


class InvalidFilterError(TrendScreenError):
    """Screener filter input rejected before any query is built."""

    status_code = 400
    error_code = "INVALID_FILTER"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ScreenerQueryError(TrendScreenError):
    """Downstream failure while running the screener; never carries SQL text."""

    status_code = 503
    error_code = "DATABASE_ERROR"

    def __init__(self, message: str = "Screener query failed"):
        self.message = message
        super().__init__(message)
