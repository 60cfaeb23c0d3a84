"""Custom exceptions for Measure Library.

All exception classes carry enough context to explain what went wrong
(which component, which remote operation) without inspecting tracebacks.
"""


class MeasureLibraryError(Exception):
    """Base exception for all Measure Library errors."""

    def __init__(self, message: str, details: str | None = None):
        self.message = message
        self.details = details
        super().__init__(self.message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigurationError(MeasureLibraryError):
    """Exception raised for configuration-related errors.

    Examples:
        - Missing remote store URL
        - Invalid numeric setting
    """

    def __init__(self, message: str, field: str | None = None, details: str | None = None):
        self.field = field
        super().__init__(message, details)


class RemoteStoreError(MeasureLibraryError):
    """Exception raised when a call against the remote component store fails.

    Wraps HTTP errors and network failures with context about
    the operation that failed.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        operation: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.status_code = status_code
        self.operation = operation
        self.original_error = original_error
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [self.message]
        if self.status_code:
            parts.append(f"HTTP {self.status_code}")
        if self.operation:
            parts.append(f"during {self.operation}")
        if self.details:
            parts.append(self.details)
        return " - ".join(parts)


class ValidationError(MeasureLibraryError):
    """Exception raised when a document cannot be turned into library models."""

    def __init__(self, message: str, item_type: str | None = None, details: str | None = None):
        self.item_type = item_type
        super().__init__(message, details)


class PersistenceError(MeasureLibraryError):
    """Exception raised when local state cannot be read or written.

    Examples:
        - Permission denied on the state directory
        - Disk full
    """

    def __init__(
        self,
        message: str,
        path: str | None = None,
        details: str | None = None,
        original_error: Exception | None = None,
    ):
        self.path = path
        self.original_error = original_error
        super().__init__(message, details)


class CircuitBreakerOpen(Exception):
    """Exception raised when circuit breaker is open and request is rejected."""

    def __init__(self, message: str = "Circuit breaker is open", time_until_retry: float = 0):
        self.message = message
        self.time_until_retry = time_until_retry
        super().__init__(self.message)


class RetryableHTTPError(Exception):
    """Exception raised when the remote store returns a retryable HTTP status code."""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")
