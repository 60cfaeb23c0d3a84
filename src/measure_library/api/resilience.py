"""API resilience utilities for Measure Library.

This module provides error handling, circuit breaker, and retry logic
for communication with the remote component store.
"""

import logging
import random
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from measure_library.core.config import CircuitBreakerConfig, CircuitState, RetryConfig
from measure_library.core.constants import DEFAULT_RETRY, RETRYABLE_STATUS_CODES
from measure_library.core.exceptions import CircuitBreakerOpen, RetryableHTTPError

T = TypeVar("T")


class ErrorMessageHelper:
    """Provides contextual error messages with actionable suggestions."""

    @staticmethod
    def get_http_error_message(status_code: int, operation: str = "remote call") -> str:
        """Get detailed error message with suggestions for HTTP status codes."""
        messages = {
            400: {
                "title": "Bad Request",
                "reason": "The component payload was rejected by the remote store",
                "suggestions": [
                    "Check that the component has a value set OID or name",
                    "Verify codes carry both 'code' and 'system'",
                ],
            },
            401: {
                "title": "Authentication Failed",
                "reason": "The API token is missing, invalid or expired",
                "suggestions": [
                    "Set MEASURE_LIBRARY_API_TOKEN in the environment or .env file",
                    "Request a new token from the measure service administrator",
                ],
            },
            403: {
                "title": "Access Forbidden",
                "reason": "The token does not allow writing to the component library",
                "suggestions": ["Ask an administrator to grant library write access"],
            },
            404: {
                "title": "Component Not Found",
                "reason": "The component does not exist on the remote store",
                "suggestions": [
                    "The component may only exist locally; it is created on the next successful sync",
                    "Run 'measure-library load' to refresh the local catalogue",
                ],
            },
            409: {
                "title": "Conflict",
                "reason": "The remote store holds a conflicting version of the component",
                "suggestions": ["Reload the catalogue and re-apply the change"],
            },
            429: {
                "title": "Rate Limit Exceeded",
                "reason": "Too many requests were sent to the remote store",
                "suggestions": ["Wait a few minutes, then run 'measure-library retry-sync'"],
            },
            500: {
                "title": "Internal Server Error",
                "reason": "The remote store encountered an error",
                "suggestions": [
                    "This is typically temporary; pending changes are kept and retried",
                    "If persistent, check the measure service logs",
                ],
            },
            502: {
                "title": "Bad Gateway",
                "reason": "Upstream server error or network issue",
                "suggestions": ["Wait a few minutes and run 'measure-library retry-sync'"],
            },
            503: {
                "title": "Service Unavailable",
                "reason": "The remote store is temporarily unavailable",
                "suggestions": ["The service may be restarting; pending changes are kept locally"],
            },
            504: {
                "title": "Gateway Timeout",
                "reason": "The request took too long to complete",
                "suggestions": ["Increase MEASURE_LIBRARY_TIMEOUT or retry later"],
            },
        }

        error_info = messages.get(
            status_code,
            {
                "title": f"HTTP {status_code}",
                "reason": "An unexpected HTTP error occurred",
                "suggestions": ["Check the remote store URL (MEASURE_LIBRARY_API_URL)", "Review logs for more details"],
            },
        )

        output = [
            f"{'=' * 60}",
            f"HTTP {status_code}: {error_info['title']}",
            f"{'=' * 60}",
            f"Operation: {operation}",
            "",
            "Why this happened:",
            f"  {error_info['reason']}",
            "",
            "How to fix it:",
        ]
        for i, suggestion in enumerate(error_info["suggestions"], 1):
            output.append(f"  {i}. {suggestion}")
        return "\n".join(output)

    @staticmethod
    def get_network_error_message(error: Exception, operation: str = "operation") -> str:
        """Get detailed message for network-related errors."""
        error_type = type(error).__name__

        messages = {
            "ConnectionError": {
                "reason": "Cannot establish a connection to the remote component store",
                "suggestions": [
                    "Check that MEASURE_LIBRARY_API_URL points at a running service",
                    "Local changes are kept and retried with 'measure-library retry-sync'",
                ],
            },
            "Timeout": {
                "reason": "The request exceeded the configured timeout",
                "suggestions": ["Increase MEASURE_LIBRARY_TIMEOUT", "Retry when the service is less busy"],
            },
            "ReadTimeout": {
                "reason": "The remote store accepted the connection but did not answer in time",
                "suggestions": ["Increase MEASURE_LIBRARY_TIMEOUT"],
            },
            "ConnectTimeout": {
                "reason": "The remote store could not be reached in time",
                "suggestions": ["Check network connectivity and the service URL"],
            },
            "SSLError": {
                "reason": "SSL/TLS certificate verification failed",
                "suggestions": ["Update certificates: pip install --upgrade certifi"],
            },
        }

        error_info = messages.get(
            error_type,
            {
                "reason": "A network error occurred",
                "suggestions": ["Check your network connection", "Try again in a few moments"],
            },
        )

        output = [
            f"{'=' * 60}",
            f"Network Error: {error_type}",
            f"{'=' * 60}",
            f"During: {operation}",
            f"Error details: {error!s}",
            "",
            "Why this happened:",
            f"  {error_info['reason']}",
            "",
            "How to fix it:",
        ]
        for i, suggestion in enumerate(error_info["suggestions"], 1):
            output.append(f"  {i}. {suggestion}")
        return "\n".join(output)


# Exceptions that should trigger a retry (transient errors).
# requests' ConnectionError and Timeout derive from OSError.
RETRYABLE_EXCEPTIONS: tuple[type, ...] = (
    ConnectionError,
    TimeoutError,
    OSError,
    RetryableHTTPError,
)


class CircuitBreaker:
    """
    Thread-safe circuit breaker guarding the remote component store.

    - CLOSED: remote sync calls flow through
    - OPEN: the store failed ``failure_threshold`` calls in a row; sync
      attempts fail fast with CircuitBreakerOpen and stay in the sync queue
    - HALF_OPEN: the pause elapsed; trial calls check whether the store is back

    CLOSED → OPEN after ``failure_threshold`` consecutive failures,
    OPEN → HALF_OPEN once ``timeout_seconds`` have passed, HALF_OPEN → CLOSED
    after ``success_threshold`` successful trial calls and HALF_OPEN → OPEN on
    any failed trial call.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        logger: logging.Logger | None = None,
        endpoint: str = "remote component store",
    ):
        self.config = config or CircuitBreakerConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.endpoint = endpoint

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: float | None = None
        self._last_error: str | None = None
        self._last_state_change_time = time.time()
        self._lock = threading.Lock()

        self._total_requests = 0
        self._total_failures = 0
        self._total_rejections = 0
        self._trips = 0

    @property
    def state(self) -> CircuitState:
        """Get current circuit state (thread-safe)."""
        with self._lock:
            return self._state

    @property
    def is_paused(self) -> bool:
        """True while remote sync calls are being rejected."""
        return self.state == CircuitState.OPEN

    def allow_request(self) -> bool:
        """
        Check whether a remote call may go out.

        Moves OPEN → HALF_OPEN once the pause has elapsed.
        """
        with self._lock:
            self._total_requests += 1

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._last_failure_time is not None:
                    elapsed = time.time() - self._last_failure_time
                    if elapsed >= self.config.timeout_seconds:
                        self._transition_to(CircuitState.HALF_OPEN)
                        self.logger.info(f"Retrying {self.endpoint} after a {elapsed:.0f}s pause")
                        return True
                self._total_rejections += 1
                return False

            return True

    def record_success(self) -> None:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                self._failure_count = 0
            elif self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
                    self.logger.info(
                        f"{self.endpoint} answered {self._success_count} trial call(s); remote sync resumed"
                    )
                    self._failure_count = 0
                    self._success_count = 0
                    self._last_error = None

    def record_failure(self, exception: Exception | None = None) -> None:
        with self._lock:
            self._failure_count += 1
            self._total_failures += 1
            self._last_failure_time = time.time()
            if exception is not None:
                self._last_error = str(exception)

            if self._state == CircuitState.CLOSED:
                if self._failure_count >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)
                    self._trips += 1
                    detail = f" (last error: {self._last_error})" if self._last_error else ""
                    self.logger.warning(
                        f"{self.endpoint} failed {self._failure_count} call(s) in a row{detail}; "
                        f"pausing remote sync for {self.config.timeout_seconds:.0f}s. "
                        f"Local changes keep queuing."
                    )
            elif self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                self._success_count = 0
                self.logger.warning(
                    f"Trial call to {self.endpoint} failed; pausing remote sync for another "
                    f"{self.config.timeout_seconds:.0f}s"
                )

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state (must be called within lock)."""
        old_state = self._state
        self._state = new_state
        self._last_state_change_time = time.time()
        if old_state != new_state:
            self.logger.debug(f"Circuit for {self.endpoint}: {old_state.value} → {new_state.value}")

    def time_until_retry(self) -> float:
        with self._lock:
            if self._state != CircuitState.OPEN or self._last_failure_time is None:
                return 0.0
            return max(0.0, self.config.timeout_seconds - (time.time() - self._last_failure_time))

    def get_statistics(self) -> dict[str, Any]:
        """Get circuit breaker statistics."""
        until_retry = self.time_until_retry()
        with self._lock:
            return {
                "endpoint": self.endpoint,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "success_count": self._success_count,
                "last_error": self._last_error,
                "total_requests": self._total_requests,
                "total_failures": self._total_failures,
                "total_rejections": self._total_rejections,
                "trips": self._trips,
                "time_in_state_seconds": time.time() - self._last_state_change_time,
                "time_until_retry_seconds": until_retry,
            }

    def reset(self) -> None:
        """Close the circuit so the next sync attempt reaches the store immediately."""
        with self._lock:
            if self._state != CircuitState.CLOSED:
                self.logger.info(f"Remote sync pause for {self.endpoint} lifted manually")
            self._state = CircuitState.CLOSED
            self._failure_count = 0
            self._success_count = 0
            self._last_failure_time = None
            self._last_state_change_time = time.time()


def compute_backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    exponential_base: int = 2,
    jitter: bool = False,
) -> float:
    """Exponential backoff delay for a zero-based attempt number.

    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    if jitter: delay = delay * random.uniform(0.5, 1.5)
    """
    delay = min(base_delay * (exponential_base ** max(attempt, 0)), max_delay)
    if jitter:
        delay = delay * random.uniform(0.5, 1.5)
    return delay


def _log_final_failure(logger: logging.Logger, error: Exception, operation_name: str) -> None:
    if isinstance(error, RetryableHTTPError):
        logger.error("\n" + ErrorMessageHelper.get_http_error_message(error.status_code, operation=operation_name))
    else:
        logger.error("\n" + ErrorMessageHelper.get_network_error_message(error, operation=operation_name))


def make_api_call_with_retry(
    api_func: Callable[..., T],
    *args: Any,
    retry_config: RetryConfig | None = None,
    logger: logging.Logger | None = None,
    operation_name: str = "remote call",
    circuit_breaker: CircuitBreaker | None = None,
    **kwargs: Any,
) -> T:
    """
    Execute a remote call with retry logic and optional circuit breaker.

    Args:
        api_func: The function to call
        *args: Positional arguments to pass to the function
        retry_config: Transport retry policy (defaults to a single attempt)
        logger: Logger instance for retry messages
        operation_name: Human-readable name for logging
        circuit_breaker: Optional circuit breaker for failure protection
        **kwargs: Keyword arguments to pass to the function

    Raises:
        CircuitBreakerOpen: If circuit breaker is open and rejecting requests
        The last exception if all retries fail
    """
    _logger = logger or logging.getLogger(__name__)
    cfg = retry_config or DEFAULT_RETRY

    if circuit_breaker is not None and not circuit_breaker.allow_request():
        wait = circuit_breaker.time_until_retry()
        raise CircuitBreakerOpen(
            f"Circuit breaker is open for {operation_name} (will retry in {wait:.1f}s)",
            time_until_retry=wait,
        )

    for attempt in range(cfg.max_retries + 1):
        try:
            result = api_func(*args, **kwargs)

            status_code = getattr(result, "status_code", None)
            if status_code is not None and status_code in RETRYABLE_STATUS_CODES:
                raise RetryableHTTPError(status_code, f"Retryable status from {operation_name}")

            if attempt > 0:
                _logger.info(f"✓ {operation_name} succeeded on attempt {attempt + 1}/{cfg.max_retries + 1}")
            if circuit_breaker is not None:
                circuit_breaker.record_success()
            return result
        except RETRYABLE_EXCEPTIONS as e:
            if attempt == cfg.max_retries:
                if cfg.max_retries > 0:
                    _logger.error(f"All {cfg.max_retries + 1} attempts failed for {operation_name}")
                _log_final_failure(_logger, e, operation_name)
                if circuit_breaker is not None:
                    circuit_breaker.record_failure(e)
                raise

            delay = compute_backoff_delay(attempt, cfg.base_delay, cfg.max_delay, cfg.exponential_base, cfg.jitter)
            _logger.warning(
                f"⚠ {operation_name} attempt {attempt + 1}/{cfg.max_retries + 1} failed: {e!s}. "
                f"Retrying in {delay:.1f}s..."
            )
            time.sleep(delay)
        except Exception as e:
            _logger.error(f"{operation_name} failed with non-retryable error: {e!s}")
            if circuit_breaker is not None:
                circuit_breaker.record_failure(e)
            raise

    raise RuntimeError(f"Retry loop exited unexpectedly for {operation_name}")
