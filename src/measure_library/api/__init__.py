"""API module - remote component store access.

Provides:
- Resilience utilities (circuit breaker, retry with backoff)
- The HTTP client for the component endpoints
"""

from measure_library.api.resilience import (
    ErrorMessageHelper,
    RETRYABLE_EXCEPTIONS,
    CircuitBreaker,
    compute_backoff_delay,
    make_api_call_with_retry,
)

from measure_library.api.client import RemoteComponentClient

__all__ = [
    # Resilience
    'ErrorMessageHelper',
    'RETRYABLE_EXCEPTIONS',
    'CircuitBreaker',
    'compute_backoff_delay',
    'make_api_call_with_retry',
    # Client
    'RemoteComponentClient',
]
