"""Core module - Foundation components with no internal dependencies.

This module provides the basic building blocks used throughout the application:
- Version information
- Custom exceptions
- Configuration dataclasses
- Constants and defaults
- Logging setup
"""

from measure_library.core.version import __version__

from measure_library.core.exceptions import (
    MeasureLibraryError,
    ConfigurationError,
    RemoteStoreError,
    ValidationError,
    PersistenceError,
    CircuitBreakerOpen,
    RetryableHTTPError,
)

from measure_library.core.config import (
    RetryConfig,
    SyncConfig,
    RemoteConfig,
    CircuitState,
    CircuitBreakerConfig,
    PersistenceConfig,
    LogConfig,
    LibraryConfig,
)

from measure_library.core.constants import (
    UNLINKABLE_MARKER,
    LEGACY_UNLINKABLE_MARKERS,
    STATUS_DRAFT,
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    DEFAULT_CATEGORY,
    RETRYABLE_STATUS_CODES,
)

from measure_library.core.logging import setup_logging

__all__ = [
    # Version
    '__version__',
    # Exceptions
    'MeasureLibraryError',
    'ConfigurationError',
    'RemoteStoreError',
    'ValidationError',
    'PersistenceError',
    'CircuitBreakerOpen',
    'RetryableHTTPError',
    # Config dataclasses
    'RetryConfig',
    'SyncConfig',
    'RemoteConfig',
    'CircuitState',
    'CircuitBreakerConfig',
    'PersistenceConfig',
    'LogConfig',
    'LibraryConfig',
    # Constants
    'UNLINKABLE_MARKER',
    'LEGACY_UNLINKABLE_MARKERS',
    'STATUS_DRAFT',
    'STATUS_APPROVED',
    'STATUS_ARCHIVED',
    'DEFAULT_CATEGORY',
    'RETRYABLE_STATUS_CODES',
    # Logging
    'setup_logging',
]
