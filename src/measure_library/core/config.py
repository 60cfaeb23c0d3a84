"""Configuration dataclasses for Measure Library.

These dataclasses centralize all configuration options for type safety
and easy testing. They can be created from environment variables,
command-line arguments, or used directly in code.
"""

from __future__ import annotations

import argparse
import logging
import math
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from measure_library.core.exceptions import ConfigurationError


@dataclass
class RetryConfig:
    """Configuration for transport-level retry of a single remote call.

    Attributes:
        max_retries: Retry attempts after the first call (default: 0, fail fast)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 30.0)
        exponential_base: Multiplier for exponential backoff (default: 2)
        jitter: Add randomization to delays (default: True)
    """

    max_retries: int = 0
    base_delay: float = 1.0
    max_delay: float = 30.0
    exponential_base: int = 2
    jitter: bool = True


@dataclass
class SyncConfig:
    """Configuration for the pending-sync queue.

    Attributes:
        max_sync_retries: Failed attempts after which an entry is abandoned (default: 3)
        backoff_base_delay: Delay before the first retry of a failed entry, in seconds
        backoff_max_delay: Upper bound for the retry delay, in seconds
        background: Run remote calls on a worker thread instead of inline
    """

    max_sync_retries: int = 3
    backoff_base_delay: float = 1.0
    backoff_max_delay: float = 300.0
    background: bool = True


@dataclass
class RemoteConfig:
    """Connection settings for the remote component store.

    Attributes:
        base_url: API root, e.g. ``https://measures.example.org/api``
        timeout_seconds: Per-request timeout (connect + read)
        api_token: Optional bearer token
    """

    base_url: str = "http://localhost:8080/api"
    timeout_seconds: float = 15.0
    api_token: str | None = None


class CircuitState(Enum):
    """States for the circuit breaker pattern."""

    CLOSED = "closed"  # Normal operation, requests flow through
    OPEN = "open"  # Circuit tripped, requests fail fast
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker pattern.

    Attributes:
        failure_threshold: Consecutive failures before opening circuit (default: 5)
        success_threshold: Successes in half-open to close circuit (default: 2)
        timeout_seconds: Time before attempting recovery (open→half-open) (default: 30)
    """

    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0


@dataclass
class PersistenceConfig:
    """Configuration for the local key-value state file.

    Attributes:
        enabled: Persist the catalogue and sync queue after every transition
        state_dir: Directory holding the state file
        namespace: Key prefix for every persisted entry
        schema_version: Bumping this discards state written by older versions
    """

    enabled: bool = True
    state_dir: Path = field(default_factory=lambda: Path.home() / ".measure_library" / "state")
    namespace: str = "component-library"
    schema_version: int = 3


@dataclass
class LogConfig:
    """Configuration for logging behavior.

    Attributes:
        level: Logging level string (default: "INFO")
    """

    level: str = "INFO"


def _parse_env_numeric(value: str | None, cast) -> Any | None:
    """Parse an environment value, returning None when invalid."""
    if value is None:
        return None
    try:
        parsed = cast(value)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, float) and not math.isfinite(parsed):
        return None
    return parsed


@dataclass
class LibraryConfig:
    """Master configuration for the component library engine."""

    remote: RemoteConfig = field(default_factory=RemoteConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    circuit_breaker: CircuitBreakerConfig | None = field(default_factory=CircuitBreakerConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    log: LogConfig = field(default_factory=LogConfig)

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None, load_env_file: bool = True) -> LibraryConfig:
        """Build configuration from environment variables.

        A ``.env`` file in the working directory is loaded first when
        python-dotenv is installed. Invalid numeric values are ignored with
        a warning and the default is kept.
        """
        logger = logging.getLogger(__name__)
        if load_env_file:
            _bootstrap_dotenv(logger)
        env = os.environ if environ is None else environ

        config = cls()
        if env.get("MEASURE_LIBRARY_API_URL"):
            config.remote.base_url = env["MEASURE_LIBRARY_API_URL"].rstrip("/")
        if env.get("MEASURE_LIBRARY_API_TOKEN"):
            config.remote.api_token = env["MEASURE_LIBRARY_API_TOKEN"]

        timeout = _parse_env_numeric(env.get("MEASURE_LIBRARY_TIMEOUT"), float)
        if timeout is not None and timeout > 0:
            config.remote.timeout_seconds = timeout
        elif "MEASURE_LIBRARY_TIMEOUT" in env:
            logger.warning(
                f"Ignoring invalid MEASURE_LIBRARY_TIMEOUT={env.get('MEASURE_LIBRARY_TIMEOUT')!r}; "
                f"using default {config.remote.timeout_seconds}"
            )

        max_sync_retries = _parse_env_numeric(env.get("MEASURE_LIBRARY_MAX_SYNC_RETRIES"), int)
        if max_sync_retries is not None and max_sync_retries >= 1:
            config.sync.max_sync_retries = max_sync_retries
        elif "MEASURE_LIBRARY_MAX_SYNC_RETRIES" in env:
            logger.warning(
                f"Ignoring invalid MEASURE_LIBRARY_MAX_SYNC_RETRIES="
                f"{env.get('MEASURE_LIBRARY_MAX_SYNC_RETRIES')!r}; using default {config.sync.max_sync_retries}"
            )

        if env.get("MEASURE_LIBRARY_STATE_DIR"):
            config.persistence.state_dir = Path(env["MEASURE_LIBRARY_STATE_DIR"]).expanduser()
        if env.get("LOG_LEVEL"):
            config.log.level = env["LOG_LEVEL"].upper()
        return config

    @classmethod
    def from_args(cls, args: argparse.Namespace, base: LibraryConfig | None = None) -> LibraryConfig:
        """Overlay parsed command-line arguments onto a base configuration.

        Raises:
            ConfigurationError: A numeric argument is out of range
        """
        timeout = getattr(args, "timeout", None)
        if timeout is not None and (not math.isfinite(timeout) or timeout <= 0):
            raise ConfigurationError("--timeout must be positive", field="timeout", details=str(timeout))
        config = base or cls.from_env()
        if getattr(args, "api_url", None):
            config.remote.base_url = args.api_url.rstrip("/")
        if timeout:
            config.remote.timeout_seconds = args.timeout
        if getattr(args, "state_dir", None):
            config.persistence.state_dir = Path(args.state_dir).expanduser()
        if getattr(args, "log_level", None):
            config.log.level = args.log_level
        # CLI commands wait for their own remote calls
        config.sync.background = False
        return config


def _bootstrap_dotenv(logger: logging.Logger) -> None:
    """Load .env variables if python-dotenv is available."""
    try:
        from dotenv import load_dotenv
    except ImportError:
        logger.debug("python-dotenv not installed (.env files will not be auto-loaded)")
        return

    try:
        if load_dotenv():
            logger.debug(".env file found and loaded")
        else:
            logger.debug(".env file not found (python-dotenv available but no .env file)")
    except Exception as e:
        logger.debug(f"Failed to load .env via python-dotenv: {e}")
