"""Logging helpers for Measure Library."""

import atexit
import contextlib
import json
import logging
import os
import re
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

from measure_library.core.constants import LOG_FILE_BACKUP_COUNT, LOG_FILE_MAX_BYTES

_LOG_RECORD_RESERVED_FIELDS = set(logging.makeLogRecord({}).__dict__.keys()) | {"message", "asctime", "extra_fields"}
_REDACTED_VALUE = "[REDACTED]"
_SENSITIVE_FIELD_PARTS = {"token", "secret", "password", "authorization", "apikey"}
_SENSITIVE_KEY_VALUE_PATTERN = re.compile(
    r"""(?ix)
    (?P<key>["']?(?:api[_-]?token|access[_-]?token|token|secret|password|authorization|api[_-]?key)["']?)
    (?P<separator>\s*[:=]\s*)
    (?P<value>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*'|[^,\s;}\]]+)
    """
)
_BEARER_PATTERN = re.compile(r"(?i)\b(bearer)\s+([A-Za-z0-9._~+/=-]+)")


def _safe_record_message(record: logging.LogRecord) -> str:
    try:
        return record.getMessage()
    except Exception:
        return f"{getattr(record, 'msg', '')} [log-message-format-error]"


def _is_sensitive_field(name: str) -> bool:
    normalized = re.sub(r"[^a-z0-9]+", "_", name.lower()).strip("_")
    parts = set(normalized.split("_"))
    return bool(parts & _SENSITIVE_FIELD_PARTS) or normalized.endswith("api_key")


def _redact_key_value(match: re.Match[str]) -> str:
    value = match.group("value")
    if len(value) >= 2 and value[0] in {"'", '"'} and value[-1] == value[0]:
        redacted = f"{value[0]}{_REDACTED_VALUE}{value[0]}"
    else:
        redacted = _REDACTED_VALUE
    return f"{match.group('key')}{match.group('separator')}{redacted}"


def redact_message(message: str) -> str:
    """Mask bearer tokens and ``token=...`` style values in a log message."""
    redacted = _BEARER_PATTERN.sub(lambda m: f"{m.group(1)} {_REDACTED_VALUE}", message)
    return _SENSITIVE_KEY_VALUE_PATTERN.sub(_redact_key_value, redacted)


class SensitiveDataFilter(logging.Filter):
    """Best-effort redaction for sensitive values in log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.msg = redact_message(_safe_record_message(record))
        record.args = ()
        for key in list(record.__dict__):
            if key in _LOG_RECORD_RESERVED_FIELDS or key.startswith("_"):
                continue
            if _is_sensitive_field(key):
                record.__dict__[key] = _REDACTED_VALUE
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging output.

    Each log record is a single JSON object on one line.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_message(_safe_record_message(record)),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
            "thread_name": record.threadName,
        }

        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _LOG_RECORD_RESERVED_FIELDS or key.startswith("_"):
                continue
            log_entry.setdefault(key, _REDACTED_VALUE if _is_sensitive_field(key) else value)

        return json.dumps(log_entry, default=str)


_atexit_registered = False


def setup_logging(
    log_level: str | None = None,
    log_format: str = "text",
    log_dir: Path | str | None = None,
) -> logging.Logger:
    """Setup logging to console and, optionally, a rotating log file.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format - "text" (default) or "json" for structured logging
        log_dir: Directory for the log file; console only when None

    Returns:
        Configured package logger

    Priority: 1) Passed parameter, 2) Environment variable LOG_LEVEL, 3) Default INFO
    """
    global _atexit_registered

    if not _atexit_registered:
        atexit.register(logging.shutdown)
        _atexit_registered = True

    if log_level is None:
        log_level = os.environ.get("LOG_LEVEL", "INFO")

    valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
    if log_level.upper() not in valid_levels:
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)
        log_level = "INFO"
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)

    log_file = None
    if log_dir is not None:
        log_dir = Path(log_dir)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            timestamp = datetime.now(UTC).strftime("%Y%m%d_%H%M%S")
            log_file = log_dir / f"measure_library_{timestamp}.log"
        except OSError as e:
            print(f"Warning: Cannot create logs directory: {e}. Logging to console only.", file=sys.stderr)

    for handler in logging.root.handlers[:]:
        handler.close()
        logging.root.removeHandler(handler)

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if log_file is not None:
        handlers.append(RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES, backupCount=LOG_FILE_BACKUP_COUNT))

    if log_format.lower() == "json":
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    for handler in handlers:
        handler.setFormatter(formatter)
        handler.setLevel(numeric_level)
        handler.addFilter(SensitiveDataFilter())
        logging.root.addHandler(handler)
    logging.root.setLevel(numeric_level)

    logger = logging.getLogger("measure_library")
    logger.propagate = True
    logger.setLevel(logging.NOTSET)

    if log_file is not None:
        logger.info(f"Logging initialized. Log file: {log_file}")
    else:
        logger.debug("Logging initialized. Console output only.")

    for handler in logging.root.handlers:
        with contextlib.suppress(Exception):
            handler.flush()

    return logger
