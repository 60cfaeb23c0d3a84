"""Constants and default values for Measure Library.

This module centralizes magic strings, default configurations and
lookup tables used throughout the application.
"""

from typing import Any

from measure_library.core.config import RetryConfig

# ==================== LINKING SENTINELS ====================

# Recorded as a data element's library_component_id when linking was skipped
# because the element carries no usable value set information.
UNLINKABLE_MARKER: str = "unlinkable"

# Marker written by older releases for the same situation
LEGACY_UNLINKABLE_MARKERS: frozenset[str] = frozenset({"__ZERO_CODES__"})

# Value set OIDs that mean "no OID"
PLACEHOLDER_OIDS: frozenset[str] = frozenset({"", "N/A", "n/a", "unknown"})

# ==================== COMPONENT STATUS ====================

STATUS_DRAFT: str = "draft"
STATUS_APPROVED: str = "approved"
STATUS_ARCHIVED: str = "archived"
STATUS_PENDING_REVIEW: str = "pending_review"

COMPONENT_STATUSES: tuple[str, ...] = (STATUS_DRAFT, STATUS_PENDING_REVIEW, STATUS_APPROVED, STATUS_ARCHIVED)

# ==================== CATEGORIES ====================

DEFAULT_CATEGORY: str = "clinical-observations"

COMPONENT_CATEGORIES: tuple[str, ...] = (
    "demographics",
    "encounters",
    "conditions",
    "procedures",
    "medications",
    "clinical-observations",
    "assessments",
    "laboratory",
    "exclusions",
)

# Data element type (from the ingestion pipeline) -> library category
ELEMENT_TYPE_CATEGORIES: dict[str, str] = {
    "demographic": "demographics",
    "encounter": "encounters",
    "diagnosis": "conditions",
    "procedure": "procedures",
    "medication": "medications",
    "observation": "clinical-observations",
    "assessment": "assessments",
}

# Remote store category spellings -> library category
REMOTE_CATEGORY_ALIASES: dict[str, str] = {
    "DEMOGRAPHICS": "demographics",
    "CONDITIONS": "conditions",
    "ENCOUNTERS": "encounters",
    "PROCEDURES": "procedures",
    "MEDICATIONS": "medications",
    "IMMUNIZATIONS": "medications",
    "immunizations": "medications",
    "OBSERVATIONS": "clinical-observations",
    "observations": "clinical-observations",
    "CLINICAL_OBSERVATIONS": "clinical-observations",
    "ASSESSMENTS": "assessments",
    "EXCLUSIONS": "exclusions",
    "LABORATORY": "laboratory",
}

# ==================== TIMING ====================

DEFAULT_TIMING: dict[str, Any] = {
    "operator": "during",
    "reference": "Measurement Period",
    "displayExpression": "during Measurement Period",
}

# Component fields whose change requires regenerating code text
CODE_AFFECTING_FIELDS: frozenset[str] = frozenset(
    {"value_set", "value_sets", "timing", "negation", "resource_type", "gender_value", "name", "children"}
)

# ==================== REMOTE STORE ====================

# HTTP status codes that should trigger a transport retry
RETRYABLE_STATUS_CODES: set[int] = {408, 429, 500, 502, 503, 504}

SYNC_OPERATIONS: tuple[str, ...] = ("create", "update", "delete")

# ==================== LOGGING DEFAULTS ====================

LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB max per log file
LOG_FILE_BACKUP_COUNT: int = 5  # Number of backup log files to keep

# ==================== DEFAULT CONFIG INSTANCES ====================

DEFAULT_RETRY = RetryConfig()
