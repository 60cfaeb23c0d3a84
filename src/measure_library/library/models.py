"""
Component library data models.

Components are stored in an arena keyed by stable id; measures only hold
``library_component_id`` references into it. Atomic components wrap a single
clinical rule fragment (value set, timing, negation); composite components
combine other components with AND/OR.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Union

from measure_library.core.constants import (
    DEFAULT_CATEGORY,
    PLACEHOLDER_OIDS,
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    STATUS_DRAFT,
    UNLINKABLE_MARKER,
)
from measure_library.core.exceptions import ValidationError
from measure_library.measures.models import ClinicalCode, Measure, ValueSet


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string."""
    return datetime.now(UTC).isoformat()


def usable_oid(oid: str | None) -> str | None:
    """Return ``oid`` stripped, or None for blank and placeholder values."""
    if oid is None:
        return None
    oid = oid.strip()
    return None if oid in PLACEHOLDER_OIDS else oid


# ==================== VERSIONING ====================


@dataclass
class VersionRecord:
    """One entry of a component's version history."""

    version_id: str
    status: str
    created_at: str = field(default_factory=utc_now)
    created_by: str = "system"
    change_description: str = ""
    superseded_by: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "versionId": self.version_id,
            "status": self.status,
            "createdAt": self.created_at,
            "createdBy": self.created_by,
            "changeDescription": self.change_description,
        }
        if self.superseded_by:
            data["supersededBy"] = self.superseded_by
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> VersionRecord:
        return cls(
            version_id=str(data.get("versionId", "1.0")),
            status=data.get("status", STATUS_DRAFT),
            created_at=data.get("createdAt") or utc_now(),
            created_by=data.get("createdBy") or "system",
            change_description=data.get("changeDescription") or "",
            superseded_by=data.get("supersededBy"),
        )


@dataclass
class VersionInfo:
    """Current version, status and history of a component."""

    version_id: str = "1.0"
    status: str = STATUS_DRAFT
    history: list[VersionRecord] = field(default_factory=list)
    approved_by: str | None = None
    approved_at: str | None = None

    def mark_current(self, status: str, superseded_by: str | None = None) -> None:
        """Set the status and stamp it on the history record(s) of the current version."""
        self.status = status
        current = [r for r in self.history if r.version_id == self.version_id]
        if not current:
            current = [VersionRecord(version_id=self.version_id, status=status)]
            self.history.extend(current)
        for record in current:
            record.status = status
            if superseded_by:
                record.superseded_by = superseded_by

    def last_active_status(self) -> str:
        """Most recent non-archived status in the history, defaulting to approved."""
        for record in reversed(self.history):
            if record.status != STATUS_ARCHIVED:
                return record.status
        return STATUS_APPROVED

    def to_dict(self) -> dict[str, Any]:
        return {
            "versionId": self.version_id,
            "status": self.status,
            "versionHistory": [r.to_dict() for r in self.history],
            "approvedBy": self.approved_by,
            "approvedAt": self.approved_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> VersionInfo:
        data = data or {}
        return cls(
            version_id=str(data.get("versionId", "1.0")),
            status=data.get("status", STATUS_DRAFT),
            history=[VersionRecord.from_dict(r) for r in data.get("versionHistory") or []],
            approved_by=data.get("approvedBy"),
            approved_at=data.get("approvedAt"),
        )


# ==================== USAGE ====================


@dataclass
class UsageInfo:
    """Which measures reference a component.

    ``usage_count`` is derived from ``measure_ids`` so the two can never disagree.
    """

    measure_ids: list[str] = field(default_factory=list)
    last_used_at: str | None = None

    @property
    def usage_count(self) -> int:
        return len(self.measure_ids)

    def replace(self, measure_ids: set[str] | list[str], now: str | None = None) -> bool:
        """Overwrite the measure set. Returns True when it changed.

        ``last_used_at`` moves only when the set changes to a non-empty value,
        so replacing with the same set twice leaves the record untouched.
        """
        new_ids = sorted(set(measure_ids))
        if new_ids == self.measure_ids:
            return False
        self.measure_ids = new_ids
        if new_ids:
            self.last_used_at = now or utc_now()
        return True

    def add(self, measure_id: str, now: str | None = None) -> bool:
        if measure_id in self.measure_ids:
            return False
        return self.replace([*self.measure_ids, measure_id], now)

    def remove(self, measure_id: str) -> bool:
        if measure_id not in self.measure_ids:
            return False
        return self.replace([m for m in self.measure_ids if m != measure_id])

    def to_dict(self) -> dict[str, Any]:
        return {
            "measureIds": list(self.measure_ids),
            "usageCount": self.usage_count,
            "lastUsedAt": self.last_used_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> UsageInfo:
        data = data or {}
        return cls(measure_ids=sorted(set(data.get("measureIds") or [])), last_used_at=data.get("lastUsedAt"))


# ==================== DERIVED ASSESSMENTS ====================


@dataclass
class ComplexityScore:
    """How much review effort a component needs: ``low``, ``medium`` or ``high``."""

    level: str
    score: int
    factors: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"level": self.level, "score": self.score, "factors": dict(self.factors)}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ComplexityScore | None:
        if not data:
            return None
        return cls(
            level=str(data.get("level", "low")),
            score=int(data.get("score", 0)),
            factors=dict(data.get("factors") or {}),
        )


@dataclass
class OIDValidationStatus:
    """Result of checking a value set OID's format and catalogue membership."""

    status: str
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    in_catalog: bool = False
    catalog_name: str | None = None
    validated_at: str = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "inCatalog": self.in_catalog, "validatedAt": self.validated_at}
        if self.errors:
            data["errors"] = list(self.errors)
        if self.warnings:
            data["warnings"] = list(self.warnings)
        if self.catalog_name:
            data["catalogName"] = self.catalog_name
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> OIDValidationStatus | None:
        if not data:
            return None
        return cls(
            status=str(data.get("status", "unknown")),
            errors=list(data.get("errors") or []),
            warnings=list(data.get("warnings") or []),
            in_catalog=bool(data.get("inCatalog", False)),
            catalog_name=data.get("catalogName"),
            validated_at=data.get("validatedAt") or utc_now(),
        )


# ==================== METADATA ====================


@dataclass
class ComponentMetadata:
    category: str = DEFAULT_CATEGORY
    tags: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    created_by: str = "system"
    updated_by: str = "system"
    category_auto_assigned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "category": self.category,
            "tags": list(self.tags),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "createdBy": self.created_by,
            "updatedBy": self.updated_by,
            "categoryAutoAssigned": self.category_auto_assigned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ComponentMetadata:
        data = data or {}
        now = utc_now()
        return cls(
            category=data.get("category") or DEFAULT_CATEGORY,
            tags=list(data.get("tags") or []),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
            created_by=data.get("createdBy") or "system",
            updated_by=data.get("updatedBy") or "system",
            category_auto_assigned=bool(data.get("categoryAutoAssigned", False)),
        )


# ==================== COMPONENTS ====================


@dataclass
class Component:
    """Fields shared by atomic and composite components."""

    id: str
    name: str = ""
    description: str = ""
    version_info: VersionInfo = field(default_factory=VersionInfo)
    usage: UsageInfo = field(default_factory=UsageInfo)
    metadata: ComponentMetadata = field(default_factory=ComponentMetadata)
    generated_code: Any = None
    complexity: ComplexityScore | None = None

    kind = "component"

    @property
    def status(self) -> str:
        return self.version_info.status

    @property
    def is_archived(self) -> bool:
        return self.version_info.status == STATUS_ARCHIVED

    def touch(self, updated_by: str | None = None) -> None:
        self.metadata.updated_at = utc_now()
        if updated_by:
            self.metadata.updated_by = updated_by

    def _base_dict(self) -> dict[str, Any]:
        return {
            "type": self.kind,
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "versionInfo": self.version_info.to_dict(),
            "usage": self.usage.to_dict(),
            "metadata": self.metadata.to_dict(),
            "generatedCode": self.generated_code,
            "complexity": self.complexity.to_dict() if self.complexity is not None else None,
        }

    def to_dict(self) -> dict[str, Any]:
        return self._base_dict()

    @staticmethod
    def _base_kwargs(data: dict[str, Any]) -> dict[str, Any]:
        if not data.get("id"):
            raise ValidationError("Component is missing 'id'", item_type="component")
        return {
            "id": str(data["id"]),
            "name": data.get("name") or "",
            "description": data.get("description") or "",
            "version_info": VersionInfo.from_dict(data.get("versionInfo")),
            "usage": UsageInfo.from_dict(data.get("usage")),
            "metadata": ComponentMetadata.from_dict(data.get("metadata")),
            "generated_code": data.get("generatedCode"),
            "complexity": ComplexityScore.from_dict(data.get("complexity")),
        }


@dataclass
class AtomicComponent(Component):
    """A single rule fragment: value set + timing + negation.

    ``value_sets`` is only populated for merged components and holds every
    value set folded into them; ``value_set`` is always the primary one.
    """

    value_set: ValueSet | None = None
    value_sets: list[ValueSet] = field(default_factory=list)
    timing: dict[str, Any] | None = None
    negation: bool = False
    resource_type: str | None = None
    gender_value: str | None = None
    oid_validation: OIDValidationStatus | None = None

    kind = "atomic"

    def all_value_sets(self) -> list[ValueSet]:
        if self.value_sets:
            return list(self.value_sets)
        return [self.value_set] if self.value_set is not None else []

    @property
    def codes(self) -> list[ClinicalCode]:
        return list(self.value_set.codes) if self.value_set is not None else []

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update(
            {
                "valueSet": self.value_set.to_dict() if self.value_set is not None else None,
                "valueSets": [vs.to_dict() for vs in self.value_sets],
                "timing": dict(self.timing) if self.timing is not None else None,
                "negation": self.negation,
                "resourceType": self.resource_type,
                "genderValue": self.gender_value,
                "oidValidation": self.oid_validation.to_dict() if self.oid_validation is not None else None,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AtomicComponent:
        return cls(
            **cls._base_kwargs(data),
            value_set=ValueSet.from_dict(data.get("valueSet")),
            value_sets=[ValueSet.from_dict(vs) for vs in data.get("valueSets") or []],
            timing=data.get("timing"),
            negation=bool(data.get("negation", False)),
            resource_type=data.get("resourceType"),
            gender_value=data.get("genderValue"),
            oid_validation=OIDValidationStatus.from_dict(data.get("oidValidation")),
        )


@dataclass
class ComponentReference:
    """Child pointer of a composite component."""

    component_id: str
    version_id: str = "1.0"
    display_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"componentId": self.component_id, "versionId": self.version_id, "displayName": self.display_name}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ComponentReference:
        return cls(
            component_id=str(data["componentId"]),
            version_id=str(data.get("versionId", "1.0")),
            display_name=data.get("displayName") or "",
        )


@dataclass
class CompositeComponent(Component):
    """AND/OR combination of other library components."""

    operator: str = "AND"
    children: list[ComponentReference] = field(default_factory=list)

    kind = "composite"

    def to_dict(self) -> dict[str, Any]:
        data = self._base_dict()
        data.update({"operator": self.operator, "children": [c.to_dict() for c in self.children]})
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CompositeComponent:
        return cls(
            **cls._base_kwargs(data),
            operator=str(data.get("operator", "AND")).upper(),
            children=[ComponentReference.from_dict(c) for c in data.get("children") or []],
        )


LibraryComponent = Union[AtomicComponent, CompositeComponent]


def component_from_dict(data: dict[str, Any]) -> LibraryComponent:
    """Deserialize either variant based on the ``type`` discriminator."""
    if data.get("type") == "composite":
        return CompositeComponent.from_dict(data)
    return AtomicComponent.from_dict(data)


# ==================== SYNC QUEUE ====================


class SyncState(Enum):
    """Lifecycle of a queued remote operation. Synced entries leave the queue."""

    PENDING = "pending"
    RETRYING = "retrying"
    ABANDONED = "abandoned"


@dataclass
class PendingSyncEntry:
    """A remote create/update/delete that failed and awaits retry.

    ``retry_count`` counts failed attempts; ``timestamp`` is the epoch time of
    the last failure (or of the local mutation that reset the entry).
    """

    component_id: str
    operation: str
    retry_count: int = 0
    last_error: str | None = None
    timestamp: float = 0.0

    def state(self, max_retries: int) -> SyncState:
        if self.retry_count >= max_retries:
            return SyncState.ABANDONED
        if self.retry_count > 0:
            return SyncState.RETRYING
        return SyncState.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "componentId": self.component_id,
            "operation": self.operation,
            "retryCount": self.retry_count,
            "lastError": self.last_error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PendingSyncEntry:
        return cls(
            component_id=str(data["componentId"]),
            operation=data.get("operation", "update"),
            retry_count=int(data.get("retryCount", 0)),
            last_error=data.get("lastError"),
            timestamp=float(data.get("timestamp", 0.0)),
        )


# ==================== LINKING OUTCOMES ====================


@dataclass(frozen=True)
class Linked:
    """The element now references ``component_id``; ``created`` when a new draft was made."""

    component_id: str
    created: bool = False


@dataclass(frozen=True)
class Unlinkable:
    """The element has a value set but nothing usable in it (no OID, name or codes)."""


@dataclass(frozen=True)
class Skipped:
    """The element carries no value set information at all and was left alone."""


LinkOutcome = Union[Linked, Unlinkable, Skipped]


@dataclass
class LinkResult:
    """Outcome of linking one measure against the catalogue.

    ``measure`` is the measure with links and back-filled codes applied.
    """

    measure_id: str
    outcomes: dict[str, LinkOutcome] = field(default_factory=dict)
    composite_outcomes: dict[str, Linked] = field(default_factory=dict)
    measure: Measure | None = None

    @property
    def created_ids(self) -> list[str]:
        return [o.component_id for o in self.outcomes.values() if isinstance(o, Linked) and o.created]

    @property
    def linked_count(self) -> int:
        return sum(1 for o in self.outcomes.values() if isinstance(o, Linked))

    @property
    def unlinkable_ids(self) -> list[str]:
        return [element_id for element_id, o in self.outcomes.items() if isinstance(o, Unlinkable)]

    def to_link_map(self) -> dict[str, str]:
        """``element id -> component id | "unlinkable"``; skipped elements are omitted."""
        link_map: dict[str, str] = {}
        for element_id, outcome in self.outcomes.items():
            if isinstance(outcome, Linked):
                link_map[element_id] = outcome.component_id
            elif isinstance(outcome, Unlinkable):
                link_map[element_id] = UNLINKABLE_MARKER
        return link_map


# ==================== OPERATION RESULTS ====================


@dataclass
class OperationResult:
    """Reviewer-facing result of delete/archive style commands."""

    success: bool
    error: str | None = None
    measure_ids: list[str] = field(default_factory=list)
    backend_deleted: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error:
            data["error"] = self.error
        if self.measure_ids:
            data["measureIds"] = list(self.measure_ids)
        if self.backend_deleted is not None:
            data["backendDeleted"] = self.backend_deleted
        return data


@dataclass
class MergeResult:
    success: bool
    error: str | None = None
    component: AtomicComponent | None = None
    archived_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.error:
            data["error"] = self.error
        if self.component is not None:
            data["component"] = self.component.to_dict()
        if self.archived_ids:
            data["archivedIds"] = list(self.archived_ids)
        return data
