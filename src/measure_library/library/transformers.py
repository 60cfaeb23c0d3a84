"""
Conversions between remote store DTOs and library components.

The remote store speaks a flat atomic DTO on writes and a nested detail DTO
on reads; summaries from the listing endpoint carry only identity, status,
category and counts.
"""

from __future__ import annotations

import logging
from typing import Any

from measure_library.core.constants import (
    COMPONENT_CATEGORIES,
    DEFAULT_CATEGORY,
    DEFAULT_TIMING,
    REMOTE_CATEGORY_ALIASES,
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    STATUS_DRAFT,
    STATUS_PENDING_REVIEW,
)
from measure_library.library.models import (
    AtomicComponent,
    ComponentMetadata,
    ComponentReference,
    CompositeComponent,
    LibraryComponent,
    UsageInfo,
    VersionInfo,
    VersionRecord,
    usable_oid,
    utc_now,
)
from measure_library.measures.models import ClinicalCode, ValueSet

logger = logging.getLogger(__name__)


def map_category(category: str | None) -> str:
    """Normalize a remote category spelling to a library category."""
    if not category:
        return DEFAULT_CATEGORY
    if category in COMPONENT_CATEGORIES:
        return category
    mapped = REMOTE_CATEGORY_ALIASES.get(category)
    if mapped is None:
        logger.warning(f"Unknown category '{category}', defaulting to {DEFAULT_CATEGORY}")
        return DEFAULT_CATEGORY
    return mapped


def map_approval_status(status: str | None) -> str:
    normalized = (status or "").lower()
    if normalized in (STATUS_APPROVED, STATUS_ARCHIVED, STATUS_PENDING_REVIEW):
        return normalized
    return STATUS_DRAFT


def _initial_version_info(status: str, created_at: str | None = None, created_by: str | None = None) -> VersionInfo:
    return VersionInfo(
        version_id="1.0",
        status=status,
        history=[
            VersionRecord(
                version_id="1.0",
                status=status,
                created_at=created_at or utc_now(),
                created_by=created_by or "system",
                change_description="Initial version",
            )
        ],
    )


# ==================== REMOTE → LOCAL ====================


def component_from_summary(summary: dict[str, Any]) -> AtomicComponent:
    """Build a placeholder atomic component from a listing summary.

    Summaries carry a usage count but no measure ids; usage is left empty
    and filled in by the next usage index rebuild.
    """
    status = map_approval_status(summary.get("status"))
    category = map_category(summary.get("category"))
    now = utc_now()
    return AtomicComponent(
        id=str(summary["id"]),
        name=summary.get("name") or "",
        description=summary.get("description") or "",
        value_set=ValueSet(oid=None, name="Unknown", codes=[]),
        timing=dict(DEFAULT_TIMING),
        version_info=_initial_version_info(status),
        usage=UsageInfo(last_used_at=summary.get("updatedAt")),
        metadata=ComponentMetadata(category=category, created_at=now, updated_at=now),
    )


def _timing_from_dto(timing: dict[str, Any] | None) -> dict[str, Any]:
    if not timing:
        return dict(DEFAULT_TIMING)
    operator = timing.get("operator") or timing.get("type") or "during"
    result: dict[str, Any] = {
        "operator": operator,
        "reference": timing.get("reference") or "Measurement Period",
        "displayExpression": timing.get("displayExpression") or f"{operator} Measurement Period",
    }
    quantity = timing.get("quantity", timing.get("duration"))
    if quantity is not None:
        result["quantity"] = quantity
    if timing.get("unit"):
        result["unit"] = timing["unit"]
    if timing.get("position"):
        result["position"] = timing["position"]
    return result


def component_from_dto(dto: dict[str, Any]) -> LibraryComponent:
    """Convert a full component detail DTO into a library component."""
    raw_version = dto.get("versionInfo") or {}
    status = map_approval_status(raw_version.get("status") or dto.get("status"))
    now = utc_now()

    history = [
        VersionRecord(
            version_id=str(h.get("versionId", "1.0")),
            status=map_approval_status(h.get("status")),
            created_at=h.get("createdAt") or now,
            created_by=h.get("createdBy") or "system",
            change_description=h.get("changeDescription") or "",
        )
        for h in raw_version.get("versionHistory") or []
    ]
    version_info = VersionInfo(
        version_id=str(raw_version.get("versionId", "1.0")),
        status=status,
        history=history or _initial_version_info(status, dto.get("createdAt"), dto.get("createdBy")).history,
        approved_by=raw_version.get("approvedBy"),
        approved_at=raw_version.get("approvedAt"),
    )

    raw_usage = dto.get("usage") or {}
    usage = UsageInfo(
        measure_ids=sorted(set(raw_usage.get("measureIds") or [])),
        last_used_at=raw_usage.get("lastUsedAt"),
    )

    raw_metadata = dto.get("metadata") or {}
    metadata = ComponentMetadata(
        category=map_category(raw_metadata.get("category") or dto.get("category")),
        tags=list(raw_metadata.get("tags") or dto.get("tags") or []),
        created_at=dto.get("createdAt") or now,
        updated_at=dto.get("updatedAt") or now,
        created_by=dto.get("createdBy") or "system",
        updated_by=dto.get("updatedBy") or "system",
    )

    common = {
        "id": str(dto["id"]),
        "name": dto.get("name") or "",
        "description": dto.get("description") or "",
        "version_info": version_info,
        "usage": usage,
        "metadata": metadata,
    }

    if dto.get("type") == "composite":
        return CompositeComponent(
            **common,
            operator=str(dto.get("operator") or "AND").upper(),
            children=[
                ComponentReference(
                    component_id=str(child["id"]),
                    version_id=str(child.get("versionId", "1.0")),
                    display_name=child.get("name") or "",
                )
                for child in dto.get("childComponents") or []
            ],
        )

    raw_vs = dto.get("valueSet")
    if raw_vs:
        value_set = ValueSet(
            oid=usable_oid(raw_vs.get("oid")),
            name=raw_vs.get("name") or "Unknown",
            version=raw_vs.get("version") or None,
            codes=[ClinicalCode.from_dict(c) for c in raw_vs.get("codes") or []],
        )
    elif dto.get("valueSetOid") or dto.get("codes"):
        value_set = ValueSet(
            oid=usable_oid(dto.get("valueSetOid")),
            name=dto.get("valueSetName") or "Unknown",
            version=dto.get("valueSetVersion") or None,
            codes=[ClinicalCode.from_dict(c) for c in dto.get("codes") or []],
        )
    else:
        value_set = ValueSet(oid=None, name="Unknown", codes=[])

    return AtomicComponent(
        **common,
        value_set=value_set,
        timing=_timing_from_dto(dto.get("timing")),
        negation=bool(dto.get("negation", False)),
        resource_type=dto.get("resourceType"),
        gender_value=dto.get("genderValue"),
    )


# ==================== LOCAL → REMOTE ====================


def _timing_to_dto(timing: dict[str, Any] | None) -> dict[str, Any]:
    timing = timing or DEFAULT_TIMING
    return {
        "operator": timing.get("operator") or "during",
        "quantity": timing.get("quantity"),
        "unit": timing.get("unit"),
        "position": timing.get("position"),
        "reference": timing.get("reference") or "Measurement Period",
        "displayExpression": timing.get("displayExpression"),
    }


def component_to_atomic_dto(component: AtomicComponent) -> dict[str, Any]:
    """Flatten an atomic component into the remote create/update request."""
    value_set = component.value_set or ValueSet()
    oid = usable_oid(value_set.oid) or component.name or "unknown"
    dto: dict[str, Any] = {
        "id": component.id,
        "name": component.name,
        "description": component.description,
        "valueSetOid": oid,
        "valueSetName": value_set.name or component.name or "Unknown",
        "codes": [
            {"code": c.code, "system": c.system, "display": c.display}
            for c in value_set.codes
        ],
        "timing": _timing_to_dto(component.timing),
        "negation": component.negation,
        "category": component.metadata.category or "uncategorized",
        "status": component.status,
    }
    if value_set.version:
        dto["valueSetVersion"] = value_set.version
    if component.resource_type:
        dto["resourceType"] = component.resource_type
    if component.gender_value:
        dto["genderValue"] = component.gender_value
    if component.metadata.tags:
        dto["tags"] = list(component.metadata.tags)
    return dto


def component_to_composite_dto(component: CompositeComponent) -> dict[str, Any]:
    return {
        "id": component.id,
        "name": component.name,
        "description": component.description,
        "operator": component.operator,
        "children": [{"componentId": c.component_id, "versionId": c.version_id} for c in component.children],
        "category": component.metadata.category or "uncategorized",
        "status": component.status,
        "tags": list(component.metadata.tags),
    }


def component_to_dto(component: LibraryComponent) -> dict[str, Any]:
    if isinstance(component, CompositeComponent):
        return component_to_composite_dto(component)
    return component_to_atomic_dto(component)
