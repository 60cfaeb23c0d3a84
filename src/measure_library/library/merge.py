"""
Merging duplicate atomic components.

A merge validates every precondition before touching anything, then writes
the new component and the archived inputs to the store in one transition.
Measures are re-pointed afterwards as a single validated batch.
"""

from __future__ import annotations

import copy
import logging
import uuid
from collections.abc import Iterable
from dataclasses import replace

from measure_library.core.constants import STATUS_ARCHIVED, STATUS_DRAFT
from measure_library.library.integrity import find_reference_violations
from measure_library.library.matcher import merge_codes, normalize_text
from measure_library.library.models import (
    AtomicComponent,
    ComponentMetadata,
    MergeResult,
    UsageInfo,
    VersionInfo,
    VersionRecord,
    usable_oid,
    utc_now,
)
from measure_library.library.store import ComponentStore
from measure_library.measures.collection import BatchUpdateResult, MeasureCollection
from measure_library.measures.models import DataElement, Measure, ValueSet, map_measure_elements


def union_value_sets(components: Iterable[AtomicComponent]) -> list[ValueSet]:
    """De-duplicated value sets of all components, by OID (by name when there is none).

    Codes of duplicates are folded into the first occurrence.
    """
    merged: dict[str, ValueSet] = {}
    for component in components:
        for value_set in component.all_value_sets():
            oid = usable_oid(value_set.oid)
            key = f"oid:{oid}" if oid else f"name:{normalize_text(value_set.name)}"
            if key == "name:" and not value_set.codes:
                continue
            existing = merged.get(key)
            if existing is None:
                merged[key] = copy.deepcopy(value_set)
            else:
                existing.codes = merge_codes(existing.codes, value_set.codes)
    return list(merged.values())


def new_merged_id() -> str:
    return f"merged-{uuid.uuid4().hex[:12]}"


class MergeEngine:
    """Collapses reviewer-selected duplicate atomics into one draft component."""

    def __init__(self, store: ComponentStore, logger: logging.Logger | None = None):
        self.store = store
        self.logger = logger or logging.getLogger(__name__)

    def validate(self, component_ids: list[str]) -> tuple[str | None, list[AtomicComponent]]:
        """Return ``(error, atomic inputs)``; ``error`` is None when the merge may proceed."""
        unique_ids = list(dict.fromkeys(component_ids))
        if len(unique_ids) < 2:
            return "At least two components are required to merge", []

        missing = [cid for cid in unique_ids if cid not in self.store]
        if missing:
            return f"Components not found: {', '.join(missing)}", []

        components = [self.store.get(cid) for cid in unique_ids]
        archived = [c.id for c in components if c.is_archived]
        if archived:
            return f"Archived components cannot be merged: {', '.join(archived)}", []

        atomics = [c for c in components if isinstance(c, AtomicComponent)]
        if len(atomics) < 2:
            return "At least two atomic components are required to merge", []
        return None, atomics

    def merge(
        self,
        component_ids: list[str],
        name: str | None = None,
        description: str | None = None,
        merged_by: str = "system",
        new_id: str | None = None,
    ) -> MergeResult:
        """Merge the given components. No state changes unless the result succeeds."""
        error, inputs = self.validate(component_ids)
        if error is not None:
            self.logger.warning(f"Merge rejected: {error}")
            return MergeResult(success=False, error=error)

        now = utc_now()
        primary = inputs[0]
        merged_id = new_id or new_merged_id()
        value_sets = union_value_sets(inputs)
        measure_ids: set[str] = set()
        tags: list[str] = []
        for component in inputs:
            measure_ids.update(component.usage.measure_ids)
            tags.extend(t for t in component.metadata.tags if t not in tags)

        input_names = ", ".join(c.name or c.id for c in inputs)
        usage = UsageInfo()
        usage.replace(measure_ids, now)
        merged = AtomicComponent(
            id=merged_id,
            name=name or primary.name,
            description=description if description is not None else f"Merged from: {input_names}",
            value_set=copy.deepcopy(value_sets[0]) if value_sets else None,
            value_sets=value_sets if len(value_sets) > 1 else [],
            timing=copy.deepcopy(primary.timing),
            negation=primary.negation,
            resource_type=primary.resource_type,
            gender_value=primary.gender_value,
            version_info=VersionInfo(
                version_id="1.0",
                status=STATUS_DRAFT,
                history=[
                    VersionRecord(
                        version_id="1.0",
                        status=STATUS_DRAFT,
                        created_at=now,
                        created_by=merged_by,
                        change_description=f"Merged from {len(inputs)} components: {input_names}",
                    )
                ],
            ),
            usage=usage,
            metadata=ComponentMetadata(
                category=primary.metadata.category,
                tags=tags,
                created_at=now,
                updated_at=now,
                created_by=merged_by,
                updated_by=merged_by,
            ),
        )

        archived = []
        for component in inputs:
            retired = copy.deepcopy(component)
            retired.version_info.status = STATUS_ARCHIVED
            retired.version_info.history.append(
                VersionRecord(
                    version_id=retired.version_info.version_id,
                    status=STATUS_ARCHIVED,
                    created_at=now,
                    created_by=merged_by,
                    change_description=f"Merged into {merged.name} ({merged_id})",
                )
            )
            retired.touch(merged_by)
            archived.append(retired)

        self.store.apply([merged, *archived])
        archived_ids = [c.id for c in archived]
        self.logger.info(f"Merged {', '.join(archived_ids)} into {merged_id} ({len(measure_ids)} measure(s))")
        return MergeResult(success=True, component=merged, archived_ids=archived_ids)

    def update_measure_references_after_merge(
        self, archived_ids: list[str], new_id: str, measures: MeasureCollection
    ) -> BatchUpdateResult:
        """Re-point every link to an archived input at ``new_id`` in one batch.

        Afterwards the whole collection is checked for dangling or archived
        links; mismatches are reported as diagnostics.
        """
        targets = set(archived_ids)

        def repoint(element: DataElement) -> DataElement:
            if element.library_component_id in targets:
                return replace(element, library_component_id=new_id)
            return element

        batch: dict[str, Measure] = {}
        for measure in measures.all():
            populations = map_measure_elements(measure, repoint)
            if any(new.criteria is not old.criteria for new, old in zip(populations, measure.populations, strict=True)):
                batch[measure.id] = replace(measure, populations=populations)

        result = measures.batch_update(batch)
        if not result.success:
            return result

        violations = find_reference_violations(measures.all(), self.store, logger=self.logger)
        result.diagnostics = [str(v) for v in violations]
        self.logger.info(f"Re-pointed {len(batch)} measure(s) from {', '.join(archived_ids)} to {new_id}")
        return result
