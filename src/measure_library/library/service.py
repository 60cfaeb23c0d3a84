"""
Component library service.

``ComponentLibraryService`` owns the component store and its derived state
(usage, pending sync, persisted snapshot) and is the only place that
mutates them. Every command applies its local change synchronously and
then hands the remote call to the sync dispatcher; remote failures end up
in the sync queue and never fail the local command.
"""

from __future__ import annotations

import copy
import logging
import re
import threading
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import Any

from tqdm import tqdm

from measure_library.api.client import RemoteComponentClient
from measure_library.api.resilience import CircuitBreaker
from measure_library.core.config import LibraryConfig
from measure_library.core.constants import (
    CODE_AFFECTING_FIELDS,
    DEFAULT_TIMING,
    STATUS_APPROVED,
    STATUS_ARCHIVED,
    STATUS_DRAFT,
    UNLINKABLE_MARKER,
)
from measure_library.core.exceptions import CircuitBreakerOpen, RemoteStoreError
from measure_library.library.categories import category_for_element_type, infer_category
from measure_library.library.complexity import (
    calculate_atomic_complexity,
    calculate_composite_complexity,
    score_catalogue,
)
from measure_library.library.integrity import (
    MeasureValidationReport,
    find_reference_violations,
    validate_measure,
)
from measure_library.library.matcher import AtomicFragment, CompositeFragment, Matcher, merge_codes
from measure_library.library.merge import MergeEngine
from measure_library.library.models import (
    AtomicComponent,
    ComplexityScore,
    ComponentMetadata,
    CompositeComponent,
    LibraryComponent,
    Linked,
    LinkResult,
    MergeResult,
    OperationResult,
    Skipped,
    Unlinkable,
    UsageInfo,
    VersionInfo,
    VersionRecord,
    usable_oid,
    utc_now,
)
from measure_library.library.oid_validation import build_oid_validation_status
from measure_library.library.persistence import LibraryStateStore
from measure_library.library.store import ComponentStore
from measure_library.library.sync import RetrySummary, SyncDispatcher, SyncQueue, push_component
from measure_library.library.transformers import component_from_dto, component_from_summary
from measure_library.library.usage import UsageIndex, UsageRebuildResult
from measure_library.measures.collection import BatchUpdateResult, MeasureCollection
from measure_library.measures.models import (
    ClinicalCode,
    DataElement,
    Measure,
    ValueSet,
    iter_composite_candidates,
    iter_measure_elements,
    map_measure_elements,
)

CodeGenerator = Callable[[LibraryComponent, list[LibraryComponent]], Any]

_SLUG_PATTERN = re.compile(r"[^a-z0-9]+")

# Fields update_component accepts besides metadata
_ATOMIC_FIELDS = frozenset({"name", "description", "value_set", "timing", "negation", "resource_type", "gender_value"})
_COMPOSITE_FIELDS = frozenset({"name", "description", "operator", "children"})
_METADATA_FIELDS = frozenset({"category", "tags"})

SHARED_EDIT_ACTIONS = ("update_all", "create_version")


def slugify(text: str, max_length: int = 60) -> str:
    slug = _SLUG_PATTERN.sub("-", (text or "").lower()).strip("-")
    return slug[:max_length].rstrip("-") or "component"


def bump_version(version_id: str) -> str:
    """``1.0`` -> ``1.1``; unparseable versions restart at ``1.1``."""
    try:
        return f"{float(version_id) + 0.1:.1f}"
    except (TypeError, ValueError):
        return "1.1"


@dataclass
class LoadResult:
    """Outcome of ``load_from_api``."""

    success: bool
    loaded: int = 0
    summary_fallbacks: list[str] = field(default_factory=list)
    error: str | None = None


class ComponentLibraryService:
    """Command/query interface over the component library.

    Args:
        config: Library configuration (defaults to ``LibraryConfig()``)
        client: Remote store client; without one, changes stay local and are
            queued as pending
        measures: The measure collection usage is derived from
        code_generator: Optional callable producing code text for a component
        oid_catalog: Known value set OIDs mapped to their names, used to
            validate the OIDs of atomic components
        state_store: Local persistence; None disables it
        logger: Logger instance
    """

    def __init__(
        self,
        config: LibraryConfig | None = None,
        client: RemoteComponentClient | None = None,
        measures: MeasureCollection | None = None,
        code_generator: CodeGenerator | None = None,
        state_store: LibraryStateStore | None = None,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] | None = None,
        oid_catalog: Mapping[str, str] | None = None,
    ):
        self.config = config or LibraryConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.client = client
        self.measures = measures if measures is not None else MeasureCollection(logger=self.logger)
        self.code_generator = code_generator
        self.state_store = state_store
        self.oid_catalog = oid_catalog

        self.store = ComponentStore(logger=self.logger)
        self.matcher = Matcher(logger=self.logger)
        self.usage_index = UsageIndex(matcher=self.matcher, logger=self.logger)
        queue_kwargs = {"clock": clock} if clock is not None else {}
        self.sync_queue = SyncQueue(self.config.sync, logger=self.logger, **queue_kwargs)
        self.dispatcher = SyncDispatcher(background=self.config.sync.background, logger=self.logger)
        self.merge_engine = MergeEngine(self.store, logger=self.logger)

        self._lock = threading.RLock()
        self.is_loading = False
        self.api_error: str | None = None

    @classmethod
    def from_config(
        cls,
        config: LibraryConfig,
        measures: MeasureCollection | None = None,
        code_generator: CodeGenerator | None = None,
        logger: logging.Logger | None = None,
    ) -> ComponentLibraryService:
        """Build a service with an HTTP client and local persistence, and restore saved state."""
        logger = logger or logging.getLogger(__name__)
        breaker = (
            CircuitBreaker(config.circuit_breaker, logger=logger, endpoint=config.remote.base_url)
            if config.circuit_breaker
            else None
        )
        client = RemoteComponentClient(config.remote, config.retry, circuit_breaker=breaker, logger=logger)
        state_store = LibraryStateStore(config.persistence, logger=logger) if config.persistence.enabled else None
        service = cls(
            config=config,
            client=client,
            measures=measures,
            code_generator=code_generator,
            state_store=state_store,
            logger=logger,
        )
        service.load_state()
        return service

    # ==================== PERSISTENCE ====================

    def load_state(self) -> int:
        """Restore the persisted catalogue and sync queue. Returns the component count."""
        if self.state_store is None:
            return 0
        components = self.state_store.load_components()
        pending = self.state_store.load_pending_sync()
        with self._lock:
            if components:
                self.store.set_components(components, source="local state")
            self.sync_queue.load(pending)
        self.logger.info(f"Restored {len(components)} component(s) and {len(pending)} pending sync entr(ies)")
        return len(components)

    def save_state(self) -> None:
        if self.state_store is None:
            return
        with self._lock:
            self.state_store.save(self.store.all(), self.sync_queue.entries())

    # ==================== QUERIES ====================

    def get(self, component_id: str) -> LibraryComponent | None:
        return self.store.get(component_id)

    def components(self) -> list[LibraryComponent]:
        return self.store.all()

    def get_by_status(self, status: str) -> list[LibraryComponent]:
        return [c for c in self.store.all() if c.status == status]

    def get_category_counts(self) -> dict[str, int]:
        """Number of non-archived components per category."""
        return dict(Counter(c.metadata.category for c in self.store.all() if not c.is_archived))

    def search(
        self,
        query: str | None = None,
        category: str | None = None,
        statuses: Iterable[str] | None = None,
        show_archived: bool = False,
        sort_by: str = "name",
        descending: bool = False,
    ) -> list[LibraryComponent]:
        """Filter and sort the catalogue. Archived components always sort last."""
        results = self.store.all()
        if category:
            results = [c for c in results if c.metadata.category == category]
        statuses = list(statuses or [])
        if statuses:
            results = [c for c in results if c.status in statuses]
        if not show_archived:
            results = [c for c in results if not c.is_archived]
        if query:
            needle = query.lower()
            results = [c for c in results if needle in _search_text(c)]

        sort_keys: dict[str, Callable[[LibraryComponent], Any]] = {
            "name": lambda c: c.name.lower(),
            "usage": lambda c: c.usage.usage_count,
            "status": lambda c: c.status,
            "date": lambda c: c.metadata.created_at,
        }
        key = sort_keys.get(sort_by, sort_keys["name"])
        results.sort(key=key, reverse=descending)
        # stable sort keeps the requested order within each group
        results.sort(key=lambda c: c.is_archived)
        return results

    def get_sync_status(self) -> dict[str, Any]:
        status = self.sync_queue.status()
        breaker = self.client.circuit_breaker if self.client is not None else None
        if breaker is not None:
            status["circuit_state"] = breaker.state.value
            status["remote_paused_seconds"] = round(breaker.time_until_retry(), 1)
        return status

    def validate_measure_components(self, measure: Measure) -> MeasureValidationReport:
        """Report unlinkable elements, dangling links and links to archived components."""
        report = validate_measure(measure, self.store)
        for warning in report.warnings:
            self.logger.warning(f"Measure {measure.id}: {warning}")
        return report

    # ==================== REMOTE LOAD ====================

    def load_from_api(self, show_progress: bool = False, max_workers: int = 4) -> LoadResult:
        """Fetch the remote catalogue and merge it into the local store.

        A failed listing leaves the store untouched. Components whose detail
        fetch fails are built from their summary instead.
        """
        if self.client is None:
            return LoadResult(success=False, error="No remote client configured")
        with self._lock:
            if self.is_loading:
                self.logger.info("Catalogue load already in progress; skipping")
                return LoadResult(success=False, error="Load already in progress")
            self.is_loading = True
            self.api_error = None

        try:
            try:
                summaries = self.client.list_component_summaries()
            except (RemoteStoreError, CircuitBreakerOpen) as e:
                self.api_error = str(e)
                self.logger.error(f"Failed to list remote components: {e}")
                return LoadResult(success=False, error=self.api_error)

            loaded: list[LibraryComponent] = []
            fallbacks: list[str] = []
            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {executor.submit(self.client.get_component, s["id"]): s for s in summaries if s.get("id")}
                with tqdm(
                    total=len(futures),
                    desc="Loading components",
                    unit="component",
                    bar_format="{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}]",
                    leave=True,
                    disable=not show_progress,
                ) as pbar:
                    for future in as_completed(futures):
                        summary = futures[future]
                        try:
                            loaded.append(component_from_dto(future.result()))
                        except (RemoteStoreError, CircuitBreakerOpen, KeyError, TypeError, ValueError) as e:
                            self.logger.warning(f"Failed to load details for {summary['id']}, using summary: {e}")
                            loaded.append(component_from_summary(summary))
                            fallbacks.append(str(summary["id"]))
                        pbar.update(1)

            with self._lock:
                for component in loaded:
                    if isinstance(component, AtomicComponent):
                        value_set = component.value_set or ValueSet()
                        component.oid_validation = build_oid_validation_status(
                            value_set.oid, value_set.name, self.oid_catalog
                        )
                self.store.set_components(loaded, source="remote load")
                score_catalogue(self.store.all())
                self._persist()
            self.logger.info(f"Loaded {len(loaded)} component(s) from remote store ({len(fallbacks)} from summaries)")
            return LoadResult(success=True, loaded=len(loaded), summary_fallbacks=fallbacks)
        finally:
            self.is_loading = False

    # ==================== COMMANDS ====================

    def add_component(
        self, component: LibraryComponent, auto_categorize: bool = False, created_by: str | None = None
    ) -> LibraryComponent:
        """Add a new component and queue its creation on the remote store."""
        with self._lock:
            if component.id in self.store:
                raise ValueError(f"Component {component.id} already exists")
            if auto_categorize:
                component.metadata.category = infer_category(component)
                component.metadata.category_auto_assigned = True
            if created_by:
                component.metadata.created_by = created_by
                component.metadata.updated_by = created_by
            if not component.version_info.history:
                component.version_info.history.append(
                    VersionRecord(
                        version_id=component.version_info.version_id,
                        status=component.status,
                        created_by=component.metadata.created_by,
                        change_description="Initial version",
                    )
                )
            if component.generated_code is None:
                self._regenerate_code(component)
            self._assess(component)
            self.store.put(component)
            self._persist()
        self._schedule_sync(component.id, "create")
        return component

    def update_component(
        self, component_id: str, changes: dict[str, Any], updated_by: str = "system"
    ) -> LibraryComponent | None:
        """Apply field changes to a component.

        ``changes`` uses attribute names (``name``, ``value_set``, ``timing``,
        ``category``, ``tags``, ...). Setting ``category`` marks it as chosen by
        a reviewer; code text is regenerated when a code-affecting field changes.
        """
        with self._lock:
            existing = self.store.get(component_id)
            if existing is None:
                self.logger.warning(f"Cannot update unknown component {component_id}")
                return None
            updated = self._apply_changes(existing, changes)
            updated.touch(updated_by)
            self.store.put(updated)
            self._persist()
        self._schedule_sync(component_id, "update")
        return updated

    def _apply_changes(self, existing: LibraryComponent, changes: dict[str, Any]) -> LibraryComponent:
        allowed = _ATOMIC_FIELDS if isinstance(existing, AtomicComponent) else _COMPOSITE_FIELDS
        unknown = set(changes) - allowed - _METADATA_FIELDS
        if unknown:
            raise ValueError(f"Unsupported field(s) for {existing.kind} component: {', '.join(sorted(unknown))}")

        updated = copy.deepcopy(existing)
        for name, value in changes.items():
            if name in allowed:
                setattr(updated, name, copy.deepcopy(value))

        if "category" in changes and changes["category"] != existing.metadata.category:
            updated.metadata.category = changes["category"]
            updated.metadata.category_auto_assigned = False
        elif existing.metadata.category_auto_assigned and isinstance(updated, AtomicComponent):
            if {"value_set", "resource_type", "gender_value"} & set(changes):
                updated.metadata.category = infer_category(updated)
        if "tags" in changes:
            updated.metadata.tags = list(changes["tags"])

        if CODE_AFFECTING_FIELDS & set(changes):
            self._regenerate_code(updated)
        self._assess(updated, revalidate_oid="value_set" in changes)
        return updated

    def delete_component(self, component_id: str) -> OperationResult:
        """Delete an unused component. Refused while any measure references it."""
        with self._lock:
            component = self.store.get(component_id)
            if component is None:
                return OperationResult(success=False, error=f"Component {component_id} not found")
            if component.usage.usage_count > 0:
                return OperationResult(
                    success=False,
                    error=f"Component is used by {component.usage.usage_count} measure(s)",
                    measure_ids=list(component.usage.measure_ids),
                )
            self.store.remove(component_id)
            self._persist()
        sent = self._schedule_sync(component_id, "delete")
        backend_deleted = None
        if not self.dispatcher.background:
            backend_deleted = sent and component_id not in self.sync_queue
        return OperationResult(success=True, backend_deleted=backend_deleted)

    def archive_component(
        self, component_id: str, superseded_by: str | None = None, archived_by: str = "system"
    ) -> OperationResult:
        """Archive an unused component. Refused while any measure references it."""
        with self._lock:
            component = self.store.get(component_id)
            if component is None:
                return OperationResult(success=False, error=f"Component {component_id} not found")
            if component.is_archived:
                return OperationResult(success=True)
            if component.usage.usage_count > 0:
                return OperationResult(
                    success=False,
                    error=f"Component is used by {component.usage.usage_count} measure(s)",
                    measure_ids=list(component.usage.measure_ids),
                )
            archived = copy.deepcopy(component)
            archived.version_info.mark_current(STATUS_ARCHIVED, superseded_by=superseded_by)
            archived.touch(archived_by)
            self.store.put(archived)
            self._persist()
        self._schedule_sync(component_id, "update")
        return OperationResult(success=True)

    def approve_component(self, component_id: str, approved_by: str) -> LibraryComponent | None:
        with self._lock:
            component = self.store.get(component_id)
            if component is None:
                return None
            approved = copy.deepcopy(component)
            approved.version_info.mark_current(STATUS_APPROVED)
            approved.version_info.approved_by = approved_by
            approved.version_info.approved_at = utc_now()
            approved.touch(approved_by)
            self.store.put(approved)
            self._persist()
        self._schedule_sync(
            component_id, "update", first_attempt=lambda: self.client.approve_component(component_id, approved_by)
        )
        return approved

    def create_version(
        self, component_id: str, changes: dict[str, Any], updated_by: str, change_description: str = ""
    ) -> LibraryComponent | None:
        """Bump the version by 0.1, apply ``changes`` and reset the status to draft."""
        with self._lock:
            existing = self.store.get(component_id)
            if existing is None:
                return None
            updated = self._new_version(existing, changes, updated_by, change_description)
            self.store.put(updated)
            self._persist()
        self._schedule_sync(component_id, "update")
        return updated

    def shared_edit(
        self,
        component_id: str,
        changes: dict[str, Any],
        action: str,
        updated_by: str,
        measure_id: str | None = None,
        change_description: str = "",
    ) -> LibraryComponent | None:
        """Edit a component that several measures share.

        ``update_all`` versions the component in place, so every measure sees
        the change. ``create_version`` leaves it alone and forks a new draft
        ``<id>-v<epoch ms>`` carrying the change; when ``measure_id`` is given,
        that measure's usage and element links move to the fork.
        """
        if action not in SHARED_EDIT_ACTIONS:
            expected = ", ".join(SHARED_EDIT_ACTIONS)
            raise ValueError(f"Unknown shared edit action '{action}' (expected one of: {expected})")
        if action == "update_all":
            return self.create_version(component_id, changes, updated_by, change_description)

        relinked: BatchUpdateResult | None = None
        with self._lock:
            existing = self.store.get(component_id)
            if existing is None:
                return None
            forked = self._new_version(existing, changes, updated_by, change_description)
            forked.id = self._unique_id(f"{component_id}-v{int(time.time() * 1000)}")
            forked.usage = UsageInfo()
            forked.metadata.created_at = utc_now()
            forked.metadata.created_by = updated_by

            original = existing
            if measure_id is not None:
                forked.usage.add(measure_id)
                if measure_id in existing.usage.measure_ids:
                    original = copy.deepcopy(existing)
                    original.usage.remove(measure_id)
                    original.touch(updated_by)
                relinked = self._relink_measure(measure_id, component_id, forked.id)

            self._assess(forked)
            self.store.apply(upserts=[forked, original])
            self._persist()

        if relinked is not None and not relinked.success:
            self.logger.error(
                f"Forked {component_id} as {forked.id} but could not relink {measure_id}: {relinked.error}"
            )
        self.logger.info(f"Forked component {component_id} as {forked.id} for {measure_id or 'a single measure'}")
        self._schedule_sync(forked.id, "create")
        if original is not existing:
            self._schedule_sync(component_id, "update")
        return forked

    def _new_version(
        self, existing: LibraryComponent, changes: dict[str, Any], updated_by: str, change_description: str
    ) -> LibraryComponent:
        if existing.is_archived:
            raise ValueError(f"Cannot create a new version of archived component {existing.id}")
        updated = self._apply_changes(existing, changes)
        new_version = bump_version(existing.version_info.version_id)
        updated.version_info.version_id = new_version
        updated.version_info.status = STATUS_DRAFT
        updated.version_info.approved_by = None
        updated.version_info.approved_at = None
        updated.version_info.history.append(
            VersionRecord(
                version_id=new_version,
                status=STATUS_DRAFT,
                created_by=updated_by,
                change_description=change_description,
            )
        )
        updated.touch(updated_by)
        return updated

    def _relink_measure(self, measure_id: str, old_id: str, new_id: str) -> BatchUpdateResult | None:
        """Point one measure's elements at ``new_id`` instead of ``old_id``.

        Returns None when the measure is not in the collection.
        """
        measure = self.measures.get(measure_id)
        if measure is None:
            return None

        def relink(element: DataElement) -> DataElement:
            if element.library_component_id != old_id:
                return element
            return replace(element, library_component_id=new_id)

        updated = replace(measure, populations=map_measure_elements(measure, relink))
        return self.measures.batch_update({measure_id: updated})

    def add_usage(self, component_id: str, measure_id: str) -> bool:
        """Record that ``measure_id`` references the component. Returns True if it was new."""
        with self._lock:
            component = self.store.get(component_id)
            if component is None or not component.usage.add(measure_id):
                return False
            self._persist()
        self._schedule_sync(
            component_id, "update", first_attempt=lambda: self.client.record_usage(component_id, measure_id)
        )
        return True

    def remove_usage(self, component_id: str, measure_id: str) -> bool:
        """Drop ``measure_id`` from the component's usage and push the new usage as an update."""
        with self._lock:
            component = self.store.get(component_id)
            if component is None or not component.usage.remove(measure_id):
                return False
            self._persist()
        self._schedule_sync(component_id, "update")
        return True

    # ==================== LINKING ====================

    def import_measure(self, measure: Measure) -> LinkResult:
        """Store a measure in the collection and link its elements to the catalogue."""
        self.measures.upsert(measure)
        return self.link_measure(measure)

    def link_measure(self, measure: Measure) -> LinkResult:
        """Link every data element of ``measure`` to a library component.

        Matches prefer approved components; unmatched elements with value set
        information become new draft components; elements whose value set
        carries nothing usable are marked unlinkable. Clauses whose children
        are all linked data elements are matched against composites. When the
        measure is in the collection, links and back-filled codes are written
        back onto it as one batch update.
        """
        result = LinkResult(measure_id=measure.id)
        created: list[str] = []
        changed: list[str] = []
        element_updates: dict[str, DataElement] = {}

        with self._lock:
            for element in iter_measure_elements(measure):
                outcome, new_element = self._link_element(measure.id, element, created, changed)
                result.outcomes[element.id] = outcome
                if isinstance(outcome, Linked):
                    new_element = replace(new_element, library_component_id=outcome.component_id)
                elif isinstance(outcome, Unlinkable):
                    new_element = replace(new_element, library_component_id=UNLINKABLE_MARKER)
                if new_element != element:
                    element_updates[element.id] = new_element

            self._link_composites(measure, result, changed)

            linked_measure = measure
            if element_updates:
                populations = map_measure_elements(measure, lambda e: element_updates.get(e.id, e))
                linked_measure = replace(measure, populations=populations)
            result.measure = linked_measure
            if measure.id in self.measures and element_updates:
                batch = self.measures.batch_update({measure.id: linked_measure})
                if not batch.success:
                    self.logger.error(f"Failed to write links onto measure {measure.id}: {batch.error}")
            self._persist()

        for component_id in created:
            self._schedule_sync(component_id, "create")
        for component_id in dict.fromkeys(changed):
            if component_id not in created:
                self._schedule_sync(component_id, "update")

        self.logger.info(
            f"Linked measure {measure.id}: {result.linked_count} linked, {len(created)} created, "
            f"{len(result.unlinkable_ids)} unlinkable"
        )
        return result

    def _link_element(
        self, measure_id: str, element: DataElement, created: list[str], changed: list[str]
    ) -> tuple[Any, DataElement]:
        fragment = AtomicFragment.from_element(element)
        existing = self.store.get(element.linked_component_id)
        match = None
        if existing is not None and not existing.is_archived:
            if existing.status != STATUS_APPROVED:
                match = self.matcher.find_exact_match_prioritize_approved(fragment, self.store.all())
            preferred = match.effective if match is not None else None
            if preferred is None or preferred.id == existing.id or preferred.status != STATUS_APPROVED:
                if existing.usage.add(measure_id):
                    changed.append(existing.id)
                return Linked(existing.id), element
            self.logger.info(
                f"Relinking element {element.id} from {existing.status} component {existing.id} "
                f"to approved component {preferred.id}"
            )

        if element.value_set is None and not element.direct_codes and not fragment.has_demographic_identity:
            return Skipped(), element

        if match is None:
            match = self.matcher.find_exact_match_prioritize_approved(fragment, self.store.all())
        target = match.effective
        if target is not None:
            component_changed, element = self.matcher.backfill_codes(target, element)
            if component_changed:
                self._regenerate_code(target)
                self._assess(target, revalidate_oid=False)
                target.touch()
            if target.usage.add(measure_id) or component_changed:
                changed.append(target.id)
            return Linked(target.id), element

        if not (fragment.has_value_set_identity or fragment.has_demographic_identity):
            self.logger.warning(f"Element {element.id} ('{element.description}') has no value set information")
            return Unlinkable(), element

        component = self._component_from_element(element, fragment)
        component.usage.add(measure_id)
        self._regenerate_code(component)
        self._assess(component)
        self.store.put(component)
        created.append(component.id)
        return Linked(component.id, created=True), element

    def _component_from_element(self, element: DataElement, fragment: AtomicFragment) -> AtomicComponent:
        name = fragment.value_set_name or element.description or element.id
        now = utc_now()
        return AtomicComponent(
            id=self._unique_id(slugify(name)),
            name=name,
            description=element.description,
            value_set=ValueSet(oid=fragment.oid, name=fragment.value_set_name or name, codes=list(fragment.codes)),
            timing=copy.deepcopy(element.timing) if element.timing else dict(DEFAULT_TIMING),
            negation=element.negation,
            resource_type=element.resource_type,
            gender_value=element.gender_value,
            version_info=VersionInfo(
                status=STATUS_DRAFT,
                history=[
                    VersionRecord(
                        version_id="1.0",
                        status=STATUS_DRAFT,
                        created_at=now,
                        created_by="auto-import",
                        change_description="Created from measure import",
                    )
                ],
            ),
            metadata=ComponentMetadata(
                category=category_for_element_type(element.type),
                tags=[element.type] if element.type else [],
                created_at=now,
                updated_at=now,
                created_by="auto-import",
                updated_by="auto-import",
                category_auto_assigned=True,
            ),
        )

    def _link_composites(self, measure: Measure, result: LinkResult, changed: list[str]) -> None:
        catalogue = self.store.all()
        for population in measure.populations:
            for clause in iter_composite_candidates(population.criteria):
                child_ids = [
                    outcome.component_id
                    for child in clause.children
                    if isinstance(outcome := result.outcomes.get(child.id), Linked)
                ]
                if len(child_ids) < 2:
                    continue
                fragment = CompositeFragment(operator=clause.operator, child_component_ids=child_ids)
                composite = self.matcher.find_exact_match(fragment, catalogue)
                if composite is None:
                    continue
                result.composite_outcomes[clause.id] = Linked(composite.id)
                if composite.usage.add(measure.id):
                    changed.append(composite.id)

    def _unique_id(self, base: str) -> str:
        candidate, n = base, 2
        while candidate in self.store:
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    # ==================== USAGE INDEX ====================

    def rebuild_usage_index(self, measures: Iterable[Measure] | None = None) -> UsageRebuildResult:
        """Recompute usage for every component from ``measures`` (default: the collection)."""
        with self._lock:
            result = self.usage_index.rebuild(self.store, self.measures.all() if measures is None else measures)
            self._persist()
        for component_id in result.restored_ids:
            self._schedule_sync(component_id, "update")
        return result

    def recalculate_usage(self, measures: Iterable[Measure] | None = None) -> UsageRebuildResult:
        """Like ``rebuild_usage_index``, also matching elements that carry no explicit link."""
        with self._lock:
            result = self.usage_index.recalculate(self.store, self.measures.all() if measures is None else measures)
            self._persist()
        for component_id in result.restored_ids:
            self._schedule_sync(component_id, "update")
        return result

    # ==================== MERGE ====================

    def merge_components(
        self,
        component_ids: list[str],
        name: str | None = None,
        description: str | None = None,
        merged_by: str = "system",
    ) -> MergeResult:
        with self._lock:
            result = self.merge_engine.merge(component_ids, name=name, description=description, merged_by=merged_by)
            if not result.success:
                return result
            self._regenerate_code(result.component)
            self._assess(result.component)
            self._persist()
        self._schedule_sync(result.component.id, "create")
        for archived_id in result.archived_ids:
            self._schedule_sync(archived_id, "update")
        return result

    def update_measure_references_after_merge(self, archived_ids: list[str], new_id: str) -> BatchUpdateResult:
        with self._lock:
            return self.merge_engine.update_measure_references_after_merge(archived_ids, new_id, self.measures)

    def merge_and_relink(
        self,
        component_ids: list[str],
        name: str | None = None,
        description: str | None = None,
        merged_by: str = "system",
    ) -> tuple[MergeResult, BatchUpdateResult | None]:
        """Merge, then re-point every measure at the new component."""
        with self._lock:
            merge = self.merge_components(component_ids, name=name, description=description, merged_by=merged_by)
            if not merge.success:
                return merge, None
            return merge, self.update_measure_references_after_merge(merge.archived_ids, merge.component.id)

    # ==================== COMPONENT → MEASURES ====================

    def sync_component_to_measures(self, component_id: str, changes: dict[str, Any]) -> BatchUpdateResult:
        """Copy name, negation and codes of a component onto every linked element.

        All affected measures must exist; they are rewritten as one batch.
        """
        with self._lock:
            component = self.store.get(component_id)
            if component is None:
                return BatchUpdateResult(success=False, error=f"Component {component_id} not found")
            affected = list(component.usage.measure_ids)
            missing = [mid for mid in affected if mid not in self.measures]
            if missing:
                return BatchUpdateResult(success=False, error=f"Measures not found: {', '.join(missing)}")

            codes = [
                c if isinstance(c, ClinicalCode) else ClinicalCode.from_dict(c) for c in changes.get("codes") or []
            ]

            def rewrite(element: DataElement) -> DataElement:
                if element.library_component_id != component_id:
                    return element
                updates: dict[str, Any] = {}
                if changes.get("name"):
                    updates["description"] = changes["name"]
                if isinstance(component, AtomicComponent):
                    if changes.get("negation") is not None:
                        updates["negation"] = bool(changes["negation"])
                    if changes.get("timing") is not None:
                        updates["timing"] = copy.deepcopy(changes["timing"])
                    if codes and element.value_set is not None:
                        updates["value_set"] = replace(element.value_set, codes=merge_codes(codes))
                return replace(element, **updates) if updates else element

            batch: dict[str, Measure] = {}
            for measure_id in affected:
                measure = self.measures.get(measure_id)
                populations = map_measure_elements(measure, rewrite)
                pairs = zip(populations, measure.populations, strict=True)
                if any(new.criteria is not old.criteria for new, old in pairs):
                    batch[measure_id] = replace(measure, populations=populations)

            result = self.measures.batch_update(batch)
            if result.success:
                violations = find_reference_violations(self.measures.all(), self.store, logger=self.logger)
                result.diagnostics = [str(v) for v in violations]
            return result

    # ==================== SYNC ====================

    def retry_pending_sync(self, force: bool = False) -> RetrySummary:
        """Retry queued remote operations one at a time.

        Entries that already failed ``max_sync_retries`` times are left alone.
        Entries for components that no longer exist locally are dropped unless
        they are deletes. Without ``force``, entries still inside their backoff
        window are deferred. A pass started while another runs does nothing.
        ``force`` also lifts a remote sync pause held by the circuit breaker.
        """
        summary = RetrySummary()
        if not self.sync_queue.begin_retry_pass():
            self.logger.info("Sync retry already in progress; skipping")
            summary.already_running = True
            return summary

        try:
            breaker = self.client.circuit_breaker if self.client is not None else None
            if force and breaker is not None:
                breaker.reset()
            for entry in self.sync_queue.entries():
                if self.sync_queue.is_abandoned(entry):
                    summary.abandoned.append(entry.component_id)
                    continue
                component = self.store.get(entry.component_id)
                if component is None and entry.operation != "delete":
                    self.sync_queue.clear(entry.component_id)
                    summary.cleared.append(entry.component_id)
                    continue
                if not force and not self.sync_queue.is_due(entry):
                    summary.deferred.append(entry.component_id)
                    continue
                if self._attempt(entry.component_id, entry.operation):
                    summary.synced.append(entry.component_id)
                else:
                    summary.failed.append(entry.component_id)
        finally:
            self.sync_queue.end_retry_pass()
            with self._lock:
                self._persist()

        self.logger.info(
            f"Sync retry: {len(summary.synced)} synced, {len(summary.failed)} failed, "
            f"{len(summary.cleared)} cleared, {len(summary.abandoned)} abandoned, {len(summary.deferred)} deferred"
        )
        return summary

    def wait_for_sync(self, timeout: float | None = None) -> bool:
        """Block until background sync tasks finish."""
        return self.dispatcher.wait(timeout)

    def close(self) -> None:
        self.dispatcher.shutdown()
        if self.client is not None:
            self.client.close()

    def _schedule_sync(
        self, component_id: str, operation: str, first_attempt: Callable[[], Any] | None = None
    ) -> bool:
        """Queue the remote side of a local mutation. Returns False when no call is needed."""
        effective = self.sync_queue.note_local_mutation(component_id, operation)
        if effective is None:
            with self._lock:
                self._persist()
            return False
        if self.client is None:
            self.sync_queue.record_failure(component_id, effective, "No remote client configured")
            with self._lock:
                self._persist()
            return True
        # A custom call only stands in for a plain update of an already synced component
        if effective != operation or component_id in self.sync_queue:
            first_attempt = None
        self.dispatcher.submit(lambda: self._attempt(component_id, effective, first_attempt))
        return True

    def _attempt(self, component_id: str, operation: str, call: Callable[[], Any] | None = None) -> bool:
        """Run one remote operation and update the sync queue with its outcome."""
        with self._lock:
            component = copy.deepcopy(self.store.get(component_id))
        try:
            if call is not None:
                call()
            else:
                push_component(self.client, operation, component_id, component)
        except (RemoteStoreError, CircuitBreakerOpen, ValueError) as e:
            self.sync_queue.record_failure(component_id, operation, str(e))
            with self._lock:
                self._persist()
            return False
        self.sync_queue.clear(component_id)
        with self._lock:
            self._persist()
        return True

    # ==================== INTERNALS ====================

    def _assess(self, component: LibraryComponent, revalidate_oid: bool = True) -> None:
        """Refresh the complexity score and, for atomics, the OID validation."""
        if isinstance(component, CompositeComponent):
            component.complexity = calculate_composite_complexity(component, self._child_complexity)
            return
        component.complexity = calculate_atomic_complexity(component)
        if revalidate_oid or component.oid_validation is None:
            value_set = component.value_set or ValueSet()
            component.oid_validation = build_oid_validation_status(value_set.oid, value_set.name, self.oid_catalog)

    def _child_complexity(self, component_id: str) -> ComplexityScore | None:
        child = self.store.get(component_id)
        if child is None:
            return None
        if child.complexity is None:
            self._assess(child, revalidate_oid=False)
        return child.complexity

    def _regenerate_code(self, component: LibraryComponent) -> None:
        if self.code_generator is None:
            return
        try:
            component.generated_code = self.code_generator(component, self.store.all())
        except Exception as e:
            self.logger.warning(f"Code generation failed for component {component.id}: {e}")

    def _persist(self) -> None:
        if self.state_store is not None:
            self.state_store.save(self.store.all(), self.sync_queue.entries())


def _search_text(component: LibraryComponent) -> str:
    parts = [component.name, component.description, *component.metadata.tags]
    if isinstance(component, AtomicComponent):
        for value_set in component.all_value_sets():
            parts.append(usable_oid(value_set.oid) or "")
            parts.append(value_set.name or "")
    return " ".join(parts).lower()
