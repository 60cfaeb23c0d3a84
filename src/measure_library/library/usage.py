"""
Usage index: which measures reference which components.

The measure collection is the source of truth. A rebuild derives
``component id -> {measure ids}`` from every measure's criteria tree and
overwrites each component's usage with it.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field

from measure_library.core.constants import STATUS_ARCHIVED
from measure_library.library.matcher import AtomicFragment, Matcher
from measure_library.library.models import LibraryComponent, VersionRecord, utc_now
from measure_library.library.store import ComponentStore
from measure_library.measures.models import Measure, iter_measure_elements


@dataclass
class UsageRebuildResult:
    """What a rebuild changed.

    Attributes:
        updated_ids: Components whose measure set changed
        restored_ids: Archived components restored because they are in use again
        dangling: ``(measure id, element id, component id)`` for links to unknown components
        inferred: Links found through the matcher for elements without an explicit id
    """

    updated_ids: list[str] = field(default_factory=list)
    restored_ids: list[str] = field(default_factory=list)
    dangling: list[tuple[str, str, str]] = field(default_factory=list)
    inferred: int = 0


class UsageIndex:
    """Derives and applies component usage from a measure collection."""

    def __init__(self, matcher: Matcher | None = None, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self.matcher = matcher or Matcher(logger=self.logger)

    def derive(
        self,
        measures: Iterable[Measure],
        catalogue: list[LibraryComponent] | None = None,
        result: UsageRebuildResult | None = None,
    ) -> dict[str, set[str]]:
        """Map component id to the ids of measures linking to it.

        When ``catalogue`` is given, elements without a ``library_component_id``
        are matched against it (approved first) and counted as well.
        """
        index: dict[str, set[str]] = defaultdict(set)
        for measure in measures:
            for element in iter_measure_elements(measure):
                if element.is_unlinkable:
                    continue
                component_id = element.linked_component_id
                if component_id is None and catalogue is not None:
                    fragment = AtomicFragment.from_element(element)
                    if not (fragment.has_value_set_identity or fragment.has_demographic_identity):
                        continue
                    effective = self.matcher.find_exact_match_prioritize_approved(fragment, catalogue).effective
                    if effective is None:
                        continue
                    component_id = effective.id
                    if result is not None:
                        result.inferred += 1
                if component_id is not None:
                    index[component_id].add(measure.id)
        return dict(index)

    def rebuild(self, store: ComponentStore, measures: Iterable[Measure]) -> UsageRebuildResult:
        """Overwrite every component's usage with the set derived from ``measures``.

        Running it twice on the same measures leaves the store unchanged the
        second time. A component that goes from unused to used while archived
        is restored to its last non-archived status; losing all usage never
        archives anything.
        """
        return self._apply(store, list(measures), catalogue=None)

    def recalculate(self, store: ComponentStore, measures: Iterable[Measure]) -> UsageRebuildResult:
        """Rebuild, also counting elements that predate explicit linking via the matcher."""
        return self._apply(store, list(measures), catalogue=store.all())

    def _apply(
        self, store: ComponentStore, measures: list[Measure], catalogue: list[LibraryComponent] | None
    ) -> UsageRebuildResult:
        result = UsageRebuildResult()
        index = self.derive(measures, catalogue=catalogue, result=result)

        for measure in measures:
            for element in iter_measure_elements(measure):
                component_id = element.linked_component_id
                if component_id is not None and component_id not in store:
                    result.dangling.append((measure.id, element.id, component_id))

        now = utc_now()
        for component in store.all():
            new_ids = index.get(component.id, set())
            was_unused = component.usage.usage_count == 0
            if component.usage.replace(new_ids, now):
                result.updated_ids.append(component.id)
            if was_unused and new_ids and component.status == STATUS_ARCHIVED:
                self._restore(component, len(new_ids))
                result.restored_ids.append(component.id)

        if result.dangling:
            self.logger.warning(
                f"Usage rebuild found {len(result.dangling)} link(s) to unknown components: "
                + ", ".join(f"{m}/{e} -> {c}" for m, e, c in result.dangling)
            )
        self.logger.info(
            f"Usage index rebuilt from {len(measures)} measure(s): {len(result.updated_ids)} component(s) changed, "
            f"{len(result.restored_ids)} restored"
        )
        return result

    def _restore(self, component: LibraryComponent, measure_count: int) -> None:
        restored_status = component.version_info.last_active_status()
        component.version_info.status = restored_status
        component.version_info.history.append(
            VersionRecord(
                version_id=component.version_info.version_id,
                status=restored_status,
                change_description=f"Restored from archive: referenced by {measure_count} measure(s)",
            )
        )
        component.touch()
        self.logger.info(f"Restored archived component {component.id} to '{restored_status}'")
