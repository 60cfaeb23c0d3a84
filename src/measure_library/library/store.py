"""In-memory component arena with the safe-replace guard."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator

from measure_library.library.models import LibraryComponent


class ComponentStore:
    """Authoritative collection of library components, keyed by id.

    Bulk replacement always merges into the existing catalogue: components
    missing from a new list are kept, and an empty list never empties a
    populated store.
    """

    def __init__(self, components: Iterable[LibraryComponent] | None = None, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._components: dict[str, LibraryComponent] = {}
        for component in components or []:
            self._components[component.id] = component

    def __len__(self) -> int:
        return len(self._components)

    def __contains__(self, component_id: object) -> bool:
        return component_id in self._components

    def __iter__(self) -> Iterator[LibraryComponent]:
        return iter(self.all())

    def get(self, component_id: str | None) -> LibraryComponent | None:
        if component_id is None:
            return None
        return self._components.get(component_id)

    def all(self) -> list[LibraryComponent]:
        with self._lock:
            return list(self._components.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._components)

    def put(self, component: LibraryComponent) -> None:
        with self._lock:
            self._components[component.id] = component

    def remove(self, component_id: str) -> LibraryComponent | None:
        with self._lock:
            return self._components.pop(component_id, None)

    def apply(self, upserts: Iterable[LibraryComponent] = (), removals: Iterable[str] = ()) -> None:
        """Write several components and removals in one transition."""
        upserts = list(upserts)
        removals = list(removals)
        with self._lock:
            for component_id in removals:
                self._components.pop(component_id, None)
            for component in upserts:
                self._components[component.id] = component

    def set_components(self, components: Iterable[LibraryComponent], source: str = "bulk load") -> bool:
        """Merge ``components`` into the store; incoming entries win on id conflicts.

        Returns False (and leaves the store untouched) when an empty list would
        be applied to a non-empty store.
        """
        incoming = list(components)
        with self._lock:
            if not incoming and self._components:
                self.logger.error(
                    f"[BLOCKED] Refusing to replace {len(self._components)} component(s) with an empty list "
                    f"from {source}"
                )
                return False

            before = len(self._components)
            merged = dict(self._components)
            for component in incoming:
                merged[component.id] = component
            self._components = merged

        self.logger.debug(
            f"Applied {len(incoming)} component(s) from {source}; store now holds {len(merged)} (was {before})"
        )
        return True
