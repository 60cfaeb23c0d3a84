"""
Structural matching of rule fragments against the component catalogue.

An atomic fragment is identified by its value set (OID when it has one,
otherwise its code set, otherwise its value set name), its timing window,
its negation flag and, for demographic elements, resource type and gender.
A composite fragment is identified by its operator and the multiset of
component ids its children matched to.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import Any, Union

from measure_library.core.constants import DEFAULT_TIMING, STATUS_APPROVED
from measure_library.library.models import (
    AtomicComponent,
    CompositeComponent,
    LibraryComponent,
    usable_oid,
)
from measure_library.measures.models import ClinicalCode, DataElement, ValueSet

_WHITESPACE = re.compile(r"\s+")
_TIMING_IDENTITY_KEYS = ("operator", "quantity", "unit", "position", "reference")


def normalize_text(value: str | None) -> str:
    return _WHITESPACE.sub(" ", (value or "").strip().lower())


def timing_key(timing: dict[str, Any] | None) -> tuple:
    """Comparable form of a timing descriptor; display text is ignored."""
    timing = timing or DEFAULT_TIMING
    key = []
    for name in _TIMING_IDENTITY_KEYS:
        value = timing.get(name)
        if name == "operator" and not value:
            value = DEFAULT_TIMING["operator"]
        if name == "reference" and not value:
            value = DEFAULT_TIMING["reference"]
        key.append(normalize_text(value) if isinstance(value, str) else value)
    return tuple(key)


def code_set(codes: Iterable[ClinicalCode]) -> frozenset[tuple[str, str]]:
    return frozenset(c.key for c in codes)


def merge_codes(*code_lists: Iterable[ClinicalCode]) -> list[ClinicalCode]:
    """Concatenate code lists, dropping later duplicates by (system, code)."""
    seen: set[tuple[str, str]] = set()
    merged: list[ClinicalCode] = []
    for codes in code_lists:
        for code in codes:
            if code.key not in seen:
                seen.add(code.key)
                merged.append(code)
    return merged


# ==================== FRAGMENTS ====================


@dataclass
class AtomicFragment:
    """Normalized identity of a data element."""

    oid: str | None = None
    value_set_name: str | None = None
    codes: list[ClinicalCode] = field(default_factory=list)
    timing: dict[str, Any] | None = None
    negation: bool = False
    resource_type: str | None = None
    gender_value: str | None = None

    @classmethod
    def from_element(cls, element: DataElement) -> AtomicFragment:
        value_set = element.value_set or ValueSet()
        return cls(
            oid=usable_oid(value_set.oid),
            value_set_name=(value_set.name or "").strip() or None,
            codes=merge_codes(value_set.codes, element.direct_codes),
            timing=element.timing,
            negation=element.negation,
            resource_type=element.resource_type,
            gender_value=element.gender_value,
        )

    @property
    def has_value_set_identity(self) -> bool:
        return bool(self.oid or self.codes or self.value_set_name)

    @property
    def has_demographic_identity(self) -> bool:
        return bool(self.resource_type or self.gender_value)


@dataclass
class CompositeFragment:
    """A clause whose children have already been linked to components."""

    operator: str
    child_component_ids: list[str] = field(default_factory=list)


Fragment = Union[AtomicFragment, CompositeFragment]


@dataclass
class MatchResult:
    """First structural match plus, when it is not approved, an approved alternative."""

    match: LibraryComponent | None = None
    approved_alternative: LibraryComponent | None = None

    @property
    def effective(self) -> LibraryComponent | None:
        """The component a caller should link against."""
        return self.approved_alternative or self.match

    @property
    def found(self) -> bool:
        return self.match is not None


# ==================== MATCHER ====================


class Matcher:
    """Finds catalogue components structurally equal to a fragment.

    Archived components are never returned.
    """

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)

    def _value_set_matches(self, fragment: AtomicFragment, component: AtomicComponent) -> bool:
        value_sets = component.all_value_sets()
        if fragment.oid:
            return any(usable_oid(vs.oid) == fragment.oid for vs in value_sets)
        if fragment.codes:
            return any(code_set(vs.codes) == code_set(fragment.codes) for vs in value_sets)
        if fragment.value_set_name:
            target = normalize_text(fragment.value_set_name)
            return any(normalize_text(vs.name) == target for vs in value_sets)
        # Demographic-only fragment: the component must not carry a value set identity either
        return not any(usable_oid(vs.oid) or vs.codes for vs in value_sets)

    def is_atomic_match(self, fragment: AtomicFragment, component: LibraryComponent) -> bool:
        if not isinstance(component, AtomicComponent) or component.is_archived:
            return False
        if bool(fragment.negation) != bool(component.negation):
            return False
        if timing_key(fragment.timing) != timing_key(component.timing):
            return False
        if normalize_text(fragment.resource_type) != normalize_text(component.resource_type):
            return False
        if normalize_text(fragment.gender_value) != normalize_text(component.gender_value):
            return False
        return self._value_set_matches(fragment, component)

    def is_composite_match(self, fragment: CompositeFragment, component: LibraryComponent) -> bool:
        if not isinstance(component, CompositeComponent) or component.is_archived:
            return False
        if fragment.operator.upper() != component.operator.upper():
            return False
        return Counter(fragment.child_component_ids) == Counter(c.component_id for c in component.children)

    def matches(self, fragment: Fragment, component: LibraryComponent) -> bool:
        if isinstance(fragment, CompositeFragment):
            return self.is_composite_match(fragment, component)
        return self.is_atomic_match(fragment, component)

    def find_all(self, fragment: Fragment, catalogue: Iterable[LibraryComponent]) -> list[LibraryComponent]:
        return [c for c in catalogue if self.matches(fragment, c)]

    def find_exact_match(self, fragment: Fragment, catalogue: Iterable[LibraryComponent]) -> LibraryComponent | None:
        """First catalogue entry whose identity equals the fragment's, or None."""
        for component in catalogue:
            if self.matches(fragment, component):
                return component
        return None

    def find_exact_match_prioritize_approved(
        self, fragment: Fragment, catalogue: Iterable[LibraryComponent]
    ) -> MatchResult:
        """Like ``find_exact_match`` but also reports an approved alternative.

        When the first match is a draft and another match is approved, the
        approved one is returned as ``approved_alternative`` so usage is linked
        against it.
        """
        found = self.find_all(fragment, catalogue)
        if not found:
            return MatchResult()
        first = found[0]
        if first.status == STATUS_APPROVED:
            return MatchResult(match=first)
        approved = next((c for c in found if c.status == STATUS_APPROVED), None)
        if approved is not None:
            self.logger.debug(f"Preferring approved component {approved.id} over draft {first.id}")
        return MatchResult(match=first, approved_alternative=approved)

    def backfill_codes(self, component: AtomicComponent, element: DataElement) -> tuple[bool, DataElement]:
        """Fill whichever side has no codes from the other.

        A populated code list is never overwritten. Returns whether the
        component changed and the (possibly new) element.
        """
        element_codes = merge_codes(element.value_set.codes if element.value_set else [], element.direct_codes)
        component_codes = component.codes
        component_changed = False

        if element_codes and not component_codes:
            if component.value_set is None:
                component.value_set = ValueSet(
                    oid=usable_oid(element.value_set.oid) if element.value_set else None,
                    name=element.value_set.name if element.value_set else None,
                )
            component.value_set.codes = list(element_codes)
            if component.value_sets:
                component.value_sets[0] = component.value_set
            component_changed = True
            self.logger.info(f"Back-filled {len(element_codes)} code(s) into component {component.id}")
        elif component_codes and not element_codes:
            if element.value_set is not None:
                value_set = ValueSet(
                    oid=element.value_set.oid,
                    name=element.value_set.name,
                    version=element.value_set.version,
                    codes=list(component_codes),
                )
                element = replace(element, value_set=value_set)
            else:
                element = replace(element, direct_codes=list(component_codes))
            self.logger.debug(f"Back-filled {len(component_codes)} code(s) onto element {element.id}")

        return component_changed, element
