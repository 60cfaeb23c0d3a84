"""
Measure document models.

A measure holds populations; each population carries a criteria tree of
logical clauses (AND/OR) whose leaves are data elements. Data elements
reference library components by id only (``library_component_id``); the
component data itself lives in the component store.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field, replace
from typing import Any, Union

from measure_library.core.constants import LEGACY_UNLINKABLE_MARKERS, UNLINKABLE_MARKER
from measure_library.core.exceptions import ValidationError


@dataclass(frozen=True)
class ClinicalCode:
    """A single code from a terminology (SNOMEDCT, CPT, ICD10CM, ...)."""

    code: str
    system: str
    display: str | None = None

    @property
    def key(self) -> tuple[str, str]:
        """Identity of the code independent of its display text."""
        return (self.system.strip().upper(), self.code.strip())

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "system": self.system}
        if self.display:
            data["display"] = self.display
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClinicalCode:
        if "code" not in data:
            raise ValidationError("Code entry is missing 'code'", item_type="code", details=str(data))
        return cls(code=str(data["code"]), system=str(data.get("system") or ""), display=data.get("display"))


@dataclass
class ValueSet:
    """A named, optionally OID-identified collection of clinical codes."""

    oid: str | None = None
    name: str | None = None
    version: str | None = None
    codes: list[ClinicalCode] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "oid": self.oid,
            "name": self.name,
            "version": self.version,
            "codes": [c.to_dict() for c in self.codes],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ValueSet | None:
        if data is None:
            return None
        return cls(
            oid=data.get("oid"),
            name=data.get("name"),
            version=data.get("version"),
            codes=[ClinicalCode.from_dict(c) for c in data.get("codes") or []],
        )


def is_unlinkable_marker(value: str | None) -> bool:
    """True for the unlinkable sentinel, including markers written by older releases."""
    return value == UNLINKABLE_MARKER or value in LEGACY_UNLINKABLE_MARKERS


@dataclass
class DataElement:
    """Leaf of a criteria tree, the unit the matcher links to a library component."""

    id: str
    type: str = "observation"
    description: str = ""
    value_set: ValueSet | None = None
    direct_codes: list[ClinicalCode] = field(default_factory=list)
    timing: dict[str, Any] | None = None
    negation: bool = False
    library_component_id: str | None = None
    resource_type: str | None = None
    gender_value: str | None = None

    @property
    def is_unlinkable(self) -> bool:
        return is_unlinkable_marker(self.library_component_id)

    @property
    def linked_component_id(self) -> str | None:
        """The referenced component id, or None when unlinked or marked unlinkable."""
        if not self.library_component_id or self.is_unlinkable:
            return None
        return self.library_component_id

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "description": self.description,
            "negation": self.negation,
        }
        if self.value_set is not None:
            data["valueSet"] = self.value_set.to_dict()
        if self.direct_codes:
            data["directCodes"] = [c.to_dict() for c in self.direct_codes]
        if self.timing is not None:
            data["timing"] = dict(self.timing)
        if self.library_component_id:
            data["libraryComponentId"] = self.library_component_id
        if self.resource_type:
            data["resourceType"] = self.resource_type
        if self.gender_value:
            data["genderValue"] = self.gender_value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataElement:
        if not data.get("id"):
            raise ValidationError("Data element is missing 'id'", item_type="data_element", details=str(data)[:200])
        return cls(
            id=str(data["id"]),
            type=data.get("type") or "observation",
            description=data.get("description") or "",
            value_set=ValueSet.from_dict(data.get("valueSet")),
            direct_codes=[ClinicalCode.from_dict(c) for c in data.get("directCodes") or []],
            timing=data.get("timing"),
            negation=bool(data.get("negation", False)),
            library_component_id=data.get("libraryComponentId"),
            resource_type=data.get("resourceType"),
            gender_value=data.get("genderValue"),
        )


@dataclass
class LogicalClause:
    """AND/OR combination of data elements and nested clauses."""

    id: str
    operator: str = "AND"
    children: list[CriteriaNode] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "operator": self.operator,
            "description": self.description,
            "children": [child.to_dict() for child in self.children],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogicalClause:
        operator = str(data.get("operator", "AND")).upper()
        if operator not in ("AND", "OR"):
            raise ValidationError(f"Unsupported clause operator '{operator}'", item_type="clause")
        return cls(
            id=str(data.get("id") or ""),
            operator=operator,
            description=data.get("description") or "",
            children=[node_from_dict(child) for child in data.get("children") or []],
        )


CriteriaNode = Union[LogicalClause, DataElement]


def node_from_dict(data: dict[str, Any]) -> CriteriaNode:
    """Build a clause or a data element depending on the node's shape."""
    if "operator" in data and "children" in data:
        return LogicalClause.from_dict(data)
    return DataElement.from_dict(data)


@dataclass
class Population:
    """One population (initial population, denominator, ...) of a measure."""

    id: str
    type: str
    criteria: CriteriaNode | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "criteria": self.criteria.to_dict() if self.criteria is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Population:
        criteria = data.get("criteria")
        return cls(
            id=str(data.get("id") or data.get("type") or ""),
            type=data.get("type") or "unknown",
            criteria=node_from_dict(criteria) if criteria else None,
        )


@dataclass
class Measure:
    """A measure document. ``id`` is the identifier used for usage tracking (e.g. CMS130)."""

    id: str
    title: str = ""
    populations: list[Population] = field(default_factory=list)
    updated_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "updatedAt": self.updated_at,
            "populations": [p.to_dict() for p in self.populations],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Measure:
        measure_id = data.get("id") or (data.get("metadata") or {}).get("measureId")
        if not measure_id:
            raise ValidationError("Measure is missing 'id'", item_type="measure")
        return cls(
            id=str(measure_id),
            title=data.get("title") or (data.get("metadata") or {}).get("title") or "",
            populations=[Population.from_dict(p) for p in data.get("populations") or []],
            updated_at=data.get("updatedAt"),
        )


# ==================== TREE WALKERS ====================


def iter_data_elements(node: CriteriaNode | None) -> Iterator[DataElement]:
    """Yield every data element below ``node`` in document order."""
    if node is None:
        return
    if isinstance(node, LogicalClause):
        for child in node.children:
            yield from iter_data_elements(child)
    else:
        yield node


def iter_measure_elements(measure: Measure) -> Iterator[DataElement]:
    for population in measure.populations:
        yield from iter_data_elements(population.criteria)


def iter_composite_candidates(node: CriteriaNode | None) -> Iterator[LogicalClause]:
    """Yield clauses whose children are all data elements (at least two of them)."""
    if not isinstance(node, LogicalClause):
        return
    if len(node.children) >= 2 and all(isinstance(c, DataElement) for c in node.children):
        yield node
    for child in node.children:
        if isinstance(child, LogicalClause):
            yield from iter_composite_candidates(child)


def collect_linked_elements(measure: Measure) -> list[tuple[str, str]]:
    """Return ``(element_id, component_id)`` for every leaf with a real library link."""
    return [
        (element.id, element.linked_component_id)
        for element in iter_measure_elements(measure)
        if element.linked_component_id
    ]


def map_data_elements(node: CriteriaNode | None, fn: Callable[[DataElement], DataElement]) -> CriteriaNode | None:
    """Return a copy of the tree with ``fn`` applied to every data element.

    Clauses are copied only along paths where ``fn`` returned a different object,
    so untouched subtrees are shared with the input.
    """
    if node is None:
        return None
    if isinstance(node, LogicalClause):
        new_children = [map_data_elements(child, fn) for child in node.children]
        if all(new is old for new, old in zip(new_children, node.children, strict=True)):
            return node
        return replace(node, children=new_children)
    return fn(node)


def map_measure_elements(measure: Measure, fn: Callable[[DataElement], DataElement]) -> list[Population]:
    """Apply ``fn`` to every data element of every population; returns new populations."""
    return [replace(p, criteria=map_data_elements(p.criteria, fn)) for p in measure.populations]
