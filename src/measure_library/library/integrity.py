"""Referential integrity checks between measures and the component store."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

from measure_library.library.store import ComponentStore
from measure_library.measures.models import Measure, iter_measure_elements


@dataclass(frozen=True)
class ReferenceViolation:
    """A measure element whose library link does not resolve to a usable component."""

    measure_id: str
    element_id: str
    component_id: str
    reason: str  # "missing" or "archived"

    def __str__(self) -> str:
        return f"{self.measure_id}/{self.element_id} -> {self.component_id} ({self.reason})"


@dataclass
class MeasureValidationReport:
    """Link health of a single measure."""

    measure_id: str
    linked: list[str] = field(default_factory=list)
    unlinked: list[str] = field(default_factory=list)
    unlinkable: list[str] = field(default_factory=list)
    violations: list[ReferenceViolation] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.violations

    @property
    def warnings(self) -> list[str]:
        messages = [f"Element {e} could not be linked (no value set information)" for e in self.unlinkable]
        messages.extend(str(v) for v in self.violations)
        return messages


def validate_measure(measure: Measure, store: ComponentStore) -> MeasureValidationReport:
    report = MeasureValidationReport(measure_id=measure.id)
    for element in iter_measure_elements(measure):
        if element.is_unlinkable:
            report.unlinkable.append(element.id)
            continue
        component_id = element.linked_component_id
        if component_id is None:
            report.unlinked.append(element.id)
            continue
        component = store.get(component_id)
        if component is None:
            report.violations.append(ReferenceViolation(measure.id, element.id, component_id, "missing"))
        elif component.is_archived:
            report.violations.append(ReferenceViolation(measure.id, element.id, component_id, "archived"))
        else:
            report.linked.append(element.id)
    return report


def find_reference_violations(
    measures: Iterable[Measure], store: ComponentStore, logger: logging.Logger | None = None
) -> list[ReferenceViolation]:
    """Every link in ``measures`` that is dangling or points at an archived component.

    Violations are logged at ERROR; nothing is repaired.
    """
    logger = logger or logging.getLogger(__name__)
    violations: list[ReferenceViolation] = []
    for measure in measures:
        violations.extend(validate_measure(measure, store).violations)
    if violations:
        logger.error(
            f"Referential integrity check found {len(violations)} mismatch(es): "
            + "; ".join(str(v) for v in violations)
        )
    return violations
