"""
Complexity scoring for library components.

Atomic score is ``1 + timing clauses + 2 if negated``. A component without
codes needs manual review and is floored at 4 (medium). Composite score is
the sum of its children's scores, plus one per extra child of an AND, plus
two per level of nested composites.

Levels: low (<= 3), medium (4-7), high (8+).
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from measure_library.library.models import (
    AtomicComponent,
    ComplexityScore,
    CompositeComponent,
    LibraryComponent,
)

logger = logging.getLogger(__name__)

LOW_MAX_SCORE = 3
MEDIUM_MAX_SCORE = 7
ZERO_CODES_FLOOR = 4
NEGATION_PENALTY = 2
NESTING_PENALTY = 2


def get_complexity_level(score: int) -> str:
    if score <= LOW_MAX_SCORE:
        return "low"
    if score <= MEDIUM_MAX_SCORE:
        return "medium"
    return "high"


def count_timing_clauses(timing: dict | None) -> int:
    """One clause per timing expression, two when it carries a quantity or position."""
    if timing and (timing.get("quantity") is not None or timing.get("position") is not None):
        return 2
    return 1


def calculate_atomic_complexity(component: AtomicComponent) -> ComplexityScore:
    timing_clauses = count_timing_clauses(component.timing)
    negation_score = NEGATION_PENALTY if component.negation else 0
    zero_codes = not any(vs.codes for vs in component.all_value_sets())

    score = 1 + timing_clauses + negation_score
    if zero_codes:
        score = max(score, ZERO_CODES_FLOOR)

    factors: dict[str, object] = {
        "base": 1,
        "timingClauses": timing_clauses,
        "negations": 1 if component.negation else 0,
    }
    if zero_codes:
        factors["zeroCodes"] = True
    return ComplexityScore(level=get_complexity_level(score), score=score, factors=factors)


def calculate_composite_complexity(
    composite: CompositeComponent, resolve_child: Callable[[str], ComplexityScore | None]
) -> ComplexityScore:
    """Score a composite from its children's scores.

    ``resolve_child`` returns the score of a child component id, or None when
    the child is unknown (it then contributes nothing).
    """
    children_sum = 0
    nesting_depth = 0
    for child in composite.children:
        child_score = resolve_child(child.component_id)
        if child_score is None:
            continue
        children_sum += child_score.score
        if "nestingDepth" in child_score.factors:
            nesting_depth = max(nesting_depth, int(child_score.factors["nestingDepth"]) + 1)

    and_operators = len(composite.children) - 1 if composite.operator.upper() == "AND" else 0
    score = children_sum + max(and_operators, 0) + nesting_depth * NESTING_PENALTY
    factors = {
        "base": 0,
        "timingClauses": 0,
        "negations": 0,
        "childrenSum": children_sum,
        "andOperators": max(and_operators, 0),
        "nestingDepth": nesting_depth,
    }
    return ComplexityScore(level=get_complexity_level(score), score=score, factors=factors)


def score_catalogue(components: Iterable[LibraryComponent]) -> int:
    """Recompute ``complexity`` for every component, children before parents.

    Returns the number of components scored. A composite that (directly or
    through other composites) contains itself is scored without that child.
    """
    by_id = {c.id: c for c in components}
    scores: dict[str, ComplexityScore] = {}
    in_progress: set[str] = set()

    def resolve(component_id: str) -> ComplexityScore | None:
        if component_id in scores:
            return scores[component_id]
        component = by_id.get(component_id)
        if component is None:
            return None
        if component_id in in_progress:
            logger.warning(f"Composite {component_id} contains itself; ignoring the cycle while scoring")
            return None
        in_progress.add(component_id)
        try:
            if isinstance(component, CompositeComponent):
                score = calculate_composite_complexity(component, resolve)
            else:
                score = calculate_atomic_complexity(component)
        finally:
            in_progress.discard(component_id)
        scores[component_id] = score
        component.complexity = score
        return score

    for component_id in by_id:
        resolve(component_id)
    return len(scores)
