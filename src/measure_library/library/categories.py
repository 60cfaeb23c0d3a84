"""Category inference for library components."""

from __future__ import annotations

import re

from measure_library.core.constants import DEFAULT_CATEGORY, ELEMENT_TYPE_CATEGORIES
from measure_library.library.models import AtomicComponent, LibraryComponent

# Checked in order; the first pattern found in the component's text wins
_KEYWORD_CATEGORIES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("exclusions", re.compile(r"\b(hospice|palliative|exclusions?|excluded|frailty|advanced illness)\b")),
    ("encounters", re.compile(r"\b(encounter|visit|office|telehealth|admission|discharge)\b")),
    ("medications", re.compile(r"\b(medication|drug|prescription|immunization|vaccine|statin|insulin)\b")),
    ("laboratory", re.compile(r"\b(lab|laboratory|hba1c|a1c|hemoglobin|panel|fit-dna|fobt|test result)\b")),
    ("procedures", re.compile(r"\b(procedure|surgery|colonoscopy|sigmoidoscopy|mammography|mastectomy|colectomy)\b")),
    ("assessments", re.compile(r"\b(assessment|screening tool|questionnaire|score|phq)\b")),
    ("conditions", re.compile(r"\b(diagnosis|disorder|disease|cancer|diabetes|hypertension|condition)\b")),
)


def category_for_element_type(element_type: str | None) -> str:
    """Map an ingestion data element type (diagnosis, encounter, ...) to a category."""
    return ELEMENT_TYPE_CATEGORIES.get((element_type or "").lower(), DEFAULT_CATEGORY)


def infer_category(component: LibraryComponent) -> str:
    """Guess a category from a component's demographic fields and text."""
    if isinstance(component, AtomicComponent):
        if component.gender_value or (component.resource_type or "").lower() == "patient":
            return "demographics"
        value_set_names = " ".join(vs.name or "" for vs in component.all_value_sets())
    else:
        value_set_names = ""

    text = " ".join([component.name, component.description, value_set_names]).lower()
    for category, pattern in _KEYWORD_CATEGORIES:
        if pattern.search(text):
            return category

    return DEFAULT_CATEGORY
