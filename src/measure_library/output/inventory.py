"""
Catalogue inventory export.

Builds a pandas DataFrame with one row per library component and writes it
as CSV or JSON for review outside the tool.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pandas as pd

from measure_library.core.constants import STATUS_ARCHIVED
from measure_library.library.models import AtomicComponent, LibraryComponent, usable_oid

INVENTORY_COLUMNS = [
    "id",
    "name",
    "type",
    "category",
    "category_auto_assigned",
    "status",
    "version",
    "usage_count",
    "measure_ids",
    "complexity",
    "complexity_score",
    "value_set_oid",
    "value_set_name",
    "code_count",
    "negation",
    "timing",
    "oid_status",
    "tags",
    "created_by",
    "updated_at",
]

EXPORT_FORMATS = ("csv", "json")


def _timing_summary(timing: dict[str, Any] | None) -> str:
    if not timing:
        return ""
    if timing.get("displayExpression"):
        return str(timing["displayExpression"])
    parts = [timing.get("operator"), timing.get("quantity"), timing.get("unit"), timing.get("reference")]
    return " ".join(str(p) for p in parts if p not in (None, ""))


def component_row(component: LibraryComponent) -> dict[str, Any]:
    """Flatten one component into an inventory row."""
    row: dict[str, Any] = {
        "id": component.id,
        "name": component.name,
        "type": component.kind,
        "category": component.metadata.category,
        "category_auto_assigned": component.metadata.category_auto_assigned,
        "status": component.status,
        "version": component.version_info.version_id,
        "usage_count": component.usage.usage_count,
        "measure_ids": ", ".join(component.usage.measure_ids),
        "complexity": component.complexity.level if component.complexity is not None else "",
        "complexity_score": component.complexity.score if component.complexity is not None else None,
        "value_set_oid": "",
        "value_set_name": "",
        "code_count": 0,
        "negation": False,
        "timing": "",
        "oid_status": "",
        "tags": ", ".join(component.metadata.tags),
        "created_by": component.metadata.created_by,
        "updated_at": component.metadata.updated_at,
    }
    if isinstance(component, AtomicComponent):
        value_sets = component.all_value_sets()
        row["value_set_oid"] = ", ".join(filter(None, (usable_oid(vs.oid) for vs in value_sets)))
        row["value_set_name"] = ", ".join(filter(None, (vs.name for vs in value_sets)))
        row["code_count"] = sum(len(vs.codes) for vs in value_sets)
        row["negation"] = component.negation
        row["timing"] = _timing_summary(component.timing)
        if component.oid_validation is not None:
            row["oid_status"] = component.oid_validation.status
    return row


@dataclass
class CatalogueInventory:
    """Tabular view of the component catalogue."""

    components: list[LibraryComponent] = field(default_factory=list)

    @property
    def total_components(self) -> int:
        return len(self.components)

    @property
    def unused_count(self) -> int:
        return sum(1 for c in self.components if c.usage.usage_count == 0 and c.status != STATUS_ARCHIVED)

    def get_dataframe(self) -> pd.DataFrame:
        """Get inventory as a DataFrame for CSV/JSON output."""
        if not self.components:
            return pd.DataFrame(columns=INVENTORY_COLUMNS)

        # Most used first, archived last
        ordered = sorted(self.components, key=lambda c: (c.is_archived, -c.usage.usage_count, c.name.lower()))
        return pd.DataFrame([component_row(c) for c in ordered], columns=INVENTORY_COLUMNS)

    def get_summary(self) -> dict[str, Any]:
        """Get summary statistics for the inventory."""
        return {
            "total_components": self.total_components,
            "by_status": dict(Counter(c.status for c in self.components)),
            "by_category": dict(Counter(c.metadata.category for c in self.components if not c.is_archived)),
            "by_type": dict(Counter(c.kind for c in self.components)),
            "by_complexity": dict(Counter(c.complexity.level for c in self.components if c.complexity is not None)),
            "unused_components": self.unused_count,
        }


def write_inventory_csv(inventory: CatalogueInventory, output_path: str | Path, logger: logging.Logger) -> str:
    """Write the inventory DataFrame to a single CSV file. Returns the file path."""
    output_path = Path(output_path)
    try:
        logger.info("Generating CSV inventory...")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        inventory.get_dataframe().to_csv(output_path, index=False, encoding="utf-8")
        logger.info(f"CSV inventory created: {output_path}")
        return str(output_path)
    except PermissionError as e:
        logger.error(f"Permission denied creating CSV inventory: {e}")
        logger.error("Check write permissions for the output directory")
        raise
    except OSError as e:
        logger.error(f"OS error creating CSV inventory: {e}")
        logger.error("Check disk space and path validity")
        raise


def write_inventory_json(inventory: CatalogueInventory, output_path: str | Path, logger: logging.Logger) -> str:
    """Write summary plus one record per component as JSON. Returns the file path."""
    output_path = Path(output_path)
    try:
        logger.info("Generating JSON inventory...")
        output_path.parent.mkdir(parents=True, exist_ok=True)
        json_data = {
            "summary": inventory.get_summary(),
            "components": inventory.get_dataframe().to_dict(orient="records"),
        }
        with open(output_path, "w", encoding="utf-8") as f:
            json.dump(json_data, f, indent=2, ensure_ascii=False, default=str)
        logger.info(f"JSON inventory created: {output_path}")
        return str(output_path)
    except PermissionError as e:
        logger.error(f"Permission denied creating JSON inventory: {e}")
        logger.error("Check write permissions for the output directory")
        raise
    except OSError as e:
        logger.error(f"OS error creating JSON inventory: {e}")
        logger.error("Check disk space and path validity")
        raise
    except (TypeError, ValueError) as e:
        logger.error(f"JSON serialization error: {e}")
        raise


def export_inventory(
    components: list[LibraryComponent],
    output_format: str,
    output_path: str | Path,
    logger: logging.Logger | None = None,
) -> str:
    """Export the catalogue in ``output_format`` ("csv" or "json")."""
    logger = logger or logging.getLogger(__name__)
    inventory = CatalogueInventory(components=list(components))
    if output_format == "csv":
        return write_inventory_csv(inventory, output_path, logger)
    if output_format == "json":
        return write_inventory_json(inventory, output_path, logger)
    raise ValueError(f"Unsupported export format '{output_format}' (expected one of: {', '.join(EXPORT_FORMATS)})")
