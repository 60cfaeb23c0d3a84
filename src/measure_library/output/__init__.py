"""Output module - catalogue inventory export."""

from measure_library.output.inventory import (
    EXPORT_FORMATS,
    INVENTORY_COLUMNS,
    CatalogueInventory,
    component_row,
    export_inventory,
    write_inventory_csv,
    write_inventory_json,
)

__all__ = [
    "EXPORT_FORMATS",
    "INVENTORY_COLUMNS",
    "CatalogueInventory",
    "component_row",
    "export_inventory",
    "write_inventory_csv",
    "write_inventory_json",
]
