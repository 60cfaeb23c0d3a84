"""Value set OID checks stored on atomic components."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field

from measure_library.library.models import OIDValidationStatus, usable_oid

# Dotted decimal arcs, first arc 0-2, no leading zeros
_OID_PATTERN = re.compile(r"^[0-2](\.(0|[1-9][0-9]*))+$")

# Value sets published through VSAC live under the HL7 root
HL7_OID_ROOT = "2.16.840.1.113883"


@dataclass
class OIDCheck:
    valid: bool
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    catalog_name: str | None = None


def validate_oid(oid: str, name: str | None = None, catalog: Mapping[str, str] | None = None) -> OIDCheck:
    """Check the OID's syntax and, when a catalogue is given, its membership and name."""
    oid = oid.strip()
    check = OIDCheck(valid=True)
    if not _OID_PATTERN.match(oid):
        check.valid = False
        check.errors.append(f"'{oid}' is not a dotted numeric OID")
        return check

    if not oid.startswith(HL7_OID_ROOT + "."):
        check.warnings.append(f"OID is outside the HL7 root {HL7_OID_ROOT}")

    if catalog is not None:
        catalog_name = catalog.get(oid)
        if catalog_name is None:
            check.warnings.append("OID is not in the value set catalogue")
        else:
            check.catalog_name = catalog_name
            if name and name.strip().lower() != catalog_name.strip().lower():
                check.warnings.append(f"Value set name '{name}' differs from catalogue name '{catalog_name}'")
    return check


def build_oid_validation_status(
    oid: str | None, name: str | None = None, catalog: Mapping[str, str] | None = None
) -> OIDValidationStatus:
    """``invalid`` for a malformed OID, ``valid`` for one found in the catalogue, else ``unknown``."""
    oid = usable_oid(oid)
    if oid is None:
        return OIDValidationStatus(status="unknown", warnings=["No OID provided"])

    check = validate_oid(oid, name, catalog)
    if not check.valid:
        status = "invalid"
    elif check.catalog_name is not None:
        status = "valid"
    else:
        status = "unknown"
    return OIDValidationStatus(
        status=status,
        errors=check.errors,
        warnings=check.warnings,
        in_catalog=check.catalog_name is not None,
        catalog_name=check.catalog_name,
    )
