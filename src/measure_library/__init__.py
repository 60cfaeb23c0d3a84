"""
Measure Library - component library consistency engine for clinical quality measures.

Keeps a catalogue of reusable rule fragments (value set + timing + negation)
consistent with the measures that reference them: linking, usage tracking,
merging, archival and background sync with a remote component store.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from measure_library.core.version import __version__

__all__ = ["__version__", "ComponentLibraryService", "LibraryConfig", "main"]

if TYPE_CHECKING:
    from measure_library.cli.main import main
    from measure_library.core.config import LibraryConfig
    from measure_library.library.service import ComponentLibraryService

_LAZY_TARGETS = {
    "ComponentLibraryService": "measure_library.library.service",
    "LibraryConfig": "measure_library.core.config",
    "main": "measure_library.cli.main",
}


def __getattr__(name: str) -> Any:
    if name in _LAZY_TARGETS:
        import importlib

        return getattr(importlib.import_module(_LAZY_TARGETS[name]), name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
