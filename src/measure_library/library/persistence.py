"""
Local persistence of the component catalogue and the sync queue.

State lives in a single JSON key-value file. Keys are prefixed with the
namespace and schema version (``component-library:v3:components``). When
the file holds keys for the same namespace under another schema version,
they are discarded once on load; older layouts are not migrated.
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any

from measure_library.core.config import PersistenceConfig
from measure_library.core.exceptions import ValidationError
from measure_library.library.models import LibraryComponent, PendingSyncEntry, component_from_dict

STATE_FILE_NAME = "library_state.json"


class LibraryStateStore:
    """JSON file backed key-value store for library state."""

    def __init__(self, config: PersistenceConfig | None = None, logger: logging.Logger | None = None):
        self.config = config or PersistenceConfig()
        self.logger = logger or logging.getLogger(__name__)
        self.state_dir = Path(self.config.state_dir)
        self.state_file = self.state_dir / STATE_FILE_NAME
        self._data: dict[str, Any] = {}
        self._loaded = False

    @property
    def prefix(self) -> str:
        return f"{self.config.namespace}:v{self.config.schema_version}:"

    def key(self, name: str) -> str:
        return f"{self.prefix}{name}"

    def _load(self) -> None:
        if self._loaded:
            return
        self._loaded = True
        if not self.state_file.exists():
            return
        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.warning(f"Failed to load library state from {self.state_file}: {e}")
            return
        if not isinstance(data, dict):
            self.logger.warning(f"Ignoring library state in {self.state_file}: expected a JSON object")
            return
        self._data = data
        self._reset_stale_versions()

    def _reset_stale_versions(self) -> None:
        namespace_prefix = f"{self.config.namespace}:"
        stale = [k for k in self._data if k.startswith(namespace_prefix) and not k.startswith(self.prefix)]
        if not stale:
            return
        for k in stale:
            del self._data[k]
        self.logger.warning(
            f"Discarded {len(stale)} state entr{'y' if len(stale) == 1 else 'ies'} from an older schema "
            f"(now v{self.config.schema_version}) in namespace '{self.config.namespace}'"
        )
        self._write()

    def _write(self) -> None:
        """Save state to disk via atomic write-then-rename."""
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            self.logger.warning(f"Failed to create state directory {self.state_dir}: {e}")
            return
        tmp_path = self.state_file.with_name(f".{self.state_file.name}.{uuid.uuid4().hex}.tmp")
        try:
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(self._data, f, indent=2, default=str)
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            self.logger.warning(f"Failed to save library state to {self.state_file}: {e}")
            with contextlib.suppress(OSError):
                tmp_path.unlink()

    # ==================== PUBLIC API ====================

    def get(self, name: str, default: Any = None) -> Any:
        self._load()
        return self._data.get(self.key(name), default)

    def set_many(self, values: dict[str, Any]) -> None:
        self._load()
        for name, value in values.items():
            self._data[self.key(name)] = value
        self._write()

    def load_components(self) -> list[LibraryComponent]:
        components = []
        for item in self.get("components", []) or []:
            try:
                components.append(component_from_dict(item))
            except (ValidationError, KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable persisted component: {e}")
        return components

    def load_pending_sync(self) -> list[PendingSyncEntry]:
        entries = []
        for item in self.get("pending_sync", []) or []:
            try:
                entries.append(PendingSyncEntry.from_dict(item))
            except (KeyError, TypeError, ValueError) as e:
                self.logger.warning(f"Skipping unreadable pending sync entry: {e}")
        return entries

    def save(self, components: list[LibraryComponent], pending: list[PendingSyncEntry]) -> None:
        self.set_many(
            {
                "components": [c.to_dict() for c in components],
                "pending_sync": [e.to_dict() for e in pending],
            }
        )

    def clear(self) -> None:
        """Remove this namespace's entries for the current schema version."""
        self._load()
        for k in [k for k in self._data if k.startswith(self.prefix)]:
            del self._data[k]
        self._write()
