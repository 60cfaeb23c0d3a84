"""Measure collection with all-or-nothing batch updates."""

from __future__ import annotations

import contextlib
import json
import logging
import os
import threading
import uuid
from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from measure_library.core.exceptions import PersistenceError, ValidationError
from measure_library.measures.models import Measure


@dataclass
class BatchUpdateResult:
    """Result of applying several measure updates as one transition."""

    success: bool
    error: str | None = None
    updated_ids: list[str] = field(default_factory=list)
    diagnostics: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success, "updatedIds": list(self.updated_ids)}
        if self.error:
            data["error"] = self.error
        if self.diagnostics:
            data["diagnostics"] = list(self.diagnostics)
        return data


class MeasureCollection:
    """Owns the measure documents, the source of truth for component usage.

    Reads return the current documents; updates either replace a single
    measure or apply a validated batch under one lock acquisition, so a
    reader never sees a half-applied batch.
    """

    def __init__(self, measures: Iterable[Measure] | None = None, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._lock = threading.RLock()
        self._measures: dict[str, Measure] = {}
        for measure in measures or []:
            self._measures[measure.id] = measure

    def __len__(self) -> int:
        return len(self._measures)

    def __contains__(self, measure_id: object) -> bool:
        return measure_id in self._measures

    def __iter__(self) -> Iterator[Measure]:
        return iter(self.all())

    def get(self, measure_id: str) -> Measure | None:
        return self._measures.get(measure_id)

    def all(self) -> list[Measure]:
        with self._lock:
            return list(self._measures.values())

    def ids(self) -> list[str]:
        with self._lock:
            return list(self._measures)

    def upsert(self, measure: Measure) -> None:
        with self._lock:
            self._measures[measure.id] = measure

    def remove(self, measure_id: str) -> Measure | None:
        with self._lock:
            return self._measures.pop(measure_id, None)

    def batch_update(self, updates: dict[str, Measure] | Iterable[Measure]) -> BatchUpdateResult:
        """Replace several measures at once.

        Every target id must already exist; otherwise the whole batch is
        rejected and nothing is written.
        """
        if not isinstance(updates, dict):
            updates = {m.id: m for m in updates}
        if not updates:
            return BatchUpdateResult(success=True)

        with self._lock:
            unknown = sorted(mid for mid in updates if mid not in self._measures)
            if unknown:
                message = f"Batch update references unknown measure ids: {', '.join(unknown)}"
                self.logger.error(message)
                return BatchUpdateResult(success=False, error=message)

            mismatched = sorted(mid for mid, m in updates.items() if m.id != mid)
            if mismatched:
                message = f"Batch update keys do not match measure ids: {', '.join(mismatched)}"
                self.logger.error(message)
                return BatchUpdateResult(success=False, error=message)

            self._measures.update(updates)

        self.logger.debug(f"Batch updated {len(updates)} measure(s)")
        return BatchUpdateResult(success=True, updated_ids=sorted(updates))


def load_measures(path: str | Path) -> list[Measure]:
    """Read measures from a JSON file holding a list or ``{"measures": [...]}``."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            payload = json.load(f)
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid JSON in {path}", item_type="measure", details=str(e)) from e

    if isinstance(payload, dict):
        payload = payload.get("measures", [payload] if "id" in payload else [])
    if not isinstance(payload, list):
        raise ValidationError(f"Expected a list of measures in {path}", item_type="measure")
    return [Measure.from_dict(item) for item in payload]


def save_measures(path: str | Path, measures: Iterable[Measure]) -> Path:
    """Write measures as ``{"measures": [...]}`` via atomic write-then-rename.

    Raises:
        PersistenceError: The file could not be written
    """
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump({"measures": [m.to_dict() for m in measures]}, f, indent=2)
        os.replace(tmp_path, path)
    except OSError as e:
        with contextlib.suppress(OSError):
            tmp_path.unlink()
        raise PersistenceError(
            f"Failed to write measures to {path}", path=str(path), details=str(e), original_error=e
        ) from e
    return path
