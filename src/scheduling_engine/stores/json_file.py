"""Filesystem-backed source store holding a JSON array of records.

Useful for development and for the CLI, where each upstream store is a
snapshot exported to disk.  A missing file is an empty store.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from scheduling_engine.errors import StoreUnavailable
from scheduling_engine.models import Event, SourceOrigin, event_to_record
from scheduling_engine.stores.base import SourceStore

logger = logging.getLogger(__name__)


class JsonFileSourceStore(SourceStore):
    """Store whose records live in one JSON file.

    The file holds either a bare array of records or an object with an
    ``items`` array.  Writes always rewrite the bare-array form.

    Args:
        path: JSON file location
        origin: Which upstream store the file represents
    """

    def __init__(self, path: Path | str, origin: SourceOrigin | str) -> None:
        self.path = Path(path)
        self._origin = SourceOrigin(origin)

    @property
    def origin(self) -> SourceOrigin:
        return self._origin

    def _read(self) -> list[dict[str, Any]]:
        if not self.path.exists():
            return []
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StoreUnavailable(self.name, f"cannot read {self.path}: {exc}") from exc

        if isinstance(payload, dict):
            payload = payload.get("items", [])
        if not isinstance(payload, list):
            raise StoreUnavailable(self.name, f"{self.path} does not contain a record array")
        return [record for record in payload if isinstance(record, dict)]

    def _write_all(self, records: list[dict[str, Any]]) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(f"{self.path.suffix}.tmp")
            tmp_path.write_text(json.dumps(records, indent=2) + "\n", encoding="utf-8")
            tmp_path.replace(self.path)
        except OSError as exc:
            raise StoreUnavailable(self.name, f"cannot write {self.path}: {exc}") from exc

    async def list_records(self) -> list[dict[str, Any]]:
        return self._read()

    async def delete(self, event_id: str) -> None:
        records = self._read()
        remaining = [r for r in records if str(r.get("id")) != event_id]
        if len(remaining) == len(records):
            logger.debug("Delete of %s in %s is a no-op (id not present)", event_id, self.path)
            return
        self._write_all(remaining)

    async def write(self, event: Event) -> None:
        records = self._read()
        replacement = event_to_record(event)
        for index, record in enumerate(records):
            if str(record.get("id")) == event.id:
                records[index] = replacement
                break
        else:
            records.append(replacement)
        self._write_all(records)
