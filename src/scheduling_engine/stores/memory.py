"""In-process source store backed by a dict of raw records."""

from __future__ import annotations

import copy
from collections.abc import Iterable, Mapping
from typing import Any

from scheduling_engine.models import Event, SourceOrigin, event_to_record
from scheduling_engine.stores.base import SourceStore


class InMemorySourceStore(SourceStore):
    """Keeps raw records in insertion order, keyed by id.

    Records are copied on the way in and out so callers can never mutate
    the store's state behind its back.
    """

    def __init__(
        self,
        origin: SourceOrigin | str,
        records: Iterable[Mapping[str, Any]] = (),
    ) -> None:
        self._origin = SourceOrigin(origin)
        self._records: dict[str, dict[str, Any]] = {}
        self._anonymous: list[dict[str, Any]] = []
        for record in records:
            self.put_record(record)

    @property
    def origin(self) -> SourceOrigin:
        return self._origin

    def put_record(self, record: Mapping[str, Any]) -> None:
        """Store a raw record verbatim (records without an id are kept as-is)."""
        record_id = record.get("id")
        if record_id is None or not str(record_id).strip():
            self._anonymous.append(copy.deepcopy(dict(record)))
            return
        self._records[str(record_id)] = copy.deepcopy(dict(record))

    def get_record(self, event_id: str) -> dict[str, Any] | None:
        record = self._records.get(event_id)
        return copy.deepcopy(record) if record is not None else None

    def __contains__(self, event_id: object) -> bool:
        return event_id in self._records

    def __len__(self) -> int:
        return len(self._records) + len(self._anonymous)

    async def list_records(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in (*self._records.values(), *self._anonymous)]

    async def delete(self, event_id: str) -> None:
        self._records.pop(event_id, None)

    async def write(self, event: Event) -> None:
        self._records[event.id] = event_to_record(event)
