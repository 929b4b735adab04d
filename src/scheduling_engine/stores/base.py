"""Source store collaborator interface.

The engine never implements persistence itself.  Each upstream store
(legacy tasks, service schedules, unified events) is reached through one
``SourceStore`` implementation that lists raw records and applies deletes
and writes.  Implementations raise :class:`StoreUnavailable` for any
transport or backend failure so callers only have one error to handle.
"""

from __future__ import annotations

import abc
from typing import Any

from scheduling_engine.models import Event, SourceOrigin


class SourceStore(abc.ABC):
    """Abstract interface for one upstream event store."""

    @property
    @abc.abstractmethod
    def origin(self) -> SourceOrigin:
        """Which upstream store this collaborator fronts."""
        ...

    @property
    def name(self) -> str:
        return self.origin.value

    @abc.abstractmethod
    async def list_records(self) -> list[dict[str, Any]]:
        """Return every raw record currently held by the store."""
        ...

    @abc.abstractmethod
    async def delete(self, event_id: str) -> None:
        """Delete one record by id.  Deleting a missing id is not an error."""
        ...

    @abc.abstractmethod
    async def write(self, event: Event) -> None:
        """Insert or replace the record for ``event.id``."""
        ...

    async def shutdown(self) -> None:
        """Release store resources."""
        return None
