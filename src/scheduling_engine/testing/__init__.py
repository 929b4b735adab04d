"""Test support utilities for the scheduling_engine package.

All public symbols are plain helpers with no hard dependency on pytest, so
they can be imported safely from any test tree or from a host application's
own tests.
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from scheduling_engine.errors import StoreUnavailable
from scheduling_engine.models import Event, SourceOrigin
from scheduling_engine.notifications import Notifier, RescheduleNotice
from scheduling_engine.stores.memory import InMemorySourceStore

__all__ = [
    "FlakySourceStore",
    "RecordingNotifier",
    "make_event",
    "unified_record",
]


def make_event(
    event_id: str,
    start: str,
    end: str,
    **overrides: Any,
) -> Event:
    """Build an Event from ``YYYY-MM-DDTHH:MM`` strings."""
    return Event(
        id=event_id,
        start_at=datetime.fromisoformat(start),
        end_at=datetime.fromisoformat(end),
        **overrides,
    )


def unified_record(event_id: str, start: str, end: str, **extra: Any) -> dict[str, Any]:
    """Raw unified-event record in the upstream store's own field names."""
    return {"id": event_id, "startDateTime": start, "endDateTime": end, **extra}


class RecordingNotifier(Notifier):
    """Keeps every notice; optionally raises to exercise failure paths."""

    def __init__(self, *, fail_with: Exception | None = None) -> None:
        self.notices: list[RescheduleNotice] = []
        self.fail_with = fail_with

    async def notify(self, notice: RescheduleNotice) -> None:
        self.notices.append(notice)
        if self.fail_with is not None:
            raise self.fail_with


class FlakySourceStore(InMemorySourceStore):
    """In-memory store whose reads can be made to fail or hang on demand."""

    def __init__(self, origin: SourceOrigin | str, records: Any = ()) -> None:
        super().__init__(origin, records)
        self.fail_reads = False
        self.read_delay_s = 0.0
        self.read_count = 0

    async def list_records(self) -> list[dict[str, Any]]:
        self.read_count += 1
        if self.read_delay_s:
            await asyncio.sleep(self.read_delay_s)
        if self.fail_reads:
            raise StoreUnavailable(self.name, "simulated outage")
        return await super().list_records()
