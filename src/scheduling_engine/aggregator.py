"""Merging events from every source store into one deduplicated set.

``aggregate`` is the pure merge step.  ``EventAggregator`` wraps it with the
async refresh of the configured stores: reads run concurrently, each bounded
by a timeout, and a store that fails is replaced by the last set it served
successfully so detection can continue in a degraded mode.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from typing import overload

from scheduling_engine.errors import NormalizationError, StoreUnavailable
from scheduling_engine.models import SOURCE_PRIORITY, Event, SourceOrigin
from scheduling_engine.normalizer import normalize_records, resolve_timezone
from scheduling_engine.stores.base import SourceStore

logger = logging.getLogger(__name__)

DEFAULT_STORE_TIMEOUT_SECONDS = 10.0


class EventSet(Sequence[Event]):
    """Immutable, ordered collection of events with unique ids."""

    __slots__ = ("_events", "_by_id")

    def __init__(self, events: Iterable[Event] = ()) -> None:
        self._events: tuple[Event, ...] = tuple(events)
        self._by_id: dict[str, Event] = {}
        for event in self._events:
            self._by_id.setdefault(event.id, event)

    @overload
    def __getitem__(self, index: int) -> Event: ...

    @overload
    def __getitem__(self, index: slice) -> EventSet: ...

    def __getitem__(self, index: int | slice) -> Event | EventSet:
        if isinstance(index, slice):
            return EventSet(self._events[index])
        return self._events[index]

    def __len__(self) -> int:
        return len(self._events)

    def __iter__(self) -> Iterator[Event]:
        return iter(self._events)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, str):
            return item in self._by_id
        return item in self._events

    def __eq__(self, other: object) -> bool:
        if isinstance(other, EventSet):
            return self._events == other._events
        if isinstance(other, list | tuple):
            return list(self._events) == list(other)
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._events)

    def __repr__(self) -> str:
        return f"EventSet({[event.id for event in self._events]!r})"

    @property
    def ids(self) -> list[str]:
        return [event.id for event in self._events]

    def get(self, event_id: str) -> Event | None:
        return self._by_id.get(event_id)

    def without(self, event_ids: Iterable[str]) -> EventSet:
        dropped = set(event_ids)
        return EventSet(event for event in self._events if event.id not in dropped)

    def for_date(self, day: date) -> EventSet:
        """Events whose local start falls on *day* (23:59 stays on its own day)."""
        return EventSet(event for event in self._events if event.start_at.date() == day)

    def sorted_by_start(self) -> EventSet:
        return EventSet(sorted(self._events, key=lambda event: (event.start_at, event.id)))


def aggregate(sources: Iterable[Iterable[Event]]) -> EventSet:
    """Merge per-source event sets, keeping the first copy of every id.

    Sources are scanned in fixed priority order (service schedules, then
    legacy tasks, then unified events); order within a source is kept.
    Events with a non-positive window never enter the result.
    """
    combined = [event for source in sources for event in source]
    combined.sort(key=lambda event: SOURCE_PRIORITY[SourceOrigin(event.source_origin)])

    seen: set[str] = set()
    merged: list[Event] = []
    for event in combined:
        if event.end_at <= event.start_at:
            logger.warning("Dropping event %s with non-positive window", event.id)
            continue
        if event.id in seen:
            continue
        seen.add(event.id)
        merged.append(event)
    return EventSet(merged)


@dataclass
class SourceSnapshot:
    """What one store contributed to the last refresh."""

    origin: SourceOrigin
    events: list[Event] = field(default_factory=list)
    errors: list[NormalizationError] = field(default_factory=list)
    fetched_at: datetime | None = None
    stale: bool = False
    error: str | None = None


@dataclass
class AggregateSnapshot:
    """The merged event set plus per-source provenance."""

    events: EventSet
    sources: dict[SourceOrigin, SourceSnapshot]
    refreshed_at: datetime

    @property
    def degraded(self) -> bool:
        return any(snapshot.stale for snapshot in self.sources.values())

    @property
    def warnings(self) -> list[str]:
        messages = []
        for snapshot in self.sources.values():
            if snapshot.stale:
                messages.append(
                    f"Source '{snapshot.origin.value}' served from last-known-good data: "
                    f"{snapshot.error}"
                )
        return messages


class EventAggregator:
    """Refreshes every configured store and caches the merged result.

    Args:
        stores: One collaborator per upstream store
        timezone: Canonical IANA zone aware timestamps are converted into
        store_timeout_s: Upper bound on each store read
    """

    def __init__(
        self,
        stores: Sequence[SourceStore],
        *,
        timezone: str | None = None,
        store_timeout_s: float = DEFAULT_STORE_TIMEOUT_SECONDS,
    ) -> None:
        origins = [store.origin for store in stores]
        if len(set(origins)) != len(origins):
            raise ValueError("Each source origin may only be configured once")
        self._stores = list(stores)
        resolve_timezone(timezone)
        self._timezone = timezone
        self._store_timeout_s = store_timeout_s
        self._last_good: dict[SourceOrigin, SourceSnapshot] = {}
        self._snapshot: AggregateSnapshot | None = None

    @property
    def stores(self) -> list[SourceStore]:
        return list(self._stores)

    def store_for(self, origin: SourceOrigin | str) -> SourceStore:
        wanted = SourceOrigin(origin)
        for store in self._stores:
            if store.origin == wanted:
                return store
        raise StoreUnavailable(wanted.value, "no store is configured for this origin")

    def invalidate(self) -> None:
        """Drop the cached snapshot; the next read re-fetches every store."""
        self._snapshot = None

    async def snapshot(self) -> AggregateSnapshot:
        """Return the cached snapshot, refreshing it when invalidated."""
        if self._snapshot is None:
            return await self.refresh()
        return self._snapshot

    async def refresh(self) -> AggregateSnapshot:
        """Re-read every store concurrently and rebuild the merged set.

        Cancellation propagates; no cache is updated unless every read
        has settled.
        """
        results = await asyncio.gather(*(self._load(store) for store in self._stores))

        sources: dict[SourceOrigin, SourceSnapshot] = {}
        for store, result in zip(self._stores, results, strict=True):
            sources[store.origin] = result
            if not result.stale:
                self._last_good[store.origin] = result

        snapshot = AggregateSnapshot(
            events=aggregate(result.events for result in results),
            sources=sources,
            refreshed_at=datetime.now(UTC),
        )
        self._snapshot = snapshot
        return snapshot

    async def _load(self, store: SourceStore) -> SourceSnapshot:
        try:
            records = await asyncio.wait_for(store.list_records(), timeout=self._store_timeout_s)
        except TimeoutError:
            return self._fallback(store, f"read timed out after {self._store_timeout_s:.1f}s")
        except StoreUnavailable as exc:
            return self._fallback(store, exc.message)
        except Exception as exc:
            return self._fallback(store, f"{type(exc).__name__}: {exc}")

        batch = normalize_records(records, store.origin, timezone=self._timezone)
        return SourceSnapshot(
            origin=store.origin,
            events=batch.events,
            errors=batch.errors,
            fetched_at=datetime.now(UTC),
        )

    def _fallback(self, store: SourceStore, reason: str) -> SourceSnapshot:
        previous = self._last_good.get(store.origin)
        logger.warning(
            "Source store %s unavailable (%s); serving %d last-known-good event(s)",
            store.name,
            reason,
            len(previous.events) if previous else 0,
        )
        return SourceSnapshot(
            origin=store.origin,
            events=list(previous.events) if previous else [],
            errors=[],
            fetched_at=previous.fetched_at if previous else None,
            stale=True,
            error=reason,
        )
