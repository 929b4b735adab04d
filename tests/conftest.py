"""Shared fixtures for the scheduling_engine test suite."""

from __future__ import annotations

from datetime import date, datetime

import pytest

from scheduling_engine.detector import ConflictDetector
from scheduling_engine.models import Event, SourceOrigin, TimeWindow
from scheduling_engine.stores.memory import InMemorySourceStore

# A Tuesday.
DAY = date(2026, 3, 10)


def at(clock: str, day: date = DAY) -> datetime:
    """``"09:30"`` -> naive datetime on *day*."""
    hours, minutes = clock.split(":")
    return datetime(day.year, day.month, day.day, int(hours), int(minutes))


def window(start: str, end: str, day: date = DAY) -> TimeWindow:
    return TimeWindow(start=at(start, day), end=at(end, day))


def event(event_id: str, start: str, end: str, **overrides) -> Event:
    """Event on DAY between two ``HH:MM`` clock values."""
    return Event(id=event_id, start_at=at(start), end_at=at(end), **overrides)


@pytest.fixture
def detector() -> ConflictDetector:
    return ConflictDetector()


@pytest.fixture
def unified_store() -> InMemorySourceStore:
    return InMemorySourceStore(SourceOrigin.UNIFIED_EVENT)


@pytest.fixture
def schedule_store() -> InMemorySourceStore:
    return InMemorySourceStore(SourceOrigin.SERVICE_SCHEDULE)


@pytest.fixture
def legacy_store() -> InMemorySourceStore:
    return InMemorySourceStore(SourceOrigin.LEGACY_TASK)
